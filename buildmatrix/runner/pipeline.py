import asyncio
import logging
import uuid
from contextlib import nullcontext
from datetime import datetime
from pathlib import Path
from pydantic import ValidationError
from yaml import YAMLError

import yaml

from buildmatrix.config import config
from buildmatrix.exceptions import ConfigurationError
from buildmatrix.runner.context import JobContext
from buildmatrix.runner.job import JobRunner
from buildmatrix.runner.matrix import expand_pipeline
from buildmatrix.runner.provision import install_template
from buildmatrix.schemas import JobResult, JobState, JobStatus, PipelineResult
from buildmatrix.schemas.job import JobSpec
from buildmatrix.schemas.pipeline import Pipeline
from buildmatrix.utils import slugify

logger = logging.getLogger(__name__)


def parse_pipeline(data) -> Pipeline:
    if not isinstance(data, dict):
        raise ConfigurationError('Pipeline document must be a mapping')
    if True in data:
        # YAML 1.1 reads a bare `on` key as a boolean
        data['on'] = data.pop(True)
    try:
        return Pipeline.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(str(e))


def load_pipeline(file: Path) -> Pipeline:
    if not file.is_file():
        raise ConfigurationError(f'Pipeline file {file} not found')
    try:
        data = yaml.safe_load(file.read_text())
    except YAMLError as e:
        raise ConfigurationError(str(e))
    return parse_pipeline(data)


class PipelineRunner:
    """Runs every job of a pipeline and aggregates their results.

    Jobs run concurrently and only wait on each other through explicit
    ``needs`` edges between workflows.
    """

    pipeline: Pipeline
    source_dir: Path
    jobs: list[JobSpec]
    max_parallel_jobs: int | None
    run_id: str
    cancelled: asyncio.Event
    _tasks: dict[str, asyncio.Task]

    def __init__(
        self,
        pipeline: Pipeline,
        source_dir: Path,
        max_parallel_jobs: int | None = None,
    ):
        self.pipeline = pipeline
        self.source_dir = source_dir.absolute()
        self.max_parallel_jobs = max_parallel_jobs or config.max_parallel_jobs
        self.jobs = expand_pipeline(pipeline)
        self.check_jobs()
        self.run_id = f'{datetime.now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:8]}'
        self.cancelled = asyncio.Event()
        self._tasks = {}

    @classmethod
    def from_file(cls, file: Path, source_dir: Path | None = None, **kwargs):
        pipeline = load_pipeline(file)
        return cls(pipeline, source_dir or file.absolute().parent, **kwargs)

    def check_jobs(self):
        if not self.source_dir.is_dir():
            raise ConfigurationError(f'Source directory {self.source_dir} not found')
        if config.runs_dir.absolute().is_relative_to(self.source_dir):
            raise ConfigurationError('runs_dir must not be inside the source directory')
        for job in self.jobs:
            if job.provision is not None:
                install_template(job.provision)
            if config.always_use_sandbox and not (job.image or config.default_image):
                raise ConfigurationError(
                    f'Job {job.name!r} has no image and default_image is not set'
                )

    def cancel(self):
        if not self.cancelled.is_set():
            logger.warning('Cancelling pipeline')
            self.cancelled.set()

    def dependencies(self, job: JobSpec) -> list[str]:
        return [x.name for x in self.jobs if x.workflow in job.needs]

    async def run_job(
        self, index: int, job: JobSpec, run_dir: Path, semaphore
    ) -> JobResult:
        if job.needs:
            needed = self.dependencies(job)
            results = await asyncio.gather(*(self._tasks[x] for x in needed))
            blocking = [x.name for x in results if not x.passed]
            if blocking and self.cancelled.is_set():
                return JobResult(
                    name=job.name,
                    state=JobState.cancelled,
                    status=JobStatus.cancelled,
                    message='Cancelled before start',
                )
            if blocking:
                logger.warning(f'[{job.name}] Skipped, needs {blocking}')
                return JobResult(
                    name=job.name,
                    state=JobState.skipped,
                    status=JobStatus.skipped,
                    message=f'Needed jobs did not pass: {", ".join(blocking)}',
                )

        async with semaphore:
            workdir = run_dir / f'{index}_{slugify(job.name)}'
            context = JobContext(job, workdir, self.cancelled)
            return await JobRunner(job, context, self.source_dir).run()

    async def run(self) -> PipelineResult:
        run_dir = config.runs_dir / self.run_id
        if self.max_parallel_jobs:
            semaphore = asyncio.Semaphore(self.max_parallel_jobs)
        else:
            semaphore = nullcontext()

        logger.info(f'Starting run {self.run_id} with {len(self.jobs)} jobs')
        for i, job in enumerate(self.jobs):
            self._tasks[job.name] = asyncio.create_task(
                self.run_job(i, job, run_dir, semaphore), name=job.name
            )
        try:
            await asyncio.gather(*self._tasks.values())
        finally:
            for task in self._tasks.values():
                task.cancel()
            if run_dir.is_dir() and not any(run_dir.iterdir()):
                run_dir.rmdir()

        result = PipelineResult(
            name=self.pipeline.name,
            triggers=self.pipeline.triggers,
            jobs={job.name: self._tasks[job.name].result() for job in self.jobs},
        )
        logger.info(f'Pipeline {result.status.value}')
        return result
