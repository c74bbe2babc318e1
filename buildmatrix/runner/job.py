import logging
from pathlib import Path

from buildmatrix.exceptions import (
    BuildMatrixError,
    CancellationError,
    StageFailure,
    StageTimeoutError,
)
from buildmatrix.runner.context import JobContext
from buildmatrix.runner.provision import EnvironmentProvisioner
from buildmatrix.runner.stage import StageRunner
from buildmatrix.schemas import (
    JobResult,
    JobState,
    JobStatus,
    ProvisionResult,
    StageResult,
    StageStatus,
)
from buildmatrix.schemas.job import JobSpec
from buildmatrix.utils import merge_env

logger = logging.getLogger(__name__)

STATE_STATUS = {
    JobState.provision_failed: JobStatus.failed,
    JobState.stage_failed: JobStatus.failed,
    JobState.all_stages_passed: JobStatus.passed,
    JobState.cancelled: JobStatus.cancelled,
    JobState.skipped: JobStatus.skipped,
    JobState.errored: JobStatus.failed,
}


class JobRunner:
    """Drives one job from pending to a terminal state.

    Provisioning runs once, then stages run in declared order until the first
    one that does not pass; everything after it is skipped.
    """

    job: JobSpec
    context: JobContext
    source_dir: Path
    state: JobState

    def __init__(self, job: JobSpec, context: JobContext, source_dir: Path):
        self.job = job
        self.context = context
        self.source_dir = source_dir
        self.state = JobState.pending

    def transition(self, state: JobState):
        logger.debug(f'[{self.job.name}] {self.state.value} -> {state.value}')
        self.state = state

    def finish(
        self,
        state: JobState,
        provision: ProvisionResult | None = None,
        stages: list[StageResult] | None = None,
        message: str | None = None,
    ) -> JobResult:
        self.transition(state)
        return JobResult(
            name=self.job.name,
            state=state,
            status=STATE_STATUS[state],
            provision=provision,
            stages=stages or [],
            message=message,
        )

    async def run(self) -> JobResult:
        try:
            return await self.run_stages()
        except Exception as e:
            logger.exception(f'[{self.job.name}] Internal error')
            return self.finish(JobState.errored, message=f'Internal error: {e}')
        finally:
            try:
                await self.context.cleanup()
            except (BuildMatrixError, OSError) as e:
                logger.warning(f'[{self.job.name}] Cleanup failed: {e}')

    async def run_stages(self) -> JobResult:
        if self.context.cancelled.is_set():
            return self.finish(JobState.cancelled, message='Cancelled before start')

        await self.context.prepare(self.source_dir)

        self.transition(JobState.provisioning)
        provisioner = EnvironmentProvisioner(self.context, self.job.provision)
        try:
            provision = await provisioner.run(self.job.env)
        except CancellationError as e:
            return self.finish(JobState.cancelled, message=str(e))
        if not provision.ok:
            return self.finish(
                JobState.provision_failed, provision=provision, message=provision.error
            )

        self.transition(JobState.running)
        env = merge_env(provision.env, self.job.env)
        results = []
        halted_by = None
        for stage in self.job.stages:
            stage_runner = StageRunner(self.context, stage, env)
            if halted_by is not None:
                results.append(stage_runner.skip())
                continue
            if self.context.cancelled.is_set():
                halted_by = StageStatus.cancelled
                results.append(stage_runner.skip())
                continue
            result = await stage_runner.run()
            results.append(result)
            if result.status != StageStatus.passed:
                halted_by = result.status

        if halted_by is None:
            return self.finish(JobState.all_stages_passed, provision, results)
        if halted_by == StageStatus.cancelled:
            return self.finish(JobState.cancelled, provision, results, 'Cancelled')
        index, failed = next(
            (i, x) for i, x in enumerate(results) if x.status == halted_by
        )
        if halted_by == StageStatus.timed_out:
            error = StageTimeoutError(failed.label, self.job.stages[index].timeout)
        else:
            error = StageFailure(failed.label, failed.exit_code)
        return self.finish(JobState.stage_failed, provision, results, str(error))
