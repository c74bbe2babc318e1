import logging
from datetime import datetime, timezone

from buildmatrix.config import config
from buildmatrix.const import HOST_TIMEOUT_EXIT_CODE, STAGE_SHELL_PREAMBLE
from buildmatrix.runner.context import JobContext, ProcessOutcome
from buildmatrix.schemas import StageResult, StageStatus
from buildmatrix.schemas.job import StageSpec
from buildmatrix.utils import BASH, merge_env

logger = logging.getLogger(__name__)


def now() -> datetime:
    return datetime.now(timezone.utc)


class StageRunner:
    context: JobContext
    stage: StageSpec
    env: dict[str, str]

    def __init__(self, context: JobContext, stage: StageSpec, env: dict[str, str]):
        self.context = context
        self.stage = stage
        self.env = merge_env(env, stage.env)

    @property
    def timeout(self) -> float | None:
        if self.stage.timeout is not None:
            return self.stage.timeout
        return config.stage_timeout

    def classify(self, outcome: ProcessOutcome, exit_code: int | None) -> StageStatus:
        if outcome == ProcessOutcome.cancelled:
            return StageStatus.cancelled
        if outcome == ProcessOutcome.timed_out or exit_code == HOST_TIMEOUT_EXIT_CODE:
            return StageStatus.timed_out
        if exit_code == 0:
            return StageStatus.passed
        return StageStatus.failed

    async def run(self) -> StageResult:
        job_name = self.context.job.name
        logger.info(f'[{job_name}] Running stage {self.stage.label!r}')
        started_at = now()
        try:
            p = await self.context.exec(
                BASH,
                '-c',
                STAGE_SHELL_PREAMBLE + self.stage.run,
                env=self.env,
                working_directory=self.stage.working_directory,
            )
        except OSError as e:
            # e.g. working directory missing from the checkout
            logger.error(f'[{job_name}] Could not start stage {self.stage.label!r}: {e}')
            return StageResult(
                label=self.stage.label,
                status=StageStatus.failed,
                output=str(e),
                started_at=started_at,
                finished_at=now(),
            )
        res = await self.context.wait(p, timeout=self.timeout)
        status = self.classify(res.outcome, res.returncode)

        log = logger.info if status == StageStatus.passed else logger.error
        log(f'[{job_name}] Stage {self.stage.label!r} {status.value} (exit code {res.returncode})')
        return StageResult(
            label=self.stage.label,
            status=status,
            exit_code=res.returncode,
            output=res.stdout,
            started_at=started_at,
            finished_at=now(),
        )

    def skip(self) -> StageResult:
        return StageResult(label=self.stage.label, status=StageStatus.skipped)
