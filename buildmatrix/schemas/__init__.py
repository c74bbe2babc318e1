from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, computed_field
from typing import Any


class StageStatus(str, Enum):
    passed = 'passed'
    failed = 'failed'
    skipped = 'skipped'
    timed_out = 'timed_out'
    cancelled = 'cancelled'


class JobStatus(str, Enum):
    passed = 'passed'
    failed = 'failed'
    cancelled = 'cancelled'
    skipped = 'skipped'


class JobState(str, Enum):
    pending = 'pending'
    provisioning = 'provisioning'
    provision_failed = 'provision_failed'
    running = 'running'
    stage_failed = 'stage_failed'
    all_stages_passed = 'all_stages_passed'
    cancelled = 'cancelled'
    skipped = 'skipped'
    errored = 'errored'


class StageResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    status: StageStatus
    exit_code: int | None = None
    output: str = ''
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class DependencyResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    package: str
    ok: bool
    output: str = ''


class ProvisionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    mechanism: str | None = None
    dependencies: list[DependencyResult] = []
    failed_package: str | None = None
    error: str | None = None
    env: dict[str, str] = {}

    @computed_field
    @property
    def ok(self) -> bool:
        return self.error is None and all(x.ok for x in self.dependencies)


class JobResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    state: JobState
    status: JobStatus
    provision: ProvisionResult | None = None
    stages: list[StageResult] = []
    message: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == JobStatus.passed

    @property
    def failed_stage(self) -> StageResult | None:
        for stage in self.stages:
            if stage.status not in (StageStatus.passed, StageStatus.skipped):
                return stage
        return None


class PipelineResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str | None = None
    triggers: Any = None
    jobs: dict[str, JobResult]

    @computed_field
    @property
    def status(self) -> JobStatus:
        if all(job.passed for job in self.jobs.values()):
            return JobStatus.passed
        if any(job.status == JobStatus.cancelled for job in self.jobs.values()):
            return JobStatus.cancelled
        return JobStatus.failed

    @property
    def passed(self) -> bool:
        return self.status == JobStatus.passed
