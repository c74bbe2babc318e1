"""Error taxonomy of the build matrix runner.

Only ConfigurationError escapes a pipeline run. Everything raised while a job
is running is turned into that job's classification by the job runner.
"""


class BuildMatrixError(Exception):
    """Base error for buildmatrix."""


class ConfigurationError(BuildMatrixError):
    """Malformed or empty pipeline document, matrix or settings."""


class CommandError(BuildMatrixError):
    """A helper process exited with a nonzero status."""

    def __init__(self, args, returncode: int):
        super().__init__(f'{args[0]} exited with code {returncode}')
        self.returncode = returncode


class ProvisioningError(BuildMatrixError):
    """A job dependency could not be installed."""

    def __init__(self, message: str, package: str | None = None, output: str = ''):
        super().__init__(message)
        self.package = package
        self.output = output


class StageFailure(BuildMatrixError):
    """A stage command exited with a nonzero status."""

    def __init__(self, stage: str, exit_code: int | None):
        if exit_code is None:
            super().__init__(f'Stage {stage!r} could not be started')
        else:
            super().__init__(f'Stage {stage!r} exited with code {exit_code}')
        self.stage = stage
        self.exit_code = exit_code


class StageTimeoutError(BuildMatrixError):
    """The process host gave up waiting for a stage."""

    def __init__(self, stage: str, timeout: float | None = None):
        super().__init__(f'Stage {stage!r} timed out')
        self.stage = stage
        self.timeout = timeout


class CancellationError(BuildMatrixError):
    """The pipeline was cancelled by the invoking system."""
