import asyncio
import os
import posixpath
import signal
from asyncio import create_subprocess_exec
from asyncio.subprocess import Process

import logging
import tempfile
from enum import Enum
from pathlib import Path
from subprocess import DEVNULL, STDOUT
from typing import BinaryIO, NamedTuple

from buildmatrix.config import config
from buildmatrix.const import SANDBOX_WORKDIR
from buildmatrix.runner.utils import prepare_workdir, remove_workdir
from buildmatrix.sandbox import Sandbox
from buildmatrix.schemas.job import JobSpec
from buildmatrix.utils import merge_env, slugify

logger = logging.getLogger(__name__)

# seconds to wait for a killed process to be reaped
KILL_GRACE = 5


class ProcessOutcome(Enum):
    exited = 'exited'
    timed_out = 'timed_out'
    cancelled = 'cancelled'


class ProcessOutput(NamedTuple):
    outcome: ProcessOutcome
    returncode: int | None
    stdout: str
    stderr: str


class RunningProcess:
    """A started process and the files its output is captured into.

    Output goes to unnamed temporary files rather than pipes, so background
    children that inherit them cannot keep the process from being seen as
    finished.
    """

    process: Process
    stdout: BinaryIO
    stderr: BinaryIO | None

    def __init__(self, process: Process, stdout: BinaryIO, stderr: BinaryIO | None = None):
        self.process = process
        self.stdout = stdout
        self.stderr = stderr

    def read(self) -> tuple[str, str]:
        res = []
        for file in (self.stdout, self.stderr):
            if file is None:
                res.append('')
                continue
            file.seek(0)
            res.append(file.read().decode(errors='replace'))
        return res[0], res[1]

    def close(self):
        for file in (self.stdout, self.stderr):
            if file is not None:
                file.close()


class JobContext:
    """Isolated execution context of a single job.

    Owns the job's private workdir and, when the job runs in a container, its
    sandbox. Provisioning and stages only ever execute through this object.
    ``cancelled`` is shared by every job of a pipeline run.
    """

    job: JobSpec
    host_workdir: Path
    sandbox: Sandbox | None
    cancelled: asyncio.Event

    def __init__(self, job: JobSpec, host_workdir: Path, cancelled: asyncio.Event):
        self.job = job
        self.host_workdir = host_workdir
        self.cancelled = cancelled
        self.sandbox = None
        image = job.image or (config.default_image if config.always_use_sandbox else None)
        if image:
            self.sandbox = Sandbox(
                image=image,
                workdir=SANDBOX_WORKDIR,
                name_prefix=f'buildmatrix-{slugify(job.name).lower()}-{os.getpid()}',
            )
            self.sandbox.add_rw_bind(str(self.host_workdir), SANDBOX_WORKDIR)

    @property
    def use_sandbox(self) -> bool:
        return self.sandbox is not None

    async def prepare(self, source_dir: Path):
        await prepare_workdir(source_dir, self.host_workdir)

    async def exec(
        self,
        *args: str,
        env: dict[str, str] | None = None,
        working_directory: str | None = None,
        merge_stderr: bool = True,
    ) -> RunningProcess:
        if self.use_sandbox:
            cmd_workdir = config.empty_dir
            workdir = SANDBOX_WORKDIR
            if working_directory:
                workdir = posixpath.normpath(posixpath.join(workdir, working_directory))
            self.sandbox.add_envs(env)
            prefix = self.sandbox.build_cmd_prefix(workdir)
            process_env = None
        else:
            cmd_workdir = self.host_workdir
            if working_directory:
                cmd_workdir = cmd_workdir / working_directory
            prefix = []
            process_env = merge_env(dict(os.environ), env)
        stdout = tempfile.TemporaryFile()
        stderr = None if merge_stderr else tempfile.TemporaryFile()
        try:
            process = await create_subprocess_exec(
                *prefix,
                *args,
                cwd=cmd_workdir,
                stdin=DEVNULL,
                stdout=stdout,
                stderr=STDOUT if merge_stderr else stderr,
                env=process_env,
                start_new_session=True,
            )
        except BaseException:
            stdout.close()
            if stderr is not None:
                stderr.close()
            raise
        finally:
            if self.use_sandbox:
                self.sandbox.clear_env()
        return RunningProcess(process, stdout, stderr)

    async def wait(self, running: RunningProcess, timeout: float | None = None) -> ProcessOutput:
        """Wait for ``running`` to exit and collect its output.

        The outcome is decided by the process itself exiting; anything it left
        running in its process group is killed afterwards. Kills the process
        when ``timeout`` expires or the pipeline is cancelled, whichever comes
        first.
        """
        process = running.process
        exited = asyncio.ensure_future(process.wait())
        cancel_wait = asyncio.ensure_future(self.cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {exited, cancel_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self.terminate(process)
            running.close()
            raise
        finally:
            cancel_wait.cancel()
            exited.cancel()

        if exited in done:
            outcome = ProcessOutcome.exited
        else:
            outcome = (
                ProcessOutcome.cancelled
                if self.cancelled.is_set()
                else ProcessOutcome.timed_out
            )
            logger.warning(f'[{self.job.name}] Killing pid {process.pid}: {outcome.value}')
        await self.terminate(process, kill_container=outcome != ProcessOutcome.exited)
        try:
            stdout, stderr = running.read()
        finally:
            running.close()
        return ProcessOutput(outcome, process.returncode, stdout, stderr)

    async def terminate(self, process: Process, kill_container: bool = True):
        """Kill the process group of ``process``, including leftover children."""
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            # nothing left in the group
            pass
        if kill_container and self.use_sandbox:
            await self.sandbox.kill()
        try:
            await asyncio.wait_for(process.wait(), KILL_GRACE)
        except asyncio.TimeoutError:
            logger.warning(f'[{self.job.name}] pid {process.pid} did not exit after kill')

    async def cleanup(self):
        if config.keep_workdirs:
            logger.info(f'Keeping workdir {self.host_workdir} of {self.job.name}')
            return
        if self.use_sandbox and self.host_workdir.is_dir():
            paths = [
                posixpath.join(SANDBOX_WORKDIR, x.name)
                for x in self.host_workdir.iterdir()
            ]
            await self.sandbox.cleanup(*paths)
        await remove_workdir(self.host_workdir)
