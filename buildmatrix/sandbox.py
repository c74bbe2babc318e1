import logging
import uuid

from buildmatrix.config import config
from buildmatrix.const import SANDBOX_HOME
from buildmatrix.exceptions import CommandError
from buildmatrix.utils import PODMAN, async_check_output

logger = logging.getLogger(__name__)


class Sandbox:
    """Podman container wrapping every command of one job.

    Each command gets its own short-lived container; the job workdir is bind
    mounted so state carries over between stages.
    """

    FORCE_ENV = {
        'HOME': SANDBOX_HOME,
    }

    _rw_binds: list[tuple[str, str]]
    _env: dict[str, str]
    _workdir: str | None
    _image: str
    _tmpfses: list[str]
    _other_args: list[str]
    _name_prefix: str
    _counter: int
    current_name: str | None
    unsafe_run_as_root: bool

    _is_shutdown: bool

    def __init__(self, *, image: str, workdir: str = None, name_prefix: str = None):
        self._is_shutdown = False
        self._rw_binds = []
        self.clear_env()
        self._workdir = workdir
        self._image = image
        self._tmpfses = ['/tmp', '/var/tmp', '/dev/shm']
        self._name_prefix = name_prefix or f'buildmatrix-{uuid.uuid4().hex[:12]}'
        self._counter = 0
        self.current_name = None
        self.unsafe_run_as_root = False

        self._other_args = []
        if config.podman_url:
            self._other_args.append(f'--url={config.podman_url}')
        self._other_args.extend(('run', '--rm', '--init'))

    @property
    def image(self) -> str:
        return self._image

    def add_rw_bind(self, src: str, dst: str):
        self._rw_binds.append((src, dst))

    def clear_env(self):
        self._env = self.FORCE_ENV.copy()

    def add_envs(self, envs: dict[str, str] | None):
        for k, v in (envs or {}).items():
            if k == 'PATH' and 'PATH' in self._env:
                self._env[k] = v + ':' + self._env['PATH']
            elif k not in self.FORCE_ENV:
                self._env[k] = v

    def build_cmd_prefix(self, workdir: str | None = None) -> list[str]:
        if self._is_shutdown:
            raise ValueError('Sandbox is shut down')
        self._counter += 1
        self.current_name = f'{self._name_prefix}-{self._counter}'
        res = [PODMAN, *self._other_args, '--name', self.current_name]
        for tmpfs in self._tmpfses:
            res.extend(('--mount', f'type=tmpfs,destination={tmpfs}'))
        if workdir := workdir or self._workdir:
            res.extend(('-w', workdir))
        if self.unsafe_run_as_root:
            res.append('--user=0:0')
        for src, dst in self._rw_binds:
            res.extend(('-v', f'{src}:{dst}'))
        for k, v in self._env.items():
            res.extend(('-e', f'{k}={v}'))

        res.append(self._image)
        logger.debug(f'Generated sandbox prefix {res}')
        return res

    async def kill(self):
        if self.current_name is None:
            return
        args = [PODMAN]
        if config.podman_url:
            args.append(f'--url={config.podman_url}')
        try:
            await async_check_output(
                *args, 'kill', self.current_name, cwd=config.empty_dir
            )
        except CommandError as e:
            # container already gone
            logger.debug(f'Container {self.current_name} was not running: {e}')

    async def cleanup(self, *paths: str):
        """Remove ``paths`` inside the container as root and shut the sandbox down.

        Files created by the container user may not be removable from the host
        under rootless podman.
        """
        if self._is_shutdown:
            return
        if paths:
            self.clear_env()
            self.unsafe_run_as_root = True
            try:
                prefix = self.build_cmd_prefix()
                await async_check_output(*prefix, 'rm', '-rf', *paths, cwd=config.empty_dir)
            finally:
                self.unsafe_run_as_root = False
        self._is_shutdown = True
