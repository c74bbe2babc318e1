from asyncio import create_subprocess_exec

import logging
import shutil
from pathlib import Path
from subprocess import DEVNULL, PIPE

from buildmatrix.exceptions import CommandError

logger = logging.getLogger(__name__)


def get_bin(name: str) -> str:
    return shutil.which(name) or name


BASH = get_bin('bash')
NIX = get_bin('nix')
JQ = get_bin('jq')
PODMAN = get_bin('podman')


async def async_check_output(
    *args: str | Path, cwd: Path | str, env: dict[str, str] | None = None
) -> str:
    logger.debug(f'Running {args}')
    p = await create_subprocess_exec(
        *args, cwd=cwd, stdin=DEVNULL, stdout=PIPE, env=env
    )
    stdout, _ = await p.communicate()
    if p.returncode:
        logger.error(f'Process exited with code {p.returncode}')
        raise CommandError(args, p.returncode)
    return stdout.decode()


def merge_env(*layers: dict[str, str] | None) -> dict[str, str]:
    res = {}
    for layer in layers:
        if layer:
            res |= layer
    return res


def slugify(name: str) -> str:
    res = ''.join(c if c.isalnum() or c in '-_.' else '-' for c in name)
    return res.strip('-.') or 'job'
