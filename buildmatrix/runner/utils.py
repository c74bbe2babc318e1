import asyncio
import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

# never copied into job workdirs
IGNORED_SOURCE_ENTRIES = ('.buildmatrix',)


def _copy_source(source_dir: Path, workdir: Path):
    shutil.copytree(
        source_dir,
        workdir,
        symlinks=True,
        dirs_exist_ok=True,
        ignore=shutil.ignore_patterns(*IGNORED_SOURCE_ENTRIES),
    )


async def prepare_workdir(source_dir: Path, workdir: Path):
    """Give a job its own copy of the source tree."""
    logger.debug(f'Copying {source_dir} to {workdir}')
    workdir.mkdir(parents=True, exist_ok=True)
    await asyncio.to_thread(_copy_source, source_dir, workdir)


async def remove_workdir(workdir: Path):
    if workdir.exists():
        await asyncio.to_thread(shutil.rmtree, workdir, ignore_errors=True)
