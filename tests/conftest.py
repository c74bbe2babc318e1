import asyncio
from pathlib import Path

import pytest
import yaml

from buildmatrix.config import config
from buildmatrix.runner.context import JobContext
from buildmatrix.schemas.job import JobSpec

from helpers import make_job


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    runs_dir = tmp_path / 'runs'
    runs_dir.mkdir()
    empty_dir = tmp_path / 'empty'
    empty_dir.mkdir()
    monkeypatch.setattr(config, 'runs_dir', runs_dir)
    monkeypatch.setattr(config, 'empty_dir', empty_dir)
    monkeypatch.setattr(config, 'always_use_sandbox', False)
    monkeypatch.setattr(config, 'default_image', None)
    monkeypatch.setattr(config, 'podman_url', None)
    monkeypatch.setattr(config, 'keep_workdirs', False)
    monkeypatch.setattr(config, 'stage_timeout', None)
    monkeypatch.setattr(config, 'max_parallel_jobs', None)
    return config


@pytest.fixture
def source_dir(tmp_path) -> Path:
    path = tmp_path / 'src'
    path.mkdir()
    (path / 'README').write_text('flatdata\n')
    return path


@pytest.fixture
def write_pipeline(source_dir):
    def write(document: dict) -> Path:
        file = source_dir / 'buildmatrix.yml'
        file.write_text(yaml.safe_dump(document, sort_keys=False))
        return file

    return write


@pytest.fixture
def make_context(tmp_path):
    def make(job: JobSpec | None = None, cancelled: asyncio.Event | None = None):
        workdir = tmp_path / 'work'
        workdir.mkdir(exist_ok=True)
        return JobContext(job or make_job(), workdir, cancelled or asyncio.Event())

    return make
