import os
import yaml
from pathlib import Path
from pydantic import AfterValidator, field_validator
from pydantic_core.core_schema import ValidationInfo
from pydantic_settings import BaseSettings
from typing import Annotated


def _default_data_dir() -> Path:
    data_home = os.getenv('XDG_DATA_HOME') or os.path.expanduser('~/.local/share')
    return Path(data_home) / 'buildmatrix'


class Config(BaseSettings):
    debug: bool = False

    data_dir: Annotated[Path, AfterValidator(lambda path: path.absolute())] = (
        _default_data_dir()
    )
    runs_dir: Path = None
    empty_dir: Path = None

    pipeline_file: str = 'buildmatrix.yml'

    always_use_sandbox: bool = False
    default_image: str | None = None
    podman_url: str | None = None

    max_parallel_jobs: int | None = None
    # seconds, None leaves stages unbounded
    stage_timeout: float | None = None
    keep_workdirs: bool = False

    install_commands: dict[str, str] = {
        'apt': 'apt-get install -y {package}',
        'dnf': 'dnf install -y {package}',
        'apk': 'apk add {package}',
        'pip': 'python3 -m pip install {package}',
    }

    # noinspection PyNestedDecorators
    @field_validator('max_parallel_jobs')
    @classmethod
    def v_max_parallel_jobs(cls, v: int | None):
        if v is not None and v < 1:
            raise ValueError('max_parallel_jobs must be positive')
        return v

    # noinspection PyNestedDecorators
    @field_validator('runs_dir', 'empty_dir', mode='before')
    @classmethod
    def default_dirs(cls, v: Path | None, info: ValidationInfo):
        if 'data_dir' not in info.data:
            # data_dir already failed, don't report every derived dir as well
            return ''
        if v is None:
            dirname = info.field_name.removesuffix('_dir').replace('_', '-')
            res = info.data['data_dir'] / dirname
        else:
            res = Path(v)
        res.mkdir(parents=True, exist_ok=True)
        return res


config_home = Path(os.getenv('XDG_CONFIG_HOME') or os.path.expanduser('~/.config'))
config_file = config_home / 'buildmatrix' / 'config.yml'
if config_file.is_file():
    config_values = yaml.safe_load(config_file.read_text()) or {}
else:
    config_values = {}
config = Config(**config_values, _env_file='.env', _env_prefix='BUILDMATRIX_')

__all__ = ['Config', 'config']
