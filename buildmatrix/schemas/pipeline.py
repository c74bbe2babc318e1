import re
from pathlib import PurePosixPath
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic_core.core_schema import ValidationInfo
from typing import Annotated, Any

from buildmatrix.const import NIX_PACKAGE_PATTERN


def _scalar_to_str(value):
    # YAML reads `4`, `3.12` and `true` as numbers and booleans
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    return value


ScalarStr = Annotated[str, BeforeValidator(_scalar_to_str)]
EnvMap = dict[str, ScalarStr]
# axis name -> variant name -> env substitutions
MatrixDef = dict[str, dict[ScalarStr, EnvMap]]


def _check_relative(path: str) -> str:
    if PurePosixPath(path).is_absolute():
        raise ValueError('path must be relative')
    parts = []
    for part in PurePosixPath(path).parts:
        if part == '..':
            if not parts:
                raise ValueError('path must stay inside the job workdir')
            parts.pop()
        elif part != '.':
            parts.append(part)
    return path


class ProvisionDef(BaseModel):
    model_config = ConfigDict(extra='forbid')

    mechanism: str
    packages: list[str] = []
    command: str | None = None

    @field_validator('packages')
    @classmethod
    def v_packages(cls, v: list[str], info: ValidationInfo):
        if info.data.get('mechanism') == 'nix':
            for package in v:
                if not re.fullmatch(NIX_PACKAGE_PATTERN, package):
                    raise ValueError(f'invalid nix package name {package!r}')
        return v

    @model_validator(mode='after')
    def v_command(self):
        if self.mechanism == 'command' and not self.command:
            raise ValueError('mechanism "command" requires a command template')
        if self.command is not None and '{package}' not in self.command:
            raise ValueError('command template must contain {package}')
        return self


class EnvSettings(BaseModel):
    env: EnvMap = {}
    image: str | None = None
    provision: ProvisionDef | None = None


class StageDef(BaseModel):
    model_config = ConfigDict(extra='forbid', populate_by_name=True)

    run: str
    working_directory: Annotated[str | None, Field(alias='working-directory')] = None
    env: EnvMap = {}
    timeout: float | None = None

    @field_validator('working_directory')
    @classmethod
    def v_working_directory(cls, v: str | None):
        if v is None:
            return v
        return _check_relative(v)

    @field_validator('timeout')
    @classmethod
    def v_timeout(cls, v: float | None):
        if v is not None and v <= 0:
            raise ValueError('timeout must be positive')
        return v


class WorkflowDef(EnvSettings):
    model_config = ConfigDict(extra='forbid')

    stages: list[str]
    matrix: MatrixDef = {}
    needs: list[str] = []

    @field_validator('needs', mode='before')
    @classmethod
    def v_needs(cls, v: Any):
        if isinstance(v, str):
            return [v]
        return v


class Pipeline(EnvSettings):
    model_config = ConfigDict(extra='forbid', populate_by_name=True)

    name: str | None = None
    triggers: Annotated[Any, Field(alias='on')] = None
    stages: dict[str, StageDef]
    workflows: dict[str, WorkflowDef]

    @model_validator(mode='after')
    def v_references(self):
        if not self.workflows:
            raise ValueError('at least one workflow must be declared')
        for workflow_name, workflow in self.workflows.items():
            for stage_name in workflow.stages:
                if stage_name not in self.stages:
                    raise ValueError(
                        f'workflow {workflow_name!r} references unknown stage '
                        f'{stage_name!r}'
                    )
            for dependency in workflow.needs:
                if dependency not in self.workflows:
                    raise ValueError(
                        f'workflow {workflow_name!r} needs unknown workflow '
                        f'{dependency!r}'
                    )
        return self
