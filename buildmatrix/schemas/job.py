from pydantic import BaseModel, ConfigDict

from buildmatrix.schemas.pipeline import EnvMap, ProvisionDef


class StageSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    run: str
    working_directory: str | None = None
    env: EnvMap = {}
    timeout: float | None = None


class JobSpec(BaseModel):
    """One expanded matrix cell.

    ``env`` already has the document, workflow and axis variant layers applied,
    in that order. ``stages`` are private copies, never shared with other jobs.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    workflow: str
    variant: dict[str, str] = {}
    env: EnvMap = {}
    stages: tuple[StageSpec, ...]
    provision: ProvisionDef | None = None
    image: str | None = None
    needs: tuple[str, ...] = ()
