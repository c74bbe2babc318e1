import itertools

from buildmatrix.exceptions import ConfigurationError
from buildmatrix.schemas.job import JobSpec, StageSpec
from buildmatrix.schemas.pipeline import EnvMap, MatrixDef, Pipeline, WorkflowDef
from buildmatrix.utils import merge_env

Cell = tuple[dict[str, str], EnvMap]


def expand_axes(axes: MatrixDef) -> list[Cell]:
    """Cross product of all axis variants, in declaration order.

    Returns one ``(selection, env)`` pair per matrix cell, ``selection`` mapping
    axis name to variant name. No axes at all gives a single empty cell.
    """
    for axis_name, variants in axes.items():
        if not variants:
            raise ConfigurationError(f'Axis {axis_name!r} declares no variants')

    axis_names = list(axes)
    cells = []
    for combination in itertools.product(*(axes[x].items() for x in axis_names)):
        selection = {}
        env = {}
        for axis_name, (variant_name, variant_env) in zip(axis_names, combination):
            selection[axis_name] = variant_name
            env |= variant_env
        cells.append((selection, env))
    return cells


def job_name(workflow_name: str, selection: dict[str, str]) -> str:
    if not selection:
        return workflow_name
    return f'{workflow_name} ({", ".join(selection.values())})'


def expand_workflow(
    workflow_name: str, workflow: WorkflowDef, pipeline: Pipeline
) -> list[JobSpec]:
    if not workflow.stages:
        raise ConfigurationError(f'Workflow {workflow_name!r} declares no stages')

    jobs = []
    for selection, variant_env in expand_axes(workflow.matrix):
        stages = []
        for stage_name in workflow.stages:
            stage = pipeline.stages[stage_name]
            stages.append(
                StageSpec(
                    label=stage_name,
                    run=stage.run,
                    working_directory=stage.working_directory,
                    env=dict(stage.env),
                    timeout=stage.timeout,
                )
            )
        jobs.append(
            JobSpec(
                name=job_name(workflow_name, selection),
                workflow=workflow_name,
                variant=selection,
                env=merge_env(pipeline.env, workflow.env, variant_env),
                stages=tuple(stages),
                provision=workflow.provision or pipeline.provision,
                image=workflow.image or pipeline.image,
                needs=tuple(workflow.needs),
            )
        )
    return jobs


def check_needs(pipeline: Pipeline):
    visiting = set()
    done = set()

    def visit(name: str, path: list[str]):
        if name in done:
            return
        if name in visiting:
            cycle = ' -> '.join(path[path.index(name):] + [name])
            raise ConfigurationError(f'Workflow dependency cycle: {cycle}')
        visiting.add(name)
        for dependency in pipeline.workflows[name].needs:
            visit(dependency, path + [name])
        visiting.remove(name)
        done.add(name)

    for workflow_name in pipeline.workflows:
        visit(workflow_name, [])


def expand_pipeline(pipeline: Pipeline) -> list[JobSpec]:
    check_needs(pipeline)
    jobs = []
    seen = set()
    for workflow_name, workflow in pipeline.workflows.items():
        for job in expand_workflow(workflow_name, workflow, pipeline):
            if job.name in seen:
                raise ConfigurationError(f'Duplicate job name {job.name!r}')
            seen.add(job.name)
            jobs.append(job)
    return jobs
