from buildmatrix.schemas import JobResult, JobStatus, PipelineResult, StageResult

# lines of stage output shown for stages that did not pass
OUTPUT_TAIL_LINES = 20


def format_stage(stage: StageResult) -> list[str]:
    line = f'    {stage.status.value:<10} {stage.label}'
    if stage.exit_code is not None:
        line += f' (exit code {stage.exit_code}'
        if stage.duration is not None:
            line += f', {stage.duration:.1f}s'
        line += ')'
    return [line]


def format_output_tail(output: str) -> list[str]:
    lines = output.rstrip().splitlines()[-OUTPUT_TAIL_LINES:]
    return [f'        | {x}' for x in lines]


def format_job(job: JobResult, width: int) -> list[str]:
    line = f'  {job.name:<{width}}  {job.status.value}'
    if job.message and not job.passed:
        line += f'  ({job.message})'
    res = [line]
    if job.passed:
        return res

    provision = job.provision
    if provision is not None and not provision.ok:
        failed = provision.failed_package or provision.mechanism
        res.append(f'    provisioning failed: {failed}')
        outputs = [x.output for x in provision.dependencies if not x.ok]
        for output in outputs:
            res.extend(format_output_tail(output))
    for stage in job.stages:
        res.extend(format_stage(stage))
    failed_stage = job.failed_stage
    if failed_stage is not None and failed_stage.output:
        res.extend(format_output_tail(failed_stage.output))
    return res


def format_report(result: PipelineResult) -> str:
    title = f'Pipeline {result.name}' if result.name else 'Pipeline'
    lines = [f'{title}: {result.status.value}']
    width = max((len(x) for x in result.jobs), default=0)
    for job in result.jobs.values():
        lines.extend(format_job(job, width))
    counts = {}
    for job in result.jobs.values():
        counts[job.status] = counts.get(job.status, 0) + 1
    summary = ', '.join(
        f'{counts[x]} {x.value}' for x in JobStatus if x in counts
    )
    lines.append(f'{len(result.jobs)} jobs: {summary}')
    return '\n'.join(lines)
