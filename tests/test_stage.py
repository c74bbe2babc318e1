import asyncio
import time
from pathlib import Path

from buildmatrix.config import config
from buildmatrix.runner.stage import StageRunner
from buildmatrix.schemas import StageStatus
from buildmatrix.schemas.job import StageSpec


def run_stage(context, run: str, env=None, **kwargs):
    stage = StageSpec(label='build-and-test', run=run, **kwargs)
    return asyncio.run(StageRunner(context, stage, env or {}).run())


def process_gone(pid: int) -> bool:
    try:
        stat = Path(f'/proc/{pid}/stat').read_text()
    except FileNotFoundError:
        return True
    # a zombie waiting to be reaped by its new parent
    return stat.rsplit(')', 1)[1].split()[0] == 'Z'


def test_passing_stage(make_context):
    result = run_stage(make_context(), 'echo hello; echo oops >&2')

    assert result.status == StageStatus.passed
    assert result.exit_code == 0
    assert 'hello' in result.output
    assert 'oops' in result.output
    assert result.started_at <= result.finished_at


def test_failing_stage_keeps_exit_code(make_context):
    result = run_stage(make_context(), 'exit 3')

    assert result.status == StageStatus.failed
    assert result.exit_code == 3


def test_stage_stops_at_first_failing_command(make_context):
    result = run_stage(make_context(), 'echo before\nfalse\necho after')

    assert result.status == StageStatus.failed
    assert 'before' in result.output
    assert 'after' not in result.output


def test_job_and_stage_env(make_context):
    stage = StageSpec(
        label='build-and-test',
        run='test "$CC" = clang && test "$CXX" = clang++ && echo "$EXTRA"',
        env={'EXTRA': 'from-stage'},
    )

    result = asyncio.run(
        StageRunner(make_context(), stage, {'CC': 'clang', 'CXX': 'clang++'}).run()
    )

    assert result.status == StageStatus.passed
    assert 'from-stage' in result.output


def test_stage_env_overrides_job_env(make_context):
    stage = StageSpec(label='generate', run='test "$CC" = gcc', env={'CC': 'gcc'})

    result = asyncio.run(StageRunner(make_context(), stage, {'CC': 'clang'}).run())

    assert result.status == StageStatus.passed


def test_ambient_env_is_inherited(make_context, monkeypatch):
    monkeypatch.setenv('AMBIENT_MARKER', 'present')

    result = run_stage(make_context(), 'test "$AMBIENT_MARKER" = present')

    assert result.status == StageStatus.passed


def test_working_directory(make_context):
    context = make_context()
    (context.host_workdir / 'flatdata-generator').mkdir()

    result = run_stage(context, 'pwd', working_directory='flatdata-generator')

    assert result.status == StageStatus.passed
    assert result.output.strip().endswith('flatdata-generator')


def test_missing_working_directory_fails(make_context):
    result = run_stage(make_context(), 'true', working_directory='missing')

    assert result.status == StageStatus.failed
    assert result.exit_code is None


def test_stage_timeout(make_context):
    start = time.monotonic()
    result = run_stage(make_context(), 'sleep 30', timeout=0.5)

    assert result.status == StageStatus.timed_out
    assert time.monotonic() - start < 10


def test_host_timeout_from_config(make_context, monkeypatch):
    monkeypatch.setattr(config, 'stage_timeout', 0.5)

    result = run_stage(make_context(), 'sleep 30')

    assert result.status == StageStatus.timed_out


def test_host_reported_timeout_exit_code(make_context):
    result = run_stage(make_context(), 'exit 124')

    assert result.status == StageStatus.timed_out
    assert result.exit_code == 124


def test_cancel_running_stage(make_context):
    async def scenario():
        cancelled = asyncio.Event()
        context = make_context(cancelled=cancelled)
        stage = StageSpec(label='build-and-test', run='sleep 30')
        task = asyncio.create_task(StageRunner(context, stage, {}).run())
        await asyncio.sleep(0.3)
        cancelled.set()
        return await task

    start = time.monotonic()
    result = asyncio.run(scenario())

    assert result.status == StageStatus.cancelled
    assert time.monotonic() - start < 10


def test_skip(make_context):
    stage = StageSpec(label='build-and-test', run='true')

    result = StageRunner(make_context(), stage, {}).skip()

    assert result.status == StageStatus.skipped
    assert result.exit_code is None
    assert result.started_at is None


def test_background_child_does_not_hold_stage(make_context):
    start = time.monotonic()
    result = run_stage(make_context(), 'sleep 5 &\necho started', timeout=3)

    assert result.status == StageStatus.passed
    assert result.exit_code == 0
    assert 'started' in result.output
    assert time.monotonic() - start < 2


def test_background_child_without_timeout(make_context):
    start = time.monotonic()
    result = run_stage(make_context(), 'sleep 5 &\necho started')

    assert result.status == StageStatus.passed
    assert time.monotonic() - start < 2


def test_background_child_is_killed(make_context):
    context = make_context()

    result = run_stage(context, 'sleep 30 &\necho $! > child.pid')

    assert result.status == StageStatus.passed
    pid = int((context.host_workdir / 'child.pid').read_text())
    deadline = time.monotonic() + 5
    while not process_gone(pid) and time.monotonic() < deadline:
        time.sleep(0.1)
    assert process_gone(pid)
