"""Command line entry point: ``python -m buildmatrix run [PIPELINE]``."""

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from buildmatrix.config import config
from buildmatrix.exceptions import ConfigurationError
from buildmatrix.report import format_report
from buildmatrix.runner.matrix import expand_pipeline
from buildmatrix.runner.pipeline import PipelineRunner, load_pipeline
from buildmatrix.schemas import JobStatus, PipelineResult

logger = logging.getLogger(__name__)

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CANCELLED = 130


def positive_int(value: str) -> int:
    res = int(value)
    if res < 1:
        raise argparse.ArgumentTypeError('must be a positive integer')
    return res


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='buildmatrix', description='Multi-toolchain build-and-test runner'
    )
    commands = parser.add_subparsers(dest='command', required=True)

    run = commands.add_parser('run', help='Run every job of a pipeline')
    run.add_argument(
        'pipeline',
        nargs='?',
        default=config.pipeline_file,
        help=f'Pipeline document (default: {config.pipeline_file})',
    )
    run.add_argument(
        '--source',
        type=Path,
        help='Source tree copied into every job (default: the pipeline directory)',
    )
    run.add_argument(
        '-j', '--jobs', type=positive_int, help='Maximum number of jobs run at once'
    )
    run.add_argument('--json', action='store_true', help='Print the result as JSON')
    run.add_argument('--report', type=Path, help='Also write the JSON result here')
    run.add_argument(
        '--keep-workdirs', action='store_true', help='Do not remove job workdirs'
    )

    list_ = commands.add_parser('list', help='Print the expanded job names')
    list_.add_argument('pipeline', nargs='?', default=config.pipeline_file)
    return parser


def exit_code(result: PipelineResult) -> int:
    if result.status == JobStatus.passed:
        return EXIT_PASSED
    if result.status == JobStatus.cancelled:
        return EXIT_CANCELLED
    return EXIT_FAILED


async def run_pipeline(runner: PipelineRunner) -> PipelineResult:
    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, runner.cancel)
    try:
        return await runner.run()
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


def list_jobs(pipeline_file: Path) -> int:
    for job in expand_pipeline(load_pipeline(pipeline_file)):
        line = job.name
        if job.needs:
            line += f'  (needs {", ".join(job.needs)})'
        print(line)
    return EXIT_PASSED


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == 'list':
            return list_jobs(Path(args.pipeline))
        runner = PipelineRunner.from_file(
            Path(args.pipeline), args.source, max_parallel_jobs=args.jobs
        )
    except ConfigurationError as e:
        logger.error(f'Invalid pipeline: {e}')
        return EXIT_CONFIGURATION_ERROR

    if args.keep_workdirs:
        config.keep_workdirs = True

    result = asyncio.run(run_pipeline(runner))

    payload = result.model_dump_json(indent=2)
    if args.report:
        args.report.write_text(payload)
    print(payload if args.json else format_report(result))
    return exit_code(result)
