# drayage/core/cli.py
"""
`drayage` command line: worker, one-shot processing, health, failures, locks and check.

Every command takes an app locator, `package.module:app` or `path/file.py:app`.
Without `:attr` the module must define exactly one Drayage instance. Imports
resolve against the caller's PYTHONPATH; the working directory is added only
when it is itself a project root (has pyproject.toml, setup.cfg or setup.py).
"""

import argparse
import asyncio
import importlib
import json
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from types import ModuleType
from typing import Any, Awaitable, Callable, TypeVar

from drayage.core.app import Drayage
from drayage.core.errors import ConfigurationError, DrayageError, ErrorCode, ValidationReport
from drayage.core.logging import get_logger, set_default_level
from drayage.core.models.tasks import ProcessSummary
from drayage.core.utils.imports import (
    import_file_path,
    is_file_reference,
    setup_sys_path_from_cwd,
)
from drayage.core.utils.url import mask_database_url
from drayage.core.worker.config import WorkerConfig
from drayage.core.worker.worker import run_worker

T = TypeVar('T')

_LOCATOR_FORMATS = (
    'pass the app locator as one of:\n'
    '  drayage worker cms.jobs:app\n'
    '  drayage worker cms/jobs.py:app\n'
    '  drayage worker cms.jobs   (the module holds a single Drayage app)'
)


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """The locator from --module, else the positional argument."""
    locator = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not locator:
        raise ConfigurationError(
            message='module path is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['neither --module nor a positional locator was given'],
            help_text=_LOCATOR_FORMATS,
        )
    return locator


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """'cms.jobs:app' -> ('cms.jobs', 'app'); 'cms.jobs' -> ('cms.jobs', None)."""
    module_part, sep, attr = locator.rpartition(':')
    if not sep:
        return locator, None
    return module_part, attr


def _import_locator_module(
    module_path: str, project_root: str | None
) -> tuple[ModuleType, str, str | None]:
    """Import the locator's module. Returns (module, module_name, sys_path_root)."""
    if is_file_reference(module_path):
        file_path = os.path.realpath(
            module_path if module_path.endswith('.py') else f'{module_path}.py'
        )
        if not os.path.exists(file_path):
            raise FileNotFoundError(f'Module file not found: {file_path}')
        module = import_file_path(file_path)
        return module, module.__name__, os.path.dirname(file_path)

    try:
        module = importlib.import_module(module_path)
    except ModuleNotFoundError as e:
        raise ConfigurationError(
            message=f'module not found: {module_path}',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=[str(e), f'sys.path head: {sys.path[:5]}'],
            help_text='run from the project root or add it to PYTHONPATH',
        )
    return module, module_path, project_root


def _pick_app(module: ModuleType, module_name: str, attr_name: str | None) -> tuple[Drayage, str]:
    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, Drayage):
            raise ConfigurationError(
                message=f"'{attr_name}' in module '{module_name}' is not a Drayage instance",
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[f'got: {type(obj).__name__}'],
            )
        return obj, attr_name

    candidates = [
        (obj, name)
        for name, obj in vars(module).items()
        if not name.startswith('_') and isinstance(obj, Drayage)
    ]
    if len(candidates) != 1:
        names = [name for _, name in candidates]
        raise ConfigurationError(
            message=f'expected exactly one Drayage instance in {module_name}, found {len(names)}',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=[f'candidates: {names}'] if names else [],
            help_text='name the variable explicitly: module.path:variable',
        )
    return candidates[0]


def discover_app(module_locator: str) -> tuple[Drayage, str, str, str | None]:
    """Import the locator's module and return (app, variable, module_name, sys_path_root)."""
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = _parse_locator(module_locator)
    module, module_name, sys_path_root = _import_locator_module(module_path, project_root)
    app, var_name = _pick_app(module, module_name, attr_name)

    logger.info(f"Discovered drayage app '{var_name}' from {module_name}")
    return app, var_name, module_name, sys_path_root


def setup_logging(loglevel: str) -> None:
    set_default_level(getattr(logging, loglevel.upper(), logging.INFO))


def _load_app(args: argparse.Namespace) -> tuple[Drayage, str, str, str | None]:
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    try:
        module_locator = _resolve_module_argument(args)
        return discover_app(module_locator)
    except DrayageError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to discover app: {e}')
        sys.exit(1)


def _run_with_app(app: Drayage, fn: Callable[[Drayage], Awaitable[T]]) -> T:
    """Run one async command against the app, then dispose its engine."""

    async def _main() -> T:
        try:
            await app.store.ensure_schema_initialized()
            return await fn(app)
        finally:
            await app.close()

    return asyncio.run(_main())


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# ----------------- Commands -----------------


def worker_command(args: argparse.Namespace) -> None:
    """Handle worker command."""
    logger = get_logger('cli')
    app, var_name, module_name, sys_path_root = _load_app(args)

    queues: list[str] = args.queues or app.config.queues.all_queue_names()
    if args.concurrency < 1 or args.processes < 1:
        logger.error('--processes and --concurrency must be >= 1')
        sys.exit(1)

    module_locator = _resolve_module_argument(args)
    if is_file_reference(module_locator.split(':')[0]):
        file_path = module_locator.split(':')[0]
        if not file_path.endswith('.py'):
            file_path += '.py'
        app_locator = f'{os.path.realpath(file_path)}:{var_name}'
    else:
        app_locator = f'{module_name}:{var_name}'

    worker_config = WorkerConfig(
        app_locator=app_locator,
        queues=queues,
        processes=args.processes,
        concurrency=args.concurrency,
        claim_batch=args.claim_batch,
        sys_path_roots=[sys_path_root] if sys_path_root else [],
        imports=app.get_handler_modules(),
        loglevel=getattr(logging, args.loglevel.upper(), logging.INFO),
    )
    app.config.log_config(get_logger('cli'))
    logger.info(
        f'Starting worker for {mask_database_url(app.config.store.database_url)} '
        f'queues={queues} processes={args.processes} concurrency={args.concurrency}'
    )
    try:
        if args.processes == 1:
            app.import_handler_modules()
        run_worker(worker_config, app if args.processes == 1 else None)
    except KeyboardInterrupt:
        logger.info('Worker interrupted by user')
    except Exception as e:
        logger.error(f'Worker failed: {e}')
        sys.exit(1)


def process_command(args: argparse.Namespace) -> None:
    """One-shot pass: optional maintenance, then one claim batch per queue."""
    logger = get_logger('cli')
    app, *_ = _load_app(args)
    app.import_handler_modules()
    queues: list[str] = [args.queue] if args.queue else app.config.queues.all_queue_names()

    async def _process(app: Drayage) -> dict[str, Any]:
        report: dict[str, Any] = {}
        if args.cleanup:
            report['expired'] = await app.queue.cleanup_expired_tasks()
            report['promoted_retries'] = await app.components.retry.process_due_retries()
            report['locks_swept'] = await app.locks.sweep_expired()
        if args.retry_failed:
            report['requeued_failed'] = await app.queue.retry_failed_tasks(args.queue)
        total = ProcessSummary()
        for queue_name in queues:
            total.merge(await app.queue.process_queue(queue_name, limit=args.limit))
        report['summary'] = total.to_dict()
        return report

    try:
        report = _run_with_app(app, _process)
    except Exception as e:
        logger.error(f'Processing failed: {e}')
        sys.exit(1)
    _print_json(report)
    if report['summary']['failed']:
        sys.exit(2)


def health_command(args: argparse.Namespace) -> None:
    logger = get_logger('cli')
    app, *_ = _load_app(args)

    async def _health(app: Drayage) -> dict[str, Any]:
        health = await app.queue.get_health(args.queue)
        stats = await app.queue.get_stats(args.queue)
        retries = await app.components.retry.get_retry_statistics(args.queue)
        errors = await app.components.retry.get_error_statistics(
            args.queue, since=datetime.now(timezone.utc) - timedelta(hours=args.error_hours)
        )
        return {
            'health': health.to_dict(),
            'stats': stats,
            'retries': retries,
            'errors': errors,
            'batch': app.components.batch.get_stats(),
        }

    try:
        report = _run_with_app(app, _health)
    except Exception as e:
        logger.error(f'Health check failed: {e}')
        sys.exit(1)
    _print_json(report)
    match report['health']['status']:
        case 'critical':
            sys.exit(2)
        case 'warning':
            sys.exit(1)
        case _:
            sys.exit(0)


def dead_letters_command(args: argparse.Namespace) -> None:
    logger = get_logger('cli')
    app, *_ = _load_app(args)

    async def _dead_letters(app: Drayage) -> list[dict[str, Any]]:
        tasks = await app.components.retry.list_dead_letters(args.queue, limit=args.limit)
        return [task.to_dict() for task in tasks]

    try:
        tasks = _run_with_app(app, _dead_letters)
    except Exception as e:
        logger.error(f'Dead-letter listing failed: {e}')
        sys.exit(1)
    _print_json(tasks)
    sys.exit(2 if tasks else 0)


def locks_command(args: argparse.Namespace) -> None:
    logger = get_logger('cli')
    app, *_ = _load_app(args)

    async def _locks(app: Drayage) -> Any:
        match args.action:
            case 'status':
                return [
                    {
                        'lock_key': info.lock_key,
                        'holder': info.lock_id,
                        'expire_time': info.expire_time,
                        'expired': info.expired,
                    }
                    for info in await app.locks.list_locks()
                    if args.key is None or info.lock_key == args.key
                ]
            case 'clean':
                return {'swept': await app.locks.sweep_expired()}
            case 'release':
                if not args.key:
                    raise ConfigurationError(
                        message='locks release needs --key',
                        code=ErrorCode.CLI_INVALID_ARGS,
                    )
                if not args.force:
                    raise ConfigurationError(
                        message='refusing to release a lock held by another process',
                        code=ErrorCode.CLI_INVALID_ARGS,
                        help_text='pass --force to release it anyway',
                    )
                return {'released': await app.locks.force_release(args.key)}

    try:
        _print_json(_run_with_app(app, _locks))
    except DrayageError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Lock command failed: {e}')
        sys.exit(1)


def check_command(args: argparse.Namespace) -> None:
    """Handle check command: validate app configuration without starting services."""
    app, *_ = _load_app(args)

    errors = app.check(live=args.live)
    if errors:
        report = ValidationReport('check')
        for error in errors:
            report.add(error)
        print(report.format_rust_style(), file=sys.stderr)
        sys.exit(1)

    app.import_handler_modules()
    print(f'ok: all validations passed\n  {len(app.list_handlers())} handler(s) registered')
    sys.exit(0)


def _add_common(parser: argparse.ArgumentParser, default_level: str = 'INFO') -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='Module path (e.g., myproject.tasks:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='Module path (e.g., myproject.tasks:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=default_level,
        type=str.upper,
        help=f'Logging level (default: {default_level})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='drayage',
        description='Drayage task queue - workers and operations',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  drayage worker myproject.tasks:app --processes 2 --concurrency 4
  drayage process myproject.tasks:app --queue sync --limit 20 --cleanup
  drayage health myproject.tasks:app --queue default
  drayage dead-letters myproject.tasks:app --queue sync
  drayage locks myproject.tasks:app status
  drayage check myproject.tasks:app --live
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    worker_parser = subparsers.add_parser('worker', help='Start a drayage worker')
    _add_common(worker_parser)
    worker_parser.add_argument(
        '--processes', type=int, default=1, help='Number of worker processes (default: 1)'
    )
    worker_parser.add_argument(
        '--concurrency', type=int, default=1, help='Loops per process (default: 1)'
    )
    worker_parser.add_argument(
        '--claim-batch', type=int, default=1, help='Tasks per queue per pass (default: 1)'
    )
    worker_parser.add_argument(
        '--queues', nargs='+', help='Queues to serve (default: every routed queue)'
    )

    process_parser = subparsers.add_parser('process', help='Process one batch and exit')
    _add_common(process_parser)
    process_parser.add_argument('--queue', help='Queue to process (default: every routed queue)')
    process_parser.add_argument('--limit', type=int, default=None, help='Tasks per queue')
    process_parser.add_argument(
        '--cleanup',
        action='store_true',
        default=False,
        help='Expire overdue tasks, promote due retries and sweep locks first',
    )
    process_parser.add_argument(
        '--retry-failed',
        action='store_true',
        default=False,
        help='Re-queue FAILED tasks that have retry budget left',
    )

    health_parser = subparsers.add_parser('health', help='Queue health and statistics')
    _add_common(health_parser, default_level='WARNING')
    health_parser.add_argument('--queue', help='Queue to inspect (default: all)')
    health_parser.add_argument(
        '--error-hours',
        type=int,
        default=24,
        help='Window of the error breakdown, in hours (default: 24)',
    )

    dead_parser = subparsers.add_parser(
        'dead-letters', help='List failed tasks with no retry budget left'
    )
    _add_common(dead_parser, default_level='WARNING')
    dead_parser.add_argument('--queue', help='Queue to inspect (default: all)')
    dead_parser.add_argument('--limit', type=int, default=100, help='Maximum tasks listed')

    locks_parser = subparsers.add_parser('locks', help='Inspect or clean distributed locks')
    _add_common(locks_parser, default_level='WARNING')
    locks_parser.add_argument('action', choices=['status', 'clean', 'release'])
    locks_parser.add_argument('--key', help='Lock key')
    locks_parser.add_argument(
        '--force', action='store_true', default=False, help='Allow release of a foreign lock'
    )

    check_parser = subparsers.add_parser(
        'check', help='Validate app configuration without starting services'
    )
    _add_common(check_parser, default_level='WARNING')
    check_parser.add_argument(
        '--live',
        action='store_true',
        default=False,
        help='Also check database connectivity (SELECT 1)',
    )
    return parser


def main() -> None:
    """Main CLI entry point."""
    try:
        parser = build_parser()
        args = parser.parse_args()

        match args.command:
            case 'worker':
                worker_command(args)
            case 'process':
                process_command(args)
            case 'health':
                health_command(args)
            case 'dead-letters':
                dead_letters_command(args)
            case 'locks':
                locks_command(args)
            case 'check':
                check_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
