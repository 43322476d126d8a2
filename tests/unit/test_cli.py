"""Unit tests for CLI argument handling and the one-shot commands."""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from drayage.core import cli
from drayage.core.errors import ConfigurationError, ErrorCode
from drayage.core.models.tasks import ProcessSummary, Task, TaskProcessError
from drayage.core.queue.routing import evaluate_health
from drayage.core.types.status import TaskStatus, TaskType
from drayage.core.utils.imports import is_file_reference


def _fake_app() -> MagicMock:
    app = MagicMock()
    app.store.ensure_schema_initialized = AsyncMock()
    app.close = AsyncMock()
    app.queue = AsyncMock()
    app.locks = AsyncMock()
    app.components.retry = AsyncMock()
    app.config.queues.all_queue_names.return_value = ['sync', 'default']
    return app


@pytest.fixture
def fake_app(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    app = _fake_app()
    monkeypatch.setattr(cli, '_load_app', lambda args: (app, 'app', 'cms.tasks', None))
    return app


def _parse(*argv: str) -> argparse.Namespace:
    return cli.build_parser().parse_args(list(argv))


@pytest.mark.unit
class TestLocators:
    @pytest.mark.parametrize(
        ('locator', 'expected'),
        [
            ('cms.tasks:app', ('cms.tasks', 'app')),
            ('cms.tasks', ('cms.tasks', None)),
            ('/srv/cms/tasks.py:app', ('/srv/cms/tasks.py', 'app')),
        ],
    )
    def test_parse_locator(self, locator: str, expected: tuple[str, str | None]) -> None:
        assert cli._parse_locator(locator) == expected

    @pytest.mark.parametrize(
        ('path', 'is_file'),
        [('cms/tasks.py', True), ('tasks.py', True), ('cms/tasks', True), ('cms.tasks', False)],
    )
    def test_file_reference_detection(self, path: str, is_file: bool) -> None:
        assert is_file_reference(path) is is_file

    def test_module_flag_wins_over_positional(self) -> None:
        args = argparse.Namespace(module='cms.tasks:app', module_pos='other:app')
        assert cli._resolve_module_argument(args) == 'cms.tasks:app'

    def test_missing_module(self) -> None:
        with pytest.raises(ConfigurationError) as excinfo:
            cli._resolve_module_argument(argparse.Namespace(module=None, module_pos=None))
        assert excinfo.value.code == ErrorCode.CLI_INVALID_ARGS


@pytest.mark.unit
class TestParser:
    def test_worker_options(self) -> None:
        args = _parse(
            'worker', 'cms.tasks:app', '--processes', '2', '--concurrency', '4',
            '--queues', 'sync', 'default', '--loglevel', 'debug',
        )
        assert args.command == 'worker'
        assert args.module_pos == 'cms.tasks:app'
        assert (args.processes, args.concurrency, args.claim_batch) == (2, 4, 1)
        assert args.queues == ['sync', 'default']
        assert args.loglevel == 'DEBUG'

    def test_process_flags(self) -> None:
        args = _parse('process', '-m', 'cms.tasks:app', '--queue', 'sync', '--cleanup')
        assert args.module == 'cms.tasks:app'
        assert args.queue == 'sync'
        assert args.cleanup is True
        assert args.retry_failed is False
        assert args.limit is None

    def test_operational_commands_default_to_warning(self) -> None:
        assert _parse('health', 'cms.tasks:app').loglevel == 'WARNING'
        assert _parse('check', 'cms.tasks:app').loglevel == 'WARNING'

    def test_locks_action_after_module(self) -> None:
        args = _parse('locks', 'cms.tasks:app', 'release', '--key', 'task:abc', '--force')
        assert (args.module_pos, args.action, args.key, args.force) == (
            'cms.tasks:app',
            'release',
            'task:abc',
            True,
        )

    def test_locks_action_with_module_flag(self) -> None:
        args = _parse('locks', '-m', 'cms.tasks:app', 'status')
        assert args.module_pos is None
        assert args.action == 'status'

    def test_unknown_lock_action_rejected(self) -> None:
        with pytest.raises(SystemExit):
            _parse('locks', 'cms.tasks:app', 'steal')


@pytest.mark.unit
class TestProcessCommand:
    def test_summary_merged_across_queues(
        self, fake_app: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        fake_app.queue.process_queue.side_effect = [
            ProcessSummary(processed=2),
            ProcessSummary(processed=1, skipped=1),
        ]

        cli.process_command(_parse('process', 'cms.tasks:app', '--limit', '5'))

        report = json.loads(capsys.readouterr().out)
        assert report['summary']['processed'] == 3
        assert report['summary']['skipped'] == 1
        assert [c.args[0] for c in fake_app.queue.process_queue.await_args_list] == [
            'sync',
            'default',
        ]
        fake_app.close.assert_awaited_once()

    def test_cleanup_and_retry_failed(
        self, fake_app: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        fake_app.queue.process_queue.return_value = ProcessSummary()
        fake_app.queue.cleanup_expired_tasks.return_value = 2
        fake_app.components.retry.process_due_retries.return_value = 1
        fake_app.locks.sweep_expired.return_value = 4
        fake_app.queue.retry_failed_tasks.return_value = 3

        cli.process_command(
            _parse('process', 'cms.tasks:app', '--queue', 'sync', '--cleanup', '--retry-failed')
        )

        report = json.loads(capsys.readouterr().out)
        assert report['expired'] == 2
        assert report['promoted_retries'] == 1
        assert report['locks_swept'] == 4
        assert report['requeued_failed'] == 3
        fake_app.queue.retry_failed_tasks.assert_awaited_once_with('sync')

    def test_failures_exit_with_two(self, fake_app: MagicMock) -> None:
        failed = ProcessSummary(failed=1, errors=[TaskProcessError('t1', 'boom')])
        fake_app.queue.process_queue.return_value = failed

        with pytest.raises(SystemExit) as excinfo:
            cli.process_command(_parse('process', 'cms.tasks:app', '--queue', 'sync'))
        assert excinfo.value.code == 2


def _health(**counts: int) -> Any:
    by_status = {TaskStatus[name.upper()]: n for name, n in counts.items()}
    return evaluate_health('sync', by_status, 0, 0)


@pytest.mark.unit
class TestHealthCommand:
    @pytest.mark.parametrize(
        ('counts', 'code'),
        [
            ({'completed': 10}, 0),
            ({'completed': 8, 'failed': 2}, 1),
            ({'completed': 6, 'failed': 4}, 2),
        ],
    )
    def test_exit_code_follows_status(
        self, fake_app: MagicMock, counts: dict[str, int], code: int
    ) -> None:
        fake_app.queue.get_health.return_value = _health(**counts)
        fake_app.queue.get_stats.return_value = {}
        fake_app.components.retry.get_retry_statistics.return_value = {}
        fake_app.components.retry.get_error_statistics.return_value = {}
        fake_app.components.batch.get_stats.return_value = {}

        with pytest.raises(SystemExit) as excinfo:
            cli.health_command(_parse('health', 'cms.tasks:app', '--queue', 'sync'))
        assert excinfo.value.code == code

    def test_error_window_passed_through(self, fake_app: MagicMock) -> None:
        fake_app.queue.get_health.return_value = _health(completed=1)
        fake_app.queue.get_stats.return_value = {}
        fake_app.components.retry.get_retry_statistics.return_value = {}
        fake_app.components.retry.get_error_statistics.return_value = {}
        fake_app.components.batch.get_stats.return_value = {}

        with pytest.raises(SystemExit):
            cli.health_command(
                _parse('health', 'cms.tasks:app', '--queue', 'sync', '--error-hours', '6')
            )

        call = fake_app.components.retry.get_error_statistics.await_args
        assert call.args == ('sync',)
        window = datetime.now(timezone.utc) - call.kwargs['since']
        assert timedelta(hours=6) <= window < timedelta(hours=6, minutes=1)


@pytest.mark.unit
class TestDeadLettersCommand:
    def test_lists_exhausted_tasks(
        self, fake_app: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        dead = Task(
            id='task-9',
            task_type=TaskType.NOTIFICATION,
            payload={},
            priority=5,
            queue_name='default',
            status=TaskStatus.FAILED,
            retry_count=3,
            max_retries=3,
        )
        fake_app.components.retry.list_dead_letters.return_value = [dead]

        with pytest.raises(SystemExit) as excinfo:
            cli.dead_letters_command(
                _parse('dead-letters', 'cms.tasks:app', '--queue', 'default', '--limit', '5')
            )

        assert excinfo.value.code == 2
        fake_app.components.retry.list_dead_letters.assert_awaited_once_with('default', limit=5)
        [listed] = json.loads(capsys.readouterr().out)
        assert listed['id'] == 'task-9'
        assert listed['status'] == 'failed'

    def test_empty_list_exits_zero(self, fake_app: MagicMock) -> None:
        fake_app.components.retry.list_dead_letters.return_value = []

        with pytest.raises(SystemExit) as excinfo:
            cli.dead_letters_command(_parse('dead-letters', 'cms.tasks:app'))

        assert excinfo.value.code == 0


@pytest.mark.unit
class TestLocksCommand:
    def test_release_requires_force(self, fake_app: MagicMock) -> None:
        with pytest.raises(SystemExit) as excinfo:
            cli.locks_command(_parse('locks', 'cms.tasks:app', 'release', '--key', 'task:a'))
        assert excinfo.value.code == 1
        fake_app.locks.force_release.assert_not_awaited()

    def test_forced_release(
        self, fake_app: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        fake_app.locks.force_release.return_value = True

        cli.locks_command(
            _parse('locks', 'cms.tasks:app', 'release', '--key', 'task:a', '--force')
        )

        assert json.loads(capsys.readouterr().out) == {'released': True}
        fake_app.locks.force_release.assert_awaited_once_with('task:a')
