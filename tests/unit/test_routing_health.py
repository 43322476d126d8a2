"""Unit tests for queue routing and queue health evaluation."""

from __future__ import annotations

import pytest

from drayage.core.models.queues import QueueConfig
from drayage.core.models.tasks import HealthStatus
from drayage.core.queue.routing import determine_queue_name, evaluate_health
from drayage.core.types.status import TaskStatus, TaskType


@pytest.mark.unit
class TestDetermineQueueName:
    def test_explicit_queue_wins(self) -> None:
        assert determine_queue_name(10, TaskType.SYNC, 'editorial') == 'editorial'

    @pytest.mark.parametrize('priority', [8, 9, 10])
    def test_high_priority_band(self, priority: int) -> None:
        assert determine_queue_name(priority, TaskType.CLEANUP) == 'high_priority'

    @pytest.mark.parametrize('priority', [1, 2, 3])
    def test_low_priority_band(self, priority: int) -> None:
        assert determine_queue_name(priority, TaskType.SYNC) == 'low_priority'

    @pytest.mark.parametrize(
        ('task_type', 'queue'),
        [
            (TaskType.SYNC, 'sync'),
            (TaskType.MEDIA_PROCESS, 'media_process'),
            (TaskType.BATCH_PROCESS, 'batch_process'),
            (TaskType.NOTIFICATION, 'default'),
            (TaskType.CACHE_WARMUP, 'default'),
        ],
    )
    def test_type_routes_for_middle_band(self, task_type: TaskType, queue: str) -> None:
        assert determine_queue_name(5, task_type) == queue

    def test_custom_config(self) -> None:
        config = QueueConfig(
            default_queue='main',
            high_priority_threshold=9,
            type_routes={TaskType.NOTIFICATION: 'mail'},
        )
        assert determine_queue_name(8, TaskType.SYNC, config=config) == 'main'
        assert determine_queue_name(5, TaskType.NOTIFICATION, config=config) == 'mail'

    def test_empty_explicit_name_falls_through(self) -> None:
        assert determine_queue_name(5, TaskType.SYNC, '') == 'sync'


@pytest.mark.unit
class TestQueueConfig:
    def test_all_queue_names_stable_order(self) -> None:
        assert QueueConfig().all_queue_names() == [
            'high_priority',
            'default',
            'sync',
            'media_process',
            'batch_process',
            'low_priority',
        ]

    def test_thresholds_must_not_overlap(self) -> None:
        with pytest.raises(Exception):
            QueueConfig(low_priority_threshold=8, high_priority_threshold=8)

    def test_blank_queue_name_rejected(self) -> None:
        with pytest.raises(Exception):
            QueueConfig(default_queue='  ')


def _counts(**by_name: int) -> dict[TaskStatus, int]:
    return {TaskStatus[name.upper()]: n for name, n in by_name.items()}


@pytest.mark.unit
class TestEvaluateHealth:
    def test_empty_queue_is_healthy(self) -> None:
        health = evaluate_health('sync', {}, 0, 0)
        assert health.status == HealthStatus.HEALTHY
        assert health.failure_ratio == 0.0

    def test_ten_percent_is_still_healthy(self) -> None:
        health = evaluate_health(None, _counts(completed=9, failed=1), 0, 0)
        assert health.status == HealthStatus.HEALTHY

    def test_above_ten_percent_warns(self) -> None:
        health = evaluate_health(None, _counts(completed=8, failed=2), 0, 0)
        assert health.status == HealthStatus.WARNING

    def test_thirty_percent_is_warning(self) -> None:
        health = evaluate_health(None, _counts(completed=7, failed=3), 0, 0)
        assert health.status == HealthStatus.WARNING

    def test_above_thirty_percent_is_critical(self) -> None:
        health = evaluate_health(None, _counts(completed=6, failed=4), 0, 0)
        assert health.status == HealthStatus.CRITICAL

    def test_long_running_task_warns(self) -> None:
        health = evaluate_health('sync', _counts(running=1), 1, 0)
        assert health.status == HealthStatus.WARNING

    def test_stuck_task_is_critical(self) -> None:
        health = evaluate_health('sync', _counts(running=2), 2, 1)
        assert health.status == HealthStatus.CRITICAL

    def test_counts_reported(self) -> None:
        health = evaluate_health(
            'sync', _counts(pending=4, running=2, failed=1, completed=3), 0, 0
        )
        assert health.to_dict() == {
            'queue_name': 'sync',
            'status': 'healthy',
            'pending': 4,
            'running': 2,
            'failed': 1,
            'long_running': 0,
            'total': 10,
            'failure_ratio': 0.1,
        }
