"""Unit tests for the task state machine edges."""

from __future__ import annotations

import pytest

from drayage.core.types.status import TaskStatus, is_valid_transition


@pytest.mark.unit
class TestTransitions:
    @pytest.mark.parametrize(
        ('old', 'new'),
        [
            (TaskStatus.PENDING, TaskStatus.RUNNING),
            (TaskStatus.RUNNING, TaskStatus.RETRYING),
            (TaskStatus.RETRYING, TaskStatus.PENDING),
            (TaskStatus.RUNNING, TaskStatus.COMPLETED),
        ],
    )
    def test_normal_flow(self, old: TaskStatus, new: TaskStatus) -> None:
        assert is_valid_transition(old, new)

    def test_terminal_states_have_no_normal_exit(self) -> None:
        for old in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
            assert not any(is_valid_transition(old, new) for new in TaskStatus)

    def test_released_claim_is_administrative(self) -> None:
        assert not is_valid_transition(TaskStatus.RUNNING, TaskStatus.PENDING)
        assert is_valid_transition(TaskStatus.RUNNING, TaskStatus.PENDING, administrative=True)

    def test_manual_retry_is_administrative(self) -> None:
        assert is_valid_transition(TaskStatus.FAILED, TaskStatus.PENDING, administrative=True)
        assert not is_valid_transition(
            TaskStatus.COMPLETED, TaskStatus.PENDING, administrative=True
        )
