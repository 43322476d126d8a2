# drayage/core/consistency.py
"""
Data Consistency Manager.

Wraps a task's state change in a lock plus a transaction, compares
checksummed snapshots taken before and after, and rolls the change back
when it breaks an invariant:

- status changes must be edges of the task state machine
- progress never regresses
- related records keep unique natural keys and their required fields

ensure_once() gives side effects exactly-once semantics per
(task_id, operation_key) through persisted idempotency markers.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from drayage.core.defaults import DEFAULT_IDEMPOTENCY_RETENTION_DAYS, DEFAULT_LOCK_TTL_SECONDS
from drayage.core.errors import (
    ConsistencyViolation,
    ErrorCode,
    IllegalTransitionError,
    LockUnavailableError,
)
from drayage.core.locks import LockService
from drayage.core.logging import get_logger
from drayage.core.models.task_pg import (
    IdempotencyMarkerModel,
    TaskExecutionLogModel,
    TaskModel,
)
from drayage.core.transactions import TransactionManager
from drayage.core.types.status import TASK_ACTIVE_STATES, TaskStatus, is_valid_transition

T = TypeVar('T')

MAX_OPERATION_KEY_LENGTH = 255

# Task columns covered by snapshots and their checksum
SNAPSHOT_COLUMNS: tuple[str, ...] = (
    'id',
    'status',
    'priority',
    'progress',
    'retry_count',
    'max_retries',
    'created_at',
    'started_at',
    'completed_at',
    'error_message',
    'result',
)


def canonical_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators, non-JSON values via str()."""
    return json.dumps(value, sort_keys=True, separators=(',', ':'), default=str)


def compute_checksum(value: Any) -> str:
    return hashlib.sha256(canonical_json(value).encode('utf-8')).hexdigest()


class RelatedRecordsProvider:
    """Supplies records that belong to a task, for snapshots and validation.

    Subclasses override fetch(). Records outside the database transaction
    (search indexes, caches, files) set `transactional = False` and
    implement restore(), which is called best-effort after a rollback.
    """

    name: str = 'records'
    natural_key: tuple[str, ...] = ()
    required_fields: tuple[str, ...] = ()
    transactional: bool = True

    async def fetch(self, session: AsyncSession, task_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def restore(self, task_id: str, records: list[dict[str, Any]]) -> None:
        return None


class ExecutionLogProvider(RelatedRecordsProvider):
    """Execution log rows of the task."""

    name = 'execution_log'
    natural_key = ('id',)
    required_fields = ('task_id', 'status', 'started_at')

    async def fetch(self, session: AsyncSession, task_id: str) -> list[dict[str, Any]]:
        table = TaskExecutionLogModel.__table__
        result = await session.execute(
            select(table).where(table.c.task_id == task_id).order_by(table.c.id)
        )
        return [_jsonable_row(row) for row in result.mappings().all()]


def _jsonable_row(row: Any) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in dict(row).items():
        if isinstance(value, Enum):
            value = value.name
        out[key] = value
    return out


@dataclass(frozen=True)
class StateSnapshot:
    task_id: str
    task: Optional[dict[str, Any]]
    related: dict[str, list[dict[str, Any]]]
    captured_at: datetime
    checksum: str

    @property
    def status(self) -> Optional[TaskStatus]:
        if self.task is None:
            return None
        return TaskStatus[self.task['status']]


@dataclass
class ConsistencyIssue:
    code: ErrorCode
    message: str


@dataclass
class ConsistencyReport:
    errors: list[ConsistencyIssue] = field(default_factory=lambda: [])
    warnings: list[str] = field(default_factory=lambda: [])

    @property
    def ok(self) -> bool:
        return not self.errors

    def error(self, code: ErrorCode, message: str) -> None:
        self.errors.append(ConsistencyIssue(code, message))

    def to_violation(self, task_id: str) -> ConsistencyViolation:
        messages = [issue.message for issue in self.errors]
        first = self.errors[0]
        if first.code == ErrorCode.ILLEGAL_TRANSITION and len(self.errors) == 1:
            return IllegalTransitionError(
                message=first.message,
                code=ErrorCode.ILLEGAL_TRANSITION,
                task_id=task_id,
                violations=messages,
            )
        return ConsistencyViolation(
            message=f'task {task_id}: {len(messages)} consistency violation(s)',
            code=first.code,
            notes=messages,
            task_id=task_id,
            violations=messages,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'ok': self.ok,
            'errors': [{'code': i.code.value, 'message': i.message} for i in self.errors],
            'warnings': list(self.warnings),
        }


class DataConsistencyManager:
    def __init__(
        self,
        transactions: TransactionManager,
        locks: LockService,
        *,
        providers: Iterable[RelatedRecordsProvider] = (),
        lock_ttl: float = DEFAULT_LOCK_TTL_SECONDS,
    ) -> None:
        self.transactions = transactions
        self.locks = locks
        self.providers: list[RelatedRecordsProvider] = list(providers)
        self.lock_ttl = lock_ttl
        self.logger = get_logger('consistency')

    def register_provider(self, provider: RelatedRecordsProvider) -> None:
        if any(p.name == provider.name for p in self.providers):
            raise ValueError(f"related records provider '{provider.name}' already registered")
        self.providers.append(provider)

    # ------------- Snapshots -------------

    async def capture_state(self, session: AsyncSession, task_id: str) -> StateSnapshot:
        table = TaskModel.__table__
        columns = [table.c[name] for name in SNAPSHOT_COLUMNS]
        result = await session.execute(select(*columns).where(table.c.id == task_id))
        row = result.mappings().first()
        task = _jsonable_row(row) if row is not None else None

        related: dict[str, list[dict[str, Any]]] = {}
        for provider in self.providers:
            related[provider.name] = await provider.fetch(session, task_id)

        return StateSnapshot(
            task_id=task_id,
            task=task,
            related=related,
            captured_at=datetime.now(timezone.utc),
            checksum=compute_checksum({'task': task, 'related': related}),
        )

    def validate_snapshots(self, before: StateSnapshot, after: StateSnapshot) -> ConsistencyReport:
        report = ConsistencyReport()
        if before.checksum == after.checksum:
            return report

        if before.task is not None and after.task is None:
            report.error(
                ErrorCode.CONSISTENCY_CHECK_FAILED,
                f'task {before.task_id} disappeared during the operation',
            )
        if before.task is not None and after.task is not None:
            old, new = before.status, after.status
            if old is not None and new is not None and old != new:
                if not is_valid_transition(old, new):
                    report.error(
                        ErrorCode.ILLEGAL_TRANSITION,
                        f'illegal status transition {old.name} -> {new.name}',
                    )
            if after.task['progress'] < before.task['progress']:
                report.error(
                    ErrorCode.PROGRESS_REGRESSION,
                    f"progress regressed from {before.task['progress']} to {after.task['progress']}",
                )
            if after.task['created_at'] != before.task['created_at']:
                report.warnings.append('created_at changed during the operation')

        self._check_related(after, report)
        return report

    def validate_state(self, snapshot: StateSnapshot) -> ConsistencyReport:
        """Invariants of a single snapshot, independent of any change."""
        report = ConsistencyReport()
        task = snapshot.task
        if task is None:
            report.error(
                ErrorCode.CONSISTENCY_CHECK_FAILED, f'task {snapshot.task_id} does not exist'
            )
            return report

        status = TaskStatus[task['status']]
        if status in TASK_ACTIVE_STATES and task['retry_count'] > task['max_retries']:
            report.error(
                ErrorCode.CONSISTENCY_CHECK_FAILED,
                f"retry_count {task['retry_count']} exceeds max_retries {task['max_retries']}",
            )
        if status == TaskStatus.RUNNING and task['started_at'] is None:
            report.error(ErrorCode.CONSISTENCY_CHECK_FAILED, 'RUNNING task has no started_at')
        if status.is_terminal and task['completed_at'] is None:
            report.error(
                ErrorCode.CONSISTENCY_CHECK_FAILED, f'{status.name} task has no completed_at'
            )
        if not status.is_terminal and task['completed_at'] is not None:
            report.error(
                ErrorCode.CONSISTENCY_CHECK_FAILED, f'{status.name} task has completed_at set'
            )
        if not 1 <= task['priority'] <= 10:
            report.error(
                ErrorCode.CONSISTENCY_CHECK_FAILED, f"priority {task['priority']} out of range"
            )
        self._check_related(snapshot, report)
        return report

    def _check_related(self, snapshot: StateSnapshot, report: ConsistencyReport) -> None:
        for provider in self.providers:
            records = snapshot.related.get(provider.name, [])
            if provider.natural_key:
                seen: set[tuple[Any, ...]] = set()
                for record in records:
                    key = tuple(record.get(k) for k in provider.natural_key)
                    if key in seen:
                        report.error(
                            ErrorCode.DUPLICATE_NATURAL_KEY,
                            f'{provider.name}: duplicate natural key {key}',
                        )
                    seen.add(key)
            for record in records:
                missing = [f for f in provider.required_fields if record.get(f) in (None, '')]
                if missing:
                    report.error(
                        ErrorCode.MISSING_REQUIRED_FIELD,
                        f'{provider.name}: record missing required field(s) {", ".join(missing)}',
                    )

    # ------------- Guarded execution -------------

    async def execute_with_consistency(
        self,
        task_id: str,
        fn: Callable[[AsyncSession], Awaitable[T]],
        lock_ttl: Optional[float] = None,
    ) -> T:
        """Run `fn(session)` under the task's consistency lock, validated by snapshots.

        Raises LockUnavailableError when another holder is mid-operation on
        the task, and ConsistencyViolation (after rolling back) when the
        change breaks an invariant.
        """
        key = f'consistency:{task_id}'
        async with self.locks.holding(key, lock_ttl or self.lock_ttl) as acquired:
            if not acquired:
                raise LockUnavailableError(
                    message=f"consistency lock '{key}' is held elsewhere",
                    code=ErrorCode.LOCK_UNAVAILABLE,
                    lock_key=key,
                )

            captured: list[StateSnapshot] = []

            async def _unit(session: AsyncSession) -> T:
                before = await self.capture_state(session, task_id)
                captured.append(before)
                result = await fn(session)
                await session.flush()
                after = await self.capture_state(session, task_id)
                report = self.validate_snapshots(before, after)
                for warning in report.warnings:
                    self.logger.warning(f'Task {task_id}: {warning}')
                if not report.ok:
                    raise report.to_violation(task_id)
                return result

            try:
                return await self.transactions.run(_unit)
            except Exception as exc:
                if isinstance(exc, ConsistencyViolation):
                    self.logger.error(
                        f'Consistency violation on task {task_id}, rolled back: '
                        f'{"; ".join(exc.violations) or exc.message}'
                    )
                if captured:
                    await self._restore(captured[0])
                raise

    async def _restore(self, snapshot: StateSnapshot) -> None:
        for provider in self.providers:
            if provider.transactional:
                continue
            try:
                await provider.restore(snapshot.task_id, snapshot.related.get(provider.name, []))
            except Exception as exc:
                self.logger.error(
                    f"Restore of '{provider.name}' for task {snapshot.task_id} failed: {exc}"
                )

    async def check_integrity(self, task_id: str) -> ConsistencyReport:
        async def _read(session: AsyncSession) -> StateSnapshot:
            return await self.capture_state(session, task_id)

        snapshot = await self.transactions.run(_read)
        return self.validate_state(snapshot)

    # ------------- Idempotency -------------

    async def ensure_once(
        self,
        task_id: str,
        operation_key: str,
        fn: Callable[[AsyncSession], Awaitable[Any]],
        *,
        transactional: bool = False,
    ) -> Any:
        """Run `fn(session)` at most once per (task_id, operation_key).

        By default the marker commits in its own transaction as soon as fn
        returns, so a later failure of the surrounding attempt cannot undo
        it and a retry does not repeat an external call.

        With `transactional=True` fn and the marker join the enclosing
        transaction (a savepoint inside a handler attempt): use this for
        effects that are database writes only, so that they and the marker
        commit or roll back together.

        Later calls, and a caller that loses a race, get the stored (JSON)
        result back without running fn.
        """
        if not operation_key or len(operation_key) > MAX_OPERATION_KEY_LENGTH:
            raise ValueError(
                f'operation_key must be 1..{MAX_OPERATION_KEY_LENGTH} characters'
            )
        table = IdempotencyMarkerModel.__table__
        run = self.transactions.run if transactional else self.transactions.run_independent

        async def _unit(session: AsyncSession) -> tuple[bool, Any]:
            found = await self._find_marker(session, task_id, operation_key)
            if found is not None:
                return False, found[0]
            result = await fn(session)
            stmt = (
                pg_insert(table)
                .values(task_id=task_id, operation_key=operation_key, result=result)
                .on_conflict_do_nothing(index_elements=['task_id', 'operation_key'])
                .returning(table.c.task_id)
            )
            inserted = await session.execute(stmt)
            if inserted.first() is None:
                raise _MarkerRace()
            return True, result

        try:
            ran, result = await run(_unit)
        except _MarkerRace:
            self.logger.info(
                f"Operation '{operation_key}' of task {task_id} completed concurrently; "
                'using the stored result'
            )

            async def _winner(session: AsyncSession) -> Optional[tuple[Any]]:
                return await self._find_marker(session, task_id, operation_key)

            found = await self.transactions.run_independent(_winner)
            return found[0] if found is not None else None

        if not ran:
            self.logger.debug(f"Operation '{operation_key}' of task {task_id} already done")
        return result

    @staticmethod
    async def _find_marker(
        session: AsyncSession, task_id: str, operation_key: str
    ) -> Optional[tuple[Any]]:
        table = IdempotencyMarkerModel.__table__
        result = await session.execute(
            select(table.c.result).where(
                table.c.task_id == task_id, table.c.operation_key == operation_key
            )
        )
        row = result.first()
        return (row[0],) if row is not None else None

    async def cleanup_idempotency_markers(
        self, days: int = DEFAULT_IDEMPOTENCY_RETENTION_DAYS
    ) -> int:
        if days < 1:
            raise ValueError(f'days must be >= 1, got {days}')
        table = IdempotencyMarkerModel.__table__

        async def _delete(session: AsyncSession) -> int:
            result = await session.execute(
                delete(table).where(
                    table.c.created_at < func.now() - func.make_interval(0, 0, 0, days)
                )
            )
            return result.rowcount or 0

        removed = await self.transactions.run(_delete)
        if removed:
            self.logger.info(f'Removed {removed} idempotency marker(s) older than {days} days')
        return removed


class _MarkerRace(Exception):
    """The idempotency marker was inserted by a concurrent caller first."""
