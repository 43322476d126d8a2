# drayage/core/transactions.py
"""
Transaction Manager: atomic units of work over the shared store.

- run(): one transaction per unit; nested run() calls become savepoints
- run_with_deadlock_retry(): retries a whole unit on deadlock/lock-timeout
- run_distributed(): sequential independently-committed steps with
  compensating actions

run_distributed() is NOT atomic. Once a step commits, its effects are
visible to other sessions; a later failure only triggers the registered
compensations, in reverse order, each in its own transaction. A
compensation that fails is logged and reported in the result, never
retried. Compensations should therefore be written to tolerate running
against partially compensated state.
"""

from __future__ import annotations

import asyncio
import random
import re
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from drayage.core.defaults import DEADLOCK_RETRY_MAX_JITTER_MS, DEADLOCK_RETRY_MIN_JITTER_MS
from drayage.core.logging import get_logger
from drayage.core.utils.db import is_deadlock_error

T = TypeVar('T')

type UnitOfWork[T] = Callable[[AsyncSession], Awaitable[T]]

_SAVEPOINT_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]{0,62}$')
_SAVEPOINTS_INFO_KEY = 'drayage_savepoints'

# Session of the innermost active run() in the current task context
_active_session: ContextVar[Optional[AsyncSession]] = ContextVar(
    'drayage_active_session', default=None
)


@dataclass
class DistributedStep:
    """One step of run_distributed().

    compensate receives the value execute returned.
    """

    name: str
    execute: Callable[[AsyncSession], Awaitable[Any]]
    compensate: Optional[Callable[[AsyncSession, Any], Awaitable[None]]] = None


@dataclass
class DistributedResult:
    success: bool
    transaction_id: str
    results: dict[str, Any] = field(default_factory=lambda: {})
    error: Optional[str] = None
    failed_step: Optional[str] = None
    compensated: list[str] = field(default_factory=lambda: [])
    compensation_errors: dict[str, str] = field(default_factory=lambda: {})


class TransactionManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.logger = get_logger('transactions')
        self._sleep = sleep
        self._rng = rng or random.Random()

    @staticmethod
    def active_session() -> Optional[AsyncSession]:
        """Session of the enclosing run(), if any."""
        return _active_session.get()

    async def run(self, fn: UnitOfWork[T], *, session: Optional[AsyncSession] = None) -> T:
        """Run `fn(session)` atomically; an exception rolls back and propagates.

        Inside another run() (or given a session already in a transaction)
        the unit runs under a savepoint, so its failure undoes only its own
        writes.
        """
        outer = session or _active_session.get()
        if outer is not None:
            return await self._run_in(outer, fn)

        async with self.session_factory() as new_session:
            token = _active_session.set(new_session)
            try:
                async with new_session.begin():
                    return await fn(new_session)
            finally:
                _active_session.reset(token)

    async def _run_in(self, session: AsyncSession, fn: UnitOfWork[T]) -> T:
        token = _active_session.set(session)
        try:
            if session.in_transaction():
                async with session.begin_nested():
                    return await fn(session)
            async with session.begin():
                return await fn(session)
        finally:
            _active_session.reset(token)

    async def run_independent(self, fn: UnitOfWork[T]) -> T:
        """Run `fn` in a fresh transaction even when called inside another run()."""
        token = _active_session.set(None)
        try:
            return await self.run(fn)
        finally:
            _active_session.reset(token)

    # ------------- Savepoints -------------

    @staticmethod
    def _check_savepoint_name(name: str) -> None:
        if not _SAVEPOINT_NAME.match(name):
            raise ValueError(f'invalid savepoint name: {name!r}')

    @staticmethod
    def _savepoints(session: AsyncSession) -> list[str]:
        return session.info.setdefault(_SAVEPOINTS_INFO_KEY, [])

    async def create_savepoint(self, session: AsyncSession, name: str) -> None:
        self._check_savepoint_name(name)
        if not session.in_transaction():
            raise RuntimeError('savepoints require an active transaction')
        await session.execute(text(f'SAVEPOINT {name}'))
        self._savepoints(session).append(name)

    async def rollback_to_savepoint(self, session: AsyncSession, name: str) -> None:
        """Undo everything after `name`; the savepoint itself stays usable."""
        self._check_savepoint_name(name)
        stack = self._savepoints(session)
        if name not in stack:
            raise ValueError(f"savepoint '{name}' does not exist")
        await session.execute(text(f'ROLLBACK TO SAVEPOINT {name}'))
        # Savepoints created after `name` are destroyed by the rollback
        del stack[stack.index(name) + 1:]

    async def release_savepoint(self, session: AsyncSession, name: str) -> None:
        self._check_savepoint_name(name)
        stack = self._savepoints(session)
        if name not in stack:
            raise ValueError(f"savepoint '{name}' does not exist")
        await session.execute(text(f'RELEASE SAVEPOINT {name}'))
        del stack[stack.index(name):]

    # ------------- Deadlocks -------------

    @staticmethod
    def is_deadlock(exc: BaseException) -> bool:
        return is_deadlock_error(exc)

    def _deadlock_delay(self) -> float:
        return self._rng.randint(DEADLOCK_RETRY_MIN_JITTER_MS, DEADLOCK_RETRY_MAX_JITTER_MS) / 1000.0

    async def run_with_deadlock_retry(self, fn: UnitOfWork[T], max_retries: int = 3) -> T:
        """run(fn), repeating the whole unit up to max_retries - 1 more times on deadlock.

        Inside an enclosing run() there is nothing to retry locally: PostgreSQL
        aborts the whole outer transaction, so the error goes straight up.
        """
        if max_retries < 1:
            raise ValueError(f'max_retries must be >= 1, got {max_retries}')
        if _active_session.get() is not None:
            return await self.run(fn)

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.run(fn)
            except Exception as exc:
                if not is_deadlock_error(exc) or attempt >= max_retries:
                    raise
                delay = self._deadlock_delay()
                self.logger.warning(
                    f'Deadlock detected (attempt {attempt}/{max_retries}), '
                    f'retrying in {delay * 1000:.0f}ms: {exc}'
                )
                await self._sleep(delay)

    # ------------- Multi-step -------------

    async def run_distributed(self, steps: Sequence[DistributedStep]) -> DistributedResult:
        """Run steps in order, each committed on its own; compensate on failure."""
        names = [s.name for s in steps]
        if len(names) != len(set(names)):
            raise ValueError(f'step names must be unique: {names}')

        outcome = DistributedResult(success=False, transaction_id=str(uuid.uuid4()))
        completed: list[tuple[DistributedStep, Any]] = []
        self.logger.info(
            f'Distributed transaction {outcome.transaction_id} started ({len(steps)} steps)'
        )

        for step in steps:
            try:
                value = await self.run_independent(step.execute)
            except Exception as exc:
                outcome.error = str(exc)
                outcome.failed_step = step.name
                self.logger.error(
                    f'Distributed transaction {outcome.transaction_id} failed at '
                    f"step '{step.name}': {exc}"
                )
                await self._compensate(outcome, completed)
                return outcome
            outcome.results[step.name] = value
            completed.append((step, value))

        outcome.success = True
        return outcome

    async def _compensate(
        self, outcome: DistributedResult, completed: list[tuple[DistributedStep, Any]]
    ) -> None:
        for step, value in reversed(completed):
            if step.compensate is None:
                continue
            compensate = step.compensate

            async def _undo(session: AsyncSession) -> None:
                await compensate(session, value)

            try:
                await self.run_independent(_undo)
                outcome.compensated.append(step.name)
            except Exception as exc:
                outcome.compensation_errors[step.name] = str(exc)
                self.logger.error(
                    f"Compensation for step '{step.name}' of {outcome.transaction_id} "
                    f'failed: {exc}'
                )

    async def run_batch(
        self, operations: Sequence[UnitOfWork[Any]], batch_size: int = 100
    ) -> list[Any]:
        """Run operations in transactions of `batch_size` operations each.

        A failing operation rolls back its own batch and propagates; batches
        committed before it stay committed.
        """
        if batch_size < 1:
            raise ValueError(f'batch_size must be >= 1, got {batch_size}')
        results: list[Any] = []
        for start in range(0, len(operations), batch_size):
            chunk = operations[start:start + batch_size]

            async def _run_chunk(session: AsyncSession, ops: Sequence[UnitOfWork[Any]] = chunk) -> list[Any]:
                return [await op(session) for op in ops]

            results.extend(await self.run(_run_chunk))
        return results
