# drayage/core/locks/service.py
from __future__ import annotations

import os
import socket
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from drayage.core.defaults import DEFAULT_LOCK_TTL_SECONDS
from drayage.core.locks.sql import (
    ACQUIRE_LOCK_SQL,
    EXTEND_LOCK_SQL,
    FORCE_RELEASE_LOCK_SQL,
    GET_LOCK_HOLDER_SQL,
    IS_LOCKED_SQL,
    LIST_LOCKS_SQL,
    RELEASE_LOCK_SQL,
    SWEEP_EXPIRED_LOCKS_SQL,
)
from drayage.core.logging import get_logger

MAX_LOCK_KEY_LENGTH = 255


@dataclass(frozen=True)
class LockInfo:
    lock_key: str
    lock_id: str
    expire_time: datetime
    created_at: datetime
    expired: bool


def make_holder_id() -> str:
    """Identity of one LockService instance: host, pid and a random suffix."""
    return f'{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}'


class LockService:
    """
    Named, time-bounded mutual-exclusion locks in drayage_distributed_locks.

    - acquire() never blocks: False means "held elsewhere", and the caller
      should skip the work rather than wait for it.
    - release() and extend() only act on rows owned by this instance's
      holder id.
    - Expired rows are swept before every acquisition attempt.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        holder_id: Optional[str] = None,
        default_ttl: int = DEFAULT_LOCK_TTL_SECONDS,
    ) -> None:
        self.session_factory = session_factory
        self.holder_id = holder_id or make_holder_id()
        self.default_ttl = default_ttl
        self.logger = get_logger('locks')

    @staticmethod
    def _validate(key: str, ttl: Optional[float] = None) -> None:
        if not key or len(key) > MAX_LOCK_KEY_LENGTH:
            raise ValueError(
                f'lock key must be 1..{MAX_LOCK_KEY_LENGTH} characters, got {len(key or "")}'
            )
        if ttl is not None and ttl <= 0:
            raise ValueError(f'lock ttl must be positive, got {ttl}')

    async def acquire(self, key: str, ttl: Optional[float] = None) -> bool:
        """Try to take `key` for `ttl` seconds. Re-acquiring an owned lock refreshes it."""
        ttl = self.default_ttl if ttl is None else ttl
        self._validate(key, ttl)

        async with self.session_factory() as session:
            swept = await session.execute(SWEEP_EXPIRED_LOCKS_SQL)
            result = await session.execute(
                ACQUIRE_LOCK_SQL,
                {'lock_key': key, 'holder_id': self.holder_id, 'ttl': ttl},
            )
            row = result.fetchone()
            await session.commit()

        if swept.rowcount:
            self.logger.debug(f'Swept {swept.rowcount} expired lock(s)')

        acquired = row is not None and row[0] == self.holder_id
        if acquired:
            self.logger.debug(f"Lock '{key}' acquired by {self.holder_id} for {ttl}s")
        else:
            self.logger.debug(f"Lock '{key}' is held elsewhere")
        return acquired

    async def release(self, key: str) -> bool:
        """Drop our own lock on `key`. False when we did not hold it."""
        self._validate(key)
        async with self.session_factory() as session:
            result = await session.execute(
                RELEASE_LOCK_SQL, {'lock_key': key, 'holder_id': self.holder_id},
            )
            await session.commit()
        released = (result.rowcount or 0) > 0
        if released:
            self.logger.debug(f"Lock '{key}' released by {self.holder_id}")
        return released

    async def is_locked(self, key: str) -> bool:
        """Whether anyone currently holds an unexpired lock on `key`."""
        self._validate(key)
        async with self.session_factory() as session:
            result = await session.execute(IS_LOCKED_SQL, {'lock_key': key})
            return result.fetchone() is not None

    async def is_held_by_me(self, key: str) -> bool:
        self._validate(key)
        async with self.session_factory() as session:
            result = await session.execute(GET_LOCK_HOLDER_SQL, {'lock_key': key})
            row = result.fetchone()
        return row is not None and row[0] == self.holder_id

    async def extend(self, key: str, ttl: Optional[float] = None) -> bool:
        """Push the expiry of our unexpired lock to now + ttl."""
        ttl = self.default_ttl if ttl is None else ttl
        self._validate(key, ttl)
        async with self.session_factory() as session:
            result = await session.execute(
                EXTEND_LOCK_SQL,
                {'lock_key': key, 'holder_id': self.holder_id, 'ttl': ttl},
            )
            row = result.fetchone()
            await session.commit()
        return row is not None

    @asynccontextmanager
    async def holding(self, key: str, ttl: Optional[float] = None) -> AsyncIterator[bool]:
        """Yield whether `key` was acquired; release it on exit if it was."""
        acquired = await self.acquire(key, ttl)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.release(key)
                except Exception as exc:
                    # The row expires on its own; the body's outcome stands
                    self.logger.warning(f"Failed to release lock '{key}': {exc}")

    # ------------- Administrative -------------

    async def sweep_expired(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(SWEEP_EXPIRED_LOCKS_SQL)
            await session.commit()
        return result.rowcount or 0

    async def list_locks(self) -> list[LockInfo]:
        async with self.session_factory() as session:
            result = await session.execute(LIST_LOCKS_SQL)
            return [LockInfo(**dict(row)) for row in result.mappings().all()]

    async def force_release(self, key: str) -> bool:
        """Delete the lock on `key` whoever holds it."""
        self._validate(key)
        async with self.session_factory() as session:
            result = await session.execute(FORCE_RELEASE_LOCK_SQL, {'lock_key': key})
            await session.commit()
        released = (result.rowcount or 0) > 0
        if released:
            self.logger.warning(f"Lock '{key}' force-released")
        return released
