"""SQL constants for the Lock Service."""

from __future__ import annotations

from sqlalchemy import text

SWEEP_EXPIRED_LOCKS_SQL = text("""
    DELETE FROM drayage_distributed_locks
    WHERE expire_time < now()
""")

# Single conditional write: inserts a fresh row, takes over an expired one,
# or refreshes a row this holder already owns. A live row held by someone
# else makes the DO UPDATE predicate false and nothing is returned.
ACQUIRE_LOCK_SQL = text("""
    INSERT INTO drayage_distributed_locks (lock_key, lock_id, expire_time, created_at)
    VALUES (
        :lock_key,
        :holder_id,
        now() + make_interval(secs => CAST(:ttl AS double precision)),
        now()
    )
    ON CONFLICT (lock_key) DO UPDATE
    SET lock_id = EXCLUDED.lock_id,
        expire_time = EXCLUDED.expire_time,
        created_at = EXCLUDED.created_at
    WHERE drayage_distributed_locks.expire_time < now()
       OR drayage_distributed_locks.lock_id = EXCLUDED.lock_id
    RETURNING lock_id
""")

RELEASE_LOCK_SQL = text("""
    DELETE FROM drayage_distributed_locks
    WHERE lock_key = :lock_key
      AND lock_id = :holder_id
""")

FORCE_RELEASE_LOCK_SQL = text("""
    DELETE FROM drayage_distributed_locks
    WHERE lock_key = :lock_key
""")

EXTEND_LOCK_SQL = text("""
    UPDATE drayage_distributed_locks
    SET expire_time = now() + make_interval(secs => CAST(:ttl AS double precision))
    WHERE lock_key = :lock_key
      AND lock_id = :holder_id
      AND expire_time >= now()
    RETURNING lock_key
""")

IS_LOCKED_SQL = text("""
    SELECT 1
    FROM drayage_distributed_locks
    WHERE lock_key = :lock_key
      AND expire_time >= now()
""")

GET_LOCK_HOLDER_SQL = text("""
    SELECT lock_id
    FROM drayage_distributed_locks
    WHERE lock_key = :lock_key
      AND expire_time >= now()
""")

LIST_LOCKS_SQL = text("""
    SELECT lock_key,
           lock_id,
           expire_time,
           created_at,
           expire_time < now() AS expired
    FROM drayage_distributed_locks
    ORDER BY created_at ASC
""")
