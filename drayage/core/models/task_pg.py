from __future__ import annotations
from datetime import datetime, date, timezone
from typing import Any, Optional
from sqlalchemy import (
    String,
    Text,
    Date,
    DateTime,
    Integer,
    BigInteger,
    Index,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Enum as SQLAlchemyEnum,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from drayage.core.types.status import (
    TaskStatus,
    TaskType,
    ExecutionStatus,
    DependencyType,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class TaskModel(Base):
    """
    SQLAlchemy model for storing tasks in the database.

    - id: str # uuid4
    - task_type: TaskType # kind of work, selects the registered handler
    - payload: dict # handler input, opaque to the queue
    - priority: int # 1..10, higher is served first
    - queue_name: str # resolved at enqueue time from priority/type unless given
    - status: TaskStatus # PENDING, RUNNING, RETRYING, COMPLETED, FAILED, CANCELLED
    - retry_count: int # retries scheduled so far
    - max_retries: int # per-task retry budget
    - progress: int # 0..100, reported by the handler, never regresses
    - created_by: str # optional producer identity
    - started_at: datetime # set when the task is claimed (RUNNING)
    - completed_at: datetime # set on a terminal status
    - expires_at: datetime # unfinished tasks past this point are failed as expired
    - scheduled_at: datetime # next eligible run time
    - error_message: str # classified error of the last failure
    - result: dict # handler output
    """

    __tablename__ = 'drayage_tasks'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    task_type: Mapped[TaskType] = mapped_column(
        SQLAlchemyEnum(TaskType, native_enum=False, length=50), nullable=False,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict, server_default=text("'{}'::jsonb"),
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5, server_default=text('5'),
    )
    queue_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[TaskStatus] = mapped_column(
        SQLAlchemyEnum(TaskStatus, native_enum=False, length=20),
        nullable=False,
        default=TaskStatus.PENDING,
        index=True,
    )

    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, server_default=text('3'),
    )
    progress: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        CheckConstraint('priority BETWEEN 1 AND 10', name='ck_drayage_tasks_priority'),
        CheckConstraint('progress BETWEEN 0 AND 100', name='ck_drayage_tasks_progress'),
        # Claim path: eligible rows per queue, served by priority then age
        Index(
            'idx_drayage_tasks_claim',
            'queue_name', 'status', 'priority', 'created_at',
        ),
        Index('idx_drayage_tasks_scheduled', 'status', 'scheduled_at'),
        Index('idx_drayage_tasks_expires', 'expires_at'),
        Index('idx_drayage_tasks_created_by', 'created_by'),
    )


class TaskExecutionLogModel(Base):
    """
    Append-only audit record, one row per execution attempt.

    Only the attempt that created the row may close it (completed_at,
    duration_ms, status, error).
    """

    __tablename__ = 'drayage_task_execution_log'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('drayage_tasks.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    status: Mapped[ExecutionStatus] = mapped_column(
        SQLAlchemyEnum(ExecutionStatus, native_enum=False, length=20),
        nullable=False,
    )
    attempt: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )  # retry_count at the time of the attempt
    worker_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    memory_used_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    processed_items: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    error: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)


class DistributedLockModel(Base):
    """
    Named, time-bounded mutual-exclusion marker.

    A row is overwritten by a new holder only once expire_time has passed.
    """

    __tablename__ = 'drayage_distributed_locks'

    lock_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    lock_id: Mapped[str] = mapped_column(String(255), nullable=False)
    expire_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )


class TaskDependencyModel(Base):
    """Edge `task_id` waits on `depends_on_task_id`. Read-only once created."""

    __tablename__ = 'drayage_task_dependencies'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('drayage_tasks.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    depends_on_task_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('drayage_tasks.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    dependency_type: Mapped[DependencyType] = mapped_column(
        SQLAlchemyEnum(DependencyType, native_enum=False, length=20),
        nullable=False,
        default=DependencyType.SUCCESS,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint(
            'task_id', 'depends_on_task_id', name='uq_drayage_task_dependency'
        ),
        CheckConstraint(
            'task_id <> depends_on_task_id', name='ck_drayage_task_dependency_self'
        ),
    )


class IdempotencyMarkerModel(Base):
    """Memoized result of a side-effecting operation, keyed by (task_id, operation_key)."""

    __tablename__ = 'drayage_idempotency_markers'

    task_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    operation_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    result: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
        index=True,
    )


class QueueStatisticsModel(Base):
    """Hourly per-queue event counters written by the database metrics sink."""

    __tablename__ = 'drayage_queue_statistics'

    queue_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    stat_date: Mapped[date] = mapped_column(Date, primary_key=True)
    stat_hour: Mapped[int] = mapped_column(Integer, primary_key=True)
    enqueued_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    dequeued_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    completed_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    failed_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    retried_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    total_duration_ms: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default=text('0'),
    )
    max_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
