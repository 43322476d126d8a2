# drayage/core/app.py
from __future__ import annotations

import asyncio
import inspect
import os
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, TypeVar

from drayage.core.batch import BatchProcessor
from drayage.core.consistency import (
    DataConsistencyManager,
    ExecutionLogProvider,
    RelatedRecordsProvider,
)
from drayage.core.errors import ConfigurationError, DrayageError, ErrorCode
from drayage.core.locks import LockService
from drayage.core.logging import get_logger
from drayage.core.models.app import AppConfig
from drayage.core.queue.dependencies import DependencyResolver
from drayage.core.queue.executor import TaskExecutor
from drayage.core.queue.service import TaskQueue
from drayage.core.registry.handlers import HandlerRegistry, RegisteredHandler
from drayage.core.retry import ErrorClassifier, RetryManager, RetryPolicyEngine
from drayage.core.sinks import (
    CompositeMetricsSink,
    DatabaseMetricsSink,
    InMemoryMetrics,
    LoggingNotificationSink,
    MetricsSink,
    NotificationSink,
)
from drayage.core.store import PostgresStore
from drayage.core.tasks import TaskManager
from drayage.core.transactions import TransactionManager
from drayage.core.types.status import TaskType
from drayage.core.utils.imports import import_reference, is_file_reference

_F = TypeVar('_F', bound=Callable[..., Any])


def _no_location(error: DrayageError) -> DrayageError:
    """Drop the auto-detected source location; the message already names the module."""
    error.location = None
    return error


@dataclass
class Components:
    """Everything one process needs to produce and execute tasks."""

    store: PostgresStore
    locks: LockService
    transactions: TransactionManager
    consistency: DataConsistencyManager
    batch: BatchProcessor
    retry: RetryManager
    dependencies: DependencyResolver
    executor: TaskExecutor
    queue: TaskQueue
    tasks: TaskManager


class Drayage:
    """
    Configuration-driven task queue app.

    Owns the handler registry and, lazily, the store and every service built
    on it. Producers use `app.tasks`; workers use `app.queue`.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        notifier: Optional[NotificationSink] = None,
        metrics: Optional[MetricsSink] = None,
        providers: Iterable[RelatedRecordsProvider] = (),
    ) -> None:
        self.config = config
        self.handlers = HandlerRegistry()
        self.notifier: NotificationSink = notifier or LoggingNotificationSink()
        self.memory_metrics = InMemoryMetrics()
        self._extra_metrics = metrics
        self._providers: list[RelatedRecordsProvider] = list(providers)
        self._components: Optional[Components] = None
        self._handler_modules: list[str] = []
        self.logger = get_logger('app')

    # ----------------- Handlers -----------------

    def handler(self, task_type: TaskType | str) -> Callable[[_F], _F]:
        """Register the decorated function as the handler of `task_type`.

        The function takes the payload dict and optionally a TaskContext:

            @app.handler(TaskType.SYNC)
            async def sync_article(payload, ctx):
                ...
        """
        kind = task_type if isinstance(task_type, TaskType) else TaskType(task_type)

        def decorator(fn: _F) -> _F:
            source_file = inspect.getsourcefile(fn) or fn.__module__
            try:
                line = inspect.getsourcelines(fn)[1]
            except (OSError, TypeError):
                line = 0
            self.handlers.register(kind, fn, source=f'{os.path.realpath(source_file)}:{line}')
            self.logger.debug(f'Registered handler {fn.__qualname__} for {kind.value}')
            return fn

        return decorator

    def list_handlers(self) -> list[str]:
        return [task_type.value for task_type in self.handlers.types()]

    def get_handler(self, task_type: TaskType) -> RegisteredHandler:
        return self.handlers[task_type]

    def discover_handlers(self, modules: list[str]) -> None:
        """Record modules (dotted paths or .py files) that define handlers.

        Nothing is imported here; workers call import_handler_modules().
        """
        self._handler_modules = list(modules)
        if modules:
            self.logger.info(f'Registered {len(modules)} handler module(s) for discovery')

    def get_handler_modules(self) -> list[str]:
        return self._handler_modules.copy()

    def import_handler_modules(self) -> list[str]:
        imported: list[str] = []
        for ref in self._handler_modules:
            import_reference(ref)
            imported.append(os.path.realpath(ref) if is_file_reference(ref) else ref)
        return imported

    # ----------------- Wiring -----------------

    def _build(self) -> Components:
        store = PostgresStore(self.config.store)
        sf = store.session_factory
        queues = self.config.queues

        sinks: list[MetricsSink] = [self.memory_metrics]
        if self.config.record_queue_statistics:
            sinks.append(DatabaseMetricsSink(sf))
        if self._extra_metrics is not None:
            sinks.append(self._extra_metrics)
        metrics = CompositeMetricsSink(sinks)

        locks = LockService(sf, default_ttl=queues.lock_ttl_seconds)
        transactions = TransactionManager(sf)
        consistency = DataConsistencyManager(
            transactions,
            locks,
            providers=[ExecutionLogProvider(), *self._providers],
            lock_ttl=queues.lock_ttl_seconds,
        )
        batch = BatchProcessor(sf, transactions, config=self.config.batch, metrics=metrics)
        retry = RetryManager(
            sf,
            classifier=ErrorClassifier(),
            policy=RetryPolicyEngine(self.config.retry),
            metrics=metrics,
            notifier=self.notifier,
            alert_min_severity=self.config.alert_min_severity,
            retry_ttl_seconds=queues.default_ttl_seconds,
        )
        dependencies = DependencyResolver(sf)
        executor = TaskExecutor(
            locks=locks,
            consistency=consistency,
            retry=retry,
            batch=batch,
            registry=self.handlers,
            dependencies=dependencies,
            metrics=metrics,
            lock_ttl=queues.lock_ttl_seconds,
        )
        queue = TaskQueue(
            sf,
            executor=executor,
            dependencies=dependencies,
            config=queues,
            metrics=metrics,
        )
        tasks = TaskManager(store, queue=queue, retry=retry, dependencies=dependencies)
        return Components(
            store=store,
            locks=locks,
            transactions=transactions,
            consistency=consistency,
            batch=batch,
            retry=retry,
            dependencies=dependencies,
            executor=executor,
            queue=queue,
            tasks=tasks,
        )

    @property
    def components(self) -> Components:
        if self._components is None:
            self._components = self._build()
        return self._components

    @property
    def store(self) -> PostgresStore:
        return self.components.store

    @property
    def tasks(self) -> TaskManager:
        return self.components.tasks

    @property
    def queue(self) -> TaskQueue:
        return self.components.queue

    @property
    def locks(self) -> LockService:
        return self.components.locks

    async def close(self) -> None:
        if self._components is not None:
            await self._components.store.close_async()
            self._components = None

    # ----------------- Validation -----------------

    def check(self, *, live: bool = False) -> list[DrayageError]:
        """Validate handler imports and, with `live`, database connectivity.

        Configuration itself was validated when AppConfig was built.
        """
        errors: list[DrayageError] = []
        for module in self._handler_modules:
            try:
                import_reference(module)
            except DrayageError as exc:
                errors.append(exc)
            except Exception as exc:
                errors.append(
                    _no_location(
                        ConfigurationError(
                            message=f'failed to import handler module {module!r}',
                            code=ErrorCode.CLI_INVALID_ARGS,
                            notes=[f'{type(exc).__name__}: {exc}'],
                        )
                    )
                )
        if errors or not live:
            return errors

        try:
            asyncio.run(self._check_connectivity())
        except Exception as exc:
            errors.append(
                _no_location(
                    ConfigurationError(
                        message='database connectivity check failed',
                        code=ErrorCode.STORE_INVALID_URL,
                        notes=[str(exc)],
                        help_text='check database_url in PostgresConfig',
                    )
                )
            )
        return errors

    async def _check_connectivity(self) -> None:
        # Throwaway store: the app's engine must not be bound to this short-lived loop
        store = PostgresStore(self.config.store)
        try:
            await store.ping()
        finally:
            await store.close_async()
