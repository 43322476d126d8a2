# drayage/core/worker/worker.py
from __future__ import annotations

import asyncio
import contextlib
import multiprocessing
import os
import random
import signal
import sys
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from drayage.core.app import Drayage
from drayage.core.errors import ConfigurationError, ErrorCode
from drayage.core.logging import get_logger, set_default_level
from drayage.core.models.resilience import WorkerResilienceConfig
from drayage.core.utils.db import is_retryable_connection_error
from drayage.core.utils.imports import import_reference
from drayage.core.worker.config import WorkerConfig
from drayage.core.worker.current import set_current_app

logger = get_logger('worker')

# Retention and idempotency-marker sweeps run at most this often
_RETENTION_CLEANUP_INTERVAL_S = 3600.0
_START_TIMEOUT_S = 30.0
_MIN_DB_RETRY_DELAY_S = 0.1


@dataclass
class _DbRetryBudget:
    """Consecutive transient DB failures one loop may sleep out (limit 0: unbounded)."""

    initial_ms: int
    max_ms: int
    limit: int
    spent: int = 0

    @property
    def exhausted(self) -> bool:
        return self.limit > 0 and self.spent >= self.limit

    def reset(self) -> None:
        self.spent = 0

    def next_delay(self) -> float:
        """Spend one attempt; exponential from initial_ms, capped, +/-25% jitter."""
        self.spent += 1
        base_ms = min(self.max_ms, self.initial_ms * 2 ** (self.spent - 1))
        jittered_ms = base_ms * (1 + random.uniform(-0.25, 0.25))
        return max(_MIN_DB_RETRY_DELAY_S, jittered_ms / 1000.0)


def _locate_app(app_locator: str) -> Drayage:
    """Resolve 'cms.jobs:app' or 'jobs/app.py:app' to the Drayage instance it names."""
    logger.info(f'Loading app {app_locator}')
    mod_path, sep, attr = (app_locator or '').rpartition(':')
    if not sep or not mod_path or not attr:
        raise ConfigurationError(
            message='app locator must be <module or file>:<attribute>',
            code=ErrorCode.WORKER_INVALID_LOCATOR,
            notes=[f'locator: {app_locator!r}'],
            help_text="for example 'cms.jobs:app' or 'jobs/app.py:app'",
        )
    candidate = getattr(import_reference(mod_path), attr, None)
    if isinstance(candidate, Drayage):
        return candidate
    raise ConfigurationError(
        message=f'{attr!r} in {mod_path!r} is not a Drayage app',
        code=ErrorCode.WORKER_INVALID_LOCATOR,
        notes=[f'resolved to: {type(candidate).__name__}'],
        help_text='point the locator at the module-level Drayage(...) instance',
    )


def load_app(cfg: WorkerConfig) -> Drayage:
    """Import the app and its handler modules in this process."""
    for root in cfg.sys_path_roots:
        if root not in sys.path:
            sys.path.insert(0, root)
    app = _locate_app(cfg.app_locator)
    set_current_app(app)
    for module in [*cfg.imports, *app.get_handler_modules()]:
        import_reference(module)
    logger.debug(f'Registered handlers: {app.list_handlers()}')
    return app


class Worker:
    """
    Async loop set of one process:
      - `concurrency` consumer loops, each claiming from the configured queues
        (priority DESC, created_at ASC, SKIP LOCKED) and executing in turn
      - one maintenance loop: due retries, expiry sweep, expired locks,
        and at most hourly the retention and idempotency-marker sweeps
    """

    def __init__(self, app: Drayage, cfg: WorkerConfig):
        self.app = app
        self.cfg = cfg
        self._resilience = (
            cfg.resilience_config or app.config.resilience or WorkerResilienceConfig()
        )
        self._stop = asyncio.Event()
        self._service_tasks: set[asyncio.Task[Any]] = set()

    def request_stop(self) -> None:
        self._stop.set()

    def _spawn_background(self, coro: Any, *, name: str) -> asyncio.Task[Any]:
        """Run a worker loop as a task; a loop that dies stops the worker."""
        task = asyncio.create_task(coro, name=name)
        self._service_tasks.add(task)
        task.add_done_callback(self._loop_finished)
        return task

    def _loop_finished(self, task: asyncio.Task[Any]) -> None:
        self._service_tasks.discard(task)
        if task.cancelled() or task.exception() is None:
            return
        logger.error(f'Loop {task.get_name()} crashed: {task.exception()}')
        self.request_stop()

    def _db_retry_budget(self) -> _DbRetryBudget:
        res = self._resilience
        return _DbRetryBudget(
            initial_ms=res.db_retry_initial_ms,
            max_ms=res.db_retry_max_ms,
            limit=res.db_retry_max_attempts,
        )

    async def _idle(self, seconds: float) -> None:
        """Sleep, waking early when a stop is requested."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)

    async def _wait_out_db_error(
        self, exc: BaseException, budget: _DbRetryBudget, what: str
    ) -> None:
        if budget.exhausted:
            logger.error(f'{what}: giving up after {budget.spent} DB retries: {exc}')
            raise exc
        delay = budget.next_delay()
        limit = budget.limit or 'unbounded'
        logger.warning(f'{what}: DB unavailable ({exc}), retry {budget.spent}/{limit} in {delay:.1f}s')
        await self._idle(delay)

    # ----- lifecycle -----

    async def start(self) -> None:
        logger.debug('Checking schema')
        await self.app.store.ensure_schema_initialized()
        logger.info(
            f'Worker {self.app.locks.holder_id} serving {", ".join(self.cfg.queues)} '
            f'(concurrency={self.cfg.concurrency}, claim_batch={self.cfg.claim_batch})'
        )

    async def _start_until_ready(self) -> None:
        """Retry start() through a DB that is still coming up."""
        budget = self._db_retry_budget()
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self.start(), timeout=_START_TIMEOUT_S)
                return
            except Exception as exc:
                transient = isinstance(exc, asyncio.TimeoutError) or is_retryable_connection_error(exc)
                if not transient:
                    raise
                await self._wait_out_db_error(exc, budget, 'startup')

    async def stop(self) -> None:
        self._stop.set()
        # Consumer loops finish the task in hand before observing the stop flag
        if self._service_tasks:
            grace_s = self._resilience.shutdown_grace_ms / 1000.0
            _, pending = await asyncio.wait(tuple(self._service_tasks), timeout=grace_s)
            if pending:
                logger.warning(
                    f'Cancelling {len(pending)} loop(s) still busy after {grace_s:.0f}s'
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            self._service_tasks.clear()
        try:
            await self.app.close()
        except Exception as e:
            logger.error(f'Closing the store failed: {e}')
        logger.info('Worker stopped')

    # ----- main loop -----

    async def run_forever(self) -> None:
        """Start, run the loops until a stop is requested, then drain."""
        await self._start_until_ready()
        if self._stop.is_set():
            return
        try:
            for index in range(self.cfg.concurrency):
                self._spawn_background(self._consumer_loop(index), name=f'consumer-{index}')
            if self.cfg.maintenance:
                self._spawn_background(self._maintenance_loop(), name='maintenance')
            logger.info(f'{len(self._service_tasks)} loop(s) running')
            await self._stop.wait()
        finally:
            await self.stop()

    def _queue_order(self, index: int) -> list[str]:
        """Rotate the queue list per loop so no queue always waits behind another."""
        queues = self.cfg.queues
        shift = index % len(queues) if queues else 0
        return queues[shift:] + queues[:shift]

    async def _consumer_loop(self, index: int) -> None:
        budget = self._db_retry_budget()
        poll_s = self._resilience.poll_interval_ms / 1000.0
        queues = self._queue_order(index)
        while not self._stop.is_set():
            try:
                handled = 0
                for queue_name in queues:
                    if self._stop.is_set():
                        break
                    summary = await self.app.queue.process_queue(
                        queue_name, limit=self.cfg.claim_batch, should_stop=self._stop.is_set
                    )
                    handled += summary.processed + summary.failed + summary.skipped
                budget.reset()
                if handled == 0:
                    await self._idle(poll_s)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if is_retryable_connection_error(exc):
                    await self._wait_out_db_error(exc, budget, f'Consumer {index}')
                    continue
                raise

    async def _maintenance_loop(self) -> None:
        interval_s = self._resilience.maintenance_interval_ms / 1000.0
        next_retention_at = time.monotonic()
        components = self.app.components
        queue_cfg = self.app.config.queues

        while not self._stop.is_set():
            await self._run_step('promote due retries', components.retry.process_due_retries)
            await self._run_step('expire overdue tasks', components.queue.cleanup_expired_tasks)
            await self._run_step('sweep expired locks', components.locks.sweep_expired)

            if time.monotonic() >= next_retention_at:
                next_retention_at = time.monotonic() + _RETENTION_CLEANUP_INTERVAL_S
                await self._run_step('purge finished tasks', components.queue.purge_finished)
                await self._run_step(
                    'clean idempotency markers',
                    lambda: components.consistency.cleanup_idempotency_markers(
                        queue_cfg.idempotency_retention_days
                    ),
                )
            await self._idle(interval_s)

    async def _run_step(self, name: str, step: Callable[[], Awaitable[int]]) -> None:
        # Maintenance failures are retried on the next cycle
        try:
            count = await step()
            if count:
                logger.debug(f'Maintenance: {name} -> {count}')
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            level = 'transient' if is_retryable_connection_error(exc) else 'permanent'
            logger.warning(f'Maintenance step {name!r} failed ({level}): {exc}')


# ----- process entry points -----


async def _serve(app: Drayage, cfg: WorkerConfig) -> None:
    worker = Worker(app, cfg)
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        # Not available on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, _stop_on_signal, worker, signum)
    await worker.run_forever()


def _stop_on_signal(worker: Worker, signum: int) -> None:
    logger.info(f'{signal.Signals(signum).name} received, draining worker')
    worker.request_stop()


def _process_main(cfg: WorkerConfig, maintenance: bool) -> None:
    set_default_level(cfg.loglevel)
    app = load_app(cfg)
    cfg.maintenance = maintenance
    try:
        asyncio.run(_serve(app, cfg))
    except KeyboardInterrupt:
        pass


def run_worker(cfg: WorkerConfig, app: Drayage | None = None) -> None:
    """Serve queues in this process, or in `cfg.processes` spawned children.

    With several processes only the first runs the maintenance loop.
    """
    if cfg.processes <= 1:
        asyncio.run(_serve(app or load_app(cfg), cfg))
        return

    ctx = multiprocessing.get_context('spawn')
    children = [
        ctx.Process(
            target=_process_main,
            args=(cfg, index == 0),
            name=f'drayage-worker-{index}',
        )
        for index in range(cfg.processes)
    ]
    for child in children:
        child.start()
    logger.info(f'Started {len(children)} worker process(es)')

    def _forward(signum: int, _frame: Any) -> None:
        for child in children:
            if child.is_alive() and child.pid is not None:
                os.kill(child.pid, signum)

    signal.signal(signal.SIGTERM, _forward)
    signal.signal(signal.SIGINT, _forward)
    for child in children:
        child.join()
    failed = [c.name for c in children if c.exitcode not in (0, None)]
    if failed:
        raise RuntimeError(f'worker process(es) exited with errors: {", ".join(failed)}')
