# drayage/core/queue/dependencies.py
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from drayage.core.logging import get_logger
from drayage.core.models.task_pg import TaskDependencyModel, TaskModel
from drayage.core.store.sql import CANCEL_TASK_SQL, DEPENDENTS_SQL
from drayage.core.types.status import DependencyType, TaskStatus


class DependencyResolver:
    """Keeps dependents consistent with their prerequisites' terminal states.

    Satisfied dependencies need no bookkeeping: the claim query only hands
    out tasks whose dependencies are all satisfied. A dependency that can no
    longer be satisfied cancels its PENDING dependent, and that cancellation
    cascades to the dependent's own dependents.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self.logger = get_logger('dependencies')

    async def on_task_finished(self, task_id: str, status: TaskStatus) -> list[str]:
        """Cancel dependents that `task_id` ending in `status` leaves unsatisfiable."""
        if not status.is_terminal:
            return []
        cancelled: list[str] = []
        frontier: list[tuple[str, TaskStatus]] = [(task_id, status)]

        while frontier:
            upstream_id, upstream_status = frontier.pop()
            async with self.session_factory() as session:
                result = await session.execute(DEPENDENTS_SQL, {'id': upstream_id})
                dependents = result.fetchall()

                for dependent_id, dependency_type, dependent_status in dependents:
                    if TaskStatus[dependent_status] != TaskStatus.PENDING:
                        continue
                    if not DependencyType[dependency_type].is_unsatisfiable_by(upstream_status):
                        continue
                    reason = (
                        f'dependency {upstream_id} ended {upstream_status.name}, '
                        f'which never satisfies {dependency_type}'
                    )
                    row = (
                        await session.execute(
                            CANCEL_TASK_SQL, {'id': dependent_id, 'reason': reason}
                        )
                    ).fetchone()
                    if row is not None:
                        cancelled.append(dependent_id)
                        frontier.append((dependent_id, TaskStatus.CANCELLED))
                await session.commit()

        if cancelled:
            self.logger.info(
                f'Cancelled {len(cancelled)} dependent task(s) of {task_id}: {", ".join(cancelled)}'
            )
        return cancelled

    async def check_new_task(self, task_id: str) -> bool:
        """Cancel a just-created task whose prerequisites already rule it out.

        Returns True when the task stays eligible.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(TaskDependencyModel.dependency_type, TaskModel.id, TaskModel.status)
                .join(TaskModel, TaskModel.id == TaskDependencyModel.depends_on_task_id)
                .where(TaskDependencyModel.task_id == task_id)
            )
            blockers = [
                (upstream_id, upstream_status)
                for dependency_type, upstream_id, upstream_status in result.all()
                if dependency_type.is_unsatisfiable_by(upstream_status)
            ]
            if not blockers:
                return True
            upstream_id, upstream_status = blockers[0]
            await session.execute(
                CANCEL_TASK_SQL,
                {
                    'id': task_id,
                    'reason': f'dependency {upstream_id} already ended {upstream_status.name}',
                },
            )
            await session.commit()
        self.logger.info(f'Task {task_id} cancelled at creation: unsatisfiable dependency')
        await self.on_task_finished(task_id, TaskStatus.CANCELLED)
        return False
