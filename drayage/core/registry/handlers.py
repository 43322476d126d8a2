# drayage/core/registry/handlers.py
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, MutableMapping

from drayage.core.errors import ErrorCode, RegistryError
from drayage.core.types.status import TaskType


class NotRegistered(RegistryError, KeyError):
    """Raised when no handler is registered for a task type.

    Inherits from KeyError so MutableMapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, task_type: TaskType) -> None:
        RegistryError.__init__(
            self,
            message=f"no handler registered for task type '{task_type.value}'",
            code=ErrorCode.HANDLER_NOT_REGISTERED,
            notes=[f'requested type: {task_type.name}'],
            help_text=(
                'register one with @app.handler(TaskType.X)\n'
                'or make sure the module defining it is imported by the worker'
            ),
        )
        self.task_type = task_type


class DuplicateHandlerError(RegistryError):
    """Raised when a task type gets a second handler within the same app."""

    def __init__(self, task_type: TaskType, context: str = '') -> None:
        super().__init__(
            message=f"duplicate handler for task type '{task_type.value}'",
            code=ErrorCode.HANDLER_DUPLICATE,
            notes=[context] if context else [],
            help_text='each task type has exactly one handler per drayage instance',
        )
        self.task_type = task_type


@dataclass(frozen=True)
class RegisteredHandler:
    """A handler callable plus what the executor needs to know to call it."""

    task_type: TaskType
    fn: Callable[..., Any]
    is_async: bool
    wants_context: bool
    source: str | None = None

    @classmethod
    def wrap(cls, task_type: TaskType, fn: Callable[..., Any], source: str | None = None) -> RegisteredHandler:
        params = [
            p for p in inspect.signature(fn).parameters.values()
            if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
        ]
        if not params:
            raise RegistryError(
                message=f"handler for '{task_type.value}' must accept the task payload",
                code=ErrorCode.HANDLER_NOT_REGISTERED,
                help_text='define it as `def handler(payload)` or `def handler(payload, ctx)`',
            )
        return cls(
            task_type=task_type,
            fn=fn,
            is_async=asyncio.iscoroutinefunction(fn),
            wants_context=len(params) >= 2,
            source=source,
        )

    async def call(self, payload: dict[str, Any], context: Any) -> Any:
        """Invoke the handler; sync handlers run in the default executor."""
        args = (payload, context) if self.wants_context else (payload,)
        if self.is_async:
            return await self.fn(*args)
        return await asyncio.to_thread(self.fn, *args)


class HandlerRegistry(MutableMapping[TaskType, RegisteredHandler]):
    """Registry mapping task type -> handler.

    Tracks source locations to detect duplicate registrations:
    - Same type + same source: silently skip (re-import scenario)
    - Same type + different source: raise DuplicateHandlerError
    """

    def __init__(self) -> None:
        self._data: Dict[TaskType, RegisteredHandler] = {}

    def __getitem__(self, key: TaskType) -> RegisteredHandler:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key)

    def __setitem__(self, key: TaskType, value: RegisteredHandler) -> None:
        """Discourage direct assignment; enforce uniqueness like register()."""
        if key in self._data:
            raise DuplicateHandlerError(key, 'detected via direct assignment')
        self._data[key] = value

    def __delitem__(self, key: TaskType) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[TaskType]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(
        self, task_type: TaskType, fn: Callable[..., Any], *, source: str | None = None
    ) -> RegisteredHandler:
        existing = self._data.get(task_type)
        if existing is not None:
            if existing.source and source and existing.source == source:
                return existing
            raise DuplicateHandlerError(
                task_type, f'already handled by {existing.source or existing.fn.__qualname__}'
            )
        handler = RegisteredHandler.wrap(task_type, fn, source)
        self._data[task_type] = handler
        return handler

    def unregister(self, task_type: TaskType) -> None:
        self._data.pop(task_type, None)

    def types(self) -> list[TaskType]:
        return list(self._data.keys())
