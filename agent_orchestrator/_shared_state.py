# Copyright (c) Microsoft. All rights reserved.

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar, runtime_checkable

from pydantic import TypeAdapter, ValidationError

from .exceptions import OrchestrationException

__all__ = [
    "InMemorySharedStateStore",
    "SharedStateContext",
    "SharedStateEntry",
    "SharedStateExtensions",
]

T = TypeVar("T")


@dataclass
class SharedStateEntry:
    value: Any
    scope: str | None = None
    description: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@runtime_checkable
class SharedStateContext(Protocol):
    """Key/value state shared between agents, their tools and orchestrators.

    Values are JSON-compatible. Every operation takes an optional ``scope`` that namespaces the id.
    """

    async def queue_state_update(self, id: str, value: Any, scope: str | None = None) -> None: ...

    async def read_state(self, id: str, scope: str | None = None) -> Any | None: ...

    async def list_state_ids(self, scope: str | None = None) -> list[str]: ...

    async def remove_state(self, id: str, scope: str | None = None) -> bool: ...

    async def clear_states(self, scope: str | None = None) -> int: ...


class InMemorySharedStateStore:
    """A process-local :class:`SharedStateContext`. Scoped ids are stored under ``"<scope>:<id>"``."""

    def __init__(self) -> None:
        self._states: dict[str, SharedStateEntry] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(id: str, scope: str | None) -> str:
        return f"{scope}:{id}" if scope else id

    @staticmethod
    def _in_scope(key: str, scope: str) -> bool:
        return key.startswith(f"{scope}:") or key == scope

    async def queue_state_update(self, id: str, value: Any, scope: str | None = None) -> None:
        async with self._lock:
            self._states[self._key(id, scope)] = SharedStateEntry(value=value, scope=scope)

    async def read_state(self, id: str, scope: str | None = None) -> Any | None:
        async with self._lock:
            entry = self._states.get(self._key(id, scope))
        return None if entry is None else entry.value

    async def list_state_ids(self, scope: str | None = None) -> list[str]:
        """List stored ids. With a scope only that scope's ids are returned, without their prefix."""
        async with self._lock:
            keys = list(self._states)
        if scope is None:
            return keys
        prefix = f"{scope}:"
        return [key.removeprefix(prefix) for key in keys if self._in_scope(key, scope)]

    async def remove_state(self, id: str, scope: str | None = None) -> bool:
        async with self._lock:
            return self._states.pop(self._key(id, scope), None) is not None

    async def clear_states(self, scope: str | None = None) -> int:
        """Remove all states, or only those of ``scope``, and return how many were removed."""
        async with self._lock:
            if scope is None:
                count = len(self._states)
                self._states.clear()
                return count
            doomed = [key for key in self._states if self._in_scope(key, scope)]
            for key in doomed:
                del self._states[key]
            return len(doomed)


class SharedStateExtensions:
    """Typed convenience accessors over any :class:`SharedStateContext`."""

    def __init__(self, context: SharedStateContext) -> None:
        self.context = context

    async def set_string(self, id: str, value: str, scope: str | None = None) -> None:
        await self.context.queue_state_update(id, value, scope)

    async def get_string(self, id: str, scope: str | None = None) -> str | None:
        value = await self.context.read_state(id, scope)
        return value if isinstance(value, str) else None

    async def set_object(self, id: str, value: Any, scope: str | None = None) -> None:
        """Store any pydantic-serializable value as JSON-compatible data."""
        data = TypeAdapter(type(value)).dump_python(value, mode="json")
        await self.context.queue_state_update(id, data, scope)

    async def get_object(self, id: str, object_type: type[T], scope: str | None = None) -> T | None:
        """Read a value and validate it into ``object_type``.

        Raises:
            OrchestrationException: The stored value does not validate.
        """
        value = await self.context.read_state(id, scope)
        if value is None:
            return None
        try:
            return TypeAdapter(object_type).validate_python(value)
        except ValidationError as ex:
            raise OrchestrationException(f"state '{id}' is not a valid {object_type.__name__}", ex) from ex
