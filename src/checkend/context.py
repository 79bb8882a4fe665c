"""Task-scoped context, user and request data for notices."""

from __future__ import annotations

import itertools
from collections.abc import Awaitable, Callable, Mapping
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, TypeVar

T = TypeVar("T")

_store_ids = itertools.count()


@dataclass
class Scope:
    """Mutable context/user/request mappings owned by one logical task."""

    context: dict[str, Any] = field(default_factory=dict)
    user: dict[str, Any] = field(default_factory=dict)
    request: dict[str, Any] = field(default_factory=dict)

    def reset(self) -> None:
        self.context = {}
        self.user = {}
        self.request = {}


class ContextStore:
    """Holds a per-task ``Scope`` in a ContextVar plus a process-wide fallback.

    Each ``run_scoped``/``run_scoped_async`` call gets a fresh empty scope.
    asyncio tasks and threads each carry their own copy of the ContextVar,
    so scopes running side by side never see each other's writes. Tasks
    spawned inside a scope share that scope.
    """

    def __init__(self) -> None:
        self._current: ContextVar[Scope | None] = ContextVar(
            f"checkend_scope_{next(_store_ids)}", default=None
        )
        self._fallback = Scope()

    @property
    def active_scope(self) -> Scope | None:
        return self._current.get()

    def run_scoped(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        token = self._current.set(Scope())
        try:
            return fn(*args, **kwargs)
        finally:
            self._current.reset(token)

    async def run_scoped_async(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        token = self._current.set(Scope())
        try:
            return await fn(*args, **kwargs)
        finally:
            self._current.reset(token)

    def set_context(self, context: Mapping[str, Any]) -> None:
        (self.active_scope or self._fallback).context.update(context)

    def set_user(self, user: Mapping[str, Any]) -> None:
        (self.active_scope or self._fallback).user.update(user)

    def set_request(self, request: Mapping[str, Any]) -> None:
        """Merge request data into the active scope; there is no global request."""
        scope = self.active_scope
        if scope is not None:
            scope.request.update(request)

    def get_context(self) -> dict[str, Any]:
        scope = self.active_scope
        return {**self._fallback.context, **(scope.context if scope else {})}

    def get_user(self) -> dict[str, Any]:
        scope = self.active_scope
        return {**self._fallback.user, **(scope.user if scope else {})}

    def get_request(self) -> dict[str, Any]:
        scope = self.active_scope
        return dict(scope.request) if scope else {}

    def get_global_context(self) -> dict[str, Any]:
        return dict(self._fallback.context)

    def clear(self) -> None:
        (self.active_scope or self._fallback).reset()
