"""Checkend error reporting for Python.

``configure()`` builds and starts a :class:`~checkend.session.Session`; the
module-level helpers below act on the most recently configured session and
do nothing before one exists::

    import checkend

    session = checkend.configure(api_key="...", environment="production")
    try:
        charge(order)
    except PaymentError as exc:
        checkend.notify(exc, context={"order_id": order.id})
"""

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import httpx

from checkend.config import Configuration
from checkend.context import ContextStore
from checkend.filters.before_notify import FilterDecision
from checkend.models.notice import ApiResponse, Notice, RequestInfo, User
from checkend.session import Session
from checkend.version import VERSION

__all__ = [
    "ApiResponse",
    "Configuration",
    "ContextStore",
    "FilterDecision",
    "Notice",
    "RequestInfo",
    "Session",
    "User",
    "VERSION",
    "clear",
    "configure",
    "flush",
    "get_context",
    "get_session",
    "get_user",
    "notify",
    "notify_sync",
    "reset",
    "run_scoped",
    "run_scoped_async",
    "set_context",
    "set_request",
    "set_user",
    "stop",
]

T = TypeVar("T")

_session: Session | None = None


def configure(transport: httpx.AsyncBaseTransport | None = None, **options: Any) -> Session:
    """Create, start and register a session.

    Options are :class:`~checkend.config.Configuration` fields; unset ones come
    from ``CHECKEND_*`` environment variables. A missing API key leaves the
    session inert with a logged warning. Context and user data set on a
    replaced session carry over until ``reset()``.
    """
    global _session
    store = None
    if _session is not None:
        store = _session.store
        if _session.started:
            _session.logger.warning("Replacing an active session; its queue is not drained")
            _session.uninstall_hooks()
    session = Session(Configuration.from_options(**options), transport=transport, store=store)
    session.start()
    _session = session
    return session


def get_session() -> Session | None:
    return _session


async def reset() -> None:
    """Stop the current session without waiting and forget it, along with its context."""
    global _session
    if _session is not None:
        await _session.stop(0)
    _session = None


async def stop(timeout: float | None = None) -> bool:
    if _session is None:
        return True
    return await _session.stop(timeout)


async def flush(timeout: float | None = None) -> bool:
    if _session is None:
        return True
    return await _session.flush(timeout)


def notify(error: BaseException, **options: Any) -> bool:
    if _session is None:
        return False
    return _session.notify(error, **options)


async def notify_sync(error: BaseException, **options: Any) -> ApiResponse | None:
    if _session is None:
        return None
    return await _session.notify_sync(error, **options)


def set_context(context: Mapping[str, Any]) -> None:
    if _session is not None:
        _session.set_context(context)


def set_user(user: Mapping[str, Any] | User) -> None:
    if _session is not None:
        _session.set_user(user)


def set_request(request: Mapping[str, Any] | RequestInfo) -> None:
    if _session is not None:
        _session.set_request(request)


def get_context() -> dict[str, Any]:
    return _session.get_context() if _session is not None else {}


def get_user() -> dict[str, Any]:
    return _session.get_user() if _session is not None else {}


def clear() -> None:
    if _session is not None:
        _session.clear()


def run_scoped(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    if _session is None:
        return fn(*args, **kwargs)
    return _session.run_scoped(fn, *args, **kwargs)


async def run_scoped_async(fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    if _session is None:
        return await fn(*args, **kwargs)
    return await _session.run_scoped_async(fn, *args, **kwargs)
