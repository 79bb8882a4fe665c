"""Session: wires configuration, sanitizer, context store, transport and queue."""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import sys
import threading
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel

from checkend.client import Client
from checkend.config import Configuration
from checkend.context import ContextStore
from checkend.errors.exceptions import UnhandledRejection
from checkend.filters.before_notify import FilterDecision, run_before_notify
from checkend.filters.sanitize import SanitizeFilter
from checkend.logging_config import configure_logging
from checkend.models.notice import ApiResponse, Notice
from checkend.notice import create_notice
from checkend.workers.worker import Worker

T = TypeVar("T")


def error_code(error: BaseException) -> str | None:
    """Return a string ``code`` attribute, else the symbolic errno name (e.g. ``ECONNRESET``)."""
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    number = getattr(error, "errno", None)
    if isinstance(number, int):
        return errno.errorcode.get(number)
    return None


def _as_dict(data: Mapping[str, Any] | BaseModel | None) -> dict[str, Any]:
    if data is None:
        return {}
    if isinstance(data, BaseModel):
        return data.model_dump(exclude_none=True)
    return dict(data)


class _AsyncioErrorHandler(logging.Handler):
    """Reports exceptions that asyncio's default handler logs.

    Covers loops the session never ran on, so no loop exception handler of
    ours was ever installed there.
    """

    def __init__(self, session: Session):
        super().__init__(level=logging.ERROR)
        self.session = session

    def emit(self, record: logging.LogRecord) -> None:
        if not record.exc_info or getattr(self.session._chaining, "active", False):
            return
        error = record.exc_info[1]
        if error is None or isinstance(error, asyncio.CancelledError):
            return
        self.session._report_unhandled(
            error,
            {"unhandled": True, "rejection": True},
            ["unhandled", "unhandled_rejection"],
        )


class Session:
    """One configured notifier: owns its queue, transport, sanitizer and context store.

    A session does nothing until ``start()``; ``checkend.configure()`` starts
    it when the configuration is valid. Several sessions can coexist, each
    with its own state.
    """

    def __init__(
        self,
        config: Configuration,
        client: Client | None = None,
        worker: Worker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        store: ContextStore | None = None,
    ):
        self.config = config
        self.logger = config.logger
        self.client = client or Client(config, transport=transport)
        if worker is None and config.async_mode:
            worker = Worker(config, client=self.client)
        self.worker = worker
        self.sanitizer = SanitizeFilter(config.filter_keys)
        self.store = store or ContextStore()
        self._started = False
        self._pending: set[asyncio.Task] = set()
        self._previous_excepthook: Callable[..., Any] | None = None
        self._previous_threading_excepthook: Callable[..., Any] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_loop_handler: Callable[..., Any] | None = None
        self._asyncio_handler: _AsyncioErrorHandler | None = None
        # set while a chained loop handler runs, so its log line is not reported twice
        self._chaining = threading.local()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def active(self) -> bool:
        return self._started and self.config.is_valid() and self.config.is_enabled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._started:
            return
        if not self.config.is_valid():
            self.logger.warning("Invalid configuration: api_key is required")
            return

        self._started = True
        configure_logging(self.config)
        if self.config.capture_uncaught_exceptions:
            self._install_excepthooks()
        if self.config.capture_unhandled_rejections:
            self._asyncio_handler = _AsyncioErrorHandler(self)
            logging.getLogger("asyncio").addHandler(self._asyncio_handler)
            if not self._watch_running_loop():
                self.logger.debug("No running event loop yet; loop handler is installed on first use")

        self.logger.info(
            "Started (environment: %s, async: %s)", self.config.environment, self.config.async_mode
        )

    async def stop(self, timeout: float | None = None) -> bool:
        """Uninstall hooks and drain pending notices. Returns False if draining timed out."""
        if not self._started:
            return True

        self.uninstall_hooks()
        drained = True
        if self.worker is not None:
            drained = await self.worker.stop(timeout)
        if self._pending:
            wait = self.config.shutdown_timeout if timeout is None else timeout
            _, pending = await asyncio.wait(set(self._pending), timeout=wait)
            drained = drained and not pending

        self._started = False
        self.logger.info("Stopped")
        return drained

    async def flush(self, timeout: float | None = None) -> bool:
        """Wait for queued notices to be sent. Returns False if the wait timed out."""
        self._watch_running_loop()
        flushed = True
        if self.worker is not None:
            flushed = await self.worker.flush(timeout)
        if self._pending:
            wait = self.config.timeout if timeout is None else timeout
            _, pending = await asyncio.wait(set(self._pending), timeout=wait)
            flushed = flushed and not pending
        return flushed

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def notify(
        self,
        error: BaseException,
        *,
        context: Mapping[str, Any] | None = None,
        user: Mapping[str, Any] | BaseModel | None = None,
        request: Mapping[str, Any] | BaseModel | None = None,
        fingerprint: str | None = None,
        tags: list[str] | None = None,
    ) -> bool:
        """Report an error without waiting for delivery. Returns True if dispatched."""
        notice = self._prepare(error, context, user, request, fingerprint, tags)
        if notice is None:
            return False
        return self._dispatch(notice)

    async def notify_sync(
        self,
        error: BaseException,
        *,
        context: Mapping[str, Any] | None = None,
        user: Mapping[str, Any] | BaseModel | None = None,
        request: Mapping[str, Any] | BaseModel | None = None,
        fingerprint: str | None = None,
        tags: list[str] | None = None,
    ) -> ApiResponse | None:
        """Report an error and wait for the API response."""
        self._watch_running_loop()
        notice = self._prepare(error, context, user, request, fingerprint, tags)
        if notice is None:
            return None
        return await self.client.send_notice(notice)

    def build_notice(
        self,
        error: BaseException,
        context: Mapping[str, Any] | None = None,
        user: Mapping[str, Any] | BaseModel | None = None,
        request: Mapping[str, Any] | BaseModel | None = None,
        fingerprint: str | None = None,
        tags: list[str] | None = None,
    ) -> Notice:
        """Merge ambient and explicit data, sanitize it and build the notice."""
        merged_context = {**self.store.get_context(), **_as_dict(context)}
        if self.config.send_environment_data:
            merged_context["env"] = dict(os.environ)

        merged_user: dict[str, Any] = {}
        if self.config.send_user_data:
            merged_user = self.sanitizer.sanitize({**self.store.get_user(), **_as_dict(user)})

        merged_request: dict[str, Any] = {}
        if self.config.send_request_data:
            merged_request = self.sanitizer.sanitize({**self.store.get_request(), **_as_dict(request)})

        return create_notice(
            error,
            context=self.sanitizer.sanitize(merged_context),
            user=merged_user,
            request=merged_request,
            fingerprint=fingerprint,
            tags=tags,
            environment=self.config.environment,
            root_path=self.config.root_path,
            app_name=self.config.app_name,
            revision=self.config.revision,
        )

    def _prepare(self, error, context, user, request, fingerprint, tags) -> Notice | None:
        if not self.active:
            return None
        if self._ignored(error):
            return None

        notice = self.build_notice(error, context, user, request, fingerprint, tags)
        if run_before_notify(notice, self.config.before_notify, self.logger) is FilterDecision.VETO:
            return None
        return notice

    def _ignored(self, error: BaseException) -> bool:
        error_class = type(error).__name__
        if self.config.should_ignore(error_class, str(error) or "Unknown error", error_code(error)):
            self.logger.debug("Ignoring error: %s", error_class)
            return True
        return False

    def _dispatch(self, notice: Notice) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            self._watch_running_loop()
            if self.worker is not None:
                return self.worker.push(notice)
            task = loop.create_task(self.client.send_notice(notice))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return True

        # No event loop in this thread: deliver inline.
        self.logger.debug("No running event loop, sending %s synchronously", notice.error_class)
        return asyncio.run(self.client.send_notice(notice)) is not None

    # ------------------------------------------------------------------
    # Context store delegates
    # ------------------------------------------------------------------

    def set_context(self, context: Mapping[str, Any]) -> None:
        self.store.set_context(context)

    def set_user(self, user: Mapping[str, Any] | BaseModel) -> None:
        self.store.set_user(_as_dict(user))

    def set_request(self, request: Mapping[str, Any] | BaseModel) -> None:
        self.store.set_request(_as_dict(request))

    def get_context(self) -> dict[str, Any]:
        return self.store.get_context()

    def get_user(self) -> dict[str, Any]:
        return self.store.get_user()

    def clear(self) -> None:
        self.store.clear()

    def run_scoped(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return self.store.run_scoped(fn, *args, **kwargs)

    async def run_scoped_async(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        self._watch_running_loop()
        return await self.store.run_scoped_async(fn, *args, **kwargs)

    # ------------------------------------------------------------------
    # Global error hooks
    # ------------------------------------------------------------------

    def install_loop_handler(self, loop: asyncio.AbstractEventLoop) -> None:
        """Report exceptions from tasks nobody awaited on ``loop``.

        Only one loop is watched at a time; moving to a new loop restores the
        previous loop's own handler first.
        """
        if self._loop is loop:
            return
        self._restore_loop_handler()
        self._loop = loop
        self._previous_loop_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._handle_loop_exception)

    def _watch_running_loop(self) -> bool:
        """Install the loop handler on the running loop, if any. Returns True if one runs."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        if self._started and self.config.capture_unhandled_rejections:
            self.install_loop_handler(loop)
        return True

    def _restore_loop_handler(self) -> None:
        if self._loop is not None and not self._loop.is_closed():
            if self._loop.get_exception_handler() == self._handle_loop_exception:
                self._loop.set_exception_handler(self._previous_loop_handler)
        self._loop = None
        self._previous_loop_handler = None

    def _install_excepthooks(self) -> None:
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._handle_uncaught
        self._previous_threading_excepthook = threading.excepthook
        threading.excepthook = self._handle_thread_exception

    def uninstall_hooks(self) -> None:
        if self._previous_excepthook is not None and sys.excepthook == self._handle_uncaught:
            sys.excepthook = self._previous_excepthook
        if self._previous_threading_excepthook is not None and threading.excepthook == self._handle_thread_exception:
            threading.excepthook = self._previous_threading_excepthook
        self._previous_excepthook = None
        self._previous_threading_excepthook = None

        if self._asyncio_handler is not None:
            logging.getLogger("asyncio").removeHandler(self._asyncio_handler)
            self._asyncio_handler = None
        self._restore_loop_handler()

    def _handle_uncaught(self, exc_type, exc, tb) -> None:
        previous = self._previous_excepthook or sys.__excepthook__
        try:
            if not issubclass(exc_type, KeyboardInterrupt):
                if exc.__traceback__ is None and tb is not None:
                    exc = exc.with_traceback(tb)
                self._report_unhandled(
                    exc,
                    {"unhandled": True, "origin": "uncaught_exception"},
                    ["unhandled", "uncaught_exception"],
                )
        finally:
            previous(exc_type, exc, tb)

    def _handle_thread_exception(self, args) -> None:
        previous = self._previous_threading_excepthook or threading.__excepthook__
        try:
            if args.exc_value is not None and not issubclass(args.exc_type, KeyboardInterrupt):
                thread_name = args.thread.name if args.thread is not None else None
                self._report_unhandled(
                    args.exc_value,
                    {"unhandled": True, "origin": "thread_exception", "thread": thread_name},
                    ["unhandled", "uncaught_exception"],
                )
        finally:
            previous(args)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        try:
            error = context.get("exception")
            if not isinstance(error, BaseException):
                error = UnhandledRejection(context.get("message") or "Unhandled task error")
            if not isinstance(error, asyncio.CancelledError):
                self._report_unhandled(
                    error,
                    {"unhandled": True, "rejection": True},
                    ["unhandled", "unhandled_rejection"],
                )
        finally:
            self._chaining.active = True
            try:
                if self._previous_loop_handler is not None:
                    self._previous_loop_handler(loop, context)
                else:
                    loop.default_exception_handler(context)
            finally:
                self._chaining.active = False

    def _report_unhandled(self, error: BaseException, origin: dict[str, Any], tags: list[str]) -> None:
        """Report from a global hook; any failure is logged, never raised."""
        try:
            if not self.active or self._ignored(error):
                return
            notice = create_notice(
                error,
                context=self.sanitizer.sanitize({**self.store.get_global_context(), **origin}),
                tags=tags,
                environment=self.config.environment,
                root_path=self.config.root_path,
                app_name=self.config.app_name,
                revision=self.config.revision,
            )
            if run_before_notify(notice, self.config.before_notify, self.logger) is FilterDecision.PROCEED:
                self._dispatch(notice)
        except Exception as exc:
            self.logger.debug("Failed to report unhandled error: %s", exc)
