"""End-to-end tests for sessions and the package-level API."""

import asyncio
import errno
import gc
import logging
import sys
import threading

import pytest

import checkend
from checkend.config import Configuration
from checkend.filters.before_notify import FilterDecision
from checkend.models.notice import ApiResponse, RequestInfo, User
from checkend.session import Session, error_code
from checkend.testing import NoticeRecorder


class Boom(Exception):
    pass


def _boom(message: str = "bad thing") -> Boom:
    try:
        raise Boom(message)
    except Boom as exc:
        return exc


@pytest.mark.asyncio
async def test_notify_end_to_end(session, recorder):
    """Class, message and context survive; filtered keys are scrubbed."""
    assert checkend.notify(_boom(), context={"orderId": 42, "password": "x"}) is True
    assert await checkend.flush(1) is True

    notice = recorder.last_notice
    assert notice.error_class == "Boom"
    assert notice.message == "bad thing"
    assert notice.context["orderId"] == 42
    assert notice.context["password"] == "[FILTERED]"
    assert notice.context["environment"] == "production"
    assert notice.backtrace


@pytest.mark.asyncio
async def test_notify_sync_returns_response(session, recorder):
    result = await checkend.notify_sync(_boom(), tags=["checkout"], fingerprint="boom-1")
    assert result == ApiResponse(id=1, problem_id=1)
    assert recorder.last_notice.tags == ["checkout"]
    assert recorder.last_notice.fingerprint == "boom-1"


@pytest.mark.asyncio
async def test_scoped_context_user_and_request(session, recorder):
    checkend.set_context({"release": "r1"})

    async def handle():
        checkend.set_context({"request_id": "abc"})
        checkend.set_user(User(id=7, email="ann@example.com"))
        checkend.set_request(RequestInfo(url="https://shop.test/pay", method="POST", headers={"authorization": "Bearer x"}))
        checkend.notify(_boom())

    await checkend.run_scoped_async(handle)
    checkend.notify(_boom("outside"))
    await checkend.flush(1)

    inside, outside = recorder.notices
    assert inside.context["request_id"] == "abc"
    assert inside.context["release"] == "r1"
    assert inside.user == {"id": 7, "email": "ann@example.com"}
    assert inside.request["url"] == "https://shop.test/pay"
    assert inside.request["headers"]["authorization"] == "[FILTERED]"
    assert "request_id" not in outside.context
    assert outside.request == {}


@pytest.mark.asyncio
async def test_request_and_user_respect_send_flags(clean_env, recorder):
    session = checkend.configure(
        api_key="k",
        enabled=True,
        send_request_data=False,
        send_user_data=False,
        transport=recorder.transport,
    )
    try:
        session.notify(_boom(), user={"id": 1}, request={"url": "/x"})
        await session.flush(1)
        assert recorder.last_notice.user == {}
        assert recorder.last_notice.request == {}
    finally:
        await checkend.reset()


@pytest.mark.asyncio
async def test_environment_data_is_sanitized(clean_env, recorder, monkeypatch):
    monkeypatch.setenv("SHOP_DB_PASSWORD", "hunter2")
    monkeypatch.setenv("SHOP_REGION", "eu")
    session = checkend.configure(api_key="k", enabled=True, send_environment_data=True, transport=recorder.transport)
    try:
        session.notify(_boom())
        await session.flush(1)
        env = recorder.last_notice.context["env"]
        assert env["SHOP_DB_PASSWORD"] == "[FILTERED]"
        assert env["SHOP_REGION"] == "eu"
    finally:
        await checkend.reset()


@pytest.mark.asyncio
async def test_disabled_environment_sends_nothing(clean_env, recorder):
    session = checkend.configure(api_key="k", environment="development", transport=recorder.transport)
    try:
        assert session.started is True
        assert checkend.notify(_boom()) is False
        assert await checkend.notify_sync(_boom()) is None
        assert recorder.count == 0
    finally:
        await checkend.reset()


@pytest.mark.asyncio
async def test_missing_api_key_leaves_session_inert(clean_env, recorder, caplog):
    with caplog.at_level(logging.WARNING, logger="checkend"):
        session = checkend.configure(environment="production", transport=recorder.transport)
    try:
        assert "api_key is required" in caplog.text
        assert session.started is False
        assert checkend.notify(_boom()) is False
        assert recorder.count == 0
    finally:
        await checkend.reset()


@pytest.mark.asyncio
async def test_ignored_exceptions_dropped(clean_env, recorder, caplog):
    session = checkend.configure(api_key="k", enabled=True, ignored_exceptions=["Boom"], transport=recorder.transport)
    try:
        with caplog.at_level(logging.DEBUG, logger="checkend"):
            assert session.notify(_boom()) is False
            assert session.notify(ConnectionResetError(errno.ECONNRESET, "reset by peer")) is False
        assert "Ignoring error: Boom" in caplog.text
        assert session.notify(ValueError("kept")) is True
        await session.flush(1)
        assert [n.error_class for n in recorder.notices] == ["ValueError"]
    finally:
        await checkend.reset()


def test_error_code():
    assert error_code(ConnectionResetError(errno.ECONNRESET, "reset")) == "ECONNRESET"

    class Coded(Exception):
        code = "E_CUSTOM"

    assert error_code(Coded()) == "E_CUSTOM"
    assert error_code(ValueError("x")) is None


@pytest.mark.asyncio
async def test_before_notify_veto(clean_env, recorder):
    session = checkend.configure(
        api_key="k",
        enabled=True,
        before_notify=[lambda n: FilterDecision.VETO if n.message == "secret" else FilterDecision.PROCEED],
        transport=recorder.transport,
    )
    try:
        assert session.notify(_boom("secret")) is False
        assert session.notify(_boom("public")) is True
        await session.flush(1)
        assert [n.message for n in recorder.notices] == ["public"]
    finally:
        await checkend.reset()


@pytest.mark.asyncio
async def test_before_notify_fault_is_logged_and_later_filters_run(clean_env, recorder, caplog):
    calls: list[str] = []

    def broken(notice):
        calls.append("broken")
        raise RuntimeError("filter bug")

    def veto_false(notice):
        calls.append("veto")
        return notice.message != "drop"

    session = checkend.configure(api_key="k", enabled=True, before_notify=[broken, veto_false], transport=recorder.transport)
    try:
        with caplog.at_level(logging.WARNING, logger="checkend"):
            assert session.notify(_boom("keep")) is True
            assert session.notify(_boom("drop")) is False
        assert calls == ["broken", "veto", "broken", "veto"]
        assert "filter bug" in caplog.text
        await session.flush(1)
        assert [n.message for n in recorder.notices] == ["keep"]
    finally:
        await checkend.reset()


@pytest.mark.asyncio
async def test_direct_send_when_async_mode_off(clean_env, recorder):
    session = checkend.configure(api_key="k", enabled=True, async_mode=False, transport=recorder.transport)
    try:
        assert session.worker is None
        assert session.notify(_boom()) is True
        assert await session.flush(1) is True
        assert recorder.count == 1
    finally:
        await checkend.reset()


def test_notify_without_event_loop_sends_inline(clean_env, recorder):
    session = checkend.configure(api_key="k", enabled=True, transport=recorder.transport)
    try:
        assert session.notify(_boom()) is True
        assert recorder.count == 1
    finally:
        asyncio.run(checkend.reset())


@pytest.mark.asyncio
async def test_stop_rejects_further_notices(session, recorder):
    checkend.notify(_boom())
    assert await checkend.stop(1) is True
    assert recorder.count == 1
    assert checkend.notify(_boom()) is False


@pytest.mark.asyncio
async def test_module_helpers_are_noops_before_configure():
    await checkend.reset()
    assert checkend.get_session() is None
    assert checkend.notify(_boom()) is False
    assert await checkend.notify_sync(_boom()) is None
    assert await checkend.flush() is True
    checkend.set_context({"a": 1})
    assert checkend.get_context() == {}
    assert checkend.get_user() == {}
    assert checkend.run_scoped(lambda: 5) == 5


@pytest.mark.asyncio
async def test_independent_sessions(clean_env):
    first, second = NoticeRecorder(), NoticeRecorder()
    config = Configuration(api_key="k", enabled=True, capture_uncaught_exceptions=False, capture_unhandled_rejections=False)
    a = Session(config, transport=first.transport)
    b = Session(config, transport=second.transport)
    a.start()
    b.start()
    try:
        a.set_context({"session": "a"})
        a.notify(_boom())
        await a.flush(1)
        await b.flush(1)
        assert first.count == 1
        assert second.count == 0
        assert b.get_context() == {}
    finally:
        await a.stop(1)
        await b.stop(1)


def test_uncaught_exception_hook(clean_env, recorder, monkeypatch):
    """sys.excepthook reports the error and still calls the previous hook."""
    seen: list[BaseException] = []
    monkeypatch.setattr(sys, "excepthook", lambda t, e, tb: seen.append(e))

    checkend.configure(api_key="k", enabled=True, transport=recorder.transport)
    try:
        exc = _boom("crash")
        sys.excepthook(type(exc), exc, exc.__traceback__)

        assert seen == [exc]
        notice = recorder.last_notice
        assert notice.error_class == "Boom"
        assert notice.tags == ["unhandled", "uncaught_exception"]
        assert notice.context["unhandled"] is True
        assert notice.context["origin"] == "uncaught_exception"
    finally:
        asyncio.run(checkend.reset())

    exc = _boom("after stop")
    sys.excepthook(type(exc), exc, exc.__traceback__)
    assert seen[-1] is exc
    assert recorder.count == 1


def test_keyboard_interrupt_not_reported(clean_env, recorder, monkeypatch):
    seen: list[BaseException] = []
    monkeypatch.setattr(sys, "excepthook", lambda t, e, tb: seen.append(e))
    checkend.configure(api_key="k", enabled=True, transport=recorder.transport)
    try:
        interrupt = KeyboardInterrupt()
        sys.excepthook(KeyboardInterrupt, interrupt, None)
        assert seen == [interrupt]
        assert recorder.count == 0
    finally:
        asyncio.run(checkend.reset())


def test_thread_exception_hook(clean_env, recorder, monkeypatch):
    seen: list = []
    monkeypatch.setattr(threading, "excepthook", lambda args: seen.append(args.exc_value))
    checkend.configure(api_key="k", enabled=True, transport=recorder.transport)
    try:
        def run():
            raise Boom("in thread")

        thread = threading.Thread(target=run, name="worker-1")
        thread.start()
        thread.join(timeout=5)

        assert [str(e) for e in seen] == ["in thread"]
        notice = recorder.last_notice
        assert notice.context["thread"] == "worker-1"
        assert notice.tags == ["unhandled", "uncaught_exception"]
    finally:
        asyncio.run(checkend.reset())


@pytest.mark.asyncio
async def test_loop_exception_handler_reports_and_chains(clean_env, recorder):
    loop = asyncio.get_running_loop()
    previous_calls: list[dict] = []
    loop.set_exception_handler(lambda lp, ctx: previous_calls.append(ctx))
    try:
        session = checkend.configure(api_key="k", enabled=True, transport=recorder.transport)
        loop.call_exception_handler({"message": "Task exception was never retrieved", "exception": _boom("late")})
        loop.call_exception_handler({"message": "callback failed without exception"})
        await session.flush(1)

        assert len(previous_calls) == 2
        late, bare = recorder.notices
        assert late.error_class == "Boom"
        assert late.tags == ["unhandled", "unhandled_rejection"]
        assert late.context["rejection"] is True
        assert bare.error_class == "UnhandledRejection"
        assert bare.message == "callback failed without exception"

        await checkend.reset()
        assert loop.get_exception_handler() is not None
        loop.call_exception_handler({"message": "after stop"})
        assert len(previous_calls) == 3
    finally:
        loop.set_exception_handler(None)


@pytest.mark.asyncio
async def test_reconfigure_replaces_hooks(clean_env, recorder, monkeypatch):
    original = sys.excepthook
    first = checkend.configure(api_key="k", enabled=True, transport=recorder.transport)
    second = checkend.configure(api_key="k", enabled=True, transport=recorder.transport)
    try:
        assert checkend.get_session() is second
        assert sys.excepthook == second._handle_uncaught
    finally:
        await checkend.reset()
        await first.stop(0)
    assert sys.excepthook == original


async def _abandon_failing_task(message: str) -> None:
    """Let a task fail and drop it unawaited, as fire-and-forget code does."""

    async def fail():
        raise Boom(message)

    task = asyncio.get_running_loop().create_task(fail())
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert task.done()
    del task
    gc.collect()


def test_task_errors_reported_when_configured_outside_a_loop(clean_env, recorder):
    asyncio_handlers = list(logging.getLogger("asyncio").handlers)
    session = checkend.configure(api_key="k", enabled=True, transport=recorder.transport)

    async def main():
        await session.flush(1)
        assert asyncio.get_running_loop().get_exception_handler() == session._handle_loop_exception
        await _abandon_failing_task("lost")
        return await session.flush(1)

    try:
        assert asyncio.run(main()) is True
        assert recorder.count == 1
        notice = recorder.last_notice
        assert notice.error_class == "Boom"
        assert notice.message == "lost"
        assert notice.tags == ["unhandled", "unhandled_rejection"]
    finally:
        asyncio.run(checkend.reset())
    assert logging.getLogger("asyncio").handlers == asyncio_handlers


def test_task_errors_on_untouched_loop_reported(clean_env, recorder):
    """A loop the session never ran on is covered through asyncio's error log."""
    session = checkend.configure(api_key="k", enabled=True, transport=recorder.transport)

    async def main():
        assert asyncio.get_running_loop().get_exception_handler() is None
        await _abandon_failing_task("never awaited")
        return await session.flush(1)

    try:
        assert asyncio.run(main()) is True
        assert recorder.count == 1
        notice = recorder.last_notice
        assert notice.message == "never awaited"
        assert notice.context["rejection"] is True
    finally:
        asyncio.run(checkend.reset())


@pytest.mark.asyncio
async def test_reconfigure_keeps_context_until_reset(clean_env, recorder):
    first = checkend.configure(api_key="k", enabled=True, transport=recorder.transport)
    checkend.set_context({"deploy": "blue"})
    checkend.set_user({"id": 1})

    second = checkend.configure(api_key="k", enabled=True, transport=recorder.transport)
    try:
        assert second.get_context() == {"deploy": "blue"}
        assert checkend.get_user() == {"id": 1}
    finally:
        await checkend.reset()
        await first.stop(0)

    checkend.configure(api_key="k", enabled=True, transport=recorder.transport)
    try:
        assert checkend.get_context() == {}
    finally:
        await checkend.reset()
