"""Build notices from exceptions and project them onto the wire payload."""

import platform
import traceback
from datetime import datetime, timezone
from typing import Any

from checkend.models.notice import ErrorPayload, Notice, NoticePayload, Notifier
from checkend.version import VERSION

MAX_BACKTRACE_LINES = 100
MAX_MESSAGE_LENGTH = 10_000
PROJECT_ROOT = "[PROJECT_ROOT]"
NOTIFIER_NAME = "checkend-python"

_FRAME_MARKER = 'File "'


def create_notice(
    error: BaseException,
    *,
    context: dict[str, Any] | None = None,
    request: dict[str, Any] | None = None,
    user: dict[str, Any] | None = None,
    fingerprint: str | None = None,
    tags: list[str] | None = None,
    environment: str | None = None,
    root_path: str | None = None,
    app_name: str | None = None,
    revision: str | None = None,
) -> Notice:
    """Create a Notice from an exception and already-sanitized context."""
    return Notice(
        error_class=type(error).__name__ or "Error",
        message=truncate_message(str(error) or "Unknown error"),
        backtrace=parse_backtrace(format_stack(error), root_path),
        fingerprint=fingerprint or None,
        tags=list(dict.fromkeys(tags or [])),
        context=context or {},
        request=request or {},
        user=user or {},
        environment=environment or None,
        occurred_at=datetime.now(timezone.utc).isoformat(),
        app_name=app_name or None,
        revision=revision or None,
    )


def to_payload(notice: Notice) -> NoticePayload:
    """Convert a Notice to the API payload.

    ``environment``, ``app_name`` and ``revision`` are folded into the context
    only when set, and ``tags`` is left unset when the notice has none.
    """
    context = dict(notice.context)
    if notice.environment:
        context["environment"] = notice.environment
    if notice.app_name:
        context["app_name"] = notice.app_name
    if notice.revision:
        context["revision"] = notice.revision

    return NoticePayload(
        error=ErrorPayload(
            error_class=notice.error_class,
            message=notice.message,
            backtrace=list(notice.backtrace),
            occurred_at=notice.occurred_at,
            fingerprint=notice.fingerprint,
            tags=list(notice.tags) if notice.tags else None,
        ),
        context=context,
        request=dict(notice.request),
        user=dict(notice.user),
        notifier=notifier_info(),
    )


def notifier_info() -> Notifier:
    return Notifier(
        name=NOTIFIER_NAME,
        version=VERSION,
        language="python",
        language_version=platform.python_version(),
    )


def format_stack(error: BaseException) -> str:
    """Return the raw traceback text for an exception ("" if it was never raised)."""
    if error.__traceback__ is None:
        return ""
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def parse_backtrace(stack: str | None, root_path: str | None = None) -> list[str]:
    """Extract frame lines from traceback text, innermost frame first.

    Only ``File "..."`` lines are kept; source excerpts, carets and the
    exception line are dropped. Frames of exception group members, which
    Python prints behind ``|`` rails, are kept too.
    """
    if not stack:
        return []

    frames = [text for text in map(_frame_text, stack.splitlines()) if text.startswith(_FRAME_MARKER)]
    frames.reverse()
    return [clean_backtrace_line(line, root_path) for line in frames[:MAX_BACKTRACE_LINES]]


def _frame_text(line: str) -> str:
    return line.strip().lstrip("| ").strip()


def clean_backtrace_line(line: str, root_path: str | None = None) -> str:
    if not root_path:
        return line
    return line.replace(root_path, PROJECT_ROOT)


def truncate_message(message: str) -> str:
    if len(message) <= MAX_MESSAGE_LENGTH:
        return message
    return message[: MAX_MESSAGE_LENGTH - 3] + "..."
