"""Capture notices in tests instead of sending them.

    recorder = NoticeRecorder()
    session = checkend.configure(api_key="test-key", enabled=True, transport=recorder.transport)
    checkend.notify(ValueError("boom"))
    await session.flush()
    assert recorder.last_notice.error_class == "ValueError"
"""

import json

import httpx

from checkend.models.notice import Notice

INGEST_PATH = "/ingest/v1/errors"


class NoticeRecorder:
    """Records every notice posted through :attr:`transport` and answers 201."""

    def __init__(self) -> None:
        self._notices: list[Notice] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        if not request.url.path.endswith(INGEST_PATH):
            return httpx.Response(404, json={"error": "not found"})
        self._notices.append(notice_from_payload(json.loads(request.content)))
        count = len(self._notices)
        return httpx.Response(201, json={"id": count, "problem_id": count})

    @property
    def notices(self) -> list[Notice]:
        return list(self._notices)

    @property
    def first_notice(self) -> Notice | None:
        return self._notices[0] if self._notices else None

    @property
    def last_notice(self) -> Notice | None:
        return self._notices[-1] if self._notices else None

    @property
    def has_notices(self) -> bool:
        return bool(self._notices)

    @property
    def count(self) -> int:
        return len(self._notices)

    def clear(self) -> None:
        self._notices.clear()


def notice_from_payload(payload: dict) -> Notice:
    """Rebuild a Notice from a wire payload."""
    error = payload["error"]
    context = payload.get("context", {})
    return Notice(
        error_class=error["class"],
        message=error["message"],
        backtrace=error.get("backtrace", []),
        fingerprint=error.get("fingerprint"),
        tags=error.get("tags", []),
        context=context,
        request=payload.get("request", {}),
        user=payload.get("user", {}),
        environment=context.get("environment"),
        occurred_at=error["occurred_at"],
        app_name=context.get("app_name"),
        revision=context.get("revision"),
    )
