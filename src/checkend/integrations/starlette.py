"""Starlette / FastAPI middleware: per-request scope and error capture."""

from __future__ import annotations

import json
from typing import Any

from starlette.datastructures import QueryParams
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response
from starlette.types import ASGIApp

import checkend
from checkend.logging_config import bind_request_context, clear_request_context
from checkend.models.notice import RequestInfo, User
from checkend.session import Session

FILTERED_HEADERS = {"cookie", "authorization", "x-api-key", "x-auth-token"}
EXCLUDED_HEADERS = {"host", "connection", "accept-encoding"}

MAX_BODY_BYTES = 64 * 1024
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

_NAME_ATTRIBUTES = ("name", "full_name", "display_name", "username")


class CheckendMiddleware(BaseHTTPMiddleware):
    """Open a notice scope per request and report errors raised by endpoints.

    Add it outermost so every request runs inside its own scope::

        app.add_middleware(CheckendMiddleware)

    The exception is re-raised after reporting so the framework's own error
    handling still runs.
    """

    def __init__(self, app: ASGIApp, session: Session | None = None) -> None:
        super().__init__(app)
        self._session = session

    @property
    def session(self) -> Session | None:
        return self._session or checkend.get_session()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        session = self.session
        if session is None:
            return await call_next(request)
        return await session.run_scoped_async(self._handle, session, request, call_next)

    async def _handle(self, session: Session, request: Request, call_next: RequestResponseEndpoint) -> Response:
        config = session.config
        request_id = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")

        if config.send_request_data:
            session.set_request(extract_request_info(request, body=await extract_body(request)))

        context = {"method": request.method, "path": request.url.path}
        if request_id:
            context["request_id"] = request_id
        session.set_context(context)

        if config.send_user_data:
            user = extract_user(request)
            if user is not None:
                session.set_user(user)

        bind_request_context(request_id)
        try:
            return await call_next(request)
        except Exception as exc:
            # path params only exist once the router has matched
            path_params = request.scope.get("path_params")
            if config.send_request_data and path_params:
                session.set_request({"params": dict(path_params)})
            session.notify(exc, tags=["starlette"])
            raise
        finally:
            clear_request_context()


def extract_request_info(request: Request, body: Any = None) -> RequestInfo:
    return RequestInfo(
        url=str(request.url),
        method=request.method,
        path=request.url.path,
        query=request.url.query or None,
        headers=extract_headers(request),
        params=dict(request.path_params) or None,
        body=body,
        remote_ip=extract_remote_ip(request),
        user_agent=request.headers.get("user-agent"),
        referer=request.headers.get("referer"),
        content_type=request.headers.get("content-type"),
        content_length=request.headers.get("content-length"),
    )


async def extract_body(request: Request) -> Any:
    """Parse a JSON or urlencoded form body, or return None.

    Only bodies with a declared length up to ``MAX_BODY_BYTES`` are read.
    The body stays readable by the endpoint afterwards.
    """
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    is_json = content_type == "application/json" or content_type.endswith("+json")
    if not is_json and content_type != FORM_CONTENT_TYPE:
        return None
    try:
        length = int(request.headers.get("content-length", ""))
    except ValueError:
        return None
    if length <= 0 or length > MAX_BODY_BYTES:
        return None

    try:
        raw = await request.body()
    except ClientDisconnect:
        return None
    text = raw.decode("utf-8", errors="replace")

    if is_json:
        try:
            return json.loads(text)
        except ValueError:
            return text

    form = QueryParams(text)
    fields: dict[str, Any] = {}
    for key in form.keys():
        values = form.getlist(key)
        fields[key] = values[0] if len(values) == 1 else values
    return fields


def extract_headers(request: Request) -> dict[str, str]:
    """Copy headers, masking credentials and dropping transport-level noise."""
    headers: dict[str, str] = {}
    for key in request.headers.keys():
        lower = key.lower()
        if lower in EXCLUDED_HEADERS:
            continue
        if lower in FILTERED_HEADERS:
            headers[key] = "[FILTERED]"
        else:
            headers[key] = ", ".join(request.headers.getlist(key))
    return headers


def extract_remote_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def extract_user(request: Request) -> User | None:
    """Read id/email/name from ``scope["user"]`` (set by AuthenticationMiddleware)."""
    user = request.scope.get("user")
    if user is None:
        return None

    def read(attr: str) -> Any:
        if isinstance(user, dict):
            return user.get(attr)
        return getattr(user, attr, None)

    fields: dict[str, Any] = {}
    user_id = read("id")
    if user_id is not None:
        fields["id"] = user_id if isinstance(user_id, (str, int)) else str(user_id)
    email = read("email")
    if email is not None:
        fields["email"] = email
    for attr in _NAME_ATTRIBUTES:
        name = read(attr)
        if name:
            fields["name"] = name
            break

    return User(**fields) if fields else None
