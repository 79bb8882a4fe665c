"""HTTP client for posting notices to the Checkend ingestion API."""

from __future__ import annotations

import asyncio
import json
import logging
import platform
from typing import Any

import httpx
from pydantic import ValidationError

from checkend.config import Configuration
from checkend.errors.exceptions import DeliveryError
from checkend.models.notice import ApiResponse, Notice
from checkend.notice import NOTIFIER_NAME, to_payload
from checkend.version import VERSION

USER_AGENT = f"{NOTIFIER_NAME}/{VERSION} Python/{platform.python_version()}"

# status -> (code, log level, message prefix)
_STATUS_OUTCOMES: dict[int, tuple[str, int, str]] = {
    400: ("BAD_REQUEST", logging.WARNING, "Bad request"),
    401: ("AUTHENTICATION_FAILED", logging.ERROR, "Authentication failed - check your API key"),
    422: ("INVALID_PAYLOAD", logging.WARNING, "Invalid notice payload"),
    429: ("RATE_LIMITED", logging.WARNING, "Rate limited by server - backing off"),
}


class Client:
    """Performs one timed delivery attempt per call; never retries, never raises."""

    def __init__(self, config: Configuration, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self.logger = config.logger
        self._transport = transport

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Checkend-Ingestion-Key": self.config.api_key,
            "User-Agent": USER_AGENT,
        }

    async def send_notice(self, notice: Notice) -> ApiResponse | None:
        return await self.send(to_payload(notice).to_dict())

    async def send(self, payload: dict[str, Any]) -> ApiResponse | None:
        """Post one payload. Returns the API response, or None on any failure."""
        try:
            body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
            response = await asyncio.wait_for(self._post(body), timeout=self.config.timeout)
            return self._handle_response(response)
        except DeliveryError as exc:
            self.logger.log(exc.level, "%s", exc.message)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            self.logger.error("Request timeout after %.1fs", self.config.timeout)
        except Exception as exc:
            self.logger.error("Failed to send notice: %s", exc)
        return None

    async def _post(self, body: bytes) -> httpx.Response:
        timeout = httpx.Timeout(self.config.timeout, connect=self.config.connect_timeout)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            return await client.post(self.config.ingest_url, content=body, headers=self.headers)

    def _handle_response(self, response: httpx.Response) -> ApiResponse:
        status = response.status_code

        if status == 201:
            try:
                result = ApiResponse.model_validate(response.json())
            except (ValueError, ValidationError) as exc:
                raise DeliveryError(
                    "INVALID_RESPONSE", f"Unparseable success response: {exc}", status_code=status
                ) from exc
            self.logger.debug("Notice sent successfully: id=%s problem_id=%s", result.id, result.problem_id)
            return result

        body = response.text
        if status in _STATUS_OUTCOMES:
            code, level, prefix = _STATUS_OUTCOMES[status]
            message = prefix if status in (401, 429) else f"{prefix}: {body}"
            raise DeliveryError(code, message, status_code=status, level=level)
        if status >= 500:
            raise DeliveryError("SERVER_ERROR", f"Server error: {status} - {body}", status_code=status)
        raise DeliveryError("UNEXPECTED_RESPONSE", f"Unexpected response: {status} - {body}", status_code=status)
