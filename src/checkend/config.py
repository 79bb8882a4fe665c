"""Notifier configuration: environment settings and the frozen Configuration."""

import logging
import os
import re
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

DEFAULT_ENDPOINT = "https://app.checkend.io"

DEFAULT_FILTER_KEYS = [
    "password",
    "password_confirmation",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "access_token",
    "accesstoken",
    "refresh_token",
    "refreshtoken",
    "authorization",
    "bearer",
    "credit_card",
    "creditcard",
    "card_number",
    "cardnumber",
    "cvv",
    "cvc",
    "ssn",
]

# errno names for connection noise the host cannot act on
DEFAULT_IGNORED_EXCEPTIONS = [
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "EPIPE",
]

_ENABLED_ENVIRONMENTS = ("production", "staging")


class Settings(BaseSettings):
    """Values read from ``CHECKEND_*`` environment variables or ``.env``."""

    api_key: str = ""
    endpoint: str = DEFAULT_ENDPOINT
    environment: str = "development"
    debug: bool = False
    app_name: str | None = None
    revision: str | None = None
    log_format: str | None = None

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "CHECKEND_",
        "extra": "ignore",
    }


class Configuration(BaseModel):
    """Immutable notifier settings for one session."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True, extra="forbid")

    api_key: str = ""
    endpoint: str = DEFAULT_ENDPOINT
    environment: str = "development"
    enabled: bool | None = None
    timeout: float = Field(15.0, gt=0)
    connect_timeout: float = Field(5.0, gt=0)
    ignored_exceptions: tuple[str | re.Pattern, ...] = tuple(DEFAULT_IGNORED_EXCEPTIONS)
    filter_keys: tuple[str, ...] = tuple(DEFAULT_FILTER_KEYS)
    before_notify: tuple[Callable[..., Any], ...] = ()
    debug: bool = False
    log_format: Literal["console", "json"] | None = None
    capture_uncaught_exceptions: bool = True
    capture_unhandled_rejections: bool = True
    async_mode: bool = True
    max_queue_size: int = Field(1000, gt=0)
    shutdown_timeout: float = Field(5.0, ge=0)
    root_path: str | None = None
    logger: logging.Logger = Field(default_factory=lambda: logging.getLogger("checkend"))
    app_name: str | None = None
    revision: str | None = None
    send_request_data: bool = True
    send_user_data: bool = True
    send_environment_data: bool = False

    @classmethod
    def from_options(cls, settings: Settings | None = None, **options: Any) -> "Configuration":
        """Build a configuration, filling unset options from the environment.

        User-supplied ``ignored_exceptions`` and ``filter_keys`` are appended
        to the built-in defaults rather than replacing them.
        """
        settings = settings or Settings()
        values: dict[str, Any] = {
            "api_key": settings.api_key,
            "endpoint": settings.endpoint,
            "environment": settings.environment,
            "debug": settings.debug,
            "app_name": settings.app_name,
            "revision": settings.revision,
            "log_format": settings.log_format,
            "root_path": os.getcwd(),
        }
        values.update({k: v for k, v in options.items() if v is not None})

        values["ignored_exceptions"] = tuple(DEFAULT_IGNORED_EXCEPTIONS) + tuple(
            options.get("ignored_exceptions") or ()
        )
        values["filter_keys"] = tuple(DEFAULT_FILTER_KEYS) + tuple(options.get("filter_keys") or ())
        values["before_notify"] = tuple(options.get("before_notify") or ())

        config = cls(**values)
        if config.debug and "logger" not in options:
            config.logger.setLevel(logging.DEBUG)
        return config

    def is_valid(self) -> bool:
        return bool(self.api_key and self.endpoint)

    @property
    def is_enabled(self) -> bool:
        """Explicit ``enabled`` wins; otherwise only production and staging report."""
        if self.enabled is not None:
            return self.enabled
        return self.environment in _ENABLED_ENVIRONMENTS

    @property
    def ingest_url(self) -> str:
        return f"{self.endpoint.rstrip('/')}/ingest/v1/errors"

    def should_ignore(self, error_class: str, message: str, code: str | None = None) -> bool:
        """Return True if the error matches any ignore pattern by class, message or code."""
        for pattern in self.ignored_exceptions:
            if isinstance(pattern, re.Pattern):
                if pattern.search(error_class) or pattern.search(message):
                    return True
                if code and pattern.search(code):
                    return True
            elif pattern in (error_class, message) or (code is not None and pattern == code):
                return True
        return False
