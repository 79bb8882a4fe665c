"""Custom exception classes for the Checkend notifier."""

import logging


class CheckendError(Exception):
    """Base exception for Checkend."""

    def __init__(self, code: str, message: str, details=None, status_code: int | None = None):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code
        super().__init__(message)


class DeliveryError(CheckendError):
    """A delivery attempt to the ingestion API did not succeed.

    ``level`` is the logging level the failure is reported at.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int | None = None,
        level: int = logging.ERROR,
    ):
        super().__init__(code, message, status_code=status_code)
        self.level = level


class UnhandledRejection(Exception):
    """Stand-in for an unhandled task failure that carried no exception object."""

    def __init__(self, message: str = "Unhandled task error"):
        super().__init__(message)
