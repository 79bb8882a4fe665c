"""Pre-send filter callbacks that may veto a notice."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any

from checkend.models.notice import Notice


class FilterDecision(str, Enum):
    PROCEED = "proceed"
    VETO = "veto"


BeforeNotifyCallback = Callable[[Notice], Any]


def _decision(result: Any) -> FilterDecision:
    """Map a callback return value to a decision.

    ``FilterDecision.VETO`` and ``False`` veto; anything else (``None``,
    ``True``, ``PROCEED``) lets the notice through.
    """
    if result is FilterDecision.VETO or result is False:
        return FilterDecision.VETO
    return FilterDecision.PROCEED


def run_before_notify(
    notice: Notice,
    callbacks: Iterable[BeforeNotifyCallback],
    logger: logging.Logger,
) -> FilterDecision:
    """Run each callback in order; the first veto wins.

    A callback that raises is logged as a warning and skipped, and the
    remaining callbacks still run.
    """
    for callback in callbacks:
        try:
            result = callback(notice)
        except Exception as exc:
            logger.warning("before_notify callback %r failed: %s", callback, exc)
            continue
        if _decision(result) is FilterDecision.VETO:
            logger.debug("Notice blocked by before_notify callback %r", callback)
            return FilterDecision.VETO
    return FilterDecision.PROCEED
