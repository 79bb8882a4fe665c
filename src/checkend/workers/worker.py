"""Background delivery queue with exponential backoff throttling."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from checkend.client import Client
from checkend.config import Configuration
from checkend.models.notice import Notice
from checkend.notice import to_payload

BASE_THROTTLE = 1.05
MAX_THROTTLE = 100


class _Shutdown:
    def __repr__(self) -> str:
        return "SHUTDOWN"


SHUTDOWN = _Shutdown()


@dataclass
class FlushMarker:
    done: asyncio.Event = field(default_factory=asyncio.Event)


class Worker:
    """Sends queued notices one at a time from a single drain task.

    ``push`` only appends and, if no drain is active, starts one; the
    ``_draining`` flag is flipped before the task is created so a second
    drain can never start. Failed sends raise the throttle level, which
    delays subsequent sends by ``round((1.05 ** level - 1) * 1000)`` ms;
    each success lowers it again.
    """

    def __init__(
        self,
        config: Configuration,
        client: Client | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.logger: logging.Logger = config.logger
        self.client = client or Client(config)
        self._sleep = sleep
        self._queue: deque[Any] = deque()
        self._draining = False
        self._shutdown = False
        self._throttle = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return not self._shutdown

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def throttle_level(self) -> int:
        return self._throttle

    @property
    def throttle_delay(self) -> int:
        """Delay in milliseconds applied before the next send."""
        return round((BASE_THROTTLE**self._throttle - 1) * 1000)

    def push(self, notice: Notice) -> bool:
        """Queue a notice for delivery. Returns False if it was dropped."""
        if self._shutdown:
            self.logger.warning("Worker is shut down, dropping notice %s", notice.error_class)
            return False

        pending = self._pending_notices()
        if pending >= self.config.max_queue_size:
            self.logger.warning("Queue full (%d), dropping notice %s", pending, notice.error_class)
            return False

        self._queue.append(to_payload(notice).to_dict())
        self._start_drain()
        return True

    async def flush(self, timeout: float | None = None) -> bool:
        """Wait until everything queued before this call has been processed.

        Returns True when flushed, False if the wait timed out or the worker
        was already shut down.
        """
        if self._shutdown:
            self.logger.debug("Flush requested after shutdown")
            return False

        timeout = self.config.timeout if timeout is None else timeout
        marker = FlushMarker()
        self._queue.append(marker)
        self._start_drain()

        try:
            await asyncio.wait_for(marker.done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            if marker in self._queue:
                self._queue.remove(marker)
            self.logger.warning("Flush timed out after %.1fs with %d items queued", timeout, len(self._queue))
            return False
        return True

    async def stop(self, timeout: float | None = None) -> bool:
        """Stop accepting notices and wait for the queue to drain.

        Returns True if the drain finished in time. On timeout, items still
        queued are abandoned; a send already in flight is not cancelled.
        """
        if self._shutdown:
            return self._idle.is_set()

        self._shutdown = True
        self._queue.append(SHUTDOWN)
        self._start_drain()

        timeout = self.config.shutdown_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pending = self._pending_notices()
            self.logger.warning("Shutdown timed out after %.1fs, abandoning %d notices", timeout, pending)
            return False
        return True

    def _start_drain(self) -> None:
        if self._draining or not self._queue:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("No running event loop; %d items wait for the next drain", len(self._queue))
            return

        self._draining = True
        self._idle.clear()
        self._task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue:
                item = self._queue.popleft()

                if item is SHUTDOWN:
                    self._abandon_remaining()
                    break

                if isinstance(item, FlushMarker):
                    item.done.set()
                    continue

                await self._send_with_throttle(item)
        finally:
            self._draining = False
            self._idle.set()

    def _pending_notices(self) -> int:
        return sum(1 for item in self._queue if isinstance(item, dict))

    def _abandon_remaining(self) -> None:
        dropped = self._pending_notices()
        self._queue.clear()
        if dropped:
            self.logger.warning("Abandoned %d queued notices at shutdown", dropped)

    async def _send_with_throttle(self, payload: dict[str, Any]) -> None:
        if self._throttle > 0:
            delay = self.throttle_delay
            self.logger.debug("Throttling send by %dms (level %d)", delay, self._throttle)
            await self._sleep(delay / 1000)

        try:
            result = await self.client.send(payload)
        except Exception:
            self.logger.exception("Unexpected error while sending notice")
            result = None

        if result is None:
            self._throttle = min(self._throttle + 1, MAX_THROTTLE)
        else:
            self._throttle = max(self._throttle - 1, 0)
