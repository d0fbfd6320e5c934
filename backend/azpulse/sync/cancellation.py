"""Cooperative cancellation for running syncs."""

import asyncio
import time
from typing import Awaitable, Callable

from azpulse.core.config import settings
from azpulse.core.errors import SyncCancelledError


class CancellationToken:
    """
    Cancellation flag checked at every remote gateway call.

    A token can be cancelled in-process with :meth:`cancel`, or externally
    through ``poll``: an async callable returning a stop reason (or None),
    called at most every ``poll_interval`` seconds. The orchestrator uses
    it to read the sync log row so API processes and the stale reaper can
    stop worker jobs.
    """

    def __init__(
        self,
        poll: Callable[[], Awaitable[str | None]] | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self._event = asyncio.Event()
        self._poll = poll
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.SYNC_CANCEL_POLL_SECONDS
        )
        self._last_poll: float | None = None
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def checkpoint(self) -> None:
        """
        Raise if cancellation was requested.

        Raises:
            SyncCancelledError: If the token is cancelled
        """
        if not self._event.is_set() and self._poll is not None:
            now = time.monotonic()
            if self._last_poll is None or now - self._last_poll >= self._poll_interval:
                self._last_poll = now
                reason = await self._poll()
                if reason:
                    self.cancel(reason)
        if self._event.is_set():
            raise SyncCancelledError(self.reason or "Cancelled")
