from __future__ import annotations

import asyncio


class CancellationToken:
    """One-shot cancellation flag shared by every wait of a single owner.

    Sync callers poll `cancelled`; async callers wait through `sleep()`, which
    returns early as soon as `request_cancel()` is called.
    """

    def __init__(self) -> None:
        self._cancel_requested = False
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    def request_cancel(self) -> None:
        self._cancel_requested = True
        if self._event is not None:
            self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Wait up to `seconds`. Returns False if cancelled before or during the wait."""
        if self._cancel_requested:
            return False
        if self._event is None:
            self._event = asyncio.Event()
        delay = max(0.0, float(seconds))
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return not self._cancel_requested
        return False
