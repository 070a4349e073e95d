"""Server-sent event replay of a run's logs.

A subscription reads the run once and replays it:
- recent runs (created within `recent_window_s`) are live-paced: the first log
  goes out immediately, every following log waits until its offset from the
  run start has elapsed since the subscriber attached (capped per log), then a
  short grace period before the final `status` event;
- older runs are flushed: all logs, `status`, then the stream closes shortly
  after.

A `ping` heartbeat runs for the whole life of the subscription. Every wait
goes through the subscription's `CancellationToken`, so `close()` tears down
all pending timers at once.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from taskpulse.runtime.errors import RunNotFoundError
from taskpulse.runtime.models import LogEntry, Run
from taskpulse.runtime.projection import project_log, project_status
from taskpulse.storage.sqlite_store import SQLiteStore
from taskpulse.utils.cancel import CancellationToken


logger = logging.getLogger(__name__)

SSE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Headers": "Cache-Control",
}

_CLOSE = object()


@dataclass(frozen=True)
class StreamSettings:
    recent_window_s: float = 30.0
    max_log_delay_s: float = 5.0
    heartbeat_interval_s: float = 15.0
    live_grace_s: float = 0.5
    flush_close_delay_s: float = 0.1


@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    def encode(self) -> str:
        payload = json.dumps(self.data, ensure_ascii=False, separators=(",", ":"))
        return f"event: {self.event}\ndata: {payload}\n\n"


@dataclass(frozen=True)
class RunSnapshot:
    run: Run
    logs: tuple[LogEntry, ...]

    @classmethod
    def load(cls, store: SQLiteStore, *, project: str, run_id: str) -> RunSnapshot:
        run = store.get_run(run_id=run_id, project=project)
        if run is None:
            raise RunNotFoundError("Run not found.", details={"run_id": run_id})
        return cls(run=run, logs=tuple(store.list_logs(run_id=run_id)))


def is_recent(run: Run, *, now: float, window_s: float) -> bool:
    return (now - run.created_at) <= window_s


def next_log_delay(entry: LogEntry, *, anchor: float, elapsed_s: float, max_delay_s: float) -> float:
    """Seconds to wait before emitting `entry`, clamped to `[0, max_delay_s]`."""
    offset = entry.timestamp - anchor
    return min(max(0.0, offset - elapsed_s), max_delay_s)


class RunEventStream:
    """One subscriber's view of a run. Consume `events()` (or `encoded()`) once."""

    def __init__(
        self,
        snapshot: RunSnapshot,
        settings: StreamSettings | None = None,
        *,
        now: float | None = None,
    ) -> None:
        self.snapshot = snapshot
        self.settings = settings or StreamSettings()
        self._attached_at = float(now if now is not None else time.time())
        self._token = CancellationToken()
        self._queue: asyncio.Queue[Any] | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._error: BaseException | None = None
        self._started = False
        self._closed = False

    @property
    def live(self) -> bool:
        return bool(self.snapshot.logs) and is_recent(
            self.snapshot.run, now=self._attached_at, window_s=self.settings.recent_window_s
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _emit(self, event: StreamEvent) -> None:
        if self._closed or self._queue is None:
            return
        self._queue.put_nowait(event)

    def _log_event(self, entry: LogEntry) -> StreamEvent:
        return StreamEvent("log", project_log(entry))

    def _status_event(self) -> StreamEvent:
        return StreamEvent("status", project_status(self.snapshot.run))

    async def _pace(self) -> None:
        logs = self.snapshot.logs
        run = self.snapshot.run
        try:
            if self.live:
                loop = asyncio.get_running_loop()
                attached = loop.time()
                anchor = run.started_at if run.started_at is not None else run.created_at
                for i, entry in enumerate(logs):
                    if i > 0:
                        delay = next_log_delay(
                            entry,
                            anchor=anchor,
                            elapsed_s=loop.time() - attached,
                            max_delay_s=self.settings.max_log_delay_s,
                        )
                        if not await self._token.sleep(delay):
                            return
                    self._emit(self._log_event(entry))
                if not await self._token.sleep(self.settings.live_grace_s):
                    return
                self._emit(self._status_event())
            else:
                for entry in logs:
                    self._emit(self._log_event(entry))
                self._emit(self._status_event())
                if not await self._token.sleep(self.settings.flush_close_delay_s):
                    return
        except Exception as e:
            # Re-raised to the consumer by events().
            self._error = e
        finally:
            self.close()

    async def _heartbeat(self) -> None:
        while await self._token.sleep(self.settings.heartbeat_interval_s):
            self._emit(StreamEvent("ping", {}))

    def close(self) -> None:
        """Stop the subscription. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True
        self._token.request_cancel()

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        if self._queue is not None:
            self._queue.put_nowait(_CLOSE)
        logger.debug("Run stream closed", extra={"run_id": self.snapshot.run.run_id})

    async def events(self) -> AsyncIterator[StreamEvent]:
        if self._started:
            raise RuntimeError("A RunEventStream can only be consumed once.")
        self._started = True
        if self._closed:
            return

        self._queue = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._pace()),
            asyncio.create_task(self._heartbeat()),
        ]
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSE:
                    break
                yield item
            if self._error is not None:
                raise self._error
        finally:
            self.close()

    async def encoded(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield event.encode()
