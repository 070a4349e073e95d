from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from taskpulse.runtime.lifecycle import RunLifecycle
from taskpulse.runtime.timeline import SimulationPolicy
from taskpulse.storage.sqlite_store import SQLiteStore, default_db_path


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerConfig:
    poll_interval_s: float = 0.5
    batch_size: int = 100


class RunWorker:
    """Single background thread that advances deferred runs.

    Each tick starts the oldest QUEUED run and completes EXECUTING runs whose
    simulated end time has passed.
    """

    def __init__(
        self,
        *,
        db_path: str | None = None,
        config: WorkerConfig | None = None,
        policy: SimulationPolicy | None = None,
    ) -> None:
        self._db_path = db_path or default_db_path()
        self._config = config or WorkerConfig()
        self._policy = policy or SimulationPolicy()
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._ticks = 0
        self._last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "poll_interval_s": float(self._config.poll_interval_s),
            "db_path": self._db_path,
            "ticks": self._ticks,
            "last_error": self._last_error,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="taskpulse-run-worker", daemon=True)
        self._thread.start()
        logger.info("Run worker started", extra={"db_path": self._db_path})

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)
        logger.info("Run worker stopped")

    def tick(self, lifecycle: RunLifecycle) -> int:
        """Advance runs once. Returns how many runs changed state."""
        changed = 0
        if lifecycle.start_next() is not None:
            changed += 1
        changed += len(lifecycle.complete_due(limit=self._config.batch_size))
        self._ticks += 1
        return changed

    def _run_loop(self) -> None:
        store = SQLiteStore(self._db_path)
        lifecycle = RunLifecycle(store, policy=self._policy)
        try:
            while not self._stop.is_set():
                try:
                    changed = self.tick(lifecycle)
                except Exception as e:
                    # Keep the loop alive; the failing run stays in its current state.
                    self._last_error = str(e)
                    logger.exception("Run worker tick failed")
                    changed = 0
                if changed == 0:
                    self._stop.wait(self._config.poll_interval_s)
        finally:
            store.close()
