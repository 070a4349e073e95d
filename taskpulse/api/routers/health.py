from __future__ import annotations

import importlib.metadata
import platform
import sqlite3
import time
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Request

from taskpulse.api.dependencies import get_app_config
from taskpulse.config.load_config import AppConfig
from taskpulse.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


router = APIRouter()


def _service_version() -> str | None:
    try:
        return importlib.metadata.version("taskpulse")
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version(config: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    """Build and storage info plus the simulation policy new runs are generated with."""
    return {
        "service": "taskpulse",
        "version": _service_version(),
        "api": "v1",
        "python": platform.python_version(),
        "storage": {
            "engine": "sqlite",
            "sqlite_version": sqlite3.sqlite_version,
            "schema_version": int(SCHEMA_VERSION),
        },
        "simulation": asdict(config.simulation),
    }


@router.get("/system/worker")
def system_worker(request: Request) -> dict[str, Any]:
    worker = getattr(request.app.state, "run_worker", None)
    snapshot: dict[str, Any] = {"enabled": worker is not None, "running": False}
    if worker is not None:
        snapshot.update(worker.status_snapshot())

    store = SQLiteStore()
    try:
        return {
            "ts": time.time(),
            "worker": snapshot,
            "queue": {"runs_by_status": store.count_runs_by_status()},
        }
    finally:
        store.close()
