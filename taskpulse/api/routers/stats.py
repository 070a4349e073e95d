from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from taskpulse.runtime.projection import project_stats
from taskpulse.runtime.stats import collect_run_stats
from taskpulse.storage.sqlite_store import SQLiteStore


router = APIRouter()


@router.get("/projects/{project}/stats")
def get_stats(project: str) -> dict[str, Any]:
    """Dashboard numbers: runs by status and task, daily counts for 30 days, success rate."""
    store = SQLiteStore()
    try:
        return project_stats(collect_run_stats(store, project))
    finally:
        store.close()
