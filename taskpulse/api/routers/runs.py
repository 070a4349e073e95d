from __future__ import annotations

import hashlib
import json
from typing import Any

from fastapi import APIRouter, Depends, Header, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from taskpulse.api.dependencies import get_app_config
from taskpulse.api.errors import APIError
from taskpulse.api.pagination import CursorError, PageCursor, render_page
from taskpulse.config.load_config import AppConfig
from taskpulse.runtime.lifecycle import RunLifecycle
from taskpulse.runtime.models import RunStatus
from taskpulse.runtime.projection import project_run, project_run_detail
from taskpulse.runtime.streaming import SSE_HEADERS, RunEventStream, RunSnapshot
from taskpulse.storage.sqlite_store import SQLiteStore


router = APIRouter()


class TriggerRunRequest(BaseModel):
    task_id: str = Field(min_length=1)
    input: dict[str, Any] | None = Field(default=None, description="JSON object passed to the task.")
    triggered_by: str = Field(default="manual", min_length=1, max_length=64)
    deferred: bool = Field(default=False, description="Queue the run for the background worker.")


@router.post("/projects/{project}/runs", status_code=201)
def trigger_run(
    project: str,
    body: TriggerRunRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    config: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        lifecycle = RunLifecycle(store, policy=config.simulation)
        if not idempotency_key:
            detail = lifecycle.trigger(
                project,
                body.task_id,
                body.input,
                body.triggered_by,
                deferred=bool(body.deferred),
            )
            return project_run_detail(detail)

        # Idempotency: keys are scoped per project; the body hash guards against key reuse.
        key = f"{project}:runs:{idempotency_key}"
        req_json = json.dumps(body.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        request_hash = hashlib.sha256(req_json.encode("utf-8")).hexdigest()

        with store.transaction(mode="IMMEDIATE"):
            existing = store.get_idempotency(key)
            if existing is not None:
                if str(existing["request_hash"]) != request_hash:
                    raise APIError(
                        status_code=409,
                        code="conflict",
                        message="Idempotency-Key was already used with a different request body.",
                    )
                return json.loads(str(existing["response_json"]))

            detail = lifecycle.trigger_locked(
                project,
                body.task_id,
                body.input,
                body.triggered_by,
                deferred=bool(body.deferred),
            )
            response = project_run_detail(detail)
            store.put_idempotency(
                key=key,
                request_hash=request_hash,
                response_json=json.dumps(response, ensure_ascii=False, separators=(",", ":")),
                commit=False,
            )
            return response
    finally:
        store.close()


@router.get("/projects/{project}/runs")
def list_runs(
    project: str,
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
    task_id: str | None = Query(default=None),
    triggered_by: str | None = Query(default=None),
    created_from: float | None = Query(default=None, alias="from", description="Epoch seconds, inclusive."),
    created_to: float | None = Query(default=None, alias="to", description="Epoch seconds, inclusive."),
    config: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    try:
        cursor_obj = PageCursor.decode(cursor)
    except CursorError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    statuses = [s.strip().upper() for s in (status or []) if s.strip()]
    unknown = sorted({s for s in statuses if s not in RunStatus.__members__})
    if unknown:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message="Unknown run status filter.",
            details={"status": unknown},
        )
    if created_from is not None and created_to is not None and created_from > created_to:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message="`from` must not be after `to`.",
            details={"from": created_from, "to": created_to},
        )

    page_size = min(int(limit or config.limits.runs_list_default_limit), config.limits.runs_list_max_limit)

    store = SQLiteStore()
    try:
        page = RunLifecycle(store, policy=config.simulation).list(
            project,
            limit=page_size,
            cursor=cursor_obj.as_tuple() if cursor_obj is not None else None,
            statuses=statuses or None,
            task_id=(task_id.strip() if task_id else None),
            triggered_by=(triggered_by.strip() if triggered_by else None),
            created_from=created_from,
            created_to=created_to,
        )
        return render_page(page, lambda item: project_run(item[0], attempt=item[1]))
    finally:
        store.close()


@router.get("/projects/{project}/runs/{run_id}")
def get_run(project: str, run_id: str, config: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        detail = RunLifecycle(store, policy=config.simulation).get(project, run_id)
        return project_run_detail(detail)
    finally:
        store.close()


@router.post("/projects/{project}/runs/{run_id}/cancel")
def cancel_run(project: str, run_id: str, config: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        run = RunLifecycle(store, policy=config.simulation).cancel(project, run_id)
        return {"run": project_run(run)}
    finally:
        store.close()


@router.post("/projects/{project}/runs/{run_id}/retry", status_code=201)
def retry_run(project: str, run_id: str, config: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        detail = RunLifecycle(store, policy=config.simulation).retry(project, run_id)
        return project_run_detail(detail)
    finally:
        store.close()


def _load_snapshot(project: str, run_id: str) -> RunSnapshot:
    store = SQLiteStore()
    try:
        return RunSnapshot.load(store, project=project, run_id=run_id)
    finally:
        store.close()


@router.get("/projects/{project}/runs/{run_id}/stream")
async def stream_run(project: str, run_id: str, config: AppConfig = Depends(get_app_config)) -> StreamingResponse:
    """Replay a run's logs as server-sent events (`log`, `status`, `ping`)."""
    snapshot = await run_in_threadpool(_load_snapshot, project, run_id)
    stream = RunEventStream(snapshot, config.stream)
    return StreamingResponse(stream.encoded(), media_type="text/event-stream", headers=SSE_HEADERS)
