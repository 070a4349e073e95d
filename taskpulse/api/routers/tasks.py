from __future__ import annotations

import sqlite3
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from taskpulse.api.errors import APIError
from taskpulse.runtime.models import StepTemplate
from taskpulse.runtime.projection import project_task
from taskpulse.storage.sqlite_store import SQLiteStore


router = APIRouter()


class StepTemplateInput(BaseModel):
    name: str = Field(min_length=1)
    avg_duration_ms: int = Field(ge=0)


class SimulationOverrides(BaseModel):
    failure_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    jitter_pct: float | None = Field(default=None, ge=0.0, lt=1.0)
    flaky_attempts: int | None = Field(default=None, ge=0)


class RegisterTaskRequest(BaseModel):
    name: str = Field(min_length=1)
    handler: str = Field(min_length=1, description="Machine name, unique per project.")
    description: str | None = Field(default=None)
    retry_limit: int = Field(default=0, ge=0)
    timeout_ms: int | None = Field(default=None, gt=0)
    step_templates: list[StepTemplateInput] = Field(default_factory=list)
    simulation: SimulationOverrides = Field(default_factory=SimulationOverrides)


@router.post("/projects/{project}/tasks", status_code=201)
def register_task(project: str, body: RegisterTaskRequest) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        try:
            task = store.create_task(
                project=project,
                name=body.name,
                handler=body.handler,
                description=body.description,
                retry_limit=int(body.retry_limit),
                timeout_ms=body.timeout_ms,
                step_templates=[
                    StepTemplate(name=t.name, avg_duration_ms=int(t.avg_duration_ms)) for t in body.step_templates
                ],
                simulation=body.simulation.model_dump(exclude_none=True),
            )
        except ValueError as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
        except sqlite3.IntegrityError as e:
            raise APIError(
                status_code=409,
                code="conflict",
                message="A task with this handler already exists in the project.",
                details={"handler": body.handler},
            ) from e
        return {"task": project_task(task)}
    finally:
        store.close()


@router.get("/projects/{project}/tasks")
def list_tasks(project: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"items": [project_task(t) for t in store.list_tasks(project=project)]}
    finally:
        store.close()


@router.get("/projects/{project}/tasks/{task_id}")
def get_task(project: str, task_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        task = store.get_task(task_id=task_id, project=project)
        if task is None:
            raise APIError(status_code=404, code="not_found", message="Task not found.")
        return {"task": project_task(task)}
    finally:
        store.close()
