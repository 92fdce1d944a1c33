"""Task endpoints: register, read, complete, cancel."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from flextasker_service.errors import ServiceError
from flextasker_service.models import BudgetType
from flextasker_service.routers.helpers import (
    get_task_registry,
    parse_datetime,
    parse_enum,
    parse_json_body,
    require_money,
    require_str,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /tasks: register task
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Register a new OPEN task."""
    data = parse_json_body(await request.body())

    owner_id = require_str(data, "owner_id")
    title = require_str(data, "title")
    budget = require_money(data, "budget")
    budget_type = parse_enum(BudgetType, data.get("budget_type", "fixed"), "budget_type")
    deadline_raw = data.get("deadline")
    deadline = None if deadline_raw is None else parse_datetime(deadline_raw, "deadline")

    registry = get_task_registry()
    task = await run_in_threadpool(
        registry.register_task, owner_id, title, budget, budget_type, deadline
    )
    return JSONResponse(status_code=201, content=task.to_dict())


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> JSONResponse:
    """Get a task by ID."""
    task = await run_in_threadpool(get_task_registry().get_task, task_id)
    return JSONResponse(status_code=200, content=task.to_dict())


@router.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: Request) -> JSONResponse:
    """Mark an in-progress task as completed."""
    data = parse_json_body(await request.body())
    owner_id = require_str(data, "owner_id")

    task = await run_in_threadpool(get_task_registry().complete_task, task_id, owner_id)
    return JSONResponse(status_code=200, content=task.to_dict())


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> JSONResponse:
    """Cancel an open task, rejecting its pending bids."""
    data = parse_json_body(await request.body())
    owner_id = require_str(data, "owner_id")

    task = await run_in_threadpool(get_task_registry().cancel_task, task_id, owner_id)
    return JSONResponse(status_code=200, content=task.to_dict())


# ---------------------------------------------------------------------------
# Method-not-allowed: task action routes
# ---------------------------------------------------------------------------


@router.api_route("/tasks/{task_id}/complete", methods=["GET", "PUT", "PATCH", "DELETE"])
@router.api_route("/tasks/{task_id}/cancel", methods=["GET", "PUT", "PATCH", "DELETE"])
async def task_action_method_not_allowed(task_id: str) -> None:
    """Reject wrong methods on task action routes."""
    _ = task_id
    raise ServiceError("METHOD_NOT_ALLOWED", "Method not allowed", 405, {})
