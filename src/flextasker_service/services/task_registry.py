"""Minimal task lifecycle: register, read, complete, cancel."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from flextasker_service.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from flextasker_service.logging import get_logger
from flextasker_service.models import BudgetType, Task, TaskStatus, utc_now
from flextasker_service.money import MAX_AMOUNT, exceeds_limit, quantize

if TYPE_CHECKING:
    from datetime import datetime
    from decimal import Decimal

    from flextasker_service.services.marketplace_store import MarketplaceStore, StoreTransaction


def _load_owned_task(tx: StoreTransaction, task_id: str, owner_id: str, action: str) -> Task:
    task = tx.get_task(task_id)
    if task is None:
        raise NotFoundError(
            "TASK_NOT_FOUND", "Task not found", {"task_id": task_id, "action": action}
        )
    if task.owner_id != owner_id:
        raise AuthorizationError(
            "NOT_TASK_OWNER",
            "Only the task owner can perform this action",
            {"task_id": task_id, "action": action},
        )
    return task


class TaskRegistry:
    """Local mirror of the tasks that bids and payments refer to."""

    def __init__(self, store: MarketplaceStore) -> None:
        self._store = store

    def register_task(
        self,
        owner_id: str,
        title: str,
        budget: Decimal,
        budget_type: BudgetType,
        deadline: datetime | None,
    ) -> Task:
        action = "register_task"
        if not title.strip():
            raise ValidationError(
                "INVALID_TITLE", "title must not be empty", {"field": "title", "action": action}
            )
        if exceeds_limit(budget) or quantize(budget) <= 0:
            raise ValidationError(
                "INVALID_BUDGET",
                f"Budget must be greater than zero and at most {MAX_AMOUNT}",
                {"budget": str(budget), "action": action},
            )
        now = utc_now()
        if deadline is not None and deadline <= now:
            raise ValidationError(
                "INVALID_DEADLINE",
                "Deadline must be in the future",
                {"deadline": deadline.isoformat(), "action": action},
            )

        task = Task(
            task_id=f"t-{uuid.uuid4()}",
            owner_id=owner_id,
            title=title,
            status=TaskStatus.OPEN,
            budget=quantize(budget),
            budget_type=budget_type,
            deadline=deadline,
            created_at=now,
        )
        with self._store.transaction() as tx:
            tx.insert_task(task)

        get_logger(__name__).info(
            "Task registered", extra={"task_id": task.task_id, "owner_id": owner_id}
        )
        return task

    def get_task(self, task_id: str) -> Task:
        with self._store.snapshot() as tx:
            task = tx.get_task(task_id)
        if task is None:
            raise NotFoundError(
                "TASK_NOT_FOUND", "Task not found", {"task_id": task_id, "action": "get_task"}
            )
        return task

    def complete_task(self, task_id: str, owner_id: str) -> Task:
        """IN_PROGRESS to COMPLETED, by the owner. Payment becomes possible afterwards."""
        action = "complete_task"
        with self._store.transaction() as tx:
            task = _load_owned_task(tx, task_id, owner_id, action)
            moved = tx.set_task_status(
                task_id,
                TaskStatus.COMPLETED,
                {"completed_at": utc_now()},
                expected_status=TaskStatus.IN_PROGRESS,
            )
            if not moved:
                raise ConflictError(
                    "TASK_NOT_IN_PROGRESS",
                    "Only an in-progress task can be completed",
                    {"task_id": task_id, "status": task.status.value, "action": action},
                )
            updated = _load_owned_task(tx, task_id, owner_id, action)

        get_logger(__name__).info("Task completed", extra={"task_id": task_id})
        return updated

    def cancel_task(self, task_id: str, owner_id: str) -> Task:
        """OPEN to CANCELLED, by the owner. Pending bids are rejected with it."""
        action = "cancel_task"
        now = utc_now()
        with self._store.transaction() as tx:
            task = _load_owned_task(tx, task_id, owner_id, action)
            moved = tx.set_task_status(
                task_id,
                TaskStatus.CANCELLED,
                {"cancelled_at": now},
                expected_status=TaskStatus.OPEN,
            )
            if not moved:
                raise ConflictError(
                    "TASK_NOT_OPEN",
                    "Only an open task can be cancelled",
                    {"task_id": task_id, "status": task.status.value, "action": action},
                )
            rejected_count = tx.reject_pending_bids(task_id, now, exclude_bid_id=None)
            updated = _load_owned_task(tx, task_id, owner_id, action)

        get_logger(__name__).info(
            "Task cancelled", extra={"task_id": task_id, "rejected_count": rejected_count}
        )
        return updated

    def get_stats(self) -> dict[str, Any]:
        """Task counts for the health endpoint."""
        with self._store.snapshot() as tx:
            counts = tx.count_tasks_by_status()
        by_status = {status.value: counts.get(status.value, 0) for status in TaskStatus}
        return {"total_tasks": sum(by_status.values()), "tasks_by_status": by_status}
