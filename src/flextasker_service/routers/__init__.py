"""API routers."""

from flextasker_service.routers import bids, health, payments, tasks, users

__all__ = ["bids", "health", "payments", "tasks", "users"]
