"""Shared router helper functions."""

from __future__ import annotations

import json
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar

from flextasker_service.core.state import get_app_state
from flextasker_service.errors import ValidationError
from flextasker_service.models import parse_timestamp
from flextasker_service.money import parse_money

if TYPE_CHECKING:
    from datetime import datetime
    from decimal import Decimal

    from flextasker_service.services.bid_ledger import BidLedger
    from flextasker_service.services.escrow_ledger import EscrowLedger
    from flextasker_service.services.task_registry import TaskRegistry

E = TypeVar("E", bound=StrEnum)


def parse_json_body(body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ValidationError on failure."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("INVALID_JSON", "Request body is not valid JSON") from exc

    if not isinstance(data, dict):
        raise ValidationError("INVALID_JSON", "Request body must be a JSON object")

    return data


def require_str(data: dict[str, Any], field_name: str) -> str:
    """Extract a required non-empty string field."""
    if field_name not in data or data[field_name] is None:
        raise ValidationError(
            "MISSING_FIELD", f"Missing required field: {field_name}", {"field": field_name}
        )
    value = data[field_name]
    if not isinstance(value, str):
        raise ValidationError(
            "INVALID_FIELD", f"Field '{field_name}' must be a string", {"field": field_name}
        )
    if not value.strip():
        raise ValidationError(
            "INVALID_FIELD", f"Field '{field_name}' must not be empty", {"field": field_name}
        )
    return value


def optional_str(data: dict[str, Any], field_name: str) -> str | None:
    """Extract an optional string field; absent or null yields None."""
    value = data.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(
            "INVALID_FIELD", f"Field '{field_name}' must be a string", {"field": field_name}
        )
    return value


def _money(value: object, field_name: str) -> Decimal:
    try:
        return parse_money(value)
    except ValueError as exc:
        raise ValidationError(
            "INVALID_AMOUNT", f"Field '{field_name}' must be a number", {"field": field_name}
        ) from exc


def require_money(data: dict[str, Any], field_name: str) -> Decimal:
    """Extract a required monetary amount (number or numeric string)."""
    if data.get(field_name) is None:
        raise ValidationError(
            "MISSING_FIELD", f"Missing required field: {field_name}", {"field": field_name}
        )
    return _money(data[field_name], field_name)


def optional_money(data: dict[str, Any], field_name: str) -> Decimal | None:
    value = data.get(field_name)
    return None if value is None else _money(value, field_name)


def parse_enum(enum_type: type[E], value: object, field_name: str) -> E:
    """Coerce a raw value into one member of a closed status/method enum."""
    try:
        return enum_type(str(value).lower())
    except ValueError as exc:
        allowed = sorted(member.value for member in enum_type)
        raise ValidationError(
            "INVALID_FIELD",
            f"Field '{field_name}' must be one of {allowed}",
            {"field": field_name},
        ) from exc


def parse_datetime(value: object, field_name: str) -> datetime:
    if not isinstance(value, str):
        raise ValidationError(
            "INVALID_FIELD",
            f"Field '{field_name}' must be an ISO 8601 timestamp",
            {"field": field_name},
        )
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise ValidationError(
            "INVALID_FIELD",
            f"Field '{field_name}' must be an ISO 8601 timestamp",
            {"field": field_name},
        ) from exc


def parse_int(value: str | None, field_name: str) -> int | None:
    """Parse an optional integer query parameter."""
    if value is None:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValidationError(
            "INVALID_PAGINATION", f"{field_name} must be an integer", {"field": field_name}
        ) from exc


def require_query(value: str | None, field_name: str) -> str:
    """Require a non-empty query parameter, such as the acting user id."""
    if value is None or not value.strip():
        raise ValidationError(
            "MISSING_FIELD",
            f"Missing required query parameter: {field_name}",
            {"field": field_name},
        )
    return value


def get_task_registry() -> TaskRegistry:
    state = get_app_state()
    if state.task_registry is None:
        msg = "TaskRegistry not initialized"
        raise RuntimeError(msg)
    return state.task_registry


def get_bid_ledger() -> BidLedger:
    state = get_app_state()
    if state.bid_ledger is None:
        msg = "BidLedger not initialized"
        raise RuntimeError(msg)
    return state.bid_ledger


def get_escrow_ledger() -> EscrowLedger:
    state = get_app_state()
    if state.escrow_ledger is None:
        msg = "EscrowLedger not initialized"
        raise RuntimeError(msg)
    return state.escrow_ledger
