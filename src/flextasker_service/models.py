"""Domain records for tasks, bids, payments, refunds and balances."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from flextasker_service.money import format_money


class TaskStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class BudgetType(StrEnum):
    FIXED = "fixed"
    HOURLY = "hourly"
    NEGOTIABLE = "negotiable"


class BidStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(StrEnum):
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    DIGITAL_WALLET = "digital_wallet"


class RefundStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentDirection(StrEnum):
    SENT = "sent"
    RECEIVED = "received"


def utc_now() -> datetime:
    """Current UTC time."""
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """ISO 8601 with microseconds and a trailing Z; sorts lexicographically."""
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp. Naive values are taken as UTC.

    Raises:
        ValueError: If the string is not ISO 8601
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _ts(value: datetime | None) -> str | None:
    return None if value is None else format_timestamp(value)


def _plain(value: Decimal) -> str:
    return format(value.normalize(), "f")


@dataclass(frozen=True)
class Task:
    """Local mirror of a marketplace task."""

    task_id: str
    owner_id: str
    title: str
    status: TaskStatus
    budget: Decimal
    budget_type: BudgetType
    deadline: datetime | None
    created_at: datetime
    assignee_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    def deadline_passed(self, now: datetime) -> bool:
        return self.deadline is not None and self.deadline < now

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "owner_id": self.owner_id,
            "assignee_id": self.assignee_id,
            "title": self.title,
            "status": self.status.value,
            "budget": format_money(self.budget),
            "budget_type": self.budget_type.value,
            "deadline": _ts(self.deadline),
            "created_at": format_timestamp(self.created_at),
            "started_at": _ts(self.started_at),
            "completed_at": _ts(self.completed_at),
            "cancelled_at": _ts(self.cancelled_at),
        }


@dataclass(frozen=True)
class Bid:
    """One tasker's proposal against one task."""

    bid_id: str
    task_id: str
    bidder_id: str
    amount: Decimal
    description: str
    timeline: str
    status: BidStatus
    submitted_at: datetime
    responded_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bid_id": self.bid_id,
            "task_id": self.task_id,
            "bidder_id": self.bidder_id,
            "amount": format_money(self.amount),
            "description": self.description,
            "timeline": self.timeline,
            "status": self.status.value,
            "submitted_at": format_timestamp(self.submitted_at),
            "responded_at": _ts(self.responded_at),
        }


@dataclass(frozen=True)
class BidView:
    """A bid as seen by one viewer, with the actions that viewer may take."""

    bid: Bid
    can_update: bool
    can_withdraw: bool
    can_accept: bool
    can_reject: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.bid.to_dict(),
            "permissions": {
                "can_update": self.can_update,
                "can_withdraw": self.can_withdraw,
                "can_accept": self.can_accept,
                "can_reject": self.can_reject,
            },
        }


@dataclass(frozen=True)
class AcceptedBid:
    """Outcome of the accept transition."""

    bid: Bid
    task: Task
    rejected_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "bid": self.bid.to_dict(),
            "task": self.task.to_dict(),
            "rejected_count": self.rejected_count,
        }


@dataclass(frozen=True)
class BidSearchFilters:
    task_id: str | None = None
    bidder_id: str | None = None
    status: BidStatus | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    submitted_after: datetime | None = None
    submitted_before: datetime | None = None


@dataclass(frozen=True)
class Pagination:
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total > 0 else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def to_dict(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
            "has_next": self.has_next,
            "has_previous": self.has_previous,
        }


@dataclass(frozen=True)
class BidPage:
    bids: list[Bid]
    pagination: Pagination

    def to_dict(self) -> dict[str, Any]:
        return {
            "bids": [bid.to_dict() for bid in self.bids],
            "pagination": self.pagination.to_dict(),
        }


@dataclass(frozen=True)
class BidStatistics:
    """Aggregate view of every bid placed on one task."""

    task_id: str
    total_bids: int
    average_amount: Decimal
    lowest_amount: Decimal
    highest_amount: Decimal
    status_breakdown: dict[str, int]
    daily_submissions: list[tuple[str, int]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "total_bids": self.total_bids,
            "average_amount": format_money(self.average_amount),
            "lowest_amount": format_money(self.lowest_amount),
            "highest_amount": format_money(self.highest_amount),
            "status_breakdown": dict(self.status_breakdown),
            "daily_submissions": [
                {"date": day, "count": count} for day, count in self.daily_submissions
            ],
        }


@dataclass(frozen=True)
class FeeBreakdown:
    platform_fee: Decimal
    processing_fee: Decimal
    total_fees: Decimal
    assignee_earnings: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "platform_fee": format_money(self.platform_fee),
            "processing_fee": format_money(self.processing_fee),
            "total_fees": format_money(self.total_fees),
            "assignee_earnings": format_money(self.assignee_earnings),
        }


@dataclass(frozen=True)
class Refund:
    """One refund attempt against a payment."""

    refund_id: str
    payment_id: str
    amount: Decimal
    reason: str
    requested_by: str
    status: RefundStatus
    reversed_earnings: Decimal
    created_at: datetime
    gateway_refund_id: str | None = None
    gateway_details: dict[str, Any] = field(default_factory=dict)
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "refund_id": self.refund_id,
            "payment_id": self.payment_id,
            "amount": format_money(self.amount),
            "reason": self.reason,
            "requested_by": self.requested_by,
            "status": self.status.value,
            "reversed_earnings": format_money(self.reversed_earnings),
            "gateway_refund_id": self.gateway_refund_id,
            "gateway_details": dict(self.gateway_details),
            "created_at": format_timestamp(self.created_at),
            "completed_at": _ts(self.completed_at),
        }


@dataclass(frozen=True)
class Payment:
    """One monetary movement tied to a completed task."""

    payment_id: str
    task_id: str
    payer_id: str
    payee_id: str | None
    amount: Decimal
    status: PaymentStatus
    payment_method: PaymentMethod
    fees: FeeBreakdown
    created_at: datetime
    gateway_transaction_id: str | None = None
    gateway_details: dict[str, Any] = field(default_factory=dict)
    completed_at: datetime | None = None
    refund: Refund | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "task_id": self.task_id,
            "payer_id": self.payer_id,
            "payee_id": self.payee_id,
            "amount": format_money(self.amount),
            "status": self.status.value,
            "payment_method": self.payment_method.value,
            "fees": self.fees.to_dict(),
            "gateway_transaction_id": self.gateway_transaction_id,
            "gateway_details": dict(self.gateway_details),
            "created_at": format_timestamp(self.created_at),
            "completed_at": _ts(self.completed_at),
            "refund": None if self.refund is None else self.refund.to_dict(),
        }


@dataclass(frozen=True)
class PaymentPage:
    payments: list[Payment]
    pagination: Pagination

    def to_dict(self) -> dict[str, Any]:
        return {
            "payments": [payment.to_dict() for payment in self.payments],
            "pagination": self.pagination.to_dict(),
        }


@dataclass(frozen=True)
class UserBalance:
    user_id: str
    total_earnings: Decimal
    total_spent: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "user_id": self.user_id,
            "total_earnings": format_money(self.total_earnings),
            "total_spent": format_money(self.total_spent),
        }


@dataclass(frozen=True)
class PaymentSummary:
    balance: UserBalance
    pending_payments: int
    completed_payments: int
    refunded_payments: int

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.balance.to_dict(),
            "pending_payments": self.pending_payments,
            "completed_payments": self.completed_payments,
            "refunded_payments": self.refunded_payments,
        }


@dataclass(frozen=True)
class StatusVolume:
    count: int
    volume: Decimal
    fees: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "volume": format_money(self.volume),
            "fees": format_money(self.fees),
        }


@dataclass(frozen=True)
class PaymentStatistics:
    """Platform-wide payment volume over an optional date range."""

    total_volume: Decimal
    total_fees: Decimal
    status_breakdown: dict[str, StatusVolume]
    platform_fee_percentage: Decimal
    processing_fee_percentage: Decimal
    processing_fixed_fee: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_volume": format_money(self.total_volume),
            "total_fees": format_money(self.total_fees),
            "status_breakdown": {
                status: entry.to_dict() for status, entry in self.status_breakdown.items()
            },
            "platform_fee_percentage": _plain(self.platform_fee_percentage),
            "processing_fee_percentage": _plain(self.processing_fee_percentage),
            "processing_fixed_fee": format_money(self.processing_fixed_fee),
        }
