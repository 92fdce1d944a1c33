"""Bid lifecycle and the atomic accept transition."""

from __future__ import annotations

import uuid
from collections import Counter
from decimal import Decimal
from typing import TYPE_CHECKING

from flextasker_service.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from flextasker_service.logging import get_logger
from flextasker_service.models import (
    AcceptedBid,
    Bid,
    BidPage,
    BidSearchFilters,
    BidStatistics,
    BidStatus,
    BidView,
    BudgetType,
    Pagination,
    Task,
    TaskStatus,
    utc_now,
)
from flextasker_service.money import MAX_AMOUNT, exceeds_limit, quantize
from flextasker_service.services.marketplace_store import DuplicateBidError

if TYPE_CHECKING:
    from datetime import datetime

    from flextasker_service.services.marketplace_store import MarketplaceStore, StoreTransaction

logger = get_logger(__name__)


def _require_task(tx: StoreTransaction, task_id: str, action: str) -> Task:
    task = tx.get_task(task_id)
    if task is None:
        raise NotFoundError(
            "TASK_NOT_FOUND",
            "Task not found",
            {"task_id": task_id, "action": action},
        )
    return task


def _require_bid(tx: StoreTransaction, bid_id: str, action: str) -> Bid:
    bid = tx.get_bid(bid_id)
    if bid is None:
        raise NotFoundError(
            "BID_NOT_FOUND",
            "Bid not found",
            {"bid_id": bid_id, "action": action},
        )
    return bid


def _require_pending(bid: Bid, action: str) -> None:
    if bid.status is not BidStatus.PENDING:
        raise ConflictError(
            "BID_NOT_PENDING",
            f"Bid is {bid.status.value}; only pending bids can be changed",
            {"bid_id": bid.bid_id, "status": bid.status.value, "action": action},
        )


def _require_open(task: Task, action: str, now: datetime) -> None:
    if task.status is not TaskStatus.OPEN:
        raise ConflictError(
            "TASK_NOT_OPEN",
            "Task is not open for bidding",
            {"task_id": task.task_id, "status": task.status.value, "action": action},
        )
    if task.deadline_passed(now):
        raise ConflictError(
            "DEADLINE_PASSED",
            "Task deadline has passed",
            {"task_id": task.task_id, "action": action},
        )


def _require_owner(task: Task, user_id: str, bid_id: str, action: str) -> None:
    if task.owner_id != user_id:
        raise AuthorizationError(
            "NOT_TASK_OWNER",
            "Only the task owner can perform this action",
            {"task_id": task.task_id, "bid_id": bid_id, "action": action},
        )


def _require_bidder(bid: Bid, user_id: str, action: str) -> None:
    if bid.bidder_id != user_id:
        raise AuthorizationError(
            "NOT_BID_OWNER",
            "Only the bidder can perform this action",
            {"bid_id": bid.bid_id, "action": action},
        )


def _checked_amount(amount: Decimal, action: str) -> Decimal:
    """Quantize a bid amount, rejecting it unless it lands in (0, MAX_AMOUNT]."""
    if not exceeds_limit(amount):
        amount = quantize(amount)
        if amount > 0:
            return amount
    raise ValidationError(
        "INVALID_AMOUNT",
        f"Bid amount must be greater than zero and at most {MAX_AMOUNT}",
        {"amount": str(amount), "action": action},
    )


def _require_text(value: str, field_name: str, action: str) -> None:
    if not value.strip():
        raise ValidationError(
            f"INVALID_{field_name.upper()}",
            f"{field_name} must not be empty",
            {"field": field_name, "action": action},
        )


class BidLedger:
    """
    Owns bids against tasks.

    Every operation runs in one store transaction, so its precondition
    checks and writes are atomic and serialized against other writers.
    """

    def __init__(
        self,
        store: MarketplaceStore,
        budget_warning_ratio: Decimal,
        default_page_size: int,
        max_page_size: int,
    ) -> None:
        self._store = store
        self._budget_warning_ratio = budget_warning_ratio
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    def create_bid(
        self,
        bidder_id: str,
        task_id: str,
        amount: Decimal,
        description: str,
        timeline: str,
    ) -> Bid:
        """
        Place a PENDING bid on an open task.

        Raises:
            ValidationError: out-of-range amount or empty description
            NotFoundError: TASK_NOT_FOUND
            ConflictError: TASK_NOT_OPEN, DEADLINE_PASSED, SELF_BID, BID_ALREADY_EXISTS
        """
        action = "create_bid"
        amount = _checked_amount(amount, action)
        _require_text(description, "description", action)

        now = utc_now()
        with self._store.transaction() as tx:
            task = _require_task(tx, task_id, action)
            _require_open(task, action, now)

            if task.owner_id == bidder_id:
                raise ConflictError(
                    "SELF_BID",
                    "Task owners cannot bid on their own task",
                    {"task_id": task_id, "bidder_id": bidder_id, "action": action},
                )

            existing = tx.find_active_bid(task_id, bidder_id)
            if existing is not None:
                raise ConflictError(
                    "BID_ALREADY_EXISTS",
                    "Bidder already has an active bid on this task",
                    {"task_id": task_id, "bid_id": existing.bid_id, "action": action},
                )

            bid = Bid(
                bid_id=f"bid-{uuid.uuid4()}",
                task_id=task_id,
                bidder_id=bidder_id,
                amount=amount,
                description=description,
                timeline=timeline,
                status=BidStatus.PENDING,
                submitted_at=now,
            )
            try:
                tx.insert_bid(bid)
            except DuplicateBidError as exc:
                raise ConflictError(
                    "BID_ALREADY_EXISTS",
                    "Bidder already has an active bid on this task",
                    {"task_id": task_id, "action": action},
                ) from exc

        if (
            task.budget_type is BudgetType.FIXED
            and bid.amount > task.budget * self._budget_warning_ratio
        ):
            logger.warning(
                "Bid amount significantly exceeds task budget",
                extra={
                    "bid_id": bid.bid_id,
                    "task_id": task_id,
                    "amount": str(bid.amount),
                    "budget": str(task.budget),
                },
            )

        logger.info(
            "Bid created",
            extra={"bid_id": bid.bid_id, "task_id": task_id, "bidder_id": bidder_id},
        )
        return bid

    def update_bid(
        self,
        bid_id: str,
        bidder_id: str,
        *,
        amount: Decimal | None = None,
        description: str | None = None,
        timeline: str | None = None,
    ) -> Bid:
        """Merge new terms into the bidder's own pending bid on a still-open task."""
        action = "update_bid"
        if amount is None and description is None and timeline is None:
            raise ValidationError(
                "NO_FIELDS_TO_UPDATE",
                "At least one of amount, description or timeline is required",
                {"bid_id": bid_id, "action": action},
            )
        if amount is not None:
            amount = _checked_amount(amount, action)
        if description is not None:
            _require_text(description, "description", action)

        now = utc_now()
        with self._store.transaction() as tx:
            bid = _require_bid(tx, bid_id, action)
            _require_bidder(bid, bidder_id, action)
            _require_pending(bid, action)
            task = _require_task(tx, bid.task_id, action)
            _require_open(task, action, now)

            if not tx.update_bid_fields(
                bid_id,
                amount=amount,
                description=description,
                timeline=timeline,
            ):
                raise ConflictError(
                    "BID_NOT_PENDING",
                    "Bid is no longer pending",
                    {"bid_id": bid_id, "action": action},
                )
            updated = _require_bid(tx, bid_id, action)

        logger.info("Bid updated", extra={"bid_id": bid_id, "task_id": bid.task_id})
        return updated

    def accept_bid(self, bid_id: str, task_owner_id: str) -> AcceptedBid:
        """
        Accept one bid as a single atomic unit.

        The bid becomes ACCEPTED, the task moves to IN_PROGRESS with the
        bidder as assignee, and every other PENDING bid on the task becomes
        REJECTED. Any failure leaves all three untouched.

        Raises:
            NotFoundError: BID_NOT_FOUND, TASK_NOT_FOUND
            AuthorizationError: NOT_TASK_OWNER
            ConflictError: BID_NOT_PENDING, TASK_NOT_OPEN
        """
        action = "accept_bid"
        now = utc_now()

        with self._store.transaction() as tx:
            bid = _require_bid(tx, bid_id, action)
            task = _require_task(tx, bid.task_id, action)
            _require_owner(task, task_owner_id, bid_id, action)
            _require_pending(bid, action)
            if task.status is not TaskStatus.OPEN:
                raise ConflictError(
                    "TASK_NOT_OPEN",
                    "Task is no longer open",
                    {"task_id": task.task_id, "status": task.status.value, "action": action},
                )

            try:
                accepted = tx.set_bid_status(
                    bid_id, BidStatus.ACCEPTED, now, expected_status=BidStatus.PENDING
                )
            except DuplicateBidError as exc:
                raise ConflictError(
                    "TASK_NOT_OPEN",
                    "Task already has an accepted bid",
                    {"task_id": task.task_id, "bid_id": bid_id, "action": action},
                ) from exc
            if not accepted:
                raise ConflictError(
                    "BID_NOT_PENDING",
                    "Bid is no longer pending",
                    {"bid_id": bid_id, "action": action},
                )

            moved = tx.set_task_status(
                task.task_id,
                TaskStatus.IN_PROGRESS,
                {"assignee_id": bid.bidder_id, "started_at": now},
                expected_status=TaskStatus.OPEN,
            )
            if not moved:
                raise ConflictError(
                    "TASK_NOT_OPEN",
                    "Task is no longer open",
                    {"task_id": task.task_id, "action": action},
                )

            rejected_count = tx.reject_pending_bids(task.task_id, now, exclude_bid_id=bid_id)
            result = AcceptedBid(
                bid=_require_bid(tx, bid_id, action),
                task=_require_task(tx, task.task_id, action),
                rejected_count=rejected_count,
            )

        logger.info(
            "Bid accepted",
            extra={
                "bid_id": bid_id,
                "task_id": task.task_id,
                "assignee_id": bid.bidder_id,
                "rejected_count": rejected_count,
            },
        )
        return result

    def _respond(
        self,
        bid_id: str,
        user_id: str,
        new_status: BidStatus,
        action: str,
    ) -> Bid:
        now = utc_now()
        with self._store.transaction() as tx:
            bid = _require_bid(tx, bid_id, action)
            if new_status is BidStatus.WITHDRAWN:
                _require_bidder(bid, user_id, action)
            else:
                task = _require_task(tx, bid.task_id, action)
                _require_owner(task, user_id, bid_id, action)
            _require_pending(bid, action)

            if not tx.set_bid_status(bid_id, new_status, now, expected_status=BidStatus.PENDING):
                raise ConflictError(
                    "BID_NOT_PENDING",
                    "Bid is no longer pending",
                    {"bid_id": bid_id, "action": action},
                )
            updated = _require_bid(tx, bid_id, action)

        logger.info(
            "Bid withdrawn" if new_status is BidStatus.WITHDRAWN else "Bid rejected",
            extra={"bid_id": bid_id, "task_id": bid.task_id, "actor_id": user_id},
        )
        return updated

    def reject_bid(self, bid_id: str, task_owner_id: str) -> Bid:
        """PENDING to REJECTED by the task owner. Other bids are untouched."""
        return self._respond(bid_id, task_owner_id, BidStatus.REJECTED, "reject_bid")

    def withdraw_bid(self, bid_id: str, bidder_id: str) -> Bid:
        """PENDING to WITHDRAWN by the bidder."""
        return self._respond(bid_id, bidder_id, BidStatus.WITHDRAWN, "withdraw_bid")

    def get_bid(self, bid_id: str, user_id: str) -> BidView:
        action = "get_bid"
        now = utc_now()
        with self._store.snapshot() as tx:
            bid = _require_bid(tx, bid_id, action)
            task = _require_task(tx, bid.task_id, action)

        is_bidder = bid.bidder_id == user_id
        is_owner = task.owner_id == user_id
        if not is_bidder and not is_owner:
            raise AuthorizationError(
                "NOT_AUTHORIZED",
                "Only the bidder or the task owner can view this bid",
                {"bid_id": bid_id, "action": action},
            )

        pending = bid.status is BidStatus.PENDING
        task_open = task.status is TaskStatus.OPEN and not task.deadline_passed(now)
        return BidView(
            bid=bid,
            can_update=is_bidder and pending and task_open,
            can_withdraw=is_bidder and pending,
            can_accept=is_owner and pending and task.status is TaskStatus.OPEN,
            can_reject=is_owner and pending,
        )

    def search_bids(
        self,
        user_id: str,
        filters: BidSearchFilters,
        page: int = 1,
        limit: int | None = None,
    ) -> BidPage:
        """Bids where user_id is the bidder or owns the task, newest first."""
        action = "search_bids"
        limit = self._default_page_size if limit is None else limit
        if page < 1 or limit < 1 or limit > self._max_page_size:
            raise ValidationError(
                "INVALID_PAGINATION",
                f"page must be >= 1 and limit within 1..{self._max_page_size}",
                {"page": page, "limit": limit, "action": action},
            )
        if (
            filters.min_amount is not None
            and filters.max_amount is not None
            and filters.min_amount > filters.max_amount
        ):
            raise ValidationError(
                "INVALID_AMOUNT_RANGE",
                "min_amount must not exceed max_amount",
                {"action": action},
            )

        with self._store.snapshot() as tx:
            bids, total = tx.search_bids(
                user_id, filters, limit=limit, offset=(page - 1) * limit
            )
        return BidPage(bids=bids, pagination=Pagination(page=page, limit=limit, total=total))

    def get_task_bid_statistics(self, task_id: str, task_owner_id: str) -> BidStatistics:
        action = "get_task_bid_statistics"
        with self._store.snapshot() as tx:
            task = _require_task(tx, task_id, action)
            if task.owner_id != task_owner_id:
                raise AuthorizationError(
                    "NOT_TASK_OWNER",
                    "Only the task owner can view bid statistics",
                    {"task_id": task_id, "action": action},
                )
            bids = tx.list_task_bids(task_id)

        breakdown = {status.value: 0 for status in BidStatus}
        breakdown.update(Counter(bid.status.value for bid in bids))
        daily = Counter(bid.submitted_at.date().isoformat() for bid in bids)

        if not bids:
            zero = Decimal("0.00")
            return BidStatistics(task_id, 0, zero, zero, zero, breakdown, [])

        amounts = [bid.amount for bid in bids]
        return BidStatistics(
            task_id=task_id,
            total_bids=len(bids),
            average_amount=quantize(sum(amounts, Decimal(0)) / len(amounts)),
            lowest_amount=min(amounts),
            highest_amount=max(amounts),
            status_breakdown=breakdown,
            daily_submissions=sorted(daily.items()),
        )
