"""SQLite-backed storage for tasks, balances, bids, payments and refunds."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

from flextasker_service.models import (
    Bid,
    BidSearchFilters,
    BidStatus,
    BudgetType,
    FeeBreakdown,
    Payment,
    PaymentDirection,
    PaymentMethod,
    PaymentStatus,
    Refund,
    RefundStatus,
    Task,
    TaskStatus,
    UserBalance,
    format_timestamp,
    parse_timestamp,
)
from flextasker_service.money import from_cents, to_cents

if TYPE_CHECKING:
    from collections.abc import Iterator


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


class DuplicateBidError(Exception):
    """Raised when a bid would break the one-active-bid or one-accepted-bid rule."""


class DuplicatePaymentError(Exception):
    """Raised when a task already has a pending or completed payment."""


class DuplicateRefundError(Exception):
    """Raised when a payment already has a pending or completed refund."""


_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    assignee_id TEXT,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    budget INTEGER NOT NULL CHECK (budget > 0),
    budget_type TEXT NOT NULL,
    deadline TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    cancelled_at TEXT
);

CREATE TABLE IF NOT EXISTS user_balances (
    user_id TEXT PRIMARY KEY,
    total_earnings INTEGER NOT NULL DEFAULT 0,
    total_spent INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS bids (
    bid_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    bidder_id TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    description TEXT NOT NULL,
    timeline TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    submitted_at TEXT NOT NULL,
    responded_at TEXT
);

CREATE TABLE IF NOT EXISTS payments (
    payment_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    payer_id TEXT NOT NULL,
    payee_id TEXT,
    amount INTEGER NOT NULL CHECK (amount > 0),
    status TEXT NOT NULL DEFAULT 'pending',
    payment_method TEXT NOT NULL,
    platform_fee INTEGER NOT NULL,
    processing_fee INTEGER NOT NULL,
    total_fees INTEGER NOT NULL,
    assignee_earnings INTEGER NOT NULL,
    gateway_transaction_id TEXT,
    gateway_details TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS refunds (
    refund_id TEXT PRIMARY KEY,
    payment_id TEXT NOT NULL REFERENCES payments(payment_id),
    amount INTEGER NOT NULL CHECK (amount > 0),
    reason TEXT NOT NULL,
    requested_by TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    reversed_earnings INTEGER NOT NULL,
    gateway_refund_id TEXT,
    gateway_details TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_bids_active_bidder
    ON bids(task_id, bidder_id)
    WHERE status != 'withdrawn';

CREATE UNIQUE INDEX IF NOT EXISTS ux_bids_accepted
    ON bids(task_id)
    WHERE status = 'accepted';

CREATE UNIQUE INDEX IF NOT EXISTS ux_payments_active
    ON payments(task_id)
    WHERE status IN ('pending', 'completed');

CREATE UNIQUE INDEX IF NOT EXISTS ux_refunds_active
    ON refunds(payment_id)
    WHERE status IN ('pending', 'completed');

CREATE INDEX IF NOT EXISTS ix_bids_task_submitted ON bids(task_id, submitted_at);
CREATE INDEX IF NOT EXISTS ix_payments_payer ON payments(payer_id, created_at);
CREATE INDEX IF NOT EXISTS ix_payments_payee ON payments(payee_id, created_at);
"""

_TASK_MUTABLE_COLUMNS: frozenset[str] = frozenset(
    {"assignee_id", "started_at", "completed_at", "cancelled_at"}
)


def _is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "unique" in str(exc).lower()


def _db_value(value: object) -> object:
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


def _opt_ts(value: str | None) -> datetime | None:
    return None if value is None else parse_timestamp(value)


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        task_id=row["task_id"],
        owner_id=row["owner_id"],
        assignee_id=row["assignee_id"],
        title=row["title"],
        status=TaskStatus(row["status"]),
        budget=from_cents(row["budget"]),
        budget_type=BudgetType(row["budget_type"]),
        deadline=_opt_ts(row["deadline"]),
        created_at=parse_timestamp(row["created_at"]),
        started_at=_opt_ts(row["started_at"]),
        completed_at=_opt_ts(row["completed_at"]),
        cancelled_at=_opt_ts(row["cancelled_at"]),
    )


def _row_to_bid(row: sqlite3.Row) -> Bid:
    return Bid(
        bid_id=row["bid_id"],
        task_id=row["task_id"],
        bidder_id=row["bidder_id"],
        amount=from_cents(row["amount"]),
        description=row["description"],
        timeline=row["timeline"],
        status=BidStatus(row["status"]),
        submitted_at=parse_timestamp(row["submitted_at"]),
        responded_at=_opt_ts(row["responded_at"]),
    )


def _row_to_refund(row: sqlite3.Row) -> Refund:
    return Refund(
        refund_id=row["refund_id"],
        payment_id=row["payment_id"],
        amount=from_cents(row["amount"]),
        reason=row["reason"],
        requested_by=row["requested_by"],
        status=RefundStatus(row["status"]),
        reversed_earnings=from_cents(row["reversed_earnings"]),
        gateway_refund_id=row["gateway_refund_id"],
        gateway_details=json.loads(row["gateway_details"]),
        created_at=parse_timestamp(row["created_at"]),
        completed_at=_opt_ts(row["completed_at"]),
    )


def _row_to_payment(row: sqlite3.Row, refund: Refund | None) -> Payment:
    return Payment(
        payment_id=row["payment_id"],
        task_id=row["task_id"],
        payer_id=row["payer_id"],
        payee_id=row["payee_id"],
        amount=from_cents(row["amount"]),
        status=PaymentStatus(row["status"]),
        payment_method=PaymentMethod(row["payment_method"]),
        fees=FeeBreakdown(
            platform_fee=from_cents(row["platform_fee"]),
            processing_fee=from_cents(row["processing_fee"]),
            total_fees=from_cents(row["total_fees"]),
            assignee_earnings=from_cents(row["assignee_earnings"]),
        ),
        gateway_transaction_id=row["gateway_transaction_id"],
        gateway_details=json.loads(row["gateway_details"]),
        created_at=parse_timestamp(row["created_at"]),
        completed_at=_opt_ts(row["completed_at"]),
        refund=refund,
    )


class StoreTransaction:
    """
    One unit of work against the marketplace database.

    Implements the task and user-balance collaborator interfaces used by
    the ledgers. Obtained only through MarketplaceStore.transaction() or
    MarketplaceStore.snapshot(); every call inside a transaction() block
    commits or rolls back together.
    """

    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task: Task) -> None:
        try:
            self._db.execute(
                "INSERT INTO tasks (task_id, owner_id, assignee_id, title, status, budget, "
                "budget_type, deadline, created_at, started_at, completed_at, cancelled_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task.task_id,
                    task.owner_id,
                    task.assignee_id,
                    task.title,
                    task.status.value,
                    to_cents(task.budget),
                    task.budget_type.value,
                    _db_value(task.deadline),
                    _db_value(task.created_at),
                    _db_value(task.started_at),
                    _db_value(task.completed_at),
                    _db_value(task.cancelled_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateTaskError(
                    f"A task with task_id={task.task_id} already exists"
                ) from exc
            raise

    def get_task(self, task_id: str) -> Task | None:
        row = self._db.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
        return None if row is None else _row_to_task(row)

    def set_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        extra: dict[str, Any] | None,
        *,
        expected_status: TaskStatus | None,
    ) -> bool:
        """
        Move a task to a new status, optionally setting timestamp or assignee
        columns in the same statement.

        Returns False when the task is missing or no longer in expected_status.
        """
        updates: dict[str, Any] = {"status": status.value}
        for column, value in (extra or {}).items():
            if column not in _TASK_MUTABLE_COLUMNS:
                msg = f"Attempted to update unknown task column: {column}"
                raise ValueError(msg)
            updates[column] = _db_value(value)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = [*updates.values(), task_id]
        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status.value)

        cursor = self._db.execute(query, params)
        return cursor.rowcount == 1

    def count_tasks_by_status(self) -> dict[str, int]:
        rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # User balances
    # ------------------------------------------------------------------

    def _adjust_balance(self, user_id: str, column: str, delta_cents: int) -> None:
        self._db.execute(
            "INSERT OR IGNORE INTO user_balances (user_id, total_earnings, total_spent) "
            "VALUES (?, 0, 0)",
            (user_id,),
        )
        self._db.execute(
            f"UPDATE user_balances SET {column} = {column} + ? WHERE user_id = ?",  # nosec B608
            (delta_cents, user_id),
        )

    def increment_earnings(self, user_id: str, amount: Decimal) -> None:
        self._adjust_balance(user_id, "total_earnings", to_cents(amount))

    def decrement_earnings(self, user_id: str, amount: Decimal) -> None:
        self._adjust_balance(user_id, "total_earnings", -to_cents(amount))

    def increment_spent(self, user_id: str, amount: Decimal) -> None:
        self._adjust_balance(user_id, "total_spent", to_cents(amount))

    def decrement_spent(self, user_id: str, amount: Decimal) -> None:
        self._adjust_balance(user_id, "total_spent", -to_cents(amount))

    def get_balance(self, user_id: str) -> UserBalance:
        """Balance for a user; untouched users read as zero."""
        row = self._db.execute(
            "SELECT total_earnings, total_spent FROM user_balances WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            zero = from_cents(0)
            return UserBalance(user_id=user_id, total_earnings=zero, total_spent=zero)
        return UserBalance(
            user_id=user_id,
            total_earnings=from_cents(row["total_earnings"]),
            total_spent=from_cents(row["total_spent"]),
        )

    # ------------------------------------------------------------------
    # Bids
    # ------------------------------------------------------------------

    def insert_bid(self, bid: Bid) -> None:
        try:
            self._db.execute(
                "INSERT INTO bids (bid_id, task_id, bidder_id, amount, description, timeline, "
                "status, submitted_at, responded_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    bid.bid_id,
                    bid.task_id,
                    bid.bidder_id,
                    to_cents(bid.amount),
                    bid.description,
                    bid.timeline,
                    bid.status.value,
                    _db_value(bid.submitted_at),
                    _db_value(bid.responded_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateBidError(
                    f"Bidder {bid.bidder_id} already has an active bid on task {bid.task_id}"
                ) from exc
            raise

    def get_bid(self, bid_id: str) -> Bid | None:
        row = self._db.execute("SELECT * FROM bids WHERE bid_id = ?", (bid_id,)).fetchone()
        return None if row is None else _row_to_bid(row)

    def find_active_bid(self, task_id: str, bidder_id: str) -> Bid | None:
        """The bidder's non-withdrawn bid on a task, if any."""
        row = self._db.execute(
            "SELECT * FROM bids WHERE task_id = ? AND bidder_id = ? AND status != ?",
            (task_id, bidder_id, BidStatus.WITHDRAWN.value),
        ).fetchone()
        return None if row is None else _row_to_bid(row)

    def update_bid_fields(
        self,
        bid_id: str,
        *,
        amount: Decimal | None,
        description: str | None,
        timeline: str | None,
    ) -> bool:
        """Merge provided fields into a PENDING bid. Returns False if it is no longer pending."""
        updates: dict[str, object] = {}
        if amount is not None:
            updates["amount"] = to_cents(amount)
        if description is not None:
            updates["description"] = description
        if timeline is not None:
            updates["timeline"] = timeline
        if not updates:
            return False

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        query = "UPDATE bids SET " + set_clause + " WHERE bid_id = ? AND status = ?"  # nosec B608
        cursor = self._db.execute(
            query, [*updates.values(), bid_id, BidStatus.PENDING.value]
        )
        return cursor.rowcount == 1

    def set_bid_status(
        self,
        bid_id: str,
        status: BidStatus,
        responded_at: datetime,
        *,
        expected_status: BidStatus,
    ) -> bool:
        """Conditional status transition. Returns False when the guard does not hold."""
        try:
            cursor = self._db.execute(
                "UPDATE bids SET status = ?, responded_at = ? WHERE bid_id = ? AND status = ?",
                (status.value, _db_value(responded_at), bid_id, expected_status.value),
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateBidError(
                    f"Task of bid {bid_id} already has an accepted bid"
                ) from exc
            raise
        return cursor.rowcount == 1

    def reject_pending_bids(
        self,
        task_id: str,
        responded_at: datetime,
        *,
        exclude_bid_id: str | None,
    ) -> int:
        """Reject every PENDING bid on a task except exclude_bid_id. Returns the count."""
        query = "UPDATE bids SET status = ?, responded_at = ? WHERE task_id = ? AND status = ?"
        params: list[object] = [
            BidStatus.REJECTED.value,
            _db_value(responded_at),
            task_id,
            BidStatus.PENDING.value,
        ]
        if exclude_bid_id is not None:
            query += " AND bid_id != ?"
            params.append(exclude_bid_id)
        cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def list_task_bids(self, task_id: str) -> list[Bid]:
        rows = self._db.execute(
            "SELECT * FROM bids WHERE task_id = ? ORDER BY submitted_at ASC, rowid ASC",
            (task_id,),
        ).fetchall()
        return [_row_to_bid(row) for row in rows]

    def search_bids(
        self,
        viewer_id: str,
        filters: BidSearchFilters,
        *,
        limit: int,
        offset: int,
    ) -> tuple[list[Bid], int]:
        """
        Bids visible to viewer_id (their own, or on tasks they own) matching filters.

        Returns one page of bids, newest first, and the total match count.
        """
        clauses: list[str] = ["(b.bidder_id = ? OR t.owner_id = ?)"]
        params: list[object] = [viewer_id, viewer_id]

        if filters.task_id is not None:
            clauses.append("b.task_id = ?")
            params.append(filters.task_id)
        if filters.bidder_id is not None:
            clauses.append("b.bidder_id = ?")
            params.append(filters.bidder_id)
        if filters.status is not None:
            clauses.append("b.status = ?")
            params.append(filters.status.value)
        if filters.min_amount is not None:
            clauses.append("b.amount >= ?")
            params.append(to_cents(filters.min_amount))
        if filters.max_amount is not None:
            clauses.append("b.amount <= ?")
            params.append(to_cents(filters.max_amount))
        if filters.submitted_after is not None:
            clauses.append("b.submitted_at >= ?")
            params.append(format_timestamp(filters.submitted_after))
        if filters.submitted_before is not None:
            clauses.append("b.submitted_at <= ?")
            params.append(format_timestamp(filters.submitted_before))

        where = " WHERE " + " AND ".join(clauses)
        base = " FROM bids b JOIN tasks t ON t.task_id = b.task_id" + where

        count_row = self._db.execute("SELECT COUNT(*)" + base, params).fetchone()  # nosec B608
        page_query = "SELECT b.*" + base + " ORDER BY b.submitted_at DESC, b.rowid DESC"
        rows = self._db.execute(
            page_query + " LIMIT ? OFFSET ?",  # nosec B608
            [*params, limit, offset],
        ).fetchall()
        total = int(count_row[0]) if count_row is not None else 0
        return [_row_to_bid(row) for row in rows], total

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def insert_payment(self, payment: Payment) -> None:
        try:
            self._db.execute(
                "INSERT INTO payments (payment_id, task_id, payer_id, payee_id, amount, status, "
                "payment_method, platform_fee, processing_fee, total_fees, assignee_earnings, "
                "gateway_transaction_id, gateway_details, created_at, completed_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    payment.payment_id,
                    payment.task_id,
                    payment.payer_id,
                    payment.payee_id,
                    to_cents(payment.amount),
                    payment.status.value,
                    payment.payment_method.value,
                    to_cents(payment.fees.platform_fee),
                    to_cents(payment.fees.processing_fee),
                    to_cents(payment.fees.total_fees),
                    to_cents(payment.fees.assignee_earnings),
                    payment.gateway_transaction_id,
                    json.dumps(payment.gateway_details),
                    _db_value(payment.created_at),
                    _db_value(payment.completed_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicatePaymentError(
                    f"Task {payment.task_id} already has an active payment"
                ) from exc
            raise

    def _latest_refund(self, payment_id: str) -> Refund | None:
        row = self._db.execute(
            "SELECT * FROM refunds WHERE payment_id = ? ORDER BY created_at DESC, rowid DESC "
            "LIMIT 1",
            (payment_id,),
        ).fetchone()
        return None if row is None else _row_to_refund(row)

    def get_payment(self, payment_id: str) -> Payment | None:
        row = self._db.execute(
            "SELECT * FROM payments WHERE payment_id = ?", (payment_id,)
        ).fetchone()
        if row is None:
            return None
        return _row_to_payment(row, self._latest_refund(payment_id))

    def find_active_payment(self, task_id: str) -> Payment | None:
        """The task's PENDING or COMPLETED payment, if any."""
        row = self._db.execute(
            "SELECT * FROM payments WHERE task_id = ? AND status IN (?, ?)",
            (task_id, PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value),
        ).fetchone()
        if row is None:
            return None
        return _row_to_payment(row, self._latest_refund(row["payment_id"]))

    def complete_payment(
        self,
        payment_id: str,
        gateway_transaction_id: str | None,
        gateway_details: dict[str, Any],
        completed_at: datetime,
    ) -> bool:
        cursor = self._db.execute(
            "UPDATE payments SET status = ?, gateway_transaction_id = ?, gateway_details = ?, "
            "completed_at = ? WHERE payment_id = ? AND status = ?",
            (
                PaymentStatus.COMPLETED.value,
                gateway_transaction_id,
                json.dumps(gateway_details),
                _db_value(completed_at),
                payment_id,
                PaymentStatus.PENDING.value,
            ),
        )
        return cursor.rowcount == 1

    def fail_payment(self, payment_id: str, gateway_details: dict[str, Any]) -> bool:
        cursor = self._db.execute(
            "UPDATE payments SET status = ?, gateway_details = ? WHERE payment_id = ? "
            "AND status = ?",
            (
                PaymentStatus.FAILED.value,
                json.dumps(gateway_details),
                payment_id,
                PaymentStatus.PENDING.value,
            ),
        )
        return cursor.rowcount == 1

    def mark_payment_refunded(self, payment_id: str) -> bool:
        cursor = self._db.execute(
            "UPDATE payments SET status = ? WHERE payment_id = ? AND status = ?",
            (PaymentStatus.REFUNDED.value, payment_id, PaymentStatus.COMPLETED.value),
        )
        return cursor.rowcount == 1

    def list_user_payments(
        self,
        user_id: str,
        direction: PaymentDirection | None,
        status: PaymentStatus | None,
        *,
        limit: int,
        offset: int,
    ) -> tuple[list[Payment], int]:
        """Payments the user sent or received, newest first, with the total match count."""
        if direction is PaymentDirection.SENT:
            clauses = ["payer_id = ?"]
            params: list[object] = [user_id]
        elif direction is PaymentDirection.RECEIVED:
            clauses = ["payee_id = ?"]
            params = [user_id]
        else:
            clauses = ["(payer_id = ? OR payee_id = ?)"]
            params = [user_id, user_id]

        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)

        where = " WHERE " + " AND ".join(clauses)
        count_row = self._db.execute(
            "SELECT COUNT(*) FROM payments" + where, params  # nosec B608
        ).fetchone()
        rows = self._db.execute(
            "SELECT * FROM payments" + where  # nosec B608
            + " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        total = int(count_row[0]) if count_row is not None else 0
        payments = [_row_to_payment(row, self._latest_refund(row["payment_id"])) for row in rows]
        return payments, total

    def count_user_payments_by_status(self, user_id: str) -> dict[str, int]:
        rows = self._db.execute(
            "SELECT status, COUNT(*) FROM payments WHERE payer_id = ? OR payee_id = ? "
            "GROUP BY status",
            (user_id, user_id),
        ).fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def payment_totals_by_status(
        self,
        start: datetime | None,
        end: datetime | None,
    ) -> dict[str, tuple[int, Decimal, Decimal]]:
        """Per-status (count, volume, fees) for payments created within [start, end]."""
        clauses: list[str] = []
        params: list[object] = []
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(format_timestamp(start))
        if end is not None:
            clauses.append("created_at <= ?")
            params.append(format_timestamp(end))
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""

        rows = self._db.execute(
            "SELECT status, COUNT(*), COALESCE(SUM(amount), 0), COALESCE(SUM(total_fees), 0) "
            "FROM payments" + where + " GROUP BY status",  # nosec B608
            params,
        ).fetchall()
        return {
            str(row[0]): (int(row[1]), from_cents(int(row[2])), from_cents(int(row[3])))
            for row in rows
        }

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def insert_refund(self, refund: Refund) -> None:
        try:
            self._db.execute(
                "INSERT INTO refunds (refund_id, payment_id, amount, reason, requested_by, "
                "status, reversed_earnings, gateway_refund_id, gateway_details, created_at, "
                "completed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    refund.refund_id,
                    refund.payment_id,
                    to_cents(refund.amount),
                    refund.reason,
                    refund.requested_by,
                    refund.status.value,
                    to_cents(refund.reversed_earnings),
                    refund.gateway_refund_id,
                    json.dumps(refund.gateway_details),
                    _db_value(refund.created_at),
                    _db_value(refund.completed_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateRefundError(
                    f"Payment {refund.payment_id} already has a refund in flight"
                ) from exc
            raise

    def find_active_refund(self, payment_id: str) -> Refund | None:
        row = self._db.execute(
            "SELECT * FROM refunds WHERE payment_id = ? AND status IN (?, ?)",
            (payment_id, RefundStatus.PENDING.value, RefundStatus.COMPLETED.value),
        ).fetchone()
        return None if row is None else _row_to_refund(row)

    def complete_refund(
        self,
        refund_id: str,
        gateway_refund_id: str | None,
        gateway_details: dict[str, Any],
        completed_at: datetime,
    ) -> bool:
        cursor = self._db.execute(
            "UPDATE refunds SET status = ?, gateway_refund_id = ?, gateway_details = ?, "
            "completed_at = ? WHERE refund_id = ? AND status = ?",
            (
                RefundStatus.COMPLETED.value,
                gateway_refund_id,
                json.dumps(gateway_details),
                _db_value(completed_at),
                refund_id,
                RefundStatus.PENDING.value,
            ),
        )
        return cursor.rowcount == 1

    def fail_refund(self, refund_id: str, gateway_details: dict[str, Any]) -> bool:
        cursor = self._db.execute(
            "UPDATE refunds SET status = ?, gateway_details = ? WHERE refund_id = ? "
            "AND status = ?",
            (
                RefundStatus.FAILED.value,
                json.dumps(gateway_details),
                refund_id,
                RefundStatus.PENDING.value,
            ),
        )
        return cursor.rowcount == 1


class MarketplaceStore:
    """
    Owns the SQLite connection.

    transaction() runs its block under BEGIN IMMEDIATE so writers serialize:
    in-process through the RLock, across processes through SQLite's reserved
    lock and busy_timeout.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(_SCHEMA)
            self._db.commit()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Atomic read-modify-write scope. Any exception rolls everything back."""
        with self._lock:
            self._db.execute("BEGIN IMMEDIATE")
            try:
                yield StoreTransaction(self._db)
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            self._db.commit()

    @contextlib.contextmanager
    def snapshot(self) -> Iterator[StoreTransaction]:
        """Read-only scope for queries that need no write lock."""
        with self._lock:
            yield StoreTransaction(self._db)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
