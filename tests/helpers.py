"""Shared test helpers: a scripted payment gateway and marketplace setup shortcuts."""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from flextasker_service.clients.payment_gateway import ChargeResult, PaymentGateway, RefundResult
from flextasker_service.models import BudgetType

if TYPE_CHECKING:
    from datetime import datetime

    from flextasker_service.models import Bid, PaymentMethod, Task
    from flextasker_service.services.bid_ledger import BidLedger
    from flextasker_service.services.task_registry import TaskRegistry

OWNER_ID = "u-owner"
BIDDER_ID = "u-bidder-1"
OTHER_BIDDER_ID = "u-bidder-2"
STRANGER_ID = "u-stranger"


class ScriptedGateway(PaymentGateway):
    """
    Deterministic gateway double.

    Outcomes are popped from the charge/refund scripts in order; an empty
    script means success. Every call is recorded. An optional delay makes
    the call slow enough to trip the ledger timeout.
    """

    def __init__(
        self,
        charges: list[bool] | None = None,
        refunds: list[bool] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.charges = list(charges or [])
        self.refunds = list(refunds or [])
        self.delay = delay
        self.charge_calls: list[tuple[Decimal, PaymentMethod]] = []
        self.refund_calls: list[tuple[str, Decimal]] = []
        self.closed = False

    async def charge(self, amount: Decimal, method: PaymentMethod) -> ChargeResult:
        self.charge_calls.append((amount, method))
        if self.delay:
            await asyncio.sleep(self.delay)
        ok = self.charges.pop(0) if self.charges else True
        if not ok:
            return ChargeResult(False, None, {"reason": "declined"})
        return ChargeResult(True, f"ch-{uuid.uuid4()}", {"processor": "scripted"})

    async def refund(self, transaction_id: str, amount: Decimal) -> RefundResult:
        self.refund_calls.append((transaction_id, amount))
        if self.delay:
            await asyncio.sleep(self.delay)
        ok = self.refunds.pop(0) if self.refunds else True
        if not ok:
            return RefundResult(False, None, {"reason": "declined"})
        return RefundResult(True, f"re-{uuid.uuid4()}", {"processor": "scripted"})

    async def close(self) -> None:
        self.closed = True


class ExplodingGateway(PaymentGateway):
    """Gateway whose every call raises, as a broken client library would."""

    async def charge(self, amount: Decimal, method: PaymentMethod) -> ChargeResult:
        raise RuntimeError("processor exploded")

    async def refund(self, transaction_id: str, amount: Decimal) -> RefundResult:
        raise RuntimeError("processor exploded")


def open_task(
    registry: TaskRegistry,
    *,
    owner_id: str = OWNER_ID,
    budget: str = "100.00",
    budget_type: BudgetType = BudgetType.FIXED,
    deadline: datetime | None = None,
) -> Task:
    """Register an OPEN task."""
    return registry.register_task(
        owner_id, "Assemble bookshelf", Decimal(budget), budget_type, deadline
    )


def place_bid(
    ledger: BidLedger,
    task: Task,
    *,
    bidder_id: str = BIDDER_ID,
    amount: str = "90.00",
) -> Bid:
    return ledger.create_bid(bidder_id, task.task_id, Decimal(amount), "I can do this", "2 days")


def completed_task(
    registry: TaskRegistry,
    ledger: BidLedger,
    *,
    owner_id: str = OWNER_ID,
    bidder_id: str = BIDDER_ID,
) -> Task:
    """Drive a task through bid, accept and complete so it can be paid for."""
    task = open_task(registry, owner_id=owner_id)
    bid = place_bid(ledger, task, bidder_id=bidder_id)
    ledger.accept_bid(bid.bid_id, owner_id)
    return registry.complete_task(task.task_id, owner_id)


def error_body(response: Any) -> dict[str, Any]:
    """Decode an error response and check its envelope."""
    data = response.json()
    assert set(data) == {"error", "message", "details"}
    return data


def config_yaml(
    db_path: str,
    log_directory: str,
    *,
    refund_reversal: str = "stored",
    max_body_size: int = 1048576,
) -> str:
    """A complete, valid configuration file for tests."""
    return f"""\
service:
  name: "flextasker"
  version: "0.1.0"
server:
  host: "127.0.0.1"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_directory}"
database:
  path: "{db_path}"
request:
  max_body_size: {max_body_size}
fees:
  platform_rate: "0.05"
  processing_rate: "0.029"
  processing_fixed: "0.30"
  refund_reversal: "{refund_reversal}"
bidding:
  budget_warning_ratio: "1.5"
  default_page_size: 10
  max_page_size: 100
gateway:
  mode: "simulated"
  timeout_seconds: 0.5
  base_url: null
  charge_path: null
  refund_path: null
  success_rate: 1.0
  seed: 7
"""
