"""Unit tests for EscrowLedger."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest

from flextasker_service.clients.payment_gateway import (
    ChargeResult,
    PaymentGateway,
    RefundResult,
)
from flextasker_service.errors import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from flextasker_service.models import (
    PaymentDirection,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
)
from flextasker_service.services.escrow_ledger import EscrowLedger
from tests.helpers import (
    BIDDER_ID,
    OWNER_ID,
    STRANGER_ID,
    ExplodingGateway,
    ScriptedGateway,
    completed_task,
    open_task,
)

if TYPE_CHECKING:
    from flextasker_service.models import Payment, Task
    from flextasker_service.services.bid_ledger import BidLedger
    from flextasker_service.services.fee_model import FeeModel
    from flextasker_service.services.marketplace_store import MarketplaceStore
    from flextasker_service.services.task_registry import TaskRegistry

CARD = PaymentMethod.CREDIT_CARD


@pytest.fixture
def task(registry: TaskRegistry, bid_ledger: BidLedger) -> Task:
    return completed_task(registry, bid_ledger)


async def _pay(ledger: EscrowLedger, task: Task, amount: str = "100") -> Payment:
    return await ledger.create_payment(OWNER_ID, task.task_id, Decimal(amount), CARD)


@pytest.mark.unit
class TestCreatePayment:
    async def test_successful_payment_credits_both_sides(
        self, escrow_ledger: EscrowLedger, gateway: ScriptedGateway, task: Task
    ) -> None:
        """Paying 100 charges the owner 100 and credits the assignee 91.80."""
        payment = await _pay(escrow_ledger, task)

        assert payment.status is PaymentStatus.COMPLETED
        assert payment.payment_id.startswith("pay-")
        assert payment.payee_id == BIDDER_ID
        assert payment.fees.platform_fee == Decimal("5.00")
        assert payment.fees.processing_fee == Decimal("3.20")
        assert payment.fees.total_fees == Decimal("8.20")
        assert payment.fees.assignee_earnings == Decimal("91.80")
        assert payment.gateway_transaction_id is not None
        assert payment.completed_at is not None
        assert gateway.charge_calls == [(Decimal("100.00"), CARD)]

        assert escrow_ledger.get_balance(OWNER_ID).total_spent == Decimal("100.00")
        assert escrow_ledger.get_balance(BIDDER_ID).total_earnings == Decimal("91.80")

    async def test_declined_charge_records_failure_and_touches_no_balance(
        self, escrow_ledger: EscrowLedger, gateway: ScriptedGateway, task: Task
    ) -> None:
        gateway.charges = [False]

        with pytest.raises(GatewayError) as exc_info:
            await _pay(escrow_ledger, task)

        assert exc_info.value.error == "PAYMENT_FAILED"
        assert exc_info.value.status_code == 502
        payment_id = exc_info.value.details["payment_id"]
        failed = escrow_ledger.get_payment(payment_id, OWNER_ID)
        assert failed.status is PaymentStatus.FAILED
        assert failed.gateway_details["reason"] == "declined"
        assert escrow_ledger.get_balance(OWNER_ID).total_spent == Decimal("0.00")
        assert escrow_ledger.get_balance(BIDDER_ID).total_earnings == Decimal("0.00")

    async def test_retry_after_failure_is_allowed(
        self, escrow_ledger: EscrowLedger, gateway: ScriptedGateway, task: Task
    ) -> None:
        gateway.charges = [False, True]
        with pytest.raises(GatewayError):
            await _pay(escrow_ledger, task)

        payment = await _pay(escrow_ledger, task)

        assert payment.status is PaymentStatus.COMPLETED
        assert len(gateway.charge_calls) == 2

    async def test_gateway_timeout_is_a_failure(
        self, escrow_ledger: EscrowLedger, task: Task
    ) -> None:
        escrow_ledger.set_gateway(ScriptedGateway(delay=2.0))

        with pytest.raises(GatewayError) as exc_info:
            await _pay(escrow_ledger, task)

        assert exc_info.value.details["gateway"] == {"reason": "timeout"}
        payment = escrow_ledger.get_payment(exc_info.value.details["payment_id"], OWNER_ID)
        assert payment.status is PaymentStatus.FAILED

    async def test_gateway_exception_is_a_failure(
        self, escrow_ledger: EscrowLedger, task: Task
    ) -> None:
        escrow_ledger.set_gateway(ExplodingGateway())

        with pytest.raises(GatewayError) as exc_info:
            await _pay(escrow_ledger, task)

        assert exc_info.value.details["gateway"]["reason"] == "gateway_error"

    async def test_cancelled_charge_marks_payment_failed(
        self, escrow_ledger: EscrowLedger, gateway: ScriptedGateway, task: Task
    ) -> None:
        """A request cancelled mid-charge must not leave the task blocked by a PENDING row."""
        gateway.delay = 0.4
        pending = asyncio.create_task(_pay(escrow_ledger, task))
        while not gateway.charge_calls:
            await asyncio.sleep(0)
        pending.cancel()

        with pytest.raises(asyncio.CancelledError):
            await pending

        page = escrow_ledger.list_user_payments(OWNER_ID)
        assert [p.status for p in page.payments] == [PaymentStatus.FAILED]
        assert page.payments[0].gateway_details == {"reason": "cancelled"}

        gateway.delay = 0.0
        payment = await _pay(escrow_ledger, task)
        assert payment.status is PaymentStatus.COMPLETED

    async def test_second_payment_for_same_task_conflicts(
        self, escrow_ledger: EscrowLedger, gateway: ScriptedGateway, task: Task
    ) -> None:
        await _pay(escrow_ledger, task)

        with pytest.raises(ConflictError) as exc_info:
            await _pay(escrow_ledger, task)

        assert exc_info.value.error == "PAYMENT_ALREADY_EXISTS"
        assert len(gateway.charge_calls) == 1

    async def test_concurrent_payments_charge_once(
        self, escrow_ledger: EscrowLedger, task: Task
    ) -> None:
        slow = ScriptedGateway(delay=0.05)
        escrow_ledger.set_gateway(slow)

        results = await asyncio.gather(
            _pay(escrow_ledger, task), _pay(escrow_ledger, task), return_exceptions=True
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(conflicts) == 1
        assert conflicts[0].error == "PAYMENT_ALREADY_EXISTS"
        assert len(slow.charge_calls) == 1
        assert escrow_ledger.get_balance(OWNER_ID).total_spent == Decimal("100.00")

    async def test_task_must_be_completed(
        self, escrow_ledger: EscrowLedger, registry: TaskRegistry
    ) -> None:
        task = open_task(registry)
        with pytest.raises(ConflictError) as exc_info:
            await _pay(escrow_ledger, task)
        assert exc_info.value.error == "TASK_NOT_COMPLETED"

    async def test_only_owner_pays(self, escrow_ledger: EscrowLedger, task: Task) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await escrow_ledger.create_payment(STRANGER_ID, task.task_id, Decimal("100"), CARD)
        assert exc_info.value.error == "NOT_TASK_OWNER"

    async def test_unknown_task(self, escrow_ledger: EscrowLedger) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await escrow_ledger.create_payment(OWNER_ID, "t-missing", Decimal("100"), CARD)
        assert exc_info.value.error == "TASK_NOT_FOUND"

    @pytest.mark.parametrize(
        ("amount", "code"),
        [
            ("0", "INVALID_AMOUNT"),
            ("0.004", "INVALID_AMOUNT"),
            ("1e20", "INVALID_AMOUNT"),
            ("0.20", "AMOUNT_BELOW_FEES"),
        ],
    )
    async def test_amount_validation(
        self,
        escrow_ledger: EscrowLedger,
        gateway: ScriptedGateway,
        task: Task,
        amount: str,
        code: str,
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await _pay(escrow_ledger, task, amount)
        assert exc_info.value.error == code
        assert gateway.charge_calls == []


@pytest.mark.unit
class TestRefund:
    async def test_full_refund_restores_pre_payment_balances(
        self, escrow_ledger: EscrowLedger, gateway: ScriptedGateway, task: Task
    ) -> None:
        before_owner = escrow_ledger.get_balance(OWNER_ID)
        before_worker = escrow_ledger.get_balance(BIDDER_ID)
        payment = await _pay(escrow_ledger, task)

        refunded = await escrow_ledger.process_refund(
            payment.payment_id, Decimal("100"), "dispute", OWNER_ID
        )

        assert refunded.status is PaymentStatus.REFUNDED
        assert refunded.refund is not None
        assert refunded.refund.status is RefundStatus.COMPLETED
        assert refunded.refund.reversed_earnings == Decimal("91.80")
        assert gateway.refund_calls == [(payment.gateway_transaction_id, Decimal("100.00"))]
        assert escrow_ledger.get_balance(OWNER_ID) == before_owner
        assert escrow_ledger.get_balance(BIDDER_ID) == before_worker

    async def test_partial_refund_reverses_stored_earnings_proportionally(
        self, escrow_ledger: EscrowLedger, task: Task
    ) -> None:
        payment = await _pay(escrow_ledger, task)

        refunded = await escrow_ledger.process_refund(
            payment.payment_id, Decimal("40"), "partial", BIDDER_ID
        )

        assert refunded.refund is not None
        assert refunded.refund.reversed_earnings == Decimal("36.72")
        assert escrow_ledger.get_balance(OWNER_ID).total_spent == Decimal("60.00")
        assert escrow_ledger.get_balance(BIDDER_ID).total_earnings == Decimal("55.08")

    async def test_partial_refund_in_recompute_mode(
        self,
        store: MarketplaceStore,
        gateway: ScriptedGateway,
        fee_model: FeeModel,
        task: Task,
    ) -> None:
        """Recompute mode reverses the earnings a fresh 40.00 payment would have produced."""
        ledger = EscrowLedger(
            store=store,
            gateway=gateway,
            fee_model=fee_model,
            gateway_timeout_seconds=0.5,
            refund_reversal="recompute",
            default_page_size=10,
            max_page_size=100,
        )
        payment = await _pay(ledger, task)

        refunded = await ledger.process_refund(
            payment.payment_id, Decimal("40"), "partial", OWNER_ID
        )

        assert refunded.refund is not None
        assert refunded.refund.reversed_earnings == Decimal("36.54")
        assert ledger.get_balance(BIDDER_ID).total_earnings == Decimal("55.26")

    async def test_declined_refund_leaves_payment_and_balances(
        self, escrow_ledger: EscrowLedger, gateway: ScriptedGateway, task: Task
    ) -> None:
        payment = await _pay(escrow_ledger, task)
        gateway.refunds = [False]

        with pytest.raises(GatewayError) as exc_info:
            await escrow_ledger.process_refund(payment.payment_id, Decimal("100"), "x", OWNER_ID)

        assert exc_info.value.error == "REFUND_FAILED"
        current = escrow_ledger.get_payment(payment.payment_id, OWNER_ID)
        assert current.status is PaymentStatus.COMPLETED
        assert current.refund is not None
        assert current.refund.status is RefundStatus.FAILED
        assert escrow_ledger.get_balance(OWNER_ID).total_spent == Decimal("100.00")
        assert escrow_ledger.get_balance(BIDDER_ID).total_earnings == Decimal("91.80")

        retried = await escrow_ledger.process_refund(
            payment.payment_id, Decimal("100"), "x", OWNER_ID
        )
        assert retried.status is PaymentStatus.REFUNDED

    async def test_cancelled_refund_marks_refund_failed(
        self, escrow_ledger: EscrowLedger, gateway: ScriptedGateway, task: Task
    ) -> None:
        payment = await _pay(escrow_ledger, task)
        gateway.delay = 0.4
        pending = asyncio.create_task(
            escrow_ledger.process_refund(payment.payment_id, Decimal("100"), "x", OWNER_ID)
        )
        while not gateway.refund_calls:
            await asyncio.sleep(0)
        pending.cancel()

        with pytest.raises(asyncio.CancelledError):
            await pending

        current = escrow_ledger.get_payment(payment.payment_id, OWNER_ID)
        assert current.status is PaymentStatus.COMPLETED
        assert current.refund is not None
        assert current.refund.status is RefundStatus.FAILED
        assert escrow_ledger.get_balance(BIDDER_ID).total_earnings == Decimal("91.80")

        gateway.delay = 0.0
        retried = await escrow_ledger.process_refund(
            payment.payment_id, Decimal("100"), "x", OWNER_ID
        )
        assert retried.status is PaymentStatus.REFUNDED

    async def test_concurrent_refunds_conflict(
        self, escrow_ledger: EscrowLedger, task: Task
    ) -> None:
        payment = await _pay(escrow_ledger, task)
        slow = ScriptedGateway(delay=0.05)
        escrow_ledger.set_gateway(slow)

        results = await asyncio.gather(
            escrow_ledger.process_refund(payment.payment_id, Decimal("50"), "a", OWNER_ID),
            escrow_ledger.process_refund(payment.payment_id, Decimal("50"), "b", OWNER_ID),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert [c.error for c in conflicts] == ["REFUND_IN_PROGRESS"]
        assert len(slow.refund_calls) == 1

    async def test_refund_of_refunded_payment_conflicts(
        self, escrow_ledger: EscrowLedger, task: Task
    ) -> None:
        payment = await _pay(escrow_ledger, task)
        await escrow_ledger.process_refund(payment.payment_id, Decimal("100"), "x", OWNER_ID)

        with pytest.raises(ConflictError) as exc_info:
            await escrow_ledger.process_refund(payment.payment_id, Decimal("1"), "x", OWNER_ID)
        assert exc_info.value.error == "PAYMENT_NOT_COMPLETED"

    async def test_refund_validation(self, escrow_ledger: EscrowLedger, task: Task) -> None:
        payment = await _pay(escrow_ledger, task)
        pid = payment.payment_id

        with pytest.raises(ValidationError) as exc_info:
            await escrow_ledger.process_refund(pid, Decimal("100.01"), "x", OWNER_ID)
        assert exc_info.value.error == "REFUND_EXCEEDS_PAYMENT"

        with pytest.raises(ValidationError) as exc_info:
            await escrow_ledger.process_refund(pid, Decimal("0"), "x", OWNER_ID)
        assert exc_info.value.error == "INVALID_AMOUNT"

        for amount in ("0.004", "1e20"):
            with pytest.raises(ValidationError) as exc_info:
                await escrow_ledger.process_refund(pid, Decimal(amount), "x", OWNER_ID)
            assert exc_info.value.error == "INVALID_AMOUNT"

        with pytest.raises(ValidationError) as exc_info:
            await escrow_ledger.process_refund(pid, Decimal("1"), " ", OWNER_ID)
        assert exc_info.value.error == "INVALID_REASON"

        with pytest.raises(AuthorizationError) as exc_info:
            await escrow_ledger.process_refund(pid, Decimal("1"), "x", STRANGER_ID)
        assert exc_info.value.error == "NOT_PAYMENT_PARTY"

        with pytest.raises(NotFoundError):
            await escrow_ledger.process_refund("pay-missing", Decimal("1"), "x", OWNER_ID)


@pytest.mark.unit
class TestReads:
    async def test_get_payment_is_party_only(self, escrow_ledger: EscrowLedger, task: Task) -> None:
        payment = await _pay(escrow_ledger, task)

        assert escrow_ledger.get_payment(payment.payment_id, BIDDER_ID) == payment
        with pytest.raises(AuthorizationError):
            escrow_ledger.get_payment(payment.payment_id, STRANGER_ID)

    async def test_list_by_direction(
        self, escrow_ledger: EscrowLedger, registry: TaskRegistry, bid_ledger: BidLedger
    ) -> None:
        first = completed_task(registry, bid_ledger)
        second = completed_task(registry, bid_ledger)
        await _pay(escrow_ledger, first)
        await _pay(escrow_ledger, second, "50")

        sent = escrow_ledger.list_user_payments(OWNER_ID, PaymentDirection.SENT)
        received = escrow_ledger.list_user_payments(OWNER_ID, PaymentDirection.RECEIVED)
        worker = escrow_ledger.list_user_payments(BIDDER_ID, limit=1)

        assert sent.pagination.total == 2
        assert [p.amount for p in sent.payments] == [Decimal("50.00"), Decimal("100.00")]
        assert received.payments == []
        assert len(worker.payments) == 1
        assert worker.pagination.has_next

        with pytest.raises(ValidationError):
            escrow_ledger.list_user_payments(OWNER_ID, page=0)

    async def test_summary(
        self, escrow_ledger: EscrowLedger, gateway: ScriptedGateway, task: Task
    ) -> None:
        gateway.charges = [False]
        with pytest.raises(GatewayError):
            await _pay(escrow_ledger, task)
        payment = await _pay(escrow_ledger, task)
        await escrow_ledger.process_refund(payment.payment_id, Decimal("100"), "x", OWNER_ID)

        summary = escrow_ledger.get_payment_summary(OWNER_ID).to_dict()

        assert summary == {
            "user_id": OWNER_ID,
            "total_earnings": "0.00",
            "total_spent": "0.00",
            "pending_payments": 0,
            "completed_payments": 0,
            "refunded_payments": 1,
        }

    async def test_statistics(
        self,
        escrow_ledger: EscrowLedger,
        gateway: ScriptedGateway,
        registry: TaskRegistry,
        bid_ledger: BidLedger,
    ) -> None:
        paid = completed_task(registry, bid_ledger)
        declined = completed_task(registry, bid_ledger)
        await _pay(escrow_ledger, paid)
        gateway.charges = [False]
        with pytest.raises(GatewayError):
            await _pay(escrow_ledger, declined, "50")

        data = escrow_ledger.get_payment_statistics().to_dict()

        assert data["total_volume"] == "150.00"
        assert data["total_fees"] == "8.20"
        assert data["status_breakdown"]["completed"] == {
            "count": 1,
            "volume": "100.00",
            "fees": "8.20",
        }
        assert data["status_breakdown"]["failed"]["count"] == 1
        assert data["status_breakdown"]["refunded"]["count"] == 0
        assert data["platform_fee_percentage"] == "5"
        assert data["processing_fee_percentage"] == "2.9"
        assert data["processing_fixed_fee"] == "0.30"

    async def test_statistics_date_range(self, escrow_ledger: EscrowLedger, task: Task) -> None:
        await _pay(escrow_ledger, task)
        future = datetime.now(UTC) + timedelta(days=1)

        later = escrow_ledger.get_payment_statistics(start=future)
        assert later.total_volume == Decimal("0.00")

        with pytest.raises(ValidationError) as exc_info:
            escrow_ledger.get_payment_statistics(start=future, end=future - timedelta(days=2))
        assert exc_info.value.error == "INVALID_DATE_RANGE"



@pytest.mark.unit
class TestGatewayContract:
    async def test_ledger_drives_gateway_with_stored_transaction_id(
        self, escrow_ledger: EscrowLedger, task: Task
    ) -> None:
        """The refund goes out against the transaction id the charge returned."""
        mock_gateway = AsyncMock(spec=PaymentGateway)
        mock_gateway.charge.return_value = ChargeResult(True, "tx-1", {"processor": "mock"})
        mock_gateway.refund.return_value = RefundResult(True, "rf-1", {"processor": "mock"})
        escrow_ledger.set_gateway(mock_gateway)

        payment = await _pay(escrow_ledger, task)
        refunded = await escrow_ledger.process_refund(
            payment.payment_id, Decimal("25"), "partial", OWNER_ID
        )

        mock_gateway.charge.assert_awaited_once_with(Decimal("100.00"), CARD)
        mock_gateway.refund.assert_awaited_once_with("tx-1", Decimal("25.00"))
        assert payment.gateway_transaction_id == "tx-1"
        assert payment.gateway_details == {"processor": "mock"}
        assert refunded.refund is not None
        assert refunded.refund.gateway_refund_id == "rf-1"
