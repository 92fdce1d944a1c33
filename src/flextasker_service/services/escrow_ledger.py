"""
Escrow payments: fee computation, gateway submission, balance crediting,
and refund reversal.

A payment or refund is written in two short transactions around the
gateway call. The first claims the slot (a PENDING row guarded by a
partial unique index); the second records the gateway outcome together
with any balance mutation. No transaction is open while the gateway is
awaited.
"""

from __future__ import annotations

import asyncio
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Literal

from flextasker_service.clients.payment_gateway import ChargeResult, RefundResult
from flextasker_service.errors import (
    AuthorizationError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from flextasker_service.logging import get_logger
from flextasker_service.models import (
    Pagination,
    Payment,
    PaymentDirection,
    PaymentMethod,
    PaymentPage,
    PaymentStatistics,
    PaymentStatus,
    PaymentSummary,
    Refund,
    RefundStatus,
    StatusVolume,
    TaskStatus,
    UserBalance,
    utc_now,
)
from flextasker_service.money import MAX_AMOUNT, exceeds_limit, quantize
from flextasker_service.services.marketplace_store import (
    DuplicatePaymentError,
    DuplicateRefundError,
)

if TYPE_CHECKING:
    from datetime import datetime

    from flextasker_service.clients.payment_gateway import PaymentGateway
    from flextasker_service.services.fee_model import FeeModel
    from flextasker_service.services.marketplace_store import MarketplaceStore, StoreTransaction

logger = get_logger(__name__)

RefundReversal = Literal["stored", "recompute"]

_HUNDRED = Decimal(100)


def _require_payment(tx: StoreTransaction, payment_id: str, action: str) -> Payment:
    payment = tx.get_payment(payment_id)
    if payment is None:
        raise NotFoundError(
            "PAYMENT_NOT_FOUND",
            "Payment not found",
            {"payment_id": payment_id, "action": action},
        )
    return payment


class EscrowLedger:
    """Owns the monetary lifecycle of a task's payment."""

    def __init__(
        self,
        store: MarketplaceStore,
        gateway: PaymentGateway,
        fee_model: FeeModel,
        gateway_timeout_seconds: float,
        refund_reversal: RefundReversal,
        default_page_size: int,
        max_page_size: int,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._fee_model = fee_model
        self._gateway_timeout_seconds = gateway_timeout_seconds
        self._refund_reversal = refund_reversal
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    def set_gateway(self, gateway: PaymentGateway) -> None:
        """Swap the gateway strategy."""
        self._gateway = gateway

    # ------------------------------------------------------------------
    # Gateway calls, bounded by the configured timeout
    # ------------------------------------------------------------------

    async def _charge(self, payment: Payment) -> ChargeResult:
        try:
            async with asyncio.timeout(self._gateway_timeout_seconds):
                return await self._gateway.charge(payment.amount, payment.payment_method)
        except TimeoutError:
            logger.warning(
                "Payment gateway charge timed out",
                extra={"payment_id": payment.payment_id, "timeout": self._gateway_timeout_seconds},
            )
            return ChargeResult(False, None, {"reason": "timeout"})
        except asyncio.CancelledError:
            with self._store.transaction() as tx:
                tx.fail_payment(payment.payment_id, {"reason": "cancelled"})
            logger.warning(
                "Payment gateway charge cancelled", extra={"payment_id": payment.payment_id}
            )
            raise
        except Exception as exc:
            logger.exception(
                "Payment gateway charge raised", extra={"payment_id": payment.payment_id}
            )
            return ChargeResult(False, None, {"reason": "gateway_error", "error": str(exc)})

    async def _refund(self, payment: Payment, refund: Refund) -> RefundResult:
        transaction_id = payment.gateway_transaction_id or ""
        try:
            async with asyncio.timeout(self._gateway_timeout_seconds):
                return await self._gateway.refund(transaction_id, refund.amount)
        except TimeoutError:
            logger.warning(
                "Payment gateway refund timed out",
                extra={"refund_id": refund.refund_id, "timeout": self._gateway_timeout_seconds},
            )
            return RefundResult(False, None, {"reason": "timeout"})
        except asyncio.CancelledError:
            with self._store.transaction() as tx:
                tx.fail_refund(refund.refund_id, {"reason": "cancelled"})
            logger.warning(
                "Payment gateway refund cancelled", extra={"refund_id": refund.refund_id}
            )
            raise
        except Exception as exc:
            logger.exception(
                "Payment gateway refund raised", extra={"refund_id": refund.refund_id}
            )
            return RefundResult(False, None, {"reason": "gateway_error", "error": str(exc)})

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    async def create_payment(
        self,
        payer_id: str,
        task_id: str,
        amount: Decimal,
        payment_method: PaymentMethod,
    ) -> Payment:
        """
        Pay for a completed task.

        Raises:
            ValidationError: INVALID_AMOUNT, AMOUNT_BELOW_FEES, NOT_TASK_OWNER
            NotFoundError: TASK_NOT_FOUND
            ConflictError: TASK_NOT_COMPLETED, PAYMENT_ALREADY_EXISTS
            GatewayError: PAYMENT_FAILED (payment recorded as FAILED)
        """
        action = "create_payment"
        if exceeds_limit(amount) or quantize(amount) <= 0:
            raise ValidationError(
                "INVALID_AMOUNT",
                f"Payment amount must be greater than zero and at most {MAX_AMOUNT}",
                {"task_id": task_id, "amount": str(amount), "action": action},
            )
        amount = quantize(amount)
        fees = self._fee_model.compute(amount)
        if fees.assignee_earnings <= 0:
            raise ValidationError(
                "AMOUNT_BELOW_FEES",
                "Payment amount must exceed the total fees",
                {
                    "task_id": task_id,
                    "amount": str(amount),
                    "total_fees": str(fees.total_fees),
                    "action": action,
                },
            )

        with self._store.transaction() as tx:
            task = tx.get_task(task_id)
            if task is None:
                raise NotFoundError(
                    "TASK_NOT_FOUND", "Task not found", {"task_id": task_id, "action": action}
                )
            if task.owner_id != payer_id:
                raise ValidationError(
                    "NOT_TASK_OWNER",
                    "Only the task owner can pay for the task",
                    {"task_id": task_id, "payer_id": payer_id, "action": action},
                )
            if task.status is not TaskStatus.COMPLETED:
                raise ConflictError(
                    "TASK_NOT_COMPLETED",
                    "Task must be completed before payment",
                    {"task_id": task_id, "status": task.status.value, "action": action},
                )
            existing = tx.find_active_payment(task_id)
            if existing is not None:
                raise ConflictError(
                    "PAYMENT_ALREADY_EXISTS",
                    "Task already has a pending or completed payment",
                    {"task_id": task_id, "payment_id": existing.payment_id, "action": action},
                )

            payment = Payment(
                payment_id=f"pay-{uuid.uuid4()}",
                task_id=task_id,
                payer_id=payer_id,
                payee_id=task.assignee_id,
                amount=amount,
                status=PaymentStatus.PENDING,
                payment_method=payment_method,
                fees=fees,
                created_at=utc_now(),
            )
            try:
                tx.insert_payment(payment)
            except DuplicatePaymentError as exc:
                raise ConflictError(
                    "PAYMENT_ALREADY_EXISTS",
                    "Task already has a pending or completed payment",
                    {"task_id": task_id, "action": action},
                ) from exc

        logger.info(
            "Payment pending",
            extra={"payment_id": payment.payment_id, "task_id": task_id, "amount": str(amount)},
        )

        result = await self._charge(payment)

        if not result.success:
            with self._store.transaction() as tx:
                tx.fail_payment(payment.payment_id, result.details)
            logger.warning(
                "Payment failed",
                extra={
                    "payment_id": payment.payment_id,
                    "task_id": task_id,
                    "gateway": result.details,
                },
            )
            raise GatewayError(
                "PAYMENT_FAILED",
                "Payment gateway did not accept the charge",
                {
                    "payment_id": payment.payment_id,
                    "task_id": task_id,
                    "action": action,
                    "gateway": result.details,
                },
            )

        with self._store.transaction() as tx:
            if not tx.complete_payment(
                payment.payment_id, result.transaction_id, result.details, utc_now()
            ):
                raise ConflictError(
                    "PAYMENT_NOT_PENDING",
                    "Payment is no longer pending",
                    {"payment_id": payment.payment_id, "action": action},
                )
            tx.increment_spent(payer_id, amount)
            if payment.payee_id is not None:
                tx.increment_earnings(payment.payee_id, fees.assignee_earnings)
            completed = _require_payment(tx, payment.payment_id, action)

        logger.info(
            "Payment completed",
            extra={
                "payment_id": payment.payment_id,
                "task_id": task_id,
                "gateway_transaction_id": result.transaction_id,
                "assignee_earnings": str(fees.assignee_earnings),
            },
        )
        return completed

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    def _reversed_earnings(self, payment: Payment, refund_amount: Decimal) -> Decimal:
        if payment.payee_id is None:
            return Decimal("0.00")
        if self._refund_reversal == "recompute":
            recomputed = self._fee_model.compute(refund_amount).assignee_earnings
            return max(recomputed, Decimal("0.00"))
        return quantize(payment.fees.assignee_earnings * refund_amount / payment.amount)

    async def process_refund(
        self,
        payment_id: str,
        refund_amount: Decimal,
        reason: str,
        requested_by: str,
    ) -> Payment:
        """
        Refund a completed payment, reversing its balance mutations.

        Raises:
            ValidationError: INVALID_AMOUNT, INVALID_REASON, REFUND_EXCEEDS_PAYMENT
            NotFoundError: PAYMENT_NOT_FOUND
            AuthorizationError: NOT_PAYMENT_PARTY
            ConflictError: PAYMENT_NOT_COMPLETED, REFUND_IN_PROGRESS
            GatewayError: REFUND_FAILED (payment and balances untouched)
        """
        action = "process_refund"
        if exceeds_limit(refund_amount) or quantize(refund_amount) <= 0:
            raise ValidationError(
                "INVALID_AMOUNT",
                f"Refund amount must be greater than zero and at most {MAX_AMOUNT}",
                {"payment_id": payment_id, "amount": str(refund_amount), "action": action},
            )
        if not reason.strip():
            raise ValidationError(
                "INVALID_REASON",
                "reason must not be empty",
                {"payment_id": payment_id, "action": action},
            )
        refund_amount = quantize(refund_amount)

        with self._store.transaction() as tx:
            payment = _require_payment(tx, payment_id, action)
            if requested_by not in (payment.payer_id, payment.payee_id):
                raise AuthorizationError(
                    "NOT_PAYMENT_PARTY",
                    "Only the payer or payee can request a refund",
                    {"payment_id": payment_id, "action": action},
                )
            if payment.status is not PaymentStatus.COMPLETED:
                raise ConflictError(
                    "PAYMENT_NOT_COMPLETED",
                    "Only completed payments can be refunded",
                    {"payment_id": payment_id, "status": payment.status.value, "action": action},
                )
            if refund_amount > payment.amount:
                raise ValidationError(
                    "REFUND_EXCEEDS_PAYMENT",
                    "Refund amount cannot exceed the payment amount",
                    {
                        "payment_id": payment_id,
                        "amount": str(refund_amount),
                        "payment_amount": str(payment.amount),
                        "action": action,
                    },
                )
            if tx.find_active_refund(payment_id) is not None:
                raise ConflictError(
                    "REFUND_IN_PROGRESS",
                    "A refund for this payment is already in progress",
                    {"payment_id": payment_id, "action": action},
                )

            refund = Refund(
                refund_id=f"ref-{uuid.uuid4()}",
                payment_id=payment_id,
                amount=refund_amount,
                reason=reason,
                requested_by=requested_by,
                status=RefundStatus.PENDING,
                reversed_earnings=self._reversed_earnings(payment, refund_amount),
                created_at=utc_now(),
            )
            try:
                tx.insert_refund(refund)
            except DuplicateRefundError as exc:
                raise ConflictError(
                    "REFUND_IN_PROGRESS",
                    "A refund for this payment is already in progress",
                    {"payment_id": payment_id, "action": action},
                ) from exc

        logger.info(
            "Refund pending",
            extra={
                "refund_id": refund.refund_id,
                "payment_id": payment_id,
                "amount": str(refund_amount),
            },
        )

        result = await self._refund(payment, refund)

        if not result.success:
            with self._store.transaction() as tx:
                tx.fail_refund(refund.refund_id, result.details)
            logger.warning(
                "Refund failed",
                extra={
                    "refund_id": refund.refund_id,
                    "payment_id": payment_id,
                    "gateway": result.details,
                },
            )
            raise GatewayError(
                "REFUND_FAILED",
                "Payment gateway did not accept the refund",
                {
                    "payment_id": payment_id,
                    "refund_id": refund.refund_id,
                    "action": action,
                    "gateway": result.details,
                },
            )

        with self._store.transaction() as tx:
            tx.complete_refund(
                refund.refund_id, result.refund_transaction_id, result.details, utc_now()
            )
            if not tx.mark_payment_refunded(payment_id):
                raise ConflictError(
                    "PAYMENT_NOT_COMPLETED",
                    "Payment is no longer completed",
                    {"payment_id": payment_id, "action": action},
                )
            tx.decrement_spent(payment.payer_id, refund_amount)
            if payment.payee_id is not None:
                tx.decrement_earnings(payment.payee_id, refund.reversed_earnings)
            refunded = _require_payment(tx, payment_id, action)

        logger.info(
            "Refund completed",
            extra={
                "refund_id": refund.refund_id,
                "payment_id": payment_id,
                "reversed_earnings": str(refund.reversed_earnings),
            },
        )
        return refunded

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: str, user_id: str) -> Payment:
        action = "get_payment"
        with self._store.snapshot() as tx:
            payment = _require_payment(tx, payment_id, action)
        if user_id not in (payment.payer_id, payment.payee_id):
            raise AuthorizationError(
                "NOT_PAYMENT_PARTY",
                "Only the payer or payee can view this payment",
                {"payment_id": payment_id, "action": action},
            )
        return payment

    def list_user_payments(
        self,
        user_id: str,
        direction: PaymentDirection | None = None,
        status: PaymentStatus | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> PaymentPage:
        limit = self._default_page_size if limit is None else limit
        if page < 1 or limit < 1 or limit > self._max_page_size:
            raise ValidationError(
                "INVALID_PAGINATION",
                f"page must be >= 1 and limit within 1..{self._max_page_size}",
                {"page": page, "limit": limit, "action": "list_user_payments"},
            )
        with self._store.snapshot() as tx:
            payments, total = tx.list_user_payments(
                user_id, direction, status, limit=limit, offset=(page - 1) * limit
            )
        return PaymentPage(
            payments=payments, pagination=Pagination(page=page, limit=limit, total=total)
        )

    def get_balance(self, user_id: str) -> UserBalance:
        with self._store.snapshot() as tx:
            return tx.get_balance(user_id)

    def get_payment_summary(self, user_id: str) -> PaymentSummary:
        with self._store.snapshot() as tx:
            balance = tx.get_balance(user_id)
            counts = tx.count_user_payments_by_status(user_id)
        return PaymentSummary(
            balance=balance,
            pending_payments=counts.get(PaymentStatus.PENDING.value, 0),
            completed_payments=counts.get(PaymentStatus.COMPLETED.value, 0),
            refunded_payments=counts.get(PaymentStatus.REFUNDED.value, 0),
        )

    def get_payment_statistics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> PaymentStatistics:
        """Volume over every payment in range; fees count completed payments only."""
        if start is not None and end is not None and start > end:
            raise ValidationError(
                "INVALID_DATE_RANGE",
                "start must not be after end",
                {"action": "get_payment_statistics"},
            )
        with self._store.snapshot() as tx:
            totals = tx.payment_totals_by_status(start, end)

        zero = Decimal("0.00")
        breakdown: dict[str, StatusVolume] = {}
        for status in PaymentStatus:
            count, volume, fees = totals.get(status.value, (0, zero, zero))
            breakdown[status.value] = StatusVolume(count=count, volume=volume, fees=fees)

        return PaymentStatistics(
            total_volume=sum((entry.volume for entry in breakdown.values()), zero),
            total_fees=breakdown[PaymentStatus.COMPLETED.value].fees,
            status_breakdown=breakdown,
            platform_fee_percentage=self._fee_model.platform_rate * _HUNDRED,
            processing_fee_percentage=self._fee_model.processing_rate * _HUNDRED,
            processing_fixed_fee=quantize(self._fee_model.processing_fixed),
        )
