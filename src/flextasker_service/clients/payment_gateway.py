"""Payment gateway strategies: a remote HTTP processor and a local simulator."""

from __future__ import annotations

import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from flextasker_service.logging import get_logger
from flextasker_service.money import format_money

if TYPE_CHECKING:
    from decimal import Decimal

    from flextasker_service.models import PaymentMethod


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    transaction_id: str | None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_transaction_id: str | None
    details: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """
    External payment processor.

    Implementations report declines and transport problems as unsuccessful
    results. The escrow ledger bounds every call with its own timeout.
    """

    @abstractmethod
    async def charge(self, amount: Decimal, method: PaymentMethod) -> ChargeResult:
        """Charge the payer."""

    @abstractmethod
    async def refund(self, transaction_id: str, amount: Decimal) -> RefundResult:
        """Refund part or all of an earlier charge."""

    async def close(self) -> None:  # noqa: B027
        """Release any held resources."""


class SimulatedPaymentGateway(PaymentGateway):
    """
    Local stand-in for a card processor.

    Succeeds with probability success_rate. A fixed seed makes the
    sequence of outcomes reproducible.
    """

    def __init__(self, success_rate: float, seed: int | None) -> None:
        if not 0.0 <= success_rate <= 1.0:
            msg = f"success_rate must be within [0, 1], got {success_rate}"
            raise ValueError(msg)
        self._success_rate = success_rate
        self._random = random.Random(seed)  # nosec B311

    async def charge(self, amount: Decimal, method: PaymentMethod) -> ChargeResult:
        details: dict[str, Any] = {
            "processor": "simulated",
            "amount": format_money(amount),
            "payment_method": method.value,
        }
        if self._random.random() >= self._success_rate:
            return ChargeResult(False, None, {**details, "reason": "declined"})
        return ChargeResult(True, f"ch-{uuid.uuid4()}", details)

    async def refund(self, transaction_id: str, amount: Decimal) -> RefundResult:
        details: dict[str, Any] = {
            "processor": "simulated",
            "original_transaction_id": transaction_id,
            "amount": format_money(amount),
        }
        if self._random.random() >= self._success_rate:
            return RefundResult(False, None, {**details, "reason": "declined"})
        return RefundResult(True, f"re-{uuid.uuid4()}", details)


class HttpPaymentGateway(PaymentGateway):
    """
    Client for a remote payment processor.

    POSTs JSON to the configured charge and refund paths. The processor
    answers 200/201 with {"success": bool, "transaction_id": str, ...};
    anything else (connection failure, other status, bad body) becomes an
    unsuccessful result carrying the reason.
    """

    def __init__(
        self,
        base_url: str,
        charge_path: str,
        refund_path: str,
        timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._charge_path = charge_path
        self._refund_path = refund_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def _post(self, path: str, payload: dict[str, Any]) -> tuple[bool, dict[str, Any]]:
        logger = get_logger(__name__)

        try:
            response = await self._client.post(path, json=payload)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Payment gateway connection failed",
                extra={"error": str(exc), "base_url": self._base_url, "path": path},
            )
            return False, {"reason": "unreachable", "error": str(exc)}
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment gateway HTTP error",
                extra={"error": str(exc), "base_url": self._base_url, "path": path},
            )
            return False, {"reason": "http_error", "error": str(exc)}

        if response.status_code not in (200, 201):
            logger.warning(
                "Payment gateway rejected request",
                extra={"status_code": response.status_code, "path": path},
            )
            return False, {"reason": "http_status", "status_code": response.status_code}

        try:
            body = response.json()
        except ValueError:
            return False, {"reason": "invalid_response"}
        if not isinstance(body, dict):
            return False, {"reason": "invalid_response"}

        return bool(body.get("success", False)), body

    async def charge(self, amount: Decimal, method: PaymentMethod) -> ChargeResult:
        ok, body = await self._post(
            self._charge_path,
            {"amount": format_money(amount), "payment_method": method.value},
        )
        transaction_id = body.get("transaction_id")
        if ok and isinstance(transaction_id, str) and transaction_id:
            return ChargeResult(True, transaction_id, body)
        return ChargeResult(False, None, body)

    async def refund(self, transaction_id: str, amount: Decimal) -> RefundResult:
        ok, body = await self._post(
            self._refund_path,
            {"transaction_id": transaction_id, "amount": format_money(amount)},
        )
        refund_id = body.get("refund_transaction_id", body.get("transaction_id"))
        if ok and isinstance(refund_id, str) and refund_id:
            return RefundResult(True, refund_id, body)
        return RefundResult(False, None, body)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
