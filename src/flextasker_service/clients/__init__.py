"""Outbound clients."""

from flextasker_service.clients.payment_gateway import (
    ChargeResult,
    HttpPaymentGateway,
    PaymentGateway,
    RefundResult,
    SimulatedPaymentGateway,
)

__all__ = [
    "ChargeResult",
    "HttpPaymentGateway",
    "PaymentGateway",
    "RefundResult",
    "SimulatedPaymentGateway",
]
