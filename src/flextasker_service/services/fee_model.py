"""Fee arithmetic shared by payment and refund."""

from __future__ import annotations

from decimal import Decimal

from flextasker_service.models import FeeBreakdown
from flextasker_service.money import quantize


class FeeModel:
    """
    Pure fee schedule.

    Each fee is quantized to cents on its own and earnings are derived by
    subtraction, so platform_fee + processing_fee + assignee_earnings is
    always exactly the amount.
    """

    def __init__(
        self,
        platform_rate: Decimal,
        processing_rate: Decimal,
        processing_fixed: Decimal,
    ) -> None:
        self.platform_rate = platform_rate
        self.processing_rate = processing_rate
        self.processing_fixed = processing_fixed

    def compute(self, amount: Decimal) -> FeeBreakdown:
        amount = quantize(amount)
        platform_fee = quantize(amount * self.platform_rate)
        processing_fee = quantize(amount * self.processing_rate + self.processing_fixed)
        total_fees = platform_fee + processing_fee
        return FeeBreakdown(
            platform_fee=platform_fee,
            processing_fee=processing_fee,
            total_fees=total_fees,
            assignee_earnings=amount - total_fees,
        )
