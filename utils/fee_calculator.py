"""Fee calculation utilities for escrow payments"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Tuple

from config import Config
from models import PaymentMethod

logger = logging.getLogger(__name__)


class FeeCalculator:
    """Handles fee calculations on integer minor-unit amounts"""

    # FCFA carries no minor unit, fees are whole units
    AMOUNT_PRECISION = Decimal("1")

    @classmethod
    def get_mobile_money_fee_percentage(cls) -> Decimal:
        """Mobile money fee percentage from configuration (Decimal for precision)"""
        return Decimal(str(Config.MOBILE_MONEY_FEE_PERCENTAGE))

    @classmethod
    def calculate_fee(cls, amount: int, method: PaymentMethod) -> int:
        """
        Fee charged on an escrow capture.

        Fee-bearing mobile money methods pay the configured percentage of the
        amount, rounded half-up to a whole unit. Every other method is free.
        """
        if not method.is_fee_bearing:
            return 0

        fee = (Decimal(amount) * cls.get_mobile_money_fee_percentage() / Decimal("100")).quantize(
            cls.AMOUNT_PRECISION, rounding=ROUND_HALF_UP
        )
        return int(fee)

    @classmethod
    def calculate_fee_breakdown(cls, amount: int, method: PaymentMethod) -> Tuple[int, int]:
        """Return (fee_amount, net_amount) with net_amount = amount - fee_amount"""
        fee_amount = cls.calculate_fee(amount, method)
        net_amount = amount - fee_amount
        logger.debug(
            f"💰 FEE_BREAKDOWN: amount={amount} method={method.value} fee={fee_amount} net={net_amount}"
        )
        return fee_amount, net_amount

    @classmethod
    def describe_fee(cls, amount: int, method: PaymentMethod) -> Dict[str, object]:
        """Fee summary suitable for display before the payer confirms"""
        fee_amount, net_amount = cls.calculate_fee_breakdown(amount, method)
        return {
            "amount": amount,
            "fee_amount": fee_amount,
            "net_amount": net_amount,
            "fee_percentage": cls.get_mobile_money_fee_percentage() if method.is_fee_bearing else Decimal("0"),
            "currency": Config.SETTLEMENT_CURRENCY,
            "payment_method": method.value,
        }
