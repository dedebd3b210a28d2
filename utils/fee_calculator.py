"""Fee calculation utilities for escrow deals (advisory - the ledger moves the funds)"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple
from config import Config

logger = logging.getLogger(__name__)


class FeeCalculator:
    """Handles all fee-related calculations with mathematical precision"""

    # USDC has 6 decimal places on-chain
    TOKEN_PRECISION = Decimal("0.000001")

    @classmethod
    def get_platform_fee_percentage(cls) -> Decimal:
        """Get the platform fee percentage from configuration - CRITICAL: Returns Decimal for precision"""
        return Decimal(str(Config.ESCROW_FEE_PERCENTAGE))

    @classmethod
    def quantize(cls, amount: Decimal) -> Decimal:
        return Decimal(str(amount)).quantize(cls.TOKEN_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def calculate_platform_fee(cls, amount: Decimal) -> Decimal:
        """Fee withheld on release"""
        fee_percentage = cls.get_platform_fee_percentage()
        return cls.quantize(Decimal(str(amount)) * fee_percentage / Decimal("100"))

    @classmethod
    def calculate_release_split(cls, amount: Decimal) -> Tuple[Decimal, Decimal]:
        """
        Split a released amount into (fee, seller_payout).

        The two parts always add up to the quantized amount; the seller receives
        the remainder after the fee.
        """
        total = cls.quantize(amount)
        fee = cls.calculate_platform_fee(total)
        seller_payout = total - fee
        logger.debug(f"💰 FEE_SPLIT: amount={total} fee={fee} seller_payout={seller_payout}")
        return fee, seller_payout

    @classmethod
    def to_token_units(cls, amount: Decimal) -> int:
        """Convert a USDC amount to integer on-chain units (amount * 10**decimals)"""
        scaled = Decimal(str(amount)) * (Decimal(10) ** Config.TOKEN_DECIMALS)
        return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def format_amount(cls, amount: Decimal) -> str:
        """Human display, e.g. 50 USDC or 12.5 USDC"""
        normalized = cls.quantize(amount).normalize()
        text = format(normalized, "f")
        return f"{text} {Config.CURRENCY}"
