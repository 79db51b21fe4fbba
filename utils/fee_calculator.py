"""Fee calculation utilities for escrow releases and withdrawals"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Optional

from config import Config

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeSplit:
    """Gross amount split into fee and net; fee + net == gross"""
    gross: int
    fee: int
    net: int


class FeeCalculator:
    """Handles all fee-related calculations on integer minor units"""

    @classmethod
    def get_platform_fee_percentage(cls) -> Decimal:
        """Platform fee percentage from configuration, as Decimal"""
        return Decimal(str(Config.PLATFORM_FEE_PERCENTAGE))

    @staticmethod
    def _percentage_of(amount: int, percentage: Decimal, rounding: str) -> int:
        value = Decimal(amount) * percentage / HUNDRED
        return int(value.to_integral_value(rounding=rounding))

    @classmethod
    def calculate_platform_fee(cls, price: int, percentage: Optional[Decimal] = None) -> FeeSplit:
        """
        Split an order price into platform fee and seller net.

        The fee is rounded down; the seller receives the remainder so the
        two parts always add back up to the price exactly.
        """
        if price <= 0:
            raise ValueError(f"price must be positive, got {price}")
        pct = cls.get_platform_fee_percentage() if percentage is None else Decimal(str(percentage))
        fee = cls._percentage_of(price, pct, ROUND_FLOOR)
        split = FeeSplit(gross=price, fee=fee, net=price - fee)
        logger.debug(f"Platform fee: price={price} pct={pct} fee={split.fee} net={split.net}")
        return split

    @classmethod
    def calculate_withdrawal_fee(
        cls,
        amount: int,
        fixed_fee: Optional[int] = None,
        percentage: Optional[Decimal] = None,
    ) -> FeeSplit:
        """Withdrawal fee = fixed + percentage of amount (percentage part rounded half-up)"""
        fixed = Config.WITHDRAWAL_FEE_FIXED if fixed_fee is None else fixed_fee
        pct = Config.WITHDRAWAL_FEE_PERCENTAGE if percentage is None else Decimal(str(percentage))
        fee = fixed + cls._percentage_of(amount, pct, ROUND_HALF_UP)
        return FeeSplit(gross=amount, fee=fee, net=amount - fee)
