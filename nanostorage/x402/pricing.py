# nanostorage/x402/pricing.py
"""
Fee calculation for storage and downloads.

All amounts are Decimal token units (USDC):
1. Storage fee: size in GiB * daily rate
2. Transfer fee: size in GiB * per-download rate
3. Charged amounts are rounded UP to the minimum payment unit

Configuration is loaded from app settings:
- STORAGE_FEE_PER_GB_PER_DAY: Daily storage rate (default 0.005)
- TRANSFER_FEE_PER_GB: Download rate (default 0.01)
- MIN_PAYMENT_UNIT: Billing granularity (default 0.0001)
"""
import math
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from typing import Optional, Union

from nanostorage.core.config import settings

BYTES_PER_GB = Decimal(2 ** 30)
DAYS_PER_MONTH = 30


def daily_storage_fee(size_bytes: int, rate: Optional[Decimal] = None) -> Decimal:
    """Daily storage fee for a file of the given size."""
    daily_rate = rate if rate is not None else settings.STORAGE_FEE_PER_GB_PER_DAY
    return Decimal(size_bytes) / BYTES_PER_GB * Decimal(daily_rate)


def monthly_storage_fee(size_bytes: int, rate: Optional[Decimal] = None) -> Decimal:
    """Monthly (30 day) storage fee for a file of the given size."""
    return daily_storage_fee(size_bytes, rate) * DAYS_PER_MONTH


def transfer_fee(size_bytes: int, rate: Optional[Decimal] = None) -> Decimal:
    """Transfer fee for one download of a file of the given size."""
    transfer_rate = rate if rate is not None else settings.TRANSFER_FEE_PER_GB
    return Decimal(size_bytes) / BYTES_PER_GB * Decimal(transfer_rate)


def round_up_to_minimum_unit(amount: Decimal, unit: Optional[Decimal] = None) -> Decimal:
    """
    Round an amount up to the nearest multiple of the minimum payment unit.

    Never rounds down, and rounding an already rounded amount returns it
    unchanged.

    Args:
        amount: Non-negative amount in token units
        unit: Billing granularity. Uses config if not provided.

    Returns:
        ceil(amount / unit) * unit
    """
    payment_unit = Decimal(unit if unit is not None else settings.MIN_PAYMENT_UNIT)
    units = (Decimal(amount) / payment_unit).to_integral_value(rounding=ROUND_CEILING)
    return units * payment_unit


def download_fee(size_bytes: int) -> Decimal:
    """Transfer fee for a download, rounded to the minimum payment unit."""
    return round_up_to_minimum_unit(transfer_fee(size_bytes))


def days_covered(balance: Decimal, daily_total: Decimal) -> Union[int, float]:
    """
    Number of whole days a balance covers at the given daily rate.

    Returns math.inf when nothing is charged daily.
    """
    if daily_total == 0:
        return math.inf
    return int((Decimal(balance) / Decimal(daily_total)).to_integral_value(rounding=ROUND_FLOOR))


def from_token_units(raw_amount: int, decimals: Optional[int] = None) -> Decimal:
    """Convert the token's smallest integer denomination to a decimal amount."""
    precision = decimals if decimals is not None else settings.TOKEN_DECIMALS
    return Decimal(int(raw_amount)).scaleb(-precision)


def to_token_units(amount: Decimal, decimals: Optional[int] = None) -> int:
    """Convert a decimal amount to the token's smallest denomination, rounding up."""
    precision = decimals if decimals is not None else settings.TOKEN_DECIMALS
    return int(Decimal(amount).scaleb(precision).to_integral_value(rounding=ROUND_CEILING))
