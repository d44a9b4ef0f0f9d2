"""
Payment fee calculation.

    processor_fee   = gross * processor% / 100
    platform_fee    = gross * platform% / 100
    vat_on_platform = platform_fee * vat% / 100
    net             = gross - processor_fee - platform_fee - vat_on_platform  (floored at 0)

Each component is rounded half-up to whole cents.
"""

import secrets
import string
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel

from .config import LedgerSettings, get_settings
from .errors import ValidationError
from .money import percent_of

Rate = Union[int, float, str, Decimal]

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


class FeeCalculation(BaseModel):
    processor_fee: int
    platform_fee: int
    vat_on_platform: int
    net_amount: int


def calculate_fees(
    amount_gross: int,
    processor_fee_percent: Optional[Rate] = None,
    platform_fee_percent: Optional[Rate] = None,
    vat_rate_percent: Optional[Rate] = None,
    settings: Optional[LedgerSettings] = None,
) -> FeeCalculation:
    if amount_gross < 0:
        raise ValidationError(f"Gross amount must be non-negative, got {amount_gross}")

    if None in (processor_fee_percent, platform_fee_percent, vat_rate_percent):
        settings = settings or get_settings()
        if processor_fee_percent is None:
            processor_fee_percent = settings.processor_fee_percent
        if platform_fee_percent is None:
            platform_fee_percent = settings.platform_fee_percent
        if vat_rate_percent is None:
            vat_rate_percent = settings.vat_rate_percent

    processor_fee = percent_of(amount_gross, processor_fee_percent)
    platform_fee = percent_of(amount_gross, platform_fee_percent)
    vat_on_platform = percent_of(platform_fee, vat_rate_percent)
    net_amount = amount_gross - processor_fee - platform_fee - vat_on_platform

    return FeeCalculation(
        processor_fee=processor_fee,
        platform_fee=platform_fee,
        vat_on_platform=vat_on_platform,
        net_amount=max(0, net_amount),
    )


def generate_payment_reference(
    prefix: str = "TPY",
    on: Optional[Union[date, datetime]] = None,
    suffix: Optional[str] = None,
) -> str:
    """Build a payout reference of the form ``TPY-PAYOUT-YYYYMMDD-XXXXXXXX``."""
    on = on or datetime.now(timezone.utc)
    if suffix is None:
        suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(8))
    return f"{prefix}-PAYOUT-{on:%Y%m%d}-{suffix.upper()}"
