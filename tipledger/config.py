"""
Runtime configuration for the referral ledger and payout engine.

Values come from the environment (or a ``.env`` file) using the same variable
names the admin settings screen edits. Every evaluator and the batch generator
accept an explicit ``LedgerSettings`` so callers can override per run; when
omitted, the cached ``get_settings()`` instance is used.
"""

from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Literal, Optional, Union

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .money import round_half_up

REFERRAL_THRESHOLD_DEFAULT_CENTS = 50000  # R500
REFERRAL_REWARD_DEFAULT_CENTS = 2000  # R20
REPLACEMENT_FEE_DEFAULT_CENTS = 1000  # R10


def parse_zar_to_cents(value: Optional[Union[str, int]], default_cents: int) -> int:
    """Convert a rand amount to cents.

    Integer strings above 1000 (e.g. ``"50000"``) are taken as cents already;
    anything else is treated as rands. Unset or unparseable values fall back to
    ``default_cents``.
    """
    if value is None or isinstance(value, bool):
        return default_cents
    if isinstance(value, int):
        return value

    trimmed = str(value).strip()
    if not trimmed:
        return default_cents

    try:
        numeric = Decimal(trimmed)
    except InvalidOperation:
        return default_cents
    if not numeric.is_finite():
        return default_cents

    if "." not in trimmed and numeric > 1000:
        return round_half_up(numeric)
    return round_half_up(numeric * 100)


class LedgerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Referral milestones
    referral_enabled: bool = Field(default=True, validation_alias="REFERRAL_ENABLED")
    referral_threshold_cents: int = Field(
        default=REFERRAL_THRESHOLD_DEFAULT_CENTS,
        validation_alias=AliasChoices("REFERRAL_MILESTONE_THRESHOLD_ZAR", "REFERRAL_TIP_THRESHOLD_ZAR"),
    )
    referral_reward_cents: int = Field(
        default=REFERRAL_REWARD_DEFAULT_CENTS,
        validation_alias=AliasChoices("REFERRAL_MILESTONE_REWARD_ZAR", "REFERRAL_FEE_PER_GUARD_ZAR"),
    )

    # Referral reversals (T+30)
    reversal_enabled: bool = Field(default=True, validation_alias="REFERRAL_REVERSAL_ENABLED")
    reversal_window_days: int = Field(default=30, validation_alias="REFERRAL_REVERSAL_WINDOW_DAYS")
    reversal_check_abuse_flags: bool = Field(
        default=True, validation_alias="REFERRAL_REVERSAL_CHECK_ABUSE_FLAGS"
    )
    reversal_check_earner_activity: bool = Field(
        default=True, validation_alias="REFERRAL_REVERSAL_CHECK_GUARD_ACTIVITY"
    )
    reversal_min_retention: float = Field(
        default=0.8, validation_alias="REFERRAL_REVERSAL_MIN_GUARD_RETENTION"
    )

    # Fees, as percentages
    processor_fee_percent: Decimal = Field(default=Decimal("0.00"), validation_alias="YOCO_FEE_PERCENT")
    platform_fee_percent: Decimal = Field(default=Decimal("10.00"), validation_alias="PLATFORM_FEE_PERCENT")
    vat_rate_percent: Decimal = Field(default=Decimal("15.00"), validation_alias="VAT_RATE_PERCENT")

    # Payouts, in cents
    transfer_fee_cents: int = Field(default=900, validation_alias="CASH_SEND_FEE_ZAR")
    payout_min_eligibility_cents: int = Field(default=50000, validation_alias="PAYOUT_MIN_ELIGIBILITY_ZAR")
    replacement_fee_cents: int = Field(
        default=REPLACEMENT_FEE_DEFAULT_CENTS, validation_alias="QR_REPLACEMENT_FEE_ZAR"
    )
    reference_prefix: str = Field(default="TPY", validation_alias="REFERENCE_PREFIX")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: Literal["console", "json"] = Field(default="console", validation_alias="LOG_FORMAT")

    @field_validator(
        "referral_enabled",
        "reversal_enabled",
        "reversal_check_abuse_flags",
        "reversal_check_earner_activity",
        mode="before",
    )
    @classmethod
    def _enabled_unless_false(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() != "false"

    @field_validator("referral_threshold_cents", "referral_reward_cents", "replacement_fee_cents", mode="before")
    @classmethod
    def _rands_to_cents(cls, value: Any, info: ValidationInfo) -> int:
        return parse_zar_to_cents(value, cls.model_fields[info.field_name].default)

    @field_validator("reversal_window_days", "transfer_fee_cents", "payout_min_eligibility_cents", mode="before")
    @classmethod
    def _lenient_int(cls, value: Any, info: ValidationInfo) -> int:
        try:
            return int(str(value).strip())
        except (TypeError, ValueError):
            return cls.model_fields[info.field_name].default

    @field_validator(
        "reversal_min_retention",
        "processor_fee_percent",
        "platform_fee_percent",
        "vat_rate_percent",
        mode="before",
    )
    @classmethod
    def _lenient_decimal(cls, value: Any, info: ValidationInfo) -> Union[Decimal, float]:
        try:
            parsed = Decimal(str(value).strip())
        except InvalidOperation:
            parsed = None
        if parsed is None or not parsed.is_finite():
            parsed = Decimal(str(cls.model_fields[info.field_name].default))
        if info.field_name == "reversal_min_retention":
            return float(parsed)
        return parsed

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> str:
        return str(value).strip().upper()


@lru_cache
def get_settings() -> LedgerSettings:
    return LedgerSettings()
