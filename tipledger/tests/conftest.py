from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from tipledger.config import LedgerSettings
from tipledger.storage import InMemoryStorage

# Monday 19 October 2026, 09:00 UTC
NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)

REFERRER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def store(clock):
    return InMemoryStorage(clock=clock)


@pytest.fixture
def settings():
    return LedgerSettings(
        _env_file=None,
        referral_enabled=True,
        referral_threshold_cents=50000,
        referral_reward_cents=2000,
        reversal_enabled=True,
        reversal_window_days=30,
        reversal_check_abuse_flags=True,
        reversal_check_earner_activity=True,
        reversal_min_retention=0.8,
        transfer_fee_cents=900,
        payout_min_eligibility_cents=50000,
        replacement_fee_cents=1000,
    )


def add_earner(store, gross=0, net=0, payouts=0, status="active", earner_id=None):
    return store.insert("earners", {
        "id": earner_id or uuid4(),
        "status": status,
        "lifetime_gross_tips": gross,
        "lifetime_net_tips": net,
        "lifetime_payouts": payouts,
    })


def add_referral(store, earner_id, referrer_id=REFERRER_ID, status="pending"):
    return store.insert("referrals", {
        "referrer_id": referrer_id,
        "referred_earner_id": earner_id,
        "status": status,
        "milestone_reached_at": None,
    })


def set_gross(store, earner_id, gross):
    store.update("earners", earner_id, {"lifetime_gross_tips": gross})
