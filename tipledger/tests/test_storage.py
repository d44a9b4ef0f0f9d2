"""
Unit Tests for the in-memory ledger store
"""

from datetime import date
from uuid import uuid4

import pytest

from conftest import REFERRER_ID, add_earner, add_referral
from tipledger.errors import ConflictError, NotFoundError, ProcessorError
from tipledger.models import AwardSuccess, BatchStatus, EventType, ReversalSuccess, RpcFailure
from tipledger.payouts import record_fee_deduction


def _batch(store, status=BatchStatus.GENERATED, forced=False):
    return store.insert("payout_batches", {
        "batch_number": f"TPY-PAYOUT-20261010-{uuid4().hex[:8].upper()}",
        "period_start_date": date(2026, 10, 10),
        "period_end_date": date(2026, 10, 16),
        "processed_date": date(2026, 10, 17),
        "status": status,
        "forced": forced,
    })


class TestQuery:
    def test_filter_operators(self, store):
        low = add_earner(store, net=100)
        mid = add_earner(store, net=500)
        high = add_earner(store, net=900, status="suspended")

        assert {r["id"] for r in store.query("earners", lifetime_net_tips__gte=500)} == {mid["id"], high["id"]}
        assert {r["id"] for r in store.query("earners", lifetime_net_tips__lt=500)} == {low["id"]}
        assert {r["id"] for r in store.query("earners", status__ne="active")} == {high["id"]}
        assert {r["id"] for r in store.query("earners", id__in={low["id"], high["id"]})} == {low["id"], high["id"]}

    def test_ordering(self, store):
        for net in (300, 100, 200):
            add_earner(store, net=net)

        ascending = [r["lifetime_net_tips"] for r in store.query("earners", order_by="lifetime_net_tips")]
        descending = [r["lifetime_net_tips"] for r in store.query("earners", order_by="-lifetime_net_tips")]

        assert ascending == [100, 200, 300]
        assert descending == [300, 200, 100]

    def test_rows_are_copies(self, store):
        earner = add_earner(store, net=100)
        store.query_one("earners", id=earner["id"])["lifetime_net_tips"] = 999
        assert store.query_one("earners", id=earner["id"])["lifetime_net_tips"] == 100

    def test_unknown_operator_on_empty_table(self, store):
        with pytest.raises(ProcessorError):
            store.query("earners", status__like="act%")

    def test_unknown_operator_with_rows(self, store):
        add_earner(store)
        with pytest.raises(ProcessorError):
            store.query("earners", lifetime_net_tips__between=(0, 10))

    def test_query_one_missing(self, store):
        with pytest.raises(NotFoundError):
            store.query_one("earners", id=uuid4())


class TestConstraints:
    """Tests for the rules a relational schema would enforce."""

    def test_ledger_is_append_only(self, store):
        earner = add_earner(store, gross=60000)
        referral = add_referral(store, earner["id"])
        outcome = store.award_milestone(referral["id"], REFERRER_ID, earner["id"], 60000, 50000, 2000)

        with pytest.raises(ProcessorError):
            store.update("referral_earnings_ledger", outcome.ledger_entry.id, {"amount": 1})

    def test_reversal_must_reference_earned_entry(self, store):
        with pytest.raises(ProcessorError):
            store.insert("referral_earnings_ledger", {
                "referrer_id": REFERRER_ID,
                "event_type": EventType.REVERSAL,
                "amount": 2000,
                "balance_after": 0,
                "reversal_reference_id": uuid4(),
            })

    def test_one_open_batch_per_period(self, store):
        first = _batch(store)

        with pytest.raises(ConflictError) as exc_info:
            _batch(store)

        assert exc_info.value.batch_id == first["id"]
        _batch(store, forced=True)
        _batch(store, status=BatchStatus.FAILED)
        assert len(store.query("payout_batches")) == 3

    def test_transaction_rolls_back(self, store):
        earner = add_earner(store, net=100)

        with pytest.raises(ProcessorError):
            with store.transaction():
                store.update("earners", earner["id"], {"lifetime_net_tips": 500})
                add_earner(store)
                raise ProcessorError("boom")

        assert store.query_one("earners", id=earner["id"])["lifetime_net_tips"] == 100
        assert len(store.query("earners")) == 1


class TestAtomicOperations:
    def test_award_then_duplicate(self, store):
        earner = add_earner(store, gross=60000)
        referral = add_referral(store, earner["id"])

        first = store.award_milestone(referral["id"], REFERRER_ID, earner["id"], 60000, 50000, 2000)
        second = store.award_milestone(referral["id"], REFERRER_ID, earner["id"], 60000, 50000, 2000)

        assert isinstance(first, AwardSuccess)
        assert first.balance_after == 2000
        assert isinstance(second, RpcFailure)
        assert second.code == "MILESTONE_EXISTS"
        assert store.get_referrer_balance(REFERRER_ID) == 2000

    def test_award_unknown_referral(self, store):
        outcome = store.award_milestone(uuid4(), REFERRER_ID, uuid4(), 60000, 50000, 2000)
        assert isinstance(outcome, RpcFailure)
        assert outcome.code == "NOT_FOUND"

    def test_reverse_twice(self, store):
        earner = add_earner(store, gross=60000)
        referral = add_referral(store, earner["id"])
        award = store.award_milestone(referral["id"], REFERRER_ID, earner["id"], 60000, 50000, 2000)

        first = store.reverse_milestone(award.milestone_id, award.ledger_entry.id, "test")
        second = store.reverse_milestone(award.milestone_id, award.ledger_entry.id, "test")

        assert isinstance(first, ReversalSuccess)
        assert first.balance_after == 0
        assert isinstance(second, RpcFailure)
        assert second.code == "ALREADY_REVERSED"
        assert len(store.query("referral_earnings_ledger", event_type=EventType.REVERSAL)) == 1

    def test_claims_are_exclusive(self, store, settings):
        earner = add_earner(store)
        item = record_fee_deduction(store, earner["id"], settings=settings)
        first_batch, second_batch = uuid4(), uuid4()

        assert store.claim_fee_items([item.id], first_batch) == 1
        assert store.claim_fee_items([item.id], second_batch) == 0
        assert store.release_fee_items(first_batch) == 1
        assert store.claim_fee_items([item.id], second_batch) == 1
