"""
Unit Tests for weekly payout batch generation
"""

import re
from datetime import date, datetime, timezone
from uuid import uuid4

import pytest

from conftest import NOW, add_earner
from tipledger.errors import ConflictError, NotFoundError, ProcessorError, ValidationError
from tipledger.export import CSV_HEADER
from tipledger.models import BatchStatus, ItemStatus, ItemType, PayoutPeriodRequest
from tipledger.payouts import (
    assert_transition,
    generate_payout_batch,
    previous_week,
    record_fee_deduction,
    resolve_period,
    settle_payout_batch,
)
from tipledger.storage import InMemoryStorage

WEEK = PayoutPeriodRequest(period_start_date="2026-10-10", period_end_date="2026-10-16")
NEXT_WEEK = PayoutPeriodRequest(period_start_date="2026-10-17", period_end_date="2026-10-23")


class TestPayoutPeriod:
    def test_default_period_starts_previous_saturday(self):
        period = resolve_period(None, NOW)

        assert period.start_date == date(2026, 10, 17)
        assert period.end_date == date(2026, 10, 23)
        assert period.starts_at == datetime(2026, 10, 17, tzinfo=timezone.utc)
        assert period.ends_at == datetime(2026, 10, 23, 23, 59, 59, 999000, tzinfo=timezone.utc)

    @pytest.mark.parametrize("today, expected_start", [
        (datetime(2026, 10, 17, 12, tzinfo=timezone.utc), date(2026, 10, 10)),  # Saturday
        (datetime(2026, 10, 18, 12, tzinfo=timezone.utc), date(2026, 10, 17)),  # Sunday
        (datetime(2026, 10, 23, 12, tzinfo=timezone.utc), date(2026, 10, 17)),  # Friday
    ])
    def test_previous_week(self, today, expected_start):
        assert previous_week(today).start_date == expected_start

    def test_start_only_spans_seven_days(self):
        period = resolve_period(PayoutPeriodRequest(period_start_date="2026-10-03"), NOW)
        assert period.end_date == date(2026, 10, 9)

    @pytest.mark.parametrize("start, end", [
        ("2026/10/10", "2026-10-16"),
        ("2026-13-01", "2026-10-16"),
        ("2026-10-16", "2026-10-16"),
        ("2026-10-20", "2026-10-16"),
    ])
    def test_invalid_periods_rejected(self, start, end):
        with pytest.raises(ValidationError):
            resolve_period(PayoutPeriodRequest(period_start_date=start, period_end_date=end), NOW)


class TestGeneratePayoutBatch:
    """Tests for batch generation and fee-deduction claims."""

    def test_fee_deductions_claimed_by_batch(self, store, settings):
        earner = add_earner(store, net=200000)
        fees = [record_fee_deduction(store, earner["id"], settings=settings) for _ in range(2)]

        result = generate_payout_batch(store, settings, period=WEEK, now=NOW)

        assert result.batch.status == BatchStatus.GENERATED
        assert re.fullmatch(r"TPY-PAYOUT-20261010-[A-Z0-9]{8}", result.batch.batch_number)
        assert len(result.items) == 1
        item = result.items[0]
        assert item.item_type == ItemType.EARNER
        assert item.amount == 200000
        assert item.fee == 900
        assert item.net_amount == 197100

        assert {i.id for i in result.claimed_fee_items} == {fee.id for fee in fees}
        for fee in fees:
            claimed = store.query_one("payout_batch_items", id=fee.id)
            assert claimed["payout_batch_id"] == result.batch.id

        assert result.batch.total_amount == 200000
        assert result.batch.total_transfer_fees == 900
        assert result.batch.total_fee_deductions == 2000
        assert result.batch.total_net_amount == 197100
        assert result.batch.total_beneficiaries == 1

        following = generate_payout_batch(store, settings, period=NEXT_WEEK, now=NOW)

        assert following.claimed_fee_items == []
        assert following.batch.total_fee_deductions == 0
        assert following.items[0].net_amount == 199100
        for fee in fees:
            assert store.query_one("payout_batch_items", id=fee.id)["payout_batch_id"] == result.batch.id

    def test_deduction_not_applied_twice(self, store, settings):
        earner = add_earner(store, net=200000)
        record_fee_deduction(store, earner["id"], amount=2000, settings=settings)

        first = generate_payout_batch(store, settings, period=WEEK, now=NOW)
        second = generate_payout_batch(store, settings, period=NEXT_WEEK, now=NOW)

        assert first.items[0].net_amount == 197100
        assert second.claimed_fee_items == []
        assert second.items[0].net_amount == 199100

    def test_below_minimum_and_inactive_earners_excluded(self, store, settings):
        add_earner(store, net=49999)
        add_earner(store, net=80000, payouts=40000)
        add_earner(store, net=90000, status="suspended")
        paid = add_earner(store, net=50000)

        result = generate_payout_batch(store, settings, period=WEEK, now=NOW)

        assert [item.earner_id for item in result.items] == [paid["id"]]

    def test_non_positive_net_leaves_fees_pending(self, store, settings):
        earner = add_earner(store, net=50000)
        fee = record_fee_deduction(store, earner["id"], amount=49100, settings=settings)

        result = generate_payout_batch(store, settings, period=WEEK, now=NOW)

        assert result.items == []
        assert result.batch.total_beneficiaries == 0
        row = store.query_one("payout_batch_items", id=fee.id)
        assert row["payout_batch_id"] is None
        assert row["status"] == ItemStatus.PENDING

    def test_duplicate_period_conflicts(self, store, settings):
        add_earner(store, net=200000)
        first = generate_payout_batch(store, settings, period=WEEK, now=NOW)

        with pytest.raises(ConflictError) as exc_info:
            generate_payout_batch(store, settings, period=WEEK, now=NOW)

        assert exc_info.value.batch_id == first.batch.id
        assert len(store.query("payout_batches")) == 1
        assert len(store.query("payout_batch_items", item_type=ItemType.EARNER)) == 1

    def test_force_allows_second_batch(self, store, settings):
        add_earner(store, net=200000)
        generate_payout_batch(store, settings, period=WEEK, now=NOW)

        forced = generate_payout_batch(store, settings, period=WEEK, force=True, now=NOW)

        assert forced.batch.forced is True
        assert len(store.query("payout_batches", period_start_date=date(2026, 10, 10))) == 2

    def test_invalid_period_creates_nothing(self, store, settings):
        add_earner(store, net=200000)

        with pytest.raises(ValidationError):
            generate_payout_batch(
                store,
                settings,
                period=PayoutPeriodRequest(period_start_date="10-10-2026"),
                now=NOW,
            )

        assert store.query("payout_batches") == []

    def test_failure_marks_batch_failed_and_releases_fees(self, clock, settings):
        class FailingStorage(InMemoryStorage):
            def insert(self, table, row):
                if table == "payout_batch_items" and row["item_type"] == ItemType.EARNER:
                    raise ProcessorError("disk full")
                return super().insert(table, row)

        store = FailingStorage(clock=clock)
        earner = add_earner(store, net=200000)
        fee = record_fee_deduction(store, earner["id"], settings=settings)

        with pytest.raises(ProcessorError):
            generate_payout_batch(store, settings, period=WEEK, now=NOW)

        batch = store.query_one("payout_batches")
        assert batch["status"] == BatchStatus.FAILED
        assert store.query_one("payout_batch_items", id=fee.id)["payout_batch_id"] is None
        assert store.query("audit_log", event_type="PAYOUT_BATCH_FAILED")

    def test_failed_batch_does_not_block_retry(self, store, settings):
        add_earner(store, net=200000)
        store.insert("payout_batches", {
            "batch_number": "TPY-PAYOUT-20261010-DEADBEEF",
            "period_start_date": date(2026, 10, 10),
            "period_end_date": date(2026, 10, 16),
            "processed_date": date(2026, 10, 17),
            "status": BatchStatus.FAILED,
            "forced": False,
        })

        result = generate_payout_batch(store, settings, period=WEEK, now=NOW)

        assert result.batch.status == BatchStatus.GENERATED

    def test_export_rows_grouped_by_earner(self, store, settings, clock):
        earners = sorted((add_earner(store, net=100000) for _ in range(2)), key=lambda e: str(e["id"]))
        first_fee = record_fee_deduction(store, earners[1]["id"], amount=500, settings=settings)
        clock.advance(minutes=5)
        second_fee = record_fee_deduction(store, earners[1]["id"], amount=700, settings=settings)

        result = generate_payout_batch(store, settings, period=WEEK, now=NOW)

        assert [(row.earner_id, row.item_type) for row in result.export_rows] == [
            (earners[0]["id"], ItemType.EARNER),
            (earners[1]["id"], ItemType.EARNER),
            (earners[1]["id"], ItemType.FEE_DEDUCTION),
            (earners[1]["id"], ItemType.FEE_DEDUCTION),
        ]
        assert [row.item_id for row in result.export_rows[2:]] == [first_fee.id, second_fee.id]

        lines = result.csv.splitlines()
        assert lines[0] == ",".join(CSV_HEADER)
        assert len(lines) == 5
        assert lines[2].endswith(",100000,900,97900")

    def test_success_is_audited(self, store, settings):
        add_earner(store, net=200000)

        result = generate_payout_batch(store, settings, period=WEEK, now=NOW)

        event = store.query_one("audit_log", event_type="PAYOUT_BATCH_GENERATED")
        assert event["entity_id"] == result.batch.id
        assert event["event_category"] == "payout"
        assert event["request_id"].startswith("req_")


class TestSettlePayoutBatch:
    """Tests for settling a generated batch."""

    def test_settle_records_payouts(self, store, settings):
        earner = add_earner(store, net=200000)
        record_fee_deduction(store, earner["id"], settings=settings)
        result = generate_payout_batch(store, settings, period=WEEK, now=NOW)

        batch = settle_payout_batch(store, result.batch.id, now=NOW)

        assert batch.status == BatchStatus.PAID
        assert batch.paid_at == NOW
        assert store.query_one("earners", id=earner["id"])["lifetime_payouts"] == 200000
        assert all(
            row["status"] == ItemStatus.PAID
            for row in store.query("payout_batch_items", payout_batch_id=result.batch.id)
        )

        # Nothing left to pay the following week.
        following = generate_payout_batch(store, settings, period=NEXT_WEEK, now=NOW)
        assert following.items == []

    def test_settle_twice_conflicts(self, store, settings):
        add_earner(store, net=200000)
        result = generate_payout_batch(store, settings, period=WEEK, now=NOW)
        settle_payout_batch(store, result.batch.id, now=NOW)

        with pytest.raises(ConflictError):
            settle_payout_batch(store, result.batch.id, now=NOW)

    def test_illegal_transitions(self):
        with pytest.raises(ConflictError):
            assert_transition(BatchStatus.FAILED, BatchStatus.GENERATED)
        with pytest.raises(ConflictError):
            assert_transition(BatchStatus.GENERATING, BatchStatus.PAID)
        assert_transition(BatchStatus.GENERATING, BatchStatus.GENERATED)


class TestRecordFeeDeduction:
    def test_defaults_to_replacement_fee(self, store, settings):
        earner = add_earner(store)

        item = record_fee_deduction(store, earner["id"], settings=settings)

        assert item.amount == 1000
        assert item.item_type == ItemType.FEE_DEDUCTION
        assert item.payout_batch_id is None
        assert item.description == "Replacement fee"

    @pytest.mark.parametrize("amount", [0, -100])
    def test_amount_must_be_positive(self, store, settings, amount):
        earner = add_earner(store)
        with pytest.raises(ValidationError):
            record_fee_deduction(store, earner["id"], amount=amount, settings=settings)

    def test_unknown_earner(self, store, settings):
        with pytest.raises(NotFoundError):
            record_fee_deduction(store, uuid4(), settings=settings)
