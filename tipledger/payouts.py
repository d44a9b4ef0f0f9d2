"""
Weekly payout batch generation.

A batch covers one week (Saturday 00:00 to Friday 23:59:59.999, UTC) and
moves ``generating -> generated | failed``; a generated batch is later settled
to ``paid``. For each active earner whose unpaid balance reaches the minimum,
the batch pays::

    net = unpaid_balance - transfer_fee - sum(pending fee deductions)

Earners whose net would not be positive are left out of this run; their
balance and fee deductions stay pending for a later batch.

Fee deductions (e.g. replacement-code fees) are recorded without a batch and
claimed by the first batch that pays their earner. Claiming and inserting the
EARNER items happen in one store transaction, so a deduction is applied at
most once.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional
from uuid import UUID, uuid4

import structlog

from .audit import record_audit_event
from .config import LedgerSettings, get_settings
from .errors import ConflictError, ProcessorError, TipLedgerError, ValidationError
from .export import build_export_rows, render_csv
from .fees import generate_payment_reference
from .models import (
    BatchResult,
    BatchStatus,
    Earner,
    EarnerStatus,
    ItemStatus,
    ItemType,
    MilestoneSummary,
    PayoutBatch,
    PayoutBatchItem,
    PayoutPeriodRequest,
    ReversalSummary,
)
from .storage import LedgerStore

logger = structlog.get_logger(__name__)

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

ALLOWED_TRANSITIONS = {
    BatchStatus.GENERATING: {BatchStatus.GENERATED, BatchStatus.FAILED},
    BatchStatus.GENERATED: {BatchStatus.PAID},
    BatchStatus.FAILED: set(),
    BatchStatus.PAID: set(),
}


def assert_transition(old: BatchStatus, new: BatchStatus) -> None:
    if new not in ALLOWED_TRANSITIONS.get(BatchStatus(old), set()):
        raise ConflictError(f"Illegal payout batch transition: {BatchStatus(old).value} -> {BatchStatus(new).value}")


@dataclass(frozen=True)
class PayoutPeriod:
    starts_at: datetime
    ends_at: datetime

    @property
    def start_date(self) -> date:
        return self.starts_at.date()

    @property
    def end_date(self) -> date:
        return self.ends_at.date()


def _period_for_dates(start: date, end: date) -> PayoutPeriod:
    return PayoutPeriod(
        starts_at=datetime.combine(start, time.min, tzinfo=timezone.utc),
        ends_at=datetime.combine(end, time(23, 59, 59, 999000), tzinfo=timezone.utc),
    )


def previous_week(now: datetime) -> PayoutPeriod:
    """Saturday-to-Friday week starting on the last Saturday strictly before ``now``'s date."""
    days_since_saturday = (now.weekday() - 5) % 7 or 7
    start = (now - timedelta(days=days_since_saturday)).date()
    return _period_for_dates(start, start + timedelta(days=6))


def _parse_date(value: str, field_name: str) -> date:
    if not _DATE_PATTERN.match(value.strip()):
        raise ValidationError(f"{field_name} must be a YYYY-MM-DD date, got {value!r}")
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"{field_name} is not a valid date: {value!r}") from None


def resolve_period(request: Optional[PayoutPeriodRequest], now: datetime) -> PayoutPeriod:
    default = previous_week(now)
    if request is None:
        return default

    start = (
        _parse_date(request.period_start_date, "period_start_date")
        if request.period_start_date
        else default.start_date
    )
    end = (
        _parse_date(request.period_end_date, "period_end_date")
        if request.period_end_date
        else start + timedelta(days=6)
    )
    if start >= end:
        raise ValidationError("period_start_date must be before period_end_date")
    return _period_for_dates(start, end)


@dataclass
class EarnerPayout:
    earner: Earner
    transfer_fee: int
    fee_items: list[PayoutBatchItem] = field(default_factory=list)

    @property
    def deductions(self) -> int:
        return sum(item.amount for item in self.fee_items)

    @property
    def net_amount(self) -> int:
        return self.earner.unpaid_balance - self.transfer_fee - self.deductions


def load_eligible_earners(store: LedgerStore, min_eligibility: int) -> list[Earner]:
    rows = store.query(
        "earners",
        order_by="id",
        status=EarnerStatus.ACTIVE,
        lifetime_net_tips__gte=min_eligibility,
    )
    earners = [Earner(**row) for row in rows]
    return [earner for earner in earners if earner.unpaid_balance >= min_eligibility]


def load_pending_fee_items(store: LedgerStore, earner_ids: Iterable[UUID]) -> list[PayoutBatchItem]:
    earner_ids = set(earner_ids)
    if not earner_ids:
        return []
    rows = store.query(
        "payout_batch_items",
        order_by=("created_at", "id"),
        item_type=ItemType.FEE_DEDUCTION,
        status=ItemStatus.PENDING,
        payout_batch_id__isnull=True,
        earner_id__in=earner_ids,
    )
    return [PayoutBatchItem(**row) for row in rows]


def plan_earner_payouts(
    earners: Iterable[Earner],
    pending_fees: Iterable[PayoutBatchItem],
    transfer_fee: int,
) -> list[EarnerPayout]:
    fees_by_earner: dict[UUID, list[PayoutBatchItem]] = {}
    for item in pending_fees:
        fees_by_earner.setdefault(item.earner_id, []).append(item)

    planned = []
    for earner in earners:
        payout = EarnerPayout(earner=earner, transfer_fee=transfer_fee, fee_items=fees_by_earner.get(earner.id, []))
        if payout.net_amount > 0:
            planned.append(payout)
        else:
            logger.info(
                "earner_payout_skipped",
                earner_id=str(earner.id),
                unpaid_balance=earner.unpaid_balance,
                deductions=payout.deductions,
            )
    return planned


def _transition(store: LedgerStore, batch: PayoutBatch, new_status: BatchStatus, **changes) -> PayoutBatch:
    assert_transition(batch.status, new_status)
    row = store.update("payout_batches", batch.id, {"status": new_status, **changes})
    return PayoutBatch(**row)


def _claim_and_insert(
    store: LedgerStore,
    batch: PayoutBatch,
    payouts: list[EarnerPayout],
) -> tuple[list[PayoutBatchItem], list[PayoutBatchItem]]:
    transaction = getattr(store, "transaction", None)
    if transaction is None:
        raise ProcessorError("Store cannot claim fee items and insert batch items in one transaction")

    fee_items = [item for payout in payouts for item in payout.fee_items]
    with transaction():
        claimed = store.claim_fee_items([item.id for item in fee_items], batch.id)
        if claimed != len(fee_items):
            raise ProcessorError(
                f"Claimed {claimed} of {len(fee_items)} pending fee deductions; another batch may have claimed them"
            )
        earner_items = [
            PayoutBatchItem(**store.insert("payout_batch_items", {
                "payout_batch_id": batch.id,
                "earner_id": payout.earner.id,
                "item_type": ItemType.EARNER,
                "amount": payout.earner.unpaid_balance,
                "fee": payout.transfer_fee,
                "net_amount": payout.net_amount,
                "status": ItemStatus.PENDING,
                "description": None,
            }))
            for payout in payouts
        ]

    claimed_items = [item.model_copy(update={"payout_batch_id": batch.id}) for item in fee_items]
    return earner_items, claimed_items


def _mark_failed(store: LedgerStore, batch: PayoutBatch, error: Exception) -> None:
    try:
        released = store.release_fee_items(batch.id)
        _transition(store, batch, BatchStatus.FAILED)
    except TipLedgerError as e:
        logger.error("payout_batch_mark_failed_error", batch_id=str(batch.id), error=str(e))
        return
    logger.error("payout_batch_failed", batch_id=str(batch.id), released_fee_items=released, error=str(error))
    record_audit_event(
        store,
        event_type="PAYOUT_BATCH_FAILED",
        category="payout",
        action="generate",
        description=f"Payout batch {batch.batch_number} failed",
        entity_type="payout_batch",
        entity_id=batch.id,
        status="failure",
        metadata={"error": str(error)},
    )


def ensure_period_available(store: LedgerStore, period: PayoutPeriod) -> None:
    """Raise ConflictError if a non-failed batch already covers ``period``."""
    existing = store.query(
        "payout_batches",
        period_start_date=period.start_date,
        period_end_date=period.end_date,
        status__ne=BatchStatus.FAILED,
    )
    if existing:
        raise ConflictError("Payout batch already exists for this period", batch_id=existing[0]["id"])


def generate_payout_batch(
    store: LedgerStore,
    settings: Optional[LedgerSettings] = None,
    period: Optional[PayoutPeriodRequest] = None,
    force: bool = False,
    now: Optional[datetime] = None,
    milestone_summary: Optional[MilestoneSummary] = None,
    reversal_summary: Optional[ReversalSummary] = None,
) -> BatchResult:
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    resolved = resolve_period(period, now)

    if not force:
        ensure_period_available(store, resolved)

    batch_id = uuid4()
    batch_number = generate_payment_reference(settings.reference_prefix, on=resolved.start_date)
    try:
        row = store.insert("payout_batches", {
            "id": batch_id,
            "batch_number": batch_number,
            "period_start_date": resolved.start_date,
            "period_end_date": resolved.end_date,
            "processed_date": now.date(),
            "status": BatchStatus.GENERATING,
            "forced": force,
            "created_at": now,
        })
    except ConflictError:
        raise
    except TipLedgerError as e:
        raise ProcessorError(f"Failed to create payout batch: {e}") from e

    batch = PayoutBatch(**row)
    log = logger.bind(batch_id=str(batch.id), batch_number=batch_number)
    log.info("payout_batch_generating", period_start=str(resolved.start_date), period_end=str(resolved.end_date))

    try:
        earners = load_eligible_earners(store, settings.payout_min_eligibility_cents)
        pending_fees = load_pending_fee_items(store, [earner.id for earner in earners])
        payouts = plan_earner_payouts(earners, pending_fees, settings.transfer_fee_cents)
        earner_items, claimed_items = _claim_and_insert(store, batch, payouts)

        batch = _transition(
            store,
            batch,
            BatchStatus.GENERATED,
            total_amount=sum(item.amount for item in earner_items),
            total_transfer_fees=sum(item.fee for item in earner_items),
            total_fee_deductions=sum(item.amount for item in claimed_items),
            total_net_amount=sum(item.net_amount for item in earner_items),
            total_beneficiaries=len(earner_items),
        )
    except Exception as e:
        _mark_failed(store, batch, e)
        raise ProcessorError(f"Failed to generate payout batch {batch_number}: {e}") from e

    export_rows = build_export_rows(batch, earner_items + claimed_items)
    log.info(
        "payout_batch_generated",
        beneficiaries=batch.total_beneficiaries,
        total_amount=batch.total_amount,
        total_fee_deductions=batch.total_fee_deductions,
        total_net=batch.total_net_amount,
    )
    record_audit_event(
        store,
        event_type="PAYOUT_BATCH_GENERATED",
        category="payout",
        action="generate",
        description=f"Weekly payout batch generated for period {resolved.start_date} to {resolved.end_date}",
        entity_type="payout_batch",
        entity_id=batch.id,
        metadata={
            "batch_number": batch_number,
            "forced": force,
            "total_beneficiaries": batch.total_beneficiaries,
            "total_amount": batch.total_amount,
        },
    )

    return BatchResult(
        batch=batch,
        items=earner_items,
        claimed_fee_items=claimed_items,
        export_rows=export_rows,
        csv=render_csv(export_rows),
        milestones=milestone_summary,
        reversals=reversal_summary,
    )


def record_fee_deduction(
    store: LedgerStore,
    earner_id: UUID,
    amount: Optional[int] = None,
    settings: Optional[LedgerSettings] = None,
    description: Optional[str] = None,
) -> PayoutBatchItem:
    """Queue a fee to be deducted from the earner's next payout."""
    settings = settings or get_settings()
    amount = settings.replacement_fee_cents if amount is None else amount
    if amount <= 0:
        raise ValidationError(f"Fee deduction must be positive, got {amount}")

    store.query_one("earners", id=earner_id)
    row = store.insert("payout_batch_items", {
        "payout_batch_id": None,
        "earner_id": earner_id,
        "item_type": ItemType.FEE_DEDUCTION,
        "amount": amount,
        "fee": 0,
        "net_amount": amount,
        "status": ItemStatus.PENDING,
        "description": description or "Replacement fee",
    })
    logger.info("fee_deduction_recorded", earner_id=str(earner_id), item_id=str(row["id"]), amount=amount)
    return PayoutBatchItem(**row)


def get_batch(store: LedgerStore, batch_id: UUID) -> tuple[PayoutBatch, list[PayoutBatchItem]]:
    batch = PayoutBatch(**store.query_one("payout_batches", id=batch_id))
    items = [
        PayoutBatchItem(**row)
        for row in store.query("payout_batch_items", order_by=("earner_id", "created_at"), payout_batch_id=batch_id)
    ]
    return batch, items


def settle_payout_batch(store: LedgerStore, batch_id: UUID, now: Optional[datetime] = None) -> PayoutBatch:
    """Mark a generated batch paid and record the payouts against each earner."""
    now = now or datetime.now(timezone.utc)
    batch, items = get_batch(store, batch_id)
    assert_transition(batch.status, BatchStatus.PAID)

    with store.transaction():
        for item in items:
            store.update("payout_batch_items", item.id, {"status": ItemStatus.PAID})
            if item.item_type == ItemType.EARNER:
                earner = store.query_one("earners", id=item.earner_id)
                store.update("earners", item.earner_id, {
                    "lifetime_payouts": (earner.get("lifetime_payouts") or 0) + item.amount,
                })
        batch = _transition(store, batch, BatchStatus.PAID, paid_at=now)

    logger.info("payout_batch_paid", batch_id=str(batch.id), items=len(items))
    record_audit_event(
        store,
        event_type="PAYOUT_BATCH_PAID",
        category="payout",
        action="settle",
        description=f"Payout batch {batch.batch_number} marked paid",
        entity_type="payout_batch",
        entity_id=batch.id,
        metadata={"total_net_amount": batch.total_net_amount},
    )
    return batch
