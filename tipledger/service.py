from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from .audit import record_audit_event
from .config import LedgerSettings, get_settings
from .milestones import run_milestone_evaluation
from .models import (
    BatchResult,
    LedgerEntry,
    MilestoneSummary,
    PayoutBatch,
    PayoutBatchItem,
    PayoutPeriodRequest,
    ReversalSummary,
)
from .payouts import (
    ensure_period_available,
    generate_payout_batch,
    get_batch,
    record_fee_deduction,
    resolve_period,
    settle_payout_batch,
)
from .reversals import run_reversal_evaluation
from .storage import InMemoryStorage, LedgerStore


class TipLedgerService:
    """Binds a store and settings and exposes the admin operations.

    The weekly run order matters: rewards and reversals change what referrers
    are owed before the payout batch is built.
    """

    def __init__(self, storage: Optional[LedgerStore] = None, settings: Optional[LedgerSettings] = None):
        self.storage = storage if storage is not None else InMemoryStorage()
        self.settings = settings or get_settings()

    def run_milestone_evaluation(self) -> MilestoneSummary:
        summary = run_milestone_evaluation(self.storage, self.settings)
        if summary.processed:
            record_audit_event(
                self.storage,
                event_type="REFERRAL_MILESTONES_AWARDED",
                category="referral",
                action="award",
                description=f"Awarded {summary.processed} referral milestone rewards",
                metadata={"total_reward": summary.total_amount, "errors": len(summary.errors)},
            )
        return summary

    def run_reversal_evaluation(self, now: Optional[datetime] = None) -> ReversalSummary:
        summary = run_reversal_evaluation(self.storage, self.settings, now=now)
        if summary.processed:
            record_audit_event(
                self.storage,
                event_type="REFERRAL_MILESTONES_REVERSED",
                category="referral",
                action="reverse",
                description=f"Reversed {summary.processed} referral milestone rewards",
                metadata={"total_reversed": summary.total_amount, "errors": len(summary.errors)},
            )
        return summary

    def generate_payout_batch(
        self,
        period: Optional[PayoutPeriodRequest] = None,
        force: bool = False,
        now: Optional[datetime] = None,
        milestone_summary: Optional[MilestoneSummary] = None,
        reversal_summary: Optional[ReversalSummary] = None,
    ) -> BatchResult:
        return generate_payout_batch(
            self.storage,
            self.settings,
            period=period,
            force=force,
            now=now,
            milestone_summary=milestone_summary,
            reversal_summary=reversal_summary,
        )

    def run_weekly_payout(
        self,
        period: Optional[PayoutPeriodRequest] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> BatchResult:
        now = now or datetime.now(timezone.utc)
        resolved = resolve_period(period, now)
        if not force:
            ensure_period_available(self.storage, resolved)
        milestones = self.run_milestone_evaluation()
        reversals = self.run_reversal_evaluation(now=now)
        return self.generate_payout_batch(
            period=period,
            force=force,
            now=now,
            milestone_summary=milestones,
            reversal_summary=reversals,
        )

    def record_fee_deduction(
        self,
        earner_id: UUID,
        amount: Optional[int] = None,
        description: Optional[str] = None,
    ) -> PayoutBatchItem:
        return record_fee_deduction(self.storage, earner_id, amount, self.settings, description)

    def settle_payout_batch(self, batch_id: UUID) -> PayoutBatch:
        return settle_payout_batch(self.storage, batch_id)

    def get_batch(self, batch_id: UUID) -> tuple[PayoutBatch, list[PayoutBatchItem]]:
        return get_batch(self.storage, batch_id)

    def get_ledger_history(self, referrer_id: UUID, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        rows = self.storage.query("referral_earnings_ledger", order_by="-created_at", referrer_id=referrer_id)
        return [LedgerEntry(**row) for row in rows[offset:offset + limit]]
