"""
Referral reward reversal (T+30 chargeback check).

Milestones rewarded at least ``reversal_window_days`` ago are re-examined.
A reward is reversed when, in order of precedence:

1. the earner carries an active/pending abuse flag of high or critical severity,
2. the earner is no longer active,
3. the earner's lifetime gross has fallen below ``reversal_min_retention`` of
   the snapshot taken when the milestone fired.

Each reversal appends a REVERSAL entry pointing at the original EARNED entry.
An EARNED entry that already has a REVERSAL is skipped, so repeated runs are
harmless.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from .config import LedgerSettings, get_settings
from .errors import NotFoundError, ProcessorError, TipLedgerError
from .models import (
    EarnerStatus,
    EventType,
    FlagSeverity,
    Milestone,
    MilestoneStatus,
    ReversalConfig,
    ReversalRecord,
    ReversalSummary,
    RpcFailure,
)
from .money import round_half_up
from .storage import LedgerStore

logger = structlog.get_logger(__name__)

OPEN_FLAG_STATUSES = ("active", "pending")
BLOCKING_SEVERITIES = (FlagSeverity.HIGH, FlagSeverity.CRITICAL)


@dataclass
class ReversalDecision:
    should_reverse: bool
    reason: str


def reversal_config(settings: LedgerSettings) -> ReversalConfig:
    return ReversalConfig(
        enabled=settings.reversal_enabled,
        window_days=settings.reversal_window_days,
        check_abuse_flags=settings.reversal_check_abuse_flags,
        check_earner_activity=settings.reversal_check_earner_activity,
        min_retention=settings.reversal_min_retention,
    )


def evaluate_reversal(
    milestone: Milestone,
    earner: dict,
    abuse_flags: list[dict],
    config: ReversalConfig,
) -> ReversalDecision:
    if config.check_abuse_flags:
        blocking = [flag for flag in abuse_flags if flag.get("severity") in BLOCKING_SEVERITIES]
        if blocking:
            flag_types = ", ".join(flag["flag_type"] for flag in blocking)
            return ReversalDecision(True, f"Abuse flags detected: {flag_types}")

    if config.check_earner_activity:
        status = getattr(earner.get("status"), "value", earner.get("status"))
        if status != EarnerStatus.ACTIVE:
            return ReversalDecision(True, f"Earner status is {status} (not active)")

    snapshot = milestone.earner_gross_at_milestone
    current = earner.get("lifetime_gross_tips") or 0
    retention = current / snapshot if snapshot > 0 else 1.0
    if retention < config.min_retention:
        return ReversalDecision(
            True,
            f"Earner lifetime gross decreased significantly: {round_half_up(retention * 100)}% retention "
            f"(threshold: {round_half_up(config.min_retention * 100)}%)",
        )

    return ReversalDecision(False, "Conditions satisfied - no reversal required")


def _process_candidate(
    store: LedgerStore,
    milestone: Milestone,
    config: ReversalConfig,
) -> Optional[ReversalRecord]:
    earned_entries = store.query(
        "referral_earnings_ledger",
        order_by="-created_at",
        milestone_id=milestone.id,
        event_type=EventType.EARNED,
    )
    if not earned_entries:
        raise NotFoundError(f"No EARNED ledger entry found for milestone {milestone.id}")
    earned = earned_entries[0]

    if store.query("referral_earnings_ledger", event_type=EventType.REVERSAL, reversal_reference_id=earned["id"]):
        logger.debug("reversal_already_recorded", milestone_id=str(milestone.id))
        return None

    earner = store.query_one("earners", id=milestone.earner_id)
    abuse_flags = []
    if config.check_abuse_flags:
        abuse_flags = store.query("abuse_flags", earner_id=milestone.earner_id, status__in=OPEN_FLAG_STATUSES)

    decision = evaluate_reversal(milestone, earner, abuse_flags, config)
    if not decision.should_reverse:
        return None

    outcome = store.reverse_milestone(milestone.id, earned["id"], decision.reason)
    if isinstance(outcome, RpcFailure):
        raise ProcessorError(f"Failed to create reversal for milestone {milestone.id}: {outcome.message}")

    return ReversalRecord(
        milestone_id=milestone.id,
        referrer_id=milestone.referrer_id,
        referral_id=milestone.referral_id,
        earner_id=milestone.earner_id,
        original_earned_id=earned["id"],
        reversal_amount=earned["amount"],
        reversal_reason=decision.reason,
        balance_after=outcome.balance_after,
    )


def run_reversal_evaluation(
    store: LedgerStore,
    settings: Optional[LedgerSettings] = None,
    now: Optional[datetime] = None,
) -> ReversalSummary:
    settings = settings or get_settings()
    config = reversal_config(settings)
    summary = ReversalSummary(config=config)

    if not config.enabled:
        logger.info("reversal_evaluation_disabled")
        return summary

    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=config.window_days)

    try:
        rows = store.query(
            "referral_milestones",
            order_by="rewarded_at",
            status=MilestoneStatus.REWARDED,
            rewarded_at__lte=cutoff,
        )
    except TipLedgerError as e:
        raise ProcessorError(f"Failed to load milestone candidates: {e}") from e

    summary.total_candidates = len(rows)

    for row in rows:
        milestone_id = row.get("id")
        try:
            record = _process_candidate(store, Milestone(**row), config)
        except NotFoundError as e:
            logger.error("reversal_data_integrity_error", milestone_id=str(milestone_id), error=str(e))
            summary.errors.append(str(e))
            continue
        except TipLedgerError as e:
            logger.error("reversal_failed", milestone_id=str(milestone_id), error=str(e))
            summary.errors.append(f"Error processing milestone {milestone_id}: {e}")
            continue
        except Exception as e:
            logger.exception("reversal_unexpected_error", milestone_id=str(milestone_id))
            summary.errors.append(f"Error processing milestone {milestone_id}: {e}")
            continue

        if record is None:
            continue

        summary.records.append(record)
        summary.processed += 1
        summary.total_amount += record.reversal_amount
        logger.info(
            "milestone_reversed",
            milestone_id=str(record.milestone_id),
            referrer_id=str(record.referrer_id),
            amount=record.reversal_amount,
            reason=record.reversal_reason,
            balance_after=record.balance_after,
        )

    logger.info(
        "reversal_evaluation_complete",
        candidates=summary.total_candidates,
        reversed=summary.processed,
        total_reversed=summary.total_amount,
        errors=len(summary.errors),
    )
    return summary
