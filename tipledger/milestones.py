"""
Referral milestone evaluation.

A referral earns its referrer a one-time reward when the referred earner's
lifetime gross tips first reach the configured threshold. The reward, the
EARNED ledger entry and the referrer's running balance are written together by
the store's ``award_milestone``; a referral that already has a milestone is
never considered again.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional
from uuid import UUID

import structlog

from .config import LedgerSettings, get_settings
from .errors import ProcessorError, TipLedgerError
from .models import MilestoneAward, MilestoneConfig, MilestoneSummary, ReferralStatus, RpcFailure
from .storage import LedgerStore

logger = structlog.get_logger(__name__)


@dataclass
class ReferralCandidate:
    referral_id: UUID
    referrer_id: UUID
    earner_id: UUID
    earner_lifetime_gross_tips: int
    milestone_reached_at: Optional[datetime] = None


def milestone_config(settings: LedgerSettings) -> MilestoneConfig:
    return MilestoneConfig(
        enabled=settings.referral_enabled,
        threshold_cents=settings.referral_threshold_cents,
        reward_cents=settings.referral_reward_cents,
    )


def determine_eligible_milestones(
    candidates: Iterable[ReferralCandidate],
    threshold_cents: int,
    milestone_statuses: Mapping[UUID, str],
) -> list[ReferralCandidate]:
    """Referrals that have crossed the threshold and were never rewarded."""
    return [
        candidate
        for candidate in candidates
        if candidate.earner_lifetime_gross_tips >= threshold_cents
        and not candidate.milestone_reached_at
        and candidate.referral_id not in milestone_statuses
    ]


def load_candidates(store: LedgerStore) -> list[ReferralCandidate]:
    referrals = store.query(
        "referrals",
        order_by="created_at",
        status__in=(ReferralStatus.PENDING, ReferralStatus.ACTIVE),
    )
    if not referrals:
        return []

    earner_ids = {row["referred_earner_id"] for row in referrals}
    gross_by_earner = {
        row["id"]: row.get("lifetime_gross_tips") or 0
        for row in store.query("earners", id__in=earner_ids)
    }

    candidates = []
    for row in referrals:
        earner_id = row["referred_earner_id"]
        if earner_id not in gross_by_earner:
            logger.warning("referral_earner_missing", referral_id=str(row["id"]), earner_id=str(earner_id))
            continue
        candidates.append(ReferralCandidate(
            referral_id=row["id"],
            referrer_id=row["referrer_id"],
            earner_id=earner_id,
            earner_lifetime_gross_tips=gross_by_earner[earner_id],
            milestone_reached_at=row.get("milestone_reached_at"),
        ))
    return candidates


def run_milestone_evaluation(
    store: LedgerStore,
    settings: Optional[LedgerSettings] = None,
) -> MilestoneSummary:
    settings = settings or get_settings()
    config = milestone_config(settings)
    summary = MilestoneSummary(config=config)

    if not config.enabled:
        logger.info("milestone_evaluation_disabled")
        return summary

    try:
        candidates = load_candidates(store)
        summary.total_candidates = len(candidates)
        if not candidates:
            return summary
        milestone_statuses = {
            row["referral_id"]: row["status"]
            for row in store.query("referral_milestones", referral_id__in={c.referral_id for c in candidates})
        }
    except TipLedgerError as e:
        raise ProcessorError(f"Failed to load referral milestone candidates: {e}") from e

    eligible = determine_eligible_milestones(candidates, config.threshold_cents, milestone_statuses)

    for candidate in eligible:
        try:
            outcome = store.award_milestone(
                referral_id=candidate.referral_id,
                referrer_id=candidate.referrer_id,
                earner_id=candidate.earner_id,
                snapshot_gross=candidate.earner_lifetime_gross_tips,
                threshold=config.threshold_cents,
                reward=config.reward_cents,
            )
        except TipLedgerError as e:
            outcome = RpcFailure(code=e.code, message=str(e))
        except Exception as e:
            logger.exception("milestone_award_unexpected_error", referral_id=str(candidate.referral_id))
            outcome = RpcFailure(code=TipLedgerError.code, message=str(e))

        if isinstance(outcome, RpcFailure):
            message = f"Failed to award milestone for referral {candidate.referral_id}: {outcome.message}"
            logger.error("milestone_award_failed", referral_id=str(candidate.referral_id), code=outcome.code)
            summary.errors.append(message)
            continue

        award = MilestoneAward(
            milestone_id=outcome.milestone_id,
            referrer_id=candidate.referrer_id,
            referral_id=candidate.referral_id,
            earner_id=candidate.earner_id,
            reward_amount=outcome.ledger_entry.amount,
            balance_after=outcome.balance_after,
        )
        summary.records.append(award)
        summary.processed += 1
        summary.total_amount += award.reward_amount
        logger.info(
            "milestone_awarded",
            referral_id=str(candidate.referral_id),
            milestone_id=str(award.milestone_id),
            reward=award.reward_amount,
            balance_after=award.balance_after,
        )

    logger.info(
        "milestone_evaluation_complete",
        candidates=summary.total_candidates,
        awarded=summary.processed,
        total_reward=summary.total_amount,
        errors=len(summary.errors),
    )
    return summary
