"""
Referral Reward Ledger and Payout Batch Engine

This module provides:
- Fee calculation for tips (processor, platform, VAT)
- One-time referral milestone rewards with an append-only ledger
- T+30 reward reversals (abuse flags, inactivity, gross retention)
- Weekly payout batches with exactly-once fee-deduction claims
"""

from .config import LedgerSettings, get_settings
from .errors import ConflictError, NotFoundError, ProcessorError, TipLedgerError, ValidationError
from .fees import FeeCalculation, calculate_fees
from .milestones import run_milestone_evaluation
from .models import (
    BatchResult,
    BatchStatus,
    EventType,
    ItemType,
    LedgerEntry,
    MilestoneStatus,
    MilestoneSummary,
    PayoutBatch,
    PayoutBatchItem,
    ReversalSummary,
)
from .payouts import generate_payout_batch
from .reversals import run_reversal_evaluation
from .service import TipLedgerService
from .storage import InMemoryStorage, LedgerStore

__all__ = [
    "LedgerSettings",
    "get_settings",
    "TipLedgerError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "ProcessorError",
    "FeeCalculation",
    "calculate_fees",
    "run_milestone_evaluation",
    "run_reversal_evaluation",
    "generate_payout_batch",
    "BatchResult",
    "BatchStatus",
    "EventType",
    "ItemType",
    "LedgerEntry",
    "MilestoneStatus",
    "MilestoneSummary",
    "PayoutBatch",
    "PayoutBatchItem",
    "ReversalSummary",
    "TipLedgerService",
    "InMemoryStorage",
    "LedgerStore",
]
