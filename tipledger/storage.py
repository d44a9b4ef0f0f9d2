"""
Ledger store contract and the in-memory reference store.

The core never reads a referrer balance and writes it back itself: balance
changes only happen inside ``award_milestone`` and ``reverse_milestone``,
which the store performs as single transactions.

Filters passed to ``query``/``query_one`` use ``field`` for equality and
``field__<op>`` for the operators in ``_OPERATORS``.
"""

import copy
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Optional, Protocol, Sequence, Union
from uuid import UUID, uuid4

from .errors import ConflictError, NotFoundError, ProcessorError
from .models import (
    AwardOutcome,
    AwardSuccess,
    BatchStatus,
    EventType,
    ItemStatus,
    ItemType,
    LedgerEntry,
    MilestoneStatus,
    ReversalOutcome,
    ReversalSuccess,
    RpcFailure,
)

TABLES = (
    "earners",
    "referrals",
    "referral_milestones",
    "referral_earnings_ledger",
    "abuse_flags",
    "payout_batches",
    "payout_batch_items",
    "audit_log",
)

APPEND_ONLY_TABLES = ("referral_earnings_ledger", "audit_log")

OrderBy = Union[str, Sequence[str], None]
CompiledFilter = tuple[str, Callable[[Any, Any], bool], Any]

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda value, arg: value == arg,
    "ne": lambda value, arg: value != arg,
    "in": lambda value, arg: value in arg,
    "lt": lambda value, arg: value is not None and value < arg,
    "lte": lambda value, arg: value is not None and value <= arg,
    "gt": lambda value, arg: value is not None and value > arg,
    "gte": lambda value, arg: value is not None and value >= arg,
    "isnull": lambda value, arg: (value is None) == bool(arg),
}


class LedgerStore(Protocol):
    def query(self, table: str, order_by: OrderBy = None, **filters: Any) -> list[dict]: ...

    def query_one(self, table: str, **filters: Any) -> dict: ...

    def insert(self, table: str, row: dict) -> dict: ...

    def update(self, table: str, row_id: UUID, changes: dict) -> dict: ...

    def award_milestone(
        self,
        referral_id: UUID,
        referrer_id: UUID,
        earner_id: UUID,
        snapshot_gross: int,
        threshold: int,
        reward: int,
    ) -> AwardOutcome: ...

    def reverse_milestone(self, milestone_id: UUID, earned_ledger_id: UUID, reason: str) -> ReversalOutcome: ...

    def claim_fee_items(self, item_ids: Iterable[UUID], batch_id: UUID) -> int: ...

    def release_fee_items(self, batch_id: UUID) -> int: ...

    def transaction(self) -> Any: ...


def _compile_filters(filters: dict[str, Any]) -> list[CompiledFilter]:
    compiled = []
    for key, arg in filters.items():
        field, _, op = key.partition("__")
        check = _OPERATORS.get(op or "eq")
        if check is None:
            raise ProcessorError(f"Unsupported filter operator: {key}")
        compiled.append((field, check, arg))
    return compiled


def _matches(row: dict, compiled: list[CompiledFilter]) -> bool:
    return all(check(row.get(field), arg) for field, check, arg in compiled)


def _sort_rows(rows: list[dict], order_by: OrderBy) -> list[dict]:
    if not order_by:
        return rows
    keys = [order_by] if isinstance(order_by, str) else list(order_by)
    # Stable sorts applied last key first give a multi-key ordering.
    for key in reversed(keys):
        descending = key.startswith("-")
        field = key.lstrip("-")
        rows.sort(key=lambda r: (r.get(field) is None, r.get(field)), reverse=descending)
    return rows


class InMemoryStorage:
    """Dict-backed store implementing ``LedgerStore``.

    Enforces the constraints a relational schema would:
    one milestone per referral, one REVERSAL per EARNED entry, and one
    non-failed (unforced) payout batch per period.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.tables: dict[str, dict[UUID, dict]] = {name: {} for name in TABLES}
        self.referrer_balances: dict[UUID, int] = {}
        self._tx_depth = 0

    # Generic row access

    def query(self, table: str, order_by: OrderBy = None, **filters: Any) -> list[dict]:
        compiled = _compile_filters(filters)
        rows = [dict(row) for row in self._table(table).values() if _matches(row, compiled)]
        return _sort_rows(rows, order_by)

    def query_one(self, table: str, **filters: Any) -> dict:
        rows = self.query(table, **filters)
        if not rows:
            raise NotFoundError(f"No {table} row matching {filters}")
        return rows[0]

    def insert(self, table: str, row: dict) -> dict:
        data = dict(row)
        data.setdefault("id", uuid4())
        data.setdefault("created_at", self.clock())
        rows = self._table(table)
        if data["id"] in rows:
            raise ConflictError(f"{table} row {data['id']} already exists")
        self._check_constraints(table, data)
        rows[data["id"]] = data
        return dict(data)

    def update(self, table: str, row_id: UUID, changes: dict) -> dict:
        if table in APPEND_ONLY_TABLES:
            raise ProcessorError(f"{table} is append-only")
        rows = self._table(table)
        if row_id not in rows:
            raise NotFoundError(f"{table} row {row_id} not found")
        rows[row_id].update(changes)
        return dict(rows[row_id])

    def get_referrer_balance(self, referrer_id: UUID) -> int:
        return self.referrer_balances.get(referrer_id, 0)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        snapshot = copy.deepcopy((self.tables, self.referrer_balances))
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self.tables, self.referrer_balances = snapshot
            raise
        finally:
            self._tx_depth = 0

    # Atomic referral operations

    def award_milestone(
        self,
        referral_id: UUID,
        referrer_id: UUID,
        earner_id: UUID,
        snapshot_gross: int,
        threshold: int,
        reward: int,
    ) -> AwardOutcome:
        if self.query("referral_milestones", referral_id=referral_id):
            return RpcFailure(code="MILESTONE_EXISTS", message=f"Milestone already recorded for referral {referral_id}")
        if referral_id not in self.tables["referrals"]:
            return RpcFailure(code="NOT_FOUND", message=f"Referral {referral_id} not found")

        now = self.clock()
        with self.transaction():
            milestone = self.insert("referral_milestones", {
                "referral_id": referral_id,
                "referrer_id": referrer_id,
                "earner_id": earner_id,
                "milestone_amount": threshold,
                "reward_amount": reward,
                "earner_gross_at_milestone": snapshot_gross,
                "status": MilestoneStatus.REWARDED,
                "rewarded_at": now,
                "reversed_at": None,
                "reversal_reason": None,
                "created_at": now,
            })
            balance_after = self.get_referrer_balance(referrer_id) + reward
            entry = self.insert("referral_earnings_ledger", {
                "referrer_id": referrer_id,
                "milestone_id": milestone["id"],
                "event_type": EventType.EARNED,
                "amount": reward,
                "balance_after": balance_after,
                "reversal_reference_id": None,
                "description": f"Referral milestone reward for earner {earner_id}",
                "created_at": now,
            })
            self.referrer_balances[referrer_id] = balance_after
            self.update("referrals", referral_id, {"milestone_reached_at": now})

        return AwardSuccess(
            milestone_id=milestone["id"],
            ledger_entry=LedgerEntry(**entry),
            balance_after=balance_after,
        )

    def reverse_milestone(self, milestone_id: UUID, earned_ledger_id: UUID, reason: str) -> ReversalOutcome:
        milestone = self.tables["referral_milestones"].get(milestone_id)
        if milestone is None:
            return RpcFailure(code="NOT_FOUND", message=f"Milestone {milestone_id} not found")
        if milestone["status"] != MilestoneStatus.REWARDED:
            return RpcFailure(code="ALREADY_REVERSED", message=f"Milestone {milestone_id} is {MilestoneStatus(milestone['status']).value}")

        earned = self.tables["referral_earnings_ledger"].get(earned_ledger_id)
        if earned is None or earned["event_type"] != EventType.EARNED or earned["milestone_id"] != milestone_id:
            return RpcFailure(
                code="NOT_FOUND",
                message=f"EARNED entry {earned_ledger_id} not found for milestone {milestone_id}",
            )

        now = self.clock()
        referrer_id = milestone["referrer_id"]
        with self.transaction():
            balance_after = max(0, self.get_referrer_balance(referrer_id) - earned["amount"])
            reversal = self.insert("referral_earnings_ledger", {
                "referrer_id": referrer_id,
                "milestone_id": milestone_id,
                "event_type": EventType.REVERSAL,
                "amount": earned["amount"],
                "balance_after": balance_after,
                "reversal_reference_id": earned_ledger_id,
                "description": f"Reversal: {reason}",
                "created_at": now,
            })
            self.update("referral_milestones", milestone_id, {
                "status": MilestoneStatus.REVERSED,
                "reversed_at": now,
                "reversal_reason": reason,
            })
            self.referrer_balances[referrer_id] = balance_after

        return ReversalSuccess(reversal_id=reversal["id"], balance_after=balance_after)

    # Fee-deduction claims

    def claim_fee_items(self, item_ids: Iterable[UUID], batch_id: UUID) -> int:
        claimed = 0
        items = self.tables["payout_batch_items"]
        for item_id in item_ids:
            item = items.get(item_id)
            if (
                item is None
                or item["item_type"] != ItemType.FEE_DEDUCTION
                or item["status"] != ItemStatus.PENDING
                or item["payout_batch_id"] is not None
            ):
                continue
            item["payout_batch_id"] = batch_id
            claimed += 1
        return claimed

    def release_fee_items(self, batch_id: UUID) -> int:
        released = 0
        for item in self.tables["payout_batch_items"].values():
            if (
                item["item_type"] == ItemType.FEE_DEDUCTION
                and item["status"] == ItemStatus.PENDING
                and item["payout_batch_id"] == batch_id
            ):
                item["payout_batch_id"] = None
                released += 1
        return released

    def _table(self, table: str) -> dict[UUID, dict]:
        try:
            return self.tables[table]
        except KeyError:
            raise ProcessorError(f"Unknown table: {table}") from None

    def _check_constraints(self, table: str, row: dict) -> None:
        if table == "referral_milestones":
            if self.query(table, referral_id=row["referral_id"]):
                raise ConflictError(f"Milestone already exists for referral {row['referral_id']}")

        elif table == "referral_earnings_ledger" and row["event_type"] == EventType.REVERSAL:
            reference = row.get("reversal_reference_id")
            original = self.tables[table].get(reference)
            if original is None or original["event_type"] != EventType.EARNED:
                raise ProcessorError(f"REVERSAL must reference an EARNED entry, got {reference}")
            if self.query(table, event_type=EventType.REVERSAL, reversal_reference_id=reference):
                raise ConflictError(f"EARNED entry {reference} already reversed")

        elif table == "payout_batches" and not row.get("forced") and row["status"] != BatchStatus.FAILED:
            existing = self.query(
                table,
                period_start_date=row["period_start_date"],
                period_end_date=row["period_end_date"],
                forced__ne=True,
                status__ne=BatchStatus.FAILED,
            )
            if existing:
                raise ConflictError(
                    f"Payout batch already exists for {row['period_start_date']} to {row['period_end_date']}",
                    batch_id=existing[0]["id"],
                )
