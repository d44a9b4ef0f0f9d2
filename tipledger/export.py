import csv
import io
from typing import Iterable

from .models import ExportRow, ItemType, PayoutBatch, PayoutBatchItem

CSV_HEADER = (
    "Batch Number",
    "Earner ID",
    "Item Type",
    "Item ID",
    "Amount (ZAR cents)",
    "Transfer Fee (ZAR cents)",
    "Net Amount (ZAR cents)",
)


def build_export_rows(batch: PayoutBatch, items: Iterable[PayoutBatchItem]) -> list[ExportRow]:
    """One row per EARNER item, ordered by earner id, each followed by the
    FEE_DEDUCTION items that batch claimed for that earner (oldest first)."""
    items = list(items)
    fees_by_earner: dict = {}
    for item in items:
        if item.item_type == ItemType.FEE_DEDUCTION:
            fees_by_earner.setdefault(item.earner_id, []).append(item)

    rows = []
    earner_items = sorted((i for i in items if i.item_type == ItemType.EARNER), key=lambda i: str(i.earner_id))
    for earner_item in earner_items:
        rows.append(_row(batch, earner_item))
        claimed = sorted(
            fees_by_earner.get(earner_item.earner_id, []),
            key=lambda i: (i.created_at, str(i.id)),
        )
        rows.extend(_row(batch, fee_item) for fee_item in claimed)
    return rows


def render_csv(rows: Iterable[ExportRow]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow([
            row.batch_number,
            row.earner_id,
            row.item_type.value,
            row.item_id,
            row.amount,
            row.fee,
            row.net_amount,
        ])
    return buffer.getvalue()


def _row(batch: PayoutBatch, item: PayoutBatchItem) -> ExportRow:
    return ExportRow(
        batch_number=batch.batch_number,
        earner_id=item.earner_id,
        item_type=item.item_type,
        item_id=item.id,
        amount=item.amount,
        fee=item.fee,
        net_amount=item.net_amount,
    )
