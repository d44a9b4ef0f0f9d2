import secrets
import string
import time
from typing import Any, Optional
from uuid import UUID

import structlog

from .errors import TipLedgerError
from .storage import LedgerStore

logger = structlog.get_logger(__name__)

CATEGORIES = ("payout", "referral", "admin", "other")


def generate_request_id() -> str:
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(7))
    return f"req_{int(time.time() * 1000)}_{suffix}"


def record_audit_event(
    store: LedgerStore,
    event_type: str,
    category: str,
    action: str,
    description: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[UUID] = None,
    status: str = "success",
    metadata: Optional[dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Optional[dict]:
    """Append an audit row. Failures are logged and never propagate."""
    if category not in CATEGORIES:
        category = "other"
    try:
        return store.insert("audit_log", {
            "event_type": event_type,
            "event_category": category,
            "action": action,
            "description": description,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "status": status,
            "metadata": metadata or {},
            "request_id": request_id or generate_request_id(),
        })
    except TipLedgerError as e:
        logger.error("audit_log_failed", event_type=event_type, entity_id=str(entity_id), error=str(e))
        return None
