import logging
import sys
from typing import Optional

import structlog

from .config import LedgerSettings, get_settings


def setup_logging(settings: Optional[LedgerSettings] = None) -> None:
    """Route the ledger's structlog events to stdout at ``settings.log_level``.

    ``LOG_FORMAT=json`` emits one JSON object per event for log shipping;
    anything else renders key=value lines for local runs.
    """
    settings = settings or get_settings()

    if settings.log_format == "json":
        timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=True)
        renderers = [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            timestamper,
            *renderers,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.log_level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
