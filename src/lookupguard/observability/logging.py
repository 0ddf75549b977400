"""
Structured logging for lookup campaigns, built on structlog.

Every module logs through ``structlog.get_logger(__name__)``. The lookup
service binds a ``correlation_id`` per campaign and the retry queue logs
with its ``session_id``; both are lifted onto each record here so a file
log can be filtered per campaign.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, Dict, List

import structlog
from structlog.contextvars import get_contextvars

if TYPE_CHECKING:
    from lookupguard.config.config import MonitoringConfig

# Chatty below WARNING and irrelevant to campaign behaviour.
QUIET_LOGGERS = ("aiosqlite", "httpx", "httpcore", "asyncio")

CAMPAIGN_KEYS = ("correlation_id", "session_id")


def add_campaign_context(logger: logging.Logger, method_name: str, event_dict: Dict[Any, Any]) -> Dict[Any, Any]:
    """Copy campaign identifiers bound in the context onto the record."""
    ctx = get_contextvars()
    for key in CAMPAIGN_KEYS:
        if key in ctx and key not in event_dict:
            event_dict[key] = ctx[key]
    return event_dict


def _build_handler(config: MonitoringConfig, shared_processors: List[Any]) -> logging.Handler:
    handler: logging.Handler
    renderer: Any
    if config.log_file:
        renderer = structlog.processors.JSONRenderer()
        handler = logging.FileHandler(config.log_file)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        handler = logging.StreamHandler(sys.stderr)

    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=shared_processors,
        )
    )
    return handler


def configure_logging(config: MonitoringConfig) -> None:
    """
    Route structlog and stdlib logging through one handler.

    JSON lines go to ``config.log_file`` when set, a console renderer on
    stderr otherwise. Calling this again replaces the previous handler.
    """
    shared_processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        add_campaign_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    root = logging.getLogger()
    root.handlers = [_build_handler(config, shared_processors)]
    root.setLevel(config.log_level.upper())
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger(__name__).info(
        "logging_configured", level=config.log_level, output=config.log_file or "stderr"
    )
