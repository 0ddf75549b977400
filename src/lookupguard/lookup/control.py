"""
Campaign-level pause/stop flags and the alert log.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List

import structlog

from lookupguard.detection.responses import ResponseContext
from lookupguard.protocols import Alert

if TYPE_CHECKING:
    from lookupguard.batching.controller import AdaptiveBatchController

logger = structlog.get_logger(__name__)


class CampaignControl:
    """
    Flags checked between batches.

    Response actions set them through the callbacks returned by
    ``response_context``; an in-flight item is never interrupted.
    """

    def __init__(self) -> None:
        self.paused = False
        self.stopped = False
        self.alerts: List[Alert] = []

    def pause(self) -> None:
        self.paused = True
        logger.warning("Campaign paused")

    def resume(self) -> None:
        self.paused = False
        logger.info("Campaign resumed")

    def stop(self) -> None:
        self.stopped = True
        logger.warning("Campaign stopped")

    def record_alert(self, alert: Alert) -> None:
        self.alerts.append(alert)
        logger.warning(
            "Alert raised",
            alert_type=alert.type.value,
            severity=alert.severity.value,
            message=alert.message,
        )

    def should_continue(self) -> bool:
        return not (self.paused or self.stopped)

    def response_context(self, controller: "AdaptiveBatchController") -> ResponseContext:
        """Callbacks for the response handlers, with size and delay bound to ``controller``."""
        return controller.response_context(
            pause_scraping=self.pause,
            send_alert=self.record_alert,
            stop_session=self.stop,
        )
