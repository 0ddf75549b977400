"""
Bot-signal classifier.

Looks for evidence that the target site has noticed automated access and
recommends a corrective action. Detection methods, in priority order:

1. Page text containing CAPTCHA / challenge keywords
2. CAPTCHA widget selectors present in the DOM
3. HTTP 429 when the current URL is requested again

A rolling failure rate can also be checked independently of any page.

Every check fails open: an error while inspecting the page is logged and
reported as "not detected" so a flaky browser never blocks scraping.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog

from lookupguard.observability import increment
from lookupguard.protocols import DetectionMethod, DetectionResult, PageInspector, ResponseAction

from .responses import HANDLERS, ResponseContext, pause_and_alert

if TYPE_CHECKING:
    from lookupguard.config.config import DetectionConfig

logger = structlog.get_logger(__name__)

DEFAULT_FAILED_LOOKUP_THRESHOLD = 0.5


class BotSignalClassifier:
    """Stateless detector; safe to share between controllers."""

    CAPTCHA_KEYWORDS: List[str] = [
        "recaptcha",
        "captcha",
        "g-recaptcha",
        "grecaptcha",
        "hcaptcha",
        "h-captcha",
        "challenge",
        "verify you are human",
        "verify you're human",
        "unusual traffic",
        "automated requests",
    ]

    CAPTCHA_SELECTORS: List[str] = [
        'iframe[src*="recaptcha"]',
        'iframe[src*="captcha"]',
        'div[class*="recaptcha"]',
        'div[class*="captcha"]',
        'div[id*="recaptcha"]',
        'div[id*="captcha"]',
        ".g-recaptcha",
        "#g-recaptcha",
    ]

    def __init__(
        self,
        failed_lookup_threshold: float = DEFAULT_FAILED_LOOKUP_THRESHOLD,
        enable_html_detection: bool = True,
        enable_selector_detection: bool = True,
        enable_http_detection: bool = True,
        status_timeout_ms: int = 5000,
    ):
        if not 0.0 <= failed_lookup_threshold <= 1.0:
            logger.warning(
                "failed_lookup_threshold must be between 0 and 1, using default",
                provided_value=failed_lookup_threshold,
                default=DEFAULT_FAILED_LOOKUP_THRESHOLD,
            )
            failed_lookup_threshold = DEFAULT_FAILED_LOOKUP_THRESHOLD

        self.failed_lookup_threshold = failed_lookup_threshold
        self.enable_html_detection = enable_html_detection
        self.enable_selector_detection = enable_selector_detection
        self.enable_http_detection = enable_http_detection
        self.status_timeout_ms = status_timeout_ms

        logger.info("Bot-signal classifier initialized", **self.get_config())

    @classmethod
    def from_config(cls, config: "DetectionConfig") -> BotSignalClassifier:
        return cls(
            failed_lookup_threshold=config.failed_lookup_threshold,
            enable_html_detection=config.enable_html_detection,
            enable_selector_detection=config.enable_selector_detection,
            enable_http_detection=config.enable_http_detection,
            status_timeout_ms=config.status_timeout_ms,
        )

    async def detect(self, inspector: PageInspector) -> DetectionResult:
        """Run the page checks in priority order; the first hit wins."""
        url = self._safe_url(inspector)
        logger.debug("Starting bot-signal detection", url=url)

        try:
            if self.enable_html_detection:
                result = await self._detect_in_text(inspector, url)
                if result.detected:
                    logger.warning("Bot signal detected in page content", **result.details)
                    return self._counted(result)

            if self.enable_selector_detection:
                result = await self._detect_selectors(inspector, url)
                if result.detected:
                    logger.warning("Bot signal detected via selector", **result.details)
                    return self._counted(result)

            if self.enable_http_detection:
                result = await self._detect_http_429(inspector, url)
                if result.detected:
                    logger.warning("Bot signal detected via HTTP 429", **result.details)
                    return self._counted(result)
        except Exception as e:
            logger.error("Error during bot-signal detection", url=url, error=str(e), exc_info=True)
            return DetectionResult.clean(error=str(e))

        logger.debug("No bot signal detected", url=url)
        return DetectionResult.clean()

    async def _detect_in_text(self, inspector: PageInspector, url: Optional[str]) -> DetectionResult:
        try:
            content = (await inspector.full_text_content()).lower()
        except Exception as e:
            logger.error("Error reading page content", url=url, error=str(e))
            return DetectionResult.clean()

        for keyword in self.CAPTCHA_KEYWORDS:
            if keyword in content:
                return DetectionResult(
                    detected=True,
                    method=DetectionMethod.HTML_CONTENT,
                    recommended_action=ResponseAction.PAUSE_AND_ALERT,
                    details={"keyword": keyword, "url": url},
                )
        return DetectionResult.clean()

    async def _detect_selectors(self, inspector: PageInspector, url: Optional[str]) -> DetectionResult:
        try:
            for selector in self.CAPTCHA_SELECTORS:
                if await inspector.element_exists(selector):
                    return DetectionResult(
                        detected=True,
                        method=DetectionMethod.SELECTOR,
                        recommended_action=ResponseAction.PAUSE_AND_ALERT,
                        details={"selector": selector, "url": url},
                    )
        except Exception as e:
            logger.error("Error checking CAPTCHA selectors", url=url, error=str(e))
        return DetectionResult.clean()

    async def _detect_http_429(self, inspector: PageInspector, url: Optional[str]) -> DetectionResult:
        try:
            status = await inspector.reissue_and_get_status(url or "", self.status_timeout_ms)
        except Exception as e:
            # Timeouts and navigation errors are not a bot signal on their own.
            logger.debug("Error checking HTTP status", url=url, error=str(e))
            return DetectionResult.clean()

        if status == 429:
            return DetectionResult(
                detected=True,
                method=DetectionMethod.HTTP_429,
                recommended_action=ResponseAction.INCREASE_DELAY,
                details={"status_code": 429, "url": url},
            )
        return DetectionResult.clean()

    def detect_failed_lookup_rate(self, success_count: int, total_count: int) -> DetectionResult:
        """
        Flag a failure rate strictly above the threshold.

        Exactly at the threshold is not a signal: 5 of 10 failed with the
        default 0.5 passes, 6 of 10 does not.
        """
        if total_count == 0:
            return DetectionResult.clean()

        success_rate = success_count / total_count
        failure_rate = 1 - success_rate
        details: Dict[str, Any] = {
            "successful_lookups": success_count,
            "total_lookups": total_count,
            "success_rate": success_rate,
            "failure_rate": failure_rate,
            "threshold": self.failed_lookup_threshold,
        }

        logger.debug("Checking failed lookup rate", **details)

        if failure_rate > self.failed_lookup_threshold:
            logger.warning("High failure rate detected", **details)
            return self._counted(
                DetectionResult(
                    detected=True,
                    method=DetectionMethod.FAILED_LOOKUP_RATE,
                    recommended_action=ResponseAction.REDUCE_BATCH_SIZE,
                    details=details,
                )
            )

        return DetectionResult.clean()

    def handle_detection(self, result: DetectionResult) -> ResponseAction:
        """Action to take for ``result``; pause-and-alert when nothing better is known."""
        if not result.detected:
            logger.debug("No bot signal detected, returning default action")
            return ResponseAction.PAUSE_AND_ALERT

        action = result.recommended_action or ResponseAction.PAUSE_AND_ALERT
        logger.warning(
            "Bot signal detected, recommending action",
            method=result.method.value if result.method else None,
            recommended_action=action.value,
            details=result.details,
        )
        return action

    async def execute_action(self, action: Any, context: ResponseContext) -> None:
        """Run the handler for ``action`` against ``context``."""
        logger.warning("Executing response action", action=getattr(action, "value", action))

        handler = HANDLERS.get(action) if isinstance(action, ResponseAction) else None
        if handler is None:
            logger.error("Unknown response action, falling back to pause and alert", action=action)
            handler = pause_and_alert

        await handler(context)

    def get_config(self) -> Dict[str, Any]:
        return {
            "failed_lookup_threshold": self.failed_lookup_threshold,
            "enable_html_detection": self.enable_html_detection,
            "enable_selector_detection": self.enable_selector_detection,
            "enable_http_detection": self.enable_http_detection,
            "status_timeout_ms": self.status_timeout_ms,
        }

    @staticmethod
    def _counted(result: DetectionResult) -> DetectionResult:
        if result.method is not None:
            increment("bot_signals_detected", labels={"method": result.method.value})
        return result

    @staticmethod
    def _safe_url(inspector: PageInspector) -> Optional[str]:
        try:
            return inspector.current_url()
        except Exception:
            return None
