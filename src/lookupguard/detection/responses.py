"""
Response actions executed when a bot signal is detected.

Each handler works against a ``ResponseContext``: a bag of optional callbacks
supplied by the scraping loop. Callbacks may be plain functions or
coroutines. A missing callback is skipped and logged, never raised.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import structlog

from lookupguard.protocols import Alert, AlertSeverity, AlertType, ResponseAction

logger = structlog.get_logger(__name__)

UNKNOWN = "unknown"


@dataclass
class ResponseContext:
    """Optional callbacks the response handlers drive."""

    pause_scraping: Optional[Callable[[], Any]] = None
    send_alert: Optional[Callable[[Alert], Any]] = None
    reduce_batch_size: Optional[Callable[[], Any]] = None
    get_current_batch_size: Optional[Callable[[], int]] = None
    increase_delay: Optional[Callable[[], Any]] = None
    get_current_delay: Optional[Callable[[], int]] = None
    stop_session: Optional[Callable[[], Any]] = None


async def _invoke(callback: Callable[..., Any], *args: Any) -> Any:
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def _read(getter: Optional[Callable[[], Any]]) -> Union[int, str]:
    if getter is None:
        return UNKNOWN
    return await _invoke(getter)


async def pause_and_alert(context: ResponseContext) -> None:
    """Pause scraping and tell the operator; resuming is a manual step."""
    logger.warning("Pausing scraping after bot signal", action=ResponseAction.PAUSE_AND_ALERT.value)

    if context.pause_scraping is not None:
        await _invoke(context.pause_scraping)
        logger.info("Scraping paused")
    else:
        logger.warning("No pause_scraping callback provided in context")

    if context.send_alert is not None:
        await _invoke(
            context.send_alert,
            Alert(
                type=AlertType.CAPTCHA_DETECTED,
                severity=AlertSeverity.HIGH,
                message="Captcha detected during scraping. Scraping has been paused. "
                "Please review and resume manually.",
                details={"action": ResponseAction.PAUSE_AND_ALERT.value},
            ),
        )
        logger.info("Alert sent to operator")
    else:
        logger.warning("No send_alert callback provided in context")


async def reduce_batch_size(context: ResponseContext) -> None:
    """Shrink the batch to its minimum and report the before/after sizes."""
    logger.warning("Reducing batch size to minimum", action=ResponseAction.REDUCE_BATCH_SIZE.value)

    if context.reduce_batch_size is None:
        logger.warning("No reduce_batch_size callback provided in context")
        return

    previous_size = await _read(context.get_current_batch_size)
    await _invoke(context.reduce_batch_size)
    new_size = await _read(context.get_current_batch_size)

    logger.info("Batch size reduced", previous_size=previous_size, new_size=new_size)

    if context.send_alert is not None:
        await _invoke(
            context.send_alert,
            Alert(
                type=AlertType.BATCH_SIZE_REDUCED,
                severity=AlertSeverity.MEDIUM,
                message=f"Batch size reduced from {previous_size} to {new_size} due to captcha detection.",
                details={
                    "action": ResponseAction.REDUCE_BATCH_SIZE.value,
                    "previous_size": previous_size,
                    "new_size": new_size,
                },
            ),
        )


async def increase_delay(context: ResponseContext) -> None:
    """Widen the inter-batch delay and report the before/after delay."""
    logger.warning("Increasing inter-batch delay", action=ResponseAction.INCREASE_DELAY.value)

    if context.increase_delay is None:
        logger.warning("No increase_delay callback provided in context")
        return

    previous_delay = await _read(context.get_current_delay)
    await _invoke(context.increase_delay)
    new_delay = await _read(context.get_current_delay)

    logger.info("Inter-batch delay increased", previous_delay=previous_delay, new_delay=new_delay)

    if context.send_alert is not None:
        await _invoke(
            context.send_alert,
            Alert(
                type=AlertType.DELAY_INCREASED,
                severity=AlertSeverity.MEDIUM,
                message=f"Inter-batch delay increased from {previous_delay}ms to {new_delay}ms "
                "due to captcha detection.",
                details={
                    "action": ResponseAction.INCREASE_DELAY.value,
                    "previous_delay": previous_delay,
                    "new_delay": new_delay,
                },
            ),
        )


async def stop_session(context: ResponseContext) -> None:
    """Alert first, then stop the session."""
    logger.error("Stopping scraping session", action=ResponseAction.STOP_SESSION.value)

    if context.send_alert is not None:
        await _invoke(
            context.send_alert,
            Alert(
                type=AlertType.SESSION_STOPPED,
                severity=AlertSeverity.CRITICAL,
                message="Scraping session stopped due to captcha detection. Manual intervention required.",
                details={"action": ResponseAction.STOP_SESSION.value},
            ),
        )
        logger.info("Critical alert sent to operator")

    if context.stop_session is not None:
        await _invoke(context.stop_session)
        logger.info("Scraping session stopped")
    else:
        logger.warning("No stop_session callback provided in context")


HANDLERS = {
    ResponseAction.PAUSE_AND_ALERT: pause_and_alert,
    ResponseAction.REDUCE_BATCH_SIZE: reduce_batch_size,
    ResponseAction.INCREASE_DELAY: increase_delay,
    ResponseAction.STOP_SESSION: stop_session,
}
