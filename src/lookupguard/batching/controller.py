"""
Adaptive batch controller.

Groups work items into small batches and processes each batch strictly
sequentially with a randomised pause afterwards. The batch ceiling starts at
five and only ever shrinks: a batch whose success rate falls below the
threshold costs one slot, and good batches never earn it back. Five is a
hard limit that no configuration can raise.

Before every batch the controller can ask a ``BotSignalClassifier`` to look
at the live page; a CAPTCHA aborts the batch, a 429 widens the delay and a
high rolling failure rate drops the ceiling to its minimum. Failed items go
to an attached ``RetryQueue``.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from datetime import datetime
from typing import TYPE_CHECKING, Any, Deque, Dict, List, Optional, Tuple

import structlog

from lookupguard.detection.classifier import BotSignalClassifier
from lookupguard.detection.responses import ResponseContext
from lookupguard.observability import gauge, histogram, increment
from lookupguard.protocols import (
    ABSOLUTE_MAX_BATCH_SIZE,
    BatchCapacityError,
    BatchCeilingViolation,
    BatchOutcome,
    PageInspector,
    Processor,
    ResponseAction,
    RetryItemType,
    WorkItem,
    utc_now,
)

if TYPE_CHECKING:
    from lookupguard.config.config import BatchConfig
    from lookupguard.recovery.retry_queue import RetryQueue

logger = structlog.get_logger(__name__)

DEFAULT_DELAY_RANGE_MS: Tuple[int, int] = (2000, 5000)
DEFAULT_SUCCESS_RATE_THRESHOLD = 0.5
HISTORY_SIZE = 10
DELAY_INCREASE_FACTOR = 1.5


class AdaptiveBatchController:
    """Owns one in-flight batch, its shrink-only ceiling and the rolling history."""

    def __init__(
        self,
        min_batch_size: int = 3,
        max_batch_size: int = ABSOLUTE_MAX_BATCH_SIZE,
        inter_batch_delay_ms: Tuple[float, float] = DEFAULT_DELAY_RANGE_MS,
        success_rate_threshold: float = DEFAULT_SUCCESS_RATE_THRESHOLD,
        classifier: Optional[BotSignalClassifier] = None,
        enable_detection: bool = True,
        retry_queue: Optional["RetryQueue"] = None,
    ):
        if max_batch_size > ABSOLUTE_MAX_BATCH_SIZE:
            logger.critical(
                "Requested batch ceiling exceeds the absolute maximum",
                requested_value=max_batch_size,
                absolute_max_batch_size=ABSOLUTE_MAX_BATCH_SIZE,
            )
            raise BatchCeilingViolation(
                f"max_batch_size cannot exceed {ABSOLUTE_MAX_BATCH_SIZE}. Requested: {max_batch_size}"
            )

        if min_batch_size < 1:
            logger.warning("min_batch_size cannot be less than 1, setting to 1", provided_value=min_batch_size)
            min_batch_size = 1
        elif min_batch_size > ABSOLUTE_MAX_BATCH_SIZE:
            logger.warning(
                f"min_batch_size cannot exceed {ABSOLUTE_MAX_BATCH_SIZE}, clamping",
                provided_value=min_batch_size,
            )
            min_batch_size = ABSOLUTE_MAX_BATCH_SIZE

        min_delay, max_delay = inter_batch_delay_ms
        if min_delay < 0 or min_delay > max_delay:
            logger.warning("Invalid inter-batch delay range, using default", provided_value=inter_batch_delay_ms)
            min_delay, max_delay = DEFAULT_DELAY_RANGE_MS

        if not 0.0 <= success_rate_threshold <= 1.0:
            logger.warning(
                "success_rate_threshold must be between 0 and 1, using default",
                provided_value=success_rate_threshold,
            )
            success_rate_threshold = DEFAULT_SUCCESS_RATE_THRESHOLD

        self.min_batch_size = min_batch_size
        self.current_size = ABSOLUTE_MAX_BATCH_SIZE
        self.success_rate_threshold = success_rate_threshold
        self.classifier = classifier
        self.enable_detection = enable_detection
        self.retry_queue = retry_queue

        self._delay_range: Tuple[float, float] = (min_delay, max_delay)
        self._batch: List[WorkItem] = []
        self._history: Deque[bool] = deque(maxlen=HISTORY_SIZE)

        self.total_batches_processed = 0
        self.total_items_processed = 0
        self.last_batch_time: Optional[datetime] = None
        self.bot_signal_count = 0

        gauge("batch_size_current", self.current_size)
        logger.info(
            "Adaptive batch controller initialized",
            batch_size=self.current_size,
            min_batch_size=self.min_batch_size,
            max_batch_size=ABSOLUTE_MAX_BATCH_SIZE,
            inter_batch_delay_ms=self._delay_range,
            success_rate_threshold=self.success_rate_threshold,
            detection_enabled=self.enable_detection,
            has_classifier=self.classifier is not None,
            has_retry_queue=self.retry_queue is not None,
        )

    @classmethod
    def from_config(
        cls,
        config: "BatchConfig",
        classifier: Optional[BotSignalClassifier] = None,
        retry_queue: Optional["RetryQueue"] = None,
    ) -> AdaptiveBatchController:
        return cls(
            min_batch_size=config.min_batch_size,
            max_batch_size=config.max_batch_size,
            inter_batch_delay_ms=config.inter_batch_delay_ms,
            success_rate_threshold=config.success_rate_threshold,
            classifier=classifier,
            enable_detection=config.enable_detection,
            retry_queue=retry_queue,
        )

    def set_retry_queue(self, retry_queue: "RetryQueue") -> None:
        self.retry_queue = retry_queue
        logger.info("Retry queue attached", session_id=retry_queue.session_id)

    # ------------------------------------------------------------------
    # Batch contents
    # ------------------------------------------------------------------

    def add(self, item: WorkItem) -> None:
        """Append ``item``; raises ``BatchCapacityError`` when the batch is full."""
        if len(self._batch) >= self.current_size:
            logger.error(
                "Attempted to exceed batch size",
                current_batch_count=len(self._batch),
                max_batch_size=self.current_size,
                identifier=item.identifier,
            )
            raise BatchCapacityError(f"Batch is full ({len(self._batch)}/{self.current_size}). Process batch first.")

        if len(self._batch) >= ABSOLUTE_MAX_BATCH_SIZE:
            logger.critical(
                "Batch already holds the absolute maximum",
                current_batch_count=len(self._batch),
                absolute_max_batch_size=ABSOLUTE_MAX_BATCH_SIZE,
            )
            raise BatchCapacityError(f"Cannot exceed absolute maximum batch size of {ABSOLUTE_MAX_BATCH_SIZE}")

        self._batch.append(item)
        logger.debug(
            "Added item to batch",
            identifier=item.identifier,
            current_batch_count=len(self._batch),
            max_batch_size=self.current_size,
        )

    def is_full(self) -> bool:
        return len(self._batch) >= self.current_size

    def is_empty(self) -> bool:
        return not self._batch

    @property
    def size(self) -> int:
        """Items currently in the batch."""
        return len(self._batch)

    @property
    def capacity(self) -> int:
        """The live adaptive ceiling, not the absolute maximum."""
        return self.current_size

    @property
    def current_batch(self) -> List[WorkItem]:
        return list(self._batch)

    def clear(self) -> None:
        logger.debug("Clearing batch", items_cleared=len(self._batch))
        self._batch = []

    # ------------------------------------------------------------------
    # Delay
    # ------------------------------------------------------------------

    @property
    def inter_batch_delay_ms(self) -> Tuple[float, float]:
        return self._delay_range

    @property
    def current_delay_ms(self) -> int:
        """Upper end of the delay range."""
        return int(self._delay_range[1])

    def increase_delay(self, factor: float = DELAY_INCREASE_FACTOR) -> None:
        previous = self._delay_range
        self._delay_range = (previous[0] * factor, previous[1] * factor)
        logger.warning("Increased inter-batch delay", previous_delay=previous, new_delay=self._delay_range)

    async def wait_inter_batch_delay(self) -> None:
        """Sleep for a random delay drawn from the inter-batch range."""
        delay_ms = random.uniform(*self._delay_range)
        logger.debug("Waiting for inter-batch delay", delay_ms=round(delay_ms), delay_range=self._delay_range)
        await asyncio.sleep(delay_ms / 1000)

    # ------------------------------------------------------------------
    # Size adjustment
    # ------------------------------------------------------------------

    def reduce_to_minimum(self) -> None:
        """Drop the ceiling straight to ``min_batch_size``; never raises it."""
        if self.current_size > self.min_batch_size:
            previous = self.current_size
            self.current_size = self.min_batch_size
            gauge("batch_size_current", self.current_size)
            logger.warning(
                "Reduced batch size to minimum",
                previous_size=previous,
                new_size=self.current_size,
                min_batch_size=self.min_batch_size,
            )

    def _adjust_size(self, success_rate: float) -> None:
        if success_rate < self.success_rate_threshold:
            if self.current_size > self.min_batch_size:
                previous = self.current_size
                self.current_size -= 1
                logger.warning(
                    "Reducing batch size due to low success rate",
                    previous_batch_size=previous,
                    new_batch_size=self.current_size,
                    success_rate=success_rate,
                    threshold=self.success_rate_threshold,
                    rolling_success_rate=self.rolling_success_rate,
                )
            else:
                logger.warning(
                    "Success rate below threshold but already at minimum batch size",
                    batch_size=self.current_size,
                    min_batch_size=self.min_batch_size,
                    success_rate=success_rate,
                )
        else:
            # Good batches never grow the ceiling back.
            logger.debug(
                "Success rate is good, maintaining current batch size",
                batch_size=self.current_size,
                success_rate=success_rate,
            )

        if self.current_size > ABSOLUTE_MAX_BATCH_SIZE:
            logger.critical(
                "Batch size exceeded absolute maximum, forcing it back",
                invalid_batch_size=self.current_size,
                absolute_max_batch_size=ABSOLUTE_MAX_BATCH_SIZE,
            )
            self.current_size = ABSOLUTE_MAX_BATCH_SIZE

        gauge("batch_size_current", self.current_size)

    @property
    def rolling_success_rate(self) -> float:
        """Share of the last ten batches that met the threshold; 1.0 with no history."""
        if not self._history:
            return 1.0
        return sum(self._history) / len(self._history)

    def record_result(self, outcome: BatchOutcome) -> None:
        """Update counters and history, then apply the shrink rule."""
        self.total_batches_processed += 1
        self.total_items_processed += outcome.batch_size
        self.last_batch_time = utc_now()
        self._history.append(outcome.success_rate >= self.success_rate_threshold)

        logger.info(
            "Batch result recorded",
            batch_number=self.total_batches_processed,
            successful=outcome.successful,
            failed=outcome.failed,
            success_rate=outcome.success_rate,
            batch_size=outcome.batch_size,
            processing_time_ms=outcome.processing_time_ms,
            rolling_success_rate=self.rolling_success_rate,
        )

        self._adjust_size(outcome.success_rate)

    # ------------------------------------------------------------------
    # Bot-signal check
    # ------------------------------------------------------------------

    def response_context(self, **callbacks: Any) -> ResponseContext:
        """A ResponseContext whose size and delay callbacks drive this controller."""
        callbacks.setdefault("reduce_batch_size", self.reduce_to_minimum)
        callbacks.setdefault("get_current_batch_size", lambda: self.current_size)
        callbacks.setdefault("increase_delay", self.increase_delay)
        callbacks.setdefault("get_current_delay", lambda: self.current_delay_ms)
        return ResponseContext(**callbacks)

    async def check_bot_signals(
        self,
        page_inspector: Optional[PageInspector] = None,
        response_context: Optional[ResponseContext] = None,
    ) -> bool:
        """
        Pre-batch check. Returns False when the batch must be aborted.

        Page detection runs only with an inspector; the rolling failure-rate
        check runs whenever there is history. Errors never abort a batch.
        """
        if not self.enable_detection:
            logger.debug("Bot-signal detection disabled, skipping check")
            return True
        if self.classifier is None:
            logger.debug("No classifier configured, skipping check")
            return True

        logger.debug(
            "Checking for bot signals before batch",
            batch_size=len(self._batch),
            total_batches_processed=self.total_batches_processed,
        )

        try:
            if page_inspector is not None:
                detection = await self.classifier.detect(page_inspector)
                if detection.detected:
                    self.bot_signal_count += 1
                    logger.warning(
                        "Bot signal detected before batch",
                        method=detection.method.value if detection.method else None,
                        recommended_action=(
                            detection.recommended_action.value if detection.recommended_action else None
                        ),
                        bot_signal_count=self.bot_signal_count,
                        details=detection.details,
                    )

                    action = self.classifier.handle_detection(detection)
                    if response_context is not None:
                        await self.classifier.execute_action(action, response_context)

                    if action in (ResponseAction.STOP_SESSION, ResponseAction.PAUSE_AND_ALERT):
                        logger.warning("Aborting batch after bot signal", action=action.value)
                        return False
                    if action is ResponseAction.REDUCE_BATCH_SIZE:
                        if not self._applied_through(response_context, "reduce_batch_size", self.reduce_to_minimum):
                            self.reduce_to_minimum()
                        return True
                    if action is ResponseAction.INCREASE_DELAY:
                        if not self._applied_through(response_context, "increase_delay", self.increase_delay):
                            self.increase_delay()
                        return True

            if self._history:
                success_count = sum(self._history)
                detection = self.classifier.detect_failed_lookup_rate(success_count, len(self._history))
                if detection.detected:
                    self.bot_signal_count += 1
                    logger.warning(
                        "High failure rate detected",
                        bot_signal_count=self.bot_signal_count,
                        details=detection.details,
                    )
                    if detection.recommended_action is ResponseAction.REDUCE_BATCH_SIZE:
                        self.reduce_to_minimum()

            return True
        except Exception as e:
            logger.error("Error during bot-signal check, continuing", error=str(e), exc_info=True)
            return True

    @staticmethod
    def _applied_through(context: Optional[ResponseContext], name: str, method: Any) -> bool:
        """Whether the response handler already ran ``method`` via ``context``."""
        return context is not None and getattr(context, name) == method

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_batch(
        self,
        processor: Processor,
        page_inspector: Optional[PageInspector] = None,
        response_context: Optional[ResponseContext] = None,
    ) -> BatchOutcome:
        """
        Process the current batch one item at a time, in insertion order.

        A None result or an exception fails that item; failures are queued
        for retry when a retry queue is attached. After the batch is recorded
        and cleared the call sleeps for a random inter-batch delay.

        If the pre-batch check aborts, every item is reported failed with
        ``aborted=True``; the batch is left in place for resubmission and
        neither statistics nor the delay are touched.
        """
        start = time.perf_counter()

        if not self._batch:
            logger.warning("Attempted to process empty batch")
            return BatchOutcome.empty()

        if not await self.check_bot_signals(page_inspector, response_context):
            pending = list(self._batch)
            logger.warning(
                "Batch processing aborted due to bot signal",
                batch_size=len(pending),
                bot_signal_count=self.bot_signal_count,
            )
            return BatchOutcome(
                successful=0,
                failed=len(pending),
                batch_size=len(pending),
                processing_time_ms=(time.perf_counter() - start) * 1000,
                aborted=True,
                failed_items=pending,
            )

        batch = list(self._batch)
        batch_size = len(batch)

        logger.info(
            "Starting batch processing",
            batch_size=batch_size,
            max_batch_size=self.current_size,
            total_batches_processed=self.total_batches_processed,
            bot_signal_count=self.bot_signal_count,
        )

        if batch_size > ABSOLUTE_MAX_BATCH_SIZE:
            logger.critical(
                "Processing batch that exceeds maximum size",
                batch_size=batch_size,
                absolute_max_batch_size=ABSOLUTE_MAX_BATCH_SIZE,
            )
            raise BatchCeilingViolation(
                f"Batch size {batch_size} exceeds absolute maximum of {ABSOLUTE_MAX_BATCH_SIZE}"
            )

        results: Dict[str, str] = {}
        failed_items: List[WorkItem] = []

        for index, item in enumerate(batch, start=1):
            logger.debug("Processing item", identifier=item.identifier, index=index, batch_size=batch_size)
            try:
                result = await processor(item)
            except Exception as e:
                logger.error(
                    "Processor raised for item",
                    identifier=item.identifier,
                    correlation_id=item.correlation_id,
                    error=str(e),
                    exc_info=True,
                )
                failed_items.append(item)
                continue

            if result is None:
                logger.warning("Processor returned no result", identifier=item.identifier)
                failed_items.append(item)
            else:
                logger.debug("Item processed", identifier=item.identifier, result=result)
                results[item.identifier] = result

        successful = batch_size - len(failed_items)
        increment("items_processed", successful, labels={"outcome": "success"})
        increment("items_processed", len(failed_items), labels={"outcome": "failure"})

        if failed_items and self.retry_queue is not None:
            await self._enqueue_failures(failed_items, batch_size)

        elapsed = time.perf_counter() - start
        outcome = BatchOutcome(
            successful=successful,
            failed=len(failed_items),
            results=results,
            batch_size=batch_size,
            processing_time_ms=elapsed * 1000,
            failed_items=failed_items,
        )

        logger.info(
            "Batch processing complete",
            batch_number=self.total_batches_processed + 1,
            successful=outcome.successful,
            failed=outcome.failed,
            success_rate=outcome.success_rate,
            batch_size=batch_size,
            processing_time_ms=round(outcome.processing_time_ms, 1),
        )

        self.record_result(outcome)
        increment("batches_processed")
        histogram("batch_duration_seconds", elapsed)

        self.clear()
        await self.wait_inter_batch_delay()
        return outcome

    async def _enqueue_failures(self, failed_items: List[WorkItem], batch_size: int) -> None:
        assert self.retry_queue is not None
        logger.info("Enqueueing failed items for retry", failed_count=len(failed_items), batch_size=batch_size)

        for item in failed_items:
            try:
                await self.retry_queue.enqueue(RetryItemType.LOOKUP, item.to_payload(), attempts=0)
                logger.debug("Failed item enqueued", identifier=item.identifier)
            except Exception as e:
                # One item that cannot be queued must not fail the batch.
                logger.error("Failed to enqueue item for retry", identifier=item.identifier, error=str(e))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "total_batches_processed": self.total_batches_processed,
            "total_items_processed": self.total_items_processed,
            "current_batch_size": self.current_size,
            "current_batch_count": len(self._batch),
            "rolling_success_rate": self.rolling_success_rate,
            "last_batch_time": self.last_batch_time,
            "min_batch_size": self.min_batch_size,
            "max_batch_size": ABSOLUTE_MAX_BATCH_SIZE,
            "bot_signal_count": self.bot_signal_count,
            "detection_enabled": self.enable_detection,
        }

    def reset(self) -> None:
        """Restore a fresh controller: empty batch, ceiling 5, no history."""
        logger.info("Resetting controller state", previous_stats=self.get_statistics())
        self._batch = []
        self.current_size = ABSOLUTE_MAX_BATCH_SIZE
        self._history.clear()
        self.last_batch_time = None
        self.total_batches_processed = 0
        self.total_items_processed = 0
        self.bot_signal_count = 0
        gauge("batch_size_current", self.current_size)
