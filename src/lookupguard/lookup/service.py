"""
Provider lookup orchestration.

Feeds phone numbers through an ``AdaptiveBatchController`` against the
number-porting lookup site. Each batch gets its own freshly launched
browser, which is closed as soon as the batch is done. When the pre-batch
check aborts a batch (CAPTCHA on the page) the browser is replaced and the
same items are submitted once more.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional
from uuid import uuid4

import httpx
import structlog
from structlog.contextvars import bound_contextvars

from lookupguard.detection.inspectors import PlaywrightPageInspector
from lookupguard.protocols import BatchOutcome, RetryItem, RetryItemType, RetryResult, WorkItem

from .browser import BrowserFactory, BrowserSession
from .control import CampaignControl
from .phone import clean_phone_number, parse_provider

if TYPE_CHECKING:
    from lookupguard.batching.controller import AdaptiveBatchController
    from lookupguard.config.config import LookupConfig
    from lookupguard.recovery.retry_queue import RetryQueue
    from lookupguard.storage.provider_cache import ProviderCache

logger = structlog.get_logger(__name__)


class ProviderLookupService:
    """Looks up telecom providers for phone numbers, one browser per batch."""

    def __init__(
        self,
        controller: "AdaptiveBatchController",
        browser_factory: BrowserFactory,
        config: "LookupConfig",
        cache: Optional["ProviderCache"] = None,
        retry_queue: Optional["RetryQueue"] = None,
        control: Optional[CampaignControl] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.controller = controller
        self.browser_factory = browser_factory
        self.config = config
        self.cache = cache
        self.retry_queue = retry_queue
        self.control = control or CampaignControl()
        self.http_client = http_client
        self.recovered: Dict[str, str] = {}

        if retry_queue is not None and controller.retry_queue is None:
            controller.set_retry_queue(retry_queue)

    # ------------------------------------------------------------------
    # Single lookup
    # ------------------------------------------------------------------

    def lookup_url(self, phone_number: str) -> str:
        return self.config.url_template.format(msisdn=clean_phone_number(phone_number))

    async def lookup_single(self, page: Any, item: WorkItem) -> Optional[str]:
        """
        Look up one number on ``page``.

        Returns the provider name ("Unknown" when the page names none), or
        None when navigation or extraction failed so the item is retried.
        """
        url = self.lookup_url(item.identifier)
        logger.debug("Looking up provider", identifier=item.identifier, url=url)

        try:
            await page.goto(url, wait_until="networkidle", timeout=self.config.navigation_timeout_ms)
            element = await page.wait_for_selector(
                self.config.result_selector, timeout=self.config.selector_timeout_ms
            )
            text = await element.text_content() if element is not None else None
        except Exception as e:
            logger.warning("Provider lookup failed", identifier=item.identifier, error=str(e))
            return None

        provider = parse_provider(text or "")
        logger.info("Provider lookup result", identifier=item.identifier, provider=provider)
        return provider

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def lookup_providers(self, phone_numbers: Iterable[str]) -> Dict[str, str]:
        """
        Resolve providers for ``phone_numbers``.

        Cached numbers are answered without touching the site. The rest go
        through the batch controller; numbers whose lookup failed are absent
        from the result and sit in the retry queue when one is attached, as
        do numbers never reached because the campaign was paused or stopped.
        """
        numbers = list(dict.fromkeys(p.strip() for p in phone_numbers if p and p.strip()))
        results: Dict[str, str] = {}
        if not numbers:
            return results

        with bound_contextvars(correlation_id=uuid4().hex):
            logger.info("Starting provider lookups", count=len(numbers))

            if self.cache is not None:
                cached = await self.cache.get_many(numbers)
                results.update(cached)
                numbers = [n for n in numbers if n not in cached]
                logger.info("Provider cache consulted", cached=len(cached), remaining=len(numbers))

            if not numbers:
                return results

            new_results: Dict[str, str] = {}
            pending = [WorkItem(identifier=n) for n in numbers]
            total = len(results) + len(pending)
            batch_number = 0

            while pending:
                if not self.control.should_continue():
                    logger.warning(
                        "Campaign halted between batches",
                        paused=self.control.paused,
                        stopped=self.control.stopped,
                        remaining=len(pending),
                    )
                    await self._park_for_retry(pending, reason="campaign_halted")
                    break

                while pending and not self.controller.is_full():
                    self.controller.add(pending.pop(0))

                batch_number += 1
                outcome = await self._run_batch(batch_number)
                new_results.update(outcome.results)

                completed = len(results) + len(new_results)
                logger.info(
                    "lookup_progress",
                    completed=completed,
                    total=total,
                    percentage=round(completed * 100 / total),
                    current_batch=batch_number,
                    from_cache=len(results),
                )

            if self.cache is not None and new_results:
                await self.cache.set_many(new_results)

            results.update(new_results)
            logger.info(
                "Provider lookups complete",
                total=len(results),
                new=len(new_results),
                from_cache=len(results) - len(new_results),
            )
            return results

    async def _run_batch(self, batch_number: int) -> BatchOutcome:
        attempts = 2 if self.config.restart_on_captcha else 1
        outcome = BatchOutcome.empty()

        for attempt in range(1, attempts + 1):
            session = await self.browser_factory.open()
            logger.debug("Opened browser for batch", batch_number=batch_number, attempt=attempt)
            try:
                page = await session.new_page()
                outcome = await self.controller.process_batch(
                    self._processor(page),
                    page_inspector=PlaywrightPageInspector(page, self.http_client),
                    response_context=self.control.response_context(self.controller),
                )
            finally:
                await session.close()

            if not outcome.aborted:
                return outcome

            logger.warning(
                "Batch aborted by bot signal, restarting browser",
                batch_number=batch_number,
                attempt=attempt,
                batch_size=outcome.batch_size,
            )

        self.controller.clear()
        await self._park_for_retry(outcome.failed_items, reason="batch_aborted")
        return outcome

    async def _park_for_retry(self, items: List[WorkItem], reason: str) -> int:
        """
        Queue ``items`` as ``lookup`` retries. Returns how many were queued.

        A store error skips that item and is logged; results gathered so far
        must still reach the cache and the caller.
        """
        if self.retry_queue is None:
            logger.error("Unlooked-up numbers dropped with no retry queue", reason=reason, count=len(items))
            return 0

        queued = 0
        for item in items:
            try:
                await self.retry_queue.enqueue(RetryItemType.LOOKUP, item.to_payload())
                queued += 1
            except Exception as e:
                logger.error(
                    "Failed to park number for retry", identifier=item.identifier, reason=reason, error=str(e)
                )
        logger.warning("Numbers parked for retry", reason=reason, queued=queued, count=len(items))
        return queued

    def _processor(self, page: Any):
        processed = 0

        async def process(item: WorkItem) -> Optional[str]:
            nonlocal processed
            if processed:
                await asyncio.sleep(self.config.inter_lookup_delay_ms / 1000)
            processed += 1
            return await self.lookup_single(page, item)

        return process

    # ------------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------------

    async def retry_failed(self) -> List[RetryResult]:
        """
        Replay ready ``lookup`` retries in bursts of at most
        ``controller.capacity`` items.

        Each burst gets a freshly launched browser and the pre-batch
        bot-signal check; bursts are separated by the inter-batch delay. A
        bot signal or a halted campaign ends the pass and leaves the rest of
        the queue untouched.
        """
        if self.retry_queue is None:
            return []

        results: List[RetryResult] = []
        recovered: Dict[str, str] = {}
        burst = 0

        while self.control.should_continue() and await self.retry_queue.get_ready_count() > 0:
            if burst:
                await self.controller.wait_inter_batch_delay()
            burst += 1
            replayed = await self._replay_burst(burst, recovered)
            if not replayed:
                break
            results.extend(replayed)

        self.recovered.update(recovered)
        if self.cache is not None and recovered:
            await self.cache.set_many(recovered)

        if results:
            logger.info("Retry pass complete", processed=len(results), recovered=len(recovered), bursts=burst)
        return results

    async def _replay_burst(self, burst: int, recovered: Dict[str, str]) -> Optional[List[RetryResult]]:
        """Claim and replay up to ``controller.capacity`` retries on one browser."""
        assert self.retry_queue is not None
        limit = self.controller.capacity
        if limit <= 0:
            logger.error("No batch capacity for retries", batch_size=self.controller.size)
            return None

        session: BrowserSession = await self.browser_factory.open()
        try:
            page = await session.new_page()
            proceed = await self.controller.check_bot_signals(
                PlaywrightPageInspector(page, self.http_client),
                self.control.response_context(self.controller),
            )
            if not proceed:
                logger.warning("Retry pass halted by bot signal", burst=burst)
                return None

            process = self._processor(page)

            async def operation(retry_item: RetryItem) -> bool:
                if retry_item.item_type is not RetryItemType.LOOKUP:
                    logger.warning("Skipping non-lookup retry item", item_type=retry_item.item_type.value)
                    return False
                item = WorkItem.from_payload(retry_item.payload)
                provider = await process(item)
                if provider is None:
                    return False
                recovered[item.identifier] = provider
                return True

            replayed: List[RetryResult] = []
            while len(replayed) < limit:
                result = await self.retry_queue.process_retry(operation)
                if result is None:
                    break
                replayed.append(result)

            logger.debug("Retry burst done", burst=burst, replayed=len(replayed), limit=limit)
            return replayed
        finally:
            await session.close()
