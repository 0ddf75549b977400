"""
Tests for phone-number handling and the provider lookup service.

The service runs against FakeBrowserFactory, which serves a scripted porting
site and can show a reCAPTCHA on chosen browser launches.
"""

import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest
from structlog.testing import capture_logs

from lookupguard.detection import BotSignalClassifier
from lookupguard.lookup import (
    UNKNOWN_PROVIDER,
    BrowserFactory,
    CampaignControl,
    PlaywrightBrowserFactory,
    ProviderLookupService,
    clean_phone_number,
    parse_provider,
)
from lookupguard.lookup.browser import CHROMIUM_ARGS
from lookupguard.protocols import AlertType, RetryItemType, RetryStatus, WorkItem
from lookupguard.storage import ProviderCache
from tests.helpers import FakeBrowserFactory, FakePage

PROVIDERS = {
    "0821234567": "Vodacom",
    "0831234567": "MTN",
    "0841234567": "Cell",
    "0811234567": "Telkom",
    "0731234567": "MTN",
    "0761234567": "Vodacom",
    "0721234567": "Vodacom",
}


class TestPhoneNumbers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("+27 18 771 2345", "0187712345"),
            ("27821234567", "0821234567"),
            ("082-123-4567", "0821234567"),
            ("(083) 123 4567", "0831234567"),
            ("", ""),
        ],
    )
    def test_clean_phone_number(self, raw, expected):
        assert clean_phone_number(raw) == expected

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("The number 0821234567 is serviced by Vodacom.", "Vodacom"),
            ("SERVICED BY mtn!", "mtn"),
            ("This number is serviced by Cell C", "Cell"),
            ("  serviced by Telkom;  ", "Telkom"),
            ("The number could not be found.", UNKNOWN_PROVIDER),
            ("serviced by ", UNKNOWN_PROVIDER),
            ("", UNKNOWN_PROVIDER),
        ],
    )
    def test_parse_provider(self, text, expected):
        assert parse_provider(text) == expected


class TestBrowserFactory:
    def test_playwright_factory_satisfies_protocol(self):
        factory = PlaywrightBrowserFactory()
        assert isinstance(factory, BrowserFactory)
        assert factory.headless
        assert factory.args == CHROMIUM_ARGS
        assert "--no-sandbox" in factory.args

    def test_fake_factory_satisfies_protocol(self):
        assert isinstance(FakeBrowserFactory({}), BrowserFactory)


@pytest.fixture
def build_service(make_controller, lookup_config):
    def _build(factory, **kwargs):
        controller = make_controller(classifier=BotSignalClassifier(enable_http_detection=False))
        return ProviderLookupService(controller, factory, lookup_config, **kwargs)

    return _build


class TestLookupSingle:
    @pytest.mark.asyncio
    async def test_navigates_to_cleaned_number(self, build_service):
        service = build_service(FakeBrowserFactory(PROVIDERS))
        page = FakePage({"0821234567": "Vodacom"})

        provider = await service.lookup_single(page, WorkItem(identifier="+27 82 123 4567"))

        assert provider == "Vodacom"
        assert page.visited == ["https://lookup.example/crdb?msisdn=0821234567"]

    @pytest.mark.asyncio
    async def test_missing_marker_is_unknown(self, build_service):
        service = build_service(FakeBrowserFactory({}))
        provider = await service.lookup_single(FakePage({}), WorkItem(identifier="0999999999"))
        assert provider == UNKNOWN_PROVIDER

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self, build_service):
        service = build_service(FakeBrowserFactory({}))
        page = FakePage({}, failing=["0821234567"])
        assert await service.lookup_single(page, WorkItem(identifier="0821234567")) is None

    @pytest.mark.asyncio
    async def test_navigation_error_returns_none(self, build_service):
        service = build_service(FakeBrowserFactory({}))
        page = FakePage({})
        page.goto = AsyncMock(side_effect=RuntimeError("net::ERR_CONNECTION_RESET"))
        assert await service.lookup_single(page, WorkItem(identifier="0821234567")) is None


class TestLookupProviders:
    @pytest.mark.asyncio
    async def test_single_batch(self, build_service):
        factory = FakeBrowserFactory(PROVIDERS)
        service = build_service(factory)

        results = await service.lookup_providers(["0821234567", "+27 83 123 4567", "0841234567"])

        assert results == {"0821234567": "Vodacom", "+27 83 123 4567": "MTN", "0841234567": "Cell"}
        assert factory.open_count == 1
        assert all(session.closed for session in factory.sessions)

    @pytest.mark.asyncio
    async def test_one_browser_per_batch_of_five(self, build_service):
        factory = FakeBrowserFactory(PROVIDERS)
        service = build_service(factory)

        results = await service.lookup_providers(list(PROVIDERS))

        assert results == PROVIDERS
        assert factory.open_count == 2
        assert [len(s.page.visited) for s in factory.sessions] == [5, 2]
        assert service.controller.total_batches_processed == 2

    @pytest.mark.asyncio
    async def test_blank_and_duplicate_numbers(self, build_service):
        factory = FakeBrowserFactory(PROVIDERS)
        service = build_service(factory)

        results = await service.lookup_providers(["0821234567", " 0821234567 ", "", "   "])

        assert results == {"0821234567": "Vodacom"}
        assert len(factory.visited) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, build_service):
        factory = FakeBrowserFactory(PROVIDERS)
        assert await build_service(factory).lookup_providers([]) == {}
        assert factory.open_count == 0

    @pytest.mark.asyncio
    async def test_failed_lookup_goes_to_retry_queue(self, build_service, retry_queue):
        factory = FakeBrowserFactory(PROVIDERS, failing=["0831234567"])
        service = build_service(factory, retry_queue=retry_queue)

        results = await service.lookup_providers(["0821234567", "0831234567"])

        assert results == {"0821234567": "Vodacom"}
        queued = await retry_queue.get_all_items()
        assert [(q.item_type, q.payload["identifier"]) for q in queued] == [(RetryItemType.LOOKUP, "0831234567")]

    @pytest.mark.asyncio
    async def test_captcha_restarts_browser_and_resubmits(self, build_service):
        factory = FakeBrowserFactory(PROVIDERS, captcha_opens=[1])
        control = CampaignControl()
        service = build_service(factory, control=control)

        results = await service.lookup_providers(["0821234567", "0831234567"])

        assert results == {"0821234567": "Vodacom", "0831234567": "MTN"}
        assert factory.open_count == 2
        assert factory.sessions[0].page.visited == []
        assert all(session.closed for session in factory.sessions)
        assert control.paused
        assert [alert.type for alert in control.alerts] == [AlertType.CAPTCHA_DETECTED]
        assert service.controller.bot_signal_count == 1

    @pytest.mark.asyncio
    async def test_pause_halts_remaining_batches(self, build_service, retry_queue):
        factory = FakeBrowserFactory(PROVIDERS, captcha_opens=[1])
        service = build_service(factory, retry_queue=retry_queue)
        numbers = list(PROVIDERS)

        results = await service.lookup_providers(numbers)

        assert list(results) == numbers[:5]
        assert factory.open_count == 2
        queued = await retry_queue.get_all_items()
        assert sorted(q.payload["identifier"] for q in queued) == sorted(numbers[5:])
        assert all(q.item_type is RetryItemType.LOOKUP for q in queued)

    @pytest.mark.asyncio
    async def test_stopped_campaign_parks_every_number(self, build_service, retry_queue):
        factory = FakeBrowserFactory(PROVIDERS)
        control = CampaignControl()
        control.stop()
        service = build_service(factory, retry_queue=retry_queue, control=control)

        assert await service.lookup_providers(["0821234567", "0831234567"]) == {}
        assert factory.open_count == 0
        assert await retry_queue.get_queue_size() == 2

    @pytest.mark.asyncio
    async def test_unwritable_retry_queue_keeps_earlier_results(self, build_service, tmp_path):
        broken_queue = MagicMock(session_id="broken")
        broken_queue.enqueue = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
        factory = FakeBrowserFactory(PROVIDERS, captcha_opens=[2, 3])
        numbers = list(PROVIDERS)

        async with ProviderCache(tmp_path / "cache.db") as cache:
            service = build_service(factory, retry_queue=broken_queue, cache=cache)

            results = await service.lookup_providers(numbers)

            assert list(results) == numbers[:5]
            assert await cache.get_many(numbers) == results

        assert factory.open_count == 3
        assert broken_queue.enqueue.await_count == 2
        assert service.controller.is_empty()

    @pytest.mark.asyncio
    async def test_progress_reported_per_batch(self, build_service, tmp_path):
        factory = FakeBrowserFactory(PROVIDERS)
        async with ProviderCache(tmp_path / "cache.db") as cache:
            await cache.set_many({"0821234567": "Vodacom"})
            service = build_service(factory, cache=cache)

            with capture_logs() as logs:
                await service.lookup_providers(list(PROVIDERS))

        progress = [entry for entry in logs if entry["event"] == "lookup_progress"]
        assert [(p["current_batch"], p["completed"], p["percentage"]) for p in progress] == [(1, 6, 86), (2, 7, 100)]
        assert all(p["total"] == 7 and p["from_cache"] == 1 for p in progress)

    @pytest.mark.asyncio
    async def test_repeated_captcha_parks_batch_for_retry(self, build_service, retry_queue):
        factory = FakeBrowserFactory(PROVIDERS, captcha_opens=[1, 2])
        service = build_service(factory, retry_queue=retry_queue)

        results = await service.lookup_providers(["0821234567", "0831234567", "0841234567"])

        assert results == {}
        assert factory.open_count == 2
        assert service.controller.is_empty()
        queued = await retry_queue.get_all_items()
        assert sorted(q.payload["identifier"] for q in queued) == ["0821234567", "0831234567", "0841234567"]

    @pytest.mark.asyncio
    async def test_no_restart_when_disabled(self, make_controller, lookup_config):
        lookup_config.restart_on_captcha = False
        factory = FakeBrowserFactory(PROVIDERS, captcha_opens=[1])
        service = ProviderLookupService(make_controller(classifier=BotSignalClassifier()), factory, lookup_config)

        assert await service.lookup_providers(["0821234567"]) == {}
        assert factory.open_count == 1

    @pytest.mark.asyncio
    async def test_cache_hits_skip_the_site(self, build_service, tmp_path):
        factory = FakeBrowserFactory(PROVIDERS)
        async with ProviderCache(tmp_path / "cache.db") as cache:
            await cache.set_many({"0821234567": "Vodacom"})
            service = build_service(factory, cache=cache)

            results = await service.lookup_providers(["0821234567", "0831234567"])

            assert results == {"0821234567": "Vodacom", "0831234567": "MTN"}
            assert factory.visited == ["https://lookup.example/crdb?msisdn=0831234567"]
            assert await cache.get("0831234567") == "MTN"

    @pytest.mark.asyncio
    async def test_all_cached_opens_no_browser(self, build_service, tmp_path):
        factory = FakeBrowserFactory(PROVIDERS)
        async with ProviderCache(tmp_path / "cache.db") as cache:
            await cache.set_many({"0821234567": "Vodacom"})
            results = await build_service(factory, cache=cache).lookup_providers(["0821234567"])

        assert results == {"0821234567": "Vodacom"}
        assert factory.open_count == 0

    @pytest.mark.asyncio
    async def test_stopped_campaign_does_nothing(self, build_service):
        factory = FakeBrowserFactory(PROVIDERS)
        control = CampaignControl()
        control.stop()

        assert await build_service(factory, control=control).lookup_providers(["0821234567"]) == {}
        assert factory.open_count == 0


class TestRetryFailed:
    @pytest.mark.asyncio
    async def test_recovers_queued_lookups(self, build_service, retry_queue):
        factory = FakeBrowserFactory(PROVIDERS, failing=["0831234567"])
        service = build_service(factory, retry_queue=retry_queue)
        await service.lookup_providers(["0821234567", "0831234567"])

        factory.failing = set()
        results = await service.retry_failed()

        assert [r.status for r in results] == [RetryStatus.SUCCESS]
        assert service.recovered == {"0831234567": "MTN"}
        assert await retry_queue.get_queue_size() == 0

    @pytest.mark.asyncio
    async def test_still_failing_is_requeued(self, build_service, retry_queue):
        factory = FakeBrowserFactory(PROVIDERS, failing=["0831234567"])
        service = build_service(factory, retry_queue=retry_queue)
        await service.lookup_providers(["0831234567"])

        results = await service.retry_failed()

        assert [r.status for r in results] == [RetryStatus.RETRYING, RetryStatus.RETRYING, RetryStatus.FAILED]
        assert service.recovered == {}

    @pytest.mark.asyncio
    async def test_non_lookup_items_are_not_replayed(self, build_service, retry_queue):
        service = build_service(FakeBrowserFactory(PROVIDERS), retry_queue=retry_queue)
        await retry_queue.enqueue(RetryItemType.NAVIGATION, {"url": "https://lookup.example"}, attempts=2)

        results = await service.retry_failed()

        assert [r.status for r in results] == [RetryStatus.FAILED]

    @pytest.mark.asyncio
    async def test_recovered_results_are_cached(self, build_service, retry_queue, tmp_path):
        factory = FakeBrowserFactory(PROVIDERS)
        async with ProviderCache(tmp_path / "cache.db") as cache:
            service = build_service(factory, retry_queue=retry_queue, cache=cache)
            await retry_queue.enqueue(RetryItemType.LOOKUP, WorkItem(identifier="0841234567").to_payload())

            await service.retry_failed()

            assert await cache.get("0841234567") == "Cell"

    @pytest.mark.asyncio
    async def test_without_queue(self, build_service):
        factory = FakeBrowserFactory(PROVIDERS)
        assert await build_service(factory).retry_failed() == []
        assert factory.open_count == 0

    @pytest.mark.asyncio
    async def test_nothing_ready_opens_no_browser(self, build_service, retry_queue):
        factory = FakeBrowserFactory(PROVIDERS)
        assert await build_service(factory, retry_queue=retry_queue).retry_failed() == []
        assert factory.open_count == 0

    @pytest.mark.asyncio
    async def test_replays_in_bursts_of_five_per_browser(self, build_service, retry_queue, monkeypatch):
        factory = FakeBrowserFactory(PROVIDERS)
        service = build_service(factory, retry_queue=retry_queue)
        pause = AsyncMock()
        monkeypatch.setattr(service.controller, "wait_inter_batch_delay", pause)
        numbers = [f"08200000{n:02d}" for n in range(12)]
        for number in numbers:
            await retry_queue.enqueue(RetryItemType.LOOKUP, WorkItem(identifier=number).to_payload())

        results = await service.retry_failed()

        assert [r.status for r in results] == [RetryStatus.SUCCESS] * 12
        assert [len(s.page.visited) for s in factory.sessions] == [5, 5, 2]
        assert all(session.closed for session in factory.sessions)
        assert pause.await_count == 2
        assert set(service.recovered) == set(numbers)

    @pytest.mark.asyncio
    async def test_burst_size_follows_reduced_ceiling(self, make_controller, lookup_config, retry_queue):
        factory = FakeBrowserFactory(PROVIDERS)
        controller = make_controller(min_batch_size=2, classifier=BotSignalClassifier(enable_http_detection=False))
        controller.reduce_to_minimum()
        service = ProviderLookupService(controller, factory, lookup_config, retry_queue=retry_queue)
        for number in list(PROVIDERS)[:5]:
            await retry_queue.enqueue(RetryItemType.LOOKUP, WorkItem(identifier=number).to_payload())

        await service.retry_failed()

        assert [len(s.page.visited) for s in factory.sessions] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_captcha_halts_the_retry_pass(self, build_service, retry_queue):
        factory = FakeBrowserFactory(PROVIDERS, captcha_opens=[2])
        control = CampaignControl()
        service = build_service(factory, retry_queue=retry_queue, control=control)
        for n in range(10):
            await retry_queue.enqueue(RetryItemType.LOOKUP, WorkItem(identifier=f"08200000{n:02d}").to_payload())

        results = await service.retry_failed()

        assert len(results) == 5
        assert factory.open_count == 2
        assert factory.sessions[1].page.visited == []
        assert all(session.closed for session in factory.sessions)
        assert control.paused
        assert await retry_queue.get_queue_size() == 5

    @pytest.mark.asyncio
    async def test_halted_campaign_replays_nothing(self, build_service, retry_queue):
        factory = FakeBrowserFactory(PROVIDERS)
        control = CampaignControl()
        control.pause()
        service = build_service(factory, retry_queue=retry_queue, control=control)
        await retry_queue.enqueue(RetryItemType.LOOKUP, WorkItem(identifier="0821234567").to_payload())

        assert await service.retry_failed() == []
        assert factory.open_count == 0
        assert await retry_queue.get_queue_size() == 1
