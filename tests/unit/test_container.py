"""
Tests for the dependency container and the CLI commands that need no browser.
"""

import asyncio
import json

import pytest
import yaml
from click.testing import CliRunner

from lookupguard.batching import AdaptiveBatchController
from lookupguard.cli import cli
from lookupguard.config import Config
from lookupguard.container import DependencyContainer, LazyInstance
from lookupguard.detection import BotSignalClassifier
from lookupguard.lookup import CampaignControl, ProviderLookupService
from lookupguard.protocols import RetryItemType
from lookupguard.recovery import RetryQueue
from tests.helpers import FakeBrowserFactory


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "lookupguard.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "batch": {"min_batch_size": 2, "inter_batch_delay_ms": [0, 0]},
                "retry": {"db_path": str(tmp_path / "retry.db"), "base_delay_ms": 0},
                "cache": {"db_path": str(tmp_path / "cache.db")},
                "lookup": {"inter_lookup_delay_ms": 0, "url_template": "https://lookup.example/crdb?msisdn={msisdn}"},
                "detection": {"enable_http_detection": False},
            }
        ),
        encoding="utf-8",
    )
    return path


class TestLazyInstance:
    @pytest.mark.asyncio
    async def test_created_once_and_cleaned_up(self, tmp_path):
        lazy = LazyInstance(RetryQueue, "s", db_path=tmp_path / "q.db")

        first = await lazy.get()
        second = await lazy.get()

        assert first is second
        assert first._db is not None
        await lazy.cleanup()
        assert first._db is None


class TestDependencyContainer:
    @pytest.mark.asyncio
    async def test_lifecycle_wires_components(self, config_file):
        container = DependencyContainer(config_file)

        async with container.lifecycle():
            assert container.is_running
            assert container.config.batch.min_batch_size == 2

            classifier = await container.get_classifier()
            assert isinstance(classifier, BotSignalClassifier)
            assert classifier is await container.get_classifier()

            controller = await container.create_controller("campaign-1")
            assert isinstance(controller, AdaptiveBatchController)
            assert controller.classifier is classifier
            assert controller.min_batch_size == 2
            assert controller.retry_queue is await container.get_retry_queue("campaign-1")

            assert container.get_health_status()["retry_sessions"] == ["campaign-1"]

        assert not container.is_running

    @pytest.mark.asyncio
    async def test_retry_queue_per_session(self, config_file):
        async with DependencyContainer(config_file).lifecycle() as container:
            first = await container.get_retry_queue("a")
            second = await container.get_retry_queue("b")

            assert first is not second
            assert (first.session_id, second.session_id) == ("a", "b")
            assert first.db_path == second.db_path

    @pytest.mark.asyncio
    async def test_controller_without_session_has_no_queue(self, config_file):
        async with DependencyContainer(config_file).lifecycle() as container:
            controller = await container.create_controller()
            assert controller.retry_queue is None

    @pytest.mark.asyncio
    async def test_cache_disabled(self, tmp_path):
        config = Config.model_validate(
            {
                "retry": {"db_path": str(tmp_path / "retry.db")},
                "cache": {"enabled": False, "db_path": str(tmp_path / "cache.db")},
            }
        )
        async with DependencyContainer(config=config).lifecycle() as container:
            assert await container.get_cache() is None

    @pytest.mark.asyncio
    async def test_lookup_service_end_to_end(self, config_file):
        factory = FakeBrowserFactory({"0821234567": "Vodacom"})
        control = CampaignControl()

        async with DependencyContainer(config_file).lifecycle() as container:
            service = await container.create_lookup_service("campaign-2", browser_factory=factory, control=control)
            assert isinstance(service, ProviderLookupService)
            assert service.control is control
            assert service.retry_queue is service.controller.retry_queue

            results = await service.lookup_providers(["0821234567"])
            cache = await container.get_cache()
            cached = await cache.get("0821234567")

        assert results == {"0821234567": "Vodacom"}
        assert cached == "Vodacom"

    @pytest.mark.asyncio
    async def test_shutdown_handlers_run(self, config_file):
        calls = []
        container = DependencyContainer(config_file)

        async def async_handler():
            calls.append("async")

        container.add_shutdown_handler(lambda: calls.append("sync"))
        container.add_shutdown_handler(async_handler)
        async with container.lifecycle():
            pass

        assert calls == ["sync", "async"]

    def test_uninitialized_container(self):
        status = DependencyContainer().get_health_status()
        assert status["is_running"] is False
        assert status["config_loaded"] is False


@pytest.mark.usefixtures("restore_logging")
class TestCli:
    def test_check_rate_clean(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "check-rate", "5", "10"])
        assert result.exit_code == 0
        assert "No bot signal" in result.output

    def test_check_rate_signal(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "check-rate", "4", "10"])
        assert result.exit_code == 2
        assert "REDUCE_BATCH_SIZE" in result.output

    def test_check_rate_threshold_override(self, config_file):
        result = CliRunner().invoke(
            cli, ["--config", str(config_file), "check-rate", "8", "10", "--threshold", "0.1"]
        )
        assert result.exit_code == 2

    def test_check_rate_rejects_success_above_total(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "check-rate", "11", "10"])
        assert result.exit_code == 2
        assert "SUCCESS cannot exceed TOTAL" in result.output

    def test_retry_commands(self, config_file, tmp_path):
        async def seed():
            async with RetryQueue("campaign-9", db_path=tmp_path / "retry.db", base_delay_ms=0) as queue:
                await queue.enqueue(RetryItemType.LOOKUP, {"identifier": "0821234567"})
                await queue.enqueue(RetryItemType.NAVIGATION, {"url": "https://lookup.example"}, attempts=1)

        asyncio.run(seed())
        runner = CliRunner()
        base = ["--config", str(config_file), "--session", "campaign-9"]

        stats = runner.invoke(cli, [*base, "retry-stats"])
        assert stats.exit_code == 0
        assert "Total items: 2" in stats.output

        listed = runner.invoke(cli, [*base, "retry-list", "--json"])
        assert listed.exit_code == 0
        rows = json.loads(listed.stdout)
        assert {row["item_type"] for row in rows} == {"lookup", "navigation"}

        cleared = runner.invoke(cli, [*base, "retry-clear", "--yes"])
        assert cleared.exit_code == 0
        assert "Removed 2 retry item(s)" in cleared.output

    def test_lookup_strips_surrounding_whitespace(self, config_file, tmp_path, monkeypatch):
        factory = FakeBrowserFactory({"0821234567": "Vodacom", "0831234567": "MTN"})
        monkeypatch.setattr("lookupguard.lookup.PlaywrightBrowserFactory", lambda headless=True: factory)
        monkeypatch.setattr("lookupguard.cli.configure_logging", lambda config: None)
        output = tmp_path / "results.json"

        result = CliRunner().invoke(
            cli,
            ["--config", str(config_file), "lookup", " 0821234567 ", "0831234567\t", "0821234567", "-o", str(output)],
        )

        assert result.exit_code == 0
        assert "pending retry" not in result.output
        assert json.loads(output.read_text(encoding="utf-8")) == {"0821234567": "Vodacom", "0831234567": "MTN"}
        assert len(factory.visited) == 2
