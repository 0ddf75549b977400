"""
Test configuration for lookupguard.

Provides isolated retry-queue databases, controllers without the
inter-batch pause and a lookup configuration pointed at the fake site.
"""

# Standard library imports
import logging
from pathlib import Path

# Third-party imports
import pytest
import pytest_asyncio
import structlog

# Local imports
from lookupguard.batching import AdaptiveBatchController
from lookupguard.config.config import LookupConfig
from lookupguard.detection import BotSignalClassifier
from lookupguard.recovery import RetryQueue

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


@pytest.fixture
def restore_logging():
    """Undo ``configure_logging`` side effects for tests that go through the CLI."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    structlog.reset_defaults()
    root.handlers = handlers
    root.setLevel(level)


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def retry_db_path(tmp_path: Path) -> Path:
    return tmp_path / "retry_queue.db"


@pytest_asyncio.fixture
async def retry_queue(retry_db_path: Path):
    """Retry queue with zero backoff so re-enqueued items are ready at once."""
    queue = RetryQueue(session_id="test-session", db_path=retry_db_path, base_delay_ms=0)
    await queue.initialize()
    yield queue
    await queue.close()


@pytest.fixture
def classifier() -> BotSignalClassifier:
    return BotSignalClassifier()


@pytest.fixture
def make_controller():
    """Factory for controllers without the inter-batch pause."""

    def _make(**kwargs) -> AdaptiveBatchController:
        kwargs.setdefault("inter_batch_delay_ms", (0, 0))
        return AdaptiveBatchController(**kwargs)

    return _make


@pytest.fixture
def lookup_config() -> LookupConfig:
    return LookupConfig(
        url_template="https://lookup.example/crdb?msisdn={msisdn}",
        inter_lookup_delay_ms=0,
        navigation_timeout_ms=1000,
        selector_timeout_ms=500,
    )
