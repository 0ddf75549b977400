"""
Dependency container for lookupguard components.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar

import structlog

from lookupguard.config import Config

if TYPE_CHECKING:
    from lookupguard.batching import AdaptiveBatchController
    from lookupguard.detection import BotSignalClassifier
    from lookupguard.lookup import BrowserFactory, CampaignControl, ProviderLookupService
    from lookupguard.recovery import RetryQueue
    from lookupguard.storage import ProviderCache

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            self._instance = self._factory(*self._args, **self._kwargs)
            if callable(getattr(self._instance, "initialize", None)):
                await self._instance.initialize()  # type: ignore
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore
        self._instance = None
        self._initialized = False


class DependencyContainer:
    """
    Builds and owns the long-lived components: the classifier, the provider
    cache and one retry queue per session. Controllers and lookup services
    are cheap and handed out fresh on every call.
    """

    def __init__(self, config_path: Optional[Path] = None, config: Optional[Config] = None) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._retry_queues: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()
        self._shutdown_handlers: List[Callable[[], Any]] = []
        self.is_running = False

    async def initialize(self) -> None:
        """Load configuration (unless one was given) and register lazy instances."""
        if self.config is None:
            self.load_config()
        self._create_instances()
        self.is_running = True

        self.logger.info(
            "Dependency container initialized",
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def load_config(self) -> None:
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()

    def _create_instances(self) -> None:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        from lookupguard.detection import BotSignalClassifier
        from lookupguard.storage import ProviderCache

        self._instances = {
            "classifier": LazyInstance(BotSignalClassifier.from_config, self.config.detection),
            "cache": LazyInstance(ProviderCache.from_config, self.config.cache),
        }

    def _require_config(self) -> Config:
        if self.config is None:
            raise RuntimeError("Container is not initialized")
        return self.config

    async def get_classifier(self) -> BotSignalClassifier:
        async with self._instances_lock:
            return await self._instances["classifier"].get()  # type: ignore

    async def get_cache(self) -> Optional[ProviderCache]:
        """The provider cache, or None when caching is disabled."""
        if not self._require_config().cache.enabled:
            return None
        async with self._instances_lock:
            return await self._instances["cache"].get()  # type: ignore

    async def get_retry_queue(self, session_id: str) -> RetryQueue:
        """The retry queue for ``session_id``, opened on first use."""
        from lookupguard.recovery import RetryQueue

        config = self._require_config()
        async with self._instances_lock:
            if session_id not in self._retry_queues:
                self._retry_queues[session_id] = LazyInstance(RetryQueue.from_config, session_id, config.retry)
            return await self._retry_queues[session_id].get()  # type: ignore

    async def create_controller(self, session_id: Optional[str] = None) -> AdaptiveBatchController:
        """A new controller wired to the shared classifier and, if given, the session's retry queue."""
        from lookupguard.batching import AdaptiveBatchController

        config = self._require_config()
        retry_queue = await self.get_retry_queue(session_id) if session_id else None
        return AdaptiveBatchController.from_config(
            config.batch,
            classifier=await self.get_classifier(),
            retry_queue=retry_queue,
        )

    async def create_lookup_service(
        self,
        session_id: str,
        browser_factory: Optional[BrowserFactory] = None,
        control: Optional[CampaignControl] = None,
    ) -> ProviderLookupService:
        from lookupguard.lookup import PlaywrightBrowserFactory, ProviderLookupService

        config = self._require_config()
        controller = await self.create_controller(session_id)
        return ProviderLookupService(
            controller=controller,
            browser_factory=browser_factory or PlaywrightBrowserFactory(headless=config.lookup.headless),
            config=config.lookup,
            cache=await self.get_cache(),
            retry_queue=controller.retry_queue,
            control=control,
        )

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Run shutdown handlers, then close every instance that was opened."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container")

        for handler in self._shutdown_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler()
                else:
                    handler()
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    async def _cleanup_instances(self) -> None:
        for name, instance in [*self._instances.items(), *self._retry_queues.items()]:
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error(f"Error cleaning up {name}", error=str(e))
        self._retry_queues.clear()

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "instances_count": len(self._instances),
            "retry_sessions": sorted(self._retry_queues),
            "config_path": str(self.config_path) if self.config_path else None,
        }
