"""SQLite storage for lookupguard: table definitions and the provider cache."""

from __future__ import annotations

from .provider_cache import ProviderCache
from .schema import metadata as db_metadata

__all__ = ["ProviderCache", "db_metadata"]
