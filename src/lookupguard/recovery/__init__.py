"""
Durable retry storage for lookupguard.

Failed navigations, lookups and extractions are kept per scraping session in
SQLite and replayed with exponential backoff.
"""

from .retry_queue import RetryQueue

__all__ = ["RetryQueue"]
