"""
Adaptive batching for rate-limited scraping.

Batches never hold more than five items and shrink after poor batches.
"""

from .controller import AdaptiveBatchController

__all__ = ["AdaptiveBatchController"]
