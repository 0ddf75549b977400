"""
Bot-signal detection and response actions.

The classifier inspects a page (text, DOM selectors, HTTP status) or a
success/total pair and recommends one of four corrective actions; the
response handlers carry those actions out through optional callbacks.
"""

from .classifier import BotSignalClassifier
from .inspectors import PlaywrightPageInspector
from .responses import ResponseContext

__all__ = [
    "BotSignalClassifier",
    "PlaywrightPageInspector",
    "ResponseContext",
]
