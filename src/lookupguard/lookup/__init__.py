"""
Provider lookup against the number-porting site.

The orchestration service drives the adaptive batch controller with one
browser per batch, restarts the browser when a batch is aborted on a CAPTCHA
signal and replays failed lookups from the retry queue.
"""

from .browser import BrowserFactory, BrowserSession, PlaywrightBrowserFactory
from .control import CampaignControl
from .phone import UNKNOWN_PROVIDER, clean_phone_number, parse_provider
from .service import ProviderLookupService

__all__ = [
    "BrowserFactory",
    "BrowserSession",
    "CampaignControl",
    "PlaywrightBrowserFactory",
    "ProviderLookupService",
    "UNKNOWN_PROVIDER",
    "clean_phone_number",
    "parse_provider",
]
