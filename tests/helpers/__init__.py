"""Test helpers for lookupguard."""

from .fakes import FakeBrowserFactory, FakePage, FakePageInspector
from .metric_delta import labeled_value, metric_delta

__all__ = ["FakeBrowserFactory", "FakePage", "FakePageInspector", "labeled_value", "metric_delta"]
