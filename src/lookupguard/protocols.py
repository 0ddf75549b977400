"""
Core contracts and dataclasses for lookupguard.

This module defines the data passed between the batch controller, the
bot-signal classifier and the retry queue, together with the capability
protocols the classifier consumes from a browser session.

Architecture Overview:
- Adaptive batch controller: bounded, shrink-only batches (never above 5)
- Bot-signal classifier: page text, DOM selectors, HTTP 429, failure rate
- Retry queue: durable, per-session, exponential backoff
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, runtime_checkable

# ============================================================================
# Enums and Constants
# ============================================================================

ABSOLUTE_MAX_BATCH_SIZE = 5


class ResponseAction(Enum):
    """Corrective actions recommended when a bot signal is detected."""

    PAUSE_AND_ALERT = "PAUSE_AND_ALERT"
    REDUCE_BATCH_SIZE = "REDUCE_BATCH_SIZE"
    INCREASE_DELAY = "INCREASE_DELAY"
    STOP_SESSION = "STOP_SESSION"


class DetectionMethod(Enum):
    """How a bot signal was found."""

    HTML_CONTENT = "html_content"
    SELECTOR = "selector"
    HTTP_429 = "http_429"
    FAILED_LOOKUP_RATE = "failed_lookup_rate"


class AlertType(Enum):
    CAPTCHA_DETECTED = "captcha_detected"
    BATCH_SIZE_REDUCED = "batch_size_reduced"
    DELAY_INCREASED = "delay_increased"
    SESSION_STOPPED = "session_stopped"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RetryItemType(Enum):
    """Kinds of operations that can be queued for retry."""

    NAVIGATION = "navigation"
    LOOKUP = "lookup"
    EXTRACTION = "extraction"


class RetryStatus(Enum):
    SUCCESS = "success"
    RETRYING = "retrying"
    FAILED = "failed"


# ============================================================================
# Exceptions
# ============================================================================


class BatchCeilingViolation(ValueError):
    """Raised when a batch ceiling above the absolute maximum is requested or observed."""


class BatchCapacityError(RuntimeError):
    """Raised when adding to a batch that is already at capacity."""


# ============================================================================
# Core Dataclasses
# ============================================================================


@dataclass(frozen=True)
class WorkItem:
    """A single unit of batch work, e.g. one phone number to look up."""

    identifier: str
    correlation_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """Convert to a JSON-serialisable dictionary for the retry store."""
        return {
            "identifier": self.identifier,
            "correlation_id": self.correlation_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> WorkItem:
        return cls(
            identifier=str(data["identifier"]),
            correlation_id=data.get("correlation_id"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class BatchOutcome:
    """Result of one processed (or aborted) batch."""

    successful: int = 0
    failed: int = 0
    results: Dict[str, str] = field(default_factory=dict)
    batch_size: int = 0
    processing_time_ms: float = 0.0
    aborted: bool = False
    failed_items: List[WorkItem] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.batch_size == 0:
            return 0.0
        return self.successful / self.batch_size

    @classmethod
    def empty(cls) -> BatchOutcome:
        return cls()


@dataclass
class DetectionResult:
    """Verdict of a bot-signal check."""

    detected: bool
    method: Optional[DetectionMethod] = None
    recommended_action: Optional[ResponseAction] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def clean(cls, **details: Any) -> DetectionResult:
        """A "not detected" result, optionally carrying diagnostics."""
        return cls(detected=False, details=dict(details))


@dataclass
class Alert:
    """Operator-facing notification emitted by a response action."""

    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RetryItem:
    """A durable retry-queue row."""

    id: str
    item_type: RetryItemType
    payload: Dict[str, Any]
    attempts: int
    next_retry_time: datetime


@dataclass
class RetryResult:
    """Outcome of processing one retry item."""

    status: RetryStatus
    item: RetryItem
    final_attempts: int


# ============================================================================
# Capability Protocols
# ============================================================================


@runtime_checkable
class PageInspector(Protocol):
    """Read-only view of a live browser page used for bot-signal detection."""

    def current_url(self) -> str:
        """URL the page is currently showing."""
        ...

    async def full_text_content(self) -> str:
        """Full page content (HTML or text)."""
        ...

    async def element_exists(self, selector: str) -> bool:
        """Whether at least one element matches the CSS selector."""
        ...

    async def reissue_and_get_status(self, url: str, timeout_ms: int) -> Optional[int]:
        """Request ``url`` again and return the HTTP status, or None if unavailable."""
        ...


Processor = Callable[[WorkItem], Awaitable[Optional[str]]]
RetryOperation = Callable[[RetryItem], Awaitable[Any]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
