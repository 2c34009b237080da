"""
Core interfaces for the territory resolution engine.

Defines the data model, the provider client base class and the request
outcome types shared by all resolution components.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


class MarketType(Enum):
    """Retail market structure for a territory."""
    DEREGULATED = "deregulated"
    REGULATED = "regulated"


class ResolutionState(Enum):
    """Lifecycle of one resolution request. DONE and FAILED are terminal."""
    RECEIVED = "received"
    CACHE_CHECK = "cache_check"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    QUERYING = "querying"
    RESOLVING = "resolving"
    FALLBACK = "fallback"
    DONE = "done"
    FAILED = "failed"


# Data source label for answers substituted from a neighboring ZIP
FALLBACK_SOURCE = "fallback_nearest"


@dataclass(frozen=True)
class CandidateAnswer:
    """
    One provider's opinion about a postal code.

    Produced per call and only persisted inside the audit log.
    """
    provider_name: str
    city_slug: str
    city_display_name: str
    utility_id: str
    utility_name: str
    market_type: MarketType
    raw_confidence: int  # 0-100
    response_time_ms: int = 0

    @property
    def group_key(self) -> Tuple[str, str]:
        return (self.city_slug, self.utility_id)


@dataclass(frozen=True)
class ConflictRecord:
    """A candidate group that lost conflict resolution."""
    provider_name: str
    city_slug: str
    utility_id: str
    confidence: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "providerName": self.provider_name,
            "citySlug": self.city_slug,
            "utilityId": self.utility_id,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConflictRecord":
        return cls(
            provider_name=data["providerName"],
            city_slug=data["citySlug"],
            utility_id=data["utilityId"],
            confidence=int(data["confidence"]),
        )


@dataclass(frozen=True)
class ResolutionResult:
    """
    The canonical, persisted answer for a postal code.

    Upserted by zip_code on every successful resolution. Logically expires
    once now > next_revalidation_at but stays usable as a fallback neighbor.
    """
    zip_code: str
    city_slug: str
    city_display_name: str
    utility_id: str
    utility_name: str
    market_type: MarketType
    confidence: int  # 0-100
    data_source: str
    resolved_at: datetime
    next_revalidation_at: datetime
    conflicts: Tuple[ConflictRecord, ...] = ()

    def is_fresh(self, now: datetime) -> bool:
        return now <= self.next_revalidation_at

    @property
    def redirect_path(self) -> str:
        return f"/electricity-plans/{self.city_slug}/"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "zipCode": self.zip_code,
            "citySlug": self.city_slug,
            "cityDisplayName": self.city_display_name,
            "utilityId": self.utility_id,
            "utilityName": self.utility_name,
            "marketType": self.market_type.value,
            "confidence": self.confidence,
            "dataSource": self.data_source,
            "resolvedAt": _iso(self.resolved_at),
            "nextRevalidationAt": _iso(self.next_revalidation_at),
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


@dataclass(frozen=True)
class AuditLogEntry:
    """
    One row per resolution attempt, success or failure. Append-only.

    source_errors maps each provider that failed to its ProviderErrorKind
    value; providers in sources_queried without an entry answered.
    """
    zip_code: str
    request_id: str
    sources_queried: Tuple[str, ...]
    chosen_source: Optional[str]
    cache_hit: bool
    processing_time_ms: int
    validated_at: datetime
    error_code: Optional[str] = None
    confidence: Optional[int] = None
    source_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.error_code is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zipCode": self.zip_code,
            "requestId": self.request_id,
            "sourcesQueried": list(self.sources_queried),
            "chosenSource": self.chosen_source,
            "cacheHit": self.cache_hit,
            "processingTimeMs": self.processing_time_ms,
            "errorCode": self.error_code,
            "confidence": self.confidence,
            "sourceErrors": dict(self.source_errors),
            "validatedAt": _iso(self.validated_at),
        }


@dataclass
class ResolveOptions:
    """
    Per-request options.

    deadline is in seconds from the start of the request; None uses the
    engine's configured request deadline.
    """
    force_refresh: bool = False
    deadline: Optional[float] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class ResolutionSuccess:
    result: ResolutionResult
    cached: bool
    processing_time_ms: int

    @property
    def ok(self) -> bool:
        return True

    @property
    def zip_code(self) -> str:
        return self.result.zip_code

    def to_dict(self) -> Dict[str, Any]:
        data = self.result.to_dict()
        data.update({
            "success": True,
            "redirectPath": self.result.redirect_path,
            "cached": self.cached,
            "processingTimeMs": self.processing_time_ms,
        })
        return data


@dataclass(frozen=True)
class ResolutionFailure:
    """
    A request that produced no answer.

    error_code is one of INVALID_ZIP_FORMAT, NOT_IN_REGION, NOT_FOUND,
    ROUTING_ERROR, CANCELLED.
    """
    zip_code: str
    error_code: str
    message: str
    processing_time_ms: int = 0
    suggestions: Tuple[str, ...] = ()
    classification: Optional[str] = None

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.error_code, "message": self.message}
        if self.suggestions:
            error["suggestions"] = list(self.suggestions)
        if self.classification:
            error["classification"] = self.classification
        return {
            "success": False,
            "zipCode": self.zip_code,
            "error": error,
            "processingTimeMs": self.processing_time_ms,
        }


ResolutionOutcome = Union[ResolutionSuccess, ResolutionFailure]


@dataclass
class BulkSummary:
    total_requested: int
    success_count: int
    failure_count: int
    average_confidence: float
    total_processing_time_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRequested": self.total_requested,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "averageConfidence": self.average_confidence,
            "totalProcessingTimeMs": self.total_processing_time_ms,
        }


@dataclass
class BulkResult:
    """Per-item outcomes in input order plus a summary."""
    results: List[ResolutionOutcome]
    summary: BulkSummary
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary.to_dict(),
            "cancelled": self.cancelled,
        }


class ProviderClient(ABC):
    """
    Abstract base class for all territory data providers.

    Each external authority (grid operator, regulator, TDSP) implements
    this interface. Implementations must not retry internally.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this provider (e.g., 'ercot', 'oncor')."""
        pass

    @property
    def timeout(self) -> float:
        """Maximum time to wait for this provider (seconds)."""
        return 4.0

    @abstractmethod
    def validate(self, zip_code: str, timeout: Optional[float] = None) -> CandidateAnswer:
        """
        Ask this provider which territory serves a ZIP code.

        Args:
            zip_code: Validated 5-digit ZIP
            timeout: Seconds allowed for this call; defaults to self.timeout

        Returns:
            CandidateAnswer

        Raises:
            ProviderError: TIMEOUT, UNREACHABLE, NOT_COVERED,
                MALFORMED_RESPONSE or RATE_LIMITED
        """
        pass

    def health(self) -> Dict[str, Any]:
        """Report provider status for the health endpoint."""
        return {"name": self.name, "state": "closed"}

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name='{self.name}'>"
