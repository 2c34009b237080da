"""
Rolling-window service metrics computed from resolution audit entries.

Every audit entry the engine writes is also fed to a MetricsCollector,
which keeps 5-minute buckets covering the configured window:
- Success rate and cache-hit rate
- Average latency and confidence
- Fallback usage and error counts by code
- Per-provider availability

Usage:
    from monitoring.metrics import MetricsCollector

    collector = MetricsCollector(window_minutes=60)
    collector.record(audit_entry)
    metrics = collector.get_service_metrics()
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from resolution.errors import ProviderErrorKind
from resolution.interfaces import FALLBACK_SOURCE, AuditLogEntry, Clock, utc_now


@dataclass
class MetricsBucket:
    """Holds metrics for a time window."""
    window_start: datetime
    window_end: datetime

    # Counts
    total_requests: int = 0
    successful_requests: int = 0
    cache_hits: int = 0
    fallback_count: int = 0

    # Latency (in ms)
    latency_total_ms: int = 0

    # Confidence scores of successful answers
    confidence_total: int = 0
    confidence_count: int = 0

    # Errors by code
    error_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    # Provider outcomes: name -> [answered, failed]
    provider_outcomes: Dict[str, list] = field(default_factory=lambda: defaultdict(lambda: [0, 0]))


@dataclass
class ServiceMetrics:
    window_minutes: int
    total_requests: int
    success_rate: float
    cache_hit_rate: float
    average_latency_ms: float
    fallback_count: int
    error_counts: Dict[str, int]
    source_availability: Dict[str, float]
    average_confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "windowMinutes": self.window_minutes,
            "totalRequests": self.total_requests,
            "successRate": self.success_rate,
            "cacheHitRate": self.cache_hit_rate,
            "averageLatencyMs": self.average_latency_ms,
            "fallbackCount": self.fallback_count,
            "errorCounts": dict(self.error_counts),
            "sourceAvailability": dict(self.source_availability),
            "averageConfidence": self.average_confidence,
        }


class MetricsCollector:
    """
    Aggregates audit entries into time buckets.

    Thread-safe. One instance per engine; nothing is shared between
    instances.
    """

    def __init__(self, window_minutes: int = 60, bucket_minutes: int = 5, clock: Clock = utc_now):
        self.window_minutes = window_minutes
        self.bucket_minutes = bucket_minutes
        self.clock = clock
        self._metrics_lock = threading.Lock()
        self._buckets: Dict[datetime, MetricsBucket] = {}

    def _bucket_start(self, when: datetime) -> datetime:
        minute = when.minute - (when.minute % self.bucket_minutes)
        return when.replace(minute=minute, second=0, microsecond=0)

    def _bucket_for(self, when: datetime) -> MetricsBucket:
        start = self._bucket_start(when)
        bucket = self._buckets.get(start)
        if bucket is None:
            bucket = MetricsBucket(window_start=start, window_end=start + timedelta(minutes=self.bucket_minutes))
            self._buckets[start] = bucket
        return bucket

    def _prune(self, now: datetime):
        cutoff = now - timedelta(minutes=self.window_minutes)
        for start in [s for s, b in self._buckets.items() if b.window_end <= cutoff]:
            del self._buckets[start]

    def record(self, entry: AuditLogEntry):
        """
        Track one resolution attempt.

        Args:
            entry: The audit entry written for the attempt
        """
        with self._metrics_lock:
            self._prune(self.clock())
            bucket = self._bucket_for(entry.validated_at)

            bucket.total_requests += 1
            bucket.latency_total_ms += entry.processing_time_ms
            if entry.cache_hit:
                bucket.cache_hits += 1

            if entry.succeeded:
                bucket.successful_requests += 1
                if entry.confidence is not None:
                    bucket.confidence_total += entry.confidence
                    bucket.confidence_count += 1
                if entry.chosen_source == FALLBACK_SOURCE:
                    bucket.fallback_count += 1
            else:
                bucket.error_counts[entry.error_code] += 1

            for provider in entry.sources_queried:
                kind = entry.source_errors.get(provider)
                if kind is None:
                    bucket.provider_outcomes[provider][0] += 1
                elif ProviderErrorKind(kind).counts_against_availability:
                    bucket.provider_outcomes[provider][1] += 1

    def get_service_metrics(self) -> ServiceMetrics:
        """Aggregate all buckets inside the window."""
        with self._metrics_lock:
            self._prune(self.clock())
            buckets = list(self._buckets.values())

            total = sum(b.total_requests for b in buckets)
            successes = sum(b.successful_requests for b in buckets)
            cache_hits = sum(b.cache_hits for b in buckets)
            latency = sum(b.latency_total_ms for b in buckets)
            confidence_total = sum(b.confidence_total for b in buckets)
            confidence_count = sum(b.confidence_count for b in buckets)

            errors: Dict[str, int] = defaultdict(int)
            outcomes: Dict[str, list] = defaultdict(lambda: [0, 0])
            for b in buckets:
                for code, count in b.error_counts.items():
                    errors[code] += count
                for provider, (answered, failed) in b.provider_outcomes.items():
                    outcomes[provider][0] += answered
                    outcomes[provider][1] += failed

            availability = {
                provider: round(answered / (answered + failed), 4) if answered + failed else 1.0
                for provider, (answered, failed) in outcomes.items()
            }

            return ServiceMetrics(
                window_minutes=self.window_minutes,
                total_requests=total,
                success_rate=round(successes / total, 4) if total else 0.0,
                cache_hit_rate=round(cache_hits / total, 4) if total else 0.0,
                average_latency_ms=round(latency / total, 2) if total else 0.0,
                fallback_count=sum(b.fallback_count for b in buckets),
                error_counts=dict(errors),
                source_availability=availability,
                average_confidence=round(confidence_total / confidence_count, 2) if confidence_count else 0.0,
            )

    def reset(self):
        with self._metrics_lock:
            self._buckets.clear()
