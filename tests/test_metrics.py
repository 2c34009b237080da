#!/usr/bin/env python3
"""
Tests for rolling-window service metrics.

Run: pytest tests/test_metrics.py -v
"""

import os
import subprocess
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import NOW, FakeClient, FakeClock, build_engine
from monitoring.metrics import MetricsCollector
from resolution.interfaces import FALLBACK_SOURCE, AuditLogEntry


def entry(when=NOW, error_code=None, cache_hit=False, source="oncor", confidence=95,
          queried=("oncor", "ercot"), errors=None, ms=100):
    return AuditLogEntry(
        zip_code="75201",
        request_id="r",
        sources_queried=queried,
        chosen_source=None if error_code else source,
        cache_hit=cache_hit,
        processing_time_ms=ms,
        validated_at=when,
        error_code=error_code,
        confidence=None if error_code else confidence,
        source_errors=errors or {},
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def collector(clock):
    return MetricsCollector(window_minutes=60, bucket_minutes=5, clock=clock)


class TestAggregation:

    def test_empty(self, collector):
        metrics = collector.get_service_metrics()
        assert metrics.total_requests == 0
        assert metrics.success_rate == 0.0
        assert metrics.source_availability == {}

    def test_rates_and_averages(self, collector):
        collector.record(entry(ms=100, confidence=90))
        collector.record(entry(ms=50, cache_hit=True, queried=(), confidence=100))
        collector.record(entry(ms=30, error_code="NOT_FOUND", errors={"oncor": "timeout", "ercot": "timeout"}))
        collector.record(entry(ms=20, source=FALLBACK_SOURCE, confidence=75,
                               errors={"oncor": "unreachable", "ercot": "not_covered"}))

        metrics = collector.get_service_metrics()
        assert metrics.total_requests == 4
        assert metrics.success_rate == 0.75
        assert metrics.cache_hit_rate == 0.25
        assert metrics.average_latency_ms == 50.0
        assert metrics.average_confidence == pytest.approx(88.33, abs=0.01)
        assert metrics.fallback_count == 1
        assert metrics.error_counts == {"NOT_FOUND": 1}

    def test_source_availability_ignores_not_covered(self, collector):
        collector.record(entry())
        collector.record(entry(errors={"oncor": "timeout", "ercot": "not_covered"}))
        collector.record(entry(errors={"ercot": "rate_limited"}))

        availability = collector.get_service_metrics().source_availability
        # oncor answered 2 of 3; ercot answered once and was never down
        assert availability["oncor"] == pytest.approx(0.6667, abs=1e-4)
        assert availability["ercot"] == 1.0

    def test_to_dict_keys(self, collector):
        collector.record(entry())
        data = collector.get_service_metrics().to_dict()
        assert set(data) == {
            "windowMinutes", "totalRequests", "successRate", "cacheHitRate", "averageLatencyMs",
            "fallbackCount", "errorCounts", "sourceAvailability", "averageConfidence",
        }


class TestWindow:

    def test_old_buckets_dropped(self, collector, clock):
        collector.record(entry(when=NOW))
        clock.advance(30 * 60)
        collector.record(entry(when=clock.now))
        assert collector.get_service_metrics().total_requests == 2

        clock.advance(40 * 60)
        assert collector.get_service_metrics().total_requests == 1

        clock.advance(60 * 60)
        assert collector.get_service_metrics().total_requests == 0

    def test_entries_share_bucket(self, collector):
        collector.record(entry(when=NOW))
        collector.record(entry(when=NOW + timedelta(minutes=4)))
        assert len(collector._buckets) == 1

    def test_reset(self, collector):
        collector.record(entry())
        collector.reset()
        assert collector.get_service_metrics().total_requests == 0


class TestImportOrder:

    ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    @pytest.mark.parametrize("statement", [
        "import monitoring.metrics",
        "import monitoring",
        "import resolution.engine",
        "from resolution import TerritoryResolutionEngine",
    ])
    def test_packages_import_in_any_order(self, statement):
        completed = subprocess.run(
            [sys.executable, "-c", statement],
            cwd=self.ROOT,
            capture_output=True,
            text=True,
        )
        assert completed.returncode == 0, completed.stderr

    def test_engine_builds_default_collector(self, store):
        engine = build_engine(store, [FakeClient("ercot")])
        assert isinstance(engine.metrics, MetricsCollector)
