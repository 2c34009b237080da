"""
Shared fixtures for the territory resolution tests.

Provider clients are faked in-process; the store is a real SQLite file
under tmp_path.
"""

import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from resolution import (
    CandidateAnswer,
    EngineConfig,
    MarketType,
    ProviderClient,
    ProviderError,
    ProviderErrorKind,
    ResolutionResult,
    SQLiteTerritoryStore,
    TerritoryResolutionEngine,
)
from resolution.sources import ClientFactory


NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class FakeClient(ProviderClient):
    """
    Provider double.

    Answers with a fixed candidate, raises a ProviderError kind, or sleeps
    before answering. Counts calls.
    """

    def __init__(self, name, city="Dallas", utility_id="oncor", utility_name="Oncor Electric Delivery",
                 confidence=90, error=None, delay=0.0, market_type=MarketType.DEREGULATED, timeout=4.0):
        self._name = name
        self.city = city
        self.utility_id = utility_id
        self.utility_name = utility_name
        self.confidence = confidence
        self.error = error
        self.delay = delay
        self.market_type = market_type
        self._timeout = timeout
        self.calls = 0
        self._lock = threading.Lock()

    @property
    def name(self):
        return self._name

    @property
    def timeout(self):
        return self._timeout

    def validate(self, zip_code, timeout=None):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise ProviderError(self.name, self.error, "fake failure")
        slug = self.city.lower().replace(" ", "-")
        return CandidateAnswer(
            provider_name=self.name,
            city_slug=slug,
            city_display_name=self.city,
            utility_id=self.utility_id,
            utility_name=self.utility_name,
            market_type=self.market_type,
            raw_confidence=self.confidence,
        )


def make_result(zip_code, confidence=95, city_slug="dallas", utility_id="oncor",
                resolved_at=NOW, ttl_seconds=30 * 24 * 3600, data_source="ercot"):
    return ResolutionResult(
        zip_code=zip_code,
        city_slug=city_slug,
        city_display_name=city_slug.replace("-", " ").title(),
        utility_id=utility_id,
        utility_name="Oncor Electric Delivery" if utility_id == "oncor" else utility_id,
        market_type=MarketType.DEREGULATED,
        confidence=confidence,
        data_source=data_source,
        resolved_at=resolved_at,
        next_revalidation_at=resolved_at + timedelta(seconds=ttl_seconds),
    )


def build_engine(store, clients, clock=None, config=None, **kwargs):
    """Engine over fake clients, with retries never actually sleeping."""
    config = config or EngineConfig(bulk_batch_delay=0.0)
    factory = ClientFactory(config, clients={c.name: c for c in clients})
    return TerritoryResolutionEngine(
        config,
        store=store,
        factory=factory,
        clock=clock or FakeClock(),
        sleep=lambda seconds: None,
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = SQLiteTerritoryStore(str(tmp_path / "territory.db"))
    yield s
    s.close()


@pytest.fixture
def agreeing_clients():
    return [
        FakeClient("oncor", confidence=90),
        FakeClient("ercot", confidence=85),
        FakeClient("puct", confidence=80),
    ]


@pytest.fixture
def failing_clients():
    return [
        FakeClient("oncor", error=ProviderErrorKind.UNREACHABLE),
        FakeClient("ercot", error=ProviderErrorKind.TIMEOUT),
        FakeClient("puct", error=ProviderErrorKind.NOT_COVERED),
    ]
