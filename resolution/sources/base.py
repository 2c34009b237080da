"""
Shared HTTP plumbing for provider adapters.

Each adapter owns one requests.Session, a per-minute rate limit and a
circuit breaker. Transport and HTTP failures are mapped onto
ProviderErrorKind here so adapters only deal with payloads.
"""

import sys
import os
import threading
import time
from collections import deque
from typing import Any, Dict, Optional

import requests

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from deregulated_markets import (
    city_display_name,
    find_tdsp_by_duns,
    find_tdsp_by_name,
    get_tdsp_info,
    slugify_city,
)
from logging_config import get_logger
from resolution.errors import ProviderError, ProviderErrorKind
from resolution.interfaces import CandidateAnswer, MarketType, ProviderClient
from resolution.retry import CircuitBreaker

logger = get_logger(__name__)

USER_AGENT = "territory-resolution/1.0"


class RateLimiter:
    """Sliding-window limit on calls per minute."""

    def __init__(self, requests_per_minute: int, clock=time.monotonic):
        self.requests_per_minute = requests_per_minute
        self.clock = clock
        self._calls = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        now = self.clock()
        with self._lock:
            while self._calls and now - self._calls[0] >= 60:
                self._calls.popleft()
            if len(self._calls) >= self.requests_per_minute:
                return False
            self._calls.append(now)
            return True

    def remaining(self) -> int:
        now = self.clock()
        with self._lock:
            recent = sum(1 for t in self._calls if now - t < 60)
        return max(0, self.requests_per_minute - recent)


class HTTPProviderClient(ProviderClient):
    """
    Base class for JSON-over-HTTP providers.

    Subclasses set provider_name and implement _send() and _parse().
    """

    provider_name = "http"
    base_confidence = 80

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 4.0,
        requests_per_minute: int = 60,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        })
        self.rate_limiter = RateLimiter(requests_per_minute)
        self.breaker = CircuitBreaker(failure_threshold=failure_threshold, recovery_timeout=recovery_timeout)

    @property
    def name(self) -> str:
        return self.provider_name

    @property
    def timeout(self) -> float:
        return self._timeout

    def validate(self, zip_code: str, timeout: Optional[float] = None) -> CandidateAnswer:
        call_timeout = self._timeout if timeout is None else min(timeout, self._timeout)

        if not self.breaker.allow_request():
            raise ProviderError(
                self.name, ProviderErrorKind.UNREACHABLE,
                f"circuit open, retry in {self.breaker.time_until_reset():.0f}s",
            )
        if not self.rate_limiter.try_acquire():
            self.breaker.release_trial()
            raise ProviderError(self.name, ProviderErrorKind.RATE_LIMITED, "local per-minute budget exhausted")

        start = time.monotonic()
        try:
            response = self._send(zip_code, call_timeout)
        except requests.Timeout as e:
            self.breaker.record_failure()
            raise ProviderError(self.name, ProviderErrorKind.TIMEOUT, str(e)) from e
        except requests.RequestException as e:
            self.breaker.record_failure()
            raise ProviderError(self.name, ProviderErrorKind.UNREACHABLE, str(e)) from e
        elapsed_ms = int((time.monotonic() - start) * 1000)

        if response.status_code == 404:
            self.breaker.record_success()
            raise ProviderError(self.name, ProviderErrorKind.NOT_COVERED, "HTTP 404")
        if response.status_code == 429:
            self.breaker.record_success()
            raise ProviderError(self.name, ProviderErrorKind.RATE_LIMITED, "HTTP 429")
        if response.status_code >= 400:
            self.breaker.record_failure()
            raise ProviderError(self.name, ProviderErrorKind.UNREACHABLE, f"HTTP {response.status_code}")
        self.breaker.record_success()

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(self.name, ProviderErrorKind.MALFORMED_RESPONSE, "invalid JSON") from e
        if not isinstance(payload, dict):
            raise ProviderError(self.name, ProviderErrorKind.MALFORMED_RESPONSE, "expected a JSON object")

        # Some providers wrap the answer in {"data": {...}}
        if isinstance(payload.get("data"), dict):
            payload = payload["data"]

        if payload.get("covered") is False:
            raise ProviderError(self.name, ProviderErrorKind.NOT_COVERED, "provider reports no coverage")

        try:
            answer = self._parse(zip_code, payload, elapsed_ms)
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(self.name, ProviderErrorKind.MALFORMED_RESPONSE, str(e)) from e

        logger.debug(
            f"{self.name} answered {answer.city_slug}/{answer.utility_id} ({answer.raw_confidence})",
            extra={"zip_code": zip_code, "source": self.name, "duration_ms": elapsed_ms},
        )
        return answer

    def _send(self, zip_code: str, timeout: float) -> requests.Response:
        """Issue the HTTP request. Subclasses override."""
        raise NotImplementedError

    def _parse(self, zip_code: str, payload: Dict[str, Any], elapsed_ms: int) -> CandidateAnswer:
        """Turn a JSON payload into a CandidateAnswer. Subclasses override."""
        raise NotImplementedError

    def _build_answer(
        self,
        city_name: Optional[str],
        utility_name: Optional[str],
        utility_duns: Optional[str],
        market_type: MarketType,
        confidence: int,
        elapsed_ms: int,
    ) -> CandidateAnswer:
        """Normalize city and utility identifiers shared by all adapters."""
        city_slug = slugify_city(city_name or "")
        if not city_slug:
            raise ProviderError(self.name, ProviderErrorKind.MALFORMED_RESPONSE, "missing city")
        if not utility_name and not utility_duns:
            raise ProviderError(self.name, ProviderErrorKind.MALFORMED_RESPONSE, "missing utility")

        utility_id = find_tdsp_by_duns(utility_duns) or find_tdsp_by_name(utility_name)
        if utility_id is None:
            utility_id = slugify_city(utility_name or str(utility_duns)).replace("-", "_")

        known = get_tdsp_info(utility_id)
        if known:
            utility_name = known["name"]

        return CandidateAnswer(
            provider_name=self.name,
            city_slug=city_slug,
            city_display_name=city_display_name(city_slug),
            utility_id=utility_id,
            utility_name=utility_name or utility_id,
            market_type=market_type,
            raw_confidence=min(100, max(0, int(confidence))),
            response_time_ms=elapsed_ms,
        )

    def health(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.breaker.state,
            "failure_count": self.breaker.failure_count,
            "rate_limit_remaining": self.rate_limiter.remaining(),
            "endpoint": self.base_url,
        }
