#!/usr/bin/env python3
"""
Tests for the HTTP provider adapters.

No network: each client gets a requests.Session whose request() returns
canned responses.

Run: pytest tests/test_sources.py -v
"""

import json
import os
import sys

import pytest
import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from resolution.errors import ProviderError, ProviderErrorKind
from resolution.interfaces import MarketType
from resolution.sources import AEPTexasClient, ERCOTClient, OncorClient, PUCTClient, RateLimiter


def make_response(status=200, payload=None, text=None):
    response = requests.Response()
    response.status_code = status
    if text is not None:
        response._content = text.encode()
    else:
        response._content = json.dumps(payload if payload is not None else {}).encode()
    return response


class CannedSession(requests.Session):
    """Returns queued responses or raises queued exceptions."""

    def __init__(self, *items):
        super().__init__()
        self.items = list(items)
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        item = self.items.pop(0) if len(self.items) > 1 else self.items[0]
        if isinstance(item, Exception):
            raise item
        return item


ERCOT_PAYLOAD = {
    "cityName": "Dallas",
    "county": "Dallas",
    "tdspName": "Oncor Electric Delivery",
    "tdspDuns": "1039940674000",
    "loadZone": "LZ_NORTH",
    "isDeregulated": True,
    "serviceType": "deregulated",
}

TDU_PAYLOAD = {
    "inServiceTerritory": True,
    "city": "Fort Worth",
    "county": "Tarrant",
    "serviceClass": "Residential",
    "rateSchedule": "RS",
    "loadZone": "LZ_NORTH",
}


class TestERCOTClient:

    def test_full_payload(self):
        session = CannedSession(make_response(payload=ERCOT_PAYLOAD))
        client = ERCOTClient(api_key="secret", session=session)
        answer = client.validate("75201")

        assert answer.provider_name == "ercot"
        assert answer.city_slug == "dallas"
        assert answer.city_display_name == "Dallas"
        assert answer.utility_id == "oncor"
        assert answer.market_type == MarketType.DEREGULATED
        # 85 + 5 + 3 + 3 + 2 + 2 capped
        assert answer.raw_confidence == 100

        method, url, kwargs = session.requests[0]
        assert method == "POST"
        assert url.endswith("/np4-745-cd/service-territory-lookup")
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["json"]["zipCode"] == "75201"

    def test_partial_payload_confidence(self):
        payload = {"cityName": "Dallas", "tdspName": "Oncor Electric Delivery"}
        client = ERCOTClient(session=CannedSession(make_response(payload=payload)))
        assert client.validate("75201").raw_confidence == 92

    def test_wrapped_payload(self):
        client = ERCOTClient(session=CannedSession(make_response(payload={"data": ERCOT_PAYLOAD})))
        assert client.validate("75201").city_slug == "dallas"

    def test_regulated_area(self):
        payload = dict(ERCOT_PAYLOAD, isDeregulated=False, serviceType="municipal", tdspName="Austin Energy",
                       tdspDuns=None, cityName="Austin")
        client = ERCOTClient(session=CannedSession(make_response(payload=payload)))
        answer = client.validate("78701")
        assert answer.market_type == MarketType.REGULATED
        assert answer.utility_id == "austin_energy"

    def test_sandbox_url(self):
        client = ERCOTClient(environment="sandbox")
        assert "sandbox" in client.base_url


class TestErrorMapping:

    @pytest.mark.parametrize("response,kind", [
        (make_response(404), ProviderErrorKind.NOT_COVERED),
        (make_response(429), ProviderErrorKind.RATE_LIMITED),
        (make_response(503), ProviderErrorKind.UNREACHABLE),
        (make_response(200, text="<html>oops</html>"), ProviderErrorKind.MALFORMED_RESPONSE),
        (make_response(200, payload=["not", "an", "object"]), ProviderErrorKind.MALFORMED_RESPONSE),
        (make_response(200, payload={"county": "Dallas"}), ProviderErrorKind.MALFORMED_RESPONSE),
        (make_response(200, payload={"covered": False}), ProviderErrorKind.NOT_COVERED),
    ])
    def test_response_mapping(self, response, kind):
        client = PUCTClient(session=CannedSession(response))
        with pytest.raises(ProviderError) as exc:
            client.validate("75201")
        assert exc.value.kind == kind
        assert exc.value.provider == "puct"

    @pytest.mark.parametrize("error,kind", [
        (requests.Timeout("read timed out"), ProviderErrorKind.TIMEOUT),
        (requests.ConnectionError("refused"), ProviderErrorKind.UNREACHABLE),
    ])
    def test_transport_mapping(self, error, kind):
        client = PUCTClient(session=CannedSession(error))
        with pytest.raises(ProviderError) as exc:
            client.validate("75201")
        assert exc.value.kind == kind

    def test_timeout_passed_through_and_clamped(self):
        session = CannedSession(make_response(payload={"cityName": "Dallas", "tdspName": "Oncor"}))
        client = PUCTClient(session=session, timeout=4.0)
        client.validate("75201", timeout=1.5)
        client.validate("75201", timeout=30)
        assert session.requests[0][2]["timeout"] == 1.5
        assert session.requests[1][2]["timeout"] == 4.0


class TestCircuitAndRateLimit:

    def test_circuit_opens_after_failures(self):
        session = CannedSession(make_response(500))
        client = PUCTClient(session=session, failure_threshold=2)
        for _ in range(2):
            with pytest.raises(ProviderError):
                client.validate("75201")
        with pytest.raises(ProviderError) as exc:
            client.validate("75201")
        assert exc.value.kind == ProviderErrorKind.UNREACHABLE
        assert "circuit open" in str(exc.value)
        # The third call never reached the session
        assert len(session.requests) == 2
        assert client.health()["state"] == "open"

    def test_not_covered_does_not_trip_breaker(self):
        client = PUCTClient(session=CannedSession(make_response(404)), failure_threshold=1)
        for _ in range(3):
            with pytest.raises(ProviderError):
                client.validate("75201")
        assert client.health()["state"] == "closed"

    def test_local_rate_limit(self):
        session = CannedSession(make_response(payload={"cityName": "Dallas", "tdspName": "Oncor"}))
        client = PUCTClient(session=session, requests_per_minute=2)
        client.validate("75201")
        client.validate("75202")
        with pytest.raises(ProviderError) as exc:
            client.validate("75203")
        assert exc.value.kind == ProviderErrorKind.RATE_LIMITED
        assert len(session.requests) == 2

    def test_rate_limited_trial_does_not_wedge_breaker(self):
        now = [0.0]
        session = CannedSession(requests.ConnectionError("refused"), make_response(payload=ERCOT_PAYLOAD))
        client = ERCOTClient(session=session, failure_threshold=1, recovery_timeout=30, requests_per_minute=1)
        client.breaker.clock = client.rate_limiter.clock = lambda: now[0]

        with pytest.raises(ProviderError) as exc:
            client.validate("75201")
        assert exc.value.kind == ProviderErrorKind.UNREACHABLE

        # Recovery period over, but the per-minute budget is still spent
        now[0] = 31.0
        with pytest.raises(ProviderError) as exc:
            client.validate("75201")
        assert exc.value.kind == ProviderErrorKind.RATE_LIMITED

        now[0] = 61.0
        assert client.validate("75201").city_slug == "dallas"
        assert client.health()["state"] == "closed"
        assert len(session.requests) == 2

    def test_rate_limiter_window(self):
        now = [0.0]
        limiter = RateLimiter(1, clock=lambda: now[0])
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
        now[0] = 60.0
        assert limiter.try_acquire()
        assert limiter.remaining() == 0


class TestTDUClients:

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            OncorClient(api_key="")

    def test_oncor_full_payload(self):
        session = CannedSession(make_response(payload=TDU_PAYLOAD))
        client = OncorClient(api_key="k", session=session)
        answer = client.validate("76102")

        assert answer.provider_name == "oncor"
        assert answer.city_slug == "fort-worth"
        assert answer.utility_id == "oncor"
        assert answer.utility_name == "Oncor Electric Delivery"
        assert answer.raw_confidence == 100
        assert session.requests[0][2]["headers"]["X-API-Key"] == "k"

    def test_minimal_payload_confidence(self):
        client = OncorClient(api_key="k", session=CannedSession(make_response(payload={"city": "Dallas"})))
        assert client.validate("75201").raw_confidence == 93

    def test_outside_territory(self):
        payload = {"inServiceTerritory": False}
        client = OncorClient(api_key="k", session=CannedSession(make_response(payload=payload)))
        with pytest.raises(ProviderError) as exc:
            client.validate("77002")
        assert exc.value.kind == ProviderErrorKind.NOT_COVERED

    def test_cooperative_is_regulated(self):
        payload = dict(TDU_PAYLOAD, serviceClass="Cooperative")
        client = OncorClient(api_key="k", session=CannedSession(make_response(payload=payload)))
        assert client.validate("76102").market_type == MarketType.REGULATED

    @pytest.mark.parametrize("zip_code,payload,expected", [
        ("78401", {"city": "Corpus Christi"}, "aep_texas_central"),
        ("79601", {"city": "Abilene"}, "aep_texas_north"),
        ("78401", {"city": "Corpus Christi", "division": "North"}, "aep_texas_north"),
    ])
    def test_aep_division(self, zip_code, payload, expected):
        client = AEPTexasClient(api_key="k", session=CannedSession(make_response(payload=payload)))
        assert client.validate(zip_code).utility_id == expected
