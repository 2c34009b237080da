"""
Transmission/distribution utility (TDSP) territory lookups.

One adapter class per utility, sharing the /zip-lookup request shape.
"""

from typing import Any, Dict

import requests

from deregulated_markets import get_tdsp_info
from resolution.errors import ProviderError, ProviderErrorKind
from resolution.interfaces import CandidateAnswer, MarketType
from resolution.sources.base import HTTPProviderClient


class TDUClient(HTTPProviderClient):
    """
    Base TDSP territory API client.

    Expected payload:
        {"inServiceTerritory": true, "city": "Dallas", "county": "Dallas",
         "serviceClass": "Residential", "rateSchedule": "RS", "loadZone": "LZ_NORTH"}
    """

    base_urls: Dict[str, str] = {}
    utility_id = ""
    base_confidence = 90

    def __init__(self, api_key: str, environment: str = "production", **kwargs):
        if not api_key:
            raise ValueError(f"{self.provider_name} requires an API key")
        base_url = kwargs.pop("base_url", None) or self.base_urls.get(environment) or self.base_urls["production"]
        super().__init__(
            base_url,
            api_key=api_key,
            requests_per_minute=kwargs.pop("requests_per_minute", 60),
            **kwargs,
        )

    def _send(self, zip_code: str, timeout: float) -> requests.Response:
        return self.session.post(
            f"{self.base_url}/zip-lookup",
            json={"zipCode": zip_code, "includeServiceInfo": True},
            headers={"Content-Type": "application/json", "X-API-Key": self.api_key},
            timeout=timeout,
        )

    def _parse(self, zip_code: str, payload: Dict[str, Any], elapsed_ms: int) -> CandidateAnswer:
        if payload.get("inServiceTerritory") is False:
            raise ProviderError(self.name, ProviderErrorKind.NOT_COVERED, "outside service territory")

        service_class = payload.get("serviceClass")
        market_type = MarketType.DEREGULATED
        if service_class in ("Municipal", "Cooperative"):
            market_type = MarketType.REGULATED

        # A TDSP only ever answers for itself
        info = get_tdsp_info(self.resolve_utility_id(zip_code, payload))
        return self._build_answer(
            city_name=payload.get("city"),
            utility_name=info["name"],
            utility_duns=info["duns"],
            market_type=market_type,
            confidence=self.calculate_confidence(payload),
            elapsed_ms=elapsed_ms,
        )

    def resolve_utility_id(self, zip_code: str, payload: Dict[str, Any]) -> str:
        return self.utility_id

    def calculate_confidence(self, payload: Dict[str, Any]) -> int:
        """Base 90 plus bonuses for data completeness, capped at 100."""
        confidence = self.base_confidence
        if payload.get("city"):
            confidence += 3
        if payload.get("county"):
            confidence += 2
        if payload.get("serviceClass"):
            confidence += 2
        if payload.get("rateSchedule"):
            confidence += 2
        if payload.get("loadZone"):
            confidence += 1
        return min(confidence, 100)


class OncorClient(TDUClient):
    provider_name = "oncor"
    utility_id = "oncor"
    base_urls = {
        "production": "https://www.oncor.com/api/territory",
        "sandbox": "https://sandbox.oncor.com/api/territory",
    }


class CenterPointClient(TDUClient):
    provider_name = "centerpoint"
    utility_id = "centerpoint"
    base_urls = {
        "production": "https://www.centerpointenergy.com/api/territory",
        "sandbox": "https://sandbox.centerpointenergy.com/api/territory",
    }


class AEPTexasClient(TDUClient):
    """AEP Texas answers for both its Central and North divisions."""

    provider_name = "aep_texas"
    utility_id = "aep_texas_central"
    base_urls = {
        "production": "https://www.aeptexas.com/api/territory",
        "sandbox": "https://sandbox.aeptexas.com/api/territory",
    }

    def resolve_utility_id(self, zip_code: str, payload: Dict[str, Any]) -> str:
        division = (payload.get("division") or "").lower()
        if not division:
            division = "north" if zip_code.startswith("79") else "central"
        if division == "north":
            return "aep_texas_north"
        return "aep_texas_central"


class TNMPClient(TDUClient):
    provider_name = "tnmp"
    utility_id = "tnmp"
    base_urls = {
        "production": "https://www.tnmp.com/api/territory",
        "sandbox": "https://sandbox.tnmp.com/api/territory",
    }
