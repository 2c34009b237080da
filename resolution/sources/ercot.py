"""
ERCOT grid operator service territory lookup.
"""

from typing import Any, Dict, Optional

import requests

from resolution.interfaces import CandidateAnswer, MarketType
from resolution.sources.base import HTTPProviderClient


ERCOT_BASE_URLS = {
    "production": "https://www.ercot.com/api/1/services/read",
    "sandbox": "https://sandbox.ercot.com/api/1/services/read",
}


class ERCOTClient(HTTPProviderClient):
    """
    ERCOT MIS service territory registry.

    Expected payload:
        {"cityName": "Dallas", "county": "Dallas", "tdspName": "Oncor Electric Delivery",
         "tdspDuns": "1039940674000", "loadZone": "LZ_NORTH", "isDeregulated": true,
         "serviceType": "deregulated"}
    """

    provider_name = "ercot"
    base_confidence = 85

    def __init__(self, environment: str = "production", api_key: Optional[str] = None, **kwargs):
        super().__init__(
            ERCOT_BASE_URLS.get(environment, ERCOT_BASE_URLS["production"]),
            api_key=api_key,
            requests_per_minute=kwargs.pop("requests_per_minute", 100),
            **kwargs,
        )

    def _send(self, zip_code: str, timeout: float) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return self.session.post(
            f"{self.base_url}/np4-745-cd/service-territory-lookup",
            json={"zipCode": zip_code, "includeLoadZone": True, "includeTDSP": True},
            headers=headers,
            timeout=timeout,
        )

    def _parse(self, zip_code: str, payload: Dict[str, Any], elapsed_ms: int) -> CandidateAnswer:
        return self._build_answer(
            city_name=payload.get("cityName"),
            utility_name=payload.get("tdspName") or payload.get("utility"),
            utility_duns=payload.get("tdspDuns"),
            market_type=self._market_type(payload),
            confidence=self.calculate_confidence(payload),
            elapsed_ms=elapsed_ms,
        )

    @staticmethod
    def _market_type(payload: Dict[str, Any]) -> MarketType:
        if payload.get("isDeregulated") is False:
            return MarketType.REGULATED
        if payload.get("serviceType") in ("municipal", "cooperative"):
            return MarketType.REGULATED
        return MarketType.DEREGULATED

    def calculate_confidence(self, payload: Dict[str, Any]) -> int:
        """Base 85 plus bonuses for data completeness, capped at 100."""
        confidence = self.base_confidence
        if payload.get("tdspName"):
            confidence += 5
        if payload.get("county"):
            confidence += 3
        if payload.get("loadZone"):
            confidence += 3
        if payload.get("cityName"):
            confidence += 2
        if isinstance(payload.get("isDeregulated"), bool):
            confidence += 2
        return min(confidence, 100)
