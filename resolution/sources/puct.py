"""
PUCT (Public Utility Commission of Texas) REP directory service areas.
"""

from typing import Any, Dict, Optional

import requests

from resolution.interfaces import CandidateAnswer, MarketType
from resolution.sources.base import HTTPProviderClient


PUCT_BASE_URL = "http://www.puc.texas.gov/industry/electric/directories"


class PUCTClient(HTTPProviderClient):
    """
    State regulator directory of deregulated service areas.

    Lower confidence than the grid operator or the TDSPs since the
    directory is maintained by city, not by ZIP.
    """

    provider_name = "puct"
    base_confidence = 85
    regulated_confidence = 70

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(
            kwargs.pop("base_url", PUCT_BASE_URL),
            api_key=api_key,
            requests_per_minute=kwargs.pop("requests_per_minute", 30),
            **kwargs,
        )

    def _send(self, zip_code: str, timeout: float) -> requests.Response:
        return self.session.get(
            f"{self.base_url}/rep/service-areas.json",
            params={"zip": zip_code},
            timeout=timeout,
        )

    def _parse(self, zip_code: str, payload: Dict[str, Any], elapsed_ms: int) -> CandidateAnswer:
        is_deregulated = payload.get("isDeregulated", True) is not False
        return self._build_answer(
            city_name=payload.get("cityName") or payload.get("city"),
            utility_name=payload.get("tdspName") or payload.get("utility"),
            utility_duns=payload.get("tdspDuns"),
            market_type=MarketType.DEREGULATED if is_deregulated else MarketType.REGULATED,
            confidence=self.base_confidence if is_deregulated else self.regulated_confidence,
            elapsed_ms=elapsed_ms,
        )
