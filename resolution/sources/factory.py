"""
Client factory: which providers to ask about a ZIP code.
"""

import threading
from typing import Any, Dict, List, Optional

from deregulated_markets import lookup_texas_tdu
from logging_config import get_logger
from resolution.config import EngineConfig
from resolution.interfaces import ProviderClient
from resolution.sources.ercot import ERCOTClient
from resolution.sources.puct import PUCTClient
from resolution.sources.tdu import AEPTexasClient, CenterPointClient, OncorClient, TNMPClient

logger = get_logger(__name__)

# Per-provider rate limits and circuit breaker settings
PROVIDER_LIMITS = {
    "ercot": {"requests_per_minute": 60, "failure_threshold": 5, "recovery_timeout": 60},
    "puct": {"requests_per_minute": 30, "failure_threshold": 3, "recovery_timeout": 120},
    "oncor": {"requests_per_minute": 120, "failure_threshold": 8, "recovery_timeout": 90},
    "centerpoint": {"requests_per_minute": 100, "failure_threshold": 6, "recovery_timeout": 120},
    "aep_texas": {"requests_per_minute": 40, "failure_threshold": 4, "recovery_timeout": 240},
    "tnmp": {"requests_per_minute": 30, "failure_threshold": 3, "recovery_timeout": 300},
}

TDU_CLIENTS = {
    "oncor": OncorClient,
    "centerpoint": CenterPointClient,
    "aep_texas": AEPTexasClient,
    "tnmp": TNMPClient,
}

# Queried for every ZIP, after the TDSP
STATEWIDE_PROVIDERS = ("ercot", "puct")


class ClientFactory:
    """
    Build provider clients once and pick the relevant ones per ZIP.

    Order returned by clients_for() is the query order: the TDSP for the
    ZIP's range first (when configured), then ERCOT, then PUCT. ERCOT and
    PUCT are always included so every in-region ZIP gets a client.
    """

    def __init__(self, config: Optional[EngineConfig] = None, clients: Optional[Dict[str, ProviderClient]] = None):
        """
        Args:
            config: Engine config with timeouts, environment and API keys
            clients: Prebuilt clients by name; skips building from config
        """
        self.config = config or EngineConfig()
        self._lock = threading.Lock()
        if clients is not None:
            self._clients = dict(clients)
        else:
            self._clients = self._build_clients()

    def _build_clients(self) -> Dict[str, ProviderClient]:
        config = self.config
        clients: Dict[str, ProviderClient] = {}

        clients["ercot"] = ERCOTClient(
            environment=config.provider_environment,
            api_key=config.api_key("ercot"),
            timeout=config.provider_timeout,
            **PROVIDER_LIMITS["ercot"],
        )
        clients["puct"] = PUCTClient(timeout=config.provider_timeout, **PROVIDER_LIMITS["puct"])

        for name, client_cls in TDU_CLIENTS.items():
            api_key = config.api_key(name)
            if not api_key:
                logger.info(f"No API key for {name}, TDSP lookup disabled", extra={"source": name})
                continue
            clients[name] = client_cls(
                api_key=api_key,
                environment=config.provider_environment,
                timeout=config.provider_timeout,
                **PROVIDER_LIMITS[name],
            )

        return clients

    def get_client(self, name: str) -> Optional[ProviderClient]:
        with self._lock:
            return self._clients.get(name)

    def all_clients(self) -> List[ProviderClient]:
        with self._lock:
            return list(self._clients.values())

    def _tdu_for(self, zip_code: str) -> Optional[ProviderClient]:
        tdu = lookup_texas_tdu(zip_code)
        if not tdu:
            return None
        return self.get_client(tdu["provider"])

    def clients_for(self, zip_code: str) -> List[ProviderClient]:
        """Provider clients worth querying for zip_code, in query order."""
        clients = []
        tdu_client = self._tdu_for(zip_code)
        if tdu_client is not None:
            clients.append(tdu_client)
        for name in STATEWIDE_PROVIDERS:
            client = self.get_client(name)
            if client is not None:
                clients.append(client)
        return clients

    def authoritative_for(self, zip_code: str) -> Optional[str]:
        """The TDSP for the ZIP's range when configured, otherwise ERCOT."""
        tdu_client = self._tdu_for(zip_code)
        if tdu_client is not None:
            return tdu_client.name
        if self.get_client("ercot") is not None:
            return "ercot"
        return None

    def health(self) -> Dict[str, Any]:
        """
        Per-client circuit state and an overall status.

        Returns:
            {"status": "healthy" | "degraded" | "unhealthy", "clients": {...}}
        """
        statuses = {client.name: client.health() for client in self.all_clients()}
        open_count = sum(1 for s in statuses.values() if s.get("state") == "open")

        if not statuses or open_count == len(statuses):
            status = "unhealthy"
        elif open_count:
            status = "degraded"
        else:
            status = "healthy"

        return {"status": status, "clients": statuses}
