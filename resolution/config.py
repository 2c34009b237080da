"""
Engine configuration.

Values come from environment variables, with a .env file in the project
root honoured via python-dotenv. Variables already set in the environment
win over the .env file.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv


ENV_PATH = Path(__file__).parent.parent / ".env"

DAY = 24 * 60 * 60

# (min_confidence, ttl_seconds), highest tier first
DEFAULT_TTL_TIERS: Tuple[Tuple[int, int], ...] = (
    (90, 30 * DAY),
    (75, 7 * DAY),
    (50, 1 * DAY),
    (0, 6 * 60 * 60),
)

MIN_FALLBACK_PENALTY = 20

# Upper bound on a fallback result's revalidation interval
DEFAULT_FALLBACK_TTL = 6 * 60 * 60


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass
class ResolverSettings:
    """Conflict resolution constants."""
    agreement_boost: int = 5
    dissent_penalty: int = 10


@dataclass
class EngineConfig:
    """All tunables for the resolution engine, the API and the bulk CLI."""
    database_url: str = "sqlite:///data/territory.db"
    region_min: int = 75000
    region_max: int = 79999

    provider_timeout: float = 4.0
    request_deadline: float = 10.0

    memory_ttl_cap: int = 600
    failure_ttl: int = 300
    ttl_tiers: Tuple[Tuple[int, int], ...] = DEFAULT_TTL_TIERS

    fallback_min_confidence: int = 80
    fallback_penalty: int = MIN_FALLBACK_PENALTY
    fallback_ttl: int = DEFAULT_FALLBACK_TTL
    resolver: ResolverSettings = field(default_factory=ResolverSettings)

    bulk_batch_size: int = 10
    bulk_concurrency: int = 10
    bulk_batch_delay: float = 1.0
    bulk_max_items: int = 500

    metrics_window_minutes: int = 60

    provider_environment: str = "production"
    api_keys: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.fallback_penalty < MIN_FALLBACK_PENALTY:
            self.fallback_penalty = MIN_FALLBACK_PENALTY
        if self.region_min > self.region_max:
            raise ValueError("region_min must not exceed region_max")

    def ttl_for_confidence(self, confidence: int) -> int:
        """Seconds until a result with this confidence should be revalidated."""
        for min_confidence, seconds in self.ttl_tiers:
            if confidence >= min_confidence:
                return seconds
        return self.ttl_tiers[-1][1]

    def api_key(self, provider: str) -> Optional[str]:
        return self.api_keys.get(provider) or None

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "EngineConfig":
        """
        Build a config from environment variables.

        Args:
            env_path: Optional .env file; defaults to the project root .env

        Returns:
            EngineConfig
        """
        path = env_path or ENV_PATH
        if path.exists():
            load_dotenv(path)

        return cls(
            database_url=os.environ.get("TERRITORY_DB_URL", cls.database_url),
            region_min=_env_int("REGION_ZIP_MIN", cls.region_min),
            region_max=_env_int("REGION_ZIP_MAX", cls.region_max),
            provider_timeout=_env_float("PROVIDER_TIMEOUT_SECONDS", cls.provider_timeout),
            request_deadline=_env_float("REQUEST_DEADLINE_SECONDS", cls.request_deadline),
            memory_ttl_cap=_env_int("MEMORY_TTL_CAP_SECONDS", cls.memory_ttl_cap),
            failure_ttl=_env_int("FAILURE_TTL_SECONDS", cls.failure_ttl),
            fallback_min_confidence=_env_int("FALLBACK_MIN_CONFIDENCE", cls.fallback_min_confidence),
            fallback_penalty=_env_int("FALLBACK_PENALTY", cls.fallback_penalty),
            fallback_ttl=_env_int("FALLBACK_TTL_SECONDS", cls.fallback_ttl),
            resolver=ResolverSettings(
                agreement_boost=_env_int("AGREEMENT_BOOST", 5),
                dissent_penalty=_env_int("DISSENT_PENALTY", 10),
            ),
            bulk_batch_size=_env_int("BULK_BATCH_SIZE", cls.bulk_batch_size),
            bulk_concurrency=_env_int("BULK_CONCURRENCY", cls.bulk_concurrency),
            bulk_batch_delay=_env_float("BULK_BATCH_DELAY_SECONDS", cls.bulk_batch_delay),
            bulk_max_items=_env_int("BULK_MAX_ITEMS", cls.bulk_max_items),
            metrics_window_minutes=_env_int("METRICS_WINDOW_MINUTES", cls.metrics_window_minutes),
            provider_environment=os.environ.get("PROVIDER_ENVIRONMENT", "production").lower(),
            api_keys={
                "ercot": os.environ.get("ERCOT_API_KEY", ""),
                "oncor": os.environ.get("ONCOR_API_KEY", ""),
                "centerpoint": os.environ.get("CENTERPOINT_API_KEY", ""),
                "aep_texas": os.environ.get("AEP_API_KEY", ""),
                "tnmp": os.environ.get("TNMP_API_KEY", ""),
            },
        )
