"""
Provider adapters for the territory resolution engine.
"""

from .base import HTTPProviderClient, RateLimiter
from .ercot import ERCOTClient
from .puct import PUCTClient
from .tdu import (
    TDUClient,
    OncorClient,
    CenterPointClient,
    AEPTexasClient,
    TNMPClient,
)
from .factory import ClientFactory, PROVIDER_LIMITS

__all__ = [
    'HTTPProviderClient',
    'RateLimiter',
    # Statewide
    'ERCOTClient',
    'PUCTClient',
    # TDSPs
    'TDUClient',
    'OncorClient',
    'CenterPointClient',
    'AEPTexasClient',
    'TNMPClient',
    # Factory
    'ClientFactory',
    'PROVIDER_LIMITS',
]
