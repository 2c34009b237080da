"""
Territory Resolution Engine

Maps a ZIP code to its service territory (city, distribution utility,
market type) with:
- Parallel provider queries under a deadline
- Confidence-weighted conflict resolution
- Nearest-neighbor fallback
- Two-tier caching and persistence
- Batched bulk resolution
"""

from .interfaces import (
    MarketType,
    ResolutionState,
    CandidateAnswer,
    ConflictRecord,
    ResolutionResult,
    AuditLogEntry,
    ResolveOptions,
    ResolutionSuccess,
    ResolutionFailure,
    ResolutionOutcome,
    BulkResult,
    BulkSummary,
    ProviderClient,
    FALLBACK_SOURCE,
)
from .errors import (
    TerritoryError,
    InputError,
    ProviderError,
    ProviderErrorKind,
    PersistenceError,
)
from .config import EngineConfig, ResolverSettings
from .postal_code import validate_postal_code
from .resolver import ConflictResolver, ResolvedAnswer
from .fallback import FallbackLocator
from .cache import ResolutionCache
from .store import TerritoryStore, SQLiteTerritoryStore, PostgresTerritoryStore, create_store
from .retry import RetryPolicy, RetryPolicies, CircuitBreaker
from .engine import TerritoryResolutionEngine

__all__ = [
    # Data model
    'MarketType',
    'ResolutionState',
    'CandidateAnswer',
    'ConflictRecord',
    'ResolutionResult',
    'AuditLogEntry',
    'ResolveOptions',
    'ResolutionSuccess',
    'ResolutionFailure',
    'ResolutionOutcome',
    'BulkResult',
    'BulkSummary',
    'ProviderClient',
    'FALLBACK_SOURCE',
    # Errors
    'TerritoryError',
    'InputError',
    'ProviderError',
    'ProviderErrorKind',
    'PersistenceError',
    # Components
    'EngineConfig',
    'ResolverSettings',
    'validate_postal_code',
    'ConflictResolver',
    'ResolvedAnswer',
    'FallbackLocator',
    'ResolutionCache',
    'TerritoryStore',
    'SQLiteTerritoryStore',
    'PostgresTerritoryStore',
    'create_store',
    'RetryPolicy',
    'RetryPolicies',
    'CircuitBreaker',
    'TerritoryResolutionEngine',
]
