"""
Error taxonomy for territory resolution.

InputError and ProviderError are expected, recoverable outcomes and are
translated into request results by the engine. PersistenceError never
reaches the caller.
"""

from enum import Enum


class TerritoryError(Exception):
    """Base class for all territory resolution errors."""
    pass


class InputError(TerritoryError):
    """Postal code rejected before any cache or provider access."""

    INVALID_ZIP_FORMAT = "INVALID_ZIP_FORMAT"
    NOT_IN_REGION = "NOT_IN_REGION"

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class ProviderErrorKind(Enum):
    """Ways a single provider call can fail."""
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    NOT_COVERED = "not_covered"
    MALFORMED_RESPONSE = "malformed_response"
    RATE_LIMITED = "rate_limited"

    @property
    def retryable(self) -> bool:
        return self in (ProviderErrorKind.TIMEOUT, ProviderErrorKind.UNREACHABLE)

    @property
    def counts_against_availability(self) -> bool:
        """NotCovered and RateLimited are answers about scope, not outages."""
        return self not in (ProviderErrorKind.NOT_COVERED, ProviderErrorKind.RATE_LIMITED)


class ProviderError(TerritoryError):
    """A single provider did not produce an answer."""

    def __init__(self, provider: str, kind: ProviderErrorKind, message: str = ""):
        super().__init__(f"{provider}: {kind.value}" + (f" ({message})" if message else ""))
        self.provider = provider
        self.kind = kind
        self.message = message


class PersistenceError(TerritoryError):
    """The persistence store is unavailable or rejected an operation."""
    pass
