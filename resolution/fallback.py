"""
Nearest-neighbor fallback when no provider answers.

Substitutes the best previously-resolved ZIP sharing the target's 3-digit
prefix, at reduced confidence.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from deregulated_markets import classify_territory

from .interfaces import FALLBACK_SOURCE, ResolutionResult
from .store import TerritoryStore


MAX_SUGGESTIONS = 5


@dataclass
class FallbackMiss:
    """No neighbor qualified. Carries the detail for a NOT_FOUND response."""
    suggestions: Tuple[str, ...]
    classification: str


class FallbackLocator:
    """
    Find a substitute answer from neighboring ZIP codes.

    Neighbors are persisted results whose ZIP shares the first 3 digits,
    with confidence >= min_confidence. Stale rows qualify. The best one
    (confidence desc, then ZIP asc) is copied with its confidence reduced
    by the penalty.
    Its revalidation time follows the confidence tiers, capped at max_ttl.
    """

    def __init__(
        self,
        store: TerritoryStore,
        ttl_for_confidence: Callable[[int], int],
        min_confidence: int = 80,
        penalty: int = 20,
        max_ttl: Optional[int] = None,
    ):
        self.store = store
        self.ttl_for_confidence = ttl_for_confidence
        self.min_confidence = min_confidence
        self.penalty = max(20, penalty)
        self.max_ttl = max_ttl

    def locate(self, zip_code: str, now: datetime) -> Optional[ResolutionResult]:
        """
        Build a fallback result for zip_code.

        Returns:
            ResolutionResult with data_source "fallback_nearest", or None

        Raises:
            PersistenceError: if the store cannot be queried
        """
        neighbors = self.store.find_by_prefix(zip_code[:3], min_confidence=self.min_confidence, limit=1)
        if not neighbors:
            return None

        neighbor = neighbors[0]
        confidence = max(0, neighbor.confidence - self.penalty)
        return ResolutionResult(
            zip_code=zip_code,
            city_slug=neighbor.city_slug,
            city_display_name=neighbor.city_display_name,
            utility_id=neighbor.utility_id,
            utility_name=neighbor.utility_name,
            market_type=neighbor.market_type,
            confidence=confidence,
            data_source=FALLBACK_SOURCE,
            resolved_at=now,
            next_revalidation_at=now + timedelta(seconds=self._ttl(confidence)),
        )

    def _ttl(self, confidence: int) -> int:
        ttl = self.ttl_for_confidence(confidence)
        if self.max_ttl is not None:
            ttl = min(ttl, self.max_ttl)
        return ttl

    def explain_miss(self, zip_code: str) -> FallbackMiss:
        """
        Actionable detail for an unresolvable ZIP: nearby known ZIPs at any
        confidence and a municipal/cooperative classification when known.
        """
        neighbors: List[ResolutionResult] = self.store.find_by_prefix(
            zip_code[:3], min_confidence=0, limit=MAX_SUGGESTIONS + 1
        )
        suggestions = tuple(
            n.zip_code for n in neighbors if n.zip_code != zip_code
        )[:MAX_SUGGESTIONS]
        return FallbackMiss(suggestions=suggestions, classification=classify_territory(zip_code))
