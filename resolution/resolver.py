"""
Conflict resolution for provider answers.

Groups candidate answers by (city, utility), picks one canonical answer
and scores it. Deterministic: the same candidate set always resolves to
the same answer regardless of the order candidates arrived in.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .config import ResolverSettings
from .interfaces import CandidateAnswer, ConflictRecord


class AgreementLevel(Enum):
    SINGLE = "single"   # Only one provider answered
    FULL = "full"       # All providers agree
    SPLIT = "split"     # Providers disagree


@dataclass
class ResolvedAnswer:
    """Output of conflict resolution."""
    canonical: CandidateAnswer
    confidence: int
    agreement_level: AgreementLevel
    conflicts: Tuple[ConflictRecord, ...] = ()
    agreeing_providers: List[str] = field(default_factory=list)
    dissenting_providers: List[str] = field(default_factory=list)


class ConflictResolver:
    """
    Select a canonical answer from successful candidates.

    Unanimous candidates boost confidence per extra agreeing provider.
    Disagreeing groups are decided by the highest sum of raw confidence,
    then by the group holding the authoritative provider, then by the
    group holding the earliest-queried provider. The winner loses a fixed
    penalty per dissenting group.
    """

    def __init__(self, settings: Optional[ResolverSettings] = None):
        self.settings = settings or ResolverSettings()

    def resolve(
        self,
        candidates: Sequence[CandidateAnswer],
        query_order: Sequence[str] = (),
        authoritative: Optional[str] = None,
    ) -> ResolvedAnswer:
        """
        Resolve candidates to one canonical answer.

        Args:
            candidates: Successful provider answers (at least one)
            query_order: Provider names in the order they were queried
            authoritative: Provider name considered authoritative for this ZIP

        Returns:
            ResolvedAnswer
        """
        if not candidates:
            raise ValueError("ConflictResolver.resolve requires at least one candidate")

        rank = {name: i for i, name in enumerate(query_order)}
        ordered = sorted(candidates, key=lambda c: self._sort_key(c, rank))

        groups: Dict[Tuple[str, str], List[CandidateAnswer]] = {}
        for candidate in ordered:
            groups.setdefault(candidate.group_key, []).append(candidate)

        if len(groups) == 1:
            members = ordered
            representative = self._representative(members)
            boost = self.settings.agreement_boost * (len(members) - 1)
            confidence = min(100, max(c.raw_confidence for c in members) + boost)
            return ResolvedAnswer(
                canonical=representative,
                confidence=confidence,
                agreement_level=AgreementLevel.SINGLE if len(members) == 1 else AgreementLevel.FULL,
                agreeing_providers=[c.provider_name for c in members],
            )

        # dict preserves first-seen order, so each group's position is its
        # earliest-queried member
        positions = {key: i for i, key in enumerate(groups)}

        def group_score(key):
            members = groups[key]
            has_authoritative = any(c.provider_name == authoritative for c in members)
            return (
                -sum(c.raw_confidence for c in members),
                0 if has_authoritative else 1,
                positions[key],
            )

        ranked = sorted(groups, key=group_score)
        chosen_key = ranked[0]
        chosen = groups[chosen_key]
        representative = self._representative(chosen)

        dissenting_groups = len(groups) - 1
        confidence = max(0, representative.raw_confidence - self.settings.dissent_penalty * dissenting_groups)

        conflicts = []
        dissenting = []
        for key in groups:
            if key == chosen_key:
                continue
            loser = self._representative(groups[key])
            conflicts.append(ConflictRecord(
                provider_name=loser.provider_name,
                city_slug=loser.city_slug,
                utility_id=loser.utility_id,
                confidence=loser.raw_confidence,
            ))
            dissenting.extend(c.provider_name for c in groups[key])

        return ResolvedAnswer(
            canonical=representative,
            confidence=confidence,
            agreement_level=AgreementLevel.SPLIT,
            conflicts=tuple(conflicts),
            agreeing_providers=[c.provider_name for c in chosen],
            dissenting_providers=dissenting,
        )

    @staticmethod
    def _sort_key(candidate: CandidateAnswer, rank: Dict[str, int]):
        return (
            rank.get(candidate.provider_name, len(rank)),
            candidate.provider_name,
            candidate.city_slug,
            candidate.utility_id,
            -candidate.raw_confidence,
        )

    @staticmethod
    def _representative(members: List[CandidateAnswer]) -> CandidateAnswer:
        """Highest raw confidence; ties go to the earlier-queried member."""
        best = members[0]
        for candidate in members[1:]:
            if candidate.raw_confidence > best.raw_confidence:
                best = candidate
        return best
