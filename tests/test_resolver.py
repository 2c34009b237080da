#!/usr/bin/env python3
"""
Tests for conflict resolution between provider answers.

Run: pytest tests/test_resolver.py -v
"""

import itertools
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from resolution.config import ResolverSettings
from resolution.interfaces import CandidateAnswer, MarketType
from resolution.resolver import AgreementLevel, ConflictResolver


def candidate(provider, city="dallas", utility="oncor", confidence=90):
    return CandidateAnswer(
        provider_name=provider,
        city_slug=city,
        city_display_name=city.title(),
        utility_id=utility,
        utility_name=utility,
        market_type=MarketType.DEREGULATED,
        raw_confidence=confidence,
    )


@pytest.fixture
def resolver():
    return ConflictResolver(ResolverSettings(agreement_boost=5, dissent_penalty=10))


class TestUnanimous:

    def test_single_candidate_unchanged(self, resolver):
        resolved = resolver.resolve([candidate("ercot", confidence=88)])
        assert resolved.confidence == 88
        assert resolved.agreement_level == AgreementLevel.SINGLE
        assert resolved.conflicts == ()

    def test_three_agreeing_boosted(self, resolver):
        resolved = resolver.resolve(
            [candidate("oncor", confidence=85), candidate("ercot", confidence=80), candidate("puct", confidence=75)],
            query_order=("oncor", "ercot", "puct"),
        )
        # 85 + 5 * 2
        assert resolved.confidence == 95
        assert resolved.agreement_level == AgreementLevel.FULL
        assert resolved.canonical.provider_name == "oncor"

    def test_two_agreeing(self, resolver):
        resolved = resolver.resolve([candidate("ercot", confidence=90), candidate("puct", confidence=85)])
        assert resolved.confidence == 95
        assert resolved.conflicts == ()

    def test_boost_capped_at_100(self, resolver):
        resolved = resolver.resolve([candidate("a", confidence=98), candidate("b", confidence=97)])
        assert resolved.confidence == 100

    def test_agreement_never_lowers_confidence(self, resolver):
        alone = resolver.resolve([candidate("a", confidence=70)])
        together = resolver.resolve([candidate("a", confidence=70), candidate("b", confidence=60)])
        assert together.confidence >= alone.confidence


class TestDisagreement:

    def test_majority_wins_with_penalty(self, resolver):
        resolved = resolver.resolve(
            [
                candidate("oncor", confidence=90),
                candidate("ercot", confidence=85),
                candidate("puct", city="irving", confidence=80),
            ],
            query_order=("oncor", "ercot", "puct"),
        )
        assert resolved.canonical.city_slug == "dallas"
        # representative 90 - 10 for one dissenting group
        assert resolved.confidence == 80
        assert resolved.agreement_level == AgreementLevel.SPLIT
        assert len(resolved.conflicts) == 1
        conflict = resolved.conflicts[0]
        assert conflict.provider_name == "puct"
        assert conflict.city_slug == "irving"
        assert conflict.confidence == 80
        assert resolved.dissenting_providers == ["puct"]

    def test_one_record_per_losing_group(self, resolver):
        resolved = resolver.resolve(
            [
                candidate("a", city="dallas", confidence=95),
                candidate("b", city="irving", confidence=60),
                candidate("c", city="plano", confidence=50),
                candidate("d", city="plano", confidence=40),
            ],
            query_order=("a", "b", "c", "d"),
        )
        assert resolved.canonical.city_slug == "dallas"
        assert len(resolved.conflicts) == 2
        assert resolved.confidence == 75
        plano = [c for c in resolved.conflicts if c.city_slug == "plano"][0]
        assert plano.provider_name == "c"

    def test_utility_difference_is_a_conflict(self, resolver):
        resolved = resolver.resolve([
            candidate("a", utility="oncor", confidence=90),
            candidate("b", utility="tnmp", confidence=70),
        ])
        assert resolved.canonical.utility_id == "oncor"
        assert len(resolved.conflicts) == 1

    def test_confidence_floor_zero(self):
        resolver = ConflictResolver(ResolverSettings(dissent_penalty=60))
        resolved = resolver.resolve([
            candidate("a", city="dallas", confidence=50),
            candidate("b", city="irving", confidence=10),
            candidate("c", city="plano", confidence=5),
        ])
        assert resolved.confidence == 0

    def test_tie_goes_to_authoritative(self, resolver):
        resolved = resolver.resolve(
            [candidate("ercot", city="dallas", confidence=85), candidate("oncor", city="irving", confidence=85)],
            query_order=("ercot", "oncor"),
            authoritative="oncor",
        )
        assert resolved.canonical.city_slug == "irving"

    def test_tie_without_authoritative_goes_to_earliest_queried(self, resolver):
        resolved = resolver.resolve(
            [candidate("puct", city="dallas", confidence=85), candidate("ercot", city="irving", confidence=85)],
            query_order=("ercot", "puct"),
        )
        assert resolved.canonical.city_slug == "irving"


class TestDeterminism:

    def test_commutative_over_input_order(self, resolver):
        candidates = [
            candidate("oncor", confidence=90),
            candidate("ercot", city="irving", confidence=85),
            candidate("puct", confidence=80),
            candidate("tnmp", city="plano", utility="tnmp", confidence=85),
        ]
        order = ("oncor", "ercot", "puct", "tnmp")
        expected = resolver.resolve(candidates, query_order=order)

        for perm in itertools.permutations(candidates):
            resolved = resolver.resolve(list(perm), query_order=order)
            assert resolved.canonical == expected.canonical
            assert resolved.confidence == expected.confidence
            assert resolved.conflicts == expected.conflicts

    def test_empty_candidates_rejected(self, resolver):
        with pytest.raises(ValueError):
            resolver.resolve([])
