"""
Tests for city-wide duplicate pair review.

City 1 along one meridian (meters north of the base point):
  Alpha      0     Alpha Bar  30     Gamma  150     Delta  600
Passing pairs with the table scorer below:
  Alpha / Alpha Bar   30m  0.90  tight    confidence 0.915
  Gamma / Delta      450m  0.90  distant  confidence 0.780
  Alpha / Gamma      150m  0.65  nearby   confidence 0.665
Alpha Bar / Gamma (120m, 0.5) fails the nearby tier; Alpha / Delta is
outside the 500m radius.
"""

import pytest

from services.dedup.resolution.pairs import (
    DuplicatePair,
    DuplicatePairFinder,
    group_into_clusters,
    summarize_pairs,
)
from services.dedup.resolution.similarity import NameSimilarity
from services.dedup.resolution.thresholds import ProximityTier, ThresholdPolicy
from services.dedup.resolution.venues import VenueRecord
from services.dedup.tests.helpers.factories import BASE_LAT, BASE_LNG
from services.dedup.tests.helpers.fake_db import north_of


class PairTableScorer:
    """Symmetric score looked up by the unordered pair of names; identical names score 1."""

    def __init__(self, scores: dict[tuple[str, str], float]):
        self.scores = {frozenset(names): value for names, value in scores.items()}

    def score(self, name_a: str, name_b: str) -> float:
        if name_a == name_b:
            return 1.0
        return self.scores.get(frozenset((name_a, name_b)), 0.0)


SCORES = {
    ("Alpha", "Alpha Bar"): 0.9,
    ("Alpha", "Gamma"): 0.65,
    ("Alpha Bar", "Gamma"): 0.5,
    ("Gamma", "Delta"): 0.9,
    ("Alpha", "Delta"): 1.0,
}


def _add_at(db, name: str, meters: float, **kwargs) -> int:
    lat, lng = north_of(BASE_LAT, BASE_LNG, meters)
    return db.add_venue(name, latitude=lat, longitude=lng, **kwargs)


@pytest.fixture
def finder():
    return DuplicatePairFinder(scorer=PairTableScorer(SCORES), policy=ThresholdPolicy(), radius_meters=500)


@pytest.fixture
def city(db):
    return {
        "alpha": _add_at(db, "Alpha", 0),
        "alpha_bar": _add_at(db, "Alpha Bar", 30),
        "gamma": _add_at(db, "Gamma", 150),
        "delta": _add_at(db, "Delta", 600),
    }


class TestFindDuplicatePairs:
    @pytest.mark.asyncio
    async def test_ranked_by_confidence(self, conn, finder, city):
        pairs = await finder.find_duplicate_pairs(conn, 1)

        assert [p.venue_ids for p in pairs] == [
            (city["alpha"], city["alpha_bar"]),
            (city["gamma"], city["delta"]),
            (city["alpha"], city["gamma"]),
        ]
        assert [p.confidence for p in pairs] == pytest.approx([0.915, 0.78, 0.665])
        assert [p.tier for p in pairs] == [ProximityTier.TIGHT, ProximityTier.DISTANT, ProximityTier.NEARBY]
        assert pairs[0].distance_meters == pytest.approx(30, abs=0.5)

    @pytest.mark.asyncio
    async def test_limit_applied_after_ranking(self, conn, finder, city):
        pairs = await finder.find_duplicate_pairs(conn, 1, limit=1)
        assert [p.venue_ids for p in pairs] == [(city["alpha"], city["alpha_bar"])]

    @pytest.mark.asyncio
    async def test_radius_argument(self, conn, finder, city):
        pairs = await finder.find_duplicate_pairs(conn, 1, radius_meters=100)
        assert [p.venue_ids for p in pairs] == [(city["alpha"], city["alpha_bar"])]

    @pytest.mark.asyncio
    async def test_excluded_pair_dropped(self, conn, finder, exclusions, city):
        await exclusions.exclude(conn, city["alpha_bar"], city["alpha"], reviewer="admin-1")

        pairs = await finder.find_duplicate_pairs(conn, 1)

        assert (city["alpha"], city["alpha_bar"]) not in [p.venue_ids for p in pairs]
        assert len(pairs) == 2

    @pytest.mark.asyncio
    async def test_other_cities_ignored(self, db, conn, finder, city):
        _add_at(db, "Alpha", 5, city_id=2)

        pairs = await finder.find_duplicate_pairs(conn, 1)

        assert len(pairs) == 3
        assert all(p.venue_a.city_id == p.venue_b.city_id == 1 for p in pairs)

    @pytest.mark.asyncio
    async def test_identical_and_missing_coordinates_not_paired(self, db, conn, finder):
        _add_at(db, "Alpha", 0, city_id=3)
        _add_at(db, "Alpha", 0, city_id=3)
        db.add_venue("Alpha", city_id=3)

        assert await finder.find_duplicate_pairs(conn, 3) == []

    @pytest.mark.asyncio
    async def test_dependent_counts(self, db, conn, finder, city):
        db.add_dependent("events", city["alpha"])
        db.add_dependent("events", city["alpha"])
        db.add_dependent("public_events", city["gamma"])
        db.add_dependent("groups", city["gamma"])

        pairs = await finder.find_duplicate_pairs(conn, 1)
        by_ids = {p.venue_ids: p for p in pairs}

        pair = by_ids[(city["alpha"], city["gamma"])]
        assert (pair.dependent_count_a, pair.dependent_count_b) == (2, 1)
        assert pair.to_dict()["venue_a"]["dependent_count"] == 2

    @pytest.mark.asyncio
    async def test_empty_city(self, conn, finder):
        assert await finder.find_duplicate_pairs(conn, 99) == []

    @pytest.mark.asyncio
    async def test_real_scorer(self, db, conn):
        first = _add_at(db, "Blue Bottle Coffee", 0)
        second = _add_at(db, "Blue Bottle Coffee", 250)
        _add_at(db, "Corner Deli", 600)
        finder = DuplicatePairFinder(scorer=NameSimilarity(), policy=ThresholdPolicy())

        pairs = await finder.find_duplicate_pairs(conn, 1)

        assert [p.venue_ids for p in pairs] == [(first, second)]
        assert pairs[0].similarity_score == 1.0


class TestClusters:
    @pytest.mark.asyncio
    async def test_connected_pairs_grouped(self, db, conn, finder, city):
        echo = _add_at(db, "Echo", 5000)
        echo_twin = _add_at(db, "Echo", 5025)

        clusters = await finder.find_duplicate_clusters(conn, 1)

        assert [c.venue_ids for c in clusters] == [
            [echo, echo_twin],
            [city["alpha"], city["alpha_bar"], city["gamma"], city["delta"]],
        ]
        assert clusters[0].confidence == pytest.approx(0.985)
        assert clusters[1].confidence == pytest.approx((0.915 + 0.78 + 0.665) / 3)
        assert len(clusters[1].pairs) == 3

    @pytest.mark.asyncio
    async def test_cluster_limit(self, db, conn, finder, city):
        _add_at(db, "Echo", 5000)
        _add_at(db, "Echo", 5025)

        clusters = await finder.find_duplicate_clusters(conn, 1, limit=1)

        assert len(clusters) == 1

    def test_disjoint_pairs_stay_apart(self):
        def pair(a, b):
            return DuplicatePair(
                venue_a=VenueRecord(id=a, name=str(a)),
                venue_b=VenueRecord(id=b, name=str(b)),
                similarity_score=1.0,
                distance_meters=10.0,
                confidence=0.9,
                dependent_count_a=a,
                dependent_count_b=b,
            )

        clusters = group_into_clusters([pair(1, 2), pair(3, 4), pair(2, 5)])

        assert sorted(c.venue_ids for c in clusters) == [[1, 2, 5], [3, 4]]
        big = next(c for c in clusters if c.venue_ids == [1, 2, 5])
        assert big.total_dependents == 1 + 2 + 5
        assert big.to_dict()["avg_distance_meters"] == 10.0

    def test_no_pairs(self):
        assert group_into_clusters([]) == []


def _pair(a: int, b: int, confidence: float, dependents: int = 0) -> DuplicatePair:
    return DuplicatePair(
        venue_a=VenueRecord(id=a, name="A"),
        venue_b=VenueRecord(id=b, name="B"),
        similarity_score=1.0,
        distance_meters=10.0,
        confidence=confidence,
        dependent_count_a=dependents,
    )


class TestSummarizePairs:
    def test_empty(self):
        assert summarize_pairs([]).to_dict() == {
            "pair_count": 0,
            "unique_venue_count": 0,
            "affected_dependents": 0,
            "high_confidence_count": 0,
            "medium_confidence_count": 0,
            "low_confidence_count": 0,
            "severity": "healthy",
        }

    def test_confidence_buckets(self):
        summary = summarize_pairs([_pair(1, 2, 0.9), _pair(1, 3, 0.6), _pair(4, 5, 0.3, dependents=7)])

        assert (summary.high_confidence_count, summary.medium_confidence_count, summary.low_confidence_count) == (1, 1, 1)
        assert summary.unique_venue_count == 5
        assert summary.affected_dependents == 7
        assert summary.severity == "healthy"

    def test_warning(self):
        summary = summarize_pairs([_pair(1, 2, 0.85), _pair(3, 4, 0.95)])
        assert summary.severity == "warning"

    def test_critical_by_affected_dependents(self):
        summary = summarize_pairs([_pair(1, 2, 0.4, dependents=100)])
        assert summary.severity == "critical"

    def test_critical_by_high_confidence(self):
        summary = summarize_pairs([_pair(i, i + 100, 0.9) for i in range(5)])
        assert summary.severity == "critical"
