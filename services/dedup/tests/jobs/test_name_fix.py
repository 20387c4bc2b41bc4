"""
Tests for the batch name fix job.

Five venues, chunk size 2 (chunks: [1, 2], [3, 4], [5]):
  1 "Zq"                  title "Starlight Lounge"       -> renamed
  2 "Blue Bottle Coffee"  title "Blue Bottle Coffee Co"  -> skipped, not flagged
  3 "Xk"                  title "Moonrise Diner"         -> duplicate of 5 (10m away)
  4 "Plain"               no geocoding metadata         -> skipped, no reference
  5 "Moonrise Diner"      title "Moonrise Diner"         -> skipped, identical
"""

import json

import asyncpg
import pytest

from services.dedup.jobs.name_fix import run_name_fix
from services.dedup.resolution.name_quality import _RENAME_SQL, SeverityFilter
from services.dedup.tests.helpers.factories import BASE_LAT, BASE_LNG, geocoded_metadata
from services.dedup.tests.helpers.fake_db import FakeConnection, FakePool, north_of


@pytest.fixture
def city(db):
    def at(meters):
        lat, lng = north_of(BASE_LAT, BASE_LNG, meters)
        return {"latitude": lat, "longitude": lng}

    ids = {}
    ids["zq"] = db.add_venue("Zq", metadata=geocoded_metadata(title="Starlight Lounge"), **at(0))
    ids["blue"] = db.add_venue("Blue Bottle Coffee", metadata=geocoded_metadata(title="Blue Bottle Coffee Co"))
    ids["xk"] = db.add_venue("Xk", metadata=geocoded_metadata(title="Moonrise Diner"), **at(500))
    ids["plain"] = db.add_venue("Plain")
    ids["diner"] = db.add_venue("Moonrise Diner", metadata=geocoded_metadata(title="Moonrise Diner"), **at(510))
    db.add_venue("Other City", city_id=2, metadata=geocoded_metadata(title="Elsewhere"))
    return ids


class _Acquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


class _CommitFails:
    """Outer transaction whose commit fails after the block succeeded."""

    def __init__(self, inner):
        self.inner = inner

    async def __aenter__(self):
        await self.inner.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            return await self.inner.__aexit__(exc_type, exc, tb)
        error = asyncpg.exceptions.SerializationError("could not serialize access")
        await self.inner.__aexit__(type(error), error, None)
        raise error


class _CommitFailingConnection(FakeConnection):
    def __init__(self, db):
        super().__init__(db)
        self._opened = False

    def transaction(self):
        inner = super().transaction()
        if self._opened:
            return inner
        self._opened = True
        return _CommitFails(inner)


class _FlakyCommitPool(FakePool):
    """Pool whose Nth acquired connection cannot commit."""

    def __init__(self, db, failing_acquire: int):
        super().__init__(db)
        self.failing_acquire = failing_acquire
        self.calls = 0

    def acquire(self):
        self.calls += 1
        if self.calls == self.failing_acquire:
            return _Acquire(_CommitFailingConnection(self.db))
        return super().acquire()


class TestRunNameFix:
    @pytest.mark.asyncio
    async def test_summary(self, db, pool, assessor, city):
        summary = await run_name_fix(pool, 1, assessor=assessor, chunk_size=2)

        assert summary.examined == 5
        assert summary.fixed == 1
        assert summary.skipped == 3
        assert summary.duplicates == 1
        assert summary.failed == 0
        assert len(summary.chunks) == 3
        assert dict(summary.skip_reasons) == {
            "not_flagged": 1,
            "no_reference_name": 1,
            "identical_name": 1,
        }
        assert summary.renamed == [
            {"venue_id": city["zq"], "old_name": "Zq", "new_name": "Starlight Lounge"}
        ]
        [duplicate] = summary.duplicate_details
        assert duplicate["venue_id"] == city["xk"]
        assert duplicate["conflicting_venue_id"] == city["diner"]
        assert duplicate["distance_meters"] == pytest.approx(10, abs=0.5)

        assert db.venues[city["zq"]]["name"] == "Starlight Lounge"
        assert db.venues[city["xk"]]["name"] == "Xk"

    @pytest.mark.asyncio
    async def test_chunk_breakdown(self, pool, assessor, city):
        summary = await run_name_fix(pool, 1, assessor=assessor, chunk_size=2)

        first, second, third = [chunk.to_dict() for chunk in summary.chunks]
        assert (first["first_venue_id"], first["last_venue_id"], first["size"]) == (city["zq"], city["blue"], 2)
        assert (first["fixed"], first["skipped"]) == (1, 1)
        assert (second["duplicates"], second["skipped"]) == (1, 1)
        assert (third["size"], third["skipped"]) == (1, 1)

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, db, pool, assessor, city):
        before = db.snapshot()

        summary = await run_name_fix(pool, 1, dry_run=True, assessor=assessor, chunk_size=2)

        assert summary.fixed == 1
        assert summary.dry_run is True
        assert db.snapshot() == before
        assert db.ran(_RENAME_SQL) == 0

    @pytest.mark.asyncio
    async def test_rerun_is_a_no_op(self, db, pool, assessor, city):
        await run_name_fix(pool, 1, assessor=assessor, chunk_size=2)
        summary = await run_name_fix(pool, 1, assessor=assessor, chunk_size=2)

        assert summary.fixed == 0
        assert summary.skip_reasons["identical_name"] == 2

    @pytest.mark.asyncio
    async def test_severity_filter_all_still_skips_acceptable(self, pool, assessor, city):
        summary = await run_name_fix(pool, 1, SeverityFilter.ALL, assessor=assessor, chunk_size=2)
        assert summary.skip_reasons["not_flagged"] == 1

    @pytest.mark.asyncio
    async def test_empty_scope(self, pool, assessor, city):
        summary = await run_name_fix(pool, 99, assessor=assessor)

        assert summary.examined == 0
        assert summary.chunks == []
        assert summary.finished_at is not None

    @pytest.mark.asyncio
    async def test_invalid_chunk_size(self, pool, assessor):
        with pytest.raises(ValueError, match="chunk_size"):
            await run_name_fix(pool, 1, assessor=assessor, chunk_size=0)


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failing_venue_does_not_stop_its_chunk(self, db, pool, assessor, city):
        db.fail_on(
            _RENAME_SQL,
            asyncpg.exceptions.UniqueViolationError("duplicate key value violates unique constraint"),
            when=lambda args: args[0] == city["zq"],
        )

        summary = await run_name_fix(pool, 1, assessor=assessor, chunk_size=2)

        assert summary.failed == 1
        assert summary.fixed == 0
        assert summary.examined == 5
        assert summary.errors[0]["venue_id"] == city["zq"]
        assert "duplicate key" in summary.errors[0]["error"]
        # Venue 2 shares the chunk and is still processed
        assert summary.skip_reasons["not_flagged"] == 1
        assert summary.chunks[0].failed == 1
        assert db.venues[city["zq"]]["name"] == "Zq"

    @pytest.mark.asyncio
    async def test_failed_commit_fails_whole_chunk_only(self, db, assessor, city):
        # acquire #1 lists the city, #2 runs chunk 0, #3 runs chunk 1
        pool = _FlakyCommitPool(db, failing_acquire=3)

        summary = await run_name_fix(pool, 1, assessor=assessor, chunk_size=2)

        assert summary.examined == 5
        assert summary.fixed == 1
        assert summary.failed == 2
        assert summary.duplicates == 0
        assert {e["venue_id"] for e in summary.errors} == {city["xk"], city["plain"]}
        assert all(e["error"].startswith("chunk rolled back:") for e in summary.errors)
        assert "could not serialize access" in summary.chunks[1].error
        # Chunk 0 committed before the failure and stays committed
        assert db.venues[city["zq"]]["name"] == "Starlight Lounge"

    @pytest.mark.asyncio
    async def test_report_is_json_serializable(self, db, assessor, city):
        pool = _FlakyCommitPool(db, failing_acquire=2)

        summary = await run_name_fix(pool, 1, assessor=assessor, chunk_size=2)
        report = json.loads(json.dumps(summary.to_dict()))

        assert report["failed"] == 2
        assert report["severity_filter"] == "severe"
        assert "could not serialize access" in report["chunks"][0]["error"]
        assert report["duplicate_details"][0]["conflicting_venue_id"] == city["diner"]
