#!/usr/bin/env python3
"""
Tests for the SQLite territory store.

Run: pytest tests/test_store.py -v
"""

import os
import sys
from dataclasses import replace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import NOW, make_result
from resolution.errors import PersistenceError
from resolution.interfaces import AuditLogEntry, ConflictRecord
from resolution.store import SQLiteTerritoryStore, create_store


class TestResults:

    def test_get_missing(self, store):
        assert store.get("75201") is None

    def test_upsert_and_get(self, store):
        result = make_result("75201", confidence=95)
        store.upsert(result)
        assert store.get("75201") == result

    def test_upsert_is_last_write_wins(self, store):
        store.upsert(make_result("75201", confidence=95))
        store.upsert(make_result("75201", confidence=70, city_slug="irving"))
        stored = store.get("75201")
        assert stored.confidence == 70
        assert stored.city_slug == "irving"
        assert len(store.find_by_prefix("752")) == 1

    def test_conflicts_round_trip(self, store):
        conflict = ConflictRecord(provider_name="puct", city_slug="irving", utility_id="oncor", confidence=80)
        result = replace(make_result("75201"), conflicts=(conflict,))
        store.upsert(result)
        assert store.get("75201").conflicts == (conflict,)

    def test_timestamps_are_utc_aware(self, store):
        store.upsert(make_result("75201"))
        stored = store.get("75201")
        assert stored.resolved_at == NOW
        assert stored.resolved_at.tzinfo is not None


class TestPrefixQuery:

    @pytest.fixture
    def populated(self, store):
        store.upsert(make_result("75204", confidence=85))
        store.upsert(make_result("75202", confidence=95))
        store.upsert(make_result("75201", confidence=95))
        store.upsert(make_result("75203", confidence=60))
        store.upsert(make_result("77002", confidence=99, city_slug="houston", utility_id="centerpoint"))
        return store

    def test_order_confidence_desc_then_zip(self, populated):
        zips = [r.zip_code for r in populated.find_by_prefix("752")]
        assert zips == ["75201", "75202", "75204", "75203"]

    def test_min_confidence_and_limit(self, populated):
        results = populated.find_by_prefix("752", min_confidence=80, limit=2)
        assert [r.zip_code for r in results] == ["75201", "75202"]

    def test_prefix_scoped(self, populated):
        assert [r.zip_code for r in populated.find_by_prefix("770")] == ["77002"]

    def test_bad_prefix_rejected(self, store):
        with pytest.raises(ValueError):
            store.find_by_prefix("75%")


class TestAudit:

    def test_append_and_read_newest_first(self, store):
        for i in range(3):
            store.append_audit(AuditLogEntry(
                zip_code="75201",
                request_id=f"req-{i}",
                sources_queried=("oncor", "ercot"),
                chosen_source="oncor",
                cache_hit=False,
                processing_time_ms=10 + i,
                validated_at=NOW,
                confidence=95,
                source_errors={"ercot": "timeout"},
            ))
        store.append_audit(AuditLogEntry(
            zip_code="1234",
            request_id="bad",
            sources_queried=(),
            chosen_source=None,
            cache_hit=False,
            processing_time_ms=0,
            validated_at=NOW,
            error_code="INVALID_ZIP_FORMAT",
        ))

        rows = store.recent_audit("75201")
        assert [r["request_id"] for r in rows] == ["req-2", "req-1", "req-0"]
        assert rows[0]["sources_queried"] == ["oncor", "ercot"]
        assert rows[0]["source_errors"] == {"ercot": "timeout"}
        assert len(store.recent_audit()) == 4
        assert store.recent_audit("1234")[0]["error_code"] == "INVALID_ZIP_FORMAT"


class TestCreateStore:

    def test_sqlite_url(self, tmp_path):
        s = create_store(f"sqlite:///{tmp_path}/nested/db.sqlite")
        assert isinstance(s, SQLiteTerritoryStore)
        s.close()

    def test_memory_url(self):
        s = create_store("sqlite:///:memory:")
        s.upsert(make_result("75201"))
        assert s.get("75201") is not None
        s.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_store("mysql://localhost/db")

    def test_sqlite_errors_wrapped(self, store):
        store._conn.execute("DROP TABLE territory_resolutions")
        with pytest.raises(PersistenceError):
            store.get("75201")
