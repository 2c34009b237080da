"""
Persistence for resolution results and the audit log.

The engine needs exactly three operations on results (upsert by ZIP,
point lookup, prefix query ordered by confidence) plus an append-only
audit log. SQLite backs local and test runs; PostgreSQL backs shared
deployments.
"""

import json
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

from .errors import PersistenceError
from .interfaces import AuditLogEntry, ConflictRecord, MarketType, ResolutionResult


RESULT_COLUMNS = (
    "zip_code, city_slug, city_display_name, utility_id, utility_name, market_type, "
    "confidence, data_source, resolved_at, next_revalidation_at, conflicts"
)


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _conflicts_json(result: ResolutionResult) -> str:
    return json.dumps([c.to_dict() for c in result.conflicts])


def _result_from_row(row) -> ResolutionResult:
    conflicts = json.loads(row[10]) if row[10] else []
    return ResolutionResult(
        zip_code=row[0],
        city_slug=row[1],
        city_display_name=row[2],
        utility_id=row[3],
        utility_name=row[4],
        market_type=MarketType(row[5]),
        confidence=int(row[6]),
        data_source=row[7],
        resolved_at=_parse_dt(row[8]),
        next_revalidation_at=_parse_dt(row[9]),
        conflicts=tuple(ConflictRecord.from_dict(c) for c in conflicts),
    )


def _check_prefix(prefix: str) -> str:
    if not prefix or not prefix.isdigit() or len(prefix) > 5:
        raise ValueError(f"ZIP prefix must be 1-5 digits, got {prefix!r}")
    return prefix


class TerritoryStore(ABC):
    """Read/write contract the engine requires from persistence."""

    @abstractmethod
    def upsert(self, result: ResolutionResult) -> None:
        """Insert or replace the result for result.zip_code. Last write wins."""
        pass

    @abstractmethod
    def get(self, zip_code: str) -> Optional[ResolutionResult]:
        """Point lookup, regardless of freshness."""
        pass

    @abstractmethod
    def find_by_prefix(
        self, prefix: str, min_confidence: int = 0, limit: Optional[int] = None
    ) -> List[ResolutionResult]:
        """Results whose ZIP starts with prefix, confidence desc then ZIP asc."""
        pass

    @abstractmethod
    def append_audit(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    def recent_audit(self, zip_code: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Newest audit rows first, for inspection and debugging."""
        pass

    def close(self) -> None:
        pass


class SQLiteTerritoryStore(TerritoryStore):
    """
    SQLite store sharing one connection across threads.

    All access goes through a lock since sqlite3 connections are not
    safe for concurrent use.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        try:
            if db_path != ":memory:":
                directory = os.path.dirname(os.path.abspath(db_path))
                os.makedirs(directory, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._init_db()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Cannot open SQLite store at {db_path}: {e}") from e

    def _init_db(self):
        cursor = self._conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS territory_resolutions (
                zip_code TEXT PRIMARY KEY,
                city_slug TEXT NOT NULL,
                city_display_name TEXT NOT NULL,
                utility_id TEXT NOT NULL,
                utility_name TEXT NOT NULL,
                market_type TEXT NOT NULL,
                confidence INTEGER NOT NULL,
                data_source TEXT NOT NULL,
                resolved_at TEXT NOT NULL,
                next_revalidation_at TEXT NOT NULL,
                conflicts TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS resolution_audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                zip_code TEXT NOT NULL,
                request_id TEXT NOT NULL,
                sources_queried TEXT NOT NULL,
                chosen_source TEXT,
                cache_hit INTEGER NOT NULL,
                processing_time_ms INTEGER NOT NULL,
                error_code TEXT,
                confidence INTEGER,
                source_errors TEXT,
                validated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_resolutions_confidence ON territory_resolutions(confidence)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_zip ON resolution_audit_log(zip_code)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_validated ON resolution_audit_log(validated_at)')

        self._conn.commit()

    def _execute(self, sql: str, params=(), fetch: bool = False):
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params)
                if fetch:
                    return cursor.fetchall()
                self._conn.commit()
                return None
            except sqlite3.Error as e:
                self._conn.rollback()
                raise PersistenceError(f"SQLite error: {e}") from e

    def upsert(self, result: ResolutionResult) -> None:
        self._execute(
            f'''
            INSERT INTO territory_resolutions ({RESULT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(zip_code) DO UPDATE SET
                city_slug = excluded.city_slug,
                city_display_name = excluded.city_display_name,
                utility_id = excluded.utility_id,
                utility_name = excluded.utility_name,
                market_type = excluded.market_type,
                confidence = excluded.confidence,
                data_source = excluded.data_source,
                resolved_at = excluded.resolved_at,
                next_revalidation_at = excluded.next_revalidation_at,
                conflicts = excluded.conflicts
            ''',
            (
                result.zip_code,
                result.city_slug,
                result.city_display_name,
                result.utility_id,
                result.utility_name,
                result.market_type.value,
                result.confidence,
                result.data_source,
                result.resolved_at.isoformat(),
                result.next_revalidation_at.isoformat(),
                _conflicts_json(result),
            ),
        )

    def get(self, zip_code: str) -> Optional[ResolutionResult]:
        rows = self._execute(
            f"SELECT {RESULT_COLUMNS} FROM territory_resolutions WHERE zip_code = ?",
            (zip_code,),
            fetch=True,
        )
        return _result_from_row(rows[0]) if rows else None

    def find_by_prefix(
        self, prefix: str, min_confidence: int = 0, limit: Optional[int] = None
    ) -> List[ResolutionResult]:
        sql = (
            f"SELECT {RESULT_COLUMNS} FROM territory_resolutions "
            "WHERE zip_code LIKE ? AND confidence >= ? "
            "ORDER BY confidence DESC, zip_code ASC"
        )
        params: List[Any] = [_check_prefix(prefix) + "%", min_confidence]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._execute(sql, params, fetch=True)
        return [_result_from_row(row) for row in rows]

    def append_audit(self, entry: AuditLogEntry) -> None:
        self._execute(
            '''
            INSERT INTO resolution_audit_log
                (zip_code, request_id, sources_queried, chosen_source, cache_hit,
                 processing_time_ms, error_code, confidence, source_errors, validated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''',
            (
                entry.zip_code,
                entry.request_id,
                json.dumps(list(entry.sources_queried)),
                entry.chosen_source,
                1 if entry.cache_hit else 0,
                entry.processing_time_ms,
                entry.error_code,
                entry.confidence,
                json.dumps(entry.source_errors),
                entry.validated_at.isoformat(),
            ),
        )

    def recent_audit(self, zip_code: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        sql = (
            "SELECT zip_code, request_id, sources_queried, chosen_source, cache_hit, "
            "processing_time_ms, error_code, confidence, source_errors, validated_at "
            "FROM resolution_audit_log"
        )
        params: List[Any] = []
        if zip_code is not None:
            sql += " WHERE zip_code = ?"
            params.append(zip_code)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = self._execute(sql, params, fetch=True)
        return [
            {
                "zip_code": row[0],
                "request_id": row[1],
                "sources_queried": json.loads(row[2]),
                "chosen_source": row[3],
                "cache_hit": bool(row[4]),
                "processing_time_ms": row[5],
                "error_code": row[6],
                "confidence": row[7],
                "source_errors": json.loads(row[8]) if row[8] else {},
                "validated_at": row[9],
            }
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class PostgresTerritoryStore(TerritoryStore):
    """PostgreSQL store backed by a psycopg2 thread-safe connection pool."""

    def __init__(self, dsn: str, min_connections: int = 1, max_connections: int = 10):
        try:
            self._pool = ThreadedConnectionPool(min_connections, max_connections, dsn)
        except psycopg2.Error as e:
            raise PersistenceError(f"Cannot connect to PostgreSQL: {e}") from e
        self._init_db()

    def _run(self, sql: str, params=(), fetch: bool = False):
        try:
            conn = self._pool.getconn()
        except psycopg2.Error as e:
            raise PersistenceError(f"PostgreSQL pool exhausted or unavailable: {e}") from e
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                rows = cursor.fetchall() if fetch else None
            conn.commit()
            return rows
        except psycopg2.Error as e:
            conn.rollback()
            raise PersistenceError(f"PostgreSQL error: {e}") from e
        finally:
            self._pool.putconn(conn)

    def _init_db(self):
        self._run('''
            CREATE TABLE IF NOT EXISTS territory_resolutions (
                zip_code VARCHAR(5) PRIMARY KEY,
                city_slug TEXT NOT NULL,
                city_display_name TEXT NOT NULL,
                utility_id TEXT NOT NULL,
                utility_name TEXT NOT NULL,
                market_type TEXT NOT NULL,
                confidence INTEGER NOT NULL,
                data_source TEXT NOT NULL,
                resolved_at TIMESTAMPTZ NOT NULL,
                next_revalidation_at TIMESTAMPTZ NOT NULL,
                conflicts TEXT
            )
        ''')
        self._run('''
            CREATE TABLE IF NOT EXISTS resolution_audit_log (
                id BIGSERIAL PRIMARY KEY,
                zip_code TEXT NOT NULL,
                request_id TEXT NOT NULL,
                sources_queried TEXT NOT NULL,
                chosen_source TEXT,
                cache_hit BOOLEAN NOT NULL,
                processing_time_ms INTEGER NOT NULL,
                error_code TEXT,
                confidence INTEGER,
                source_errors TEXT,
                validated_at TIMESTAMPTZ NOT NULL
            )
        ''')
        self._run("CREATE INDEX IF NOT EXISTS idx_resolutions_confidence ON territory_resolutions(confidence)")
        self._run("CREATE INDEX IF NOT EXISTS idx_audit_zip ON resolution_audit_log(zip_code)")

    def upsert(self, result: ResolutionResult) -> None:
        self._run(
            f'''
            INSERT INTO territory_resolutions ({RESULT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (zip_code) DO UPDATE SET
                city_slug = EXCLUDED.city_slug,
                city_display_name = EXCLUDED.city_display_name,
                utility_id = EXCLUDED.utility_id,
                utility_name = EXCLUDED.utility_name,
                market_type = EXCLUDED.market_type,
                confidence = EXCLUDED.confidence,
                data_source = EXCLUDED.data_source,
                resolved_at = EXCLUDED.resolved_at,
                next_revalidation_at = EXCLUDED.next_revalidation_at,
                conflicts = EXCLUDED.conflicts
            ''',
            (
                result.zip_code,
                result.city_slug,
                result.city_display_name,
                result.utility_id,
                result.utility_name,
                result.market_type.value,
                result.confidence,
                result.data_source,
                result.resolved_at,
                result.next_revalidation_at,
                _conflicts_json(result),
            ),
        )

    def get(self, zip_code: str) -> Optional[ResolutionResult]:
        rows = self._run(
            f"SELECT {RESULT_COLUMNS} FROM territory_resolutions WHERE zip_code = %s",
            (zip_code,),
            fetch=True,
        )
        return _result_from_row(rows[0]) if rows else None

    def find_by_prefix(
        self, prefix: str, min_confidence: int = 0, limit: Optional[int] = None
    ) -> List[ResolutionResult]:
        sql = (
            f"SELECT {RESULT_COLUMNS} FROM territory_resolutions "
            "WHERE zip_code LIKE %s AND confidence >= %s "
            "ORDER BY confidence DESC, zip_code ASC"
        )
        params: List[Any] = [_check_prefix(prefix) + "%", min_confidence]
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)
        rows = self._run(sql, params, fetch=True)
        return [_result_from_row(row) for row in rows]

    def append_audit(self, entry: AuditLogEntry) -> None:
        self._run(
            '''
            INSERT INTO resolution_audit_log
                (zip_code, request_id, sources_queried, chosen_source, cache_hit,
                 processing_time_ms, error_code, confidence, source_errors, validated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ''',
            (
                entry.zip_code,
                entry.request_id,
                json.dumps(list(entry.sources_queried)),
                entry.chosen_source,
                entry.cache_hit,
                entry.processing_time_ms,
                entry.error_code,
                entry.confidence,
                json.dumps(entry.source_errors),
                entry.validated_at,
            ),
        )

    def recent_audit(self, zip_code: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        sql = (
            "SELECT zip_code, request_id, sources_queried, chosen_source, cache_hit, "
            "processing_time_ms, error_code, confidence, source_errors, validated_at "
            "FROM resolution_audit_log"
        )
        params: List[Any] = []
        if zip_code is not None:
            sql += " WHERE zip_code = %s"
            params.append(zip_code)
        sql += " ORDER BY id DESC LIMIT %s"
        params.append(limit)
        rows = self._run(sql, params, fetch=True)
        return [
            {
                "zip_code": row[0],
                "request_id": row[1],
                "sources_queried": json.loads(row[2]),
                "chosen_source": row[3],
                "cache_hit": bool(row[4]),
                "processing_time_ms": row[5],
                "error_code": row[6],
                "confidence": row[7],
                "source_errors": json.loads(row[8]) if row[8] else {},
                "validated_at": row[9].isoformat() if isinstance(row[9], datetime) else row[9],
            }
            for row in rows
        ]

    def close(self) -> None:
        self._pool.closeall()


def create_store(database_url: str) -> TerritoryStore:
    """
    Build a store from a URL.

    sqlite:///relative/path.db, sqlite:////absolute/path.db and
    sqlite:///:memory: select SQLite; postgres:// and postgresql://
    select PostgreSQL.
    """
    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresTerritoryStore(database_url)
    if database_url.startswith("sqlite:///"):
        return SQLiteTerritoryStore(database_url[len("sqlite:///"):])
    raise ValueError(f"Unsupported database URL: {database_url}")
