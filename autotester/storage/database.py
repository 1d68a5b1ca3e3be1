"""SQLite persistence layer: a bucketed record store plus audit events."""
from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import StorageConfig
from ..errors import StoreError

Record = Dict[str, Any]
Visitor = Callable[[str, Record], None]


@dataclass(slots=True)
class AuditEvent:
    level: str
    category: str
    message: str
    payload: Optional[Dict[str, Any]] = None


class Database:
    """High-level wrapper around the project SQLite schema.

    Records are JSON documents addressed by ``(bucket, id)``. Identifiers
    handed out by :meth:`create` come from a per-bucket sequence, so they are
    never reused even if the bucket is edited by hand.
    """

    def __init__(self, config: StorageConfig):
        self._config = config
        self._path = config.database_path.expanduser()
        if config.ensure_directories:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._connection is None:
                try:
                    self._connection = sqlite3.connect(str(self._path), check_same_thread=False)
                except sqlite3.Error as exc:
                    raise StoreError(f"cannot open database {self._path}: {exc}") from exc
                self._connection.row_factory = sqlite3.Row
            return self._connection

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    def initialise(self) -> None:
        with self._guard() as conn:
            with conn:
                conn.executescript(
                    """
                    PRAGMA journal_mode=WAL;
                    CREATE TABLE IF NOT EXISTS buckets (
                        name TEXT PRIMARY KEY,
                        sequence INTEGER NOT NULL DEFAULT 0
                    );
                    CREATE TABLE IF NOT EXISTS records (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        bucket TEXT NOT NULL,
                        id TEXT NOT NULL,
                        payload_json TEXT NOT NULL,
                        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                        updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE(bucket, id)
                    );
                    CREATE TABLE IF NOT EXISTS audit_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        level TEXT NOT NULL,
                        category TEXT NOT NULL,
                        message TEXT NOT NULL,
                        payload_json TEXT,
                        created_at TEXT DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )
                self._apply_migrations(conn)

    def get(self, bucket: str, record_id: str) -> Optional[Record]:
        with self._guard() as conn:
            row = conn.execute(
                "SELECT payload_json FROM records WHERE bucket = ? AND id = ?",
                (bucket, str(record_id)),
            ).fetchone()
        if row is None:
            return None
        return json.loads(row['payload_json'])

    def list(self, bucket: str, visitor: Optional[Visitor] = None) -> List[Tuple[str, Record]]:
        """Return every record in *bucket* in insertion order.

        When *visitor* is given it is also called with ``(id, record)`` for
        each entry.
        """

        with self._guard() as conn:
            rows = conn.execute(
                "SELECT id, payload_json FROM records WHERE bucket = ? ORDER BY seq",
                (bucket,),
            ).fetchall()
        entries = [(row['id'], json.loads(row['payload_json'])) for row in rows]
        if visitor is not None:
            for record_id, record in entries:
                visitor(record_id, record)
        return entries

    def create(self, bucket: str, factory: Callable[[str], Record]) -> str:
        """Allocate the next identifier in *bucket* and store ``factory(id)``."""

        with self._guard() as conn:
            with conn:
                conn.execute(
                    "INSERT INTO buckets (name, sequence) VALUES (?, 1) "
                    "ON CONFLICT(name) DO UPDATE SET sequence = sequence + 1",
                    (bucket,),
                )
                sequence = conn.execute("SELECT sequence FROM buckets WHERE name = ?", (bucket,)).fetchone()[0]
                record_id = str(sequence)
                payload = json.dumps(factory(record_id), ensure_ascii=False)
                conn.execute(
                    "INSERT INTO records (bucket, id, payload_json) VALUES (?, ?, ?)",
                    (bucket, record_id, payload),
                )
        return record_id

    def update(self, bucket: str, record_id: str, record: Record) -> None:
        """Overwrite (or insert) the record stored under ``(bucket, record_id)``."""

        payload = json.dumps(record, ensure_ascii=False)
        with self._guard() as conn:
            with conn:
                conn.execute(
                    """
                    INSERT INTO records (bucket, id, payload_json) VALUES (?, ?, ?)
                    ON CONFLICT(bucket, id)
                    DO UPDATE SET payload_json = excluded.payload_json, updated_at = CURRENT_TIMESTAMP
                    """,
                    (bucket, str(record_id), payload),
                )

    def append_audit_event(self, event: AuditEvent) -> None:
        payload_json = None
        if event.payload is not None:
            payload_json = json.dumps(event.payload, ensure_ascii=False, default=str)
        with self._guard() as conn:
            with conn:
                conn.execute(
                    """
                    INSERT INTO audit_events (level, category, message, payload_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    (event.level, event.category, event.message, payload_json),
                )

    def recent_audit_events(
        self,
        *,
        limit: int = 20,
        since_id: Optional[int] = None,
    ) -> list[Dict[str, Any]]:
        """Return the most recent audit events, newest first."""

        try:
            limit_value = int(limit)
        except (TypeError, ValueError):
            limit_value = 20
        limit_value = max(1, min(limit_value, 500))

        query = ["SELECT id, level, category, message, payload_json, created_at FROM audit_events"]
        params: list[Any] = []
        if since_id is not None:
            try:
                since_value = int(since_id)
            except (TypeError, ValueError):
                pass
            else:
                query.append('WHERE id > ?')
                params.append(since_value)
        query.append('ORDER BY id DESC')
        query.append('LIMIT ?')
        params.append(limit_value)

        with self._guard() as conn:
            rows = conn.execute(' '.join(query), params).fetchall()

        events: list[Dict[str, Any]] = []
        for row in rows:
            payload_json = row['payload_json']
            events.append({
                'id': row['id'],
                'level': row['level'],
                'category': row['category'],
                'message': row['message'],
                'payload': json.loads(payload_json) if payload_json else None,
                'created_at': row['created_at'],
            })
        return events

    def _guard(self) -> "_Guarded":
        return _Guarded(self)

    def _apply_migrations(self, conn: sqlite3.Connection) -> None:
        row = conn.execute('PRAGMA user_version').fetchone()
        current_version = int(row[0]) if row is not None else 0
        if current_version < 1:
            conn.executescript(
                """
                CREATE INDEX IF NOT EXISTS idx_records_bucket_seq ON records(bucket, seq);
                CREATE INDEX IF NOT EXISTS idx_audit_events_category ON audit_events(category);
                """
            )
            conn.execute('PRAGMA user_version = 1')


class _Guarded:
    """Hold the database lock and translate sqlite errors into StoreError."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def __enter__(self) -> sqlite3.Connection:
        self._database._lock.acquire()  # pylint: disable=protected-access
        try:
            return self._database.connect()
        except BaseException:
            self._database._lock.release()  # pylint: disable=protected-access
            raise

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._database._lock.release()  # pylint: disable=protected-access
        if exc is not None and isinstance(exc, sqlite3.Error):
            raise StoreError(str(exc)) from exc
        return False
