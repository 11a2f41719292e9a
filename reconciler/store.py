from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, TypeVar

from reconciler.cache import TTLCache
from schemas.entities import Record, utc_now

R = TypeVar("R", bound=Record)

logger = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class AppendOnlyRecordError(ValueError):
    pass


class StaleRecordError(RuntimeError):
    def __init__(self, kind: str, record_id: str, expected: Mapping[str, Any]) -> None:
        super().__init__(f"{kind} {record_id} changed since it was read (expected {dict(expected)})")
        self.kind = kind
        self.record_id = record_id
        self.expected = dict(expected)


class RecordStore(Protocol):
    def get(self, model: type[R], record_id: str, *, fresh: bool = False) -> R | None:
        ...

    def require(self, model: type[R], record_id: str, *, fresh: bool = False) -> R:
        ...

    def find(
        self,
        model: type[R],
        predicate: Callable[[R], bool] | None = None,
        *,
        fresh: bool = False,
    ) -> list[R]:
        ...

    def find_one(self, model: type[R], predicate: Callable[[R], bool]) -> R | None:
        ...

    def insert(self, record: R) -> R:
        ...

    def update(self, record: R, *, expected: Mapping[str, Any] | None = None) -> R:
        ...

    def delete(self, model: type[Record], record_id: str) -> bool:
        ...


class SqliteRecordStore:
    """Document-style store: one JSON body per (kind, id) row.

    Reads go through the injected cache unless the caller asks for a fresh
    read; every write invalidates the row key and the per-kind listing key for
    the written record. Rows written by another process are only seen once the
    cached entry expires, so state checks that race other processes read fresh.
    """

    def __init__(
        self,
        db_path: str | Path = "data/reconciler.db",
        *,
        cache: TTLCache | None = None,
    ) -> None:
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._cache = cache if cache is not None else TTLCache(ttl_seconds=0)
        self._ensure_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    kind TEXT NOT NULL,
                    id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    PRIMARY KEY (kind, id)
                )
                """
            )

    @staticmethod
    def _row_key(kind: str, record_id: str) -> str:
        return f"{kind}:{record_id}"

    @staticmethod
    def _list_key(kind: str) -> str:
        return f"{kind}:*"

    def get(self, model: type[R], record_id: str, *, fresh: bool = False) -> R | None:
        key = self._row_key(model.kind, record_id)
        cached = None if fresh else self._cache.get(key)
        if cached is not None:
            return cached.model_copy(deep=True)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT body FROM records WHERE kind = ? AND id = ?",
                (model.kind, record_id),
            ).fetchone()
        if row is None:
            return None
        record = model.model_validate_json(row[0])
        self._cache.set(key, record)
        return record.model_copy(deep=True)

    def require(self, model: type[R], record_id: str, *, fresh: bool = False) -> R:
        record = self.get(model, record_id, fresh=fresh)
        if record is None:
            raise RecordNotFoundError(model.kind, record_id)
        return record

    def find(
        self,
        model: type[R],
        predicate: Callable[[R], bool] | None = None,
        *,
        fresh: bool = False,
    ) -> list[R]:
        key = self._list_key(model.kind)
        records = None if fresh else self._cache.get(key)
        if records is None:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT body FROM records WHERE kind = ? ORDER BY created_at_utc, rowid",
                    (model.kind,),
                ).fetchall()
            records = [model.model_validate_json(row[0]) for row in rows]
            self._cache.set(key, records)
        return [r.model_copy(deep=True) for r in records if predicate is None or predicate(r)]

    def find_one(self, model: type[R], predicate: Callable[[R], bool]) -> R | None:
        matches = self.find(model, predicate)
        return matches[0] if matches else None

    def insert(self, record: R) -> R:
        now = utc_now()
        stored = record.model_copy(update={"updated_at": now})
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO records (kind, id, body, created_at_utc, updated_at_utc)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        stored.kind,
                        stored.id,
                        stored.model_dump_json(),
                        stored.created_at.isoformat(),
                        now.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"{stored.kind} already exists: {stored.id}") from exc
        self._cache.invalidate(self._row_key(stored.kind, stored.id), self._list_key(stored.kind))
        return stored

    def update(self, record: R, *, expected: Mapping[str, Any] | None = None) -> R:
        """Overwrite ``record``; with ``expected``, only while the stored body still
        holds those field values (compare-and-set against concurrent writers)."""
        if record.append_only:
            raise AppendOnlyRecordError(f"{record.kind} records cannot be updated")
        now = utc_now()
        stored = record.model_copy(update={"updated_at": now})
        sql = "UPDATE records SET body = ?, updated_at_utc = ? WHERE kind = ? AND id = ?"
        params: list[Any] = [stored.model_dump_json(), now.isoformat(), stored.kind, stored.id]
        for field_name, value in (expected or {}).items():
            sql += " AND json_extract(body, ?) IS ?"
            params.extend([f"$.{field_name}", value])
        with self._connect() as conn:
            cursor = conn.execute(sql, params)
            missing = cursor.rowcount == 0 and conn.execute(
                "SELECT 1 FROM records WHERE kind = ? AND id = ?", (stored.kind, stored.id)
            ).fetchone() is None
        self._cache.invalidate(self._row_key(stored.kind, stored.id), self._list_key(stored.kind))
        if missing:
            raise RecordNotFoundError(stored.kind, stored.id)
        if cursor.rowcount == 0:
            raise StaleRecordError(stored.kind, stored.id, expected or {})
        return stored

    def delete(self, model: type[Record], record_id: str) -> bool:
        if model.append_only:
            raise AppendOnlyRecordError(f"{model.kind} records cannot be deleted")
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE kind = ? AND id = ?", (model.kind, record_id)
            )
        self._cache.invalidate(self._row_key(model.kind, record_id), self._list_key(model.kind))
        return cursor.rowcount > 0

    def count(self, model: type[Record]) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM records WHERE kind = ?", (model.kind,)
            ).fetchone()
        return int(row[0])
