"""Persistence backends for block records.

Every backend implements ``update(domain, fn)`` as one atomic
read-modify-write so concurrent reporters never lose increments.
``fn`` receives the current record (or None) and returns the new record,
or None to delete it.
"""
from __future__ import annotations

import json
import os
import sqlite3
import tempfile
import threading
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

from recipe_orchestrator.models.block import BlockRecord

logger = structlog.get_logger(__name__)

UpdateFn = Callable[[BlockRecord | None], BlockRecord | None]


@runtime_checkable
class BlockStore(Protocol):
    """Storage interface used by ``BlockRegistry``."""

    def load(self) -> dict[str, BlockRecord]: ...

    def save(self, records: dict[str, BlockRecord]) -> None: ...

    def get(self, domain: str) -> BlockRecord | None: ...

    def update(self, domain: str, fn: UpdateFn) -> BlockRecord | None: ...

    def delete(self, domain: str) -> bool: ...


class MemoryBlockStore:
    """In-process store for tests and ephemeral runs."""

    def __init__(self, records: dict[str, BlockRecord] | None = None) -> None:
        self._records: dict[str, BlockRecord] = dict(records or {})
        self._lock = threading.Lock()

    def load(self) -> dict[str, BlockRecord]:
        with self._lock:
            return {d: r.model_copy() for d, r in self._records.items()}

    def save(self, records: dict[str, BlockRecord]) -> None:
        with self._lock:
            self._records = dict(records)

    def get(self, domain: str) -> BlockRecord | None:
        with self._lock:
            record = self._records.get(domain)
            return record.model_copy() if record else None

    def update(self, domain: str, fn: UpdateFn) -> BlockRecord | None:
        with self._lock:
            current = self._records.get(domain)
            result = fn(current.model_copy() if current else None)
            if result is None:
                self._records.pop(domain, None)
            else:
                self._records[domain] = result
            return result

    def delete(self, domain: str) -> bool:
        with self._lock:
            return self._records.pop(domain, None) is not None


class JsonFileBlockStore:
    """Single JSON document keyed by domain.

    Safe across threads of one process. Writes go to a temp file in the same
    directory and are renamed into place, so readers never see a torn file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, BlockRecord]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as e:
            logger.warning("block_store.corrupt", path=str(self.path), error=str(e))
            return {}
        return {domain: BlockRecord.model_validate(data) for domain, data in raw.items()}

    def _write(self, records: dict[str, BlockRecord]) -> None:
        payload = {domain: r.model_dump(mode="json") for domain, r in records.items()}
        data = json.dumps(payload, indent=2, sort_keys=True).encode("utf-8")
        fd, tmp_path = tempfile.mkstemp(prefix=self.path.name + ".", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    def load(self) -> dict[str, BlockRecord]:
        with self._lock:
            return self._read()

    def save(self, records: dict[str, BlockRecord]) -> None:
        with self._lock:
            self._write(records)

    def get(self, domain: str) -> BlockRecord | None:
        with self._lock:
            return self._read().get(domain)

    def update(self, domain: str, fn: UpdateFn) -> BlockRecord | None:
        with self._lock:
            records = self._read()
            result = fn(records.get(domain))
            if result is None:
                records.pop(domain, None)
            else:
                records[domain] = result
            self._write(records)
            return result

    def delete(self, domain: str) -> bool:
        with self._lock:
            records = self._read()
            if records.pop(domain, None) is None:
                return False
            self._write(records)
            return True


class SQLiteBlockStore:
    """One row per domain; safe across processes sharing the file.

    ``update`` runs inside ``BEGIN IMMEDIATE`` so the read and the write are
    serialized against other writers.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        with self._get_conn() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def _init_schema(self) -> None:
        with self._get_conn() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS blocked_domains (
                    domain TEXT PRIMARY KEY,
                    data_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> BlockRecord:
        return BlockRecord.model_validate_json(row["data_json"])

    @staticmethod
    def _upsert(conn: sqlite3.Connection, record: BlockRecord) -> None:
        conn.execute(
            """
            INSERT INTO blocked_domains (domain, data_json, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(domain) DO UPDATE SET
                data_json = excluded.data_json,
                updated_at = excluded.updated_at
            """,
            (record.domain, record.model_dump_json(), record.last_attempt_at.isoformat()),
        )

    def load(self) -> dict[str, BlockRecord]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT domain, data_json FROM blocked_domains").fetchall()
        return {row["domain"]: self._row_to_record(row) for row in rows}

    def save(self, records: dict[str, BlockRecord]) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM blocked_domains")
            for record in records.values():
                self._upsert(conn, record)

    def get(self, domain: str) -> BlockRecord | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT data_json FROM blocked_domains WHERE domain = ?", (domain,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def update(self, domain: str, fn: UpdateFn) -> BlockRecord | None:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT data_json FROM blocked_domains WHERE domain = ?", (domain,)
            ).fetchone()
            result = fn(self._row_to_record(row) if row else None)
            if result is None:
                conn.execute("DELETE FROM blocked_domains WHERE domain = ?", (domain,))
            else:
                self._upsert(conn, result)
            return result

    def delete(self, domain: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM blocked_domains WHERE domain = ?", (domain,))
            return cur.rowcount > 0


def open_store(kind: str, path: str | Path | None = None) -> BlockStore:
    """Build a store by name: ``memory``, ``json`` or ``sqlite``."""
    if kind == "memory":
        return MemoryBlockStore()
    if path is None:
        raise ValueError(f"{kind} block store requires a path")
    if kind == "json":
        return JsonFileBlockStore(path)
    if kind == "sqlite":
        return SQLiteBlockStore(path)
    raise ValueError(f"Unknown block store: {kind}")
