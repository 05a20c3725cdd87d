"""Storage backends for user usage records."""

from __future__ import annotations

from dataclasses import replace
from threading import Lock
from typing import Dict, Iterator, Optional, Protocol
import sqlite3

from querykeeper.models import UserUsageRecord


class StorageError(Exception):
    """Raised when the record store is unreachable or corrupt."""
    pass


class RecordStore(Protocol):
    """Storage backend interface."""

    def get(self, user_id: str) -> Optional[UserUsageRecord]:
        ...

    def commit(self, record: UserUsageRecord) -> UserUsageRecord:
        ...

    def iterate_all(self) -> Iterator[UserUsageRecord]:
        ...

    def delete(self, user_id: str) -> bool:
        ...

    def close(self) -> None:
        ...


class InMemoryStorage:
    """In-memory storage backend (default for tests)."""

    def __init__(self):
        self._records: Dict[str, UserUsageRecord] = {}
        self._lock = Lock()

    def get(self, user_id: str) -> Optional[UserUsageRecord]:
        with self._lock:
            record = self._records.get(user_id)
        return replace(record) if record is not None else None

    def commit(self, record: UserUsageRecord) -> UserUsageRecord:
        with self._lock:
            self._records[record.user_id] = replace(record)
        return record

    def iterate_all(self) -> Iterator[UserUsageRecord]:
        with self._lock:
            snapshot = list(self._records.values())
        for record in snapshot:
            yield replace(record)

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._records.pop(user_id, None) is not None

    def close(self) -> None:
        pass

    def __len__(self) -> int:
        return len(self._records)


class SQLiteStorage:
    """SQLite-backed storage backend."""

    def __init__(self, db_path: str = "querykeeper.db"):
        self._lock = Lock()
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._init_schema()
        except sqlite3.Error as exc:
            raise StorageError(f"Could not open record store at {db_path}: {exc}") from exc

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_usage (
                user_id TEXT PRIMARY KEY,
                total_queries INTEGER NOT NULL,
                queries_remaining INTEGER NOT NULL,
                expiration INTEGER,
                whitelisted INTEGER NOT NULL,
                blacklisted INTEGER NOT NULL,
                thread_id TEXT NOT NULL DEFAULT ''
            )
            """
        )
        self._conn.commit()

    def get(self, user_id: str) -> Optional[UserUsageRecord]:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT * FROM user_usage WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read record for {user_id}: {exc}") from exc
        if not row:
            return None
        return self._row_to_record(row)

    def commit(self, record: UserUsageRecord) -> UserUsageRecord:
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT INTO user_usage (user_id, total_queries, queries_remaining,
                                            expiration, whitelisted, blacklisted, thread_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        total_queries=excluded.total_queries,
                        queries_remaining=excluded.queries_remaining,
                        expiration=excluded.expiration,
                        whitelisted=excluded.whitelisted,
                        blacklisted=excluded.blacklisted,
                        thread_id=excluded.thread_id
                    """,
                    (
                        record.user_id,
                        record.total_queries,
                        record.queries_remaining,
                        record.expiration,
                        1 if record.whitelisted else 0,
                        1 if record.blacklisted else 0,
                        record.thread_id,
                    ),
                )
                self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to commit record for {record.user_id}: {exc}") from exc
        return record

    def _row_to_record(self, row: sqlite3.Row) -> UserUsageRecord:
        return UserUsageRecord(
            user_id=row["user_id"],
            total_queries=row["total_queries"],
            queries_remaining=row["queries_remaining"],
            expiration=row["expiration"],
            whitelisted=bool(row["whitelisted"]),
            blacklisted=bool(row["blacklisted"]),
            thread_id=row["thread_id"] or "",
        )

    def iterate_all(self) -> Iterator[UserUsageRecord]:
        """Yield every record in batches; each call starts a fresh pass."""
        last_id = None
        while True:
            try:
                with self._lock:
                    if last_id is None:
                        rows = self._conn.execute(
                            "SELECT * FROM user_usage ORDER BY user_id LIMIT 500"
                        ).fetchall()
                    else:
                        rows = self._conn.execute(
                            "SELECT * FROM user_usage WHERE user_id > ? ORDER BY user_id LIMIT 500",
                            (last_id,),
                        ).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to scan records: {exc}") from exc
            if not rows:
                return
            for row in rows:
                yield self._row_to_record(row)
            last_id = rows[-1]["user_id"]

    def delete(self, user_id: str) -> bool:
        try:
            with self._lock:
                cur = self._conn.execute("DELETE FROM user_usage WHERE user_id = ?", (user_id,))
                self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete record for {user_id}: {exc}") from exc
        return cur.rowcount > 0

    def close(self) -> None:
        self._conn.close()
