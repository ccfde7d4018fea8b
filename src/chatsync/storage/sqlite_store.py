"""
SQLite store for the local replica.

Human-inspectable, ACID-compliant persistence for records, the change
journal, conflicts and the sync cursor.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from chatsync.storage.base import DELETED_FLAG, LocalStore, entity_key
from chatsync.sync.models import ChangeAction, Conflict, ConflictStatus, EntityType, LocalChange


class SQLiteStore(LocalStore):
    """
    SQLite-based local store.

    Features:
    - Human-inspectable database
    - ACID transactions, every write committed before returning
    - Journal ordered by an autoincrement sequence
    - Portable single-file database
    """

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    async def initialize(self) -> None:
        """Initialize SQLite database and tables."""
        if self._db_path.parent != Path("."):
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                entity_type TEXT NOT NULL,
                id TEXT NOT NULL,
                data_json TEXT NOT NULL,
                deleted INTEGER DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (entity_type, id)
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS journal (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                client_id TEXT NOT NULL UNIQUE,
                entity_type TEXT NOT NULL,
                action TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                force INTEGER DEFAULT 0
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS conflicts (
                client_id TEXT PRIMARY KEY,
                entity_type TEXT NOT NULL,
                conflict_type TEXT NOT NULL,
                local_json TEXT NOT NULL,
                remote_json TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_records_type ON records(entity_type, deleted)")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_conflicts_status ON conflicts(status)")

        self._conn.commit()

    async def close(self) -> None:
        """Close SQLite connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if not self._conn:
            raise RuntimeError("Store not initialized")
        return self._conn

    # Records

    async def upsert_record(
        self,
        entity_type: Enum | str,
        record_id: str,
        data: dict[str, Any],
        merge: bool = False,
    ) -> dict[str, Any]:
        record = dict(data)
        if merge:
            existing = await self.get_record(entity_type, record_id, include_deleted=True)
            if existing is not None:
                record = {**existing, **record}
        record["id"] = record_id
        record.pop(DELETED_FLAG, None)

        self.conn.execute(
            """
            INSERT OR REPLACE INTO records (entity_type, id, data_json, deleted, updated_at)
            VALUES (?, ?, ?, 0, ?)
            """,
            (entity_key(entity_type), record_id, json.dumps(record, default=str), datetime.now().isoformat()),
        )
        self.conn.commit()
        return record

    async def get_record(
        self,
        entity_type: Enum | str,
        record_id: str,
        include_deleted: bool = False,
    ) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT data_json, deleted FROM records WHERE entity_type = ? AND id = ?",
            (entity_key(entity_type), record_id),
        ).fetchone()
        if row is None or (row["deleted"] and not include_deleted):
            return None
        return self._row_to_record(row)

    async def delete_record(self, entity_type: Enum | str, record_id: str) -> bool:
        cursor = self.conn.execute(
            "UPDATE records SET deleted = 1, updated_at = ? WHERE entity_type = ? AND id = ? AND deleted = 0",
            (datetime.now().isoformat(), entity_key(entity_type), record_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    async def purge_record(self, entity_type: Enum | str, record_id: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM records WHERE entity_type = ? AND id = ?",
            (entity_key(entity_type), record_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    async def list_records(
        self,
        entity_type: Enum | str,
        include_deleted: bool = False,
    ) -> list[dict[str, Any]]:
        sql = "SELECT data_json, deleted FROM records WHERE entity_type = ?"
        if not include_deleted:
            sql += " AND deleted = 0"
        rows = self.conn.execute(sql + " ORDER BY rowid", (entity_key(entity_type),)).fetchall()
        return [self._row_to_record(row) for row in rows]

    # Journal

    async def append_change(self, change: LocalChange) -> None:
        self.conn.execute(
            """
            INSERT INTO journal (client_id, entity_type, action, payload_json, created_at, attempts, force)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                change.client_id,
                change.entity_type.value,
                change.action.value,
                json.dumps(change.payload, default=str),
                change.created_at.isoformat(),
                change.attempts,
                1 if change.force else 0,
            ),
        )
        self.conn.commit()

    async def list_changes(self, limit: int | None = None) -> list[LocalChange]:
        sql = "SELECT * FROM journal ORDER BY seq"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        return [self._row_to_change(row) for row in self.conn.execute(sql, params).fetchall()]

    async def get_change(self, client_id: str) -> LocalChange | None:
        row = self.conn.execute("SELECT * FROM journal WHERE client_id = ?", (client_id,)).fetchone()
        return self._row_to_change(row) if row else None

    async def update_change(self, change: LocalChange) -> None:
        cursor = self.conn.execute(
            """
            UPDATE journal SET
                entity_type = ?, action = ?, payload_json = ?, attempts = ?, force = ?
            WHERE client_id = ?
            """,
            (
                change.entity_type.value,
                change.action.value,
                json.dumps(change.payload, default=str),
                change.attempts,
                1 if change.force else 0,
                change.client_id,
            ),
        )
        self.conn.commit()
        if cursor.rowcount == 0:
            raise KeyError(change.client_id)

    async def delete_change(self, client_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM journal WHERE client_id = ?", (client_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    async def count_changes(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM journal").fetchone()[0]

    # Conflicts

    async def save_conflict(self, conflict: Conflict) -> None:
        self.conn.execute(
            """
            INSERT OR REPLACE INTO conflicts (
                client_id, entity_type, conflict_type, local_json, remote_json, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conflict.client_id,
                conflict.entity_type.value,
                conflict.conflict_type,
                json.dumps(conflict.local_payload, default=str),
                json.dumps(conflict.remote_payload, default=str) if conflict.remote_payload is not None else None,
                conflict.status.value,
                conflict.created_at.isoformat(),
            ),
        )
        self.conn.commit()

    async def get_conflict(self, client_id: str) -> Conflict | None:
        row = self.conn.execute("SELECT * FROM conflicts WHERE client_id = ?", (client_id,)).fetchone()
        return self._row_to_conflict(row) if row else None

    async def list_conflicts(self, status: ConflictStatus | None = None) -> list[Conflict]:
        if status is None:
            rows = self.conn.execute("SELECT * FROM conflicts ORDER BY created_at").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM conflicts WHERE status = ? ORDER BY created_at",
                (status.value,),
            ).fetchall()
        return [self._row_to_conflict(row) for row in rows]

    async def delete_conflict(self, client_id: str) -> bool:
        cursor = self.conn.execute("DELETE FROM conflicts WHERE client_id = ?", (client_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    async def count_conflicts(self, status: ConflictStatus | None = None) -> int:
        if status is None:
            return self.conn.execute("SELECT COUNT(*) FROM conflicts").fetchone()[0]
        return self.conn.execute(
            "SELECT COUNT(*) FROM conflicts WHERE status = ?",
            (status.value,),
        ).fetchone()[0]

    # Key/value

    async def get_value(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    async def set_value(self, key: str, value: str | None) -> None:
        if value is None:
            self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        else:
            self.conn.execute("INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, value))
        self.conn.commit()

    # Row conversion

    def _row_to_record(self, row: sqlite3.Row) -> dict[str, Any]:
        record = json.loads(row["data_json"])
        if row["deleted"]:
            record[DELETED_FLAG] = True
        return record

    def _row_to_change(self, row: sqlite3.Row) -> LocalChange:
        return LocalChange(
            client_id=row["client_id"],
            entity_type=EntityType(row["entity_type"]),
            action=ChangeAction(row["action"]),
            payload=json.loads(row["payload_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            attempts=row["attempts"] or 0,
            force=bool(row["force"]),
        )

    def _row_to_conflict(self, row: sqlite3.Row) -> Conflict:
        return Conflict(
            client_id=row["client_id"],
            entity_type=EntityType(row["entity_type"]),
            local_payload=json.loads(row["local_json"]),
            remote_payload=json.loads(row["remote_json"]) if row["remote_json"] else None,
            conflict_type=row["conflict_type"],
            status=ConflictStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
