from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(raw: Optional[str], default: Any) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


@dataclass
class ProfileRow:
    id: str
    external_id: str
    summary: Optional[str]
    summary_version: int
    summary_updated_at: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class TraitRow:
    id: str
    profile_id: str
    key: str
    category: Optional[str]
    value_type: str
    value: Any
    confidence: Optional[float]
    source: Optional[str]
    source_message_ids: List[str]
    created_at: str
    updated_at: str


@dataclass
class MemoryRow:
    id: str
    profile_id: str
    content: str
    type: str
    importance: Optional[float]
    decay_factor: Optional[float]
    source_message_ids: List[str]
    created_at: str
    last_accessed_at: Optional[str]


@dataclass
class MessageRow:
    id: str
    profile_id: str
    role: str
    content: str
    request_id: Optional[str]
    model: Optional[str]
    processed: bool
    created_at: str


class SQLiteProfileStore:
    """SQLite-backed store for profiles and everything hanging off them.

    Tables:
    - profiles (one row per external id, holds the cached summary)
    - traits (one row per (profile, key); writes are upserts)
    - memories (extracted sentences with importance and decay)
    - messages (raw conversation history, trimmed by retention)

    Child rows are removed with their profile (ON DELETE CASCADE).
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = str(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._create_schema()

    def _create_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    id                 TEXT PRIMARY KEY,
                    external_id        TEXT NOT NULL UNIQUE,
                    summary            TEXT,
                    summary_version    INTEGER NOT NULL DEFAULT 0,
                    summary_updated_at TEXT,
                    created_at         TEXT NOT NULL,
                    updated_at         TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS traits (
                    id                 TEXT PRIMARY KEY,
                    profile_id         TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                    key                TEXT NOT NULL,
                    category           TEXT,
                    value_type         TEXT NOT NULL DEFAULT 'string',
                    value_json         TEXT,
                    confidence         REAL,
                    source             TEXT,
                    source_message_ids TEXT,
                    created_at         TEXT NOT NULL,
                    updated_at         TEXT NOT NULL,
                    UNIQUE (profile_id, key)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS memories (
                    id                 TEXT PRIMARY KEY,
                    profile_id         TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                    content            TEXT NOT NULL,
                    type               TEXT NOT NULL,
                    importance         REAL,
                    decay_factor       REAL NOT NULL DEFAULT 1.0,
                    source_message_ids TEXT,
                    created_at         TEXT NOT NULL,
                    last_accessed_at   TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id         TEXT PRIMARY KEY,
                    profile_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                    role       TEXT NOT NULL,
                    content    TEXT NOT NULL,
                    request_id TEXT,
                    model      TEXT,
                    processed  INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_traits_profile_id ON traits (profile_id)")
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_memories_profile_importance ON memories (profile_id, importance)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_memories_profile_content ON memories (profile_id, content)")
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_profile_created ON messages (profile_id, created_at)"
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_profile(row: sqlite3.Row) -> ProfileRow:
        return ProfileRow(
            id=row["id"],
            external_id=row["external_id"],
            summary=row["summary"],
            summary_version=row["summary_version"] or 0,
            summary_updated_at=row["summary_updated_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_trait(row: sqlite3.Row) -> TraitRow:
        return TraitRow(
            id=row["id"],
            profile_id=row["profile_id"],
            key=row["key"],
            category=row["category"],
            value_type=row["value_type"],
            value=_load_json(row["value_json"], None),
            confidence=row["confidence"],
            source=row["source"],
            source_message_ids=_load_json(row["source_message_ids"], []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> MemoryRow:
        return MemoryRow(
            id=row["id"],
            profile_id=row["profile_id"],
            content=row["content"],
            type=row["type"],
            importance=row["importance"],
            decay_factor=row["decay_factor"],
            source_message_ids=_load_json(row["source_message_ids"], []),
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> MessageRow:
        return MessageRow(
            id=row["id"],
            profile_id=row["profile_id"],
            role=row["role"],
            content=row["content"],
            request_id=row["request_id"],
            model=row["model"],
            processed=bool(row["processed"]),
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, profile_id: str) -> Optional[ProfileRow]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,))
            row = cur.fetchone()
            return self._row_to_profile(row) if row else None

    def get_profile_by_external_id(self, external_id: str) -> Optional[ProfileRow]:
        with self._lock:
            cur = self._conn.execute("SELECT * FROM profiles WHERE external_id = ?", (external_id,))
            row = cur.fetchone()
            return self._row_to_profile(row) if row else None

    def get_or_create_profile(self, external_id: str) -> ProfileRow:
        """Return the profile for ``external_id``, creating it on first reference.

        Two callers racing on a new id both attempt the insert; the loser hits the
        UNIQUE constraint and re-reads the winner's row.
        """
        existing = self.get_profile_by_external_id(external_id)
        if existing is not None:
            return existing

        now = _now()
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO profiles (id, external_id, summary_version, created_at, updated_at)
                    VALUES (?, ?, 0, ?, ?)
                    """,
                    (str(uuid.uuid4()), external_id, now, now),
                )
                self._conn.commit()
            except sqlite3.IntegrityError:
                self._conn.rollback()
                logger.debug("Profile %s created concurrently, re-reading", external_id)

        created = self.get_profile_by_external_id(external_id)
        if created is None:
            raise RuntimeError(f"Failed to create profile for external id {external_id!r}")
        return created

    def update_profile_summary(
        self,
        profile_id: str,
        summary: Optional[str],
        summary_version: int,
        summary_updated_at: Optional[str] = None,
    ) -> Optional[ProfileRow]:
        now = _now()
        with self._lock:
            cur = self._conn.execute(
                """
                UPDATE profiles
                SET summary = ?, summary_version = ?, summary_updated_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (summary, summary_version, summary_updated_at or now, now, profile_id),
            )
            self._conn.commit()
            if cur.rowcount == 0:
                return None
            row = self._conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)).fetchone()
            return self._row_to_profile(row) if row else None

    def list_profiles(
        self,
        limit: int = 20,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> Tuple[List[ProfileRow], int]:
        where = ""
        params: List[Any] = []
        if search:
            where = "WHERE external_id LIKE ? OR summary LIKE ?"
            pattern = f"%{search}%"
            params = [pattern, pattern]

        with self._lock:
            (total,) = self._conn.execute(f"SELECT COUNT(*) FROM profiles {where}", params).fetchone()
            cur = self._conn.execute(
                f"""
                SELECT * FROM profiles {where}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset],
            )
            return [self._row_to_profile(r) for r in cur.fetchall()], int(total)

    def delete_profile(self, profile_id: str) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM profiles WHERE id = ?", (profile_id,))
            self._conn.commit()
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Traits
    # ------------------------------------------------------------------

    def list_traits(self, profile_id: str) -> List[TraitRow]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM traits WHERE profile_id = ? ORDER BY key",
                (profile_id,),
            )
            return [self._row_to_trait(r) for r in cur.fetchall()]

    def upsert_trait(
        self,
        profile_id: str,
        key: str,
        value: Any,
        *,
        category: Optional[str],
        value_type: str,
        confidence: float,
        source: str,
        source_message_ids: Optional[Iterable[str]] = None,
    ) -> TraitRow:
        """Insert or overwrite the trait for (profile_id, key)."""
        now = _now()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO traits (
                    id, profile_id, key, category, value_type, value_json,
                    confidence, source, source_message_ids, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (profile_id, key) DO UPDATE SET
                    category = excluded.category,
                    value_type = excluded.value_type,
                    value_json = excluded.value_json,
                    confidence = excluded.confidence,
                    source = excluded.source,
                    source_message_ids = excluded.source_message_ids,
                    updated_at = excluded.updated_at
                """,
                (
                    str(uuid.uuid4()),
                    profile_id,
                    key,
                    category,
                    value_type,
                    json.dumps(value),
                    confidence,
                    source,
                    json.dumps(list(source_message_ids or [])),
                    now,
                    now,
                ),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT * FROM traits WHERE profile_id = ? AND key = ?",
                (profile_id, key),
            ).fetchone()
            return self._row_to_trait(row)

    def delete_trait(self, profile_id: str, key: str) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM traits WHERE profile_id = ? AND key = ?",
                (profile_id, key),
            )
            self._conn.commit()
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def find_memory_by_content(self, profile_id: str, content: str) -> Optional[MemoryRow]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM memories WHERE profile_id = ? AND content = ? LIMIT 1",
                (profile_id, content),
            ).fetchone()
            return self._row_to_memory(row) if row else None

    def insert_memories(self, profile_id: str, memories: List[Dict[str, Any]]) -> List[MemoryRow]:
        """Bulk insert. Each dict carries content, type, importance and optional source_message_ids."""
        if not memories:
            return []
        now = _now()
        ids = [str(uuid.uuid4()) for _ in memories]
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO memories (
                    id, profile_id, content, type, importance, decay_factor,
                    source_message_ids, created_at, last_accessed_at
                )
                VALUES (?, ?, ?, ?, ?, 1.0, ?, ?, NULL)
                """,
                [
                    (
                        memory_id,
                        profile_id,
                        m["content"],
                        m["type"],
                        m.get("importance"),
                        json.dumps(list(m.get("source_message_ids") or [])),
                        now,
                    )
                    for memory_id, m in zip(ids, memories)
                ],
            )
            self._conn.commit()
            placeholders = ",".join("?" for _ in ids)
            cur = self._conn.execute(
                f"SELECT * FROM memories WHERE id IN ({placeholders}) ORDER BY rowid",
                ids,
            )
            return [self._row_to_memory(r) for r in cur.fetchall()]

    def list_memories(
        self,
        profile_id: str,
        limit: int = 10,
        memory_type: Optional[str] = None,
        min_importance: float = 0.0,
    ) -> List[MemoryRow]:
        """Ranked by importance * decay_factor, newest first on ties."""
        clauses = ["profile_id = ?", "COALESCE(importance, 0.5) >= ?"]
        params: List[Any] = [profile_id, min_importance]
        if memory_type:
            clauses.append("type = ?")
            params.append(memory_type)
        params.append(limit)

        with self._lock:
            cur = self._conn.execute(
                f"""
                SELECT * FROM memories
                WHERE {" AND ".join(clauses)}
                ORDER BY COALESCE(importance, 0.5) * decay_factor DESC, created_at DESC, rowid DESC
                LIMIT ?
                """,
                params,
            )
            return [self._row_to_memory(r) for r in cur.fetchall()]

    def recent_memories(self, profile_id: str, limit: int = 10) -> List[MemoryRow]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM memories
                WHERE profile_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (profile_id, limit),
            )
            return [self._row_to_memory(r) for r in cur.fetchall()]

    def touch_memory(self, memory_id: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE memories SET last_accessed_at = ? WHERE id = ?",
                (_now(), memory_id),
            )
            self._conn.commit()

    def delete_memory(self, profile_id: str, memory_id: str) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM memories WHERE id = ? AND profile_id = ?",
                (memory_id, profile_id),
            )
            self._conn.commit()
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def insert_messages(
        self,
        profile_id: str,
        messages: List[Dict[str, str]],
        request_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> List[MessageRow]:
        if not messages:
            return []
        now = _now()
        ids = [str(uuid.uuid4()) for _ in messages]
        with self._lock:
            self._conn.executemany(
                """
                INSERT INTO messages (id, profile_id, role, content, request_id, model, processed, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                [
                    (message_id, profile_id, m["role"], m["content"], request_id, model, now)
                    for message_id, m in zip(ids, messages)
                ],
            )
            self._conn.commit()
            placeholders = ",".join("?" for _ in ids)
            cur = self._conn.execute(
                f"SELECT * FROM messages WHERE id IN ({placeholders}) ORDER BY rowid",
                ids,
            )
            return [self._row_to_message(r) for r in cur.fetchall()]

    def count_messages(self, profile_id: str) -> int:
        with self._lock:
            (count,) = self._conn.execute(
                "SELECT COUNT(*) FROM messages WHERE profile_id = ?",
                (profile_id,),
            ).fetchone()
            return int(count)

    def delete_old_messages(self, profile_id: str, keep: int) -> int:
        """Delete the oldest messages so at most ``keep`` remain. Returns the number deleted."""
        with self._lock:
            (count,) = self._conn.execute(
                "SELECT COUNT(*) FROM messages WHERE profile_id = ?",
                (profile_id,),
            ).fetchone()
            excess = int(count) - keep
            if excess <= 0:
                return 0
            cur = self._conn.execute(
                """
                DELETE FROM messages WHERE id IN (
                    SELECT id FROM messages
                    WHERE profile_id = ?
                    ORDER BY created_at ASC, rowid ASC
                    LIMIT ?
                )
                """,
                (profile_id, excess),
            )
            self._conn.commit()
            return cur.rowcount

    def recent_messages(self, profile_id: str, limit: int = 20) -> List[MessageRow]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM messages
                WHERE profile_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (profile_id, limit),
            )
            return [self._row_to_message(r) for r in cur.fetchall()]

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __del__(self) -> None:
        if getattr(self, "_conn", None) is not None:
            self.close()
