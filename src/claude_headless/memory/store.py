from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from claude_headless.errors import ClaudeSessionError
from claude_headless.models import (
    ConversationTurn,
    SessionData,
    SessionMetadata,
    StreamMessage,
    message_from_dict,
    utc_now,
)

MEMORY_DB = ":memory:"


@dataclass(frozen=True)
class StoreStats:
    total_sessions: int
    total_messages: int
    total_stream_messages: int
    database_size: int


@runtime_checkable
class SessionStore(Protocol):
    """Persistence contract the client and agents rely on."""

    def upsert_session(self, metadata: SessionMetadata) -> None: ...

    def ensure_session(self, session_id: str) -> SessionMetadata: ...

    def get_session(self, session_id: str) -> SessionMetadata | None: ...

    def add_conversation_turn(self, session_id: str, turn: ConversationTurn) -> None: ...

    def get_conversation_history(self, session_id: str) -> list[ConversationTurn]: ...

    def add_stream_message(self, session_id: str, message: StreamMessage) -> None: ...

    def get_stream_messages(self, session_id: str) -> list[StreamMessage]: ...

    def list_sessions(self, *, limit: int | None = None) -> list[SessionMetadata]: ...

    def get_session_data(self, session_id: str) -> SessionData | None: ...

    def import_session_data(self, data: SessionData) -> None: ...

    def delete_session(self, session_id: str) -> bool: ...

    def get_stats(self) -> StoreStats: ...


class SQLiteSessionStore:
    """SQLite-backed session store.

    Writes are serialized through one lock, so concurrent exchanges against the
    same session never lose or duplicate history rows.
    """

    def __init__(self, db_path: str = MEMORY_DB):
        self._db_path = db_path
        if db_path != MEMORY_DB:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._initialize_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: Sequence[tuple[Any, ...]]) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executemany(query, seq_of_params)

    def commit(self) -> None:
        with self._lock:
            self._conn.commit()

    def rollback(self) -> None:
        with self._lock:
            self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            try:
                yield
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()

    # -- sessions -----------------------------------------------------------

    def upsert_session(self, metadata: SessionMetadata) -> None:
        with self.transaction():
            self._upsert(metadata)

    def ensure_session(self, session_id: str) -> SessionMetadata:
        """Insert an empty session row unless one already exists."""
        now = utc_now()
        with self.transaction():
            self._conn.execute(
                """
                INSERT OR IGNORE INTO sessions (id, created_at, last_active, turns, total_cost_usd, metadata_json)
                VALUES (?, ?, ?, 0, 0, '{}')
                """,
                (session_id, now, now),
            )
        session = self.get_session(session_id)
        assert session is not None
        return session

    def get_session(self, session_id: str) -> SessionMetadata | None:
        row = self.execute("SELECT * FROM sessions WHERE id = ? LIMIT 1", (session_id,)).fetchone()
        return self._row_to_metadata(row) if row is not None else None

    def list_sessions(self, *, limit: int | None = None) -> list[SessionMetadata]:
        query = "SELECT * FROM sessions ORDER BY last_active DESC, created_at DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (max(1, limit),)
        return [self._row_to_metadata(row) for row in self.execute(query, params).fetchall()]

    def get_last_session(self) -> SessionMetadata | None:
        sessions = self.list_sessions(limit=1)
        return sessions[0] if sessions else None

    def delete_session(self, session_id: str) -> bool:
        with self.transaction():
            cursor = self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.debug(f"Deleted session {session_id}")
        return deleted

    def clear_all(self) -> None:
        with self.transaction():
            self._conn.execute("DELETE FROM stream_messages")
            self._conn.execute("DELETE FROM conversation_history")
            self._conn.execute("DELETE FROM sessions")

    # -- history ------------------------------------------------------------

    def add_conversation_turn(self, session_id: str, turn: ConversationTurn) -> None:
        with self.transaction():
            self._require_session(session_id)
            self._insert_turns(session_id, [turn])

    def get_conversation_history(self, session_id: str) -> list[ConversationTurn]:
        rows = self.execute(
            """
            SELECT role, content_json, timestamp
            FROM conversation_history
            WHERE session_id = ?
            ORDER BY seq ASC
            """,
            (session_id,),
        ).fetchall()
        return [
            ConversationTurn(role=row["role"], content=json.loads(row["content_json"]), timestamp=row["timestamp"])
            for row in rows
        ]

    def add_stream_message(self, session_id: str, message: StreamMessage) -> None:
        raw = message.raw or {"type": message.type}
        with self.transaction():
            self._require_session(session_id)
            self._conn.execute(
                """
                INSERT INTO stream_messages (session_id, message_type, message_json, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (session_id, message.type, json.dumps(raw, ensure_ascii=True), utc_now()),
            )

    def get_stream_messages(self, session_id: str) -> list[StreamMessage]:
        rows = self.execute(
            "SELECT message_json FROM stream_messages WHERE session_id = ? ORDER BY id ASC",
            (session_id,),
        ).fetchall()
        return [message_from_dict(json.loads(row["message_json"])) for row in rows]

    # -- export / import ----------------------------------------------------

    def get_session_data(self, session_id: str) -> SessionData | None:
        with self._lock:
            metadata = self.get_session(session_id)
            if metadata is None:
                return None
            return SessionData(metadata=metadata, history=self.get_conversation_history(session_id))

    def import_session_data(self, data: SessionData) -> None:
        """Write metadata and history in one transaction.

        The imported history replaces whatever the store held for that id; on
        any failure nothing is written.
        """
        session_id = data.metadata.id
        with self.transaction():
            self._upsert(data.metadata)
            self._conn.execute("DELETE FROM conversation_history WHERE session_id = ?", (session_id,))
            self._insert_turns(session_id, data.history)
        logger.debug(f"Imported session {session_id} with {len(data.history)} turn(s)")

    # -- maintenance --------------------------------------------------------

    def get_stats(self) -> StoreStats:
        def count(table: str) -> int:
            return int(self.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"])

        size = 0
        if self._db_path != MEMORY_DB:
            path = Path(self._db_path)
            if path.exists():
                size = path.stat().st_size
        return StoreStats(
            total_sessions=count("sessions"),
            total_messages=count("conversation_history"),
            total_stream_messages=count("stream_messages"),
            database_size=size,
        )

    def checkpoint(self) -> None:
        self.execute("PRAGMA wal_checkpoint(TRUNCATE)")

    def optimize(self) -> None:
        with self._lock:
            self._conn.commit()
            self._conn.execute("VACUUM")
            self._conn.execute("ANALYZE")

    # -- internals ----------------------------------------------------------

    def _upsert(self, metadata: SessionMetadata) -> None:
        self._conn.execute(
            """
            INSERT INTO sessions (id, created_at, last_active, turns, total_cost_usd, metadata_json)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_active = excluded.last_active,
                turns = excluded.turns,
                total_cost_usd = excluded.total_cost_usd,
                metadata_json = excluded.metadata_json
            """,
            (
                metadata.id,
                metadata.created_at,
                metadata.last_active,
                metadata.turns,
                metadata.total_cost_usd,
                json.dumps(metadata.to_dict(), ensure_ascii=True),
            ),
        )

    def _require_session(self, session_id: str) -> None:
        row = self._conn.execute("SELECT 1 FROM sessions WHERE id = ? LIMIT 1", (session_id,)).fetchone()
        if row is None:
            raise ClaudeSessionError(f"Session does not exist: {session_id}", session_id)

    def _insert_turns(self, session_id: str, turns: Sequence[ConversationTurn]) -> None:
        if not turns:
            return
        row = self._conn.execute(
            "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM conversation_history WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        next_seq = int(row["max_seq"]) + 1
        params = [
            (session_id, next_seq + offset, turn.role, json.dumps(turn.content, ensure_ascii=True), turn.timestamp)
            for offset, turn in enumerate(turns)
        ]
        self._conn.executemany(
            """
            INSERT INTO conversation_history (session_id, seq, role, content_json, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            params,
        )
        self._conn.execute(
            "UPDATE sessions SET last_active = MAX(last_active, ?) WHERE id = ?",
            (max(turn.timestamp for turn in turns), session_id),
        )

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> SessionMetadata:
        return SessionMetadata(
            id=row["id"],
            created_at=row["created_at"],
            last_active=row["last_active"],
            turns=int(row["turns"]),
            total_cost_usd=float(row["total_cost_usd"]),
        )

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                last_active TEXT NOT NULL,
                turns INTEGER NOT NULL DEFAULT 0,
                total_cost_usd REAL NOT NULL DEFAULT 0,
                metadata_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS conversation_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content_json TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                UNIQUE(session_id, seq)
            );

            CREATE TABLE IF NOT EXISTS stream_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                message_type TEXT NOT NULL,
                message_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversation_session_seq
                ON conversation_history(session_id, seq);
            CREATE INDEX IF NOT EXISTS idx_stream_session
                ON stream_messages(session_id);
            CREATE INDEX IF NOT EXISTS idx_sessions_last_active
                ON sessions(last_active DESC);
            """
        )
        self._conn.commit()
