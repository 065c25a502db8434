from __future__ import annotations

from datetime import UTC, datetime, timedelta

from loguru import logger

from claude_headless.memory.store import SQLiteSessionStore


def _expire(store: SQLiteSessionStore, retention_days: int) -> int:
    cutoff = datetime.now(UTC) - timedelta(days=max(1, retention_days))
    cursor = store.execute(
        "DELETE FROM sessions WHERE last_active < ?",
        (cutoff.isoformat(timespec="milliseconds"),),
    )
    return cursor.rowcount


def _trim_history(store: SQLiteSessionStore, keep: int) -> int:
    # Newest turns survive; seq orders turns within a session.
    cursor = store.execute(
        """
        DELETE FROM conversation_history
        WHERE id IN (
            SELECT id FROM (
                SELECT id, ROW_NUMBER() OVER (PARTITION BY session_id ORDER BY seq DESC) AS recency
                FROM conversation_history
            )
            WHERE recency > ?
        )
        """,
        (keep,),
    )
    return cursor.rowcount


def _cap_sessions(store: SQLiteSessionStore, keep: int) -> int:
    cursor = store.execute(
        """
        DELETE FROM sessions
        WHERE id NOT IN (
            SELECT id FROM sessions ORDER BY last_active DESC, created_at DESC LIMIT ?
        )
        """,
        (keep,),
    )
    return cursor.rowcount


def prune_sessions(
    store: SQLiteSessionStore,
    *,
    max_sessions: int,
    retention_days: int,
    max_turns_per_session: int = 0,
) -> int:
    """Apply retention limits and return how many sessions were deleted.

    A limit of zero or less disables the turn and session caps.
    """
    with store.transaction():
        deleted = _expire(store, retention_days)
        trimmed = _trim_history(store, max_turns_per_session) if max_turns_per_session > 0 else 0
        if max_sessions > 0:
            deleted += _cap_sessions(store, max_sessions)

    if deleted or trimmed:
        logger.info(f"Pruned {deleted} session(s) and {trimmed} turn(s) from {store.db_path}")
    return deleted
