from claude_headless.memory.pruning import prune_sessions
from claude_headless.memory.store import SessionStore, SQLiteSessionStore, StoreStats

__all__ = [
    "SQLiteSessionStore",
    "SessionStore",
    "StoreStats",
    "prune_sessions",
]
