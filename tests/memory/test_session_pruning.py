from claude_headless.memory import prune_sessions
from claude_headless.models import ConversationTurn, SessionMetadata, utc_now
from tests.memory.base import SessionStoreTestCase


class PruningTests(SessionStoreTestCase):
    def _session(self, session_id: str, last_active: str | None = None) -> None:
        now = utc_now()
        self._store.upsert_session(SessionMetadata(id=session_id, created_at=now, last_active=last_active or now))

    def test_retention_days_prunes_old_sessions(self) -> None:
        self._session("old", "2000-01-01T00:00:00.000+00:00")
        self._session("fresh")

        deleted = prune_sessions(self._store, max_sessions=200, retention_days=1)

        self.assertEqual(1, deleted)
        self.assertIsNone(self._store.get_session("old"))
        self.assertIsNotNone(self._store.get_session("fresh"))

    def test_max_turns_per_session_keeps_latest(self) -> None:
        self._session("s1")
        for i in range(5):
            self._store.add_conversation_turn("s1", ConversationTurn(role="user", content=f"m{i}", timestamp=utc_now()))

        prune_sessions(self._store, max_sessions=200, retention_days=36500, max_turns_per_session=2)

        history = self._store.get_conversation_history("s1")
        self.assertEqual(["m3", "m4"], [turn.content for turn in history])

    def test_max_sessions_keeps_most_recent(self) -> None:
        self._session("s1", "2099-01-01T00:00:00.000+00:00")
        self._session("s2", "2099-02-01T00:00:00.000+00:00")
        self._session("s3", "2099-03-01T00:00:00.000+00:00")

        prune_sessions(self._store, max_sessions=2, retention_days=36500)

        self.assertEqual(["s3", "s2"], [session.id for session in self._store.list_sessions()])
