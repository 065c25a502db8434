from __future__ import annotations

from claude_headless.memory.store import StoreStats
from claude_headless.models import ConversationTurn, SessionMetadata


class SessionController:
    def __init__(self, *, line_prefix: str, short_id_len: int = 8, preview_len: int = 80):
        self._line_prefix = line_prefix
        self._short_id_len = short_id_len
        self._preview_len = preview_len

    def short_id(self, value: str) -> str:
        if len(value) <= self._short_id_len:
            return value
        return value[: self._short_id_len]

    def preview(self, content: str | list[dict]) -> str:
        if not isinstance(content, str):
            content = " ".join(str(block.get("text", "")) for block in content if block.get("type") == "text")
        flat = " ".join(content.split())
        if len(flat) <= self._preview_len:
            return flat
        return flat[: self._preview_len - 3] + "..."

    def format_session_list_entry(self, session: SessionMetadata, *, active_session_id: str | None) -> str:
        marker = "*" if session.id == active_session_id else " "
        return (
            f"{self._line_prefix}{marker} [{self.short_id(session.id)}] (id={session.id}) "
            f"(turns={session.turns}, cost=${session.total_cost_usd:.4f}, "
            f"created={session.created_at}, last_active={session.last_active})"
        )

    def format_session_summary_lines(self, session: SessionMetadata, history: list[ConversationTurn]) -> list[str]:
        user_turns = [turn for turn in history if turn.role == "user"]
        assistant_turns = [turn for turn in history if turn.role == "assistant"]
        lines = [f"{self._line_prefix}Session {session.id}:"]
        lines.append(
            f"{self._line_prefix}- Created: {session.created_at} | Last active: {session.last_active}"
        )
        lines.append(
            f"{self._line_prefix}- Turns: {session.turns} | Cost: ${session.total_cost_usd:.4f} | "
            f"History: {len(history)} (user={len(user_turns)}, assistant={len(assistant_turns)})"
        )
        if user_turns:
            lines.append(f"{self._line_prefix}- Last user: {self.preview(user_turns[-1].content)}")
        if assistant_turns:
            lines.append(f"{self._line_prefix}- Last assistant: {self.preview(assistant_turns[-1].content)}")
        return lines

    def format_stats_lines(self, stats: StoreStats) -> list[str]:
        return [
            f"{self._line_prefix}Sessions: {stats.total_sessions}",
            f"{self._line_prefix}History turns: {stats.total_messages}",
            f"{self._line_prefix}Stream messages: {stats.total_stream_messages}",
            f"{self._line_prefix}Database size: {stats.database_size:,} bytes",
        ]
