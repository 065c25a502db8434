from __future__ import annotations

import copy
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from loguru import logger

from claude_headless.errors import ClaudeSessionError
from claude_headless.models import (
    STREAM_JSON,
    AssistantMessage,
    ConversationTurn,
    JsonResponse,
    QueryOptions,
    Response,
    ResultMessage,
    SessionData,
    SessionMetadata,
    StreamJsonResponse,
    StreamMessage,
    TextBlock,
    content_block_to_dict,
    response_text,
    utc_now,
)
from claude_headless.stream_parser import MessageStream, create_stream_input

if TYPE_CHECKING:
    from claude_headless.client import ClaudeHeadless

NEW = "new"
RESUMED = "resumed"
CONTINUING = "continuing"
ACTIVE = "active"


def _turn_content(content: Any) -> str | list[dict[str, Any]]:
    if isinstance(content, str):
        return content
    return [item if isinstance(item, dict) else content_block_to_dict(item) for item in content]


class Session:
    """One multi-turn conversation, continued across CLI invocations.

    The session id reported by the CLI is threaded into every following
    request as ``--resume <id>``. Until an exchange confirms an id, a session
    created with ``continue_last`` asks the CLI to ``--continue`` instead.
    """

    def __init__(
        self,
        client: ClaudeHeadless,
        options: QueryOptions,
        *,
        session_id: str | None = None,
        continue_last: bool = False,
    ):
        self._client = client
        self._options = replace(options, session_id=None, continue_last=False)
        self._continue_last = continue_last and session_id is None
        self._session_id = session_id
        self._metadata: SessionMetadata | None = None
        self._history: list[ConversationTurn] = []
        self._state = self._initial_state()

    def _initial_state(self) -> str:
        if self._session_id is not None:
            return RESUMED
        if self._continue_last:
            return CONTINUING
        return NEW

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def state(self) -> str:
        return self._state

    @property
    def metadata(self) -> SessionMetadata | None:
        return copy.deepcopy(self._metadata)

    @property
    def history(self) -> list[ConversationTurn]:
        return copy.deepcopy(self._history)

    @property
    def options(self) -> QueryOptions:
        return self._options

    async def send(self, prompt: str, **overrides: Any) -> Response:
        options = self._request_options(overrides)
        self._append_turn("user", prompt)
        response = await self._client.query(prompt, options)
        self._record_response(response)
        return response

    def stream(self, prompt: str, **overrides: Any) -> MessageStream:
        options = self._request_options({**overrides, "output_format": STREAM_JSON})
        self._append_turn("user", prompt)
        stream = self._client.stream(prompt, options)
        stream.add_observer(_StreamRecorder(self))
        return stream

    def send_multiple(self, turns: list[tuple[str, Any]], **overrides: Any) -> MessageStream:
        """Send several turns at once as stream-json input on stdin."""
        options = self._request_options({**overrides, "output_format": STREAM_JSON, "input_format": STREAM_JSON})
        payload = create_stream_input(turns)
        for role, content in turns:
            self._append_turn(role, content)
        stream = self._client.stream_stdin(payload, options)
        stream.add_observer(_StreamRecorder(self))
        return stream

    def export(self) -> SessionData:
        if self._metadata is None:
            raise ClaudeSessionError("Cannot export session without metadata", self._session_id)
        return SessionData(metadata=copy.deepcopy(self._metadata), history=copy.deepcopy(self._history))

    def import_data(self, data: SessionData) -> None:
        self._metadata = copy.deepcopy(data.metadata)
        self._history = copy.deepcopy(data.history)
        self._session_id = data.metadata.id
        self._continue_last = False
        self._state = RESUMED
        logger.debug(f"Imported session {self._session_id} with {len(self._history)} turn(s)")

    def clear(self) -> None:
        self._session_id = None
        self._metadata = None
        self._history = []
        self._continue_last = False
        self._state = NEW

    # -- internals ----------------------------------------------------------

    def _request_options(self, overrides: dict[str, Any]) -> QueryOptions:
        overrides = {key: value for key, value in overrides.items() if key not in ("session_id", "continue_last")}
        options = self._options.merged(**overrides)
        if self._session_id is not None:
            return replace(options, session_id=self._session_id, continue_last=False)
        return replace(options, session_id=None, continue_last=self._continue_last)

    def _append_turn(self, role: str, content: Any) -> None:
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid turn role: {role!r}")
        self._history.append(ConversationTurn(role=role, content=_turn_content(content), timestamp=utc_now()))

    def _record_response(self, response: Response) -> None:
        if isinstance(response, JsonResponse):
            self._confirm(response.session_id, response.num_turns, response.total_cost_usd)
        elif isinstance(response, StreamJsonResponse):
            self._confirm(response.final.session_id, response.final.num_turns, response.final.total_cost_usd)
        self._append_turn("assistant", response_text(response))

    def _confirm(self, session_id: str | None, num_turns: int, total_cost_usd: float) -> None:
        session_id = session_id or self._session_id
        if session_id is None:
            logger.debug("Response carried no session id; session stays unconfirmed")
            return

        now = utc_now()
        current = self._metadata
        if current is not None and current.id == session_id:
            self._metadata = SessionMetadata(
                id=session_id,
                created_at=current.created_at,
                last_active=now,
                turns=max(current.turns, num_turns),
                total_cost_usd=max(current.total_cost_usd, total_cost_usd),
            )
        else:
            self._metadata = SessionMetadata(
                id=session_id,
                created_at=current.created_at if current is not None else now,
                last_active=now,
                turns=num_turns,
                total_cost_usd=total_cost_usd,
            )

        if session_id != self._session_id:
            logger.debug(f"Session confirmed as {session_id}")
        self._session_id = session_id
        self._continue_last = False
        self._state = ACTIVE


class _StreamRecorder:
    """Observer that folds a streamed exchange back into its session."""

    def __init__(self, session: Session):
        self._session = session
        self._parts: list[str] = []

    def __call__(self, message: StreamMessage) -> None:
        if isinstance(message, AssistantMessage):
            self._parts.extend(block.text for block in message.content if isinstance(block, TextBlock))
        elif isinstance(message, ResultMessage) and not message.is_error:
            self._session._confirm(message.session_id, message.num_turns, message.total_cost_usd)
            self._session._append_turn("assistant", "".join(self._parts) or message.result)


class SessionManager:
    """Explicit registry of session handles.

    There is no implicit "last session": ``continue_last`` delegates that
    choice to the CLI, and callers keep the handles they are given.
    """

    def __init__(self, client: ClaudeHeadless):
        self._client = client
        self._sessions: list[Session] = []

    def create(self, options: QueryOptions | None = None) -> Session:
        return self._track(Session(self._client, self._session_options(options)))

    def resume(self, session_id: str, options: QueryOptions | None = None) -> Session:
        if not session_id:
            raise ClaudeSessionError("A session id is required to resume a session")
        return self._track(Session(self._client, self._session_options(options), session_id=session_id))

    def continue_last(self, options: QueryOptions | None = None) -> Session:
        return self._track(Session(self._client, self._session_options(options), continue_last=True))

    def get(self, session_id: str) -> Session | None:
        for session in reversed(self._sessions):
            if session.session_id == session_id:
                return session
        return None

    def delete(self, session_id: str) -> bool:
        before = len(self._sessions)
        self._sessions = [session for session in self._sessions if session.session_id != session_id]
        return len(self._sessions) != before

    def list(self) -> list[str]:
        ids: list[str] = []
        for session in self._sessions:
            if session.session_id is not None and session.session_id not in ids:
                ids.append(session.session_id)
        return ids

    def clear(self) -> None:
        self._sessions = []

    def _session_options(self, options: QueryOptions | None) -> QueryOptions:
        return options if options is not None else self._client.session_options()

    def _track(self, session: Session) -> Session:
        self._sessions.append(session)
        return session
