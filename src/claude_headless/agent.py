from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from loguru import logger

from claude_headless.client import ClaudeHeadless, ClientConfig
from claude_headless.memory.store import SessionStore
from claude_headless.models import (
    JSON,
    AssistantMessage,
    ConversationTurn,
    InitMessage,
    JsonResponse,
    QueryOptions,
    Response,
    ResultMessage,
    SessionMetadata,
    StreamJsonResponse,
    StreamMessage,
    TextBlock,
    response_text,
    utc_now,
)
from claude_headless.process import DEFAULT_CLI, CliCommand
from claude_headless.stream_parser import MessageStream
from claude_headless.tool_registry import ToolResolver


@dataclass
class AgentConfig:
    name: str
    cwd: str
    session_store: SessionStore
    options: QueryOptions = field(default_factory=lambda: QueryOptions(output_format=JSON))
    tool_ids: tuple[str, ...] = ()
    tool_resolver: ToolResolver | None = None
    default_session_id: str | None = None
    cli: CliCommand = DEFAULT_CLI
    env: dict[str, str] | None = None
    retry_attempts: int = 1


def _persist_exchange(
    store: SessionStore,
    session_id: str,
    *,
    prompt: str,
    prompt_at: str,
    reply: str,
    num_turns: int = 0,
    total_cost_usd: float = 0.0,
) -> None:
    existing = store.ensure_session(session_id)
    store.add_conversation_turn(session_id, ConversationTurn(role="user", content=prompt, timestamp=prompt_at))
    store.add_conversation_turn(session_id, ConversationTurn(role="assistant", content=reply, timestamp=utc_now()))
    store.upsert_session(
        SessionMetadata(
            id=session_id,
            created_at=existing.created_at,
            last_active=utc_now(),
            turns=max(existing.turns, num_turns),
            total_cost_usd=max(existing.total_cost_usd, total_cost_usd),
        )
    )
    logger.debug(f"Persisted exchange for session {session_id}")


class Agent:
    """A client bound to one working directory, tool policy and session store.

    Every exchange is written to the store unless ``save_to_store`` is False.
    """

    def __init__(self, config: AgentConfig):
        self._config = config
        self._base_options = self._resolve_options()
        self._client = ClaudeHeadless(
            ClientConfig(
                cli=config.cli,
                default_options=self._base_options,
                env=config.env,
                retry_attempts=config.retry_attempts,
            )
        )

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def cwd(self) -> str:
        return self._config.cwd

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def client(self) -> ClaudeHeadless:
        return self._client

    @property
    def store(self) -> SessionStore:
        return self._config.session_store

    async def run(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        overrides: dict[str, Any] | None = None,
        save_to_store: bool = True,
    ) -> Response:
        request = self._request(session_id, overrides)
        prompt_at = utc_now()
        logger.debug(f"Agent {self.name}: run (session={request.session_id or 'new'})")
        response = await self._client.query(prompt, request)
        if save_to_store:
            self._persist_response(request.session_id, prompt, prompt_at, response)
        return response

    def run_stream(
        self,
        prompt: str,
        *,
        session_id: str | None = None,
        overrides: dict[str, Any] | None = None,
        save_to_store: bool = True,
    ) -> MessageStream:
        request = self._request(session_id, overrides)
        logger.debug(f"Agent {self.name}: stream (session={request.session_id or 'new'})")
        stream = self._client.stream(prompt, request)
        if save_to_store:
            stream.add_observer(_StreamPersister(self._config.session_store, prompt, request.session_id))
        return stream

    # -- internals ----------------------------------------------------------

    def _resolve_options(self) -> QueryOptions:
        options = self._config.options.merged(cwd=self._config.cwd)
        if not self._config.tool_ids or self._config.tool_resolver is None:
            return options
        resolved = self._config.tool_resolver.resolve(self._config.tool_ids)
        allowed = list(options.allowed_tools)
        allowed.extend(name for name in resolved.allowed_tool_names if name not in allowed)
        return options.merged(allowed_tools=allowed, mcp_config=resolved.mcp_config_path)

    def _request(self, session_id: str | None, overrides: dict[str, Any] | None) -> QueryOptions:
        values = {key: value for key, value in (overrides or {}).items() if key not in ("session_id", "continue_last")}
        values["cwd"] = self._config.cwd
        options = self._base_options.merged(**values)
        return replace(options, session_id=session_id or self._config.default_session_id, continue_last=False)

    def _persist_response(self, resumed_id: str | None, prompt: str, prompt_at: str, response: Response) -> None:
        store = self._config.session_store
        num_turns, cost, reported_id = 0, 0.0, None
        if isinstance(response, JsonResponse):
            num_turns, cost, reported_id = response.num_turns, response.total_cost_usd, response.session_id
        elif isinstance(response, StreamJsonResponse):
            final = response.final
            num_turns, cost, reported_id = final.num_turns, final.total_cost_usd, final.session_id

        session_id = resumed_id or reported_id
        if session_id is None:
            logger.debug(f"Agent {self.name}: response carried no session id, nothing persisted")
            return

        if isinstance(response, StreamJsonResponse):
            store.ensure_session(session_id)
            for message in response.messages:
                store.add_stream_message(session_id, message)
        _persist_exchange(
            store,
            session_id,
            prompt=prompt,
            prompt_at=prompt_at,
            reply=response_text(response),
            num_turns=num_turns,
            total_cost_usd=cost,
        )


class _StreamPersister:
    """Writes every streamed message to the store as it arrives.

    Messages seen before the session id is known are held back and written
    once an init or result message reports it.
    """

    def __init__(self, store: SessionStore, prompt: str, session_id: str | None):
        self._store = store
        self._prompt = prompt
        self._prompt_at = utc_now()
        self._session_id = session_id
        self._ready = False
        self._held: list[StreamMessage] = []
        self._parts: list[str] = []

    def __call__(self, message: StreamMessage) -> None:
        if isinstance(message, AssistantMessage):
            self._parts.extend(block.text for block in message.content if isinstance(block, TextBlock))

        if self._session_id is None and isinstance(message, (InitMessage, ResultMessage)):
            self._session_id = message.session_id
        if self._session_id is None:
            self._held.append(message)
            return

        if not self._ready:
            self._store.ensure_session(self._session_id)
            self._ready = True
            for held in self._held:
                self._store.add_stream_message(self._session_id, held)
            self._held = []
        self._store.add_stream_message(self._session_id, message)

        if isinstance(message, ResultMessage) and not message.is_error:
            _persist_exchange(
                self._store,
                self._session_id,
                prompt=self._prompt,
                prompt_at=self._prompt_at,
                reply="".join(self._parts) or message.result,
                num_turns=message.num_turns,
                total_cost_usd=message.total_cost_usd,
            )
