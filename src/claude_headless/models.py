from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal, Union

TEXT = "text"
JSON = "json"
STREAM_JSON = "stream-json"

OUTPUT_FORMATS = (TEXT, JSON, STREAM_JSON)
INPUT_FORMATS = (TEXT, STREAM_JSON)


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class QueryOptions:
    """One request to the CLI, minus the prompt itself.

    ``timeout`` is in seconds. Buffered executions treat it as an absolute
    limit; streaming executions treat it as an idle limit that restarts on
    every chunk received.
    """

    output_format: str = TEXT
    input_format: str | None = None
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    mcp_config: str | None = None
    permission_mode: str | None = None
    permission_prompt_tool: str | None = None
    append_system_prompt: str | None = None
    verbose: bool = False
    no_interactive: bool = False
    timeout: float | None = None
    cwd: str | None = None
    session_id: str | None = None
    continue_last: bool = False

    def merged(self, **overrides: Any) -> QueryOptions:
        values = {key: value for key, value in overrides.items() if value is not None}
        for key in ("allowed_tools", "disallowed_tools"):
            if key in values:
                values[key] = tuple(values[key])
        return replace(self, **values)


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass
class TextBlock:
    text: str
    type: Literal["text"] = "text"


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any]
    type: Literal["tool_use"] = "tool_use"


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str | list[dict[str, Any]]
    is_error: bool | None = None
    type: Literal["tool_result"] = "tool_result"


@dataclass
class ThinkingBlock:
    thinking: str
    type: Literal["thinking"] = "thinking"


@dataclass
class ImageBlock:
    source: dict[str, Any]
    type: Literal["image"] = "image"


@dataclass
class UnknownBlock:
    data: dict[str, Any]
    type: str = "unknown"


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, ThinkingBlock, ImageBlock, UnknownBlock]


def parse_content_block(data: dict[str, Any]) -> ContentBlock:
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=str(data.get("text", "")))
    if block_type == "tool_use":
        return ToolUseBlock(id=str(data.get("id", "")), name=str(data.get("name", "")), input=dict(data.get("input") or {}))
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(data.get("tool_use_id", "")),
            content=data.get("content", ""),
            is_error=data.get("is_error"),
        )
    if block_type == "thinking":
        return ThinkingBlock(thinking=str(data.get("thinking", "")))
    if block_type == "image":
        return ImageBlock(source=dict(data.get("source") or {}))
    return UnknownBlock(data=dict(data), type=str(block_type or "unknown"))


def content_block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        out: dict[str, Any] = {"type": "tool_result", "tool_use_id": block.tool_use_id, "content": block.content}
        if block.is_error is not None:
            out["is_error"] = block.is_error
        return out
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking}
    if isinstance(block, ImageBlock):
        return {"type": "image", "source": block.source}
    return dict(block.data)


def parse_content(content: Any) -> str | list[ContentBlock]:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return [parse_content_block(item) for item in content if isinstance(item, dict)]
    raise ValueError(f"Unsupported content shape: {type(content).__name__}")


# ---------------------------------------------------------------------------
# Stream messages
# ---------------------------------------------------------------------------


@dataclass
class InitMessage:
    session_id: str | None = None
    subtype: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    type: Literal["init"] = "init"


@dataclass
class UserMessage:
    content: str | list[ContentBlock]
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    type: Literal["user"] = "user"


@dataclass
class AssistantMessage:
    content: list[ContentBlock]
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    type: Literal["assistant"] = "assistant"


@dataclass
class ResultMessage:
    session_id: str | None
    result: str = ""
    is_error: bool = False
    num_turns: int = 0
    total_cost_usd: float = 0.0
    duration_ms: int = 0
    duration_api_ms: int = 0
    subtype: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    type: Literal["result"] = "result"


@dataclass
class ErrorMessage:
    error: str
    error_code: str | None = None
    details: Any = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    type: Literal["error"] = "error"


StreamMessage = Union[InitMessage, UserMessage, AssistantMessage, ResultMessage, ErrorMessage]


def _message_body(data: dict[str, Any]) -> Any:
    inner = data.get("message")
    if isinstance(inner, dict) and "content" in inner:
        return inner["content"]
    if "content" in data:
        return data["content"]
    raise ValueError(f"'{data.get('type')}' message has no content")


def message_from_dict(data: Any) -> StreamMessage:
    """Build a typed stream message from one decoded JSON line.

    Raises ValueError when the discriminant is missing or unknown.
    """
    if not isinstance(data, dict):
        raise ValueError("Invalid message format: expected a JSON object")
    message_type = data.get("type")
    if not isinstance(message_type, str):
        raise ValueError("Invalid message format: missing type field")

    if message_type == "init" or (message_type == "system" and data.get("subtype") == "init"):
        return InitMessage(session_id=data.get("session_id", data.get("sessionId")), subtype=data.get("subtype"), raw=data)
    if message_type == "user":
        return UserMessage(content=parse_content(_message_body(data)), raw=data)
    if message_type == "assistant":
        body = parse_content(_message_body(data))
        if isinstance(body, str):
            body = [TextBlock(text=body)]
        return AssistantMessage(content=body, raw=data)
    if message_type == "result":
        return result_message_from_dict(data)
    if message_type == "error":
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message", "")
        return ErrorMessage(
            error=str(error or data.get("message") or "unknown error"),
            error_code=data.get("error_code") or data.get("code"),
            details=data.get("details"),
            raw=data,
        )
    raise ValueError(f"Invalid message format: unknown type {message_type!r}")


def result_message_from_dict(data: dict[str, Any]) -> ResultMessage:
    # Some CLI builds emit camelCase keys for the error flag and session id.
    return ResultMessage(
        session_id=data.get("session_id", data.get("sessionId")),
        result=str(data.get("result") or ""),
        is_error=bool(data.get("is_error", data.get("isError", False))),
        num_turns=int(data.get("num_turns") or 0),
        total_cost_usd=float(data.get("total_cost_usd", data.get("cost_usd")) or 0.0),
        duration_ms=int(data.get("duration_ms") or 0),
        duration_api_ms=int(data.get("duration_api_ms") or 0),
        subtype=data.get("subtype"),
        raw=data,
    )


def is_terminal(message: StreamMessage) -> bool:
    return isinstance(message, (ResultMessage, ErrorMessage))


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


@dataclass
class TextResponse:
    text: str
    exit_code: int
    format: Literal["text"] = "text"


@dataclass
class JsonResponse:
    result: str
    session_id: str | None
    num_turns: int
    total_cost_usd: float
    is_error: bool
    duration_ms: int
    duration_api_ms: int
    subtype: str | None
    exit_code: int
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    format: Literal["json"] = "json"

    @classmethod
    def from_payload(cls, data: dict[str, Any], exit_code: int) -> JsonResponse:
        parsed = result_message_from_dict(data)
        return cls(
            result=parsed.result,
            session_id=parsed.session_id,
            num_turns=parsed.num_turns,
            total_cost_usd=parsed.total_cost_usd,
            is_error=parsed.is_error,
            duration_ms=parsed.duration_ms,
            duration_api_ms=parsed.duration_api_ms,
            subtype=parsed.subtype,
            exit_code=exit_code,
            raw=data,
        )


@dataclass
class StreamJsonResponse:
    messages: list[StreamMessage]
    final: ResultMessage
    exit_code: int
    format: Literal["stream-json"] = "stream-json"

    @property
    def session_id(self) -> str | None:
        return self.final.session_id


Response = Union[TextResponse, JsonResponse, StreamJsonResponse]


def response_text(response: Response) -> str:
    """Best plain-text rendering of a response, used for conversation history."""
    if isinstance(response, TextResponse):
        return response.text
    if isinstance(response, JsonResponse):
        return response.result
    if isinstance(response, StreamJsonResponse):
        parts: list[str] = []
        for message in response.messages:
            if isinstance(message, AssistantMessage):
                parts.extend(block.text for block in message.content if isinstance(block, TextBlock))
        return "".join(parts) or response.final.result
    raise TypeError(f"Unknown response type: {type(response).__name__}")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass
class SessionMetadata:
    id: str
    created_at: str
    last_active: str
    turns: int = 0
    total_cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "last_active": self.last_active,
            "turns": self.turns,
            "total_cost_usd": self.total_cost_usd,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMetadata:
        return cls(
            id=str(data["id"]),
            created_at=str(data["created_at"]),
            last_active=str(data.get("last_active", data["created_at"])),
            turns=int(data.get("turns", 0)),
            total_cost_usd=float(data.get("total_cost_usd", 0.0)),
        )


@dataclass
class ConversationTurn:
    role: Literal["user", "assistant"]
    content: str | list[dict[str, Any]]
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationTurn:
        role = data.get("role")
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid turn role: {role!r}")
        return cls(role=role, content=data.get("content", ""), timestamp=str(data["timestamp"]))


@dataclass
class SessionData:
    metadata: SessionMetadata
    history: list[ConversationTurn] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "history": [turn.to_dict() for turn in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionData:
        return cls(
            metadata=SessionMetadata.from_dict(data["metadata"]),
            history=[ConversationTurn.from_dict(turn) for turn in data.get("history", [])],
        )


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int
