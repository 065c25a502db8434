"""
Decoder for the CLI's line-delimited JSON output (``--output-format=stream-json``).

Bytes or text arrive in arbitrary chunks; complete lines are parsed as one JSON
message each and the trailing fragment is carried over to the next chunk. The
sequence of messages produced does not depend on how the input was chunked.
"""

from __future__ import annotations

import codecs
import json
from collections import deque
from collections.abc import Callable, Iterable
from typing import Any, Protocol, TypeVar

from loguru import logger

from claude_headless.errors import ClaudeAPIError, ClaudeParseError, ClaudeProcessError
from claude_headless.models import (
    AssistantMessage,
    ContentBlock,
    ErrorMessage,
    ResultMessage,
    StreamJsonResponse,
    StreamMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
    content_block_to_dict,
    is_terminal,
    message_from_dict,
)

MessageObserver = Callable[[StreamMessage], None]
_M = TypeVar("_M")


class LineBuffer:
    """Splits an append-only text or byte source into complete lines."""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: str | bytes) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return lines

    def flush(self) -> list[str]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return [tail] if tail else []


def parse_line(line: str) -> StreamMessage | None:
    """Parse one line; blank lines yield None, anything malformed raises."""
    trimmed = line.strip()
    if not trimmed:
        return None
    try:
        return message_from_dict(json.loads(trimmed))
    except json.JSONDecodeError as ex:
        raise ClaudeParseError(f"Failed to parse JSON: {ex}", trimmed) from ex
    except (ValueError, TypeError) as ex:
        # Valid JSON whose fields have the wrong shape.
        raise ClaudeParseError(f"Malformed message: {ex}", trimmed) from ex


class StreamDecoder:
    """Incremental decoder.

    A malformed line ends decoding. Messages that precede it in the same chunk
    are still returned; the error is raised by the next call instead.
    """

    def __init__(self) -> None:
        self._lines = LineBuffer()
        self._terminal: StreamMessage | None = None
        self._error: ClaudeParseError | None = None

    @property
    def terminal(self) -> StreamMessage | None:
        return self._terminal

    def check(self) -> None:
        if self._error is not None:
            raise self._error

    def feed(self, chunk: str | bytes) -> list[StreamMessage]:
        self.check()
        return self._parse(self._lines.feed(chunk))

    def finish(self) -> list[StreamMessage]:
        self.check()
        return self._parse(self._lines.flush())

    def _parse(self, lines: list[str]) -> list[StreamMessage]:
        messages: list[StreamMessage] = []
        for line in lines:
            try:
                message = parse_line(line)
                if message is not None and self._terminal is not None:
                    raise ClaudeParseError("Message received after the terminal message", line.strip())
            except ClaudeParseError as ex:
                self._error = ex
                if messages:
                    return messages
                raise
            if message is None:
                continue
            if is_terminal(message):
                self._terminal = message
            messages.append(message)
        return messages


def decode_text(text: str | bytes) -> list[StreamMessage]:
    decoder = StreamDecoder()
    return decoder.feed(text) + decoder.finish()


def terminal_failure(message: StreamMessage, exit_code: int | None = None) -> ClaudeAPIError | None:
    """The error a terminal message reports, if it reports one."""
    if isinstance(message, ErrorMessage):
        return ClaudeAPIError(
            message.error,
            code=message.error_code or "API_ERROR",
            response=message.raw or {"type": "error", "error": message.error},
            exit_code=exit_code,
        )
    if isinstance(message, ResultMessage) and message.is_error:
        return ClaudeAPIError(message.result or "Request failed", response=message.raw, exit_code=exit_code)
    return None


class ChunkSource(Protocol):
    @property
    def exit_code(self) -> int | None: ...

    @property
    def stderr(self) -> str: ...

    async def __anext__(self) -> str | bytes: ...

    async def aclose(self) -> None: ...


class MessageStream:
    """Cancellable lazy sequence of stream messages decoded from a chunk source.

    Use it as ``async with stream: async for message in stream`` or call
    ``aclose()``; closing kills the underlying process if it is still running.
    Observers run for each message before it is handed to the caller.
    """

    def __init__(self, source: ChunkSource, *, observers: Iterable[MessageObserver] = ()):
        self._source = source
        self._decoder = StreamDecoder()
        self._observers: list[MessageObserver] = list(observers)
        self._pending: deque[StreamMessage] = deque()
        self._messages: list[StreamMessage] = []
        self._failure: Exception | None = None
        self._eof = False
        self._closed = False

    def add_observer(self, observer: MessageObserver) -> None:
        self._observers.append(observer)

    @property
    def messages(self) -> list[StreamMessage]:
        return list(self._messages)

    @property
    def final(self) -> StreamMessage | None:
        return self._decoder.terminal

    @property
    def exit_code(self) -> int | None:
        return self._source.exit_code

    def __aiter__(self) -> MessageStream:
        return self

    async def __anext__(self) -> StreamMessage:
        if self._failure is not None:
            failure, self._failure = self._failure, None
            await self.aclose()
            raise failure
        if self._closed and not self._pending:
            raise StopAsyncIteration

        try:
            while not self._pending and not self._eof:
                self._decoder.check()
                try:
                    chunk = await self._source.__anext__()
                except StopAsyncIteration:
                    self._eof = True
                    self._pending.extend(self._decoder.finish())
                    break
                self._pending.extend(self._decoder.feed(chunk))

            if self._pending:
                return self._emit(self._pending.popleft())

            self._check_completion()
        except BaseException:
            await self.aclose()
            raise

        await self.aclose()
        raise StopAsyncIteration

    async def collect(self) -> StreamJsonResponse:
        async with self:
            async for _ in self:
                pass
        final = self._decoder.terminal
        if not isinstance(final, ResultMessage):
            raise ClaudeParseError("No terminal result message in stream")
        return StreamJsonResponse(messages=self.messages, final=final, exit_code=self._source.exit_code or 0)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._source.aclose()

    async def __aenter__(self) -> MessageStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.aclose()
        return False

    def _emit(self, message: StreamMessage) -> StreamMessage:
        self._messages.append(message)
        for observer in self._observers:
            observer(message)
        if is_terminal(message):
            self._failure = terminal_failure(message)
        return message

    def _check_completion(self) -> None:
        exit_code = self._source.exit_code
        if self._decoder.terminal is not None:
            if exit_code:
                logger.debug(f"Stream completed with terminal message but exit code {exit_code}")
            return
        if exit_code:
            raise ClaudeProcessError(
                f"Command failed with exit code {exit_code}",
                code="STREAM_FAILED",
                exit_code=exit_code,
                stderr=self._source.stderr,
            )
        raise ClaudeParseError("Stream ended without a terminal message")


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------


def filter_messages(messages: Iterable[StreamMessage], message_type: type[_M]) -> list[_M]:
    return [message for message in messages if isinstance(message, message_type)]


def get_result(messages: Iterable[StreamMessage]) -> ResultMessage | None:
    results = filter_messages(messages, ResultMessage)
    return results[-1] if results else None


def get_assistant_messages(messages: Iterable[StreamMessage]) -> list[AssistantMessage]:
    return filter_messages(messages, AssistantMessage)


def get_user_messages(messages: Iterable[StreamMessage]) -> list[UserMessage]:
    return filter_messages(messages, UserMessage)


def get_error_messages(messages: Iterable[StreamMessage]) -> list[ErrorMessage]:
    return filter_messages(messages, ErrorMessage)


def extract_text(content: str | list[ContentBlock], separator: str = "\n") -> str:
    if isinstance(content, str):
        return content
    return separator.join(block.text for block in content if isinstance(block, TextBlock))


def extract_thinking(content: list[ContentBlock]) -> list[str]:
    return [block.thinking for block in content if isinstance(block, ThinkingBlock)]


def extract_tool_uses(content: list[ContentBlock]) -> list[ToolUseBlock]:
    return [block for block in content if isinstance(block, ToolUseBlock)]


def extract_tool_results(content: list[ContentBlock]) -> list[ToolResultBlock]:
    return [block for block in content if isinstance(block, ToolResultBlock)]


def _wire_content(content: str | list[Any]) -> str | list[dict[str, Any]]:
    if isinstance(content, str):
        return content
    return [item if isinstance(item, dict) else content_block_to_dict(item) for item in content]


def create_user_input(content: str | list[Any]) -> str:
    """Encode one user turn as a stream-json input line."""
    return json.dumps({"type": "user", "message": {"role": "user", "content": _wire_content(content)}})


def create_stream_input(turns: Iterable[tuple[str, str | list[Any]]]) -> str:
    lines: list[str] = []
    for role, content in turns:
        if role == "user":
            lines.append(create_user_input(content))
            continue
        wire = _wire_content(content)
        if isinstance(wire, str):
            wire = [{"type": "text", "text": wire}]
        lines.append(json.dumps({"type": "assistant", "message": {"role": "assistant", "content": wire}}))
    return "".join(line + "\n" for line in lines)


def validate_message(message: Any) -> bool:
    """Structural check of a raw decoded message against the wire contract."""
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        return False
    message_type = message["type"]
    if message_type == "init":
        return True
    if message_type == "system":
        return message.get("subtype") == "init"
    if message_type in ("user", "assistant"):
        return isinstance(message.get("message"), dict)
    if message_type == "result":
        required = ("subtype", "is_error", "duration_ms", "num_turns", "result", "session_id")
        return all(key in message for key in required)
    if message_type == "error":
        return isinstance(message.get("error"), str)
    return False
