from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from claude_headless.args import build_args
from claude_headless.errors import ClaudeTimeoutError
from claude_headless.models import JSON, STREAM_JSON, TEXT, ProcessResult, QueryOptions, Response
from claude_headless.process import (
    DEFAULT_CLI,
    CliCommand,
    check_cli_available,
    execute_command,
    execute_streaming,
    get_cli_version,
)
from claude_headless.reconcile import reconcile
from claude_headless.session import Session, SessionManager
from claude_headless.stream_parser import MessageStream


@dataclass
class ClientConfig:
    cli: CliCommand = DEFAULT_CLI
    default_options: QueryOptions = field(default_factory=QueryOptions)
    env: dict[str, str] | None = None
    retry_attempts: int = 1
    retry_min_wait: float = 1.0
    retry_max_wait: float = 30.0


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.1f}s (attempt {attempt})...")


class ClaudeHeadless:
    """Caller-facing API over the headless CLI.

    Every call takes an optional full ``QueryOptions`` (defaulting to the
    client's ``default_options``) plus keyword overrides applied on top.
    """

    def __init__(self, config: ClientConfig | None = None):
        self._config = config or ClientConfig()
        self.sessions = SessionManager(self)

    @property
    def config(self) -> ClientConfig:
        return self._config

    async def query(self, prompt: str, options: QueryOptions | None = None, **overrides: Any) -> Response:
        request = self._resolve(options, overrides)
        args = build_args(prompt, request)
        return await self._execute(args, request)

    async def process_stdin(self, input: str, options: QueryOptions | None = None, **overrides: Any) -> Response:
        """Run one buffered exchange whose input is fed on stdin instead of argv."""
        request = self._resolve(options, overrides)
        args = build_args(None, request)
        return await self._execute(args, request, stdin=input)

    def stream(self, prompt: str, options: QueryOptions | None = None, **overrides: Any) -> MessageStream:
        request = self._resolve(options, {**overrides, "output_format": STREAM_JSON})
        return self._open_stream(build_args(prompt, request), request)

    def stream_stdin(self, input: str, options: QueryOptions | None = None, **overrides: Any) -> MessageStream:
        request = self._resolve(options, {**overrides, "output_format": STREAM_JSON})
        return self._open_stream(build_args(None, request), request, stdin=input)

    def create_session(self, options: QueryOptions | None = None) -> Session:
        return self.sessions.create(options)

    def resume_session(self, session_id: str, options: QueryOptions | None = None) -> Session:
        return self.sessions.resume(session_id, options)

    def continue_last_session(self, options: QueryOptions | None = None) -> Session:
        return self.sessions.continue_last(options)

    def session_options(self) -> QueryOptions:
        """Defaults for sessions: plain text output carries no session id, so use JSON."""
        defaults = self._config.default_options
        if defaults.output_format == TEXT:
            return defaults.merged(output_format=JSON)
        return defaults

    def is_available(self) -> bool:
        return check_cli_available(self._config.cli)

    async def get_version(self) -> str | None:
        return await get_cli_version(self._config.cli)

    # -- internals ----------------------------------------------------------

    def _resolve(self, options: QueryOptions | None, overrides: dict[str, Any]) -> QueryOptions:
        base = options if options is not None else self._config.default_options
        return base.merged(**overrides)

    async def _execute(self, args: Sequence[str], request: QueryOptions, stdin: str | None = None) -> Response:
        result = await self._run_with_retries(args, request, stdin)
        return reconcile(result, request.output_format)

    async def _run_with_retries(
        self, args: Sequence[str], request: QueryOptions, stdin: str | None
    ) -> ProcessResult:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ClaudeTimeoutError),
            wait=wait_exponential(multiplier=1, min=self._config.retry_min_wait, max=self._config.retry_max_wait),
            stop=stop_after_attempt(max(1, self._config.retry_attempts)),
            before_sleep=_on_retry,
            reraise=True,
        ):
            with attempt:
                return await execute_command(
                    args,
                    stdin=stdin,
                    timeout=request.timeout,
                    cwd=request.cwd,
                    cli=self._config.cli,
                    env=self._config.env,
                )
        raise AssertionError("unreachable")

    def _open_stream(self, args: Sequence[str], request: QueryOptions, stdin: str | None = None) -> MessageStream:
        source = execute_streaming(
            args,
            stdin=stdin,
            timeout=request.timeout,
            cwd=request.cwd,
            cli=self._config.cli,
            env=self._config.env,
        )
        return MessageStream(source)
