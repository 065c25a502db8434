import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from claude_headless.app_config import load_json_config, parse_app_config, resolve_runtime_env
from claude_headless.bootstrap import AppRuntime, bootstrap_runtime
from claude_headless.errors import ClaudeError
from claude_headless.models import (
    STREAM_JSON,
    AssistantMessage,
    JsonResponse,
    ResultMessage,
    SessionData,
    StreamJsonResponse,
    response_text,
)
from claude_headless.services.session_controller import SessionController
from claude_headless.stream_parser import extract_text

_PREFIX = "  "
_HELP = (
    "Commands: /session, /sessions [limit], /resume <id>, /new, "
    "/export <path>, /import <path>, /stats, /help, exit"
)


class Shell:
    """Interactive loop bound to one agent and its session store."""

    def __init__(self, runtime: AppRuntime, *, out=None):
        self._runtime = runtime
        self._agent = runtime.agent
        self._store = runtime.session_store
        self._controller = SessionController(line_prefix=_PREFIX)
        self._out = out or sys.stdout
        self.session_id: str | None = None
        self._commands = {
            "/help": self._help,
            "/session": self._session,
            "/sessions": self._sessions,
            "/resume": self._resume,
            "/new": self._new,
            "/export": self._export,
            "/import": self._import,
            "/stats": self._stats,
        }

    def _print(self, text: str = "") -> None:
        print(text, file=self._out)

    async def handle(self, line: str) -> None:
        trimmed = line.strip()
        if not trimmed:
            return
        if trimmed.startswith("/"):
            name, _, argument = trimmed.partition(" ")
            handler = self._commands.get(name)
            if handler is None:
                self._print(f"{_PREFIX}Unknown command: {name}. {_HELP}")
                return
            handler(argument.strip())
            return
        await self._prompt(trimmed)

    async def _prompt(self, prompt: str) -> None:
        if self._agent.client.config.default_options.output_format == STREAM_JSON:
            stream = self._agent.run_stream(prompt, session_id=self.session_id)
            async with stream:
                async for message in stream:
                    if isinstance(message, AssistantMessage):
                        self._print(extract_text(message.content))
                    elif isinstance(message, ResultMessage) and message.session_id:
                        self.session_id = self.session_id or message.session_id
            return

        response = await self._agent.run(prompt, session_id=self.session_id)
        self._print(response_text(response).rstrip("\n"))
        if isinstance(response, JsonResponse) and response.session_id:
            self.session_id = self.session_id or response.session_id
        elif isinstance(response, StreamJsonResponse) and response.session_id:
            self.session_id = self.session_id or response.session_id

    def _help(self, _: str) -> None:
        self._print(f"{_PREFIX}{_HELP}")

    def _session(self, _: str) -> None:
        if self.session_id is None:
            self._print(f"{_PREFIX}No active session; the next prompt starts one.")
            return
        metadata = self._store.get_session(self.session_id)
        if metadata is None:
            self._print(f"{_PREFIX}Session {self.session_id} has nothing stored yet.")
            return
        history = self._store.get_conversation_history(self.session_id)
        for line in self._controller.format_session_summary_lines(metadata, history):
            self._print(line)

    def _sessions(self, argument: str) -> None:
        limit = int(argument) if argument.isdigit() else 20
        sessions = self._store.list_sessions(limit=limit)
        if not sessions:
            self._print(f"{_PREFIX}No stored sessions.")
            return
        for session in sessions:
            self._print(self._controller.format_session_list_entry(session, active_session_id=self.session_id))

    def _resume(self, argument: str) -> None:
        if not argument:
            self._print(f"{_PREFIX}Usage: /resume <id>")
            return
        matches = [session.id for session in self._store.list_sessions() if session.id.startswith(argument)]
        if len(matches) != 1:
            self._print(f"{_PREFIX}No unique stored session matches {argument!r}.")
            return
        self.session_id = matches[0]
        self._print(f"{_PREFIX}Resumed session {self.session_id}")

    def _new(self, _: str) -> None:
        self.session_id = None
        self._print(f"{_PREFIX}Started a new session.")

    def _export(self, argument: str) -> None:
        if not argument:
            self._print(f"{_PREFIX}Usage: /export <path>")
            return
        if self.session_id is None:
            self._print(f"{_PREFIX}No active session to export.")
            return
        data = self._store.get_session_data(self.session_id)
        if data is None:
            self._print(f"{_PREFIX}Session {self.session_id} has nothing stored yet.")
            return
        Path(argument).write_text(json.dumps(data.to_dict(), indent=2), encoding="utf-8")
        self._print(f"{_PREFIX}Exported {len(data.history)} turn(s) to {argument}")

    def _import(self, argument: str) -> None:
        if not argument:
            self._print(f"{_PREFIX}Usage: /import <path>")
            return
        data = SessionData.from_dict(json.loads(Path(argument).read_text(encoding="utf-8")))
        self._store.import_session_data(data)
        self.session_id = data.metadata.id
        self._print(f"{_PREFIX}Imported session {self.session_id} ({len(data.history)} turn(s))")

    def _stats(self, _: str) -> None:
        for line in self._controller.format_stats_lines(self._store.get_stats()):
            self._print(line)


async def main() -> None:
    load_dotenv()

    try:
        app = parse_app_config(load_json_config())
    except ClaudeError as ex:
        print(f"Configuration error: {ex}", file=sys.stderr)
        sys.exit(1)

    runtime = bootstrap_runtime(app, resolve_runtime_env())
    shell = Shell(runtime)

    if not runtime.agent.client.is_available():
        logger.error(f"CLI not found on PATH: {runtime.agent.client.config.cli}")
        runtime.close()
        sys.exit(1)

    print(f"claude-headless: agent {runtime.agent.name} (type 'exit' to quit, '/help' for commands)")
    print(f"Working directory: {runtime.working_directory}")
    print(f"Session store: {runtime.session_store.db_path}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            if user_input.strip() in ("exit", "quit"):
                break

            try:
                await shell.handle(user_input)
            except ClaudeError as ex:
                logger.error(f"{type(ex).__name__}: {ex}")
            except (OSError, ValueError, KeyError) as ex:
                logger.error(f"Command failed: {ex}")
            print()
    finally:
        runtime.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
