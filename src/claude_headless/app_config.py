from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from claude_headless.errors import ClaudeConfigError
from claude_headless.models import OUTPUT_FORMATS, STREAM_JSON, TEXT
from claude_headless.process import DEFAULT_CLI, DEFAULT_TIMEOUT

CLI_ENV_VAR = "CLAUDE_HEADLESS_CLI"
DB_ENV_VAR = "CLAUDE_HEADLESS_DB"


@dataclass
class RuntimeEnv:
    cli_path: str | None
    session_db_path: str | None


@dataclass
class AppConfig:
    cli_path: str
    output_format: str
    timeout_seconds: float
    working_directory: str | None
    allowed_tools: list[str]
    disallowed_tools: list[str]
    tool_ids: list[str]
    permission_mode: str | None
    append_system_prompt: str | None
    verbose: bool
    mcp_config: str | None
    mcp_servers: dict
    session_db_path: str
    max_sessions: int
    max_turns_per_session: int
    retention_days: int
    retry_attempts: int
    agent_name: str
    log_level: str
    log_consumers: list | None


def load_json_config(path: str | Path | None = None) -> dict:
    config_path = Path(path) if path is not None else Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            try:
                return json.load(f)
            except json.JSONDecodeError as ex:
                raise ClaudeConfigError(f"Invalid JSON in {config_path}: {ex}") from ex
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _str_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(item) for item in value]


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def parse_app_config(config: dict) -> AppConfig:
    output_format = str(config.get("OutputFormat", TEXT)).strip().lower()
    if output_format not in OUTPUT_FORMATS:
        raise ClaudeConfigError(f"OutputFormat must be one of {', '.join(OUTPUT_FORMATS)}, got {output_format!r}")

    return AppConfig(
        cli_path=str(config.get("CliPath", DEFAULT_CLI)),
        output_format=output_format,
        timeout_seconds=float(config.get("TimeoutSeconds", DEFAULT_TIMEOUT)),
        working_directory=_optional_str(config.get("WorkingDirectory")),
        allowed_tools=_str_list(config.get("AllowedTools")),
        disallowed_tools=_str_list(config.get("DisallowedTools")),
        tool_ids=_str_list(config.get("ToolIds")),
        permission_mode=_optional_str(config.get("PermissionMode")),
        append_system_prompt=_optional_str(config.get("AppendSystemPrompt")),
        verbose=_to_bool(config.get("Verbose"), default=output_format == STREAM_JSON),
        mcp_config=_optional_str(config.get("McpConfig")),
        mcp_servers=dict(config.get("McpServers", {})),
        session_db_path=str(config.get("SessionDbPath", ".claude_headless/sessions.db")),
        max_sessions=int(config.get("MaxSessions", 200)),
        max_turns_per_session=int(config.get("MaxTurnsPerSession", 0)),
        retention_days=int(config.get("RetentionDays", 30)),
        retry_attempts=max(1, int(config.get("RetryAttempts", 1))),
        agent_name=str(config.get("AgentName", "claude-headless")),
        log_level=str(config.get("LogLevel", "INFO")).upper(),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        cli_path=os.environ.get(CLI_ENV_VAR) or None,
        session_db_path=os.environ.get(DB_ENV_VAR) or None,
    )
