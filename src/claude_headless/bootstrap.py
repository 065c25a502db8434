from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from claude_headless.agent import Agent, AgentConfig
from claude_headless.app_config import AppConfig, RuntimeEnv
from claude_headless.logging_config import setup_logging
from claude_headless.memory import SQLiteSessionStore, prune_sessions
from claude_headless.models import QueryOptions
from claude_headless.tool_registry import CatalogToolResolver


@dataclass
class AppRuntime:
    agent: Agent
    session_store: SQLiteSessionStore
    working_directory: str
    log_descriptions: list[str]

    def close(self) -> None:
        self.session_store.close()


def build_query_options(app: AppConfig) -> QueryOptions:
    return QueryOptions(
        output_format=app.output_format,
        allowed_tools=tuple(app.allowed_tools),
        disallowed_tools=tuple(app.disallowed_tools),
        mcp_config=app.mcp_config,
        permission_mode=app.permission_mode,
        append_system_prompt=app.append_system_prompt,
        verbose=app.verbose,
        timeout=app.timeout_seconds,
    )


def _absolute(path: str) -> str:
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = Path.cwd() / candidate
    return str(candidate)


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv, *, configure_logging: bool = True) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers) if configure_logging else []

    working_directory = app.working_directory or os.getcwd()
    store = SQLiteSessionStore(_absolute(env.session_db_path or app.session_db_path))
    prune_sessions(
        store,
        max_sessions=app.max_sessions,
        retention_days=app.retention_days,
        max_turns_per_session=app.max_turns_per_session,
    )

    resolver = None
    if app.tool_ids:
        resolver = CatalogToolResolver(app.mcp_servers, config_dir=Path(working_directory) / ".agent-configs")

    agent = Agent(
        AgentConfig(
            name=app.agent_name,
            cwd=working_directory,
            session_store=store,
            options=build_query_options(app),
            tool_ids=tuple(app.tool_ids),
            tool_resolver=resolver,
            cli=env.cli_path or app.cli_path,
            retry_attempts=app.retry_attempts,
        )
    )
    logger.debug(f"Runtime ready: agent={agent.name}, cwd={working_directory}, store={store.db_path}")

    return AppRuntime(
        agent=agent,
        session_store=store,
        working_directory=working_directory,
        log_descriptions=log_descriptions,
    )
