from __future__ import annotations

import json
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from loguru import logger

from claude_headless.errors import ClaudeConfigError

MCP_PREFIX = "mcp__"


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    category: str
    requires_permission: bool


def _tool(name: str, description: str, category: str, requires_permission: bool = False) -> tuple[str, ToolDefinition]:
    return name, ToolDefinition(name, description, category, requires_permission)


BUILT_IN_TOOLS: dict[str, ToolDefinition] = dict(
    [
        _tool("Task", "Launch a sub-agent for a complex, multi-step task.", "agent"),
        _tool("Bash", "Execute shell commands in a persistent shell session.", "core", True),
        _tool("Glob", "Match file paths against glob patterns.", "core"),
        _tool("Grep", "Search file contents with regular expressions.", "core"),
        _tool("Read", "Read files from the local filesystem.", "file"),
        _tool("Edit", "Perform exact string replacements in files.", "file", True),
        _tool("Write", "Write files to the local filesystem.", "file", True),
        _tool("NotebookEdit", "Edit Jupyter notebook cells.", "notebook", True),
        _tool("WebFetch", "Fetch a URL and convert the content to markdown.", "web"),
        _tool("WebSearch", "Search the web with optional domain filtering.", "web"),
        _tool("TodoWrite", "Create and manage a structured task list.", "task"),
        _tool("BashOutput", "Read output from a background shell.", "core"),
        _tool("KillShell", "Kill a background shell by id.", "core", True),
        _tool("Skill", "Run a specialised skill in the conversation.", "agent"),
        _tool("SlashCommand", "Run a custom slash command.", "agent"),
        _tool("ExitPlanMode", "Leave plan mode after presenting a plan.", "agent"),
    ]
)


def get_all_tool_names() -> list[str]:
    return list(BUILT_IN_TOOLS)


def get_tools_by_category(category: str) -> list[ToolDefinition]:
    return [tool for tool in BUILT_IN_TOOLS.values() if tool.category == category]


def is_valid_tool(name: str) -> bool:
    return name in BUILT_IN_TOOLS


def get_safe_tools() -> list[str]:
    return [tool.name for tool in BUILT_IN_TOOLS.values() if not tool.requires_permission]


TOOL_PRESETS: dict[str, tuple[str, ...]] = {
    "readonly": ("Read", "Glob", "Grep", "WebFetch", "WebSearch"),
    "codeEditor": ("Read", "Edit", "Write", "Glob", "Grep", "Bash"),
    "webResearch": ("WebSearch", "WebFetch", "Read", "Grep"),
    "dataAnalysis": ("Read", "Bash", "NotebookEdit", "Glob"),
    "full": tuple(get_all_tool_names()),
    "safe": tuple(get_safe_tools()),
}


@dataclass(frozen=True)
class McpServerConfig:
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"command": self.command, "args": list(self.args)}
        if self.env:
            data["env"] = dict(self.env)
        return data


def _server_dict(config: McpServerConfig | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(config, McpServerConfig):
        return config.to_dict()
    return dict(config)


def generate_mcp_config_content(servers: Mapping[str, McpServerConfig | Mapping[str, Any]]) -> str:
    return json.dumps({"mcpServers": {name: _server_dict(cfg) for name, cfg in servers.items()}}, indent=2)


def write_mcp_config(path: str | Path, servers: Mapping[str, McpServerConfig | Mapping[str, Any]]) -> str:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(generate_mcp_config_content(servers), encoding="utf-8")
    logger.debug(f"Wrote MCP config for {len(servers)} server(s) to {target}")
    return str(target)


@dataclass(frozen=True)
class ResolvedTools:
    allowed_tool_names: tuple[str, ...] = ()
    mcp_config_path: str | None = None


@runtime_checkable
class ToolResolver(Protocol):
    def resolve(self, tool_ids: Sequence[str]) -> ResolvedTools: ...


class CatalogToolResolver:
    """Resolves tool ids against the built-in catalogue and known MCP servers.

    An id is a built-in tool name, a preset name, an MCP server name (all of
    that server's tools) or a qualified ``mcp__<server>__<tool>`` name. When any
    MCP server is referenced, a config file naming those servers is written
    under ``config_dir``.
    """

    def __init__(
        self,
        mcp_servers: Mapping[str, McpServerConfig | Mapping[str, Any]] | None = None,
        *,
        config_dir: str | Path | None = None,
    ):
        self._mcp_servers = dict(mcp_servers or {})
        self._config_dir = Path(config_dir) if config_dir is not None else Path(os.getcwd()) / ".agent-configs"

    def resolve(self, tool_ids: Sequence[str]) -> ResolvedTools:
        allowed: list[str] = []
        servers: dict[str, McpServerConfig | Mapping[str, Any]] = {}

        def allow(name: str) -> None:
            if name not in allowed:
                allowed.append(name)

        for tool_id in tool_ids:
            if tool_id in BUILT_IN_TOOLS:
                allow(tool_id)
            elif tool_id in TOOL_PRESETS:
                for name in TOOL_PRESETS[tool_id]:
                    allow(name)
            elif tool_id in self._mcp_servers:
                allow(f"{MCP_PREFIX}{tool_id}")
                servers[tool_id] = self._mcp_servers[tool_id]
            elif tool_id.startswith(MCP_PREFIX):
                server = tool_id[len(MCP_PREFIX):].split("__", 1)[0]
                if server not in self._mcp_servers:
                    raise ClaudeConfigError(f"Unknown MCP server in tool id: {tool_id}")
                allow(tool_id)
                servers[server] = self._mcp_servers[server]
            else:
                raise ClaudeConfigError(f"Unknown tool id: {tool_id}")

        config_path = None
        if servers:
            config_path = write_mcp_config(self._config_dir / f"mcp-config-{uuid4().hex}.json", servers)
        return ResolvedTools(allowed_tool_names=tuple(allowed), mcp_config_path=config_path)
