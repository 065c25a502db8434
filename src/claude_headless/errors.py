"""
Error types raised by the headless client.

Every failure of an exchange surfaces as one of the subclasses below; nothing
is logged-and-dropped.
"""

from __future__ import annotations

from typing import Any


class ClaudeError(Exception):
    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class ClaudeProcessError(ClaudeError):
    """Spawn failure, or a non-zero exit that no structured payload explains."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "PROCESS_ERROR",
        exit_code: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message, code, {"exit_code": exit_code, "stderr": stderr})
        self.exit_code = exit_code
        self.stderr = stderr


class ClaudeTimeoutError(ClaudeError):
    """Raised when the absolute (buffered) or idle (streaming) timeout expires."""

    ABSOLUTE = "absolute"
    IDLE = "idle"

    def __init__(self, message: str, *, timeout: float, kind: str = ABSOLUTE):
        super().__init__(message, "TIMEOUT", {"timeout": timeout, "kind": kind})
        self.timeout = timeout
        self.kind = kind


class ClaudeParseError(ClaudeError):
    def __init__(self, message: str, raw_data: str | None = None):
        super().__init__(message, "PARSE_ERROR", {"raw_data": raw_data})
        self.raw_data = raw_data


class ClaudeAPIError(ClaudeError):
    """The program ran to completion but reported a logical failure."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "API_ERROR",
        response: dict[str, Any] | None = None,
        exit_code: int | None = None,
    ):
        super().__init__(message, code, response)
        self.response = response
        self.exit_code = exit_code


class ClaudeSessionError(ClaudeError):
    def __init__(self, message: str, session_id: str | None = None):
        super().__init__(message, "SESSION_ERROR", {"session_id": session_id} if session_id else None)
        self.session_id = session_id


class ClaudeConfigError(ClaudeError):
    def __init__(self, message: str):
        super().__init__(message, "CONFIG_ERROR")
