"""
Turns buffered CLI output into one typed response.

Precedence rule, shared by every call path: in ``text`` mode the exit code is
authoritative. In the structured modes (``json`` and ``stream-json``) the
payload is authoritative: an embedded ``is_error`` flag or terminal ``error``
message raises ``ClaudeAPIError`` whatever the exit code, and a well-formed
success payload is returned even when the exit code is non-zero. The exit
code only decides the error type when no usable payload exists.
"""

from __future__ import annotations

import json

from loguru import logger

from claude_headless.errors import ClaudeAPIError, ClaudeConfigError, ClaudeParseError, ClaudeProcessError
from claude_headless.models import (
    JSON,
    STREAM_JSON,
    TEXT,
    JsonResponse,
    ProcessResult,
    Response,
    ResultMessage,
    StreamJsonResponse,
    TextResponse,
)
from claude_headless.stream_parser import decode_text, terminal_failure


def _process_failure(result: ProcessResult, reason: str) -> ClaudeProcessError:
    return ClaudeProcessError(
        f"Command failed with exit code {result.exit_code}: {reason}",
        exit_code=result.exit_code,
        stderr=result.stderr,
    )


def reconcile(result: ProcessResult, output_format: str) -> Response:
    if output_format == TEXT:
        return _reconcile_text(result)
    if output_format == JSON:
        return _reconcile_json(result)
    if output_format == STREAM_JSON:
        return _reconcile_stream_json(result)
    raise ClaudeConfigError(f"Unknown output format: {output_format!r}")


def _reconcile_text(result: ProcessResult) -> TextResponse:
    if result.exit_code != 0:
        raise _process_failure(result, result.stderr.strip() or "no output on stderr")
    return TextResponse(text=result.stdout, exit_code=result.exit_code)


def _reconcile_json(result: ProcessResult) -> JsonResponse:
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as ex:
        if result.exit_code != 0:
            raise _process_failure(result, "output is not a JSON document") from ex
        raise ClaudeParseError(f"Failed to parse JSON response: {ex}", result.stdout) from ex

    if not isinstance(data, dict):
        if result.exit_code != 0:
            raise _process_failure(result, "output is not a JSON object")
        raise ClaudeParseError("JSON response is not an object", result.stdout)

    try:
        response = JsonResponse.from_payload(data, result.exit_code)
    except (ValueError, TypeError) as ex:
        if result.exit_code != 0:
            raise _process_failure(result, "malformed JSON payload") from ex
        raise ClaudeParseError(f"Malformed JSON response: {ex}", result.stdout) from ex

    if response.is_error:
        raise ClaudeAPIError(response.result or "Request failed", response=data, exit_code=result.exit_code)
    if result.exit_code != 0:
        logger.debug(f"JSON success payload with exit code {result.exit_code}; payload wins")
    return response


def _reconcile_stream_json(result: ProcessResult) -> StreamJsonResponse:
    try:
        messages = decode_text(result.stdout)
    except ClaudeParseError as ex:
        if result.exit_code != 0:
            raise _process_failure(result, "malformed stream output") from ex
        raise

    terminal = messages[-1] if messages else None
    if terminal is not None:
        failure = terminal_failure(terminal, exit_code=result.exit_code)
        if failure is not None:
            raise failure

    if not isinstance(terminal, ResultMessage):
        if result.exit_code != 0:
            raise _process_failure(result, "no terminal message in stream")
        raise ClaudeParseError("No terminal result message in stream", result.stdout)

    return StreamJsonResponse(messages=messages, final=terminal, exit_code=result.exit_code)
