from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
from collections.abc import Sequence

from loguru import logger

from claude_headless.errors import ClaudeError, ClaudeProcessError, ClaudeTimeoutError
from claude_headless.models import ProcessResult
from claude_headless.stream_parser import LineBuffer

DEFAULT_CLI = "claude"
DEFAULT_TIMEOUT = 120.0

_READ_CHUNK = 64 * 1024
_REAP_TIMEOUT = 5.0

CliCommand = str | Sequence[str]


def _command(cli: CliCommand, args: Sequence[str]) -> list[str]:
    prefix = [cli] if isinstance(cli, str) else list(cli)
    if not prefix or not prefix[0]:
        raise ClaudeProcessError("No command specified", code="NO_COMMAND")
    return [*prefix, *args]


def _merged_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if env is None:
        return None
    merged = dict(os.environ)
    merged.update(env)
    return merged


async def _spawn(cmd: list[str], cwd: str | None, env: dict[str, str] | None) -> asyncio.subprocess.Process:
    logger.debug(f"Spawning CLI: {cmd[0]} ({len(cmd) - 1} args), cwd={cwd or os.getcwd()}")
    try:
        return await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=_merged_env(env),
        )
    except OSError as ex:
        raise ClaudeProcessError(f"Process execution failed: {ex}", code="SPAWN_FAILED") from ex


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Kill the child if it is still running and reap it."""
    if proc.returncode is None:
        logger.debug(f"Killing CLI process {proc.pid}")
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    try:
        await asyncio.wait_for(proc.wait(), timeout=_REAP_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning(f"CLI process {proc.pid} was not reaped within {_REAP_TIMEOUT:.0f}s")


async def execute_command(
    args: Sequence[str],
    *,
    stdin: str | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
    cwd: str | None = None,
    cli: CliCommand = DEFAULT_CLI,
    env: dict[str, str] | None = None,
) -> ProcessResult:
    """Run the CLI to completion and return its buffered output.

    ``timeout`` bounds the whole execution. A non-zero exit code is returned,
    not raised; whether it is an error depends on the output format.
    """
    cmd = _command(cli, args)
    limit = DEFAULT_TIMEOUT if timeout is None else timeout
    proc = await _spawn(cmd, cwd, env)
    # An empty payload still makes communicate() close the pipe.
    payload = stdin.encode() if stdin is not None else b""

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=limit)
    except asyncio.TimeoutError:
        logger.warning(f"CLI process {proc.pid} timed out after {limit}s")
        await _terminate(proc)
        raise ClaudeTimeoutError(
            f"Command timed out after {limit}s", timeout=limit, kind=ClaudeTimeoutError.ABSOLUTE
        ) from None
    except BaseException:
        await _terminate(proc)
        raise

    exit_code = proc.returncode if proc.returncode is not None else 1
    logger.debug(f"CLI process {proc.pid} exited with code {exit_code} ({len(stdout)} bytes stdout)")
    return ProcessResult(
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
        exit_code=exit_code,
    )


class ProcessStream:
    """Incremental stdout of one CLI run, as an explicitly closable async sequence.

    The process is spawned on the first read. Every chunk re-arms the idle
    timeout; after ``idle_timeout`` seconds of silence the child is killed and
    ``ClaudeTimeoutError`` is raised. ``aclose()`` kills and reaps the child if
    it is still alive and is safe to call more than once.
    """

    def __init__(
        self,
        args: Sequence[str],
        *,
        stdin: str | None = None,
        idle_timeout: float | None = DEFAULT_TIMEOUT,
        cwd: str | None = None,
        cli: CliCommand = DEFAULT_CLI,
        env: dict[str, str] | None = None,
    ):
        self._cmd = _command(cli, args)
        self._stdin = stdin
        self._idle_timeout = DEFAULT_TIMEOUT if idle_timeout is None else idle_timeout
        self._cwd = cwd
        self._env = env
        self._proc: asyncio.subprocess.Process | None = None
        self._stdin_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stderr_chunks: list[bytes] = []
        self._exit_code: int | None = None
        self._eof = False
        self._closed = False

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def stderr(self) -> str:
        return b"".join(self._stderr_chunks).decode(errors="replace")

    async def start(self) -> ProcessStream:
        if self._proc is None and not self._closed:
            try:
                self._proc = await _spawn(self._cmd, self._cwd, self._env)
            except BaseException:
                self._closed = True
                raise
            self._stdin_task = asyncio.create_task(self._feed_stdin())
            self._stderr_task = asyncio.create_task(self._drain_stderr())
        return self

    def lines(self) -> ProcessLines:
        return ProcessLines(self)

    def __aiter__(self) -> ProcessStream:
        return self

    async def __anext__(self) -> bytes:
        if self._closed or self._eof:
            raise StopAsyncIteration
        await self.start()
        assert self._proc is not None and self._proc.stdout is not None

        try:
            chunk = await asyncio.wait_for(self._proc.stdout.read(_READ_CHUNK), timeout=self._idle_timeout)
            if not chunk:
                await self._finish()
        except asyncio.TimeoutError:
            logger.warning(f"No output from CLI process {self._proc.pid} for {self._idle_timeout}s, killing it")
            await self.aclose()
            raise ClaudeTimeoutError(
                f"Stream idle for more than {self._idle_timeout}s",
                timeout=self._idle_timeout,
                kind=ClaudeTimeoutError.IDLE,
            ) from None
        except BaseException:
            await self.aclose()
            raise

        if not chunk:
            raise StopAsyncIteration
        return chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._proc is None:
            return
        await _terminate(self._proc)
        for task in (self._stdin_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if self._exit_code is None:
            self._exit_code = self._proc.returncode

    async def __aenter__(self) -> ProcessStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.aclose()
        return False

    async def _finish(self) -> None:
        assert self._proc is not None
        self._eof = True
        await asyncio.wait_for(self._proc.wait(), timeout=self._idle_timeout)
        if self._stderr_task is not None:
            await self._stderr_task
        self._exit_code = self._proc.returncode
        logger.debug(f"CLI process {self._proc.pid} exited with code {self._exit_code}")
        await self.aclose()

    async def _feed_stdin(self) -> None:
        assert self._proc is not None and self._proc.stdin is not None
        pipe = self._proc.stdin
        try:
            if self._stdin is not None:
                pipe.write(self._stdin.encode())
                await pipe.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("CLI closed stdin before the input was fully written")
        finally:
            pipe.close()

    async def _drain_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        while True:
            chunk = await self._proc.stderr.read(_READ_CHUNK)
            if not chunk:
                return
            self._stderr_chunks.append(chunk)


class ProcessLines:
    """Line-oriented view over a ProcessStream; blank lines are skipped."""

    def __init__(self, stream: ProcessStream):
        self._stream = stream
        self._buffer = LineBuffer()
        self._pending: list[str] = []
        self._eof = False

    def __aiter__(self) -> ProcessLines:
        return self

    async def __anext__(self) -> str:
        while not self._pending:
            if self._eof:
                raise StopAsyncIteration
            try:
                chunk = await self._stream.__anext__()
            except StopAsyncIteration:
                self._eof = True
                self._pending = [line for line in self._buffer.flush() if line.strip()]
                continue
            self._pending = [line for line in self._buffer.feed(chunk) if line.strip()]
        return self._pending.pop(0)

    async def aclose(self) -> None:
        await self._stream.aclose()

    async def __aenter__(self) -> ProcessLines:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self._stream.aclose()
        return False


def execute_streaming(
    args: Sequence[str],
    *,
    stdin: str | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
    cwd: str | None = None,
    cli: CliCommand = DEFAULT_CLI,
    env: dict[str, str] | None = None,
) -> ProcessStream:
    """Prepare a streaming run; ``timeout`` is the idle timeout."""
    return ProcessStream(args, stdin=stdin, idle_timeout=timeout, cwd=cwd, cli=cli, env=env)


def check_cli_available(cli: CliCommand = DEFAULT_CLI) -> bool:
    executable = cli if isinstance(cli, str) else (list(cli) or [""])[0]
    return bool(executable) and shutil.which(executable) is not None


async def get_cli_version(cli: CliCommand = DEFAULT_CLI, timeout: float = 10.0) -> str | None:
    try:
        result = await execute_command(["--version"], timeout=timeout, cli=cli)
    except ClaudeError as ex:
        logger.debug(f"Could not read CLI version: {ex}")
        return None
    if result.exit_code != 0:
        return None
    return result.stdout.strip()
