import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


class _SinkConsumer:
    """Adds one loguru sink; subclasses supply the sink and its options."""

    def sink(self) -> Any:
        raise NotImplementedError

    def sink_options(self) -> dict[str, Any]:
        return {}

    def register(self, level: str) -> int:
        return logger.add(self.sink(), level=level, **self.sink_options())


class ConsoleLogConsumer(_SinkConsumer):
    def __init__(self, stream: str = "stderr"):
        self._stream_name = "stdout" if stream == "stdout" else "stderr"

    def sink(self) -> Any:
        return sys.stdout if self._stream_name == "stdout" else sys.stderr

    def sink_options(self) -> dict[str, Any]:
        return {"format": _CONSOLE_FORMAT}

    def describe(self, level: str) -> str:
        return f"console ({self._stream_name}, {level})"


class FileLogConsumer(_SinkConsumer):
    """Rotating log file. ``serialize`` writes one JSON record per line."""

    def __init__(
        self,
        path: str = ".claude_headless/claude_headless.log",
        rotation: str = "10 MB",
        retention: int = 3,
        serialize: bool = False,
    ):
        self._path = Path(path)
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def sink(self) -> Any:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        return str(self._path)

    def sink_options(self) -> dict[str, Any]:
        return {
            "format": _FILE_FORMAT,
            "rotation": self._rotation,
            "retention": self._retention,
            "serialize": self._serialize,
            "enqueue": True,
        }

    def describe(self, level: str) -> str:
        kind = "jsonl" if self._serialize else "text"
        return f"file ({self._path}, {kind}, {level})"


_CONSUMER_TYPES: dict[str, type[_SinkConsumer]] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}


def _consumer_from_config(config: dict[str, Any]) -> _SinkConsumer | None:
    cls = _CONSUMER_TYPES.get(config.get("type", ""))
    if cls is None:
        return None
    return cls(**{key: value for key, value in config.items() if key not in ("type", "level")})


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all loguru sinks with the configured consumers.

    Without explicit consumers only the console is used; the library itself
    never adds sinks. Returns a description of each consumer registered.
    """
    logger.remove()

    descriptions: list[str] = []
    for config in consumers if consumers is not None else [{"type": "console"}]:
        consumer = _consumer_from_config(config)
        if consumer is None:
            logger.warning(f"Unknown log consumer type: {config.get('type')!r}")
            continue
        sink_level = str(config.get("level", level)).upper()
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
