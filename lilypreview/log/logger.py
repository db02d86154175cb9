from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from typing import TextIO

from PySide6.QtCore import QObject, Signal

ROOT_LOGGER_NAME = "lilypreview"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class TimestampFormatter(logging.Formatter):
    """Formats records as ``[<ISO-8601 UTC timestamp>] <message>``."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds")
        text = f"[{stamp}] {record.getMessage()}"
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text


def resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    return _LEVELS.get(str(level or "").strip().lower(), logging.INFO)


def configure_logging(level: str | int | None = "info", stream: TextIO | None = None) -> logging.Logger:
    """Attach one stream handler to the package logger, replacing an earlier one."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(resolve_level(level))
    for handler in list(logger.handlers):
        if getattr(handler, "_lilypreview_stream", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(TimestampFormatter())
    handler._lilypreview_stream = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.propagate = False
    return logger


class _ChannelHandler(logging.Handler):
    def __init__(self, channel: "OutputChannel") -> None:
        super().__init__()
        self._channel = channel
        self.setFormatter(TimestampFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:  # noqa: BLE001
            self.handleError(record)
            return
        self._channel.append_line(line)


class OutputChannel(QObject):
    """In-memory output panel fed by the package logger."""

    lineAppended = Signal(str)

    def __init__(self, parent: QObject | None = None, *, max_lines: int = 2000) -> None:
        super().__init__(parent)
        self._max_lines = max(1, int(max_lines))
        self._lines: list[str] = []
        self.handler = _ChannelHandler(self)
        self._attached_to: logging.Logger | None = None

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def append_line(self, line: str) -> None:
        self._lines.append(line)
        if len(self._lines) > self._max_lines:
            del self._lines[: len(self._lines) - self._max_lines]
        self.lineAppended.emit(line)

    def clear(self) -> None:
        self._lines.clear()

    def attach(self, logger: logging.Logger | None = None) -> None:
        target = logger or logging.getLogger(ROOT_LOGGER_NAME)
        self.detach()
        target.addHandler(self.handler)
        self._attached_to = target

    def detach(self) -> None:
        if self._attached_to is not None:
            self._attached_to.removeHandler(self.handler)
            self._attached_to = None
