"""In-memory log handler keeping the most recent records for the interactive log view."""

import logging
from collections import deque


class MemoryLogHandler(logging.Handler):
    """Ring buffer of formatted log lines."""

    def __init__(self, capacity: int = 200, level: int = logging.INFO) -> None:
        super().__init__(level)
        self._lines: deque[str] = deque(maxlen=capacity)
        self.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._lines.append(self.format(record))
        except Exception:
            self.handleError(record)

    def lines(self, last: int | None = None) -> list[str]:
        if last is None:
            return list(self._lines)
        return list(self._lines)[-last:] if last > 0 else []

    def clear(self) -> None:
        self._lines.clear()


def install(capacity: int = 200, level: int = logging.INFO, logger_name: str = "pymagmod") -> MemoryLogHandler:
    """Attach a MemoryLogHandler to the package logger and return it."""
    handler = MemoryLogHandler(capacity, level)
    logger = logging.getLogger(logger_name)
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    return handler
