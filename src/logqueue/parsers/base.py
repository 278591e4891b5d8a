"""Parser protocol and the structured entry every parser produces."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One decoded log line. Ephemeral: consumed by the accumulator and dropped."""

    timestamp: str
    level: str
    message: str
    payload: dict[str, Any] | None = None
    ip: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "message": self.message,
            "payload": self.payload,
            "ip": self.ip,
        }


@runtime_checkable
class LogParser(Protocol):
    """Protocol for log parsers. Duck-typed, no inheritance required."""

    def parse_line(self, line: str) -> LogEntry | None:
        """Parse a single log line. Returns None if the line is not log-shaped."""
        ...

    def parse_file(self, path: str) -> Iterator[LogEntry]:
        """Stream-parse a log file line by line."""
        ...

    @property
    def name(self) -> str:
        """Human-readable parser name."""
        ...
