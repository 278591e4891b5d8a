"""Bracketed-timestamp log parser.

Recognised shape::

    [2025-02-20T10:01:15Z] ERROR Database timeout {"userId": 123, "ip": "192.168.1.1"}
    └──── timestamp ────┘ └lvl┘ └──── message ───┘ └──── optional JSON payload ────┘

Lines that do not have this shape yield ``None`` and are only counted. A line
with the shape but an unparseable payload still yields an entry; the broken
payload text is kept verbatim at the end of the message.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator

from .base import LogEntry

logger = logging.getLogger(__name__)

# The lazy message group backtracks over every " {" that has no closing brace,
# so very long brace-heavy lines cost quadratic time. Lines are matched as is.
_BRACKET_RE = re.compile(
    r"^\[(?P<timestamp>.*?)\]\s+"
    r"(?P<level>\w+)\s+"
    r"(?P<message>.*?)"
    r"(?:\s+(?P<payload>\{.*\}))?$"
)


def _decode_payload(raw: str) -> dict[str, Any] | None:
    try:
        value = json.loads(raw)
    except (ValueError, RecursionError):
        # RecursionError: nesting deeper than the decoder can follow.
        return None
    return value if isinstance(value, dict) else None


def parse_line(line: str) -> LogEntry | None:
    """Decode one line. Pure: safe to call from any number of streams at once."""
    line = line.rstrip("\r\n")
    m = _BRACKET_RE.match(line)
    if not m:
        return None

    timestamp, level, message, raw_payload = m.group("timestamp", "level", "message", "payload")
    if raw_payload is None:
        return LogEntry(timestamp=timestamp, level=level, message=message)

    payload = _decode_payload(raw_payload)
    if payload is None:
        logger.debug("Invalid JSON payload kept in message: %s", raw_payload)
        return LogEntry(
            timestamp=timestamp,
            level=level,
            message=line[m.start("message"):m.end("payload")],
        )

    ip = payload.get("ip")
    return LogEntry(
        timestamp=timestamp,
        level=level,
        message=message,
        payload=payload,
        ip=str(ip) if ip else None,
    )


class BracketLogParser:
    """Parse ``[timestamp] LEVEL message {json}`` application logs."""

    @property
    def name(self) -> str:
        return "bracket"

    def parse_line(self, line: str) -> LogEntry | None:
        return parse_line(line)

    def parse_file(self, path: str) -> Iterator[LogEntry]:
        """Stream-parse a file, skipping lines that are not log-shaped."""
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                entry = parse_line(line)
                if entry is not None:
                    yield entry
