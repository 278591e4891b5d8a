"""Running per-file statistics for one processing attempt."""
from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from ..config import normalise_keywords
from ..parsers.base import LogEntry


@dataclass(frozen=True)
class RunStats:
    """Immutable snapshot of a StatsAccumulator."""

    total_lines: int = 0
    error_count: int = 0
    warning_count: int = 0
    keyword_matches: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    ip_addresses: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    processing_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready shape used in progress and completion events."""
        return {
            "totalLines": self.total_lines,
            "errorCount": self.error_count,
            "warningCount": self.warning_count,
            "keywordMatches": dict(self.keyword_matches),
            "ipAddresses": dict(self.ip_addresses),
            "processingTime": self.processing_time_ms,
        }


class StatsAccumulator:
    """Fold log entries into line, level, keyword and IP counters.

    Every input line goes through :meth:`observe`, parsed or not: the total is
    bumped for all of them, the structured counters only for real entries.

    Keywords are matched against the entry *level*, not the message. A
    keyword such as ``"critical"`` therefore only counts ``CRITICAL`` lines.

    Usage::

        acc = StatsAccumulator(["error", "warning", "critical"])
        for line in lines:
            acc.observe(parse_line(line))
        print(acc.snapshot().to_dict())
    """

    def __init__(self, keywords: Iterable[str]) -> None:
        self._keywords = tuple(normalise_keywords(list(keywords)))
        self._started = time.monotonic()
        self._total = 0
        self._errors = 0
        self._warnings = 0
        self._keyword_matches: dict[str, int] = dict.fromkeys(self._keywords, 0)
        self._ips: Counter[str] = Counter()

    @property
    def keywords(self) -> tuple[str, ...]:
        return self._keywords

    @property
    def total_lines(self) -> int:
        return self._total

    def observe(self, entry: LogEntry | None) -> None:
        self._total += 1
        if entry is None:
            return

        level = entry.level.lower()
        if "error" in level:
            self._errors += 1
        elif "warning" in level:
            self._warnings += 1

        if entry.message:
            for keyword in self._keywords:
                if keyword in level:
                    self._keyword_matches[keyword] += 1

        if entry.ip:
            self._ips[entry.ip] += 1

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def snapshot(self) -> RunStats:
        return RunStats(
            total_lines=self._total,
            error_count=self._errors,
            warning_count=self._warnings,
            keyword_matches=MappingProxyType(dict(self._keyword_matches)),
            ip_addresses=MappingProxyType(dict(self._ips)),
            processing_time_ms=self.elapsed_ms(),
        )
