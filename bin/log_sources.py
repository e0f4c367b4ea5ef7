#!/usr/bin/env python3
"""
AccessReplay Log Sources

Parsers for the two log formats the drivers consume:
- access logs (common log format with quoted ident, referrer and user agent)
- request logs, where every request appears as a "->" start line and a
  "<-" end line sharing a numeric id
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# ACCESS LOG
# =============================================================================

ACCESS_LOG_PATTERN = re.compile(
    r'(.+) "(.+)" (.+) \[(.+)\] "([A-Z]+) (.+) HTTP/1.1" (\d+) (.+) "(.*?)" "(.*?)"'
)


@dataclass(frozen=True)
class AccessLogEntry:
    client: str
    ident: str
    user: str
    timestamp: str
    method: str
    path: str
    status: int
    size: str
    referrer: str
    user_agent: str


def parse_access_line(line: str) -> Optional[AccessLogEntry]:
    """Parse one access log line; None when it does not match."""
    m = ACCESS_LOG_PATTERN.fullmatch(line.rstrip("\r\n"))
    if m is None:
        return None
    client, ident, user, timestamp, method, path, status, size, referrer, agent = m.groups()
    return AccessLogEntry(
        client=client,
        ident=ident,
        user=user,
        timestamp=timestamp,
        method=method,
        path=path,
        status=int(status),
        size=size,
        referrer=referrer,
        user_agent=agent,
    )


def iter_access_log(lines: Iterable[str]) -> Iterator[AccessLogEntry]:
    for line in lines:
        entry = parse_access_line(line)
        if entry is None:
            if line.strip():
                logger.warning("invalid common log entry: %s", line.rstrip("\r\n"))
            continue
        yield entry


def query_parameter_counts(paths: Iterable[str]) -> Counter:
    """Count query-string parameter names; only well-formed key=value pairs count."""
    counts: Counter = Counter()
    for path in paths:
        idx = path.find("?")
        if idx <= 0:
            continue
        for pair in path[idx + 1:].split("&"):
            kv = pair.split("=")
            if len(kv) == 2 and kv[0] and kv[1]:
                counts[kv[0]] += 1
    return counts


# =============================================================================
# REQUEST LOG
# =============================================================================

REQUEST_STARTED = re.compile(r"(.{26}) \[(\d+)\] -> (\w+) (.+) HTTP/1.1")
REQUEST_ENDED = re.compile(r"(.{26}) \[(\d+)\] <- (\d+) (.+) (\d+)ms")

REQUEST_TIME_FORMAT = "%d/%b/%Y:%H:%M:%S %z"


@dataclass(frozen=True)
class LoggedRequest:
    """A request reconstructed from its start and end lines."""
    time_started: str
    time_ended: str
    request_id: str
    method: str
    path: str
    status: int
    content_type: str
    elapsed_ms: int

    @classmethod
    def from_matches(cls, started: re.Match, ended: re.Match) -> LoggedRequest:
        if started.group(2) != ended.group(2):
            raise ValueError(
                f"start and end requests have different ids: {started.group(2)}, {ended.group(2)}"
            )
        return cls(
            time_started=started.group(1),
            time_ended=ended.group(1),
            request_id=started.group(2),
            method=started.group(3),
            path=started.group(4),
            status=int(ended.group(3)),
            content_type=ended.group(4),
            elapsed_ms=int(ended.group(5)),
        )

    def started_at(self) -> datetime:
        return datetime.strptime(self.time_started.strip(), REQUEST_TIME_FORMAT)


def pair_request_log(lines: Iterable[str]) -> Iterator[LoggedRequest]:
    """Yield a LoggedRequest for every end line whose start line was seen."""
    started: dict[str, re.Match] = {}
    for line in lines:
        line = line.rstrip("\r\n")
        m_start = REQUEST_STARTED.fullmatch(line)
        if m_start is not None:
            started[m_start.group(2)] = m_start
            continue

        m_end = REQUEST_ENDED.fullmatch(line)
        if m_end is None:
            if line.strip():
                logger.warning("invalid request line: %s", line)
            continue

        m_start = started.pop(m_end.group(2), None)
        if m_start is None:
            logger.warning("unmatched request: %s", m_end.group(2))
            continue
        yield LoggedRequest.from_matches(m_start, m_end)

    if started:
        logger.warning("%d requests never completed", len(started))
