#!/usr/bin/env python3
"""
AccessReplay Request Dispatcher

Replays HTTP requests on a fixed pool of worker threads and records one
report row per request.

Key Points:
- One shared requests.Session; connection pool size = worker count
- Redirects and automatic retries disabled, so every row is one request
- Rows are created at submission time: row order = submission order
- "Time To First Byte" and "Total Time" are both the full round trip
  (the body is read in one go, there is no streaming instrumentation)
"""

from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence, Union

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from progress_tracker import ProgressTracker
from report import Report, Row, Style

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_COLUMNS = [
    "Timestamp", "Path", "Method", "Status",
    "Time To First Byte", "Total Time", "Content-Length", "Error",
]
(
    COL_TIMESTAMP, COL_PATH, COL_METHOD, COL_STATUS,
    COL_TTFB, COL_TOTAL_TIME, COL_CONTENT_LENGTH, COL_ERROR,
) = range(len(DEFAULT_COLUMNS))

DEFAULT_USER_AGENT = "AccessReplay/1.0"
MAX_HYPERLINK_URL = 255

Extractor = Callable[[Row, int, str], None]
ResponseCallback = Callable[[str, Row], None]


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def _sanitize_filename(name: str, max_len: int = 180) -> str:
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    name = re.sub(r"_+", "_", name).strip("._")
    if not name:
        name = "file"
    return name[:max_len]


def dump_path(dump_dir: Path, url: str) -> Path:
    """Map a URL to a file under dump_dir: host/path/query segments."""
    relative = re.sub(r"^https?://", "", url).replace("?", "/")
    parts = [_sanitize_filename(part) for part in relative.split("/") if part]
    if not parts or relative.endswith("/"):
        parts.append("index")
    return dump_dir.joinpath(*parts)


# =============================================================================
# URL REWRITING
# =============================================================================

_DOLLAR_GROUP_RE = re.compile(r"\$(\d+)")


@dataclass(frozen=True)
class RewriteRule:
    """Regex pattern/replacement applied to a URL before dispatch."""
    pattern: re.Pattern
    replacement: str

    @classmethod
    def compile(cls, pattern: Union[str, re.Pattern], replacement: str) -> RewriteRule:
        # "$1" style group references are accepted alongside "\1" / "\g<1>"
        return cls(re.compile(pattern), _DOLLAR_GROUP_RE.sub(r"\\g<\1>", replacement))

    def apply(self, url: str) -> Optional[str]:
        rewritten, count = self.pattern.subn(self.replacement, url)
        return rewritten if count else None


def rewrite_url(url: str, rules: Sequence[RewriteRule]) -> str:
    """First matching rule wins; no match returns the URL unchanged."""
    for rule in rules:
        rewritten = rule.apply(url)
        if rewritten is not None:
            return rewritten
    return url


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class Task:
    """One request to perform."""
    url: str
    method: str = "GET"
    body: Any = None
    headers: Optional[Mapping[str, str]] = None
    callback: Optional[ResponseCallback] = None


@dataclass(frozen=True)
class DispatcherConfig:
    """Dispatcher configuration, fixed at construction."""
    base_url: str = ""
    threads: int = 1
    auth: Any = None
    insecure: bool = False
    user_agent: str = DEFAULT_USER_AGENT
    request_id_header: Optional[str] = None
    rewrite_rules: tuple[RewriteRule, ...] = ()
    dump_dir: Optional[str] = None
    timeout_sec: float = 30.0

    def __post_init__(self):
        if self.threads <= 0:
            raise ValueError("threads must be a positive integer.")


def build_session(config: DispatcherConfig) -> requests.Session:
    """Create the shared transport for a dispatcher."""
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=config.threads,
        pool_maxsize=config.threads,
        max_retries=Retry(total=0, redirect=False, raise_on_status=False),
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": config.user_agent})
    if config.auth is not None:
        session.auth = config.auth
    if config.insecure:
        # Controlled benchmarking only: no certificate or hostname checks
        session.verify = False
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return session


# =============================================================================
# DISPATCHER
# =============================================================================

class Dispatcher:
    """
    Bounded worker pool issuing HTTP requests, one report row per request.

    Aggregate queries (average_time, top, ...) are meant to be called after
    shutdown(); top() sorts the latency list in place.
    """

    def __init__(
        self,
        config: DispatcherConfig,
        session=None,
        report: Optional[Report] = None,
        extractors: Optional[Mapping[int, Extractor]] = None,
        on_response: Optional[ResponseCallback] = None,
        tracker: Optional[ProgressTracker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        if report is None:
            report = Report(DEFAULT_COLUMNS)
            report.set_column_width(COL_TIMESTAMP, 20)
            report.set_column_width(COL_PATH, 70)
        self.report = report
        self.tracker = tracker if tracker is not None else ProgressTracker()

        self._session = session if session is not None else build_session(config)
        self._executor = ThreadPoolExecutor(max_workers=config.threads, thread_name_prefix="dispatch")
        self._extractors: dict[int, Extractor] = dict(extractors or {})
        self._on_response = on_response
        self._clock = clock
        self._dump_dir = Path(config.dump_dir) if config.dump_dir else None
        if self._dump_dir is not None:
            self._dump_dir.mkdir(parents=True, exist_ok=True)

        self._submit_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._closed = False
        self._pending: dict[Future, Row] = {}
        self._times: list[int] = []
        self._num_processed = 0
        self._num_errors = 0
        self._bytes_received = 0

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def add_column(self, name: str, extractor: Extractor) -> int:
        """Add (or reuse) a named report column filled from each response body."""
        column = self.report.column_index_of(name)
        if column is None:
            column = self.report.add_column(name)
        self._extractors[column] = extractor
        return column

    def resolve_url(self, url: str) -> str:
        if not url.startswith(("http://", "https://")):
            url = self.config.base_url + url
        return rewrite_url(url, self.config.rewrite_rules)

    def submit(self, task: Task) -> Future:
        """Create the task's row now and queue the request on the pool."""
        url = self.resolve_url(task.url)
        with self._submit_lock:
            if self._closed:
                raise RuntimeError("dispatcher is shut down")
            row = self.report.create_row()
            row.set_value(COL_PATH, url if len(url) > MAX_HYPERLINK_URL else f'=HYPERLINK("{url}")')
            row.set_cell_style(COL_PATH, Style.HYPERLINK)
            row.set_value(COL_METHOD, task.method)
            self._num_processed += 1
            self.tracker.task_submitted()
            future = self._executor.submit(self._execute, task, url, row)
            with self._stats_lock:
                self._pending[future] = row
        future.add_done_callback(partial(self._settled, row))
        future.add_done_callback(self.tracker.task_done)
        return future

    def get(self, url: str, headers: Optional[Mapping[str, str]] = None) -> Future:
        return self.submit(Task(url=url, headers=headers))

    def post(self, url: str, body: Any, headers: Optional[Mapping[str, str]] = None,
             callback: Optional[ResponseCallback] = None) -> Future:
        return self.submit(Task(url=url, method="POST", body=body, headers=headers, callback=callback))

    def head(self, url: str) -> Future:
        return self.submit(Task(url=url, method="HEAD"))

    def options(self, url: str) -> Future:
        return self.submit(Task(url=url, method="OPTIONS"))

    def warmup(self, url: str) -> None:
        """Issue one GET that is neither recorded nor counted."""
        with self._session.request(
            "GET", self.resolve_url(url), timeout=self.config.timeout_sec, allow_redirects=False,
        ) as response:
            response.content

    # -------------------------------------------------------------------------
    # Execution (worker threads)
    # -------------------------------------------------------------------------

    def _execute(self, task: Task, url: str, row: Row) -> str:
        headers = dict(task.headers or {})
        if self.config.request_id_header:
            headers[self.config.request_id_header] = str(uuid.uuid4())

        row.set_value(COL_TIMESTAMP, datetime.now())
        row.set_cell_style(COL_TIMESTAMP, Style.DATETIME)
        t0 = self._clock()
        try:
            response = self._session.request(
                task.method,
                url,
                data=task.body,
                headers=headers or None,
                timeout=self.config.timeout_sec,
                allow_redirects=False,
            )
            elapsed_ms = int(round((self._clock() - t0) * 1000))
            body = response.text
            size = len(response.content)
            status = response.status_code

            row.set_value(COL_STATUS, status)
            row.set_value(COL_TTFB, elapsed_ms)
            row.set_value(COL_TOTAL_TIME, elapsed_ms)
            row.set_value(COL_CONTENT_LENGTH, size)
            with self._stats_lock:
                self._times.append(elapsed_ms)
                self._bytes_received += size

            for column, extractor in self._extractors.items():
                extractor(row, column, body)
            if task.callback is not None:
                task.callback(body, row)
            if self._on_response is not None:
                self._on_response(body, row)
            if self._dump_dir is not None:
                self._dump(url, body)

            logger.debug("%s\t%s\t%s\t%s", status, elapsed_ms, size, url)
            if not 200 <= status < 300:
                self._record_bad_status(row, response, url)
            return body
        except Exception as e:
            logger.error("request failed: %s", url, exc_info=True)
            row.set_row_style(Style.BAD)
            row.set_value(COL_ERROR, str(e) or e.__class__.__name__)
            with self._stats_lock:
                self._num_errors += 1
            raise

    def _record_bad_status(self, row: Row, response, url: str) -> None:
        row.set_row_style(Style.BAD)
        with self._stats_lock:
            self._num_errors += 1
        logger.error("statusCode: %s, uri: %s, reason: %s", response.status_code, url, response.reason)
        if logger.isEnabledFor(logging.DEBUG):
            for name, value in response.headers.items():
                logger.debug("%s: %s", name, value)
        elif response.status_code in (301, 302):
            logger.error("  Location: %s", response.headers.get("Location"))

    def _dump(self, url: str, body: str) -> None:
        path = dump_path(self._dump_dir, url)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding="utf-8")

    def _settled(self, row: Row, future: Future) -> None:
        with self._stats_lock:
            self._pending.pop(future, None)
        if future.cancelled():
            row.set_row_style(Style.BAD)
            row.set_value(COL_ERROR, "cancelled")

    def _abandon(self, row: Row) -> None:
        row.set_row_style(Style.BAD)
        row.set_value(COL_ERROR, "timed out")
        row.freeze()

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    def shutdown(self, timeout_sec: float = 0) -> int:
        """
        Stop accepting tasks and wait for queued and running ones.

        Args:
            timeout_sec: Maximum wait; 0 waits until everything finished

        Returns:
            Number of queued tasks cancelled because the timeout elapsed.
            Rows of tasks still running at that point are marked "timed out"
            and frozen; the request itself cannot be interrupted.
        """
        with self._submit_lock:
            self._closed = True
        dropped = 0
        try:
            with self._stats_lock:
                pending = dict(self._pending)
            if timeout_sec and timeout_sec > 0:
                _, not_done = wait(pending, timeout=timeout_sec)
                if not_done:
                    logger.info("stopping actively executing tasks")
                    abandoned = 0
                    for future in not_done:
                        if future.cancel():
                            dropped += 1
                        elif not future.done():
                            self._abandon(pending[future])
                            abandoned += 1
                    logger.info("%d tasks cancelled, %d still running", dropped, abandoned)
                self._executor.shutdown(wait=False, cancel_futures=True)
            else:
                logger.debug("Awaiting completion of %d tasks", len(pending))
                self._executor.shutdown(wait=True)
        finally:
            self._session.close()
        return dropped

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    def average_time(self) -> float:
        """Average latency in ms over all completed requests."""
        with self._stats_lock:
            if not self._times:
                return 0.0
            return sum(self._times) / len(self._times)

    def top(self, n: int) -> list[int]:
        """The n slowest latencies in ms, slowest first."""
        if n <= 0:
            return []
        with self._stats_lock:
            self._times.sort()
            return self._times[-n:][::-1]

    @property
    def num_processed(self) -> int:
        return self._num_processed

    @property
    def num_errors(self) -> int:
        return self._num_errors

    @property
    def bytes_received(self) -> int:
        return self._bytes_received
