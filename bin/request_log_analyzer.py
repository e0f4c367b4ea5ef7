#!/usr/bin/env python3
"""
AccessReplay: request log analyzer

Pairs the start ("->") and end ("<-") lines of one or more request logs
and writes one report row per completed request.

Usage:
    request-log-analyzer --skip '/libs/.*' --save requests.xlsx request.log
"""

from __future__ import annotations

import argparse
import logging
import re
import sys
from typing import Iterable, Optional, Sequence

from log_sources import LoggedRequest, pair_request_log
from log_utils import setup_logging
from report import Report, Style

logger = logging.getLogger(__name__)

REPORT_COLUMNS = ["time started", "elapsed", "method", "path"]
DEFAULT_SAVE_AS = "requests.xlsx"


def build_report(
    requests: Iterable[LoggedRequest],
    methods: Sequence[str] = ("GET",),
    skip_patterns: Sequence[re.Pattern] = (),
    row_limit: Optional[int] = None,
) -> Report:
    """One row per request, skipping other methods and paths matching a skip pattern."""
    report = Report(REPORT_COLUMNS)
    report.freeze_top_row()
    report.set_column_width(0, 20)
    report.set_column_width(3, 100)

    for r in requests:
        if r.method not in methods or any(p.fullmatch(r.path) for p in skip_patterns):
            continue
        if row_limit is not None and len(report) >= row_limit:
            break

        row = report.create_row()
        try:
            row.set_value(0, r.started_at())
        except ValueError:
            row.set_value(0, r.time_started)
        row.set_cell_style(0, Style.DATETIME)
        row.set_value(1, r.elapsed_ms)
        row.set_value(2, r.method)
        row.set_value(3, r.path)
    return report


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="request-log-analyzer",
        description="Turn request logs into a per-request report",
    )
    p.add_argument("paths", nargs="+", help="request.log files")
    p.add_argument("--skip", action="append", default=[], metavar="REGEX",
                   help="Skip requests whose path matches REGEX")
    p.add_argument("--save", default=DEFAULT_SAVE_AS)
    p.add_argument("--rows", type=int, default=None, help="Max. number of rows to write")
    p.add_argument("--method", action="append", default=None,
                   help="HTTP method to include (repeatable, default GET)")
    p.add_argument("--verbose", "-v", action="store_true")
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    skip_patterns = [re.compile(s) for s in args.skip]
    requests: list[LoggedRequest] = []
    for path in args.paths:
        with open(path, encoding="utf-8", errors="replace") as f:
            loaded = list(pair_request_log(f))
        logger.info("%d requests loaded from %s", len(loaded), path)
        requests.extend(loaded)

    report = build_report(requests, methods=args.method or ["GET"],
                          skip_patterns=skip_patterns, row_limit=args.rows)
    report.save(args.save)
    logger.info("%d rows written to %s", len(report), args.save)
    return 0


if __name__ == "__main__":
    sys.exit(main())
