#!/usr/bin/env python3
"""
AccessReplay: query-string parameter statistics

Counts how often each query-string parameter name occurs in the requests
of one or more access logs and prints "name<TAB>count", least used first.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable, Optional, Sequence

from log_sources import iter_access_log, query_parameter_counts
from log_utils import setup_logging

SKIP_PREFIX = "/iojs"


def request_paths(files: Iterable[str]) -> Iterable[str]:
    for name in files:
        with open(name, encoding="utf-8", errors="replace") as f:
            for entry in iter_access_log(f):
                if not entry.path.startswith(SKIP_PREFIX):
                    yield entry.path


def main(argv: Optional[Sequence[str]] = None) -> int:
    p = argparse.ArgumentParser(
        prog="query-string-stats",
        description="Count query-string parameter names in access logs",
    )
    p.add_argument("paths", nargs="+", help="access log files")
    args = p.parse_args(argv)
    setup_logging(logging.ERROR)

    counts = query_parameter_counts(request_paths(args.paths))
    for name, count in sorted(counts.items(), key=lambda kv: (kv[1], kv[0])):
        print(f"{name}\t{count}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
