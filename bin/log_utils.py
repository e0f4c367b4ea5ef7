#!/usr/bin/env python3
"""
AccessReplay logging setup, shared by the command line drivers.

Modules log through logging.getLogger(__name__); drivers call
setup_logging() once at startup. Output goes to stderr so that report
data printed to stdout stays clean.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
TIME_FORMAT = "%H:%M:%S"


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    format_string: str = DEFAULT_FORMAT,
) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format=format_string,
        datefmt=TIME_FORMAT,
        handlers=handlers,
        force=True,
    )

    # connection pool chatter
    logging.getLogger("urllib3").setLevel(logging.WARNING)
