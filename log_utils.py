# log_utils.py
from __future__ import annotations

import os
import time
from typing import Dict


ERRORS_LOG = os.getenv("ERRORS_LOG", "errors.log")


def _stamp() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())


def log_error(msg: str, path: str = "") -> None:
    """Append a timestamped line to the errors log. Never raises."""
    try:
        with open(path or ERRORS_LOG, "a", encoding="utf-8") as f:
            f.write(f"[{_stamp()}] {msg}\n")
    except OSError:
        pass


def log_info(tag: str, msg: str) -> None:
    print(f"[{tag}] {msg}")


def log_warn(tag: str, msg: str) -> None:
    print(f"[{tag}] WARN {msg}")
    log_error(f"WARN [{tag}] {msg}")


class ThrottledLog:
    """
    Only the first `limit` occurrences of a message class are printed,
    then a single suppression notice. A success call lowers the counter
    again, so a recovered endpoint starts logging again.
    """

    def __init__(self, tag: str, limit: int = 10):
        self.tag = tag
        self.limit = max(1, int(limit))
        self.counts: Dict[str, int] = {}

    def warn(self, kind: str, msg: str) -> bool:
        n = self.counts.get(kind, 0)
        if n >= self.limit:
            return False
        n += 1
        self.counts[kind] = n
        log_warn(self.tag, f"{msg} ({n}/{self.limit} logged)")
        if n == self.limit:
            print(f"[{self.tag}] suppressing further '{kind}' logs...")
        return True

    def success(self, kind: str) -> None:
        n = self.counts.get(kind, 0)
        if n > 0:
            self.counts[kind] = n - 1
