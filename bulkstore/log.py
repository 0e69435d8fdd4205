# bulkstore/log.py
#
# Store logger: elapsed-time lines on stdout, plus the byte formatting and
# download progress used by the cache and the fetcher.
from __future__ import annotations

import sys
import time

_start = time.monotonic()

_UNITS = ("B", "KB", "MB", "GB", "TB")


def log(message: str) -> None:
    """Write a timestamped log line to stdout."""
    elapsed = time.monotonic() - _start
    minutes, seconds = divmod(int(elapsed), 60)
    sys.stdout.write(f"[bulkstore {minutes:02d}:{seconds:02d}] {message}\n")
    sys.stdout.flush()


def format_size(num_bytes: int) -> str:
    """``512 B``, ``1.5 KB``, ``642.0 MB``: binary multiples, one decimal."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    value = float(num_bytes)
    for unit in _UNITS[1:]:
        value /= 1024
        if value < 1024 or unit == _UNITS[-1]:
            break
    return f"{value:.1f} {unit}"


class Progress:
    """Log a line each time a running byte count crosses another *every* bytes.

    The first line appears only after *every* bytes, so small files stay quiet.
    """

    def __init__(self, label: str, total: int | None = None, every: int = 50 * 1024 * 1024) -> None:
        if every <= 0:
            raise ValueError(f"every must be positive, got {every}")
        self.label = label
        self.total = total
        self.every = every
        self.done = 0
        self._next = every

    def advance(self, num_bytes: int) -> None:
        self.done += num_bytes
        if self.done < self._next:
            return
        self._next = (self.done // self.every + 1) * self.every
        if self.total:
            log(f"  {self.label}: {format_size(self.done)} of {format_size(self.total)} downloaded...")
        else:
            log(f"  {self.label}: {format_size(self.done)} downloaded...")
