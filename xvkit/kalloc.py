"""Allocator of fixed-size physical pages."""

from __future__ import annotations

import threading
from typing import Optional

PGSIZE = 4096


class AllocatorError(RuntimeError):
    """Raised when a page that cannot be managed is freed."""


def _pgroundup(addr: int) -> int:
    return (addr + PGSIZE - 1) & ~(PGSIZE - 1)


class PageAllocator:
    """Hands out PGSIZE pages between low and high; the last freed is reused first."""

    def __init__(self, low: int, high: int) -> None:
        self.low = low
        self.high = high
        self._lock = threading.Lock()
        self._free: list[int] = []
        self._is_free: set[int] = set()

    def __len__(self) -> int:
        return len(self._free)

    def free_range(self, start: int, end: int) -> None:
        """Free every whole page between start and end."""
        page = _pgroundup(start)
        while page + PGSIZE <= end:
            self.free(page)
            page += PGSIZE

    def free(self, addr: int) -> None:
        """Return a page to the allocator."""
        if addr % PGSIZE or addr < self.low or addr >= self.high:
            raise AllocatorError("kfree")
        with self._lock:
            if addr in self._is_free:
                raise AllocatorError(f"kfree: page {addr:#x} is already free")
            self._free.append(addr)
            self._is_free.add(addr)

    def alloc(self) -> Optional[int]:
        """Take a page, or return None when none is left."""
        with self._lock:
            if not self._free:
                return None
            addr = self._free.pop()
            self._is_free.discard(addr)
            return addr