"""Block buffer cache over an in-memory disk."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional

from xvkit.layout import BSIZE, NBUF, ROOTDEV

B_VALID = 0x2  # data has been read from disk
B_DIRTY = 0x4  # data must be written to disk


class DiskError(RuntimeError):
    """Raised on a misuse of the disk or of the buffer cache."""


@dataclass(eq=False)
class Buf:
    """A cached copy of one disk block."""

    dev: int = 0
    blockno: int = 0
    flags: int = 0
    refcnt: int = 0
    data: bytearray = field(default_factory=lambda: bytearray(BSIZE))
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _owner: Optional[int] = field(default=None, init=False, repr=False)

    def _acquire(self) -> None:
        self._lock.acquire()
        self._owner = threading.get_ident()

    def _release(self) -> None:
        self._owner = None
        self._lock.release()

    def _holding(self) -> bool:
        return self._lock.locked() and self._owner == threading.get_ident()


class MemDisk:
    """A disk whose blocks live in memory."""

    def __init__(self, image: bytes, dev: int = ROOTDEV) -> None:
        self.data = bytearray(image)
        self.dev = dev

    def rw(self, buf: Buf) -> None:
        """Write the buffer if dirty, otherwise read it; mark it valid."""
        if not buf._holding():
            raise DiskError("iderw: buf not locked")
        if buf.flags & (B_VALID | B_DIRTY) == B_VALID:
            raise DiskError("iderw: nothing to do")
        if buf.dev != self.dev:
            raise DiskError(f"iderw: request not for disk {self.dev}")
        if buf.blockno >= len(self.data) // BSIZE:
            raise DiskError("iderw: block out of range")
        start = buf.blockno * BSIZE
        if buf.flags & B_DIRTY:
            buf.flags &= ~B_DIRTY
            self.data[start:start + BSIZE] = buf.data
        else:
            buf.data[:] = self.data[start:start + BSIZE]
        buf.flags |= B_VALID


class BufferCache:
    """A fixed set of buffers kept in most-recently-used order."""

    def __init__(self, disk: MemDisk, nbuf: int = NBUF) -> None:
        self.disk = disk
        self._lock = threading.Lock()
        self._bufs = [Buf() for _ in range(nbuf)]  # front is most recently used

    def _bget(self, dev: int, blockno: int) -> Buf:
        with self._lock:
            found = next(
                (b for b in self._bufs if b.dev == dev and b.blockno == blockno), None
            )
            if found is not None:
                found.refcnt += 1
            else:
                found = next(
                    (b for b in reversed(self._bufs) if b.refcnt == 0 and not b.flags & B_DIRTY),
                    None,
                )
                if found is None:
                    raise DiskError("bget: no buffers")
                found.dev = dev
                found.blockno = blockno
                found.flags = 0
                found.refcnt = 1
        found._acquire()
        return found

    def bread(self, dev: int, blockno: int) -> Buf:
        """Return a locked buffer holding the contents of the block."""
        buf = self._bget(dev, blockno)
        if not buf.flags & B_VALID:
            self.disk.rw(buf)
        return buf

    def bwrite(self, buf: Buf) -> None:
        """Write a locked buffer's contents to disk."""
        if not buf._holding():
            raise DiskError("bwrite")
        buf.flags |= B_DIRTY
        self.disk.rw(buf)

    def brelse(self, buf: Buf) -> None:
        """Release a locked buffer and move it to the front of the list."""
        if not buf._holding():
            raise DiskError("brelse")
        buf._release()
        with self._lock:
            buf.refcnt -= 1
            if buf.refcnt == 0:
                self._bufs.remove(buf)
                self._bufs.insert(0, buf)