"""Write-ahead redo log that makes groups of block writes atomic."""

from __future__ import annotations

import struct
import threading
from contextlib import contextmanager
from typing import Iterator

from xvkit.bufcache import B_DIRTY, Buf, BufferCache
from xvkit.layout import BSIZE, LOGSIZE, MAXOPBLOCKS, ROOTDEV, Superblock


class LogError(RuntimeError):
    """Raised on a misuse of the log."""


class Log:
    """The log of one device; commits when no operation is outstanding."""

    def __init__(
        self,
        cache: BufferCache,
        dev: int = ROOTDEV,
        logsize: int = LOGSIZE,
        maxopblocks: int = MAXOPBLOCKS,
    ) -> None:
        self._header = struct.Struct(f"<i{logsize}i")
        if self._header.size >= BSIZE:
            raise LogError("initlog: too big logheader")
        self.cache = cache
        self.dev = dev
        self.logsize = logsize
        self.maxopblocks = maxopblocks
        self._cond = threading.Condition()
        self._outstanding = 0
        self._committing = False
        self._blocks: list[int] = []

        buf = cache.bread(dev, 1)
        try:
            sb = Superblock.unpack(bytes(buf.data))
        finally:
            cache.brelse(buf)
        self.start = sb.logstart
        self.size = sb.nlog
        self.recover()

    def _read_head(self) -> None:
        buf = self.cache.bread(self.dev, self.start)
        try:
            values = self._header.unpack_from(buf.data, 0)
        finally:
            self.cache.brelse(buf)
        n = values[0]
        if not 0 <= n <= self.logsize:
            raise LogError(f"log header holds an invalid count {n}")
        self._blocks = list(values[1:1 + n])

    def _write_head(self) -> None:
        buf = self.cache.bread(self.dev, self.start)
        try:
            padded = self._blocks + [0] * (self.logsize - len(self._blocks))
            buf.data[:self._header.size] = self._header.pack(len(self._blocks), *padded)
            self.cache.bwrite(buf)
        finally:
            self.cache.brelse(buf)

    def _copy_blocks(self, to_log: bool) -> None:
        for tail, blockno in enumerate(self._blocks):
            log_buf = self.cache.bread(self.dev, self.start + tail + 1)
            home_buf = self.cache.bread(self.dev, blockno)
            try:
                if to_log:
                    log_buf.data[:] = home_buf.data
                    self.cache.bwrite(log_buf)
                else:
                    home_buf.data[:] = log_buf.data
                    self.cache.bwrite(home_buf)
            finally:
                self.cache.brelse(log_buf)
                self.cache.brelse(home_buf)

    def _commit(self) -> None:
        if self._blocks:
            self._copy_blocks(to_log=True)  # cache -> log
            self._write_head()  # the real commit point
            self._copy_blocks(to_log=False)  # log -> home locations
            self._blocks = []
            self._write_head()  # erase the transaction

    def recover(self) -> None:
        """Install any committed transaction found on disk and clear the log."""
        self._read_head()
        self._copy_blocks(to_log=False)
        self._blocks = []
        self._write_head()

    def begin_op(self) -> None:
        """Start an operation, waiting while a commit runs or space is short."""
        with self._cond:
            while self._committing or (
                len(self._blocks) + (self._outstanding + 1) * self.maxopblocks > self.logsize
            ):
                self._cond.wait()
            self._outstanding += 1

    def end_op(self) -> None:
        """Finish an operation; the last one to finish commits."""
        with self._cond:
            if self._outstanding < 1:
                raise LogError("end_op outside of transaction")
            self._outstanding -= 1
            if self._committing:
                raise LogError("log.committing")
            do_commit = self._outstanding == 0
            if do_commit:
                self._committing = True
            else:
                self._cond.notify_all()
        if do_commit:
            try:
                self._commit()
            finally:
                with self._cond:
                    self._committing = False
                    self._cond.notify_all()

    def log_write(self, buf: Buf) -> None:
        """Record a modified buffer in the current transaction and pin it."""
        if len(self._blocks) >= self.logsize or len(self._blocks) >= self.size - 1:
            raise LogError("too big a transaction")
        if self._outstanding < 1:
            raise LogError("log_write outside of trans")
        with self._cond:
            if buf.blockno not in self._blocks:
                self._blocks.append(buf.blockno)
            buf.flags |= B_DIRTY

    @contextmanager
    def transaction(self) -> Iterator["Log"]:
        """Bracket an operation with begin_op and end_op."""
        self.begin_op()
        try:
            yield self
        finally:
            self.end_op()