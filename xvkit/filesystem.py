"""Inodes, directories, path names and open files on the on-disk format."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, NamedTuple, Optional

from xvkit.bufcache import Buf, BufferCache
from xvkit.layout import (
    BPB,
    BSIZE,
    DIRSIZ,
    MAXFILE,
    MAXOPBLOCKS,
    NDIRECT,
    NINDIRECT,
    ROOTDEV,
    ROOTINO,
    T_DEV,
    T_DIR,
    Dinode,
    Dirent,
    Superblock,
    bblock,
    iblock,
)
from xvkit.log import Log

NINODE = 50  # most active inodes in memory
NFILE = 100  # most open files in the system
NDEV = 10  # highest major device number plus one

_ADDR_SIZE = 4


class FileSystemError(RuntimeError):
    """Raised when a file system operation fails or is misused."""


@dataclass(eq=False)
class Inode:
    """In-memory copy of an inode; fields past ref are valid once loaded."""

    dev: int
    inum: int
    ref: int = 0
    valid: bool = False
    type: int = 0
    major: int = 0
    minor: int = 0
    nlink: int = 0
    size: int = 0
    addrs: list = field(default_factory=lambda: [0] * (NDIRECT + 1))
    _lock: Any = field(default_factory=threading.RLock, init=False, repr=False)


class Stat(NamedTuple):
    dev: int
    ino: int
    type: int
    nlink: int
    size: int


def skipelem(path: str) -> Optional[tuple[str, str]]:
    """Split off the first path element: return (name, rest) or None if none is left.

    The name is cut to DIRSIZ characters and rest has no leading slashes.
    """
    path = path.lstrip("/")
    if not path:
        return None
    name, _, rest = path.partition("/")
    return name[:DIRSIZ], rest.lstrip("/")


def _dinode_offset(inum: int) -> int:
    from xvkit.layout import IPB

    return (inum % IPB) * Dinode.SIZE


class FileSystem:
    """Block allocator, inode cache, file contents, directories and path lookup.

    Devices map a major number to an object with read(ip, n) -> bytes and
    write(ip, data) -> int; inodes of type T_DEV are served by them.
    """

    def __init__(
        self,
        cache: BufferCache,
        log: Log,
        dev: int = ROOTDEV,
        devices: Optional[Mapping[int, Any]] = None,
        ninode: int = NINODE,
    ) -> None:
        self.cache = cache
        self.log = log
        self.dev = dev
        self.devices: dict[int, Any] = dict(devices or {})
        self._lock = threading.Lock()
        self._inodes = [Inode(0, 0) for _ in range(ninode)]
        with self._block(1) as bp:
            self.sb = Superblock.unpack(bytes(bp.data))

    @contextmanager
    def _block(self, blockno: int) -> Iterator[Buf]:
        buf = self.cache.bread(self.dev, blockno)
        try:
            yield buf
        finally:
            self.cache.brelse(buf)

    # Blocks.

    def _bzero(self, bno: int) -> None:
        with self._block(bno) as bp:
            bp.data[:] = bytes(BSIZE)
            self.log.log_write(bp)

    def _claim_bit(self, base: int) -> Optional[int]:
        with self._block(bblock(base, self.sb)) as bp:
            for bi in range(min(BPB, self.sb.size - base)):
                mask = 1 << (bi % 8)
                if not bp.data[bi // 8] & mask:
                    bp.data[bi // 8] |= mask
                    self.log.log_write(bp)
                    return base + bi
        return None

    def balloc(self) -> int:
        """Allocate a zeroed disk block and return its number."""
        for base in range(0, self.sb.size, BPB):
            block = self._claim_bit(base)
            if block is not None:
                self._bzero(block)
                return block
        raise FileSystemError("balloc: out of blocks")

    def bfree(self, b: int) -> None:
        """Mark block b free in the bitmap."""
        with self._block(bblock(b, self.sb)) as bp:
            bi = b % BPB
            mask = 1 << (bi % 8)
            if not bp.data[bi // 8] & mask:
                raise FileSystemError("freeing free block")
            bp.data[bi // 8] &= ~mask & 0xFF
            self.log.log_write(bp)

    # Inodes.

    def ialloc(self, type_: int) -> Inode:
        """Allocate an on-disk inode of the given type; return it referenced, unlocked."""
        for inum in range(1, self.sb.ninodes):
            with self._block(iblock(inum, self.sb)) as bp:
                offset = _dinode_offset(inum)
                if Dinode.unpack(bp.data, offset).type != 0:
                    continue
                bp.data[offset:offset + Dinode.SIZE] = Dinode(type=type_).pack()
                self.log.log_write(bp)
            return self.iget(inum)
        raise FileSystemError("ialloc: no inodes")

    def iupdate(self, ip: Inode) -> None:
        """Copy the in-memory inode to disk."""
        with self._block(iblock(ip.inum, self.sb)) as bp:
            offset = _dinode_offset(ip.inum)
            din = Dinode(ip.type, ip.major, ip.minor, ip.nlink, ip.size, list(ip.addrs))
            bp.data[offset:offset + Dinode.SIZE] = din.pack()
            self.log.log_write(bp)

    def iget(self, inum: int) -> Inode:
        """Return the cached inode inum with one more reference, without reading it."""
        with self._lock:
            empty = None
            for ip in self._inodes:
                if ip.ref > 0 and ip.dev == self.dev and ip.inum == inum:
                    ip.ref += 1
                    return ip
                if empty is None and ip.ref == 0:
                    empty = ip
            if empty is None:
                raise FileSystemError("iget: no inodes")
            empty.dev = self.dev
            empty.inum = inum
            empty.ref = 1
            empty.valid = False
            return empty

    def _idup(self, ip: Inode) -> Inode:
        with self._lock:
            ip.ref += 1
        return ip

    @contextmanager
    def ilock(self, ip: Inode) -> Iterator[Inode]:
        """Hold the inode's lock, reading it from disk if needed."""
        if ip is None or ip.ref < 1:
            raise FileSystemError("ilock")
        with ip._lock:
            if not ip.valid:
                with self._block(iblock(ip.inum, self.sb)) as bp:
                    din = Dinode.unpack(bp.data, _dinode_offset(ip.inum))
                ip.type = din.type
                ip.major = din.major
                ip.minor = din.minor
                ip.nlink = din.nlink
                ip.size = din.size
                ip.addrs = list(din.addrs)
                ip.valid = True
                if ip.type == 0:
                    raise FileSystemError("ilock: no type")
            yield ip

    def iput(self, ip: Inode) -> None:
        """Drop a reference; free the inode on disk if it was the last and unlinked."""
        with ip._lock:
            if ip.valid and ip.nlink == 0:
                with self._lock:
                    refs = ip.ref
                if refs == 1:
                    self.itrunc(ip)
                    ip.type = 0
                    self.iupdate(ip)
                    ip.valid = False
        with self._lock:
            ip.ref -= 1

    # Inode contents.

    def bmap(self, ip: Inode, bn: int) -> int:
        """Return the disk block of the inode's block bn, allocating it if needed."""
        if bn < 0:
            raise FileSystemError("bmap: out of range")
        if bn < NDIRECT:
            if ip.addrs[bn] == 0:
                ip.addrs[bn] = self.balloc()
            return ip.addrs[bn]
        bn -= NDIRECT
        if bn < NINDIRECT:
            if ip.addrs[NDIRECT] == 0:
                ip.addrs[NDIRECT] = self.balloc()
            with self._block(ip.addrs[NDIRECT]) as bp:
                offset = bn * _ADDR_SIZE
                addr = int.from_bytes(bp.data[offset:offset + _ADDR_SIZE], "little")
                if addr == 0:
                    addr = self.balloc()
                    bp.data[offset:offset + _ADDR_SIZE] = addr.to_bytes(_ADDR_SIZE, "little")
                    self.log.log_write(bp)
            return addr
        raise FileSystemError("bmap: out of range")

    def itrunc(self, ip: Inode) -> None:
        """Free every block of the inode and set its size to zero."""
        for i in range(NDIRECT):
            if ip.addrs[i]:
                self.bfree(ip.addrs[i])
                ip.addrs[i] = 0
        if ip.addrs[NDIRECT]:
            with self._block(ip.addrs[NDIRECT]) as bp:
                raw = bytes(bp.data)
            for j in range(NINDIRECT):
                addr = int.from_bytes(raw[j * _ADDR_SIZE:(j + 1) * _ADDR_SIZE], "little")
                if addr:
                    self.bfree(addr)
            self.bfree(ip.addrs[NDIRECT])
            ip.addrs[NDIRECT] = 0
        ip.size = 0
        self.iupdate(ip)

    def stat(self, ip: Inode) -> Stat:
        """Return the inode's metadata; the caller holds its lock."""
        return Stat(ip.dev, ip.inum, ip.type, ip.nlink, ip.size)

    def _device(self, ip: Inode, op: str) -> Any:
        device = self.devices.get(ip.major) if 0 <= ip.major < NDEV else None
        handler = getattr(device, op, None)
        if handler is None:
            raise FileSystemError(f"no device can {op} major {ip.major}")
        return handler

    def readi(self, ip: Inode, off: int, n: int) -> bytes:
        """Read up to n bytes at off; the read stops at the end of the file."""
        if ip.type == T_DEV:
            return bytes(self._device(ip, "read")(ip, n))
        if n < 0 or off < 0 or off > ip.size:
            raise FileSystemError(f"read at {off} is outside the file")
        n = min(n, ip.size - off)
        chunks = []
        done = 0
        while done < n:
            with self._block(self.bmap(ip, off // BSIZE)) as bp:
                start = off % BSIZE
                m = min(n - done, BSIZE - start)
                chunks.append(bytes(bp.data[start:start + m]))
            done += m
            off += m
        return b"".join(chunks)

    def writei(self, ip: Inode, off: int, data: bytes) -> int:
        """Write data at off, growing the file if it goes past the end."""
        if ip.type == T_DEV:
            return self._device(ip, "write")(ip, bytes(data))
        data = bytes(data)
        n = len(data)
        if off < 0 or off > ip.size:
            raise FileSystemError(f"write at {off} is outside the file")
        if off + n > MAXFILE * BSIZE:
            raise FileSystemError("write exceeds the largest file size")
        done = 0
        while done < n:
            with self._block(self.bmap(ip, off // BSIZE)) as bp:
                start = off % BSIZE
                m = min(n - done, BSIZE - start)
                bp.data[start:start + m] = data[done:done + m]
                self.log.log_write(bp)
            done += m
            off += m
        if n > 0 and off > ip.size:
            ip.size = off
            self.iupdate(ip)
        return n

    # Directories.

    def _entries(self, dp: Inode) -> Iterator[tuple[int, Dirent]]:
        for off in range(0, dp.size, Dirent.SIZE):
            raw = self.readi(dp, off, Dirent.SIZE)
            if len(raw) != Dirent.SIZE:
                raise FileSystemError("directory read")
            yield off, Dirent.unpack(raw)

    def dirlookup(self, dp: Inode, name: str) -> Optional[tuple[Inode, int]]:
        """Find name in a locked directory: (referenced inode, entry offset) or None."""
        if dp.type != T_DIR:
            raise FileSystemError("dirlookup not DIR")
        for off, de in self._entries(dp):
            if de.inum and de.name[:DIRSIZ] == name[:DIRSIZ]:
                return self.iget(de.inum), off
        return None

    def dirlink(self, dp: Inode, name: str, inum: int) -> None:
        """Add the entry (name, inum) to a locked directory."""
        found = self.dirlookup(dp, name)
        if found is not None:
            self.iput(found[0])
            raise FileSystemError(f"{name!r} already exists")
        end = -(-dp.size // Dirent.SIZE) * Dirent.SIZE
        off = next((o for o, de in self._entries(dp) if de.inum == 0), end)
        if self.writei(dp, off, Dirent(inum, name[:DIRSIZ]).pack()) != Dirent.SIZE:
            raise FileSystemError("dirlink")

    # Paths.

    def _namex(self, path: str, parent: bool, cwd: Optional[Inode]) -> tuple[Inode, str]:
        if path.startswith("/") or cwd is None:
            ip = self.iget(ROOTINO)
        else:
            ip = self._idup(cwd)
        name = ""
        while (elem := skipelem(path)) is not None:
            name, path = elem
            found = None
            with self.ilock(ip):
                is_dir = ip.type == T_DIR
                if is_dir:
                    if parent and path == "":
                        return ip, name
                    found = self.dirlookup(ip, name)
            self.iput(ip)
            if found is None:
                raise FileNotFoundError(f"no such file or directory: {name!r}")
            ip = found[0]
        if parent:
            self.iput(ip)
            raise FileNotFoundError("path has no final element")
        return ip, name

    def namei(self, path: str, cwd: Optional[Inode] = None) -> Inode:
        """Return the referenced inode for a path; relative paths start at cwd."""
        return self._namex(path, False, cwd)[0]

    def nameiparent(self, path: str, cwd: Optional[Inode] = None) -> tuple[Inode, str]:
        """Return the referenced parent directory inode and the final path element."""
        return self._namex(path, True, cwd)


@dataclass(eq=False)
class OpenFile:
    """An open inode with a file offset."""

    fs: FileSystem
    ip: Optional[Inode]
    readable: bool
    writable: bool
    ref: int = 1
    off: int = 0

    def read(self, n: int) -> bytes:
        """Read up to n bytes at the current offset and advance it."""
        if not self.readable:
            raise FileSystemError("file is not open for reading")
        if self.ip is None:
            raise FileSystemError("fileread")
        with self.fs.ilock(self.ip):
            data = self.fs.readi(self.ip, self.off, n)
            self.off += len(data)
        return data

    def write(self, data: bytes) -> int:
        """Write data at the current offset, a few blocks per transaction."""
        if not self.writable:
            raise FileSystemError("file is not open for writing")
        if self.ip is None:
            raise FileSystemError("filewrite")
        data = bytes(data)
        limit = ((MAXOPBLOCKS - 1 - 1 - 2) // 2) * BSIZE
        done = 0
        while done < len(data):
            chunk = data[done:done + limit]
            with self.fs.log.transaction(), self.fs.ilock(self.ip):
                written = self.fs.writei(self.ip, self.off, chunk)
                if written > 0:
                    self.off += written
            if written != len(chunk):
                raise FileSystemError("short filewrite")
            done += written
        return len(data)


class FileTable:
    """The system-wide table of open files."""

    def __init__(self, fs: FileSystem, nfile: int = NFILE) -> None:
        self.fs = fs
        self.nfile = nfile
        self._lock = threading.Lock()
        self._open: list[OpenFile] = []

    def __len__(self) -> int:
        return len(self._open)

    def alloc(self, ip: Inode, readable: bool, writable: bool) -> OpenFile:
        """Open a file on ip, taking over the caller's reference to it."""
        with self._lock:
            if len(self._open) >= self.nfile:
                raise FileSystemError("file table is full")
            f = OpenFile(self.fs, ip, bool(readable), bool(writable))
            self._open.append(f)
            return f

    def dup(self, f: OpenFile) -> OpenFile:
        """Add a reference to an open file."""
        with self._lock:
            if f.ref < 1:
                raise FileSystemError("filedup")
            f.ref += 1
        return f

    def close(self, f: OpenFile) -> None:
        """Drop a reference; release the inode when the last one goes."""
        with self._lock:
            if f.ref < 1:
                raise FileSystemError("fileclose")
            f.ref -= 1
            if f.ref > 0:
                return
            ip, f.ip = f.ip, None
            self._open.remove(f)
        if ip is not None:
            with self.fs.log.transaction():
                self.fs.iput(ip)