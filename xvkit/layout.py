"""On-disk file system format: superblock, inodes and directory entries."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

ROOTINO = 1  # root i-number
ROOTDEV = 1  # device number of the file system disk
BSIZE = 512  # block size

NDIRECT = 12
NINDIRECT = BSIZE // 4
MAXFILE = NDIRECT + NINDIRECT

DIRSIZ = 14

T_DIR = 1
T_FILE = 2
T_DEV = 3

FSSIZE = 1000  # size of a file system image in blocks
MAXOPBLOCKS = 10  # most blocks one file system operation may write
LOGSIZE = MAXOPBLOCKS * 3  # most data blocks in the on-disk log
NBUF = MAXOPBLOCKS * 3  # size of the buffer cache

_SUPERBLOCK = struct.Struct("<7I")
_DINODE = struct.Struct(f"<4hI{NDIRECT + 1}I")
_DIRENT = struct.Struct(f"<H{DIRSIZ}s")

IPB = BSIZE // _DINODE.size  # inodes per block
BPB = BSIZE * 8  # bitmap bits per block


@dataclass
class Superblock:
    """Describes the disk layout."""

    size: int  # size of the image in blocks
    nblocks: int  # number of data blocks
    ninodes: int  # number of inodes
    nlog: int  # number of log blocks
    logstart: int  # first log block
    inodestart: int  # first inode block
    bmapstart: int  # first free-map block

    SIZE = _SUPERBLOCK.size

    def pack(self) -> bytes:
        return _SUPERBLOCK.pack(
            self.size, self.nblocks, self.ninodes, self.nlog,
            self.logstart, self.inodestart, self.bmapstart,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "Superblock":
        if len(data) < _SUPERBLOCK.size:
            raise ValueError(f"superblock needs {_SUPERBLOCK.size} bytes, got {len(data)}")
        return cls(*_SUPERBLOCK.unpack_from(data, 0))


@dataclass
class Dinode:
    """An inode as stored on disk."""

    type: int = 0
    major: int = 0
    minor: int = 0
    nlink: int = 0
    size: int = 0
    addrs: list = field(default_factory=lambda: [0] * (NDIRECT + 1))

    SIZE = _DINODE.size

    def pack(self) -> bytes:
        if len(self.addrs) != NDIRECT + 1:
            raise ValueError(f"an inode holds exactly {NDIRECT + 1} block addresses")
        return _DINODE.pack(self.type, self.major, self.minor, self.nlink, self.size, *self.addrs)

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0) -> "Dinode":
        if offset < 0 or offset + _DINODE.size > len(data):
            raise ValueError(f"inode at {offset:#x} is truncated")
        values = _DINODE.unpack_from(data, offset)
        return cls(*values[:5], addrs=list(values[5:]))


@dataclass
class Dirent:
    """A directory entry: inode number and a name of at most DIRSIZ bytes."""

    inum: int
    name: str

    SIZE = _DIRENT.size

    def pack(self) -> bytes:
        return _DIRENT.pack(self.inum, self.name.encode("latin-1")[:DIRSIZ])

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0) -> "Dirent":
        if offset < 0 or offset + _DIRENT.size > len(data):
            raise ValueError(f"directory entry at {offset:#x} is truncated")
        inum, raw = _DIRENT.unpack_from(data, offset)
        return cls(inum, raw.split(b"\0", 1)[0].decode("latin-1"))


def iblock(inum: int, sb: Superblock) -> int:
    """Block holding inode inum."""
    return inum // IPB + sb.inodestart


def bblock(b: int, sb: Superblock) -> int:
    """Block of the free map holding the bit for block b."""
    return b // BPB + sb.bmapstart