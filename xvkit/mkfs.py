"""Build a file system image holding a root directory and some files."""

from __future__ import annotations

import struct
import sys
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence, Tuple, Union

from xvkit.layout import (
    BPB,
    BSIZE,
    FSSIZE,
    IPB,
    LOGSIZE,
    MAXFILE,
    NDIRECT,
    NINDIRECT,
    ROOTINO,
    T_DIR,
    T_FILE,
    Dinode,
    Dirent,
    Superblock,
    iblock,
)

NINODES = 200

_INDIRECT = struct.Struct(f"<{NINDIRECT}I")

Files = Union[Mapping[str, bytes], Iterable[Tuple[str, bytes]]]


class ImageBuilder:
    """Lays out boot block, superblock, log, inodes, bitmap and data blocks."""

    def __init__(self, fssize: int = FSSIZE, ninodes: int = NINODES, nlog: int = LOGSIZE) -> None:
        self.fssize = fssize
        self.nbitmap = fssize // BPB + 1
        self.ninodeblocks = ninodes // IPB + 1
        self.nlog = nlog
        self.nmeta = 2 + nlog + self.ninodeblocks + self.nbitmap
        self.nblocks = fssize - self.nmeta
        if self.nblocks <= 0:
            raise ValueError("image is too small for its metadata")
        self.superblock = Superblock(
            size=fssize,
            nblocks=self.nblocks,
            ninodes=ninodes,
            nlog=nlog,
            logstart=2,
            inodestart=2 + nlog,
            bmapstart=2 + nlog + self.ninodeblocks,
        )
        self.freeinode = 1
        self.freeblock = self.nmeta
        self._finished = False
        self._image = bytearray(fssize * BSIZE)
        self._wsect(1, self.superblock.pack())

        self.root = self.ialloc(T_DIR)
        if self.root != ROOTINO:
            raise ValueError("root directory did not get the root inode number")
        self.iappend(self.root, Dirent(self.root, ".").pack())
        self.iappend(self.root, Dirent(self.root, "..").pack())

    def _wsect(self, sec: int, data: bytes) -> None:
        if not 0 <= sec < self.fssize:
            raise ValueError(f"sector {sec} is outside the image")
        start = sec * BSIZE
        self._image[start:start + BSIZE] = bytes(data).ljust(BSIZE, b"\0")[:BSIZE]

    def _rsect(self, sec: int) -> bytes:
        if not 0 <= sec < self.fssize:
            raise ValueError(f"sector {sec} is outside the image")
        start = sec * BSIZE
        return bytes(self._image[start:start + BSIZE])

    def _rinode(self, inum: int) -> Dinode:
        block = self._rsect(iblock(inum, self.superblock))
        return Dinode.unpack(block, (inum % IPB) * Dinode.SIZE)

    def _winode(self, inum: int, din: Dinode) -> None:
        bn = iblock(inum, self.superblock)
        block = bytearray(self._rsect(bn))
        offset = (inum % IPB) * Dinode.SIZE
        block[offset:offset + Dinode.SIZE] = din.pack()
        self._wsect(bn, block)

    def _next_block(self) -> int:
        if self.freeblock >= self.fssize:
            raise ValueError("image is out of data blocks")
        block = self.freeblock
        self.freeblock += 1
        return block

    def _check_open(self) -> None:
        if self._finished:
            raise ValueError("image has already been finished")

    def ialloc(self, type_: int) -> int:
        """Allocate the next inode with the given type and one link."""
        self._check_open()
        if self.freeinode >= self.superblock.ninodes:
            raise ValueError("image is out of inodes")
        inum = self.freeinode
        self.freeinode += 1
        self._winode(inum, Dinode(type=type_, nlink=1, size=0))
        return inum

    def iappend(self, inum: int, data: bytes) -> None:
        """Append data to the end of inode inum, allocating blocks as needed."""
        self._check_open()
        data = bytes(data)
        din = self._rinode(inum)
        off = din.size
        pos = 0
        while pos < len(data):
            fbn = off // BSIZE
            if fbn >= MAXFILE:
                raise ValueError(f"inode {inum} would exceed the largest file size")
            if fbn < NDIRECT:
                if din.addrs[fbn] == 0:
                    din.addrs[fbn] = self._next_block()
                target = din.addrs[fbn]
            else:
                if din.addrs[NDIRECT] == 0:
                    din.addrs[NDIRECT] = self._next_block()
                indirect = list(_INDIRECT.unpack(self._rsect(din.addrs[NDIRECT])))
                if indirect[fbn - NDIRECT] == 0:
                    indirect[fbn - NDIRECT] = self._next_block()
                    self._wsect(din.addrs[NDIRECT], _INDIRECT.pack(*indirect))
                target = indirect[fbn - NDIRECT]
            n1 = min(len(data) - pos, (fbn + 1) * BSIZE - off)
            block = bytearray(self._rsect(target))
            start = off - fbn * BSIZE
            block[start:start + n1] = data[pos:pos + n1]
            self._wsect(target, block)
            pos += n1
            off += n1
        din.size = off
        self._winode(inum, din)

    def add_file(self, name: str, data: bytes) -> int:
        """Store a file in the root directory; a leading underscore is dropped."""
        self._check_open()
        if "/" in name:
            raise ValueError(f"file name {name!r} must not contain '/'")
        if name.startswith("_"):
            name = name[1:]
        inum = self.ialloc(T_FILE)
        self.iappend(self.root, Dirent(inum, name).pack())
        self.iappend(inum, data)
        return inum

    def _balloc(self, used: int) -> None:
        if used >= BPB:
            raise ValueError("allocated blocks do not fit one bitmap block")
        bitmap = bytearray(BSIZE)
        for block in range(used):
            bitmap[block // 8] |= 1 << (block % 8)
        self._wsect(self.superblock.bmapstart, bitmap)

    def finish(self) -> bytes:
        """Round up the root directory size, write the bitmap and return the image."""
        self._check_open()
        din = self._rinode(self.root)
        din.size = (din.size // BSIZE + 1) * BSIZE
        self._winode(self.root, din)
        self._balloc(self.freeblock)
        self._finished = True
        return bytes(self._image)


def build_image(files: Files) -> bytes:
    """Build an image holding the given (name, data) files."""
    builder = ImageBuilder()
    items = files.items() if isinstance(files, Mapping) else files
    for name, data in items:
        builder.add_file(name, data)
    return builder.finish()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print("Usage: mkfs fs.img files...", file=sys.stderr)
        return 1

    builder = ImageBuilder()
    print(
        f"nmeta {builder.nmeta} (boot, super, log blocks {builder.nlog} "
        f"inode blocks {builder.ninodeblocks}, bitmap blocks {builder.nbitmap}) "
        f"blocks {builder.nblocks} total {builder.fssize}"
    )
    for path in args[1:]:
        try:
            data = Path(path).read_bytes()
            builder.add_file(path, data)
        except OSError as exc:
            print(f"{path}: {exc.strerror}", file=sys.stderr)
            return 1
        except ValueError as exc:
            print(f"mkfs: {exc}", file=sys.stderr)
            return 1

    image = builder.finish()
    print(f"balloc: first {builder.freeblock} blocks have been allocated")
    print(f"balloc: write bitmap block at sector {builder.superblock.bmapstart}")
    try:
        Path(args[0]).write_bytes(image)
    except OSError as exc:
        print(f"{args[0]}: {exc.strerror}", file=sys.stderr)
        return 1
    return 0