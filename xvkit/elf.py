"""ELF32 image parsing and loading into a simulated physical memory."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Sequence

EI_NIDENT = 16
ELF_MAGIC = 0x464C457F  # "\x7fELF" read as a little-endian word

PT_NULL = 0
PT_LOAD = 1
PT_DYNAMIC = 2

PAGE_SIZE = 4096
SECTOR_SIZE = 512

_EHDR = struct.Struct("<16sHHIIIIIHHHHHH")
_PHDR = struct.Struct("<IIIIIIII")


class ElfError(ValueError):
    """Raised when an ELF image is malformed or cannot be loaded."""


@dataclass(frozen=True)
class ElfHeader:
    """The ELF32 file header."""

    ident: bytes
    type: int
    machine: int
    version: int
    entry: int
    phoff: int
    shoff: int
    flags: int
    ehsize: int
    phentsize: int
    phnum: int
    shentsize: int
    shnum: int
    shstrndx: int

    SIZE = _EHDR.size

    @classmethod
    def parse(cls, data: bytes) -> "ElfHeader":
        if len(data) < _EHDR.size:
            raise ElfError(f"ELF header needs {_EHDR.size} bytes, got {len(data)}")
        return cls(*_EHDR.unpack_from(data, 0))

    @property
    def magic(self) -> int:
        return int.from_bytes(self.ident[:4], "little")


@dataclass(frozen=True)
class ProgramHeader:
    """An ELF32 program header."""

    type: int
    offset: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    flags: int
    align: int

    SIZE = _PHDR.size

    @classmethod
    def parse(cls, data: bytes, offset: int) -> "ProgramHeader":
        if offset < 0 or offset + _PHDR.size > len(data):
            raise ElfError(f"program header at {offset:#x} lies outside the image")
        return cls(*_PHDR.unpack_from(data, offset))


@dataclass
class LoadedImage:
    """Segments placed in a block of memory starting at physical address base."""

    base: int
    memory: bytearray
    entry: int

    @property
    def end(self) -> int:
        return self.base + len(self.memory)

    def read(self, addr: int, size: int) -> bytes:
        if size < 0 or addr < self.base or addr + size > self.end:
            raise ElfError(f"range {addr:#x}+{size:#x} is outside the loaded image")
        start = addr - self.base
        return bytes(self.memory[start:start + size])


def read_program_headers(data: bytes) -> list[ProgramHeader]:
    """Return every program header listed by the file header."""
    header = ElfHeader.parse(data)
    return [
        ProgramHeader.parse(data, header.phoff + index * _PHDR.size)
        for index in range(header.phnum)
    ]


def _align_up(value: int, align: int) -> int:
    if align <= 1:
        return value
    mask = align - 1
    return (value + mask) & ~mask


def load_span(headers: Sequence[ProgramHeader]) -> tuple[int, int]:
    """Return (start, end) covering all loadable segments, ends aligned."""
    loads = [h for h in headers if h.type == PT_LOAD]
    if not loads:
        raise ElfError("image has no loadable segments")
    start = min(h.paddr for h in loads)
    end = max(_align_up(h.paddr + h.memsz, h.align) for h in loads)
    return start, end


def _place(image: LoadedImage, data: bytes, header: ProgramHeader) -> None:
    if header.offset + header.filesz > len(data):
        raise ElfError(f"segment at file offset {header.offset:#x} is truncated")
    start = header.paddr - image.base
    stop = start + max(header.filesz, header.memsz)
    if start < 0 or stop > len(image.memory):
        raise ElfError(f"segment at {header.paddr:#x} does not fit the image")
    image.memory[start:start + header.filesz] = data[header.offset:header.offset + header.filesz]
    image.memory[start + header.filesz:start + header.memsz] = bytes(
        max(header.memsz - header.filesz, 0)
    )


def relocate_elf(data: bytes) -> LoadedImage:
    """Copy the loadable segments of an ELF file to their physical addresses."""
    data = bytes(data)
    header = ElfHeader.parse(data)
    headers = read_program_headers(data)
    start, end = load_span(headers)
    pages = (end - start) // PAGE_SIZE + 1
    image = LoadedImage(start, bytearray(pages * PAGE_SIZE), header.entry)
    for program in headers:
        if program.type == PT_LOAD:
            _place(image, data, program)
    return image


def boot_load(disk: bytes) -> LoadedImage:
    """Load the kernel stored on a disk image from sector 1 onwards.

    Every program header is loaded, whatever its type, as the boot block does.
    """
    kernel = bytes(disk[SECTOR_SIZE:])
    header = ElfHeader.parse(kernel[:PAGE_SIZE])
    if header.magic != ELF_MAGIC:
        raise ElfError("disk does not hold an ELF kernel")
    headers = [
        ProgramHeader.parse(kernel, header.phoff + index * _PHDR.size)
        for index in range(header.phnum)
    ]
    if not headers:
        return LoadedImage(0, bytearray(), header.entry)
    base = min(h.paddr for h in headers)
    end = max(h.paddr + max(h.memsz, h.filesz) for h in headers)
    image = LoadedImage(base, bytearray(end - base), header.entry)
    for program in headers:
        _place(image, kernel, program)
    return image