import struct

import pytest

from xvkit.elf import (
    PT_LOAD,
    PT_NULL,
    ElfError,
    ElfHeader,
    LoadedImage,
    ProgramHeader,
    boot_load,
    load_span,
    read_program_headers,
    relocate_elf,
)

IDENT = b"\x7fELF\x01\x01\x01" + bytes(9)


def build_elf(entry, segments):
    """segments: list of (type, paddr, payload, memsz, align)."""
    phoff = 52
    data_offset = phoff + 32 * len(segments)
    header = struct.pack(
        "<16sHHIIIIIHHHHHH", IDENT, 2, 3, 1, entry, phoff, 0, 0, 52, 32, len(segments), 0, 0, 0
    )
    phdrs = b""
    body = b""
    for seg_type, paddr, payload, memsz, align in segments:
        offset = data_offset + len(body)
        phdrs += struct.pack("<IIIIIIII", seg_type, offset, paddr, paddr, len(payload), memsz, 5, align)
        body += payload
    return header + phdrs + body


def test_header_round_trip():
    data = build_elf(0x100020, [(PT_LOAD, 0x100000, b"abc", 3, 0x1000)])
    header = ElfHeader.parse(data)
    assert header.entry == 0x100020
    assert header.phnum == 1
    assert header.phoff == 52
    assert header.ident == IDENT


def test_header_too_short():
    with pytest.raises(ElfError):
        ElfHeader.parse(b"\x7fELF")


def test_read_program_headers():
    data = build_elf(0, [(PT_LOAD, 0x2000, b"xy", 8, 0x1000), (PT_NULL, 0, b"", 0, 0)])
    headers = read_program_headers(data)
    assert [h.type for h in headers] == [PT_LOAD, PT_NULL]
    assert headers[0].paddr == 0x2000
    assert headers[0].filesz == 2
    assert headers[0].memsz == 8


def test_program_header_out_of_range():
    with pytest.raises(ElfError):
        ProgramHeader.parse(b"\0" * 10, 0)


def test_load_span_is_aligned_and_covers_segments():
    headers = [
        ProgramHeader(PT_LOAD, 0, 0, 0x100000, 10, 0x1234, 0, 0x1000),
        ProgramHeader(PT_LOAD, 0, 0, 0x200000, 10, 0x10, 0, 0x1000),
        ProgramHeader(PT_NULL, 0, 0, 0x10, 0, 0x10, 0, 0),
    ]
    start, end = load_span(headers)
    assert start == 0x100000
    assert end % 0x1000 == 0
    assert end >= 0x200000 + 0x10


def test_load_span_without_load_segments():
    with pytest.raises(ElfError):
        load_span([ProgramHeader(PT_NULL, 0, 0, 0, 0, 0, 0, 0)])


def test_relocate_copies_and_zero_fills():
    payload = b"kernel code"
    data = build_elf(0x100004, [(PT_LOAD, 0x100000, payload, 64, 0x1000)])
    image = relocate_elf(data)
    assert image.entry == 0x100004
    assert image.base == 0x100000
    assert image.read(0x100000, len(payload)) == payload
    assert image.read(0x100000 + len(payload), 64 - len(payload)) == bytes(64 - len(payload))
    assert len(image.memory) % 4096 == 0


def test_relocate_multiple_segments():
    data = build_elf(0, [(PT_LOAD, 0x3000, b"AAAA", 4, 0x1000), (PT_LOAD, 0x1000, b"BB", 2, 0x1000)])
    image = relocate_elf(data)
    assert image.base == 0x1000
    assert image.read(0x3000, 4) == b"AAAA"
    assert image.read(0x1000, 2) == b"BB"


def test_relocate_truncated_segment():
    data = build_elf(0, [(PT_LOAD, 0x1000, b"ABCDEFGH", 8, 0x1000)])
    with pytest.raises(ElfError):
        relocate_elf(data[:-4])


def test_loaded_image_read_out_of_range():
    image = LoadedImage(0x1000, bytearray(16), 0)
    with pytest.raises(ElfError):
        image.read(0x1000 + 10, 10)
    with pytest.raises(ElfError):
        image.read(0x0FFF, 1)


def test_boot_load_from_disk():
    elf = build_elf(0x10000C, [(PT_LOAD, 0x100000, b"boot!", 12, 0x1000)])
    disk = bytes(512) + elf
    image = boot_load(disk)
    assert image.entry == 0x10000C
    assert image.read(0x100000, 5) == b"boot!"
    assert image.read(0x100005, 7) == bytes(7)


def test_boot_load_rejects_non_elf():
    disk = bytes(512) + b"NOPE" + bytes(100)
    with pytest.raises(ElfError):
        boot_load(disk)