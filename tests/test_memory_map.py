import struct

import pytest

from xvkit.memory_map import (
    EFI_MEMORY_RUNTIME,
    HEADER,
    MemoryDescriptor,
    MemoryType,
    format_memory_map,
    memory_type_name,
    parse_memory_map,
    write_memory_map,
)


def raw_descriptor(type_, phys, virt, pages, attr, size=48):
    data = struct.pack("<I4xQQQQ", type_, phys, virt, pages, attr)
    return data + bytes(size - len(data))


def test_memory_type_names():
    assert memory_type_name(MemoryType.CONVENTIONAL) == "EfiConventionalMemory"
    assert memory_type_name(0) == "EfiReservedMemoryType"
    assert memory_type_name(15) == "EfiMaxMemoryType"
    assert memory_type_name(99) == "InvalidMemoryType"


def test_parse_memory_map_round_trip():
    buffer = raw_descriptor(7, 0x1000, 0, 0x10, 0xF) + raw_descriptor(2, 0x200000, 0x300000, 4, 0)
    descriptors = parse_memory_map(buffer, len(buffer), 48)
    assert descriptors == [
        MemoryDescriptor(7, 0x1000, 0, 0x10, 0xF),
        MemoryDescriptor(2, 0x200000, 0x300000, 4, 0),
    ]


def test_parse_respects_map_size():
    buffer = raw_descriptor(7, 0, 0, 1, 0) + raw_descriptor(1, 0, 0, 1, 0) + bytes(200)
    assert len(parse_memory_map(buffer, 96, 48)) == 2


def test_parse_rejects_small_descriptor_size():
    with pytest.raises(ValueError):
        parse_memory_map(bytes(80), 80, 16)


def test_parse_rejects_truncated_descriptor():
    with pytest.raises(ValueError):
        MemoryDescriptor.parse(bytes(20), 0)


def test_format_line():
    desc = MemoryDescriptor(7, 0x1000, 0, 0x10, EFI_MEMORY_RUNTIME | 0xF)
    text = format_memory_map([desc])
    assert text.startswith(HEADER)
    assert text[len(HEADER):] == (
        "|  0 | 7 EfiConventionalMemory      | 00001000 | 00000000 |   10 | RT     f |\n"
    )


def test_format_runtime_flag_only_when_set():
    plain = format_memory_map([MemoryDescriptor(2, 0, 0, 1, 0)])
    runtime = format_memory_map([MemoryDescriptor(2, 0, 0, 1, EFI_MEMORY_RUNTIME)])
    assert "RT" not in plain[len(HEADER):]
    assert "RT" in runtime[len(HEADER):]
    assert len(plain) == len(runtime)


def test_format_indexes_lines():
    descs = [MemoryDescriptor(1, i, 0, 1, 0) for i in range(3)]
    lines = format_memory_map(descs).splitlines()
    assert len(lines) == 2 + 3
    assert [line.split("|")[1].strip() for line in lines[2:]] == ["0", "1", "2"]


def test_write_memory_map(tmp_path):
    descs = [MemoryDescriptor(3, 0x5000, 0, 2, 0)]
    path = tmp_path / "memmap"
    write_memory_map(path, descs)
    assert path.read_text(encoding="ascii") == format_memory_map(descs)
    assert "EfiBootServicesCode" in path.read_text(encoding="ascii")