import struct

import pytest

from xvkit.boot import (
    STA_R,
    STA_W,
    STA_X,
    BootParam,
    GdtDescriptor,
    GdtEntry,
    InterruptSourceOverride,
    IoApic,
    LocalApic,
    LocalApicOverride,
    NonMaskableInterrupt,
    Rsdp,
    SdtHeader,
    make_segment,
    parse_madt,
    xsdt_entries,
)


def sdt(signature, body):
    length = 36 + len(body)
    header = struct.pack("<4sIBB6s8sIII", signature, length, 1, 0, b"OEMID ", b"TABLEID ", 1, 2, 3)
    return header + body


def test_flat_code_segment_bytes():
    segment = make_segment(STA_X | STA_R, 0, 0xFFFFFFFF)
    assert segment.pack() == bytes.fromhex("ffff0000009acf00")


def test_segment_base_split():
    segment = make_segment(STA_W, 0x12345678, 0xFFFFFFFF)
    assert segment.base1 == 0x5678
    assert segment.base2 == 0x34
    assert segment.base3 == 0x12
    assert segment.access_byte == 0x90 | STA_W


def test_gdt_descriptor_pack_round_trip():
    packed = GdtDescriptor(size=24, gdt_addr=0x50038).pack()
    assert struct.unpack("<HQ", packed) == (24, 0x50038)


def test_gdt_entry_pack_round_trip():
    entry = GdtEntry(1, 2, 3, 4, 5, 6)
    assert struct.unpack("<HHBBBB", entry.pack()) == (1, 2, 3, 4, 5, 6)


def test_rsdp_parse():
    raw = struct.pack("<8sB6sBIIQB3s", b"RSD PTR ", 7, b"OEMID ", 2, 0x1000, 36, 0xDEAD0000, 9, b"\0\0\0")
    rsdp = Rsdp.parse(raw)
    assert rsdp.signature == b"RSD PTR "
    assert rsdp.revision == 2
    assert rsdp.xsdt_address == 0xDEAD0000
    assert rsdp.rsdt_address == 0x1000


def test_rsdp_truncated():
    with pytest.raises(ValueError):
        Rsdp.parse(b"RSD PTR ")


def test_xsdt_entries():
    pointers = [0x7000, 0x8000, 0x9000]
    data = sdt(b"XSDT", struct.pack("<3Q", *pointers))
    assert SdtHeader.parse(data).signature == b"XSDT"
    assert xsdt_entries(data) == pointers


def test_parse_madt_entries():
    body = struct.pack("<II", 0xFEE00000, 1)
    body += struct.pack("<BBBBI", 0, 8, 0, 1, 1)
    body += struct.pack("<BBBBII", 1, 12, 2, 0, 0xFEC00000, 0)
    body += struct.pack("<BBBBIH", 2, 10, 0, 0, 2, 0)
    body += struct.pack("<BBBHB", 4, 6, 0xFF, 5, 1)
    body += struct.pack("<BBHQ", 5, 12, 0, 0xFEE00000)
    madt = parse_madt(sdt(b"APIC", body))
    assert madt.lapic_address == 0xFEE00000
    assert madt.flags == 1
    assert madt.entries == [
        LocalApic(0, 1, 1),
        IoApic(2, 0xFEC00000, 0),
        InterruptSourceOverride(0, 0, 2, 0),
        NonMaskableInterrupt(0xFF, 5, 1),
        LocalApicOverride(0xFEE00000),
    ]


def test_parse_madt_unknown_entry():
    body = struct.pack("<II", 0, 0) + struct.pack("<BB", 9, 4) + b"\0\0"
    with pytest.raises(ValueError):
        parse_madt(sdt(b"APIC", body))


def test_parse_madt_truncated_entry():
    body = struct.pack("<II", 0, 0) + struct.pack("<BBBB", 1, 12, 0, 0)
    with pytest.raises(ValueError):
        parse_madt(sdt(b"APIC", body))


def test_boot_param_defaults_and_layout():
    param = BootParam(kernel_addr=0x100000, madt_addr=0x51000, graphic_config=(1, 2, 3, 4, 5))
    assert param.kernel_entry == 0x100000
    packed = param.pack()
    assert struct.unpack_from("<QQ5Q", packed, 0) == (0x100000, 0x51000, 1, 2, 3, 4, 5)
    assert struct.unpack_from("<Q", packed, len(packed) - 8) == (0x100000,)
    offset = param.bootstrap_gdt_desc.gdt_addr - param.address
    gdt = b"".join(entry.pack() for entry in param.bootstrap_gdt)
    assert param.bootstrap_gdt_desc.size == len(gdt)
    assert packed[offset:offset + len(gdt)] == gdt
    assert param.bootstrap_gdt[0].pack() == bytes(8)
    assert param.bootstrap_gdt[1] == make_segment(STA_X | STA_R, 0, 0xFFFFFFFF)
    assert param.bootstrap_gdt[2] == make_segment(STA_W, 0, 0xFFFFFFFF)


def test_boot_param_rejects_bad_graphic_config():
    with pytest.raises(ValueError):
        BootParam(kernel_addr=0, graphic_config=(1, 2))