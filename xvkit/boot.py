"""Boot-time structures: GDT entries, ACPI tables and the boot parameter block."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Optional, Union

STA_X = 0x8  # executable segment
STA_E = 0x4  # expand down (non-executable segments)
STA_C = 0x4  # conforming code segment (executable only)
STA_W = 0x2  # writeable (non-executable segments)
STA_R = 0x2  # readable (executable segments)
STA_A = 0x1  # accessed

BOOT_PARAM_ADDR = 0x50000
MADT_ENTRIES_OFFSET = 0x2C

_GDT = struct.Struct("<HHBBBB")
_GDT_DESC = struct.Struct("<HQ")
_RSDP = struct.Struct("<8sB6sBIIQB3s")
_SDT = struct.Struct("<4sIBB6s8sIII")
_BOOT_HEAD = struct.Struct("<QQ5Q")
_BOOT_TAIL = struct.Struct("<Q")


@dataclass
class GdtEntry:
    """A packed 8-byte segment descriptor."""

    limit: int = 0
    base1: int = 0
    base2: int = 0
    access_byte: int = 0
    flags: int = 0
    base3: int = 0

    def pack(self) -> bytes:
        return _GDT.pack(self.limit, self.base1, self.base2, self.access_byte, self.flags, self.base3)


@dataclass
class GdtDescriptor:
    """The operand of lgdt: table size and linear address."""

    size: int
    gdt_addr: int

    def pack(self) -> bytes:
        return _GDT_DESC.pack(self.size, self.gdt_addr)


def make_segment(type_: int, base: int, limit: int) -> GdtEntry:
    """Build a 4K-granular 32-bit segment descriptor."""
    return GdtEntry(
        limit=(limit >> 12) & 0xFFFF,
        base1=base & 0xFFFF,
        base2=(base >> 16) & 0xFF,
        access_byte=0x90 | type_,
        flags=0xC0 | ((limit >> 28) & 0xF),
        base3=(base >> 24) & 0xFF,
    )


@dataclass(frozen=True)
class Rsdp:
    """ACPI root system description pointer."""

    signature: bytes
    checksum: int
    oem_id: bytes
    revision: int
    rsdt_address: int
    length: int
    xsdt_address: int
    ext_checksum: int
    reserved: bytes

    SIZE = _RSDP.size

    @classmethod
    def parse(cls, data: bytes) -> "Rsdp":
        if len(data) < _RSDP.size:
            raise ValueError("RSDP is truncated")
        return cls(*_RSDP.unpack_from(data, 0))


@dataclass(frozen=True)
class SdtHeader:
    """Common header of ACPI system description tables."""

    signature: bytes
    length: int
    revision: int
    checksum: int
    oem_id: bytes
    table_id: bytes
    oem_revision: int
    creator_id: int
    creator_revision: int

    SIZE = _SDT.size

    @classmethod
    def parse(cls, data: bytes) -> "SdtHeader":
        if len(data) < _SDT.size:
            raise ValueError("SDT header is truncated")
        return cls(*_SDT.unpack_from(data, 0))


def xsdt_entries(data: bytes) -> list[int]:
    """Return the table addresses listed in an XSDT."""
    header = SdtHeader.parse(data)
    count = max(header.length - _SDT.size, 0) // 8
    if _SDT.size + count * 8 > len(data):
        raise ValueError("XSDT is truncated")
    return list(struct.unpack_from(f"<{count}Q", data, _SDT.size))


@dataclass(frozen=True)
class LocalApic:
    processor_id: int
    apic_id: int
    flags: int


@dataclass(frozen=True)
class IoApic:
    ioapic_id: int
    address: int
    global_system_interrupt_base: int


@dataclass(frozen=True)
class InterruptSourceOverride:
    bus_source: int
    irq_source: int
    global_system_interrupt: int
    flags: int


@dataclass(frozen=True)
class NonMaskableInterrupt:
    acpi_processor_id: int
    flags: int
    lint: int


@dataclass(frozen=True)
class LocalApicOverride:
    address: int


MadtEntry = Union[LocalApic, IoApic, InterruptSourceOverride, NonMaskableInterrupt, LocalApicOverride]


@dataclass(frozen=True)
class Madt:
    """Multiple APIC description table."""

    header: SdtHeader
    lapic_address: int
    flags: int
    entries: list


def parse_madt(data: bytes) -> Madt:
    """Parse a MADT and the interrupt controller entries that follow its header."""
    header = SdtHeader.parse(data)
    if header.length < MADT_ENTRIES_OFFSET or header.length > len(data):
        raise ValueError("MADT length is inconsistent with the data")
    lapic_address, flags = struct.unpack_from("<II", data, _SDT.size)

    def unpack(fmt: str, offset: int) -> tuple:
        if offset + struct.calcsize(fmt) > header.length:
            raise ValueError(f"MADT entry at {offset:#x} is truncated")
        return struct.unpack_from(fmt, data, offset)

    entries: list = []
    offset = MADT_ENTRIES_OFFSET
    while offset < header.length:
        entry_type, record_len = unpack("<BB", offset)
        if entry_type == 0:
            _, _, processor_id, apic_id, lapic_flags = unpack("<BBBBI", offset)
            entries.append(LocalApic(processor_id, apic_id, lapic_flags))
        elif entry_type == 1:
            _, _, ioapic_id, _, address, gsi_base = unpack("<BBBBII", offset)
            entries.append(IoApic(ioapic_id, address, gsi_base))
        elif entry_type == 2:
            _, _, bus, irq, gsi, iso_flags = unpack("<BBBBIH", offset)
            entries.append(InterruptSourceOverride(bus, irq, gsi, iso_flags))
        elif entry_type == 4:
            _, _, processor_id, nmi_flags, lint = unpack("<BBBHB", offset)
            entries.append(NonMaskableInterrupt(processor_id, nmi_flags, lint))
        elif entry_type == 5:
            _, _, _, address = unpack("<BBHQ", offset)
            entries.append(LocalApicOverride(address))
            offset += 0xC
            continue
        else:
            raise ValueError(f"unsupported MADT entry type {entry_type}")
        if record_len == 0:
            raise ValueError(f"MADT entry at {offset:#x} has zero length")
        offset += record_len
    return Madt(header, lapic_address, flags, entries)


def _bootstrap_gdt() -> list[GdtEntry]:
    return [
        GdtEntry(),
        make_segment(STA_X | STA_R, 0x0, 0xFFFFFFFF),
        make_segment(STA_W, 0x0, 0xFFFFFFFF),
    ]


_GDT_OFFSET = _BOOT_HEAD.size


@dataclass
class BootParam:
    """Parameters the loader hands to the kernel, with a flat bootstrap GDT."""

    kernel_addr: int
    madt_addr: int = 0
    graphic_config: tuple = (0, 0, 0, 0, 0)
    address: int = BOOT_PARAM_ADDR
    kernel_entry: Optional[int] = None
    bootstrap_gdt: list = field(default_factory=_bootstrap_gdt)
    bootstrap_gdt_desc: Optional[GdtDescriptor] = None

    def __post_init__(self) -> None:
        if len(self.graphic_config) != 5:
            raise ValueError("graphic_config needs five values")
        if len(self.bootstrap_gdt) != 3:
            raise ValueError("bootstrap GDT holds exactly three entries")
        if self.kernel_entry is None:
            self.kernel_entry = self.kernel_addr
        if self.bootstrap_gdt_desc is None:
            self.bootstrap_gdt_desc = GdtDescriptor(
                size=_GDT.size * len(self.bootstrap_gdt),
                gdt_addr=self.address + _GDT_OFFSET,
            )

    def pack(self) -> bytes:
        return b"".join(
            [
                _BOOT_HEAD.pack(self.kernel_entry, self.madt_addr, *self.graphic_config),
                *(entry.pack() for entry in self.bootstrap_gdt),
                self.bootstrap_gdt_desc.pack(),
                _BOOT_TAIL.pack(self.kernel_addr),
            ]
        )