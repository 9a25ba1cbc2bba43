"""UEFI memory map descriptors and their tabular dump."""

from __future__ import annotations

import enum
import os
import struct
from dataclasses import dataclass
from typing import Iterable, Union

MEM_MAP_SIZE = 8192
EFI_MEMORY_RUNTIME = 0x8000000000000000

_DESCRIPTOR = struct.Struct("<I4xQQQQ")

HEADER = (
    "| Index | Type     | PhysicalStart | VirtualStart  | NumberOfPages | Attribute |\n"
    "|-------|----------|---------------|---------------|---------------|-----------|\n"
)


class MemoryType(enum.IntEnum):
    RESERVED = 0
    LOADER_CODE = 1
    LOADER_DATA = 2
    BOOT_SERVICES_CODE = 3
    BOOT_SERVICES_DATA = 4
    RUNTIME_SERVICES_CODE = 5
    RUNTIME_SERVICES_DATA = 6
    CONVENTIONAL = 7
    UNUSABLE = 8
    ACPI_RECLAIM = 9
    ACPI_NVS = 10
    MEMORY_MAPPED_IO = 11
    MEMORY_MAPPED_IO_PORT_SPACE = 12
    PAL_CODE = 13
    PERSISTENT = 14
    MAX = 15


_NAMES = {
    MemoryType.RESERVED: "EfiReservedMemoryType",
    MemoryType.LOADER_CODE: "EfiLoaderCode",
    MemoryType.LOADER_DATA: "EfiLoaderData",
    MemoryType.BOOT_SERVICES_CODE: "EfiBootServicesCode",
    MemoryType.BOOT_SERVICES_DATA: "EfiBootServicesData",
    MemoryType.RUNTIME_SERVICES_CODE: "EfiRuntimeServicesCode",
    MemoryType.RUNTIME_SERVICES_DATA: "EfiRuntimeServicesData",
    MemoryType.CONVENTIONAL: "EfiConventionalMemory",
    MemoryType.UNUSABLE: "EfiUnusableMemory",
    MemoryType.ACPI_RECLAIM: "EfiACPIReclaimMemory",
    MemoryType.ACPI_NVS: "EfiACPIMemoryNVS",
    MemoryType.MEMORY_MAPPED_IO: "EfiMemoryMappedIO",
    MemoryType.MEMORY_MAPPED_IO_PORT_SPACE: "EfiMemoryMappedIOPortSpace",
    MemoryType.PAL_CODE: "EfiPalCode",
    MemoryType.PERSISTENT: "EfiPersistentMemory",
    MemoryType.MAX: "EfiMaxMemoryType",
}


def memory_type_name(value: int) -> str:
    """Return the UEFI name of a memory type, or "InvalidMemoryType"."""
    return _NAMES.get(value, "InvalidMemoryType")


@dataclass(frozen=True)
class MemoryDescriptor:
    """One EFI_MEMORY_DESCRIPTOR."""

    type: int
    physical_start: int
    virtual_start: int
    number_of_pages: int
    attribute: int

    SIZE = _DESCRIPTOR.size

    @classmethod
    def parse(cls, data: bytes, offset: int) -> "MemoryDescriptor":
        if offset < 0 or offset + _DESCRIPTOR.size > len(data):
            raise ValueError(f"memory descriptor at {offset:#x} is truncated")
        return cls(*_DESCRIPTOR.unpack_from(data, offset))

    @property
    def runtime(self) -> bool:
        return bool(self.attribute & EFI_MEMORY_RUNTIME)


def parse_memory_map(buffer: bytes, map_size: int, descriptor_size: int) -> list[MemoryDescriptor]:
    """Split a raw memory map into descriptors spaced descriptor_size apart."""
    if descriptor_size < _DESCRIPTOR.size:
        raise ValueError(f"descriptor size must be at least {_DESCRIPTOR.size}")
    if map_size > len(buffer):
        raise ValueError("memory map is larger than its buffer")
    return [
        MemoryDescriptor.parse(buffer, offset)
        for offset in range(0, map_size, descriptor_size)
    ]


def _format_line(index: int, desc: MemoryDescriptor) -> str:
    runtime = "RT" if desc.runtime else ""
    return (
        f"| {index:2d} | {desc.type:x} {memory_type_name(desc.type):<26} "
        f"| {desc.physical_start:08x} | {desc.virtual_start:08x} "
        f"| {desc.number_of_pages:4x} | {runtime:>2} {desc.attribute & 0xFFFFF:5x} |\n"
    )


def format_memory_map(descriptors: Iterable[MemoryDescriptor]) -> str:
    """Render descriptors as the memmap table."""
    return HEADER + "".join(_format_line(i, d) for i, d in enumerate(descriptors))


def write_memory_map(path: Union[str, os.PathLike], descriptors: Iterable[MemoryDescriptor]) -> None:
    """Write the memmap table to a file."""
    with open(path, "w", encoding="ascii", newline="") as handle:
        handle.write(format_memory_map(descriptors))