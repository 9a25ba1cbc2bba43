"""Graphic mode selection and drawing of 24-bit bitmaps into a frame buffer."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterable, Tuple

BMP_HEADER_SIZE = 54
PIXEL_SIZE = 4  # blue, green, red, reserved

_BMP = struct.Struct("<2sIHHIIIIHHIIIIII")


@dataclass(frozen=True)
class GraphicConfig:
    """The frame buffer and mode handed to the kernel."""

    frame_base: int
    frame_size: int
    horizontal_resolution: int
    vertical_resolution: int
    pixels_per_scan_line: int


@dataclass(frozen=True)
class BmpHeader:
    """The file and info headers of a bitmap file."""

    sig: bytes
    file_size: int
    reserved1: int
    reserved2: int
    header_size: int
    info_header_size: int
    width: int
    height: int
    plane_num: int
    color_bit: int
    compression_type: int
    compression_size: int
    horizontal_pixel: int
    vertical_pixel: int
    color_num: int
    essential_num: int

    SIZE = _BMP.size

    @classmethod
    def parse(cls, data: bytes) -> "BmpHeader":
        if len(data) < _BMP.size:
            raise ValueError(f"bitmap header needs {_BMP.size} bytes, got {len(data)}")
        return cls(*_BMP.unpack_from(data, 0))


def select_mode(modes: Iterable[Tuple[int, int]]) -> int:
    """Return the index of the largest 16:9 or 4:3 mode, or 0 if there is none."""
    best = 0
    resolution = 0
    for index, (h, v) in enumerate(modes):
        if not (h * 9 == v * 16 or h * 3 == v * 4):
            continue
        if resolution < h * v:
            best = index
            resolution = h * v
    return best


def draw_pixel(framebuffer: bytearray, config: GraphicConfig, x: int, y: int, rgb: bytes) -> None:
    """Copy three colour bytes to the pixel at (x, y)."""
    rgb = bytes(rgb)
    if len(rgb) != 3:
        raise ValueError("a pixel takes exactly 3 colour bytes")
    offset = (y * config.pixels_per_scan_line + x) * PIXEL_SIZE
    if x < 0 or y < 0 or offset + 3 > len(framebuffer):
        raise IndexError(f"pixel ({x}, {y}) is outside the frame buffer")
    framebuffer[offset:offset + 3] = rgb


def draw_bmp(bmp: bytes, config: GraphicConfig, framebuffer: bytearray) -> BmpHeader:
    """Fill the screen from a bottom-up 24-bit bitmap; return its header."""
    bmp = bytes(bmp)
    header = BmpHeader.parse(bmp)
    width = config.horizontal_resolution
    height = config.vertical_resolution
    if len(bmp) < BMP_HEADER_SIZE + width * height * 3:
        raise ValueError("bitmap is smaller than the screen")
    pos = BMP_HEADER_SIZE
    for row in range(height):
        y = height - 1 - row
        for x in range(width):
            draw_pixel(framebuffer, config, x, y, bmp[pos:pos + 3])
            pos += 3
    return header