"""Linear frame buffer of 32-bit blue/green/red/reserved pixels."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

PIXEL_SIZE = 4  # blue, green, red, reserved


@dataclass(frozen=True)
class Pixel:
    """One frame buffer pixel."""

    blue: int = 0
    green: int = 0
    red: int = 0
    black: int = 0


class Gpu:
    """A frame buffer held in memory, laid out pixels_per_line pixels to a line."""

    def __init__(
        self,
        horizontal_resolution: int,
        vertical_resolution: int,
        pixels_per_line: Optional[int] = None,
        vram_size: Optional[int] = None,
    ) -> None:
        if horizontal_resolution <= 0 or vertical_resolution <= 0:
            raise ValueError("resolutions must be positive")
        self.horizontal_resolution = horizontal_resolution
        self.vertical_resolution = vertical_resolution
        self.pixels_per_line = (
            horizontal_resolution if pixels_per_line is None else pixels_per_line
        )
        if self.pixels_per_line < horizontal_resolution:
            raise ValueError("a line holds fewer pixels than the horizontal resolution")
        if vram_size is None:
            vram_size = self.pixels_per_line * vertical_resolution * PIXEL_SIZE
        self.vram_size = vram_size
        self.vram = bytearray(vram_size)

    def _offset(self, x: int, y: int) -> int:
        offset = PIXEL_SIZE * (y * self.pixels_per_line + x)
        if x < 0 or y < 0 or offset + PIXEL_SIZE > self.vram_size:
            raise IndexError(f"pixel ({x}, {y}) is outside the frame buffer")
        return offset

    def draw_pixel(self, x: int, y: int, pixel: Pixel) -> None:
        """Set the colour of (x, y); the reserved byte is left as it is."""
        offset = self._offset(x, y)
        self.vram[offset] = pixel.blue & 0xFF
        self.vram[offset + 1] = pixel.green & 0xFF
        self.vram[offset + 2] = pixel.red & 0xFF

    def pixel(self, x: int, y: int) -> Pixel:
        """Return the pixel at (x, y)."""
        offset = self._offset(x, y)
        return Pixel(*self.vram[offset:offset + PIXEL_SIZE])

    def scroll_up(self, height: int) -> None:
        """Move the picture up by height lines, clearing the lines freed at the bottom."""
        diff = PIXEL_SIZE * self.pixels_per_line * height
        if height < 0 or diff > self.vram_size:
            raise ValueError(f"cannot scroll by {height} lines")
        keep = self.vram_size - diff
        self.vram[:keep] = self.vram[diff:]
        self.vram[keep:] = bytes(diff)