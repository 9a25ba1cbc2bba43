import struct

import pytest

from xvkit.bmp import (
    BMP_HEADER_SIZE,
    BmpHeader,
    GraphicConfig,
    draw_bmp,
    draw_pixel,
    select_mode,
)


def _header(width, height, size):
    return struct.pack(
        "<2sIHHIIIIHHIIIIII",
        b"BM", size, 0, 0, BMP_HEADER_SIZE, 40, width, height, 1, 24, 0, 0, 0, 0, 0, 0,
    )


def test_header_parse_ignores_pixel_data():
    header = BmpHeader.parse(_header(4, 5, 114) + b"\xaa" * 60)
    assert (header.width, header.height) == (4, 5)
    assert header.info_header_size == 40
    assert header.plane_num == 1


def test_header_parse():
    header = BmpHeader.parse(_header(2, 3, 72))
    assert header.sig == b"BM"
    assert (header.width, header.height) == (2, 3)
    assert header.file_size == 72
    assert header.color_bit == 24
    assert header.header_size == BMP_HEADER_SIZE


def test_header_truncated():
    with pytest.raises(ValueError):
        BmpHeader.parse(b"BM")


def test_select_mode_prefers_largest_allowed_ratio():
    modes = [(640, 480), (1280, 1024), (1920, 1080), (800, 600)]
    assert select_mode(modes) == 2


def test_select_mode_skips_other_ratios():
    assert select_mode([(640, 480), (1280, 1024)]) == 0


def test_select_mode_none_allowed():
    assert select_mode([(1280, 1024), (1000, 999)]) == 0


def _config(width, height, stride):
    return GraphicConfig(0, stride * height * 4, width, height, stride)


def test_draw_pixel_leaves_reserved_byte():
    config = _config(2, 2, 3)
    framebuffer = bytearray(b"\xee" * (3 * 2 * 4))
    draw_pixel(framebuffer, config, 1, 1, b"\x01\x02\x03")
    offset = (1 * 3 + 1) * 4
    assert framebuffer[offset:offset + 4] == b"\x01\x02\x03\xee"


def test_draw_pixel_outside():
    config = _config(2, 2, 2)
    with pytest.raises(IndexError):
        draw_pixel(bytearray(16), config, 0, 2, b"\x00\x00\x00")


def test_draw_pixel_needs_three_bytes():
    with pytest.raises(ValueError):
        draw_pixel(bytearray(16), _config(2, 2, 2), 0, 0, b"\x00\x00")


def test_draw_bmp_flips_rows():
    config = _config(2, 2, 3)
    framebuffer = bytearray(3 * 2 * 4)
    pixels = [b"\x01\x02\x03", b"\x04\x05\x06", b"\x07\x08\x09", b"\x0a\x0b\x0c"]
    bmp = _header(2, 2, BMP_HEADER_SIZE + 12) + b"".join(pixels)
    header = draw_bmp(bmp, config, framebuffer)
    assert header.sig == b"BM"
    # The first bitmap row is the bottom screen row.
    assert framebuffer[12:15] == pixels[0]
    assert framebuffer[16:19] == pixels[1]
    assert framebuffer[0:3] == pixels[2]
    assert framebuffer[4:7] == pixels[3]
    # The padding column past the visible width is untouched.
    assert framebuffer[8:12] == bytes(4)
    assert framebuffer[20:24] == bytes(4)


def test_draw_bmp_too_small():
    config = _config(2, 2, 2)
    with pytest.raises(ValueError):
        draw_bmp(_header(2, 2, 60) + b"\x00" * 6, config, bytearray(16))