import pytest

from xvkit.font import BLACK, FONT, WHITE, glyph, render, render_string
from xvkit.graphic import Gpu, Pixel


def test_every_printable_glyph_has_thirty_rows():
    for code in range(0x20, 0x7F):
        rows = glyph(chr(code))
        assert len(rows) == 30
        assert tuple(rows) == tuple(FONT[code - 0x20])


def test_space_is_blank():
    assert glyph(" ") == (0x0,) * 30


def test_glyph_by_char_and_code_agree():
    assert glyph("A") == glyph(0x41)
    assert glyph("!")[1] == 0x1C0


def test_glyph_outside_range():
    with pytest.raises(ValueError):
        glyph("\x7f")
    with pytest.raises(ValueError):
        glyph(0x1F)
    with pytest.raises(ValueError):
        glyph("ab")


def test_render_bar_columns():
    gpu = Gpu(20, 30)
    render(gpu, 0, 0, "|")
    # Every row of '|' is 0x180: bits 8 and 7, i.e. columns 6 and 7.
    for y in range(30):
        assert gpu.pixel(6, y) == Pixel(0xFF, 0xFF, 0xFF, 0)
        assert gpu.pixel(7, y) == Pixel(0xFF, 0xFF, 0xFF, 0)
        assert gpu.pixel(5, y) == Pixel(0, 0, 0, 0)
        assert gpu.pixel(8, y) == Pixel(0, 0, 0, 0)


def test_render_space_clears_cell():
    gpu = Gpu(20, 30)
    gpu.vram[:] = b"\xff" * len(gpu.vram)
    render(gpu, 0, 0, " ")
    assert all(gpu.pixel(x, y).blue == 0 for x in range(15) for y in range(30))
    assert gpu.pixel(15, 0).blue == 0xFF


def test_render_pixels_are_black_or_white():
    gpu = Gpu(20, 30)
    render(gpu, 2, 0, "Q")
    colours = {gpu.pixel(x, y) for x in range(2, 17) for y in range(30)}
    assert colours == {BLACK, WHITE}


def test_render_outside_screen():
    gpu = Gpu(10, 10)
    with pytest.raises(IndexError):
        render(gpu, 0, 0, "A")


def test_render_string_positions():
    gpu = Gpu(40, 60)
    render_string(gpu, "||", 1)
    assert gpu.pixel(2 + 6, 30) == WHITE
    assert gpu.pixel(17 + 6, 59) == WHITE
    assert gpu.pixel(2 + 6, 29).blue == 0


def test_render_string_stops_at_nul():
    gpu = Gpu(40, 30)
    render_string(gpu, "|\0|", 0)
    assert gpu.pixel(17 + 6, 0).blue == 0
    assert gpu.pixel(2 + 6, 0) == WHITE


def test_render_string_limit():
    gpu = Gpu(52 * 15 + 2, 30)
    render_string(gpu, "|" * 60, 0)
    assert gpu.pixel(51 * 15 + 2 + 6, 0) == WHITE