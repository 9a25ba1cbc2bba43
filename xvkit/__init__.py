"""Building blocks of a small teaching operating system: ELF loading, boot tables,
an on-disk file system, a small network stack and a framebuffer console."""

__version__ = "0.1.0"

__all__ = [
    "boot",
    "bmp",
    "bufcache",
    "console",
    "elf",
    "filesystem",
    "font",
    "graphic",
    "grep",
    "kalloc",
    "layout",
    "log",
    "memory_map",
    "mkfs",
    "net",
]