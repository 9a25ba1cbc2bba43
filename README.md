# xvkit

Building blocks of a small teaching operating system, in plain Python with
no third-party dependencies.

- **ELF loading** (`xvkit.elf`): `ElfHeader` and `ProgramHeader` parse ELF32
  headers; `load_span` gives the memory range the loadable segments need;
  `relocate_elf` copies those segments into a `LoadedImage`, zeroing the part
  beyond the file data; `boot_load` loads a kernel stored on a disk image from
  sector 1 onwards.
- **Boot tables** (`xvkit.boot`): GDT entries (`GdtEntry`, `make_segment`,
  `GdtDescriptor`), the ACPI `Rsdp`, `SdtHeader`, `xsdt_entries` and
  `parse_madt` with its interrupt-controller entries, and the packed
  `BootParam` block.
- **Firmware memory maps** (`xvkit.memory_map`): `parse_memory_map` decodes
  descriptors; `format_memory_map` and `write_memory_map` render them as a
  Markdown-style table.
- **The on-disk file system**: `xvkit.layout` (superblock, inodes, directory
  entries), `xvkit.mkfs` (image builder), `xvkit.bufcache` (buffer cache over
  an in-memory `MemDisk`), `xvkit.log` (write-ahead log with recovery) and
  `xvkit.filesystem` (inodes, directories, path lookup, open files).
- **Networking** (`xvkit.net`): byte-order helpers, IPv4 and ICMP checksums,
  `ArpPacket`, `ArpTable`, and `NetStack`, which answers ARP requests and ICMP
  echo requests and builds ARP scan broadcasts; `http_response` returns a
  fixed HTTP reply.
- **Console and graphics**: `xvkit.console` (`cprintf` with `%d %x %p %s %%`,
  line-edited `ConsoleInput`, a `TextScreen` of character cells and a
  scan-code `Keyboard`), `xvkit.kalloc` (`PageAllocator`), `xvkit.bmp`
  (`select_mode`, `draw_bmp` into a frame buffer), `xvkit.graphic` (`Gpu`
  frame buffer with `scroll_up`) and `xvkit.font` (a 15×30 bitmap font,
  `render` and `render_string`).

## Command-line tools

Build a file system image holding the given files in its root directory. A
leading `_` in a file name is dropped; names containing `/` are rejected, so
run it from the directory that holds the files:

```
xvkit-mkfs fs.img _cat _echo README
```

Print the lines of files, or of standard input, that match a pattern. The
pattern language supports `^`, `$`, `.` and `*`; a last line without a
newline is not printed.

```
xvkit-grep '^ab*c$' notes.txt
```

## Library use

```python
from xvkit.grep import match
from xvkit.net import h2n_ushort

assert match("^ab*c$", "abbbc")
assert not match("^ab*c$", "abd")
assert h2n_ushort(0x1234) == 0x3412
```

Reading a file back out of a built image:

```python
from xvkit.bufcache import BufferCache, MemDisk
from xvkit.filesystem import FileSystem
from xvkit.log import Log
from xvkit.mkfs import build_image

cache = BufferCache(MemDisk(build_image({"hello": b"hi"})))
fs = FileSystem(cache, Log(cache))
ip = fs.namei("/hello")
with fs.ilock(ip):
    assert fs.readi(ip, 0, 100) == b"hi"
fs.iput(ip)
```

Errors are raised as exceptions: `ElfError` for malformed executables,
`DiskError` for bad disk requests, `LogError` for misuse of the log,
`FileSystemError` for file system faults (and `FileNotFoundError` from path
lookup), and `AllocatorError` for bad page frees.

## What it does not do

There are no processes, scheduler or system calls, and no device drivers:
disks live in memory, frames are handed to a callable rather than a network
card, and the frame buffer is a `bytearray`. `NetStack` does not implement
TCP; TCP segments are only passed on to a handler you supply, and nothing
serves `http_response` over a socket. `mkfs` and `grep` are the only
commands.

## Tests

The test suite uses pytest; the `test` extra lists what it needs.