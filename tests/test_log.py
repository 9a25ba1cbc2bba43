import struct

import pytest

from xvkit.bufcache import BufferCache, MemDisk
from xvkit.layout import BSIZE
from xvkit.log import Log, LogError
from xvkit.mkfs import ImageBuilder


def _setup(nlog=None):
    builder = ImageBuilder() if nlog is None else ImageBuilder(nlog=nlog)
    image = builder.finish()
    disk = MemDisk(image)
    cache = BufferCache(disk)
    return builder, disk, cache


def _block(disk, bn):
    return bytes(disk.data[bn * BSIZE:(bn + 1) * BSIZE])


def _write(cache, log, blockno, payload):
    buf = cache.bread(1, blockno)
    buf.data[:len(payload)] = payload
    log.log_write(buf)
    cache.brelse(buf)


def test_commit_installs_blocks():
    builder, disk, cache = _setup()
    log = Log(cache)
    target = builder.freeblock + 10
    with log.transaction():
        _write(cache, log, target, b"abcd")
        assert _block(disk, target)[:4] == bytes(4)
    assert _block(disk, target)[:4] == b"abcd"
    header = _block(disk, builder.superblock.logstart)
    assert struct.unpack_from("<i", header)[0] == 0


def test_commit_waits_for_last_operation():
    builder, disk, cache = _setup()
    log = Log(cache)
    target = builder.freeblock + 5
    log.begin_op()
    log.begin_op()
    _write(cache, log, target, b"zz")
    log.end_op()
    assert _block(disk, target)[:2] == bytes(2)
    log.end_op()
    assert _block(disk, target)[:2] == b"zz"


def test_recover_installs_committed_transaction():
    builder, disk, cache = _setup()
    start = builder.superblock.logstart
    target = builder.freeblock + 7
    payload = b"recovered".ljust(BSIZE, b"\0")
    disk.data[start * BSIZE:start * BSIZE + 8] = struct.pack("<ii", 1, target)
    disk.data[(start + 1) * BSIZE:(start + 2) * BSIZE] = payload
    Log(cache)
    assert _block(disk, target) == payload
    assert struct.unpack_from("<i", _block(disk, start))[0] == 0


def test_log_write_outside_transaction():
    builder, disk, cache = _setup()
    log = Log(cache)
    buf = cache.bread(1, builder.freeblock)
    with pytest.raises(LogError):
        log.log_write(buf)


def test_transaction_too_big():
    builder, disk, cache = _setup(nlog=4)
    log = Log(cache)
    log.begin_op()
    _write(cache, log, builder.freeblock, b"a")
    _write(cache, log, builder.freeblock + 1, b"b")
    _write(cache, log, builder.freeblock + 2, b"c")
    with pytest.raises(LogError):
        _write(cache, log, builder.freeblock + 3, b"d")
    # Nothing has been committed to the disk yet.
    assert _block(disk, builder.freeblock)[:1] == bytes(1)
    assert _block(disk, builder.freeblock + 2)[:1] == bytes(1)


def test_repeated_block_is_absorbed():
    builder, disk, cache = _setup(nlog=4)
    log = Log(cache)
    first = builder.freeblock
    second = builder.freeblock + 1
    with log.transaction():
        _write(cache, log, first, b"1")
        _write(cache, log, first, b"2")
        _write(cache, log, second, b"3")
        _write(cache, log, second, b"4")
        _write(cache, log, first + 2, b"5")
    assert _block(disk, first)[:1] == b"2"
    assert _block(disk, second)[:1] == b"4"
    assert _block(disk, first + 2)[:1] == b"5"


def test_end_op_without_begin():
    _, _, cache = _setup()
    log = Log(cache)
    with pytest.raises(LogError):
        log.end_op()


def test_oversized_header_rejected():
    _, _, cache = _setup()
    with pytest.raises(LogError):
        Log(cache, logsize=BSIZE)