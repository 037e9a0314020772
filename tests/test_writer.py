import random
import tarfile
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest
from utils import read_tar

from resize_comic import ArchiveWriter, EncodedRecord, WriterClosedError


def _record(i):
    # Sizes straddle the 512-byte tar block boundary.
    payload = bytes([i % 256]) * (i * 37 % 1500 + 1)
    return EncodedRecord(f"page_{i:03d}.webp", datetime(2021, 5, 6, 7, 8, i % 60), payload)


@pytest.mark.parametrize("n", [0, 1, 7, 200])
def test_concurrent_appends_are_correctly_framed(tmp_path, n):
    target = tmp_path / "out.cbt"
    writer = ArchiveWriter(target)
    records = [_record(i) for i in range(n)]
    start = threading.Barrier(min(n, 16)) if n else None

    def work(record):
        if start is not None and record.name < f"page_{min(n, 16):03d}":
            start.wait(timeout=30)
        writer.append(record)

    random.Random(n).shuffle(records)
    with ThreadPoolExecutor(max_workers=16) as executor:
        list(executor.map(work, records))
    writer.finalize()

    entries, count = read_tar(target)
    assert count == n
    assert writer.count == n
    for i in range(n):
        expected = _record(i)
        payload, mtime = entries[expected.name]
        assert payload == expected.payload
        assert mtime == expected.modified_at


def test_append_after_finalize_fails(tmp_path):
    writer = ArchiveWriter(tmp_path / "out.cbt")
    writer.append(_record(1))
    writer.finalize()
    assert writer.closed
    with pytest.raises(WriterClosedError):
        writer.append(_record(2))
    with pytest.raises(WriterClosedError):
        writer.finalize()
    entries, count = read_tar(tmp_path / "out.cbt")
    assert count == 1


def test_existing_destination_is_untouched(tmp_path):
    target = tmp_path / "out.cbt"
    target.write_bytes(b"precious bytes")
    with pytest.raises(FileExistsError):
        ArchiveWriter(target)
    assert target.read_bytes() == b"precious bytes"


def test_abort_leaves_partial_file(tmp_path):
    target = tmp_path / "out.cbt"
    writer = ArchiveWriter(target)
    writer.append(_record(3))
    writer.abort()
    writer.abort()
    assert target.exists()
    with pytest.raises(WriterClosedError):
        writer.append(_record(4))


def test_whole_second_headers_need_no_pax_records(tmp_path):
    target = tmp_path / "out.cbt"
    writer = ArchiveWriter(target)
    writer.append(EncodedRecord("p.webp", datetime(2020, 1, 1, 12, 0, 0, 750000), b"0123456789"))
    writer.finalize()
    with tarfile.open(target) as tf:
        member = tf.getmember("p.webp")
    assert member.pax_headers == {}
    assert member.mtime == int(datetime(2020, 1, 1, 12, 0, 0).timestamp())
