"""Helpers for building page images and archives in tests."""

import io
import tarfile
import zipfile
from datetime import datetime

from PIL import Image


def make_image_bytes(width, height, fmt="PNG", mode="RGB"):
    img = Image.new(mode, (width, height), color=(200, 30, 60) if mode == "RGB" else 128)
    buf = io.BytesIO()
    img.save(buf, fmt)
    return buf.getvalue()


def write_zip(path, entries):
    """entries: iterable of (name, payload, date_time tuple)."""
    with zipfile.ZipFile(path, "w") as zf:
        for name, payload, date_time in entries:
            zf.writestr(zipfile.ZipInfo(name, date_time=date_time), payload)
    return path


def write_tar(path, entries):
    """entries: iterable of (name, payload, mtime seconds)."""
    with tarfile.open(path, "w") as tf:
        for name, payload, mtime in entries:
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            info.mtime = mtime
            tf.addfile(info, io.BytesIO(payload))
    return path


def read_tar(path):
    """Return ({name: (payload, mtime datetime)}, member count)."""
    out = {}
    count = 0
    with tarfile.open(path, "r") as tf:
        for member in tf:
            count += 1
            out[member.name] = (tf.extractfile(member).read(), datetime.fromtimestamp(member.mtime))
    return out, count


def image_size(payload):
    with Image.open(io.BytesIO(payload)) as img:
        return img.format, img.size
