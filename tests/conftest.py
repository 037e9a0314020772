"""Shared fixtures for the resize_comic test suite."""

import pytest
from utils import make_image_bytes, write_zip

import resize_comic


@pytest.fixture(autouse=True)
def quiet_output(monkeypatch):
    # main() rebinds these globals; monkeypatch restores them after each test.
    monkeypatch.setattr(resize_comic, "VERBOSE", False)
    monkeypatch.setattr(resize_comic, "QUIET", True)
    monkeypatch.setattr(resize_comic, "LOG_FILE", None)


@pytest.fixture
def page_png():
    return make_image_bytes(40, 60, "PNG")


@pytest.fixture
def comic_zip(tmp_path):
    """A small comic with three pages and one text file."""
    return write_zip(tmp_path / "comic.cbz", [
        ("001.png", make_image_bytes(30, 40, "PNG"), (2020, 1, 2, 3, 4, 6)),
        ("002.JPG", make_image_bytes(30, 40, "JPEG"), (2020, 1, 2, 3, 4, 8)),
        ("003.bmp", make_image_bytes(30, 40, "BMP"), (2020, 1, 2, 3, 4, 10)),
        ("info.txt", b"scanned by someone", (2020, 1, 2, 3, 4, 12)),
    ])
