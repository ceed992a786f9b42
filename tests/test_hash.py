"""Test hashing functions for provenance.

Tests for src.utils.hashing:
    - sha256_file() produces consistent hashes
    - Different files → different hashes
    - sha256_code() is independent of insertion order, sensitive to renames
    - sha256_image() depends on pixels only, not on the PNG encoding

Known hash test:
    - Create file with known content
    - Verify hash matches expected (hex string, 64 chars)

Run:
    pytest tests/test_hash.py -v
"""

import io

import pytest
from PIL import Image

from conftest import solid
from src.utils import hashing

# sha256(b"hello")
HELLO_SHA = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


def test_sha256_file_known_value(tmp_path):
    path = tmp_path / "hello.txt"
    path.write_bytes(b"hello")
    digest = hashing.sha256_file(path)
    assert digest == HELLO_SHA
    assert len(digest) == 64


def test_sha256_file_small_chunks_match(tmp_path):
    path = tmp_path / "big.bin"
    path.write_bytes(bytes(range(256)) * 100)
    assert hashing.sha256_file(path, chunk_size=7) == hashing.sha256_file(path)


def test_sha256_file_different(tmp_path):
    a = tmp_path / "a.txt"
    b = tmp_path / "b.txt"
    a.write_text("one")
    b.write_text("two")
    assert hashing.sha256_file(a) != hashing.sha256_file(b)


def test_sha256_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        hashing.sha256_file(tmp_path / "missing")


def test_sha256_string_and_bytes_agree():
    assert hashing.sha256_string("hello") == HELLO_SHA
    assert hashing.sha256_bytes(b"hello") == HELLO_SHA


def test_sha256_code_order_independent():
    a = {"src/a.tsx": "A", "src/b.tsx": "B"}
    b = {"src/b.tsx": "B", "src/a.tsx": "A"}
    assert hashing.sha256_code(a) == hashing.sha256_code(b)


def test_sha256_code_sensitive_to_rename_and_content():
    base = hashing.sha256_code({"src/a.tsx": "A"})
    assert hashing.sha256_code({"src/c.tsx": "A"}) != base
    assert hashing.sha256_code({"src/a.tsx": "A2"}) != base
    assert hashing.sha256_code({}) != base


def test_sha256_image_ignores_encoding():
    raster = solid(16, 16, (200, 10, 10))
    fast = io.BytesIO()
    small = io.BytesIO()
    raster.pixels.save(fast, format="PNG", compress_level=0)
    raster.pixels.save(small, format="PNG", compress_level=9)
    assert fast.getvalue() != small.getvalue()

    a = Image.open(io.BytesIO(fast.getvalue()))
    b = Image.open(io.BytesIO(small.getvalue()))
    assert hashing.sha256_image(a) == hashing.sha256_image(b) == hashing.sha256_image(raster)


def test_sha256_image_detects_pixel_change():
    assert hashing.sha256_image(solid(4, 4, (0, 0, 0))) != hashing.sha256_image(solid(4, 4, (0, 0, 1)))


def test_verify_file_hash(tmp_path):
    path = tmp_path / "hello.txt"
    path.write_bytes(b"hello")
    assert hashing.verify_file_hash(path, HELLO_SHA)
    path.write_bytes(b"hello!")
    assert not hashing.verify_file_hash(path, HELLO_SHA)
