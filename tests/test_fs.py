"""Test atomic filesystem operations.

Tests for src.utils.fs:
    - Atomic writes replace the target and leave no tmp files behind
    - YAML roundtrip preserves structure and key order
    - atomic_save_image accepts RasterImage, PIL and numpy inputs
    - ensure_dir creates parents

Test cases:
    - test_ensure_dir_creates_parents()
    - test_atomic_write_bytes_overwrites()
    - test_atomic_write_text_utf8()
    - test_atomic_save_image_sources()
    - test_atomic_yaml_dump_preserves_order()
    - test_load_yaml_missing()
    - test_load_yaml_empty_file()

Concurrent access test:
    - Writer: atomic_write_bytes() alternating two payloads
    - Reader: read in a tight loop
    - Assert: reader only ever sees one complete payload

Run:
    pytest tests/test_fs.py -v
"""

import threading

import numpy as np
import pytest
from PIL import Image

from conftest import solid
from src.utils import fs


def test_ensure_dir_creates_parents(tmp_path):
    target = tmp_path / "a" / "b" / "c"
    result = fs.ensure_dir(target)
    assert result == target
    assert target.is_dir()
    # Idempotent
    assert fs.ensure_dir(target) == target


def test_atomic_write_bytes_overwrites(tmp_path):
    path = tmp_path / "out" / "data.bin"
    fs.atomic_write_bytes(path, b"first")
    fs.atomic_write_bytes(path, b"second")
    assert path.read_bytes() == b"second"
    assert list(path.parent.iterdir()) == [path]


def test_atomic_write_text_utf8(tmp_path):
    path = tmp_path / "page.tsx"
    fs.atomic_write_text(path, "export default () => <h1>Héllo</h1>\n")
    assert path.read_text(encoding="utf-8").startswith("export default")
    assert "Héllo" in path.read_text(encoding="utf-8")


def test_atomic_write_bytes_failure_cleans_tmp(tmp_path):
    # Target is a directory: rename fails, tmp file must not linger
    target = tmp_path / "taken"
    target.mkdir()
    (target / "child").write_text("x")
    with pytest.raises(RuntimeError):
        fs.atomic_write_bytes(target, b"data")
    assert not (tmp_path / "taken.tmp").exists()


def test_atomic_write_concurrent_reader_never_sees_partial(tmp_path):
    path = tmp_path / "state.bin"
    payloads = (b"A" * 65536, b"B" * 65536)
    fs.atomic_write_bytes(path, payloads[0])

    stop = threading.Event()
    seen = []

    def reader():
        while not stop.is_set():
            seen.append(path.read_bytes())

    t = threading.Thread(target=reader)
    t.start()
    try:
        for i in range(50):
            fs.atomic_write_bytes(path, payloads[i % 2])
    finally:
        stop.set()
        t.join()

    assert seen
    assert all(data in payloads for data in seen)


@pytest.mark.parametrize("kind", ["raster", "pil", "numpy", "float"])
def test_atomic_save_image_sources(tmp_path, kind):
    raster = solid(6, 4, (10, 20, 30))
    img = {
        "raster": raster,
        "pil": raster.pixels,
        "numpy": raster.to_array(),
        "float": raster.to_array().astype(np.float32),
    }[kind]
    path = tmp_path / f"{kind}.png"
    fs.atomic_save_image(img, path)

    with Image.open(path) as loaded:
        assert loaded.size == (6, 4)
        assert loaded.convert("RGBA").getpixel((0, 0)) == (10, 20, 30, 255)
    assert sorted(p.name for p in tmp_path.iterdir()) == [f"{kind}.png"]


def test_atomic_yaml_dump_preserves_order(tmp_path):
    data = {"z": 1, "a": {"nested": [1, 2, 3]}, "m": "text"}
    path = tmp_path / "summary.yaml"
    fs.atomic_yaml_dump(data, path)

    loaded = fs.load_yaml(path)
    assert loaded == data
    assert list(loaded) == ["z", "a", "m"]


def test_load_yaml_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        fs.load_yaml(tmp_path / "nope.yaml")


def test_load_yaml_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert fs.load_yaml(path) == {}
