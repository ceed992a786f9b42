"""SHA-256 hashing for code snapshots and image provenance.

Provides:
    - sha256_file(): Hash file contents (backed-up sources, artifacts)
    - sha256_bytes() / sha256_string(): Hash in-memory payloads
    - sha256_code(): Order-independent hash of a {relative_path: source} map
    - sha256_image(): Hash decoded pixel values (independent of PNG encoder)

Used for:
    - Backup manifests (path → sha256) so restore can detect tampering
    - Run summaries (design image hash, final code hash)

Results are hex strings (64 chars).

Usage:
    from src.utils import hashing
    digest = hashing.sha256_file("src/app/page.tsx")
"""

import hashlib
from pathlib import Path
from typing import Mapping, Union

import numpy as np


def sha256_file(path: Union[str, Path], chunk_size: int = 1 << 20) -> str:
    """Compute SHA-256 hash of file contents.

    Parameters
    ----------
    path : Union[str, Path]
        File path
    chunk_size : int
        Read chunk size in bytes, default 1 MB

    Returns
    -------
    str
        SHA-256 hex digest (64 characters)

    Raises
    ------
    FileNotFoundError
        If file doesn't exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    sha256 = hashlib.sha256()

    with open(path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            sha256.update(chunk)

    return sha256.hexdigest()


def sha256_bytes(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_string(s: str, encoding: str = "utf-8") -> str:
    """SHA-256 hex digest of a string."""
    return sha256_bytes(s.encode(encoding))


def sha256_code(code: Mapping[str, str]) -> str:
    """Hash a code map independently of insertion order.

    Parameters
    ----------
    code : Mapping[str, str]
        Relative file path → source text

    Returns
    -------
    str
        SHA-256 hex digest

    Notes
    -----
    Paths are sorted; each entry contributes ``path\\0sha256(content)\\n``
    so renaming a file changes the digest even if contents are unchanged.
    """
    sha256 = hashlib.sha256()
    for rel_path in sorted(code):
        sha256.update(rel_path.encode("utf-8"))
        sha256.update(b"\0")
        sha256.update(sha256_string(code[rel_path]).encode("ascii"))
        sha256.update(b"\n")
    return sha256.hexdigest()


def sha256_image(image) -> str:
    """Hash decoded pixel values of an image.

    Parameters
    ----------
    image : RasterImage | PIL.Image.Image | np.ndarray
        Image to hash

    Returns
    -------
    str
        SHA-256 hex digest over shape + RGBA bytes

    Notes
    -----
    Two PNG files with different compression settings but identical pixels
    produce the same digest.
    """
    if hasattr(image, "to_array"):
        arr = image.to_array()
    else:
        arr = np.asarray(image)
    arr = np.ascontiguousarray(arr)
    sha256 = hashlib.sha256()
    sha256.update(repr((arr.shape, str(arr.dtype))).encode("ascii"))
    sha256.update(arr.tobytes())
    return sha256.hexdigest()


def verify_file_hash(path: Union[str, Path], expected_hash: str) -> bool:
    """Verify file matches expected hash.

    Parameters
    ----------
    path : Union[str, Path]
        File path
    expected_hash : str
        Expected SHA-256 hex digest

    Returns
    -------
    bool
        True if hash matches, False otherwise
    """
    actual_hash = sha256_file(path)
    return actual_hash == expected_hash
