"""Per-pixel perceptual differencing with anti-aliasing exclusion.

Provides:
    - pixel_diff(): Count differing pixels and render a diff image
    - yiq_delta(): Squared YIQ distance between two RGBA arrays

Algorithm (vectorized over the whole image):
    1. Both images are blended over white where alpha < 255
    2. Per-pixel YIQ distance:
           delta = 0.5053·ΔY² + 0.299·ΔI² + 0.1957·ΔQ²
       a pixel differs when delta > 35215 · threshold²
       (35215 is the largest possible delta, black vs. white)
    3. Unless include_aa, a differing pixel that looks like an anti-aliased
       edge in either image is excluded and drawn yellow. A pixel is
       anti-aliased when:
           - at most 2 of its 8 neighbours have the same brightness
             (image borders count as one such neighbour)
           - it has both a darker and a brighter neighbour
           - the darkest or the brightest neighbour has more than 2
             identical siblings in BOTH images
    4. Diff image: differing pixels in diff_color (opaque), anti-aliased
       pixels yellow (opaque), all other pixels the design's luma faded
       toward white with opacity ``alpha``.

The diff image keeps a useful invariant for region extraction: only
differing pixels have R − G > 0 (gray has R == G, yellow has R == G).

Determinism: no randomness, no parallel reductions; identical inputs give
identical diff_count.
"""

import logging
from typing import Sequence

import numpy as np

from .aligner import ImageSource, align_pair
from .types import PixelDiffResult, RasterImage

logger = logging.getLogger(__name__)

MAX_YIQ_DELTA = 35215.0
AA_COLOR = (255, 255, 0, 255)

# Neighbour scan order (dx, dy); first occurrence wins on ties
_OFFSETS = ((-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 1), (1, -1), (1, 0), (1, 1))
_DX = np.array([o[0] for o in _OFFSETS])
_DY = np.array([o[1] for o in _OFFSETS])


def _blend_white(rgba: np.ndarray) -> np.ndarray:
    """Composite RGB over white using the alpha channel, float64 (H, W, 3)."""
    a = rgba[..., 3:4] / 255.0
    return 255.0 + (rgba[..., :3] - 255.0) * a


def _rgb2y(rgb: np.ndarray) -> np.ndarray:
    return rgb[..., 0] * 0.29889531 + rgb[..., 1] * 0.58662247 + rgb[..., 2] * 0.11448223


def _rgb2i(rgb: np.ndarray) -> np.ndarray:
    return rgb[..., 0] * 0.59597799 - rgb[..., 1] * 0.27417610 - rgb[..., 2] * 0.32180189


def _rgb2q(rgb: np.ndarray) -> np.ndarray:
    return rgb[..., 0] * 0.21147017 - rgb[..., 1] * 0.52261711 + rgb[..., 2] * 0.31114694


def yiq_delta(rgba1: np.ndarray, rgba2: np.ndarray) -> np.ndarray:
    """Squared perceptual distance of two (H, W, 4) arrays.

    Returns
    -------
    np.ndarray
        (H, W) float64 in [0, 35215]; exactly 0 for identical pixels
    """
    c1 = _blend_white(rgba1.astype(np.float64))
    c2 = _blend_white(rgba2.astype(np.float64))
    y = _rgb2y(c1) - _rgb2y(c2)
    i = _rgb2i(c1) - _rgb2i(c2)
    q = _rgb2q(c1) - _rgb2q(c2)
    return 0.5053 * y * y + 0.299 * i * i + 0.1957 * q * q


def _shifted(arr: np.ndarray, dx: int, dy: int) -> np.ndarray:
    """arr[y + dy, x + dx] at every (y, x); out-of-bounds reads repeat the edge."""
    H, W = arr.shape[:2]
    padded = np.pad(arr, ((1, 1), (1, 1)), mode="edge")
    return padded[1 + dy:1 + dy + H, 1 + dx:1 + dx + W]


def _edge_mask(H: int, W: int) -> np.ndarray:
    edge = np.zeros((H, W), dtype=bool)
    edge[0, :] = edge[-1, :] = True
    edge[:, 0] = edge[:, -1] = True
    return edge


def _sibling_mask(rgba: np.ndarray) -> np.ndarray:
    """True where a pixel has more than 2 identical neighbours (edges count as one)."""
    H, W = rgba.shape[:2]
    packed = np.ascontiguousarray(rgba, dtype=np.uint8).view(np.uint32).reshape(H, W)
    ys, xs = np.mgrid[0:H, 0:W]
    count = _edge_mask(H, W).astype(np.int32)
    for dx, dy in _OFFSETS:
        inside = (xs + dx >= 0) & (xs + dx < W) & (ys + dy >= 0) & (ys + dy < H)
        count += inside & (_shifted(packed, dx, dy) == packed)
    return count > 2


def _antialiased(
    luma: np.ndarray,
    ys: np.ndarray,
    xs: np.ndarray,
    siblings: np.ndarray
) -> np.ndarray:
    """Anti-aliasing test for the candidate pixels (ys, xs) of one image.

    ``siblings`` is the AND of both images' sibling masks.
    """
    H, W = luma.shape
    ny = ys[None, :] + _DY[:, None]
    nx = xs[None, :] + _DX[:, None]
    valid = (ny >= 0) & (ny < H) & (nx >= 0) & (nx < W)
    ny = np.clip(ny, 0, H - 1)
    nx = np.clip(nx, 0, W - 1)

    on_edge = (xs == 0) | (xs == W - 1) | (ys == 0) | (ys == H - 1)
    d = luma[ys, xs][None, :] - luma[ny, nx]
    zeroes = on_edge.astype(np.int32) + np.sum(valid & (d == 0), axis=0)

    cols = np.arange(ys.size)
    d_min = np.where(valid, d, np.inf)
    d_max = np.where(valid, d, -np.inf)
    k_min = np.argmin(d_min, axis=0)
    k_max = np.argmax(d_max, axis=0)
    has_darker = d_min[k_min, cols] < 0
    has_brighter = d_max[k_max, cols] > 0

    min_siblings = siblings[ny[k_min, cols], nx[k_min, cols]]
    max_siblings = siblings[ny[k_max, cols], nx[k_max, cols]]

    return (zeroes <= 2) & has_darker & has_brighter & (min_siblings | max_siblings)


def pixel_diff(
    design: ImageSource,
    rendered: ImageSource,
    threshold: float = 0.1,
    include_aa: bool = False,
    alpha: float = 0.1,
    diff_color: Sequence[int] = (255, 0, 0)
) -> PixelDiffResult:
    """Compare two images pixel by pixel.

    Parameters
    ----------
    design : ImageSource
        Reference image
    rendered : ImageSource
        Candidate image; aligned to the design first when sizes differ
    threshold : float
        Matching threshold in [0, 1], default 0.1; smaller is more sensitive
    include_aa : bool
        Count anti-aliased pixels as differences, default False
    alpha : float
        Opacity of unchanged pixels in the diff image, default 0.1
    diff_color : Sequence[int]
        RGB highlight for differing pixels, default red

    Returns
    -------
    PixelDiffResult
        diff_count, total_pixels, diff_percentage (0 when empty), diff_image

    Raises
    ------
    ValueError
        If threshold or alpha is outside [0, 1]
    DecodeError
        If either image cannot be decoded
    """
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"threshold must be in [0, 1], got {threshold}")
    if not 0.0 <= alpha <= 1.0:
        raise ValueError(f"alpha must be in [0, 1], got {alpha}")

    img1, img2 = align_pair(design, rendered)
    rgba1 = img1.to_array()
    rgba2 = img2.to_array()
    H, W = rgba1.shape[:2]
    total = H * W

    delta = yiq_delta(rgba1, rgba2)
    differing = delta > MAX_YIQ_DELTA * threshold * threshold

    aa = np.zeros_like(differing)
    if not include_aa and differing.any():
        ys, xs = np.nonzero(differing)
        siblings = _sibling_mask(rgba1) & _sibling_mask(rgba2)
        luma1 = _rgb2y(_blend_white(rgba1.astype(np.float64)))
        luma2 = _rgb2y(_blend_white(rgba2.astype(np.float64)))
        is_aa = _antialiased(luma1, ys, xs, siblings) | _antialiased(luma2, ys, xs, siblings)
        aa[ys[is_aa], xs[is_aa]] = True
        differing[ys[is_aa], xs[is_aa]] = False

    diff_count = int(differing.sum())

    # Faded luma of the design (raw RGB, opacity scaled by its own alpha)
    raw_luma = _rgb2y(rgba1[..., :3].astype(np.float64))
    fade = alpha * rgba1[..., 3].astype(np.float64) / 255.0
    gray = np.clip(255.0 + (raw_luma - 255.0) * fade, 0, 255).astype(np.uint8)

    out = np.empty((H, W, 4), dtype=np.uint8)
    out[..., 0] = gray
    out[..., 1] = gray
    out[..., 2] = gray
    out[..., 3] = int(round(255 * alpha))

    color = tuple(int(c) for c in diff_color)[:3]
    out[differing] = color + (255,)
    out[aa] = AA_COLOR

    logger.debug(f"pixel_diff: {diff_count}/{total} differing, {int(aa.sum())} anti-aliased")

    return PixelDiffResult(
        diff_count=diff_count,
        total_pixels=total,
        diff_percentage=diff_count / total if total > 0 else 0.0,
        diff_image=RasterImage.from_array(out),
    )
