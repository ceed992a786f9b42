"""Clustering of differing pixels into ranked rectangular regions.

Provides:
    - active_mask(): Which pixels of a diff image are real differences
    - cell_counts(): Per-grid-cell active pixel counts (flat arena)
    - find_diff_regions(): Grid flood fill → ranked DiffRegion list

Grid arena layout:
    counts[gy * cols + gx]  active pixels in cell (gx, gy)
    visited[gy * cols + gx] 1 once the cell joined a component

Components are grown with an explicit deque worklist over 4-connected
nonzero cells. Each component becomes one DiffRegion whose box is the
component's grid bounding box scaled to pixels and clipped to the image.

Ranking: descending diff_intensity, ties keep discovery (row-major) order.
Downstream consumers rely on "most visually wrong first".
"""

import logging
from collections import deque
from typing import List

import numpy as np

from .aligner import ImageSource, decode_image
from .types import DiffRegion

logger = logging.getLogger(__name__)


def active_mask(rgba: np.ndarray, brightness_threshold: int = 50) -> np.ndarray:
    """Pixels whose diff channel (R − G) exceeds ``brightness_threshold``.

    Faded unchanged pixels are neutral gray and anti-aliased pixels are
    yellow, so both have a zero diff channel; only the red highlight counts.
    """
    diff_channel = rgba[..., 0].astype(np.int16) - rgba[..., 1].astype(np.int16)
    return diff_channel > brightness_threshold


def cell_counts(mask: np.ndarray, grid_size: int) -> np.ndarray:
    """Active pixel count per grid cell as a flat int64 array (row-major).

    Edge cells that extend past the image only count the pixels inside it.
    """
    H, W = mask.shape
    rows = -(-H // grid_size)
    cols = -(-W // grid_size)
    padded = np.zeros((rows * grid_size, cols * grid_size), dtype=np.int64)
    padded[:H, :W] = mask
    per_cell = padded.reshape(rows, grid_size, cols, grid_size).sum(axis=(1, 3))
    return per_cell.reshape(-1)


def find_diff_regions(
    diff_image: ImageSource,
    min_region_size: int = 100,
    grid_size: int = 32,
    brightness_threshold: int = 50
) -> List[DiffRegion]:
    """Cluster a diff image into bounded regions.

    Parameters
    ----------
    diff_image : ImageSource
        Diff image produced by pixel_diff()
    min_region_size : int
        Minimum active pixels for a component to be kept, default 100
    grid_size : int
        Cell edge length in pixels, default 32
    brightness_threshold : int
        Diff-channel value above which a pixel is active, default 50

    Returns
    -------
    list[DiffRegion]
        Sorted by descending diff_intensity (stable); every region has
        pixel_count >= min_region_size. Empty for identical images.

    Notes
    -----
    diff_intensity = active pixels / (bbox_cells_w · grid · bbox_cells_h · grid)
    uses the unclipped grid box, so partial edge cells dilute intensity.
    """
    if grid_size <= 0:
        raise ValueError(f"grid_size must be positive, got {grid_size}")

    rgba = decode_image(diff_image).to_array()
    H, W = rgba.shape[:2]
    if H == 0 or W == 0:
        return []

    cols = -(-W // grid_size)
    rows = -(-H // grid_size)
    counts = cell_counts(active_mask(rgba, brightness_threshold), grid_size)
    visited = bytearray(rows * cols)

    regions: List[DiffRegion] = []
    for start in np.flatnonzero(counts):
        start = int(start)
        if visited[start]:
            continue

        visited[start] = 1
        worklist = deque([start])
        min_x, max_x, min_y, max_y = cols, -1, rows, -1
        total = 0

        while worklist:
            cell = worklist.popleft()
            cx, cy = cell % cols, cell // cols
            min_x = min(min_x, cx)
            max_x = max(max_x, cx)
            min_y = min(min_y, cy)
            max_y = max(max_y, cy)
            total += int(counts[cell])

            for dx, dy in ((0, 1), (0, -1), (1, 0), (-1, 0)):
                nx, ny = cx + dx, cy + dy
                if 0 <= nx < cols and 0 <= ny < rows:
                    neighbour = ny * cols + nx
                    if counts[neighbour] > 0 and not visited[neighbour]:
                        visited[neighbour] = 1
                        worklist.append(neighbour)

        if total < min_region_size:
            continue

        box_w = (max_x - min_x + 1) * grid_size
        box_h = (max_y - min_y + 1) * grid_size
        area = box_w * box_h
        x = min_x * grid_size
        y = min_y * grid_size
        intensity = total / area if area > 0 else 0.0

        regions.append(DiffRegion(
            x=x,
            y=y,
            width=min(box_w, W - x),
            height=min(box_h, H - y),
            diff_intensity=float(min(1.0, max(0.0, intensity))),
            pixel_count=total,
        ))

    regions.sort(key=lambda r: r.diff_intensity, reverse=True)
    logger.debug(f"find_diff_regions: {len(regions)} regions on {cols}x{rows} grid")
    return regions
