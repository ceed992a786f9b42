"""Full design-vs-screenshot comparison pipeline.

Provides:
    - compute_ssim(): Windowed SSIM of two images (grayscale, aligned)
    - compare_images(): Align → {pixel diff ∥ SSIM} → regions → heatmap → crops

Pipeline:
    1. Decode and align the pair (max W × max H, contain fit, white padding)
    2. Pixel diff and SSIM run concurrently on the aligned pair
       (ThreadPoolExecutor, 2 workers; numpy / torch kernels release the GIL)
    3. Regions from the diff image, heatmap over the original design,
       crops of the top regions from both aligned images (sequential)
    4. Composite score from SSIM alone; vision / layout signals are blended
       in by the caller (convergence controller) when available

Tuning comes from DiffConfig (configs/converge.v1.yaml → diff:); defaults
match the schema defaults.

Usage:
    from src.visual_diff import compare_images
    result = compare_images(design_png, screenshot_png)
    result.composite_score, result.diff_regions[:3]
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import numpy as np
import torch

from ..utils import metrics
from ..utils.profiler import timer
from ..utils.validators import DiffConfig
from .aligner import ImageSource, align_pair, decode_image
from .heatmap import crop_region_pair, generate_heatmap
from .pixel_diff import pixel_diff
from .regions import find_diff_regions
from .types import ComparisonResult, RasterImage, SSIMResult

logger = logging.getLogger(__name__)


def _grayscale(image: RasterImage) -> torch.Tensor:
    """ITU-R 601-2 luma (Pillow "L"), (H, W) float64 tensor in [0, 255]."""
    return torch.from_numpy(np.asarray(image.pixels.convert("L"), dtype=np.float64).copy())


def compute_ssim(
    design: ImageSource,
    rendered: ImageSource,
    window_size: int = 8
) -> SSIMResult:
    """Structural similarity of two images.

    Parameters
    ----------
    design, rendered : ImageSource
        Images to compare; aligned first when sizes differ
    window_size : int
        SSIM window size, default 8

    Returns
    -------
    SSIMResult
        mssim in [0, 1] and wall-clock performance_ms

    Notes
    -----
    Side-effect free; safe to run concurrently with pixel_diff().
    """
    timings = {}
    with timer("ssim", sink=timings.__setitem__):
        a, b = align_pair(design, rendered)
        mssim = metrics.windowed_ssim(_grayscale(a), _grayscale(b), window_size=window_size)
    return SSIMResult(mssim=float(mssim), performance_ms=timings["ssim"] * 1000.0)


def compare_images(
    design: ImageSource,
    screenshot: ImageSource,
    cfg: Optional[DiffConfig] = None
) -> ComparisonResult:
    """Compare a design image with a rendered screenshot.

    Parameters
    ----------
    design : ImageSource
        Target design
    screenshot : ImageSource
        Rendered UI capture
    cfg : DiffConfig, optional
        Diff tuning; schema defaults when None

    Returns
    -------
    ComparisonResult
        SSIM, pixel diff, heatmap, ranked regions, SSIM-only composite score,
        design size, the decoded screenshot and up to ``cfg.max_crops`` crops

    Raises
    ------
    DecodeError
        If either image cannot be decoded (aborts this comparison only)
    """
    cfg = cfg or DiffConfig()

    design_img = decode_image(design)
    screenshot_img = decode_image(screenshot)
    aligned_design, aligned_shot = align_pair(design_img, screenshot_img)

    with timer("compare_images"):
        with ThreadPoolExecutor(max_workers=2) as pool:
            diff_future = pool.submit(
                pixel_diff,
                aligned_design,
                aligned_shot,
                threshold=cfg.pixel_threshold,
                include_aa=cfg.include_aa,
                alpha=cfg.alpha,
            )
            ssim_future = pool.submit(compute_ssim, aligned_design, aligned_shot, cfg.ssim_window)
            diff_result = diff_future.result()
            ssim_result = ssim_future.result()

        regions = find_diff_regions(
            diff_result.diff_image,
            min_region_size=cfg.min_region_size,
            grid_size=cfg.grid_size,
        )
        heatmap = generate_heatmap(diff_result.diff_image, design_img)
        crops = tuple(
            crop_region_pair(aligned_design, aligned_shot, region, padding=cfg.crop_padding)
            for region in regions[:cfg.max_crops]
        )

    score = metrics.composite_score(ssim_result.mssim)
    logger.debug(
        f"Compared {design_img.width}x{design_img.height}: ssim={ssim_result.mssim:.4f} "
        f"diff={diff_result.diff_percentage:.2%} regions={len(regions)}"
    )

    return ComparisonResult(
        ssim=ssim_result,
        pixel_diff=diff_result,
        heatmap=heatmap,
        diff_regions=tuple(regions),
        composite_score=score,
        design_size=design_img.size,
        screenshot=screenshot_img,
        crop_pairs=crops,
    )
