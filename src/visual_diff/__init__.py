"""Visual diff pipeline: design image vs. rendered screenshot.

Provides the measurement half of the convergence loop:
    - Alignment: both images fitted onto one canvas (contain, white padding)
    - Pixel diff: perceptual YIQ distance with anti-aliasing exclusion
    - SSIM: windowed structural similarity (torch, src.utils.metrics)
    - Regions: grid flood fill over differing pixels, ranked by intensity
    - Heatmap & crops: visual artifacts for humans and vision models
    - Analyzer: classification, priority and report text

Modules:
    - types: Immutable records (RasterImage, ComparisonResult, DiffReport, ...)
    - aligner: decode_image, align_pair, resize_to_match
    - pixel_diff: pixel_diff
    - regions: find_diff_regions
    - heatmap: generate_heatmap, crop_region, crop_region_pair
    - comparator: compute_ssim, compare_images
    - analyzer: classify_region, assign_priority, analyze_differences,
      generate_report_text

Invariants:
    - Per-pixel work only on aligned pairs (identical dimensions)
    - Inputs are never mutated; every stage returns new records
    - Regions sorted by descending diff_intensity; report regions by priority

Used by:
    - convergence.controller: one compare_images() per round
    - scripts/compare.py: stand-alone comparison CLI
"""

from .aligner import align_pair, decode_image, resize_to_match
from .analyzer import analyze_differences, assign_priority, classify_region, generate_report_text
from .comparator import compare_images, compute_ssim
from .heatmap import crop_region, crop_region_pair, generate_heatmap
from .pixel_diff import pixel_diff
from .regions import find_diff_regions
from .types import (
    AnalyzedRegion,
    Classification,
    ComparisonResult,
    CropPair,
    DiffRegion,
    DiffReport,
    PatchStrategy,
    PixelDiffResult,
    Priority,
    RasterImage,
    SSIMResult,
    VisionAnalysis,
    VisionDifference,
)

__all__ = [
    'align_pair',
    'analyze_differences',
    'assign_priority',
    'classify_region',
    'compare_images',
    'compute_ssim',
    'crop_region',
    'crop_region_pair',
    'decode_image',
    'find_diff_regions',
    'generate_heatmap',
    'generate_report_text',
    'pixel_diff',
    'resize_to_match',
    # Records
    'AnalyzedRegion',
    'Classification',
    'ComparisonResult',
    'CropPair',
    'DiffRegion',
    'DiffReport',
    'PatchStrategy',
    'PixelDiffResult',
    'Priority',
    'RasterImage',
    'SSIMResult',
    'VisionAnalysis',
    'VisionDifference',
]
