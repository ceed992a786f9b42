"""Immutable records passed between diff pipeline stages.

Every record is a frozen dataclass built once and never mutated. Images are
wrapped in RasterImage (Pillow RGBA underneath); numeric stages work on
fresh numpy arrays obtained from RasterImage.to_array().

Enumerations are str-valued so they serialize to YAML/logs as plain strings.
"""

from __future__ import annotations

import enum
import io
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from PIL import Image


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Classification(str, enum.Enum):
    """Kind of visual difference a region represents."""

    COLOR = "color"
    SPACING = "spacing"
    SIZE = "size"
    POSITION = "position"
    MISSING = "missing"
    EXTRA = "extra"
    FONT = "font"
    UNKNOWN = "unknown"


class Priority(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PatchStrategy(str, enum.Enum):
    """How the code-generation collaborator should modify code."""

    FULL_REGEN = "full_regen"
    SURGICAL_PATCH = "surgical_patch"

    def flipped(self) -> "PatchStrategy":
        if self is PatchStrategy.FULL_REGEN:
            return PatchStrategy.SURGICAL_PATCH
        return PatchStrategy.FULL_REGEN


_PRIORITY_BY_CLASSIFICATION = {
    Classification.MISSING: Priority.HIGH,
    Classification.EXTRA: Priority.HIGH,
    Classification.POSITION: Priority.HIGH,
    Classification.SIZE: Priority.MEDIUM,
    Classification.SPACING: Priority.MEDIUM,
    Classification.COLOR: Priority.LOW,
    Classification.FONT: Priority.LOW,
    Classification.UNKNOWN: Priority.LOW,
}


def priority_for(classification: Classification) -> Priority:
    """Priority is a pure function of classification."""
    return _PRIORITY_BY_CLASSIFICATION[Classification(classification)]


# ---------------------------------------------------------------------------
# Raster
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class RasterImage:
    """Immutable RGBA pixel buffer.

    Parameters
    ----------
    pixels : PIL.Image.Image
        RGBA image. Use the ``from_pil`` / ``from_array`` constructors, which
        convert and copy so the caller's object is never shared.
    """

    pixels: Image.Image

    def __post_init__(self) -> None:
        if self.pixels.mode != "RGBA":
            raise ValueError(f"RasterImage requires RGBA pixels, got mode {self.pixels.mode!r}")

    @classmethod
    def from_pil(cls, img: Image.Image) -> "RasterImage":
        return cls(img.convert("RGBA") if img.mode != "RGBA" else img.copy())

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "RasterImage":
        """Build from (H, W, 4) / (H, W, 3) / (H, W) uint8 array."""
        arr = np.ascontiguousarray(arr, dtype=np.uint8)
        if not (arr.ndim == 2 or (arr.ndim == 3 and arr.shape[2] in (3, 4))):
            raise ValueError(f"Unsupported array shape for RasterImage: {arr.shape}")
        # uint8 layout determines the mode: L / RGB / RGBA
        return cls.from_pil(Image.fromarray(arr))

    @property
    def width(self) -> int:
        return self.pixels.width

    @property
    def height(self) -> int:
        return self.pixels.height

    @property
    def size(self) -> Tuple[int, int]:
        return self.pixels.size

    @property
    def channels(self) -> int:
        return len(self.pixels.getbands())

    def to_array(self) -> np.ndarray:
        """New (H, W, 4) uint8 array; writing to it never affects the image."""
        return np.array(self.pixels, dtype=np.uint8)

    def to_png_bytes(self) -> bytes:
        buf = io.BytesIO()
        self.pixels.save(buf, format="PNG")
        return buf.getvalue()

    def __repr__(self) -> str:
        return f"RasterImage({self.width}x{self.height}, channels={self.channels})"


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PixelDiffResult:
    """Output of pixel_diff(). diff_image has the aligned inputs' dimensions."""

    diff_count: int
    total_pixels: int
    diff_percentage: float
    diff_image: RasterImage


@dataclass(frozen=True)
class SSIMResult:
    mssim: float
    performance_ms: float


@dataclass(frozen=True)
class DiffRegion:
    """Bounding box of a cluster of differing pixels.

    Parameters
    ----------
    x, y, width, height : int
        Pixel rectangle (top-left origin), width and height > 0
    diff_intensity : float
        Active pixels / bounding-box area in [0, 1]
    pixel_count : int
        Active (differing) pixels only, never the box area
    """

    x: int
    y: int
    width: int
    height: int
    diff_intensity: float
    pixel_count: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"DiffRegion needs positive size, got {self.width}x{self.height}")

    @property
    def box(self) -> Tuple[int, int, int, int]:
        """(left, top, right, bottom) in pixels."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass(frozen=True)
class CropPair:
    design: RasterImage
    screenshot: RasterImage
    region: DiffRegion


@dataclass(frozen=True)
class ComparisonResult:
    """Everything one design/screenshot comparison produced.

    ``diff_regions`` is ranked by descending intensity and ``crop_pairs``
    follows the same order (at most ``max_crops`` entries).
    """

    ssim: SSIMResult
    pixel_diff: PixelDiffResult
    heatmap: RasterImage
    diff_regions: Tuple[DiffRegion, ...]
    composite_score: float
    design_size: Tuple[int, int]
    screenshot: RasterImage
    crop_pairs: Tuple[CropPair, ...] = ()


@dataclass(frozen=True)
class VisionDifference:
    """One difference reported by a vision model, paired with a region by index."""

    area: str = ""
    type: str = "unknown"
    description: str = ""
    fix_suggestion: Optional[str] = None


@dataclass(frozen=True)
class VisionAnalysis:
    similarity_score: float
    differences: Tuple[VisionDifference, ...] = ()
    overall_assessment: str = ""


@dataclass(frozen=True)
class AnalyzedRegion:
    """A DiffRegion with its classification.

    ``priority`` is derived from ``classification`` and cannot be set.
    """

    region: DiffRegion
    classification: Classification
    description: str
    fix_suggestion: Optional[str] = None

    @property
    def priority(self) -> Priority:
        return priority_for(self.classification)


@dataclass(frozen=True)
class DiffReport:
    overall_score: float
    region_count: int
    regions: Tuple[AnalyzedRegion, ...]
    summary: str
    suggested_strategy: PatchStrategy

    def count(self, priority: Priority) -> int:
        """Number of regions with the given priority."""
        return sum(1 for r in self.regions if r.priority is Priority(priority))
