"""Heatmap overlay and region crops for human / model consumption.

Provides:
    - generate_heatmap(): Diff image composited over the design
    - crop_region(): Padded, bounds-clipped crop of one region
    - crop_region_pair(): Matching crops from design and screenshot
"""

import numpy as np
from PIL import Image, ImageOps

from .aligner import ImageSource, decode_image
from .types import CropPair, DiffRegion, RasterImage

TRANSPARENT = (0, 0, 0, 0)
ALPHA_BOOST = 1.5
DEFAULT_CROP_PADDING = 20


def generate_heatmap(diff_image: ImageSource, design: ImageSource) -> RasterImage:
    """Overlay the diff image on the design at the design's resolution.

    Parameters
    ----------
    diff_image : ImageSource
        Output of pixel_diff() (aligned-pair dimensions)
    design : ImageSource
        Original design image; defines the output size

    Returns
    -------
    RasterImage
        Design-sized RGBA composite

    Notes
    -----
    The diff is contain-fitted with transparent padding, its alpha channel is
    multiplied by 1.5 (clipped to 255) so faded context stays visible, then
    alpha-composited over the design.
    """
    design_img = decode_image(design)
    overlay = decode_image(diff_image).pixels

    if overlay.size != design_img.size:
        overlay = ImageOps.pad(
            overlay,
            design_img.size,
            method=Image.Resampling.LANCZOS,
            color=TRANSPARENT,
            centering=(0.5, 0.5),
        )

    arr = np.array(overlay, dtype=np.uint8)
    boosted = np.clip(arr[..., 3].astype(np.float64) * ALPHA_BOOST, 0, 255)
    arr[..., 3] = boosted.astype(np.uint8)

    composite = Image.alpha_composite(design_img.pixels, Image.fromarray(arr))
    return RasterImage(composite)


def crop_region(
    image: ImageSource,
    region: DiffRegion,
    padding: int = DEFAULT_CROP_PADDING
) -> RasterImage:
    """Crop ``region`` grown by ``padding`` on every side, clipped to the image.

    Raises
    ------
    ValueError
        If padding is negative or the padded box misses the image entirely
    """
    if padding < 0:
        raise ValueError(f"padding must be >= 0, got {padding}")

    img = decode_image(image)
    left = max(0, region.x - padding)
    top = max(0, region.y - padding)
    right = min(img.width, region.x + region.width + padding)
    bottom = min(img.height, region.y + region.height + padding)

    if right <= left or bottom <= top:
        raise ValueError(
            f"Region {region.box} lies outside image {img.width}x{img.height}"
        )

    return RasterImage(img.pixels.crop((left, top, right, bottom)))


def crop_region_pair(
    design: ImageSource,
    screenshot: ImageSource,
    region: DiffRegion,
    padding: int = DEFAULT_CROP_PADDING
) -> CropPair:
    """Same padded rectangle cropped from both images."""
    return CropPair(
        design=crop_region(design, region, padding),
        screenshot=crop_region(screenshot, region, padding),
        region=region,
    )
