"""Image decoding and dimension alignment.

Provides:
    - decode_image(): bytes / path / PIL / RasterImage → RasterImage (RGBA)
    - align_pair(): Fit two images onto a shared canvas (max W × max H)
    - resize_to_match(): Fit one image onto an exact W × H canvas

Fitting is always "contain": aspect ratio preserved, content centred, the
remaining canvas filled with opaque white. An image that already has the
target size is passed through without resampling, so aligning two
same-sized images never alters a pixel.

Every per-pixel stage (pixel_diff, SSIM, crops) runs on aligned pairs only.
"""

import io
import logging
from pathlib import Path
from typing import Tuple, Union

from PIL import Image, ImageOps

from ..utils.errors import DecodeError
from .types import RasterImage

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255, 255)

ImageSource = Union[bytes, bytearray, str, Path, Image.Image, RasterImage]


def decode_image(data: ImageSource) -> RasterImage:
    """Decode any supported image source into an RGBA RasterImage.

    Parameters
    ----------
    data : bytes | str | Path | PIL.Image.Image | RasterImage
        Encoded bytes (PNG, JPEG, ...), a file path, or an already-decoded image

    Returns
    -------
    RasterImage
        New RGBA image (RasterImage inputs are returned unchanged)

    Raises
    ------
    FileNotFoundError
        If a path is given and does not exist
    DecodeError
        If the bytes / file are not a decodable image
    """
    if isinstance(data, RasterImage):
        return data
    if isinstance(data, Image.Image):
        return RasterImage.from_pil(data)

    if isinstance(data, (bytes, bytearray)):
        source = io.BytesIO(bytes(data))
        label = f"<{len(data)} bytes>"
    else:
        path = Path(data)
        if not path.exists():
            raise FileNotFoundError(f"Image not found: {path}")
        source = path
        label = str(path)

    try:
        with Image.open(source) as img:
            img.load()
            decoded = img.convert("RGBA")
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Failed to decode image {label}: {e}") from e

    return RasterImage(decoded)


def _fit(image: RasterImage, width: int, height: int) -> RasterImage:
    if image.size == (width, height):
        return image
    if image.width == 0 or image.height == 0:
        raise DecodeError(f"Cannot fit empty image {image.width}x{image.height}")
    fitted = ImageOps.pad(
        image.pixels,
        (width, height),
        method=Image.Resampling.LANCZOS,
        color=WHITE,
        centering=(0.5, 0.5),
    )
    return RasterImage(fitted)


def resize_to_match(image: ImageSource, width: int, height: int) -> RasterImage:
    """Contain-fit ``image`` onto exactly ``width × height`` with white padding.

    Parameters
    ----------
    image : ImageSource
        Image to fit (decoded if necessary)
    width, height : int
        Target canvas size in pixels, both > 0

    Returns
    -------
    RasterImage
        Image whose dimensions are exactly (width, height)

    Raises
    ------
    ValueError
        If width or height is not positive
    DecodeError
        If ``image`` cannot be decoded
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Target dimensions must be positive, got {width}x{height}")
    return _fit(decode_image(image), int(width), int(height))


def align_pair(design: ImageSource, rendered: ImageSource) -> Tuple[RasterImage, RasterImage]:
    """Bring two images to identical dimensions.

    Parameters
    ----------
    design : ImageSource
        Target design image
    rendered : ImageSource
        Screenshot of the rendered UI

    Returns
    -------
    tuple[RasterImage, RasterImage]
        (design, rendered) both sized (max width, max height)

    Raises
    ------
    DecodeError
        If either input fails to decode, or the shared canvas would be empty

    Examples
    --------
    >>> a, b = align_pair(design_png_bytes, screenshot_png_bytes)
    >>> a.size == b.size
    True
    """
    design_img = decode_image(design)
    rendered_img = decode_image(rendered)

    width = max(design_img.width, rendered_img.width)
    height = max(design_img.height, rendered_img.height)
    if width == 0 or height == 0:
        raise DecodeError(f"Cannot align images with empty canvas {width}x{height}")

    if design_img.size != rendered_img.size:
        logger.debug(
            f"Aligning {design_img.width}x{design_img.height} and "
            f"{rendered_img.width}x{rendered_img.height} onto {width}x{height}"
        )

    return _fit(design_img, width, height), _fit(rendered_img, width, height)
