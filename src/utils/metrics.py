"""Image similarity metrics and score blending.

Provides:
    - windowed_ssim: Mean SSIM over non-overlapping square windows
    - composite_score: Weighted blend of SSIM, layout and vision scores

Used by:
    - visual_diff.comparator: SSIM of every design/screenshot pair
    - convergence.controller: one composite score per round drives stop,
      rollback and strategy decisions

windowed_ssim operates on torch tensors (H, W) or (1, 1, H, W) holding
grayscale intensities in [0, max_val]. composite_score is pure Python and
needs no image data.
"""

from typing import Optional

import torch
import torch.nn.functional as F


def windowed_ssim(
    img1: torch.Tensor,
    img2: torch.Tensor,
    window_size: int = 8,
    k1: float = 0.01,
    k2: float = 0.03,
    max_val: float = 255.0
) -> torch.Tensor:
    """Compute mean Structural Similarity over non-overlapping windows.

    Parameters
    ----------
    img1 : torch.Tensor
        First grayscale image, shape (H, W) or (1, 1, H, W), range [0, max_val]
    img2 : torch.Tensor
        Second image, same shape as img1
    window_size : int
        Window edge length, default 8; windows step by window_size
    k1, k2 : float
        Stability constants, defaults 0.01, 0.03
    max_val : float
        Dynamic range L, default 255

    Returns
    -------
    torch.Tensor
        Scalar float64 SSIM clamped to [0, 1].
        1.0 when the image is smaller than one window (nothing measurable).

    Notes
    -----
    Windows are tiled from the top-left corner; partial windows along the
    right and bottom edges are dropped (avg_pool2d floor semantics).
    Variance and covariance are population statistics (divide by N).

        SSIM = ((2·μa·μb + C1)(2·σab + C2)) / ((μa² + μb² + C1)(σa² + σb² + C2))
        C1 = (k1·L)²,  C2 = (k2·L)²

    References
    ----------
    Wang et al., "Image Quality Assessment: From Error Visibility to
    Structural Similarity", IEEE TIP 2004.
    """
    if img1.shape != img2.shape:
        raise ValueError(f"Shape mismatch: {tuple(img1.shape)} vs {tuple(img2.shape)}")
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")

    if img1.ndim == 2:
        img1 = img1.unsqueeze(0).unsqueeze(0)
        img2 = img2.unsqueeze(0).unsqueeze(0)

    img1 = img1.to(torch.float64)
    img2 = img2.to(torch.float64)

    H, W = img1.shape[-2:]
    if H < window_size or W < window_size:
        return torch.tensor(1.0, dtype=torch.float64)

    C1 = (k1 * max_val) ** 2
    C2 = (k2 * max_val) ** 2

    # Per-window statistics (stride == kernel → non-overlapping tiles)
    def pool(x):
        return F.avg_pool2d(x, kernel_size=window_size, stride=window_size)

    mu1 = pool(img1)
    mu2 = pool(img2)

    mu1_sq = mu1 ** 2
    mu2_sq = mu2 ** 2
    mu1_mu2 = mu1 * mu2

    sigma1_sq = pool(img1 * img1) - mu1_sq
    sigma2_sq = pool(img2 * img2) - mu2_sq
    sigma12 = pool(img1 * img2) - mu1_mu2

    ssim_map = ((2 * mu1_mu2 + C1) * (2 * sigma12 + C2)) / \
               ((mu1_sq + mu2_sq + C1) * (sigma1_sq + sigma2_sq + C2))

    if ssim_map.numel() == 0:
        return torch.tensor(1.0, dtype=torch.float64)

    return ssim_map.mean().clamp(0.0, 1.0)


def composite_score(
    ssim: float,
    layout: Optional[float] = None,
    vision: Optional[float] = None
) -> float:
    """Blend partial similarity signals into one score in [0, 1].

    Parameters
    ----------
    ssim : float
        Structural similarity (required)
    layout : float, optional
        Layout similarity, if a layout signal is available
    vision : float, optional
        Vision-model similarity, if the vision scorer answered

    Returns
    -------
    float
        Weighted score, always clamped to [0, 1]

    Notes
    -----
    First matching rule wins:

        ssim + layout + vision → 0.3·ssim + 0.3·layout + 0.4·vision
        ssim + vision          → 0.4·ssim + 0.6·vision
        ssim + layout          → 0.5·ssim + 0.5·layout
        ssim only              → ssim

    Inputs are not required to be pre-clamped.

    Examples
    --------
    >>> composite_score(1.0)
    1.0
    >>> round(composite_score(0.0, vision=1.0), 6)
    0.6
    """
    if vision is not None and layout is not None:
        score = ssim * 0.3 + layout * 0.3 + vision * 0.4
    elif vision is not None:
        score = ssim * 0.4 + vision * 0.6
    elif layout is not None:
        score = ssim * 0.5 + layout * 0.5
    else:
        score = ssim
    return float(max(0.0, min(1.0, score)))
