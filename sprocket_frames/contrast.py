"""Contrast stretching applied to cut frames before they are written."""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)

_MAX_VALUES = {np.dtype(np.uint8): 0xFF, np.dtype(np.uint16): 0xFFFF}


def linear_contrast(img: np.ndarray, lower_pct: float = 0.0, upper_pct: float = 0.3) -> np.ndarray:
    """Stretch intensities linearly between two histogram percentiles.

    Pixel intensity is the mean of its channels. Intensities at or below the
    ``lower_pct`` point of the cumulative histogram go to black, those at or
    above the point leaving ``upper_pct`` of the pixels above it go to full
    scale, and the rest follow a straight ramp. Each pixel's channels are
    boosted by the same factor so hue is kept, and the result is rescaled so
    the brightest channel reaches the maximum sample value.

    Args:
        img: uint8 or uint16 image, grayscale or multi-channel
        lower_pct: Fraction of pixels mapped to black (0-1)
        upper_pct: Fraction of pixels mapped to full scale (0-1)

    Returns:
        Contrast-stretched image of the same shape and dtype
    """
    if img.dtype not in _MAX_VALUES:
        raise ValueError(f"linear_contrast supports uint8 and uint16 images, got {img.dtype}")
    max_val = _MAX_VALUES[img.dtype]

    pixels = img.astype(np.float64)
    intensity = pixels.mean(axis=2) if pixels.ndim == 3 else pixels
    index = np.rint(intensity).astype(np.int64)

    cdf = np.cumsum(np.bincount(index.ravel(), minlength=max_val + 1))
    count = index.size
    lower_count = int(round(count * lower_pct))
    upper_count = count - int(round(count * upper_pct))

    lower_bound = int(np.argmax(cdf >= lower_count))
    at_or_below = np.flatnonzero(cdf <= upper_count)
    upper_bound = int(at_or_below[-1]) if len(at_or_below) else -1
    if upper_bound <= lower_bound:
        logger.debug("contrast range is empty (%d..%d), leaving frame unchanged", lower_bound, upper_bound)
        return img.copy()

    levels = np.arange(max_val + 1, dtype=np.float64)
    mapping = np.clip((levels - lower_bound) / (upper_bound - lower_bound), 0.0, 1.0) * max_val
    mapping = np.rint(mapping)

    with np.errstate(divide="ignore", invalid="ignore"):
        boost = np.where(intensity > 0, mapping[index] / intensity, 0.0)
    boosted = np.rint(pixels * (boost[..., None] if pixels.ndim == 3 else boost))

    brightest = boosted.max()
    if brightest <= 0:
        return np.zeros_like(img)
    out = np.rint(boosted * (max_val / brightest))
    return np.clip(out, 0, max_val).astype(img.dtype)
