"""Edge and gradient-direction extraction."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from .exceptions import InvalidImageError

logger = logging.getLogger(__name__)

# Largest sample value per input dtype, used to rescale into 8 bits
_SCALE_DENOMINATORS = {
    np.dtype(np.uint8): float(0xFF),
    np.dtype(np.int8): float(0x7F),
    np.dtype(np.uint16): float(0xFFFF),
    np.dtype(np.int16): float(0x7FFF),
    np.dtype(np.float32): 1.0,
    np.dtype(np.float64): 1.0,
}

DIRECTION_BUCKETS = 256
_BUCKETS_PER_RADIAN = DIRECTION_BUCKETS / (2.0 * np.pi)


@dataclass(frozen=True)
class EdgeMaps:
    """Edge map and quantized gradient directions of one image."""

    edges: np.ndarray
    """uint8, 255 on Canny edges."""

    directions: np.ndarray
    """uint8 gradient direction bucket (0-255 over 0-2pi, y axis up)."""

    gray: np.ndarray
    """Blurred 8-bit grayscale the maps were computed from."""


def validate_image(img: np.ndarray | None) -> None:
    """Reject rasters the pipeline can't process.

    Raises:
        InvalidImageError: If the array is missing, empty, has an unsupported
            channel count or sample type.
    """
    if img is None:
        raise InvalidImageError("no image data")
    if img.ndim not in (2, 3):
        raise InvalidImageError(f"expected a 2-D or 3-D array, got {img.ndim} dimensions")
    if img.shape[0] < 3 or img.shape[1] < 3:
        raise InvalidImageError(f"image is too small ({img.shape[1]}x{img.shape[0]})")
    if img.ndim == 3 and img.shape[2] not in (1, 3, 4):
        raise InvalidImageError(f"unsupported channel count {img.shape[2]}")
    if img.dtype not in _SCALE_DENOMINATORS:
        raise InvalidImageError(f"unsupported sample type {img.dtype}")


def convert_to_gray(img: np.ndarray) -> np.ndarray:
    """Convert an image of any supported depth to 8-bit grayscale.

    Args:
        img: Input image (grayscale, BGR or BGRA) of any supported dtype

    Returns:
        uint8 grayscale image
    """
    validate_image(img)

    if img.dtype != np.uint8:
        scale = 255.0 / _SCALE_DENOMINATORS[img.dtype]
        img = np.clip(img.astype(np.float64) * scale, 0, 255).astype(np.uint8)

    if img.ndim == 2:
        return img.copy()
    channels = img.shape[2]
    if channels == 1:
        return img[:, :, 0].copy()
    if channels == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)


def quantize_directions(dx: np.ndarray, dy: np.ndarray) -> np.ndarray:
    """Quantize gradient vectors into 256 direction buckets.

    Angles are measured counter-clockwise from the +x axis with y pointing
    up, so ``dy`` is expected in that orientation already. A zero gradient
    maps to bucket 0 and 2pi wraps to 0.

    Args:
        dx: Horizontal gradient component
        dy: Vertical gradient component (y up)

    Returns:
        uint8 array of direction buckets
    """
    dx = np.asarray(dx, dtype=np.float64)
    dy = np.asarray(dy, dtype=np.float64)
    angle = np.mod(np.arctan2(dy, dx), 2.0 * np.pi)
    buckets = (0.5 + angle * _BUCKETS_PER_RADIAN).astype(np.int64)
    buckets[buckets >= DIRECTION_BUCKETS] = 0
    buckets[(dx == 0) & (dy == 0)] = 0
    return buckets.astype(np.uint8)


def direction_bucket(angle: float) -> int:
    """Bucket for a single angle in radians (y axis up)."""
    bucket = int(0.5 + np.mod(angle, 2.0 * np.pi) * _BUCKETS_PER_RADIAN)
    return 0 if bucket >= DIRECTION_BUCKETS else bucket


def bucket_distance(a: np.ndarray | int, b: np.ndarray | int) -> np.ndarray:
    """Circular distance between direction buckets."""
    diff = np.abs(np.asarray(a, dtype=np.int64) - np.asarray(b, dtype=np.int64))
    return np.minimum(diff, DIRECTION_BUCKETS - diff)


def apply_canny(gray: np.ndarray, low: int = 50, high: int = 200) -> np.ndarray:
    """Apply Canny edge detection.

    Args:
        gray: Blurred grayscale image
        low: Lower threshold for hysteresis
        high: Upper threshold for hysteresis

    Returns:
        Binary edge map (0 or 255)
    """
    return cv2.Canny(gray, low, high, apertureSize=3, L2gradient=True)


def gradient_directions(gray: np.ndarray) -> np.ndarray:
    """Sobel gradient direction of every pixel, quantized to 256 buckets."""
    dx = cv2.Sobel(gray, cv2.CV_16S, 1, 0)
    dy = cv2.Sobel(gray, cv2.CV_16S, 0, 1)
    # Image rows grow downward; flip dy so angles are measured with y up.
    return quantize_directions(dx, -dy.astype(np.int32))


def extract_edges(
    img: np.ndarray,
    low_threshold: int = 50,
    high_threshold: int = 200,
    sigma: float = 0.0,
) -> EdgeMaps:
    """Compute the edge map and gradient-direction map of an image.

    The image is converted to 8-bit gray, optionally Gaussian smoothed,
    blurred with a fixed 3x3 box filter and then run through Canny. Gradient
    directions come from Sobel derivatives of the same blurred image.

    Args:
        img: Source raster
        low_threshold: Canny hysteresis low threshold
        high_threshold: Canny hysteresis high threshold
        sigma: Std-deviation of optional Gaussian pre-smoothing (0 disables)

    Returns:
        EdgeMaps with the edge map, direction map and blurred gray image
    """
    gray = convert_to_gray(img)
    if sigma > 0:
        gray = cv2.GaussianBlur(gray, (0, 0), sigma)
    gray = cv2.blur(gray, (3, 3))

    edges = apply_canny(gray, low_threshold, high_threshold)
    directions = gradient_directions(gray)

    logger.debug(
        "edge extraction: %d edge pixels in %dx%d image",
        int(np.count_nonzero(edges)),
        gray.shape[1],
        gray.shape[0],
    )
    return EdgeMaps(edges=edges, directions=directions, gray=gray)
