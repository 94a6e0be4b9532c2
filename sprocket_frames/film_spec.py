"""Physical film format constants and the geometry rules derived from them.

All dimensions are in millimetres and come from the published Super 8 and
regular 8mm stock specifications. Everything that varies by film format or by
the way the strip lies on the scanner is looked up in the tables below rather
than branched on at the call sites.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from .models import Fit

logger = logging.getLogger(__name__)

MM_PER_INCH = 25.4

# Consecutive holes may deviate from the nominal pitch by this fraction of it.
INTERFRAME_TOLERANCE = 0.10


class FilmType(Enum):
    """Film stock format."""

    SUPER_8 = "super8"
    REGULAR_8 = "8mm"  # Two sprocket holes per frame


class FilmLayout(Enum):
    """Direction the frames advance in the scanned image."""

    LR = "lr"  # Left to right
    RL = "rl"  # Right to left
    TB = "tb"  # Top to bottom
    BT = "bt"  # Bottom to top


class SprocketLayout(Enum):
    """Side of the image the sprocket holes run along."""

    ALONG_TOP = "top"
    ALONG_BOTTOM = "bottom"
    ALONG_LEFT = "left"
    ALONG_RIGHT = "right"


@dataclass(frozen=True)
class FilmFormat:
    """Geometric constants for one film stock, in millimetres."""

    hole_width: float
    """Hole size across the film."""

    hole_height: float
    """Hole size along the film."""

    hole_corner_radius: float
    edge_to_hole: float
    """Distance from the sprocket-side film edge to the near side of a hole."""

    hole_pitch: float
    film_width: float
    frame_width: float
    """Picture size across the film."""

    frame_height: float
    """Picture size along the film."""

    edge_to_frame_center: float
    holes_per_frame: int

    @property
    def edge_to_hole_center(self) -> float:
        return self.edge_to_hole + self.hole_width / 2.0


FILM_FORMATS: dict[FilmType, FilmFormat] = {
    FilmType.SUPER_8: FilmFormat(
        hole_width=0.914,
        hole_height=1.143,
        hole_corner_radius=0.13,
        edge_to_hole=0.51,
        hole_pitch=4.234,
        film_width=7.975,
        frame_width=5.79,
        frame_height=4.01,
        edge_to_frame_center=4.45,
        holes_per_frame=1,
    ),
    FilmType.REGULAR_8: FilmFormat(
        hole_width=1.829,
        hole_height=1.270,
        hole_corner_radius=0.25,
        edge_to_hole=0.90,
        hole_pitch=3.810,
        film_width=7.975,
        frame_width=4.50,
        frame_height=3.30,
        edge_to_frame_center=5.18,
        holes_per_frame=2,
    ),
}

# (layout, mirrored scan) -> side of the image carrying the sprocket holes
_SPROCKET_LAYOUTS: dict[tuple[FilmLayout, bool], SprocketLayout] = {
    (FilmLayout.LR, False): SprocketLayout.ALONG_BOTTOM,
    (FilmLayout.LR, True): SprocketLayout.ALONG_TOP,
    (FilmLayout.RL, False): SprocketLayout.ALONG_TOP,
    (FilmLayout.RL, True): SprocketLayout.ALONG_BOTTOM,
    (FilmLayout.TB, False): SprocketLayout.ALONG_LEFT,
    (FilmLayout.TB, True): SprocketLayout.ALONG_RIGHT,
    (FilmLayout.BT, False): SprocketLayout.ALONG_RIGHT,
    (FilmLayout.BT, True): SprocketLayout.ALONG_LEFT,
}

# layout -> (transport axis as (row, col) unit vector)
_TRANSPORT_DIRECTIONS: dict[FilmLayout, tuple[float, float]] = {
    FilmLayout.LR: (0.0, 1.0),
    FilmLayout.RL: (0.0, -1.0),
    FilmLayout.TB: (1.0, 0.0),
    FilmLayout.BT: (-1.0, 0.0),
}


def in_pixels(mm: float, resolution_dpi: float) -> float:
    """Convert a physical length to pixels at the given scan resolution."""
    return mm * resolution_dpi / MM_PER_INCH


def sprocket_layout(film_layout: FilmLayout, reverse_image: bool) -> SprocketLayout:
    """Return the image side the sprocket holes lie along."""
    return _SPROCKET_LAYOUTS[(film_layout, reverse_image)]


def is_vertical(film_layout: FilmLayout) -> bool:
    """True when frames advance along image rows (film runs top/bottom)."""
    return film_layout in (FilmLayout.TB, FilmLayout.BT)


def transport_direction(film_layout: FilmLayout) -> np.ndarray:
    """Unit (row, col) vector pointing in the direction frames advance."""
    return np.array(_TRANSPORT_DIRECTIONS[film_layout])


def transport_position(film_layout: FilmLayout, row: float, col: float) -> float:
    """Coordinate along the transport axis, increasing in frame order."""
    d_row, d_col = _TRANSPORT_DIRECTIONS[film_layout]
    return row * d_row + col * d_col


def sort_in_transport_order(fits: list[Fit], film_layout: FilmLayout) -> list[Fit]:
    """Sort fits so the first frame on the strip comes first."""
    return sorted(fits, key=lambda f: transport_position(film_layout, f.row, f.col))


def rank_fits(fits: list[Fit]) -> list[Fit]:
    """Rank fits by confidence and return them best first.

    A fit collects ``N - position`` points from the list sorted by ascending
    residual std-deviation and again from the list sorted by descending
    number of contributing edge pixels. Ties keep their incoming order.
    """
    n = len(fits)
    ranks = [0] * n

    by_std = sorted(range(n), key=lambda i: fits[i].std_dev)
    for position, i in enumerate(by_std):
        ranks[i] += n - position

    by_count = sorted(range(n), key=lambda i: -fits[i].num_edge_points)
    for position, i in enumerate(by_count):
        ranks[i] += n - position

    ranked = [replace(fit, rank=rank) for fit, rank in zip(fits, ranks)]
    return sorted(ranked, key=lambda f: -f.rank)


def interframe_filter(
    film_type: FilmType,
    film_layout: FilmLayout,
    resolution_dpi: float,
    image_length: int,
    candidates: list[Fit],
) -> list[Fit] | None:
    """Validate candidates against the known spacing between sprocket holes.

    The first candidate is taken to be a genuine hole. Starting from it the
    strip is walked one hole pitch at a time in both transport directions,
    accepting the nearest unused candidate within tolerance of each expected
    position. Expected positions with no candidate are skipped, so missing
    holes don't end the walk while it is still inside the image.

    Args:
        film_type: Film format supplying the hole pitch
        film_layout: Transport orientation
        resolution_dpi: Scan resolution
        image_length: Image size along the transport axis, in pixels
        candidates: Fits ordered best first

    Returns:
        The verified fits, or None when the anchor isn't confirmed by at
        least one neighbouring hole.
    """
    if not candidates:
        return None

    pitch = in_pixels(FILM_FORMATS[film_type].hole_pitch, resolution_dpi)
    tolerance = pitch * INTERFRAME_TOLERANCE
    positions = np.array(
        [transport_position(film_layout, fit.row, fit.col) for fit in candidates]
    )
    # Transport positions are negated for RL/BT, so the image spans
    # [-image_length, 0] there.
    if sum(_TRANSPORT_DIRECTIONS[film_layout]) > 0:
        low, high = 0.0, float(image_length)
    else:
        low, high = -float(image_length), 0.0

    used = {0}
    for step in (pitch, -pitch):
        last = positions[0]
        expected = last + step
        while low - tolerance <= expected <= high + tolerance:
            distances = np.abs(positions - expected)
            best = None
            for i in np.argsort(distances, kind="stable"):
                if distances[i] > tolerance:
                    break
                if int(i) not in used:
                    best = int(i)
                    break
            if best is not None:
                used.add(best)
                last = positions[best]
                expected = last + step
            else:
                expected += step

    if len(used) < min(2, len(candidates)):
        return None

    return [candidates[i] for i in sorted(used)]
