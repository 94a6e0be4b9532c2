"""Cutting corrected frame images out of the scanned strip."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import cv2
import numpy as np

from .film_edge import FilmEdge
from .film_spec import MM_PER_INCH, FilmLayout, in_pixels, transport_direction
from .models import ExtractionConfig, Fit

logger = logging.getLogger(__name__)

# Source corners may sit this far outside the image and still count as inside
_BOUNDS_EPSILON = 1e-6


def cut_frame(
    img: np.ndarray,
    center: tuple[float, float] | np.ndarray,
    size: tuple[int, int],
    across: tuple[float, float] | np.ndarray = (0.0, 1.0),
    along: tuple[float, float] | np.ndarray = (1.0, 0.0),
    scale: float = 1.0,
) -> np.ndarray | None:
    """Resample a rectangle of the source image into an output frame.

    Output column ``u`` and row ``v`` map to the source point
    ``center + scale * ((u - w // 2) * across + (v - h // 2) * along)``.
    With the default axes and unit scale this is a plain crop, taken as an
    array slice when it lands on whole pixels.

    Args:
        img: Source image
        center: Frame centre in the source as (row, col)
        size: Output (width, height)
        across: Source (row, col) unit vector for output +x
        along: Source (row, col) unit vector for output +y
        scale: Source pixels per output pixel

    Returns:
        The frame, or None if any part of it falls outside the source
    """
    matrix = crop_matrix(center, size, across, along, scale)
    if not _inside(matrix, size, img.shape):
        return None

    width, height = size
    linear = matrix[:, :2]
    offset = matrix[:, 2]
    if np.allclose(linear, np.eye(2), atol=1e-12) and np.allclose(offset, np.rint(offset), atol=1e-9):
        col0, row0 = (int(v) for v in np.rint(offset))
        return img[row0 : row0 + height, col0 : col0 + width].copy()

    return cv2.warpAffine(
        img,
        matrix,
        (width, height),
        flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0,
    )


def crop_matrix(
    center: tuple[float, float] | np.ndarray,
    size: tuple[int, int],
    across: tuple[float, float] | np.ndarray,
    along: tuple[float, float] | np.ndarray,
    scale: float,
) -> np.ndarray:
    """2x3 matrix taking output (x, y) to source (x, y)."""
    width, height = size
    c_row, c_col = float(center[0]), float(center[1])
    a_row, a_col = float(across[0]) * scale, float(across[1]) * scale
    t_row, t_col = float(along[0]) * scale, float(along[1]) * scale
    # Output pixel (width // 2, height // 2) sits on the centre
    half_w, half_h = width // 2, height // 2
    return np.array(
        [
            [a_col, t_col, c_col - a_col * half_w - t_col * half_h],
            [a_row, t_row, c_row - a_row * half_w - t_row * half_h],
        ]
    )


def _inside(matrix: np.ndarray, size: tuple[int, int], shape: tuple[int, ...]) -> bool:
    width, height = size
    corners = np.array([[0, 0, 1], [width - 1, 0, 1], [0, height - 1, 1], [width - 1, height - 1, 1]])
    src = corners @ matrix.T
    h, w = shape[:2]
    return bool(
        (src[:, 0] >= -_BOUNDS_EPSILON).all()
        and (src[:, 0] <= w - 1 + _BOUNDS_EPSILON).all()
        and (src[:, 1] >= -_BOUNDS_EPSILON).all()
        and (src[:, 1] <= h - 1 + _BOUNDS_EPSILON).all()
    )


def _canonical_axes(film_layout: FilmLayout, toward_far: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Axis-aligned (across, along) unit vectors for a layout."""
    along = transport_direction(film_layout)
    across = np.array([along[1], along[0]])
    if np.dot(across, toward_far) < 0:
        across = -across
    return across, along


@dataclass
class Frame:
    """One output frame and the geometry used to cut it."""

    index: int
    reference: Fit
    sprocket_piece: FilmEdge = field(repr=False)
    far_piece: FilmEdge = field(repr=False)
    derived_resolution: float
    center: np.ndarray
    across: np.ndarray
    along: np.ndarray
    scale: float
    size: tuple[int, int]
    out_of_bounds: bool = False

    @property
    def rotation(self) -> float:
        """Angle in radians between the frame axis and the nearest image axis."""
        nearest = np.rint(self.along)
        cross = nearest[0] * self.along[1] - nearest[1] * self.along[0]
        return float(np.arctan2(cross, np.dot(nearest, self.along)))

    @classmethod
    def build(
        cls,
        index: int,
        reference: Fit,
        sprocket_edge: FilmEdge,
        far_edge: FilmEdge,
        config: ExtractionConfig,
        shape: tuple[int, ...],
    ) -> Frame:
        """Work out where and how to cut the frame around a reference point.

        The local pieces of both film edges around the reference give the
        frame axis (perpendicular to the sprocket edge through the
        reference) and a resolution estimate from the measured film width.

        Args:
            index: Frame number
            reference: Sprocket hole, or the midpoint of two for regular 8mm
            sprocket_edge: Film edge along the holes
            far_edge: Opposite film edge
            config: Extraction configuration
            shape: Source image shape, for the bounds check
        """
        ref = np.array(reference.center)
        length = float(config.frame_height)
        pieces = []
        for edge in (sprocket_edge, far_edge):
            piece = edge.edge_piece(ref[0], ref[1], length, False, config.resolution_dpi)
            if piece is None:
                piece = edge.edge_piece(ref[0], ref[1], length, True, config.resolution_dpi)
            pieces.append(piece)
        sprocket_piece, far_piece = pieces

        # The edges are rarely exactly parallel, so measure to each one.
        dist_pix = sprocket_piece.line.distance(ref) + far_piece.line.distance(ref)
        derived_resolution = dist_pix * MM_PER_INCH / config.film_format.film_width

        foot = sprocket_piece.line.closest(ref)
        toward_far = far_piece.line.closest(ref) - foot
        if config.correct_rotation:
            across = sprocket_piece.line.normal
            if np.dot(across, toward_far) < 0:
                across = -across
            along = np.array([-across[1], across[0]])
            if np.dot(along, transport_direction(config.film_layout)) < 0:
                along = -along
        else:
            across, along = _canonical_axes(config.film_layout, toward_far)

        if config.rescale and derived_resolution > 0:
            scale = derived_resolution / config.resolution_dpi
            to_center = in_pixels(config.film_format.edge_to_frame_center, derived_resolution)
        else:
            scale = 1.0
            to_center = in_pixels(config.film_format.edge_to_frame_center, config.resolution_dpi)
        # Measured from the sprocket edge at the reference's transport position
        center = foot + to_center * across

        size = config.output_size
        out_of_bounds = not _inside(crop_matrix(center, size, across, along, scale), size, shape)
        if out_of_bounds:
            logger.info("frame %d at (%.0f, %.0f) extends past the image", index, center[0], center[1])

        return cls(
            index=index,
            reference=reference,
            sprocket_piece=sprocket_piece,
            far_piece=far_piece,
            derived_resolution=float(derived_resolution),
            center=center,
            across=across,
            along=along,
            scale=float(scale),
            size=size,
            out_of_bounds=out_of_bounds,
        )

    def cut(self, img: np.ndarray) -> np.ndarray | None:
        """Cut the frame out of the source, or None when out of bounds."""
        if self.out_of_bounds:
            return None
        return cut_frame(img, self.center, self.size, self.across, self.along, self.scale)


def frame_references(fits: list[Fit], holes_per_frame: int) -> list[Fit]:
    """Reference point per frame from fits in transport order.

    With one hole per frame every fit is a reference. With two, each frame
    sits halfway between consecutive holes, giving one frame fewer than
    there are holes.
    """
    if holes_per_frame == 1:
        return list(fits)
    return [Fit.midpoint(a, b) for a, b in zip(fits, fits[1:])]


def build_frames(
    fits: list[Fit],
    sprocket_edge: FilmEdge,
    far_edge: FilmEdge,
    config: ExtractionConfig,
    shape: tuple[int, ...],
) -> list[Frame]:
    """Frames for fits already sorted in transport order."""
    references = frame_references(fits, config.film_format.holes_per_frame)
    return [
        Frame.build(i, ref, sprocket_edge, far_edge, config, shape)
        for i, ref in enumerate(references)
    ]
