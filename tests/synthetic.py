"""Synthetic scans of film strips for tests."""

import numpy as np

from sprocket_frames.film_spec import FILM_FORMATS, FilmType, in_pixels

BACKGROUND = 230
FILM = 60
FILM_TOP = 20


def rounded_box_mask(shape, center, half_rows, half_cols, radius):
    """Boolean mask of a rounded rectangle with sub-pixel placement."""
    rows, cols = np.mgrid[0 : shape[0], 0 : shape[1]].astype(np.float64)
    qy = np.abs(rows - center[0]) - (half_rows - radius)
    qx = np.abs(cols - center[1]) - (half_cols - radius)
    outside = np.hypot(np.maximum(qx, 0.0), np.maximum(qy, 0.0))
    inside = np.minimum(np.maximum(qx, qy), 0.0)
    return outside + inside - radius <= 0.0


def film_strip(film_type=FilmType.SUPER_8, dpi=1200, n_holes=5, first_hole=150.0, width=None, height=420):
    """Horizontal strip, frames advancing left to right, holes along the bottom.

    Returns:
        Tuple of (uint8 image, list of true (row, col) hole centres)
    """
    fmt = FILM_FORMATS[film_type]
    pitch = in_pixels(fmt.hole_pitch, dpi)
    if width is None:
        width = int(first_hole + (n_holes - 1) * pitch + first_hole)

    img = np.full((height, width), BACKGROUND, dtype=np.uint8)
    film_bottom = FILM_TOP + int(round(in_pixels(fmt.film_width, dpi)))
    img[FILM_TOP:film_bottom, :] = FILM

    center_row = film_bottom - in_pixels(fmt.edge_to_hole_center, dpi)
    half_rows = in_pixels(fmt.hole_width, dpi) / 2.0
    half_cols = in_pixels(fmt.hole_height, dpi) / 2.0
    radius = in_pixels(fmt.hole_corner_radius, dpi)

    centers = []
    for i in range(n_holes):
        center = (center_row, first_hole + i * pitch)
        img[rounded_box_mask(img.shape, center, half_rows, half_cols, radius)] = BACKGROUND
        centers.append(center)
    return img, centers


def blank_strip(dpi=1200, width=800, height=420):
    """Film with both edges but no sprocket holes."""
    img = np.full((height, width), BACKGROUND, dtype=np.uint8)
    film_bottom = FILM_TOP + int(round(in_pixels(FILM_FORMATS[FilmType.SUPER_8].film_width, dpi)))
    img[FILM_TOP:film_bottom, :] = FILM
    return img
