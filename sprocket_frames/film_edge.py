"""Location of the two physical edges of the film strip."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from .exceptions import GeometryNotFoundError
from .filters import bucket_distance, direction_bucket
from .geometry import PolarLine, fit_line_robust

logger = logging.getLogger(__name__)

# Gradient may deviate this much from perpendicular-to-transport on an edge
EDGE_DIRECTION_TOLERANCE_DEG = 20.0

# Fewest points needed for a full edge or a local edge piece
MIN_EDGE_POINTS = 10
MIN_EDGE_PIECE_POINTS = 10


def _edge_tolerance(resolution_dpi: float) -> float:
    """Distance beyond which an edge pixel is rejected from an edge fit."""
    return max(2.0, resolution_dpi / 640.0)


@dataclass(frozen=True)
class FilmEdge:
    """Fitted line along one edge of the film.

    Extreme points are taken over the edge pixels that survived the fit and
    bound the region searched for sprocket holes.
    """

    line: PolarLine
    points: np.ndarray = field(repr=False)
    """(N, 2) (row, col) edge pixels supporting the line."""

    pruned: np.ndarray = field(repr=False)
    """(M, 2) edge pixels rejected by the fit."""

    vertical: bool
    """True when the film runs along image rows."""

    @classmethod
    def from_line(cls, line: PolarLine, shape: tuple[int, ...], vertical: bool) -> FilmEdge:
        """Edge made of the pixels the line passes through inside ``shape``."""
        h, w = shape[:2]
        c, s = np.cos(line.theta), np.sin(line.theta)
        if vertical:
            rows = np.arange(h, dtype=np.float64)
            cols = (line.rho - rows * s) / c
        else:
            cols = np.arange(w, dtype=np.float64)
            rows = (line.rho - cols * c) / s
        points = np.column_stack([rows, cols])
        inside = (cols >= 0) & (cols <= w - 1) & (rows >= 0) & (rows <= h - 1)
        return cls(
            line=line,
            points=points[inside],
            pruned=np.empty((0, 2)),
            vertical=vertical,
        )

    def _extreme(self, axis: int, largest: bool) -> tuple[int, int]:
        if len(self.points) == 0:
            raise GeometryNotFoundError("film edge has no supporting pixels")
        values = self.points[:, axis]
        i = int(np.argmax(values) if largest else np.argmin(values))
        row, col = self.points[i]
        return int(round(row)), int(round(col))

    def most_left(self) -> tuple[int, int]:
        """(row, col) of the leftmost supporting pixel."""
        return self._extreme(1, largest=False)

    def most_right(self) -> tuple[int, int]:
        return self._extreme(1, largest=True)

    def most_top(self) -> tuple[int, int]:
        return self._extreme(0, largest=False)

    def most_bottom(self) -> tuple[int, int]:
        return self._extreme(0, largest=True)

    def edge_piece(
        self,
        row: float,
        col: float,
        length: float,
        extrapolate: bool,
        resolution_dpi: float = 3200,
    ) -> FilmEdge | None:
        """Local piece of this edge around a transport position.

        Refits a line to the supporting pixels within ``length / 2`` of
        ``(row, col)`` along the transport axis. With too few pixels there,
        returns None, or when ``extrapolate`` is set, a piece that carries
        the full-length line.
        """
        position = row if self.vertical else col
        along = self.points[:, 0] if self.vertical else self.points[:, 1]
        window = np.abs(along - position) <= length / 2.0
        local = self.points[window]

        if len(local) >= MIN_EDGE_PIECE_POINTS:
            line, kept = fit_line_robust(local, _edge_tolerance(resolution_dpi))
            return FilmEdge(line=line, points=local[kept], pruned=local[~kept], vertical=self.vertical)

        if not extrapolate:
            return None

        logger.debug("no local film edge near (%.0f, %.0f), extrapolating full edge", row, col)
        return FilmEdge(line=self.line, points=local, pruned=np.empty((0, 2)), vertical=self.vertical)


def _outermost_points(
    edges: np.ndarray,
    directions: np.ndarray,
    vertical: bool,
) -> tuple[np.ndarray, np.ndarray]:
    """Outermost across-film edge pixel on each side, per transport line.

    Only pixels whose gradient points across the film count, so hole sides
    parallel to the transport can't shadow the film edge.
    """
    tolerance = int(round(EDGE_DIRECTION_TOLERANCE_DEG * 256 / 360.0))
    if vertical:
        across = (direction_bucket(0.0), direction_bucket(np.pi))
    else:
        across = (direction_bucket(np.pi / 2), direction_bucket(3 * np.pi / 2))
    aligned = (bucket_distance(directions, across[0]) <= tolerance) | (
        bucket_distance(directions, across[1]) <= tolerance
    )
    rows, cols = np.nonzero((edges > 0) & aligned)
    if len(rows) == 0:
        return np.empty((0, 2)), np.empty((0, 2))

    along, across_pos = (rows, cols) if vertical else (cols, rows)
    order = np.lexsort((across_pos, along))
    along, across_pos = along[order], across_pos[order]
    _, first = np.unique(along, return_index=True)
    last = np.append(first[1:] - 1, len(along) - 1)

    def as_points(index: np.ndarray) -> np.ndarray:
        if vertical:
            return np.column_stack([along[index], across_pos[index]]).astype(np.float64)
        return np.column_stack([across_pos[index], along[index]]).astype(np.float64)

    return as_points(first), as_points(last)


def find_film_edges(
    edges: np.ndarray,
    directions: np.ndarray,
    vertical: bool,
    resolution_dpi: float,
) -> tuple[FilmEdge, FilmEdge]:
    """Locate both edges of the film strip.

    Args:
        edges: Canny edge map
        directions: Gradient direction buckets
        vertical: True when the film runs along image rows
        resolution_dpi: Scan resolution, sets the outlier tolerance

    Returns:
        Tuple of (top or left edge, bottom or right edge)

    Raises:
        GeometryNotFoundError: If either edge has too few supporting pixels.
    """
    low_points, high_points = _outermost_points(edges, directions, vertical)
    tolerance = _edge_tolerance(resolution_dpi)

    film_edges = []
    for name, points in (("top/left", low_points), ("bottom/right", high_points)):
        if len(points) < MIN_EDGE_POINTS:
            raise GeometryNotFoundError(f"{name} film edge has only {len(points)} edge pixels")
        line, kept = fit_line_robust(points, tolerance)
        if kept.sum() < MIN_EDGE_POINTS:
            raise GeometryNotFoundError(f"{name} film edge is not straight")
        film_edges.append(
            FilmEdge(line=line, points=points[kept], pruned=points[~kept], vertical=vertical)
        )
        logger.debug(
            "%s film edge: rho=%.1f theta=%.4f (%d kept, %d pruned)",
            name,
            line.rho,
            line.theta,
            int(kept.sum()),
            int((~kept).sum()),
        )

    return film_edges[0], film_edges[1]
