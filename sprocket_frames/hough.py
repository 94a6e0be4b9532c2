"""Generalized Hough transform for sprocket holes.

A sprocket hole is modelled as a rounded rectangle. Every edge pixel whose
gradient direction matches part of the hole outline votes for the hole
centres it could belong to; peaks in the vote accumulator are clustered into
candidate holes, which are then refined by fitting the model to the edge
pixels that voted for them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree

from .exceptions import MinimizerConvergenceError
from .film_edge import FilmEdge
from .film_spec import FILM_FORMATS, FilmType, SprocketLayout, in_pixels, interframe_filter, rank_fits
from .filters import DIRECTION_BUCKETS, bucket_distance, quantize_directions
from .geometry import minimize
from .models import Cluster, ExtractionConfig, Fit, HoughSpaceEntry, RejectedFit, RejectReason

logger = logging.getLogger(__name__)

# Template gradient directions match edge pixels within this angle
DIRECTION_TOLERANCE_DEG = 10.0

# Peaks at exactly the cluster distance are not merged
CLUSTER_MERGE_STRICT = True

# Edge pixels further than this many residual std-devs (and at least one
# pixel) from the first model fit are dropped before refitting.
FIT_PRUNE_SIGMAS = 2.0
FIT_PRUNE_MIN_PIXELS = 1.0

_PERIMETER_STEP = 0.25


# =============================================================================
# Hole model
# =============================================================================


@dataclass(frozen=True)
class SprocketHoleModel:
    """Rounded-rectangle outline of a sprocket hole in pixels.

    ``half_rows`` and ``half_cols`` are the half extents along image rows and
    columns, so the model is already oriented for the film layout.
    """

    half_rows: float
    half_cols: float
    radius: float

    @classmethod
    def for_film(cls, film_type: FilmType, resolution_dpi: float, vertical: bool) -> SprocketHoleModel:
        """Model for a film format scanned at ``resolution_dpi``.

        Args:
            film_type: Film format
            resolution_dpi: Scan resolution
            vertical: True when the film runs along image rows
        """
        fmt = FILM_FORMATS[film_type]
        half_across = in_pixels(fmt.hole_width, resolution_dpi) / 2.0
        half_along = in_pixels(fmt.hole_height, resolution_dpi) / 2.0
        radius = min(in_pixels(fmt.hole_corner_radius, resolution_dpi), half_across, half_along)
        if vertical:
            return cls(half_rows=half_along, half_cols=half_across, radius=radius)
        return cls(half_rows=half_across, half_cols=half_along, radius=radius)

    def outline(self) -> tuple[np.ndarray, np.ndarray]:
        """Densely sampled outline points and their outward normals.

        Returns:
            Tuple of ((K, 2) (row, col) offsets from the centre, (K, 2) unit
            outward normals as (row, col))
        """
        hr, hc, r = self.half_rows, self.half_cols, self.radius
        inner_r, inner_c = hr - r, hc - r
        points, normals = [], []

        # Straight sides
        cols = np.arange(-inner_c, inner_c + 1e-9, _PERIMETER_STEP)
        rows = np.arange(-inner_r, inner_r + 1e-9, _PERIMETER_STEP)
        for sign in (-1.0, 1.0):
            points.append(np.column_stack([np.full_like(cols, sign * hr), cols]))
            normals.append(np.tile([sign, 0.0], (len(cols), 1)))
            points.append(np.column_stack([rows, np.full_like(rows, sign * hc)]))
            normals.append(np.tile([0.0, sign], (len(rows), 1)))

        # Rounded corners
        if r > 0:
            angles = np.arange(0.0, np.pi / 2 + 1e-9, _PERIMETER_STEP / r)
            for sign_r in (-1.0, 1.0):
                for sign_c in (-1.0, 1.0):
                    n = np.column_stack([sign_r * np.sin(angles), sign_c * np.cos(angles)])
                    center = np.array([sign_r * inner_r, sign_c * inner_c])
                    points.append(center + r * n)
                    normals.append(n)

        return np.concatenate(points), np.concatenate(normals)

    def distance(
        self,
        points: np.ndarray,
        center: tuple[float, float],
        scale: float = 1.0,
        rotation: float = 0.0,
    ) -> np.ndarray:
        """Unsigned distance in pixels from points to the placed outline.

        Args:
            points: (N, 2) (row, col) points
            center: Hole centre (row, col)
            scale: Outline scale
            rotation: Counter-clockwise rotation on screen, radians
        """
        scale = max(abs(scale), 1e-6)
        dy = points[:, 0] - center[0]
        dx = points[:, 1] - center[1]
        cos_r, sin_r = np.cos(rotation), np.sin(rotation)
        qx = np.abs(dx * cos_r - dy * sin_r) / scale - (self.half_cols - self.radius)
        qy = np.abs(dx * sin_r + dy * cos_r) / scale - (self.half_rows - self.radius)
        outside = np.hypot(np.maximum(qx, 0.0), np.maximum(qy, 0.0))
        inside = np.minimum(np.maximum(qx, qy), 0.0)
        return np.abs(outside + inside - self.radius) * scale


# =============================================================================
# Voting
# =============================================================================


@dataclass(frozen=True)
class HoughSpace:
    """Vote accumulator over a window of candidate hole centres."""

    counts: np.ndarray
    """(rows, cols) vote count per cell."""

    origin: tuple[int, int]
    """Image (row, col) of cell (0, 0)."""

    quant: float
    vote_cells: np.ndarray = field(repr=False)
    """Flat cell index of every vote, sorted."""

    vote_points: np.ndarray = field(repr=False)
    """(V, 2) (row, col) edge pixel behind each vote, aligned with vote_cells."""

    def cell_center(self, i: int, j: int) -> tuple[float, float]:
        return (self.origin[0] + i * self.quant, self.origin[1] + j * self.quant)

    def entries(self, threshold: int) -> list[HoughSpaceEntry]:
        """Cells with at least ``threshold`` votes, in row-major order."""
        flat = np.flatnonzero(self.counts.ravel() >= threshold)
        starts = np.searchsorted(self.vote_cells, flat, side="left")
        ends = np.searchsorted(self.vote_cells, flat, side="right")
        ncols = self.counts.shape[1]

        entries = []
        for index, start, end in zip(flat, starts, ends):
            i, j = divmod(int(index), ncols)
            row, col = self.cell_center(i, j)
            entries.append(
                HoughSpaceEntry(
                    row=row,
                    col=col,
                    votes=int(self.counts.flat[index]),
                    points=self.vote_points[start:end],
                )
            )
        return entries


class HoughTransform:
    """Template-driven voting for hole centres.

    The template (outline offsets and the gradient direction expected at
    each) and the per-direction lookup into it are computed once here and
    only read while voting.
    """

    def __init__(
        self,
        model: SprocketHoleModel,
        quant_factor: float,
        direction_tolerance_deg: float = DIRECTION_TOLERANCE_DEG,
    ):
        self.model = model
        self.quant = float(quant_factor)

        outline, normals = model.outline()
        # A bright hole's gradient points inward, against the outward normal;
        # directions are measured with y up.
        expected = quantize_directions(-normals[:, 1], normals[:, 0])
        offsets = np.rint(outline).astype(np.int64)
        template = np.unique(np.column_stack([offsets, expected.astype(np.int64)]), axis=0)
        self.template = template
        """(K, 3) rows of (drow, dcol, expected direction bucket)."""

        tolerance = int(round(direction_tolerance_deg * DIRECTION_BUCKETS / 360.0))
        self._lookup = tuple(
            template[bucket_distance(template[:, 2], bucket) <= tolerance, :2]
            for bucket in range(DIRECTION_BUCKETS)
        )

    def offsets_for(self, bucket: int) -> np.ndarray:
        """(K_b, 2) template offsets matching a gradient direction bucket."""
        return self._lookup[bucket]

    def transform(
        self,
        edges: np.ndarray,
        directions: np.ndarray,
        rowstart: int,
        rowend: int,
        colstart: int,
        colend: int,
    ) -> HoughSpace:
        """Vote for hole centres inside ``[rowstart, rowend] x [colstart, colend]``.

        Every edge pixel inside the window votes once into each accumulator
        cell implied by a matching template offset. Votes are accumulated per
        direction bucket and merged into one accumulator at the end.

        Args:
            edges: Edge map
            directions: Gradient direction buckets
            rowstart, rowend, colstart, colend: Inclusive search window

        Returns:
            HoughSpace with vote counts and contributing pixels
        """
        h, w = edges.shape[:2]
        n_rows = int((rowend - rowstart) / self.quant) + 1
        n_cols = int((colend - colstart) / self.quant) + 1
        n_rows, n_cols = max(n_rows, 0), max(n_cols, 0)

        r0, r1 = max(rowstart, 0), min(rowend, h - 1)
        c0, c1 = max(colstart, 0), min(colend, w - 1)
        if r1 < r0 or c1 < c0 or n_rows == 0 or n_cols == 0:
            rows = cols = np.empty(0, dtype=np.int64)
        else:
            rows, cols = np.nonzero(edges[r0 : r1 + 1, c0 : c1 + 1] > 0)
            rows = rows.astype(np.int64) + r0
            cols = cols.astype(np.int64) + c0
        buckets = directions[rows, cols].astype(np.int64) if len(rows) else rows
        n_pixels = len(rows)

        cell_parts, pixel_parts = [], []
        for bucket in np.unique(buckets):
            offsets = self._lookup[int(bucket)]
            if len(offsets) == 0:
                continue
            pixels = np.flatnonzero(buckets == bucket)
            center_rows = rows[pixels, None] - offsets[None, :, 0]
            center_cols = cols[pixels, None] - offsets[None, :, 1]
            cell_i = np.rint((center_rows - rowstart) / self.quant).astype(np.int64)
            cell_j = np.rint((center_cols - colstart) / self.quant).astype(np.int64)
            valid = (cell_i >= 0) & (cell_i < n_rows) & (cell_j >= 0) & (cell_j < n_cols)
            cells = (cell_i * n_cols + cell_j)[valid]
            voters = np.broadcast_to(pixels[:, None], valid.shape)[valid]
            # One vote per (cell, pixel) pair
            keys = np.unique(cells * n_pixels + voters)
            cell_parts.append(keys // n_pixels)
            pixel_parts.append(keys % n_pixels)

        if cell_parts:
            vote_cells = np.concatenate(cell_parts)
            vote_pixels = np.concatenate(pixel_parts)
            order = np.argsort(vote_cells, kind="stable")
            vote_cells, vote_pixels = vote_cells[order], vote_pixels[order]
        else:
            vote_cells = vote_pixels = np.empty(0, dtype=np.int64)

        counts = np.bincount(vote_cells, minlength=n_rows * n_cols).reshape(n_rows, n_cols)
        logger.debug(
            "hough transform: %d edge pixels cast %d votes into %dx%d cells (peak %d)",
            n_pixels,
            len(vote_cells),
            n_rows,
            n_cols,
            int(counts.max()) if counts.size else 0,
        )
        return HoughSpace(
            counts=counts,
            origin=(rowstart, colstart),
            quant=self.quant,
            vote_cells=vote_cells,
            vote_points=np.column_stack([rows[vote_pixels], cols[vote_pixels]]),
        )

    def best_fit(self, cluster: Cluster) -> Fit:
        """Fit the hole model to the edge pixels that voted for a cluster.

        Minimizes the squared distance of the pixels to the outline over
        centre, scale and rotation, drops pixels far off the first fit and
        refits once.

        Raises:
            MinimizerConvergenceError: If either fit doesn't converge.
        """
        points = cluster.points.astype(np.float64)
        model = self.model

        def error(params: np.ndarray, pts: np.ndarray) -> float:
            d = model.distance(pts, (params[0], params[1]), params[2], params[3])
            return float(np.dot(d, d))

        params = minimize(
            lambda p: error(p, points),
            (cluster.row, cluster.col, 1.0, 0.0),
            what=f"hole at ({cluster.row:.0f}, {cluster.col:.0f})",
        )
        residuals = model.distance(points, (params[0], params[1]), params[2], params[3])
        limit = max(FIT_PRUNE_SIGMAS * float(residuals.std()), FIT_PRUNE_MIN_PIXELS)
        kept = residuals <= limit

        if not kept.all() and kept.sum() > 0:
            points = points[kept]
            params = minimize(
                lambda p: error(p, points),
                params,
                what=f"hole at ({cluster.row:.0f}, {cluster.col:.0f})",
            )
            residuals = model.distance(points, (params[0], params[1]), params[2], params[3])
        elif not kept.any():
            points = points[:0]
            residuals = residuals[:0]

        return Fit(
            row=float(params[0]),
            col=float(params[1]),
            scale=float(params[2]),
            rotation=float(params[3]),
            edge_points=points,
            std_dev=float(residuals.std()) if len(residuals) else float("inf"),
        )


@lru_cache(maxsize=8)
def build_transform(
    film_type: FilmType,
    resolution_dpi: float,
    vertical: bool,
    quant_factor: float,
) -> HoughTransform:
    """Hough transform for a configuration, built once and reused."""
    model = SprocketHoleModel.for_film(film_type, resolution_dpi, vertical)
    return HoughTransform(model, quant_factor)


# =============================================================================
# Search window
# =============================================================================


def search_window(
    config: ExtractionConfig,
    sprocket_edge: FilmEdge,
    shape: tuple[int, ...],
) -> tuple[int, int, int, int]:
    """Window of candidate hole centres next to the sprocket edge.

    Returns:
        Inclusive (rowstart, rowend, colstart, colend)
    """
    hole_width = config.hole_width_px
    margin = hole_width / 2.0 + 2.0 * config.quant_factor
    furthest = int(config.edge_to_center_px + margin + 1.0)
    closest = int(config.edge_to_center_px - margin + 1.0)

    rowstart, rowend = 0, shape[0] - 1
    colstart, colend = 0, shape[1] - 1
    layout = config.sprocket_layout
    if layout == SprocketLayout.ALONG_RIGHT:
        colstart = sprocket_edge.most_left()[1] - furthest
        colend = sprocket_edge.most_right()[1] - closest
    elif layout == SprocketLayout.ALONG_LEFT:
        colstart = closest + sprocket_edge.most_left()[1]
        colend = furthest + sprocket_edge.most_right()[1]
    elif layout == SprocketLayout.ALONG_TOP:
        rowstart = closest + sprocket_edge.most_top()[0]
        rowend = furthest + sprocket_edge.most_bottom()[0]
    else:
        rowstart = sprocket_edge.most_top()[0] - furthest
        rowend = sprocket_edge.most_bottom()[0] - closest
    return rowstart, rowend, colstart, colend


# =============================================================================
# Clustering
# =============================================================================


def cluster_entries(entries: list[HoughSpaceEntry], max_distance: float) -> list[Cluster]:
    """Single-linkage clustering of Hough peaks.

    Two entries are linked when their distance is below ``max_distance``
    (equal distance does not link, see CLUSTER_MERGE_STRICT); clusters are
    the connected components of that graph, so the result doesn't depend on
    entry order. Clusters come back ordered by their first member.
    """
    if not entries:
        return []

    coords = np.array([[e.row, e.col] for e in entries], dtype=np.float64)
    n = len(entries)
    pairs = cKDTree(coords).query_pairs(r=max_distance, output_type="ndarray").reshape(-1, 2)
    if len(pairs):
        lengths = np.linalg.norm(coords[pairs[:, 0]] - coords[pairs[:, 1]], axis=1)
        linked = lengths < max_distance if CLUSTER_MERGE_STRICT else lengths <= max_distance
        pairs = pairs[linked]
    graph = coo_matrix((np.ones(len(pairs)), (pairs[:, 0], pairs[:, 1])), shape=(n, n))
    _, labels = connected_components(graph, directed=False)

    groups: dict[int, list[HoughSpaceEntry]] = {}
    for entry, label in zip(entries, labels):
        groups.setdefault(int(label), []).append(entry)
    return [Cluster.from_entries(members) for members in groups.values()]


def recluster(clusters: list[Cluster], max_distance: float) -> list[Cluster]:
    """Cluster the member entries of an existing cluster set again."""
    return cluster_entries([e for c in clusters for e in c.entries], max_distance)


def prune_clusters_outside_edges(
    clusters: list[Cluster],
    sprocket_edge: FilmEdge,
    far_edge: FilmEdge,
    closest: float,
    furthest: float,
) -> list[Cluster]:
    """Drop clusters that can't be holes given the film edges.

    A cluster is dropped when it lies beyond the sprocket edge (no nearer the
    far edge than the sprocket edge is) or when its distance from the
    sprocket edge falls outside ``[closest, furthest]``.
    """
    kept = []
    for cluster in clusters:
        center = np.array(cluster.center)
        dist_to_far = far_edge.line.distance(center)
        on_sprocket_edge = sprocket_edge.line.closest(center)
        edge_separation = far_edge.line.distance(on_sprocket_edge)
        dist_to_near = float(np.linalg.norm(center - on_sprocket_edge))

        if dist_to_far >= edge_separation or not (closest <= dist_to_near <= furthest):
            logger.debug(
                "dropping cluster at (%.0f, %.0f): %.1f px from sprocket edge",
                cluster.row,
                cluster.col,
                dist_to_near,
            )
            continue
        kept.append(cluster)
    return kept


# =============================================================================
# Refinement
# =============================================================================


def refine_clusters(
    transform: HoughTransform,
    clusters: list[Cluster],
    min_num_pixels: int,
) -> tuple[list[Fit], list[RejectedFit]]:
    """Fit the hole model to every cluster.

    Fits that don't converge or keep fewer than ``min_num_pixels`` edge
    pixels are returned separately as rejected.
    """
    fits: list[Fit] = []
    rejected: list[RejectedFit] = []
    for cluster in clusters:
        try:
            fit = transform.best_fit(cluster)
        except MinimizerConvergenceError as e:
            logger.info("rejecting cluster at (%.0f, %.0f): %s", cluster.row, cluster.col, e)
            rejected.append(
                RejectedFit(
                    reason=RejectReason.NOT_CONVERGED,
                    row=cluster.row,
                    col=cluster.col,
                    num_edge_points=len(cluster.points),
                )
            )
            continue

        if fit.num_edge_points < min_num_pixels:
            logger.info(
                "rejecting hole at (%.0f, %.0f): %d edge pixels, need %d",
                fit.row,
                fit.col,
                fit.num_edge_points,
                min_num_pixels,
            )
            rejected.append(
                RejectedFit(
                    reason=RejectReason.TOO_FEW_PIXELS,
                    row=fit.row,
                    col=fit.col,
                    num_edge_points=fit.num_edge_points,
                    fit=fit,
                )
            )
            continue
        fits.append(fit)
    return fits, rejected


# =============================================================================
# Interframe validation
# =============================================================================


def validate_interframe_geometry(
    fits: list[Fit],
    config: ExtractionConfig,
    image_length: int,
) -> tuple[list[Fit], list[RejectedFit]]:
    """Keep only fits spaced like real sprocket holes.

    Fits are ranked and the best one is tried as the anchor of
    ``interframe_filter``. When the anchor isn't confirmed by a neighbour it
    is dropped and the next best is tried, at most once per fit.

    Args:
        fits: Refined fits
        config: Extraction configuration
        image_length: Image size along the transport axis, in pixels

    Returns:
        Tuple of (verified fits, rejected fits); verified may be empty.
    """
    ranked = rank_fits(fits)
    candidates = ranked
    verified: list[Fit] = []
    for attempt in range(len(fits)):
        result = interframe_filter(
            config.film_type,
            config.film_layout,
            config.resolution_dpi,
            image_length,
            candidates,
        )
        if result is not None:
            verified = result
            break
        logger.debug(
            "anchor at (%.0f, %.0f) not confirmed by a neighbouring hole (attempt %d)",
            candidates[0].row,
            candidates[0].col,
            attempt + 1,
        )
        candidates = candidates[1:]
        if not candidates:
            break

    kept = {id(fit) for fit in verified}
    rejected = []
    for fit in ranked:
        if id(fit) in kept:
            continue
        logger.info("rejecting hole at (%.0f, %.0f): off the hole pitch", fit.row, fit.col)
        rejected.append(
            RejectedFit(
                reason=RejectReason.INTERFRAME_GEOMETRY,
                row=fit.row,
                col=fit.col,
                num_edge_points=fit.num_edge_points,
                fit=fit,
            )
        )
    return verified, rejected
