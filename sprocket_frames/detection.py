"""Sprocket hole detection and frame extraction pipeline."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import numpy as np

from .exceptions import ConfigurationError, GeometryNotFoundError, MinimizerConvergenceError
from .film_edge import FilmEdge, find_film_edges
from .film_spec import SprocketLayout, is_vertical, sort_in_transport_order
from .filters import EdgeMaps, extract_edges, validate_image
from .frame import build_frames
from .geometry import trim_to_line
from .hough import (
    build_transform,
    cluster_entries,
    prune_clusters_outside_edges,
    refine_clusters,
    search_window,
    validate_interframe_geometry,
)
from .models import ExtractionConfig, ExtractionResult, FrameRecord, HoleSearchResult

if TYPE_CHECKING:
    from .visualizer import DebugVisualizer

logger = logging.getLogger(__name__)


def locate_sprocket_holes(
    edges: np.ndarray,
    directions: np.ndarray,
    sprocket_edge: FilmEdge,
    far_edge: FilmEdge,
    config: ExtractionConfig,
    visualizer: DebugVisualizer | None = None,
) -> HoleSearchResult:
    """Find and refine the sprocket holes along one film edge.

    Hough peaks near the sprocket edge are clustered, clusters that can't be
    holes given both film edges are dropped, the rest are trimmed to a
    straight line of holes, and a hole model is fitted to each survivor.
    Optionally the fits are then checked against the hole pitch.

    Args:
        edges: Canny edge map
        directions: Gradient direction buckets
        sprocket_edge: Film edge running along the holes
        far_edge: Opposite film edge
        config: Validated extraction configuration
        visualizer: Optional debug visualizer

    Returns:
        HoleSearchResult with fits in transport order

    Raises:
        GeometryNotFoundError: If no cluster survives pruning or no line of
            holes can be fitted.
    """
    vertical = is_vertical(config.film_layout)
    transform = build_transform(
        config.film_type, config.resolution_dpi, vertical, config.quant_factor
    )

    window = search_window(config, sprocket_edge, edges.shape)
    space = transform.transform(edges, directions, *window)
    entries = space.entries(config.hough_threshold)
    logger.debug(
        "search window rows %d-%d cols %d-%d: %d cells over threshold %d",
        *window,
        len(entries),
        config.hough_threshold,
    )
    if visualizer:
        visualizer.save_hough_space(space, config.hough_threshold)

    clusters = cluster_entries(entries, config.cluster_factor * config.hole_width_px)
    half_width = config.hole_width_px / 2.0
    clusters = prune_clusters_outside_edges(
        clusters,
        sprocket_edge,
        far_edge,
        closest=config.edge_to_center_px - half_width,
        furthest=config.edge_to_center_px + half_width,
    )
    if not clusters:
        raise GeometryNotFoundError("no sprocket hole candidates next to the film edge")

    centroids = np.array([c.center for c in clusters])
    try:
        trimmed = trim_to_line(centroids, config.max_distance_from_line)
    except MinimizerConvergenceError as e:
        raise GeometryNotFoundError(f"line through the holes: {e}") from e
    if trimmed.line is None:
        raise GeometryNotFoundError("sprocket hole candidates don't lie on a line")
    clusters = [clusters[i] for i in trimmed.kept]
    logger.info(
        "%d hole candidates on the sprocket line (%d off the line)",
        len(clusters),
        len(trimmed.removed),
    )

    fits, rejected = refine_clusters(transform, clusters, config.min_num_pixels)

    if config.allow_interframe_geometry and fits:
        image_length = edges.shape[0] if vertical else edges.shape[1]
        fits, off_pitch = validate_interframe_geometry(fits, config, image_length)
        rejected.extend(off_pitch)

    return HoleSearchResult(
        fits=sort_in_transport_order(fits, config.film_layout),
        rejected=rejected,
        clusters=clusters,
        num_entries=len(entries),
    )


def _locate_geometry(
    maps: EdgeMaps,
    config: ExtractionConfig,
    visualizer: DebugVisualizer | None,
) -> tuple[FilmEdge, FilmEdge, HoleSearchResult]:
    """Film edges (sprocket side first) and the sprocket holes along them."""
    vertical = is_vertical(config.film_layout)
    low_edge, high_edge = find_film_edges(
        maps.edges, maps.directions, vertical, config.resolution_dpi
    )
    if config.sprocket_layout in (SprocketLayout.ALONG_TOP, SprocketLayout.ALONG_LEFT):
        sprocket_edge, far_edge = low_edge, high_edge
    else:
        sprocket_edge, far_edge = high_edge, low_edge
    if visualizer:
        visualizer.save_film_edges(maps.gray, sprocket_edge, far_edge)

    holes = locate_sprocket_holes(
        maps.edges, maps.directions, sprocket_edge, far_edge, config, visualizer
    )
    return sprocket_edge, far_edge, holes


def extract_frames(
    image: np.ndarray,
    config: ExtractionConfig,
    visualizer: DebugVisualizer | None = None,
    skip_missing_geometry: bool = False,
) -> ExtractionResult:
    """Cut every frame out of a scanned film strip.

    Args:
        image: Scanned strip, 8 or 16 bit, gray or color
        config: Extraction configuration; ``film_layout`` must be set
        visualizer: Optional debug visualizer to save intermediate images
        skip_missing_geometry: Return an empty result carrying the reason in
            ``geometry_error`` instead of raising GeometryNotFoundError

    Returns:
        ExtractionResult; frames that run past the image are None and their
        records are marked dropped.

    Raises:
        ConfigurationError: If the image is missing or the config invalid
        InvalidImageError: If the image can't be processed
        GeometryNotFoundError: If the film edges or holes can't be located
            and ``skip_missing_geometry`` is not set
    """
    if image is None:
        raise ConfigurationError("no image given")
    config.validate()
    validate_image(image)
    started = time.perf_counter()

    maps = extract_edges(image, config.low_threshold, config.high_threshold, config.sigma)
    if visualizer:
        visualizer.save_gray(maps.gray)
        visualizer.save_edges(maps.edges)
        visualizer.save_directions(maps.directions, maps.edges)

    try:
        sprocket_edge, far_edge, holes = _locate_geometry(maps, config, visualizer)
    except GeometryNotFoundError as e:
        if not skip_missing_geometry:
            raise
        logger.warning("skipping image: %s", e)
        return ExtractionResult(frames=[], records=[], fits=[], geometry_error=e.user_message)
    logger.info(
        "found %d sprocket holes (%d rejected) in %.2fs",
        len(holes.fits),
        len(holes.rejected),
        time.perf_counter() - started,
    )

    frames = build_frames(holes.fits, sprocket_edge, far_edge, config, image.shape)
    if visualizer:
        visualizer.save_sprockets(maps.gray, holes, sprocket_edge, far_edge, frames)

    images = []
    records = []
    for frame in frames:
        cut = frame.cut(image)
        images.append(cut)
        records.append(
            FrameRecord(
                index=frame.index,
                derived_resolution=frame.derived_resolution,
                dropped=cut is None,
            )
        )

    logger.info(
        "extracted %d frames (%d dropped) in %.2fs",
        len(records) - sum(r.dropped for r in records),
        sum(r.dropped for r in records),
        time.perf_counter() - started,
    )
    return ExtractionResult(
        frames=images,
        records=records,
        fits=holes.fits,
        rejected=holes.rejected,
        film_edges=(sprocket_edge, far_edge),
    )
