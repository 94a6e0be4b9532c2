"""Debug visualization utilities for sprocket hole detection."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import cv2
import numpy as np

if TYPE_CHECKING:
    from .film_edge import FilmEdge
    from .frame import Frame
    from .hough import HoughSpace
    from .models import HoleSearchResult

# BGR
BLUE = (255, 0, 0)
GREEN = (0, 255, 0)
RED = (0, 0, 255)
YELLOW = (0, 255, 255)
CYAN = (255, 255, 0)


class DebugVisualizer:
    """Saves debug images at each step of frame extraction."""

    def __init__(self, output_dir: str | Path):
        self.output_dir = Path(output_dir)
        if self.output_dir.exists():
            # Backup existing debug dir before cleaning
            backup_dir = self.output_dir.with_suffix(".bak")
            if backup_dir.exists():
                import shutil

                shutil.rmtree(backup_dir)
            self.output_dir.rename(backup_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.step = 0

    def _save(self, name: str, img: np.ndarray):
        self.step += 1
        filename = f"{self.step:02d}_{name}.png"
        cv2.imwrite(str(self.output_dir / filename), img)

    def save_gray(self, gray: np.ndarray):
        """Save the blurred 8-bit grayscale image edges are computed from."""
        self._save("gray", gray)

    def save_edges(self, edges: np.ndarray):
        """Save edge detection result."""
        self._save("edges", edges)

    def save_directions(self, directions: np.ndarray, edges: np.ndarray):
        """Save gradient directions as hue, shown on edge pixels only."""
        # OpenCV hue runs 0-179
        hue = (directions.astype(np.uint16) * 180 // 256).astype(np.uint8)
        value = np.where(edges > 0, 255, 0).astype(np.uint8)
        hsv = cv2.merge([hue, np.full_like(hue, 255), value])
        self._save("gradient_directions", cv2.cvtColor(hsv, cv2.COLOR_HSV2BGR))

    def save_film_edges(self, gray: np.ndarray, sprocket_edge: FilmEdge, far_edge: FilmEdge):
        """Save the edge pixels used for both film edges and the fitted lines.

        Kept edge pixels are green, pruned ones red, the fitted lines blue.
        """
        vis = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)
        for edge in (sprocket_edge, far_edge):
            _draw_points(vis, edge.points, GREEN)
            _draw_points(vis, edge.pruned, RED)
            _draw_line(vis, edge, BLUE, 2)

        cv2.putText(
            vis, "sprocket edge", _label_position(sprocket_edge, vis.shape), cv2.FONT_HERSHEY_SIMPLEX, 0.8, BLUE, 2
        )
        self._save("film_edges", vis)

    def save_hough_space(self, space: HoughSpace, threshold: int):
        """Save the vote accumulator as a heat map with the threshold marked."""
        import matplotlib.pyplot as plt

        counts = space.counts
        row0, col0 = space.origin
        extent = (
            col0 - space.quant / 2,
            col0 + (counts.shape[1] - 0.5) * space.quant,
            row0 + (counts.shape[0] - 0.5) * space.quant,
            row0 - space.quant / 2,
        )

        fig, ax = plt.subplots(figsize=(14, 4))
        image = ax.imshow(counts, cmap="inferno", extent=extent, aspect="auto", interpolation="nearest")
        peaks_i, peaks_j = np.nonzero(counts >= threshold)
        if len(peaks_i):
            ax.scatter(
                col0 + peaks_j * space.quant,
                row0 + peaks_i * space.quant,
                s=4,
                c="cyan",
                marker="s",
                label=f">= {threshold} votes",
            )
            ax.legend(loc="upper right")
        fig.colorbar(image, ax=ax, label="votes")
        ax.set_xlabel("column")
        ax.set_ylabel("row")
        ax.set_title(f"Hough space (threshold={threshold}, peak={int(counts.max()) if counts.size else 0})")
        fig.tight_layout()
        self.step += 1
        fig.savefig(self.output_dir / f"{self.step:02d}_hough_space.png", dpi=150)
        plt.close(fig)

    def save_sprockets(
        self,
        gray: np.ndarray,
        holes: HoleSearchResult,
        sprocket_edge: FilmEdge,
        far_edge: FilmEdge,
        frames: list[Frame],
    ):
        """Save an overlay of everything found on the strip.

        Clusters are blue circles, edge pixels of accepted fits green,
        rejected holes red, fitted hole centres yellow, and each frame's
        axis and outline cyan.
        """
        vis = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)
        for edge in (sprocket_edge, far_edge):
            _draw_line(vis, edge, BLUE, 1)

        for cluster in holes.clusters:
            cv2.circle(vis, _xy(cluster.center), 6, BLUE, 2)

        for fit in holes.fits:
            _draw_points(vis, fit.edge_points, GREEN)
            cv2.circle(vis, _xy(fit.center), 3, YELLOW, -1)

        for rejected in holes.rejected:
            center = _xy((rejected.row, rejected.col))
            cv2.drawMarker(vis, center, RED, cv2.MARKER_TILTED_CROSS, 14, 2)

        for frame in frames:
            _draw_frame(vis, frame)

        cv2.putText(
            vis,
            f"holes: {len(holes.fits)}  rejected: {len(holes.rejected)}  frames: {len(frames)}",
            (10, 30),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.8,
            (255, 255, 255),
            2,
        )
        self._save("sprockets", vis)


def _xy(point) -> tuple[int, int]:
    """(row, col) to an OpenCV (x, y) pixel."""
    return int(round(point[1])), int(round(point[0]))


def _draw_points(vis: np.ndarray, points: np.ndarray, color: tuple[int, int, int]):
    if len(points) == 0:
        return
    pts = np.rint(points).astype(np.int64)
    inside = (
        (pts[:, 0] >= 0) & (pts[:, 0] < vis.shape[0]) & (pts[:, 1] >= 0) & (pts[:, 1] < vis.shape[1])
    )
    pts = pts[inside]
    vis[pts[:, 0], pts[:, 1]] = color


def _draw_line(vis: np.ndarray, edge: FilmEdge, color: tuple[int, int, int], thickness: int):
    ends = edge.line.endpoints(vis.shape)
    if ends is not None:
        cv2.line(vis, ends[0], ends[1], color, thickness)


def _label_position(edge: FilmEdge, shape: tuple[int, ...]) -> tuple[int, int]:
    foot = edge.line.closest((shape[0] / 2.0, shape[1] / 2.0))
    x, y = _xy(foot)
    return min(max(x + 10, 0), shape[1] - 200), min(max(y - 10, 20), shape[0] - 10)


def _draw_frame(vis: np.ndarray, frame: Frame):
    width, height = frame.size
    across = frame.across * frame.scale
    along = frame.along * frame.scale
    # Output pixel (0, 0) and (width - 1, height - 1) relative to the centre
    a0, a1 = -(width // 2), width - 1 - width // 2
    t0, t1 = -(height // 2), height - 1 - height // 2
    corners = [
        frame.center + a0 * across + t0 * along,
        frame.center + a1 * across + t0 * along,
        frame.center + a1 * across + t1 * along,
        frame.center + a0 * across + t1 * along,
    ]
    outline = np.array([_xy(c) for c in corners], dtype=np.int32)
    color = RED if frame.out_of_bounds else CYAN
    cv2.polylines(vis, [outline], True, color, 2)

    foot = frame.sprocket_piece.line.closest(frame.reference.center)
    cv2.line(vis, _xy(foot), _xy(frame.center), color, 1)
    cv2.putText(vis, str(frame.index), _xy(frame.center), cv2.FONT_HERSHEY_SIMPLEX, 0.8, color, 2)
