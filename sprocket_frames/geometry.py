"""Polar lines and the minimization used to fit them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import cv2
import numpy as np
import scipy.optimize

from .exceptions import MinimizerConvergenceError

logger = logging.getLogger(__name__)

# Every line fit starts the minimizer from this foot point (row, col).
LINE_FIT_START = (512.0, 512.0)

MINIMIZER_MAX_ITER = 2000
MINIMIZER_XTOL = 1e-4
MINIMIZER_FTOL = 1e-8


@dataclass(frozen=True)
class PolarLine:
    """Line ``col * cos(theta) + row * sin(theta) = rho``.

    (rho, theta) is the polar form of the line's closest point to the image
    origin, the top-left pixel.
    """

    rho: float
    theta: float

    @classmethod
    def from_foot_point(cls, row: float, col: float) -> PolarLine:
        """Line through (row, col) perpendicular to the origin ray."""
        return cls(rho=float(np.hypot(row, col)), theta=float(np.arctan2(row, col)))

    @classmethod
    def from_points(cls, points: np.ndarray) -> PolarLine:
        """Least-squares line through (N, 2) (row, col) points using cv2.fitLine."""
        xy = np.ascontiguousarray(points[:, ::-1], dtype=np.float32)
        vx, vy, x0, y0 = cv2.fitLine(xy, cv2.DIST_L2, 0, 0.01, 0.01).flatten()
        nx, ny = float(vy), float(-vx)
        rho = float(x0) * nx + float(y0) * ny
        if rho < 0:
            rho, nx, ny = -rho, -nx, -ny
        return cls(rho=rho, theta=float(np.arctan2(ny, nx)))

    @property
    def normal(self) -> np.ndarray:
        """Unit normal as a (row, col) vector."""
        return np.array([np.sin(self.theta), np.cos(self.theta)])

    @property
    def direction(self) -> np.ndarray:
        """Unit vector along the line as (row, col)."""
        return np.array([np.cos(self.theta), -np.sin(self.theta)])

    @property
    def foot_point(self) -> np.ndarray:
        return self.rho * self.normal

    def signed_distance(self, points: np.ndarray) -> np.ndarray:
        """Signed perpendicular distance of (N, 2) or (2,) (row, col) points."""
        points = np.asarray(points, dtype=np.float64)
        return points[..., 1] * np.cos(self.theta) + points[..., 0] * np.sin(self.theta) - self.rho

    def distance(self, points: np.ndarray) -> np.ndarray | float:
        """Perpendicular distance of one or more (row, col) points."""
        d = np.abs(self.signed_distance(points))
        return float(d) if np.ndim(d) == 0 else d

    def closest(self, point: np.ndarray | tuple[float, float]) -> np.ndarray:
        """Point on the line nearest ``point``."""
        point = np.asarray(point, dtype=np.float64)
        return point - self.signed_distance(point) * self.normal

    def endpoints(self, shape: tuple[int, ...]) -> tuple[tuple[int, int], tuple[int, int]] | None:
        """Two (x, y) points where the line crosses an image of ``shape``.

        Used for drawing. Returns None when the line misses the image.
        """
        h, w = shape[:2]
        c, s = np.cos(self.theta), np.sin(self.theta)
        candidates = []
        if abs(s) > 1e-12:
            for x in (0.0, w - 1.0):
                y = (self.rho - x * c) / s
                if 0 <= y <= h - 1:
                    candidates.append((x, y))
        if abs(c) > 1e-12:
            for y in (0.0, h - 1.0):
                x = (self.rho - y * s) / c
                if 0 <= x <= w - 1:
                    candidates.append((x, y))
        if len(candidates) < 2:
            return None
        (x1, y1), (x2, y2) = candidates[0], candidates[-1]
        return (int(round(x1)), int(round(y1))), (int(round(x2)), int(round(y2)))


def minimize(
    objective: Callable[[np.ndarray], float],
    start: np.ndarray | tuple[float, ...],
    what: str,
    max_iter: int = MINIMIZER_MAX_ITER,
) -> np.ndarray:
    """Minimize ``objective`` with Powell's derivative-free method.

    Args:
        objective: Function of the parameter vector
        start: Starting parameters
        what: Description used in the error message
        max_iter: Iteration cap

    Returns:
        Final parameter vector

    Raises:
        MinimizerConvergenceError: If the iteration or evaluation cap is hit
            before the tolerances are met.
    """
    result = scipy.optimize.minimize(
        objective,
        np.asarray(start, dtype=np.float64),
        method="Powell",
        options={
            "maxiter": max_iter,
            "maxfev": max_iter * 20,
            "xtol": MINIMIZER_XTOL,
            "ftol": MINIMIZER_FTOL,
        },
    )
    if not result.success:
        raise MinimizerConvergenceError(what, int(result.nit))
    return np.asarray(result.x, dtype=np.float64)


def perpendicular_error(foot: np.ndarray, points: np.ndarray) -> float:
    """Sum of squared distances from points to the line with foot point ``foot``."""
    norm = max(float(np.hypot(foot[0], foot[1])), 1e-9)
    distances = (points @ foot) / norm - norm
    return float(np.dot(distances, distances))


def fit_polar_line(points: np.ndarray) -> PolarLine:
    """Fit a line through (row, col) points minimizing perpendicular error.

    Raises:
        MinimizerConvergenceError: If the minimizer doesn't converge.
    """
    points = np.asarray(points, dtype=np.float64)
    foot = minimize(
        lambda p: perpendicular_error(p, points),
        LINE_FIT_START,
        what="line fit",
    )
    return PolarLine.from_foot_point(foot[0], foot[1])


@dataclass(frozen=True)
class TrimmedLineFit:
    """Result of the iterative trim-and-refit loop."""

    line: PolarLine | None
    kept: list[int]
    """Indices of the points that remain, in input order."""

    removed: list[int]
    """Indices removed, in removal order."""

    iterations: int


def trim_to_line(points: np.ndarray, max_distance: float) -> TrimmedLineFit:
    """Fit a line, dropping the worst point until all are within ``max_distance``.

    After each fit the point furthest from the line is removed if it lies
    more than ``max_distance`` away, and the line is refitted. The number of
    points strictly decreases each round, so the loop runs at most once per
    input point.

    Args:
        points: (N, 2) array of (row, col) points
        max_distance: Largest accepted perpendicular distance

    Returns:
        TrimmedLineFit; ``line`` is None only when ``points`` is empty.

    Raises:
        MinimizerConvergenceError: If a line fit doesn't converge.
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    kept = list(range(len(points)))
    removed: list[int] = []
    line = None
    iterations = 0

    for iterations in range(1, len(points) + 1):
        line = fit_polar_line(points[kept])
        distances = line.distance(points[kept])
        worst = int(np.argmax(np.atleast_1d(distances)))
        furthest = float(np.atleast_1d(distances)[worst])
        if furthest <= max_distance:
            break
        logger.debug("dropping point %s, %.1f px off line", points[kept[worst]], furthest)
        removed.append(kept.pop(worst))
        if not kept:
            line = None
            break

    return TrimmedLineFit(line=line, kept=kept, removed=removed, iterations=iterations)


def fit_line_robust(
    points: np.ndarray,
    max_distance: float,
    iterations: int = 3,
) -> tuple[PolarLine, np.ndarray]:
    """Least-squares line with batch rejection of far-off points.

    Suited to the many-point film edges where the one-at-a-time trim of
    ``trim_to_line`` would be too slow.

    Args:
        points: (N, 2) array of (row, col) points, N >= 2
        max_distance: Points further than this from the line are rejected
        iterations: Number of fit/reject rounds

    Returns:
        Tuple of (line, kept mask)
    """
    points = np.asarray(points, dtype=np.float64)
    kept = np.ones(len(points), dtype=bool)
    line = PolarLine.from_points(points)
    for _ in range(iterations):
        within = line.distance(points) <= max_distance
        if within.sum() < 2 or np.array_equal(within, kept):
            break
        kept = within
        line = PolarLine.from_points(points[kept])
    return line, kept
