"""Data models for sprocket hole detection and frame extraction."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from .exceptions import ConfigurationError
from .film_spec import (
    FILM_FORMATS,
    FilmFormat,
    FilmLayout,
    FilmType,
    SprocketLayout,
    in_pixels,
    sprocket_layout,
)

if TYPE_CHECKING:
    from .film_edge import FilmEdge

__all__ = [
    "Cluster",
    "ExtractionConfig",
    "ExtractionResult",
    "FilmLayout",
    "FilmType",
    "Fit",
    "FrameRecord",
    "HoleSearchResult",
    "HoughSpaceEntry",
    "RejectReason",
    "RejectedFit",
    "SprocketLayout",
]


# =============================================================================
# Configuration
# =============================================================================

_INTEGER = (int, np.integer)
_NUMBER = (int, float, np.integer, np.floating)
_TYPE_NAMES = {_INTEGER: "an integer", _NUMBER: "a number", bool: "true or false"}

_FIELD_TYPES = {
    "resolution_dpi": _INTEGER,
    "low_threshold": _INTEGER,
    "high_threshold": _INTEGER,
    "sigma": _NUMBER,
    "hough_threshold": _INTEGER,
    "cluster_factor": _NUMBER,
    "quant_factor": _NUMBER,
    "reverse_image": bool,
    "allow_interframe_geometry": bool,
    "frame_width_pix": _INTEGER,
    "frame_height_pix": _INTEGER,
    "frame_oversize_mult": _NUMBER,
    "rescale": bool,
    "correct_rotation": bool,
}
_OPTIONAL_FIELDS = {"frame_width_pix", "frame_height_pix"}


@dataclass(frozen=True)
class ExtractionConfig:
    """Complete, immutable configuration for one extraction run.

    Every pipeline stage receives this value explicitly; nothing is read from
    module level state.
    """

    resolution_dpi: int = 3200
    low_threshold: int = 50
    high_threshold: int = 200
    sigma: float = 0.0
    """Gaussian pre-smoothing before the fixed 3x3 blur; 0 disables it."""

    hough_threshold: int = 150
    cluster_factor: float = 0.2
    """Fraction of the hole width within which Hough peaks share a cluster."""

    quant_factor: float = 7.0
    film_type: FilmType = FilmType.SUPER_8
    film_layout: FilmLayout | None = None
    reverse_image: bool = False
    allow_interframe_geometry: bool = True
    frame_width_pix: int | None = None
    frame_height_pix: int | None = None
    frame_oversize_mult: float = 1.0
    rescale: bool = True
    correct_rotation: bool = True

    def validate(self) -> None:
        """Validate the configuration, raising ConfigurationError."""
        for name, expected in _FIELD_TYPES.items():
            value = getattr(self, name)
            if value is None and name in _OPTIONAL_FIELDS:
                continue
            # bool is an int subclass but never a valid number here
            if isinstance(value, bool) is not (expected is bool) or not isinstance(value, expected):
                raise ConfigurationError(
                    f"{name} must be {_TYPE_NAMES[expected]}, got {value!r}"
                )
        if not isinstance(self.film_type, FilmType):
            raise ConfigurationError(f"film_type must be one of {[t.value for t in FilmType]}")
        if self.film_layout is None:
            raise ConfigurationError(
                f"film_layout must be set to one of {[layout.value for layout in FilmLayout]}"
            )
        if not isinstance(self.film_layout, FilmLayout):
            raise ConfigurationError(
                f"film_layout must be one of {[layout.value for layout in FilmLayout]}"
            )
        if self.resolution_dpi <= 0:
            raise ConfigurationError(f"resolution_dpi must be > 0, got {self.resolution_dpi}")
        if not (0 <= self.low_threshold <= 255):
            raise ConfigurationError(f"low_threshold must be 0-255, got {self.low_threshold}")
        if not (0 <= self.high_threshold <= 255):
            raise ConfigurationError(f"high_threshold must be 0-255, got {self.high_threshold}")
        if self.low_threshold >= self.high_threshold:
            raise ConfigurationError(
                f"low_threshold ({self.low_threshold}) must be < high_threshold ({self.high_threshold})"
            )
        if self.sigma < 0:
            raise ConfigurationError(f"sigma must be >= 0, got {self.sigma}")
        if self.hough_threshold < 1:
            raise ConfigurationError(f"hough_threshold must be >= 1, got {self.hough_threshold}")
        if not (0.0 < self.cluster_factor <= 1.0):
            raise ConfigurationError(f"cluster_factor must be in (0, 1], got {self.cluster_factor}")
        if self.quant_factor < 1.0:
            raise ConfigurationError(f"quant_factor must be >= 1, got {self.quant_factor}")
        if self.frame_oversize_mult <= 0:
            raise ConfigurationError(
                f"frame_oversize_mult must be > 0, got {self.frame_oversize_mult}"
            )
        for name in ("frame_width_pix", "frame_height_pix"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be > 0, got {value}")

    # -------------------------------------------------------------------------
    # Derived geometry
    # -------------------------------------------------------------------------

    @property
    def film_format(self) -> FilmFormat:
        return FILM_FORMATS[self.film_type]

    @property
    def sprocket_layout(self) -> SprocketLayout:
        if self.film_layout is None:
            raise ConfigurationError("film_layout is not set")
        return sprocket_layout(self.film_layout, self.reverse_image)

    def pixels(self, mm: float) -> float:
        """Length in pixels at the configured resolution."""
        return in_pixels(mm, self.resolution_dpi)

    @property
    def hole_width_px(self) -> float:
        return self.pixels(self.film_format.hole_width)

    @property
    def hole_height_px(self) -> float:
        return self.pixels(self.film_format.hole_height)

    @property
    def edge_to_center_px(self) -> float:
        """Distance from the sprocket-side film edge to a hole centre."""
        return self.pixels(self.film_format.edge_to_hole) + self.hole_width_px / 2.0

    @property
    def pitch_px(self) -> float:
        return self.pixels(self.film_format.hole_pitch)

    @property
    def min_num_pixels(self) -> int:
        """Fewest edge pixels a hole fit needs: one long side of a hole."""
        return int(max(self.hole_width_px, self.hole_height_px) + 0.5)

    @property
    def max_distance_from_line(self) -> float:
        """Largest distance a hole centre may sit off the fitted hole line."""
        return self.resolution_dpi / 64.0

    @property
    def frame_width(self) -> int:
        if self.frame_width_pix is not None:
            return self.frame_width_pix
        return int(self.pixels(self.film_format.frame_width) + 0.5)

    @property
    def frame_height(self) -> int:
        if self.frame_height_pix is not None:
            return self.frame_height_pix
        return int(self.pixels(self.film_format.frame_height) + 0.5)

    @property
    def output_size(self) -> tuple[int, int]:
        """Output (width, height) of a cut frame including oversize."""
        return (
            int(round(self.frame_width * self.frame_oversize_mult)),
            int(round(self.frame_height * self.frame_oversize_mult)),
        )

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def replace(self, **changes: Any) -> ExtractionConfig:
        """Return a copy with the given fields changed."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict[str, Any], validate: bool = True) -> ExtractionConfig:
        """Create ExtractionConfig from dictionary.

        Enum fields accept their string values ("super8", "tb", ...).
        """
        if not isinstance(data, dict):
            raise ConfigurationError(f"configuration must be a JSON object, got {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"unknown option(s): {', '.join(sorted(unknown))}")

        values = dict(data)
        try:
            if "film_type" in values and not isinstance(values["film_type"], FilmType):
                values["film_type"] = FilmType(values["film_type"])
            if values.get("film_layout") is not None and not isinstance(
                values["film_layout"], FilmLayout
            ):
                values["film_layout"] = FilmLayout(values["film_layout"])
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        config = cls(**values)
        if validate:
            config.validate()
        return config

    @classmethod
    def from_json(cls, json_str: str, validate: bool = True) -> ExtractionConfig:
        """Parse ExtractionConfig from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"invalid JSON: {e}") from e
        return cls.from_dict(data, validate=validate)

    @classmethod
    def from_file(cls, path: str | Path, validate: bool = True) -> ExtractionConfig:
        """Load ExtractionConfig from JSON file."""
        with open(path) as f:
            return cls.from_json(f.read(), validate=validate)

    @classmethod
    def default_json(cls) -> str:
        """Return default configuration as formatted JSON string."""
        return cls().to_json()


# =============================================================================
# Detection results
# =============================================================================


@dataclass(frozen=True)
class HoughSpaceEntry:
    """Accumulator cell that reached the voting threshold."""

    row: float
    col: float
    votes: int
    points: np.ndarray = field(repr=False)
    """(N, 2) array of contributing (row, col) edge pixels."""


@dataclass(frozen=True)
class Cluster:
    """Group of nearby Hough peaks taken to be one candidate hole."""

    entries: tuple[HoughSpaceEntry, ...]
    row: float
    col: float

    @classmethod
    def from_entries(cls, entries: list[HoughSpaceEntry]) -> Cluster:
        """Build a cluster whose centroid is the vote-weighted entry mean."""
        votes = np.array([e.votes for e in entries], dtype=np.float64)
        rows = np.array([e.row for e in entries])
        cols = np.array([e.col for e in entries])
        total = votes.sum()
        return cls(
            entries=tuple(entries),
            row=float((rows * votes).sum() / total),
            col=float((cols * votes).sum() / total),
        )

    @property
    def votes(self) -> int:
        return sum(e.votes for e in self.entries)

    @property
    def points(self) -> np.ndarray:
        """Unique contributing edge pixels of all member entries."""
        stacked = np.concatenate([e.points for e in self.entries], axis=0)
        return np.unique(stacked, axis=0)

    @property
    def center(self) -> tuple[float, float]:
        return (self.row, self.col)


@dataclass(frozen=True)
class Fit:
    """Refined sprocket hole: position, scale, rotation and residuals."""

    row: float
    col: float
    scale: float
    rotation: float
    """Radians, counter-clockwise in image coordinates."""

    edge_points: np.ndarray = field(repr=False)
    std_dev: float
    rank: int = 0

    @property
    def num_edge_points(self) -> int:
        return len(self.edge_points)

    @property
    def center(self) -> tuple[float, float]:
        return (self.row, self.col)

    @classmethod
    def midpoint(cls, first: Fit, second: Fit) -> Fit:
        """Frame reference halfway between two holes (regular 8mm)."""
        return cls(
            row=(first.row + second.row) / 2.0,
            col=(first.col + second.col) / 2.0,
            scale=first.scale,
            rotation=first.rotation,
            edge_points=np.empty((0, 2), dtype=np.int64),
            std_dev=0.0,
        )


class RejectReason(Enum):
    """Why a candidate hole was dropped."""

    TOO_FEW_PIXELS = "too_few_pixels"
    NOT_CONVERGED = "not_converged"
    INTERFRAME_GEOMETRY = "interframe_geometry"


@dataclass(frozen=True)
class RejectedFit:
    """Candidate hole dropped during refinement or validation."""

    reason: RejectReason
    row: float
    col: float
    num_edge_points: int = 0
    fit: Fit | None = field(default=None, repr=False)


@dataclass(frozen=True)
class HoleSearchResult:
    """Outcome of locating the sprocket holes in one image."""

    fits: list[Fit]
    """Retained fits in transport order."""

    rejected: list[RejectedFit]
    clusters: list[Cluster]
    """Clusters that survived edge and line pruning."""

    num_entries: int = 0


@dataclass
class FrameRecord:
    """Metadata for one output frame."""

    index: int
    derived_resolution: float
    dropped: bool = False
    filename: str | None = None

    def to_properties(self, prefix: str) -> dict[str, str]:
        """Return properties keyed under ``prefix`` (e.g. "frames.3")."""
        props = {
            f"{prefix}.resolution": f"{self.derived_resolution:.3f}",
            f"{prefix}.dropped": "true" if self.dropped else "false",
        }
        if self.filename and not self.dropped:
            props[f"{prefix}.filename"] = self.filename
        return props


@dataclass
class ExtractionResult:
    """Frames cut from one scanned strip plus what was learned on the way."""

    frames: list[np.ndarray | None]
    records: list[FrameRecord]
    fits: list[Fit]
    rejected: list[RejectedFit] = field(default_factory=list)
    film_edges: tuple[FilmEdge, FilmEdge] | None = field(default=None, repr=False)
    """(sprocket edge, far edge)."""
    geometry_error: str | None = None
    """Why the strip was skipped, when extraction ran with skip_missing_geometry."""

    @property
    def frame_count(self) -> int:
        return len(self.records)

    @property
    def dropped_count(self) -> int:
        return sum(1 for r in self.records if r.dropped)

    @property
    def average_resolution(self) -> float | None:
        """Mean derived resolution over frames that were not dropped."""
        values = [r.derived_resolution for r in self.records if not r.dropped]
        if not values:
            return None
        return sum(values) / len(values)
