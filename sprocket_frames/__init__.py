"""Sprocket hole detection and frame extraction for scanned 8mm film."""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy import to avoid loading cv2 for CLI subcommands that don't need it."""
    if name in ("extract_frames", "locate_sprocket_holes"):
        from .detection import extract_frames, locate_sprocket_holes
        return {"extract_frames": extract_frames, "locate_sprocket_holes": locate_sprocket_holes}[name]
    if name in ("ExtractionConfig", "ExtractionResult", "FilmLayout", "FilmType", "Fit", "FrameRecord"):
        from . import models
        return getattr(models, name)
    if name == "linear_contrast":
        from .contrast import linear_contrast
        return linear_contrast
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "extract_frames",
    "locate_sprocket_holes",
    "linear_contrast",
    "ExtractionConfig",
    "ExtractionResult",
    "FilmLayout",
    "FilmType",
    "Fit",
    "FrameRecord",
]
