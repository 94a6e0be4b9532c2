"""Custom exceptions for sprocket hole detection and frame extraction."""


class FrameExtractionError(Exception):
    """Base exception for frame extraction errors."""

    def __init__(self, message: str, user_message: str | None = None):
        super().__init__(message)
        self.user_message = user_message or message


class ImageReadError(FrameExtractionError):
    """Failed to read input image."""

    def __init__(self, path: str):
        super().__init__(
            f"Could not read image: {path}",
            "Could not read image file. The file may be corrupted or in an unsupported format.",
        )


class InvalidImageError(FrameExtractionError):
    """Input raster has dimensions or a sample type the pipeline can't handle."""

    def __init__(self, detail: str):
        super().__init__(
            f"Invalid source image: {detail}",
            "The source image has an unsupported shape or pixel format.",
        )


class ConfigurationError(FrameExtractionError):
    """Configuration is incomplete or inconsistent."""

    def __init__(self, detail: str):
        super().__init__(
            f"Invalid configuration: {detail}",
            f"Invalid configuration: {detail}",
        )


class GeometryNotFoundError(FrameExtractionError):
    """Film edges or sprocket holes could not be located in the image."""

    def __init__(self, detail: str = ""):
        msg = f"Sprocket geometry not found: {detail}" if detail else "Sprocket geometry not found"
        super().__init__(
            msg,
            "Could not locate the sprocket holes. Check the film layout, resolution "
            "and hough threshold settings.",
        )


class MinimizerConvergenceError(FrameExtractionError):
    """Derivative-free minimization hit its iteration cap before converging."""

    def __init__(self, what: str, iterations: int):
        super().__init__(f"Minimizer did not converge for {what} after {iterations} iterations")
        self.iterations = iterations
