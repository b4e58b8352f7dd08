"""
FlatPage - Custom Exceptions Module

This module defines custom exception classes for specific error cases
in the dewarping engine.
"""


class FlatPageError(Exception):
    """Base exception for all FlatPage errors.

    All custom exceptions should inherit from this class to allow
    catching any FlatPage-specific error.
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message
            details: Optional technical details for debugging
        """
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class ConfigValidationError(FlatPageError):
    """Raised when a dewarp configuration value is invalid.

    Raised before any image processing begins. Values are never clamped.
    """

    def __init__(self, field: str, value: object, reason: str) -> None:
        """Initialize the exception.

        Args:
            field: Name of the configuration field
            value: The rejected value
            reason: Why the value is invalid
        """
        self.field = field
        self.value = value
        self.reason = reason
        msg = f"Invalid configuration value for '{field}': {reason}"
        super().__init__(msg, details=f"value={value!r}")


class InvalidImageError(FlatPageError):
    """Raised when the input buffer is not a supported image."""

    def __init__(self, reason: str, shape: tuple | None = None) -> None:
        """Initialize the exception.

        Args:
            reason: Why the image was rejected
            shape: Optional shape of the rejected buffer
        """
        self.reason = reason
        self.shape = shape
        details = f"shape={shape}" if shape is not None else None
        super().__init__(f"Unsupported image: {reason}", details=details)


class StructureNotFoundError(FlatPageError):
    """Raised when no usable text structure is detected on the page.

    Not fatal: the pipeline reports it as a status and hands back the
    original image.
    """

    def __init__(self, n_contours: int = 0, n_spans: int = 0) -> None:
        """Initialize the exception.

        Args:
            n_contours: Number of text contours detected
            n_spans: Number of usable spans assembled
        """
        self.n_contours = n_contours
        self.n_spans = n_spans
        super().__init__(
            "No text structure found on page",
            details=f"contours={n_contours}, spans={n_spans}",
        )


class NumericalDegenerateError(FlatPageError):
    """Raised when a numerical step produces an unusable result.

    Recovered locally by falling back to the previous estimate.
    """

    def __init__(self, stage: str, reason: str) -> None:
        """Initialize the exception.

        Args:
            stage: Pipeline stage that produced the value
            reason: Description of the degenerate result
        """
        self.stage = stage
        self.reason = reason
        super().__init__(f"Degenerate result in {stage}: {reason}")


class PoseEstimationFailedError(FlatPageError):
    """Raised when the camera pose cannot be recovered from the page corners.

    Fatal for the current invocation.
    """

    def __init__(self, reason: str, corners: object | None = None) -> None:
        """Initialize the exception.

        Args:
            reason: Why pose estimation failed
            corners: Optional page corners that were used
        """
        self.reason = reason
        self.corners = corners
        super().__init__(f"Pose estimation failed: {reason}")


class ResourceExhaustedError(FlatPageError):
    """Raised when a host-imposed resource limit is exceeded."""

    def __init__(self, resource: str, limit: float, used: float | None = None) -> None:
        """Initialize the exception.

        Args:
            resource: Name of the exhausted resource
            limit: The configured limit
            used: Optional amount that was requested or consumed
        """
        self.resource = resource
        self.limit = limit
        self.used = used
        details = f"limit={limit}"
        if used is not None:
            details += f", used={used}"
        super().__init__(f"Resource limit exceeded: {resource}", details=details)


class DewarpTimeoutError(ResourceExhaustedError):
    """Raised when a dewarp run exceeds its deadline."""

    def __init__(self, timeout_seconds: float, phase: str, elapsed: float) -> None:
        """Initialize the exception.

        Args:
            timeout_seconds: The configured deadline
            phase: Phase that was about to start when the deadline passed
            elapsed: Seconds elapsed since the run started
        """
        self.timeout_seconds = timeout_seconds
        self.phase = phase
        self.elapsed = elapsed
        super().__init__("time", limit=timeout_seconds, used=round(elapsed, 3))
        self.message = f"Dewarp timed out after {elapsed:.1f}s before phase '{phase}'"


class ParameterLayoutError(FlatPageError):
    """Raised when a parameter vector does not match its layout.

    This is a programming error, never a recoverable status.
    """

    def __init__(self, expected: int, actual: int) -> None:
        """Initialize the exception.

        Args:
            expected: Length required by the layout
            actual: Length of the vector that was supplied
        """
        self.expected = expected
        self.actual = actual
        super().__init__(
            "Parameter vector length does not match layout",
            details=f"expected={expected}, actual={actual}",
        )


# Exception hierarchy for reference:
#
# FlatPageError
# ├── ConfigValidationError
# ├── InvalidImageError
# ├── StructureNotFoundError
# ├── NumericalDegenerateError
# ├── PoseEstimationFailedError
# ├── ResourceExhaustedError
# │   └── DewarpTimeoutError
# └── ParameterLayoutError
