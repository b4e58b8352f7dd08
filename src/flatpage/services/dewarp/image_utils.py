"""Image buffer and coordinate helpers for the dewarp pipeline.

Normalized coordinates put the origin at the image center and scale the
longer side to the range [-1, 1]; every geometric stage works in them so
that fitted parameters do not depend on the working resolution.
"""

from __future__ import annotations

import logging
import math
import traceback
from types import TracebackType

import cv2
import numpy as np

from flatpage.utils.exceptions import ConfigValidationError, InvalidImageError

logger = logging.getLogger(__name__)


# ── Coordinate conversion ────────────────────────────────────────────────────


def pix2norm(shape: tuple[int, ...], pts: np.ndarray) -> np.ndarray:
    """Convert pixel coordinates to normalized page coordinates."""
    height, width = shape[:2]
    scl = 2.0 / max(height, width)
    offset = np.array([width, height], dtype=np.float64) * 0.5
    return (np.asarray(pts, dtype=np.float64) - offset) * scl


def norm2pix(shape: tuple[int, ...], pts: np.ndarray, as_integer: bool = False) -> np.ndarray:
    """Convert normalized page coordinates back to pixel coordinates.

    Args:
        shape: Shape of the target image.
        pts: Points shaped (..., 2).
        as_integer: Round half up to integer pixels.
    """
    height, width = shape[:2]
    scl = max(height, width) * 0.5
    offset = np.array([0.5 * width, 0.5 * height], dtype=np.float64)
    rval = np.asarray(pts, dtype=np.float64) * scl + offset
    if as_integer:
        return (rval + 0.5).astype(int)
    return rval


def round_nearest_multiple(i: float, factor: int) -> int:
    """Round *i* up to the nearest multiple of *factor*."""
    i = int(i)
    rem = i % factor
    if not rem:
        return i
    return i + factor - rem


# ── Buffer conversion ────────────────────────────────────────────────────────


def validate_image(image: np.ndarray) -> None:
    """Check that *image* is a non-empty gray, BGR or BGRA uint8 buffer.

    Raises:
        InvalidImageError: For empty buffers, non-uint8 data or other channel counts.
    """
    if not isinstance(image, np.ndarray):
        raise InvalidImageError(f"expected numpy array, got {type(image).__name__}")
    if image.dtype != np.uint8:
        raise InvalidImageError(f"expected uint8 pixels, got {image.dtype}", image.shape)
    if image.ndim not in (2, 3) or image.shape[0] == 0 or image.shape[1] == 0:
        raise InvalidImageError("expected a non-empty 2D image", image.shape)
    if image.ndim == 3 and image.shape[2] not in (3, 4):
        raise InvalidImageError(f"unsupported channel count {image.shape[2]}", image.shape)


def to_bgr(image: np.ndarray) -> np.ndarray:
    """Return a 3-channel BGR view of a gray, BGR or BGRA buffer."""
    validate_image(image)
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    return image


def match_channels(result: np.ndarray, like: np.ndarray) -> np.ndarray:
    """Convert a pipeline result into the channel layout of the input buffer.

    The remapper produces either a gray (bilevel) or a BGR image; 4-channel
    inputs get an opaque alpha channel back, 3-channel inputs get BGR.
    """
    if like.ndim == 2:
        if result.ndim == 3:
            return cv2.cvtColor(result, cv2.COLOR_BGR2GRAY)
        return result

    channels = like.shape[2]
    if result.ndim == 2:
        code = cv2.COLOR_GRAY2BGRA if channels == 4 else cv2.COLOR_GRAY2BGR
        return cv2.cvtColor(result, code)
    if channels == 4:
        return cv2.cvtColor(result, cv2.COLOR_BGR2BGRA)
    return result


# ── Working resolution ───────────────────────────────────────────────────────


def working_size(shape: tuple[int, ...], max_width: int, max_height: int) -> tuple[int, int, int]:
    """Size of the working image for a source of *shape*.

    Returns:
        (width, height, integer scale factor), matching what
        ``resize_to_screen`` produces.
    """
    height, width = shape[:2]
    scl = int(math.ceil(max(float(width) / max_width, float(height) / max_height)))
    if scl > 1:
        inv_scl = 1.0 / scl
        return int(round(width * inv_scl)), int(round(height * inv_scl)), scl
    return width, height, 1


def resize_to_screen(src: np.ndarray, max_width: int, max_height: int) -> tuple[np.ndarray, int]:
    """Downscale by an integer factor so the image fits the working size.

    Returns:
        (reduced image, integer scale factor). A factor of 1 returns the
        input itself.
    """
    _, _, scl = working_size(src.shape, max_width, max_height)
    if scl > 1:
        inv_scl = 1.0 / scl
        return cv2.resize(src, (0, 0), None, inv_scl, inv_scl, cv2.INTER_AREA), scl
    return src, 1


def check_margins(width: int, height: int, x_margin: int, y_margin: int) -> None:
    """Raise ConfigValidationError if the margins leave no page interior."""
    if width - 2 * x_margin < 2:
        raise ConfigValidationError(
            "x_margin", x_margin, f"leaves no page interior in a {width}px wide image"
        )
    if height - 2 * y_margin < 2:
        raise ConfigValidationError(
            "y_margin", y_margin, f"leaves no page interior in a {height}px tall image"
        )


def page_extents(
    shape: tuple[int, ...], x_margin: int, y_margin: int
) -> tuple[np.ndarray, np.ndarray]:
    """Build the page mask and outline inset by the configured margins.

    Returns:
        (page mask uint8 with 255 inside, outline as 4 points
        [(xmin, ymin), (xmin, ymax), (xmax, ymax), (xmax, ymin)]).

    Raises:
        ConfigValidationError: If the margins leave no page interior.
    """
    height, width = shape[:2]
    check_margins(width, height, x_margin, y_margin)
    xmin, ymin = x_margin, y_margin
    xmax, ymax = width - x_margin, height - y_margin

    pagemask = np.zeros((height, width), dtype=np.uint8)
    cv2.rectangle(pagemask, (xmin, ymin), (xmax, ymax), color=255, thickness=-1)

    outline = np.array([[xmin, ymin], [xmin, ymax], [xmax, ymax], [xmax, ymin]])
    return pagemask, outline


# ── Scoped buffers ───────────────────────────────────────────────────────────


class BufferScope:
    """Track temporary image buffers and release them when the scope exits.

    The scope only drops its own references; buffers held by local names
    live as long as their frame, so run the work in a function that
    returns before the scope exits. On an exception the locals of every
    frame in the traceback below the ``with`` statement are cleared, so a
    failed run does not keep large intermediates alive through the
    traceback.

    Example:
        with BufferScope("detect") as scope:
            gray = scope.track(cv2.cvtColor(small, cv2.COLOR_BGR2GRAY))
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._buffers: list[np.ndarray] = []
        self.released = 0
        self.released_bytes = 0
        self.closed = False

    def track(self, buffer: np.ndarray) -> np.ndarray:
        """Register a buffer for release and return it unchanged."""
        if self.closed:
            raise RuntimeError(f"Buffer scope '{self.name}' is already closed")
        self._buffers.append(buffer)
        return buffer

    def release(self) -> int:
        """Drop all tracked buffers. Returns how many were released."""
        count = len(self._buffers)
        self.released_bytes += sum(int(b.nbytes) for b in self._buffers)
        self.released += count
        self._buffers.clear()
        return count

    def __enter__(self) -> BufferScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        count = self.release()
        self.closed = True
        if tb is not None:
            # Frames still executing are skipped
            traceback.clear_frames(tb)
        if count:
            logger.debug(
                f"Released {count} buffers ({self.released_bytes / 1024:.0f} KiB)"
                f" from scope '{self.name}'"
            )
