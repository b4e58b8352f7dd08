"""Text contour detection for page dewarping.

Adaptive threshold + morphological ops turn glyphs (or ruled lines) into
blobs; each blob that passes the geometric filter becomes a ContourInfo
record with its centroid, principal axis and extent along that axis.

Records live in a flat ContourArena and refer to each other by index, so
the span links are plain integers (-1 = none) rather than object cycles.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from dataclasses import dataclass

import numpy as np

from flatpage import constants as C
from flatpage.services.dewarp.config import DewarpConfig
from flatpage.services.dewarp.vision_ops import OpenCVOps

logger = logging.getLogger(__name__)

NO_LINK: int = -1

MODE_TEXT = "text"
MODE_LINE = "line"


# ── Contour info ─────────────────────────────────────────────────────────────


class ContourInfo:
    """Geometric and orientation data about a single text contour."""

    __slots__ = (
        "index",
        "rect",
        "mask",
        "center",
        "tangent",
        "angle",
        "local_xrng",
        "point0",
        "point1",
        "pred",
        "succ",
    )

    def __init__(
        self,
        points: np.ndarray,
        rect: tuple[int, int, int, int],
        mask: np.ndarray,
        center: np.ndarray,
        tangent: np.ndarray,
    ) -> None:
        self.index = NO_LINK
        self.rect = rect
        self.mask = mask
        self.center = center
        self.tangent = tangent
        self.angle: float = float(np.arctan2(tangent[1], tangent[0]))

        # Extent of the contour along its own axis
        clx = (points - center) @ tangent
        lxmin, lxmax = float(clx.min()), float(clx.max())
        self.local_xrng: tuple[float, float] = (lxmin, lxmax)
        self.point0: np.ndarray = center + tangent * lxmin
        self.point1: np.ndarray = center + tangent * lxmax
        self.pred: int = NO_LINK
        self.succ: int = NO_LINK

    @property
    def width(self) -> float:
        """Length of the contour along its principal axis."""
        return self.local_xrng[1] - self.local_xrng[0]

    def proj_x(self, point: np.ndarray) -> float:
        """Scalar projection of a point onto this contour's tangent axis."""
        return float(np.dot(self.tangent, point - self.center))

    def local_overlap(self, other: ContourInfo) -> float:
        """Overlap of *other* with this contour, measured along this tangent."""
        xmin = self.proj_x(other.point0)
        xmax = self.proj_x(other.point1)
        return min(self.local_xrng[1], xmax) - max(self.local_xrng[0], xmin)

    def sort_key(self) -> tuple[int, int, int, int]:
        """Deterministic (y, x, w, h) ordering key."""
        x, y, w, h = self.rect
        return (y, x, w, h)


class ContourArena:
    """Flat store of ContourInfo records linked by integer indices."""

    def __init__(self, contours: list[ContourInfo] | None = None) -> None:
        self._items: list[ContourInfo] = []
        for cinfo in contours or []:
            self.add(cinfo)

    def add(self, cinfo: ContourInfo) -> int:
        cinfo.index = len(self._items)
        self._items.append(cinfo)
        return cinfo.index

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> ContourInfo:
        return self._items[index]

    def __iter__(self) -> Iterator[ContourInfo]:
        return iter(self._items)

    def reset_links(self) -> None:
        for cinfo in self._items:
            cinfo.pred = NO_LINK
            cinfo.succ = NO_LINK

    def link(self, a: int, b: int) -> bool:
        """Link a -> b if a has no successor and b has no predecessor."""
        ca, cb = self._items[a], self._items[b]
        if ca.succ != NO_LINK or cb.pred != NO_LINK or a == b:
            return False
        ca.succ = b
        cb.pred = a
        return True

    def heads(self) -> list[int]:
        """Indices of contours that start a chain."""
        return [c.index for c in self._items if c.pred == NO_LINK]

    def walk(self, head: int) -> list[int]:
        """Follow successor links from *head* to the end of its chain."""
        chain: list[int] = []
        seen: set[int] = set()
        current = head
        while current != NO_LINK:
            if current in seen:
                raise RuntimeError(f"Contour link cycle detected at index {current}")
            seen.add(current)
            chain.append(current)
            current = self._items[current].succ
        return chain


@dataclass
class DetectionResult:
    """Contours found in one detection pass and the mask they came from."""

    mode: str
    arena: ContourArena
    mask: np.ndarray
    rejected: int = 0

    @property
    def count(self) -> int:
        return len(self.arena)


# ── Contour geometry ─────────────────────────────────────────────────────────


def principal_axis(mu20: float, mu11: float, mu02: float) -> np.ndarray:
    """Unit eigenvector of the largest eigenvalue of [[mu20, mu11], [mu11, mu02]].

    Closed-form 2x2 symmetric eigen-decomposition; the x component is
    never negative.
    """
    if abs(mu11) < 1e-12:
        return np.array([1.0, 0.0]) if mu20 >= mu02 else np.array([0.0, 1.0])

    half_diff = 0.5 * (mu20 - mu02)
    lam = 0.5 * (mu20 + mu02) + math.sqrt(half_diff * half_diff + mu11 * mu11)
    vec = np.array([lam - mu02, mu11], dtype=np.float64)
    vec /= np.linalg.norm(vec)
    if vec[0] < 0:
        vec = -vec
    return vec


def blob_mean_and_tangent(
    contour: np.ndarray, ops: OpenCVOps
) -> tuple[np.ndarray, np.ndarray] | None:
    """Compute centroid and principal orientation of a contour from its moments."""
    moments = ops.moments(contour)
    area = moments["m00"]
    if not area:
        return None
    center = np.array([moments["m10"] / area, moments["m01"] / area])
    tangent = principal_axis(moments["mu20"] / area, moments["mu11"] / area, moments["mu02"] / area)
    return center, tangent


def make_tight_mask(
    contour: np.ndarray, rect: tuple[int, int, int, int], ops: OpenCVOps
) -> np.ndarray:
    """Create a tight 0/1 mask of a contour within its bounding box."""
    xmin, ymin, width, height = rect
    mask = np.zeros((height, width), dtype=np.uint8)
    tight_contour = contour - np.array((xmin, ymin)).reshape((-1, 1, 2))
    return ops.fill_contour(mask, tight_contour, 1)


# ── Detection ────────────────────────────────────────────────────────────────


def build_text_mask(
    small: np.ndarray,
    pagemask: np.ndarray,
    config: DewarpConfig,
    mode: str = MODE_TEXT,
    ops: OpenCVOps | None = None,
) -> np.ndarray:
    """Binary mask of text blobs (text mode) or thick rules (line mode)."""
    ops = ops or OpenCVOps()
    sgray = ops.to_gray(small)

    if mode == MODE_TEXT:
        mask = ops.adaptive_threshold(
            sgray, config.adaptive_threshold_block_size, C.TEXT_THRESHOLD_C, inverse=True
        )
        # Merge glyphs into word blobs, then drop thin vertical bridges
        mask = ops.dilate(mask, 9, 1)
        mask = ops.erode(mask, 1, 3)
    elif mode == MODE_LINE:
        mask = ops.adaptive_threshold(
            sgray, config.adaptive_threshold_block_size, C.LINE_THRESHOLD_C, inverse=True
        )
        mask = ops.erode(mask, 3, 1, iterations=3)
        mask = ops.dilate(mask, 8, 2)
    else:
        raise ValueError(f"Unknown detection mode: {mode}")

    return np.minimum(mask, pagemask)


def detect_contours(
    small: np.ndarray,
    pagemask: np.ndarray,
    config: DewarpConfig,
    mode: str = MODE_TEXT,
    ops: OpenCVOps | None = None,
) -> DetectionResult:
    """Detect and filter text contours on the reduced image.

    Args:
        small: Reduced BGR or gray image.
        pagemask: 0/255 mask of the page region (margins excluded).
        config: Thresholds for the geometric filter.
        mode: "text" for glyph blobs, "line" for ruled lines.
        ops: Vision primitives (OpenCV by default).

    Returns:
        DetectionResult whose arena is ordered by (y, x, w, h). An empty
        arena is a valid result.
    """
    ops = ops or OpenCVOps()
    mask = build_text_mask(small, pagemask, config, mode, ops)

    found: list[ContourInfo] = []
    rejected = 0
    for contour in ops.find_contours(mask):
        rect = ops.bounding_rect(contour)
        _, _, width, height = rect

        if (
            width < config.text_min_width
            or height < config.text_min_height
            or width < config.text_min_aspect * height
        ):
            rejected += 1
            continue

        tight_mask = make_tight_mask(contour, rect, ops)
        if tight_mask.sum(axis=0).max() > config.text_max_thickness:
            rejected += 1
            continue

        result = blob_mean_and_tangent(contour, ops)
        if result is None:
            rejected += 1
            continue

        center, tangent = result
        points = contour.reshape((-1, 2)).astype(np.float64)
        found.append(ContourInfo(points, rect, tight_mask, center, tangent))

    found.sort(key=ContourInfo.sort_key)
    arena = ContourArena(found)
    logger.debug(f"Detected {len(arena)} contours in {mode} mode ({rejected} rejected)")
    return DetectionResult(mode=mode, arena=arena, mask=mask, rejected=rejected)
