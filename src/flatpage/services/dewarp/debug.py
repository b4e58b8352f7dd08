"""Diagnostics, debug bundle and diagnostic renderings for the dewarp pipeline.

Renderings are only produced when the config asks for them and are
returned to the caller inside the result; the pipeline never reads them
back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import cv2
import numpy as np

from flatpage.services.dewarp.contour_detection import MODE_TEXT, ContourArena
from flatpage.services.dewarp.image_utils import norm2pix
from flatpage.services.dewarp.span_assembly import SpanAssemblyStats

logger = logging.getLogger(__name__)

CCOLORS: list[tuple[int, int, int]] = [
    (255, 0, 0),
    (255, 63, 0),
    (255, 127, 0),
    (255, 191, 0),
    (255, 255, 0),
    (191, 255, 0),
    (127, 255, 0),
    (63, 255, 0),
    (0, 255, 0),
    (0, 255, 63),
    (0, 255, 127),
    (0, 255, 191),
    (0, 255, 255),
    (0, 191, 255),
    (0, 127, 255),
    (0, 63, 255),
    (0, 0, 255),
    (63, 0, 255),
    (127, 0, 255),
    (191, 0, 255),
    (255, 0, 255),
    (255, 0, 191),
    (255, 0, 127),
    (255, 0, 63),
]


@dataclass
class DewarpDiagnostics:
    """Counters, objective values and timings of one dewarp run.

    Always returned with the result; cheap to collect.
    """

    input_size: tuple[int, int] = (0, 0)
    working_size: tuple[int, int] = (0, 0)
    scale: int = 1

    # === Detection ===
    detection_mode: str = MODE_TEXT
    text_contours: int = 0
    line_contours: int | None = None
    text_spans: int = 0
    line_spans: int | None = None
    span_stats: SpanAssemblyStats | None = None

    # === Keypoints ===
    n_spans: int = 0
    excluded_spans: int = 0
    n_keypoints: int = 0
    n_params: int = 0

    # === Optimization ===
    optimizer: str = ""
    initial_objective: float | None = None
    final_objective: float | None = None
    optimizer_iterations: int = 0
    optimizer_evaluations: int = 0
    optimizer_converged: bool = False

    # === Page dims ===
    rough_dims: tuple[float, float] | None = None
    page_dims: tuple[float, float] | None = None
    dims_iterations: int = 0
    used_rough_dims: bool = False

    # === Output ===
    output_size: tuple[int, int] | None = None
    output_clamped: bool = False
    invalid_map_points: int = 0

    buffers_released: int = 0
    warnings: list[str] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)


@dataclass
class DebugBundle:
    """Intermediate images of one run, in the order they were produced,
    plus the diagnostics of that run."""

    images: dict[str, np.ndarray] = field(default_factory=dict)
    diagnostics: DewarpDiagnostics | None = None

    def add(self, name: str, image: np.ndarray) -> None:
        self.images[name] = image

    def __len__(self) -> int:
        return len(self.images)

    def save(self, directory: str | Path, prefix: str = "") -> list[Path]:
        """Write every image as PNG into *directory*.

        Returns:
            Paths of the written files.
        """
        out_dir = Path(directory)
        out_dir.mkdir(parents=True, exist_ok=True)
        written: list[Path] = []
        for step, (name, image) in enumerate(self.images.items()):
            path = out_dir / f"{prefix}{step:02d}_{name}.png"
            if not cv2.imwrite(str(path), image):
                raise OSError(f"Could not write debug image {path}")
            written.append(path)
        logger.debug(f"Saved {len(written)} debug images to {out_dir}")
        return written


def _pt(point: np.ndarray) -> tuple[int, int]:
    x, y = np.asarray(point).astype(int).flatten()[:2]
    return int(x), int(y)


def _blend(display: np.ndarray, regions: np.ndarray) -> np.ndarray:
    mask = regions.max(axis=2) != 0
    display[mask] = (display[mask] // 2) + (regions[mask] // 2)
    return display


def _as_bgr(small: np.ndarray) -> np.ndarray:
    if small.ndim == 2:
        return cv2.cvtColor(small, cv2.COLOR_GRAY2BGR)
    return small.copy()


def _paint_contour(regions: np.ndarray, arena: ContourArena, idx: int, color) -> None:
    cinfo = arena[idx]
    x, y, w, h = cinfo.rect
    window = regions[y : y + h, x : x + w]
    window[cinfo.mask.astype(bool)] = color


def visualize_contours(small: np.ndarray, arena: ContourArena) -> np.ndarray:
    """Color every detected contour and draw its center and principal axis."""
    display = _as_bgr(small)
    regions = np.zeros_like(display)
    for j, cinfo in enumerate(arena):
        _paint_contour(regions, arena, cinfo.index, CCOLORS[j % len(CCOLORS)])
    display = _blend(display, regions)

    for cinfo in arena:
        cv2.circle(display, _pt(cinfo.center), 3, (255, 255, 255), 1, cv2.LINE_AA)
        cv2.line(display, _pt(cinfo.point0), _pt(cinfo.point1), (255, 255, 255), 1, cv2.LINE_AA)
    return display


def visualize_spans(
    small: np.ndarray, pagemask: np.ndarray, arena: ContourArena, spans: list[list[int]]
) -> np.ndarray:
    """Color contours by span and darken everything outside the page mask."""
    display = _as_bgr(small)
    regions = np.zeros_like(display)
    for i, span in enumerate(spans):
        for idx in span:
            _paint_contour(regions, arena, idx, CCOLORS[i * 3 % len(CCOLORS)])
    display = _blend(display, regions)
    display[pagemask == 0] //= 4
    return display


def visualize_span_points(
    small: np.ndarray, span_points: list[np.ndarray], corners: np.ndarray
) -> np.ndarray:
    """Draw the sampled keypoints of each span and the page outline."""
    display = _as_bgr(small)
    for i, points in enumerate(span_points):
        pix = norm2pix(small.shape, points, False).reshape((-1, 2))
        for point in pix:
            cv2.circle(display, _pt(point), 3, CCOLORS[i % len(CCOLORS)], -1, cv2.LINE_AA)
        cv2.line(display, _pt(pix[0]), _pt(pix[-1]), (255, 255, 255), 1, cv2.LINE_AA)

    outline = norm2pix(small.shape, corners, True).reshape((-1, 1, 2)).astype(np.int32)
    cv2.polylines(display, [outline], True, (255, 255, 255))
    return display


def draw_correspondences(
    small: np.ndarray, dstpoints: np.ndarray, projpts: np.ndarray
) -> np.ndarray:
    """Observed points in red, projected points in blue, joined by white lines."""
    display = _as_bgr(small)
    dst = norm2pix(small.shape, dstpoints, True).reshape((-1, 2))
    proj = norm2pix(small.shape, projpts, True).reshape((-1, 2))

    for pts, color in ((proj, (255, 0, 0)), (dst, (0, 0, 255))):
        for point in pts:
            cv2.circle(display, _pt(point), 3, color, -1, cv2.LINE_AA)

    for point_a, point_b in zip(proj, dst):
        cv2.line(display, _pt(point_a), _pt(point_b), (255, 255, 255), 1, cv2.LINE_AA)
    return display
