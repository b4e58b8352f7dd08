"""Keypoint sampling along text spans.

Each span is sampled at regular horizontal steps (the vertical centroid of
the contour mask in that column). The samples fix a page coordinate frame:
the x axis is the length-weighted mean direction of all spans, and the
page corners are the margin outline projected onto that frame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from flatpage.services.dewarp.contour_detection import ContourArena
from flatpage.services.dewarp.image_utils import pix2norm
from flatpage.services.dewarp.projection import ParameterLayout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpanSamples:
    """Sampled baseline points of the spans that survived sampling.

    Attributes:
        points: One (N, 2) array per span in normalized coordinates
        span_ids: Index of each kept span in the assembled span list
        excluded: Assembled spans dropped for having fewer than 2 samples
    """

    points: list[np.ndarray]
    span_ids: list[int]
    excluded: list[int]

    @property
    def n_spans(self) -> int:
        return len(self.points)

    @property
    def span_counts(self) -> list[int]:
        return [len(pts) for pts in self.points]


@dataclass(frozen=True)
class PageKeypoints:
    """Page frame and initial parameter guesses derived from span samples.

    Attributes:
        corners: Page corners p00, p10, p11, p01 in normalized coordinates, (4, 2)
        x_dir: Unit page x axis
        y_dir: Unit page y axis (x axis rotated by 90 degrees)
        ycoords: Mean y offset of each span from the top page edge
        xcoords: Per-span x offsets of each keypoint from the left page edge
        span_points: The observed samples, one (N, 2) array per span
    """

    corners: np.ndarray
    x_dir: np.ndarray
    y_dir: np.ndarray
    ycoords: np.ndarray
    xcoords: list[np.ndarray]
    span_points: list[np.ndarray]

    @property
    def n_spans(self) -> int:
        return len(self.span_points)

    @property
    def span_counts(self) -> list[int]:
        return [len(pts) for pts in self.span_points]

    @property
    def n_keypoints(self) -> int:
        return int(sum(self.span_counts))

    @property
    def rough_dims(self) -> tuple[float, float]:
        """Page width and height taken from the corner distances."""
        width = float(np.linalg.norm(self.corners[1] - self.corners[0]))
        height = float(np.linalg.norm(self.corners[3] - self.corners[0]))
        return width, height

    def destination_points(self) -> np.ndarray:
        """Observed points to fit: the page origin corner, then every keypoint."""
        return np.vstack([self.corners[0:1]] + self.span_points)


def _freeze(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


def sample_spans(
    shape: tuple[int, ...],
    arena: ContourArena,
    spans: list[list[int]],
    step: int,
) -> SpanSamples:
    """Sample keypoints along spans at regular intervals.

    Within each contour's bounding rectangle, measures the vertical centroid
    of the mask every *step* columns, starting so the samples are centered.
    Columns without mask pixels are skipped. Spans ending up with fewer than
    two samples are excluded.

    Returns:
        SpanSamples with points in normalized coordinates.
    """
    span_points: list[np.ndarray] = []
    span_ids: list[int] = []
    excluded: list[int] = []

    for span_id, span in enumerate(spans):
        contour_points: list[tuple[float, float]] = []
        for idx in span:
            cinfo = arena[idx]
            yvals = np.arange(cinfo.mask.shape[0]).reshape((-1, 1))
            totals = (yvals * cinfo.mask).sum(axis=0)
            col_sums = cinfo.mask.sum(axis=0)
            valid = col_sums > 0
            if not np.any(valid):
                continue
            means = np.zeros(totals.shape, dtype=np.float64)
            means[valid] = totals[valid] / col_sums[valid]

            xmin, ymin = cinfo.rect[:2]
            start = ((len(means) - 1) % step) // 2
            contour_points.extend(
                (x + xmin, means[x] + ymin) for x in range(start, len(means), step) if valid[x]
            )

        if len(contour_points) < 2:
            excluded.append(span_id)
            continue

        pts = np.array(contour_points, dtype=np.float64)
        span_points.append(_freeze(pix2norm(shape, pts)))
        span_ids.append(span_id)

    if excluded:
        logger.debug(f"Excluded {len(excluded)} spans with fewer than 2 samples")
    return SpanSamples(points=span_points, span_ids=span_ids, excluded=excluded)


def keypoints_from_samples(
    shape: tuple[int, ...],
    page_outline: np.ndarray,
    span_points: list[np.ndarray],
) -> PageKeypoints:
    """Derive the page frame, corners and initial offsets from span samples.

    Args:
        shape: Shape of the reduced image the samples were taken on.
        page_outline: Margin outline in reduced-image pixels, (4, 2).
        span_points: Normalized samples, one (N, 2) array per span (non-empty).
    """
    if not span_points:
        raise ValueError("keypoints_from_samples needs at least one span")

    all_evecs = np.zeros(2)
    all_weights = 0.0

    for points in span_points:
        data = np.array(points, dtype=np.float64).reshape((-1, 2))
        _, evec = cv2.PCACompute(data, mean=None, maxComponents=1)
        evec = evec.ravel()
        # PCA sign is arbitrary; point every span axis rightwards before averaging
        if evec[0] < 0:
            evec = -evec
        weight = float(np.linalg.norm(points[-1] - points[0]))
        all_evecs = all_evecs + evec * weight
        all_weights += weight

    if all_weights > 0:
        x_dir = all_evecs / all_weights
    else:
        x_dir = np.array([1.0, 0.0])
    x_norm = np.linalg.norm(x_dir)
    x_dir = x_dir / x_norm if x_norm > 0 else np.array([1.0, 0.0])

    if x_dir[0] < 0:
        x_dir = -x_dir

    y_dir = np.array([-x_dir[1], x_dir[0]])

    pagecoords = pix2norm(shape, np.asarray(page_outline, dtype=np.float64).reshape((-1, 2)))
    px_coords = pagecoords @ x_dir
    py_coords = pagecoords @ y_dir

    px0, px1 = px_coords.min(), px_coords.max()
    py0, py1 = py_coords.min(), py_coords.max()

    p00 = px0 * x_dir + py0 * y_dir
    p10 = px1 * x_dir + py0 * y_dir
    p11 = px1 * x_dir + py1 * y_dir
    p01 = px0 * x_dir + py1 * y_dir
    corners = np.vstack((p00, p10, p11, p01))

    xcoords: list[np.ndarray] = []
    ycoords: list[float] = []
    for points in span_points:
        px = points @ x_dir
        py = points @ y_dir
        xcoords.append(_freeze(px - px0))
        ycoords.append(float(py.mean() - py0))

    return PageKeypoints(
        corners=_freeze(corners),
        x_dir=_freeze(x_dir),
        y_dir=_freeze(y_dir),
        ycoords=_freeze(np.array(ycoords)),
        xcoords=xcoords,
        span_points=list(span_points),
    )


def make_keypoint_index(layout: ParameterLayout, span_counts: list[int]) -> np.ndarray:
    """Map each observed point to its (x, y) slots in the parameter vector.

    Row 0 stands for the page origin corner and is overwritten with (0, 0)
    at projection time; row k >= 1 is the k-th keypoint.

    Returns:
        Integer array of shape (n_keypoints + 1, 2).
    """
    npts = int(sum(span_counts))
    keypoint_index = np.zeros((npts + 1, 2), dtype=int)
    start = 1
    for i, count in enumerate(span_counts):
        end = start + count
        keypoint_index[start:end, 1] = layout.span_offset + i
        start = end
    keypoint_index[1:, 0] = np.arange(npts) + layout.keypoint_offset
    return keypoint_index
