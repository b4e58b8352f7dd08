"""Parameter vector layout and the page projection model.

The page is a sheet z = f(x, y) in its own coordinate frame, placed in
front of a pinhole camera by a rotation (Rodrigues vector) and a
translation. Every stage that projects page points (the optimizer, the
page-dims solver and the remapper) goes through ``PageProjection`` so the
three always agree.

Parameter vector layout::

    [rvec(3), tvec(3), shape(k), span_y(n_spans), keypoint_x(n_keypoints)]

with k = 2 for the cubic sheet and k = 16 for the bivariate surface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import cv2
import numpy as np

from flatpage import constants as C
from flatpage.utils.exceptions import ParameterLayoutError

POSE_SIZE: int = 6


# ── Surface models ───────────────────────────────────────────────────────────


class SurfaceModel(ABC):
    """Height of the page surface as a function of page coordinates."""

    name: str = ""
    n_shape: int = 0

    def initial_shape(self) -> np.ndarray:
        """Shape parameters of a flat page."""
        return np.zeros(self.n_shape, dtype=np.float64)

    @abstractmethod
    def heights(self, shape_params: np.ndarray, xy: np.ndarray) -> np.ndarray:
        """Return z for each (x, y) row of *xy*."""


class CubicSheetModel(SurfaceModel):
    """Cubic in x only, pinned to zero height at x = 0 and x = 1.

    With slopes a at x = 0 and b at x = 1 the polynomial is
    (a + b) x^3 + (-2a - b) x^2 + a x. Slopes are clamped to
    [-0.5, 0.5] before evaluation.
    """

    name = "cubic"
    n_shape = 2

    def coefficients(self, shape_params: np.ndarray) -> np.ndarray:
        alpha, beta = np.clip(shape_params[:2], -C.SHAPE_PARAM_LIMIT, C.SHAPE_PARAM_LIMIT)
        return np.array([alpha + beta, -2 * alpha - beta, alpha, 0.0])

    def heights(self, shape_params: np.ndarray, xy: np.ndarray) -> np.ndarray:
        return np.polyval(self.coefficients(shape_params), xy[:, 0])


class BivariateCubicModel(SurfaceModel):
    """Full bicubic surface z = sum c[i, j] x^i y^j for i, j in 0..3."""

    name = "bivariate"
    n_shape = 16

    def heights(self, shape_params: np.ndarray, xy: np.ndarray) -> np.ndarray:
        coeffs = np.asarray(shape_params[:16], dtype=np.float64).reshape((4, 4))
        return np.polynomial.polynomial.polyval2d(xy[:, 0], xy[:, 1], coeffs)


def make_surface_model(name: str) -> SurfaceModel:
    """Return the surface model registered under *name*."""
    models: dict[str, type[SurfaceModel]] = {
        CubicSheetModel.name: CubicSheetModel,
        BivariateCubicModel.name: BivariateCubicModel,
    }
    try:
        return models[name]()
    except KeyError:
        raise ValueError(f"Unknown surface model: {name}") from None


# ── Parameter vector ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ParameterLayout:
    """Offsets of each parameter group inside the flat vector."""

    n_shape: int
    n_spans: int
    n_keypoints: int

    @property
    def shape_slice(self) -> slice:
        return slice(POSE_SIZE, POSE_SIZE + self.n_shape)

    @property
    def span_offset(self) -> int:
        return POSE_SIZE + self.n_shape

    @property
    def keypoint_offset(self) -> int:
        return self.span_offset + self.n_spans

    @property
    def size(self) -> int:
        return self.keypoint_offset + self.n_keypoints

    def check(self, values: np.ndarray) -> None:
        """Raise ParameterLayoutError unless *values* has exactly ``size`` entries."""
        if values.ndim != 1 or values.shape[0] != self.size:
            raise ParameterLayoutError(self.size, int(values.size))


class ParameterVector:
    """The flat optimization vector together with its layout."""

    __slots__ = ("layout", "values")

    def __init__(self, layout: ParameterLayout, values: np.ndarray) -> None:
        values = np.asarray(values, dtype=np.float64).ravel()
        layout.check(values)
        self.layout = layout
        self.values = values

    @classmethod
    def assemble(
        cls,
        rvec: np.ndarray,
        tvec: np.ndarray,
        shape: np.ndarray,
        span_y: np.ndarray,
        keypoint_x: list[np.ndarray] | np.ndarray,
    ) -> ParameterVector:
        """Concatenate parameter groups into a vector."""
        xs = np.hstack(keypoint_x) if len(keypoint_x) else np.zeros(0)
        layout = ParameterLayout(len(shape), len(span_y), len(xs))
        values = np.hstack(
            (
                np.asarray(rvec, dtype=np.float64).ravel(),
                np.asarray(tvec, dtype=np.float64).ravel(),
                shape,
                span_y,
                xs,
            )
        )
        return cls(layout, values)

    def __len__(self) -> int:
        return self.values.shape[0]

    def with_values(self, values: np.ndarray) -> ParameterVector:
        return ParameterVector(self.layout, values)

    @property
    def rvec(self) -> np.ndarray:
        return self.values[0:3]

    @property
    def tvec(self) -> np.ndarray:
        return self.values[3:6]

    @property
    def shape(self) -> np.ndarray:
        return self.values[self.layout.shape_slice]

    @property
    def span_y(self) -> np.ndarray:
        return self.values[self.layout.span_offset : self.layout.keypoint_offset]

    @property
    def keypoint_x(self) -> np.ndarray:
        return self.values[self.layout.keypoint_offset :]


# ── Projection ───────────────────────────────────────────────────────────────


def camera_matrix(focal_length: float) -> np.ndarray:
    """Intrinsics with the principal point at the normalized origin."""
    return np.array(
        [[focal_length, 0, 0], [0, focal_length, 0], [0, 0, 1]],
        dtype=np.float32,
    )


class PageProjection:
    """Project page-frame points into normalized image coordinates."""

    def __init__(self, surface: SurfaceModel, focal_length: float) -> None:
        self.surface = surface
        self.focal_length = focal_length
        self.K = camera_matrix(focal_length)
        self._dist = np.zeros(5)

    def project_xy(self, xy_coords: np.ndarray, values: np.ndarray, n_shape: int) -> np.ndarray:
        """Project (x, y) page points using a raw parameter array.

        Args:
            xy_coords: Page points, shape (N, 2).
            values: Flat parameter array (at least pose + shape entries).
            n_shape: Number of shape parameters in *values*.

        Returns:
            Image points in normalized coordinates, shape (N, 1, 2).
        """
        xy_coords = np.asarray(xy_coords, dtype=np.float64).reshape((-1, 2))
        z_coords = self.surface.heights(values[POSE_SIZE : POSE_SIZE + n_shape], xy_coords)
        objpoints = np.hstack((xy_coords, z_coords.reshape((-1, 1))))
        image_points, _ = cv2.projectPoints(
            objpoints, values[0:3], values[3:6], self.K, self._dist
        )
        return image_points

    def project(self, xy_coords: np.ndarray, pvec: ParameterVector) -> np.ndarray:
        """Project page points through a ParameterVector."""
        return self.project_xy(xy_coords, pvec.values, pvec.layout.n_shape)

    def project_keypoints(
        self, values: np.ndarray, keypoint_index: np.ndarray, n_shape: int
    ) -> np.ndarray:
        """Project the page origin and every keypoint.

        Row 0 of *keypoint_index* is the page origin corner, always at (0, 0).
        """
        xy_coords = values[keypoint_index]
        xy_coords[0, :] = 0
        return self.project_xy(xy_coords, values, n_shape)
