"""Refine the page width and height after the joint fit.

The rough dimensions come from the corner distances on the flat-page
assumption. Once the surface is fitted, the dimensions are adjusted so
the projected bottom-right page corner lands on the observed one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import scipy.optimize

from flatpage import constants as C
from flatpage.services.dewarp.projection import PageProjection, ParameterVector
from flatpage.utils.exceptions import NumericalDegenerateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageDimsResult:
    """Refined page dimensions.

    Attributes:
        dims: Page (width, height) in normalized units
        iterations: Minimizer iterations used
        used_fallback: True if the rough dimensions were kept
        reason: Why the fallback was taken, empty otherwise
    """

    dims: tuple[float, float]
    iterations: int
    used_fallback: bool = False
    reason: str = ""


def _solve(
    corners: np.ndarray,
    rough_dims: tuple[float, float],
    params: ParameterVector,
    projection: PageProjection,
    max_iterations: int,
) -> tuple[tuple[float, float], int]:
    dst_br = np.asarray(corners, dtype=np.float64).reshape((4, 2))[2]

    def objective(dims: np.ndarray) -> float:
        proj_br = projection.project(dims.reshape((1, 2)), params)
        return float(np.sum((dst_br - proj_br.ravel()) ** 2))

    res = scipy.optimize.minimize(
        objective,
        np.array(rough_dims, dtype=np.float64),
        method="Powell",
        options={"maxiter": max_iterations},
    )
    width, height = (float(v) for v in res.x)

    if not (np.isfinite(width) and np.isfinite(height)):
        raise NumericalDegenerateError("page dims", f"non-finite result ({width}, {height})")
    if width <= 0 or height <= 0:
        raise NumericalDegenerateError(
            "page dims", f"non-positive result ({width:.4g}, {height:.4g})"
        )
    return (width, height), int(res.nit)


def get_page_dims(
    corners: np.ndarray,
    rough_dims: tuple[float, float],
    params: ParameterVector,
    projection: PageProjection,
    max_iterations: int = C.PAGE_DIMS_MAX_ITERATIONS,
) -> PageDimsResult:
    """Solve for the page dimensions, falling back to *rough_dims* on failure.

    Args:
        corners: Observed corners p00, p10, p11, p01 (normalized).
        rough_dims: Flat-page estimate of (width, height).
        params: Fitted parameter vector.
        projection: Projection shared with the optimizer.
        max_iterations: Minimizer iteration cap.
    """
    try:
        dims, iterations = _solve(corners, rough_dims, params, projection, max_iterations)
    except NumericalDegenerateError as e:
        logger.warning(f"{e}; keeping rough page dims {rough_dims[0]:.4f}x{rough_dims[1]:.4f}")
        return PageDimsResult(
            dims=rough_dims, iterations=0, used_fallback=True, reason=e.reason
        )

    logger.debug(f"Page dims {dims[0]:.4f}x{dims[1]:.4f} after {iterations} iterations")
    return PageDimsResult(dims=dims, iterations=iterations)
