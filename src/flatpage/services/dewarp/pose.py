"""Initial camera pose from the four page corners.

The page is assumed flat for this step: a least-squares homography maps
the page rectangle onto the detected corners and is decomposed into a
rotation and translation for a camera with the principal point at the
normalized origin.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from flatpage.utils.exceptions import PoseEstimationFailedError

logger = logging.getLogger(__name__)

_MIN_PAGE_SIZE: float = 1e-6
_MIN_CORNER_AREA: float = 1e-9


@dataclass(frozen=True)
class PoseEstimate:
    """Camera pose relative to the page plane.

    Attributes:
        rvec: Rodrigues rotation vector, shape (3,)
        tvec: Translation, shape (3,)
        rough_dims: Page (width, height) from the corner distances
    """

    rvec: np.ndarray
    tvec: np.ndarray
    rough_dims: tuple[float, float]


def _polygon_area(points: np.ndarray) -> float:
    x, y = points[:, 0], points[:, 1]
    return 0.5 * abs(float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))))


def decompose_homography(
    homography: np.ndarray, focal_length: float
) -> tuple[np.ndarray, np.ndarray]:
    """Split a plane-to-image homography into rotation and translation.

    Returns:
        (rotation matrix 3x3, translation vector (3,))

    Raises:
        PoseEstimationFailedError: If the homography is singular.
    """
    k_inv = np.diag([1.0 / focal_length, 1.0 / focal_length, 1.0])
    hmat = k_inv @ homography

    # Fix the overall sign so the page lies in front of the camera
    if hmat[2, 2] < 0:
        hmat = -hmat

    h1, h2, h3 = hmat[:, 0], hmat[:, 1], hmat[:, 2]
    n1 = float(np.linalg.norm(h1))
    n2 = float(np.linalg.norm(h2))
    if n1 < 1e-12 or n2 < 1e-12 or not np.isfinite(hmat).all():
        raise PoseEstimationFailedError("homography is singular")

    r1 = h1 / n1
    r2 = h2 / n2
    tvec = h3 / (0.5 * (n1 + n2))
    r3 = np.cross(r1, r2)

    rmat = np.column_stack((r1, r2, r3))
    svd_u, _, svd_vt = np.linalg.svd(rmat)
    rmat = svd_u @ svd_vt
    if np.linalg.det(rmat) < 0:
        svd_u[:, -1] = -svd_u[:, -1]
        rmat = svd_u @ svd_vt

    return rmat, tvec


def estimate_pose(corners: np.ndarray, focal_length: float) -> PoseEstimate:
    """Estimate rotation and translation of a flat page from its corners.

    Args:
        corners: Normalized corners p00, p10, p11, p01, shape (4, 2).
        focal_length: Focal length in normalized units.

    Raises:
        PoseEstimationFailedError: For degenerate or collinear corners, or if
            no homography can be fitted.
    """
    corners = np.array(corners, dtype=np.float64).reshape((4, 2))
    if not np.isfinite(corners).all():
        raise PoseEstimationFailedError("page corners are not finite", corners)

    page_width = float(np.linalg.norm(corners[1] - corners[0]))
    page_height = float(np.linalg.norm(corners[3] - corners[0]))
    if page_width < _MIN_PAGE_SIZE or page_height < _MIN_PAGE_SIZE:
        raise PoseEstimationFailedError(
            f"page has zero size ({page_width:.3g} x {page_height:.3g})", corners
        )
    if _polygon_area(corners) < _MIN_CORNER_AREA:
        raise PoseEstimationFailedError("page corners are collinear", corners)

    cube_2d = np.array(
        [[0, 0], [page_width, 0], [page_width, page_height], [0, page_height]],
        dtype=np.float64,
    )

    try:
        homography, _ = cv2.findHomography(cube_2d, corners, 0)
    except cv2.error as e:
        raise PoseEstimationFailedError(f"homography fit failed: {e}", corners) from e
    if homography is None:
        raise PoseEstimationFailedError("homography fit returned no solution", corners)

    rmat, tvec = decompose_homography(homography, focal_length)
    rvec, _ = cv2.Rodrigues(rmat)

    logger.debug(
        f"Pose: rvec={np.round(rvec.ravel(), 4).tolist()}, "
        f"tvec={np.round(tvec, 4).tolist()}, rough dims {page_width:.3f}x{page_height:.3f}"
    )
    return PoseEstimate(
        rvec=rvec.ravel(),
        tvec=tvec.ravel(),
        rough_dims=(page_width, page_height),
    )
