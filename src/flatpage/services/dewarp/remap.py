"""Resample the source image onto the flattened page.

A sparse grid over the page rectangle is projected through the fitted
model, upsampled to the output size, and used as an inverse map into the
full-resolution source.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from flatpage import constants as C
from flatpage.services.dewarp.image_utils import norm2pix, round_nearest_multiple
from flatpage.services.dewarp.projection import PageProjection, ParameterVector
from flatpage.services.dewarp.vision_ops import OpenCVOps

logger = logging.getLogger(__name__)


@dataclass
class RemapResult:
    """Remapped page and bookkeeping about the map.

    Attributes:
        image: Flattened page (gray when thresholded, BGR otherwise)
        width: Output width in pixels
        height: Output height in pixels
        invalid_points: Grid points whose projection was not finite
        clamped: True if the output size was reduced to the size limit
        binarized: True if the bilevel threshold was applied
    """

    image: np.ndarray
    width: int
    height: int
    invalid_points: int = 0
    clamped: bool = False
    binarized: bool = False


def compute_output_size(
    page_dims: tuple[float, float],
    image_height: int,
    output_zoom: float,
    decimate: int,
    max_output_dim: int = C.MAX_OUTPUT_DIM,
) -> tuple[int, int, bool]:
    """Output (width, height) in pixels for the given page dimensions.

    The height follows the page height as seen in the source image, the
    width follows the page aspect ratio; both are multiples of *decimate*.
    If either side exceeds *max_output_dim* both are scaled down together.

    Returns:
        (width, height, clamped)
    """
    page_w, page_h = page_dims
    height = round_nearest_multiple(0.5 * page_h * output_zoom * image_height, decimate)
    height = max(height, decimate)
    width = round_nearest_multiple(height * page_w / page_h, decimate)
    width = max(width, decimate)

    clamped = False
    largest = max(width, height)
    if largest > max_output_dim:
        scale = max_output_dim / largest
        width = max(decimate, int(width * scale) // decimate * decimate)
        height = max(decimate, int(height * scale) // decimate * decimate)
        clamped = True
        logger.debug(f"Output clamped to {width}x{height} (limit {max_output_dim})")

    return width, height, clamped


def build_remap_grid(
    source_shape: tuple[int, ...],
    page_dims: tuple[float, float],
    params: ParameterVector,
    projection: PageProjection,
    width: int,
    height: int,
    decimate: int,
) -> tuple[np.ndarray, np.ndarray, int]:
    """Project the decimated page grid into source pixel coordinates.

    Returns:
        (x map, y map, number of non-finite grid points). Maps are float32
        of shape (height // decimate, width // decimate), non-finite entries
        replaced with 0 and all values clamped to a safe range.
    """
    height_small = max(2, height // decimate)
    width_small = max(2, width // decimate)

    page_x_range = np.linspace(0, page_dims[0], width_small)
    page_y_range = np.linspace(0, page_dims[1], height_small)
    page_x_coords, page_y_coords = np.meshgrid(page_x_range, page_y_range)

    page_xy_coords = np.hstack(
        (page_x_coords.flatten().reshape((-1, 1)), page_y_coords.flatten().reshape((-1, 1)))
    )

    image_points = projection.project(page_xy_coords, params)
    image_points = norm2pix(source_shape, image_points, False)

    image_x_coords = image_points[:, 0, 0].reshape(page_x_coords.shape)
    image_y_coords = image_points[:, 0, 1].reshape(page_y_coords.shape)

    invalid = ~(np.isfinite(image_x_coords) & np.isfinite(image_y_coords))
    n_invalid = int(invalid.sum())
    if n_invalid:
        logger.warning(f"{n_invalid} remap grid points projected to non-finite coordinates")
        image_x_coords[invalid] = 0
        image_y_coords[invalid] = 0

    limit = C.REMAP_COORD_LIMIT
    image_x_coords = np.clip(image_x_coords, -limit, limit).astype(np.float32)
    image_y_coords = np.clip(image_y_coords, -limit, limit).astype(np.float32)
    return image_x_coords, image_y_coords, n_invalid


def binarize(image: np.ndarray, block_size: int, ops: OpenCVOps | None = None) -> np.ndarray:
    """Bilevel rendering of a remapped page (adaptive mean threshold)."""
    ops = ops or OpenCVOps()
    gray = ops.to_gray(image)
    return ops.adaptive_threshold(gray, block_size, C.BINARY_THRESHOLD_C, inverse=False)


def remap_image(
    img: np.ndarray,
    page_dims: tuple[float, float],
    params: ParameterVector,
    projection: PageProjection,
    output_zoom: float = C.OUTPUT_ZOOM,
    decimate: int = C.REMAP_DECIMATE,
    no_binary: bool = False,
    block_size: int = C.ADAPTIVE_WINSZ,
    max_output_dim: int = C.MAX_OUTPUT_DIM,
    ops: OpenCVOps | None = None,
) -> RemapResult:
    """Produce the flattened page from the full-resolution source.

    Args:
        img: Full-resolution BGR source.
        page_dims: Refined page (width, height).
        params: Fitted parameter vector.
        projection: Projection shared with the optimizer.
        output_zoom: Output scale factor.
        decimate: Sparse-grid step in output pixels.
        no_binary: Keep the color remap instead of thresholding it.
        block_size: Adaptive threshold block size for the bilevel output.
        max_output_dim: Largest allowed output side.
        ops: Vision primitives (OpenCV by default).
    """
    ops = ops or OpenCVOps()
    width, height, clamped = compute_output_size(
        page_dims, img.shape[0], output_zoom, decimate, max_output_dim
    )
    logger.debug(f"Output will be {width}x{height}")

    small_x, small_y, n_invalid = build_remap_grid(
        img.shape, page_dims, params, projection, width, height, decimate
    )
    map_x = ops.resize(small_x, (width, height), cv2.INTER_CUBIC)
    map_y = ops.resize(small_y, (width, height), cv2.INTER_CUBIC)

    remapped = ops.remap(img, map_x, map_y)
    binarized = not no_binary
    if binarized:
        remapped = binarize(remapped, block_size, ops)

    return RemapResult(
        image=remapped,
        width=width,
        height=height,
        invalid_points=n_invalid,
        clamped=clamped,
        binarized=binarized,
    )
