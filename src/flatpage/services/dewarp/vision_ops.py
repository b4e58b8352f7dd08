"""Primitive vision operations used by the dewarp pipeline.

The detector and the remapper receive an instance of ``OpenCVOps`` instead
of calling cv2 directly, so hosts can substitute an instrumented or
accelerated implementation with the same method set.
"""

from __future__ import annotations

import cv2
import numpy as np


class OpenCVOps:
    """Vision primitives backed by OpenCV."""

    def to_gray(self, image: np.ndarray) -> np.ndarray:
        if image.ndim == 2:
            return image
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

    def adaptive_threshold(
        self, gray: np.ndarray, block_size: int, c: float, inverse: bool
    ) -> np.ndarray:
        """Mean adaptive threshold producing a 0/255 mask."""
        return cv2.adaptiveThreshold(
            src=gray,
            maxValue=255,
            adaptiveMethod=cv2.ADAPTIVE_THRESH_MEAN_C,
            thresholdType=cv2.THRESH_BINARY_INV if inverse else cv2.THRESH_BINARY,
            blockSize=block_size,
            C=c,
        )

    def dilate(self, mask: np.ndarray, width: int, height: int, iterations: int = 1) -> np.ndarray:
        """Dilate with a width x height box kernel."""
        kernel = np.ones((height, width), dtype=np.uint8)
        return cv2.dilate(mask, kernel, iterations=iterations)

    def erode(self, mask: np.ndarray, width: int, height: int, iterations: int = 1) -> np.ndarray:
        """Erode with a width x height box kernel."""
        kernel = np.ones((height, width), dtype=np.uint8)
        return cv2.erode(mask, kernel, iterations=iterations)

    def find_contours(self, mask: np.ndarray) -> list[np.ndarray]:
        """Outer contours of a binary mask, every boundary point kept."""
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
        return list(contours)

    def bounding_rect(self, contour: np.ndarray) -> tuple[int, int, int, int]:
        x, y, w, h = cv2.boundingRect(contour)
        return int(x), int(y), int(w), int(h)

    def moments(self, contour: np.ndarray) -> dict[str, float]:
        return cv2.moments(contour)

    def fill_contour(self, mask: np.ndarray, contour: np.ndarray, value: int = 1) -> np.ndarray:
        """Draw a filled contour into *mask* in place and return it."""
        cv2.drawContours(mask, [contour], contourIdx=0, color=value, thickness=-1)
        return mask

    def resize(
        self, image: np.ndarray, size: tuple[int, int], interpolation: int = cv2.INTER_CUBIC
    ) -> np.ndarray:
        """Resize to (width, height)."""
        return cv2.resize(image, size, interpolation=interpolation)

    def remap(self, image: np.ndarray, map_x: np.ndarray, map_y: np.ndarray) -> np.ndarray:
        """Bicubic remap with replicated borders."""
        return cv2.remap(
            image,
            map_x,
            map_y,
            cv2.INTER_CUBIC,
            None,
            cv2.BORDER_REPLICATE,
        )
