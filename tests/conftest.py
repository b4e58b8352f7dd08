"""Pytest configuration for flatpage tests.

Provides synthetic page images: black text-line bars on white paper,
drawn with OpenCV at full resolution.
"""

import cv2
import numpy as np
import pytest

from flatpage.services.dewarp.config import DewarpConfig

# 1000 px wide, 1400 px tall; reduced by 2 to 500x700 for detection
PAGE_WIDTH = 1000
PAGE_HEIGHT = 1400
N_LINES = 10


def draw_flat_page(width=PAGE_WIDTH, height=PAGE_HEIGHT, n_lines=N_LINES, channels=3):
    """White page with *n_lines* horizontal 600x12 px bars, 100 px apart.

    Coordinates are even so the 1/2 working image stays crisp.
    """
    img = np.full((height, width, 3), 255, dtype=np.uint8)
    for i in range(n_lines):
        y = 200 + 100 * i
        cv2.rectangle(img, (200, y), (799, y + 11), (0, 0, 0), thickness=-1)
    if channels == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)
    if channels == 1:
        return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    return img


def draw_rotated_page(angle=4.0):
    """Flat page rotated counter-clockwise by *angle* degrees about its center."""
    page = draw_flat_page()
    matrix = cv2.getRotationMatrix2D((PAGE_WIDTH / 2, PAGE_HEIGHT / 2), angle, 1.0)
    return cv2.warpAffine(
        page, matrix, (PAGE_WIDTH, PAGE_HEIGHT), borderValue=(255, 255, 255)
    )


@pytest.fixture
def flat_page():
    """Flat, fronto-parallel 1000x1400 page with ten text lines."""
    return draw_flat_page()


@pytest.fixture
def rotated_page():
    """The flat page turned 4 degrees counter-clockwise."""
    return draw_rotated_page()


@pytest.fixture
def blank_page():
    """1000x1400 page without any text."""
    return np.full((PAGE_HEIGHT, PAGE_WIDTH, 3), 255, dtype=np.uint8)


@pytest.fixture
def default_config():
    return DewarpConfig()


@pytest.fixture
def page_factory():
    """Callable building flat pages with custom size, line count or channels."""
    return draw_flat_page
