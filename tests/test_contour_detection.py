"""Tests for text contour detection and the contour arena."""

import cv2
import numpy as np
import pytest

from flatpage.services.dewarp.config import DewarpConfig
from flatpage.services.dewarp.contour_detection import (
    MODE_LINE,
    MODE_TEXT,
    NO_LINK,
    ContourArena,
    ContourInfo,
    build_text_mask,
    detect_contours,
    principal_axis,
)
from flatpage.services.dewarp.image_utils import page_extents, resize_to_screen

# ── Helpers ──────────────────────────────────────────────────────────────────


def _white(width=500, height=700):
    return np.full((height, width, 3), 255, dtype=np.uint8)


def _detect(small, config=None, mode=MODE_TEXT):
    config = config or DewarpConfig()
    pagemask, _ = page_extents(small.shape, config.x_margin, config.y_margin)
    return detect_contours(small, pagemask, config, mode)


def make_cinfo(x, y, width, height=4):
    """Horizontal contour record without running detection."""
    xs = np.arange(x, x + width, dtype=np.float64)
    points = np.column_stack((xs, np.full_like(xs, y + height / 2)))
    center = np.array([x + (width - 1) / 2, y + height / 2])
    mask = np.ones((height, width), dtype=np.uint8)
    return ContourInfo(points, (x, y, width, height), mask, center, np.array([1.0, 0.0]))


class TestPrincipalAxis:
    """Tests for the closed-form moment eigenvector."""

    def test_horizontal(self):
        np.testing.assert_array_almost_equal(principal_axis(10.0, 0.0, 1.0), [1.0, 0.0])

    def test_vertical(self):
        np.testing.assert_array_almost_equal(principal_axis(1.0, 0.0, 10.0), [0.0, 1.0])

    def test_diagonal(self):
        s = 1.0 / np.sqrt(2.0)
        np.testing.assert_array_almost_equal(principal_axis(1.0, 0.5, 1.0), [s, s])

    def test_negative_slope_points_right(self):
        s = 1.0 / np.sqrt(2.0)
        np.testing.assert_array_almost_equal(principal_axis(1.0, -0.5, 1.0), [s, -s])

    def test_unit_length(self):
        vec = principal_axis(3.0, 1.2, 0.7)
        assert np.linalg.norm(vec) == pytest.approx(1.0)
        assert vec[0] >= 0


class TestDetectContours:
    """Detection on synthetic working images."""

    def test_flat_page_bars(self, flat_page):
        small, scale = resize_to_screen(flat_page, 1280, 700)
        assert scale == 2
        result = _detect(small)
        assert result.mode == MODE_TEXT
        assert result.count == 10
        for cinfo in result.arena:
            x, y, w, h = cinfo.rect
            assert 300 <= w <= 320
            assert h <= 6
            assert abs(cinfo.angle) < 0.01
            assert cinfo.tangent[0] > 0.999

    def test_sorted_top_to_bottom(self, flat_page):
        small, _ = resize_to_screen(flat_page, 1280, 700)
        result = _detect(small)
        ys = [cinfo.rect[1] for cinfo in result.arena]
        assert ys == sorted(ys)
        assert [cinfo.index for cinfo in result.arena] == list(range(10))

    def test_extent_along_axis(self, flat_page):
        small, _ = resize_to_screen(flat_page, 1280, 700)
        cinfo = _detect(small).arena[0]
        assert cinfo.width == pytest.approx(cinfo.rect[2] - 1, abs=1.0)
        assert cinfo.point0[0] < cinfo.center[0] < cinfo.point1[0]

    def test_thick_blob_rejected(self):
        small = _white()
        cv2.rectangle(small, (100, 300), (199, 329), (0, 0, 0), thickness=-1)
        result = _detect(small)
        assert result.count == 0
        assert result.rejected >= 1

    def test_narrow_blob_rejected(self):
        small = _white()
        cv2.rectangle(small, (200, 300), (203, 305), (0, 0, 0), thickness=-1)
        result = _detect(small)
        assert result.count == 0

    def test_text_in_margin_ignored(self):
        small = _white()
        cv2.rectangle(small, (100, 5), (399, 10), (0, 0, 0), thickness=-1)
        result = _detect(small)
        assert result.count == 0

    def test_blank_page(self):
        result = _detect(_white())
        assert result.count == 0
        assert result.rejected == 0

    def test_line_mode(self, flat_page):
        small, _ = resize_to_screen(flat_page, 1280, 700)
        result = _detect(small, mode=MODE_LINE)
        assert result.mode == MODE_LINE
        assert result.count == 10

    def test_unknown_mode(self):
        small = _white()
        pagemask, _ = page_extents(small.shape, 50, 20)
        with pytest.raises(ValueError, match="Unknown detection mode"):
            build_text_mask(small, pagemask, DewarpConfig(), mode="columns")

    def test_mask_respects_page_mask(self, flat_page):
        small, _ = resize_to_screen(flat_page, 1280, 700)
        pagemask, _ = page_extents(small.shape, 50, 20)
        mask = build_text_mask(small, pagemask, DewarpConfig())
        assert mask.shape == pagemask.shape
        assert not mask[pagemask == 0].any()
        assert mask.max() == 255


class TestContourArena:
    """Index-based links between contours."""

    def _arena(self, n=3):
        return ContourArena([make_cinfo(100 + 60 * i, 100, 50) for i in range(n)])

    def test_indices_assigned(self):
        arena = self._arena()
        assert len(arena) == 3
        assert [c.index for c in arena] == [0, 1, 2]

    def test_link_and_walk(self):
        arena = self._arena()
        assert arena.link(0, 1)
        assert arena.link(1, 2)
        assert arena.heads() == [0]
        assert arena.walk(0) == [0, 1, 2]

    def test_link_refuses_second_successor(self):
        arena = self._arena()
        assert arena.link(0, 1)
        assert not arena.link(0, 2)
        assert arena[2].pred == NO_LINK

    def test_link_refuses_second_predecessor(self):
        arena = self._arena()
        assert arena.link(0, 2)
        assert not arena.link(1, 2)

    def test_self_link(self):
        arena = self._arena()
        assert not arena.link(1, 1)

    def test_cycle_detected(self):
        arena = self._arena(2)
        arena.link(0, 1)
        arena.link(1, 0)
        with pytest.raises(RuntimeError, match="cycle"):
            arena.walk(0)

    def test_reset_links(self):
        arena = self._arena()
        arena.link(0, 1)
        arena.reset_links()
        assert arena.heads() == [0, 1, 2]

    def test_local_overlap(self):
        a = make_cinfo(100, 100, 50)
        b = make_cinfo(140, 100, 50)
        c = make_cinfo(200, 100, 50)
        assert a.local_overlap(b) == pytest.approx(9.0)
        assert a.local_overlap(c) < 0

    def test_sort_key(self):
        assert make_cinfo(10, 20, 30, 5).sort_key() == (20, 10, 30, 5)
