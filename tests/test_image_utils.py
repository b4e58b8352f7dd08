"""Tests for dewarp image and coordinate helpers."""

import gc
import weakref

import numpy as np
import pytest

from flatpage.services.dewarp.image_utils import (
    BufferScope,
    check_margins,
    match_channels,
    norm2pix,
    page_extents,
    pix2norm,
    resize_to_screen,
    round_nearest_multiple,
    to_bgr,
    validate_image,
    working_size,
)
from flatpage.utils.exceptions import ConfigValidationError, InvalidImageError


class TestCoordinateConversion:
    """Tests for pix2norm / norm2pix."""

    def test_center_maps_to_origin(self):
        shape = (700, 500)
        result = pix2norm(shape, np.array([[250.0, 350.0]]))
        np.testing.assert_array_almost_equal(result, [[0.0, 0.0]])

    def test_longer_side_spans_unit_range(self):
        shape = (700, 500)
        result = pix2norm(shape, np.array([[250.0, 0.0], [250.0, 700.0]]))
        np.testing.assert_array_almost_equal(result, [[0.0, -1.0], [0.0, 1.0]])

    def test_shorter_side_scaled_by_longer(self):
        shape = (700, 500)
        result = pix2norm(shape, np.array([[0.0, 350.0]]))
        np.testing.assert_array_almost_equal(result, [[-250.0 / 350.0, 0.0]])

    def test_inverse(self):
        shape = (1400, 1000)
        pts = np.array([[0.0, 0.0], [123.0, 456.0], [999.0, 1399.0]])
        back = norm2pix(shape, pix2norm(shape, pts))
        np.testing.assert_array_almost_equal(back, pts)

    def test_keeps_opencv_point_shape(self):
        shape = (700, 500)
        pts = np.zeros((5, 1, 2))
        assert pix2norm(shape, pts).shape == (5, 1, 2)
        assert norm2pix(shape, pts).shape == (5, 1, 2)

    def test_integer_rounding(self):
        shape = (700, 500)
        result = norm2pix(shape, np.array([[0.0, 0.0]]), as_integer=True)
        assert result.dtype.kind == "i"
        np.testing.assert_array_equal(result, [[250, 350]])


class TestRoundNearestMultiple:
    """Tests for round_nearest_multiple."""

    def test_exact_multiple(self):
        assert round_nearest_multiple(32, 16) == 32

    def test_rounds_up(self):
        assert round_nearest_multiple(33, 16) == 48
        assert round_nearest_multiple(1321.9, 16) == 1328

    def test_zero(self):
        assert round_nearest_multiple(0, 16) == 0


class TestToBgr:
    """Tests for to_bgr input normalization."""

    def test_bgr_passthrough(self):
        img = np.zeros((10, 20, 3), dtype=np.uint8)
        assert to_bgr(img) is img

    def test_gray(self):
        img = np.full((10, 20), 77, dtype=np.uint8)
        result = to_bgr(img)
        assert result.shape == (10, 20, 3)
        assert (result == 77).all()

    def test_bgra_drops_alpha(self):
        img = np.zeros((10, 20, 4), dtype=np.uint8)
        img[..., 0] = 10
        img[..., 3] = 200
        result = to_bgr(img)
        assert result.shape == (10, 20, 3)
        assert (result[..., 0] == 10).all()

    def test_rejects_float(self):
        with pytest.raises(InvalidImageError, match="uint8"):
            to_bgr(np.zeros((10, 10, 3), dtype=np.float32))

    def test_rejects_empty(self):
        with pytest.raises(InvalidImageError, match="non-empty"):
            to_bgr(np.zeros((0, 10, 3), dtype=np.uint8))

    def test_rejects_two_channels(self):
        with pytest.raises(InvalidImageError, match="channel count"):
            to_bgr(np.zeros((10, 10, 2), dtype=np.uint8))

    def test_rejects_non_array(self):
        with pytest.raises(InvalidImageError, match="numpy array"):
            to_bgr([[0, 0], [0, 0]])

    def test_validate_image_accepts_bgra(self):
        validate_image(np.zeros((10, 10, 4), dtype=np.uint8))

    def test_validate_image_rejects_float(self):
        with pytest.raises(InvalidImageError, match="uint8"):
            validate_image(np.zeros((10, 10), dtype=np.float32))


class TestMatchChannels:
    """Tests for match_channels."""

    def test_gray_result_for_bgr_input(self):
        result = match_channels(np.zeros((8, 8), np.uint8), np.zeros((4, 4, 3), np.uint8))
        assert result.shape == (8, 8, 3)

    def test_gray_result_for_bgra_input(self):
        result = match_channels(np.zeros((8, 8), np.uint8), np.zeros((4, 4, 4), np.uint8))
        assert result.shape == (8, 8, 4)
        assert (result[..., 3] == 255).all()

    def test_bgr_result_for_gray_input(self):
        result = match_channels(np.zeros((8, 8, 3), np.uint8), np.zeros((4, 4), np.uint8))
        assert result.shape == (8, 8)

    def test_bgr_result_for_bgr_input(self):
        src = np.zeros((8, 8, 3), np.uint8)
        assert match_channels(src, np.zeros((4, 4, 3), np.uint8)) is src


class TestResizeToScreen:
    """Tests for resize_to_screen."""

    def test_integer_downscale(self):
        img = np.zeros((1400, 1000, 3), dtype=np.uint8)
        small, scale = resize_to_screen(img, 1280, 700)
        assert scale == 2
        assert small.shape == (700, 500, 3)

    def test_ceil_of_ratio(self):
        img = np.zeros((1401, 1000, 3), dtype=np.uint8)
        small, scale = resize_to_screen(img, 1280, 700)
        assert scale == 3

    def test_small_image_untouched(self):
        img = np.zeros((300, 400, 3), dtype=np.uint8)
        small, scale = resize_to_screen(img, 1280, 700)
        assert scale == 1
        assert small is img

    def test_working_size_matches_resize(self):
        img = np.zeros((1401, 999, 3), dtype=np.uint8)
        small, scale = resize_to_screen(img, 1280, 700)
        width, height, expected_scale = working_size(img.shape, 1280, 700)
        assert scale == expected_scale == 3
        assert small.shape[:2] == (height, width)

    def test_working_size_small_image(self):
        assert working_size((300, 400), 1280, 700) == (400, 300, 1)


class TestPageExtents:
    """Tests for page_extents."""

    def test_mask_and_outline(self):
        mask, outline = page_extents((700, 500), 50, 20)
        assert mask.shape == (700, 500)
        assert mask.dtype == np.uint8
        assert mask[350, 250] == 255
        assert mask[10, 250] == 0
        assert mask[350, 10] == 0
        np.testing.assert_array_equal(outline, [[50, 20], [50, 680], [450, 680], [450, 20]])

    def test_zero_margins(self):
        mask, _ = page_extents((100, 80), 0, 0)
        assert mask[0, 0] == 255

    def test_margin_consumes_width(self):
        with pytest.raises(ConfigValidationError, match="x_margin"):
            page_extents((700, 500), 250, 20)

    def test_margin_consumes_height(self):
        with pytest.raises(ConfigValidationError, match="y_margin"):
            page_extents((100, 500), 10, 60)

    def test_check_margins_ok(self):
        check_margins(500, 700, 50, 20)

    def test_check_margins_width(self):
        with pytest.raises(ConfigValidationError, match="500px wide"):
            check_margins(500, 700, 250, 20)


class TestBufferScope:
    """Tests for scoped buffer release."""

    def test_release_on_exit(self):
        with BufferScope("test") as scope:
            scope.track(np.zeros((10, 10), dtype=np.uint8))
            scope.track(np.zeros((4, 4), dtype=np.uint8))
            assert scope.released == 0
        assert scope.released == 2
        assert scope.released_bytes == 116

    def test_release_drops_references(self):
        scope = BufferScope("refs")
        ref = weakref.ref(scope.track(np.zeros((10, 10), dtype=np.uint8)))
        with scope:
            pass
        gc.collect()
        assert ref() is None

    def test_release_on_exception(self):
        scope = BufferScope("failing")
        with pytest.raises(ValueError):
            with scope:
                scope.track(np.zeros((10, 10), dtype=np.uint8))
                raise ValueError("boom")
        assert scope.released == 1
        assert scope.closed

    def test_exception_frames_cleared(self):
        refs = []

        def work(scope):
            buffer = scope.track(np.zeros((64, 64), dtype=np.uint8))
            refs.append(weakref.ref(buffer))
            raise ValueError("boom")

        with pytest.raises(ValueError) as exc_info:
            with BufferScope("failing") as scope:
                work(scope)
        gc.collect()
        assert exc_info.value.__traceback__ is not None
        assert refs[0]() is None

    def test_track_returns_buffer(self):
        buf = np.ones(3)
        with BufferScope() as scope:
            assert scope.track(buf) is buf

    def test_track_after_close(self):
        with BufferScope("done") as scope:
            pass
        with pytest.raises(RuntimeError, match="already closed"):
            scope.track(np.zeros(1))
