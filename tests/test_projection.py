"""Tests for surface models, the parameter layout and page projection."""

import numpy as np
import pytest

from flatpage.services.dewarp.projection import (
    POSE_SIZE,
    BivariateCubicModel,
    CubicSheetModel,
    PageProjection,
    ParameterLayout,
    ParameterVector,
    camera_matrix,
    make_surface_model,
)
from flatpage.utils.exceptions import ParameterLayoutError


class TestCubicSheetModel:
    """Tests for the cubic page sheet."""

    def test_coefficients(self):
        coeffs = CubicSheetModel().coefficients(np.array([0.2, -0.1]))
        np.testing.assert_array_almost_equal(coeffs, [0.1, -0.3, 0.2, 0.0])

    def test_pinned_at_edges(self):
        model = CubicSheetModel()
        xy = np.array([[0.0, 0.3], [1.0, 0.7]])
        np.testing.assert_array_almost_equal(model.heights(np.array([0.3, 0.4]), xy), [0.0, 0.0])

    def test_slopes_clamped(self):
        coeffs = CubicSheetModel().coefficients(np.array([2.0, -3.0]))
        np.testing.assert_array_almost_equal(coeffs, [0.0, -0.5, 0.5, 0.0])

    def test_flat_initial_shape(self):
        model = CubicSheetModel()
        shape = model.initial_shape()
        assert shape.shape == (2,)
        xy = np.array([[0.25, 0.1], [0.5, 0.9]])
        np.testing.assert_array_equal(model.heights(shape, xy), [0.0, 0.0])

    def test_ignores_y(self):
        model = CubicSheetModel()
        shape = np.array([0.3, -0.2])
        z_top = model.heights(shape, np.array([[0.4, 0.0]]))
        z_bottom = model.heights(shape, np.array([[0.4, 1.5]]))
        np.testing.assert_array_almost_equal(z_top, z_bottom)


class TestBivariateCubicModel:
    """Tests for the bicubic surface."""

    def test_constant_term(self):
        shape = np.zeros(16)
        shape[0] = 0.3
        xy = np.array([[0.1, 0.2], [0.9, 1.4]])
        np.testing.assert_array_almost_equal(
            BivariateCubicModel().heights(shape, xy), [0.3, 0.3]
        )

    def test_mixed_term(self):
        shape = np.zeros(16)
        shape[1 * 4 + 1] = 2.0
        xy = np.array([[0.5, 0.25], [1.0, 1.0]])
        np.testing.assert_array_almost_equal(
            BivariateCubicModel().heights(shape, xy), [0.25, 2.0]
        )

    def test_flat_initial_shape(self):
        assert BivariateCubicModel().initial_shape().shape == (16,)


class TestMakeSurfaceModel:
    def test_known(self):
        assert isinstance(make_surface_model("cubic"), CubicSheetModel)
        assert isinstance(make_surface_model("bivariate"), BivariateCubicModel)

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown surface model"):
            make_surface_model("spline")


class TestParameterLayout:
    """Tests for the flat parameter vector layout."""

    def test_offsets(self):
        layout = ParameterLayout(n_shape=2, n_spans=3, n_keypoints=10)
        assert layout.shape_slice == slice(6, 8)
        assert layout.span_offset == 8
        assert layout.keypoint_offset == 11
        assert layout.size == 21

    def test_bivariate_offsets(self):
        layout = ParameterLayout(n_shape=16, n_spans=3, n_keypoints=10)
        assert layout.span_offset == POSE_SIZE + 16
        assert layout.size == 35

    def test_check_rejects_wrong_length(self):
        layout = ParameterLayout(2, 3, 10)
        with pytest.raises(ParameterLayoutError) as exc_info:
            layout.check(np.zeros(20))
        assert exc_info.value.expected == 21
        assert exc_info.value.actual == 20


class TestParameterVector:
    """Tests for ParameterVector assembly and accessors."""

    def _vector(self):
        return ParameterVector.assemble(
            rvec=np.array([0.1, 0.2, 0.3]),
            tvec=np.array([-0.5, -0.7, 1.2]),
            shape=np.array([0.01, -0.02]),
            span_y=np.array([0.2, 0.6]),
            keypoint_x=[np.array([0.1, 0.5]), np.array([0.2, 0.4, 0.8])],
        )

    def test_assemble(self):
        pvec = self._vector()
        assert len(pvec) == 6 + 2 + 2 + 5
        assert pvec.layout == ParameterLayout(2, 2, 5)

    def test_accessors(self):
        pvec = self._vector()
        np.testing.assert_array_equal(pvec.rvec, [0.1, 0.2, 0.3])
        np.testing.assert_array_equal(pvec.tvec, [-0.5, -0.7, 1.2])
        np.testing.assert_array_equal(pvec.shape, [0.01, -0.02])
        np.testing.assert_array_equal(pvec.span_y, [0.2, 0.6])
        np.testing.assert_array_equal(pvec.keypoint_x, [0.1, 0.5, 0.2, 0.4, 0.8])

    def test_with_values(self):
        pvec = self._vector()
        other = pvec.with_values(np.zeros(len(pvec)))
        assert other.layout == pvec.layout
        assert not other.values.any()
        assert pvec.values.any()

    def test_wrong_length(self):
        with pytest.raises(ParameterLayoutError):
            ParameterVector(ParameterLayout(2, 2, 5), np.zeros(14))

    def test_empty_keypoints(self):
        pvec = ParameterVector.assemble(
            np.zeros(3), np.array([0.0, 0.0, 1.2]), np.zeros(2), np.zeros(0), []
        )
        assert len(pvec) == 8


class TestPageProjection:
    """Tests for projecting page points to the image."""

    def test_camera_matrix(self):
        K = camera_matrix(1.2)
        assert K.dtype == np.float32
        np.testing.assert_array_almost_equal(K, [[1.2, 0, 0], [0, 1.2, 0], [0, 0, 1]])

    def test_frontal_flat_is_translation(self):
        projection = PageProjection(CubicSheetModel(), 1.2)
        pvec = ParameterVector.assemble(
            np.zeros(3), np.array([-0.5, -0.7, 1.2]), np.zeros(2), np.zeros(0), []
        )
        xy = np.array([[0.0, 0.0], [1.0, 0.0], [0.3, 1.4]])
        result = projection.project(xy, pvec)
        assert result.shape == (3, 1, 2)
        np.testing.assert_array_almost_equal(
            result.reshape((-1, 2)), [[-0.5, -0.7], [0.5, -0.7], [-0.2, 0.7]], decimal=5
        )

    def test_curl_moves_points(self):
        projection = PageProjection(CubicSheetModel(), 1.2)
        flat = ParameterVector.assemble(
            np.zeros(3), np.array([-0.5, -0.7, 1.2]), np.zeros(2), np.zeros(0), []
        )
        curled = flat.with_values(np.concatenate((flat.values[:6], [0.3, -0.3])))
        xy = np.array([[0.5, 0.5]])
        assert not np.allclose(projection.project(xy, flat), projection.project(xy, curled))

    def test_keypoint_origin_row(self):
        projection = PageProjection(CubicSheetModel(), 1.2)
        pvec = ParameterVector.assemble(
            np.zeros(3),
            np.array([-0.5, -0.7, 1.2]),
            np.zeros(2),
            np.array([0.4]),
            [np.array([0.1, 0.6])],
        )
        index = np.array([[0, 0], [9, 8], [10, 8]])
        result = projection.project_keypoints(pvec.values, index, 2).reshape((-1, 2))
        np.testing.assert_array_almost_equal(
            result, [[-0.5, -0.7], [-0.4, -0.3], [0.1, -0.3]], decimal=5
        )

    def test_project_keypoints_leaves_values(self):
        projection = PageProjection(CubicSheetModel(), 1.2)
        values = np.array([0, 0, 0, -0.5, -0.7, 1.2, 0, 0, 0.4, 0.1, 0.6], dtype=np.float64)
        before = values.copy()
        projection.project_keypoints(values, np.array([[0, 0], [9, 8], [10, 8]]), 2)
        np.testing.assert_array_equal(values, before)
