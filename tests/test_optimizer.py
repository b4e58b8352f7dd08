"""Tests for the reprojection problem and the minimizers."""

import numpy as np
import pytest

from flatpage.services.dewarp.keypoints import make_keypoint_index
from flatpage.services.dewarp.optimizer import (
    LevenbergMarquardtOptimizer,
    PowellOptimizer,
    ReprojectionProblem,
    make_optimizer,
    optimize_params,
)
from flatpage.services.dewarp.projection import CubicSheetModel, PageProjection, ParameterVector

# ── Helpers ──────────────────────────────────────────────────────────────────

SPAN_Y = np.array([0.2, 0.6, 1.0])
KEYPOINT_X = [np.linspace(0.1, 0.9, 5) for _ in SPAN_Y]


def _true_params():
    return ParameterVector.assemble(
        np.array([0.05, -0.1, 0.02]),
        np.array([-0.5, -0.6, 1.2]),
        np.array([0.1, -0.05]),
        SPAN_Y,
        KEYPOINT_X,
    )


def _problem_and_start():
    """Observed points from a curled page; start from the flat, frontal guess."""
    projection = PageProjection(CubicSheetModel(), 1.2)
    truth = _true_params()
    index = make_keypoint_index(truth.layout, [len(x) for x in KEYPOINT_X])
    dstpoints = projection.project_keypoints(truth.values, index, 2).reshape((-1, 2))
    problem = ReprojectionProblem(projection, index, dstpoints, 2)

    start_values = truth.values.copy()
    start_values[0:3] = 0.0
    start_values[6:8] = 0.0
    return problem, truth.with_values(start_values), truth


class TestReprojectionProblem:
    """Tests for residuals and objective."""

    def test_zero_at_truth(self):
        problem, _, truth = _problem_and_start()
        assert problem.objective(truth.values) == pytest.approx(0.0, abs=1e-10)

    def test_positive_away_from_truth(self):
        problem, start, _ = _problem_and_start()
        assert problem.objective(start.values) > 1e-4

    def test_residual_size(self):
        problem, start, _ = _problem_and_start()
        assert problem.residuals(start.values).shape == (2 * 16,)

    def test_counts_evaluations(self):
        problem, start, _ = _problem_and_start()
        problem.objective(start.values)
        problem.objective(start.values)
        assert problem.evaluations == 2

    def test_mismatched_points(self):
        projection = PageProjection(CubicSheetModel(), 1.2)
        index = np.zeros((4, 2), dtype=int)
        with pytest.raises(ValueError, match="observed points"):
            ReprojectionProblem(projection, index, np.zeros((3, 2)), 2)


class TestOptimizers:
    """Both minimizers reduce the reprojection error."""

    def test_powell(self):
        problem, start, _ = _problem_and_start()
        result = PowellOptimizer(100, 1e-3).minimize(problem, start)
        assert result.method == "powell"
        assert result.final_objective < 0.1 * result.initial_objective
        assert result.evaluations > 0
        assert result.params.layout == start.layout

    def test_levenberg_marquardt(self):
        problem, start, _ = _problem_and_start()
        result = LevenbergMarquardtOptimizer(100, 1e-3).minimize(problem, start)
        assert result.method == "lm"
        assert result.final_objective < 0.1 * result.initial_objective
        assert result.final_objective == pytest.approx(problem.objective(result.params.values))

    def test_levenberg_marquardt_counts_iterations(self):
        problem, start, _ = _problem_and_start()
        result = LevenbergMarquardtOptimizer(100, 1e-3).minimize(problem, start)
        assert result.iterations >= 1
        # One finite-difference Jacobian per iteration
        assert result.iterations * (len(start) + 1) <= result.evaluations

    def test_never_worse_than_start(self):
        problem, _, truth = _problem_and_start()
        result = PowellOptimizer(5, 1e-3).minimize(problem, truth)
        assert result.final_objective <= result.initial_objective

    def test_start_vector_untouched(self):
        problem, start, _ = _problem_and_start()
        before = start.values.copy()
        PowellOptimizer(10, 1e-3).minimize(problem, start)
        np.testing.assert_array_equal(start.values, before)

    def test_optimize_params(self):
        problem, start, _ = _problem_and_start()
        result = optimize_params(problem, start, make_optimizer("powell", 100, 1e-3))
        assert result.final_objective < result.initial_objective


class TestMakeOptimizer:
    def test_known(self):
        assert isinstance(make_optimizer("powell", 10, 1e-3), PowellOptimizer)
        opt = make_optimizer("lm", 20, 1e-4)
        assert isinstance(opt, LevenbergMarquardtOptimizer)
        assert opt.max_iterations == 20
        assert opt.tolerance == 1e-4

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown optimizer"):
            make_optimizer("adam", 10, 1e-3)
