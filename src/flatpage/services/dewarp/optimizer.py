"""Reprojection-error minimization over the full parameter vector.

The objective is the sum of squared distances between the observed points
(page origin corner followed by every keypoint) and their projections.
Powell's derivative-free method is the default minimizer; a
Levenberg-Marquardt least-squares solver is available behind the same
interface.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
import scipy.optimize

from flatpage.services.dewarp.projection import PageProjection, ParameterVector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of one minimization.

    Attributes:
        params: Fitted parameter vector
        initial_objective: Objective at the starting point
        final_objective: Objective at the returned point
        iterations: Outer iterations performed
        evaluations: Objective evaluations performed
        converged: Whether the minimizer met its tolerance before the cap
        elapsed: Wall-clock seconds spent
        method: Minimizer name
    """

    params: ParameterVector
    initial_objective: float
    final_objective: float
    iterations: int
    evaluations: int
    converged: bool
    elapsed: float
    method: str


class ReprojectionProblem:
    """Residuals and objective for fitting page parameters to keypoints."""

    def __init__(
        self,
        projection: PageProjection,
        keypoint_index: np.ndarray,
        dstpoints: np.ndarray,
        n_shape: int,
    ) -> None:
        self.projection = projection
        self.keypoint_index = keypoint_index
        self.dstpoints = np.asarray(dstpoints, dtype=np.float64).reshape((-1, 2))
        self.n_shape = n_shape
        self.evaluations = 0

        if len(self.dstpoints) != len(keypoint_index):
            raise ValueError(
                f"{len(self.dstpoints)} observed points for {len(keypoint_index)} index rows"
            )

    def residuals(self, values: np.ndarray) -> np.ndarray:
        """Flattened (x, y) differences between projected and observed points."""
        self.evaluations += 1
        ppts = self.projection.project_keypoints(values, self.keypoint_index, self.n_shape)
        return (ppts.reshape((-1, 2)) - self.dstpoints).ravel()

    def objective(self, values: np.ndarray) -> float:
        """Sum of squared reprojection errors."""
        res = self.residuals(values)
        return float(np.dot(res, res))


class Optimizer(ABC):
    """Minimizer interface shared by every optimization strategy."""

    name: str = ""

    def __init__(self, max_iterations: int, tolerance: float) -> None:
        self.max_iterations = max_iterations
        self.tolerance = tolerance

    @abstractmethod
    def minimize(self, problem: ReprojectionProblem, start: ParameterVector) -> OptimizationResult:
        """Fit *start* to the problem and return the improved vector."""


class PowellOptimizer(Optimizer):
    """Powell's conjugate-direction method (bracketing + Brent line searches)."""

    name = "powell"

    def minimize(self, problem: ReprojectionProblem, start: ParameterVector) -> OptimizationResult:
        t0 = time.perf_counter()
        problem.evaluations = 0
        initial = problem.objective(start.values)

        res = scipy.optimize.minimize(
            problem.objective,
            start.values,
            method="Powell",
            options={"maxiter": self.max_iterations, "ftol": self.tolerance},
        )

        values = np.asarray(res.x, dtype=np.float64)
        final = float(res.fun)
        # Keep the start point if the fit diverged
        if not np.isfinite(final) or final > initial:
            values, final = start.values.copy(), initial

        return OptimizationResult(
            params=start.with_values(values),
            initial_objective=initial,
            final_objective=final,
            iterations=int(res.nit),
            evaluations=problem.evaluations,
            converged=bool(res.success),
            elapsed=time.perf_counter() - t0,
            method=self.name,
        )


class LevenbergMarquardtOptimizer(Optimizer):
    """Damped Gauss-Newton on the residual vector.

    LM needs at least as many residuals as parameters; smaller problems
    fall back to the trust-region reflective solver.
    """

    name = "lm"

    def minimize(self, problem: ReprojectionProblem, start: ParameterVector) -> OptimizationResult:
        t0 = time.perf_counter()
        problem.evaluations = 0
        initial = problem.objective(start.values)

        n_residuals = 2 * len(problem.keypoint_index)
        method = "lm" if n_residuals >= len(start) else "trf"
        # max_nfev counts evaluations, not iterations
        res = scipy.optimize.least_squares(
            problem.residuals,
            start.values,
            method=method,
            ftol=self.tolerance,
            max_nfev=self.max_iterations * (len(start) + 1),
        )

        values = np.asarray(res.x, dtype=np.float64)
        final = problem.objective(values)
        if not np.isfinite(final) or final > initial:
            values, final = start.values.copy(), initial

        return OptimizationResult(
            params=start.with_values(values),
            initial_objective=initial,
            final_objective=final,
            iterations=_least_squares_iterations(res, len(start)),
            evaluations=problem.evaluations,
            converged=bool(res.success),
            elapsed=time.perf_counter() - t0,
            method=self.name,
        )


def _least_squares_iterations(res: scipy.optimize.OptimizeResult, n_params: int) -> int:
    """Outer iterations of a least_squares run.

    Each iteration evaluates one Jacobian. With a finite-difference
    Jacobian the "lm" method reports no Jacobian count; each of its
    iterations spends at least n_params + 1 residual evaluations, so the
    count is derived from nfev as an upper bound.
    """
    if res.njev is not None:
        return int(res.njev)
    return max(1, int(res.nfev) // (n_params + 1))


def make_optimizer(name: str, max_iterations: int, tolerance: float) -> Optimizer:
    """Return the optimizer registered under *name*."""
    optimizers: dict[str, type[Optimizer]] = {
        PowellOptimizer.name: PowellOptimizer,
        LevenbergMarquardtOptimizer.name: LevenbergMarquardtOptimizer,
    }
    try:
        return optimizers[name](max_iterations, tolerance)
    except KeyError:
        raise ValueError(f"Unknown optimizer: {name}") from None


def optimize_params(
    problem: ReprojectionProblem, start: ParameterVector, optimizer: Optimizer
) -> OptimizationResult:
    """Run *optimizer* and log the before/after objective."""
    logger.debug(
        f"Optimizing {len(start)} parameters ({optimizer.name}), "
        f"initial objective {problem.objective(start.values):.6g}"
    )
    result = optimizer.minimize(problem, start)
    logger.info(
        f"Optimization ({result.method}) finished in {result.elapsed:.2f}s: "
        f"{result.initial_objective:.6g} -> {result.final_objective:.6g} "
        f"after {result.iterations} iterations"
    )
    return result
