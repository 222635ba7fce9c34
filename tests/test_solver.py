#!/usr/bin/env python
# coding: utf-8


"""
Tests for methylcc.core.solver.

Covers:
- Exact recovery when the unconstrained optimum lies on the simplex.
- Boundary solutions and optimality against a dense simplex grid.
- Rank-deficient and malformed inputs.
"""


import numpy as np
import pytest

from methylcc.core.exceptions import (
    InsufficientSignalError,
    RankDeficientSignatureError,
)
from methylcc.core.solver import check_signature_rank, solve_proportions


def _objective(pi, target, Z, w=None):
    resid = Z @ pi - target
    w = np.ones_like(target) if w is None else w
    return float(np.sum(w * resid**2))


class TestSolveProportions:
    """Test the simplex-constrained least-squares solver"""

    def setup_method(self):
        self.Z = np.array(
            [
                [1.0, 0.0, 0.0],
                [1.0, 0.0, 0.0],
                [0.0, 1.0, 0.0],
                [0.0, 1.0, 1.0],
                [0.0, 0.0, 1.0],
                [1.0, 1.0, 0.0],
            ]
        )

    def test_interior_solution_is_exact(self):
        truth = np.array([0.2, 0.5, 0.3])
        pi = solve_proportions(self.Z @ truth, self.Z)
        np.testing.assert_allclose(pi, truth, atol=1e-10)

    def test_interior_solution_with_weights(self):
        truth = np.array([0.6, 0.1, 0.3])
        weights = np.array([0.5, 2.0, 1.0, 3.0, 0.1, 1.0])
        pi = solve_proportions(self.Z @ truth, self.Z, weights=weights)
        np.testing.assert_allclose(pi, truth, atol=1e-10)

    def test_vertex_solution(self):
        target = np.array([1.0, 1.0, -0.5, -0.5, -0.5, 1.0])
        pi = solve_proportions(target, self.Z)
        np.testing.assert_allclose(pi, [1.0, 0.0, 0.0], atol=1e-10)

    def test_output_on_simplex(self):
        rng = np.random.default_rng(3)
        for _ in range(20):
            target = rng.uniform(-1, 2, size=self.Z.shape[0])
            pi = solve_proportions(target, self.Z)
            assert pi.shape == (3,)
            assert np.all(pi >= 0)
            assert abs(pi.sum() - 1.0) < 1e-12

    def test_optimal_against_simplex_grid(self):
        rng = np.random.default_rng(11)
        Z = rng.uniform(0, 1, size=(12, 3))
        target = rng.uniform(0, 1, size=12)
        weights = rng.uniform(0.1, 2.0, size=12)
        pi = solve_proportions(target, Z, weights=weights)
        best = _objective(pi, target, Z, weights)

        grid = np.linspace(0, 1, 101)
        for p0 in grid:
            for p1 in grid[grid <= 1 - p0 + 1e-12]:
                cand = np.array([p0, p1, max(0.0, 1 - p0 - p1)])
                assert best <= _objective(cand, target, Z, weights) + 1e-10

    def test_rank_deficient_signature(self):
        Z = np.array([[1.0, 1.0], [0.0, 0.0], [1.0, 1.0]])
        with pytest.raises(RankDeficientSignatureError):
            solve_proportions(np.array([0.5, 0.1, 0.5]), Z)

    def test_fewer_regions_than_celltypes(self):
        Z = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        with pytest.raises(InsufficientSignalError):
            solve_proportions(np.array([0.2, 0.8]), Z)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            solve_proportions(np.zeros(3), self.Z)

    def test_nonfinite_target(self):
        target = np.full(self.Z.shape[0], 0.5)
        target[2] = np.nan
        with pytest.raises(ValueError):
            solve_proportions(target, self.Z)

    def test_negative_weights_rejected(self):
        weights = -np.ones(self.Z.shape[0])
        with pytest.raises(ValueError):
            solve_proportions(np.zeros(self.Z.shape[0]), self.Z, weights=weights)

    def test_check_signature_rank_passes(self):
        check_signature_rank(self.Z)
