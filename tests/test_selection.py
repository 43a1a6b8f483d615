"""
Tests for model comparison.

Validates:
    1. AIC / BIC equal hand-computed values from the fitted log-likelihood
    2. Entropy is in [0, 1]: 1 for certain rows, 0 for uniform rows
    3. The candidate grid covers every (k, structure) pair once
    4. Comparison rows are sorted by BIC and carry warnings
    5. Invalid options fail before fitting
"""

import math

import numpy as np
import pytest
from scipy.stats import multivariate_normal

from tractlpa.config import LPAConfig
from tractlpa.core import selection
from tractlpa.core.covariance import CovarianceStructure
from tractlpa.core.selection import (
    ModelCandidate,
    best_by,
    candidate_grid,
    classification_entropy,
    compare_solutions,
    comparison_table,
    estimate_profiles,
    information_criteria,
)
from tractlpa.validation import ConfigurationError


def _two_clusters(seed=5):
    """20 points, 2 features, two tight clusters."""
    rng = np.random.default_rng(seed)
    a = rng.normal([-2.0, -2.0], 0.5, size=(10, 2))
    b = rng.normal([2.0, 2.0], 0.5, size=(10, 2))
    return np.vstack([a, b])


def _mixture_log_likelihood(X, model):
    cov = model.covariance_matrices()
    density = sum(
        model.weights[j] * multivariate_normal(model.means[j], cov[j]).pdf(X)
        for j in range(model.n_profiles)
    )
    return float(np.sum(np.log(density)))


class TestInformationCriteria:
    """AIC = -2LL + 2p, BIC = -2LL + p ln N."""

    def test_formula(self):
        ic = information_criteria(-100.0, 7, 20)
        assert ic['aic'] == pytest.approx(214.0)
        assert ic['bic'] == pytest.approx(200.0 + 7 * math.log(20))

    @pytest.mark.parametrize("structure, n_parameters", [(1, 7), (6, 11)])
    def test_against_fitted_model(self, structure, n_parameters):
        X = _two_clusters()
        config = LPAConfig(n_profiles=[2], structures=[structure], n_restarts=3)
        models = estimate_profiles(X, candidate_grid([2], [structure]), config)
        rows = compare_solutions(models)
        model = models[rows[0].candidate]

        ll = _mixture_log_likelihood(X, model)
        assert model.log_likelihood == pytest.approx(ll, rel=1e-8)
        assert rows[0].n_parameters == n_parameters
        assert rows[0].aic == pytest.approx(-2 * ll + 2 * n_parameters, rel=1e-8)
        assert rows[0].bic == pytest.approx(-2 * ll + n_parameters * math.log(20), rel=1e-8)


class TestEntropy:
    """Relative classification entropy."""

    def test_certain_rows(self):
        resp = np.eye(3)[[0, 1, 2, 2, 1]]
        assert classification_entropy(resp) == pytest.approx(1.0)

    def test_uniform_rows(self):
        assert classification_entropy(np.full((8, 4), 0.25)) == pytest.approx(0.0, abs=1e-12)

    def test_single_class(self):
        assert classification_entropy(np.ones((5, 1))) == 1.0

    def test_bounded(self):
        rng = np.random.default_rng(0)
        for k in (2, 3, 6):
            value = classification_entropy(rng.dirichlet(np.ones(k), size=50))
            assert 0.0 <= value <= 1.0


class TestCandidateGrid:
    """Cartesian product of class counts and structures."""

    def test_structure_major_order(self):
        grid = candidate_grid([3, 1, 2, 2], [6, 1])
        assert [(c.structure, c.n_profiles) for c in grid] == [
            (6, 1), (6, 2), (6, 3), (1, 1), (1, 2), (1, 3),
        ]
        assert grid[0].name == "model_6_class_1"

    def test_duplicate_structures_fitted_once(self):
        grid = candidate_grid([2], [2, "VVI", "2"])
        assert grid == [ModelCandidate(2, CovarianceStructure(2))]

    @pytest.mark.parametrize("ks, structures, parameter", [
        ([], [1], "n_profiles"),
        ([0, 1], [1], "n_profiles"),
        ([1], [], "structures"),
        ([1], [9], "structures"),
    ])
    def test_invalid(self, ks, structures, parameter):
        with pytest.raises(ConfigurationError) as excinfo:
            candidate_grid(ks, structures)
        assert excinfo.value.parameter == parameter


class TestComparison:
    """Comparison rows and table."""

    def _models(self):
        X = _two_clusters()
        config = LPAConfig(n_profiles=[1, 2, 3], structures=[1, 2], n_restarts=2, seed=36)
        return estimate_profiles(X, candidate_grid(config.n_profiles, config.structure_ids()), config)

    def test_one_row_per_candidate_sorted_by_bic(self):
        rows = compare_solutions(self._models())
        assert len(rows) == 6
        bics = [r.bic for r in rows]
        assert bics == sorted(bics)

    def test_two_clusters_preferred_over_one(self):
        rows = compare_solutions(self._models())
        by_name = {r.candidate.name: r for r in rows}
        assert by_name["model_1_class_2"].bic < by_name["model_1_class_1"].bic

    def test_diagnostics(self):
        for row in compare_solutions(self._models()):
            assert 0.0 <= row.entropy <= 1.0
            assert 0.0 <= row.n_min <= row.n_max <= 1.0
            assert 0.0 < row.prob_min <= row.prob_max <= 1.0 + 1e-12
            if row.candidate.n_profiles == 1:
                assert row.n_max == 1.0
                assert row.entropy == 1.0

    def test_table_columns(self):
        table = comparison_table(compare_solutions(self._models()))
        assert table.columns[:8] == [
            'Model', 'Classes', 'Structure', 'LogLik', 'Parameters', 'AIC', 'BIC', 'Entropy',
        ]
        assert table.height == 6
        assert table['BIC'].is_sorted()

    def test_unconverged_row_warns(self):
        X = _two_clusters()
        config = LPAConfig(n_profiles=[3], structures=[6], n_restarts=1, max_iter=1, tolerance=1e-12)
        rows = compare_solutions(estimate_profiles(X, candidate_grid([3], [6]), config))
        assert not rows[0].converged
        assert "not converged" in rows[0].warning
        assert best_by(rows) is None

    def test_best_by(self):
        rows = compare_solutions(self._models())
        best = best_by(rows, "bic")
        eligible = [r for r in rows if r.converged and not r.degenerate]
        assert best.bic == min(r.bic for r in eligible)
        with pytest.raises(ConfigurationError):
            best_by(rows, "icl")


class TestFailFast:
    """Options checked before the first fit."""

    def test_restarts_checked_before_fitting(self, monkeypatch):
        def _no_fit(*args, **kwargs):
            raise AssertionError("fitting started")

        monkeypatch.setattr(selection, "run_tasks", _no_fit)
        config = LPAConfig.model_construct(**{**LPAConfig().model_dump(), 'n_restarts': 0})

        with pytest.raises(ConfigurationError) as excinfo:
            estimate_profiles(_two_clusters(), candidate_grid([1, 2], [1]), config)
        assert excinfo.value.parameter == "n_restarts"

    def test_too_many_classes_for_units(self, monkeypatch):
        monkeypatch.setattr(selection, "run_tasks", lambda *a, **k: pytest.fail("fitting started"))
        config = LPAConfig(n_restarts=1)

        with pytest.raises(ConfigurationError) as excinfo:
            estimate_profiles(_two_clusters(), candidate_grid([2, 25], [1]), config)
        assert excinfo.value.parameter == "n_profiles"
