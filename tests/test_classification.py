"""
Tests for class assignment and the result merge.

Validates:
    1. Class = argmax of the posterior row, 1-based, ties to the lowest class
    2. One classification row per fitted unit
    3. Merged table: fixed column order, rounding, identifier alignment
"""

import numpy as np
import polars as pl
import pytest

from tractlpa.core.classification import (
    assign_classes,
    assign_labels,
    class_counts,
    profile_estimates,
)
from tractlpa.core.covariance import CovarianceStructure
from tractlpa.core.features import RESIDENTIAL_FEATURES
from tractlpa.core.merge import default_column_order, merge_results
from tractlpa.core.mixture import FittedModel
from tractlpa.core.normalization import standardize
from tractlpa.validation import InputError


def _model(resp, structure=CovarianceStructure(6), d=2):
    """FittedModel around a fixed posterior matrix."""
    resp = np.asarray(resp, dtype=np.float64)
    n, k = resp.shape
    cov = np.repeat(np.array([[1.0, 0.3], [0.3, 2.0]])[None], k, axis=0)
    if structure == CovarianceStructure(2):
        cov = np.array([[1.0, 2.0]] * k)
    return FittedModel(
        n_profiles=k,
        structure=structure,
        weights=np.full(k, 1.0 / k),
        means=np.arange(k * d, dtype=np.float64).reshape(k, d),
        covariances=cov,
        log_likelihood=-10.0,
        n_iter=3,
        converged=True,
        degenerate=False,
        regularized=False,
        responsibilities=resp,
        log_likelihood_history=(-12.0, -10.5, -10.0),
        restart=0,
        seed=36,
    )


def _features(n=6, seed=1):
    """Feature table shaped like build_features output."""
    rng = np.random.default_rng(seed)
    data = {'identifier': [f"0600{i:02d}" for i in range(n)], 'name': [f"Tract {i}" for i in range(n)]}
    for spec in RESIDENTIAL_FEATURES:
        ratios = rng.uniform(0.05, 0.95, n)
        data[spec.ratio_name] = ratios
        data[spec.name] = [spec.apply(r) for r in ratios]
    return pl.DataFrame(data)


class TestAssignLabels:
    """Hard assignment from posteriors."""

    def test_argmax_one_based(self):
        resp = np.array([[0.1, 0.7, 0.2], [0.6, 0.3, 0.1], [0.2, 0.2, 0.6]])
        assert assign_labels(resp).tolist() == [2, 1, 3]

    def test_ties_go_to_lowest_class(self):
        resp = np.array([[0.5, 0.5], [0.2, 0.8]])
        assert assign_labels(resp).tolist() == [1, 2]
        assert assign_labels(np.full((1, 3), 1 / 3)).tolist() == [1]


class TestAssignClasses:
    """Posterior table per unit."""

    def test_columns_and_values(self):
        resp = [[0.9, 0.1], [0.4, 0.6], [0.5, 0.5]]
        out = assign_classes(_model(resp), ['a', 'b', 'c'])

        assert out.columns == ['identifier', 'Class', 'CPROB1', 'CPROB2']
        assert out['Class'].to_list() == [1, 2, 1]
        assert out['Class'].dtype == pl.Int64
        assert out['CPROB2'].to_list() == pytest.approx([0.1, 0.6, 0.5])

    def test_length_mismatch(self):
        with pytest.raises(InputError):
            assign_classes(_model([[1.0, 0.0]]), ['a', 'b'])

    def test_counts_include_empty_classes(self):
        out = assign_classes(_model([[0.9, 0.1, 0.0], [0.8, 0.1, 0.1]]), ['a', 'b'])
        counts = class_counts(out, n_profiles=3)
        assert counts['Class'].to_list() == [1, 2, 3]
        assert counts['n'].to_list() == [2, 0, 0]
        assert counts['proportion'].to_list() == pytest.approx([1.0, 0.0, 0.0])


class TestProfileEstimates:
    """Long table of class parameters."""

    def test_full_structure(self):
        table = profile_estimates(_model([[0.5, 0.5]]), ['z_a', 'z_b'])
        assert table.height == 2 * (2 + 2 + 1)
        cov_rows = table.filter(pl.col('Category') == 'Covariances')
        assert cov_rows['Parameter'].to_list() == ['z_a WITH z_b'] * 2
        assert cov_rows['Estimate'].to_list() == pytest.approx([0.3, 0.3])

    def test_diagonal_structure_has_no_covariances(self):
        table = profile_estimates(_model([[0.5, 0.5]], CovarianceStructure(2)), ['z_a', 'z_b'])
        assert set(table['Category'].to_list()) == {'Means', 'Variances'}
        variances = table.filter((pl.col('Category') == 'Variances') & (pl.col('Class') == 2))
        assert variances['Estimate'].to_list() == pytest.approx([1.0, 2.0])

    def test_name_count_mismatch(self):
        with pytest.raises(InputError):
            profile_estimates(_model([[0.5, 0.5]]), ['z_a'])

    def test_labels_name_variables(self):
        table = profile_estimates(_model([[0.5, 0.5]]), ['z_a', 'z_b'], ['Alpha', 'Beta'])
        assert table.columns == ['Category', 'Parameter', 'Variable', 'Estimate', 'Class']
        class1 = table.filter(pl.col('Class') == 1)
        assert class1['Variable'].to_list() == ['Alpha', 'Beta', 'Alpha', 'Beta', 'Alpha WITH Beta']

    def test_variable_defaults_to_column_name(self):
        table = profile_estimates(_model([[0.5, 0.5]]), ['z_a', 'z_b'])
        assert table['Variable'].to_list() == table['Parameter'].to_list()

    def test_label_count_mismatch(self):
        with pytest.raises(InputError):
            profile_estimates(_model([[0.5, 0.5]]), ['z_a', 'z_b'], ['Alpha'])


class TestMergeResults:
    """Presentation table."""

    def _inputs(self, n=6):
        features = _features(n)
        columns = [spec.name for spec in RESIDENTIAL_FEATURES]
        standardized = standardize(features.select(columns).to_numpy(), columns)
        resp = np.tile([[0.12345678, 0.87654322]], (n, 1))
        assignments = assign_classes(_model(resp), features['identifier'].to_list())
        return features, standardized, assignments

    def test_column_order(self):
        merged = merge_results(*self._inputs())
        assert merged.columns == [
            'GEOID', 'NAME', 'Class',
            'z_fborn', 'prop_native',
            'z_remin', 'prop_white',
            'z_travel_at', 'prop_travel_car',
            'z_educ', 'prop_educ',
            'z_single_unit_detached', 'prop_single_unit_detached',
            'CPROB1', 'CPROB2',
        ]
        assert default_column_order() == merged.columns[:-2]

    def test_rounding(self):
        merged = merge_results(*self._inputs(), digits=3)
        assert merged['CPROB1'].to_list() == pytest.approx([0.123] * 6)
        for col in ('z_fborn', 'prop_white', 'z_educ'):
            values = merged[col].to_numpy()
            np.testing.assert_allclose(values, np.round(values, 3))

    def test_one_row_per_unit(self):
        features, standardized, assignments = self._inputs()
        merged = merge_results(features, standardized, assignments)
        assert merged.height == features.height
        assert merged['GEOID'].to_list() == features['identifier'].to_list()
        assert merged['Class'].to_list() == [2] * 6

    def test_z_columns_match_standardized(self):
        features, standardized, assignments = self._inputs()
        merged = merge_results(features, standardized, assignments, digits=10)
        np.testing.assert_allclose(
            merged['z_travel_at'].to_numpy(), np.round(standardized.values[:, 2], 10)
        )

    def test_custom_column_names(self):
        merged = merge_results(*self._inputs(), id_column='tract', name_column='label')
        assert merged.columns[:3] == ['tract', 'label', 'Class']

    def test_misaligned_identifiers(self):
        features, standardized, assignments = self._inputs()
        shuffled = assignments.reverse()
        with pytest.raises(InputError):
            merge_results(features, standardized, shuffled)

    def test_row_count_mismatch(self):
        features, standardized, assignments = self._inputs()
        with pytest.raises(InputError):
            merge_results(features, standardized, assignments.head(3))

    def test_unknown_column_requested(self):
        with pytest.raises(InputError):
            merge_results(*self._inputs(), column_order=['GEOID', 'median_rent'])
