"""
Typology Core
=============

Compute engines. Tables and arrays in, tables and frozen results out,
no file I/O.

    features.py        - raw ACS counts -> five bounded ratio/log features
    normalization.py   - corpus-wide z-scores (fails on constant columns)
    covariance.py      - the six covariance structures (M-step, parameter count, shape)
    mixture.py         - EM for one (k, structure) with seeded restarts
    parallel.py        - joblib fan-out with a wait-for-all reduction
    selection.py       - candidate sweep, AIC / BIC / entropy comparison
    classification.py  - posterior rows -> class labels, class parameter tables
    merge.py           - join onto tract identifiers, round, order columns

Flow:
    Units -> build_features -> standardize -> estimate_profiles
          -> compare_solutions -> (caller picks) -> assign_classes -> merge_results
"""

from tractlpa.core.features import (
    Unit,
    FeatureVector,
    FeatureSpec,
    Transform,
    RESIDENTIAL_FEATURES,
    ACS_VARIABLES,
    transform_unit,
    build_features,
    units_from_frame,
    units_from_acs_long,
    required_fields,
)
from tractlpa.core.normalization import (
    StandardizedMatrix,
    standardize,
    compute_zscore,
    inverse_standardize,
)
from tractlpa.core.covariance import CovarianceStructure
from tractlpa.core.mixture import (
    FittedModel,
    fit_mixture,
    fit_restart,
    select_best_restart,
    count_parameters,
)
from tractlpa.core.selection import (
    ModelCandidate,
    ComparisonRow,
    candidate_grid,
    estimate_profiles,
    compare_solutions,
    comparison_table,
    classification_entropy,
    information_criteria,
    best_by,
)
from tractlpa.core.classification import (
    assign_labels,
    assign_classes,
    class_counts,
    profile_estimates,
)
from tractlpa.core.merge import merge_results, default_column_order

__all__ = [
    # Features
    'Unit',
    'FeatureVector',
    'FeatureSpec',
    'Transform',
    'RESIDENTIAL_FEATURES',
    'ACS_VARIABLES',
    'transform_unit',
    'build_features',
    'units_from_frame',
    'units_from_acs_long',
    'required_fields',
    # Standardization
    'StandardizedMatrix',
    'standardize',
    'compute_zscore',
    'inverse_standardize',
    # Estimation
    'CovarianceStructure',
    'FittedModel',
    'fit_mixture',
    'fit_restart',
    'select_best_restart',
    'count_parameters',
    # Comparison
    'ModelCandidate',
    'ComparisonRow',
    'candidate_grid',
    'estimate_profiles',
    'compare_solutions',
    'comparison_table',
    'classification_entropy',
    'information_criteria',
    'best_by',
    # Classification
    'assign_labels',
    'assign_classes',
    'class_counts',
    'profile_estimates',
    # Merge
    'merge_results',
    'default_column_order',
]
