"""
Result Merger
=============

Joins class assignments back onto the tracts they were computed for,
rounds numeric columns, and orders columns for presentation.

Row alignment is positional (feature table row i == matrix row i ==
posterior row i) and then verified on the identifier, so a reordered input
fails loudly instead of mislabelling tracts.
"""

from typing import List, Optional, Sequence

import polars as pl

from tractlpa.core.features import FeatureSpec, RESIDENTIAL_FEATURES
from tractlpa.core.normalization import StandardizedMatrix
from tractlpa.validation import InputError


def default_column_order(
    specs: Sequence[FeatureSpec] = RESIDENTIAL_FEATURES,
    id_column: str = 'GEOID',
    name_column: str = 'NAME',
) -> List[str]:
    """identifier, name, Class, then (z, raw ratio) pairs per feature."""
    order = [id_column, name_column, 'Class']
    for spec in specs:
        order.extend([spec.z_name, spec.ratio_name])
    return order


def merge_results(
    features: pl.DataFrame,
    standardized: StandardizedMatrix,
    assignments: pl.DataFrame,
    specs: Sequence[FeatureSpec] = RESIDENTIAL_FEATURES,
    column_order: Optional[Sequence[str]] = None,
    digits: int = 3,
    id_column: str = 'GEOID',
    name_column: str = 'NAME',
) -> pl.DataFrame:
    """
    Build the presentation table: one row per retained tract.

    Args:
        features: From build_features (identifier, name, ratios, features)
        standardized: StandardizedMatrix built from the same rows
        assignments: From assign_classes (identifier, Class, CPROB*)
        specs: Feature definitions used for features/standardized
        column_order: Leading columns; posterior columns follow unless listed.
                      None = identifier, name, Class, (z, ratio) per feature
        digits: Decimal places for float columns
        id_column: Output name of the identifier column
        name_column: Output name of the display-name column

    Returns:
        Merged, rounded, ordered DataFrame

    Raises:
        InputError: row counts or identifiers disagree, unknown columns requested
    """
    n = features.height
    if standardized.n_units != n or assignments.height != n:
        raise InputError([
            f"row mismatch: {n} feature rows, {standardized.n_units} standardized rows, "
            f"{assignments.height} assignments"
        ])
    if features['identifier'].to_list() != assignments['identifier'].to_list():
        raise InputError(["assignment identifiers are not in feature-table row order"])

    z_names = {spec.name: spec.z_name for spec in specs}
    z_frame = pl.DataFrame({
        z_names.get(col, f"z_{col}"): standardized.values[:, j]
        for j, col in enumerate(standardized.columns)
    })

    merged = pl.concat(
        [features, z_frame, assignments.drop('identifier')],
        how='horizontal',
    ).rename({'identifier': id_column, 'name': name_column})

    prob_columns = [c for c in assignments.columns if c.startswith('CPROB')]
    if column_order is None:
        column_order = default_column_order(specs, id_column, name_column)
    column_order = list(column_order)

    unknown = [c for c in column_order if c not in merged.columns]
    if unknown:
        raise InputError([f"unknown columns in requested order: {unknown}"])

    ordered = column_order + [c for c in prob_columns if c not in column_order]

    return merged.select(ordered).with_columns(
        pl.col(pl.Float64).round(digits)
    )
