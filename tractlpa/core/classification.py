"""
Classification Engine
=====================

Turns a fitted mixture into per-tract class assignments.

    Class      1-based argmax of the posterior row (ties -> lowest class)
    CPROB<j>   posterior probability of class j

The full posterior row is kept. Flagging low-confidence assignments
(max posterior under some threshold) is left to the caller.

Also builds the long table of class parameters (means, variances,
covariances per class) that chart/table renderers consume.
"""

from typing import Optional, Sequence

import numpy as np
import polars as pl

from tractlpa.core.mixture import FittedModel
from tractlpa.validation import InputError


def assign_labels(responsibilities: np.ndarray) -> np.ndarray:
    """1-based class labels; np.argmax returns the first maximum, so ties go to the lowest class."""
    resp = np.asarray(responsibilities)
    return np.argmax(resp, axis=1) + 1


def assign_classes(model: FittedModel, identifiers: Sequence[str]) -> pl.DataFrame:
    """
    Classify every unit the model was fit on.

    Args:
        model: FittedModel
        identifiers: Unit identifiers in the row order of the fitted matrix

    Returns:
        DataFrame with identifier, Class, CPROB1..CPROBk

    Raises:
        InputError: if identifiers do not line up with the posterior rows
    """
    identifiers = [str(i) for i in identifiers]
    resp = model.responsibilities
    if len(identifiers) != resp.shape[0]:
        raise InputError([
            f"{len(identifiers)} identifiers for a model fit on {resp.shape[0]} units"
        ])

    columns = {
        'identifier': identifiers,
        'Class': assign_labels(resp).astype(np.int64),
    }
    for j in range(resp.shape[1]):
        columns[f'CPROB{j + 1}'] = resp[:, j]

    return pl.DataFrame(columns)


def class_counts(assignments: pl.DataFrame, n_profiles: Optional[int] = None) -> pl.DataFrame:
    """Units and share per class label, including empty classes when n_profiles is given."""
    counts = assignments.group_by('Class').agg(pl.len().alias('n')).sort('Class')
    if n_profiles is not None:
        counts = (
            pl.DataFrame({'Class': np.arange(1, n_profiles + 1, dtype=np.int64)})
            .join(counts, on='Class', how='left')
            .with_columns(pl.col('n').fill_null(0))
            .sort('Class')
        )
    total = assignments.height
    return counts.with_columns((pl.col('n') / total).alias('proportion'))


def profile_estimates(
    model: FittedModel,
    columns: Sequence[str],
    labels: Optional[Sequence[str]] = None,
) -> pl.DataFrame:
    """
    Long table of class parameters.

    Columns: Category (Means | Variances | Covariances), Parameter, Variable,
    Estimate, Class. Covariances are listed once per feature pair as
    'a WITH b'; diagonal structures have none. Variable is the same entry
    spelled with the display labels.

    Args:
        model: FittedModel
        columns: Feature names in matrix column order
        labels: Display label per column (default: the column names)
    """
    columns = list(columns)
    if len(columns) != model.n_features:
        raise InputError([f"{len(columns)} column names for {model.n_features} features"])
    labels = list(labels) if labels is not None else columns
    if len(labels) != len(columns):
        raise InputError([f"{len(labels)} labels for {len(columns)} columns"])

    cov = model.covariance_matrices()
    rows = []
    for j in range(model.n_profiles):
        for i, col in enumerate(columns):
            rows.append(('Means', col, labels[i], float(model.means[j, i]), j + 1))
        for i, col in enumerate(columns):
            rows.append(('Variances', col, labels[i], float(cov[j, i, i]), j + 1))
        if not model.structure.diagonal:
            for a in range(len(columns)):
                for b in range(a + 1, len(columns)):
                    rows.append((
                        'Covariances',
                        f"{columns[a]} WITH {columns[b]}",
                        f"{labels[a]} WITH {labels[b]}",
                        float(cov[j, a, b]),
                        j + 1,
                    ))

    return pl.DataFrame(
        rows,
        schema={
            'Category': pl.Utf8,
            'Parameter': pl.Utf8,
            'Variable': pl.Utf8,
            'Estimate': pl.Float64,
            'Class': pl.Int64,
        },
        orient='row',
    )
