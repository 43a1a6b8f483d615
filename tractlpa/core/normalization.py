"""
Standardization Engine
======================

Z-score rescaling of the feature matrix across the full corpus:

    z = (x - mean) / std        (population std, ddof=0)

Statistics are computed once over every retained tract. This is a batch
operation: a tract's z-score depends on the whole corpus.

A column whose std is zero cannot be standardized. Unlike a general-purpose
scaler this engine does not substitute 1.0 for a zero std; it raises
DegenerateFeatureError naming the column, so constant features never leak
into the mixture fit as NaN or as silently unscaled values.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from tractlpa.validation import DegenerateFeatureError, InputError


# Below this a column is treated as constant
MIN_STD = 1e-12


@dataclass(frozen=True)
class StandardizedMatrix:
    """N x D z-scores plus the statistics used to produce them."""
    values: np.ndarray
    columns: Tuple[str, ...]
    mean: np.ndarray
    std: np.ndarray

    @property
    def n_units(self) -> int:
        return self.values.shape[0]

    @property
    def n_features(self) -> int:
        return self.values.shape[1]


def compute_zscore(
    data: np.ndarray,
    ddof: int = 0,
    columns: Optional[Sequence[str]] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Column-wise z-score normalization: (x - mean) / std

    Args:
        data: N x D array of finite values
        ddof: Degrees of freedom for std (0 = population)
        columns: Column names, used only in error messages

    Returns:
        (normalized, mean, std)

    Raises:
        InputError: non-2D, empty, or non-finite input
        DegenerateFeatureError: a column with std < MIN_STD
    """
    data = np.asarray(data, dtype=np.float64)

    if data.ndim != 2 or data.shape[0] == 0:
        raise InputError([f"expected a non-empty N x D matrix, got shape {data.shape}"])

    if not np.all(np.isfinite(data)):
        bad = np.where(~np.isfinite(data).all(axis=0))[0]
        names = [columns[i] if columns else str(i) for i in bad]
        raise InputError([f"non-finite values in feature columns {names}"])

    mean = data.mean(axis=0)
    std = data.std(axis=0, ddof=ddof)

    for j, s in enumerate(std):
        if not s >= MIN_STD:
            raise DegenerateFeatureError(columns[j] if columns else f"column_{j}", float(s))

    normalized = (data - mean) / std
    return normalized, mean, std


def standardize(
    data: np.ndarray,
    columns: Sequence[str],
    ddof: int = 0,
) -> StandardizedMatrix:
    """
    Standardize a feature matrix over the full batch.

    Args:
        data: N x D matrix, columns in the order given by `columns`
        columns: Feature names (fixed order used by every downstream stage)
        ddof: 0 for population std

    Returns:
        StandardizedMatrix with read-only arrays
    """
    columns = tuple(columns)
    data = np.asarray(data, dtype=np.float64)
    if data.ndim == 2 and data.shape[1] != len(columns):
        raise InputError([f"{data.shape[1]} columns in matrix but {len(columns)} names given"])

    values, mean, std = compute_zscore(data, ddof=ddof, columns=columns)

    for arr in (values, mean, std):
        arr.setflags(write=False)

    return StandardizedMatrix(values=values, columns=columns, mean=mean, std=std)


def inverse_standardize(values: np.ndarray, standardized: StandardizedMatrix) -> np.ndarray:
    """Map z-scores (any leading shape, last axis = features) back to feature scale."""
    values = np.asarray(values, dtype=np.float64)
    return values * standardized.std + standardized.mean
