"""
Input Validation
================

Exceptions and reports shared by every stage of the typology pipeline.

Three failure classes, three policies:

    ConfigurationError      bad option (class-count range, structure id, R < 1)
                            -> raised before any fitting starts
    DegenerateFeatureError  a feature column with zero variance
                            -> raised by the standardizer, the run aborts
    InputError              unusable tables (no tracts retained, row mismatch)
                            -> raised to the caller

Per-tract precondition failures (zero denominator, missing count) are NOT
errors: the tract is dropped and tallied in a FeatureReport.

Usage:
    from tractlpa.validation import validate_units_frame, FeatureReport

    validate_units_frame(df, id_column='GEOID', name_column='NAME',
                         fields=['total_pop', 'native_born'])
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import polars as pl


class ConfigurationError(ValueError):
    """Raised when a configuration option is invalid. Names the offending parameter."""

    def __init__(self, parameter: str, message: str, value: Any = None):
        self.parameter = parameter
        self.value = value
        super().__init__(f"{parameter}: {message}")


class DegenerateFeatureError(ConfigurationError):
    """Raised when a feature column has zero variance across the corpus."""

    def __init__(self, column: str, std: float):
        self.column = column
        self.std = std
        super().__init__(
            column,
            f"feature has zero variance (std={std:.3g}); standardization is undefined",
            value=std,
        )


class InputError(ValueError):
    """Raised when input tables cannot feed the pipeline."""

    def __init__(self, errors: List[str], warnings: List[str] = None):
        self.errors = errors
        self.warnings = warnings or []

        message = "Input validation failed:\n" + "\n".join(
            f"  ERROR: {e}" for e in errors
        )
        if warnings:
            message += "\n" + "\n".join(f"  WARNING: {w}" for w in warnings)

        super().__init__(message)


# Reasons a tract is dropped by the feature transform
DROP_MISSING = "missing_value"
DROP_NEGATIVE = "negative_count"
DROP_ZERO_DENOMINATOR = "zero_denominator"
DROP_RATIO_ABOVE_ONE = "numerator_exceeds_denominator"
DROP_NON_FINITE = "non_finite_feature"

DROP_REASONS = (
    DROP_MISSING,
    DROP_NEGATIVE,
    DROP_ZERO_DENOMINATOR,
    DROP_RATIO_ABOVE_ONE,
    DROP_NON_FINITE,
)


@dataclass
class FeatureReport:
    """Tally of tracts retained and dropped by the feature transform."""

    total_units: int = 0
    retained: int = 0
    dropped: int = 0
    reasons: Dict[str, int] = field(default_factory=lambda: {r: 0 for r in DROP_REASONS})
    dropped_ids: List[str] = field(default_factory=list)

    def record_drop(self, identifier: str, reason: str) -> None:
        self.dropped += 1
        self.reasons[reason] = self.reasons.get(reason, 0) + 1
        self.dropped_ids.append(identifier)

    def summary(self) -> str:
        """Human-readable summary."""
        lines = [
            "=" * 60,
            "FEATURE TRANSFORM REPORT",
            "=" * 60,
            "",
            f"Total tracts: {self.total_units:,}",
            f"  Retained: {self.retained:,}",
            f"  Dropped: {self.dropped:,}",
        ]

        for reason, count in self.reasons.items():
            if count:
                lines.append(f"    {reason}: {count:,}")

        if self.dropped_ids:
            lines.append("")
            lines.append(f"Dropped tracts ({len(self.dropped_ids)}):")
            for identifier in self.dropped_ids[:10]:
                lines.append(f"  - {identifier}")
            if len(self.dropped_ids) > 10:
                lines.append(f"  ... and {len(self.dropped_ids) - 10} more")

        lines.append("=" * 60)
        return "\n".join(lines)


def validate_units_frame(
    df: pl.DataFrame,
    id_column: str,
    name_column: str,
    fields: Optional[Iterable[str]] = None,
) -> None:
    """
    Check that a wide table of raw counts has the columns the transform needs.

    Args:
        df: One row per tract
        id_column: Identifier column (e.g. GEOID)
        name_column: Display-name column (e.g. NAME)
        fields: Raw count columns the feature specs read

    Raises:
        InputError: listing every missing column or duplicated identifier
    """
    errors = []
    warnings = []

    for col in (id_column, name_column):
        if col not in df.columns:
            errors.append(f"Missing required column: {col}")

    if fields is not None:
        missing = sorted(set(fields) - set(df.columns))
        if missing:
            errors.append(f"Missing raw count columns: {missing}")

    if id_column in df.columns:
        n_dupes = df.height - df[id_column].n_unique()
        if n_dupes > 0:
            errors.append(f"{n_dupes:,} duplicated {id_column} values")
        null_ids = df[id_column].null_count()
        if null_ids > 0:
            errors.append(f"{null_ids:,} null {id_column} values")

    if df.height == 0:
        warnings.append("table has no rows")

    if errors:
        raise InputError(errors, warnings)
