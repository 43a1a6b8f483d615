"""
Feature Transform Engine
========================

Derives the five residential indicators from raw ACS tract counts.

    prop_native                  native_born / total_pop
    prop_white                   white_alone / total_pop
    prop_travel_car              (car + motorbike + wfh) / workers16older
    prop_educ                    (hs + bachelors + masters + prof + doc) / pop25older
    prop_single_unit_detached    single-unit detached / total structures

Ratios that pile up near 1 (native born, white alone, car travel) are
compressed as log(1 - ratio + 0.01); the others enter as plain proportions.

A tract with a missing count, a negative count, a zero denominator or a
numerator larger than its denominator produces no feature vector. That is a
filtering precondition, not an error: the tract is dropped and counted.

Pure functions. Tables in, tables out, no file I/O.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import polars as pl

from tractlpa.validation import (
    FeatureReport,
    InputError,
    validate_units_frame,
    DROP_MISSING,
    DROP_NEGATIVE,
    DROP_ZERO_DENOMINATOR,
    DROP_RATIO_ABOVE_ONE,
    DROP_NON_FINITE,
)


logger = logging.getLogger(__name__)


# Additive floor inside the log so a ratio of exactly 1 stays finite
LOG_FLOOR = 0.01


# ACS 5-year (2019) table codes -> readable field names
ACS_VARIABLES = {
    'B01001_001': 'total_pop',
    'B08006_001': 'workers16older',
    'B15003_001': 'pop25older',
    'B05012_002': 'native_born',
    'B02001_002': 'white_alone',
    'B08006_002': 'travel_car',
    'B08006_016': 'travel_motorbike',
    'B08006_017': 'travel_wfh',
    'B15003_017': 'ed_hs',
    'B15003_022': 'ed_bachelors',
    'B15003_023': 'ed_masters',
    'B15003_024': 'ed_prof',
    'B15003_025': 'ed_doc',
    'B25024_001': 'struc_total',
    'B25024_002': 'struc_single_unit_detached',
}


class Transform(str, Enum):
    """How a raw ratio is turned into a model feature."""
    LOG_COMPLEMENT = "log_complement"  # log(1 - ratio + LOG_FLOOR)
    IDENTITY = "identity"              # ratio as-is


@dataclass(frozen=True)
class FeatureSpec:
    """One derived feature: sum(numerators) / denominator, then a transform."""
    name: str
    ratio_name: str
    numerators: Tuple[str, ...]
    denominator: str
    transform: Transform = Transform.IDENTITY
    label: str = ""

    @property
    def fields(self) -> Tuple[str, ...]:
        return self.numerators + (self.denominator,)

    @property
    def z_name(self) -> str:
        """Column name of the standardized feature (t_educ -> z_educ)."""
        stem = self.name[2:] if self.name.startswith('t_') else self.name
        return f"z_{stem}"

    def apply(self, ratio: float) -> float:
        if self.transform == Transform.LOG_COMPLEMENT:
            return math.log(1.0 - ratio + LOG_FLOOR)
        return ratio


# Column order is fixed: standardizer, estimator and merger all rely on it
RESIDENTIAL_FEATURES: Tuple[FeatureSpec, ...] = (
    FeatureSpec(
        name='t_fborn',
        ratio_name='prop_native',
        numerators=('native_born',),
        denominator='total_pop',
        transform=Transform.LOG_COMPLEMENT,
        label='Foreign born',
    ),
    FeatureSpec(
        name='t_remin',
        ratio_name='prop_white',
        numerators=('white_alone',),
        denominator='total_pop',
        transform=Transform.LOG_COMPLEMENT,
        label='Racial ethnic minority',
    ),
    FeatureSpec(
        name='t_travel_at',
        ratio_name='prop_travel_car',
        numerators=('travel_car', 'travel_motorbike', 'travel_wfh'),
        denominator='workers16older',
        transform=Transform.LOG_COMPLEMENT,
        label='Active transit',
    ),
    FeatureSpec(
        name='t_educ',
        ratio_name='prop_educ',
        numerators=('ed_hs', 'ed_bachelors', 'ed_masters', 'ed_prof', 'ed_doc'),
        denominator='pop25older',
        transform=Transform.IDENTITY,
        label='Education ≥ HS',
    ),
    FeatureSpec(
        name='t_single_unit_detached',
        ratio_name='prop_single_unit_detached',
        numerators=('struc_single_unit_detached',),
        denominator='struc_total',
        transform=Transform.IDENTITY,
        label='Single-unit detached',
    ),
)


@dataclass(frozen=True)
class Unit:
    """One census tract: identifier, display name, raw counts (None = missing)."""
    identifier: str
    name: str
    counts: Mapping[str, Optional[float]] = field(default_factory=dict)


@dataclass(frozen=True)
class FeatureVector:
    """Derived values for one retained tract, in FeatureSpec order."""
    identifier: str
    name: str
    ratios: Tuple[float, ...]
    features: Tuple[float, ...]


def required_fields(specs: Sequence[FeatureSpec] = RESIDENTIAL_FEATURES) -> List[str]:
    """Raw count fields read by a feature set, first-seen order."""
    seen: Dict[str, None] = {}
    for spec in specs:
        for f in spec.fields:
            seen.setdefault(f, None)
    return list(seen)


def _check_unit(unit: Unit, specs: Sequence[FeatureSpec]) -> Tuple[Optional[str], Tuple[float, ...], Tuple[float, ...]]:
    """Return (drop_reason, ratios, features). drop_reason is None when retained."""
    for f in required_fields(specs):
        value = unit.counts.get(f)
        if value is None:
            return DROP_MISSING, (), ()
        value = float(value)
        if math.isnan(value):
            return DROP_MISSING, (), ()
        if not math.isfinite(value):
            return DROP_NON_FINITE, (), ()
        if value < 0:
            return DROP_NEGATIVE, (), ()

    ratios = []
    features = []
    for spec in specs:
        numerator = sum(float(unit.counts[f]) for f in spec.numerators)
        denominator = float(unit.counts[spec.denominator])
        if denominator <= 0:
            return DROP_ZERO_DENOMINATOR, (), ()
        if numerator > denominator:
            return DROP_RATIO_ABOVE_ONE, (), ()
        ratio = numerator / denominator
        value = spec.apply(ratio)
        if not math.isfinite(value):
            return DROP_NON_FINITE, (), ()
        ratios.append(ratio)
        features.append(value)

    return None, tuple(ratios), tuple(features)


def transform_unit(
    unit: Unit,
    specs: Sequence[FeatureSpec] = RESIDENTIAL_FEATURES,
) -> Optional[FeatureVector]:
    """
    Compute the feature vector for one tract.

    Args:
        unit: Tract with raw counts
        specs: Feature definitions (column order of the result)

    Returns:
        FeatureVector, or None when any precondition fails
    """
    reason, ratios, features = _check_unit(unit, specs)
    if reason is not None:
        return None
    return FeatureVector(unit.identifier, unit.name, ratios, features)


def build_features(
    units: Iterable[Unit],
    specs: Sequence[FeatureSpec] = RESIDENTIAL_FEATURES,
) -> Tuple[pl.DataFrame, FeatureReport]:
    """
    Transform a materialized batch of tracts into a feature table.

    Args:
        units: Every tract of the run (already collected)
        specs: Feature definitions

    Returns:
        (features, report)
        features has identifier, name, one column per ratio, one per feature,
        in input order, retained tracts only.

    Raises:
        InputError: if no tract survives the preconditions
    """
    report = FeatureReport()
    rows = []

    for unit in units:
        report.total_units += 1
        reason, ratios, features = _check_unit(unit, specs)
        if reason is not None:
            report.record_drop(unit.identifier, reason)
            continue

        row = {'identifier': unit.identifier, 'name': unit.name}
        for spec, ratio, value in zip(specs, ratios, features):
            row[spec.ratio_name] = ratio
            row[spec.name] = value
        rows.append(row)

    report.retained = len(rows)

    if report.dropped:
        logger.info(
            "Feature transform dropped %d of %d tracts: %s",
            report.dropped, report.total_units,
            {k: v for k, v in report.reasons.items() if v},
        )

    if not rows:
        raise InputError([f"no tracts retained out of {report.total_units} (all failed preconditions)"])

    schema = {'identifier': pl.Utf8, 'name': pl.Utf8}
    for spec in specs:
        schema[spec.ratio_name] = pl.Float64
        schema[spec.name] = pl.Float64

    return pl.DataFrame(rows, schema=schema), report


def units_from_frame(
    df: pl.DataFrame,
    id_column: str = 'GEOID',
    name_column: str = 'NAME',
    fields: Optional[Sequence[str]] = None,
) -> List[Unit]:
    """
    Build Units from a wide table (one row per tract, one column per count).

    Args:
        df: Wide table
        id_column: Identifier column
        name_column: Display-name column
        fields: Count columns to carry (default: every other column)

    Returns:
        List of Units in row order
    """
    if fields is None:
        fields = [c for c in df.columns if c not in (id_column, name_column)]
    validate_units_frame(df, id_column, name_column, fields)

    units = []
    for row in df.select([id_column, name_column, *fields]).iter_rows(named=True):
        counts = {f: row[f] for f in fields}
        units.append(Unit(str(row[id_column]), str(row[name_column]), counts))
    return units


def units_from_acs_long(
    df: pl.DataFrame,
    variables: Mapping[str, str] = ACS_VARIABLES,
    id_column: str = 'GEOID',
    name_column: str = 'NAME',
) -> List[Unit]:
    """
    Pivot a long ACS extract (GEOID, NAME, variable, estimate, moe) into Units.

    Margins of error are discarded. Codes are renamed through `variables`;
    codes not in the map are ignored. A tract missing a code gets None.
    """
    missing = {id_column, name_column, 'variable', 'estimate'} - set(df.columns)
    if missing:
        raise InputError([f"Missing required columns in ACS table: {sorted(missing)}"])

    long = (
        df
        .filter(pl.col('variable').is_in(list(variables)))
        .select([
            pl.col(id_column),
            pl.col(name_column),
            pl.col('variable').replace_strict(variables, return_dtype=pl.Utf8),
            pl.col('estimate').cast(pl.Float64),
        ])
    )

    wide = long.pivot(
        on='variable',
        index=[id_column, name_column],
        values='estimate',
        aggregate_function='first',
    )

    for f in variables.values():
        if f not in wide.columns:
            wide = wide.with_columns(pl.lit(None, dtype=pl.Float64).alias(f))

    return units_from_frame(wide, id_column, name_column, list(variables.values()))
