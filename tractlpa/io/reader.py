"""
Reader: all table reads go through here.

No other module should call pl.read_parquet / pl.read_csv directly.

Raw-count tables come in two layouts:
    wide   one row per tract: GEOID, NAME, <count columns>
    long   one row per tract x variable: GEOID, NAME, variable, estimate, moe
           (the layout of an ACS extract); pivoted to Units on read
"""

from pathlib import Path
from typing import List, Optional, Sequence

import polars as pl

from tractlpa.core.features import ACS_VARIABLES, Unit, required_fields, units_from_acs_long, units_from_frame


# Output name -> file name
OUTPUT_FILENAMES = {
    'comparison':     'comparison.parquet',
    'classification': 'classification.parquet',
    'estimates':      'estimates.parquet',
    'class_counts':   'class_counts.parquet',
    'dropped':        'dropped_units.parquet',
}


def read_table(path: str) -> pl.DataFrame:
    """Read a parquet or CSV file. CSV columns come back as text (leading zeros in GEOID survive)."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"table not found: {path}")
    if p.suffix == '.parquet':
        return pl.read_parquet(str(p))
    if p.suffix in ('.csv', '.txt'):
        return pl.read_csv(str(p), infer_schema_length=0, null_values=['', 'NA'])
    raise ValueError(f"unsupported table format: {p.suffix} (use .parquet or .csv)")


def is_long_layout(df: pl.DataFrame) -> bool:
    return {'variable', 'estimate'} <= set(df.columns)


def _as_counts(df: pl.DataFrame, columns: Sequence[str]) -> pl.DataFrame:
    """Cast count columns to Float64; unparseable entries become null."""
    present = [c for c in columns if c in df.columns]
    return df.with_columns(pl.col(c).cast(pl.Float64, strict=False) for c in present)


def read_units(
    path: str,
    id_column: str = 'GEOID',
    name_column: str = 'NAME',
    fields: Optional[Sequence[str]] = None,
) -> List[Unit]:
    """
    Load tracts from a raw-count table in either layout.

    Only the count columns are cast to numbers; any other column (state,
    county, notes) is left alone. A count that does not parse is read as
    missing, so its tract is dropped by the feature transform.

    Args:
        path: .parquet or .csv
        id_column: Identifier column
        name_column: Display-name column
        fields: Count columns for the wide layout (default: the fields the
            residential features read)

    Returns:
        Units in file order (long layout: first-appearance order)
    """
    df = read_table(path)
    if is_long_layout(df):
        return units_from_acs_long(_as_counts(df, ['estimate']), ACS_VARIABLES, id_column, name_column)

    fields = list(fields) if fields is not None else required_fields()
    return units_from_frame(_as_counts(df, fields), id_column, name_column, fields)


def output_path(output_dir: str, name: str) -> Path:
    """Get the output path for a result table by name."""
    d = Path(output_dir)
    d.mkdir(parents=True, exist_ok=True)
    return d / OUTPUT_FILENAMES.get(name, f"{name}.parquet")
