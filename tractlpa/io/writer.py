"""
Writer: all result writes go through here.

No other module should call df.write_parquet directly.
"""

import logging
from pathlib import Path
from typing import Optional

import polars as pl

from tractlpa.io.reader import output_path


logger = logging.getLogger(__name__)


def _safe_write(df: pl.DataFrame, path: Path) -> bool:
    """
    Write one result table; a table without columns is not written.

    A table with columns but no rows (no dropped tracts, say) is still
    written, so a consumer always finds the same files with the same schema.

    Returns True if a file was written, False if skipped.
    """
    if df is None:
        return False

    if len(df.columns) == 0:
        logger.warning("Skipped %s (no columns)", path)
        return False

    df.write_parquet(str(path))
    return True


def write_output(
    df: pl.DataFrame,
    output_dir: str,
    name: str,
    verbose: bool = True,
) -> Optional[Path]:
    """
    Write a result table into the output directory.

    Args:
        df: DataFrame to write (None or no columns -> skip)
        output_dir: Directory for result tables
        name: Output name (e.g. 'comparison', 'classification')
        verbose: Print path on write

    Returns:
        Path to written file, or None if skipped
    """
    path = output_path(output_dir, name)

    if not _safe_write(df, path):
        return None

    if verbose:
        print(f"  -> {path} ({len(df)} rows)")
    logger.debug("Wrote %s (%d rows)", path, len(df))

    return path
