"""
Typology Sequencer
==================

Runs the residential typology pipeline in dependency order.
Pure orchestration: no computation here.

    01  features        raw counts -> five ratio/log features (drops invalid tracts)
    02  standardize     corpus-wide z-scores
    03  estimate        EM fits for every (k, structure) candidate, R restarts each
    04  compare         AIC / BIC / entropy table, ascending BIC
    05  classify        posterior rows + class labels for the caller-fixed model
    06  merge           join onto GEOID / NAME, round, order columns

Step 05-06 run only when the manifest names a final model (`lpa.final`);
choosing it is a manual decision made from the comparison table.

Output (parquet, in output_dir):
    comparison.parquet       one row per candidate
    classification.parquet   one row per retained tract
    estimates.parquet        class means / variances / covariances (long)
    class_counts.parquet     tracts per class
    dropped_units.parquet    tracts excluded by the feature transform

Usage:
    python -m tractlpa domains/us_tracts_2019
    python -m tractlpa domains/us_tracts_2019 --compare-only
"""

import argparse
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import polars as pl

from tractlpa.config import LPAConfig, load_config
from tractlpa.core.classification import assign_classes, class_counts, profile_estimates
from tractlpa.core.features import RESIDENTIAL_FEATURES, FeatureSpec, Unit, build_features
from tractlpa.core.merge import merge_results
from tractlpa.core.mixture import FittedModel, fit_mixture
from tractlpa.core.normalization import StandardizedMatrix, standardize
from tractlpa.core.selection import (
    ComparisonRow,
    ModelCandidate,
    candidate_grid,
    compare_solutions,
    comparison_table,
    estimate_profiles,
)
from tractlpa.io.manifest import get_columns, get_output_dir, get_units_path, load_manifest
from tractlpa.io.reader import read_units
from tractlpa.io.writer import write_output
from tractlpa.validation import FeatureReport


logger = logging.getLogger(__name__)


@dataclass
class TypologyResult:
    """Everything one pipeline run produced."""
    features: pl.DataFrame
    report: FeatureReport
    standardized: StandardizedMatrix
    models: "OrderedDict[ModelCandidate, FittedModel]"
    comparison_rows: List[ComparisonRow]
    comparison: pl.DataFrame
    final_candidate: Optional[ModelCandidate] = None
    final_model: Optional[FittedModel] = None
    assignments: Optional[pl.DataFrame] = None
    classification: Optional[pl.DataFrame] = None
    estimates: Optional[pl.DataFrame] = None
    counts: Optional[pl.DataFrame] = None
    tables: Dict[str, pl.DataFrame] = field(default_factory=dict)


def _banner(title: str, verbose: bool) -> None:
    if verbose:
        print("=" * 70)
        print(title)
        print("=" * 70)


def run_typology(
    units: Sequence[Unit],
    config: LPAConfig,
    specs: Sequence[FeatureSpec] = RESIDENTIAL_FEATURES,
    id_column: str = 'GEOID',
    name_column: str = 'NAME',
    compare_only: bool = False,
    verbose: bool = False,
) -> TypologyResult:
    """
    Run the full pipeline in memory.

    Args:
        units: Every tract of the run, already collected
        config: Run options (checked here, before any fitting)
        specs: Feature definitions
        id_column: Output name of the identifier column
        name_column: Output name of the display-name column
        compare_only: Stop after the comparison table
        verbose: Print stage banners

    Returns:
        TypologyResult
    """
    config.check()
    candidates = candidate_grid(config.n_profiles, config.structure_ids())

    _banner("01: FEATURES - ratios and log transforms", verbose)
    features, report = build_features(units, specs)
    logger.info("Retained %d of %d tracts", report.retained, report.total_units)
    if verbose:
        print(f"Retained {report.retained:,} of {report.total_units:,} tracts")
        print()

    _banner("02: STANDARDIZE - corpus z-scores", verbose)
    columns = [spec.name for spec in specs]
    standardized = standardize(features.select(columns).to_numpy(), columns)

    _banner("03: ESTIMATE - Gaussian mixtures", verbose)
    models = estimate_profiles(standardized.values, candidates, config)

    _banner("04: COMPARE - AIC / BIC / entropy", verbose)
    rows = compare_solutions(models)
    comparison = comparison_table(rows)
    if verbose:
        print(comparison.select(['Model', 'Classes', 'LogLik', 'AIC', 'BIC', 'Entropy', 'warning']))
        print()

    result = TypologyResult(
        features=features,
        report=report,
        standardized=standardized,
        models=models,
        comparison_rows=rows,
        comparison=comparison,
    )
    result.tables['comparison'] = comparison
    result.tables['dropped'] = pl.DataFrame(
        {'identifier': report.dropped_ids}, schema={'identifier': pl.Utf8}
    )

    if compare_only or config.final is None:
        if config.final is None and not compare_only:
            logger.info("No final model in config; stopping after comparison")
        return result

    _banner("05: CLASSIFY - posterior class assignment", verbose)
    final = ModelCandidate(config.final.n_profiles, config.final.structure_id())
    model = models.get(final)
    if model is None:
        model = fit_mixture(
            standardized.values,
            n_profiles=final.n_profiles,
            structure=final.structure,
            n_restarts=config.n_restarts,
            seed=config.seed,
            tolerance=config.tolerance,
            max_iter=config.max_iter,
            min_variance=config.min_variance,
            init=config.init,
            n_jobs=config.n_jobs,
        )

    assignments = assign_classes(model, features['identifier'].to_list())
    estimates = profile_estimates(
        model,
        [spec.z_name for spec in specs],
        [spec.label or spec.z_name for spec in specs],
    )
    counts = class_counts(assignments, model.n_profiles)

    _banner("06: MERGE - join, round, order", verbose)
    classification = merge_results(
        features, standardized, assignments, specs,
        digits=config.digits, id_column=id_column, name_column=name_column,
    )

    result.final_candidate = final
    result.final_model = model
    result.assignments = assignments
    result.classification = classification
    result.estimates = estimates
    result.counts = counts
    result.tables.update({
        'classification': classification,
        'estimates': estimates,
        'class_counts': counts,
    })
    return result


def run(
    units_path: str,
    manifest_path: str,
    output_dir: str,
    compare_only: bool = False,
    verbose: bool = True,
) -> TypologyResult:
    """
    Read raw counts, run the pipeline, write result tables.

    Args:
        units_path: Raw-count table (.parquet or .csv, wide or long layout)
        manifest_path: Path to manifest.yaml
        output_dir: Where to write output parquets
        compare_only: Stop after the comparison table
        verbose: Print progress
    """
    units_path = Path(units_path)
    manifest_path = Path(manifest_path)

    if not units_path.exists():
        raise FileNotFoundError(f"units table not found: {units_path}")
    if not manifest_path.exists():
        raise FileNotFoundError(f"manifest not found: {manifest_path}")

    manifest = load_manifest(str(manifest_path))
    config = load_config(manifest)
    cols = get_columns(manifest)

    units = read_units(str(units_path), id_column=cols['id'], name_column=cols['name'])

    result = run_typology(
        units, config,
        id_column=cols['id'], name_column=cols['name'],
        compare_only=compare_only, verbose=verbose,
    )

    if verbose:
        print("--- Writing outputs ---")
    for name, table in result.tables.items():
        write_output(table, output_dir, name, verbose=verbose)

    return result


def main():
    """CLI entry point. Resolves data_path into explicit paths and calls run()."""
    parser = argparse.ArgumentParser(
        description="Residential typology (latent profile analysis of census tracts)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Usage:
  python -m tractlpa ~/domains/us_tracts_2019
  python -m tractlpa ~/domains/us_tracts_2019 --compare-only
"""
    )
    parser.add_argument('data_path', help='Path to data directory (must contain manifest.yaml)')
    parser.add_argument('--compare-only', action='store_true', help='Stop after the comparison table')
    parser.add_argument('-q', '--quiet', action='store_true', help='Suppress output')
    parser.add_argument('--log-level', default='WARNING', help='Logging level (DEBUG, INFO, ...)')

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    data_path = Path(args.data_path)
    manifest_path = data_path / 'manifest.yaml'

    if not manifest_path.exists():
        raise FileNotFoundError(f"No manifest.yaml in {data_path}")

    manifest = load_manifest(str(manifest_path))

    run(
        units_path=get_units_path(manifest),
        manifest_path=str(manifest_path),
        output_dir=get_output_dir(manifest),
        compare_only=args.compare_only,
        verbose=not args.quiet,
    )


if __name__ == '__main__':
    main()
