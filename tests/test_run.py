"""
Tests for the typology sequencer.

Validates:
    1. In-memory pipeline: comparison for every candidate, classification
       for the fixed final model, one merged row per retained tract
    2. File pipeline: manifest + raw counts in, parquet tables out
    3. Long (ACS extract) CSV input
    4. CSV reads cast only the count columns
"""

import sys

import numpy as np
import polars as pl
import pytest
import yaml

from tractlpa import run, run_typology
from tractlpa.config import FinalModelConfig, LPAConfig
from tractlpa.core.features import ACS_VARIABLES, RESIDENTIAL_FEATURES, build_features, required_fields, units_from_frame
from tractlpa.core.merge import default_column_order
from tractlpa.io.reader import OUTPUT_FILENAMES, read_units
from tractlpa.run import main
from tractlpa.validation import DROP_MISSING, DegenerateFeatureError


def _make_tracts(n=80, seed=36):
    """
    Wide raw-count table with two kinds of tract (suburban / urban core)
    plus one tract with no population.
    """
    rng = np.random.default_rng(seed)

    def draw(n, p):
        return int(rng.binomial(n, p))

    rows = []
    for i in range(n):
        urban = i % 2 == 1
        pop = int(rng.integers(1500, 6000))
        workers = int(pop * rng.uniform(0.4, 0.6))
        adults = int(pop * rng.uniform(0.6, 0.75))
        structures = int(pop * rng.uniform(0.3, 0.45))

        p_native = 0.65 if urban else 0.92
        p_white = 0.35 if urban else 0.8
        p_car = 0.45 if urban else 0.9
        p_detached = 0.15 if urban else 0.85

        car = draw(workers, p_car * 0.9)
        motorbike = draw(workers - car, 0.02)
        rows.append({
            'GEOID': f"36061{i:06d}",
            'NAME': f"Census Tract {i}",
            'total_pop': pop,
            'native_born': draw(pop, p_native),
            'white_alone': draw(pop, p_white),
            'workers16older': workers,
            'travel_car': car,
            'travel_motorbike': motorbike,
            'travel_wfh': draw(workers - car - motorbike, 0.2),
            'pop25older': adults,
            'ed_hs': draw(adults, 0.25),
            'ed_bachelors': draw(adults, 0.2),
            'ed_masters': draw(adults, 0.08),
            'ed_prof': draw(adults, 0.02),
            'ed_doc': draw(adults, 0.01),
            'struc_total': structures,
            'struc_single_unit_detached': draw(structures, p_detached),
        })

    empty = {k: 0 for k in rows[0] if k not in ('GEOID', 'NAME')}
    rows.append({'GEOID': '36061999999', 'NAME': 'Census Tract 9999', **empty})
    return pl.DataFrame(rows)


def _read_output(output_dir, name):
    return pl.read_parquet(output_dir / OUTPUT_FILENAMES[name])


def _config(**kwargs):
    options = dict(n_profiles=[1, 2], structures=[1, 2], n_restarts=2, seed=36)
    options.update(kwargs)
    return LPAConfig(**options)


def _write_manifest(tmp_path, units_file, lpa):
    manifest = {
        'paths': {'units': units_file, 'output_dir': 'output'},
        'columns': {'id': 'GEOID', 'name': 'NAME'},
        'lpa': lpa,
    }
    path = tmp_path / 'manifest.yaml'
    path.write_text(yaml.safe_dump(manifest))
    return path


class TestRunTypology:
    """In-memory pipeline."""

    def test_full_run(self):
        units = units_from_frame(_make_tracts())
        result = run_typology(units, _config(final=FinalModelConfig(n_profiles=2, structure=2)))

        assert result.report.total_units == 81
        assert result.report.retained == 80
        assert result.report.dropped_ids == ['36061999999']

        assert result.comparison.height == 4
        assert set(zip(result.comparison['Model'], result.comparison['Classes'])) == {
            (1, 1), (1, 2), (2, 1), (2, 2),
        }

        merged = result.classification
        assert merged.height == 80
        assert merged.columns == default_column_order() + ['CPROB1', 'CPROB2']
        assert merged['Class'].n_unique() == 2
        assert result.final_model is result.models[result.final_candidate]
        assert set(result.tables) == {'comparison', 'dropped', 'classification', 'estimates', 'class_counts'}

        means = result.tables['estimates'].filter((pl.col('Category') == 'Means') & (pl.col('Class') == 1))
        assert means['Parameter'].to_list() == [spec.z_name for spec in RESIDENTIAL_FEATURES]
        assert means['Variable'].to_list() == [spec.label for spec in RESIDENTIAL_FEATURES]

    def test_two_kinds_of_tract_separated(self):
        df = _make_tracts()
        units = units_from_frame(df)
        result = run_typology(units, _config(final=FinalModelConfig(n_profiles=2, structure=2)))

        labels = np.array(result.classification['Class'].to_list())
        truth = np.arange(80) % 2 + 1
        same = np.mean(labels == truth)
        assert max(same, 1 - same) >= 0.95

    def test_compare_only(self):
        units = units_from_frame(_make_tracts(n=40))
        result = run_typology(units, _config(final=FinalModelConfig(n_profiles=2, structure=2)), compare_only=True)

        assert result.classification is None
        assert set(result.tables) == {'comparison', 'dropped'}

    def test_no_final_model(self):
        result = run_typology(units_from_frame(_make_tracts(n=40)), _config())
        assert result.final_model is None

    def test_final_model_outside_grid_is_fitted(self):
        units = units_from_frame(_make_tracts(n=40))
        result = run_typology(units, _config(final=FinalModelConfig(n_profiles=3, structure='EEI')))

        assert result.final_model.n_profiles == 3
        assert result.final_candidate not in result.models
        assert result.classification.columns[-3:] == ['CPROB1', 'CPROB2', 'CPROB3']

    def test_constant_feature_aborts(self):
        df = _make_tracts(n=20).with_columns(
            pl.col('total_pop').alias('struc_total'),
            pl.col('total_pop').alias('struc_single_unit_detached'),
        )

        with pytest.raises(DegenerateFeatureError) as excinfo:
            run_typology(units_from_frame(df), _config())
        assert excinfo.value.column == 't_single_unit_detached'


class TestRunFiles:
    """Manifest-driven run with parquet output."""

    def test_parquet_round_trip(self, tmp_path):
        _make_tracts(n=40).write_parquet(tmp_path / 'tracts.parquet')
        manifest = _write_manifest(tmp_path, 'tracts.parquet', {
            'n_profiles': '1:2', 'structures': [2], 'n_restarts': 2,
            'final': {'n_profiles': 2, 'structure': 2},
        })
        output_dir = tmp_path / 'output'

        result = run(str(tmp_path / 'tracts.parquet'), str(manifest), str(output_dir), verbose=False)

        for name in ('comparison', 'classification', 'estimates', 'class_counts', 'dropped'):
            assert (output_dir / OUTPUT_FILENAMES[name]).exists()

        classification = _read_output(output_dir, 'classification')
        assert classification.height == result.classification.height == 40
        assert classification['GEOID'].dtype == pl.Utf8
        assert _read_output(output_dir, 'dropped')['identifier'].to_list() == ['36061999999']

    def test_long_csv(self, tmp_path):
        wide = _make_tracts(n=30)
        code_for = {v: k for k, v in ACS_VARIABLES.items()}
        long = (
            wide.unpivot(index=['GEOID', 'NAME'], variable_name='field', value_name='estimate')
            .with_columns(
                pl.col('field').replace_strict(code_for, return_dtype=pl.Utf8).alias('variable'),
                pl.lit(10.0).alias('moe'),
            )
            .select(['GEOID', 'NAME', 'variable', 'estimate', 'moe'])
        )
        long.write_csv(tmp_path / 'acs.csv')
        manifest = _write_manifest(tmp_path, 'acs.csv', {'n_profiles': [2], 'structures': [1], 'n_restarts': 1})

        result = run(str(tmp_path / 'acs.csv'), str(manifest), str(tmp_path / 'out'), verbose=False)

        assert result.report.total_units == 31
        assert result.report.retained == 30
        assert not (tmp_path / 'out' / OUTPUT_FILENAMES['classification']).exists()

    def test_empty_drop_table_is_written(self, tmp_path):
        _make_tracts(n=20).head(20).write_parquet(tmp_path / 'tracts.parquet')
        manifest = _write_manifest(tmp_path, 'tracts.parquet', {'n_profiles': [1], 'structures': [1], 'n_restarts': 1})

        run(str(tmp_path / 'tracts.parquet'), str(manifest), str(tmp_path / 'out'), compare_only=True, verbose=False)

        dropped = _read_output(tmp_path / 'out', 'dropped')
        assert dropped.height == 0
        assert dropped.schema == {'identifier': pl.Utf8}

    def test_missing_files(self, tmp_path):
        manifest = _write_manifest(tmp_path, 'tracts.parquet', {})
        with pytest.raises(FileNotFoundError):
            run(str(tmp_path / 'tracts.parquet'), str(manifest), str(tmp_path / 'out'), verbose=False)

    def test_cli(self, tmp_path, monkeypatch, capsys):
        _make_tracts(n=30).write_parquet(tmp_path / 'tracts.parquet')
        _write_manifest(tmp_path, 'tracts.parquet', {'n_profiles': [1, 2], 'structures': [1], 'n_restarts': 1})
        monkeypatch.setattr(sys, 'argv', ['tractlpa', str(tmp_path), '--compare-only'])

        main()

        out = capsys.readouterr().out
        assert '04: COMPARE' in out
        assert (tmp_path / 'output' / 'comparison.parquet').exists()
        assert not (tmp_path / 'output' / 'classification.parquet').exists()


class TestReadUnits:
    """Raw-count tables read from CSV."""

    def test_text_columns_beside_counts(self, tmp_path):
        df = _make_tracts(n=4).with_columns(
            pl.concat_str([pl.lit('0'), pl.col('GEOID')]).alias('GEOID'),
            pl.lit('AL').alias('state'),
        )
        df.write_csv(tmp_path / 'tracts.csv')

        units = read_units(str(tmp_path / 'tracts.csv'))

        assert len(units) == 5
        assert units[0].identifier == '036061000000'
        assert list(units[0].counts) == required_fields()
        assert 'state' not in units[0].counts
        assert units[0].counts['total_pop'] == float(df['total_pop'][0])

    def test_unparseable_count_is_missing(self, tmp_path):
        df = _make_tracts(n=4).with_columns(
            pl.when(pl.int_range(pl.len()) == 1)
            .then(pl.lit('n/a'))
            .otherwise(pl.col('total_pop').cast(pl.Utf8))
            .alias('total_pop')
        )
        df.write_csv(tmp_path / 'tracts.csv')

        units = read_units(str(tmp_path / 'tracts.csv'))
        _, report = build_features(units)

        assert units[1].counts['total_pop'] is None
        assert report.reasons[DROP_MISSING] == 1
        assert report.dropped_ids == ['36061000001', '36061999999']
