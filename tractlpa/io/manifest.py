"""
Manifest: parse manifest.yaml into run options and paths.

    paths:
      units: tracts.parquet        # raw counts, wide or long layout
      output_dir: output
    columns:
      id: GEOID
      name: NAME
    lpa:
      n_profiles: "1:8"
      structures: [6]
      seed: 36
"""

from pathlib import Path
from typing import Any, Dict

import yaml

from tractlpa.validation import ConfigurationError


_SECTIONS = ('paths', 'columns', 'lpa')


def load_manifest(data_path: str) -> Dict[str, Any]:
    """
    Load a run manifest.

    Args:
        data_path: A data directory holding manifest.yaml, or the .yaml file

    Returns:
        The parsed manifest. `_data_dir` records the manifest's directory;
        the units table and output directory are resolved against it.

    Raises:
        FileNotFoundError: no manifest at data_path
        ConfigurationError: the manifest or one of its sections is not a mapping
    """
    p = Path(data_path)

    if p.is_file() and p.suffix in ('.yaml', '.yml'):
        manifest_path = p
    else:
        manifest_path = p / 'manifest.yaml'

    if not manifest_path.exists():
        raise FileNotFoundError(f"No manifest.yaml in {data_path}")

    with open(manifest_path) as f:
        manifest = yaml.safe_load(f) or {}

    if not isinstance(manifest, dict):
        raise ConfigurationError('manifest', f"expected a mapping in {manifest_path}", type(manifest).__name__)
    for section in _SECTIONS:
        value = manifest.get(section)
        if value is not None and not isinstance(value, dict):
            raise ConfigurationError(section, "expected a mapping", value)

    manifest['_data_dir'] = str(manifest_path.parent)
    return manifest


def get_units_path(manifest: Dict[str, Any]) -> str:
    """Get absolute path to the raw-count table from manifest."""
    rel = manifest.get('paths', {}).get('units', 'units.parquet')
    data_dir = Path(manifest.get('_data_dir', '.'))
    return str(data_dir / rel)


def get_output_dir(manifest: Dict[str, Any]) -> str:
    """Get absolute path to output directory from manifest."""
    rel = manifest.get('paths', {}).get('output_dir', 'output')
    data_dir = Path(manifest.get('_data_dir', '.'))
    return str(data_dir / rel)


def get_columns(manifest: Dict[str, Any]) -> Dict[str, str]:
    """Identifier and name column names (defaults: GEOID, NAME)."""
    cols = manifest.get('columns', {}) or {}
    return {'id': cols.get('id', 'GEOID'), 'name': cols.get('name', 'NAME')}
