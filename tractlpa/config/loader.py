"""
Config Loader
=============

Builds an LPAConfig from the `lpa:` section of a manifest.

    lpa:
      n_profiles: "1:8"
      structures: [6]
      n_restarts: 10
      seed: 36
      final:
        n_profiles: 6
        structure: 6

Missing keys fall back to the defaults declared on LPAConfig.
"""

from typing import Any, Dict, Optional

from pydantic import ValidationError

from tractlpa.config.schema import LPAConfig
from tractlpa.validation import ConfigurationError


def load_config(manifest: Optional[Dict[str, Any]] = None, **overrides) -> LPAConfig:
    """
    Parse and check the LPA options of a manifest.

    Args:
        manifest: Parsed manifest dict (None = defaults only)
        **overrides: Values that win over the manifest

    Returns:
        Checked LPAConfig

    Raises:
        ConfigurationError: naming the first invalid field
    """
    section = dict((manifest or {}).get('lpa') or {})
    section.update({k: v for k, v in overrides.items() if v is not None})

    try:
        config = LPAConfig.model_validate(section)
    except ValidationError as e:
        first = e.errors()[0]
        parameter = ".".join(str(part) for part in first.get('loc', ())) or 'lpa'
        raise ConfigurationError(parameter, first.get('msg', str(e)), first.get('input')) from e

    config.check()
    return config
