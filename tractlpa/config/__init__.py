"""
Configuration for typology runs.

    LPAConfig        - pydantic schema of every run option
    FinalModelConfig - caller-fixed (k, structure) used for classification
    load_config      - LPAConfig from a manifest's `lpa:` section
"""

from tractlpa.config.schema import LPAConfig, FinalModelConfig
from tractlpa.config.loader import load_config

__all__ = ['LPAConfig', 'FinalModelConfig', 'load_config']
