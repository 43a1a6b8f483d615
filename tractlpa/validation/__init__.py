"""
Validation Module

Exceptions and input checks shared across pipeline stages.

Exports:
    - ConfigurationError: invalid option, names the offending parameter
    - DegenerateFeatureError: zero-variance feature column
    - InputError: unusable input tables
    - FeatureReport: tally of tracts retained/dropped by the feature transform
    - validate_units_frame: column/identifier checks on a raw-count table
"""

from .input_validation import (
    ConfigurationError,
    DegenerateFeatureError,
    InputError,
    FeatureReport,
    validate_units_frame,
    DROP_REASONS,
    DROP_MISSING,
    DROP_NEGATIVE,
    DROP_ZERO_DENOMINATOR,
    DROP_RATIO_ABOVE_ONE,
    DROP_NON_FINITE,
)

__all__ = [
    'ConfigurationError',
    'DegenerateFeatureError',
    'InputError',
    'FeatureReport',
    'validate_units_frame',
    'DROP_REASONS',
    'DROP_MISSING',
    'DROP_NEGATIVE',
    'DROP_ZERO_DENOMINATOR',
    'DROP_RATIO_ABOVE_ONE',
    'DROP_NON_FINITE',
]
