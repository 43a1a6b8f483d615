"""
tractlpa: residential typologies of census tracts by latent profile analysis.

Public API:
    from tractlpa import run, run_typology
    run(units_path, manifest_path, output_dir)

Layers:
    tractlpa.core        Engines: compute (tables/arrays in, frozen results out, no file I/O)
    tractlpa.io          Table I/O (reader, writer, manifest)
    tractlpa.config      Run options (LPAConfig)
    tractlpa.validation  Errors and input checks

Pipeline:
    features -> standardize -> estimate -> compare -> classify -> merge
"""

from tractlpa.run import run, run_typology, TypologyResult

__all__ = ["run", "run_typology", "TypologyResult"]
