"""
LPA Config Schema
=================

Every option of a typology run in one place, with its default visible here.
Read from the `lpa:` section of manifest.yaml (see tractlpa.config.loader).

Usage:
    config = LPAConfig(n_profiles=[1, 2, 3, 4], structures=[1, 6], seed=36)
    config.check()                  # raises ConfigurationError naming the field

    config = LPAConfig.model_validate({'n_profiles': '1:8', 'structures': [6]})
"""

from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from tractlpa.core.covariance import CovarianceStructure
from tractlpa.core.mixture import INIT_METHODS, check_fit_options
from tractlpa.validation import ConfigurationError


def _parse_range(value):
    """Accept 6, [1, 2, 3], '1:8' or '1-8' for a list of class counts."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return [value]
    if isinstance(value, str):
        text = value.strip()
        for sep in (':', '-'):
            if sep in text:
                lo, hi = (part.strip() for part in text.split(sep, 1))
                return list(range(int(lo), int(hi) + 1))
        return [int(text)]
    return value


class FinalModelConfig(BaseModel):
    """The (k, structure) a caller fixed for classification after reading the comparison."""
    n_profiles: int = Field(..., description="Number of classes of the chosen model")
    structure: Union[int, str] = Field(..., description="Covariance structure (1-6 or code)")

    def check(self) -> None:
        if self.n_profiles < 1:
            raise ConfigurationError("final.n_profiles", f"must be >= 1, got {self.n_profiles}", self.n_profiles)
        CovarianceStructure.parse(self.structure)

    def structure_id(self) -> CovarianceStructure:
        return CovarianceStructure.parse(self.structure)


class LPAConfig(BaseModel):
    """Options for feature standardization, mixture fitting and model comparison."""

    # ==========================================================================
    # CANDIDATES
    # ==========================================================================

    n_profiles: List[int] = Field(
        default_factory=lambda: list(range(1, 9)),
        description="Candidate class counts (list, single int, or 'lo:hi' range)",
    )
    structures: List[Union[int, str]] = Field(
        default_factory=lambda: [6],
        description="Candidate covariance structures (model numbers 1-6 or codes)",
    )

    # ==========================================================================
    # ESTIMATION
    # ==========================================================================

    n_restarts: int = Field(default=10, description="Randomized EM starts per candidate")
    tolerance: float = Field(default=1e-6, description="Stop when log-likelihood gain is below this")
    max_iter: int = Field(default=1000, description="Hard cap on EM iterations per restart")
    seed: int = Field(default=36, description="Top-level seed; restarts derive from it")
    min_variance: float = Field(default=1e-6, description="Variance / eigenvalue floor")
    init: str = Field(default="kmeans", description="Initial means: 'kmeans' or 'random'")
    n_jobs: int = Field(default=1, description="joblib workers (1 = sequential, -1 = all cores)")

    # ==========================================================================
    # OUTPUT
    # ==========================================================================

    digits: int = Field(default=3, description="Decimal places in the merged result table")
    final: Optional[FinalModelConfig] = Field(
        default=None,
        description="Model used for classification. None = comparison only.",
    )

    @field_validator('n_profiles', mode='before')
    @classmethod
    def _coerce_profiles(cls, value):
        return _parse_range(value)

    @field_validator('structures', mode='before')
    @classmethod
    def _coerce_structures(cls, value):
        if isinstance(value, (int, str)):
            return [value]
        return value

    def structure_ids(self) -> List[CovarianceStructure]:
        """Parsed structures, duplicates removed, input order kept."""
        out: List[CovarianceStructure] = []
        for s in self.structures:
            parsed = CovarianceStructure.parse(s)
            if parsed not in out:
                out.append(parsed)
        return out

    def check(self) -> None:
        """
        Validate option semantics. Call before any fitting.

        Raises:
            ConfigurationError: naming the offending field
        """
        if not self.n_profiles:
            raise ConfigurationError("n_profiles", "at least one class count is required", self.n_profiles)
        for k in self.n_profiles:
            if k < 1:
                raise ConfigurationError("n_profiles", f"class counts must be >= 1, got {k}", self.n_profiles)
        if not self.structures:
            raise ConfigurationError("structures", "at least one covariance structure is required", self.structures)
        self.structure_ids()

        check_fit_options(
            n_profiles=min(self.n_profiles),
            n_restarts=self.n_restarts,
            tolerance=self.tolerance,
            max_iter=self.max_iter,
            min_variance=self.min_variance,
            init=self.init,
        )
        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs", "must be non-zero", self.n_jobs)
        if self.digits < 0:
            raise ConfigurationError("digits", f"must be >= 0, got {self.digits}", self.digits)
        if self.final is not None:
            self.final.check()


__all__ = ['LPAConfig', 'FinalModelConfig', 'INIT_METHODS']
