"""
Model Comparison Engine
=======================

Fits every (class count, covariance structure) candidate and computes the
statistics a caller needs to choose among them:

    AIC      = -2 LL + 2 p
    BIC      = -2 LL + p ln N
    Entropy  = 1 - mean_i( H_i / ln k ),  H_i = -sum_j r_ij ln r_ij
               (1 = every unit assigned with certainty, 0 = uniform posteriors)

plus the class-size and posterior-certainty diagnostics reported next to
them (n_min / n_max, prob_min / prob_max).

Rows are sorted by ascending BIC by convention. Unconverged or degenerate
candidates stay in the table with a warning. Choosing the final model is the
caller's decision; best_by() only applies a criterion to converged rows.

All candidate x restart fits go into one task list, so a parallel run keeps
every worker busy and the reduction waits for all of them.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence

import numpy as np
import polars as pl

from tractlpa.core.covariance import CovarianceStructure
from tractlpa.core.mixture import (
    FittedModel,
    check_matrix,
    check_fit_options,
    fit_restart,
    select_best_restart,
)
from tractlpa.core.parallel import run_tasks
from tractlpa.validation import ConfigurationError

if TYPE_CHECKING:
    from tractlpa.config import LPAConfig


logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ModelCandidate:
    """One fitting configuration."""
    n_profiles: int
    structure: CovarianceStructure

    @property
    def name(self) -> str:
        """model_<structure>_class_<k>, the key used for fitted solutions."""
        return f"model_{int(self.structure)}_class_{self.n_profiles}"


@dataclass(frozen=True)
class ComparisonRow:
    """Fit statistics for one candidate."""
    candidate: ModelCandidate
    log_likelihood: float
    n_parameters: int
    aic: float
    bic: float
    entropy: float
    n_min: float
    n_max: float
    prob_min: float
    prob_max: float
    converged: bool
    degenerate: bool
    warning: Optional[str] = None


def candidate_grid(n_profiles: Iterable[int], structures: Iterable) -> List[ModelCandidate]:
    """
    Cartesian product of class counts and structures, structure-major.

    Raises:
        ConfigurationError: empty ranges, k < 1, unknown structure
    """
    ks = list(n_profiles)
    parsed = []
    for s in structures:
        p = CovarianceStructure.parse(s)
        if p not in parsed:
            parsed.append(p)

    if not ks:
        raise ConfigurationError("n_profiles", "at least one class count is required", ks)
    if not parsed:
        raise ConfigurationError("structures", "at least one covariance structure is required", parsed)
    for k in ks:
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
            raise ConfigurationError("n_profiles", f"class counts must be integers >= 1, got {k!r}", ks)

    return [
        ModelCandidate(int(k), s)
        for s in parsed
        for k in sorted(set(int(k) for k in ks))
    ]


def information_criteria(log_likelihood: float, n_parameters: int, n_units: int) -> Dict[str, float]:
    """AIC and BIC for one fit."""
    return {
        'aic': -2.0 * log_likelihood + 2.0 * n_parameters,
        'bic': -2.0 * log_likelihood + n_parameters * np.log(n_units),
    }


def classification_entropy(responsibilities: np.ndarray) -> float:
    """
    1 - average normalized Shannon entropy of the posterior rows, in [0, 1].

    Defined as 1.0 for a single class (no uncertainty is possible).
    """
    resp = np.asarray(responsibilities, dtype=np.float64)
    n, k = resp.shape
    if k == 1:
        return 1.0
    with np.errstate(divide='ignore', invalid='ignore'):
        terms = np.where(resp > 0, resp * np.log(resp), 0.0)
    row_entropy = -terms.sum(axis=1) / np.log(k)
    quality = 1.0 - float(np.mean(row_entropy))
    return float(min(1.0, max(0.0, quality)))


def _class_diagnostics(resp: np.ndarray) -> Dict[str, float]:
    """Assigned class proportions and mean posterior of assigned units."""
    n, k = resp.shape
    labels = np.argmax(resp, axis=1)
    counts = np.bincount(labels, minlength=k)
    proportions = counts / n

    probs = [resp[labels == j, j].mean() for j in range(k) if counts[j] > 0]
    return {
        'n_min': float(proportions.min()),
        'n_max': float(proportions.max()),
        'prob_min': float(min(probs)),
        'prob_max': float(max(probs)),
    }


def comparison_row(candidate: ModelCandidate, model: FittedModel) -> ComparisonRow:
    """Statistics for one fitted candidate."""
    ic = information_criteria(model.log_likelihood, model.n_parameters, model.n_units)
    diag = _class_diagnostics(model.responsibilities)

    warnings = []
    if not model.converged:
        warnings.append(f"not converged after {model.n_iter} iterations")
    if model.degenerate:
        warnings.append("numerical degeneracy")
    if diag['n_min'] == 0.0:
        warnings.append("empty class")

    return ComparisonRow(
        candidate=candidate,
        log_likelihood=model.log_likelihood,
        n_parameters=model.n_parameters,
        aic=ic['aic'],
        bic=ic['bic'],
        entropy=classification_entropy(model.responsibilities),
        converged=model.converged,
        degenerate=model.degenerate,
        warning="; ".join(warnings) if warnings else None,
        **diag,
    )


def estimate_profiles(
    X: np.ndarray,
    candidates: Sequence[ModelCandidate],
    config: "LPAConfig",
) -> "OrderedDict[ModelCandidate, FittedModel]":
    """
    Fit every candidate with config.n_restarts restarts each.

    Args:
        X: Standardized N x D matrix
        candidates: From candidate_grid
        config: Checked LPAConfig (restarts, seed, tolerance, ...)

    Returns:
        Ordered mapping candidate -> best-restart FittedModel

    Raises:
        ConfigurationError: before any fitting, for any invalid option
    """
    X = check_matrix(X)
    if not candidates:
        raise ConfigurationError("n_profiles", "no candidates to fit", candidates)
    for candidate in candidates:
        check_fit_options(
            candidate.n_profiles, config.n_restarts, config.tolerance,
            config.max_iter, config.min_variance, config.init, X.shape[0],
        )

    tasks = [
        (X, c.n_profiles, c.structure, r, config.seed,
         config.tolerance, config.max_iter, config.min_variance, config.init)
        for c in candidates
        for r in range(config.n_restarts)
    ]
    logger.info(
        "Fitting %d candidates x %d restarts on %d units x %d features",
        len(candidates), config.n_restarts, X.shape[0], X.shape[1],
    )

    fits = run_tasks(fit_restart, tasks, n_jobs=config.n_jobs)

    models: "OrderedDict[ModelCandidate, FittedModel]" = OrderedDict()
    for i, candidate in enumerate(candidates):
        chunk = fits[i * config.n_restarts:(i + 1) * config.n_restarts]
        models[candidate] = select_best_restart(chunk)
    return models


def compare_solutions(models: Dict[ModelCandidate, FittedModel]) -> List[ComparisonRow]:
    """Comparison rows for fitted candidates, ascending BIC (ties: smaller k, lower model)."""
    rows = [comparison_row(c, m) for c, m in models.items()]
    return sorted(rows, key=lambda r: (r.bic, r.candidate))


def comparison_table(rows: Sequence[ComparisonRow]) -> pl.DataFrame:
    """Comparison rows as a table, row order kept."""
    schema = {
        'Model': pl.Int64,
        'Classes': pl.Int64,
        'Structure': pl.Utf8,
        'LogLik': pl.Float64,
        'Parameters': pl.Int64,
        'AIC': pl.Float64,
        'BIC': pl.Float64,
        'Entropy': pl.Float64,
        'prob_min': pl.Float64,
        'prob_max': pl.Float64,
        'n_min': pl.Float64,
        'n_max': pl.Float64,
        'converged': pl.Boolean,
        'degenerate': pl.Boolean,
        'warning': pl.Utf8,
    }
    records = [
        {
            'Model': int(r.candidate.structure),
            'Classes': r.candidate.n_profiles,
            'Structure': r.candidate.structure.description,
            'LogLik': r.log_likelihood,
            'Parameters': r.n_parameters,
            'AIC': r.aic,
            'BIC': r.bic,
            'Entropy': r.entropy,
            'prob_min': r.prob_min,
            'prob_max': r.prob_max,
            'n_min': r.n_min,
            'n_max': r.n_max,
            'converged': r.converged,
            'degenerate': r.degenerate,
            'warning': r.warning,
        }
        for r in rows
    ]
    return pl.DataFrame(records, schema=schema)


def best_by(rows: Sequence[ComparisonRow], criterion: str = "bic") -> Optional[ComparisonRow]:
    """
    Row minimizing AIC/BIC (or maximizing entropy) among converged,
    non-degenerate rows. Informational; returns None if nothing qualifies.
    """
    criterion = criterion.lower()
    if criterion not in ('aic', 'bic', 'entropy'):
        raise ConfigurationError("criterion", f"must be 'aic', 'bic' or 'entropy', got {criterion!r}", criterion)

    eligible = [r for r in rows if r.converged and not r.degenerate]
    if not eligible:
        return None
    if criterion == 'entropy':
        return max(eligible, key=lambda r: (r.entropy, -r.candidate.n_profiles))
    return min(eligible, key=lambda r: (getattr(r, criterion), r.candidate))
