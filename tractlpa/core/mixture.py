"""
Gaussian Mixture Engine (Latent Profile Estimation)
===================================================

Fits a k-class multivariate Gaussian mixture to the standardized feature
matrix by Expectation-Maximization, under one of the six covariance
structures, with R seeded restarts.

Per restart:
    1. Init    means from k-means (or a random partition), covariances a
               scaled identity, weights uniform
    2. E-step  log-space responsibilities (logsumexp); a row whose total
               density underflows gets uniform responsibilities and marks
               the run degenerate
    3. M-step  weights, means, structure-specific covariances with a
               variance floor; the covariance update never lowers the
               expected complete-data log-likelihood (exact for models
               1, 2, 3, 6, an ascent to a stationary point for 4 and 5)
    4. Stop    when the log-likelihood gain drops below `tolerance`, or
               after `max_iter` M-steps (kept, flagged unconverged)

The restart with the highest final log-likelihood is the fit for the
candidate; ties go to the lowest restart index.

Determinism:
    Each restart's generator is seeded from SeedSequence(seed,
    spawn_key=(k, structure, restart)) and runs with native thread pools
    (BLAS, OpenMP) pinned to one thread, so a restart computes the same
    bits inline or in a joblib worker. The chosen fit never depends on
    worker count or completion order.

Label switching:
    Class indices are arbitrary. Two fits of the same data (different seed,
    restart or candidate) may number the same profiles differently. This is
    a property of mixture models; no canonical ordering is imposed.

Engines compute numbers. Picking the final class count is the caller's call.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.special import logsumexp
from sklearn.cluster import KMeans
from threadpoolctl import threadpool_limits

from tractlpa.core.covariance import (
    CovarianceStructure,
    expand,
    initial_covariance,
    log_gaussian_density,
    scatter_matrices,
    update_covariance,
)
from tractlpa.core.parallel import run_tasks
from tractlpa.validation import ConfigurationError, InputError


logger = logging.getLogger(__name__)


EPS = np.finfo(np.float64).eps

# Log-density assigned to a row whose mixture density underflows
LOG_TINY = float(np.log(np.finfo(np.float64).tiny))

# Effective class size below which a class counts as emptied
EMPTY_CLASS_MASS = 1e-6

# Allowed log-likelihood decrease (relative) before it is reported as a defect
MONOTONE_SLACK = 1e-9

INIT_METHODS = ("kmeans", "random")


@dataclass(frozen=True)
class FittedModel:
    """
    Result of one EM fit. Arrays are read-only.

    covariances uses the storage shape of `structure`
    (see CovarianceStructure.covariance_shape); covariance_matrices()
    returns the expanded (k, D, D) stack.
    """
    n_profiles: int
    structure: CovarianceStructure
    weights: np.ndarray
    means: np.ndarray
    covariances: np.ndarray
    log_likelihood: float
    n_iter: int
    converged: bool
    degenerate: bool
    regularized: bool
    responsibilities: np.ndarray
    log_likelihood_history: Tuple[float, ...]
    restart: int
    seed: int
    restart_log_likelihoods: Tuple[float, ...] = ()

    @property
    def n_units(self) -> int:
        return self.responsibilities.shape[0]

    @property
    def n_features(self) -> int:
        return self.means.shape[1]

    @property
    def n_parameters(self) -> int:
        return count_parameters(self.n_profiles, self.n_features, self.structure)

    @property
    def labels(self) -> np.ndarray:
        """0-based hard assignment; argmax keeps the lowest index on ties."""
        return np.argmax(self.responsibilities, axis=1)

    def covariance_matrices(self) -> np.ndarray:
        return expand(self.structure, self.covariances, self.n_profiles)


def count_parameters(k: int, d: int, structure: CovarianceStructure) -> int:
    """Free parameters: (k-1) weights + k*d means + structure covariances."""
    return (k - 1) + k * d + structure.n_covariance_parameters(k, d)


def check_fit_options(
    n_profiles: int,
    n_restarts: int,
    tolerance: float,
    max_iter: int,
    min_variance: float,
    init: str,
    n_units: Optional[int] = None,
) -> None:
    """Reject invalid options before any fitting begins."""
    if isinstance(n_profiles, bool) or not isinstance(n_profiles, (int, np.integer)) or n_profiles < 1:
        raise ConfigurationError("n_profiles", f"must be an integer >= 1, got {n_profiles!r}", n_profiles)
    if n_units is not None and n_profiles > n_units:
        raise ConfigurationError(
            "n_profiles", f"{n_profiles} classes requested for only {n_units} units", n_profiles
        )
    if isinstance(n_restarts, bool) or not isinstance(n_restarts, (int, np.integer)) or n_restarts < 1:
        raise ConfigurationError("n_restarts", f"must be an integer >= 1, got {n_restarts!r}", n_restarts)
    if not tolerance > 0:
        raise ConfigurationError("tolerance", f"must be > 0, got {tolerance!r}", tolerance)
    if isinstance(max_iter, bool) or not isinstance(max_iter, (int, np.integer)) or max_iter < 1:
        raise ConfigurationError("max_iter", f"must be an integer >= 1, got {max_iter!r}", max_iter)
    if not min_variance > 0:
        raise ConfigurationError("min_variance", f"must be > 0, got {min_variance!r}", min_variance)
    if init not in INIT_METHODS:
        raise ConfigurationError("init", f"must be one of {INIT_METHODS}, got {init!r}", init)


def restart_rng(seed: int, n_profiles: int, structure: CovarianceStructure, restart: int) -> np.random.Generator:
    """Generator for one restart, derived from the top-level seed and the fit identity."""
    ss = np.random.SeedSequence(entropy=int(seed), spawn_key=(int(n_profiles), int(structure), int(restart)))
    return np.random.default_rng(ss)


def check_matrix(X: np.ndarray) -> np.ndarray:
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2 or X.shape[0] == 0 or X.shape[1] == 0:
        raise InputError([f"expected a non-empty N x D matrix, got shape {X.shape}"])
    if not np.all(np.isfinite(X)):
        raise InputError(["feature matrix contains non-finite values"])
    return X


def _initial_means(X: np.ndarray, k: int, rng: np.random.Generator, init: str) -> np.ndarray:
    if init == "kmeans":
        km = KMeans(n_clusters=k, n_init=1, random_state=int(rng.integers(0, 2**31 - 1)))
        km.fit(X)
        return np.array(km.cluster_centers_, dtype=np.float64)

    # Random partition with every class non-empty
    n = X.shape[0]
    labels = rng.permutation(np.arange(n) % k)
    return np.vstack([X[labels == j].mean(axis=0) for j in range(k)])


def _e_step(
    X: np.ndarray,
    weights: np.ndarray,
    means: np.ndarray,
    cov_full: np.ndarray,
) -> Tuple[np.ndarray, float, bool]:
    """Returns (responsibilities, log_likelihood, underflow)."""
    k = means.shape[0]
    with np.errstate(divide="ignore"):
        log_weights = np.log(weights)
    weighted = log_gaussian_density(X, means, cov_full) + log_weights
    log_norm = logsumexp(weighted, axis=1)

    bad = ~np.isfinite(log_norm)
    safe_norm = np.where(bad, 0.0, log_norm)
    with np.errstate(invalid="ignore", over="ignore"):
        resp = np.exp(weighted - safe_norm[:, None])
    resp[bad] = 1.0 / k
    resp /= resp.sum(axis=1, keepdims=True)

    log_likelihood = float(np.sum(log_norm[~bad]) + bad.sum() * LOG_TINY)
    return resp, log_likelihood, bool(bad.any())


def _m_step(
    X: np.ndarray,
    resp: np.ndarray,
    structure: CovarianceStructure,
    prev_cov: np.ndarray,
    min_variance: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, bool, bool]:
    """Returns (weights, means, covariances, regularized, emptied)."""
    nk = resp.sum(axis=0) + 10 * EPS
    weights = nk / nk.sum()
    means = (resp.T @ X) / nk[:, None]

    S = scatter_matrices(X, resp, means, nk)
    covariances, regularized = update_covariance(structure, prev_cov, S, nk, min_variance)

    emptied = bool((nk < EMPTY_CLASS_MASS).any())
    return weights, means, covariances, regularized, emptied


def fit_restart(
    X: np.ndarray,
    n_profiles: int,
    structure: CovarianceStructure,
    restart: int,
    seed: int,
    tolerance: float,
    max_iter: int,
    min_variance: float,
    init: str = "kmeans",
) -> FittedModel:
    """
    Run EM once from one seeded starting point.

    Args:
        X: Standardized N x D matrix (read only)
        n_profiles: Number of classes k
        structure: Covariance parameterization
        restart: Restart index (feeds the seed derivation)
        seed: Top-level seed
        tolerance: Stop when the log-likelihood gain is below this
        max_iter: Hard cap on M-steps
        min_variance: Variance / eigenvalue floor
        init: 'kmeans' or 'random'

    Returns:
        FittedModel for this restart
    """
    with threadpool_limits(limits=1):
        return _run_em(X, n_profiles, structure, restart, seed, tolerance, max_iter, min_variance, init)


def _run_em(
    X: np.ndarray,
    n_profiles: int,
    structure: CovarianceStructure,
    restart: int,
    seed: int,
    tolerance: float,
    max_iter: int,
    min_variance: float,
    init: str = "kmeans",
) -> FittedModel:
    k = int(n_profiles)
    n, d = X.shape
    rng = restart_rng(seed, k, structure, restart)

    means = _initial_means(X, k, rng, init)
    scale = float(np.mean(np.var(X, axis=0)))
    covariances = initial_covariance(structure, k, d, max(scale, min_variance))
    weights = np.full(k, 1.0 / k)

    resp, log_likelihood, degenerate = _e_step(X, weights, means, expand(structure, covariances, k))
    history = [log_likelihood]
    regularized = False
    converged = False
    n_iter = 0

    while n_iter < max_iter:
        weights, means, covariances, clipped, emptied = _m_step(X, resp, structure, covariances, min_variance)
        regularized = regularized or clipped
        degenerate = degenerate or emptied
        n_iter += 1

        resp, new_ll, underflow = _e_step(X, weights, means, expand(structure, covariances, k))
        degenerate = degenerate or underflow
        history.append(new_ll)

        gain = new_ll - log_likelihood
        log_likelihood = new_ll

        if gain < -MONOTONE_SLACK * max(1.0, abs(log_likelihood)):
            logger.error(
                "Log-likelihood decreased by %.3g at iteration %d (k=%d, model %d, restart %d)",
                -gain, n_iter, k, int(structure), restart,
            )

        if gain < tolerance:
            converged = True
            break

    logger.debug(
        "k=%d model %d restart %d: LL=%.4f after %d iterations (converged=%s)",
        k, int(structure), restart, log_likelihood, n_iter, converged,
    )

    arrays = [weights, means, np.asarray(covariances, dtype=np.float64), resp]
    for arr in arrays:
        arr.setflags(write=False)

    return FittedModel(
        n_profiles=k,
        structure=structure,
        weights=arrays[0],
        means=arrays[1],
        covariances=arrays[2],
        log_likelihood=log_likelihood,
        n_iter=n_iter,
        converged=converged,
        degenerate=degenerate,
        regularized=regularized,
        responsibilities=arrays[3],
        log_likelihood_history=tuple(history),
        restart=restart,
        seed=int(seed),
    )


def select_best_restart(fits: Sequence[FittedModel]) -> FittedModel:
    """
    Pure reduction over restarts: highest final log-likelihood wins,
    lowest restart index breaks ties.
    """
    if not fits:
        raise ValueError("no restarts to reduce")
    ordered = sorted(fits, key=lambda f: f.restart)
    best = max(ordered, key=lambda f: f.log_likelihood)
    best = dataclasses.replace(
        best,
        restart_log_likelihoods=tuple(f.log_likelihood for f in ordered),
    )

    if not best.converged:
        logger.warning(
            "k=%d model %d: best restart did not converge in %d iterations",
            best.n_profiles, int(best.structure), best.n_iter,
        )
    if best.degenerate:
        logger.warning(
            "k=%d model %d: numerical degeneracy (underflowed responsibilities or an emptied class)",
            best.n_profiles, int(best.structure),
        )
    return best


def fit_mixture(
    X: np.ndarray,
    n_profiles: int,
    structure,
    n_restarts: int,
    seed: int,
    tolerance: float = 1e-6,
    max_iter: int = 1000,
    min_variance: float = 1e-6,
    init: str = "kmeans",
    n_jobs: int = 1,
) -> FittedModel:
    """
    Fit one (k, structure) candidate with R restarts and keep the best.

    Args:
        X: Standardized N x D matrix
        n_profiles: Number of classes k >= 1
        structure: CovarianceStructure, model number 1-6, or code
        n_restarts: R >= 1
        seed: Top-level seed
        tolerance: Log-likelihood gain threshold
        max_iter: Hard cap on M-steps per restart
        min_variance: Variance / eigenvalue floor
        init: 'kmeans' or 'random'
        n_jobs: joblib workers for the restarts

    Returns:
        FittedModel of the best restart

    Raises:
        ConfigurationError: before fitting, for any invalid option
    """
    structure = CovarianceStructure.parse(structure)
    X = check_matrix(X)
    check_fit_options(n_profiles, n_restarts, tolerance, max_iter, min_variance, init, X.shape[0])

    tasks = [
        (X, int(n_profiles), structure, r, seed, tolerance, max_iter, min_variance, init)
        for r in range(n_restarts)
    ]
    fits: List[FittedModel] = run_tasks(fit_restart, tasks, n_jobs=n_jobs)
    return select_best_restart(fits)
