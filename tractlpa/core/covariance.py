"""
Covariance Structures
=====================

The six latent-profile covariance parameterizations, numbered as in the
usual LPA software (model 1..6):

    model  variances   covariances   storage shape   mclust
    1      equal       zero          (D,)            EEI
    2      varying     zero          (k, D)          VVI
    3      equal       equal         (D, D)          EEE
    4      varying     equal         (k, D, D)       -
    5      equal       varying       (k, D, D)       -
    6      varying     varying       (k, D, D)       VVV

"equal" = shared by all classes, "varying" = class-specific.

The structure decides three things and all three dispatch on this enum:
    - the M-step covariance update        -> estimate_covariance / update_covariance
    - the free covariance parameter count -> n_covariance_parameters
    - the storage shape                   -> covariance_shape / expand

Models 1, 2, 3 and 6 have closed-form M-steps (diagonal or full, of the
pooled or per-class scatter). Models 4 and 5 have none. Their update
(update_covariance) climbs Q, the covariance part of the expected
complete-data log-likelihood, from the previous estimate:

    1. best point of the segment (1 - t) * prev + t * target, t = 1, 1/2, ...
       where target mixes per-class diagonals with pooled off-diagonals
       (or the reverse)
    2. a backtracked step along the gradient of Q projected onto the
       structure (shared blocks get the summed class gradients)

repeated until Q stops increasing. Every accepted step raises Q and stays
inside the structure, so the update is a generalized M-step that only
settles where the projected gradient vanishes.
"""

from enum import Enum
from typing import Tuple, Union

import numpy as np
from scipy.linalg import cho_solve, cholesky, solve_triangular

from tractlpa.validation import ConfigurationError


LOG_2PI = np.log(2.0 * np.pi)

# Ascent rounds per M-step for models 4 and 5
MAX_ASCENT_STEPS = 25

# Segment points tried per round: t = 1, 1/2, ..., 1/1024
SEGMENT_HALVINGS = 11

# Backtracking halvings of a gradient step
GRADIENT_HALVINGS = 30

# Relative Q gain below which a round counts as no progress
ASCENT_TOLERANCE = 1e-12


class CovarianceStructure(int, Enum):
    """Closed set of covariance parameterizations (LPA model numbers)."""
    EQUAL_VARIANCES_ZERO_COVARIANCES = 1
    VARYING_VARIANCES_ZERO_COVARIANCES = 2
    EQUAL_VARIANCES_EQUAL_COVARIANCES = 3
    VARYING_VARIANCES_EQUAL_COVARIANCES = 4
    EQUAL_VARIANCES_VARYING_COVARIANCES = 5
    VARYING_VARIANCES_VARYING_COVARIANCES = 6

    @property
    def diagonal(self) -> bool:
        return self in (
            CovarianceStructure.EQUAL_VARIANCES_ZERO_COVARIANCES,
            CovarianceStructure.VARYING_VARIANCES_ZERO_COVARIANCES,
        )

    @property
    def shared_variances(self) -> bool:
        return self in (
            CovarianceStructure.EQUAL_VARIANCES_ZERO_COVARIANCES,
            CovarianceStructure.EQUAL_VARIANCES_EQUAL_COVARIANCES,
            CovarianceStructure.EQUAL_VARIANCES_VARYING_COVARIANCES,
        )

    @property
    def shared_covariances(self) -> bool:
        """Off-diagonal terms shared by all classes (zero counts as shared)."""
        return self in (
            CovarianceStructure.EQUAL_VARIANCES_ZERO_COVARIANCES,
            CovarianceStructure.VARYING_VARIANCES_ZERO_COVARIANCES,
            CovarianceStructure.EQUAL_VARIANCES_EQUAL_COVARIANCES,
            CovarianceStructure.VARYING_VARIANCES_EQUAL_COVARIANCES,
        )

    @property
    def closed_form(self) -> bool:
        """The M-step covariance update has an exact solution."""
        return self not in (
            CovarianceStructure.VARYING_VARIANCES_EQUAL_COVARIANCES,
            CovarianceStructure.EQUAL_VARIANCES_VARYING_COVARIANCES,
        )

    @property
    def code(self) -> str:
        return _CODES[self]

    @property
    def description(self) -> str:
        variances = "equal" if self.shared_variances else "varying"
        if self.diagonal:
            covariances = "zero"
        else:
            covariances = "equal" if self.shared_covariances else "varying"
        return f"{variances} variances, {covariances} covariances"

    def n_covariance_parameters(self, k: int, d: int) -> int:
        """Free covariance parameters for k classes in d dimensions."""
        n_off = d * (d - 1) // 2
        if self == CovarianceStructure.EQUAL_VARIANCES_ZERO_COVARIANCES:
            return d
        if self == CovarianceStructure.VARYING_VARIANCES_ZERO_COVARIANCES:
            return k * d
        if self == CovarianceStructure.EQUAL_VARIANCES_EQUAL_COVARIANCES:
            return d + n_off
        if self == CovarianceStructure.VARYING_VARIANCES_EQUAL_COVARIANCES:
            return k * d + n_off
        if self == CovarianceStructure.EQUAL_VARIANCES_VARYING_COVARIANCES:
            return d + k * n_off
        return k * (d + n_off)

    def covariance_shape(self, k: int, d: int) -> Tuple[int, ...]:
        if self == CovarianceStructure.EQUAL_VARIANCES_ZERO_COVARIANCES:
            return (d,)
        if self == CovarianceStructure.VARYING_VARIANCES_ZERO_COVARIANCES:
            return (k, d)
        if self == CovarianceStructure.EQUAL_VARIANCES_EQUAL_COVARIANCES:
            return (d, d)
        return (k, d, d)

    @classmethod
    def parse(cls, value: Union[int, str, "CovarianceStructure"]) -> "CovarianceStructure":
        """Accept a member, a model number (1-6), a member name or an mclust code."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ConfigurationError("structures", f"unknown covariance structure {value!r}", value)
        if isinstance(value, (int, np.integer)):
            try:
                return cls(int(value))
            except ValueError:
                raise ConfigurationError(
                    "structures", f"unknown covariance structure {value!r} (expected 1-6)", value
                ) from None
        if isinstance(value, str):
            key = value.strip()
            if key.isdigit():
                return cls.parse(int(key))
            upper = key.upper()
            if upper in cls.__members__:
                return cls[upper]
            for member, code in _CODES.items():
                if code and code == upper:
                    return member
        raise ConfigurationError("structures", f"unknown covariance structure {value!r}", value)


_CODES = {
    CovarianceStructure.EQUAL_VARIANCES_ZERO_COVARIANCES: "EEI",
    CovarianceStructure.VARYING_VARIANCES_ZERO_COVARIANCES: "VVI",
    CovarianceStructure.EQUAL_VARIANCES_EQUAL_COVARIANCES: "EEE",
    CovarianceStructure.VARYING_VARIANCES_EQUAL_COVARIANCES: "",
    CovarianceStructure.EQUAL_VARIANCES_VARYING_COVARIANCES: "",
    CovarianceStructure.VARYING_VARIANCES_VARYING_COVARIANCES: "VVV",
}


def expand(structure: CovarianceStructure, cov: np.ndarray, k: int) -> np.ndarray:
    """Compact storage -> (k, D, D) stack of full matrices."""
    cov = np.asarray(cov, dtype=np.float64)
    if structure == CovarianceStructure.EQUAL_VARIANCES_ZERO_COVARIANCES:
        return np.repeat(np.diag(cov)[None, :, :], k, axis=0)
    if structure == CovarianceStructure.VARYING_VARIANCES_ZERO_COVARIANCES:
        return np.stack([np.diag(row) for row in cov])
    if structure == CovarianceStructure.EQUAL_VARIANCES_EQUAL_COVARIANCES:
        return np.repeat(cov[None, :, :], k, axis=0)
    return cov.copy()


def initial_covariance(structure: CovarianceStructure, k: int, d: int, scale: float = 1.0) -> np.ndarray:
    """Scaled identity in the storage shape of `structure`."""
    if structure == CovarianceStructure.EQUAL_VARIANCES_ZERO_COVARIANCES:
        return np.full(d, scale)
    if structure == CovarianceStructure.VARYING_VARIANCES_ZERO_COVARIANCES:
        return np.full((k, d), scale)
    if structure == CovarianceStructure.EQUAL_VARIANCES_EQUAL_COVARIANCES:
        return np.eye(d) * scale
    return np.repeat((np.eye(d) * scale)[None, :, :], k, axis=0)


def scatter_matrices(X: np.ndarray, resp: np.ndarray, means: np.ndarray, nk: np.ndarray) -> np.ndarray:
    """Per-class responsibility-weighted scatter S_k, shape (k, D, D)."""
    k, d = means.shape
    S = np.empty((k, d, d))
    for j in range(k):
        diff = X - means[j]
        S[j] = (resp[:, j][:, None] * diff).T @ diff / nk[j]
    return S


def floor_matrix(matrix: np.ndarray, floor: float) -> Tuple[np.ndarray, bool]:
    """Clip eigenvalues of a symmetric matrix at `floor`. Returns (matrix, clipped)."""
    sym = 0.5 * (matrix + matrix.T)
    eigvals, eigvecs = np.linalg.eigh(sym)
    if eigvals.min() >= floor:
        return sym, False
    eigvals = np.maximum(eigvals, floor)
    return (eigvecs * eigvals) @ eigvecs.T, True


def _offdiag(matrix: np.ndarray) -> np.ndarray:
    return matrix - np.diag(np.diag(matrix))


def estimate_covariance(
    structure: CovarianceStructure,
    S: np.ndarray,
    nk: np.ndarray,
    floor: float,
) -> Tuple[np.ndarray, bool]:
    """
    Covariance implied by the scatter for one structure: the exact M-step
    for models 1, 2, 3 and 6, the ascent target for models 4 and 5.

    Args:
        structure: Active parameterization
        S: Per-class scatter matrices (k, D, D)
        nk: Effective class sizes (k,)
        floor: Minimum variance / eigenvalue

    Returns:
        (covariance in storage shape, regularized)
        regularized is True when the floor changed the estimate.
    """
    k = S.shape[0]
    pooled = np.tensordot(nk, S, axes=1) / nk.sum()

    if structure == CovarianceStructure.EQUAL_VARIANCES_ZERO_COVARIANCES:
        var = np.diag(pooled)
        return np.maximum(var, floor), bool((var < floor).any())

    if structure == CovarianceStructure.VARYING_VARIANCES_ZERO_COVARIANCES:
        var = np.diagonal(S, axis1=1, axis2=2)
        return np.maximum(var, floor), bool((var < floor).any())

    if structure == CovarianceStructure.EQUAL_VARIANCES_EQUAL_COVARIANCES:
        return floor_matrix(pooled, floor)

    if structure == CovarianceStructure.VARYING_VARIANCES_EQUAL_COVARIANCES:
        shared_off = _offdiag(pooled)
        raw = [np.diag(np.diag(S[j])) + shared_off for j in range(k)]
    elif structure == CovarianceStructure.EQUAL_VARIANCES_VARYING_COVARIANCES:
        shared_diag = np.diag(np.diag(pooled))
        raw = [shared_diag + _offdiag(S[j]) for j in range(k)]
    else:
        raw = [S[j] for j in range(k)]

    out = np.empty_like(S)
    regularized = False
    for j, matrix in enumerate(raw):
        out[j], clipped = floor_matrix(matrix, floor)
        regularized = regularized or clipped
    return out, regularized


def cholesky_factors(cov_full: np.ndarray) -> np.ndarray:
    """Lower Cholesky factor of each (D, D) matrix in a (k, D, D) stack."""
    return np.stack([cholesky(c, lower=True) for c in cov_full])


def log_gaussian_density(X: np.ndarray, means: np.ndarray, cov_full: np.ndarray) -> np.ndarray:
    """log N(x_i | mu_j, Sigma_j) for every row and class, shape (N, k)."""
    n, d = X.shape
    k = means.shape[0]
    chol = cholesky_factors(cov_full)
    out = np.empty((n, k))
    for j in range(k):
        solved = solve_triangular(chol[j], (X - means[j]).T, lower=True)
        maha = np.sum(solved ** 2, axis=0)
        log_det = 2.0 * np.sum(np.log(np.diag(chol[j])))
        out[:, j] = -0.5 * (d * LOG_2PI + log_det + maha)
    return out


def expected_covariance_term(cov_full: np.ndarray, S: np.ndarray, nk: np.ndarray) -> float:
    """
    Covariance part of the expected complete-data log-likelihood:

        -1/2 * sum_k n_k * (log|Sigma_k| + tr(Sigma_k^-1 S_k))
    """
    total = 0.0
    for j in range(S.shape[0]):
        chol = cholesky(cov_full[j], lower=True)
        log_det = 2.0 * np.sum(np.log(np.diag(chol)))
        inv_chol = solve_triangular(chol, np.eye(chol.shape[0]), lower=True)
        trace = np.sum((inv_chol @ S[j]) * inv_chol)
        total += nk[j] * (log_det + trace)
    return -0.5 * total


def _q_gradient(cov_full: np.ndarray, S: np.ndarray, nk: np.ndarray) -> np.ndarray:
    """dQ/dSigma_k = n_k / 2 * (P_k S_k P_k - P_k), P_k = Sigma_k^-1, shape (k, D, D)."""
    d = cov_full.shape[1]
    grads = np.empty_like(cov_full)
    for j in range(cov_full.shape[0]):
        precision = cho_solve((cholesky(cov_full[j], lower=True), True), np.eye(d))
        grads[j] = 0.5 * nk[j] * (precision @ S[j] @ precision - precision)
    return grads


def _project(structure: CovarianceStructure, grads: np.ndarray) -> np.ndarray:
    """Restrict per-class gradients to the free parameters of model 4 or 5."""
    k, d, _ = grads.shape
    diag = np.einsum('kii->ki', grads)
    off = grads - diag[:, :, None] * np.eye(d)
    if structure == CovarianceStructure.VARYING_VARIANCES_EQUAL_COVARIANCES:
        shared_off = off.sum(axis=0)
        return np.stack([np.diag(diag[j]) + shared_off for j in range(k)])
    shared_diag = np.diag(diag.sum(axis=0))
    return shared_diag[None, :, :] + off


def _segment_step(
    current: np.ndarray,
    target: np.ndarray,
    S: np.ndarray,
    nk: np.ndarray,
    q_current: float,
) -> Tuple[np.ndarray, float]:
    """Best of (1 - t) * current + t * target over t = 1, 1/2, ...; current if none is better."""
    best, best_q = current, q_current
    t = 1.0
    for _ in range(SEGMENT_HALVINGS):
        trial = (1.0 - t) * current + t * target
        q = expected_covariance_term(trial, S, nk)
        if q > best_q:
            best, best_q = trial, q
        t *= 0.5
    return best, best_q


def _gradient_step(
    structure: CovarianceStructure,
    current: np.ndarray,
    S: np.ndarray,
    nk: np.ndarray,
    q_current: float,
    floor: float,
) -> Tuple[np.ndarray, float]:
    """Backtracked step along the projected gradient of Q; current if no step improves Q."""
    direction = _project(structure, _q_gradient(current, S, nk))
    size = float(np.abs(direction).max())
    if not size > 0:
        return current, q_current

    step = 0.5 * min(float(np.linalg.eigvalsh(c).min()) for c in current) / size
    for _ in range(GRADIENT_HALVINGS):
        trial = current + step * direction
        trial = 0.5 * (trial + np.transpose(trial, (0, 2, 1)))
        if min(float(np.linalg.eigvalsh(c).min()) for c in trial) >= floor:
            q = expected_covariance_term(trial, S, nk)
            if q > q_current:
                return trial, q
        step *= 0.5
    return current, q_current


def update_covariance(
    structure: CovarianceStructure,
    prev: np.ndarray,
    S: np.ndarray,
    nk: np.ndarray,
    floor: float,
) -> Tuple[np.ndarray, bool]:
    """
    M-step covariance update that never lowers Q.

    Args:
        structure: Active parameterization
        prev: Covariance from the previous iteration (storage shape)
        S: Per-class scatter matrices (k, D, D)
        nk: Effective class sizes (k,)
        floor: Minimum variance / eigenvalue

    Returns:
        (covariance in storage shape, regularized)
    """
    k = S.shape[0]
    target, regularized = estimate_covariance(structure, S, nk, floor)
    q_prev = expected_covariance_term(expand(structure, prev, k), S, nk)

    if structure.closed_form:
        if expected_covariance_term(expand(structure, target, k), S, nk) < q_prev:
            return prev, regularized
        return target, regularized

    current, q_current = np.asarray(prev, dtype=np.float64), q_prev
    for _ in range(MAX_ASCENT_STEPS):
        q_start = q_current
        # a floored target no longer shares entries across classes
        if not regularized:
            current, q_current = _segment_step(current, target, S, nk, q_current)
        current, q_current = _gradient_step(structure, current, S, nk, q_current, floor)
        if q_current - q_start <= ASCENT_TOLERANCE * max(1.0, abs(q_current)):
            break
    return current, regularized
