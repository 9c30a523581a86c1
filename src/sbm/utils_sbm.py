"""
Utilities for the Bernoulli stochastic block model.

Numerically stable scalar primitives, validation of inputs and conversion of
adjacency / observation matrices to the canonical sparse form used by the
variational EM engine.
"""

import numpy as np
import scipy.sparse as sp
from scipy.sparse import csr_matrix
from scipy.special import expit, logsumexp, xlogy
from typing import Optional, Tuple, Union

from .packing import DimensionMismatchError


ArrayLike = Union[np.ndarray, sp.spmatrix]


def safe_log(x: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """Compute log with numerical stability."""
    return np.log(np.maximum(x, eps))


def softplus(x: np.ndarray) -> np.ndarray:
    """log(1 + exp(x)) without overflow for large x."""
    return np.logaddexp(0.0, x)


def sigmoid(x: np.ndarray) -> np.ndarray:
    """Logistic function 1 / (1 + exp(-x))."""
    return expit(x)


def stable_softmax(x: np.ndarray, axis: int = -1) -> np.ndarray:
    """Compute softmax with numerical stability (logsumexp subtracts the maximum)."""
    return np.exp(x - logsumexp(x, axis=axis, keepdims=True))


def entropy(Z: np.ndarray) -> float:
    """Entropy of the factorised membership distribution Z (n x Q)."""
    return float(-np.sum(xlogy(Z, Z)))


def to_dense(A: ArrayLike) -> np.ndarray:
    """Convert matrix to dense numpy array."""
    if sp.issparse(A):
        return A.toarray()
    return np.asarray(A)


def covariate_effect(X: np.ndarray, beta: np.ndarray) -> np.ndarray:
    """
    Aggregate dyadic covariates into the linear predictor M.

    Parameters
    ----------
    X : ndarray, shape (n, n, K)
        Dyadic covariates
    beta : ndarray, shape (K,)
        Covariate effects

    Returns
    -------
    M : ndarray, shape (n, n)
        ``M[i, j] = beta @ X[i, j, :]``
    """
    X = np.asarray(X, dtype=float)
    beta = np.asarray(beta, dtype=float)
    if X.ndim != 3 or beta.shape != (X.shape[2],):
        raise DimensionMismatchError(
            f"Covariates of shape {X.shape} do not match beta of shape {beta.shape}")
    return X @ beta


def complete_observation(n: int) -> csr_matrix:
    """Observation mask with every off-diagonal dyad observed."""
    R = np.ones((n, n))
    np.fill_diagonal(R, 0.0)
    return csr_matrix(R)


def to_binary_csr(A: ArrayLike) -> csr_matrix:
    """Convert a sparse or dense matrix to a 0/1 CSR float matrix."""
    A_csr = csr_matrix(A, dtype=float) if not sp.issparse(A) else A.tocsr().astype(float)
    A_csr.eliminate_zeros()
    A_csr.data[:] = 1.0
    return A_csr


def symmetrize(A: csr_matrix) -> csr_matrix:
    """Union of both triangles of a binary matrix, without the diagonal."""
    A_sym = A.maximum(A.T).tolil()
    A_sym.setdiag(0.0)
    A_sym = A_sym.tocsr()
    A_sym.eliminate_zeros()
    return A_sym


def check_shape(name: str, value: np.ndarray, shape: Tuple[int, ...]) -> np.ndarray:
    """Return ``value`` as a float array, raising if its shape differs from ``shape``."""
    value = np.asarray(value, dtype=float)
    if value.shape != shape:
        raise DimensionMismatchError(f"{name} has shape {value.shape}, expected {shape}")
    return value


def prepare_network(Y: ArrayLike, R: Optional[ArrayLike], Z: np.ndarray,
                    directed: bool) -> Tuple[csr_matrix, csr_matrix, np.ndarray]:
    """
    Validate and canonicalise the network inputs of one engine call.

    Parameters
    ----------
    Y : csr_matrix or ndarray
        Adjacency matrix (n x n)
    R : csr_matrix or ndarray or None
        Observation mask (n x n); None means every off-diagonal dyad is observed
    Z : ndarray
        Soft memberships (n x Q)
    directed : bool
        Whether dyads are ordered pairs

    Returns
    -------
    Y_csr, R_csr : csr_matrix
        Binary matrices; symmetric with empty diagonal when undirected
    Z : ndarray
        Memberships as a float array
    """
    Y_csr = to_binary_csr(Y)
    n = Y_csr.shape[0]
    if Y_csr.shape != (n, n):
        raise DimensionMismatchError(f"Adjacency matrix must be square, got {Y_csr.shape}")

    R_csr = complete_observation(n) if R is None else to_binary_csr(R)
    if R_csr.shape != (n, n):
        raise DimensionMismatchError(f"Observation mask has shape {R_csr.shape}, expected {(n, n)}")

    Z = np.asarray(Z, dtype=float)
    if Z.ndim != 2 or Z.shape[0] != n:
        raise DimensionMismatchError(f"Memberships have shape {Z.shape}, expected ({n}, Q)")

    if not directed:
        Y_csr = symmetrize(Y_csr)
        R_csr = symmetrize(R_csr)

    if (Y_csr - Y_csr.multiply(R_csr)).count_nonzero() > 0:
        raise ValueError("Adjacency matrix has edges on unobserved dyads (Y must lie within R)")

    return Y_csr, R_csr, Z


def heldout_split(R: ArrayLike, frac: float = 0.1, seed: Optional[int] = None,
                  directed: bool = True) -> Tuple[csr_matrix, csr_matrix]:
    """
    Hide a random fraction of observed dyads.

    Parameters
    ----------
    R : csr_matrix or ndarray
        Observation mask
    frac : float
        Fraction of observed dyads to hide
    seed : int, optional
        Random seed
    directed : bool
        If False, dyads are unordered pairs and both masks are returned as
        strictly lower triangular matrices

    Returns
    -------
    R_train : csr_matrix
        Observation mask without the hidden dyads
    mask_val : csr_matrix
        Binary mask of the hidden dyads
    """
    if not 0 <= frac <= 1:
        raise ValueError("frac must be in [0, 1]")
    if seed is not None:
        np.random.seed(seed)

    R_bin = to_binary_csr(R)
    if not directed:
        R_bin = sp.tril(symmetrize(R_bin), k=-1).tocsr()
    R_coo = R_bin.tocoo()
    n_obs = R_coo.nnz
    n_holdout = int(frac * n_obs)
    holdout = np.random.choice(n_obs, n_holdout, replace=False)

    keep = np.ones(n_obs, dtype=bool)
    keep[holdout] = False

    shape = R_coo.shape
    R_train = csr_matrix((R_coo.data[keep], (R_coo.row[keep], R_coo.col[keep])), shape=shape)
    mask_val = csr_matrix((R_coo.data[~keep], (R_coo.row[~keep], R_coo.col[~keep])), shape=shape)
    return R_train, mask_val
