"""
Variational EM steps for the Bernoulli stochastic block model.

The model has four structural variants, (undirected | directed) x
(no covariates | dyadic covariates). Without covariates an edge between
nodes of clusters q and l is present with probability ``theta[q, l]``.
With covariates its log-odds is ``Gamma[q, l] + M[i, j]`` where
``M[i, j] = beta @ X[i, j, :]``.

Every operation is a pure function of its inputs:

- ``elbo``   lower bound of the expected complete-data log-likelihood
- ``m_step`` parameters given soft memberships Z (closed form, or a
  gradient-based optimizer over (Gamma, beta) when covariates are present)
- ``e_step`` soft memberships given parameters

Undirected inputs are symmetrised on entry (a dyad is present if either
triangle records it); sums over unordered dyads run over ``row > column``
and the covariate effect of a dyad is read from that triangle of ``M``.
Cluster pairs whose ``theta`` is NaN (no observed dyad in the M-step)
contribute nothing to the bound or to the membership update.
"""

import numpy as np
from scipy.sparse import csr_matrix
from scipy.special import xlogy, xlog1py
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Tuple, Union
from dataclasses import dataclass
from functools import partial
import warnings

from .packing import DimensionMismatchError, TupleMetadata, tuple_metadata
from .optimizer import (OptimizerConfig, OptimizerStatus, create_optimizer,
                        minimize_objective_on_parameters)
from .utils_sbm import (ArrayLike, check_shape, covariate_effect, prepare_network,
                        safe_log, sigmoid, softplus, stable_softmax, to_dense)


# Dyads processed per vectorised batch in the covariate loops
DYAD_CHUNK = 4096

DEFAULT_OPTIMIZER_CONFIG = OptimizerConfig(algorithm="LBFGS", xtol_rel=1e-6,
                                           ftol_rel=1e-8, maxeval=500)

# Block indexes of the packed (Gamma, beta) parameter vector
GAMMA_ID, BETA_ID = 0, 1


@dataclass(frozen=True)
class Variant:
    """Structural variant of the model."""
    directed: bool
    covariates: bool


@dataclass
class MStepResult:
    """Parameters produced by an M-step."""
    theta: np.ndarray
    pi: np.ndarray
    Gamma: Optional[np.ndarray] = None
    beta: Optional[np.ndarray] = None
    status: Optional[OptimizerStatus] = None
    iterations: Optional[int] = None


# -----------------------------------------------------------------------------
# Dyad iteration


def _observed_dyads(Y: csr_matrix, R: csr_matrix,
                    lower_only: bool) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Row, column and edge indicator of every observed dyad."""
    R_coo = R.tocoo()
    rows, cols = R_coo.row, R_coo.col
    if lower_only:
        keep = rows > cols
        rows, cols = rows[keep], cols[keep]
    y = np.asarray(Y[rows, cols], dtype=float).ravel()
    return rows, cols, y


def _chunks(n: int) -> Iterator[slice]:
    for start in range(0, n, DYAD_CHUNK):
        yield slice(start, min(start + DYAD_CHUNK, n))


def _pair_weights(Zi: np.ndarray, Zj: np.ndarray, symmetric: bool = False) -> np.ndarray:
    """Z_i Z_j^T for a batch of dyads, shape (n_dyads, Q, Q)."""
    W = Zi[:, :, None] * Zj[:, None, :]
    if symmetric:
        W = 0.5 * (W + W.transpose(0, 2, 1))
    return W


# -----------------------------------------------------------------------------
# Lower bound


def _prior_term(Z: np.ndarray, pi: np.ndarray) -> float:
    return float(np.sum(xlogy(Z, pi[None, :])))


def _dyad_term_nocovariate(Y: csr_matrix, R: csr_matrix, Z: np.ndarray,
                           theta: np.ndarray) -> float:
    # A*logit(theta) + B*log(1-theta), with 0*log(0) = 0; NaN pairs are skipped
    A = Z.T @ (Y @ Z)
    B = Z.T @ (R @ Z)
    terms = xlogy(A, theta) + xlog1py(np.maximum(B - A, 0.0), -theta)
    return float(np.sum(np.where(np.isnan(theta), 0.0, terms)))


def _dyad_term_covariates(Y: csr_matrix, R: csr_matrix, Z: np.ndarray, Gamma: np.ndarray,
                          M: np.ndarray, lower_only: bool) -> float:
    rows, cols, y = _observed_dyads(Y, R, lower_only)
    total = 0.0
    for chunk in _chunks(rows.shape[0]):
        i, j = rows[chunk], cols[chunk]
        W = _pair_weights(Z[i], Z[j])
        eta = Gamma[None, :, :] + M[i, j][:, None, None]
        total += np.sum(W * (y[chunk][:, None, None] * eta - softplus(eta)))
    return float(total)


def _elbo_undirected_nocovariate(Y, R, Z, theta, pi, M=None) -> float:
    return 0.5 * _dyad_term_nocovariate(Y, R, Z, theta) + _prior_term(Z, pi)


def _elbo_directed_nocovariate(Y, R, Z, theta, pi, M=None) -> float:
    return _dyad_term_nocovariate(Y, R, Z, theta) + _prior_term(Z, pi)


def _elbo_undirected_covariates(Y, R, Z, Gamma, pi, M) -> float:
    return _dyad_term_covariates(Y, R, Z, Gamma, M, lower_only=True) + _prior_term(Z, pi)


def _elbo_directed_covariates(Y, R, Z, Gamma, pi, M) -> float:
    return _dyad_term_covariates(Y, R, Z, Gamma, M, lower_only=False) + _prior_term(Z, pi)


_ELBO: Dict[Variant, Callable[..., float]] = {
    Variant(directed=False, covariates=False): _elbo_undirected_nocovariate,
    Variant(directed=True, covariates=False): _elbo_directed_nocovariate,
    Variant(directed=False, covariates=True): _elbo_undirected_covariates,
    Variant(directed=True, covariates=True): _elbo_directed_covariates,
}


# -----------------------------------------------------------------------------
# Expectation step (natural parameters of the memberships, before the prior)


def _log_odds(theta: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """logit(theta) and log(1 - theta); cluster pairs with NaN theta contribute 0."""
    missing = np.isnan(theta)
    theta = np.where(missing, 0.5, theta)
    log_1m = safe_log(1 - theta)
    logit = safe_log(theta) - log_1m
    return np.where(missing, 0.0, logit), np.where(missing, 0.0, log_1m)


def _e_step_undirected_nocovariate(Y, R, Z, theta, M=None) -> np.ndarray:
    logit, log_1m = _log_odds(theta)
    return Y @ Z @ logit + R @ Z @ log_1m


def _e_step_directed_nocovariate(Y, R, Z, theta, M=None) -> np.ndarray:
    logit, log_1m = _log_odds(theta)
    # Out-edges see theta[q, :], in-edges see theta[:, q]
    return (Y @ Z @ logit.T + R @ Z @ log_1m.T
            + Y.T @ Z @ logit + R.T @ Z @ log_1m)


def _normalizer_rows(R: csr_matrix, Z: np.ndarray, Gamma: np.ndarray, M: np.ndarray,
                     directed: bool) -> np.ndarray:
    """Expected log(1 + exp(Gamma + M)) of the observed dyads, per node and cluster."""
    R_coo = R.tocoo()
    rows, cols = R_coo.row, R_coo.col
    out = np.zeros_like(Z)
    for chunk in _chunks(rows.shape[0]):
        i, j = rows[chunk], cols[chunk]
        S = softplus(Gamma[None, :, :] + M[i, j][:, None, None])
        np.add.at(out, i, np.einsum('dql,dl->dq', S, Z[j]))
        if directed:
            np.add.at(out, j, np.einsum('dql,dq->dl', S, Z[i]))
    return out


def _e_step_undirected_covariates(Y, R, Z, Gamma, M) -> np.ndarray:
    return Y @ Z @ Gamma - _normalizer_rows(R, Z, Gamma, M, directed=False)


def _e_step_directed_covariates(Y, R, Z, Gamma, M) -> np.ndarray:
    return Y @ Z @ Gamma.T + Y.T @ Z @ Gamma - _normalizer_rows(R, Z, Gamma, M, directed=True)


_E_STEP: Dict[Variant, Callable[..., np.ndarray]] = {
    Variant(directed=False, covariates=False): _e_step_undirected_nocovariate,
    Variant(directed=True, covariates=False): _e_step_directed_nocovariate,
    Variant(directed=False, covariates=True): _e_step_undirected_covariates,
    Variant(directed=True, covariates=True): _e_step_directed_covariates,
}


# -----------------------------------------------------------------------------
# Maximization step


@dataclass
class CovariateObjective:
    """
    Everything one evaluation of the covariate M-step objective reads.

    Holds the observed dyads (row > column when undirected), their edge
    indicators and covariate vectors, the fixed memberships and the layout of
    the packed (Gamma, beta) vector.
    """
    rows: np.ndarray
    cols: np.ndarray
    y: np.ndarray
    phi: np.ndarray
    Z: np.ndarray
    metadata: TupleMetadata
    symmetric: bool

    @classmethod
    def build(cls, Y: csr_matrix, R: csr_matrix, X: np.ndarray, Z: np.ndarray,
              metadata: TupleMetadata, directed: bool) -> "CovariateObjective":
        rows, cols, y = _observed_dyads(Y, R, lower_only=not directed)
        return cls(rows=rows, cols=cols, y=y, phi=X[rows, cols, :], Z=Z,
                   metadata=metadata, symmetric=not directed)


def negative_loglik_and_gradient(context: CovariateObjective, params: np.ndarray,
                                 grad: np.ndarray) -> float:
    """
    Negative expected log-likelihood of the dyads and its gradient.

    Parameters
    ----------
    context : CovariateObjective
        Data of the current M-step
    params : ndarray
        Packed (Gamma, beta)
    grad : ndarray
        Output buffer for the packed gradient, filled in place

    Returns
    -------
    value : float
        Negative expected log-likelihood at ``params``
    """
    Gamma = context.metadata.map(GAMMA_ID, params)
    beta = context.metadata.map(BETA_ID, params)

    loglik = 0.0
    gr_Gamma = np.zeros(Gamma.shape)
    gr_beta = np.zeros(beta.shape)

    for chunk in _chunks(context.rows.shape[0]):
        W = _pair_weights(context.Z[context.rows[chunk]], context.Z[context.cols[chunk]],
                          context.symmetric)
        phi = context.phi[chunk]
        y = context.y[chunk][:, None, None]
        eta = Gamma[None, :, :] + (phi @ beta)[:, None, None]

        loglik += np.sum(W * (y * eta - softplus(eta)))
        delta = W * (y - sigmoid(eta))
        gr_Gamma += delta.sum(axis=0)
        gr_beta += phi.T @ delta.sum(axis=(1, 2))

    context.metadata.map(GAMMA_ID, grad)[...] = -gr_Gamma
    context.metadata.map(BETA_ID, grad)[...] = -gr_beta
    return -loglik


def _m_step_nocovariate(Y: csr_matrix, R: csr_matrix, Z: np.ndarray) -> MStepResult:
    A = Z.T @ (Y @ Z)
    B = Z.T @ (R @ Z)
    with np.errstate(divide='ignore', invalid='ignore'):
        theta = A / B

    n_empty = int(np.sum(B == 0))
    if n_empty:
        warnings.warn(f"{n_empty} cluster pair(s) have no observed dyad; "
                      f"their connection probability is NaN")

    return MStepResult(theta=theta, pi=Z.mean(axis=0))


def _m_step_covariates(Y: csr_matrix, R: csr_matrix, Z: np.ndarray, X: np.ndarray,
                       init_Gamma: np.ndarray, init_beta: np.ndarray,
                       config: Union[OptimizerConfig, Mapping[str, Any]],
                       directed: bool) -> MStepResult:
    metadata = tuple_metadata(init_Gamma, init_beta)
    optimizer = create_optimizer(config, metadata.packed_size)

    if not directed:
        init_Gamma = 0.5 * (init_Gamma + init_Gamma.T)
    parameters = metadata.pack(init_Gamma, init_beta)

    context = CovariateObjective.build(Y, R, X, Z, metadata, directed)
    result = minimize_objective_on_parameters(
        optimizer, partial(negative_loglik_and_gradient, context), parameters)

    Gamma = metadata.copy(GAMMA_ID, parameters)
    beta = metadata.copy(BETA_ID, parameters)

    if not result.status.is_success:
        warnings.warn(f"M-step optimizer stopped with status {result.status.name} "
                      f"after {result.iterations} evaluations")

    return MStepResult(theta=sigmoid(Gamma), pi=Z.mean(axis=0), Gamma=Gamma, beta=beta,
                       status=result.status, iterations=result.iterations)


# -----------------------------------------------------------------------------
# Public operations


def _resolve_variant(theta: Optional[np.ndarray], Gamma: Optional[np.ndarray],
                     directed: bool) -> Variant:
    if (theta is None) == (Gamma is None):
        raise ValueError("Provide exactly one of theta (no covariates) or Gamma (covariates)")
    return Variant(directed=bool(directed), covariates=Gamma is not None)


def _covariate_matrix(M: Optional[ArrayLike], X: Optional[np.ndarray],
                      beta: Optional[np.ndarray], n: int, directed: bool) -> np.ndarray:
    if M is None:
        if X is None or beta is None:
            raise ValueError("Covariate models require M, or X together with beta")
        M = covariate_effect(X, beta)
    M = check_shape("M", to_dense(M), (n, n))
    if not directed:
        # An unordered dyad {i, j} is described by its row > column entry
        lower = np.tril(M, -1)
        M = lower + lower.T
    return M


def _natural_parameters(Y, R, Z, theta, Gamma, M, X, beta, directed):
    Q = Z.shape[1]
    variant = _resolve_variant(theta, Gamma, directed)
    if variant.covariates:
        params = check_shape("Gamma", Gamma, (Q, Q))
        M = _covariate_matrix(M, X, beta, Z.shape[0], directed)
    else:
        if M is not None or X is not None:
            raise ValueError("theta parameterises the model without covariates; use Gamma")
        params = check_shape("theta", theta, (Q, Q))
    return variant, params, M


def elbo(Y: ArrayLike, R: Optional[ArrayLike], Z: np.ndarray, pi: np.ndarray,
         theta: Optional[np.ndarray] = None, Gamma: Optional[np.ndarray] = None,
         M: Optional[ArrayLike] = None, X: Optional[np.ndarray] = None,
         beta: Optional[np.ndarray] = None, directed: bool = False) -> float:
    """
    Lower bound of the expected complete-data log-likelihood.

    Parameters
    ----------
    Y : csr_matrix or ndarray
        Adjacency matrix (n x n)
    R : csr_matrix or ndarray or None
        Observation mask (n x n); None for a fully observed network
    Z : ndarray
        Soft memberships (n x Q)
    pi : ndarray
        Cluster proportions (Q,)
    theta : ndarray, optional
        Connection probabilities (Q x Q), model without covariates
    Gamma : ndarray, optional
        Block log-odds (Q x Q), model with covariates
    M : ndarray, optional
        Covariate effect per dyad (n x n); alternatively pass X and beta
    X : ndarray, optional
        Dyadic covariates (n x n x K)
    beta : ndarray, optional
        Covariate effects (K,)
    directed : bool, default=False
        Whether the network is directed

    Returns
    -------
    value : float
        Edge, non-edge and prior terms; the entropy of Z is not included
    """
    Y, R, Z = prepare_network(Y, R, Z, directed)
    pi = check_shape("pi", pi, (Z.shape[1],))
    variant, params, M = _natural_parameters(Y, R, Z, theta, Gamma, M, X, beta, directed)
    return _ELBO[variant](Y, R, Z, params, pi, M)


def e_step(Y: ArrayLike, R: Optional[ArrayLike], Z: np.ndarray, pi: np.ndarray,
           theta: Optional[np.ndarray] = None, Gamma: Optional[np.ndarray] = None,
           M: Optional[ArrayLike] = None, X: Optional[np.ndarray] = None,
           beta: Optional[np.ndarray] = None,
           log_lambda: Union[float, np.ndarray] = 0.0,
           directed: bool = False) -> np.ndarray:
    """
    Update the soft memberships given the model parameters.

    Arguments are those of :func:`elbo`, plus

    log_lambda : float or ndarray, default=0
        Additive offset on the log-memberships, scalar, per node (n,) or
        per node and cluster (n x Q)

    Returns
    -------
    Z_new : ndarray
        Updated memberships (n x Q); every row is a probability vector
    """
    Y, R, Z = prepare_network(Y, R, Z, directed)
    n, Q = Z.shape
    pi = check_shape("pi", pi, (Q,))
    variant, params, M = _natural_parameters(Y, R, Z, theta, Gamma, M, X, beta, directed)

    log_tau = np.asarray(_E_STEP[variant](Y, R, Z, params, M))
    log_tau = log_tau + _membership_offset(log_lambda, n, Q)
    log_tau += safe_log(pi)[None, :]

    return stable_softmax(log_tau, axis=1)


def _membership_offset(log_lambda: Union[float, np.ndarray], n: int, Q: int) -> np.ndarray:
    offset = np.asarray(log_lambda, dtype=float)
    if offset.ndim == 0 or offset.shape == (n, Q):
        return offset
    if offset.shape == (n,):
        return offset[:, None]
    raise DimensionMismatchError(
        f"log_lambda has shape {offset.shape}, expected a scalar, ({n},) or ({n}, {Q})")


def m_step(Y: ArrayLike, R: Optional[ArrayLike], Z: np.ndarray,
           X: Optional[np.ndarray] = None,
           init_Gamma: Optional[np.ndarray] = None,
           init_beta: Optional[np.ndarray] = None,
           config: Optional[Union[OptimizerConfig, Mapping[str, Any]]] = None,
           directed: bool = False) -> MStepResult:
    """
    Update the model parameters given the soft memberships.

    Without covariates ``theta = (Z^T Y Z) / (Z^T R Z)``; cluster pairs with
    no observed dyad get NaN. With covariates (Gamma, beta) maximise the
    expected log-likelihood with the configured optimizer, starting from
    ``init_Gamma`` / ``init_beta`` (zeros by default).

    Parameters
    ----------
    Y : csr_matrix or ndarray
        Adjacency matrix (n x n)
    R : csr_matrix or ndarray or None
        Observation mask (n x n); None for a fully observed network
    Z : ndarray
        Soft memberships (n x Q)
    X : ndarray, optional
        Dyadic covariates (n x n x K); selects the covariate model
    init_Gamma : ndarray, optional
        Starting block log-odds (Q x Q)
    init_beta : ndarray, optional
        Starting covariate effects (K,)
    config : OptimizerConfig or mapping, optional
        Optimizer configuration, DEFAULT_OPTIMIZER_CONFIG when omitted
    directed : bool, default=False
        Whether the network is directed

    Returns
    -------
    MStepResult
        ``theta`` and ``pi``; with covariates also ``Gamma``, ``beta`` and the
        optimizer ``status`` and ``iterations``
    """
    Y, R, Z = prepare_network(Y, R, Z, directed)
    n, Q = Z.shape

    if X is None:
        if init_Gamma is not None or init_beta is not None:
            raise ValueError("init_Gamma/init_beta require covariates X")
        return _m_step_nocovariate(Y, R, Z)

    X = np.asarray(X, dtype=float)
    if X.ndim != 3 or X.shape[:2] != (n, n):
        raise DimensionMismatchError(f"Covariates have shape {X.shape}, expected ({n}, {n}, K)")
    K = X.shape[2]

    init_Gamma = np.zeros((Q, Q)) if init_Gamma is None else check_shape("init_Gamma", init_Gamma, (Q, Q))
    init_beta = np.zeros(K) if init_beta is None else check_shape("init_beta", init_beta, (K,))
    config = DEFAULT_OPTIMIZER_CONFIG if config is None else config

    return _m_step_covariates(Y, R, Z, X, init_Gamma, init_beta, config, directed)
