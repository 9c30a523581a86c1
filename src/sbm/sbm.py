"""
Bernoulli Stochastic Block Model estimator.

This module wraps the variational EM steps of :mod:`sbm.bernoulli` into an
estimator for directed or undirected, possibly partially observed networks,
with or without dyadic covariates.
"""

import numpy as np
from typing import Any, Dict, Mapping, Optional, Union
import warnings

from .bernoulli import DEFAULT_OPTIMIZER_CONFIG, e_step, elbo, m_step
from .optimizer import OptimizerConfig
from .packing import DimensionMismatchError
from .utils_sbm import (ArrayLike, complete_observation, covariate_effect, entropy,
                        sigmoid, to_binary_csr)


class SBMBernoulli:
    """
    Bernoulli Stochastic Block Model.

    Fits soft cluster memberships and block connection probabilities with
    variational EM.

    Model specification:
    Z_i ~ Multinomial(1, pi)
    Y_ij | i in q, j in l ~ Bernoulli(theta[q, l])                without covariates
    logit P(Y_ij = 1 | i in q, j in l) = Gamma[q, l] + beta . X_ij  with covariates

    Only dyads flagged in the observation mask R enter the likelihood.

    Parameters
    ----------
    Q : int
        Number of blocks
    directed : bool, default=False
        Whether the network is directed
    max_iter : int, default=100
        Maximum number of EM iterations
    tol : float, default=1e-6
        Convergence tolerance for the relative change of the bound
    optimizer_config : OptimizerConfig or mapping, optional
        Optimizer used by the covariate M-step
    """

    def __init__(self, Q: int, directed: bool = False, max_iter: int = 100,
                 tol: float = 1e-6,
                 optimizer_config: Optional[Union[OptimizerConfig, Mapping[str, Any]]] = None):
        if Q < 1:
            raise ValueError("Q must be a positive integer")
        if max_iter < 1:
            raise ValueError("max_iter must be a positive integer")

        self.Q = Q
        self.directed = directed
        self.max_iter = max_iter
        self.tol = tol
        self.optimizer_config = optimizer_config or DEFAULT_OPTIMIZER_CONFIG

        # Model parameters (set after fitting)
        self.Z = None
        self.labels_ = None
        self.theta_ = None
        self.pi_ = None
        self.Gamma_ = None
        self.beta_ = None
        self.M_ = None
        self._density = None

        # Diagnostics
        self.elbo_ = []
        self.optimizer_status_ = []
        self.converged_ = False
        self.n_iter_ = 0

    @property
    def has_covariates(self) -> bool:
        return self.beta_ is not None

    def fit(self, Y: ArrayLike, Z_init: np.ndarray, R: Optional[ArrayLike] = None,
            X: Optional[np.ndarray] = None, Gamma_init: Optional[np.ndarray] = None,
            beta_init: Optional[np.ndarray] = None) -> "SBMBernoulli":
        """
        Fit the model to an adjacency matrix.

        Parameters
        ----------
        Y : csr_matrix or ndarray
            Binary adjacency matrix (n x n)
        Z_init : ndarray
            Initial soft memberships (n x Q), rows summing to 1
        R : csr_matrix or ndarray, optional
            Observation mask (n x n); every off-diagonal dyad when omitted
        X : ndarray, optional
            Dyadic covariates (n x n x K)
        Gamma_init : ndarray, optional
            Starting block log-odds for the covariate model (Q x Q)
        beta_init : ndarray, optional
            Starting covariate effects (K,)

        Returns
        -------
        self : SBMBernoulli
            Fitted model
        """
        Y_csr = to_binary_csr(Y)
        n = Y_csr.shape[0]
        R_csr = complete_observation(n) if R is None else to_binary_csr(R)

        Z = np.array(Z_init, dtype=float)
        if Z.shape != (n, self.Q):
            raise DimensionMismatchError(f"Z_init has shape {Z.shape}, expected ({n}, {self.Q})")
        if np.any(Z < 0) or not np.allclose(Z.sum(axis=1), 1.0):
            raise ValueError("Z_init rows must be probability vectors")
        self.Z = Z

        self._density = Y_csr.sum() / max(R_csr.sum(), 1.0)
        self.M_ = None
        if X is None:
            self.Gamma_, self.beta_ = None, None
        else:
            self.Gamma_ = Gamma_init
            self.beta_ = np.zeros(np.shape(X)[2]) if beta_init is None else beta_init

        # Initialize parameters from the starting memberships
        self._m_step(Y_csr, R_csr, X)

        # EM iterations
        self.elbo_ = []
        self.optimizer_status_ = []
        self.converged_ = False
        prev_elbo = -np.inf

        for iter_num in range(self.max_iter):
            self._e_step(Y_csr, R_csr)
            self._m_step(Y_csr, R_csr, X)

            bound = self._compute_elbo(Y_csr, R_csr)
            self.elbo_.append(bound)

            # Check convergence
            if len(self.elbo_) > 1:
                rel_change = abs(bound - prev_elbo) / (abs(prev_elbo) + 1e-12)
                if rel_change < self.tol:
                    self.converged_ = True
                    break

            prev_elbo = bound

        self.n_iter_ = iter_num + 1
        self.labels_ = self.Z.argmax(axis=1)

        if not self.converged_:
            warnings.warn(f"EM did not converge after {self.max_iter} iterations")

        return self

    def _m_step(self, Y_csr, R_csr, X):
        """M-step: update parameters, warm-starting the covariate optimizer."""
        if X is None:
            result = m_step(Y_csr, R_csr, self.Z, directed=self.directed)
            self.theta_, self.pi_ = result.theta, result.pi
            return

        result = m_step(Y_csr, R_csr, self.Z, X=X, init_Gamma=self.Gamma_, init_beta=self.beta_,
                        config=self.optimizer_config, directed=self.directed)
        self.theta_, self.pi_ = result.theta, result.pi
        self.Gamma_, self.beta_ = result.Gamma, result.beta
        self.M_ = covariate_effect(X, self.beta_)
        if not self.directed:
            lower = np.tril(self.M_, -1)
            self.M_ = lower + lower.T
        self.optimizer_status_.append(result.status)

    def _e_step(self, Y_csr, R_csr):
        """E-step: update membership probabilities."""
        if self.has_covariates:
            self.Z = e_step(Y_csr, R_csr, self.Z, self.pi_, Gamma=self.Gamma_, M=self.M_,
                            directed=self.directed)
        else:
            self.Z = e_step(Y_csr, R_csr, self.Z, self.pi_, theta=self._filled_theta(),
                            directed=self.directed)

    def _filled_theta(self) -> np.ndarray:
        """Connection probabilities with empty cluster pairs set to the observed density."""
        return np.where(np.isnan(self.theta_), self._density, self.theta_)

    def _compute_elbo(self, Y_csr, R_csr) -> float:
        """Variational bound: expected complete log-likelihood plus entropy of Z."""
        if self.has_covariates:
            value = elbo(Y_csr, R_csr, self.Z, self.pi_, Gamma=self.Gamma_, M=self.M_,
                         directed=self.directed)
        else:
            value = elbo(Y_csr, R_csr, self.Z, self.pi_, theta=self._filled_theta(),
                         directed=self.directed)
        return value + entropy(self.Z)

    def fit_transform(self, Y: ArrayLike, Z_init: np.ndarray, **kwargs) -> np.ndarray:
        """Fit model and return soft membership matrix."""
        self.fit(Y, Z_init, **kwargs)
        return self.Z

    def predict(self) -> np.ndarray:
        """Get hard block assignments."""
        if self.Z is None:
            raise ValueError("Model must be fitted before prediction")
        return self.labels_

    def connection_probabilities(self) -> np.ndarray:
        """
        Expected edge probability of every dyad under the fitted memberships.

        Used to impute unobserved dyads. The diagonal is zero.

        Returns
        -------
        P : ndarray
            Probability matrix (n x n)
        """
        if self.Z is None:
            raise ValueError("Model must be fitted before computing probabilities")

        if self.has_covariates:
            P = np.zeros((self.Z.shape[0], self.Z.shape[0]))
            for q in range(self.Q):
                for l in range(self.Q):
                    P += np.outer(self.Z[:, q], self.Z[:, l]) * sigmoid(self.Gamma_[q, l] + self.M_)
        else:
            P = self.Z @ self._filled_theta() @ self.Z.T

        np.fill_diagonal(P, 0.0)
        return P

    def score(self, Y: ArrayLike, mask: Optional[ArrayLike] = None) -> float:
        """
        Compute average Bernoulli log-likelihood of dyads.

        Parameters
        ----------
        Y : csr_matrix or ndarray
            Adjacency matrix
        mask : csr_matrix or ndarray, optional
            Binary mask selecting the scored dyads (e.g. held-out ones);
            every off-diagonal dyad when omitted

        Returns
        -------
        score : float
            Average log-likelihood
        """
        if self.Z is None:
            raise ValueError("Model must be fitted before scoring")

        Y_csr = to_binary_csr(Y)
        mask_csr = complete_observation(Y_csr.shape[0]) if mask is None else to_binary_csr(mask)
        if mask_csr.shape != Y_csr.shape:
            raise DimensionMismatchError(f"Mask has shape {mask_csr.shape}, expected {Y_csr.shape}")

        mask_coo = mask_csr.tocoo()
        if mask_coo.nnz == 0:
            return 0.0

        eps = 1e-12
        p = np.clip(self.connection_probabilities()[mask_coo.row, mask_coo.col], eps, 1 - eps)
        y = np.asarray(Y_csr[mask_coo.row, mask_coo.col]).ravel()

        return float(np.mean(y * np.log(p) + (1 - y) * np.log(1 - p)))

    def get_params(self) -> Dict[str, np.ndarray]:
        """Get model parameters."""
        if self.Z is None:
            raise ValueError("Model must be fitted before getting parameters")

        params = {
            'theta': self.theta_.copy(),
            'pi': self.pi_.copy(),
            'Z': self.Z.copy(),
        }
        if self.has_covariates:
            params['Gamma'] = self.Gamma_.copy()
            params['beta'] = self.beta_.copy()
        return params

    def diagnostics(self) -> Dict:
        """Get diagnostic information."""
        return {
            'elbo_trace': self.elbo_.copy(),
            'converged': self.converged_,
            'n_iter': self.n_iter_,
            'final_elbo': self.elbo_[-1] if self.elbo_ else None,
            'optimizer_status': [status.name for status in self.optimizer_status_],
        }
