"""
Test suite for the variational EM steps of the Bernoulli SBM.
"""

import numpy as np
import pytest
from scipy.optimize import check_grad
from scipy.sparse import csr_matrix
from scipy.special import logit, xlogy
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from sbm.bernoulli import (elbo, e_step, m_step, CovariateObjective,
                           negative_loglik_and_gradient)
from sbm.optimizer import OptimizerStatus, UnsupportedAlgorithm
from sbm.packing import DimensionMismatchError, tuple_metadata
from sbm.utils_sbm import covariate_effect, prepare_network


VARIANTS = [(False, False), (True, False), (False, True), (True, True)]


def create_test_network(n=30, Q=2, directed=False, seed=42):
    """Create a planted-partition network with soft memberships."""
    np.random.seed(seed)

    labels = np.random.choice(Q, size=n)
    P = np.full((Q, Q), 0.1) + 0.6 * np.eye(Q)
    Y = (np.random.rand(n, n) < P[labels][:, labels]).astype(float)
    np.fill_diagonal(Y, 0.0)
    if not directed:
        Y = np.triu(Y, 1)
        Y = Y + Y.T

    Z = np.random.dirichlet(np.ones(Q), size=n)
    return csr_matrix(Y), Z, labels


def create_covariates(n=30, K=2, symmetric=True, seed=0):
    """Create dyadic covariates (n x n x K)."""
    np.random.seed(seed)
    X = np.random.normal(size=(n, n, K))
    if symmetric:
        X = 0.5 * (X + X.transpose(1, 0, 2))
    return X


def prior_term(Z, pi):
    return np.sum(xlogy(Z, pi[None, :]))


def model_parameters(Q, covariates, n=30, K=2, seed=1):
    """Symmetric parameters for either parameterisation."""
    np.random.seed(seed)
    theta = np.random.uniform(0.2, 0.8, size=(Q, Q))
    theta = 0.5 * (theta + theta.T)
    if not covariates:
        return {"theta": theta}
    X = create_covariates(n, K, seed=seed)
    return {"Gamma": logit(theta), "M": covariate_effect(X, np.array([0.5, -0.3]))}


class TestEStep:
    """Test the membership update."""

    @pytest.mark.parametrize("directed,covariates", VARIANTS)
    def test_rows_are_probabilities(self, directed, covariates):
        """Every updated row is non-negative and sums to one."""
        Y, Z, _ = create_test_network(directed=directed)
        pi = np.array([0.4, 0.6])

        Z_new = e_step(Y, None, Z, pi, directed=directed, **model_parameters(2, covariates))

        assert Z_new.shape == Z.shape
        assert np.all(Z_new >= 0)
        assert np.allclose(Z_new.sum(axis=1), 1.0)

    @pytest.mark.parametrize("directed", [False, True])
    def test_extreme_parameters(self, directed):
        """Saturated probabilities and huge log-odds stay finite."""
        Y, Z, _ = create_test_network(directed=directed)
        pi = np.array([1.0, 0.0])

        theta = np.array([[1.0, 0.0], [0.0, 1e-300]])
        Z_theta = e_step(Y, None, Z, pi, theta=theta, directed=directed)

        Gamma = np.array([[800.0, -800.0], [-800.0, 800.0]])
        M = np.full((30, 30), 50.0)
        Z_gamma = e_step(Y, None, Z, pi, Gamma=Gamma, M=M, directed=directed)

        for Z_new in (Z_theta, Z_gamma):
            assert np.all(np.isfinite(Z_new))
            assert np.allclose(Z_new.sum(axis=1), 1.0)

    @pytest.mark.parametrize("directed", [False, True])
    def test_covariates_reduce_to_plain_model(self, directed):
        """With M = 0 and Gamma = logit(theta) both parameterisations agree."""
        Y, Z, _ = create_test_network(directed=directed)
        pi = np.array([0.3, 0.7])
        theta = model_parameters(2, False)["theta"]

        Z_theta = e_step(Y, None, Z, pi, theta=theta, directed=directed)
        Z_gamma = e_step(Y, None, Z, pi, Gamma=logit(theta), M=np.zeros((30, 30)),
                         directed=directed)

        assert np.allclose(Z_theta, Z_gamma)

    def test_undirected_covariates_use_lower_triangle(self):
        """Undirected models read each dyad's covariate effect from row > column."""
        Y, Z, _ = create_test_network()
        pi = np.array([0.4, 0.6])
        Gamma = np.array([[1.0, -0.5], [-0.5, 0.2]])
        np.random.seed(5)
        M = np.random.normal(size=(30, 30))
        lower = np.tril(M, -1)
        M_mirrored = lower + lower.T

        assert np.allclose(e_step(Y, None, Z, pi, Gamma=Gamma, M=M),
                           e_step(Y, None, Z, pi, Gamma=Gamma, M=M_mirrored))
        assert np.isclose(elbo(Y, None, Z, pi, Gamma=Gamma, M=M),
                          elbo(Y, None, Z, pi, Gamma=Gamma, M=M_mirrored))

    def test_log_lambda_offsets(self):
        """Per-node offsets cancel; per-cluster offsets shift memberships."""
        Y, Z, _ = create_test_network()
        pi = np.array([0.5, 0.5])
        theta = model_parameters(2, False)["theta"]

        Z_plain = e_step(Y, None, Z, pi, theta=theta)
        Z_node = e_step(Y, None, Z, pi, theta=theta, log_lambda=np.arange(30.0))
        assert np.allclose(Z_plain, Z_node)

        offset = np.zeros((30, 2))
        offset[:, 0] = 1e4
        Z_biased = e_step(Y, None, Z, pi, theta=theta, log_lambda=offset)
        assert np.allclose(Z_biased[:, 0], 1.0)

        with pytest.raises(DimensionMismatchError):
            e_step(Y, None, Z, pi, theta=theta, log_lambda=np.zeros(3))


class TestELBO:
    """Test the lower bound."""

    def test_storage_convention(self):
        """Undirected networks may store one triangle or both."""
        Y, Z, _ = create_test_network()
        pi = np.array([0.5, 0.5])
        theta = model_parameters(2, False)["theta"]
        Y_dense = Y.toarray()

        full = elbo(Y, None, Z, pi, theta=theta)
        lower = elbo(np.tril(Y_dense), None, Z, pi, theta=theta)
        upper = elbo(csr_matrix(np.triu(Y_dense)), np.triu(np.ones((30, 30)), 1), Z, pi,
                     theta=theta)

        assert np.isclose(full, lower)
        assert np.isclose(full, upper)

    def test_directed_doubles_undirected(self):
        """On symmetric data the directed dyad term is twice the undirected one."""
        Y, Z, _ = create_test_network()
        pi = np.array([0.35, 0.65])
        params = model_parameters(2, True)

        undirected = elbo(Y, None, Z, pi, directed=False, **params)
        directed = elbo(Y, None, Z, pi, directed=True, **params)
        prior = prior_term(Z, pi)

        assert np.isclose(directed - prior, 2.0 * (undirected - prior))

    @pytest.mark.parametrize("directed", [False, True])
    def test_covariates_reduce_to_plain_model(self, directed):
        """With M = 0 and Gamma = logit(theta) both bounds agree."""
        Y, Z, _ = create_test_network(directed=directed)
        pi = np.array([0.3, 0.7])
        theta = model_parameters(2, False)["theta"]

        plain = elbo(Y, None, Z, pi, theta=theta, directed=directed)
        covariate = elbo(Y, None, Z, pi, Gamma=logit(theta), M=np.zeros((30, 30)),
                         directed=directed)

        assert np.isclose(plain, covariate)

    def test_covariates_from_x_and_beta(self):
        """M can be passed directly or as X with beta."""
        Y, Z, _ = create_test_network()
        pi = np.array([0.5, 0.5])
        X = create_covariates()
        beta = np.array([0.2, -0.1])
        Gamma = np.array([[1.0, -1.0], [-1.0, 0.5]])

        from_m = elbo(Y, None, Z, pi, Gamma=Gamma, M=covariate_effect(X, beta))
        from_x = elbo(Y, None, Z, pi, Gamma=Gamma, X=X, beta=beta)

        assert np.isclose(from_m, from_x)

    def test_zero_probabilities(self):
        """theta of 0 or 1 on a consistent hard partition gives a finite bound."""
        Y = np.zeros((4, 4))
        Y[0, 1] = Y[1, 0] = 1.0
        Z = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.0, 1.0]])
        theta = np.array([[1.0, 0.0], [0.0, 0.0]])

        value = elbo(Y, None, Z, np.array([0.5, 0.5]), theta=theta)

        assert np.isclose(value, 4 * np.log(0.5))


class TestMStep:
    """Test the parameter update."""

    def test_four_node_scenario(self):
        """A single within-cluster edge gives theta[0, 0] = 1 and zeros elsewhere."""
        Y = np.zeros((4, 4))
        Y[0, 1] = 1.0
        R = np.triu(np.ones((4, 4)), 1)
        Z = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.0, 1.0]])

        result = m_step(Y, R, Z)

        assert np.array_equal(result.theta, [[1.0, 0.0], [0.0, 0.0]])
        assert np.allclose(result.pi, [0.5, 0.5])
        assert result.Gamma is None
        assert result.status is None

    @pytest.mark.parametrize("directed", [False, True])
    def test_theta_in_open_interval(self, directed):
        """Soft memberships give probabilities strictly inside (0, 1)."""
        Y, Z, _ = create_test_network(directed=directed)

        result = m_step(Y, None, Z, directed=directed)

        assert np.all(result.theta > 0) and np.all(result.theta < 1)
        assert np.isclose(result.pi.sum(), 1.0)

    @pytest.mark.parametrize("directed", [False, True])
    def test_does_not_decrease_elbo(self, directed):
        """The closed-form update maximises the bound for fixed memberships."""
        Y, Z, _ = create_test_network(directed=directed)
        pi = np.array([0.5, 0.5])
        theta = model_parameters(2, False)["theta"]

        before = elbo(Y, None, Z, pi, theta=theta, directed=directed)
        result = m_step(Y, None, Z, directed=directed)
        after = elbo(Y, None, Z, result.pi, theta=result.theta, directed=directed)

        assert after >= before

    def test_empty_cluster_pair(self):
        """Cluster pairs without observed dyads are NaN with a warning."""
        Y, _, labels = create_test_network()
        Z = np.zeros((30, 3))
        Z[np.arange(30), labels] = 1.0

        with pytest.warns(UserWarning, match="no observed dyad"):
            result = m_step(Y, None, Z)

        assert np.all(np.isnan(result.theta[2, :]))
        assert np.all(np.isnan(result.theta[:, 2]))
        assert not np.any(np.isnan(result.theta[:2, :2]))
        assert result.pi[2] == 0.0

    @pytest.mark.parametrize("directed", [False, True])
    def test_empty_cluster_feeds_e_step(self, directed):
        """NaN pairs from an empty cluster leave the next E-step and bound finite."""
        Y, _, labels = create_test_network(n=12, directed=directed)
        Z = np.zeros((12, 3))
        Z[np.arange(12), labels] = 1.0

        with pytest.warns(UserWarning, match="no observed dyad"):
            result = m_step(Y, None, Z, directed=directed)

        Z_new = e_step(Y, None, Z, result.pi, theta=result.theta, directed=directed)
        value = elbo(Y, None, Z, result.pi, theta=result.theta, directed=directed)

        assert np.all(np.isfinite(Z_new))
        assert np.allclose(Z_new.sum(axis=1), 1.0)
        assert np.isfinite(value)

    @pytest.mark.parametrize("directed", [False, True])
    def test_covariates_increase_elbo(self, directed):
        """The optimizer improves the bound over its starting point."""
        Y, Z, _ = create_test_network(n=20, directed=directed)
        X = create_covariates(n=20, symmetric=not directed)

        before = elbo(Y, None, Z, Z.mean(axis=0), Gamma=np.zeros((2, 2)),
                      M=np.zeros((20, 20)), directed=directed)
        result = m_step(Y, None, Z, X=X, directed=directed)
        after = elbo(Y, None, Z, result.pi, Gamma=result.Gamma,
                     M=covariate_effect(X, result.beta), directed=directed)

        assert after > before
        assert result.beta.shape == (2,)
        assert np.allclose(result.theta, 1.0 / (1.0 + np.exp(-result.Gamma)))
        assert result.iterations > 0
        if not directed:
            assert np.allclose(result.Gamma, result.Gamma.T)

    @pytest.mark.parametrize("directed", [False, True])
    def test_gradient(self, directed):
        """The analytic gradient matches finite differences."""
        Y, Z, _ = create_test_network(n=12, directed=directed)
        X = create_covariates(n=12, symmetric=not directed)
        Y_csr, R_csr, Z = prepare_network(Y, None, Z, directed)

        metadata = tuple_metadata(np.zeros((2, 2)), np.zeros(2))
        context = CovariateObjective.build(Y_csr, R_csr, X, Z, metadata, directed)

        def value(params):
            return negative_loglik_and_gradient(context, params, np.zeros_like(params))

        def gradient(params):
            grad = np.zeros_like(params)
            negative_loglik_and_gradient(context, params, grad)
            return grad

        np.random.seed(3)
        params = np.random.normal(scale=0.5, size=metadata.packed_size)
        if not directed:
            Gamma = metadata.map(0, params)
            Gamma[...] = 0.5 * (Gamma + Gamma.T)

        assert check_grad(value, gradient, params) < 1e-4 * max(1.0, np.linalg.norm(gradient(params)))

    def test_unknown_algorithm(self):
        """A bad configuration fails before anything is optimized."""
        Y, Z, _ = create_test_network(n=10)
        X = create_covariates(n=10)
        init_Gamma = np.array([[0.5, 0.1], [0.1, -0.5]])
        Z_before, Gamma_before = Z.copy(), init_Gamma.copy()

        with pytest.raises(UnsupportedAlgorithm):
            m_step(Y, None, Z, X=X, init_Gamma=init_Gamma, config={"algorithm": "UNKNOWN"})

        assert np.array_equal(Z, Z_before)
        assert np.array_equal(init_Gamma, Gamma_before)

    def test_maxeval_one(self):
        """A one-evaluation budget stops the optimizer at its starting point."""
        Y, Z, _ = create_test_network(n=10, directed=True)
        X = create_covariates(n=10, symmetric=False)
        init_Gamma = np.array([[0.5, 0.1], [-0.2, -0.5]])
        init_beta = np.array([0.3, 0.0])

        result = m_step(Y, None, Z, X=X, init_Gamma=init_Gamma, init_beta=init_beta,
                        config={"algorithm": "LBFGS", "maxeval": 1}, directed=True)

        assert result.status == OptimizerStatus.MAXEVAL_REACHED
        assert result.iterations == 1
        assert np.array_equal(result.Gamma, init_Gamma)
        assert np.array_equal(result.beta, init_beta)


class TestValidation:
    """Test input checks shared by the operations."""

    def test_edges_outside_mask(self):
        """Edges on unobserved dyads are rejected."""
        Y = np.zeros((4, 4))
        Y[2, 3] = 1.0
        R = np.zeros((4, 4))
        R[0, 1] = 1.0
        Z = np.full((4, 2), 0.5)

        with pytest.raises(ValueError, match="unobserved"):
            m_step(Y, R, Z, directed=True)

    def test_shape_mismatch(self):
        """Inconsistent dimensions raise DimensionMismatchError."""
        Y, Z, _ = create_test_network(n=10)
        pi = np.array([0.5, 0.5])

        with pytest.raises(DimensionMismatchError):
            m_step(Y, None, Z[:9])

        with pytest.raises(DimensionMismatchError):
            elbo(Y, None, Z, pi, theta=np.full((3, 3), 0.5))

        with pytest.raises(DimensionMismatchError):
            e_step(Y, np.ones((9, 9)), Z, pi, theta=np.full((2, 2), 0.5))

        with pytest.raises(DimensionMismatchError):
            m_step(Y, None, Z, X=np.zeros((10, 9, 2)))

    def test_parameterisation_choice(self):
        """Exactly one of theta or Gamma must be given."""
        Y, Z, _ = create_test_network(n=10)
        pi = np.array([0.5, 0.5])

        with pytest.raises(ValueError, match="exactly one"):
            elbo(Y, None, Z, pi)

        with pytest.raises(ValueError, match="exactly one"):
            e_step(Y, None, Z, pi, theta=np.eye(2), Gamma=np.eye(2), M=np.zeros((10, 10)))

        with pytest.raises(ValueError, match="M, or X"):
            elbo(Y, None, Z, pi, Gamma=np.eye(2))
