"""
Bernoulli Stochastic Block Model (SBM) implementation.

This package fits a Bernoulli SBM to directed or undirected, possibly
partially observed networks, optionally with dyadic covariates, using
variational EM.
"""

from .sbm import SBMBernoulli
from .bernoulli import (elbo, e_step, m_step, MStepResult, Variant,
                        CovariateObjective, negative_loglik_and_gradient,
                        DEFAULT_OPTIMIZER_CONFIG)
from .optimizer import (OptimizerConfig, OptimizerResult, OptimizerStatus,
                        OptimizerConfigError, UnsupportedAlgorithm,
                        SUPPORTED_ALGORITHMS, create_optimizer,
                        minimize_objective_on_parameters)
from .packing import TupleMetadata, tuple_metadata, DimensionMismatchError
from .utils_sbm import covariate_effect, complete_observation, entropy, heldout_split

__version__ = "0.1.0"
__all__ = [
    'SBMBernoulli',
    'elbo', 'e_step', 'm_step', 'MStepResult', 'Variant',
    'CovariateObjective', 'negative_loglik_and_gradient', 'DEFAULT_OPTIMIZER_CONFIG',
    'OptimizerConfig', 'OptimizerResult', 'OptimizerStatus',
    'OptimizerConfigError', 'UnsupportedAlgorithm', 'SUPPORTED_ALGORITHMS',
    'create_optimizer', 'minimize_objective_on_parameters',
    'TupleMetadata', 'tuple_metadata', 'DimensionMismatchError',
    'covariate_effect', 'complete_observation', 'entropy', 'heldout_split'
]
