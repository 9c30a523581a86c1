"""
SBM: variational EM for the Bernoulli Stochastic Block Model.

This package provides tools for clustering directed or undirected, possibly
partially observed networks, with or without dyadic covariates.
"""

from .sbm import (SBMBernoulli, elbo, e_step, m_step, OptimizerConfig,
                  create_optimizer, minimize_objective_on_parameters,
                  tuple_metadata, heldout_split)

__version__ = "0.1.0"

__all__ = [
    'SBMBernoulli', 'elbo', 'e_step', 'm_step',
    'OptimizerConfig', 'create_optimizer', 'minimize_objective_on_parameters',
    'tuple_metadata', 'heldout_split'
]
