"""Core components for the mlnmr framework.

Re-exports the model building blocks:

- ``build_design``, ``DesignMatrices`` - design matrices and parameter layout.
- ``Likelihood``, ``LogDensity``, ``log_likelihood`` - likelihood and
  log posterior.
- ``Prior``, ``DEFAULT_PRIORS`` - prior distributions.
- ``relative_effects``, ``predict``, ``posterior_ranks``,
  ``posterior_rank_probs`` - posterior analysis.
- ``EffectTable``, ``RankTable``, ``ProbabilityTable`` - result tables.
"""

from .design import DesignMatrices, build_design
from .likelihood import Likelihood, LogDensity, log_likelihood, resolve_likelihood
from .posterior import arm_response_mean, posterior_rank_probs, posterior_ranks, predict, relative_effects
from .priors import DEFAULT_PRIORS, Prior, resolve_priors
from .results import EffectTable, ProbabilityTable, RankTable, summarise_draws

__all__ = [
    # Design
    "DesignMatrices",
    "build_design",
    # Likelihood
    "Likelihood",
    "LogDensity",
    "log_likelihood",
    "resolve_likelihood",
    # Priors
    "Prior",
    "DEFAULT_PRIORS",
    "resolve_priors",
    # Posterior
    "relative_effects",
    "predict",
    "posterior_ranks",
    "posterior_rank_probs",
    "arm_response_mean",
    # Results
    "EffectTable",
    "RankTable",
    "ProbabilityTable",
    "summarise_draws",
]
