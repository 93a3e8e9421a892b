"""mlnmr - Multilevel network meta-regression.

Population-adjusted indirect comparisons combining individual patient data
(IPD) from some studies with aggregate data (AgD) from others. Each AgD
study arm's covariate distribution is represented by correlated
quasi-random integration points, so one individual-level regression model
can be fitted to both kinds of data.

Example:
    >>> from mlnmr import add_integration, build_network, distr, nma, set_agd_arm, set_ipd
    >>>
    >>> net = build_network(
    ...     ipd=set_ipd(ipd, study="studyc", trt="trtc", r="y"),
    ...     agd_arm=set_agd_arm(agd, study="studyc", trt="trtc", r="y", n="N"),
    ... )
    >>> net = add_integration(net, age=distr("norm", mean="age_mean", sd="age_sd"), n_int=1000, seed=42)
    >>> fit = nma(net, "~ age*.trt", likelihood="bernoulli")
    >>> fit.relative_effects().summary
"""

from importlib.metadata import version as _get_version

from .backends import get_backend, set_backend
from .core.design import build_design
from .core.priors import cauchy, exponential, flat, half_cauchy, half_normal, half_student_t, normal, student_t
from .errors import (
    ApproximationWarning,
    ConvergenceWarning,
    CorrelationError,
    CorrelationWarning,
    DistributionError,
    IdentifiabilityError,
    MLNMRError,
    SamplingError,
    SchemaError,
)
from .model import DEFAULT_DIAGNOSTICS, MLNMR, NMAFit, nma
from .network import Network, build_network, set_agd_arm, set_agd_contrast, set_ipd
from .progress import PrintReporter, ProgressReporter, SamplingCancelled, TqdmReporter
from .stats.distributions import distr
from .stats.integration import add_integration, integration_error

__version__ = _get_version("mlnmr")

__all__ = [
    "MLNMR",
    "NMAFit",
    "nma",
    "DEFAULT_DIAGNOSTICS",
    # Data
    "Network",
    "set_ipd",
    "set_agd_arm",
    "set_agd_contrast",
    "build_network",
    "distr",
    "add_integration",
    "integration_error",
    "build_design",
    # Priors
    "normal",
    "half_normal",
    "cauchy",
    "half_cauchy",
    "student_t",
    "half_student_t",
    "exponential",
    "flat",
    # Backends and progress
    "get_backend",
    "set_backend",
    "SamplingCancelled",
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
    # Errors
    "MLNMRError",
    "SchemaError",
    "DistributionError",
    "CorrelationError",
    "IdentifiabilityError",
    "SamplingError",
    "ConvergenceWarning",
    "CorrelationWarning",
    "ApproximationWarning",
]
