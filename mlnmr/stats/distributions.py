"""Distribution and link functions for mlnmr.

Provides the marginal covariate distributions used for integration
(``distr``), the link functions shared by the likelihood and the
posterior analysis code, and vectorised normal CDF/quantile helpers.

Usage:
    from mlnmr.stats.distributions import distr, get_link
    age = distr("norm", mean="age_mean", sd="age_sd")
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Union

import numpy as np
from scipy import special
from scipy import stats as _stats

from ..errors import DistributionError

# Probabilities are kept strictly inside (0, 1) before log/quantile calls.
PROB_EPS = 1e-12


def norm_cdf(x):
    """Standard normal CDF (vectorised)."""
    return special.ndtr(x)


def norm_ppf(p):
    """Standard normal quantile function (vectorised)."""
    return special.ndtri(p)


# ============================================================================
# Marginal quantile functions
# ============================================================================


def _q_norm(u, mean, sd):
    return np.where(sd > 0, mean + np.where(sd > 0, sd, 1.0) * norm_ppf(u), mean)


def _q_bern(u, prob):
    # Step at 1 - prob: the upper prob share of the unit interval maps to 1.
    return (u > 1.0 - prob).astype(float)


def _q_gamma(u, mean, sd):
    if np.any(mean <= 0):
        raise DistributionError("gamma: mean must be positive")
    safe_sd = np.where(sd > 0, sd, 1.0)
    shape = (mean / safe_sd) ** 2
    scale = safe_sd**2 / mean
    return np.where(sd > 0, _stats.gamma.ppf(u, shape, scale=scale), mean)


def _q_lnorm(u, mean, sd):
    if np.any(mean <= 0):
        raise DistributionError("lnorm: mean must be positive")
    sdlog = np.sqrt(np.log1p((sd / mean) ** 2))
    meanlog = np.log(mean) - sdlog**2 / 2
    return np.exp(meanlog + sdlog * norm_ppf(u))


def _q_beta(u, mean, sd):
    if np.any((mean <= 0) | (mean >= 1)):
        raise DistributionError("beta: mean must be in (0, 1)")
    var = sd**2
    if np.any(var >= mean * (1 - mean)):
        raise DistributionError("beta: sd too large for the given mean (need sd^2 < mean * (1 - mean))")
    safe_var = np.where(var > 0, var, 1.0)
    nu = mean * (1 - mean) / safe_var - 1
    return np.where(var > 0, _stats.beta.ppf(u, mean * nu, (1 - mean) * nu), mean)


def _q_unif(u, min, max):  # noqa: A002
    if np.any(max < min):
        raise DistributionError("unif: max must be >= min")
    return min + (max - min) * u


# name -> (quantile function, required parameter names)
_FAMILIES: Dict[str, tuple] = {
    "norm": (_q_norm, ("mean", "sd")),
    "bern": (_q_bern, ("prob",)),
    "gamma": (_q_gamma, ("mean", "sd")),
    "lnorm": (_q_lnorm, ("mean", "sd")),
    "beta": (_q_beta, ("mean", "sd")),
    "unif": (_q_unif, ("min", "max")),
}


@dataclass(frozen=True)
class Distribution:
    """Marginal distribution of one covariate across aggregate arms.

    Attributes:
        family: Family name (``"norm"``, ``"bern"``, ...) or ``"custom"``.
        params: Mapping of parameter name to a column name (looked up per
            arm) or a numeric constant.
        factory: For custom families, a callable taking the parameters as
            keyword arguments and returning an object with a ``ppf`` method.
    """

    family: str
    params: Mapping[str, Union[str, float]] = field(default_factory=dict)
    factory: Any = None

    @property
    def columns(self):
        """Column names referenced by this distribution."""
        return [v for v in self.params.values() if isinstance(v, str)]

    def resolve(self, row: Mapping[str, Any]) -> Dict[str, float]:
        """Look up parameter values for one arm (a mapping of column values)."""
        values = {}
        for name, source in self.params.items():
            if isinstance(source, str):
                if source not in row:
                    raise DistributionError(f"{self.family}: parameter '{name}' refers to missing column '{source}'")
                value = row[source]
            else:
                value = source
            try:
                value = float(value)
            except (TypeError, ValueError) as e:
                raise DistributionError(f"{self.family}: parameter '{name}' is not numeric ({value!r})") from e
            if not np.isfinite(value):
                raise DistributionError(f"{self.family}: parameter '{name}' is missing or non-finite")
            values[name] = value
        self._check_values(values)
        return values

    def _check_values(self, values: Dict[str, float]):
        if "sd" in values and values["sd"] < 0:
            raise DistributionError(f"{self.family}: sd must be non-negative, got {values['sd']}")
        if "prob" in values and not 0 <= values["prob"] <= 1:
            raise DistributionError(f"{self.family}: prob must be in [0, 1], got {values['prob']}")

    def quantile(self, u: np.ndarray, row: Mapping[str, Any]) -> np.ndarray:
        """Apply the quantile function to uniforms *u* with the arm's parameters."""
        values = self.resolve(row)
        u = np.asarray(u, dtype=float)
        if self.family == "custom":
            try:
                frozen = self.factory(**values)
            except (TypeError, ValueError) as e:
                raise DistributionError(f"custom distribution could not be built from {values}: {e}") from e
            x = np.asarray(frozen.ppf(u), dtype=float)
        else:
            qfun, _ = _FAMILIES[self.family]
            x = np.asarray(qfun(u, **values), dtype=float)
        if not np.all(np.isfinite(x)):
            raise DistributionError(f"{self.family}: quantile function produced non-finite values for parameters {values}")
        return x


def distr(family: Union[str, Callable], **params) -> Distribution:
    """Declare the marginal distribution of a covariate.

    Args:
        family: One of ``"norm"`` (mean, sd), ``"bern"`` (prob),
            ``"gamma"`` (mean, sd), ``"lnorm"`` (mean, sd), ``"beta"``
            (mean, sd), ``"unif"`` (min, max), or a callable such as a
            ``scipy.stats`` distribution returning an object with ``ppf``.
        **params: Parameter values; strings are column names in the
            aggregate data, numbers are constants.

    Returns:
        A ``Distribution``.

    Raises:
        DistributionError: Unknown family or missing/unexpected parameters.

    Example:
        >>> distr("gamma", mean="duration_mean", sd="duration_sd")
        >>> distr(scipy.stats.weibull_min, c=1.5, scale="dur_scale")
    """
    if callable(family):
        if not params:
            raise DistributionError("custom distribution needs at least one parameter")
        return Distribution("custom", dict(params), factory=family)

    if family not in _FAMILIES:
        raise DistributionError(f"Unknown distribution '{family}'. Available: {', '.join(_FAMILIES)} or a scipy.stats distribution")

    _, required = _FAMILIES[family]
    missing = [p for p in required if p not in params]
    unexpected = [p for p in params if p not in required]
    if missing or unexpected:
        parts = []
        if missing:
            parts.append(f"missing {missing}")
        if unexpected:
            parts.append(f"unexpected {unexpected}")
        raise DistributionError(f"{family}: parameters {'; '.join(parts)} (expected {list(required)})")

    return Distribution(family, dict(params))


# ============================================================================
# Link functions
# ============================================================================


class Link:
    """Base link function ``g``; ``inverse`` maps the linear predictor to the response."""

    name = ""

    def __call__(self, mu):
        raise NotImplementedError

    def inverse(self, eta):
        raise NotImplementedError

    def inverse_deriv(self, eta):
        """Derivative of the inverse link with respect to eta."""
        raise NotImplementedError

    def log_inverse(self, eta):
        return np.log(np.clip(self.inverse(eta), PROB_EPS, None))

    def log1m_inverse(self, eta):
        return np.log(np.clip(1.0 - self.inverse(eta), PROB_EPS, None))

    def __repr__(self):
        return f"Link('{self.name}')"


class IdentityLink(Link):
    name = "identity"

    def __call__(self, mu):
        return np.asarray(mu, dtype=float)

    def inverse(self, eta):
        return np.asarray(eta, dtype=float)

    def inverse_deriv(self, eta):
        return np.ones_like(np.asarray(eta, dtype=float))


class LogLink(Link):
    name = "log"

    def __call__(self, mu):
        return np.log(mu)

    def inverse(self, eta):
        return np.exp(eta)

    def inverse_deriv(self, eta):
        return np.exp(eta)

    def log_inverse(self, eta):
        return np.asarray(eta, dtype=float)


class LogitLink(Link):
    name = "logit"

    def __call__(self, mu):
        return special.logit(mu)

    def inverse(self, eta):
        return special.expit(eta)

    def inverse_deriv(self, eta):
        p = special.expit(eta)
        return p * (1 - p)

    def log_inverse(self, eta):
        return special.log_expit(eta)

    def log1m_inverse(self, eta):
        return special.log_expit(-np.asarray(eta, dtype=float))


class ProbitLink(Link):
    name = "probit"

    def __call__(self, mu):
        return norm_ppf(mu)

    def inverse(self, eta):
        return norm_cdf(eta)

    def inverse_deriv(self, eta):
        return _stats.norm.pdf(eta)

    def log_inverse(self, eta):
        return special.log_ndtr(eta)

    def log1m_inverse(self, eta):
        return special.log_ndtr(-np.asarray(eta, dtype=float))


class CloglogLink(Link):
    name = "cloglog"

    def __call__(self, mu):
        return np.log(-np.log1p(-np.asarray(mu, dtype=float)))

    def inverse(self, eta):
        return -np.expm1(-np.exp(eta))

    def inverse_deriv(self, eta):
        return np.exp(eta - np.exp(eta))

    def log_inverse(self, eta):
        return np.log(np.clip(-np.expm1(-np.exp(eta)), PROB_EPS, None))

    def log1m_inverse(self, eta):
        return -np.exp(eta)


_LINKS = {cls.name: cls for cls in (IdentityLink, LogLink, LogitLink, ProbitLink, CloglogLink)}


def get_link(name: Union[str, Link]) -> Link:
    """Return a ``Link`` instance by name (``identity``, ``log``, ``logit``, ``probit``, ``cloglog``)."""
    if isinstance(name, Link):
        return name
    if name not in _LINKS:
        raise ValueError(f"Unknown link '{name}'. Available: {', '.join(_LINKS)}")
    return _LINKS[name]()
