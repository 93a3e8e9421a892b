"""
Prior distributions for mlnmr model parameters.

Priors are declared per parameter group:

- ``intercept``: study intercepts ``mu``
- ``trt``: relative treatment effects ``d``
- ``reg``: regression coefficients (and exchangeable class means)
- ``het``: heterogeneity sd ``tau``
- ``aux``: residual sd of Normal IPD
- ``class_sd``: sd of exchangeable class interactions

Positive-only groups (``het``, ``aux``, ``class_sd``) take a half or
exponential family.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
from scipy import stats

PRIOR_GROUPS = ("intercept", "trt", "reg", "het", "aux", "class_sd")
POSITIVE_GROUPS = ("het", "aux", "class_sd")

_LOG2 = np.log(2.0)


@dataclass(frozen=True)
class Prior:
    """A prior distribution on a parameter group.

    Attributes:
        family: ``"normal"``, ``"half_normal"``, ``"cauchy"``,
            ``"half_cauchy"``, ``"student_t"``, ``"half_student_t"``,
            ``"exponential"`` or ``"flat"``.
        location: Location (ignored by half families and exponential).
        scale: Scale (mean for exponential).
        df: Degrees of freedom for Student t families.
    """

    family: str
    location: float = 0.0
    scale: float = 1.0
    df: Optional[float] = None

    def __post_init__(self):
        if self.family not in _LOGPDF:
            raise ValueError(f"Unknown prior family '{self.family}'. Available: {', '.join(_LOGPDF)}")
        if self.family != "flat" and not self.scale > 0:
            raise ValueError(f"{self.family} prior: scale must be positive, got {self.scale}")
        if self.family in ("student_t", "half_student_t") and not (self.df is not None and self.df > 0):
            raise ValueError(f"{self.family} prior: df must be positive")

    @property
    def positive_only(self) -> bool:
        return self.family.startswith("half_") or self.family == "exponential"

    def logpdf(self, x) -> float:
        """Sum of log prior densities over the values in *x*."""
        x = np.atleast_1d(np.asarray(x, dtype=float))
        if x.size == 0:
            return 0.0
        if self.positive_only and np.any(x < 0):
            return -np.inf
        return float(np.sum(_LOGPDF[self.family](self, x)))

    def __repr__(self):
        if self.family == "flat":
            return "flat()"
        if self.positive_only:
            extra = f", df={self.df}" if self.df is not None else ""
            return f"{self.family}(scale={self.scale}{extra})"
        extra = f", df={self.df}" if self.df is not None else ""
        return f"{self.family}(location={self.location}, scale={self.scale}{extra})"


_LOGPDF = {
    "normal": lambda p, x: stats.norm.logpdf(x, p.location, p.scale),
    "half_normal": lambda p, x: _LOG2 + stats.norm.logpdf(x, 0.0, p.scale),
    "cauchy": lambda p, x: stats.cauchy.logpdf(x, p.location, p.scale),
    "half_cauchy": lambda p, x: _LOG2 + stats.cauchy.logpdf(x, 0.0, p.scale),
    "student_t": lambda p, x: stats.t.logpdf(x, p.df, p.location, p.scale),
    "half_student_t": lambda p, x: _LOG2 + stats.t.logpdf(x, p.df, 0.0, p.scale),
    "exponential": lambda p, x: stats.expon.logpdf(x, scale=p.scale),
    "flat": lambda p, x: np.zeros_like(x),
}


def normal(location: float = 0.0, scale: float = 1.0) -> Prior:
    return Prior("normal", location, scale)


def half_normal(scale: float = 1.0) -> Prior:
    return Prior("half_normal", scale=scale)


def cauchy(location: float = 0.0, scale: float = 1.0) -> Prior:
    return Prior("cauchy", location, scale)


def half_cauchy(scale: float = 1.0) -> Prior:
    return Prior("half_cauchy", scale=scale)


def student_t(location: float = 0.0, scale: float = 1.0, df: float = 1.0) -> Prior:
    return Prior("student_t", location, scale, df)


def half_student_t(scale: float = 1.0, df: float = 1.0) -> Prior:
    return Prior("half_student_t", scale=scale, df=df)


def exponential(scale: float = 1.0) -> Prior:
    """Exponential prior with mean *scale*."""
    return Prior("exponential", scale=scale)


def flat() -> Prior:
    """Improper flat prior."""
    return Prior("flat")


DEFAULT_PRIORS: Dict[str, Prior] = {
    "intercept": normal(0.0, 100.0),
    "trt": normal(0.0, 10.0),
    "reg": normal(0.0, 10.0),
    "het": half_normal(5.0),
    "aux": half_normal(5.0),
    "class_sd": half_normal(1.0),
}


def resolve_priors(priors: Optional[Dict[str, Prior]] = None) -> Dict[str, Prior]:
    """Merge user priors over ``DEFAULT_PRIORS``, checking groups and support."""
    merged = dict(DEFAULT_PRIORS)
    for group, prior in (priors or {}).items():
        if group not in PRIOR_GROUPS:
            raise ValueError(f"Unknown prior group '{group}'. Available: {', '.join(PRIOR_GROUPS)}")
        if not isinstance(prior, Prior):
            raise TypeError(f"prior for '{group}' must be a Prior, got {type(prior).__name__}")
        if group in POSITIVE_GROUPS and not prior.positive_only:
            raise ValueError(f"prior for '{group}' must be positive-only (half_* or exponential), got {prior!r}")
        merged[group] = prior
    return merged
