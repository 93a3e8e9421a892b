"""
Likelihood aggregation for mlnmr.

IPD rows contribute the individual likelihood. Arm-based aggregate data
contribute the likelihood of the arm summary given the individual
response averaged over the arm's integration points. Contrast-based data
contribute a multivariate Normal on the integrated linear predictor
differences against each study's baseline arm.

``LogDensity`` binds a design, a likelihood and priors into the
unnormalised log posterior on the flat unconstrained parameter vector
consumed by the sampler backends.
"""

import warnings
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
from scipy import special, stats

from ..errors import ApproximationWarning, SchemaError
from ..network import STUDY
from ..stats.distributions import PROB_EPS, Link, get_link
from .design import DataBlock, DesignMatrices, Params
from .priors import Prior, resolve_priors

_ALIASES = {"binomial": "bernoulli", "binomial2": "bernoulli2"}

# family -> allowed links (first is the default)
_LINKS = {
    "bernoulli": ("logit", "probit", "cloglog"),
    "bernoulli2": ("logit", "probit", "cloglog"),
    "normal": ("identity", "log"),
    "poisson": ("log",),
}

# family -> outcome type accepted for each data kind
_OUTCOMES = {
    "bernoulli": {"ipd": ("binary",), "agd_arm": ("count",)},
    "bernoulli2": {"ipd": ("binary",), "agd_arm": ("count",)},
    "normal": {"ipd": ("continuous",), "agd_arm": ("continuous",)},
    "poisson": {"ipd": ("rate",), "agd_arm": ("rate",)},
}

_LOG_2PI = np.log(2 * np.pi)


@dataclass(frozen=True)
class Likelihood:
    """Likelihood family and link function."""

    family: str
    link: Link

    def __repr__(self):
        return f"Likelihood({self.family!r}, link={self.link.name!r})"


def default_likelihood(outcome: Dict[str, str]) -> str:
    """Default family for the outcome types of a network."""
    kinds = {v for k, v in outcome.items() if k != "agd_contrast"}
    if kinds & {"binary", "count"}:
        return "bernoulli"
    if "rate" in kinds:
        return "poisson"
    return "normal"


def resolve_likelihood(outcome: Dict[str, str], family: Optional[str] = None, link: Optional[str] = None) -> Likelihood:
    """Check a family/link against the network's outcome types.

    Raises:
        ValueError: Unknown family or link not allowed for the family.
        SchemaError: Outcome data incompatible with the family.
    """
    family = default_likelihood(outcome) if family is None else family
    family = _ALIASES.get(family, family)
    if family not in _LINKS:
        raise ValueError(f"Unknown likelihood '{family}'. Available: bernoulli, binomial, bernoulli2, binomial2, normal, poisson")
    link_name = _LINKS[family][0] if link is None else (link if isinstance(link, str) else link.name)
    if link_name not in _LINKS[family]:
        raise ValueError(f"Link '{link_name}' is not available for the {family} likelihood. Available: {', '.join(_LINKS[family])}")

    errors = []
    for kind, allowed in _OUTCOMES[family].items():
        if kind in outcome and outcome[kind] not in allowed:
            errors.append(f"{kind} data have {outcome[kind]} outcomes, not compatible with the {family} likelihood")
    if errors:
        raise SchemaError("; ".join(errors))
    return Likelihood(family, get_link(link_name))


# ============================================================================
# Per-block log-likelihood contributions
# ============================================================================


def _ipd_loglik(block: DataBlock, eta: np.ndarray, lik: Likelihood, p: Params) -> np.ndarray:
    link = lik.link
    out = block.outcome
    if lik.family in ("bernoulli", "bernoulli2"):
        r = out["r"]
        return r * link.log_inverse(eta) + (1 - r) * link.log1m_inverse(eta)
    if lik.family == "poisson":
        r = out["r"]
        log_lam = np.log(out["E"]) + link.log_inverse(eta)
        return r * log_lam - np.exp(log_lam) - special.gammaln(r + 1)
    sigma = p.sigma[out["aux_idx"]]
    return stats.norm.logpdf(out["y"], link.inverse(eta), sigma)


def _arm_moments(block: DataBlock, values: np.ndarray, second: bool = False):
    """Weighted mean (and mean of squares) per arm of point-level *values*."""
    mean = np.bincount(block.pos, weights=block.weights * values, minlength=block.n_arms)
    if not second:
        return mean
    sq = np.bincount(block.pos, weights=block.weights * values**2, minlength=block.n_arms)
    return mean, sq


def _binomial_logpmf(r, n, p):
    """Binomial log pmf with a continuous (Beta function) coefficient; ``n`` may be non-integer."""
    with np.errstate(divide="ignore", invalid="ignore"):
        log_coef = -np.log(n + 1) - special.betaln(r + 1, n - r + 1)
        ll = log_coef + special.xlogy(r, p) + special.xlog1py(n - r, -p)
    return np.where(n - r + 1 > 0, ll, -np.inf)


def _agd_arm_loglik(block: DataBlock, eta: np.ndarray, lik: Likelihood) -> np.ndarray:
    h = lik.link.inverse(eta)
    out = block.outcome
    if lik.family == "bernoulli":
        pbar = np.clip(_arm_moments(block, h), PROB_EPS, 1 - PROB_EPS)
        return _binomial_logpmf(out["r"], out["n"], pbar)
    if lik.family == "bernoulli2":
        pbar, sq = _arm_moments(block, h, second=True)
        pbar = np.clip(pbar, PROB_EPS, 1 - PROB_EPS)
        s2 = np.maximum(sq - pbar**2, 0.0)
        p_star = np.clip(pbar + s2 / pbar, PROB_EPS, 1 - PROB_EPS)
        n_star = out["n"] * pbar / p_star
        return _binomial_logpmf(out["r"], n_star, p_star)
    if lik.family == "poisson":
        lam = out["E"] * _arm_moments(block, h)
        return stats.poisson.logpmf(out["r"], lam)
    return stats.norm.logpdf(out["y"], _arm_moments(block, h), out["se"])


def _contrast_loglik(design: DesignMatrices, block: DataBlock, eta: np.ndarray) -> np.ndarray:
    eta_bar = _arm_moments(block, eta)
    ll = np.empty(len(design.contrasts))
    for i, c in enumerate(design.contrasts):
        resid = eta_bar[c.arm_pos] - eta_bar[c.base_pos] - c.y
        ll[i] = -0.5 * (resid @ c.cov_inv @ resid + c.log_det + len(resid) * _LOG_2PI)
    return ll


def log_likelihood(design: DesignMatrices, theta: np.ndarray, likelihood: Likelihood, pointwise: bool = False, params: Optional[Params] = None):
    """Log-likelihood of the parameter vector *theta*.

    Args:
        design: ``DesignMatrices`` from ``build_design``.
        theta: Flat unconstrained parameter vector.
        likelihood: ``Likelihood`` from ``resolve_likelihood``.
        pointwise: Return one contribution per IPD individual, AgD arm
            and contrast-based study (in that order) instead of the sum.
        params: Pre-unpacked ``Params`` for *theta*.
    """
    p = design.unpack(theta, design.layout(design.has_aux)) if params is None else params
    parts = []
    for kind, block in design.blocks.items():
        eta = design.linear_predictor(block, p)
        if kind == "ipd":
            parts.append(_ipd_loglik(block, eta, likelihood, p))
        elif kind == "agd_arm":
            parts.append(_agd_arm_loglik(block, eta, likelihood))
        else:
            parts.append(_contrast_loglik(design, block, eta))
    ll = np.concatenate(parts) if parts else np.empty(0)
    if pointwise:
        return ll
    total = float(np.sum(ll))
    return total if np.isfinite(total) else -np.inf


# ============================================================================
# Log posterior density
# ============================================================================


class LogDensity:
    """Unnormalised log posterior density on the unconstrained scale.

    Positive parameters (``tau``, residual ``sigma``, exchangeable class
    sds) are sampled on the log scale with the log-Jacobian added. Random
    effects and exchangeable interactions use non-centred standard normal
    offsets. With a QR design the sampled coefficients are ``R* beta``;
    the prior is still evaluated on ``beta``.

    Instances are picklable so chains can run in worker processes.

    Example:
        >>> ld = LogDensity(design, resolve_likelihood(net.outcome))
        >>> ld(ld.initial_values())
    """

    def __init__(self, design: DesignMatrices, likelihood: Likelihood, priors: Optional[Dict[str, Prior]] = None):
        self.design = design
        self.likelihood = likelihood
        self.priors = resolve_priors(priors)
        self.layout = design.layout(design.has_aux)

        if design.contrasts and likelihood.family != "normal":
            warnings.warn(
                f"Contrast-based data are modelled on the linear predictor scale ({likelihood.link.name} link); "
                f"with a {likelihood.family} likelihood the population adjustment for these studies is approximate.",
                ApproximationWarning,
                stacklevel=2,
            )

    @property
    def n_params(self) -> int:
        return self.layout.n_params

    @property
    def param_names(self):
        return self.layout.names

    def unpack(self, theta: np.ndarray) -> Params:
        return self.design.unpack(theta, self.layout)

    def log_prior(self, theta: np.ndarray, p: Optional[Params] = None) -> float:
        p = self.unpack(theta) if p is None else p
        pr = self.priors
        design = self.design
        lp = pr["intercept"].logpdf(p.mu) + pr["trt"].logpdf(p.d[1:])

        if design.class_interactions == "exchangeable":
            lp += pr["reg"].logpdf(p.beta1) + pr["reg"].logpdf(p.class_mean)
            lp += _std_normal(self.layout.get(theta, "z_int"))
            lp += pr["class_sd"].logpdf(p.class_sd) + float(np.sum(np.log(p.class_sd)))
        else:
            lp += pr["reg"].logpdf(p.b)

        if p.tau is not None:
            lp += pr["het"].logpdf(p.tau) + np.log(p.tau)
            lp += _std_normal(self.layout.get(theta, "z_delta"))

        if p.sigma.size:
            lp += pr["aux"].logpdf(p.sigma) + float(np.sum(np.log(p.sigma)))
        return float(lp)

    def __call__(self, theta: np.ndarray) -> float:
        theta = np.asarray(theta, dtype=float)
        if not np.all(np.isfinite(theta)):
            return -np.inf
        with np.errstate(over="ignore", under="ignore", divide="ignore", invalid="ignore"):
            p = self.unpack(theta)
            lp = self.log_prior(theta, p)
            if not np.isfinite(lp):
                return -np.inf
            ll = log_likelihood(self.design, theta, self.likelihood, params=p)
        value = lp + ll
        return float(value) if np.isfinite(value) else -np.inf

    def log_likelihood(self, theta: np.ndarray, pointwise: bool = False):
        with np.errstate(over="ignore", under="ignore", divide="ignore", invalid="ignore"):
            return log_likelihood(self.design, theta, self.likelihood, pointwise=pointwise, params=self.unpack(theta))

    def gradient(self, theta: np.ndarray, step: float = 1e-5) -> np.ndarray:
        """Central finite-difference gradient."""
        theta = np.asarray(theta, dtype=float)
        grad = np.empty_like(theta)
        for i in range(theta.size):
            h = step * max(1.0, abs(theta[i]))
            up, down = theta.copy(), theta.copy()
            up[i] += h
            down[i] -= h
            grad[i] = (self(up) - self(down)) / (2 * h)
        return grad

    def initial_values(self) -> np.ndarray:
        """Starting vector: study intercepts at the link of the observed mean response, all else near zero."""
        theta = np.zeros(self.n_params)
        design = self.design
        link = self.likelihood.link
        responses = _study_responses(design)

        mu_slice = self.layout.slices["mu"]
        for i, s in enumerate(design.mu_studies):
            resp = responses.get(s)
            if resp is None or not np.isfinite(resp):
                continue
            if self.likelihood.family in ("bernoulli", "bernoulli2"):
                resp = np.clip(resp, 0.01, 0.99)
            elif link.name == "log":
                resp = max(resp, 1e-3)
            theta[mu_slice.start + i] = float(link(resp))

        if "log_tau" in self.layout.slices:
            theta[self.layout.slices["log_tau"]] = np.log(0.1)
        if "log_class_sd" in self.layout.slices:
            theta[self.layout.slices["log_class_sd"]] = np.log(0.1)
        if "log_sigma" in self.layout.slices:
            block = design.blocks["ipd"]
            y = block.outcome["y"]
            aux_idx = block.outcome["aux_idx"]
            for i in range(len(design.aux_studies)):
                sd = np.std(y[aux_idx == i])
                theta[self.layout.slices["log_sigma"].start + i] = np.log(sd if sd > 0 else 1.0)
        return theta


def _std_normal(z: np.ndarray) -> float:
    return float(-0.5 * np.sum(z**2) - 0.5 * z.size * _LOG_2PI)


def _study_responses(design: DesignMatrices) -> Dict:
    """Observed mean response of each arm-based study on the response scale."""
    network = design.network
    out = {}
    if network.has_ipd:
        ipd = network.ipd
        if "y" in ipd.columns:
            out.update(ipd.groupby(STUDY, sort=False)["y"].mean().to_dict())
        elif "E" in ipd.columns:
            sums = ipd.groupby(STUDY, sort=False)[["r", "E"]].sum()
            out.update((sums["r"] / sums["E"]).to_dict())
        else:
            out.update(ipd.groupby(STUDY, sort=False)["r"].mean().to_dict())
    agd = network.agd_arm
    if agd is not None:
        if "y" in agd.columns:
            out.update(agd.groupby(STUDY, sort=False)["y"].mean().to_dict())
        elif "E" in agd.columns:
            sums = agd.groupby(STUDY, sort=False)[["r", "E"]].sum()
            out.update((sums["r"] / sums["E"]).to_dict())
        else:
            sums = agd.groupby(STUDY, sort=False)[["r", "n"]].sum()
            out.update((sums["r"] / sums["n"]).to_dict())
    return out
