"""
mlnmr - Multilevel network meta-regression.

This module provides the ``MLNMR`` model object, which binds a network,
a regression and model settings and fits them with a sampler backend, and
the ``NMAFit`` result object.
"""

import warnings
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .backends import SamplerBackend, SamplerResult, resolve_backend
from .backends.metropolis import effective_sample_size, split_rhat
from .core.design import AGGREGATE_MODES, CLASS_INTERACTIONS, TRT_EFFECTS, DesignMatrices, build_design
from .core.likelihood import Likelihood, LogDensity, resolve_likelihood
from .core.posterior import posterior_rank_probs, posterior_ranks, predict, relative_effects
from .core.priors import DEFAULT_PRIORS, Prior, resolve_priors
from .core.results import DEFAULT_PROBS, summarise_draws
from .errors import ConvergenceWarning
from .network import Network
from .stats.integration import DEFAULT_ERROR_TOL, integration_error
from .utils.validators import _validate_choice, _validate_draw_settings, _validate_seed

DEFAULT_DIAGNOSTICS: Dict[str, Any] = {
    "rhat": 1.05,  # split R-hat threshold
    "tau_width": 5.0,  # 95% interval width of tau on the link scale
    "integration_tol": DEFAULT_ERROR_TOL,
    "check_integration": True,
}


class NMAFit:
    """A fitted ML-NMR model.

    Attributes:
        design: ``DesignMatrices`` the model was fitted on.
        likelihood: ``Likelihood`` (family and link).
        log_density: ``LogDensity`` of the posterior.
        unconstrained: ``(n_chains * n_draws, n_params)`` draws on the
            unconstrained sampling scale.
        draws: DataFrame of constrained named parameters, one row per draw.
        diagnostics: Convergence and approximation messages.
        seed: Seed the fit was run with.
    """

    def __init__(self, design: DesignMatrices, likelihood: Likelihood, log_density: LogDensity, result: SamplerResult, seed: Optional[int]):
        self.design = design
        self.likelihood = likelihood
        self.log_density = log_density
        self.sampler_result = result
        self.seed = seed
        self.unconstrained = result.flat()
        self.diagnostics: List[str] = list(result.diagnostics)
        self._stacked: Optional[Dict[str, np.ndarray]] = None
        self.draws = self._constrained_draws()

    @property
    def network(self) -> Network:
        return self.design.network

    @property
    def n_draws(self) -> int:
        return self.unconstrained.shape[0]

    def stacked_params(self) -> Dict[str, np.ndarray]:
        """Constrained quantities stacked over draws (``mu``, ``d``, ``b``, ``beta1``, ``beta2``, ``re``, ``tau``, ``sigma``)."""
        if self._stacked is None:
            unpacked = [self.log_density.unpack(theta) for theta in self.unconstrained]
            keys = ("mu", "d", "b", "beta1", "beta2", "re", "sigma")
            stacked = {k: np.stack([getattr(p, k) for p in unpacked]) for k in keys}
            stacked["tau"] = np.array([p.tau for p in unpacked]) if self.design.trt_effects == "random" else None
            self._stacked = stacked
        return self._stacked

    def _constrained_draws(self) -> pd.DataFrame:
        rows = [self.design.constrained(self.log_density.unpack(theta)) for theta in self.unconstrained]
        return pd.DataFrame(rows)

    def summary(self, probs: Sequence[float] = DEFAULT_PROBS) -> pd.DataFrame:
        """Posterior mean, sd and quantiles of every named parameter.

        MCMC fits also get rank-normalised split R-hat and bulk ESS columns.
        """
        table = summarise_draws(self.draws.to_numpy(), probs)
        table.index = self.draws.columns
        if "rhat" in self.sampler_result.info:
            chains = self.draws.to_numpy().reshape(self.sampler_result.n_chains, self.sampler_result.n_draws, -1)
            table["rhat"] = split_rhat(chains)
            table["ess_bulk"] = effective_sample_size(chains)
        return table

    def dic(self) -> pd.Series:
        """Deviance information criterion.

        ``Dbar`` is the posterior mean of ``-2 log L``, ``pD`` the
        effective number of parameters ``Dbar - D(theta_bar)`` at the
        posterior mean, and ``DIC = Dbar + pD``.
        """
        deviance = np.array([-2.0 * np.sum(self.log_density.log_likelihood(theta, pointwise=True)) for theta in self.unconstrained])
        d_bar = float(np.mean(deviance))
        d_hat = -2.0 * float(np.sum(self.log_density.log_likelihood(self.unconstrained.mean(axis=0), pointwise=True)))
        p_d = d_bar - d_hat
        return pd.Series({"Dbar": d_bar, "pD": p_d, "DIC": d_bar + p_d})

    def relative_effects(self, newdata=None, all_contrasts: bool = False, probs: Sequence[float] = DEFAULT_PROBS):
        return relative_effects(self, newdata, all_contrasts, probs)

    def predict(self, newdata=None, baseline=None, **kwargs):
        return predict(self, newdata, baseline, **kwargs)

    def posterior_ranks(self, newdata=None, lower_better: bool = False, probs: Sequence[float] = DEFAULT_PROBS):
        return posterior_ranks(self, newdata, lower_better, probs)

    def posterior_rank_probs(self, newdata=None, lower_better: bool = False, cumulative: bool = False):
        return posterior_rank_probs(self, newdata, lower_better, cumulative)

    def integration_error(self, n_replicates: int = 2, tol: float = DEFAULT_ERROR_TOL):
        return integration_error(self.network, self, n_replicates, tol)

    def check(self, thresholds: Optional[Dict[str, Any]] = None) -> List[str]:
        """Run the convergence checks, warn for each problem, and record it in ``diagnostics``."""
        cfg = dict(DEFAULT_DIAGNOSTICS, **(thresholds or {}))
        problems = []

        rhat = self.sampler_result.info.get("rhat")
        if rhat is not None:
            names = self.log_density.param_names
            high = [names[i] for i in np.nonzero(np.asarray(rhat) > cfg["rhat"])[0]]
            if high:
                problems.append(f"R-hat above {cfg['rhat']} for: {', '.join(high)}")

        if self.design.trt_effects == "random":
            lo, hi = np.quantile(self.stacked_params()["tau"], [0.025, 0.975])
            if hi - lo > cfg["tau_width"]:
                problems.append(f"Heterogeneity sd tau is poorly estimated (95% interval {lo:.2f} to {hi:.2f}); consider an informative prior")

        network = self.network
        if cfg["check_integration"] and network.integration is not None and self.design.regression.covariates:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", ConvergenceWarning)
                report = integration_error(network, self, tol=cfg["integration_tol"])
            flagged = report.flagged
            if len(flagged):
                arms = ", ".join(str(a) for a in flagged["arm"])
                problems.append(f"Integration error above tolerance for arm(s) {arms}; increase n_int (currently {network.n_int})")

        for message in problems:
            if message not in self.diagnostics:
                warnings.warn(message, ConvergenceWarning, stacklevel=2)
                self.diagnostics.append(message)
        return problems

    def __repr__(self):
        return (
            f"NMAFit({self.likelihood!r}, {self.design.trt_effects} effects, "
            f"{self.n_draws} draws, {self.log_density.n_params} parameters)"
        )


class MLNMR:
    """Multilevel network meta-regression model.

    Binds a ``Network`` and a regression formula. All configuration methods
    (``set_*``) store settings on the object and return ``self`` for method
    chaining; nothing is computed until ``fit()``.

    Attributes:
        likelihood: Likelihood family (``None`` picks one from the outcome type).
        link: Link function name (``None`` uses the family default).
        trt_effects: ``"fixed"`` or ``"random"`` (default: ``"fixed"``).
        class_interactions: ``"common"``, ``"independent"`` or
            ``"exchangeable"`` (default: ``"common"``).
        priors: Prior per parameter group (default: ``DEFAULT_PRIORS``).
        seed: Random seed for reproducibility (default: 2137).
        sampler: Backend name or object (``None`` uses the global backend).
        parallel: Run chains in parallel (default: ``False``).
        n_cores: Number of CPU cores for parallel chains.
        qr: Use the QR reparameterisation (default: ``False``).
        center: Centre covariates at the network mean (default: ``True``).
        aggregate: ``"integrate"`` or ``"plugin"`` (default: ``"integrate"``).
        diagnostics: Diagnostic thresholds (default: ``DEFAULT_DIAGNOSTICS``).

    Example:
        >>> model = MLNMR(net, "~ (age + male)*.trt")
        >>> model.set_likelihood("bernoulli", link="logit").set_trt_effects("fixed")
        >>> fit = model.fit(n_draws=2000)
        >>> fit.relative_effects().summary
    """

    def __init__(self, network: Network, regression: Optional[str] = None):
        if not isinstance(network, Network):
            raise TypeError(f"network must be a Network built with build_network(), got {type(network).__name__}")
        self.network = network
        self.regression = regression

        # Model configuration
        self.likelihood: Optional[str] = None
        self.link: Optional[str] = None
        self.trt_effects = "fixed"
        self.class_interactions = "common"
        self.priors: Dict[str, Prior] = dict(DEFAULT_PRIORS)
        self.qr = False
        self.center = True
        self.aggregate = "integrate"

        # Sampling configuration
        self.seed: Optional[int] = 2137
        self.sampler: Union[None, str, SamplerBackend] = None
        self.sampler_options: Dict[str, Any] = {}

        # Parallel processing
        import multiprocessing as mp

        self.parallel = False
        self.n_cores = max(1, (mp.cpu_count() or 1) // 2)

        self.diagnostics: Dict[str, Any] = dict(DEFAULT_DIAGNOSTICS)

    # =========================================================================
    # Configuration methods
    # =========================================================================

    def set_likelihood(self, likelihood: Optional[str] = None, link: Optional[str] = None):
        """Set the likelihood family and link.

        Args:
            likelihood: ``"bernoulli"``/``"binomial"``, ``"bernoulli2"``/
                ``"binomial2"``, ``"normal"`` or ``"poisson"``.
            link: ``"logit"``, ``"probit"``, ``"cloglog"``, ``"identity"``
                or ``"log"`` as allowed by the family.

        Returns:
            self: For method chaining.
        """
        resolve_likelihood(self.network.outcome, likelihood, link)
        self.likelihood, self.link = likelihood, link
        return self

    def set_trt_effects(self, trt_effects: str):
        """Set fixed or random treatment effects."""
        _validate_choice(trt_effects, "trt_effects", TRT_EFFECTS).raise_if_invalid(ValueError)
        self.trt_effects = trt_effects
        return self

    def set_class_interactions(self, mode: str):
        """Set how covariate interactions are shared within treatment classes."""
        _validate_choice(mode, "class_interactions", CLASS_INTERACTIONS).raise_if_invalid(ValueError)
        self.class_interactions = mode
        return self

    def set_priors(self, **priors: Prior):
        """Set priors by group, e.g. ``set_priors(trt=normal(0, 5), het=half_normal(2))``."""
        self.priors = resolve_priors({**self.priors, **priors})
        return self

    def set_seed(self, seed: Optional[int] = None):
        """Set random seed for reproducibility.

        Args:
            seed: Non-negative integer, or ``None`` for fresh entropy.

        Returns:
            self: For method chaining.
        """
        _validate_seed(seed).raise_if_invalid(ValueError)
        self.seed = None if seed is None else int(seed)
        return self

    def set_sampler(self, sampler: Union[str, SamplerBackend], **options):
        """Set the sampler backend for this model (``"laplace"``, ``"metropolis"`` or an object)."""
        resolve_backend(sampler, **options)
        self.sampler, self.sampler_options = sampler, options
        return self

    def set_parallel(self, enable: bool = True, n_cores: Optional[int] = None):
        """Enable or disable parallel chains.

        Args:
            enable: Run chains in parallel worker processes (joblib/loky).
            n_cores: Number of CPU cores to use. Defaults to
                ``cpu_count // 2``.

        Returns:
            self: For method chaining.
        """
        if not enable:
            self.parallel, self.n_cores = False, 1
            return self
        if n_cores is not None:
            if not isinstance(n_cores, int) or n_cores < 1:
                raise ValueError("n_cores must be a positive integer")
            self.n_cores = n_cores
        self.parallel = True
        return self

    def set_qr(self, enable: bool = True):
        """Use the QR reparameterisation of the regression coefficients."""
        self.qr = bool(enable)
        return self

    def set_center(self, enable: bool = True):
        """Centre covariates at their network mean."""
        self.center = bool(enable)
        return self

    def set_aggregate(self, mode: str):
        """Average aggregate arms over integration points (``"integrate"``) or at the mean covariates (``"plugin"``)."""
        _validate_choice(mode, "aggregate", AGGREGATE_MODES).raise_if_invalid(ValueError)
        self.aggregate = mode
        return self

    def set_diagnostics(self, **thresholds):
        """Override diagnostic thresholds (``rhat``, ``tau_width``, ``integration_tol``, ``check_integration``)."""
        unknown = [k for k in thresholds if k not in DEFAULT_DIAGNOSTICS]
        if unknown:
            raise ValueError(f"Unknown diagnostic setting(s) {unknown}. Available: {', '.join(DEFAULT_DIAGNOSTICS)}")
        self.diagnostics.update(thresholds)
        return self

    # =========================================================================
    # Fitting
    # =========================================================================

    def build(self):
        """Build the design, likelihood and log density without sampling."""
        likelihood = resolve_likelihood(self.network.outcome, self.likelihood, self.link)
        design = build_design(
            self.network,
            self.regression,
            class_interactions=self.class_interactions,
            trt_effects=self.trt_effects,
            center=self.center,
            qr=self.qr,
            aggregate=self.aggregate,
        )
        return design, likelihood, LogDensity(design, likelihood, self.priors)

    def _backend(self) -> SamplerBackend:
        options = dict(self.sampler_options)
        if self.parallel and isinstance(self.sampler, str) and self.sampler.lower().strip() == "metropolis":
            options.setdefault("n_jobs", self.n_cores)
        return resolve_backend(self.sampler, **options)

    def fit(
        self,
        n_draws: int = 1000,
        n_chains: int = 4,
        progress_callback=None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> NMAFit:
        """Fit the model.

        Args:
            n_draws: Posterior draws per chain.
            n_chains: Number of chains.
            progress_callback: Progress reporting control:
                - ``None`` or ``False`` (default): no progress output.
                - ``True``: ``PrintReporter`` to stderr.
                - A callable ``(current, total)``, e.g. ``TqdmReporter()``.
            cancel_check: Callable returning ``True`` to cancel; raises
                ``SamplingCancelled``.

        Returns:
            ``NMAFit``.

        Raises:
            SamplingError: The sampler failed.
            IdentifiabilityError: The design is rank deficient.
        """
        result = _validate_draw_settings(n_draws, n_chains)
        result.raise_if_invalid(ValueError)
        result.emit_warnings()

        design, likelihood, log_density = self.build()
        backend = self._backend()

        from .progress import PrintReporter, ProgressReporter, compute_total_draws

        if progress_callback is None or progress_callback is False:
            effective_cb = None
        elif progress_callback is True:
            effective_cb = PrintReporter()
        else:
            effective_cb = progress_callback

        reporter = None
        if effective_cb is not None:
            n_warmup = getattr(backend, "n_warmup", 0)
            n_warmup = n_draws if n_warmup is None else n_warmup
            reporter = ProgressReporter(compute_total_draws(n_draws, n_chains, n_warmup), effective_cb, n_chains=n_chains)
            reporter.start()

        sample = backend.sample(log_density, log_density.initial_values(), n_draws, n_chains, self.seed, reporter, cancel_check)
        if reporter is not None:
            reporter.finish()

        fit = NMAFit(design, likelihood, log_density, sample, self.seed)
        fit.check(self.diagnostics)
        return fit

    def __repr__(self):
        return f"MLNMR({self.network!r}, regression={self.regression!r}, trt_effects={self.trt_effects!r})"


def nma(
    network: Network,
    regression: Optional[str] = None,
    likelihood: Optional[str] = None,
    link: Optional[str] = None,
    trt_effects: str = "fixed",
    class_interactions: str = "common",
    priors: Optional[Dict[str, Prior]] = None,
    seed: Optional[int] = 2137,
    sampler: Union[None, str, SamplerBackend] = None,
    n_draws: int = 1000,
    n_chains: int = 4,
    **options,
) -> NMAFit:
    """Fit an ML-NMR (or plain NMA without a regression) in one call.

    Keyword arguments mirror the ``MLNMR.set_*`` methods; remaining
    ``options`` may set ``qr``, ``center``, ``aggregate``,
    ``progress_callback`` and ``cancel_check``.

    Example:
        >>> fit = nma(net, "~ (age + male)*.trt", likelihood="bernoulli", seed=1)
    """
    fit_kwargs = {k: options.pop(k) for k in ("progress_callback", "cancel_check") if k in options}
    unknown = [k for k in options if k not in ("qr", "center", "aggregate")]
    if unknown:
        raise TypeError(f"nma() got unexpected keyword argument(s) {unknown}")

    model = MLNMR(network, regression)
    model.set_likelihood(likelihood, link).set_trt_effects(trt_effects).set_class_interactions(class_interactions)
    model.set_priors(**(priors or {})).set_seed(seed)
    if sampler is not None:
        model.set_sampler(sampler)
    model.set_qr(options.get("qr", False)).set_center(options.get("center", True)).set_aggregate(options.get("aggregate", "integrate"))
    return model.fit(n_draws, n_chains, **fit_kwargs)
