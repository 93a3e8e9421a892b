"""
Posterior analysis for fitted ML-NMR models.

Population-adjusted relative effects, absolute predictions, and
treatment rankings, all computed draw by draw from the posterior sample of
an ``NMAFit``.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from ..errors import SchemaError
from ..network import STUDY, TRT
from ..stats.distributions import Distribution, PROB_EPS
from ..stats.integration import TargetPopulation, _population_labels
from ..utils.validators import _validate_choice
from .results import DEFAULT_PROBS, EffectTable, ProbabilityTable, RankTable

PREDICT_TYPES = ("link", "response")
PREDICT_LEVELS = ("aggregate", "individual")
NEWTON_MAX_ITER = 100
NEWTON_TOL = 1e-10

# A population: label, (n_points, n_covariates) covariate values, point weights.
Population = Tuple[Any, np.ndarray, np.ndarray]


# ============================================================================
# Populations
# ============================================================================


def _study_populations(fit, studies: Optional[Sequence] = None) -> List[Population]:
    """One population per network study: IPD rows, or the pooled integration points of an AgD study."""
    design = fit.design
    network = design.network
    covariates = design.regression.covariates
    pops = []
    for s in network.studies if studies is None else studies:
        kind = network.study_kind(s)
        if not covariates:
            pops.append((s, np.empty((1, 0)), np.ones(1)))
            continue
        if kind == "ipd":
            X = network.ipd.loc[network.ipd[STUDY] == s, covariates].to_numpy(dtype=float)
            pops.append((s, X, np.full(len(X), 1.0 / len(X))))
            continue
        integ = network.integration
        cols = [integ.covariates.index(c) for c in covariates]
        arms = design.arms[design.arms[STUDY] == s]
        X = np.vstack([integ.points[(s, t)][:, cols] for t in arms[TRT]])
        pops.append((s, X, np.full(len(X), 1.0 / len(X))))
    return pops


def _newdata_populations(fit, newdata: Union[pd.DataFrame, TargetPopulation], level: str = "aggregate") -> List[Population]:
    """Populations from user data: integration points when attached, else each row as a single point."""
    covariates = fit.design.regression.covariates
    if isinstance(newdata, TargetPopulation) and newdata.integration is not None and level == "aggregate":
        integ = newdata.integration
        missing = [c for c in covariates if c not in integ.covariates]
        if missing:
            raise SchemaError(f"Target population has no integration points for covariate(s) {missing}")
        cols = [integ.covariates.index(c) for c in covariates]
        return [(label, integ.points[label][:, cols], integ.weights) for label in newdata.labels]

    data = newdata.data if isinstance(newdata, TargetPopulation) else newdata
    if not isinstance(data, pd.DataFrame):
        raise SchemaError(f"newdata must be a DataFrame or TargetPopulation, got {type(newdata).__name__}")
    missing = [c for c in covariates if c not in data.columns]
    if missing:
        raise SchemaError(f"newdata is missing covariate column(s) {missing}")
    values = data[covariates].to_numpy(dtype=float) if covariates else np.empty((len(data), 0))
    if np.isnan(values).any():
        raise SchemaError("newdata covariates contain missing values")
    labels = _population_labels(data)
    return [(label, values[i : i + 1], np.ones(1)) for i, label in enumerate(labels)]


# ============================================================================
# Relative effects
# ============================================================================


def _effect_draws(fit, populations: List[Population]) -> np.ndarray:
    """``(n_draws, n_pops, n_trt)`` effects against the network reference (reference column zero)."""
    design = fit.design
    post = fit.stacked_params()
    d = post["d"]
    effects = np.repeat(d[:, None, :], len(populations), axis=1)
    if design.n_em:
        em_cols = [design.regression.covariates.index(e) for e in design.regression.effect_modifiers]
        xbar = design.xbar[design.regression.effect_modifiers].to_numpy()
        for j, (_, X, w) in enumerate(populations):
            shift = w @ X[:, em_cols] - xbar
            effects[:, j, :] += post["beta2"] @ shift
    return effects


def relative_effects(
    fit,
    newdata: Union[None, pd.DataFrame, TargetPopulation] = None,
    all_contrasts: bool = False,
    probs: Sequence[float] = DEFAULT_PROBS,
) -> EffectTable:
    """Population-adjusted relative treatment effects.

    For each population the effect of treatment ``t`` against the network
    reference is ``d_t + (xmean - xbar)' beta2_t``; on the linear predictor
    scale this is the same whether averaged over individuals or evaluated
    at the mean covariates.

    Args:
        fit: ``NMAFit``.
        newdata: Target populations: a DataFrame with one row per
            population holding covariate (mean) values, or a
            ``TargetPopulation`` with integration points. ``None`` gives
            one population per network study.
        all_contrasts: All pairwise contrasts instead of effects against
            the network reference.
        probs: Quantiles for the summary.

    Returns:
        ``EffectTable`` on the link scale.
    """
    pops = _study_populations(fit) if newdata is None else _newdata_populations(fit, newdata)
    effects = _effect_draws(fit, pops)
    treatments = fit.design.treatments
    labels = [p[0] for p in pops]

    if all_contrasts:
        pairs = [(a, b) for a in range(len(treatments)) for b in range(a + 1, len(treatments))]
        draws = np.stack([effects[:, :, b] - effects[:, :, a] for a, b in pairs], axis=-1)
        names = [f"{treatments[b]} vs {treatments[a]}" for a, b in pairs]
    else:
        draws = effects[:, :, 1:]
        names = [f"{t} vs {treatments[0]}" for t in treatments[1:]]
    return EffectTable(draws, names, labels, scale="link", probs=probs)


# ============================================================================
# Predictions
# ============================================================================


def _baseline_draws(baseline, n_draws: int, seed) -> np.ndarray:
    if isinstance(baseline, Distribution):
        if baseline.columns:
            raise ValueError("baseline distribution parameters must be numbers, not column names")
        u = np.random.default_rng(seed).random(n_draws)
        u = np.clip(u, PROB_EPS, 1 - PROB_EPS)
        return baseline.quantile(u, {})
    value = np.asarray(baseline, dtype=float)
    if value.ndim == 0:
        return np.full(n_draws, float(value))
    if value.shape != (n_draws,):
        raise ValueError(f"baseline must be a number, a Distribution, or an array of {n_draws} draws")
    return value


def solve_aggregate_intercept(link, target: np.ndarray, offsets: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Individual-level intercept per draw so the population-average response equals *target*.

    Solves ``sum_i w_i h(mu + offset_i) = target`` for ``mu`` by Newton
    iterations vectorised over draws.

    Args:
        link: ``Link``.
        target: ``(n_draws,)`` average responses.
        offsets: ``(n_draws, n_points)`` linear predictor without intercept.
        weights: ``(n_points,)`` point weights.
    """
    if link.name == "identity":
        return target - offsets @ weights
    if link.name != "log":
        target = np.clip(target, PROB_EPS, 1 - PROB_EPS)
    mu = link(target) - offsets @ weights
    for _ in range(NEWTON_MAX_ITER):
        eta = mu[:, None] + offsets
        f = link.inverse(eta) @ weights - target
        fprime = link.inverse_deriv(eta) @ weights
        step = f / np.where(fprime > 0, fprime, np.inf)
        mu = mu - step
        if np.max(np.abs(step)) < NEWTON_TOL:
            break
    return mu


def predict(
    fit,
    newdata: Union[None, pd.DataFrame, TargetPopulation] = None,
    baseline=None,
    type: str = "link",  # noqa: A002
    level: str = "aggregate",
    baseline_type: str = "link",
    baseline_level: str = "individual",
    probs: Sequence[float] = DEFAULT_PROBS,
    seed: Optional[int] = None,
) -> EffectTable:
    """Absolute predictions for every treatment in each population.

    Args:
        fit: ``NMAFit``.
        newdata: Target populations (see ``relative_effects``). With
            ``level="individual"`` each DataFrame row is an individual.
            ``None`` predicts in the arm-based network studies using their
            estimated ``mu`` (and their IPD individuals when
            ``level="individual"``).
        baseline: Reference treatment outcome in the target populations:
            a number, an array of per-draw values, or a ``Distribution``
            with numeric parameters (drawn once per posterior draw).
            Required with ``newdata``.
        type: ``"link"`` or ``"response"`` scale of the predictions.
        level: ``"aggregate"`` (population average) or ``"individual"``.
        baseline_type: Scale of ``baseline``.
        baseline_level: ``"individual"`` (baseline is the individual-level
            intercept at the network mean covariates) or ``"aggregate"``
            (baseline is the population-average reference response).
        probs: Quantiles for the summary.
        seed: Seed for drawing a ``Distribution`` baseline; defaults to
            the fit's seed.

    Returns:
        ``EffectTable`` with one column per treatment. Aggregate link-scale
        predictions are the link of the population-average response.
    """
    for value, name, choices in (
        (type, "type", PREDICT_TYPES),
        (level, "level", PREDICT_LEVELS),
        (baseline_type, "baseline_type", PREDICT_TYPES),
        (baseline_level, "baseline_level", PREDICT_LEVELS),
    ):
        _validate_choice(value, name, choices).raise_if_invalid(ValueError)

    design = fit.design
    link = fit.likelihood.link
    post = fit.stacked_params()
    n_draws = post["d"].shape[0]

    if newdata is None:
        if baseline is not None:
            raise ValueError("baseline is only used with newdata; network study predictions use the estimated mu")
        pops, studies = _network_prediction_populations(fit, level)
        baselines = _study_baselines(design)
        # mu is the baseline-arm intercept; shift it onto the reference treatment
        intercepts = [post["mu"][:, design.mu_studies.index(s)] - post["d"][:, baselines[s]] for s in studies]
    else:
        if baseline is None:
            raise ValueError("baseline is required to predict in newdata populations")
        pops = _newdata_populations(fit, newdata, level)
        base = _baseline_draws(baseline, n_draws, fit.seed if seed is None else seed)
        intercepts = []
        for _, X, w in pops:
            if baseline_level == "individual":
                intercepts.append(link(base) if baseline_type == "response" else base)
                continue
            target = base if baseline_type == "response" else link.inverse(base)
            offsets = _offsets(design, post, X, 0)
            intercepts.append(solve_aggregate_intercept(link, target, offsets, w))

    out = np.empty((n_draws, len(pops), design.n_trt))
    for j, (_, X, w) in enumerate(pops):
        for t in range(design.n_trt):
            eta = intercepts[j][:, None] + _offsets(design, post, X, t)
            if len(w) == 1:
                value = eta[:, 0]
                out[:, j, t] = link.inverse(value) if type == "response" else value
                continue
            mean_response = link.inverse(eta) @ w
            out[:, j, t] = mean_response if type == "response" else link(mean_response)

    labels = [p[0] for p in pops]
    return EffectTable(out, list(design.treatments), labels, scale=type, probs=probs)


def _network_prediction_populations(fit, level: str) -> Tuple[List[Population], List[Any]]:
    """Prediction populations in the network with the study each one takes its intercept from."""
    design = fit.design
    network = design.network
    if level == "aggregate":
        return _study_populations(fit, design.mu_studies), list(design.mu_studies)
    if not network.has_ipd:
        raise ValueError("Individual-level predictions without newdata need IPD in the network")
    covariates = design.regression.covariates
    pops, studies = [], []
    for s in pd.unique(network.ipd[STUDY]):
        rows = network.ipd[network.ipd[STUDY] == s]
        values = rows[covariates].to_numpy(dtype=float) if covariates else np.empty((len(rows), 0))
        pops.extend(((s, i), values[k : k + 1], np.ones(1)) for k, i in enumerate(rows.index))
        studies.extend([s] * len(rows))
    return pops, studies


def _study_baselines(design) -> Dict[Any, int]:
    """Treatment index of each study's baseline arm."""
    arms = design.arms[design.arms["baseline"]]
    return {s: design.treatments.index(t) for s, t in zip(arms[STUDY], arms[TRT])}


def _offsets(design, post: Dict[str, np.ndarray], X: np.ndarray, trt: int) -> np.ndarray:
    """``(n_draws, n_points)`` linear predictor without intercept for treatment index *trt*."""
    d = post["d"][:, trt][:, None]
    if not design.n_reg:
        return np.repeat(d, X.shape[0], axis=1)
    R = design.regression_matrix(X, np.full(X.shape[0], trt))
    return d + post["b"] @ R.T


# ============================================================================
# Rankings
# ============================================================================


def _ranking_effects(fit_or_effects, newdata) -> EffectTable:
    if isinstance(fit_or_effects, EffectTable):
        if newdata is not None:
            raise ValueError("newdata cannot be combined with a precomputed EffectTable")
        return fit_or_effects
    pops = _study_populations(fit_or_effects) if newdata is None else _newdata_populations(fit_or_effects, newdata)
    return EffectTable(_effect_draws(fit_or_effects, pops), list(fit_or_effects.design.treatments), [p[0] for p in pops])


def _rank_draws(effects: EffectTable, lower_better: bool) -> np.ndarray:
    values = effects.draws if lower_better else -effects.draws
    return rankdata(values, method="min", axis=-1).astype(int)


def posterior_ranks(
    fit_or_effects,
    newdata: Union[None, pd.DataFrame, TargetPopulation] = None,
    lower_better: bool = False,
    probs: Sequence[float] = DEFAULT_PROBS,
) -> RankTable:
    """Posterior ranks of all treatments in each population (1 = best; ties share the lowest rank).

    Args:
        fit_or_effects: ``NMAFit``, or an ``EffectTable`` whose columns
            are the treatments to rank.
        newdata: Target populations (see ``relative_effects``).
        lower_better: Rank lower effects as better (e.g. harmful
            outcomes on the log odds scale).
    """
    effects = _ranking_effects(fit_or_effects, newdata)
    return RankTable(_rank_draws(effects, lower_better), effects.treatments, effects.populations, lower_better, probs)


def posterior_rank_probs(
    fit_or_effects,
    newdata: Union[None, pd.DataFrame, TargetPopulation] = None,
    lower_better: bool = False,
    cumulative: bool = False,
) -> ProbabilityTable:
    """Posterior probabilities of each treatment taking each rank.

    Each treatment's rank probabilities sum to one; cumulative
    probabilities are non-decreasing and end at one.
    """
    effects = _ranking_effects(fit_or_effects, newdata)
    ranks = _rank_draws(effects, lower_better)
    n_trt = ranks.shape[-1]
    probs = np.stack([(ranks == k).mean(axis=0) for k in range(1, n_trt + 1)], axis=-1)
    if cumulative:
        probs = np.cumsum(probs, axis=-1)
        probs[..., -1] = 1.0
    return ProbabilityTable(probs, effects.treatments, effects.populations, cumulative, lower_better)


# ============================================================================
# Arm-level response (integration error diagnostic)
# ============================================================================


def arm_response_mean(fit, study, trt, X: np.ndarray) -> np.ndarray:
    """Posterior-mean integrated quantity of a network arm at each covariate point.

    This is the individual response for arm-based data, and the linear
    predictor relative to the study baseline for contrast-based data (the
    quantity the contrast likelihood averages).

    Args:
        fit: ``NMAFit``.
        study: Study of the arm.
        trt: Treatment of the arm.
        X: ``(n_points, n_integration_covariates)`` covariate values in
            the network's integration covariate order.

    Returns:
        ``(n_points,)`` array.
    """
    design = fit.design
    network = design.network
    post = fit.stacked_params()
    arms = design.arms
    match = np.nonzero((arms[STUDY] == study).to_numpy() & (arms[TRT] == trt).to_numpy())[0]
    if not match.size:
        raise KeyError(f"Arm ({study!r}, {trt!r}) not in network")
    arm = match[0]
    study_arms = arms[arms[STUDY] == study]
    base_trt = study_arms.loc[study_arms["baseline"], TRT].iloc[0]
    t, b = design.treatments.index(trt), design.treatments.index(base_trt)

    X = np.atleast_2d(np.asarray(X, dtype=float))
    covariates = design.regression.covariates
    if covariates:
        cols = [network.integration.covariates.index(c) for c in covariates]
        R = design.regression_matrix(X[:, cols], np.full(X.shape[0], t))
    else:
        R = np.empty((X.shape[0], 0))

    eta = (post["d"][:, t] - post["d"][:, b] + post["re"][:, arm])[:, None] + post["b"] @ R.T
    if network.study_kind(study) == "agd_contrast":
        return eta.mean(axis=0)
    eta = eta + post["mu"][:, design.mu_studies.index(study)][:, None]
    return fit.likelihood.link.inverse(eta).mean(axis=0)
