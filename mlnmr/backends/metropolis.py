"""
Adaptive random-walk Metropolis backend.

Chains start near the posterior mode with a proposal covariance taken from
the Laplace approximation. During warm-up the proposal scale is tuned
towards the optimal acceptance rate and the covariance is re-estimated
from the warm-up draws. Chains run in parallel with joblib when enabled.
"""

import warnings
from typing import Callable, List, Optional

import arviz as az
import numpy as np

from ..errors import ConvergenceWarning
from ..progress import SamplingCancelled
from . import SamplerResult
from .laplace import find_mode, laplace_covariance

TARGET_ACCEPT = 0.234
MIN_DIAGNOSTIC_DRAWS = 4


def _chain_diagnostic(chains: np.ndarray, compute, constant_value: float) -> np.ndarray:
    """Run an arviz diagnostic on ``(n_chains, n_draws, n_params)`` draws, one value per parameter.

    Chains shorter than ``MIN_DIAGNOSTIC_DRAWS`` give NaN. Parameters that
    never move get *constant_value*.
    """
    chains = np.asarray(chains, dtype=float)
    n_params = chains.shape[-1]
    if chains.shape[1] < MIN_DIAGNOSTIC_DRAWS:
        return np.full(n_params, np.nan)
    with np.errstate(divide="ignore", invalid="ignore"):
        values = np.asarray(compute(az.convert_to_dataset(chains))["x"].values, dtype=float).reshape(n_params)
    constant = np.ptp(chains.reshape(-1, n_params), axis=0) == 0
    return np.where(constant, constant_value, values)


def split_rhat(chains: np.ndarray) -> np.ndarray:
    """Rank-normalised split R-hat per parameter (arviz ``rhat``)."""
    return _chain_diagnostic(chains, lambda ds: az.rhat(ds, method="rank"), 1.0)


def effective_sample_size(chains: np.ndarray) -> np.ndarray:
    """Bulk effective sample size per parameter (arviz ``ess``)."""
    return _chain_diagnostic(chains, lambda ds: az.ess(ds, method="bulk"), np.nan)


def _run_chain(
    log_density: Callable,
    start: np.ndarray,
    proposal_cov: np.ndarray,
    n_warmup: int,
    n_draws: int,
    seed: np.random.SeedSequence,
    thin: int = 1,
) -> dict:
    """Run one chain: warm-up with adaptation, then fixed-proposal sampling."""
    rng = np.random.default_rng(seed)
    d = start.size
    scale = 2.38 / np.sqrt(d)
    chol = np.linalg.cholesky(proposal_cov)
    x = start.copy()
    lp = log_density(x)

    warm = np.empty((n_warmup, d))
    for i in range(n_warmup):
        proposal = x + scale * (chol @ rng.standard_normal(d))
        lp_new = log_density(proposal)
        accept_prob = np.exp(min(0.0, lp_new - lp)) if np.isfinite(lp_new) else 0.0
        if rng.random() < accept_prob:
            x, lp = proposal, lp_new
        scale *= np.exp((accept_prob - TARGET_ACCEPT) / np.sqrt(i + 1))
        warm[i] = x
        if i + 1 == n_warmup // 2 and n_warmup >= 4 * d:
            est = np.cov(warm[: i + 1], rowvar=False) + 1e-10 * np.eye(d)
            try:
                chol = np.linalg.cholesky(np.atleast_2d(est))
                scale = 2.38 / np.sqrt(d)
            except np.linalg.LinAlgError:
                pass

    draws = np.empty((n_draws, d))
    accepted = 0
    for i in range(n_draws * thin):
        proposal = x + scale * (chol @ rng.standard_normal(d))
        lp_new = log_density(proposal)
        if np.isfinite(lp_new) and np.log(rng.random()) < lp_new - lp:
            x, lp = proposal, lp_new
            accepted += 1
        if (i + 1) % thin == 0:
            draws[(i + 1) // thin - 1] = x

    return {"draws": draws, "accept_rate": accepted / (n_draws * thin), "scale": scale}


class MetropolisBackend:
    """Adaptive random-walk Metropolis sampler.

    Args:
        n_warmup: Warm-up iterations per chain (defaults to ``n_draws``).
        thin: Keep every ``thin``-th iteration.
        n_jobs: Parallel workers for chains (1 runs sequentially).
        rhat_threshold: Warn when any parameter's split R-hat exceeds this.
    """

    def __init__(self, n_warmup: Optional[int] = None, thin: int = 1, n_jobs: int = 1, rhat_threshold: float = 1.05):
        self.n_warmup = n_warmup
        self.thin = thin
        self.n_jobs = n_jobs
        self.rhat_threshold = rhat_threshold

    def sample(
        self,
        log_density: Callable,
        init: np.ndarray,
        n_draws: int,
        n_chains: int,
        seed: Optional[int],
        progress=None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> SamplerResult:
        mode, messages = find_mode(log_density, init)
        cov, cov_messages = laplace_covariance(log_density, mode)
        messages += cov_messages
        n_warmup = n_draws if self.n_warmup is None else self.n_warmup

        seeds = np.random.SeedSequence(seed).spawn(n_chains + 1)
        jitter = np.random.default_rng(seeds[-1])
        chol = np.linalg.cholesky(cov)
        starts = [mode + 0.5 * chol @ jitter.standard_normal(mode.size) for _ in range(n_chains)]
        args = [(log_density, starts[c], cov, n_warmup, n_draws, seeds[c], self.thin) for c in range(n_chains)]

        results = self._run(args, n_warmup + n_draws, progress, cancel_check)

        draws = np.stack([r["draws"] for r in results])
        rhat = split_rhat(draws)
        names = getattr(log_density, "param_names", None) or [f"theta[{i}]" for i in range(mode.size)]
        high = [names[i] for i in np.nonzero(rhat > self.rhat_threshold)[0]]
        if high:
            message = f"Split R-hat above {self.rhat_threshold} for: {', '.join(high)}. Run longer chains."
            warnings.warn(message, ConvergenceWarning, stacklevel=2)
            messages.append(message)

        info = {
            "accept_rate": [r["accept_rate"] for r in results],
            "scale": [r["scale"] for r in results],
            "rhat": rhat,
            "ess": effective_sample_size(draws),
        }
        return SamplerResult(draws=draws, mode=mode, diagnostics=messages, info=info)

    def _run(self, args: List[tuple], per_chain: int, progress, cancel_check) -> List[dict]:
        if self.n_jobs != 1 and len(args) > 1:
            from joblib import Parallel, delayed

            try:
                chains = Parallel(n_jobs=self.n_jobs, backend="loky", verbose=0, return_as="generator")(delayed(_run_chain)(*a) for a in args)
                results = []
                for c, result in enumerate(chains):
                    if cancel_check is not None and cancel_check():
                        raise SamplingCancelled("Sampling cancelled by user")
                    results.append(result)
                    if progress is not None:
                        progress.advance(per_chain, chain=c)
                return results
            except Exception as e:
                if isinstance(e, SamplingCancelled):
                    raise
                warnings.warn(f"Parallel sampling failed ({e}). Falling back to sequential chains.", RuntimeWarning, stacklevel=3)

        results = []
        for c, a in enumerate(args):
            if cancel_check is not None and cancel_check():
                raise SamplingCancelled("Sampling cancelled by user")
            results.append(_run_chain(*a))
            if progress is not None:
                progress.advance(per_chain, chain=c)
        return results
