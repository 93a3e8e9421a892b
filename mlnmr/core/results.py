"""
Result tables for mlnmr posterior summaries.

Each table keeps the full posterior draws alongside a tidy pandas summary
(one row per population and treatment or parameter).
"""

from dataclasses import dataclass
from typing import Any, List, Sequence

import numpy as np
import pandas as pd

DEFAULT_PROBS = (0.025, 0.25, 0.5, 0.75, 0.975)


def summarise_draws(draws: np.ndarray, probs: Sequence[float] = DEFAULT_PROBS) -> pd.DataFrame:
    """Mean, sd and quantiles over the first axis of a ``(n_draws, k)`` array."""
    draws = np.asarray(draws, dtype=float)
    if draws.ndim == 1:
        draws = draws[:, None]
    out = {"mean": draws.mean(axis=0), "sd": draws.std(axis=0, ddof=1) if draws.shape[0] > 1 else np.zeros(draws.shape[1])}
    q = np.quantile(draws, probs, axis=0)
    for p, row in zip(probs, q):
        out[f"{100 * p:g}%"] = row
    return pd.DataFrame(out)


def _long_summary(draws: np.ndarray, populations: List[Any], treatments: List[Any], probs) -> pd.DataFrame:
    n_draws, n_pop, n_trt = draws.shape
    summary = summarise_draws(draws.reshape(n_draws, n_pop * n_trt), probs)
    summary.insert(0, "trt", np.tile(np.asarray(treatments, dtype=object), n_pop))
    summary.insert(0, "population", np.repeat(np.asarray(populations, dtype=object), n_trt))
    return summary


@dataclass
class EffectTable:
    """Posterior draws of a quantity per population and treatment.

    Attributes:
        draws: ``(n_draws, n_populations, n_treatments)`` array.
        treatments: Treatment (or contrast) labels, last axis.
        populations: Population labels, middle axis.
        scale: ``"link"`` or ``"response"``.
        probs: Quantiles reported in ``summary``.
    """

    draws: np.ndarray
    treatments: List[Any]
    populations: List[Any]
    scale: str = "link"
    probs: Sequence[float] = DEFAULT_PROBS

    def __post_init__(self):
        self.draws = np.asarray(self.draws, dtype=float)
        if self.draws.ndim != 3 or self.draws.shape[1:] != (len(self.populations), len(self.treatments)):
            raise ValueError(
                f"draws must have shape (n_draws, {len(self.populations)}, {len(self.treatments)}), got {self.draws.shape}"
            )

    @property
    def summary(self) -> pd.DataFrame:
        return _long_summary(self.draws, self.populations, self.treatments, self.probs)

    def population(self, label) -> np.ndarray:
        """``(n_draws, n_treatments)`` draws for one population."""
        return self.draws[:, self.populations.index(label), :]

    def __repr__(self):
        return f"EffectTable({len(self.populations)} population(s) x {len(self.treatments)} treatment(s), {self.draws.shape[0]} draws, {self.scale} scale)"


@dataclass
class RankTable:
    """Posterior ranks per population and treatment (1 = best)."""

    draws: np.ndarray
    treatments: List[Any]
    populations: List[Any]
    lower_better: bool = False
    probs: Sequence[float] = DEFAULT_PROBS

    @property
    def summary(self) -> pd.DataFrame:
        return _long_summary(self.draws, self.populations, self.treatments, self.probs)


@dataclass
class ProbabilityTable:
    """Rank probabilities per population.

    Attributes:
        probabilities: ``(n_populations, n_treatments, n_ranks)``;
            entry ``[p, t, k]`` is the posterior probability that treatment
            ``t`` has rank ``k + 1`` (or rank at most ``k + 1`` when
            ``cumulative``).
    """

    probabilities: np.ndarray
    treatments: List[Any]
    populations: List[Any]
    cumulative: bool = False
    lower_better: bool = False

    @property
    def table(self) -> pd.DataFrame:
        n_pop, n_trt, n_rank = self.probabilities.shape
        prefix = "p_rank<=" if self.cumulative else "p_rank"
        df = pd.DataFrame(self.probabilities.reshape(n_pop * n_trt, n_rank), columns=[f"{prefix}[{k + 1}]" for k in range(n_rank)])
        df.insert(0, "trt", np.tile(np.asarray(self.treatments, dtype=object), n_pop))
        df.insert(0, "population", np.repeat(np.asarray(self.populations, dtype=object), n_trt))
        return df

    def population(self, label) -> pd.DataFrame:
        """``treatments x ranks`` probability table for one population."""
        p = self.probabilities[self.populations.index(label)]
        prefix = "p_rank<=" if self.cumulative else "p_rank"
        return pd.DataFrame(p, index=pd.Index(self.treatments, name="trt"), columns=[f"{prefix}[{k + 1}]" for k in range(p.shape[1])])
