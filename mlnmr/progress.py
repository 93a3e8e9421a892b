"""
Progress reporting for sampler runs.

Backends report completed iterations (warm-up and retained draws) per
chain to a ``ProgressReporter``, which forwards throttled
``(current, total)`` updates to a user callback. Any callable with that
signature works as a callback; ``PrintReporter`` and ``TqdmReporter``
are provided.
"""

import sys
from typing import Callable, List, Optional


class SamplingCancelled(Exception):
    """Raised when sampling is cancelled by the user."""


class ProgressReporter:
    """Counts sampler iterations over all chains and throttles callbacks.

    Args:
        total: Total iterations over all chains (see ``compute_total_draws``).
        callback: Called as ``callback(current, total)``.
        update_every: Minimum number of iterations between callbacks.
            Defaults to ``max(1, total // 200)``.
        n_chains: Number of chains tracked in ``chain_counts``.
    """

    def __init__(
        self,
        total: int,
        callback: Callable[[int, int], None],
        update_every: Optional[int] = None,
        n_chains: int = 1,
    ):
        self.total = int(total)
        self._callback = callback
        self.update_every = update_every if update_every is not None else max(1, self.total // 200)
        self._chain_counts = [0] * max(1, n_chains)
        self._current = 0
        self._last_reported = -1

    @property
    def current(self) -> int:
        return self._current

    @property
    def chain_counts(self) -> List[int]:
        """Iterations reported per chain (chain 0 when no chain is given)."""
        return list(self._chain_counts)

    def _emit(self):
        self._last_reported = self._current
        self._callback(self._current, self.total)

    def start(self):
        self._current = 0
        self._chain_counts = [0] * len(self._chain_counts)
        self._emit()

    def advance(self, n: int = 1, chain: Optional[int] = None):
        """Record *n* completed iterations, optionally for one chain."""
        if chain is not None:
            if chain >= len(self._chain_counts):
                self._chain_counts.extend([0] * (chain + 1 - len(self._chain_counts)))
            self._chain_counts[chain] += n
        else:
            self._chain_counts[0] += n
        self._current = min(self._current + n, self.total)
        if self._current >= self.total or self._current - self._last_reported >= self.update_every:
            if self._current != self._last_reported:
                self._emit()

    def finish(self):
        """Report completion if the last update fell short of the total."""
        self._current = self.total
        if self._last_reported != self.total:
            self._emit()


class PrintReporter:
    """Writes ``\\rSampling: 45.2% (723/1600 iterations)`` to stderr."""

    def __init__(self, label: str = "Sampling"):
        self.label = label

    def __call__(self, current: int, total: int):
        if total <= 0:
            return
        end = "\n" if current >= total else ""
        sys.stderr.write(f"\r{self.label}: {100.0 * current / total:5.1f}% ({current}/{total} iterations){end}")
        sys.stderr.flush()


class TqdmReporter:
    """Progress bar callback using tqdm (imported on first use).

    Usage::

        from mlnmr.progress import TqdmReporter
        model.fit(n_draws=2000, progress_callback=TqdmReporter(desc="ML-NMR"))
    """

    def __init__(self, **tqdm_kwargs):
        self._tqdm_kwargs = tqdm_kwargs
        self._bar = None

    def __call__(self, current: int, total: int):
        from tqdm import tqdm

        if self._bar is None:
            self._bar = tqdm(total=total, unit="it", **self._tqdm_kwargs)
        if current > self._bar.n:
            self._bar.update(current - self._bar.n)
        if current >= total:
            self._bar.close()
            self._bar = None


def compute_total_draws(n_draws: int, n_chains: int = 1, n_warmup: int = 0) -> int:
    """Iterations a sampler reports: warm-up plus retained draws, for every chain."""
    return (n_draws + n_warmup) * n_chains
