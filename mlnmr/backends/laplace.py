"""
Laplace approximation backend.

Locates the posterior mode with L-BFGS-B, estimates the Hessian of the log
density there by finite differences, and draws from the resulting
multivariate Normal approximation.
"""

import warnings
from typing import Callable, List, Optional, Tuple

import numpy as np
from scipy import optimize

from ..errors import ConvergenceWarning, SamplingError
from ..progress import SamplingCancelled
from . import SamplerResult

# Stand-in objective value where the log density is not finite.
_PENALTY = 1e300


def _param_names(log_density, n: int) -> List[str]:
    names = getattr(log_density, "param_names", None)
    return list(names) if names is not None and len(names) == n else [f"theta[{i}]" for i in range(n)]


def _gradient(log_density, x: np.ndarray, step: float = 1e-5) -> np.ndarray:
    if hasattr(log_density, "gradient"):
        return log_density.gradient(x, step)
    grad = np.empty_like(x)
    for i in range(x.size):
        h = step * max(1.0, abs(x[i]))
        up, down = x.copy(), x.copy()
        up[i] += h
        down[i] -= h
        grad[i] = (log_density(up) - log_density(down)) / (2 * h)
    return grad


def find_mode(log_density: Callable, init: np.ndarray, max_iter: int = 2000, tol: float = 1e-8) -> Tuple[np.ndarray, List[str]]:
    """Maximise *log_density* from *init*.

    Returns:
        Tuple of ``(mode, messages)``; messages describe optimiser issues.

    Raises:
        SamplingError: Non-finite density at the initial values, or the
            optimiser ended at a non-finite density.
    """
    init = np.asarray(init, dtype=float)
    names = _param_names(log_density, init.size)
    start = log_density(init)
    if not np.isfinite(start):
        bad = [names[i] for i in np.nonzero(~np.isfinite(init))[0]]
        raise SamplingError("Log density is not finite at the initial values", bad or None)

    def objective(x):
        value = log_density(x)
        return -value if np.isfinite(value) else _PENALTY

    def jac(x):
        g = _gradient(log_density, x)
        return np.where(np.isfinite(g), -g, 0.0)

    result = optimize.minimize(objective, init, jac=jac, method="L-BFGS-B", options={"maxiter": max_iter, "ftol": tol, "gtol": 1e-6})
    if not np.isfinite(result.fun) or result.fun >= _PENALTY:
        raise SamplingError(f"Posterior mode search failed: {result.message}", names)

    messages = []
    if not result.success:
        grad = jac(result.x)
        worst = [names[i] for i in np.argsort(-np.abs(grad))[:3]]
        messages.append(f"Mode search did not fully converge ({result.message}); largest gradients: {', '.join(worst)}")
    return result.x, messages


def hessian(log_density: Callable, x: np.ndarray, step: float = 1e-4) -> np.ndarray:
    """Finite-difference Hessian of *log_density* at *x* (from central differences of the gradient)."""
    x = np.asarray(x, dtype=float)
    n = x.size
    H = np.empty((n, n))
    for i in range(n):
        h = step * max(1.0, abs(x[i]))
        up, down = x.copy(), x.copy()
        up[i] += h
        down[i] -= h
        H[:, i] = (_gradient(log_density, up) - _gradient(log_density, down)) / (2 * h)
    return (H + H.T) / 2


def laplace_covariance(log_density: Callable, mode: np.ndarray, floor: float = 1e-8) -> Tuple[np.ndarray, List[str]]:
    """Covariance of the Normal approximation at *mode*.

    Non-positive-definite precision matrices are repaired by clipping
    eigenvalues, with a ``ConvergenceWarning`` naming the parameters with
    non-positive curvature.
    """
    precision = -hessian(log_density, mode)
    if not np.all(np.isfinite(precision)):
        bad = np.nonzero(~np.isfinite(precision).all(axis=0))[0]
        names = _param_names(log_density, mode.size)
        raise SamplingError("Hessian of the log density is not finite at the mode", [names[i] for i in bad])

    eigvals, eigvecs = np.linalg.eigh(precision)
    messages = []
    if eigvals.min() <= 0:
        names = _param_names(log_density, mode.size)
        flat = eigvecs[:, eigvals <= 0]
        involved = [names[i] for i in np.nonzero(np.abs(flat).max(axis=1) > 0.3)[0]]
        message = (
            "Hessian at the posterior mode is not positive definite; the Normal approximation was repaired. "
            f"Weakly identified parameters: {', '.join(involved) or 'unknown'}"
        )
        warnings.warn(message, ConvergenceWarning, stacklevel=3)
        messages.append(message)
        eigvals = np.maximum(eigvals, max(floor, floor * np.abs(eigvals).max()))
    cov = (eigvecs / eigvals) @ eigvecs.T
    return (cov + cov.T) / 2, messages


class LaplaceBackend:
    """Normal approximation at the posterior mode.

    Args:
        max_iter: Optimiser iteration limit.
        tol: Optimiser function tolerance.
    """

    def __init__(self, max_iter: int = 2000, tol: float = 1e-10):
        self.max_iter = max_iter
        self.tol = tol

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
        mode, messages = find_mode(log_density, init, self.max_iter, self.tol)
        if messages:
            warnings.warn(messages[0], ConvergenceWarning, stacklevel=2)
        cov, cov_messages = laplace_covariance(log_density, mode)
        chol = np.linalg.cholesky(cov)

        rng = np.random.default_rng(seed)
        draws = np.empty((n_chains, n_draws, mode.size))
        for c in range(n_chains):
            if cancel_check is not None and cancel_check():
                raise SamplingCancelled("Sampling cancelled by user")
            z = rng.standard_normal((n_draws, mode.size))
            draws[c] = mode + z @ chol.T
            if progress is not None:
                progress.advance(n_draws, chain=c)

        return SamplerResult(draws=draws, mode=mode, diagnostics=messages + cov_messages, info={"cov": cov})
