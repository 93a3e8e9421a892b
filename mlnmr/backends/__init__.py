"""
Sampler backend abstraction for mlnmr.

A sampler backend turns a ``LogDensity`` into posterior draws on the
unconstrained scale. Two backends ship with the package:

1. Laplace - posterior mode plus a Normal approximation (fast, default)
2. Metropolis - adaptive random-walk Metropolis chains (run in parallel)

Users can override the selection via set_backend('laplace' | 'metropolis')
or pass any object implementing ``SamplerBackend``.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Union, runtime_checkable

import numpy as np


@dataclass
class SamplerResult:
    """Output of a sampler run.

    Attributes:
        draws: ``(n_chains, n_draws, n_params)`` unconstrained draws.
        mode: Posterior mode (if the backend located one).
        diagnostics: Messages the backend wants recorded on the fit.
        info: Backend-specific extras (acceptance rates, step sizes, ...).
    """

    draws: np.ndarray
    mode: Optional[np.ndarray] = None
    diagnostics: List[str] = field(default_factory=list)
    info: dict = field(default_factory=dict)

    @property
    def n_chains(self) -> int:
        return self.draws.shape[0]

    @property
    def n_draws(self) -> int:
        return self.draws.shape[1]

    def flat(self) -> np.ndarray:
        """Draws with chains concatenated, ``(n_chains * n_draws, n_params)``."""
        return self.draws.reshape(-1, self.draws.shape[-1])


@runtime_checkable
class SamplerBackend(Protocol):
    """Protocol defining the sampler backend interface."""

    def sample(
        self,
        log_density: Callable[[np.ndarray], float],
        init: np.ndarray,
        n_draws: int,
        n_chains: int,
        seed: Optional[int],
        progress=None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> SamplerResult:
        """Draw from the density.

        Args:
            log_density: ``LogDensity`` (callable on the flat vector).
            init: Initial vector.
            n_draws: Draws per chain after warm-up.
            n_chains: Number of chains.
            seed: Random seed; identical seeds give identical draws.
            progress: Optional ``ProgressReporter``.
            cancel_check: Optional callable; sampling stops with
                ``SamplingCancelled`` when it returns ``True``.
        """
        ...


# Valid backend names for set_backend()
_BACKEND_NAMES = {"default", "laplace", "metropolis"}

# Global backend instance
_backend_instance = None
_backend_forced = False


def _create_backend(name: str, **options) -> SamplerBackend:
    """Instantiate a backend by name ('laplace' or 'metropolis')."""
    if name == "laplace":
        from .laplace import LaplaceBackend

        return LaplaceBackend(**options)

    if name == "metropolis":
        from .metropolis import MetropolisBackend

        return MetropolisBackend(**options)

    raise ValueError(f"Unknown backend: {name!r}")


def get_backend() -> SamplerBackend:
    """Get the active sampler backend (Laplace unless set otherwise)."""
    global _backend_instance

    if _backend_instance is not None:
        return _backend_instance

    _backend_instance = _create_backend("laplace")
    return _backend_instance


def set_backend(backend: Union[str, SamplerBackend], **options) -> None:
    """
    Set the sampler backend.

    Args:
        backend: One of:
            - 'default'    - Laplace approximation
            - 'laplace'    - Laplace approximation
            - 'metropolis' - adaptive random-walk Metropolis
            - A SamplerBackend instance
        **options: Keyword arguments for the backend constructor.

    Raises:
        ValueError: If the string is not recognized.
        TypeError: If the object does not implement ``sample``.
    """
    global _backend_instance, _backend_forced

    if isinstance(backend, str):
        name = backend.lower().strip()
        if name not in _BACKEND_NAMES:
            raise ValueError(f"Unknown backend {backend!r}. Choose from: {', '.join(sorted(_BACKEND_NAMES))}")
        _backend_instance = _create_backend("laplace" if name == "default" else name, **options)
        _backend_forced = name != "default"
    else:
        if not isinstance(backend, SamplerBackend):
            raise TypeError(f"backend must implement sample(), got {type(backend).__name__}")
        _backend_instance = backend
        _backend_forced = True


def resolve_backend(backend: Union[None, str, SamplerBackend], **options) -> SamplerBackend:
    """Backend for one fit: the global one when ``None``, else by name or object."""
    if backend is None:
        return get_backend()
    if isinstance(backend, str):
        name = backend.lower().strip()
        if name not in _BACKEND_NAMES:
            raise ValueError(f"Unknown backend {backend!r}. Choose from: {', '.join(sorted(_BACKEND_NAMES))}")
        return _create_backend("laplace" if name == "default" else name, **options)
    if not isinstance(backend, SamplerBackend):
        raise TypeError(f"backend must implement sample(), got {type(backend).__name__}")
    return backend


def reset_backend() -> None:
    """Reset backend to the default selection."""
    global _backend_instance, _backend_forced
    _backend_instance = None
    _backend_forced = False


def get_backend_info() -> dict:
    """
    Get information about the current backend.

    Returns:
        Dictionary with backend name, module, and whether it was forced.
    """
    backend = get_backend()
    return {
        "name": type(backend).__name__,
        "module": type(backend).__module__,
        "forced": _backend_forced,
    }


__all__ = [
    "SamplerBackend",
    "SamplerResult",
    "get_backend",
    "set_backend",
    "resolve_backend",
    "reset_backend",
    "get_backend_info",
]
