"""
Exceptions and warning categories for mlnmr.

Fatal input problems derive from ``MLNMRError`` (itself a ``ValueError``),
so callers that only care about bad input can catch ``ValueError``.
Non-fatal diagnostics are ``UserWarning`` subclasses emitted through the
``warnings`` module and, where a result object exists, also recorded on it.
"""

from typing import Iterable, Optional


class MLNMRError(ValueError):
    """Base class for all input errors raised by mlnmr."""

    pass


class SchemaError(MLNMRError):
    """Missing or malformed input columns, or study/treatment code mismatches."""

    pass


class DistributionError(MLNMRError):
    """Unsupported marginal distribution or missing/invalid distribution parameters."""

    pass


class CorrelationError(MLNMRError):
    """No usable correlation matrix could be obtained for integration."""

    pass


class IdentifiabilityError(MLNMRError):
    """The design matrix is rank deficient."""

    def __init__(self, message: str, aliased: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.aliased = list(aliased) if aliased is not None else []


class SamplingError(RuntimeError):
    """The posterior sampler failed.

    Attributes:
        parameters: Names of the parameters implicated in the failure,
            when the backend can identify them.
    """

    def __init__(self, message: str, parameters: Optional[Iterable[str]] = None):
        if parameters:
            message = f"{message} (parameters: {', '.join(parameters)})"
        super().__init__(message)
        self.parameters = list(parameters) if parameters is not None else []


class ConvergenceWarning(UserWarning):
    """Sampler or integration diagnostics suggest the results are unreliable."""

    pass


class CorrelationWarning(UserWarning):
    """A correlation matrix was repaired or partially imputed."""

    pass


class ApproximationWarning(UserWarning):
    """A likelihood approximation is in use for this data/likelihood combination."""

    pass
