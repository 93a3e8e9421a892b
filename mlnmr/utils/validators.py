"""
Validation utilities for mlnmr.

Validators collect every problem they find into a ``_ValidationResult``
so the caller can raise a single error listing all of them.
"""

import warnings
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Type, Union

import numpy as np
import pandas as pd

from ..errors import MLNMRError

__all__ = []


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def raise_if_invalid(self, error_cls: Type[Exception] = MLNMRError, header: str = "Validation failed"):
        """Raise *error_cls* listing every error if the validation failed."""
        if not self.is_valid:
            error_msg = f"{header}:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise error_cls(error_msg)

    def emit_warnings(self, category: Type[Warning] = UserWarning, stacklevel: int = 3):
        """Forward collected warning messages to the ``warnings`` module."""
        for message in self.warnings:
            warnings.warn(message, category, stacklevel=stacklevel)

    def merge(self, other: "_ValidationResult") -> "_ValidationResult":
        """Combine two results into one."""
        return _ValidationResult(
            self.is_valid and other.is_valid,
            self.errors + other.errors,
            self.warnings + other.warnings,
        )


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type."""
        if isinstance(value, bool) and bool not in expected_types:
            return f"{name} must be {expected_types[0].__name__}, got bool"
        if not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
    ) -> Optional[str]:
        """Check if value is within range."""
        if min_val is not None and value < min_val:
            return f"{name} must be >= {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()


def _validate_numeric_parameter(
    value: Any,
    name: str,
    expected_types: tuple = (int, float),
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
) -> _ValidationResult:
    """Generic validation for numeric parameters."""
    errors: List[str] = []

    type_error = _validator._check_type(value, expected_types, name)
    if type_error:
        return _ValidationResult(False, [type_error], [])

    range_error = _validator._check_range(value, min_val, max_val, name)
    if range_error:
        errors.append(range_error)

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_n_int(n_int: Any) -> _ValidationResult:
    """Validate the number of integration points."""
    result = _validate_numeric_parameter(n_int, "n_int", expected_types=(int, np.integer), min_val=1)
    if result.is_valid and n_int < 32:
        result.warnings.append(f"Low number of integration points ({n_int}). Consider using at least 64.")
    return result


def _validate_seed(seed: Any) -> _ValidationResult:
    """Validate a random seed (``None`` or a non-negative integer)."""
    if seed is None:
        return _ValidationResult(True)
    return _validate_numeric_parameter(seed, "seed", expected_types=(int, np.integer), min_val=0)


def _validate_draw_settings(n_draws: Any, n_chains: Any) -> _ValidationResult:
    """Validate the number of posterior draws and chains."""
    result = _validate_numeric_parameter(n_draws, "n_draws", expected_types=(int, np.integer), min_val=1)
    result = result.merge(_validate_numeric_parameter(n_chains, "n_chains", expected_types=(int, np.integer), min_val=1))
    if result.is_valid and n_draws < 100:
        result.warnings.append(f"Low number of posterior draws ({n_draws}); summaries will be noisy.")
    return result


def _validate_required_columns(data: pd.DataFrame, columns: Iterable[Optional[str]], source: str) -> _ValidationResult:
    """Check that every named column is present in *data*."""
    missing = [c for c in columns if c is not None and c not in data.columns]
    if missing:
        return _ValidationResult(
            False,
            [f"{source}: column(s) {', '.join(repr(m) for m in missing)} not found. Available: {', '.join(map(str, data.columns))}"],
        )
    return _ValidationResult(True)


def _validate_outcome_values(data: pd.DataFrame, column: str, source: str, kind: str) -> _ValidationResult:
    """Check outcome column contents for a given outcome kind.

    Args:
        data: Standardised data table.
        column: Outcome column name.
        source: Label used in error messages.
        kind: ``"binary"``, ``"count"``, ``"nonneg"``, ``"positive"`` or
            ``"continuous"``.
    """
    errors = []
    values = pd.to_numeric(data[column], errors="coerce")
    if values.isna().any():
        errors.append(f"{source}: column '{column}' contains missing or non-numeric values")
        return _ValidationResult(False, errors)

    if kind == "binary" and not values.isin([0, 1]).all():
        errors.append(f"{source}: column '{column}' must be binary (0/1)")
    elif kind == "count" and (np.any(values < 0) or not np.allclose(values, np.round(values))):
        errors.append(f"{source}: column '{column}' must contain non-negative integers")
    elif kind == "nonneg" and np.any(values < 0):
        errors.append(f"{source}: column '{column}' must be non-negative")
    elif kind == "positive" and np.any(values <= 0):
        errors.append(f"{source}: column '{column}' must be positive")

    return _ValidationResult(len(errors) == 0, errors)


def _validate_correlation_matrix(
    corr_matrix: Optional[np.ndarray],
    n_vars: Optional[int] = None,
) -> _ValidationResult:
    """Validate a correlation matrix.

    Shape, finiteness, symmetry, unit diagonal and range problems are
    errors. A matrix that is not positive semi-definite is only a warning,
    since it is repaired before use.
    """
    errors = []
    warnings_: List[str] = []

    if corr_matrix is None:
        return _ValidationResult(False, ["Correlation matrix is None"])

    corr_matrix = np.asarray(corr_matrix, dtype=float)

    if corr_matrix.ndim != 2 or corr_matrix.shape[0] != corr_matrix.shape[1]:
        return _ValidationResult(False, ["Correlation matrix must be square"])

    if n_vars is not None and corr_matrix.shape[0] != n_vars:
        return _ValidationResult(False, [f"Correlation matrix shape {corr_matrix.shape} does not match {n_vars} covariates"])

    if not np.all(np.isfinite(corr_matrix)):
        return _ValidationResult(False, ["Correlation matrix contains non-finite values"])

    if not np.allclose(np.diag(corr_matrix), 1.0):
        errors.append("Diagonal elements of correlation matrix must be 1")

    if not np.allclose(corr_matrix, corr_matrix.T):
        errors.append("Correlation matrix must be symmetric")

    if np.any(np.abs(corr_matrix) > 1 + 1e-12):
        errors.append("All correlations must be between -1 and 1")

    if not errors:
        eigenvals = np.linalg.eigvalsh(corr_matrix)
        if np.any(eigenvals < -1e-8):
            warnings_.append(f"Correlation matrix is not positive semi-definite (smallest eigenvalue {eigenvals.min():.3g})")

    return _ValidationResult(len(errors) == 0, errors, warnings_)


def _validate_choice(value: Any, name: str, choices: Iterable[str]) -> _ValidationResult:
    """Check that *value* is one of *choices*."""
    choices = list(choices)
    if value not in choices:
        return _ValidationResult(False, [f"{name} must be one of {choices}, got {value!r}"])
    return _ValidationResult(True)
