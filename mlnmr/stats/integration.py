"""
Integration point generation for mlnmr.

Generates correlated quasi-random covariate draws for every aggregate
study arm (or ad hoc target population) so that an individual-level model
can be averaged over each arm's covariate distribution:

- Quasi-random points in the unit hypercube (scrambled Sobol or Halton).
- A Gaussian copula to induce the target correlation structure.
- Per-covariate quantile functions with each arm's own parameters.

The correlation matrix is either supplied or pooled from the IPD studies.
Only the latent normal vector has exactly the target correlation; after
non-linear marginal transforms the covariate correlation is approximate.
"""

import dataclasses
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.stats import qmc, rankdata

from ..errors import ConvergenceWarning, CorrelationError, CorrelationWarning, DistributionError, SchemaError
from ..network import STUDY, TRT, Network
from ..utils.validators import _validate_choice, _validate_correlation_matrix, _validate_n_int, _validate_seed
from .distributions import Distribution, norm_cdf, norm_ppf

# Sequences of this family lose their uniformity guarantees beyond a few tens of dimensions.
MAX_QMC_DIM = 40
QMC_METHODS = ("sobol", "halton")
COR_WEIGHTS = ("n", "df", "equal")
COR_METHODS = ("pearson", "spearman")
UNIT_EPS = 1e-15
EIGEN_FLOOR = 1e-8
DEFAULT_N_INT = 64
DEFAULT_ERROR_TOL = 0.05


# ============================================================================
# Quasi-random sequences
# ============================================================================


def _fresh_seed() -> int:
    return int(np.random.SeedSequence().generate_state(1)[0])


def _derived_seed(seed: int, replicate: int) -> int:
    return int(np.random.SeedSequence([seed, replicate]).generate_state(1)[0])


def qmc_points(dim: int, n: int, seed: Optional[int] = None, method: str = "sobol", scramble: bool = True) -> np.ndarray:
    """Generate ``n`` low-discrepancy points in the ``dim``-dimensional unit hypercube.

    Args:
        dim: Number of dimensions (covariates under integration).
        n: Number of points.
        seed: Scrambling seed. The same ``(dim, n, seed, method)`` always
            gives identical points; different seeds give independent
            randomisations of the same sequence.
        method: ``"sobol"`` or ``"halton"``.
        scramble: Apply randomised scrambling. Without scrambling the
            origin of the sequence is skipped.

    Returns:
        Array of shape ``(n, dim)`` strictly inside (0, 1).

    Raises:
        DistributionError: ``dim`` outside ``1..MAX_QMC_DIM``.
    """
    if not 1 <= dim <= MAX_QMC_DIM:
        raise DistributionError(
            f"Quasi-random integration supports 1 to {MAX_QMC_DIM} covariates, got {dim}. "
            "Reduce the number of integrated covariates."
        )
    _validate_choice(method, "method", QMC_METHODS).raise_if_invalid(DistributionError)

    rng = np.random.default_rng(seed)
    if method == "sobol":
        engine = qmc.Sobol(d=dim, scramble=scramble, seed=rng)
    else:
        engine = qmc.Halton(d=dim, scramble=scramble, seed=rng)
    if not scramble:
        engine.fast_forward(1)

    with warnings.catch_warnings():
        # Sobol balance is best for powers of two, but any n is valid here.
        warnings.filterwarnings("ignore", message=".*balance properties.*", category=UserWarning)
        u = engine.random(n)

    return np.clip(u, UNIT_EPS, 1.0 - UNIT_EPS)


# ============================================================================
# Correlation handling
# ============================================================================


def _cholesky_decomposition(corr_matrix: np.ndarray) -> np.ndarray:
    """Compute Cholesky factor, falling back to eigen-decomposition if needed."""
    try:
        return np.linalg.cholesky(corr_matrix)
    except np.linalg.LinAlgError:
        eigenvals, eigenvecs = np.linalg.eigh(corr_matrix)
        eigenvals = np.maximum(eigenvals, 0.0)
        return eigenvecs @ np.diag(np.sqrt(eigenvals))


def repair_correlation(cor: np.ndarray, warn: bool = True) -> Tuple[np.ndarray, float]:
    """Project a symmetric matrix to a nearby valid correlation matrix.

    Negative eigenvalues are clipped to a small positive floor and the
    result is rescaled to a unit diagonal.

    Returns:
        Tuple of ``(repaired, repair_norm)`` where ``repair_norm`` is the
        Frobenius norm of the change (0 when no repair was needed).
    """
    cor = np.asarray(cor, dtype=float)
    cor = (cor + cor.T) / 2
    eigenvals, eigenvecs = np.linalg.eigh(cor)
    if eigenvals.min() >= -1e-10:
        return cor, 0.0

    clipped = eigenvecs @ np.diag(np.maximum(eigenvals, EIGEN_FLOOR)) @ eigenvecs.T
    scale = 1.0 / np.sqrt(np.diag(clipped))
    repaired = clipped * np.outer(scale, scale)
    np.fill_diagonal(repaired, 1.0)
    repair_norm = float(np.linalg.norm(repaired - cor))

    if warn:
        warnings.warn(
            f"Correlation matrix is not positive semi-definite; using the nearest valid matrix (Frobenius change {repair_norm:.3g}).",
            CorrelationWarning,
            stacklevel=3,
        )
    return repaired, repair_norm


def _study_correlation(X: np.ndarray, method: str) -> np.ndarray:
    """Sample correlation of the columns of *X*; NaN where not estimable."""
    d = X.shape[1]
    if X.shape[0] < 2:
        return np.full((d, d), np.nan)
    if method == "spearman":
        X = rankdata(X, axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        r = np.atleast_2d(np.corrcoef(X, rowvar=False))
    if method == "spearman":
        # Spearman correlation on the data scale -> Pearson correlation of the latent normals.
        r = 2 * np.sin(np.pi * r / 6)
    return r


def ipd_correlation(
    network: Network,
    covariates: List[str],
    weights: Union[str, Callable[[int], float]] = "n",
    method: str = "pearson",
) -> np.ndarray:
    """Pool the covariate correlation matrix across IPD studies.

    Each study's sample correlation matrix is combined by an elementwise
    weighted mean. Entries a study cannot estimate (fewer than two
    individuals, or a constant covariate) are left out of that entry's
    mean; entries no study can estimate are set to zero.

    Args:
        network: Network with IPD.
        covariates: Covariates under integration (IPD column names).
        weights: ``"n"`` (individual count), ``"df"`` (count - 1),
            ``"equal"``, or a callable mapping a study's count to a weight.
        method: ``"pearson"`` or ``"spearman"`` (rank correlation mapped
            to the latent normal scale).

    Raises:
        CorrelationError: The network has no IPD.
    """
    if not network.has_ipd:
        raise CorrelationError("No IPD in the network to estimate the covariate correlation from; supply cor explicitly.")
    _validate_choice(method, "cor_method", COR_METHODS).raise_if_invalid(CorrelationError)
    if not callable(weights):
        _validate_choice(weights, "cor_weights", COR_WEIGHTS).raise_if_invalid(CorrelationError)

    missing = [c for c in covariates if c not in network.ipd.columns]
    if missing:
        raise DistributionError(f"Covariate(s) {missing} not found in the IPD")

    d = len(covariates)
    num = np.zeros((d, d))
    den = np.zeros((d, d))
    partial = []

    for s, rows in network.ipd.groupby(STUDY, sort=False):
        X = rows[covariates].to_numpy(dtype=float)
        X = X[~np.isnan(X).any(axis=1)]
        n = X.shape[0]
        if callable(weights):
            w = float(weights(n))
        else:
            w = {"n": n, "df": n - 1, "equal": 1}[weights]
        r = _study_correlation(X, method)
        ok = np.isfinite(r)
        if not ok.all():
            partial.append(s)
        if w <= 0:
            continue
        num += np.where(ok, w * np.nan_to_num(r), 0.0)
        den += np.where(ok, w, 0.0)

    if partial:
        warnings.warn(
            f"Correlations could not be estimated in IPD studies {partial} (too few individuals or constant covariates); "
            "those entries use the remaining studies.",
            CorrelationWarning,
            stacklevel=3,
        )

    with np.errstate(invalid="ignore", divide="ignore"):
        cor = np.where(den > 0, num / np.where(den > 0, den, 1.0), np.nan)

    if np.isnan(cor).any():
        warnings.warn(
            "Some covariate correlations could not be estimated from any IPD study and are set to 0.",
            CorrelationWarning,
            stacklevel=3,
        )
        cor = np.nan_to_num(cor)
    np.fill_diagonal(cor, 1.0)
    return cor


# ============================================================================
# Gaussian copula
# ============================================================================


def gaussian_copula(u: np.ndarray, cor: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Correlate uniform points through a Gaussian copula.

    Algorithm:

    1. Map each uniform coordinate to a standard normal via ``Phi^-1``.
    2. Apply the Cholesky factor of *cor* to induce the correlation.
    3. Map back to uniforms via ``Phi``.

    Args:
        u: ``(n, d)`` points in (0, 1).
        cor: ``(d, d)`` positive semi-definite correlation matrix.

    Returns:
        Tuple of ``(uniforms, latent_normals)``, both ``(n, d)``.
    """
    z = norm_ppf(np.clip(u, UNIT_EPS, 1.0 - UNIT_EPS))
    correlated = z @ _cholesky_decomposition(cor).T
    return np.clip(norm_cdf(correlated), UNIT_EPS, 1.0 - UNIT_EPS), correlated


# ============================================================================
# Integration point store
# ============================================================================


@dataclass(frozen=True)
class IntegrationPoints:
    """Integration points for a set of aggregate arms or target populations.

    Attributes:
        covariates: Covariate names, in column order of every points array.
        distributions: Covariate name -> ``Distribution``.
        cor: Correlation matrix actually used (after any repair).
        n_int: Number of points per arm.
        seed: Scrambling seed; with the other fields it regenerates the
            points exactly.
        method: Quasi-random sequence (``"sobol"`` or ``"halton"``).
        points: Arm key -> ``(n_int, n_covariates)`` covariate draws.
        latent: ``(n_int, n_covariates)`` correlated latent normals
            shared by every arm.
        repair_norm: Frobenius size of the PSD repair (0 if none).
    """

    covariates: List[str]
    distributions: Dict[str, Distribution]
    cor: np.ndarray
    n_int: int
    seed: int
    method: str
    points: Dict[Hashable, np.ndarray] = field(default_factory=dict)
    latent: Optional[np.ndarray] = None
    repair_norm: float = 0.0

    @property
    def weights(self) -> np.ndarray:
        return np.full(self.n_int, 1.0 / self.n_int)

    def mean(self, key) -> np.ndarray:
        """Weighted mean covariate vector of one arm."""
        return self.weights @ self.points[key]

    def __len__(self):
        return len(self.points)


def generate_points(
    rows: Iterable[Tuple[Hashable, Mapping[str, Any]]],
    distributions: Mapping[str, Distribution],
    cor: np.ndarray,
    n_int: int,
    seed: int,
    method: str = "sobol",
    repair_norm: float = 0.0,
) -> IntegrationPoints:
    """Build integration points for each ``(key, row)`` pair.

    All arms share one scrambled point set and latent normal sample; each
    arm then applies its own marginal parameters. The output depends only
    on the arguments.
    """
    covariates = list(distributions)
    u = qmc_points(len(covariates), n_int, seed=seed, method=method)
    copula_u, latent = gaussian_copula(u, cor)

    points = {}
    for key, row in rows:
        X = np.empty((n_int, len(covariates)))
        for j, name in enumerate(covariates):
            try:
                X[:, j] = distributions[name].quantile(copula_u[:, j], row)
            except DistributionError as e:
                raise DistributionError(f"covariate '{name}', arm {key!r}: {e}") from e
        points[key] = X

    return IntegrationPoints(
        covariates=covariates,
        distributions=dict(distributions),
        cor=cor,
        n_int=n_int,
        seed=seed,
        method=method,
        points=points,
        latent=latent,
        repair_norm=repair_norm,
    )


@dataclass(frozen=True)
class TargetPopulation:
    """Ad hoc target population(s) for prediction, with integration points.

    Attributes:
        data: One row per population with covariate summary columns.
        integration: ``IntegrationPoints`` keyed by population label.
    """

    data: pd.DataFrame
    integration: Optional[IntegrationPoints] = None

    @property
    def labels(self) -> List[Hashable]:
        return _population_labels(self.data)

    def rows(self) -> List[Tuple[Hashable, Dict[str, Any]]]:
        return list(zip(self.labels, self.data.to_dict("records")))


def _population_labels(data: pd.DataFrame) -> List[Hashable]:
    if STUDY in data.columns:
        labels = list(data[STUDY])
    else:
        labels = list(data.index)
    if len(set(labels)) != len(labels):
        raise SchemaError("Target population labels (study column or index) must be unique")
    return labels


def _arm_rows(network: Network) -> List[Tuple[Hashable, Dict[str, Any]]]:
    agd = network.aggregate_arms()
    return [((rec[STUDY], rec[TRT]), rec) for rec in agd.to_dict("records")]


def _check_distributions(covariates: Mapping[str, Any], columns: Iterable[str], source: str):
    if not covariates:
        raise DistributionError("Specify at least one covariate distribution, e.g. age=distr('norm', mean='age_mean', sd='age_sd')")
    columns = set(columns)
    errors = []
    for name, dist in covariates.items():
        if not isinstance(dist, Distribution):
            errors.append(f"'{name}' must be a Distribution created with distr(), got {type(dist).__name__}")
            continue
        missing = [c for c in dist.columns if c not in columns]
        if missing:
            errors.append(f"'{name}': column(s) {missing} not found in {source}")
    if errors:
        raise DistributionError("Invalid covariate distributions:\n" + "\n".join(f"• {e}" for e in errors))


def _resolve_cor(cor, n_vars: int) -> Tuple[np.ndarray, float]:
    result = _validate_correlation_matrix(cor, n_vars)
    result.raise_if_invalid(CorrelationError, "Invalid correlation matrix")
    return repair_correlation(np.asarray(cor, dtype=float))


def add_integration(
    target: Union[Network, pd.DataFrame, TargetPopulation],
    cor: Optional[np.ndarray] = None,
    n_int: int = DEFAULT_N_INT,
    seed: Optional[int] = None,
    method: str = "sobol",
    cor_weights: Union[str, Callable[[int], float]] = "n",
    cor_method: str = "pearson",
    network: Optional[Network] = None,
    **covariates: Distribution,
) -> Union[Network, TargetPopulation]:
    """Attach integration points to a network or a target population.

    For a ``Network``, points are generated for every aggregate arm
    (arm-based and contrast-based) and the correlation matrix is stored
    as ``int_cor``. For a DataFrame of target populations, a
    ``TargetPopulation`` is returned. Any existing points are replaced;
    the input object is never modified.

    Args:
        target: ``Network``, DataFrame of populations, or an existing
            ``TargetPopulation``.
        cor: Covariate correlation matrix (order of ``covariates``).
            Defaults to the pooled IPD correlation for networks, or the
            ``int_cor`` of *network* for populations.
        n_int: Number of integration points per arm.
        seed: Scrambling seed. ``None`` draws a fresh seed, which is
            recorded on the result.
        method: ``"sobol"`` or ``"halton"``.
        cor_weights: Pooling weights for the IPD correlation.
        cor_method: ``"pearson"`` or ``"spearman"``.
        network: Network to borrow ``int_cor`` from for population targets.
        **covariates: Covariate name -> ``Distribution``.

    Returns:
        A new ``Network`` or ``TargetPopulation``.

    Raises:
        DistributionError: A distribution references missing columns or
            has invalid parameters.
        CorrelationError: No correlation matrix can be obtained.

    Example:
        >>> net = add_integration(net, age=distr("norm", mean="age_mean", sd="age_sd"),
        ...                       male=distr("bern", prob="male"), n_int=1000, seed=42)
    """
    n_int_check = _validate_n_int(n_int)
    n_int_check.raise_if_invalid(ValueError)
    n_int_check.emit_warnings()
    _validate_seed(seed).raise_if_invalid(ValueError)
    if seed is None:
        seed = _fresh_seed()
    seed = int(seed)
    names = list(covariates)

    if isinstance(target, Network):
        agd = target.aggregate_arms()
        _check_distributions(covariates, agd.columns, "the aggregate data")
        if target.has_ipd:
            missing = [c for c in names if c not in target.ipd.columns]
            if missing:
                raise DistributionError(f"Covariate(s) {missing} not found in the IPD; integration covariates must be IPD columns")

        if cor is None:
            cor = ipd_correlation(target, names, weights=cor_weights, method=cor_method)
        cor, repair_norm = _resolve_cor(cor, len(names))

        integration = generate_points(_arm_rows(target), covariates, cor, n_int, seed, method, repair_norm)
        return target.replace(int_cor=cor, integration=integration)

    data = target.data if isinstance(target, TargetPopulation) else target
    if not isinstance(data, pd.DataFrame):
        raise SchemaError(f"target must be a Network, DataFrame or TargetPopulation, got {type(target).__name__}")
    _check_distributions(covariates, data.columns, "the target population data")

    if cor is None:
        if network is None or network.int_cor is None:
            raise CorrelationError("No correlation matrix for the target population: supply cor, or a network with int_cor")
        if network.integration is not None and network.integration.covariates != names:
            raise CorrelationError(
                f"Network int_cor is for covariates {network.integration.covariates}; got {names}. Supply cor explicitly."
            )
        cor = network.int_cor
    cor, repair_norm = _resolve_cor(cor, len(names))

    population = TargetPopulation(data=data)
    integration = generate_points(population.rows(), covariates, cor, n_int, seed, method, repair_norm)
    return dataclasses.replace(population, integration=integration)


# ============================================================================
# Integration error diagnostic
# ============================================================================


@dataclass
class IntegrationErrorReport:
    """Per-arm integration error estimates.

    Attributes:
        table: One row per arm and quantity with the integrated
            ``estimate``, the replicate discrepancy ``error`` at k = N,
            ``scaled_error`` (relative to the quantity's spread), and
            ``flagged``.
        curves: Arm key -> ``(n_replicates, n_int, n_quantities)``
            cumulative means.
    """

    table: pd.DataFrame
    curves: Dict[Hashable, np.ndarray]

    @property
    def flagged(self) -> pd.DataFrame:
        return self.table[self.table["flagged"]]


def cumulative_mean(values: np.ndarray) -> np.ndarray:
    """Running mean over the first axis: element k is the mean of the first k + 1 rows."""
    values = np.asarray(values, dtype=float)
    k = np.arange(1, values.shape[0] + 1).reshape((-1,) + (1,) * (values.ndim - 1))
    return np.cumsum(values, axis=0) / k


def integration_error(
    target: Union[Network, TargetPopulation],
    fit: Any = None,
    n_replicates: int = 2,
    tol: float = DEFAULT_ERROR_TOL,
) -> IntegrationErrorReport:
    """Estimate the residual integration error for every aggregate arm.

    The points are regenerated with ``n_replicates`` independent scramble
    seeds (the first replicate is the stored point set). For each
    replicate the cumulative mean of the integrated quantity over the
    first k points, k = 1..N, is computed; the largest discrepancy between
    replicates at k = N estimates the remaining error.

    Args:
        target: ``Network`` or ``TargetPopulation`` with integration points.
        fit: Optional ``NMAFit``. When given (network targets only), the
            quantity is the posterior-mean individual response of the arm
            (the linear predictor for contrast-based arms); otherwise it is
            each covariate.
        n_replicates: Number of independent point sets (at least 2).
        tol: Flag arms whose error exceeds ``tol`` times the quantity's
            standard deviation across points.

    Returns:
        ``IntegrationErrorReport``. A ``ConvergenceWarning`` is emitted
        when any arm is flagged.
    """
    if n_replicates < 2:
        raise ValueError("n_replicates must be at least 2")
    integ = target.integration
    if integ is None:
        raise DistributionError("No integration points; call add_integration() first")

    if isinstance(target, Network):
        rows = _arm_rows(target)
    else:
        rows = target.rows()
        if fit is not None:
            raise ValueError("fit-based integration error is only available for network arms")

    replicates = [integ]
    for r in range(1, n_replicates):
        replicates.append(
            generate_points(rows, integ.distributions, integ.cor, integ.n_int, _derived_seed(integ.seed, r), integ.method)
        )

    if fit is not None:
        from ..core.posterior import arm_response_mean

        def quantity(key, X):
            return arm_response_mean(fit, key[0], key[1], X)[:, None]

        def labels(key):
            return ["linear_predictor" if target.study_kind(key[0]) == "agd_contrast" else "response"]

    else:

        def quantity(key, X):
            return X

        def labels(key):
            return list(integ.covariates)

    records = []
    curves = {}
    for key, _ in rows:
        values = [quantity(key, rep.points[key]) for rep in replicates]
        cm = np.stack([cumulative_mean(v) for v in values])
        curves[key] = cm
        final = cm[:, -1, :]
        error = final.max(axis=0) - final.min(axis=0)
        scale = values[0].std(axis=0)
        for j, label in enumerate(labels(key)):
            scaled = error[j] / scale[j] if scale[j] > 0 else 0.0
            records.append(
                {
                    "arm": key,
                    "quantity": label,
                    "estimate": float(final[:, j].mean()),
                    "error": float(error[j]),
                    "scaled_error": float(scaled),
                    "flagged": bool(scaled > tol),
                }
            )

    table = pd.DataFrame(records, columns=["arm", "quantity", "estimate", "error", "scaled_error", "flagged"])
    if table["flagged"].any():
        arms = sorted({str(a) for a in table.loc[table["flagged"], "arm"]})
        warnings.warn(
            f"Integration error above tolerance for {len(arms)} arm(s): {', '.join(arms)}. Consider increasing n_int (currently {integ.n_int}).",
            ConvergenceWarning,
            stacklevel=2,
        )
    return IntegrationErrorReport(table, curves)
