"""
Network construction for mlnmr.

A network combines individual patient data (IPD) from some studies with
aggregate data (AgD) from others. Input tables are wrapped by
``set_ipd``/``set_agd_arm``/``set_agd_contrast`` into ``DataSource``
objects with standardised column names, then combined and validated by
``build_network``.
"""

import dataclasses
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components

from .errors import SchemaError
from .utils.validators import _validate_outcome_values, _validate_required_columns, _ValidationResult

# Standardised column names
STUDY = "study"
TRT = "trt"
TRTCLASS = "trtclass"
OUTCOME_COLUMNS = ("r", "n", "E", "y", "se", "sample_size")

KINDS = ("ipd", "agd_arm", "agd_contrast")


@dataclass(frozen=True)
class DataSource:
    """One input table with standardised columns.

    Attributes:
        kind: ``"ipd"``, ``"agd_arm"`` or ``"agd_contrast"``.
        data: Table with ``study``, ``trt``, optional ``trtclass``, the
            outcome columns and all remaining (covariate) columns.
        outcome: Outcome type: ``"binary"``, ``"rate"``, ``"continuous"``,
            ``"count"`` or ``"contrast"``.
    """

    kind: str
    data: pd.DataFrame
    outcome: str


def _standardise(data: pd.DataFrame, source: str, mapping: Dict[str, Optional[str]]) -> pd.DataFrame:
    """Copy *data* renaming the mapped columns to their standard names."""
    if not isinstance(data, pd.DataFrame):
        raise SchemaError(f"{source}: data must be a pandas DataFrame, got {type(data).__name__}")

    _validate_required_columns(data, mapping.values(), source).raise_if_invalid(SchemaError, "Invalid input table")

    used = {col for col in mapping.values() if col is not None}
    created = {std for std, col in mapping.items() if col is not None}
    clashes = [c for c in data.columns if c not in used and c in created]
    if clashes:
        raise SchemaError(f"{source}: column(s) {clashes} clash with standard column names; rename them first")

    out = pd.DataFrame(index=data.index)
    for std, col in mapping.items():
        if col is not None:
            out[std] = data[col].values
    for col in data.columns:
        if col not in used:
            out[col] = data[col].values

    if out[STUDY].isna().any() or out[TRT].isna().any():
        raise SchemaError(f"{source}: study and treatment columns must not contain missing values")

    return out.reset_index(drop=True)


def set_ipd(
    data: pd.DataFrame,
    study: str,
    trt: str,
    r: Optional[str] = None,
    y: Optional[str] = None,
    E: Optional[str] = None,
    trt_class: Optional[str] = None,
) -> DataSource:
    """Declare an individual patient data table.

    Args:
        data: One row per individual.
        study: Study identifier column.
        trt: Treatment column.
        r: Binary (0/1) outcome column, or event count when ``E`` is given.
        y: Continuous outcome column.
        E: Exposure time column for rate outcomes.
        trt_class: Optional treatment class column.

    Raises:
        SchemaError: Missing columns, or not exactly one outcome specified.
    """
    source = "IPD"
    if (r is None) == (y is None):
        raise SchemaError(f"{source}: specify exactly one outcome, either r (binary/count) or y (continuous)")

    df = _standardise(data, source, {STUDY: study, TRT: trt, TRTCLASS: trt_class, "r": r, "y": y, "E": E})

    if y is not None:
        outcome = "continuous"
        result = _validate_outcome_values(df, "y", source, "continuous")
    elif E is not None:
        outcome = "rate"
        result = _validate_outcome_values(df, "r", source, "count").merge(_validate_outcome_values(df, "E", source, "positive"))
    else:
        outcome = "binary"
        result = _validate_outcome_values(df, "r", source, "binary")
    result.raise_if_invalid(SchemaError, "Invalid outcome data")

    return DataSource("ipd", df, outcome)


def set_agd_arm(
    data: pd.DataFrame,
    study: str,
    trt: str,
    r: Optional[str] = None,
    n: Optional[str] = None,
    y: Optional[str] = None,
    se: Optional[str] = None,
    E: Optional[str] = None,
    sample_size: Optional[str] = None,
    trt_class: Optional[str] = None,
) -> DataSource:
    """Declare an arm-based aggregate data table.

    Outcomes are either event counts ``r`` out of ``n``, event counts ``r``
    over exposure ``E``, or a mean ``y`` with standard error ``se``. All
    remaining columns (covariate summaries such as ``age_mean``) are kept.

    Raises:
        SchemaError: Missing columns or an incomplete outcome specification.
    """
    source = "AgD (arm-based)"
    mapping = {STUDY: study, TRT: trt, TRTCLASS: trt_class, "r": r, "n": n, "y": y, "se": se, "E": E, "sample_size": sample_size}

    if r is not None and n is not None and y is None:
        outcome = "count"
        checks = [("r", "count"), ("n", "count")]
    elif r is not None and E is not None and y is None:
        outcome = "rate"
        checks = [("r", "count"), ("E", "positive")]
    elif y is not None and se is not None and r is None:
        outcome = "continuous"
        checks = [("y", "continuous"), ("se", "positive")]
    else:
        raise SchemaError(f"{source}: specify r and n, r and E, or y and se")

    df = _standardise(data, source, mapping)

    result = _ValidationResult(True)
    for column, kind in checks:
        result = result.merge(_validate_outcome_values(df, column, source, kind))
    if outcome == "count" and result.is_valid and np.any(df["r"] > df["n"]):
        result = result.merge(_ValidationResult(False, [f"{source}: r must not exceed n"]))
    result.raise_if_invalid(SchemaError, "Invalid outcome data")

    if sample_size is None and outcome == "count":
        df["sample_size"] = df["n"]

    return DataSource("agd_arm", df, outcome)


def set_agd_contrast(
    data: pd.DataFrame,
    study: str,
    trt: str,
    y: str,
    se: str,
    sample_size: Optional[str] = None,
    trt_class: Optional[str] = None,
) -> DataSource:
    """Declare a contrast-based aggregate data table.

    Each study has one baseline row with a missing ``y``; the other rows
    hold the relative effect against that baseline and its standard error.
    A ``se`` on the baseline row gives the standard error of the baseline
    arm, which is the covariance between contrasts of a multi-arm study.

    Raises:
        SchemaError: Missing columns, or a study without exactly one baseline row.
    """
    source = "AgD (contrast-based)"
    df = _standardise(data, source, {STUDY: study, TRT: trt, TRTCLASS: trt_class, "y": y, "se": se, "sample_size": sample_size})

    errors = []
    for s, rows in df.groupby(STUDY, sort=False):
        n_base = int(rows["y"].isna().sum())
        if n_base != 1:
            errors.append(f"study {s!r} must have exactly one baseline row (missing y), found {n_base}")
        contrasts = rows[rows["y"].notna()]
        se_vals = pd.to_numeric(contrasts["se"], errors="coerce")
        if se_vals.isna().any() or np.any(se_vals <= 0):
            errors.append(f"study {s!r}: se must be positive for every contrast row")
    _ValidationResult(not errors, errors).raise_if_invalid(SchemaError, "Invalid contrast data")

    return DataSource("agd_contrast", df, "contrast")


def _as_source_list(value: Union[None, DataSource, Sequence[DataSource]], kind: str) -> List[DataSource]:
    if value is None:
        return []
    sources = [value] if isinstance(value, DataSource) else list(value)
    for src in sources:
        if not isinstance(src, DataSource) or src.kind != kind:
            raise SchemaError(f"expected {kind} data sources built with set_{kind}()")
    return sources


def _combine(sources: List[DataSource], kind: str) -> tuple:
    """Concatenate several sources of one kind, checking outcome consistency."""
    if not sources:
        return None, None
    outcomes = {src.outcome for src in sources}
    if len(outcomes) > 1:
        raise SchemaError(f"{kind}: all tables must have the same outcome type, got {sorted(outcomes)}")
    data = pd.concat([src.data for src in sources], ignore_index=True, sort=False)
    return data, outcomes.pop()


def _check_near_duplicates(values, label: str) -> List[str]:
    """Report codes that differ only by case or surrounding whitespace."""
    seen: Dict[str, Any] = {}
    errors = []
    for v in values:
        key = str(v).strip().lower()
        if key in seen and seen[key] != v:
            errors.append(f"{label} codes {seen[key]!r} and {v!r} differ only by case/whitespace")
        seen.setdefault(key, v)
    return errors


@dataclass(frozen=True)
class Network:
    """A network of IPD and AgD studies sharing one set of treatments.

    Instances are immutable; ``add_integration`` returns a modified copy.

    Attributes:
        ipd: Individual-level table (or ``None``).
        agd_arm: Arm-based aggregate table (or ``None``).
        agd_contrast: Contrast-based aggregate table (or ``None``).
        treatments: Treatment codes, network reference first.
        classes: Mapping treatment -> class, or ``None``.
        outcome: Mapping data kind -> outcome type.
        int_cor: Correlation matrix used for integration (set by
            ``add_integration``).
        integration: ``IntegrationPoints`` for the aggregate arms.
    """

    ipd: Optional[pd.DataFrame]
    agd_arm: Optional[pd.DataFrame]
    agd_contrast: Optional[pd.DataFrame]
    treatments: List[Any]
    classes: Optional[Dict[Any, Any]]
    outcome: Dict[str, str]
    int_cor: Optional[np.ndarray] = None
    integration: Any = None

    @property
    def trt_ref(self):
        return self.treatments[0]

    @property
    def has_ipd(self) -> bool:
        return self.ipd is not None and len(self.ipd) > 0

    @property
    def has_agd(self) -> bool:
        return any(df is not None and len(df) > 0 for df in (self.agd_arm, self.agd_contrast))

    @property
    def n_int(self) -> Optional[int]:
        return None if self.integration is None else self.integration.n_int

    @property
    def studies(self) -> List[Any]:
        """Study codes in order: IPD, arm-based AgD, contrast-based AgD."""
        out: List[Any] = []
        for df in (self.ipd, self.agd_arm, self.agd_contrast):
            if df is not None:
                out.extend(pd.unique(df[STUDY]))
        return out

    def study_kind(self, study) -> str:
        for kind in KINDS:
            df = getattr(self, kind)
            if df is not None and (df[STUDY] == study).any():
                return kind
        raise KeyError(f"Study {study!r} not in network")

    def trt_index(self, trt) -> int:
        return self.treatments.index(trt)

    def arms(self) -> pd.DataFrame:
        """One row per study arm with its data kind and baseline flag.

        The baseline of an arm-based study is its arm with the lowest
        treatment order; for contrast data it is the row with missing ``y``.
        """
        rows = []
        order = {t: i for i, t in enumerate(self.treatments)}
        for kind in KINDS:
            df = getattr(self, kind)
            if df is None:
                continue
            for s, study_rows in df.groupby(STUDY, sort=False):
                trts = sorted(pd.unique(study_rows[TRT]), key=order.__getitem__)
                if kind == "agd_contrast":
                    base = study_rows.loc[study_rows["y"].isna(), TRT].iloc[0]
                else:
                    base = trts[0]
                for t in trts:
                    rows.append({STUDY: s, TRT: t, "kind": kind, "baseline": t == base})
        return pd.DataFrame(rows, columns=[STUDY, TRT, "kind", "baseline"])

    def aggregate_arms(self) -> pd.DataFrame:
        """Rows of every aggregate arm (arm-based and contrast-based) with their covariate summaries."""
        frames = [df.assign(kind=kind) for kind, df in (("agd_arm", self.agd_arm), ("agd_contrast", self.agd_contrast)) if df is not None]
        if not frames:
            return pd.DataFrame(columns=[STUDY, TRT, "kind"])
        return pd.concat(frames, ignore_index=True, sort=False)

    def replace(self, **changes) -> "Network":
        return dataclasses.replace(self, **changes)

    def __repr__(self):
        parts = []
        for kind in KINDS:
            df = getattr(self, kind)
            if df is not None:
                parts.append(f"{kind}: {df[STUDY].nunique()} studies ({self.outcome[kind]})")
        integ = f", n_int={self.n_int}" if self.integration is not None else ""
        return f"Network({'; '.join(parts)}; {len(self.treatments)} treatments, ref={self.trt_ref!r}{integ})"


def _resolve_classes(frames: List[pd.DataFrame], treatments: List[Any], trt_classes: Optional[Mapping]) -> Optional[Dict]:
    """Merge class columns and an explicit class map into one total mapping."""
    classes: Dict[Any, Any] = {}
    errors = []

    for df in frames:
        if TRTCLASS in df.columns:
            for t, c in df[[TRT, TRTCLASS]].drop_duplicates().itertuples(index=False):
                if pd.isna(c):
                    continue
                if t in classes and classes[t] != c:
                    errors.append(f"treatment {t!r} assigned to classes {classes[t]!r} and {c!r}")
                classes.setdefault(t, c)

    if trt_classes is not None:
        for t, c in trt_classes.items():
            if t not in treatments:
                errors.append(f"trt_classes refers to treatment {t!r} not in the network")
                continue
            if t in classes and classes[t] != c:
                errors.append(f"treatment {t!r} assigned to classes {classes[t]!r} and {c!r}")
            classes[t] = c

    if errors:
        _ValidationResult(False, errors).raise_if_invalid(SchemaError, "Invalid treatment classes")

    if not classes:
        return None

    unassigned = [t for t in treatments if t not in classes]
    if unassigned:
        raise SchemaError(f"Treatment classes must be given for all treatments or none; missing for {unassigned}")

    return classes


def build_network(
    ipd: Union[None, DataSource, Sequence[DataSource]] = None,
    agd_arm: Union[None, DataSource, Sequence[DataSource]] = None,
    agd_contrast: Union[None, DataSource, Sequence[DataSource]] = None,
    trt_ref=None,
    trt_classes: Optional[Mapping] = None,
) -> Network:
    """Combine IPD and AgD sources into a validated ``Network``.

    Args:
        ipd: IPD source(s) from ``set_ipd``.
        agd_arm: Arm-based AgD source(s) from ``set_agd_arm``.
        agd_contrast: Contrast-based AgD source(s) from ``set_agd_contrast``.
        trt_ref: Network reference treatment. Defaults to the first
            treatment in sorted order (by class first when classes are used).
        trt_classes: Optional mapping treatment -> class.

    Returns:
        ``Network``.

    Raises:
        SchemaError: Duplicate arms, a study present in more than one
            source, codes differing only in case/whitespace, an unknown
            reference treatment, or incomplete treatment classes.
    """
    tables = {}
    outcome = {}
    for kind, value in (("ipd", ipd), ("agd_arm", agd_arm), ("agd_contrast", agd_contrast)):
        data, out = _combine(_as_source_list(value, kind), kind)
        tables[kind] = data
        if data is not None:
            outcome[kind] = out

    frames = [df for df in tables.values() if df is not None]
    if not frames:
        raise SchemaError("No data: provide at least one of ipd, agd_arm or agd_contrast")

    errors: List[str] = []

    study_kinds: Dict[Any, str] = {}
    for kind, df in tables.items():
        if df is None:
            continue
        for s in pd.unique(df[STUDY]):
            if s in study_kinds:
                errors.append(f"study {s!r} appears in both {study_kinds[s]} and {kind} data")
            study_kinds.setdefault(s, kind)
        if kind != "ipd":
            dup = df[df.duplicated([STUDY, TRT], keep=False)]
            for s, t in dup[[STUDY, TRT]].drop_duplicates().itertuples(index=False):
                errors.append(f"{kind}: study {s!r} has more than one row for treatment {t!r}")

    all_trts = pd.unique(pd.concat([df[TRT] for df in frames], ignore_index=True))
    errors.extend(_check_near_duplicates(all_trts, "treatment"))
    errors.extend(_check_near_duplicates(list(study_kinds), "study"))

    _ValidationResult(not errors, errors).raise_if_invalid(SchemaError, "Invalid network")

    treatments = sorted(all_trts, key=str)
    classes = _resolve_classes(frames, treatments, trt_classes)
    if classes is not None:
        treatments = sorted(treatments, key=lambda t: (str(classes[t]), str(t)))

    if trt_ref is not None:
        if trt_ref not in treatments:
            raise SchemaError(f"trt_ref {trt_ref!r} is not a treatment in the network. Available: {treatments}")
        treatments = [trt_ref] + [t for t in treatments if t != trt_ref]

    if classes is not None:
        for kind, df in tables.items():
            if df is not None:
                tables[kind] = df.assign(**{TRTCLASS: df[TRT].map(classes)})

    network = Network(
        ipd=tables["ipd"],
        agd_arm=tables["agd_arm"],
        agd_contrast=tables["agd_contrast"],
        treatments=list(treatments),
        classes=classes,
        outcome=outcome,
    )

    n_components = _count_components(network)
    if n_components > 1:
        warnings.warn(
            f"Treatment network is disconnected ({n_components} components); relative effects between components are not identified.",
            UserWarning,
            stacklevel=2,
        )

    return network


def _count_components(network: Network) -> int:
    """Number of connected components of the treatment graph."""
    arms = network.arms()
    k = len(network.treatments)
    idx = {t: i for i, t in enumerate(network.treatments)}
    rows, cols = [], []
    for _, study_arms in arms.groupby(STUDY, sort=False):
        trt_idx = [idx[t] for t in study_arms[TRT]]
        for a in trt_idx[1:]:
            rows.append(trt_idx[0])
            cols.append(a)
    graph = csr_matrix((np.ones(len(rows)), (rows, cols)), shape=(k, k))
    n_components, _ = connected_components(graph, directed=False)
    return int(n_components)
