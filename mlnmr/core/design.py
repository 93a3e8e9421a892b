"""
Design matrix construction for mlnmr.

Builds the individual-level linear predictor for every IPD row and every
integration point of every aggregate arm:

    eta = mu[study] + d[trt] - d[baseline trt] + delta_re[arm]
          + (x - xbar)' beta1 + (x - xbar)' beta2[trt]

The regression block holds covariate main effects and covariate by
treatment interaction columns. With shared class interactions all
treatments of a class use the same interaction column; treatments in the
reference treatment's class share the (zero) reference interaction.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy import linalg

from ..errors import DistributionError, IdentifiabilityError, SchemaError
from ..network import STUDY, TRT, Network
from ..utils.parsers import RegressionSpec, parse_regression
from ..utils.validators import _validate_choice

CLASS_INTERACTIONS = ("common", "independent", "exchangeable")
TRT_EFFECTS = ("fixed", "random")
AGGREGATE_MODES = ("integrate", "plugin")

# Correlation of random effects between arms of the same multi-arm study.
MULTI_ARM_RE_COR = 0.5


@dataclass
class DataBlock:
    """Rows of the design belonging to one data kind.

    For IPD each row is an individual. For aggregate data each row is an
    integration point and ``pos`` maps it to its arm within the block.
    """

    kind: str
    X: np.ndarray
    study_idx: np.ndarray
    trt_idx: np.ndarray
    base_idx: np.ndarray
    arm_idx: np.ndarray
    weights: np.ndarray
    pos: np.ndarray
    outcome: Dict[str, np.ndarray] = field(default_factory=dict)
    n_arms: int = 0

    def __len__(self):
        return self.X.shape[0]


@dataclass
class ContrastStudy:
    """Contrast-based study: arm positions in the contrast block and the covariance of its contrasts."""

    study: Any
    base_pos: int
    arm_pos: np.ndarray
    y: np.ndarray
    cov_inv: np.ndarray
    log_det: float


@dataclass
class ParameterLayout:
    """Ordered groups of the flat unconstrained parameter vector."""

    groups: List[Tuple[str, List[str]]]

    def __post_init__(self):
        self.slices: Dict[str, slice] = {}
        start = 0
        for name, names in self.groups:
            self.slices[name] = slice(start, start + len(names))
            start += len(names)
        self.n_params = start

    @property
    def names(self) -> List[str]:
        return [n for _, names in self.groups for n in names]

    def size(self, group: str) -> int:
        s = self.slices.get(group)
        return 0 if s is None else s.stop - s.start

    def get(self, theta: np.ndarray, group: str) -> np.ndarray:
        s = self.slices.get(group)
        return theta[s] if s is not None else np.empty(0)


@dataclass
class Params:
    """Constrained model quantities for one parameter vector."""

    mu: np.ndarray
    d: np.ndarray
    b: np.ndarray
    beta1: np.ndarray
    beta2: np.ndarray
    re: np.ndarray
    tau: Optional[float] = None
    sigma: np.ndarray = field(default_factory=lambda: np.empty(0))
    class_mean: np.ndarray = field(default_factory=lambda: np.empty(0))
    class_sd: np.ndarray = field(default_factory=lambda: np.empty(0))


@dataclass
class DesignMatrices:
    """Pre-bound design for repeated likelihood evaluation.

    Attributes:
        network: Source network.
        regression: Parsed regression specification.
        class_interactions: Effective interaction sharing mode.
        trt_effects: ``"fixed"`` or ``"random"``.
        treatments: Treatment codes, reference first.
        mu_studies: Studies with a study intercept (arm-based data).
        aux_studies: IPD studies (one residual sd each for Normal outcomes).
        arms: Global arm table (study, trt, kind, baseline).
        columns: Regression column names.
        xbar: Centering values per covariate.
        blocks: Data kind -> ``DataBlock``.
        contrasts: Contrast-based studies.
        qr_R_inv: Inverse of the scaled R factor when QR is used.
    """

    network: Network
    regression: RegressionSpec
    class_interactions: str
    trt_effects: str
    treatments: List[Any]
    mu_studies: List[Any]
    aux_studies: List[Any]
    arms: pd.DataFrame
    columns: List[str]
    xbar: pd.Series
    blocks: Dict[str, DataBlock]
    contrasts: List[ContrastStudy]
    groups: List[Any]
    group_of_trt: np.ndarray
    class_of_trt: np.ndarray
    class_levels: List[Any]
    re_studies: List[Tuple[np.ndarray, np.ndarray]]
    qr_R_inv: Optional[np.ndarray] = None
    aggregate: str = "integrate"
    parts: tuple = ()

    @property
    def n_trt(self) -> int:
        return len(self.treatments)

    @property
    def n_main(self) -> int:
        return len(self.regression.prognostic)

    @property
    def n_em(self) -> int:
        return len(self.regression.effect_modifiers)

    @property
    def n_reg(self) -> int:
        return len(self.columns)

    @property
    def n_re(self) -> int:
        return int((~self.arms["baseline"]).sum()) if self.trt_effects == "random" else 0

    @property
    def uses_qr(self) -> bool:
        return self.qr_R_inv is not None

    @property
    def has_aux(self) -> bool:
        """Continuous IPD carry one residual sd per study."""
        return self.network.outcome.get("ipd") == "continuous"

    @property
    def param_names(self) -> List[str]:
        return self.layout(self.has_aux).names

    @property
    def n_params(self) -> int:
        return self.layout(self.has_aux).n_params

    def _em_labels(self, levels, token) -> List[str]:
        return [f"{e}:{token}{g}" for g in levels for e in self.regression.effect_modifiers]

    def layout(self, aux: bool = False) -> ParameterLayout:
        """Parameter layout; ``aux`` adds one log residual sd per IPD study."""
        groups = [
            ("mu", [f"mu[{s}]" for s in self.mu_studies]),
            ("d", [f"d[{t}]" for t in self.treatments[1:]]),
        ]
        beta_name = "beta_qr" if self.uses_qr else "beta"
        if self.class_interactions == "exchangeable":
            nonref_classes = [c for c in self.class_levels if c != self.class_levels[self.class_of_trt[0]]]
            groups.append((beta_name, [f"{beta_name}[{c}]" for c in self.columns[: self.n_main]]))
            groups.append(("class_mean", [f"class_mean[{n}]" for n in self._em_labels(nonref_classes, ".trtclass")]))
            groups.append(("log_class_sd", [f"log_class_sd[{e}]" for e in self.regression.effect_modifiers]))
            groups.append(("z_int", [f"z_int[{n}]" for n in self._em_labels(self.treatments[1:], ".trt")]))
        else:
            groups.append((beta_name, [f"{beta_name}[{c}]" for c in self.columns]))
        if self.trt_effects == "random":
            non_base = self.arms[~self.arms["baseline"]]
            groups.append(("log_tau", ["log_tau"]))
            groups.append(("z_delta", [f"z_delta[{s}: {t}]" for s, t in zip(non_base[STUDY], non_base[TRT])]))
        if aux:
            groups.append(("log_sigma", [f"log_sigma[{s}]" for s in self.aux_studies]))
        return ParameterLayout(groups)

    def unpack(self, theta: np.ndarray, layout: ParameterLayout) -> Params:
        """Map a flat unconstrained vector to constrained model quantities."""
        theta = np.asarray(theta, dtype=float)
        mu = layout.get(theta, "mu")
        d = np.concatenate([[0.0], layout.get(theta, "d")])
        beta_block = layout.get(theta, "beta_qr" if self.uses_qr else "beta")

        class_mean = class_sd = np.empty(0)
        if self.class_interactions == "exchangeable":
            n_em = self.n_em
            class_sd = np.exp(layout.get(theta, "log_class_sd"))
            z_int = layout.get(theta, "z_int").reshape(self.n_trt - 1, n_em)
            means = np.zeros((len(self.class_levels), n_em))
            ref_class = self.class_of_trt[0]
            nonref = [i for i in range(len(self.class_levels)) if i != ref_class]
            class_mean = layout.get(theta, "class_mean")
            if nonref:
                means[nonref] = class_mean.reshape(len(nonref), n_em)
            em_coefs = means[self.class_of_trt[1:]] + class_sd * z_int
            b = np.concatenate([beta_block, em_coefs.ravel()])
        elif self.uses_qr:
            b = self.qr_R_inv @ beta_block
        else:
            b = beta_block

        beta1 = b[: self.n_main]
        beta2 = self._beta2_from_b(b)

        re = np.zeros(len(self.arms))
        tau = None
        if self.trt_effects == "random":
            tau = float(np.exp(layout.get(theta, "log_tau")[0]))
            z = layout.get(theta, "z_delta")
            for (z_idx, rows), chol in self.re_studies:
                re[rows] = tau * (chol @ z[z_idx])

        sigma = np.exp(layout.get(theta, "log_sigma"))
        return Params(mu=mu, d=d, b=b, beta1=beta1, beta2=beta2, re=re, tau=tau, sigma=sigma, class_mean=class_mean, class_sd=class_sd)

    def constrained(self, p: Params) -> Dict[str, float]:
        """Named constrained quantities: ``mu``, ``d``, ``beta``, ``tau``, study-specific ``delta``, ``sigma``."""
        out: Dict[str, float] = {}
        for s, v in zip(self.mu_studies, p.mu):
            out[f"mu[{s}]"] = v
        for t, v in zip(self.treatments[1:], p.d[1:]):
            out[f"d[{t}]"] = v
        for c, v in zip(self.columns, p.b):
            out[f"beta[{c}]"] = v
        if self.class_interactions == "exchangeable":
            for e, v in zip(self.regression.effect_modifiers, p.class_sd):
                out[f"class_sd[{e}]"] = v
        if p.tau is not None:
            out["tau"] = p.tau
            trt_pos = {t: i for i, t in enumerate(self.treatments)}
            base = dict(zip(self.arms.loc[self.arms["baseline"], STUDY], self.arms.loc[self.arms["baseline"], TRT]))
            for i, (s, t, is_base) in enumerate(zip(self.arms[STUDY], self.arms[TRT], self.arms["baseline"])):
                if not is_base:
                    out[f"delta[{s}: {t}]"] = p.d[trt_pos[t]] - p.d[trt_pos[base[s]]] + p.re[i]
        for s, v in zip(self.aux_studies, p.sigma):
            out[f"sigma[{s}]"] = v
        return out

    def _beta2_from_b(self, b: np.ndarray) -> np.ndarray:
        """Per-treatment interaction coefficients ``(n_trt, n_em)``; reference row is zero."""
        n_em = self.n_em
        beta2 = np.zeros((self.n_trt, n_em))
        if n_em == 0:
            return beta2
        em = b[self.n_main :].reshape(len(self.groups), n_em)
        has_group = self.group_of_trt >= 0
        beta2[has_group] = em[self.group_of_trt[has_group]]
        return beta2

    def linear_predictor(self, block: DataBlock, p: Params) -> np.ndarray:
        """Individual-level linear predictor for every row of *block*."""
        mu = np.append(p.mu, 0.0)
        eta = mu[block.study_idx] + p.d[block.trt_idx] - p.d[block.base_idx] + p.re[block.arm_idx]
        if self.n_reg:
            eta = eta + block.X @ p.b
        return eta

    def regression_matrix(self, values: np.ndarray, trt_idx: np.ndarray) -> np.ndarray:
        """Regression rows for raw covariate *values* (columns in ``regression.covariates`` order)."""
        values = np.atleast_2d(np.asarray(values, dtype=float))
        if not self.n_reg:
            return np.empty((values.shape[0], 0))
        return _regression_rows(values - self.xbar.to_numpy(), np.broadcast_to(trt_idx, values.shape[:1]), self.parts)

    def full_matrix(self, kind: Optional[str] = None) -> np.ndarray:
        """Stacked feature matrix ``[study intercepts | treatment | regression]`` of the likelihood rows."""
        mats = []
        for k, block in self.blocks.items():
            if kind is not None and k != kind:
                continue
            mats.append(self._feature_rows(block.study_idx, block.trt_idx, block.base_idx, block.X))
        return np.vstack(mats) if mats else np.empty((0, len(self.mu_studies) + self.n_trt - 1 + self.n_reg))

    def _feature_rows(self, study_idx, trt_idx, base_idx, X) -> np.ndarray:
        n = len(study_idx)
        n_mu = len(self.mu_studies)
        M_mu = np.zeros((n, n_mu + 1))
        M_mu[np.arange(n), study_idx] = 1.0
        M_trt = np.zeros((n, self.n_trt))
        M_trt[np.arange(n), trt_idx] += 1.0
        M_trt[np.arange(n), base_idx] -= 1.0
        return np.hstack([M_mu[:, :n_mu], M_trt[:, 1:], X])

    @property
    def feature_names(self) -> List[str]:
        return [f"mu[{s}]" for s in self.mu_studies] + [f"d[{t}]" for t in self.treatments[1:]] + [f"beta[{c}]" for c in self.columns]


def _centering(network: Network, covariates: List[str]) -> pd.Series:
    """Sample-size weighted mean of each covariate over IPD individuals and aggregate arms."""
    if not covariates:
        return pd.Series(dtype=float)
    total = np.zeros(len(covariates))
    weight = 0.0
    if network.has_ipd:
        X = network.ipd[covariates].to_numpy(dtype=float)
        total += X.sum(axis=0)
        weight += X.shape[0]
    integ = network.integration
    if integ is not None:
        cols = [integ.covariates.index(c) for c in covariates]
        for rec in network.aggregate_arms().to_dict("records"):
            key = (rec[STUDY], rec[TRT])
            w = rec.get("sample_size", np.nan)
            if w is None or not np.isfinite(w):
                w = rec.get("n", np.nan)
            if w is None or not np.isfinite(w):
                w = 1.0
            total += float(w) * integ.mean(key)[cols]
            weight += float(w)
    return pd.Series(total / max(weight, 1.0), index=covariates)


def _interaction_groups(network: Network, mode: str) -> Tuple[List[Any], np.ndarray, np.ndarray, List[Any]]:
    """Interaction groups and the group index of each treatment (-1 = shares the reference's zero)."""
    treatments = network.treatments
    if network.classes is not None:
        class_levels = list(dict.fromkeys(network.classes[t] for t in treatments))
        class_of_trt = np.array([class_levels.index(network.classes[t]) for t in treatments])
    else:
        class_levels = list(treatments)
        class_of_trt = np.arange(len(treatments))

    if mode == "common":
        ref_class = class_levels[class_of_trt[0]]
        groups = [c for c in class_levels if c != ref_class]
        group_of_trt = np.array([-1 if class_levels[c] == ref_class else groups.index(class_levels[c]) for c in class_of_trt])
    else:
        groups = list(treatments[1:])
        group_of_trt = np.arange(-1, len(treatments) - 1)
    return groups, group_of_trt, class_of_trt, class_levels


def _regression_rows(values: np.ndarray, trt_idx: np.ndarray, design_parts) -> np.ndarray:
    """Regression block rows for covariate matrix *values* (already centred)."""
    main_cols, em_cols, n_groups, group_of_trt = design_parts
    n = values.shape[0]
    blocks = [values[:, main_cols]]
    if em_cols:
        em = values[:, em_cols]
        inter = np.zeros((n, n_groups, len(em_cols)))
        g = group_of_trt[trt_idx]
        has = g >= 0
        inter[np.nonzero(has)[0], g[has], :] = em[has]
        blocks.append(inter.reshape(n, -1))
    return np.hstack(blocks)


def _re_structure(arms: pd.DataFrame) -> List[Tuple[np.ndarray, np.ndarray]]:
    """Per-study (z positions, arm rows) and Cholesky factor of the multi-arm random-effects correlation."""
    out = []
    non_base = arms.index[~arms["baseline"].to_numpy()]
    z_pos = {arm: i for i, arm in enumerate(non_base)}
    for _, study_arms in arms.groupby(STUDY, sort=False):
        rows = [i for i in study_arms.index if i in z_pos]
        if not rows:
            continue
        m = len(rows)
        cor = np.full((m, m), MULTI_ARM_RE_COR) + (1 - MULTI_ARM_RE_COR) * np.eye(m)
        out.append(((np.array([z_pos[i] for i in rows]), np.array(rows)), np.linalg.cholesky(cor)))
    return out


def _check_rank(design: DesignMatrices, mean_rows: List[np.ndarray], exclude_em: bool):
    """Raise ``IdentifiabilityError`` if the arm-level design is rank deficient."""
    M = np.vstack(mean_rows)
    names = design.feature_names
    if exclude_em and design.n_em:
        keep = len(names) - (design.n_reg - design.n_main)
        M = M[:, :keep]
        names = names[:keep]
    if M.shape[1] == 0:
        return
    if M.shape[0] < M.shape[1]:
        raise IdentifiabilityError(
            f"Design has {M.shape[1]} free parameters but only {M.shape[0]} identifying rows; reduce the regression terms.",
            names,
        )
    _, R, piv = linalg.qr(M, mode="economic", pivoting=True)
    diag = np.abs(np.diag(R))
    tol = max(M.shape) * np.finfo(float).eps * (diag[0] if diag.size else 0.0) * 1e3
    rank = int(np.sum(diag > tol))
    if rank < M.shape[1]:
        aliased = [names[i] for i in piv[rank:]]
        raise IdentifiabilityError(
            f"Design matrix is rank deficient (rank {rank} < {M.shape[1]} parameters); not identifiable: {', '.join(aliased)}",
            aliased,
        )


def build_design(
    network: Network,
    regression: Union[None, str, RegressionSpec] = None,
    class_interactions: str = "common",
    trt_effects: str = "fixed",
    center: bool = True,
    qr: bool = False,
    aggregate: str = "integrate",
) -> DesignMatrices:
    """Build the design matrices for a network and regression.

    Args:
        network: ``Network``; aggregate data need integration points for
            every regression covariate.
        regression: Formula string (see ``parse_regression``) or
            ``RegressionSpec``. ``None`` fits a plain NMA.
        class_interactions: ``"common"``, ``"independent"`` or
            ``"exchangeable"``. Without treatment classes every mode
            behaves as ``"independent"``.
        trt_effects: ``"fixed"`` or ``"random"``.
        center: Centre covariates at their network mean.
        qr: Reparameterise the regression coefficients through a scaled
            thin QR decomposition of the regression columns.
        aggregate: ``"integrate"`` averages over integration points;
            ``"plugin"`` evaluates each arm at its mean covariate vector.

    Returns:
        ``DesignMatrices``.

    Raises:
        SchemaError: Covariates missing from the IPD.
        DistributionError: Aggregate data lack integration points for a covariate.
        IdentifiabilityError: The design is rank deficient.
    """
    for value, name, choices in (
        (class_interactions, "class_interactions", CLASS_INTERACTIONS),
        (trt_effects, "trt_effects", TRT_EFFECTS),
        (aggregate, "aggregate", AGGREGATE_MODES),
    ):
        _validate_choice(value, name, choices).raise_if_invalid(ValueError)

    if regression is None:
        spec = RegressionSpec()
    elif isinstance(regression, str):
        spec = parse_regression(regression)
    else:
        spec = regression
    if spec.by_class:
        if network.classes is None:
            raise SchemaError("Regression uses .trtclass but the network has no treatment classes")
        class_interactions = "common"
    if network.classes is None or not spec.effect_modifiers:
        class_interactions = "independent"
    if qr and class_interactions == "exchangeable":
        raise ValueError("QR decomposition cannot be combined with exchangeable class interactions")

    covariates = spec.covariates
    if network.has_ipd:
        missing = [c for c in covariates if c not in network.ipd.columns]
        if missing:
            raise SchemaError(f"Regression covariate(s) {missing} not found in the IPD")
    integ = network.integration
    if covariates and network.has_agd:
        if integ is None:
            raise DistributionError("Aggregate data need integration points for the regression covariates; call add_integration() first")
        missing = [c for c in covariates if c not in integ.covariates]
        if missing:
            raise DistributionError(f"No integration points for covariate(s) {missing}; include them in add_integration()")

    treatments = list(network.treatments)
    trt_pos = {t: i for i, t in enumerate(treatments)}
    arms = network.arms()
    arm_pos = {(s, t): i for i, (s, t) in enumerate(zip(arms[STUDY], arms[TRT]))}
    base_of = {s: t for s, t, b in zip(arms[STUDY], arms[TRT], arms["baseline"]) if b}

    mu_studies = [s for s, k in zip(arms[STUDY], arms["kind"]) if k in ("ipd", "agd_arm")]
    mu_studies = list(dict.fromkeys(mu_studies))
    mu_pos = {s: i for i, s in enumerate(mu_studies)}
    no_mu = len(mu_studies)
    aux_studies = list(pd.unique(network.ipd[STUDY])) if network.has_ipd else []

    xbar = _centering(network, covariates) if center else pd.Series(0.0, index=covariates)
    groups, group_of_trt, class_of_trt, class_levels = _interaction_groups(network, class_interactions)
    em = spec.effect_modifiers
    columns = list(spec.prognostic) + [f"{e}:{'.trtclass' if class_interactions == 'common' and network.classes else '.trt'}{g}" for g in groups for e in em]
    design_parts = ([covariates.index(c) for c in spec.prognostic], [covariates.index(c) for c in em], len(groups), group_of_trt)

    def covariate_values(rows: np.ndarray) -> np.ndarray:
        return rows - xbar.to_numpy()

    blocks: Dict[str, DataBlock] = {}
    mean_rows: List[np.ndarray] = []
    cov_cols = [integ.covariates.index(c) for c in covariates] if (covariates and integ is not None) else []

    design = DesignMatrices(
        network=network,
        regression=spec,
        class_interactions=class_interactions,
        trt_effects=trt_effects,
        treatments=treatments,
        mu_studies=mu_studies,
        aux_studies=aux_studies,
        arms=arms,
        columns=columns,
        xbar=xbar,
        blocks=blocks,
        contrasts=[],
        groups=groups,
        group_of_trt=group_of_trt,
        class_of_trt=class_of_trt,
        class_levels=class_levels,
        re_studies=_re_structure(arms) if trt_effects == "random" else [],
        aggregate=aggregate,
        parts=design_parts,
    )

    if network.has_ipd:
        ipd = network.ipd
        trt_idx = ipd[TRT].map(trt_pos).to_numpy()
        values = covariate_values(ipd[covariates].to_numpy(dtype=float)) if covariates else np.empty((len(ipd), 0))
        if np.isnan(values).any():
            raise SchemaError("IPD regression covariates contain missing values")
        X = _regression_rows(values, trt_idx, design_parts) if covariates else np.empty((len(ipd), 0))
        aux_pos = {s: i for i, s in enumerate(aux_studies)}
        outcome = {c: ipd[c].to_numpy(dtype=float) for c in ("r", "y", "E") if c in ipd.columns}
        outcome["aux_idx"] = ipd[STUDY].map(aux_pos).to_numpy()
        block = DataBlock(
            kind="ipd",
            X=X,
            study_idx=ipd[STUDY].map(mu_pos).to_numpy(),
            trt_idx=trt_idx,
            base_idx=ipd[STUDY].map(base_of).map(trt_pos).to_numpy(),
            arm_idx=np.array([arm_pos[(s, t)] for s, t in zip(ipd[STUDY], ipd[TRT])]),
            weights=np.ones(len(ipd)),
            pos=np.arange(len(ipd)),
            outcome=outcome,
            n_arms=len(ipd),
        )
        blocks["ipd"] = block
        mean_rows.append(design._feature_rows(block.study_idx, block.trt_idx, block.base_idx, block.X))

    for kind in ("agd_arm", "agd_contrast"):
        df = getattr(network, kind)
        if df is None or len(df) == 0:
            continue
        parts = {k: [] for k in ("X", "study_idx", "trt_idx", "base_idx", "arm_idx", "weights", "pos")}
        arm_means = []
        for j, rec in enumerate(df.to_dict("records")):
            s, t = rec[STUDY], rec[TRT]
            if covariates:
                pts = integ.points[(s, t)][:, cov_cols]
                w = integ.weights
                if aggregate == "plugin":
                    pts = (w @ pts)[None, :]
                    w = np.ones(1)
                values = covariate_values(pts)
            else:
                values = np.empty((1, 0))
                w = np.ones(1)
            n = values.shape[0]
            ti = np.full(n, trt_pos[t])
            X = _regression_rows(values, ti, design_parts) if covariates else np.empty((n, 0))
            parts["X"].append(X)
            parts["study_idx"].append(np.full(n, mu_pos.get(s, no_mu) if kind == "agd_arm" else no_mu))
            parts["trt_idx"].append(ti)
            parts["base_idx"].append(np.full(n, trt_pos[base_of[s]]))
            parts["arm_idx"].append(np.full(n, arm_pos[(s, t)]))
            parts["weights"].append(w)
            parts["pos"].append(np.full(n, j))
            arm_means.append(w @ X if X.shape[1] else np.empty(0))

        block = DataBlock(kind=kind, n_arms=len(df), **{k: np.concatenate(v) if k != "X" else np.vstack(v) for k, v in parts.items()})
        block.outcome = {c: pd.to_numeric(df[c], errors="coerce").to_numpy(dtype=float) for c in ("r", "n", "y", "se", "E") if c in df.columns}
        blocks[kind] = block

        study_idx = np.array([mu_pos.get(s, no_mu) if kind == "agd_arm" else no_mu for s in df[STUDY]])
        trt_idx = df[TRT].map(trt_pos).to_numpy()
        base_idx = df[STUDY].map(base_of).map(trt_pos).to_numpy()
        means = np.vstack(arm_means) if covariates else np.empty((len(df), 0))
        rows = design._feature_rows(study_idx, trt_idx, base_idx, means)

        if kind == "agd_arm":
            mean_rows.append(rows)
        else:
            for s, idx in df.groupby(STUDY, sort=False).indices.items():
                y = block.outcome["y"][idx]
                base = idx[np.isnan(y)][0]
                others = idx[~np.isnan(y)]
                mean_rows.append(rows[others] - rows[base])
                se = block.outcome["se"]
                cov = np.diag(se[others] ** 2)
                if np.isfinite(se[base]):
                    cov = cov + se[base] ** 2 * (1 - np.eye(len(others)))
                design.contrasts.append(
                    ContrastStudy(
                        study=s,
                        base_pos=int(base),
                        arm_pos=others,
                        y=y[~np.isnan(y)],
                        cov_inv=np.linalg.inv(cov),
                        log_det=float(np.linalg.slogdet(cov)[1]),
                    )
                )

    _check_rank(design, mean_rows, exclude_em=class_interactions == "exchangeable")

    if qr and design.n_reg:
        M = np.vstack([b.X for b in blocks.values()])
        R = np.linalg.qr(M, mode="r")
        R = R / np.sqrt(max(M.shape[0] - 1, 1))
        design.qr_R_inv = linalg.solve_triangular(R, np.eye(R.shape[0]))

    return design
