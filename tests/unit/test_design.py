"""
Tests for design matrix construction and the parameter layout.
"""

import numpy as np
import pandas as pd
import pytest

from mlnmr import add_integration, build_network, distr, set_agd_arm, set_ipd
from mlnmr.core.design import MULTI_ARM_RE_COR, build_design
from mlnmr.core.likelihood import LogDensity, resolve_likelihood
from mlnmr.errors import DistributionError, IdentifiabilityError, SchemaError
from tests.config import N_INT_QUICK

FORMULA = "~ (male + age)*.trt"


def _theta(design, seed=0):
    return np.random.default_rng(seed).normal(0, 0.3, design.n_params)


class TestBuildDesign:
    def test_columns_and_layout(self, integrated_network):
        design = build_design(integrated_network, FORMULA)
        assert design.columns == ["male", "age", "male:.trtB", "age:.trtB"]
        assert design.mu_studies == ["IPD 1", "AgD 1"]
        assert design.param_names == [
            "mu[IPD 1]",
            "mu[AgD 1]",
            "d[B]",
            "beta[male]",
            "beta[age]",
            "beta[male:.trtB]",
            "beta[age:.trtB]",
        ]
        assert design.n_params == 7

    def test_block_sizes(self, integrated_network):
        design = build_design(integrated_network, FORMULA)
        assert len(design.blocks["ipd"]) == len(integrated_network.ipd)
        agd = design.blocks["agd_arm"]
        assert agd.n_arms == 2
        assert len(agd) == 2 * N_INT_QUICK
        np.testing.assert_allclose(np.bincount(agd.pos, weights=agd.weights), 1.0)

    def test_plugin_collapses_points(self, integrated_network):
        design = build_design(integrated_network, FORMULA, aggregate="plugin")
        agd = design.blocks["agd_arm"]
        assert len(agd) == agd.n_arms == 2
        integ = integrated_network.integration
        expected = integ.mean(("AgD 1", "B")) - design.xbar.to_numpy()
        np.testing.assert_allclose(agd.X[1, :2], expected)

    def test_centering_is_sample_size_weighted(self, integrated_network):
        design = build_design(integrated_network, "~ male + age")
        ipd = integrated_network.ipd
        integ = integrated_network.integration
        total = ipd[["male", "age"]].to_numpy().sum(axis=0)
        weight = len(ipd)
        for rec in integrated_network.agd_arm.to_dict("records"):
            total = total + rec["sample_size"] * integ.mean((rec["study"], rec["trt"]))
            weight += rec["sample_size"]
        np.testing.assert_allclose(design.xbar.to_numpy(), total / weight)

    def test_no_centering(self, integrated_network):
        design = build_design(integrated_network, FORMULA, center=False)
        np.testing.assert_array_equal(design.xbar.to_numpy(), 0.0)
        ipd = integrated_network.ipd
        np.testing.assert_allclose(design.blocks["ipd"].X[:, 1], ipd["age"].to_numpy())

    def test_interactions_only_for_non_reference_arms(self, integrated_network):
        design = build_design(integrated_network, FORMULA)
        block = design.blocks["ipd"]
        ref_rows = block.trt_idx == 0
        np.testing.assert_array_equal(block.X[ref_rows, 2:], 0.0)
        np.testing.assert_allclose(block.X[~ref_rows, 2:], block.X[~ref_rows, :2])

    def test_no_regression(self, network):
        design = build_design(network)
        assert design.n_reg == 0
        assert design.param_names == ["mu[IPD 1]", "mu[AgD 1]", "d[B]"]
        assert len(design.blocks["agd_arm"]) == 2

    def test_invalid_choice(self, integrated_network):
        with pytest.raises(ValueError, match="trt_effects"):
            build_design(integrated_network, FORMULA, trt_effects="mixed")

    def test_aggregate_data_need_points(self, network):
        with pytest.raises(DistributionError, match="add_integration"):
            build_design(network, "~ age")

    def test_covariate_missing_from_ipd(self, integrated_network):
        with pytest.raises(SchemaError, match="bmi"):
            build_design(integrated_network, "~ bmi")

    def test_covariate_without_points(self, network):
        net = add_integration(network, n_int=N_INT_QUICK, seed=1, age=distr("norm", mean="age_mean", sd="age_sd"))
        with pytest.raises(DistributionError, match="male"):
            build_design(net, "~ male + age")

    def test_trtclass_without_classes(self, integrated_network):
        with pytest.raises(SchemaError, match=".trtclass"):
            build_design(integrated_network, "~ age*.trtclass")


class TestLinearPredictor:
    def test_matches_manual_computation(self, integrated_network):
        design = build_design(integrated_network, FORMULA)
        theta = _theta(design, seed=3)
        p = design.unpack(theta, design.layout())
        assert p.d[0] == 0.0

        block = design.blocks["ipd"]
        ipd = integrated_network.ipd
        x = ipd[["male", "age"]].to_numpy() - design.xbar.to_numpy()
        is_b = (ipd["trt"] == "B").to_numpy()
        expected = theta[0] + theta[2] * is_b + x @ theta[3:5] + is_b * (x @ theta[5:7])
        np.testing.assert_allclose(design.linear_predictor(block, p), expected)

    def test_regression_matrix_matches_block(self, integrated_network):
        design = build_design(integrated_network, FORMULA)
        ipd = integrated_network.ipd
        block = design.blocks["ipd"]
        R = design.regression_matrix(ipd[["male", "age"]].to_numpy(), block.trt_idx)
        np.testing.assert_allclose(R, block.X)

    def test_full_matrix_shape(self, integrated_network):
        design = build_design(integrated_network, FORMULA)
        M = design.full_matrix()
        assert M.shape == (len(integrated_network.ipd) + 2 * N_INT_QUICK, len(design.feature_names))


class TestIdentifiability:
    def test_constant_covariate_aliased(self, ipd_data):
        net = build_network(ipd=set_ipd(ipd_data.assign(site=1.0), study="studyc", trt="trtc", r="y"))
        with pytest.raises(IdentifiabilityError) as exc:
            build_design(net, "~ age + site")
        assert exc.value.aliased == ["beta[site]"]

    def test_interaction_without_covariate_variation(self):
        rows = []
        for s in ("S1", "S2", "S3"):
            for t, r in (("A", 10), ("B", 15)):
                rows.append({"study": s, "trt": t, "r": r, "n": 50, "age_mean": 50.0, "age_sd": 5.0})
        net = build_network(agd_arm=set_agd_arm(pd.DataFrame(rows), study="study", trt="trt", r="r", n="n"))
        net = add_integration(net, cor=np.eye(1), n_int=N_INT_QUICK, seed=1, age=distr("norm", mean="age_mean", sd="age_sd"))
        with pytest.raises(IdentifiabilityError) as exc:
            build_design(net, "~ age*.trt")
        assert set(exc.value.aliased) == {"beta[age]", "beta[age:.trtB]"}

    def test_too_few_rows(self):
        rows = pd.DataFrame({"study": ["S1", "S1"], "trt": ["A", "B"], "r": [10, 15], "n": [50, 50], "age_mean": [50.0, 55.0], "age_sd": [5.0, 5.0]})
        net = build_network(agd_arm=set_agd_arm(rows, study="study", trt="trt", r="r", n="n"))
        net = add_integration(net, cor=np.eye(1), n_int=N_INT_QUICK, seed=1, age=distr("norm", mean="age_mean", sd="age_sd"))
        with pytest.raises(IdentifiabilityError, match="identifying rows"):
            build_design(net, "~ age*.trt")


class TestClassInteractions:
    def test_common(self, class_network):
        design = build_design(class_network, "~ age*.trt", class_interactions="common")
        assert design.columns == ["age", "age:.trtclassactive"]
        p = design.unpack(_theta(design), design.layout())
        np.testing.assert_array_equal(p.beta2[0], 0.0)
        np.testing.assert_array_equal(p.beta2[1], p.beta2[2])

    def test_independent(self, class_network):
        design = build_design(class_network, "~ age*.trt", class_interactions="independent")
        assert design.columns == ["age", "age:.trtB", "age:.trtC"]
        p = design.unpack(_theta(design), design.layout())
        assert p.beta2[1, 0] != p.beta2[2, 0]

    def test_exchangeable_layout(self, class_network):
        design = build_design(class_network, "~ age*.trt", class_interactions="exchangeable")
        layout = design.layout()
        assert layout.size("class_mean") == 1
        assert layout.size("log_class_sd") == 1
        assert layout.size("z_int") == 2
        theta = _theta(design, seed=4)
        p = design.unpack(theta, layout)
        z = layout.get(theta, "z_int")
        sd = np.exp(layout.get(theta, "log_class_sd"))[0]
        mean = layout.get(theta, "class_mean")[0]
        np.testing.assert_allclose(p.beta2[1:, 0], mean + sd * z)
        assert "class_sd[age]" in design.constrained(p)

    def test_trtclass_formula_forces_common(self, class_network):
        design = build_design(class_network, "~ age*.trtclass", class_interactions="independent")
        assert design.class_interactions == "common"

    def test_no_classes_falls_back_to_independent(self, three_trt_network):
        design = build_design(three_trt_network, "~ age*.trt", class_interactions="common")
        assert design.class_interactions == "independent"

    def test_exchangeable_with_qr_rejected(self, class_network):
        with pytest.raises(ValueError, match="QR"):
            build_design(class_network, "~ age*.trt", class_interactions="exchangeable", qr=True)


class TestQR:
    def test_log_density_invariant(self, integrated_network):
        lik = resolve_likelihood(integrated_network.outcome)
        plain = build_design(integrated_network, FORMULA)
        qr = build_design(integrated_network, FORMULA, qr=True)
        assert qr.uses_qr
        assert qr.param_names[3].startswith("beta_qr[")

        theta = _theta(plain, seed=5)
        layout = plain.layout()
        b = layout.get(theta, "beta")
        theta_qr = theta.copy()
        theta_qr[layout.slices["beta"]] = np.linalg.solve(qr.qr_R_inv, b)

        np.testing.assert_allclose(qr.unpack(theta_qr, qr.layout()).b, b, rtol=1e-8, atol=1e-10)
        assert LogDensity(qr, lik)(theta_qr) == pytest.approx(LogDensity(plain, lik)(theta), rel=1e-8)

    def test_r_factor_scaled(self, integrated_network):
        qr = build_design(integrated_network, FORMULA, qr=True)
        M = np.vstack([b.X for b in qr.blocks.values()])
        R = np.linalg.inv(qr.qr_R_inv)
        np.testing.assert_allclose(R.T @ R, M.T @ M / (M.shape[0] - 1), rtol=1e-8, atol=1e-8)


class TestRandomEffects:
    def test_layout_and_names(self, integrated_network):
        design = build_design(integrated_network, FORMULA, trt_effects="random")
        assert design.n_re == 2
        assert "log_tau" in design.param_names
        assert "z_delta[IPD 1: B]" in design.param_names
        p = design.unpack(_theta(design), design.layout())
        out = design.constrained(p)
        assert out["tau"] == pytest.approx(p.tau)
        assert "delta[AgD 1: B]" in out

    def test_baseline_arms_have_no_random_effect(self, integrated_network):
        design = build_design(integrated_network, FORMULA, trt_effects="random")
        p = design.unpack(_theta(design, seed=6), design.layout())
        np.testing.assert_array_equal(p.re[design.arms["baseline"].to_numpy()], 0.0)

    def test_multi_arm_correlation(self, class_network):
        design = build_design(class_network, "~ age", trt_effects="random")
        three_arm = [chol for (z_idx, rows), chol in design.re_studies if len(rows) == 2]
        assert len(three_arm) == 1
        cor = three_arm[0] @ three_arm[0].T
        np.testing.assert_allclose(cor, [[1.0, MULTI_ARM_RE_COR], [MULTI_ARM_RE_COR, 1.0]])
