"""
Shared pytest fixtures for mlnmr tests.
"""

import numpy as np
import pandas as pd
import pytest

from tests.config import N_INT_QUICK, SEED
from tests.helpers.simulate import simulate_agd, simulate_ipd


@pytest.fixture(scope="session")
def ipd_data():
    return simulate_ipd()


@pytest.fixture(scope="session")
def agd_data():
    return simulate_agd()


@pytest.fixture
def network(ipd_data, agd_data):
    """IPD (A vs B) plus arm-based AgD (A vs B), no integration points."""
    from mlnmr import build_network, set_agd_arm, set_ipd

    return build_network(
        ipd=set_ipd(ipd_data, study="studyc", trt="trtc", r="y"),
        agd_arm=set_agd_arm(agd_data, study="studyc", trt="trtc", r="r", n="n"),
        trt_ref="A",
    )


@pytest.fixture
def integrated_network(network):
    """``network`` with a small integration point set over male and age."""
    from mlnmr import add_integration, distr

    return add_integration(
        network,
        male=distr("bern", prob="male"),
        age=distr("norm", mean="age_mean", sd="age_sd"),
        n_int=N_INT_QUICK,
        seed=SEED,
    )


@pytest.fixture
def three_trt_network():
    """IPD (A vs B) plus AgD (A vs C) with integration points."""
    from mlnmr import add_integration, build_network, distr, set_agd_arm, set_ipd

    ipd = simulate_ipd(n=400)
    agd = simulate_agd(n_per_arm=5000, trts=("A", "C"), study="AgD 2")
    net = build_network(
        ipd=set_ipd(ipd, study="studyc", trt="trtc", r="y"),
        agd_arm=set_agd_arm(agd, study="studyc", trt="trtc", r="r", n="n"),
        trt_ref="A",
    )
    return add_integration(
        net,
        male=distr("bern", prob="male"),
        age=distr("norm", mean="age_mean", sd="age_sd"),
        n_int=N_INT_QUICK,
        seed=SEED,
    )


@pytest.fixture
def contrast_data():
    """Contrast-based AgD: a three-arm study (A, B, C) with baseline A."""
    return pd.DataFrame(
        {
            "studyc": ["Con 1"] * 3,
            "trtc": ["A", "B", "C"],
            "lor": [np.nan, -0.9, -0.4],
            "se": [0.1, 0.15, 0.2],
            "male": [0.5, 0.5, 0.5],
            "age_mean": [52.0, 52.0, 52.0],
            "age_sd": [7.0, 7.0, 7.0],
        }
    )


@pytest.fixture
def continuous_network():
    """IPD and AgD with a continuous outcome (identity link)."""
    from mlnmr import build_network, set_agd_arm, set_ipd

    rng = np.random.default_rng(SEED)
    n = 120
    x = rng.normal(0.0, 1.0, n)
    trt = np.where(np.arange(n) % 2 == 0, "A", "B")
    y = 1.0 + 0.5 * x - 0.8 * (trt == "B") + rng.normal(0, 1.0, n)
    ipd = pd.DataFrame({"studyc": "IPD c", "trtc": trt, "x": x, "y": y})
    agd = pd.DataFrame(
        {
            "studyc": ["AgD c", "AgD c"],
            "trtc": ["A", "B"],
            "y": [1.3, 0.5],
            "se": [0.05, 0.05],
            "x_mean": [0.6, 0.6],
            "x_sd": [1.0, 1.0],
        }
    )
    return build_network(
        ipd=set_ipd(ipd, study="studyc", trt="trtc", y="y"),
        agd_arm=set_agd_arm(agd, study="studyc", trt="trtc", y="y", se="se"),
        trt_ref="A",
    )


@pytest.fixture
def class_network():
    """IPD (A, B, C) plus AgD (A vs C); A is the control class, B and C are active."""
    from mlnmr import add_integration, build_network, distr, set_agd_arm, set_ipd

    ipd = simulate_ipd(n=300, trts=("A", "B", "C"))
    agd = simulate_agd(n_per_arm=2000, trts=("A", "C"), study="AgD 3")
    net = build_network(
        ipd=set_ipd(ipd, study="studyc", trt="trtc", r="y"),
        agd_arm=set_agd_arm(agd, study="studyc", trt="trtc", r="r", n="n"),
        trt_ref="A",
        trt_classes={"A": "control", "B": "active", "C": "active"},
    )
    return add_integration(
        net,
        male=distr("bern", prob="male"),
        age=distr("norm", mean="age_mean", sd="age_sd"),
        n_int=N_INT_QUICK,
        seed=SEED,
    )


@pytest.fixture(scope="session")
def bc_agd_data():
    """Arm-based AgD comparing B and C only, so its baseline arm is B."""
    return simulate_agd(trts=("B", "C"), study="AgD BC")


@pytest.fixture(scope="session")
def bc_network(ipd_data, bc_agd_data):
    """IPD (A vs B) plus AgD (B vs C) with integration points; reference A."""
    from mlnmr import add_integration, build_network, distr, set_agd_arm, set_ipd

    net = build_network(
        ipd=set_ipd(ipd_data, study="studyc", trt="trtc", r="y"),
        agd_arm=set_agd_arm(bc_agd_data, study="studyc", trt="trtc", r="r", n="n"),
        trt_ref="A",
    )
    return add_integration(
        net,
        male=distr("bern", prob="male"),
        age=distr("norm", mean="age_mean", sd="age_sd"),
        n_int=N_INT_QUICK,
        seed=SEED,
    )


@pytest.fixture
def contrast_network(ipd_data, contrast_data):
    """IPD (A vs B) plus the three-arm contrast study, with integration points."""
    from mlnmr import add_integration, build_network, distr, set_agd_contrast, set_ipd

    net = build_network(
        ipd=set_ipd(ipd_data, study="studyc", trt="trtc", r="y"),
        agd_contrast=set_agd_contrast(contrast_data, study="studyc", trt="trtc", y="lor", se="se"),
        trt_ref="A",
    )
    return add_integration(
        net,
        male=distr("bern", prob="male"),
        age=distr("norm", mean="age_mean", sd="age_sd"),
        n_int=N_INT_QUICK,
        seed=SEED,
    )
