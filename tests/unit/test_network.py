"""
Tests for data source declaration and network construction.
"""

import numpy as np
import pandas as pd
import pytest

from mlnmr import build_network, set_agd_arm, set_agd_contrast, set_ipd
from mlnmr.errors import SchemaError


@pytest.fixture
def ipd():
    return pd.DataFrame({"s": ["I1"] * 4, "t": ["A", "B", "A", "B"], "y": [0, 1, 1, 0], "age": [40.0, 50.0, 60.0, 45.0]})


@pytest.fixture
def agd():
    return pd.DataFrame({"s": ["G1", "G1"], "t": ["A", "C"], "r": [5, 9], "n": [20, 25], "age_mean": [50.0, 52.0]})


class TestSetIpd:
    def test_standard_columns(self, ipd):
        src = set_ipd(ipd, study="s", trt="t", r="y")
        assert src.kind == "ipd"
        assert src.outcome == "binary"
        assert list(src.data.columns) == ["study", "trt", "r", "age"]

    def test_original_table_untouched(self, ipd):
        set_ipd(ipd, study="s", trt="t", r="y")
        assert list(ipd.columns) == ["s", "t", "y", "age"]

    def test_continuous_outcome(self, ipd):
        assert set_ipd(ipd.assign(y=ipd["age"] / 10), study="s", trt="t", y="y").outcome == "continuous"

    def test_rate_outcome(self, ipd):
        src = set_ipd(ipd.assign(time=2.0), study="s", trt="t", r="y", E="time")
        assert src.outcome == "rate"

    def test_exactly_one_outcome(self, ipd):
        with pytest.raises(SchemaError, match="exactly one outcome"):
            set_ipd(ipd, study="s", trt="t")
        with pytest.raises(SchemaError, match="exactly one outcome"):
            set_ipd(ipd, study="s", trt="t", r="y", y="age")

    def test_missing_column(self, ipd):
        with pytest.raises(SchemaError, match="'outcome' not found"):
            set_ipd(ipd, study="s", trt="t", r="outcome")

    def test_non_binary_outcome(self, ipd):
        with pytest.raises(SchemaError, match="binary"):
            set_ipd(ipd.assign(y=[0, 1, 2, 1]), study="s", trt="t", r="y")

    def test_missing_study_code(self, ipd):
        bad = ipd.copy()
        bad.loc[0, "s"] = None
        with pytest.raises(SchemaError, match="missing values"):
            set_ipd(bad, study="s", trt="t", r="y")

    def test_clashing_column_name(self, ipd):
        with pytest.raises(SchemaError, match="clash"):
            set_ipd(ipd.assign(trt="x"), study="s", trt="t", r="y")

    def test_not_a_dataframe(self):
        with pytest.raises(SchemaError, match="DataFrame"):
            set_ipd({"s": [1]}, study="s", trt="t", r="y")


class TestSetAgdArm:
    def test_count_outcome_defaults_sample_size(self, agd):
        src = set_agd_arm(agd, study="s", trt="t", r="r", n="n")
        assert src.outcome == "count"
        np.testing.assert_array_equal(src.data["sample_size"], [20, 25])

    def test_continuous_outcome(self):
        df = pd.DataFrame({"s": ["G"], "t": ["A"], "m": [1.2], "se": [0.1]})
        assert set_agd_arm(df, study="s", trt="t", y="m", se="se").outcome == "continuous"

    def test_incomplete_outcome(self, agd):
        with pytest.raises(SchemaError, match="specify r and n"):
            set_agd_arm(agd, study="s", trt="t", r="r")

    def test_events_exceed_total(self, agd):
        with pytest.raises(SchemaError, match="must not exceed n"):
            set_agd_arm(agd.assign(r=[30, 9]), study="s", trt="t", r="r", n="n")

    def test_negative_counts(self, agd):
        with pytest.raises(SchemaError, match="non-negative integers"):
            set_agd_arm(agd.assign(r=[-1, 9]), study="s", trt="t", r="r", n="n")

    def test_non_positive_se(self):
        df = pd.DataFrame({"s": ["G"], "t": ["A"], "m": [1.2], "se": [0.0]})
        with pytest.raises(SchemaError, match="positive"):
            set_agd_arm(df, study="s", trt="t", y="m", se="se")


class TestSetAgdContrast:
    def test_one_baseline_per_study(self):
        df = pd.DataFrame({"s": ["C1", "C1", "C1"], "t": ["A", "B", "C"], "d": [np.nan, np.nan, 0.2], "se": [0.1, 0.2, 0.2]})
        with pytest.raises(SchemaError, match="exactly one baseline"):
            set_agd_contrast(df, study="s", trt="t", y="d", se="se")

    def test_contrast_se_required(self):
        df = pd.DataFrame({"s": ["C1", "C1"], "t": ["A", "B"], "d": [np.nan, 0.2], "se": [np.nan, np.nan]})
        with pytest.raises(SchemaError, match="se must be positive"):
            set_agd_contrast(df, study="s", trt="t", y="d", se="se")

    def test_valid(self, contrast_data):
        src = set_agd_contrast(contrast_data, study="studyc", trt="trtc", y="lor", se="se")
        assert src.outcome == "contrast"


class TestBuildNetwork:
    def test_treatment_order_and_reference(self, ipd, agd):
        net = build_network(ipd=set_ipd(ipd, study="s", trt="t", r="y"), agd_arm=set_agd_arm(agd, study="s", trt="t", r="r", n="n"))
        assert net.treatments == ["A", "B", "C"]
        assert net.trt_ref == "A"
        assert net.studies == ["I1", "G1"]
        assert net.outcome == {"ipd": "binary", "agd_arm": "count"}
        assert net.has_ipd and net.has_agd

    def test_explicit_reference(self, ipd, agd):
        net = build_network(
            ipd=set_ipd(ipd, study="s", trt="t", r="y"),
            agd_arm=set_agd_arm(agd, study="s", trt="t", r="r", n="n"),
            trt_ref="C",
        )
        assert net.treatments == ["C", "A", "B"]

    def test_unknown_reference(self, ipd):
        with pytest.raises(SchemaError, match="trt_ref"):
            build_network(ipd=set_ipd(ipd, study="s", trt="t", r="y"), trt_ref="Z")

    def test_arms_and_baselines(self, ipd, agd):
        net = build_network(ipd=set_ipd(ipd, study="s", trt="t", r="y"), agd_arm=set_agd_arm(agd, study="s", trt="t", r="r", n="n"))
        arms = net.arms()
        assert list(arms.columns) == ["study", "trt", "kind", "baseline"]
        assert arms.loc[arms["baseline"], "trt"].tolist() == ["A", "A"]
        assert net.study_kind("G1") == "agd_arm"
        with pytest.raises(KeyError):
            net.study_kind("nope")

    def test_contrast_baseline_is_missing_row(self, contrast_data):
        src = set_agd_contrast(contrast_data.assign(lor=[0.3, np.nan, 0.4]), study="studyc", trt="trtc", y="lor", se="se")
        arms = build_network(agd_contrast=src).arms()
        assert arms.loc[arms["baseline"], "trt"].tolist() == ["B"]

    def test_study_in_two_sources(self, ipd, agd):
        with pytest.raises(SchemaError, match="appears in both"):
            build_network(
                ipd=set_ipd(ipd, study="s", trt="t", r="y"),
                agd_arm=set_agd_arm(agd.assign(s="I1"), study="s", trt="t", r="r", n="n"),
            )

    def test_duplicate_arm(self, agd):
        dup = pd.concat([agd, agd.iloc[[0]]], ignore_index=True)
        with pytest.raises(SchemaError, match="more than one row"):
            build_network(agd_arm=set_agd_arm(dup, study="s", trt="t", r="r", n="n"))

    def test_case_near_duplicates(self, ipd, agd):
        with pytest.raises(SchemaError, match="differ only by case"):
            build_network(
                ipd=set_ipd(ipd, study="s", trt="t", r="y"),
                agd_arm=set_agd_arm(agd.assign(t=["a", "C"]), study="s", trt="t", r="r", n="n"),
            )

    def test_mixed_outcome_types(self, ipd):
        cont = set_ipd(ipd.assign(s="I2", y=ipd["age"]), study="s", trt="t", y="y")
        with pytest.raises(SchemaError, match="same outcome type"):
            build_network(ipd=[set_ipd(ipd, study="s", trt="t", r="y"), cont])

    def test_wrong_source_kind(self, ipd):
        with pytest.raises(SchemaError, match="set_agd_arm"):
            build_network(agd_arm=set_ipd(ipd, study="s", trt="t", r="y"))

    def test_empty(self):
        with pytest.raises(SchemaError, match="No data"):
            build_network()

    def test_disconnected_warns(self, ipd):
        other = pd.DataFrame({"s": ["G2", "G2"], "t": ["X", "Y"], "r": [1, 2], "n": [10, 10]})
        with pytest.warns(UserWarning, match="disconnected"):
            build_network(ipd=set_ipd(ipd, study="s", trt="t", r="y"), agd_arm=set_agd_arm(other, study="s", trt="t", r="r", n="n"))

    def test_classes_from_mapping(self, ipd, agd):
        net = build_network(
            ipd=set_ipd(ipd, study="s", trt="t", r="y"),
            agd_arm=set_agd_arm(agd, study="s", trt="t", r="r", n="n"),
            trt_classes={"A": "placebo", "B": "active", "C": "active"},
        )
        assert net.classes == {"A": "placebo", "B": "active", "C": "active"}
        assert "trtclass" in net.ipd.columns

    def test_incomplete_classes(self, ipd, agd):
        with pytest.raises(SchemaError, match="all treatments or none"):
            build_network(
                ipd=set_ipd(ipd, study="s", trt="t", r="y"),
                agd_arm=set_agd_arm(agd, study="s", trt="t", r="r", n="n"),
                trt_classes={"A": "placebo", "B": "active"},
            )

    def test_conflicting_classes(self, ipd):
        src = set_ipd(ipd.assign(cls=["p", "x", "q", "x"]), study="s", trt="t", r="y", trt_class="cls")
        with pytest.raises(SchemaError, match="assigned to classes"):
            build_network(ipd=src)

    def test_replace_returns_copy(self, ipd):
        net = build_network(ipd=set_ipd(ipd, study="s", trt="t", r="y"))
        other = net.replace(int_cor=np.eye(1))
        assert net.int_cor is None
        assert other.int_cor is not None
        assert "1 studies" in repr(net)
