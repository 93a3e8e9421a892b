"""
Target Population Example
=========================

Predict event probabilities and treatment rankings in a population that
was not part of the network, described only by covariate summaries.
"""

import warnings

import numpy as np
import pandas as pd
from scipy.special import expit

import mlnmr

rng = np.random.default_rng(7)


def simulate_study(name, n, age_mean, trts, effects, mu):
    age = rng.normal(age_mean, 8, n)
    trt = np.asarray(trts)[np.arange(n) % len(trts)]
    lo = mu + np.vectorize(effects.get)(trt) + 0.03 * (age - 55)
    return pd.DataFrame({"study": name, "trt": trt, "age": age, "event": (rng.random(n) < expit(lo)).astype(int)})


effects = {"A": 0.0, "B": -0.8, "C": -0.5}
ipd = simulate_study("Trial 1", 450, 50, ("A", "B", "C"), effects, -0.4)
agd = (
    simulate_study("Trial 2", 600, 64, ("A", "C"), effects, -0.6)
    .groupby(["study", "trt"], as_index=False)
    .agg(r=("event", "sum"), n=("event", "size"), age_mean=("age", "mean"), age_sd=("age", "std"))
)

net = mlnmr.build_network(
    ipd=mlnmr.set_ipd(ipd, study="study", trt="trt", r="event"),
    agd_arm=mlnmr.set_agd_arm(agd, study="study", trt="trt", r="r", n="n"),
    trt_ref="A",
)
age = mlnmr.distr("norm", mean="age_mean", sd="age_sd")
net = mlnmr.add_integration(net, age=age, n_int=500, seed=3)

with warnings.catch_warnings():
    warnings.simplefilter("ignore", mlnmr.ConvergenceWarning)
    fit = mlnmr.nma(net, "~ age", likelihood="bernoulli", n_draws=1000, n_chains=2)

# A target population described by its age distribution only
target = pd.DataFrame({"age_mean": [70.0], "age_sd": [6.0]}, index=["Elderly"])
target = mlnmr.add_integration(target, network=net, age=age, n_int=500, seed=4)

# Baseline event risk of 40% on A in the target population
pred = fit.predict(target, baseline=0.4, type="response", baseline_type="response", baseline_level="aggregate")
print("Predicted event probabilities:")
print(pred.summary.round(3))

# Lower event rates are better
print("\nRank probabilities:")
print(fit.posterior_rank_probs(target, lower_better=True).table.round(3))
