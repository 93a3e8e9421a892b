"""
Basic ML-NMR Example
====================

Two studies comparing treatments A and B on a binary outcome: one with
individual patient data (IPD), one reporting only arm-level summaries (AgD).
The effect of B depends on age, so a naive comparison is biased when the
two study populations differ. ML-NMR fits one individual-level model to both.
"""

import numpy as np
import pandas as pd
from scipy.special import expit

import mlnmr

rng = np.random.default_rng(42)

# 1. Simulate the data
# IPD study: 400 patients, age around 50
n = 400
age = rng.normal(50, 8, n)
trt = np.where(np.arange(n) % 2 == 0, "A", "B")
log_odds = -0.5 + np.where(trt == "B", -1.0, 0.0) + 0.03 * (age - 55) + np.where(trt == "B", -0.04, 0.0) * (age - 55)
ipd = pd.DataFrame({"study": "Trial 1", "trt": trt, "age": age, "event": (rng.random(n) < expit(log_odds)).astype(int)})

# AgD study: older patients, only events per arm and age summaries published
agd_rows = []
for t in ("A", "B"):
    a = rng.normal(62, 9, 300)
    lo = -0.8 + (-1.0 - 0.04 * (a - 55) if t == "B" else 0.0) + 0.03 * (a - 55)
    agd_rows.append({"study": "Trial 2", "trt": t, "r": int((rng.random(300) < expit(lo)).sum()), "n": 300, "age_mean": a.mean(), "age_sd": a.std(ddof=1)})
agd = pd.DataFrame(agd_rows)

print("=" * 60)
print("ML-NMR BASIC EXAMPLE")
print("=" * 60)

# 2. Build the network
net = mlnmr.build_network(
    ipd=mlnmr.set_ipd(ipd, study="study", trt="trt", r="event"),
    agd_arm=mlnmr.set_agd_arm(agd, study="study", trt="trt", r="r", n="n"),
    trt_ref="A",
)
print(net)

# 3. Describe the AgD covariate distributions with integration points
net = mlnmr.add_integration(net, age=mlnmr.distr("norm", mean="age_mean", sd="age_sd"), n_int=500, seed=1)

# 4. Fit the model with a treatment-by-age interaction
model = mlnmr.MLNMR(net, "~ age*.trt")
model.set_likelihood("bernoulli", link="logit").set_seed(2137)
fit = model.fit(n_draws=1000, n_chains=2, progress_callback=True)

print("\nPosterior summary:")
print(fit.summary().round(3))

# 5. Population-adjusted relative effects in each study population
print("\nRelative effects (log odds ratio, B vs A):")
print(fit.relative_effects().summary.round(3))

print("\nModel fit:")
print(fit.dic().round(2))
