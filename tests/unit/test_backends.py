"""
Tests for the sampler backend registry, the Laplace approximation and the Metropolis sampler.
"""

import numpy as np
import pytest

from mlnmr.backends import (
    SamplerResult,
    get_backend,
    get_backend_info,
    reset_backend,
    resolve_backend,
    set_backend,
)
from mlnmr.backends.laplace import LaplaceBackend, find_mode, hessian, laplace_covariance
from mlnmr.backends.metropolis import MetropolisBackend, effective_sample_size, split_rhat
from mlnmr.errors import ConvergenceWarning, SamplingError
from mlnmr.progress import ProgressReporter, SamplingCancelled


class GaussianDensity:
    """Multivariate Normal log density with named parameters."""

    def __init__(self, mean, cov):
        self.mean = np.asarray(mean, dtype=float)
        self.cov = np.asarray(cov, dtype=float)
        self.precision = np.linalg.inv(self.cov)
        self.param_names = [f"x[{i}]" for i in range(self.mean.size)]

    def __call__(self, x):
        r = np.asarray(x) - self.mean
        return float(-0.5 * r @ self.precision @ r)


MEAN = [1.0, -2.0]
COV = [[1.0, 0.5], [0.5, 2.0]]


@pytest.fixture(autouse=True)
def _reset():
    reset_backend()
    yield
    reset_backend()


class TestRegistry:
    def test_default_is_laplace(self):
        assert isinstance(get_backend(), LaplaceBackend)
        info = get_backend_info()
        assert info["name"] == "LaplaceBackend"
        assert not info["forced"]

    def test_set_by_name(self):
        set_backend("metropolis", n_warmup=10)
        backend = get_backend()
        assert isinstance(backend, MetropolisBackend)
        assert backend.n_warmup == 10
        assert get_backend_info()["forced"]

    def test_default_name_not_forced(self):
        set_backend("default")
        assert not get_backend_info()["forced"]

    def test_set_instance(self):
        custom = MetropolisBackend(thin=2)
        set_backend(custom)
        assert get_backend() is custom

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            set_backend("hmc")

    def test_object_without_sample(self):
        with pytest.raises(TypeError, match="sample"):
            set_backend(object())

    def test_resolve_per_fit(self):
        set_backend("metropolis")
        assert isinstance(resolve_backend(None), MetropolisBackend)
        assert isinstance(resolve_backend("laplace"), LaplaceBackend)
        with pytest.raises(ValueError):
            resolve_backend("nuts")

    def test_reset(self):
        set_backend("metropolis")
        reset_backend()
        assert isinstance(get_backend(), LaplaceBackend)


class TestSamplerResult:
    def test_shapes(self):
        result = SamplerResult(draws=np.zeros((3, 10, 2)))
        assert result.n_chains == 3
        assert result.n_draws == 10
        assert result.flat().shape == (30, 2)


class TestLaplace:
    def test_mode_and_covariance_of_gaussian(self):
        ld = GaussianDensity(MEAN, COV)
        mode, _ = find_mode(ld, np.zeros(2))
        np.testing.assert_allclose(mode, MEAN, atol=1e-3)
        cov, _ = laplace_covariance(ld, mode)
        np.testing.assert_allclose(cov, COV, atol=1e-4)

    def test_hessian(self):
        ld = GaussianDensity(MEAN, COV)
        np.testing.assert_allclose(hessian(ld, np.array(MEAN)), -ld.precision, atol=1e-5)

    def test_non_finite_init(self):
        def ld(x):
            return -np.inf if x[0] < 0 else -0.5 * float(x @ x)

        with pytest.raises(SamplingError, match="initial values"):
            find_mode(ld, np.array([-1.0, 0.0]))

    def test_flat_direction_repaired(self):
        def ld(x):
            return -0.5 * x[0] ** 2

        with pytest.warns(ConvergenceWarning, match="not positive definite"):
            cov, messages = laplace_covariance(ld, np.zeros(2))
        assert messages
        assert np.all(np.linalg.eigvalsh(cov) > 0)

    def test_draws_reproducible(self):
        ld = GaussianDensity(MEAN, COV)
        a = LaplaceBackend().sample(ld, np.zeros(2), n_draws=50, n_chains=2, seed=7)
        b = LaplaceBackend().sample(ld, np.zeros(2), n_draws=50, n_chains=2, seed=7)
        assert a.draws.shape == (2, 50, 2)
        np.testing.assert_array_equal(a.draws, b.draws)

    def test_draw_moments(self):
        ld = GaussianDensity(MEAN, COV)
        result = LaplaceBackend().sample(ld, np.zeros(2), n_draws=20000, n_chains=1, seed=1)
        flat = result.flat()
        np.testing.assert_allclose(flat.mean(axis=0), MEAN, atol=0.05)
        np.testing.assert_allclose(np.cov(flat, rowvar=False), COV, atol=0.08)
        np.testing.assert_allclose(result.info["cov"], COV, atol=1e-4)

    def test_cancellation(self):
        ld = GaussianDensity(MEAN, COV)
        with pytest.raises(SamplingCancelled):
            LaplaceBackend().sample(ld, np.zeros(2), n_draws=10, n_chains=2, seed=1, cancel_check=lambda: True)

    def test_progress_counts_draws(self):
        seen = []
        reporter = ProgressReporter(total=40, callback=lambda c, t: seen.append((c, t)), update_every=1)
        LaplaceBackend().sample(GaussianDensity(MEAN, COV), np.zeros(2), n_draws=20, n_chains=2, seed=1, progress=reporter)
        assert seen[-1] == (40, 40)


class TestSplitRhat:
    def test_identical_chains_near_one(self):
        rng = np.random.default_rng(3)
        chains = rng.normal(size=(4, 1000, 2))
        np.testing.assert_allclose(split_rhat(chains), 1.0, atol=0.02)

    def test_separated_chains_flagged(self):
        rng = np.random.default_rng(4)
        chains = rng.normal(size=(2, 500, 1))
        chains[1] += 5.0
        assert split_rhat(chains)[0] > 1.5

    def test_too_short(self):
        assert np.isnan(split_rhat(np.zeros((2, 3, 2)))).all()

    def test_constant_chain(self):
        np.testing.assert_array_equal(split_rhat(np.ones((2, 10, 1))), [1.0])


class TestEffectiveSampleSize:
    def test_independent_draws(self):
        rng = np.random.default_rng(5)
        ess = effective_sample_size(rng.normal(size=(4, 1000, 2)))
        np.testing.assert_allclose(ess, 4000, rtol=0.2)

    def test_autocorrelated_draws_smaller(self):
        rng = np.random.default_rng(6)
        walk = np.cumsum(rng.normal(size=(2, 1000, 1)), axis=1)
        assert effective_sample_size(walk)[0] < 200

    def test_too_short(self):
        assert np.isnan(effective_sample_size(np.zeros((2, 3, 1)))).all()

    def test_constant_chain(self):
        assert np.isnan(effective_sample_size(np.ones((2, 10, 1)))).all()


class TestMetropolis:
    def test_recovers_gaussian(self):
        ld = GaussianDensity(MEAN, COV)
        result = MetropolisBackend(n_warmup=1000).sample(ld, np.zeros(2), n_draws=3000, n_chains=2, seed=11)
        assert result.draws.shape == (2, 3000, 2)
        flat = result.flat()
        np.testing.assert_allclose(flat.mean(axis=0), MEAN, atol=0.25)
        np.testing.assert_allclose(flat.var(axis=0), np.diag(COV), rtol=0.3)
        assert np.all(result.info["rhat"] < 1.1)
        assert np.all(result.info["ess"] > 100)
        assert all(0.05 < a < 0.8 for a in result.info["accept_rate"])

    def test_reproducible(self):
        ld = GaussianDensity(MEAN, COV)
        a = MetropolisBackend(n_warmup=50).sample(ld, np.zeros(2), n_draws=50, n_chains=2, seed=5)
        b = MetropolisBackend(n_warmup=50).sample(ld, np.zeros(2), n_draws=50, n_chains=2, seed=5)
        np.testing.assert_array_equal(a.draws, b.draws)

    def test_thinning(self):
        ld = GaussianDensity(MEAN, COV)
        result = MetropolisBackend(n_warmup=20, thin=3).sample(ld, np.zeros(2), n_draws=40, n_chains=1, seed=2)
        assert result.draws.shape == (1, 40, 2)

    def test_cancellation(self):
        ld = GaussianDensity(MEAN, COV)
        with pytest.raises(SamplingCancelled):
            MetropolisBackend(n_warmup=10).sample(ld, np.zeros(2), n_draws=10, n_chains=2, seed=1, cancel_check=lambda: True)

    def test_progress_includes_warmup(self):
        seen = []
        reporter = ProgressReporter(total=2 * (30 + 20), callback=lambda c, t: seen.append(c), update_every=1)
        MetropolisBackend(n_warmup=30).sample(GaussianDensity(MEAN, COV), np.zeros(2), n_draws=20, n_chains=2, seed=1, progress=reporter)
        assert seen[-1] == 100
