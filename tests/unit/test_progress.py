"""
Tests for sampler progress reporting.
"""

import io
import sys
from unittest.mock import MagicMock, patch

import pytest

from mlnmr.progress import (
    PrintReporter,
    ProgressReporter,
    SamplingCancelled,
    TqdmReporter,
    compute_total_draws,
)


def _started(total, **kwargs):
    cb = MagicMock()
    reporter = ProgressReporter(total, cb, **kwargs)
    reporter.start()
    cb.reset_mock()
    return reporter, cb


class TestSamplingCancelled:
    def test_carries_message(self):
        exc = SamplingCancelled("cancelled by user")
        assert isinstance(exc, Exception)
        assert str(exc) == "cancelled by user"


class TestProgressReporter:
    """Throttling, clipping and per-chain accounting."""

    def test_start_reports_zero(self):
        cb = MagicMock()
        ProgressReporter(100, cb).start()
        cb.assert_called_once_with(0, 100)

    def test_throttled_between_updates(self):
        reporter, cb = _started(100, update_every=10)
        reporter.advance(5)
        cb.assert_not_called()
        reporter.advance(5)
        cb.assert_called_once_with(10, 100)

    def test_uneven_steps_still_report(self):
        reporter, cb = _started(100, update_every=10)
        reporter.advance(7)
        reporter.advance(7)
        cb.assert_called_once_with(14, 100)

    def test_clipped_at_total(self):
        cb = MagicMock()
        reporter = ProgressReporter(10, cb)
        reporter.advance(25)
        assert reporter.current == 10
        cb.assert_called_with(10, 10)

    def test_completion_always_reported(self):
        reporter, cb = _started(10, update_every=100)
        for _ in range(10):
            reporter.advance()
        cb.assert_called_once_with(10, 10)

    def test_finish_reports_total(self):
        reporter, cb = _started(100)
        reporter.advance(50)
        cb.reset_mock()
        reporter.finish()
        cb.assert_called_once_with(100, 100)

    def test_finish_after_completion_is_silent(self):
        reporter, cb = _started(10, update_every=1)
        reporter.advance(10)
        cb.reset_mock()
        reporter.finish()
        cb.assert_not_called()

    def test_default_update_every(self):
        assert ProgressReporter(1000, MagicMock()).update_every == 5
        assert ProgressReporter(10, MagicMock()).update_every == 1

    def test_chain_counts(self):
        reporter, _ = _started(300, n_chains=3)
        reporter.advance(100, chain=0)
        reporter.advance(100, chain=2)
        assert reporter.chain_counts == [100, 0, 100]
        assert reporter.current == 200

    def test_chain_beyond_declared_count(self):
        reporter, _ = _started(200)
        reporter.advance(50, chain=1)
        assert reporter.chain_counts == [0, 50]

    def test_start_resets_counts(self):
        reporter, _ = _started(100, n_chains=2)
        reporter.advance(40, chain=1)
        reporter.start()
        assert reporter.current == 0
        assert reporter.chain_counts == [0, 0]


class TestPrintReporter:
    def _output(self, reporter, current, total):
        buf = io.StringIO()
        with patch.object(sys, "stderr", buf):
            reporter(current, total)
        return buf.getvalue()

    def test_format(self):
        output = self._output(PrintReporter(), 50, 200)
        assert output.startswith("\rSampling:")
        assert "25.0%" in output
        assert "50/200 iterations" in output
        assert not output.endswith("\n")

    def test_custom_label(self):
        assert "Warm-up:" in self._output(PrintReporter("Warm-up"), 1, 10)

    def test_zero_total_silent(self):
        assert self._output(PrintReporter(), 0, 0) == ""

    def test_newline_on_completion(self):
        assert self._output(PrintReporter(), 100, 100).endswith("\n")


class TestTqdmReporter:
    def test_missing_tqdm(self):
        with patch.dict("sys.modules", {"tqdm": None}):
            with pytest.raises(ImportError, match="tqdm"):
                TqdmReporter()(0, 100)

    def test_bar_lifecycle(self):
        bar = MagicMock()
        bar.n = 0
        tqdm_cls = MagicMock(return_value=bar)
        reporter = TqdmReporter(desc="chains")

        with patch.dict("sys.modules", {"tqdm": MagicMock(tqdm=tqdm_cls)}):
            reporter(0, 100)
            tqdm_cls.assert_called_once_with(total=100, unit="it", desc="chains")
            bar.update.assert_not_called()

            reporter(40, 100)
            bar.update.assert_called_with(40)

            bar.n = 40
            reporter(100, 100)
            bar.update.assert_called_with(60)
            bar.close.assert_called_once()


class TestComputeTotalDraws:
    @pytest.mark.parametrize(
        "n_draws, n_chains, n_warmup, expected",
        [(1000, 1, 0, 1000), (1000, 4, 0, 4000), (1000, 4, 500, 6000)],
    )
    def test_total(self, n_draws, n_chains, n_warmup, expected):
        assert compute_total_draws(n_draws, n_chains, n_warmup) == expected
