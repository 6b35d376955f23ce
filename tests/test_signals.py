"""
Entry pattern, exit ladder priority, stop loss boundary and the wait counter.
"""

from __future__ import annotations

import pytest

from batchbot.history import PriceHistory
from batchbot.models import Batch
from batchbot.signals import (ExitKind, SignalParams, evaluate_entry, evaluate_exit, in_dead_band,
                              next_wait_index, step_ready, stop_loss_signal)
from tests.conftest import rising_pattern


def batch_at(buy_price: float = 100.0, steps=None) -> Batch:
    return Batch.open(buy_price, 100.0, 100.0 * 0.9975 / buy_price, 15.0, steps)


class TestEntry:
    def test_closest_rung_fires(self):
        signal = evaluate_entry(PriceHistory(30, rising_pattern()), 101.0)
        assert signal is not None
        assert signal.multiplier == 1.002
        assert signal.reason == "Rising pattern (×1.002)"

    def test_farther_rung(self):
        prices = [102.0] * 9 + [100.0, 100.0, 100.3, 100.6]
        signal = evaluate_entry(PriceHistory(30, prices), 101.0)
        assert signal is not None
        assert signal.multiplier == 1.003

    def test_needs_thirteen_points(self):
        assert evaluate_entry(PriceHistory(30, rising_pattern()[1:]), 101.0) is None

    def test_needs_momentum(self):
        # Below the most recent point
        assert evaluate_entry(PriceHistory(30, rising_pattern()), 100.5) is None

    def test_no_dip_no_entry(self):
        assert evaluate_entry(PriceHistory(30, [100.0] * 13), 100.1) is None


class TestStopLoss:
    def test_trigger_price(self):
        assert batch_at().stop_loss.trigger_price == pytest.approx(85.0)

    def test_boundary(self):
        batch = batch_at()
        assert stop_loss_signal(batch, 84.99) is not None
        assert stop_loss_signal(batch, 85.01) is None

    def test_stop_loss_in_ladder(self):
        signal = evaluate_exit(batch_at(), PriceHistory(30, [86.0, 86.0, 86.0]), 84.99)
        assert signal.kind is ExitKind.STOP_LOSS
        assert signal.may_realize_loss


class TestExitLadder:
    def test_profit_taking_drop_vs_last(self):
        signal = evaluate_exit(batch_at(), PriceHistory(30, [100.5, 100.8, 101.0]), 100.9)
        assert signal.kind is ExitKind.PROFIT_TAKING
        assert "-0.03%" in signal.reason
        assert not signal.may_realize_loss

    def test_profit_taking_drop_vs_second_last(self):
        signal = evaluate_exit(batch_at(), PriceHistory(30, [101.0, 100.95, 100.93]), 100.90)
        assert signal.kind is ExitKind.PROFIT_TAKING
        assert "2nd last" in signal.reason

    def test_nothing_fires_below_min_profit(self):
        batch = batch_at()
        batch.peak_price = 101.5
        assert evaluate_exit(batch, PriceHistory(30, [101.0, 101.0, 101.0]), 100.5) is None

    def test_profit_taking_wins_over_peak_protection(self):
        batch = batch_at()
        batch.peak_price = 101.5
        signal = evaluate_exit(batch, PriceHistory(30, [101.0, 101.0, 101.0]), 100.8)
        assert signal.kind is ExitKind.PROFIT_TAKING

    def test_peak_protection(self):
        params = SignalParams(drop_vs_last=10, drop_vs_second_last=10, drop_vs_third_last=10, drop_vs_peak=10)
        batch = batch_at()
        batch.peak_price = 101.5
        signal = evaluate_exit(batch, PriceHistory(30, [101.0, 101.0, 101.0]), 100.8, params)
        assert signal.kind is ExitKind.PEAK_PROTECTION

    def test_wait_timeout_only_when_profitable(self):
        batch = batch_at()
        batch.wait_index = 100
        batch.peak_price = 100.7
        history = PriceHistory(30, [100.7, 100.7, 100.7])
        assert evaluate_exit(batch, history, 100.7).kind is ExitKind.WAIT_TIMEOUT
        assert evaluate_exit(batch, history, 100.55) is None


class TestWaitCounter:
    def test_dead_band(self):
        assert in_dead_band(100.0, 100.7)
        assert not in_dead_band(100.0, 100.4)
        assert not in_dead_band(100.0, 101.0)

    def test_counts_in_band_resets_outside(self):
        batch = batch_at()
        batch.wait_index = 5
        assert next_wait_index(batch, 100.7) == 6
        assert next_wait_index(batch, 101.0) == 0
        assert next_wait_index(batch, 100.4) == 0

    def test_resets_at_cap(self):
        batch = batch_at()
        batch.wait_index = 100
        assert next_wait_index(batch, 100.55) == 0


class TestStepReady:
    def test_never_on_first_touch(self):
        batch = batch_at(steps=[(1.0, 50.0)])
        step = batch.next_step()
        assert not step_ready(batch, step, 101.45)

    def test_fires_on_confirmed_drop_from_step_peak(self):
        batch = batch_at(steps=[(1.0, 50.0)])
        step = batch.next_step()
        step.peak_price = 101.5
        assert step_ready(batch, step, 101.45)
        assert not step_ready(batch, step, 101.48)

    def test_requires_min_profit(self):
        batch = batch_at(steps=[(1.0, 50.0)])
        step = batch.next_step()
        step.peak_price = 101.5
        assert not step_ready(batch, step, 100.5)
