# batchbot/signals.py
"""
Stateless entry / exit evaluation against a PriceHistory and the current price.

BUY: a rising pattern. Two consecutive older points must sit at least
`multiplier` above the current price while the current price already beats
the two most recent points (momentum confirmation).

SELL, first match wins:
  1. profit taking   (min profit cleared, price turning down)
  2. peak protection (peak was +1.2%, now -0.6% from peak, still profitable)
  3. stop loss       (the only exit allowed to realize a loss)
  4. wait timeout    (stuck in the dead band for too long, still profitable)
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .economics import DEFAULT_MIN_PROFIT_MULTIPLIER, clears_min_profit
from .history import PriceHistory
from .models import Batch, SellStep

MIN_ENTRY_HISTORY = 13

# (offset_a, offset_b, multiplier), scanned closest offset first.
ENTRY_LADDER = (
    (2, 3, 1.002),
    (3, 4, 1.003),
    (4, 5, 1.003),
    (5, 6, 1.004),
    (6, 7, 1.004),
    (7, 8, 1.005),
    (8, 9, 1.005),
    (9, 10, 1.007),
    (10, 11, 1.007),
    (11, 12, 1.008),
)


class ExitKind(Enum):
    PROFIT_TAKING = "profit-taking"
    PEAK_PROTECTION = "peak-protection"
    STOP_LOSS = "stop-loss"
    WAIT_TIMEOUT = "wait-timeout"
    MULTI_STEP = "multi-step"
    MANUAL = "manual"


@dataclass(frozen=True)
class EntrySignal:
    multiplier: float
    reason: str


@dataclass(frozen=True)
class ExitSignal:
    kind: ExitKind
    reason: str

    @property
    def may_realize_loss(self) -> bool:
        return self.kind in (ExitKind.STOP_LOSS, ExitKind.MANUAL)


@dataclass(frozen=True)
class SignalParams:
    min_profit_multiplier: float = DEFAULT_MIN_PROFIT_MULTIPLIER
    stop_loss_percent: float = 15.0
    max_wait_index: int = 100
    # Profit-taking drop thresholds, percent
    drop_vs_last: float = 0.03
    drop_vs_second_last: float = 0.04
    drop_vs_third_last: float = 0.05
    drop_vs_peak: float = 0.06
    # Peak protection
    peak_gain_percent: float = 1.2
    peak_drawdown_percent: float = 0.6
    # Dead band for the wait counter, percent above buy price
    dead_band_low: float = 0.51
    dead_band_high: float = 0.9
    # Multi-step sells: confirmed drop from the step-local peak, percent
    step_drop_percent: float = 0.03


def _dropped(reference: Optional[float], price: float, percent: float) -> bool:
    return reference is not None and price <= reference * (1 - percent / 100)


def evaluate_entry(history: PriceHistory, price: float) -> Optional[EntrySignal]:
    if len(history) < MIN_ENTRY_HISTORY:
        return None

    last = history.at(0)
    last1 = history.at(1)
    if not (price > last and price > last1):
        return None

    for offset_a, offset_b, multiplier in ENTRY_LADDER:
        a = history.at(offset_a)
        b = history.at(offset_b)
        if a is None or b is None:
            continue
        target = price * multiplier
        if target <= a and target <= b:
            return EntrySignal(multiplier=multiplier, reason=f"Rising pattern (×{multiplier})")
    return None


def stop_loss_signal(batch: Batch, price: float) -> Optional[ExitSignal]:
    if batch.stop_loss.is_triggered(price):
        return ExitSignal(ExitKind.STOP_LOSS, f"STOP LOSS -{batch.stop_loss.percent:g}%")
    return None


def evaluate_exit(batch: Batch, history: PriceHistory, price: float,
                  params: SignalParams = SignalParams()) -> Optional[ExitSignal]:
    buy = batch.buy_price
    profitable = clears_min_profit(buy, price, params.min_profit_multiplier)
    last = history.at(0)

    # 1. Profit taking
    if profitable:
        if _dropped(last, price, params.drop_vs_last):
            return ExitSignal(ExitKind.PROFIT_TAKING, f"Price drop -{params.drop_vs_last}%")
        if _dropped(history.at(1), price, params.drop_vs_second_last):
            return ExitSignal(ExitKind.PROFIT_TAKING, f"Price drop -{params.drop_vs_second_last}% vs 2nd last")
        if _dropped(history.at(2), price, params.drop_vs_third_last):
            return ExitSignal(ExitKind.PROFIT_TAKING, f"Price drop -{params.drop_vs_third_last}% vs 3rd last")
        if _dropped(batch.peak_price, price, params.drop_vs_peak):
            return ExitSignal(ExitKind.PROFIT_TAKING, f"Drop from peak -{params.drop_vs_peak}%")

    # 2. Peak protection
    peak = batch.peak_price
    if (profitable
            and peak >= buy * (1 + params.peak_gain_percent / 100)
            and peak >= price * (1 + params.peak_drawdown_percent / 100)
            and last is not None and price < last):
        return ExitSignal(
            ExitKind.PEAK_PROTECTION,
            f"Peak was +{params.peak_gain_percent}%, now -{params.peak_drawdown_percent}%",
        )

    # 3. Stop loss
    stop = stop_loss_signal(batch, price)
    if stop is not None:
        return stop

    # 4. Wait timeout
    if batch.wait_index >= params.max_wait_index and profitable:
        return ExitSignal(ExitKind.WAIT_TIMEOUT, "Wait limit reached")

    return None


def in_dead_band(buy_price: float, price: float, params: SignalParams = SignalParams()) -> bool:
    return (buy_price * (1 + params.dead_band_low / 100)
            <= price
            <= buy_price * (1 + params.dead_band_high / 100))


def next_wait_index(batch: Batch, price: float, params: SignalParams = SignalParams()) -> int:
    """
    Wait counter after a tick on which no exit fired. A counter at the cap
    means the timeout was due but min profit was not cleared: start over.
    """
    if batch.wait_index >= params.max_wait_index:
        return 0
    if in_dead_band(batch.buy_price, price, params):
        return batch.wait_index + 1
    return 0


def step_ready(batch: Batch, step: SellStep, price: float,
               params: SignalParams = SignalParams()) -> bool:
    """
    A sell step fires only after its threshold was cleared and the price is
    falling back from the step-local peak; never on the first threshold touch.
    """
    if step.peak_price < step.threshold_price(batch.buy_price):
        return False
    if not clears_min_profit(batch.buy_price, price, params.min_profit_multiplier):
        return False
    return price <= step.peak_price * (1 - params.step_drop_percent / 100)
