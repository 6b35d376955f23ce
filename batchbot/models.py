# batchbot/models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
import uuid

from .history import PriceHistory

# Below this amount of base currency a batch counts as fully unwound.
CRYPTO_EPSILON = 1e-8


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Side(Enum):
    BUY = "buy"
    SELL = "sell"


class AssetMode(Enum):
    """ACCUMULATING waits for an entry (BUY state), HOLDING unwinds batches (SELL state)."""
    ACCUMULATING = "buy"
    HOLDING = "sell"


class BatchStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class StreamState(Enum):
    """Lifecycle of the single multiplexed transport."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    LIVE = "LIVE"
    ERROR = "ERROR"
    CLOSED = "CLOSED"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"


@dataclass(frozen=True, slots=True)
class Instrument:
    """Immutable tradable pair, e.g. BTC/EUR (websocket market id BTC-EUR)."""
    base: str
    quote: str

    @classmethod
    def parse(cls, text: str) -> "Instrument":
        raw = text.strip().upper()
        for sep in ("/", "-"):
            if sep in raw:
                base, quote = raw.split(sep, 1)
                if base and quote:
                    return cls(base, quote)
        raise ValueError(f"Not an instrument: {text!r}")

    @property
    def symbol(self) -> str:
        return f"{self.base}/{self.quote}"

    @property
    def market_id(self) -> str:
        return f"{self.base}-{self.quote}"

    def __str__(self) -> str:
        return self.symbol


# --- STREAM EVENTS ---

@dataclass(frozen=True, slots=True)
class PriceTick:
    instrument: Instrument
    price: float
    timestamp: float


@dataclass(frozen=True, slots=True)
class StreamError:
    message: str


@dataclass(frozen=True, slots=True)
class StreamClosed:
    reason: str = ""


StreamEvent = Union[PriceTick, StreamError, StreamClosed]


@dataclass(slots=True)
class Subscription:
    """
    Per-instrument channel record owned by the StreamManager.
    `last_tick` is replaced as one (price, timestamp) tuple so readers never
    see a price from one tick paired with the timestamp of another.
    The record itself is replaced on re-subscription.
    """
    instrument: Instrument
    last_tick: Optional[Tuple[float, float]] = None
    initialized: bool = False
    generation: int = 0

    @property
    def last_price(self) -> Optional[float]:
        return self.last_tick[0] if self.last_tick else None

    @property
    def last_update(self) -> Optional[float]:
        return self.last_tick[1] if self.last_tick else None


# --- POSITIONS ---

@dataclass(slots=True)
class SellStep:
    """Planned partial exit: sell `sell_percent` of the original batch once `threshold_percent` profit is cleared."""
    threshold_percent: float
    sell_percent: float
    completed: bool = False
    skipped: bool = False
    peak_price: float = 0.0
    executed_price: Optional[float] = None
    executed_at: Optional[str] = None
    executed_amount: Optional[float] = None

    def threshold_price(self, buy_price: float) -> float:
        return buy_price * (1 + self.threshold_percent / 100)


@dataclass(frozen=True, slots=True)
class StopLoss:
    percent: float
    trigger_price: float

    @classmethod
    def for_buy(cls, buy_price: float, percent: float) -> "StopLoss":
        return cls(percent=percent, trigger_price=buy_price * (1 - percent / 100))

    def is_triggered(self, price: float) -> bool:
        return price <= self.trigger_price


@dataclass(slots=True)
class Batch:
    """One buy fill and its independent unwind lifecycle."""
    id: str
    buy_price: float
    buy_amount: float
    crypto_amount: float
    remaining_crypto: float
    stop_loss: StopLoss
    remaining_percent: float = 100.0
    peak_price: float = 0.0
    wait_index: int = 0
    status: BatchStatus = BatchStatus.ACTIVE
    sell_steps: List[SellStep] = field(default_factory=list)
    realized_proceeds: float = 0.0
    opened_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def open(cls, buy_price: float, buy_amount: float, crypto_amount: float,
             stop_loss_percent: float, steps: Optional[List[Tuple[float, float]]] = None) -> "Batch":
        ladder = [SellStep(threshold_percent=t, sell_percent=p) for t, p in sorted(steps or [])]
        return cls(
            id=uuid.uuid4().hex[:12],
            buy_price=buy_price,
            buy_amount=buy_amount,
            crypto_amount=crypto_amount,
            remaining_crypto=crypto_amount,
            stop_loss=StopLoss.for_buy(buy_price, stop_loss_percent),
            peak_price=buy_price,
            sell_steps=ladder,
        )

    @property
    def is_active(self) -> bool:
        return self.status is BatchStatus.ACTIVE

    @property
    def uses_steps(self) -> bool:
        return bool(self.sell_steps)

    def next_step(self) -> Optional[SellStep]:
        for step in self.sell_steps:
            if not step.completed:
                return step
        return None

    def cost_of(self, crypto: float) -> float:
        """Share of the buy amount, fee included, carried by `crypto` of this batch."""
        if self.crypto_amount <= 0:
            return 0.0
        return self.buy_amount * crypto / self.crypto_amount

    def track_peak(self, price: float):
        self.peak_price = max(self.peak_price or self.buy_price, price)

    def apply_sell(self, crypto_sold: float, proceeds: float):
        """Reduce the remaining position; completes the batch once nothing is left."""
        crypto_sold = min(crypto_sold, self.remaining_crypto)
        self.remaining_crypto -= crypto_sold
        if self.crypto_amount > 0:
            self.remaining_percent = max(0.0, self.remaining_percent - crypto_sold / self.crypto_amount * 100)
        self.realized_proceeds += proceeds
        if self.remaining_crypto < CRYPTO_EPSILON or self.remaining_percent <= CRYPTO_EPSILON:
            self.remaining_crypto = 0.0
            self.remaining_percent = 0.0
            self.status = BatchStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "buyPrice": self.buy_price,
            "buyAmount": self.buy_amount,
            "cryptoAmount": self.crypto_amount,
            "remainingCrypto": self.remaining_crypto,
            "remainingPercent": self.remaining_percent,
            "peakPrice": self.peak_price,
            "waitIndex": self.wait_index,
            "status": self.status.value,
            "stopLossPercent": self.stop_loss.percent,
            "realizedProceeds": self.realized_proceeds,
            "openedAt": self.opened_at,
            "sellSteps": [
                {
                    "thresholdPercent": s.threshold_percent,
                    "sellPercent": s.sell_percent,
                    "completed": s.completed,
                    "skipped": s.skipped,
                    "peakPrice": s.peak_price,
                    "executedPrice": s.executed_price,
                    "executedAt": s.executed_at,
                    "executedAmount": s.executed_amount,
                }
                for s in self.sell_steps
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Batch":
        buy_price = float(data["buyPrice"])
        steps = [
            SellStep(
                threshold_percent=float(s["thresholdPercent"]),
                sell_percent=float(s["sellPercent"]),
                completed=bool(s.get("completed", False)),
                skipped=bool(s.get("skipped", False)),
                peak_price=float(s.get("peakPrice") or 0.0),
                executed_price=s.get("executedPrice"),
                executed_at=s.get("executedAt"),
                executed_amount=s.get("executedAmount"),
            )
            for s in data.get("sellSteps") or []
        ]
        crypto = float(data["cryptoAmount"])
        return cls(
            id=data.get("id") or uuid.uuid4().hex[:12],
            buy_price=buy_price,
            buy_amount=float(data.get("buyAmount") or 0.0),
            crypto_amount=crypto,
            remaining_crypto=float(data.get("remainingCrypto", crypto)),
            stop_loss=StopLoss.for_buy(buy_price, float(data.get("stopLossPercent", 15.0))),
            remaining_percent=float(data.get("remainingPercent", 100.0)),
            peak_price=float(data.get("peakPrice") or buy_price),
            wait_index=int(data.get("waitIndex") or 0),
            status=BatchStatus(data.get("status", "active")),
            sell_steps=sorted(steps, key=lambda s: s.threshold_percent),
            realized_proceeds=float(data.get("realizedProceeds") or 0.0),
            opened_at=data.get("openedAt") or utc_now_iso(),
        )


@dataclass
class Asset:
    """
    Aggregate root for one instrument. The mode is derived from the batch
    list, never stored: HOLDING iff at least one batch is active.
    """
    instrument: Instrument
    history: PriceHistory
    batches: List[Batch] = field(default_factory=list)
    realized_profit: float = 0.0
    invested: float = 0.0
    trade_count: int = 0
    trade_index: int = 0
    step_index: int = 0
    cooldown_until: Optional[int] = None
    last_check_time: Optional[float] = None

    @property
    def mode(self) -> AssetMode:
        return AssetMode.HOLDING if self.active_batches else AssetMode.ACCUMULATING

    @property
    def active_batches(self) -> List[Batch]:
        return [b for b in self.batches if b.is_active]

    @property
    def in_cooldown(self) -> bool:
        return self.cooldown_until is not None

    def position(self) -> Optional[Dict[str, Any]]:
        """Flat "current position" view, projected from the active batches."""
        active = self.active_batches
        if not active:
            return None
        crypto = sum(b.remaining_crypto for b in active)
        invested = sum(b.buy_amount * b.remaining_percent / 100 for b in active)
        return {
            "market": self.instrument.symbol,
            "buyPrice": sum(b.buy_price * b.remaining_crypto for b in active) / crypto if crypto else active[0].buy_price,
            "cryptoAmount": crypto,
            "investedAmount": invested,
            "maxPrice": max(b.peak_price for b in active),
            "waitIndex": max(b.wait_index for b in active),
            "stepIndex": self.step_index,
            "tradeIndex": self.trade_index,
            "batches": len(active),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market": self.instrument.symbol,
            "mode": self.mode.value,
            "batches": [b.to_dict() for b in self.active_batches],
            "realizedProfit": self.realized_profit,
            "invested": self.invested,
            "tradeCount": self.trade_count,
            "tradeIndex": self.trade_index,
        }

    @classmethod
    def restore(cls, instrument: Instrument, history: PriceHistory, data: Dict[str, Any]) -> "Asset":
        batches = [Batch.from_dict(b) for b in data.get("batches") or []]
        return cls(
            instrument=instrument,
            history=history,
            batches=[b for b in batches if b.is_active],
            realized_profit=float(data.get("realizedProfit") or 0.0),
            invested=float(data.get("invested") or 0.0),
            trade_count=int(data.get("tradeCount") or 0),
            trade_index=int(data.get("tradeIndex") or 0),
        )


@dataclass(frozen=True, slots=True)
class FillResult:
    """
    Outcome of one market order. For buys `quote_amount` is the spent cost,
    for sells it is the net proceeds after fee.
    """
    side: Side
    instrument: Instrument
    base_amount: float
    quote_amount: float
    price: float
    fee: float
    order_id: str = ""
