# batchbot/ledger.py
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Iterable

from .models import Asset, Batch, FillResult, Side


class Ledger:
    """
    Wallet balance (quote currency) shared by every asset of the session,
    plus per-asset realized P&L bookkeeping.

    Every execution runs inside `transaction()`: read balance, apply delta,
    write balance and emit, with no other execution interleaved.
    In live mode the balance is a mirror of the venue, refreshed via `sync()`.
    """
    def __init__(self, balance: float, logger: logging.Logger):
        self.balance = float(balance)
        self.logger = logger
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            yield self

    def apply_fill(self, fill: FillResult):
        """Simulated wallet: debit the full buy amount, credit net sell proceeds."""
        if fill.side is Side.BUY:
            self.balance -= fill.quote_amount
        else:
            self.balance += fill.quote_amount

    def sync(self, venue_balance: float):
        self.balance = float(venue_balance)

    def record_buy(self, asset: Asset, batch: Batch):
        asset.invested += batch.buy_amount

    def record_completion(self, asset: Asset, batch: Batch) -> float:
        """Books a completed batch against the asset's counters. Returns the net profit."""
        profit = batch.realized_proceeds - batch.buy_amount
        asset.realized_profit += profit
        asset.trade_count += 1
        self.logger.info(
            f"[{asset.instrument}] 📒 Batch {batch.id} closed: invested €{batch.buy_amount:.2f}, "
            f"returned €{batch.realized_proceeds:.2f}, profit €{profit:.4f}"
        )
        return profit

    def get_grand_total(self, assets: Iterable[Asset], prices: Dict[str, float]) -> float:
        """Wallet plus the market value of every open batch at the given prices."""
        total = self.balance
        for asset in assets:
            price = prices.get(asset.instrument.symbol)
            if price is None:
                continue
            total += sum(b.remaining_crypto for b in asset.active_batches) * price
        return total
