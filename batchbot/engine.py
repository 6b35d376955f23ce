# batchbot/engine.py
import asyncio
from typing import Dict, List, Optional

from .config import TradingSettings
from .economics import TradeGuard, profit_percent
from .errors import VenueError
from .events import EventBus
from .execution import ExecutionService
from .ledger import Ledger
from .logger import AsyncAuditLogger
from .models import Asset, Batch, FillResult, SellStep, Side, utc_now_iso
from .signals import (MIN_ENTRY_HISTORY, ExitKind, ExitSignal, evaluate_entry, evaluate_exit,
                      next_wait_index, step_ready, stop_loss_signal)

COOLDOWN_REASON = "Waiting short cooldown after sell"


class PositionEngine:
    """
    Per-asset batch state machine.
    ACCUMULATING waits for an entry pattern and opens a batch with a buy.
    HOLDING unwinds every active batch on its own: either the full exit
    ladder or, with a sell-step plan, partial exits confirmed by a drop
    from the step-local peak. Stop loss applies to every batch, always.
    """
    def __init__(self, settings: TradingSettings, venue: ExecutionService, ledger: Ledger,
                 events: EventBus, logger, audit_log: Optional[AsyncAuditLogger] = None):
        self.settings = settings
        self.venue = venue
        self.ledger = ledger
        self.events = events
        self.logger = logger
        self.audit_log = audit_log

        self.params = settings.signal_params()
        self.guard = TradeGuard(settings.fee_rate, settings.min_trade_amount, logger)
        self.cooldown_ticks = settings.cooldown_ticks
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, asset: Asset) -> asyncio.Lock:
        return self._locks.setdefault(asset.instrument.symbol, asyncio.Lock())

    def next_buy_amount(self, asset: Asset) -> float:
        base = self.settings.buy_amount
        if self.settings.position_sizing == "compound":
            # Reinvest realized profit, never go under the venue minimum
            base = max(self.settings.min_trade_amount, base + asset.realized_profit)
            base = min(base, self.ledger.balance)
        return round(base, 2)

    # --- DECISION TICK ---

    async def process(self, asset: Asset, price: float) -> List[str]:
        """
        One decision tick for one asset at its latest price.
        Returns the executed actions ("buy" / "sell"), empty on an idle tick.
        """
        async with self._lock_for(asset):
            return await self._process(asset, price)

    async def _process(self, asset: Asset, price: float) -> List[str]:
        actions: List[str] = []
        market = asset.instrument.symbol
        reason: Optional[str] = None

        # Exits run every tick, cooldown only gates new entries
        for batch in list(asset.active_batches):
            batch.track_peak(price)
            if batch.uses_steps:
                if await self._unwind_steps(asset, batch, price):
                    actions.append("sell")
            else:
                signal = evaluate_exit(batch, asset.history, price, self.params)
                if signal is None:
                    batch.wait_index = next_wait_index(batch, price, self.params)
                    continue
                if await self._sell(asset, batch, batch.remaining_crypto, price, signal):
                    actions.append("sell")

        if asset.in_cooldown:
            if asset.step_index > asset.cooldown_until:
                asset.cooldown_until = None
            reason = COOLDOWN_REASON

        if not asset.active_batches and not actions:
            self.events.emit("max-price", {"market": market, "price": "-"})
            if reason is None:
                entry = evaluate_entry(asset.history, price)
                if entry is not None:
                    self.logger.info(f"[{market}] ✅ BUY TRIGGER: {entry.reason} @ {price}")
                    if await self._open_batch(asset, price, self.next_buy_amount(asset), entry.reason):
                        actions.append("buy")
                elif len(asset.history) < MIN_ENTRY_HISTORY:
                    self.logger.debug(f"[{market}] Waiting for data: have {len(asset.history)} prices, need {MIN_ENTRY_HISTORY}")

        position = asset.position()
        if position is not None:
            self.events.emit("max-price", {"market": market, "price": position["maxPrice"]})

        if not actions:
            if reason is None:
                if position is not None:
                    reason = f"No action required. Maxprice {position['maxPrice']} Buyprice {position['buyPrice']}"
                else:
                    reason = "No action required"
            self._emit_check(asset, price, reason,
                             amount=position["cryptoAmount"] if position else 0.0)

        asset.history.push(price)
        self.events.emit("last-prices", {"market": market, "prices": asset.history.last_n(5)})
        asset.step_index += 1
        return actions

    async def _unwind_steps(self, asset: Asset, batch: Batch, price: float) -> Optional[FillResult]:
        stop = stop_loss_signal(batch, price)
        if stop is not None:
            return await self._sell(asset, batch, batch.remaining_crypto, price, stop)

        step = batch.next_step()
        if step is None:
            # Plan exhausted with crypto left over: fall back to the full ladder
            signal = evaluate_exit(batch, asset.history, price, self.params)
            if signal is None:
                batch.wait_index = next_wait_index(batch, price, self.params)
                return None
            return await self._sell(asset, batch, batch.remaining_crypto, price, signal)

        if price >= step.threshold_price(batch.buy_price):
            step.peak_price = max(step.peak_price, price)
        if not step_ready(batch, step, price, self.params):
            return None

        amount = self._step_amount(batch, step)
        rejection = self.guard.check_sell(amount, price)
        if rejection:
            step.completed = True
            step.skipped = True
            self.logger.warning(f"[{asset.instrument}] ⏭️ Step +{step.threshold_percent:g}% skipped: {rejection}")
            return None

        signal = ExitSignal(
            ExitKind.MULTI_STEP,
            f"Step +{step.threshold_percent:g}%: sell {step.sell_percent:g}% (peak {step.peak_price})",
        )
        return await self._sell(asset, batch, amount, price, signal, step=step)

    @staticmethod
    def _step_amount(batch: Batch, step: SellStep) -> float:
        pending = [s for s in batch.sell_steps if not s.completed]
        if pending and pending[-1] is step:
            return batch.remaining_crypto
        return min(batch.crypto_amount * step.sell_percent / 100, batch.remaining_crypto)

    # --- EXECUTION LEGS ---

    async def _settle_wallet(self, fill: FillResult):
        if not self.venue.is_live:
            self.ledger.apply_fill(fill)
            return
        try:
            self.ledger.sync(await self.venue.get_available_balance(fill.instrument.quote))
        except VenueError as e:
            self.logger.warning(f"⚠️ Balance refresh failed, applying fill locally: {e}")
            self.ledger.apply_fill(fill)

    async def _open_batch(self, asset: Asset, price: float, quote_amount: float, reason: str) -> Optional[Batch]:
        market = asset.instrument.symbol
        async with self.ledger.transaction():
            rejection = self.guard.check_buy(quote_amount, self.ledger.balance)
            if rejection:
                self.logger.warning(f"[{market}] 🛑 BUY SKIPPED: {rejection}")
                return None
            try:
                fill = await self.venue.place_market_order(Side.BUY, asset.instrument, quote_amount, price)
            except VenueError as e:
                self.logger.error(f"[{market}] ❌ Buy failed, will re-evaluate next tick: {e}")
                return None
            await self._settle_wallet(fill)

            batch = Batch.open(fill.price, fill.quote_amount, fill.base_amount,
                               self.settings.stop_loss_percent, list(self.settings.sell_steps))
            asset.batches.append(batch)
            self.ledger.record_buy(asset, batch)

            self.logger.info(f"[{market}] 🟢 BUY {batch.crypto_amount:.8f} @ {batch.buy_price} for €{batch.buy_amount:.2f} - {reason}")
            self.events.emit("buy-price", {"market": market, "price": batch.buy_price})
            self.events.emit("batch-created", {
                "market": market,
                "batchId": batch.id,
                "buyPrice": batch.buy_price,
                "buyAmount": batch.buy_amount,
                "cryptoAmount": batch.crypto_amount,
                "stopLossPrice": batch.stop_loss.trigger_price,
                "sellSteps": [[s.threshold_percent, s.sell_percent] for s in batch.sell_steps],
            })
            self.events.emit("wallet", {"balance": self.ledger.balance})
            index = self._emit_check(asset, price, reason, amount=batch.buy_amount, action=Side.BUY.value)
        self._audit(asset, Side.BUY.value, batch.buy_amount, batch.buy_price, reason, index)
        return batch

    async def _sell(self, asset: Asset, batch: Batch, crypto: float, price: float,
                    signal: ExitSignal, step: Optional[SellStep] = None) -> Optional[FillResult]:
        market = asset.instrument.symbol
        async with self.ledger.transaction():
            rejection = self.guard.check_sell(crypto, price)
            if rejection is None and not signal.may_realize_loss:
                # Only stop loss and manual exits may sell under cost
                rejection = self.guard.check_no_loss(crypto, price, batch.cost_of(crypto))
            if rejection:
                self.logger.warning(f"[{market}] 🛑 SELL SKIPPED ({signal.kind.value}): {rejection}")
                return None
            try:
                fill = await self.venue.place_market_order(Side.SELL, asset.instrument, crypto, price)
            except VenueError as e:
                # Batch and step stay untouched, the exit is re-evaluated next tick
                self.logger.error(f"[{market}] ❌ Sell failed, will re-evaluate next tick: {e}")
                return None
            await self._settle_wallet(fill)

            batch.apply_sell(fill.base_amount, fill.quote_amount)
            if step is not None:
                step.completed = True
                step.executed_price = fill.price
                step.executed_at = utc_now_iso()
                step.executed_amount = fill.base_amount

            self.logger.info(
                f"[{market}] 🔴 SELL {fill.base_amount:.8f} @ {fill.price} (bought at {batch.buy_price}) "
                f"for €{fill.quote_amount:.2f} - {signal.reason}"
            )
            if signal.kind is ExitKind.STOP_LOSS:
                self.events.emit("stop-loss", {
                    "market": market, "batchId": batch.id, "price": fill.price,
                    "triggerPrice": batch.stop_loss.trigger_price, "proceeds": fill.quote_amount,
                })
            elif step is not None:
                self.events.emit("multi-step-sell", {
                    "market": market, "batchId": batch.id,
                    "thresholdPercent": step.threshold_percent, "sellPercent": step.sell_percent,
                    "amount": fill.base_amount, "price": fill.price, "proceeds": fill.quote_amount,
                    "remainingPercent": batch.remaining_percent,
                })

            if not batch.is_active:
                profit = self.ledger.record_completion(asset, batch)
                asset.batches.remove(batch)
                self.events.emit("batch-completed", {
                    "market": market, "batchId": batch.id, "proceeds": batch.realized_proceeds,
                    "profit": profit, "profitPercent": profit_percent(batch.buy_amount, batch.realized_proceeds),
                })
                if not asset.active_batches:
                    self.events.emit("buy-price", {"market": market, "price": "-"})
                    self.events.emit("max-price", {"market": market, "price": "-"})

            asset.cooldown_until = asset.step_index + self.cooldown_ticks - 1
            self.events.emit("wallet", {"balance": self.ledger.balance})
            index = self._emit_check(asset, price, signal.reason, amount=fill.quote_amount, action=Side.SELL.value)
        self._audit(asset, Side.SELL.value, fill.quote_amount, fill.price, signal.reason, index)
        return fill

    # --- MANUAL CONTROLS ---

    async def manual_buy(self, asset: Asset, price: Optional[float], amount: Optional[float] = None) -> Optional[Batch]:
        market = asset.instrument.symbol
        if price is None:
            self.logger.info(f"[{market}] Manual BUY ignored - no price available")
            return None
        async with self._lock_for(asset):
            if len(asset.active_batches) >= self.settings.max_active_batches:
                self.logger.info(f"[{market}] Manual BUY ignored - {len(asset.active_batches)} batch(es) already open")
                return None
            self.logger.info(f"[{market}] Manual BUY triggered")
            quote = amount if amount is not None else self.next_buy_amount(asset)
            batch = await self._open_batch(asset, price, quote, "Manual Buy")
            if batch is not None:
                self.events.emit("max-price", {"market": market, "price": batch.peak_price})
            return batch

    async def manual_sell(self, asset: Asset, price: Optional[float], quote_value: Optional[float] = None) -> float:
        """
        Sells the whole position, or roughly `quote_value` worth of it, oldest
        batch first. An explicit user action: may realize a loss.
        Returns the net proceeds.
        """
        market = asset.instrument.symbol
        if price is None or not asset.active_batches:
            self.logger.info(f"[{market}] Manual SELL ignored - no open batches or no price available")
            return 0.0
        async with self._lock_for(asset):
            self.logger.info(f"[{market}] Manual SELL triggered")
            signal = ExitSignal(ExitKind.MANUAL, "Manual Sell")
            proceeds = 0.0
            remaining_value = quote_value
            for batch in list(asset.active_batches):
                crypto = batch.remaining_crypto
                if remaining_value is not None:
                    if remaining_value <= 0:
                        break
                    crypto = min(crypto, remaining_value / price)
                    remaining_value -= crypto * price
                fill = await self._sell(asset, batch, crypto, price, signal)
                if fill is not None:
                    proceeds += fill.quote_amount
            return proceeds

    # --- OUTPUT ---

    def _emit_check(self, asset: Asset, price: float, reason: str, amount: float,
                    action: Optional[str] = None) -> Optional[int]:
        index = None
        event_time = None
        if action is not None:
            index = asset.trade_index
            asset.trade_index += 1
            event_time = utc_now_iso()
        self.events.emit("check", {
            "market": asset.instrument.symbol,
            "amount": amount,
            "price": price,
            "reason": reason,
            "action": action,
            "wallet": self.ledger.balance,
            "eventIndex": index,
            "eventTime": event_time,
        })
        return index

    def _audit(self, asset: Asset, action: str, amount: float, price: float, reason: str,
               index: Optional[int]):
        if self.audit_log is not None:
            self.audit_log.log_trade(asset.instrument.symbol, action, amount, price, reason,
                                     self.ledger.balance, index)
