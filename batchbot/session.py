# batchbot/session.py
import asyncio
import time
import uuid
from typing import Any, Dict, List, Optional

from .config import BotConfig
from .engine import PositionEngine
from .errors import StreamFatalError, VenueError
from .events import EventBus
from .execution import ExecutionService
from .history import PriceHistory
from .ledger import Ledger
from .logger import AsyncAuditLogger
from .models import Asset, Instrument
from .persistence import StateStore
from .stream import StreamManager, Transport

CHECK_LOOP_SECONDS = 1.0
# Consecutive failed decision passes before trading halts
MAX_FAILED_PASSES = 3


class TradingSession:
    """
    Explicit session context: wallet, assets, stream and decision loop.
    Created once per run by main.py and passed by reference, never global.
    """
    def __init__(self, config: BotConfig, venue: ExecutionService, transport: Transport,
                 events: EventBus, store: StateStore, logger,
                 audit_log: Optional[AsyncAuditLogger] = None,
                 clock=time.time, sleep=asyncio.sleep):
        self.config = config
        self.venue = venue
        self.transport = transport
        self.events = events
        self.store = store
        self.logger = logger
        self.audit_log = audit_log
        self._clock = clock
        self._sleep = sleep

        self.session_id = uuid.uuid4().hex
        self.ledger: Optional[Ledger] = None
        self.engine: Optional[PositionEngine] = None
        self.stream: Optional[StreamManager] = None
        self.assets: Dict[str, Asset] = {}

        self.running = False
        self.halted = False
        self._loop_task: Optional[asyncio.Task] = None
        self._failed_passes = 0

    @property
    def instruments(self) -> List[Instrument]:
        return list(self.config.trading.instruments)

    # --- LIFECYCLE ---

    async def start(self, preserved: Optional[Dict[str, Any]] = None):
        """Validates config, restores state, then opens the stream. The decision loop waits for warm-up."""
        self.config.validate_session()
        trading = self.config.trading
        mode = self.config.system.mode

        self.ledger = Ledger(await self._initial_wallet(preserved), self.logger)
        self.engine = PositionEngine(trading, self.venue, self.ledger, self.events, self.logger, self.audit_log)
        self.assets = self._restore_assets(preserved)
        self.running = True
        self.halted = False
        self._failed_passes = 0

        if self.venue.is_live and not any(a.active_batches for a in self.assets.values()):
            await self._warn_unmanaged_holdings()

        self.logger.info(f"🚀 Session {self.session_id[:8]} | mode: {mode.upper()} | wallet: €{self.ledger.balance:.2f} | "
                         f"markets: {', '.join(i.symbol for i in self.instruments)}")
        self.events.emit("market-selected", {"markets": [i.symbol for i in self.instruments]})
        self.events.emit("trading-mode", {"mode": mode})
        self.events.emit("wallet", {"balance": self.ledger.balance})

        for asset in self.assets.values():
            position = asset.position()
            if position is not None:
                self.logger.info(f"[{asset.instrument}] ♻️ Restored {position['batches']} batch(es) @ {position['buyPrice']}")
                self.events.emit("buy-price", {"market": asset.instrument.symbol, "price": position["buyPrice"]})
                self.events.emit("max-price", {"market": asset.instrument.symbol, "price": position["maxPrice"]})

        self.stream = StreamManager(
            self.transport, self.instruments,
            {sym: asset.history for sym, asset in self.assets.items()},
            trading.window_length, self.config.stream, self.events, self.logger,
            on_initialized=self._start_decision_loop, on_fatal=self._on_stream_fatal,
            clock=self._clock, sleep=self._sleep,
        )
        try:
            await self.stream.start()
        except StreamFatalError as e:
            self.running = False
            self.events.emit("error", {"message": str(e)})
            raise

    async def _initial_wallet(self, preserved: Optional[Dict[str, Any]]) -> float:
        if self.venue.is_live:
            # Live wallet always mirrors the venue
            return await self.venue.get_available_balance(self.config.exchange.quote_currency)
        if preserved and preserved.get("wallet") is not None:
            return float(preserved["wallet"])
        return self.config.system.start_wallet

    def _restore_assets(self, preserved: Optional[Dict[str, Any]]) -> Dict[str, Asset]:
        records = {r.get("market"): r for r in (preserved or {}).get("assets") or [] if isinstance(r, dict)}
        window = self.config.trading.window_length
        assets = {}
        for instrument in self.instruments:
            history = PriceHistory(window)
            record = records.get(instrument.symbol)
            if record is not None:
                assets[instrument.symbol] = Asset.restore(instrument, history, record)
            else:
                assets[instrument.symbol] = Asset(instrument=instrument, history=history)
        return assets

    async def _warn_unmanaged_holdings(self):
        try:
            balances = await self.venue.get_balances()
        except VenueError as e:
            self.logger.warning(f"⚠️ Could not check existing holdings: {e}")
            return
        for instrument in self.instruments:
            held = balances.get(instrument.base, 0.0)
            if held > 0:
                self.logger.warning(
                    f"[{instrument}] ⚠️ Unmanaged holding of {held} {instrument.base} on the venue. "
                    f"The bot will not sell it."
                )

    def _start_decision_loop(self):
        if self._loop_task is None and self.running:
            self._loop_task = asyncio.create_task(self._decision_loop())

    async def _decision_loop(self):
        self.logger.info(f"▶️ Check loop started - evaluating trading logic every {self.config.trading.interval_seconds}s")
        while self.running:
            await self.run_pass()
            await asyncio.sleep(CHECK_LOOP_SECONDS)
        self.logger.info("⏹️ Check loop stopped")

    async def run_pass(self, now: Optional[float] = None) -> List[str]:
        """One decision pass that never kills the loop. Repeated failures halt trading."""
        try:
            actions = await self.run_once(now)
        except Exception as e:
            self._failed_passes += 1
            self.logger.exception(f"❌ Decision pass failed ({self._failed_passes}/{MAX_FAILED_PASSES}): {e}")
            if self._failed_passes >= MAX_FAILED_PASSES:
                self._halt(f"Decision loop failed {self._failed_passes} times in a row: {type(e).__name__}: {e}")
            return []
        self._failed_passes = 0
        return actions

    async def run_once(self, now: Optional[float] = None) -> List[str]:
        """
        Visits every asset whose interval has elapsed and evaluates its latest price.
        Saves state when any trade went through.
        """
        now = self._clock() if now is None else now
        interval = self.config.trading.interval_seconds
        due = []
        for symbol, asset in self.assets.items():
            price = self.stream.latest_price(asset.instrument) if self.stream else None
            if price is None:
                continue
            if asset.last_check_time is not None and now - asset.last_check_time < interval:
                continue
            asset.last_check_time = now
            due.append((asset, price))

        results = await asyncio.gather(*(self.engine.process(asset, price) for asset, price in due),
                                       return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        actions = [a for result in results if not isinstance(result, BaseException) for a in result]
        if actions:
            await self.save()
        if failures:
            # Trades of the healthy assets are saved first
            raise failures[0]
        return actions

    def _on_stream_fatal(self, error: StreamFatalError):
        self._halt(str(error))

    def _halt(self, message: str):
        self.running = False
        self.halted = True
        self.logger.critical(f"⛔ Trading halted: {message}")
        self.events.emit("error", {"message": message})

    # --- ADMIN CONTROLS ---

    def _asset(self, market: str) -> Optional[Asset]:
        try:
            return self.assets.get(Instrument.parse(market).symbol)
        except ValueError:
            return None

    async def manual_buy(self, market: str, amount: Optional[float] = None) -> bool:
        asset = self._asset(market)
        if asset is None or self.engine is None:
            self.logger.info(f"Manual BUY ignored - asset {market} not found")
            return False
        batch = await self.engine.manual_buy(asset, self.stream.latest_price(asset.instrument), amount)
        if batch is not None:
            await self.save()
        return batch is not None

    async def manual_sell(self, market: str, quote_value: Optional[float] = None) -> float:
        asset = self._asset(market)
        if asset is None or self.engine is None:
            self.logger.info(f"Manual SELL ignored - asset {market} not found")
            return 0.0
        proceeds = await self.engine.manual_sell(asset, self.stream.latest_price(asset.instrument), quote_value)
        if proceeds:
            await self.save()
        return proceeds

    def request_current_state(self) -> Dict[str, Any]:
        positions = [p for p in (a.position() for a in self.assets.values()) if p is not None]
        return {
            "wallet": self.ledger.balance if self.ledger else None,
            "tradingMode": self.config.system.mode,
            "markets": [i.symbol for i in self.instruments],
            "positions": positions,
            "halted": self.halted,
        }

    def prices(self) -> Dict[str, float]:
        return self.stream.get_all_prices() if self.stream else {}

    def grand_total(self) -> float:
        if self.ledger is None:
            return 0.0
        return self.ledger.get_grand_total(self.assets.values(), self.prices())

    def snapshot(self) -> Dict[str, Any]:
        t = self.config.trading
        return {
            "sessionId": self.session_id,
            "tradingMode": self.config.system.mode,
            "wallet": self.ledger.balance if self.ledger else None,
            "selectedMarkets": [i.symbol for i in self.instruments],
            "assets": [a.to_dict() for a in self.assets.values()],
            "tradingConfig": {
                "interval": t.interval_seconds,
                "buyAmount": t.buy_amount,
                "positionSizing": t.position_sizing,
                "sellSteps": [{"thresholdPercent": th, "sellPercent": p} for th, p in t.sell_steps],
            },
        }

    async def save(self) -> bool:
        if self.ledger is None:
            return False
        return await self.store.save(self.snapshot())

    async def _stop_loops(self):
        self.running = False
        if self.stream is not None:
            self.stream.request_teardown()
        grace = self.config.system.shutdown_grace_seconds
        if self._loop_task is not None and not self._loop_task.done():
            await asyncio.wait({self._loop_task}, timeout=grace)
            if not self._loop_task.done():
                self._loop_task.cancel()
        self._loop_task = None
        if self.stream is not None:
            await self.stream.close(grace)

    async def stop(self):
        """Cooperative shutdown: stop flag, bounded grace, save, close everything."""
        self.logger.info("Shutting down gracefully...")
        await self._stop_loops()
        await self.save()
        await self.venue.close()
        if self.audit_log is not None:
            await self.audit_log.close(self.config.system.shutdown_grace_seconds)
        self.events.emit("shutdown", {"sessionId": self.session_id})

    async def reset(self):
        """
        Tears down all session state. Open live positions are listed, never sold:
        liquidating them is left to the operator.
        """
        self.logger.info("🔄 Resetting trading session...")
        if self.venue.is_live:
            for asset in self.assets.values():
                position = asset.position()
                if position is not None:
                    self.logger.warning(
                        f"[{asset.instrument}] ⚠️ Open position of {position['cryptoAmount']:.8f} "
                        f"{asset.instrument.base} left on the venue. Sell it manually if needed."
                    )
        await self._stop_loops()
        await self.save()
        await self.store.archive()
        await self.store.clear()

        self.assets = {}
        self.ledger = None
        self.engine = None
        self.stream = None
        self.halted = False
        self.events.clear()
        self.events.emit("reset-complete", {"sessionId": self.session_id})
        self.logger.info("✅ Reset complete")
