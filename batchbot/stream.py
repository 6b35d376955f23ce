# batchbot/stream.py
"""
Resilient streaming connection manager.

One websocket transport multiplexes a ticker subscription per instrument.
Channels can die silently while the socket stays open, so transport health
says nothing about channel health: every subscription is watched for
staleness and repaired on its own. Transport-level failures trigger a full,
bounded reconnect-and-resubscribe cycle.
"""
import asyncio
import json
import math
import time
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp

from .config import StreamSettings
from .errors import BatchBotError, ConfigError, StreamFatalError, TransportNotOpenError
from .events import EventBus
from .history import PriceHistory
from .models import Instrument, PriceTick, StreamClosed, StreamError, StreamEvent, StreamState, Subscription

RECOVERABLE_ERRORS = (BatchBotError, aiohttp.ClientError, OSError, asyncio.TimeoutError)


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_ticker(data: Dict[str, Any]) -> Optional[float]:
    """
    Collapses a ticker payload into one price: last trade price, else the
    bid/ask mid, else whichever side is present. None means drop the tick.
    """
    price = _to_float(data.get("lastPrice"))
    if price is None:
        price = _to_float(data.get("price"))
    if price is None:
        bid = _to_float(data.get("bestBid"))
        ask = _to_float(data.get("bestAsk"))
        if bid is not None and ask is not None:
            price = (bid + ask) / 2
        else:
            price = bid if bid is not None else ask
    if price is None or not math.isfinite(price) or price <= 0:
        return None
    return price


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential reconnect backoff: base, 2*base, 4*base ... capped."""
    return min(base * 2 ** (attempt - 1), cap)


class Transport:
    """The single multiplexed connection carrying every subscription."""

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    async def open(self):
        raise NotImplementedError

    async def subscribe(self, instrument: Instrument):
        raise NotImplementedError

    async def unsubscribe(self, instrument: Instrument):
        raise NotImplementedError

    def frames(self) -> AsyncIterator[Dict[str, Any]]:
        raise NotImplementedError

    def parse_tick(self, frame: Dict[str, Any]) -> Optional[Tuple[str, Optional[float]]]:
        """(market id, price) for ticker frames, None for anything else."""
        raise NotImplementedError

    def describe_error(self, frame: Dict[str, Any]) -> Optional[str]:
        return None

    async def close(self):
        raise NotImplementedError

    async def shutdown(self):
        await self.close()


class BitvavoTransport(Transport):
    """Bitvavo v2 websocket, ticker channel."""

    def __init__(self, url: str, logger, heartbeat: float = 30.0):
        self.url = url
        self.logger = logger
        self.heartbeat = heartbeat
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_open(self) -> bool:
        return self.ws is not None and not self.ws.closed

    async def open(self):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        self.ws = await self._session.ws_connect(self.url, heartbeat=self.heartbeat)

    async def _send(self, payload: Dict[str, Any]):
        if not self.is_open:
            raise TransportNotOpenError("WebSocket is not open")
        await self.ws.send_json(payload)

    async def subscribe(self, instrument: Instrument):
        await self._send({"action": "subscribe",
                          "channels": [{"name": "ticker", "markets": [instrument.market_id]}]})

    async def unsubscribe(self, instrument: Instrument):
        await self._send({"action": "unsubscribe",
                          "channels": [{"name": "ticker", "markets": [instrument.market_id]}]})

    async def frames(self) -> AsyncIterator[Dict[str, Any]]:
        ws = self.ws
        if ws is None:
            return
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    self.logger.warning(f"Unparseable frame dropped: {msg.data[:80]!r}")
                    continue
                if isinstance(data, dict):
                    yield data
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise ConnectionError(f"WebSocket error: {ws.exception()}")

    def parse_tick(self, frame: Dict[str, Any]) -> Optional[Tuple[str, Optional[float]]]:
        if frame.get("event") != "ticker":
            return None
        return frame.get("market"), normalize_ticker(frame)

    def describe_error(self, frame: Dict[str, Any]) -> Optional[str]:
        if "error" in frame:
            return f"{frame.get('errorCode', '?')}: {frame['error']}"
        return None

    async def close(self):
        ws, self.ws = self.ws, None
        if ws is not None and not ws.closed:
            await ws.close()

    async def shutdown(self):
        await self.close()
        if self._session is not None:
            await self._session.close()
            self._session = None


class SubscriptionHandle:
    """
    Explicit handle on one instrument's channel. `resubscribe()` registers a
    fresh channel and returns the replacement handle; this one goes inactive.
    """
    def __init__(self, manager: "StreamManager", instrument: Instrument,
                 callback: Callable[[StreamEvent], None], generation: int):
        self._manager = manager
        self.instrument = instrument
        self.callback = callback
        self.generation = generation
        self.active = True

    def deliver(self, event: StreamEvent):
        if self.active:
            self.callback(event)

    async def resubscribe(self) -> "SubscriptionHandle":
        return await self._manager._register(self.instrument, self.callback, self.generation + 1, repair=True)

    async def close(self):
        await self._manager._unregister(self)


class StreamManager:
    """
    Owns the transport, one subscription per instrument, the warm-up
    barrier, staleness repair and reconnect-with-backoff.
    """
    def __init__(self, transport: Transport, instruments: Sequence[Instrument],
                 histories: Dict[str, PriceHistory], required_length: int,
                 settings: StreamSettings, events: EventBus, logger,
                 on_initialized: Optional[Callable[[], None]] = None,
                 on_fatal: Optional[Callable[[StreamFatalError], None]] = None,
                 on_price: Optional[Callable[[Instrument, float, float], None]] = None,
                 clock: Callable[[], float] = time.time, sleep=asyncio.sleep):
        self.transport = transport
        self.instruments = list(instruments)
        self.histories = histories
        self.required_length = required_length
        self.settings = settings
        self.events = events
        self.logger = logger
        self.on_initialized = on_initialized
        self.on_fatal = on_fatal
        self.on_price = on_price
        self._clock = clock
        self._sleep = sleep

        self.state = StreamState.DISCONNECTED
        self.subscriptions: Dict[str, Subscription] = {i.symbol: Subscription(i) for i in self.instruments}
        self._handles: Dict[str, SubscriptionHandle] = {}
        self._by_market_id = {i.market_id: i for i in self.instruments}

        self.reconnect_attempts = 0
        self.backoff_history: List[float] = []
        self.repair_count = 0

        self._running = False
        self._recovering = False
        self._barrier_raised = False
        self._reader_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._recovery_task: Optional[asyncio.Task] = None

    # --- PUBLIC API ---

    @property
    def is_initialized(self) -> bool:
        return self._barrier_raised

    def latest_price(self, instrument: Instrument) -> Optional[float]:
        sub = self.subscriptions.get(instrument.symbol)
        return sub.last_price if sub else None

    def get_all_prices(self) -> Dict[str, float]:
        return {sym: sub.last_price for sym, sub in self.subscriptions.items() if sub.last_price is not None}

    async def start(self):
        """Opens the transport and subscribes every instrument. Any failure aborts the whole startup."""
        if not self.instruments:
            raise ConfigError("No instruments to stream")

        self._running = True
        self.state = StreamState.CONNECTING
        n = len(self.instruments)
        self.logger.info(f"⚡ CONNECTING STREAM FOR {n} INSTRUMENT(S)...")
        try:
            await self.transport.open()
            self._start_reader()
            for i, instrument in enumerate(self.instruments):
                self.logger.info(f"Subscribing to {instrument} ({i + 1}/{n})...")
                await self._register(instrument, self._on_tick, 0)
                if i < n - 1:
                    await self._sleep(self.settings.subscribe_delay_seconds)
        except RECOVERABLE_ERRORS as e:
            self.logger.error(f"❌ Stream startup failed: {e}")
            await self.close()
            self.state = StreamState.FAILED
            raise StreamFatalError(f"Stream startup failed: {e}") from e

        self.state = StreamState.LIVE
        self.logger.info(f"✅ Subscriptions active for {n} instrument(s)")
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    def request_teardown(self):
        """Ask loops to stop at their next safe point. An in-flight reconnect attempt is not interrupted."""
        self._running = False

    async def close(self, grace: float = 2.0):
        self.request_teardown()
        current = asyncio.current_task()
        for task in (self._monitor_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if self._recovery_task is not None and self._recovery_task is not current and not self._recovery_task.done():
            await asyncio.wait({self._recovery_task}, timeout=grace)
            if not self._recovery_task.done():
                self._recovery_task.cancel()
        for handle in list(self._handles.values()):
            try:
                await handle.close()
            except RECOVERABLE_ERRORS as e:
                self.logger.debug(f"Unsubscribing {handle.instrument}: {e}")
        try:
            await self.transport.shutdown()
        except RECOVERABLE_ERRORS as e:
            self.logger.debug(f"Transport shutdown: {e}")
        self.state = StreamState.CLOSED
        self.logger.info("⏹️ Stream closed")

    # --- SUBSCRIPTIONS ---

    async def _register(self, instrument: Instrument, callback, generation: int,
                        repair: bool = False) -> SubscriptionHandle:
        if repair:
            await self.transport.unsubscribe(instrument)
        await self.transport.subscribe(instrument)
        old = self._handles.get(instrument.market_id)
        if old is not None:
            old.active = False
        handle = SubscriptionHandle(self, instrument, callback, generation)
        self._handles[instrument.market_id] = handle
        return handle

    async def _unregister(self, handle: SubscriptionHandle):
        handle.active = False
        if self._handles.get(handle.instrument.market_id) is handle:
            del self._handles[handle.instrument.market_id]
            if self.transport.is_open:
                await self.transport.unsubscribe(handle.instrument)

    def _on_tick(self, event: StreamEvent):
        if not isinstance(event, PriceTick):
            return
        instrument, price, ts = event.instrument, event.price, event.timestamp
        sub = self.subscriptions[instrument.symbol]
        sub.last_tick = (price, ts)
        self.events.emit("current-price", {"market": instrument.symbol, "price": price})

        if not sub.initialized:
            history = self.histories[instrument.symbol]
            history.push(price)
            self.logger.debug(f"[{instrument}] Collecting prices {len(history)}/{self.required_length}")
            self.events.emit("last-prices", {"market": instrument.symbol, "prices": history.last_n(5)})
            if len(history) >= self.required_length:
                sub.initialized = True
                self.logger.info(f"[{instrument}] Stream initialized")
                self._check_barrier()

        if self.on_price is not None:
            self.on_price(instrument, price, ts)

    def _check_barrier(self):
        """Raised exactly once, when every instrument has a full warm-up window."""
        if self._barrier_raised or not self._running:
            return
        if not all(s.initialized for s in self.subscriptions.values()):
            return
        self._barrier_raised = True
        self.logger.info("All instruments initialized, starting decision loop...")
        self.events.emit("checkstart", [
            {"market": sym, "prices": self.histories[sym].values()} for sym in self.subscriptions
        ])
        if self.on_initialized is not None:
            self.on_initialized()

    def _dispatch(self, frame: Dict[str, Any]):
        error = self.transport.describe_error(frame)
        if error:
            self.logger.warning(f"⚠️ Stream error frame: {error}")
            return
        parsed = self.transport.parse_tick(frame)
        if parsed is None:
            return
        market_id, price = parsed
        if price is None:
            return
        handle = self._handles.get(market_id)
        if handle is None:
            return
        handle.deliver(PriceTick(self._by_market_id[market_id], price, self._clock()))

    # --- STALENESS ---

    async def check_staleness(self, now: Optional[float] = None) -> List[Instrument]:
        """Repairs every subscription silent for longer than the stale threshold. Returns the repaired ones."""
        now = self._clock() if now is None else now
        repaired = []
        for sub in list(self.subscriptions.values()):
            if sub.last_tick is None:
                continue
            silence = now - sub.last_update
            if silence <= self.settings.stale_after_seconds:
                continue
            self.logger.warning(f"⚠️ [{sub.instrument}] No updates for {round(silence)}s, repairing subscription")
            if await self._repair(sub, now):
                repaired.append(sub.instrument)
        return repaired

    async def _repair(self, sub: Subscription, now: float) -> bool:
        instrument = sub.instrument
        handle = self._handles.get(instrument.market_id)
        try:
            if handle is not None:
                new_handle = await handle.resubscribe()
            else:
                new_handle = await self._register(instrument, self._on_tick, sub.generation + 1)
        except RECOVERABLE_ERRORS as e:
            self.logger.error(f"❌ [{instrument}] Subscription repair failed, retrying on next check: {e}")
            return False

        self.subscriptions[instrument.symbol] = Subscription(
            instrument, last_tick=(sub.last_price, now), initialized=sub.initialized,
            generation=new_handle.generation,
        )
        self.repair_count += 1
        self.logger.info(f"✅ [{instrument}] Subscription repaired")
        return True

    async def _monitor_loop(self):
        while self._running:
            await asyncio.sleep(self.settings.staleness_check_seconds)
            if self.state is StreamState.LIVE and not self._recovering:
                await self.check_staleness()

    # --- TRANSPORT RECOVERY ---

    def _start_reader(self):
        self._reader_task = asyncio.create_task(self._reader_loop())

    async def _reader_loop(self):
        event: StreamEvent
        try:
            async for frame in self.transport.frames():
                try:
                    self._dispatch(frame)
                except (KeyError, TypeError, ValueError) as e:
                    self.logger.warning(f"Malformed frame dropped: {e}")
            event = StreamClosed("transport closed")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            event = StreamError(f"{type(e).__name__}: {e}")
        self._on_transport_event(event)

    def _on_transport_event(self, event: StreamEvent):
        if not self._running or self._recovering or self.state is not StreamState.LIVE:
            return
        if isinstance(event, StreamError):
            self.state = StreamState.ERROR
            self.logger.error(f"⚠️ WebSocket error detected: {event.message}")
        else:
            self.state = StreamState.CLOSED
            self.logger.warning("⚠️ WebSocket closed unexpectedly")

        # Give the vendor side time to settle instead of racing its own reconnect
        self.logger.info(f"⏰ Scheduling reconnection attempt in {self.settings.recovery_delay_seconds:g}s...")
        self._recovering = True
        self._recovery_task = asyncio.create_task(self._delayed_recovery())

    async def _delayed_recovery(self):
        await self._sleep(self.settings.recovery_delay_seconds)
        await self.recover()

    async def _close_stale(self):
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
        try:
            await self.transport.close()
        except RECOVERABLE_ERRORS as e:
            self.logger.debug(f"Closing previous WebSocket: {e}")

    async def _resubscribe_all(self):
        n = len(self.instruments)
        for i, instrument in enumerate(self.instruments):
            self.logger.info(f"Re-subscribing to {instrument} ({i + 1}/{n})...")
            generation = self.subscriptions[instrument.symbol].generation + 1
            try:
                await self._register(instrument, self._on_tick, generation)
            except TransportNotOpenError:
                self.logger.warning(f"  {instrument}: WebSocket still connecting, will retry...")
                await self._sleep(self.settings.not_open_retry_seconds)
                await self._register(instrument, self._on_tick, generation)
            if i < n - 1:
                await self._sleep(self.settings.resubscribe_delay_seconds)

    async def recover(self) -> bool:
        """
        Full transport recovery: close, back off, reopen, stabilize, resubscribe.
        Returns True once LIVE again; emits a fatal stream error when attempts run out.
        """
        s = self.settings
        self._recovering = True
        self.state = StreamState.RECONNECTING
        try:
            for attempt in range(1, s.max_reconnect_attempts + 1):
                if not self._running:
                    self.logger.info("Reconnection abandoned: stream is shutting down")
                    return False
                self.reconnect_attempts = attempt
                self.logger.info(f"🔄 Reconnecting WebSocket (attempt {attempt}/{s.max_reconnect_attempts})...")
                try:
                    await self._close_stale()
                    delay = backoff_delay(attempt, s.backoff_base_seconds, s.backoff_cap_seconds)
                    self.backoff_history.append(delay)
                    await self._sleep(delay)
                    if not self._running:
                        return False
                    await self.transport.open()
                    self._start_reader()
                    await self._sleep(s.stabilize_seconds)
                    await self._resubscribe_all()
                except RECOVERABLE_ERRORS as e:
                    self.logger.error(f"❌ WebSocket reconnection attempt {attempt} failed: {e}")
                    continue

                if not self._running:
                    await self._close_stale()
                    return False

                now = self._clock()
                for sym, sub in list(self.subscriptions.items()):
                    self.subscriptions[sym] = Subscription(
                        sub.instrument,
                        last_tick=(sub.last_price, now) if sub.last_tick else None,
                        initialized=sub.initialized,
                        generation=self._handles[sub.instrument.market_id].generation,
                    )
                self.state = StreamState.LIVE
                self.logger.info(f"✅ WebSocket reconnected, all {len(self.instruments)} instruments re-subscribed")
                return True

            self.state = StreamState.FAILED
            message = f"WebSocket connection failed after {s.max_reconnect_attempts} attempts. Please restart."
            self.logger.critical(f"⛔ {message}")
            self.events.emit("stream-error", {"message": message})
            if self.on_fatal is not None:
                self.on_fatal(StreamFatalError(message))
            return False
        finally:
            self._recovering = False
