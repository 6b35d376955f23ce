"""Shared test fixtures and stubs for BatchBot tests.

Provides a scriptable websocket transport, an instant recording sleep,
a settable clock and factories for assets, engines and stream managers.
No test touches the network.
"""

from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import aiohttp
import pytest

from batchbot.config import StreamSettings, TradingSettings
from batchbot.engine import PositionEngine
from batchbot.errors import TransportNotOpenError, VenueError
from batchbot.events import EventBus
from batchbot.execution import ExecutionService
from batchbot.history import PriceHistory
from batchbot.ledger import Ledger
from batchbot.models import Asset, Instrument
from batchbot.stream import BitvavoTransport, StreamManager, Transport, normalize_ticker

BTC = Instrument("BTC", "EUR")
ETH = Instrument("ETH", "EUR")


# ---------------------------------------------------------------------------
# Stub classes
# ---------------------------------------------------------------------------


class RecordingSleep:
    """Drop-in for asyncio.sleep that returns at once and remembers every delay."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeTransport(Transport):
    """Scriptable transport. Frames are pushed by the test; failures are armed by attributes.

    Configurable via attributes:
        open_failures: number of upcoming open() calls that raise
        fail_subscribe: market ids whose subscribe() raises a connection error
        not_open_failures: market id -> number of subscribe() calls raising TransportNotOpenError
    """

    def __init__(self) -> None:
        self.open_failures = 0
        self.fail_subscribe: set = set()
        self.not_open_failures: Dict[str, int] = {}
        # Tracking attributes for assertions
        self.opened = 0
        self.subscribed: List[str] = []
        self.unsubscribed: List[str] = []
        self.shut_down = False
        self._open = False
        self._queue: Optional[asyncio.Queue] = None

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self):
        self.opened += 1
        if self.open_failures:
            self.open_failures -= 1
            raise ConnectionError("connection refused")
        self._open = True
        self._queue = asyncio.Queue()

    async def subscribe(self, instrument: Instrument):
        mid = instrument.market_id
        if mid in self.fail_subscribe:
            raise ConnectionError(f"subscribe {mid} refused")
        if self.not_open_failures.get(mid):
            self.not_open_failures[mid] -= 1
            raise TransportNotOpenError("WebSocket is not open")
        self.subscribed.append(mid)

    async def unsubscribe(self, instrument: Instrument):
        self.unsubscribed.append(instrument.market_id)

    async def frames(self):
        queue = self._queue
        if queue is None:
            return
        while True:
            frame = await queue.get()
            if frame is None:
                return
            if isinstance(frame, Exception):
                raise frame
            yield frame

    def parse_tick(self, frame):
        if frame.get("event") != "ticker":
            return None
        return frame.get("market"), normalize_ticker(frame)

    def push_tick(self, instrument: Instrument, price: float):
        self._queue.put_nowait({"event": "ticker", "market": instrument.market_id, "lastPrice": str(price)})

    def drop(self, error: Optional[Exception] = None):
        """Simulates the socket dying: error frame or clean end of stream."""
        self._queue.put_nowait(error)

    async def close(self):
        self._open = False

    async def shutdown(self):
        await self.close()
        self.shut_down = True


class FlakyVenue(ExecutionService):
    """Simulated venue whose orders can be made to fail per side."""

    def __init__(self, logger, fee_rate: float = 0.0025) -> None:
        super().__init__("simulated", fee_rate, logger)
        self.fail_sides: set = set()
        self.orders: List[tuple] = []

    async def place_market_order(self, side, instrument, amount, reference_price):
        if side in self.fail_sides:
            raise VenueError("Insufficient balance", instrument=instrument, side=side)
        self.orders.append((side, instrument.symbol, amount, reference_price))
        return await super().place_market_order(side, instrument, amount, reference_price)


class FakeWebSocket:
    """aiohttp websocket stand-in: the test feeds raw text frames, sent frames are recorded."""

    def __init__(self) -> None:
        self.closed = False
        self.sent: List[Dict[str, Any]] = []
        self._error: Optional[BaseException] = None
        self._queue: asyncio.Queue = asyncio.Queue()

    def feed(self, text: str):
        self._queue.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=text))

    def fail(self, error: BaseException):
        self._error = error
        self._queue.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.ERROR, data=None))

    def exception(self):
        return self._error

    async def send_json(self, payload):
        self.sent.append(payload)

    async def close(self):
        self.closed = True
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self._queue.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


class SocketTransport(BitvavoTransport):
    """The real Bitvavo frame handling over a FakeWebSocket instead of the network."""

    def __init__(self, logger) -> None:
        super().__init__("wss://ws.test/v2/", logger)
        self.opened = 0

    async def open(self):
        self.opened += 1
        self.ws = FakeWebSocket()


class SlowVenue(FlakyVenue):
    """Simulated venue that yields to the event loop mid-order and traces order entry and exit."""

    def __init__(self, logger) -> None:
        super().__init__(logger)
        self.trace: List[tuple] = []

    async def place_market_order(self, side, instrument, amount, reference_price):
        self.trace.append(("enter", instrument.symbol))
        for _ in range(3):
            await asyncio.sleep(0)
        fill = await super().place_market_order(side, instrument, amount, reference_price)
        self.trace.append(("exit", instrument.symbol))
        return fill


async def settle(rounds: int = 50) -> None:
    """Lets background tasks (reader, recovery) run to their next real wait."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def drain(queue: asyncio.Queue) -> List[Dict[str, Any]]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_trading(**overrides) -> TradingSettings:
    values = dict(instruments=(BTC,), interval_seconds=10, buy_amount=100.0)
    values.update(overrides)
    return TradingSettings(**values)


def make_asset(instrument: Instrument = BTC, prices: Optional[List[float]] = None, capacity: int = 30) -> Asset:
    return Asset(instrument=instrument, history=PriceHistory(capacity, prices))


def rising_pattern() -> List[float]:
    """13 points where a tick at 101.0 matches the closest (x1.002) entry rung."""
    return [102.0] * 11 + [100.3, 100.6]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def logger():
    return logging.getLogger("batchbot.tests")


@pytest.fixture
def events(logger):
    return EventBus(logger)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def ledger(logger):
    return Ledger(500.0, logger)


@pytest.fixture
def venue(logger):
    return FlakyVenue(logger)


@pytest.fixture
def make_engine(venue, ledger, events, logger):
    def _make(**overrides) -> PositionEngine:
        return PositionEngine(make_trading(**overrides), venue, ledger, events, logger)
    return _make


@pytest.fixture
def stream_settings():
    # Monitor loop stays idle, staleness is driven by the tests
    return StreamSettings(staleness_check_seconds=3600.0)


@pytest.fixture
def make_stream(transport, events, logger, clock, recording_sleep, stream_settings):
    def _make(instruments=(BTC, ETH), required_length: int = 3, settings: Optional[StreamSettings] = None,
              custom_transport: Optional[Transport] = None, **callbacks) -> StreamManager:
        histories = {i.symbol: PriceHistory(30) for i in instruments}
        return StreamManager(custom_transport or transport, instruments, histories, required_length,
                             settings or stream_settings, events, logger,
                             clock=clock, sleep=recording_sleep, **callbacks)
    return _make


