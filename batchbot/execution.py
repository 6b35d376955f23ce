# batchbot/execution.py
import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import ccxt.async_support as ccxt

from .economics import crypto_received, fee_on_buy, fee_on_sell
from .errors import VenueError
from .market_engine import MarketEngine
from .models import FillResult, Instrument, Side

# How far back an order lookup searches after a lost acknowledgement
ORDER_LOOKBACK_MS = 60_000


async def with_retry(fn: Callable[[], Awaitable[Any]], retries: int = 3, initial_delay: float = 0.5,
                     sleep=asyncio.sleep, logger=None, label: str = "venue call"):
    """
    Retries transient network failures with a doubling delay.
    Anything that is not a ccxt.NetworkError is raised immediately.
    """
    delay = initial_delay
    for attempt in range(1, retries + 1):
        try:
            return await fn()
        except ccxt.NetworkError as e:
            if attempt >= retries:
                raise
            if logger:
                logger.warning(f"🔁 {label} failed ({e}), retry {attempt}/{retries - 1} in {delay:.2f}s")
            await sleep(delay)
            delay *= 2


class ExecutionService:
    """
    The execution venue: market orders and balance queries.

    Simulated mode applies the fee arithmetic locally (no network at all).
    Live mode places real market orders through ccxt: buys are sized by
    quote cost, sells by base amount.
    """
    def __init__(self, mode: str, fee_rate: float, logger, market: Optional[MarketEngine] = None,
                 retries: int = 3, initial_delay: float = 0.5, sleep=asyncio.sleep):
        self.mode = mode
        self.fee_rate = fee_rate
        self.logger = logger
        self.market = market
        self.retries = retries
        self.initial_delay = initial_delay
        self._sleep = sleep

    @property
    def is_live(self) -> bool:
        return self.mode == "live"

    async def _call(self, fn, label: str, instrument: Optional[Instrument] = None, side: Optional[Side] = None):
        try:
            return await with_retry(fn, retries=self.retries, initial_delay=self.initial_delay,
                                    sleep=self._sleep, logger=self.logger, label=label)
        except ccxt.BaseError as e:
            raise VenueError(f"{label} failed: {type(e).__name__}: {e}", instrument=instrument, side=side) from e

    async def place_market_order(self, side: Side, instrument: Instrument, amount: float,
                                 reference_price: float) -> FillResult:
        """
        `amount` is quote currency for buys and base currency for sells.
        `reference_price` is only used by the simulation.
        """
        if not self.is_live:
            return self._simulate(side, instrument, amount, reference_price)

        client = self.market.client
        self.logger.info(f"[{instrument}] ⚡ LIVE {side.value.upper()} | amount: {amount} | ref: {reference_price}")

        # One client order id per leg, reused by every retry of that leg
        params = {'clientOrderId': str(uuid.uuid4())}
        if side is Side.BUY:
            order = await self._submit(
                lambda: client.create_market_buy_order_with_cost(instrument.symbol, amount, params),
                "Market buy", instrument, side, params['clientOrderId'])
        else:
            order = await self._submit(
                lambda: client.create_order(instrument.symbol, 'market', 'sell', amount, None, params),
                "Market sell", instrument, side, params['clientOrderId'])

        # Some venues acknowledge before the fill is known
        if not order.get('filled') and order.get('id'):
            order = await self._call(lambda: client.fetch_order(order['id'], instrument.symbol),
                                     "Fetch order", instrument, side)
        return self._parse_order(side, instrument, order, amount, reference_price)

    async def _submit(self, send, label: str, instrument: Instrument, side: Side, client_id: str):
        """
        Sends an order write. A network failure can hide an order the venue
        already accepted, so before every re-send the venue is asked for the
        client order id; a found order is returned instead of placing another.
        """
        since = int(time.time() * 1000) - ORDER_LOOKBACK_MS
        delay = self.initial_delay
        for attempt in range(1, self.retries + 1):
            try:
                return await send()
            except ccxt.NetworkError as e:
                self.logger.warning(f"🔁 {label} failed ({e}), looking up order {client_id} "
                                    f"(attempt {attempt}/{self.retries})")
                await self._sleep(delay)
                delay *= 2
                order = await self._find_order(instrument, side, client_id, since)
                if order is not None:
                    self.logger.info(f"[{instrument}] Order {client_id} was accepted before the failure")
                    return order
                if attempt >= self.retries:
                    raise VenueError(f"{label} failed: {type(e).__name__}: {e}",
                                     instrument=instrument, side=side) from e
            except ccxt.BaseError as e:
                raise VenueError(f"{label} failed: {type(e).__name__}: {e}", instrument=instrument, side=side) from e

    async def _find_order(self, instrument: Instrument, side: Side, client_id: str,
                          since: int) -> Optional[Dict[str, Any]]:
        orders = await self._call(lambda: self.market.client.fetch_orders(instrument.symbol, since),
                                  "Look up order", instrument, side)
        for order in orders or []:
            if order.get('clientOrderId') == client_id:
                return order
        return None

    def _simulate(self, side: Side, instrument: Instrument, amount: float, price: float) -> FillResult:
        if price <= 0:
            raise VenueError(f"No valid price for {instrument}", instrument=instrument, side=side)
        if side is Side.BUY:
            fee = fee_on_buy(amount, self.fee_rate)
            crypto = crypto_received(amount, price, self.fee_rate)
            self.logger.info(f"[{instrument}] 🔵 SIMULATED BUY: €{amount:.2f} (fee: €{fee:.4f}), received {crypto:.8f}")
            return FillResult(side, instrument, base_amount=crypto, quote_amount=amount, price=price, fee=fee,
                              order_id="sim")
        gross = amount * price
        fee = fee_on_sell(gross, self.fee_rate)
        self.logger.info(f"[{instrument}] 🔵 SIMULATED SELL: {amount:.8f} = €{gross:.4f} (fee: €{fee:.4f}), received €{gross - fee:.4f}")
        return FillResult(side, instrument, base_amount=amount, quote_amount=gross - fee, price=price, fee=fee,
                          order_id="sim")

    def _parse_order(self, side: Side, instrument: Instrument, order: Dict[str, Any],
                     amount: float, reference_price: float) -> FillResult:
        filled = float(order.get('filled') or 0.0)
        cost = float(order.get('cost') or 0.0)
        average = float(order.get('average') or 0.0) or (cost / filled if filled else reference_price)

        fees = order.get('fees') or ([order['fee']] if order.get('fee') else [])
        quote_fee = sum(float(f.get('cost') or 0.0) for f in fees if f and f.get('currency') == instrument.quote)

        if filled <= 0:
            raise VenueError(f"Order {order.get('id')} for {instrument} was not filled", instrument=instrument, side=side)

        if side is Side.BUY:
            quote_amount = cost + quote_fee if cost else amount
        else:
            quote_amount = cost - quote_fee
        self.logger.info(f"[{instrument}] ✅ Order {order.get('id')} filled: {filled} @ {average} (fee €{quote_fee:.4f})")
        return FillResult(side, instrument, base_amount=filled, quote_amount=quote_amount, price=average,
                          fee=quote_fee, order_id=str(order.get('id') or ""))

    async def get_available_balance(self, asset: str) -> float:
        if not self.is_live:
            raise VenueError("Balance queries need live mode")
        balance = await self._call(lambda: self.market.client.fetch_balance(), "Fetch balance")
        return float((balance.get('free') or {}).get(asset) or 0.0)

    async def get_balances(self) -> Dict[str, float]:
        balance = await self._call(lambda: self.market.client.fetch_balance(), "Fetch balance")
        return {k: float(v) for k, v in (balance.get('free') or {}).items() if v}

    async def list_instruments(self, quote: str) -> List[Instrument]:
        if self.market is None:
            return []
        return await self._call(lambda: self.market.list_instruments(quote), "List markets")

    async def close(self):
        if self.market is not None:
            await self.market.shutdown()
