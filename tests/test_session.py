"""
Trading session wiring: warm-up to first decision, restore from a saved
snapshot, admin controls, reset and the fatal stream path.
"""

from __future__ import annotations

import json
import os

import pytest

from batchbot.config import BotConfig
from batchbot.errors import ConfigError, StreamFatalError
from batchbot.models import Batch
from batchbot.persistence import StateStore
from batchbot.session import TradingSession
from tests.conftest import BTC, settle

# 2.5 minutes at 10s per tick: 15 warm-up ticks
WARM_UP = [102.0] * 13 + [100.3, 100.6]


@pytest.fixture
def make_session(tmp_path, transport, venue, events, logger, clock, recording_sleep):
    def _make(**trading) -> TradingSession:
        raw = {
            "system": {"shutdown_grace_seconds": 0.1},
            "trading": {"instruments": ["BTC/EUR"], "buy_amount": 100.0, "price_window_minutes": 2.5, **trading},
            "stream": {"staleness_check_seconds": 3600},
        }
        config = BotConfig.from_mapping(raw, env={})
        store = StateStore(str(tmp_path / "data"), logger)
        # Same directories StateStore.init_storage() creates at startup
        os.makedirs(store.history_dir, exist_ok=True)
        return TradingSession(config, venue, transport, events, store, logger,
                              clock=clock, sleep=recording_sleep)
    return _make


async def warm_up(transport, prices=WARM_UP):
    for price in prices:
        transport.push_tick(BTC, price)
    await settle(100)


class TestDecisionFlow:
    @pytest.mark.asyncio
    async def test_warm_up_then_first_buy(self, make_session, transport, clock, events):
        session = make_session()
        await session.start()
        try:
            assert session.config.trading.window_length == 15
            await warm_up(transport)
            assert session.stream.is_initialized
            asset = session.assets["BTC/EUR"]
            # The decision loop has already visited the asset once
            assert asset.last_check_time == clock.now
            assert events.latest("checkstart") is not None

            transport.push_tick(BTC, 101.0)
            await settle()
            # Interval not elapsed yet
            assert await session.run_once(now=clock.now + 5) == []

            actions = await session.run_once(now=clock.now + 10)

            assert actions == ["buy"]
            assert session.ledger.balance == pytest.approx(400.0)
            assert len(asset.active_batches) == 1
            assert "1.003" in events.latest("check", "BTC/EUR")["reason"]
            with open(session.store.state_file, encoding="utf-8") as f:
                saved = json.load(f)
            assert saved["wallet"] == pytest.approx(400.0)
            assert saved["assets"][0]["batches"][0]["buyPrice"] == 101.0
        finally:
            await session.stop()
        assert events.latest("shutdown") is not None

    @pytest.mark.asyncio
    async def test_invalid_config_fails_before_streaming(self, make_session, transport):
        session = make_session()
        session.config = session.config.with_instruments([])
        with pytest.raises(ConfigError):
            await session.start()
        assert transport.opened == 0


class TestRestore:
    @pytest.mark.asyncio
    async def test_preserved_wallet_and_batches(self, make_session, events):
        batch = Batch.open(100.0, 100.0, 0.9975, 15.0)
        preserved = {
            "wallet": 400.0,
            "assets": [{"market": "BTC/EUR", "batches": [batch.to_dict()], "realizedProfit": 1.25,
                        "tradeCount": 3}],
        }
        session = make_session()
        await session.start(preserved)
        try:
            asset = session.assets["BTC/EUR"]
            assert session.ledger.balance == 400.0
            assert asset.active_batches[0].id == batch.id
            assert asset.trade_count == 3
            assert events.latest("buy-price", "BTC/EUR")["price"] == 100.0
            state = session.request_current_state()
            assert state["wallet"] == 400.0
            assert state["tradingMode"] == "simulated"
            assert state["positions"][0]["market"] == "BTC/EUR"
        finally:
            await session.stop()

    @pytest.mark.asyncio
    async def test_fresh_start_uses_start_wallet(self, make_session):
        session = make_session()
        await session.start()
        try:
            assert session.ledger.balance == 500.0
            assert session.request_current_state()["positions"] == []
        finally:
            await session.stop()


class TestAdminControls:
    @pytest.mark.asyncio
    async def test_manual_buy_and_sell(self, make_session, transport):
        session = make_session()
        await session.start()
        try:
            await warm_up(transport)
            assert await session.manual_buy("BTC-EUR")
            assert session.ledger.balance == pytest.approx(400.0)
            assert session.grand_total() == pytest.approx(400.0 + 100.0 * 0.9975)

            proceeds = await session.manual_sell("btc/eur")

            assert proceeds == pytest.approx(100.0 * 0.9975 * 0.9975)
            assert session.ledger.balance == pytest.approx(400.0 + proceeds)
            assert not session.assets["BTC/EUR"].active_batches
        finally:
            await session.stop()

    @pytest.mark.asyncio
    async def test_unknown_market_is_ignored(self, make_session):
        session = make_session()
        await session.start()
        try:
            assert await session.manual_buy("DOGE/EUR") is False
            assert await session.manual_sell("not a market") == 0.0
        finally:
            await session.stop()

    @pytest.mark.asyncio
    async def test_reset_archives_and_clears(self, make_session, transport, events):
        session = make_session()
        await session.start()
        await warm_up(transport)
        await session.manual_buy("BTC/EUR")

        await session.reset()

        assert session.assets == {}
        assert session.ledger is None
        assert events.latest("reset-complete") is not None
        assert events.latest("buy-price", "BTC/EUR") is None
        assert await session.store.load() is None


class TestStreamFailure:
    @pytest.mark.asyncio
    async def test_startup_failure_is_fatal(self, make_session, transport, events):
        transport.fail_subscribe = {"BTC-EUR"}
        session = make_session()
        with pytest.raises(StreamFatalError):
            await session.start()
        assert "startup failed" in events.latest("error")["message"]
        assert not session.running

    @pytest.mark.asyncio
    async def test_exhausted_reconnects_halt_trading(self, make_session, transport, events):
        session = make_session()
        await session.start()
        try:
            transport.open_failures = 100
            assert await session.stream.recover() is False
            assert session.halted
            assert not session.running
            assert session.request_current_state()["halted"] is True
            assert "Please restart" in events.latest("error")["message"]
        finally:
            await session.stop()


class TestDecisionPassFailures:
    @pytest.mark.asyncio
    async def test_repeated_failures_halt_trading(self, make_session, transport, clock, events, monkeypatch):
        session = make_session()
        await session.start()
        try:
            await warm_up(transport)

            async def unparseable_fill(asset, price):
                raise ValueError("could not convert string to float: 'n/a'")

            monkeypatch.setattr(session.engine, "process", unparseable_fill)
            for n in (1, 2):
                assert await session.run_pass(now=clock.now + 10 * n) == []
                assert not session.halted
                assert session.running

            assert await session.run_pass(now=clock.now + 30) == []

            assert session.halted
            assert not session.running
            assert session.request_current_state()["halted"] is True
            message = events.latest("error")["message"]
            assert "3 times in a row" in message
            assert "ValueError" in message
        finally:
            await session.stop()

    @pytest.mark.asyncio
    async def test_a_good_pass_resets_the_count(self, make_session, transport, clock, monkeypatch):
        session = make_session()
        await session.start()
        try:
            await warm_up(transport)
            outcomes = iter([True, True, False, True, True])

            async def sometimes_broken(asset, price):
                if next(outcomes):
                    raise ValueError("bad fee")
                return []

            monkeypatch.setattr(session.engine, "process", sometimes_broken)
            for n in range(1, 6):
                await session.run_pass(now=clock.now + 10 * n)

            assert not session.halted
            assert session.running
        finally:
            await session.stop()
