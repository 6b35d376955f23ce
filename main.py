# main.py
import asyncio
import signal
import sys
from typing import List

import questionary
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from batchbot.config import MAX_INSTRUMENTS, BotConfig, load_config
from batchbot.errors import BatchBotError, ConfigError, StreamFatalError, VenueError
from batchbot.events import EventBus
from batchbot.execution import ExecutionService
from batchbot.logger import AsyncAuditLogger, setup_console_logger
from batchbot.market_engine import MarketEngine
from batchbot.models import Instrument
from batchbot.persistence import StateStore
from batchbot.session import TradingSession
from batchbot.stream import BitvavoTransport

# --- UI HELPER FUNCTIONS ---

async def startup_selection(venue: ExecutionService, quote: str) -> List[Instrument]:
    """Interactive CLI to pick the instruments to trade."""
    print("\n🚀 BATCH BOT FLEET COMMAND \n")
    available = await venue.list_instruments(quote)
    symbols = await questionary.checkbox(
        f"Select up to {MAX_INSTRUMENTS} markets to trade:",
        choices=[i.symbol for i in available],
    ).ask_async()
    if not symbols:
        print("No markets selected. Exiting.")
        sys.exit()
    if len(symbols) > MAX_INSTRUMENTS:
        print(f"At most {MAX_INSTRUMENTS} markets can be traded at once. Exiting.")
        sys.exit()
    return [Instrument.parse(s) for s in symbols]


def _fmt(value, fmt: str = "{:,.4f}") -> str:
    if value is None or value == "-":
        return "-"
    return fmt.format(value)


def generate_dashboard(session: TradingSession, events: EventBus):
    """
    Creates the Rich Console Dashboard layout.
    Shows live prices, open batches and the last decision per market.
    """
    state = session.request_current_state()
    prices = session.prices()

    # 1. Market Table
    market_table = Table(title=f"📡 Live Market Feed ({state['tradingMode'].upper()})")
    market_table.add_column("Market", style="cyan")
    market_table.add_column("Price", justify="right", style="green")
    market_table.add_column("Buy", justify="right")
    market_table.add_column("Max", justify="right")
    market_table.add_column("Batches", justify="right")
    market_table.add_column("Last Decision", style="dim")

    for symbol, asset in session.assets.items():
        check = events.latest("check", symbol) or {}
        position = asset.position()
        market_table.add_row(
            symbol,
            _fmt(prices.get(symbol)),
            _fmt(position["buyPrice"] if position else None),
            _fmt(position["maxPrice"] if position else None),
            str(len(asset.active_batches)),
            str(check.get("reason", "Collecting prices..."))[:60],
        )

    # 2. P&L Table
    pnl_table = Table(title="💰 Realized Results")
    pnl_table.add_column("Market", style="magenta")
    pnl_table.add_column("Invested", justify="right")
    pnl_table.add_column("Profit", justify="right")
    pnl_table.add_column("Trades", justify="right")
    for symbol, asset in session.assets.items():
        style = "green" if asset.realized_profit >= 0 else "red"
        pnl_table.add_row(symbol, f"€{asset.invested:,.2f}",
                          f"[{style}]€{asset.realized_profit:,.4f}[/{style}]", str(asset.trade_count))

    # Layout Construction
    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )
    layout["top"].split_row(
        Layout(Panel(market_table)),
        Layout(Panel(pnl_table))
    )

    if session.halted:
        error = events.latest("error") or {}
        reason = error.get("message", "Trading halted")
        footer = Panel(f"[bold red]TRADING HALTED: {reason}[/bold red]", style="white on red")
    else:
        footer = Panel(
            f"[bold gold1]WALLET: €{_fmt(state['wallet'], '{:,.2f}')} | "
            f"GRAND TOTAL: €{session.grand_total():,.2f}[/bold gold1]",
            style="white on blue",
        )
    layout["bottom"].update(footer)
    layout["bottom"].size = 3
    return layout

# --- MAIN CONTROLLER ---

class BatchBot:
    def __init__(self, config: BotConfig):
        self.config = config
        self.logger = setup_console_logger("BatchBot", config.system.log_level)
        self.audit_log = AsyncAuditLogger(config.storage.audit_log, self.logger)
        self.events = EventBus(self.logger)
        self.store = StateStore(config.storage.state_dir, self.logger, config.storage.max_archives)
        self.market = MarketEngine(config.exchange, self.logger)
        self.venue = ExecutionService(config.system.mode, config.trading.fee_rate, self.logger, market=self.market)
        self.transport = BitvavoTransport(config.exchange.ws_url, self.logger)
        self.session = None
        self._stop = asyncio.Event()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop.set)
            except NotImplementedError:
                # Windows: KeyboardInterrupt still reaches asyncio.run
                pass

    async def run(self):
        self._install_signal_handlers()
        print("Initializing Diagnostic Checks...")
        is_healthy = await self.market.initialize(authenticate=self.config.is_live)
        if not is_healthy:
            print("❌ Diagnostic Failed. Check API Keys / connectivity.")
            await self.market.shutdown()
            return

        if not self.config.trading.instruments:
            self.config = self.config.with_instruments(
                await startup_selection(self.venue, self.config.exchange.quote_currency))

        await self.store.init_storage()
        await self.audit_log.start()
        preserved = await self.store.load() if self.config.system.resume else None

        self.session = TradingSession(self.config, self.venue, self.transport, self.events,
                                      self.store, self.logger, self.audit_log)
        try:
            await self.session.start(preserved)

            console = Console()
            with Live(console=console, refresh_per_second=4) as live:
                while not self._stop.is_set() and not self.session.halted:
                    live.update(generate_dashboard(self.session, self.events))
                    try:
                        await asyncio.wait_for(self._stop.wait(), timeout=0.25)
                    except asyncio.TimeoutError:
                        pass
                live.update(generate_dashboard(self.session, self.events))
        except (ConfigError, StreamFatalError, VenueError) as e:
            self.logger.critical(f"❌ Could not start trading: {e}")
        finally:
            print("Shutting down resources...")
            await self.session.stop()


def main():
    try:
        config = load_config("config.yaml")
    except ConfigError as e:
        print(f"❌ {e}")
        sys.exit(1)

    try:
        import uvloop
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
    except ImportError:
        pass

    try:
        asyncio.run(BatchBot(config).run())
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
    except BatchBotError as e:
        # Last-resort logging at the process boundary
        print(f"\n❌ Fatal: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
