# batchbot/market_engine.py
import ccxt.async_support as ccxt
from typing import List, Optional

from .config import ExchangeSettings
from .models import Instrument


class MarketEngine:
    """
    Manages the REST connection to the exchange.
    Responsible for initial diagnostics, authentication verification,
    and providing the ccxt client to the ExecutionService.
    """
    def __init__(self, settings: ExchangeSettings, logger, client: Optional[ccxt.Exchange] = None):
        self.settings = settings
        self.logger = logger
        self.client = client

    def _build_client(self) -> ccxt.Exchange:
        ex_class = getattr(ccxt, self.settings.name)
        return ex_class({
            'apiKey': self.settings.api_key,
            'secret': self.settings.secret,
            'timeout': self.settings.network_timeout_ms,
            'enableRateLimit': True,
            'options': {'defaultType': 'spot'}
        })

    async def initialize(self, authenticate: bool = True) -> bool:
        """
        Connects to the exchange and performs a connectivity test.
        Returns False if the diagnostic fails.
        """
        name = self.settings.name.upper()
        if self.client is None:
            self.client = self._build_client()

        self.logger.info("📡 TESTING EXCHANGE CONNECTION...")
        try:
            # --- DIAGNOSTIC PHASE 1: PUBLIC API ---
            # Checks internet connection and exchange status
            await self.client.load_markets()

            # --- DIAGNOSTIC PHASE 2: PRIVATE API ---
            # Checks API Key validity and Permissions (live mode only)
            if authenticate:
                await self.client.fetch_balance()

            self.logger.info(f"   ✅ {name:<10} | Markets: {len(self.client.markets or {})} | Auth: {'OK' if authenticate else 'SKIPPED'}")
            return True

        except ccxt.AuthenticationError:
            self.logger.critical(f"   ❌ {name:<10} | AUTH FAILED: Invalid API Key or Secret.")
        except ccxt.PermissionDenied:
            self.logger.critical(f"   ❌ {name:<10} | PERMISSION DENIED: Key missing 'View'/'Trade' permissions or IP whitelist.")
        except ccxt.AccountSuspended:
            self.logger.critical(f"   ❌ {name:<10} | ACCOUNT SUSPENDED: Contact support immediately.")
        except ccxt.RequestTimeout:
            self.logger.error(f"   ❌ {name:<10} | TIMEOUT: Exchange API is slow or down.")
        except ccxt.ExchangeNotAvailable:
            self.logger.error(f"   ❌ {name:<10} | MAINTENANCE: Exchange is currently offline.")
        except ccxt.BaseError as e:
            self.logger.critical(f"   ❌ {name:<10} | UNKNOWN ERROR: {str(e)}")
        return False

    async def list_instruments(self, quote: str) -> List[Instrument]:
        """Active spot markets quoted in `quote`, sorted by symbol."""
        markets = await self.client.load_markets()
        found = []
        for market in markets.values():
            if market.get('quote') != quote or not market.get('active', True):
                continue
            if market.get('spot') is False:
                continue
            found.append(Instrument(market['base'], market['quote']))
        return sorted(set(found), key=lambda i: i.symbol)

    async def shutdown(self):
        """
        Gracefully closes the REST API session.
        """
        if self.client is not None:
            await self.client.close()
