# batchbot/economics.py
"""
Fee-aware trade arithmetic and the pre-trade gate.

Fees are deducted from the traded amount on both sides (never added on top):
buying 100 EUR at a 0.25% fee buys 99.75 EUR worth of crypto; selling
crypto worth 100 EUR pays out 99.75 EUR.
"""
import logging
from typing import Optional

DEFAULT_FEE_RATE = 0.0025
DEFAULT_MIN_PROFIT_MULTIPLIER = 1.006
DEFAULT_MIN_TRADE_AMOUNT = 5.0


def fee_on_buy(quote_amount: float, fee_rate: float = DEFAULT_FEE_RATE) -> float:
    return quote_amount * fee_rate


def crypto_received(quote_amount: float, price: float, fee_rate: float = DEFAULT_FEE_RATE) -> float:
    return (quote_amount - fee_on_buy(quote_amount, fee_rate)) / price


def fee_on_sell(gross_quote: float, fee_rate: float = DEFAULT_FEE_RATE) -> float:
    return gross_quote * fee_rate


def net_proceeds(crypto_amount: float, price: float, fee_rate: float = DEFAULT_FEE_RATE) -> float:
    gross = crypto_amount * price
    return gross - fee_on_sell(gross, fee_rate)


def round_trip_factor(price_ratio: float, fee_rate: float = DEFAULT_FEE_RATE) -> float:
    """Fraction of the original quote amount left after buying and selling at `price_ratio`."""
    return price_ratio * (1 - fee_rate) ** 2


def breakeven_multiplier(fee_rate: float = DEFAULT_FEE_RATE) -> float:
    return 1 / (1 - fee_rate) ** 2


def is_profitable_multiplier(multiplier: float, fee_rate: float = DEFAULT_FEE_RATE) -> bool:
    return round_trip_factor(multiplier, fee_rate) > 1


def clears_min_profit(buy_price: float, price: float,
                      multiplier: float = DEFAULT_MIN_PROFIT_MULTIPLIER) -> bool:
    return price >= buy_price * multiplier


def profit_percent(buy_amount: float, proceeds: float) -> float:
    if buy_amount <= 0:
        return 0.0
    return (proceeds - buy_amount) / buy_amount * 100


class TradeGuard:
    """
    Pre-trade gatekeeper: can this leg be executed at all?
    Returns a human readable rejection, or None when the leg may go ahead.
    """
    def __init__(self, fee_rate: float, min_trade_amount: float, logger: logging.Logger):
        self.fee_rate = fee_rate
        self.min_trade_amount = min_trade_amount
        self.logger = logger

    def check_buy(self, quote_amount: float, wallet_balance: float) -> Optional[str]:
        if quote_amount < self.min_trade_amount:
            return f"Buy amount €{quote_amount:.2f} below venue minimum €{self.min_trade_amount:.2f}"
        if quote_amount > wallet_balance:
            return f"Insufficient funds: need €{quote_amount:.2f}, wallet €{wallet_balance:.2f}"
        return None

    def check_sell(self, crypto_amount: float, price: float) -> Optional[str]:
        if crypto_amount <= 0:
            return "Nothing to sell"
        estimated = net_proceeds(crypto_amount, price, self.fee_rate)
        if estimated < self.min_trade_amount:
            return f"Estimated proceeds €{estimated:.2f} below venue minimum €{self.min_trade_amount:.2f}"
        return None

    def check_no_loss(self, crypto_amount: float, price: float, cost_basis: float) -> Optional[str]:
        estimated = net_proceeds(crypto_amount, price, self.fee_rate)
        if estimated < cost_basis:
            return f"Estimated proceeds €{estimated:.2f} under cost €{cost_basis:.2f}"
        return None
