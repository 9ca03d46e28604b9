"""
Technical indicators computed from Yahoo Finance price history.
"""

import logging

import pandas as pd
import yfinance as yf

from smartalerts.errors import MarketDataError
from .assets import AssetRegistry

logger = logging.getLogger(__name__)


def rsi(closes: pd.Series, period: int = 14) -> float:
    """Relative Strength Index (Wilder smoothing), 0-100."""
    delta = closes.diff().dropna()
    gains = delta.clip(lower=0).ewm(alpha=1 / period, adjust=False).mean()
    losses = (-delta.clip(upper=0)).ewm(alpha=1 / period, adjust=False).mean()
    avg_gain = float(gains.iloc[-1])
    avg_loss = float(losses.iloc[-1])
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def macd(closes: pd.Series, fast: int = 12, slow: int = 26) -> float:
    """MACD line: fast EMA minus slow EMA."""
    fast_ema = closes.ewm(span=fast, adjust=False).mean()
    slow_ema = closes.ewm(span=slow, adjust=False).mean()
    return float(fast_ema.iloc[-1] - slow_ema.iloc[-1])


def sma(closes: pd.Series, period: int = 20) -> float:
    return float(closes.tail(period).mean())


def ema(closes: pd.Series, period: int = 20) -> float:
    return float(closes.ewm(span=period, adjust=False).mean().iloc[-1])


INDICATORS = {
    "RSI": rsi,
    "MACD": macd,
    "SMA": sma,
    "EMA": ema,
}

# Enough daily candles for the slowest indicator to settle
MIN_CANDLES = 30


class IndicatorCalculator:
    """Computes indicator values for an asset's USD pair."""

    def __init__(self, registry: AssetRegistry, history_days: int = 90):
        self.registry = registry
        self.history_days = history_days

    def closes(self, asset: str) -> pd.Series:
        """
        Fetch daily closing prices.

        Raises:
            MarketDataError: If no usable history is available
        """
        ticker = self.registry.yahoo_ticker(asset)
        try:
            hist = yf.Ticker(ticker).history(period=f"{self.history_days}d")
        except Exception as e:
            raise MarketDataError(f"History unavailable for {ticker}: {e}") from e

        if hist is None or hist.empty or "Close" not in hist:
            raise MarketDataError(f"No historical data available: {ticker}")

        closes = hist["Close"].dropna()
        if len(closes) < MIN_CANDLES:
            raise MarketDataError(
                f"Not enough history for {ticker}: {len(closes)} candles"
            )
        return closes

    def value(self, asset: str, indicator: str) -> float:
        """
        Current value of an indicator.

        Raises:
            MarketDataError: If the indicator is unknown or history is missing
        """
        func = INDICATORS.get(indicator.upper())
        if func is None:
            raise MarketDataError(f"Unknown technical indicator: {indicator}")
        value = func(self.closes(asset))
        logger.debug("%s %s = %.4f", asset, indicator, value)
        return value
