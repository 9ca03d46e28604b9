"""
Market snapshot providers.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Optional

import requests

from smartalerts.database.models import utcnow
from smartalerts.errors import MarketDataError
from .assets import AssetRegistry
from .indicators import IndicatorCalculator

logger = logging.getLogger(__name__)

# Longest Retry-After wait honored before giving up on the request
MAX_RETRY_AFTER = 30.0


@dataclass
class MarketQuote:
    """Current market data for one asset."""

    asset: str
    price: float
    change_24h: float
    volume_24h: float
    market_cap: float
    timestamp: datetime

    @property
    def volume_ratio(self) -> float:
        """24h volume relative to market cap."""
        if not self.market_cap:
            return 0.0
        return self.volume_24h / self.market_cap

    @property
    def sentiment_score(self) -> float:
        """Sentiment on a 0-100 scale; 50 is neutral."""
        score = 50 + self.change_24h * 2 + self.volume_ratio * 1000
        return max(0.0, min(100.0, score))

    @property
    def risk_score(self) -> float:
        """Risk on a 0-100 scale driven by volatility and turnover."""
        score = abs(self.change_24h) * 2 + self.volume_ratio * 100
        return max(0.0, min(100.0, score))


class MarketSnapshotProvider(ABC):
    """Read-only source of current metric values."""

    @abstractmethod
    def get_value(self, asset: str, metric: str) -> float:
        """
        Current value of a metric for an asset.

        Args:
            asset: Asset identifier (e.g. "bitcoin")
            metric: "price", "sentiment", "risk", "volume" or
                "technical:<INDICATOR>"

        Raises:
            MarketDataError: If the value cannot be fetched
        """
        pass

    def prefetch(self, assets: list[str]) -> None:
        """Warm any per-asset cache before a batch of get_value calls."""
        return None


class CoinGeckoSnapshotProvider(MarketSnapshotProvider):
    """Fetches quotes from the CoinGecko simple price API."""

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        timeout: float = 10.0,
        cache_ttl: float = 30.0,
        api_key: Optional[str] = None,
        indicators: Optional[IndicatorCalculator] = None,
        max_retries: int = 2,
        retry_delay: float = 1.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.api_key = api_key
        self.indicators = indicators or IndicatorCalculator(AssetRegistry(base_url))
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._cache: dict[str, tuple[float, MarketQuote]] = {}
        self._lock = threading.Lock()

    def get_value(self, asset: str, metric: str) -> float:
        if metric.startswith("technical:"):
            return self.indicators.value(asset, metric.split(":", 1)[1])

        quote = self.get_quote(asset)
        if metric == "price":
            return quote.price
        elif metric == "volume":
            return quote.volume_24h
        elif metric == "sentiment":
            return quote.sentiment_score
        elif metric == "risk":
            return quote.risk_score
        raise MarketDataError(f"Unknown metric: {metric}")

    def prefetch(self, assets: list[str]) -> None:
        """Fetch quotes for several assets in one request."""
        missing = [a for a in dict.fromkeys(assets) if self._cached(a) is None]
        if not missing:
            return
        try:
            self._fetch(missing)
        except MarketDataError as e:
            # Individual lookups retry per asset
            logger.warning(f"Batch quote fetch failed: {e}")

    def get_quote(self, asset: str) -> MarketQuote:
        """
        Current quote for one asset, served from cache while fresh.

        Raises:
            MarketDataError: If the asset is unknown or the API fails
        """
        quote = self._cached(asset)
        if quote is not None:
            return quote
        quotes = self._fetch([asset])
        if asset not in quotes:
            raise MarketDataError(f"No market data available for {asset}")
        return quotes[asset]

    def _cached(self, asset: str) -> Optional[MarketQuote]:
        with self._lock:
            entry = self._cache.get(asset)
        if entry is None:
            return None
        fetched_at, quote = entry
        if time.monotonic() - fetched_at > self.cache_ttl:
            return None
        return quote

    def _fetch(self, assets: list[str]) -> dict[str, MarketQuote]:
        data = self._request(
            "/simple/price",
            {
                "ids": ",".join(assets),
                "vs_currencies": "usd",
                "include_24hr_change": "true",
                "include_24hr_vol": "true",
                "include_market_cap": "true",
            },
        )

        now = utcnow()
        quotes = {}
        try:
            for asset, values in data.items():
                price = values.get("usd")
                if price is None:
                    continue
                quotes[asset] = MarketQuote(
                    asset=asset,
                    price=float(price),
                    change_24h=float(values.get("usd_24h_change") or 0.0),
                    volume_24h=float(values.get("usd_24h_vol") or 0.0),
                    market_cap=float(values.get("usd_market_cap") or 0.0),
                    timestamp=now,
                )
        except (AttributeError, TypeError, ValueError) as e:
            raise MarketDataError(f"Malformed market data: {e}") from e

        stamp = time.monotonic()
        with self._lock:
            for asset, quote in quotes.items():
                self._cache[asset] = (stamp, quote)
        logger.debug(f"Fetched market data for {len(quotes)} of {len(assets)} assets")
        return quotes

    def _request(self, path: str, params: dict[str, str]) -> dict:
        """GET with retry on rate limiting and connection errors."""
        headers = {"x-cg-demo-api-key": self.api_key} if self.api_key else {}
        last_error: Optional[str] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = requests.get(
                    f"{self.base_url}{path}",
                    params=params,
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                last_error = f"Connection error: {e}"
            else:
                if response.status_code == 429:
                    last_error = "Rate limited"
                    if attempt < self.max_retries:
                        time.sleep(self._retry_after(response.headers.get("Retry-After")))
                    continue
                if not response.ok:
                    raise MarketDataError(f"HTTP {response.status_code}: {response.text}")
                try:
                    return response.json()
                except ValueError as e:
                    raise MarketDataError(f"Invalid JSON from market API: {e}") from e

            if attempt < self.max_retries:
                time.sleep(self.retry_delay * (attempt + 1))

        raise MarketDataError(last_error or "Market API unavailable")

    def _retry_after(self, value: Optional[str]) -> float:
        """Seconds to wait from a Retry-After header (delay or HTTP date)."""
        if not value:
            return self.retry_delay
        try:
            delay = float(value)
        except ValueError:
            try:
                delay = (parsedate_to_datetime(value) - utcnow()).total_seconds()
            except (TypeError, ValueError):
                logger.debug(f"Unparseable Retry-After header: {value!r}")
                return self.retry_delay
        return max(0.0, min(delay, MAX_RETRY_AFTER))
