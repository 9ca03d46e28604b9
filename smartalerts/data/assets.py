"""
Cryptocurrency asset registry.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CryptoAsset:
    """CoinGecko asset identifier with its ticker symbol."""

    id: str
    symbol: str
    name: str


KNOWN_ASSETS = (
    CryptoAsset("bitcoin", "BTC", "Bitcoin"),
    CryptoAsset("ethereum", "ETH", "Ethereum"),
    CryptoAsset("cardano", "ADA", "Cardano"),
    CryptoAsset("polkadot", "DOT", "Polkadot"),
    CryptoAsset("chainlink", "LINK", "Chainlink"),
    CryptoAsset("solana", "SOL", "Solana"),
    CryptoAsset("avalanche-2", "AVAX", "Avalanche"),
    CryptoAsset("polygon", "MATIC", "Polygon"),
)


class AssetRegistry:
    """Maps CoinGecko ids to ticker symbols."""

    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._assets: dict[str, CryptoAsset] = {a.id: a for a in KNOWN_ASSETS}

    def get(self, asset_id: str) -> Optional[CryptoAsset]:
        return self._assets.get(asset_id.lower())

    def symbol_for(self, asset_id: str) -> str:
        """Ticker symbol for an asset, falling back to the upper-cased id."""
        asset = self.get(asset_id)
        if asset is None:
            return asset_id.upper()
        return asset.symbol

    def yahoo_ticker(self, asset_id: str) -> str:
        """Yahoo Finance ticker for the asset's USD pair, e.g. BTC-USD."""
        return f"{self.symbol_for(asset_id)}-USD"

    def sync(self) -> int:
        """
        Refresh the registry from CoinGecko's coin list.

        Known assets keep their curated entries when the list has duplicate
        symbols.

        Returns:
            Number of assets in the registry after the sync
        """
        try:
            response = requests.get(f"{self.base_url}/coins/list", timeout=self.timeout)
            response.raise_for_status()
            coins = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Asset sync failed: {e}")
            return len(self._assets)

        for coin in coins:
            coin_id = coin.get("id")
            symbol = coin.get("symbol")
            if not coin_id or not symbol or coin_id in self._assets:
                continue
            self._assets[coin_id] = CryptoAsset(
                id=coin_id,
                symbol=symbol.upper(),
                name=coin.get("name") or coin_id,
            )
        return len(self._assets)

    def list_all(self) -> list[CryptoAsset]:
        return sorted(self._assets.values(), key=lambda a: a.id)
