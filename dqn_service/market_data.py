"""
Market Data Providers

The agent core only needs two things from the outside world: historical bars
to train on and a current market snapshot to decide on. Providers implement
the MarketDataProvider protocol; the default one reads from the backend's
historical-prices endpoint.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

import httpx
import numpy as np

from .agent_config import build_environment_config
from .config import settings
from .state_encoder import MarketState
from .trading_env import TradingEnvironmentSimulator

logger = logging.getLogger(__name__)


class MarketDataError(Exception):
    """The provider could not deliver data"""


class MarketDataProvider(Protocol):
    async def get_historical_bars(self, symbol: str, days: int) -> List[Dict[str, Any]]:
        ...

    async def get_market_state(self, symbol: str) -> MarketState:
        ...


def market_state_from_bars(bars: List[Dict[str, Any]], symbol: str = "UNKNOWN") -> MarketState:
    """Snapshot at the last bar for a flat portfolio, built the way the simulator builds states"""
    env = TradingEnvironmentSimulator(bars, build_environment_config(symbol))
    return env.latest_state()


class BackendMarketDataProvider:
    """
    Fetches bars from `{backend_url}/api/historical-prices/{symbol}`.

    Args:
        base_url: Backend URL (defaults to settings.backend_url)
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def get_historical_bars(self, symbol: str, days: int = 365) -> List[Dict[str, Any]]:
        """
        Raises:
            MarketDataError: on HTTP errors or an empty response
        """
        end_date = datetime.now()
        start_date = end_date - timedelta(days=days)

        async with self._client() as client:
            try:
                response = await client.get(
                    f"{self.base_url}/api/historical-prices/{symbol}",
                    params={
                        "startDate": start_date.strftime("%Y-%m-%d"),
                        "endDate": end_date.strftime("%Y-%m-%d"),
                    },
                )
            except httpx.HTTPError as e:
                raise MarketDataError(f"Failed to fetch {symbol}: {e}") from e

        if response.status_code != 200:
            raise MarketDataError(f"Backend returned HTTP {response.status_code} for {symbol}")

        prices = response.json().get("prices") or []
        if not prices:
            raise MarketDataError(f"No data available for {symbol}")

        logger.info(f"Fetched {len(prices)} bars for {symbol}")
        return prices

    async def get_market_state(self, symbol: str) -> MarketState:
        bars = await self.get_historical_bars(symbol, days=90)
        return market_state_from_bars(bars, symbol)


def generate_simulated_bars(
    days: int,
    seed: Optional[int] = None,
    start_price: float = 100.0,
) -> List[Dict[str, Any]]:
    """
    Random-walk daily bars with a slight upward bias.

    Prices move by a uniform step in [-0.96, 1.04) per day and never drop
    below 10; volumes are uniform in [100000, 1100000).
    """
    rng = np.random.default_rng(seed)
    now = datetime.now()
    price = start_price
    bars = []
    for i in range(days):
        price = max(10.0, price + (rng.random() - 0.48) * 2)
        bars.append({
            "timestamp": (now - timedelta(days=days - i)).isoformat(),
            "close": price,
            "volume": float(rng.integers(100000, 1100000)),
        })
    return bars
