"""
Market State Encoding

Maps a MarketState snapshot to the fixed-length vector the value network
consumes. The layout is, in order:

1. price window, min-max normalized to [0, 1] (a flat window maps to 0.5)
2. volume window, log-normalized as log(v + 1) / 20
3. technical indicators, unchanged (normalized upstream)
4. portfolio state [value_ratio, cash_ratio, position_ratio, unrealized_pnl_ratio], unchanged
5. risk metrics, unchanged
6. market regime, one-hot over 4 categories

The result is truncated or zero-padded to exactly state_size elements.
"""

from datetime import datetime
from typing import List, Optional

import numpy as np
from pydantic import BaseModel, Field

N_REGIMES = 4

REGIME_NAMES = ["Bull Market", "Bear Market", "Sideways", "High Volatility"]

# Names for the default layout (5-bar lookback window, 14 indicators)
FEATURE_NAMES = [
    'Price_T-5', 'Price_T-4', 'Price_T-3', 'Price_T-2', 'Price_T-1',
    'Volume_T-5', 'Volume_T-4', 'Volume_T-3', 'Volume_T-2', 'Volume_T-1',
    'RSI', 'MACD', 'BB_Upper', 'BB_Lower', 'SMA_20', 'EMA_12', 'EMA_26',
    'ATR', 'ADX', 'Stoch_K', 'Stoch_D', 'Williams_R', 'CCI', 'ROC',
    'Portfolio_Value', 'Cash_Ratio', 'Position_Size', 'Unrealized_PnL',
    'VaR_95', 'Volatility', 'Beta', 'Sharpe_Ratio',
    'Bull_Market', 'Bear_Market', 'Sideways', 'High_Volatility',
]


class MarketState(BaseModel):
    """Read-only market snapshot produced by a market-data collaborator"""
    prices: List[float] = Field(..., min_length=1, description="Windowed close prices, oldest first")
    volumes: List[float] = Field(default_factory=list, description="Windowed volumes, oldest first")
    technical_indicators: List[float] = Field(default_factory=list)
    portfolio_state: List[float] = Field(
        default_factory=list,
        description="[value_ratio, cash_ratio, position_ratio, unrealized_pnl_ratio]"
    )
    risk_metrics: List[float] = Field(default_factory=list)
    market_regime: int = Field(default=0, ge=0, lt=N_REGIMES)
    timestamp: datetime = Field(default_factory=datetime.now)

    class Config:
        frozen = True


def regime_name(regime: int) -> str:
    if 0 <= regime < len(REGIME_NAMES):
        return REGIME_NAMES[regime]
    return "Unknown"


def feature_name(index: int) -> str:
    """Human-readable name of a state-vector position"""
    if 0 <= index < len(FEATURE_NAMES):
        return FEATURE_NAMES[index]
    return f"Feature_{index}"


def _normalize_prices(prices: np.ndarray) -> np.ndarray:
    lo, hi = prices.min(), prices.max()
    if hi - lo > 1e-12:
        return (prices - lo) / (hi - lo)
    return np.full_like(prices, 0.5)


def encode_market_state(state: MarketState, state_size: int) -> np.ndarray:
    """
    Encode a market snapshot into a float32 vector of length state_size.

    Pure and deterministic: the same snapshot always yields a bit-identical
    vector.
    """
    prices = np.asarray(state.prices, dtype=np.float64)
    volumes = np.asarray(state.volumes, dtype=np.float64)

    regime = np.zeros(N_REGIMES, dtype=np.float64)
    regime[state.market_regime] = 1.0

    parts = [
        _normalize_prices(prices),
        np.log(np.maximum(volumes, 0.0) + 1.0) / 20.0,
        np.asarray(state.technical_indicators, dtype=np.float64),
        np.asarray(state.portfolio_state, dtype=np.float64),
        np.asarray(state.risk_metrics, dtype=np.float64),
        regime,
    ]
    vector = np.concatenate(parts)

    encoded = np.zeros(state_size, dtype=np.float32)
    n = min(state_size, vector.shape[0])
    encoded[:n] = vector[:n]
    return encoded


class StateEncoder:
    """Callable encoder bound to a fixed state size"""

    def __init__(self, state_size: int):
        self.state_size = state_size

    def __call__(self, state: MarketState) -> np.ndarray:
        return encode_market_state(state, self.state_size)

    def feature_names(self, limit: Optional[int] = None) -> List[str]:
        n = self.state_size if limit is None else min(limit, self.state_size)
        return [feature_name(i) for i in range(n)]
