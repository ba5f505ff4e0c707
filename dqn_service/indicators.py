"""
Technical Indicators Calculator

Prepares historical bars for the training simulator and pre-computes the
normalized indicator vector that goes into each MarketState. Indicators are
computed once per data set with `ta`, then scaled to small, roughly
unit-range values so the state encoder can pass them through unchanged.
"""

import pandas as pd
import numpy as np
from typing import List
from ta.trend import SMAIndicator, EMAIndicator, ADXIndicator, MACD, CCIIndicator
from ta.momentum import RSIIndicator, StochasticOscillator, WilliamsRIndicator, ROCIndicator
from ta.volatility import BollingerBands, AverageTrueRange

# Column order of the indicator vector (matches the state feature names)
INDICATOR_COLUMNS: List[str] = [
    'rsi', 'macd', 'bb_upper', 'bb_lower', 'sma_20', 'ema_12', 'ema_26',
    'atr', 'adx', 'stoch_k', 'stoch_d', 'williams_r', 'cci', 'roc',
]

# Windowed indicators from `ta` index past the end of short series
MIN_WINDOWED_ROWS = 28


def _zeros(df: pd.DataFrame) -> pd.Series:
    return pd.Series(0.0, index=df.index)


def calculate_indicators(df: pd.DataFrame) -> pd.DataFrame:
    """
    Calculate normalized technical indicators.

    Args:
        df: DataFrame with columns ['open', 'high', 'low', 'close', 'volume']

    Returns:
        DataFrame with the INDICATOR_COLUMNS added (raw columns preserved)
    """
    df = df.copy()
    close, high, low = df['close'], df['high'], df['low']
    long_enough = len(df) >= MIN_WINDOWED_ROWS

    # RSI
    df['rsi'] = RSIIndicator(close=close, window=14).rsi() / 100

    # MACD (relative to price)
    macd = MACD(close=close, window_slow=26, window_fast=12, window_sign=9)
    df['macd'] = macd.macd() / close

    # Bollinger Bands (distance from price)
    bb = BollingerBands(close=close, window=20, window_dev=2)
    df['bb_upper'] = bb.bollinger_hband() / close - 1
    df['bb_lower'] = bb.bollinger_lband() / close - 1

    # Moving averages (distance from price)
    df['sma_20'] = close / SMAIndicator(close=close, window=20).sma_indicator() - 1
    df['ema_12'] = EMAIndicator(close=close, window=12).ema_indicator() / close - 1
    df['ema_26'] = EMAIndicator(close=close, window=26).ema_indicator() / close - 1

    # Average True Range / ADX
    if long_enough:
        atr = AverageTrueRange(high=high, low=low, close=close, window=14)
        df['atr'] = atr.average_true_range() / close
        df['adx'] = ADXIndicator(high=high, low=low, close=close, window=14).adx() / 100
    else:
        df['atr'] = _zeros(df)
        df['adx'] = _zeros(df)

    # Stochastic Oscillator
    stoch = StochasticOscillator(high=high, low=low, close=close, window=14, smooth_window=3)
    df['stoch_k'] = stoch.stoch() / 100
    df['stoch_d'] = stoch.stoch_signal() / 100

    # Williams %R mapped from [-100, 0] to [0, 1]
    df['williams_r'] = (WilliamsRIndicator(high=high, low=low, close=close, lbp=14).williams_r() + 100) / 100

    # CCI (Commodity Channel Index)
    df['cci'] = (CCIIndicator(high=high, low=low, close=close, window=20).cci() / 200).clip(-1, 1)

    # Rate of change
    df['roc'] = ROCIndicator(close=close, window=12).roc() / 100

    df[INDICATOR_COLUMNS] = (
        df[INDICATOR_COLUMNS]
        .replace([np.inf, -np.inf], np.nan)
        .fillna(0.0)
    )
    return df


def prepare_bars(
    ohlcv_data: list,
    timestamp_key: str = 'timestamp',
) -> pd.DataFrame:
    """
    Prepare historical bars for the simulator.

    Only 'close' is required; missing open/high/low default to close and a
    missing volume defaults to 0.

    Args:
        ohlcv_data: List of bar dictionaries
        timestamp_key: Key for timestamp in data

    Returns:
        DataFrame sorted by timestamp with indicators
    """
    df = pd.DataFrame(ohlcv_data)

    # Normalize column names
    column_mapping = {
        'Open': 'open', 'High': 'high', 'Low': 'low',
        'Close': 'close', 'Volume': 'volume',
        'Timestamp': 'timestamp', timestamp_key: 'timestamp'
    }
    df = df.rename(columns=column_mapping)

    if 'close' not in df.columns:
        raise ValueError("Missing required column: close")

    for col in ['open', 'high', 'low']:
        if col not in df.columns:
            df[col] = df['close']
    if 'volume' not in df.columns:
        df['volume'] = 0.0

    df[['open', 'high', 'low', 'close', 'volume']] = df[
        ['open', 'high', 'low', 'close', 'volume']
    ].astype(float)

    # Sort by timestamp if present
    if 'timestamp' in df.columns:
        df = df.sort_values('timestamp').reset_index(drop=True)

    return calculate_indicators(df)
