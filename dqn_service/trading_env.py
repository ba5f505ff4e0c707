"""
Trading Environment Simulator for DQN Training

Implements a Gymnasium-compatible environment that replays historical bars
for offline training:
- Seven graded actions from strong sell to strong buy
- Position sizing against the current bar, P&L realized on the next bar
- Proportional transaction costs and slippage
- Penalty for exceeding the position limit
- Termination at the last bar or when the portfolio loses 30%

The simulator is deterministic given its bars: no randomness is involved in
stepping, so identical action sequences always produce identical rewards.
"""

import gymnasium as gym
from gymnasium import spaces
import numpy as np
import pandas as pd
from datetime import datetime
from typing import Optional, Tuple, Dict, Any, List, Union
from enum import IntEnum
import logging

from .agent_config import EnvironmentConfig
from .errors import ConfigError, EnvironmentExhaustedError
from .indicators import INDICATOR_COLUMNS, prepare_bars
from .state_encoder import MarketState, StateEncoder

logger = logging.getLogger(__name__)


class Actions(IntEnum):
    """Discrete action space for the trading agent"""
    STRONG_SELL = 0
    SELL = 1
    WEAK_SELL = 2
    HOLD = 3
    WEAK_BUY = 4
    BUY = 5
    STRONG_BUY = 6


# Signed fraction of the position limit traded by each action
ACTION_TABLE = [-1.0, -0.7, -0.3, 0.0, 0.3, 0.7, 1.0]

# Episode ends once portfolio value falls to this fraction of initial capital
TERMINATION_VALUE_FRACTION = 0.7

RISK_PENALTY = 0.1

# Bars per price/volume window in the market state
LOOKBACK = 5


class TradingEnvironmentSimulator(gym.Env):
    """
    A Gymnasium environment replaying historical bars.

    Observation:
    - MarketState with a 5-bar price/volume window, 14 technical indicators,
      portfolio state [value_ratio, cash_ratio, position_ratio, pnl_ratio],
      risk metrics and a regime label. Use `encode()` (or a StateEncoder)
      to obtain the vector matching observation_space.

    Action Space:
    - Discrete(7): STRONG_SELL .. STRONG_BUY

    Reward:
    - Change in portfolio value (after costs) divided by initial capital
    - -0.1 when the position exceeds the position limit
    """

    metadata = {"render_modes": ["human", "ansi"]}

    def __init__(
        self,
        bars: Union[pd.DataFrame, List[Dict[str, Any]]],
        config: EnvironmentConfig,
        state_size: int = 52,
        action_size: int = len(Actions),
        render_mode: Optional[str] = None,
    ):
        """
        Initialize the simulator.

        Args:
            bars: Historical bars (DataFrame or list of dicts) with at least
                a 'close' column
            config: Environment configuration
            state_size: Length of the encoded observation
            action_size: Must equal the number of simulator actions
            render_mode: How to render the environment

        Raises:
            ConfigError: if the bars or action size cannot be simulated
        """
        super().__init__()

        if action_size != len(Actions):
            raise ConfigError(
                f"Simulator supports exactly {len(Actions)} actions, got {action_size}"
            )

        self.df = self._prepare(bars)
        self.config = config
        self.render_mode = render_mode

        self.initial_capital = config.initial_capital
        self.cost_rate = config.transaction_cost_rate + config.slippage_rate
        self.position_limit = config.position_limit_fraction
        self.last_index = len(self.df) - 1

        self._closes = self.df['close'].to_numpy(dtype=np.float64)
        self._volumes = self.df['volume'].to_numpy(dtype=np.float64)
        self._indicators = self.df[INDICATOR_COLUMNS].to_numpy(dtype=np.float64)

        self.encoder = StateEncoder(state_size)
        self.action_space = spaces.Discrete(len(Actions))
        self.observation_space = spaces.Box(
            low=-np.inf, high=np.inf, shape=(state_size,), dtype=np.float32
        )

        self._reset_run_state()

    @staticmethod
    def _prepare(bars: Union[pd.DataFrame, List[Dict[str, Any]]]) -> pd.DataFrame:
        if isinstance(bars, pd.DataFrame):
            df = bars.reset_index(drop=True)
            if 'close' not in df.columns:
                raise ConfigError("Bars must contain a 'close' column")
            if not set(INDICATOR_COLUMNS).issubset(df.columns):
                df = prepare_bars(df.to_dict('records'))
        else:
            if not bars:
                raise ConfigError("No bars supplied")
            try:
                df = prepare_bars(bars)
            except ValueError as e:
                raise ConfigError(str(e)) from e

        if len(df) < 2:
            raise ConfigError(f"Need at least 2 bars to simulate, got {len(df)}")
        if (df['close'] <= 0).any() or df['close'].isna().any():
            raise ConfigError("Close prices must be positive")
        return df

    def _reset_run_state(self):
        self.step_index = 0
        self.cash = float(self.initial_capital)
        self.position = 0.0
        self.portfolio_value = float(self.initial_capital)
        self.done = False
        self.peak_value = self.portfolio_value
        self.max_drawdown = 0.0
        self.total_trades = 0
        self.total_costs = 0.0

    def reset(
        self,
        seed: Optional[int] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Tuple[MarketState, Dict[str, Any]]:
        """Start a fresh run at the first bar"""
        super().reset(seed=seed)
        self._reset_run_state()
        return self.get_state(), self._get_info()

    def _window(self, values: np.ndarray) -> List[float]:
        """LOOKBACK values ending at step_index, left-padded with the first value"""
        start = max(0, self.step_index - LOOKBACK + 1)
        window = values[start:self.step_index + 1]
        if len(window) < LOOKBACK:
            window = np.concatenate([np.full(LOOKBACK - len(window), window[0]), window])
        return window.tolist()

    def _volatility(self, prices: np.ndarray) -> float:
        """Annualized standard deviation of simple returns"""
        if len(prices) < 2:
            return 0.0
        returns = np.diff(prices) / prices[:-1]
        return float(np.std(returns) * np.sqrt(252))

    def _detect_regime(self) -> int:
        start = max(0, self.step_index - LOOKBACK + 1)
        prices = self._closes[start:self.step_index + 1]
        if len(prices) < 3:
            return 0

        trend = (prices[-1] - prices[0]) / prices[0]
        volatility = self._volatility(prices)

        if volatility > 0.3:
            return 3  # High volatility
        if trend > 0.02:
            return 0  # Bull market
        if trend < -0.02:
            return 1  # Bear market
        return 2  # Sideways

    def _portfolio_state(self, price: float) -> List[float]:
        pv = self.portfolio_value
        if pv > 0:
            cash_ratio = self.cash / pv
            position_ratio = self.position * price / pv
        else:
            cash_ratio = 0.0
            position_ratio = 0.0
        return [
            pv / self.initial_capital,
            cash_ratio,
            position_ratio,
            (pv - self.initial_capital) / self.initial_capital,
        ]

    def _risk_metrics(self, price: float) -> List[float]:
        pv = self.portfolio_value
        exposure = abs(self.position * price) / pv if pv > 0 else 0.0
        current_drawdown = (self.peak_value - pv) / self.peak_value if self.peak_value > 0 else 0.0
        start = max(0, self.step_index - LOOKBACK + 1)
        return [
            min(pv / self.initial_capital, 2.0),
            exposure,
            min(current_drawdown / self.config.max_drawdown_fraction, 2.0),
            self._volatility(self._closes[start:self.step_index + 1]),
        ]

    def get_state(self) -> MarketState:
        """Market snapshot at the current bar"""
        price = float(self._closes[self.step_index])
        return MarketState(
            prices=self._window(self._closes),
            volumes=self._window(self._volumes),
            technical_indicators=self._indicators[self.step_index].tolist(),
            portfolio_state=self._portfolio_state(price),
            risk_metrics=self._risk_metrics(price),
            market_regime=self._detect_regime(),
            timestamp=datetime.now(),
        )

    def latest_state(self) -> MarketState:
        """
        Snapshot at the last bar for a flat portfolio (live serving).

        Leaves the simulator exhausted until the next reset().
        """
        self._reset_run_state()
        self.step_index = self.last_index
        self.done = True
        return self.get_state()

    def encode(self, state: MarketState) -> np.ndarray:
        return self.encoder(state)

    def _get_info(self) -> Dict[str, Any]:
        """Get info dict for current state"""
        return {
            "step": self.step_index,
            "cash": self.cash,
            "position": self.position,
            "portfolio_value": self.portfolio_value,
            "total_trades": self.total_trades,
            "total_costs": self.total_costs,
            "max_drawdown": self.max_drawdown,
            "return_pct": (self.portfolio_value - self.initial_capital) / self.initial_capital * 100,
        }

    def step(self, action: int) -> Tuple[MarketState, float, bool, bool, Dict[str, Any]]:
        """
        Execute one step in the environment.

        Returns:
            next_state, reward, terminated, truncated, info

        Raises:
            ValueError: for an action outside the action space
            EnvironmentExhaustedError: when called after the run ended
        """
        if self.done:
            raise EnvironmentExhaustedError(
                f"Episode ended at step {self.step_index}; call reset()"
            )
        if not 0 <= int(action) < len(ACTION_TABLE):
            raise ValueError(f"Invalid action {action}")

        current_price = float(self._closes[self.step_index])
        next_price = float(self._closes[self.step_index + 1])
        value_before = self.portfolio_value

        # Size against the current bar
        delta = ACTION_TABLE[int(action)] * self.position_limit * value_before / current_price
        cost = abs(delta) * current_price * self.cost_rate
        self.position += delta
        self.cash -= delta * current_price + cost
        if delta != 0:
            self.total_trades += 1
            self.total_costs += cost

        # Realize on the next bar
        self.portfolio_value = self.cash + self.position * next_price

        reward = (self.portfolio_value - value_before) / self.initial_capital
        if abs(self.position * current_price) > self.position_limit * value_before:
            reward -= RISK_PENALTY

        self.peak_value = max(self.peak_value, self.portfolio_value)
        if self.peak_value > 0:
            drawdown = (self.peak_value - self.portfolio_value) / self.peak_value
            self.max_drawdown = max(self.max_drawdown, drawdown)

        self.step_index += 1
        self.done = bool(
            self.step_index >= self.last_index
            or self.portfolio_value <= TERMINATION_VALUE_FRACTION * self.initial_capital
        )

        if self.render_mode == "human":
            self.render()

        return self.get_state(), float(reward), self.done, False, self._get_info()

    def render(self):
        """Render the environment"""
        info = self._get_info()
        output = (
            f"Step {info['step']}: value={info['portfolio_value']:.2f} "
            f"cash={info['cash']:.2f} position={info['position']:.4f} "
            f"return={info['return_pct']:.2f}%"
        )
        if self.render_mode == "human":
            print(output)
        return output

    def close(self):
        """Clean up resources"""
        pass
