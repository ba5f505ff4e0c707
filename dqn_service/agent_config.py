"""
DQN Agent Configuration & Performance Models

Defines the hyperparameter schema for DQN trading agents, the simulator
configuration, live risk limits and the performance report returned to
callers. Invalid hyperparameters are rejected with ConfigError when an
agent is created.
"""

from pydantic import BaseModel, Field, ValidationError, model_validator
from typing import Optional, Dict, Any, List

from .config import settings
from .errors import ConfigError


class DQNConfig(BaseModel):
    """Hyperparameters of a DQN agent (immutable once the agent exists)"""

    state_size: int = Field(
        default=52,
        gt=0,
        description="Length of the encoded market-state vector"
    )
    action_size: int = Field(
        default=7,
        gt=0,
        description="Number of discrete actions (Q-value outputs)"
    )
    learning_rate: float = Field(
        default=0.001,
        gt=0.0,
        lt=1.0,
        description="Adam learning rate for the value network"
    )
    memory_capacity: int = Field(
        default=100000,
        gt=0,
        description="Maximum number of experiences kept in replay memory"
    )
    batch_size: int = Field(
        default=32,
        gt=0,
        description="Minibatch size for experience replay"
    )
    epsilon: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Initial exploration rate"
    )
    epsilon_min: float = Field(
        default=0.01,
        ge=0.0,
        le=1.0,
        description="Exploration rate floor"
    )
    epsilon_decay: float = Field(
        default=0.995,
        gt=0.0,
        le=1.0,
        description="Multiplicative decay applied after every fit"
    )
    gamma: float = Field(
        default=0.95,
        gt=0.0,
        le=1.0,
        description="Discount factor for future rewards"
    )
    target_sync_interval: int = Field(
        default=100,
        gt=0,
        description="Environment steps between hard target-network syncs"
    )

    @model_validator(mode="after")
    def _check_relations(self) -> "DQNConfig":
        if self.batch_size > self.memory_capacity:
            raise ValueError(
                f"batch_size ({self.batch_size}) must not exceed "
                f"memory_capacity ({self.memory_capacity})"
            )
        if self.epsilon < self.epsilon_min:
            raise ValueError(
                f"epsilon ({self.epsilon}) must be >= epsilon_min ({self.epsilon_min})"
            )
        return self

    class Config:
        frozen = True
        extra = "forbid"


class EnvironmentConfig(BaseModel):
    """Static configuration of the training simulator"""

    symbol: str = Field(..., description="Symbol the historical bars belong to")
    initial_capital: float = Field(
        default_factory=lambda: settings.default_initial_capital,
        gt=0.0,
        description="Starting cash for every episode"
    )
    transaction_cost_rate: float = Field(
        default_factory=lambda: settings.default_transaction_cost_rate,
        ge=0.0,
        lt=1.0,
        description="Cost charged on traded notional"
    )
    slippage_rate: float = Field(
        default_factory=lambda: settings.default_slippage_rate,
        ge=0.0,
        lt=1.0,
        description="Slippage charged on traded notional"
    )
    max_drawdown_fraction: float = Field(
        default_factory=lambda: settings.default_max_drawdown_fraction,
        gt=0.0,
        le=1.0,
        description="Drawdown budget used to scale the risk-metric vector"
    )
    position_limit_fraction: float = Field(
        default_factory=lambda: settings.default_position_limit_fraction,
        gt=0.0,
        le=1.0,
        description="Maximum position notional as fraction of portfolio value"
    )

    class Config:
        frozen = True


class RiskLimits(BaseModel):
    """Risk limits applied to live decisions of a deployment"""

    max_position_size: float = Field(
        default=0.3,
        gt=0.0,
        le=1.0,
        description="Maximum position size as fraction of portfolio"
    )
    max_drawdown: float = Field(default=0.15, gt=0.0, le=1.0)
    stop_loss: float = Field(default=0.05, gt=0.0, le=1.0)
    risk_per_trade: float = Field(default=0.02, gt=0.0, le=1.0)

    class Config:
        frozen = True


class TrainingOptions(BaseModel):
    """Episode budget and evaluation cadence of a training run"""

    max_episodes: int = Field(
        default_factory=lambda: settings.default_max_episodes,
        ge=1,
    )
    max_steps_per_episode: int = Field(
        default_factory=lambda: settings.default_max_steps_per_episode,
        ge=1,
    )
    evaluation_frequency: int = Field(
        default_factory=lambda: settings.default_evaluation_frequency,
        ge=1,
        description="Evaluate (and maybe checkpoint) every N episodes"
    )
    evaluation_episodes: int = Field(
        default_factory=lambda: settings.default_evaluation_episodes,
        ge=1,
    )
    seed: Optional[int] = Field(
        default=None,
        description="Seed for exploration and memory sampling"
    )


class LearningProgress(BaseModel):
    episode: int = 0
    epsilon: float = 1.0
    loss: Optional[float] = None
    avg_reward: float = 0.0


class AgentPerformance(BaseModel):
    """Performance report of an agent"""
    agent_id: str
    total_returns: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    average_reward: float = 0.0
    trades_executed: int = 0
    learning_progress: LearningProgress = Field(default_factory=LearningProgress)
    checkpoint_version: Optional[int] = None
    online_updates: int = 0


class TrainingResult(BaseModel):
    """Outcome of train_agent"""
    agent_id: str
    symbol: str
    performance: AgentPerformance
    episodes_completed: int
    total_steps: int
    best_score: Optional[float] = None
    checkpoint_version: Optional[int] = None
    diverged: bool = False
    training_duration_seconds: float = 0.0
    evaluations: List[Dict[str, Any]] = Field(default_factory=list)


def _config_error(model_name: str, exc: ValidationError) -> ConfigError:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or model_name}: {err['msg']}"
        for err in exc.errors()
    )
    return ConfigError(f"Invalid {model_name}: {details}")


def build_dqn_config(overrides: Optional[Dict[str, Any]] = None) -> DQNConfig:
    """
    Merge overrides into the default DQN hyperparameters.

    Raises:
        ConfigError: if any value is out of range or inconsistent
    """
    try:
        return DQNConfig(**(overrides or {}))
    except ValidationError as e:
        raise _config_error("DQNConfig", e) from e


def build_risk_limits(values: Optional[Dict[str, Any]] = None) -> RiskLimits:
    """Validate risk limits, falling back to the defaults"""
    try:
        return RiskLimits(**(values or {}))
    except ValidationError as e:
        raise _config_error("RiskLimits", e) from e


def build_environment_config(symbol: str, /, **overrides: Any) -> EnvironmentConfig:
    if "symbol" in overrides:
        raise ConfigError("Invalid EnvironmentConfig: symbol is taken from the training request")
    try:
        return EnvironmentConfig(symbol=symbol, **overrides)
    except ValidationError as e:
        raise _config_error("EnvironmentConfig", e) from e


def build_training_options(values: Optional[Dict[str, Any]] = None) -> TrainingOptions:
    try:
        return TrainingOptions(**(values or {}))
    except ValidationError as e:
        raise _config_error("TrainingOptions", e) from e


# Predefined hyperparameter sets
PRESET_DQN_CONFIGS: Dict[str, DQNConfig] = {
    "default": DQNConfig(),
    "fast_learner": DQNConfig(
        learning_rate=0.005,
        memory_capacity=20000,
        batch_size=64,
        epsilon_decay=0.99,
        epsilon_min=0.05,
        target_sync_interval=50,
    ),
    "conservative": DQNConfig(
        learning_rate=0.0005,
        epsilon=0.5,
        epsilon_min=0.01,
        epsilon_decay=0.999,
        gamma=0.99,  # More weight on long-term rewards
        target_sync_interval=250,
    ),
}
