"""Tests for DQNConfig, EnvironmentConfig, RiskLimits and the config builders."""

import pytest
from pydantic import ValidationError

from dqn_service.agent_config import (
    DQNConfig,
    EnvironmentConfig,
    RiskLimits,
    TrainingOptions,
    PRESET_DQN_CONFIGS,
    build_dqn_config,
    build_environment_config,
    build_risk_limits,
    build_training_options,
)
from dqn_service.errors import ConfigError


class TestDQNConfigDefaults:
    """Defaults match the reference hyperparameters."""

    def test_sizes(self):
        cfg = DQNConfig()
        assert cfg.state_size == 52
        assert cfg.action_size == 7

    def test_learning_parameters(self):
        cfg = DQNConfig()
        assert cfg.learning_rate == 0.001
        assert cfg.gamma == 0.95
        assert cfg.batch_size == 32
        assert cfg.memory_capacity == 100000

    def test_exploration_parameters(self):
        cfg = DQNConfig()
        assert cfg.epsilon == 1.0
        assert cfg.epsilon_min == 0.01
        assert cfg.epsilon_decay == 0.995

    def test_target_sync_interval(self):
        assert DQNConfig().target_sync_interval == 100

    def test_frozen(self):
        cfg = DQNConfig()
        with pytest.raises(ValidationError):
            cfg.gamma = 0.5


class TestBuildDQNConfig:
    """Invalid values are rejected with ConfigError."""

    def test_overrides_applied(self):
        cfg = build_dqn_config({"batch_size": 64, "gamma": 0.99})
        assert cfg.batch_size == 64
        assert cfg.gamma == 0.99

    def test_none_gives_defaults(self):
        assert build_dqn_config(None) == DQNConfig()

    @pytest.mark.parametrize("overrides", [
        {"learning_rate": 0.0},
        {"learning_rate": 1.0},
        {"batch_size": 0},
        {"state_size": -1},
        {"epsilon_decay": 0.0},
        {"epsilon_decay": 1.5},
        {"gamma": 0.0},
        {"target_sync_interval": 0},
        {"epsilon": 1.2},
    ])
    def test_out_of_range(self, overrides):
        with pytest.raises(ConfigError):
            build_dqn_config(overrides)

    def test_batch_larger_than_memory(self):
        with pytest.raises(ConfigError, match="batch_size"):
            build_dqn_config({"batch_size": 64, "memory_capacity": 32})

    def test_epsilon_below_floor(self):
        with pytest.raises(ConfigError, match="epsilon"):
            build_dqn_config({"epsilon": 0.01, "epsilon_min": 0.1})

    def test_unknown_key(self):
        with pytest.raises(ConfigError):
            build_dqn_config({"hidden_layers": [64, 64]})

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            build_dqn_config({"batch_size": -5})


class TestPresets:
    """Preset configurations are valid and distinct."""

    def test_expected_presets(self):
        assert set(PRESET_DQN_CONFIGS) == {"default", "fast_learner", "conservative"}

    def test_default_preset_matches_defaults(self):
        assert PRESET_DQN_CONFIGS["default"] == DQNConfig()

    def test_presets_round_trip_through_builder(self):
        for cfg in PRESET_DQN_CONFIGS.values():
            assert build_dqn_config(cfg.model_dump()) == cfg

    def test_conservative_explores_less(self):
        assert PRESET_DQN_CONFIGS["conservative"].epsilon < DQNConfig().epsilon


class TestEnvironmentConfig:
    """Simulator configuration defaults and validation."""

    def test_defaults(self):
        cfg = EnvironmentConfig(symbol="AAPL")
        assert cfg.initial_capital == 100000.0
        assert cfg.transaction_cost_rate == 0.001
        assert cfg.slippage_rate == 0.0005
        assert cfg.max_drawdown_fraction == 0.15
        assert cfg.position_limit_fraction == 0.3

    def test_builder_overrides(self):
        cfg = build_environment_config("MSFT", initial_capital=5000.0)
        assert cfg.symbol == "MSFT"
        assert cfg.initial_capital == 5000.0

    def test_builder_rejects_negative_capital(self):
        with pytest.raises(ConfigError):
            build_environment_config("MSFT", initial_capital=-1.0)

    def test_builder_rejects_position_limit_above_one(self):
        with pytest.raises(ConfigError):
            build_environment_config("MSFT", position_limit_fraction=1.5)

    def test_builder_rejects_symbol_override(self):
        with pytest.raises(ConfigError, match="symbol"):
            build_environment_config("MSFT", **{"symbol": "AAPL"})


class TestRiskLimits:
    """Live risk limits."""

    def test_defaults(self):
        limits = RiskLimits()
        assert limits.max_position_size == 0.3
        assert limits.max_drawdown == 0.15
        assert limits.stop_loss == 0.05
        assert limits.risk_per_trade == 0.02

    def test_builder(self):
        assert build_risk_limits({"max_position_size": 0.1}).max_position_size == 0.1

    def test_builder_rejects_zero(self):
        with pytest.raises(ConfigError):
            build_risk_limits({"max_position_size": 0.0})


class TestTrainingOptions:

    def test_builder(self):
        opts = build_training_options({"max_episodes": 5, "seed": 7})
        assert isinstance(opts, TrainingOptions)
        assert opts.max_episodes == 5
        assert opts.seed == 7

    def test_builder_rejects_zero_episodes(self):
        with pytest.raises(ConfigError):
            build_training_options({"max_episodes": 0})
