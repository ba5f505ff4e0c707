"""Tests for DQNTrainer training loop, evaluation and divergence recovery."""

import numpy as np
import pytest

from dqn_service.agent import DQNAgent
from dqn_service.agent_config import DQNConfig, EnvironmentConfig, TrainingOptions
from dqn_service.checkpoints import CheckpointStore
from dqn_service.errors import TrainingDivergenceError
from dqn_service.market_data import generate_simulated_bars
from dqn_service.trading_env import TradingEnvironmentSimulator
from dqn_service.trainer import DQNTrainer, sanitize_float


def make_env(days=60, seed=1):
    config = EnvironmentConfig(symbol="SIM", initial_capital=10000.0, position_limit_fraction=0.05)
    return TradingEnvironmentSimulator(generate_simulated_bars(days, seed=seed), config)


def make_agent(seed=0):
    config = DQNConfig(batch_size=8, memory_capacity=500, target_sync_interval=20)
    return DQNAgent(config, symbol="SIM", seed=seed)


def make_options(**overrides):
    values = dict(max_episodes=3, max_steps_per_episode=30, evaluation_frequency=2, evaluation_episodes=1)
    values.update(overrides)
    return TrainingOptions(**values)


@pytest.fixture
def trainer(tmp_path):
    return DQNTrainer(CheckpointStore(str(tmp_path)))


class TestSanitizeFloat:

    def test_values(self):
        assert sanitize_float(None) is None
        assert sanitize_float(float("nan")) is None
        assert sanitize_float(float("inf")) is None
        assert sanitize_float(np.float32(1.5)) == 1.5


class TestTrain:

    def test_completes_all_episodes(self, trainer):
        agent = make_agent()
        result = trainer.train(agent, make_env(), make_options())
        assert result.episodes_completed == 3
        assert not result.diverged
        assert result.total_steps == 90

    def test_learning_happens(self, trainer):
        agent = make_agent()
        trainer.train(agent, make_env(), make_options())
        assert agent.update_count > 0
        assert agent.epsilon < 1.0
        assert len(agent.memory) == 90

    def test_periodic_and_final_evaluation(self, trainer):
        result = trainer.train(make_agent(), make_env(), make_options())
        assert [e["episode"] for e in result.evaluations] == [2, 3]

    def test_checkpoint_saved(self, trainer):
        agent = make_agent()
        result = trainer.train(agent, make_env(), make_options())
        versions = trainer.store.list_versions(agent.id)
        assert versions
        assert result.checkpoint_version in versions
        assert agent.checkpoint_version == result.checkpoint_version
        assert result.best_score == max(e["mean_return"] for e in result.evaluations)

    def test_agent_left_at_best_checkpoint(self, trainer):
        agent = make_agent()
        result = trainer.train(agent, make_env(), make_options())
        saved = trainer.store.load(agent.id, result.checkpoint_version)
        current = agent.network.get_params()
        for key, value in saved["network_params"].items():
            assert np.array_equal(value.numpy(), current[key].numpy())

    def test_progress_callback(self, trainer):
        updates = []
        trainer.train(make_agent(), make_env(), make_options(), progress_callback=updates.append)
        assert [u["episode"] for u in updates] == [1, 2, 3]
        assert updates[-1]["progress"] == 1.0
        assert {"agent_id", "epsilon", "loss", "best_score"} <= set(updates[0])

    def test_log_callback(self, trainer):
        lines = []
        trainer.train(make_agent(), make_env(), make_options(), log_callback=lambda m, l: lines.append(m))
        assert any("Training started" in line for line in lines)
        assert any("Training completed" in line for line in lines)


class TestDivergence:

    def test_restores_pre_training_state(self, trainer):
        agent = make_agent()
        state = np.ones(52, dtype=np.float32)
        before = agent.predict(state)

        calls = {"n": 0}
        original_replay = agent.replay

        def flaky_replay(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 20:
                raise TrainingDivergenceError(float("nan"))
            return original_replay(*args, **kwargs)

        agent.replay = flaky_replay
        result = trainer.train(agent, make_env(), make_options())

        assert result.diverged
        assert result.episodes_completed == 0
        assert agent.checkpoint_version is None
        np.testing.assert_array_equal(agent.predict(state), before)
        assert agent.epsilon == 1.0

    def test_restores_last_checkpoint(self, trainer):
        agent = make_agent()
        calls = {"n": 0}
        original_replay = agent.replay

        def flaky_replay(*args, **kwargs):
            calls["n"] += 1
            # episode 3 of 30-step episodes, after the checkpoint at episode 2
            if calls["n"] == 70:
                raise TrainingDivergenceError(float("inf"))
            return original_replay(*args, **kwargs)

        agent.replay = flaky_replay
        result = trainer.train(agent, make_env(), make_options())

        assert result.diverged
        assert result.episodes_completed == 2
        assert result.checkpoint_version == 1
        saved = trainer.store.load(agent.id, 1)
        current = agent.network.get_params()
        for key, value in saved["network_params"].items():
            assert np.array_equal(value.numpy(), current[key].numpy())


class TestEvaluate:

    def test_metrics(self, trainer):
        metrics = trainer.evaluate(make_agent(), make_env(), n_episodes=2, max_steps=20)
        assert set(metrics) == {
            "mean_return", "std_return", "sharpe_ratio", "max_drawdown",
            "win_rate", "average_reward", "trades_executed",
        }
        assert 0.0 <= metrics["win_rate"] <= 1.0
        assert metrics["max_drawdown"] >= 0.0

    def test_greedy_and_side_effect_free(self, trainer):
        agent = make_agent()
        env = make_env()
        first = trainer.evaluate(agent, env, n_episodes=2, max_steps=20)
        second = trainer.evaluate(agent, env, n_episodes=2, max_steps=20)
        assert first == second
        assert first["std_return"] == 0.0
        assert agent.epsilon == 1.0
        assert len(agent.memory) == 0
