"""Tests for DQNAgent learning, target sync and staged updates."""

import numpy as np
import pytest

from dqn_service.agent import DQNAgent, new_agent_id
from dqn_service.agent_config import DQNConfig


def make_agent(seed=0, **overrides):
    values = dict(state_size=8, batch_size=4, memory_capacity=100, target_sync_interval=10)
    values.update(overrides)
    return DQNAgent(DQNConfig(**values), symbol="TEST", seed=seed)


def fill_memory(agent, n, seed=0):
    rng = np.random.default_rng(seed)
    size = agent.config.state_size
    for _ in range(n):
        agent.remember(
            rng.normal(size=size).astype(np.float32),
            int(rng.integers(0, 7)),
            float(rng.normal()),
            rng.normal(size=size).astype(np.float32),
            bool(rng.random() < 0.1),
        )


class TestIdentity:

    def test_generated_id(self):
        assert new_agent_id("AAPL").startswith("dqn_aapl_")
        assert new_agent_id("AAPL") != new_agent_id("AAPL")

    def test_explicit_id(self):
        agent = DQNAgent(DQNConfig(state_size=8), agent_id="agent-1")
        assert agent.id == "agent-1"

    def test_target_starts_synced(self):
        agent = make_agent()
        state = np.ones(8, dtype=np.float32)
        np.testing.assert_array_equal(agent.network.predict(state), agent.target_network.predict(state))


class TestReplay:

    def test_no_update_below_batch_size(self):
        agent = make_agent()
        fill_memory(agent, 3)
        assert agent.replay() is None
        assert agent.update_count == 0
        assert agent.epsilon == 1.0

    def test_update_decays_epsilon(self):
        agent = make_agent()
        fill_memory(agent, 10)
        loss = agent.replay()
        assert loss is not None
        assert agent.update_count == 1
        assert agent.model_version == 1
        assert agent.epsilon == pytest.approx(0.995)

    def test_replay_leaves_target_untouched(self):
        agent = make_agent()
        fill_memory(agent, 10)
        state = np.ones(8, dtype=np.float32)
        before = agent.target_network.predict(state)
        agent.replay()
        np.testing.assert_array_equal(agent.target_network.predict(state), before)

    def test_remember_rejects_bad_action(self):
        agent = make_agent()
        with pytest.raises(ValueError):
            agent.remember(np.zeros(8), 7, 0.0, np.zeros(8), False)


class TestTargetSync:

    def test_sync_every_interval(self):
        agent = make_agent(target_sync_interval=10)
        fill_memory(agent, 10)
        state = np.ones(8, dtype=np.float32)

        synced = []
        for _ in range(25):
            agent.replay()
            synced.append(agent.observe_step())

        assert [i + 1 for i, s in enumerate(synced) if s] == [10, 20]
        # five fits since the sync at step 20
        assert not np.allclose(agent.network.predict(state), agent.target_network.predict(state))

    def test_target_matches_online_right_after_sync(self):
        agent = make_agent(target_sync_interval=5)
        fill_memory(agent, 10)
        for _ in range(5):
            agent.replay()
            agent.observe_step()
        state = np.ones(8, dtype=np.float32)
        np.testing.assert_array_equal(agent.network.predict(state), agent.target_network.predict(state))


class TestStagedUpdates:

    def test_commit_applies(self):
        agent = make_agent()
        fill_memory(agent, 10)
        staged = agent.stage_replay()
        assert agent.update_count == 0
        assert agent.commit(staged)
        assert agent.update_count == 1
        assert agent.online_updates == 1
        assert agent.network is staged.network

    def test_stale_commit_discarded(self):
        agent = make_agent()
        fill_memory(agent, 10)
        staged = agent.stage_replay()
        agent.replay()
        assert not agent.commit(staged)
        assert agent.update_count == 1
        assert agent.online_updates == 0

    def test_commit_respects_still_valid(self):
        agent = make_agent()
        fill_memory(agent, 10)
        staged = agent.stage_replay()
        assert not agent.commit(staged, still_valid=lambda: False)
        assert agent.update_count == 0

    def test_stage_below_batch_size(self):
        agent = make_agent()
        assert agent.stage_replay() is None


class TestPersistence:

    def test_export_import_round_trip(self):
        source = make_agent(seed=1)
        fill_memory(source, 10)
        for _ in range(3):
            source.replay()
        target = make_agent(seed=2)
        version = target.model_version
        target.import_state(source.export_state())

        state = np.ones(8, dtype=np.float32)
        np.testing.assert_array_equal(source.predict(state), target.predict(state))
        assert target.epsilon == source.epsilon
        assert target.update_count == 3
        assert target.model_version == version + 1
        assert len(target.memory) == 0


class TestPerformance:

    def test_untrained_report(self):
        perf = make_agent().get_performance()
        assert perf.total_returns == 0.0
        assert perf.learning_progress.epsilon == 1.0
        assert perf.learning_progress.loss is None

    def test_explain_shape(self):
        agent = make_agent()
        assert agent.explain(np.ones(8, dtype=np.float32), 2).shape == (8,)
