"""End-to-end tests of RLTradingService without HTTP."""

import asyncio

import numpy as np
import pytest

from dqn_service.checkpoints import CheckpointStore
from dqn_service.deployment import DeploymentState
from dqn_service.errors import (
    AgentExistsError,
    AgentNotFoundError,
    AlreadyDeployedError,
    CheckpointNotFoundError,
    ConfigError,
)
from dqn_service.market_data import MarketDataError, generate_simulated_bars
from dqn_service.service import RLTradingService
from dqn_service.state_encoder import MarketState

OPTIONS = {"max_episodes": 2, "max_steps_per_episode": 20, "evaluation_frequency": 1, "evaluation_episodes": 1, "seed": 0}
CONFIG = {"batch_size": 8, "memory_capacity": 1000}


def make_bars(days: int = 60):
    return generate_simulated_bars(days, seed=11)


def make_state() -> MarketState:
    return MarketState(
        prices=[100.0, 101.0, 102.0, 101.0, 103.0],
        volumes=[5e5] * 5,
        technical_indicators=[0.0] * 14,
        portfolio_state=[1.0, 1.0, 0.0, 0.0],
        risk_metrics=[1.0, 0.0, 0.0, 0.1],
        market_regime=0,
    )


class FakeProvider:
    def __init__(self, bars=None, error=None):
        self.bars = bars
        self.error = error
        self.calls = []

    async def get_historical_bars(self, symbol, days):
        self.calls.append((symbol, days))
        if self.error:
            raise self.error
        return self.bars

    async def get_market_state(self, symbol):
        raise NotImplementedError


@pytest.fixture
def service(tmp_path):
    service = RLTradingService(store=CheckpointStore(str(tmp_path)), start_worker=False)
    yield service
    service.shutdown()


@pytest.fixture
def trained(service):
    result = service.train_agent("AAPL", make_bars(), config=CONFIG, options=OPTIONS)
    return service, result.agent_id


class TestTraining:

    def test_train_registers_agent(self, service):
        result = service.train_agent("AAPL", make_bars(), config=CONFIG, options=OPTIONS)
        assert result.symbol == "AAPL"
        assert result.episodes_completed == 2
        assert result.agent_id in service.registry
        status = service.get_training_status(result.agent_id)
        assert status["status"] == "completed"
        assert status["progress"] == 1.0
        assert not service.is_training(result.agent_id)

    def test_train_on_simulated_bars(self, service):
        result = service.train_agent("SIM", None, config=CONFIG, options={**OPTIONS, "max_episodes": 1})
        assert result.episodes_completed == 1

    def test_explicit_agent_id(self, service):
        result = service.train_agent("AAPL", make_bars(), config=CONFIG, options=OPTIONS, agent_id="mine")
        assert result.agent_id == "mine"

    def test_retrain_existing_id_rejected(self, trained):
        service, agent_id = trained
        live = service.registry.get(agent_id)
        service.deploy_agent(agent_id, "p1")
        versions = service.store.list_versions(agent_id)

        with pytest.raises(AgentExistsError):
            service.train_agent(
                "AAPL", make_bars(), config={**CONFIG, "state_size": 40}, options=OPTIONS, agent_id=agent_id,
            )

        assert service.registry.get(agent_id) is live
        assert service.store.list_versions(agent_id) == versions
        assert service.get_training_status(agent_id)["status"] == "completed"
        assert service.rollback_agent(agent_id, 1).checkpoint_version == 1

    def test_checkpointed_id_rejected(self, trained, tmp_path):
        service, agent_id = trained
        fresh = RLTradingService(store=CheckpointStore(str(tmp_path)), start_worker=False)
        try:
            with pytest.raises(AgentExistsError):
                fresh.train_agent("AAPL", make_bars(), config=CONFIG, options=OPTIONS, agent_id=agent_id)
            with pytest.raises(AgentExistsError):
                asyncio.run(fresh.train_agent_from_provider(
                    "AAPL", FakeProvider(bars=make_bars()), agent_id=agent_id, config=CONFIG, options=OPTIONS,
                ))
            assert agent_id not in fresh.registry
        finally:
            fresh.shutdown()

    def test_invalid_config(self, service):
        with pytest.raises(ConfigError):
            service.train_agent("AAPL", make_bars(), config={"batch_size": 0}, agent_id="bad")
        assert service.get_training_status("bad")["status"] == "failed"
        assert "bad" not in service.registry

    def test_invalid_bars(self, service):
        with pytest.raises(ConfigError):
            service.train_agent("AAPL", [{"close": 10.0}], config=CONFIG, options=OPTIONS)

    def test_progress_callback(self, service):
        updates = []
        service.train_agent("AAPL", make_bars(), config=CONFIG, options=OPTIONS, progress_callback=updates.append)
        assert [u["episode"] for u in updates] == [1, 2]

    def test_train_from_provider(self, service):
        provider = FakeProvider(bars=make_bars())
        result = asyncio.run(
            service.train_agent_from_provider("MSFT", provider, 120, config=CONFIG, options=OPTIONS)
        )
        assert provider.calls == [("MSFT", 120)]
        assert result.agent_id in service.registry

    def test_provider_failure(self, service):
        provider = FakeProvider(error=MarketDataError("backend down"))
        with pytest.raises(MarketDataError):
            asyncio.run(service.train_agent_from_provider("MSFT", provider, agent_id="m1"))
        status = service.get_training_status("m1")
        assert status["status"] == "failed"
        assert status["error"] == "backend down"


class TestServing:

    def test_deploy_decide_update(self, trained):
        service, agent_id = trained
        deployment = service.deploy_agent(agent_id, "p1", {"max_position_size": 0.2})
        assert deployment.risk_limits.max_position_size == 0.2

        decision = service.decide("p1", make_state())
        assert decision.error is None
        assert decision.position_size <= 0.2

        size = service.registry.get(agent_id).config.state_size
        assert service.record_outcome("p1", make_state(), decision.action_index, 0.01, np.zeros(size), False)
        assert service.deployments.drain() == 1

    def test_deploy_invalid_limits(self, trained):
        service, agent_id = trained
        with pytest.raises(ConfigError):
            service.deploy_agent(agent_id, "p1", {"max_position_size": 2.0})

    def test_toggle_and_stop(self, trained):
        service, agent_id = trained
        service.deploy_agent(agent_id, "p1")
        assert service.toggle("p1", False).state == DeploymentState.PAUSED
        assert service.decide("p1", make_state()).action == "HOLD"
        assert service.toggle("p1", True).state == DeploymentState.ACTIVE
        assert service.stop("p1").state == DeploymentState.STOPPED
        assert service.stop("p1") is None

    def test_decide_without_deployment(self, service):
        decision = service.decide("nobody", make_state())
        assert decision.action == "HOLD"
        assert decision.error is not None


class TestAgentManagement:

    def test_performance(self, trained):
        service, agent_id = trained
        performance = service.get_performance(agent_id)
        assert performance.agent_id == agent_id
        assert performance.learning_progress.episode in (1, 2)
        assert performance.checkpoint_version is not None

    def test_performance_unknown(self, service):
        with pytest.raises(AgentNotFoundError):
            service.get_performance("ghost")

    def test_list_agents(self, trained):
        service, agent_id = trained
        agents = service.list_agents()
        assert [a["agent_id"] for a in agents] == [agent_id]
        assert agents[0]["deployed"] is False

    def test_system_status(self, trained):
        service, agent_id = trained
        service.deploy_agent(agent_id, "p1")
        service.deploy_agent(agent_id, "p2")
        service.pause("p2")
        status = service.get_system_status()
        assert status["total_agents"] == 1
        assert status["active_deployments"] == 1
        assert status["paused_deployments"] == 1
        assert status["agents_training"] == 0
        assert status["pending_outcomes"] == 0

    def test_list_checkpoints(self, trained):
        service, agent_id = trained
        checkpoints = service.list_checkpoints(agent_id)
        assert checkpoints
        assert checkpoints[0]["version"] == 1
        with pytest.raises(AgentNotFoundError):
            service.list_checkpoints("ghost")

    def test_rollback(self, trained):
        service, agent_id = trained
        agent = service.registry.get(agent_id)
        state = np.ones(agent.config.state_size, dtype=np.float32)
        saved = service.store.load(agent_id, 1)

        performance = service.rollback_agent(agent_id, 1)
        assert performance.checkpoint_version == 1
        assert agent.epsilon == pytest.approx(saved["epsilon"])
        reference = service.store.load(agent_id, 1)["network_params"]
        for key, value in agent.network.get_params().items():
            assert np.array_equal(value.numpy(), reference[key].numpy())
        assert agent.predict(state).shape == (7,)

    def test_rollback_missing_version(self, trained):
        service, agent_id = trained
        with pytest.raises(CheckpointNotFoundError):
            service.rollback_agent(agent_id, 99)

    def test_delete_while_deployed(self, trained):
        service, agent_id = trained
        service.deploy_agent(agent_id, "p1")
        with pytest.raises(AlreadyDeployedError):
            service.delete_agent(agent_id)
        service.stop("p1")
        assert service.delete_agent(agent_id)
        assert agent_id not in service.registry
        assert service.store.list_versions(agent_id) == []

    def test_delete_unknown(self, service):
        with pytest.raises(AgentNotFoundError):
            service.delete_agent("ghost")

    def test_restore_agents(self, trained, tmp_path):
        service, agent_id = trained
        fresh = RLTradingService(store=CheckpointStore(str(tmp_path)), start_worker=False)
        try:
            assert fresh.restore_agents() == [agent_id]
            restored = fresh.registry.get(agent_id)
            original = service.registry.get(agent_id)
            state = np.ones(original.config.state_size, dtype=np.float32)
            np.testing.assert_array_equal(restored.predict(state), original.predict(state))
            assert len(restored.memory) == 0
        finally:
            fresh.shutdown()
