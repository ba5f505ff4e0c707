"""
RL Trading Service

Facade over the agent core: training, deployment, live decisions, online
learning and checkpoint management. The FastAPI app is a thin adapter over
this class; everything here is usable without HTTP.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np

from .agent import DQNAgent, new_agent_id
from .agent_config import (
    AgentPerformance,
    DQNConfig,
    RiskLimits,
    TrainingOptions,
    TrainingResult,
    build_dqn_config,
    build_environment_config,
    build_risk_limits,
    build_training_options,
)
from .checkpoints import CheckpointStore, restore_agent_checkpoint
from .config import settings
from .deployment import Decision, Deployment, DeploymentManager, DeploymentState
from .errors import AgentExistsError, AgentNotFoundError, AlreadyDeployedError
from .market_data import MarketDataProvider, generate_simulated_bars
from .registry import AgentRegistry
from .state_encoder import MarketState
from .trading_env import TradingEnvironmentSimulator
from .trainer import DQNTrainer

logger = logging.getLogger(__name__)

# Days of simulated bars used when no history is supplied
SIMULATED_DAYS = 365


class RLTradingService:
    """
    Exposed contract of the agent core.

    Args:
        store: Checkpoint store (defaults to settings.checkpoint_dir)
        queue_size: Outcome queue bound for online learning
        start_worker: Start the online-learning worker thread
    """

    def __init__(
        self,
        store: Optional[CheckpointStore] = None,
        queue_size: Optional[int] = None,
        start_worker: bool = True,
    ):
        self.store = store or CheckpointStore(settings.checkpoint_dir)
        self.registry = AgentRegistry()
        self.deployments = DeploymentManager(
            self.registry, queue_size=queue_size, start_worker=start_worker
        )
        self.trainer = DQNTrainer(self.store)
        self._training_status: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _ensure_new_agent_id(self, agent_id: str) -> None:
        if agent_id in self.registry or self.store.list_versions(agent_id):
            raise AgentExistsError(agent_id)

    def _begin_training(self, agent_id: str, symbol: str) -> None:
        self._training_status[agent_id] = {
            "agent_id": agent_id,
            "symbol": symbol,
            "status": "training",
            "progress": 0.0,
            "started_at": datetime.now().isoformat(),
        }

    def _fail_training(self, agent_id: str, error: Exception) -> None:
        self._training_status[agent_id].update({"status": "failed", "error": str(error)})
        logger.error(f"Training failed for {agent_id}: {error}")

    def train_agent(
        self,
        symbol: str,
        historical_bars: Optional[List[Dict[str, Any]]] = None,
        config: Optional[Union[DQNConfig, Dict[str, Any]]] = None,
        options: Optional[Union[TrainingOptions, Dict[str, Any]]] = None,
        environment: Optional[Dict[str, Any]] = None,
        agent_id: Optional[str] = None,
        progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        log_callback: Optional[Callable[[str, str], None]] = None,
    ) -> TrainingResult:
        """
        Train a new agent on historical bars and register it.

        Simulated bars are used when no history is supplied.

        Raises:
            ConfigError: for invalid hyperparameters, options or bars
            AgentExistsError: if agent_id is already registered or checkpointed
        """
        agent_id = agent_id or new_agent_id(symbol)
        self._ensure_new_agent_id(agent_id)
        self._begin_training(agent_id, symbol)

        def on_progress(update: Dict[str, Any]):
            self._training_status[agent_id].update(update)
            if progress_callback:
                progress_callback(update)

        try:
            dqn_config = config if isinstance(config, DQNConfig) else build_dqn_config(config)
            training_options = (
                options if isinstance(options, TrainingOptions) else build_training_options(options)
            )
            env_config = build_environment_config(symbol, **(environment or {}))

            if not historical_bars:
                logger.info(f"No history supplied for {symbol}, using {SIMULATED_DAYS} simulated days")
                historical_bars = generate_simulated_bars(SIMULATED_DAYS, seed=training_options.seed)

            env = TradingEnvironmentSimulator(
                historical_bars,
                env_config,
                state_size=dqn_config.state_size,
                action_size=dqn_config.action_size,
            )
            agent = DQNAgent(dqn_config, agent_id=agent_id, symbol=symbol, seed=training_options.seed)

            result = self.trainer.train(
                agent, env, training_options,
                progress_callback=on_progress,
                log_callback=log_callback,
            )
        except Exception as e:
            self._fail_training(agent_id, e)
            raise

        try:
            self.registry.register(agent)
        except AgentExistsError as e:
            self._fail_training(agent_id, e)
            raise
        self._training_status[agent_id].update({
            "status": "diverged" if result.diverged else "completed",
            "progress": 1.0,
            "completed_at": datetime.now().isoformat(),
            "checkpoint_version": result.checkpoint_version,
        })
        return result

    async def train_agent_async(self, *args, **kwargs) -> TrainingResult:
        """train_agent off the event loop"""
        return await asyncio.to_thread(self.train_agent, *args, **kwargs)

    async def train_agent_from_provider(
        self,
        symbol: str,
        provider: MarketDataProvider,
        days: int = 365,
        agent_id: Optional[str] = None,
        **kwargs: Any,
    ) -> TrainingResult:
        """
        Fetch history from a market data provider, then train on it.

        Raises:
            MarketDataError: if the provider fails
            AgentExistsError: if agent_id is already registered or checkpointed
        """
        agent_id = agent_id or new_agent_id(symbol)
        self._ensure_new_agent_id(agent_id)
        self._begin_training(agent_id, symbol)
        try:
            bars = await provider.get_historical_bars(symbol, days)
        except Exception as e:
            self._fail_training(agent_id, e)
            raise
        return await self.train_agent_async(symbol, bars, agent_id=agent_id, **kwargs)

    def get_training_status(self, agent_id: str) -> Optional[Dict[str, Any]]:
        return self._training_status.get(agent_id)

    def is_training(self, agent_id: str) -> bool:
        status = self._training_status.get(agent_id)
        return status is not None and status["status"] == "training"

    # ------------------------------------------------------------------
    # Deployment & serving
    # ------------------------------------------------------------------

    def deploy_agent(
        self,
        agent_id: str,
        portfolio_id: str,
        risk_limits: Optional[Union[RiskLimits, Dict[str, Any]]] = None,
    ) -> Deployment:
        """
        Raises:
            AgentNotFoundError | AlreadyDeployedError | ConfigError
        """
        limits = risk_limits if isinstance(risk_limits, RiskLimits) else build_risk_limits(risk_limits)
        return self.deployments.deploy(agent_id, portfolio_id, limits)

    def decide(self, portfolio_id: str, market_state: MarketState) -> Decision:
        return self.deployments.decide(portfolio_id, market_state)

    def record_outcome(
        self,
        portfolio_id: str,
        state: Union[MarketState, np.ndarray, List[float]],
        action: int,
        reward: float,
        next_state: Union[MarketState, np.ndarray, List[float]],
        done: bool,
    ) -> bool:
        return self.deployments.record_outcome(portfolio_id, state, action, reward, next_state, done)

    def pause(self, portfolio_id: str) -> Deployment:
        return self.deployments.pause(portfolio_id)

    def resume(self, portfolio_id: str) -> Deployment:
        return self.deployments.resume(portfolio_id)

    def toggle(self, portfolio_id: str, active: bool) -> Deployment:
        return self.resume(portfolio_id) if active else self.pause(portfolio_id)

    def stop(self, portfolio_id: str) -> Optional[Deployment]:
        return self.deployments.stop(portfolio_id)

    # ------------------------------------------------------------------
    # Agents & performance
    # ------------------------------------------------------------------

    def get_performance(self, agent_id: str) -> AgentPerformance:
        """
        Raises:
            AgentNotFoundError: if the agent is not registered
        """
        return self.registry.get(agent_id).get_performance()

    def get_active_agents(self) -> List[AgentPerformance]:
        return [agent.get_performance() for agent in self.registry.list_agents()]

    def list_agents(self) -> List[Dict[str, Any]]:
        agents = []
        for agent in self.registry.list_agents():
            agents.append({
                "agent_id": agent.id,
                "symbol": agent.symbol,
                "created_at": agent.created_at.isoformat(),
                "epsilon": agent.epsilon,
                "update_count": agent.update_count,
                "checkpoint_version": agent.checkpoint_version,
                "deployed": self.deployments.has_live_deployment(agent.id),
                "config": agent.config.model_dump(),
            })
        return agents

    def get_system_status(self) -> Dict[str, Any]:
        performances = self.get_active_agents()
        deployments = self.deployments.list_deployments()
        live = [d for d in deployments if d.state != DeploymentState.STOPPED]
        return {
            "total_agents": len(performances),
            "active_deployments": len(self.deployments.active_deployments()),
            "paused_deployments": sum(1 for d in live if d.state == DeploymentState.PAUSED),
            "total_deployments": len(deployments),
            "agents_training": sum(
                1 for s in self._training_status.values() if s["status"] == "training"
            ),
            "average_performance": (
                float(np.mean([p.total_returns for p in performances])) if performances else 0.0
            ),
            "pending_outcomes": self.deployments.pending_outcomes(),
            "processed_outcomes": self.deployments.processed_outcomes,
            "dropped_outcomes": self.deployments.dropped_outcomes,
        }

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def list_checkpoints(self, agent_id: str) -> List[Dict[str, Any]]:
        """
        Raises:
            AgentNotFoundError: if the agent is neither registered nor on disk
        """
        if agent_id not in self.registry and not self.store.list_versions(agent_id):
            raise AgentNotFoundError(agent_id)
        return self.store.read_metadata(agent_id).get("checkpoints", [])

    def rollback_agent(self, agent_id: str, version: int) -> AgentPerformance:
        """
        Replace the live agent's networks and epsilon with a saved version.

        Pending online updates computed against the previous weights are
        discarded. Replay memory is kept.

        Raises:
            AgentNotFoundError: if the agent is not registered
            CheckpointNotFoundError: if the version does not exist
        """
        agent = self.registry.get(agent_id)
        restore_agent_checkpoint(self.store, agent, version)
        logger.info(f"Rolled back {agent_id} to checkpoint v{version}")
        return agent.get_performance()

    def delete_agent(self, agent_id: str) -> bool:
        """
        Remove an agent and all of its checkpoints.

        Raises:
            AgentNotFoundError: if the agent is unknown
            AlreadyDeployedError: while the agent still has a live deployment
        """
        for deployment in self.deployments.list_deployments(include_stopped=False):
            if deployment.agent_id == agent_id:
                raise AlreadyDeployedError(deployment.portfolio_id, agent_id)

        removed = False
        if agent_id in self.registry:
            self.registry.remove(agent_id)
            removed = True
        if self.store.delete(agent_id):
            removed = True
        if not removed:
            raise AgentNotFoundError(agent_id)
        self._training_status.pop(agent_id, None)
        return True

    def restore_agents(self) -> List[str]:
        return self.registry.restore(self.store)

    def shutdown(self) -> None:
        self.deployments.shutdown()
