"""
Deep Q-Network Trading Agent

Bundles the online and target value networks, the replay memory and the
epsilon-greedy policy of one agent. Every mutation of networks or memory goes
through the agent's lock; model_version increases by one per committed fit so
that staged (off-lock) updates can be rejected if the model moved underneath
them.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import numpy as np

from .agent_config import DQNConfig, AgentPerformance, LearningProgress
from .config import settings
from .errors import IncompatibleCheckpointError, InsufficientMemoryError
from .exploration import EpsilonGreedyPolicy
from .memory import Experience, ReplayMemory
from .networks import ValueNetwork

logger = logging.getLogger(__name__)


def new_agent_id(symbol: str) -> str:
    return f"dqn_{symbol.lower()}_{uuid.uuid4().hex[:12]}"


@dataclass
class StagedUpdate:
    """A replay step computed on a private copy of the online network"""
    base_version: int
    network: ValueNetwork
    loss: float


class DQNAgent:
    """
    DQN agent with experience replay and a hard-synced target network.

    Args:
        config: Validated hyperparameters
        agent_id: Opaque identifier (generated if omitted)
        symbol: Symbol the agent was trained on
        device: torch device, defaults to the service setting
        seed: Seed for network init, exploration and memory sampling
    """

    def __init__(
        self,
        config: DQNConfig,
        agent_id: Optional[str] = None,
        symbol: str = "UNKNOWN",
        device: Optional[str] = None,
        seed: Optional[int] = None,
    ):
        self.config = config
        self.symbol = symbol
        self.id = agent_id or new_agent_id(symbol)
        self.device = device or settings.device
        self.created_at = datetime.now()

        self.network = ValueNetwork(
            config.state_size, config.action_size, config.learning_rate,
            device=self.device, seed=seed,
        )
        self.target_network = ValueNetwork(
            config.state_size, config.action_size, config.learning_rate,
            device=self.device, seed=seed,
        )
        self.target_network.sync(self.network)

        self.memory = ReplayMemory(config.memory_capacity, seed=seed)
        self.policy = EpsilonGreedyPolicy(
            action_size=config.action_size,
            epsilon=config.epsilon,
            epsilon_min=config.epsilon_min,
            epsilon_decay=config.epsilon_decay,
            rng=np.random.default_rng(seed),
        )

        self.lock = threading.RLock()
        self.update_count = 0
        self.model_version = 0
        self.total_steps = 0
        self.episode_count = 0
        self.online_updates = 0
        self.last_loss: Optional[float] = None
        self.checkpoint_version: Optional[int] = None
        self.evaluation: Dict[str, Any] = {}

    @property
    def epsilon(self) -> float:
        return self.policy.epsilon

    # ------------------------------------------------------------------
    # Acting
    # ------------------------------------------------------------------

    def predict(self, state: np.ndarray) -> np.ndarray:
        with self.lock:
            return self.network.predict(state)

    def act(self, state: np.ndarray) -> int:
        """Epsilon-greedy action (training)"""
        with self.lock:
            return self.policy.act(self.network.predict, state)

    def select_action(self, state: np.ndarray) -> int:
        """Greedy action (evaluation and live serving)"""
        with self.lock:
            return self.policy.select_action(self.network.predict, state)

    def explain(self, state: np.ndarray, action: int) -> np.ndarray:
        with self.lock:
            return self.network.sensitivity(state, action)

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def remember(
        self,
        state: np.ndarray,
        action: int,
        reward: float,
        next_state: np.ndarray,
        done: bool,
    ) -> None:
        if not 0 <= action < self.config.action_size:
            raise ValueError(f"Action {action} outside [0, {self.config.action_size})")
        experience = Experience(
            state=np.asarray(state, dtype=np.float32),
            action=int(action),
            reward=float(reward),
            next_state=np.asarray(next_state, dtype=np.float32),
            done=bool(done),
        )
        with self.lock:
            self.memory.push(experience)

    def observe_step(self) -> bool:
        """
        Count one environment step; hard-sync the target network every
        target_sync_interval steps since the agent was created.
        """
        with self.lock:
            self.total_steps += 1
            if self.total_steps % self.config.target_sync_interval == 0:
                self.target_network.sync(self.network)
                logger.debug(f"Target network synced for {self.id} at step {self.total_steps}")
                return True
        return False

    def sync_target(self) -> None:
        with self.lock:
            self.target_network.sync(self.network)

    def _td_targets(
        self,
        network: ValueNetwork,
        states: np.ndarray,
        actions: np.ndarray,
        rewards: np.ndarray,
        next_q: np.ndarray,
        dones: np.ndarray,
    ) -> np.ndarray:
        """Online predictions with the taken action replaced by r + gamma * max Q_target(s')"""
        targets = network.predict(states).copy()
        best_next = next_q.max(axis=1)
        best_next[dones] = 0.0
        rows = np.arange(len(actions))
        targets[rows, actions] = rewards + self.config.gamma * best_next
        return targets

    def _after_fit(self, loss: float) -> None:
        self.update_count += 1
        self.model_version += 1
        self.last_loss = loss
        self.policy.decay()

    def replay(self, batch_size: Optional[int] = None) -> Optional[float]:
        """
        One in-place minibatch update.

        Returns the loss, or None when memory holds fewer than batch_size
        experiences.

        Raises:
            TrainingDivergenceError: if the fit diverged (parameters unchanged)
        """
        batch_size = batch_size or self.config.batch_size
        with self.lock:
            try:
                states, actions, rewards, next_states, dones = self.memory.sample_arrays(batch_size)
            except InsufficientMemoryError:
                return None
            next_q = self.target_network.predict(next_states)
            targets = self._td_targets(self.network, states, actions, rewards, next_q, dones)
            loss = self.network.fit(states, targets)
            self._after_fit(loss)
            return loss

    def stage_replay(self, batch_size: Optional[int] = None) -> Optional[StagedUpdate]:
        """
        Compute a replay step on a private copy of the online network.

        Sampling and cloning happen under the lock; the gradient step does
        not, so concurrent predictions are not blocked. Returns None when
        memory is too small.

        Raises:
            TrainingDivergenceError: if the staged fit diverged
        """
        batch_size = batch_size or self.config.batch_size
        with self.lock:
            try:
                states, actions, rewards, next_states, dones = self.memory.sample_arrays(batch_size)
            except InsufficientMemoryError:
                return None
            base_version = self.model_version
            network = self.network.clone()
            next_q = self.target_network.predict(next_states)

        targets = self._td_targets(network, states, actions, rewards, next_q, dones)
        loss = network.fit(states, targets)
        return StagedUpdate(base_version=base_version, network=network, loss=loss)

    def commit(
        self,
        staged: StagedUpdate,
        still_valid: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """
        Atomically swap in a staged network if the model has not moved since
        it was staged and still_valid() holds. Returns whether it was applied.
        """
        with self.lock:
            if staged.base_version != self.model_version:
                logger.debug(
                    f"Discarding stale update for {self.id} "
                    f"(v{staged.base_version} != v{self.model_version})"
                )
                return False
            if still_valid is not None and not still_valid():
                return False
            self.network = staged.network
            self._after_fit(staged.loss)
            self.online_updates += 1
            return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_state(self) -> Dict[str, Any]:
        """Everything a checkpoint needs except the replay memory"""
        with self.lock:
            return {
                "network_params": self.network.get_params(),
                "target_params": self.target_network.get_params(),
                "optimizer_state": self.network.state_dict()["optimizer"],
                "epsilon": float(self.policy.epsilon),
                "update_count": self.update_count,
                "total_steps": self.total_steps,
                "episode_count": self.episode_count,
            }

    def import_state(self, state: Dict[str, Any]) -> None:
        """
        Restore networks and counters; memory is left untouched.

        Parameters are loaded into copies of both networks and swapped in only
        once every tensor fits, so a failed import leaves the agent unchanged.

        Raises:
            IncompatibleCheckpointError: if the saved config or tensors do not match this agent
        """
        saved_config = state.get("config")
        if saved_config is not None and saved_config != self.config.model_dump():
            raise IncompatibleCheckpointError(self.id, state.get("version"))

        with self.lock:
            network = self.network.clone()
            target_network = self.target_network.clone()
            try:
                network.set_params(state["network_params"])
                if state.get("optimizer_state"):
                    network.optimizer.load_state_dict(state["optimizer_state"])
                target_network.set_params(state["target_params"])
            except (KeyError, RuntimeError, ValueError) as e:
                raise IncompatibleCheckpointError(self.id, state.get("version")) from e

            self.network = network
            self.target_network = target_network
            self.policy.epsilon = float(state["epsilon"])
            self.update_count = int(state.get("update_count", 0))
            self.total_steps = int(state.get("total_steps", 0))
            self.episode_count = int(state.get("episode_count", 0))
            self.model_version += 1

    def get_performance(self) -> AgentPerformance:
        evaluation = self.evaluation or {}
        return AgentPerformance(
            agent_id=self.id,
            total_returns=evaluation.get("mean_return", 0.0),
            sharpe_ratio=evaluation.get("sharpe_ratio", 0.0),
            max_drawdown=evaluation.get("max_drawdown", 0.0),
            win_rate=evaluation.get("win_rate", 0.0),
            average_reward=evaluation.get("average_reward", 0.0),
            trades_executed=evaluation.get("trades_executed", 0),
            learning_progress=LearningProgress(
                episode=self.episode_count,
                epsilon=self.policy.epsilon,
                loss=self.last_loss,
                avg_reward=evaluation.get("mean_return", 0.0),
            ),
            checkpoint_version=self.checkpoint_version,
            online_updates=self.online_updates,
        )
