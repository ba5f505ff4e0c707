"""
DQN Trading Agent Trainer

Runs episodic deep Q-learning against the trading simulator.
Handles:
- Epsilon-greedy interaction and experience collection
- Minibatch replay once memory holds a full batch
- Target-network sync every target_sync_interval global steps
- Periodic greedy evaluation with best-so-far checkpointing
- Recovery from divergent updates
"""

import math
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .agent import DQNAgent
from .agent_config import TrainingOptions, TrainingResult
from .checkpoints import CheckpointStore, restore_agent_checkpoint, save_agent_checkpoint
from .errors import CheckpointNotFoundError, TrainingDivergenceError
from .state_encoder import StateEncoder
from .trading_env import TradingEnvironmentSimulator

logger = logging.getLogger(__name__)


def sanitize_float(value: Optional[float]) -> Optional[float]:
    """
    Convert inf/nan to JSON-safe values.

    Args:
        value: A float value that might be inf, -inf, or nan

    Returns:
        None if value is inf/-inf/nan, otherwise the float value
    """
    if value is None:
        return None

    # Convert numpy types to Python float
    value = float(value)

    if not math.isfinite(value):
        return None

    return value


class DQNTrainer:
    """
    Trains DQN agents on a simulator and persists the best versions.

    The trainer owns the agent exclusively while a run is in progress.
    """

    def __init__(self, store: CheckpointStore):
        self.store = store

    def train(
        self,
        agent: DQNAgent,
        env: TradingEnvironmentSimulator,
        options: Optional[TrainingOptions] = None,
        progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        log_callback: Optional[Callable[[str, str], None]] = None,
    ) -> TrainingResult:
        """
        Train an agent for up to options.max_episodes episodes.

        Args:
            agent: Agent to train (networks, memory and epsilon are mutated)
            env: Simulator over the training bars
            options: Episode budget and evaluation cadence
            progress_callback: Optional callback receiving a progress dict per episode
            log_callback: Optional callback for log messages

        Returns:
            TrainingResult; diverged=True when a non-finite loss aborted the run
            and the agent was restored
        """
        options = options or TrainingOptions()

        def log(msg: str, level: str = "info"):
            """Helper to emit logs"""
            if log_callback:
                log_callback(msg, level)
            if level in ("warning", "error"):
                logger.warning(msg)
            else:
                logger.info(msg)

        encoder = StateEncoder(agent.config.state_size)
        snapshot = agent.export_state()
        prior_checkpoint = agent.checkpoint_version

        best_score: Optional[float] = None
        evaluations: List[Dict[str, Any]] = []
        episodes_completed = 0
        session_steps = 0
        diverged = False
        last_evaluated = 0

        log(f"🚀 Training started for agent '{agent.id}' on {agent.symbol}")
        log(f"   Episodes: {options.max_episodes}, max steps/episode: {options.max_steps_per_episode}")
        log(f"   Bars: {env.last_index + 1}, device: {agent.device}")

        start_time = datetime.now()

        for episode in range(1, options.max_episodes + 1):
            market_state, _ = env.reset()
            state = encoder(market_state)
            episode_reward = 0.0
            episode_losses = []

            try:
                for _ in range(options.max_steps_per_episode):
                    action = agent.act(state)
                    next_market_state, reward, terminated, truncated, info = env.step(action)
                    next_state = encoder(next_market_state)

                    agent.remember(state, action, reward, next_state, terminated)
                    loss = agent.replay()
                    if loss is not None:
                        episode_losses.append(loss)
                    agent.observe_step()

                    state = next_state
                    episode_reward += reward
                    session_steps += 1
                    if terminated or truncated:
                        break
            except TrainingDivergenceError as e:
                log(f"❌ Training diverged in episode {episode}: {e}", "error")
                self._recover(agent, snapshot, prior_checkpoint, log)
                diverged = True
                break

            agent.episode_count += 1
            episodes_completed = episode

            mean_loss = float(np.mean(episode_losses)) if episode_losses else None
            if episode % 10 == 0 or episode == 1:
                loss_str = f"{mean_loss:.5f}" if mean_loss is not None else "n/a"
                log(
                    f"📊 Episode {episode}: reward={episode_reward:.4f}, "
                    f"epsilon={agent.epsilon:.3f}, loss={loss_str}"
                )

            if episode % options.evaluation_frequency == 0:
                best_score = self._evaluate_and_checkpoint(
                    agent, env, options, episode, best_score, evaluations, log
                )
                last_evaluated = episode

            if progress_callback:
                progress_callback({
                    "agent_id": agent.id,
                    "progress": episode / options.max_episodes,
                    "episode": episode,
                    "max_episodes": options.max_episodes,
                    "episode_reward": sanitize_float(episode_reward),
                    "epsilon": agent.epsilon,
                    "loss": sanitize_float(mean_loss),
                    "best_score": sanitize_float(best_score),
                })

        if not diverged and episodes_completed and last_evaluated != episodes_completed:
            best_score = self._evaluate_and_checkpoint(
                agent, env, options, episodes_completed, best_score, evaluations, log
            )

        # Leave the in-memory agent identical to its best persisted version
        if not diverged and agent.checkpoint_version is not None and agent.checkpoint_version != prior_checkpoint:
            restore_agent_checkpoint(self.store, agent, agent.checkpoint_version)

        training_duration = (datetime.now() - start_time).total_seconds()
        if diverged:
            log(f"⚠️ Training aborted after {episodes_completed} episodes; agent restored", "warning")
        else:
            log(f"🎉 Training completed in {training_duration:.1f}s!")
            if best_score is not None:
                log(f"   Best evaluation return: {best_score:.4f} (checkpoint v{agent.checkpoint_version})")

        return TrainingResult(
            agent_id=agent.id,
            symbol=agent.symbol,
            performance=agent.get_performance(),
            episodes_completed=episodes_completed,
            total_steps=session_steps,
            best_score=sanitize_float(best_score),
            checkpoint_version=agent.checkpoint_version,
            diverged=diverged,
            training_duration_seconds=training_duration,
            evaluations=evaluations,
        )

    def _evaluate_and_checkpoint(
        self,
        agent: DQNAgent,
        env: TradingEnvironmentSimulator,
        options: TrainingOptions,
        episode: int,
        best_score: Optional[float],
        evaluations: List[Dict[str, Any]],
        log: Callable[..., None],
    ) -> Optional[float]:
        log(f"📈 Evaluating after episode {episode}...")
        results = self.evaluate(
            agent, env,
            n_episodes=options.evaluation_episodes,
            max_steps=options.max_steps_per_episode,
        )
        results["episode"] = episode
        evaluations.append(results)
        score = results["mean_return"]
        log(
            f"   Mean return: {score:.4f}, win rate: {results['win_rate']:.2f}, "
            f"max drawdown: {results['max_drawdown']:.2%}"
        )

        if best_score is None or score > best_score:
            previous = best_score
            agent.evaluation = {k: v for k, v in results.items() if k != "episode"}
            version = save_agent_checkpoint(self.store, agent, score=score)
            if previous is None:
                log(f"💾 Saved checkpoint v{version}")
            else:
                log(f"🏆 New best return: {score:.4f} (was {previous:.4f}), saved v{version}", "success")
            return score
        return best_score

    def evaluate(
        self,
        agent: DQNAgent,
        env: TradingEnvironmentSimulator,
        n_episodes: int = 10,
        max_steps: int = 1000,
    ) -> Dict[str, Any]:
        """
        Run greedy episodes and summarize them.

        Nothing is stored in replay memory and epsilon is not touched.
        """
        encoder = StateEncoder(agent.config.state_size)
        episode_returns = []
        step_rewards = []
        max_drawdowns = []
        total_trades = 0

        for _ in range(n_episodes):
            market_state, info = env.reset()
            state = encoder(market_state)
            episode_return = 0.0

            for _ in range(max_steps):
                action = agent.select_action(state)
                market_state, reward, terminated, truncated, info = env.step(action)
                state = encoder(market_state)
                episode_return += reward
                step_rewards.append(reward)
                if terminated or truncated:
                    break

            episode_returns.append(episode_return)
            max_drawdowns.append(info["max_drawdown"])
            total_trades += info["total_trades"]

        rewards = np.asarray(step_rewards, dtype=np.float64)
        std = float(rewards.std()) if len(rewards) else 0.0
        sharpe = float(rewards.mean() / std * np.sqrt(252)) if std > 1e-12 else 0.0
        nonzero = rewards[rewards != 0]
        win_rate = float((nonzero > 0).mean()) if len(nonzero) else 0.0

        return {
            "mean_return": float(np.mean(episode_returns)),
            "std_return": float(np.std(episode_returns)),
            "sharpe_ratio": sharpe,
            "max_drawdown": float(np.max(max_drawdowns)) if max_drawdowns else 0.0,
            "win_rate": win_rate,
            "average_reward": float(rewards.mean()) if len(rewards) else 0.0,
            "trades_executed": int(total_trades),
        }

    def _recover(
        self,
        agent: DQNAgent,
        snapshot: Dict[str, Any],
        prior_checkpoint: Optional[int],
        log: Callable[..., None],
    ) -> None:
        """Restore the last good checkpoint, or the pre-training snapshot if none exists"""
        version = agent.checkpoint_version
        if version is not None:
            try:
                restore_agent_checkpoint(self.store, agent, version)
                log(f"↩️ Restored checkpoint v{version}", "warning")
                return
            except CheckpointNotFoundError:
                log(f"⚠️ Checkpoint v{version} missing, using pre-training state", "warning")

        agent.import_state(snapshot)
        agent.checkpoint_version = prior_checkpoint
        log("↩️ Restored pre-training state", "warning")
