"""
Agent Deployment & Online Learning

Binds trained agents to portfolios and serves live decisions. Realized
outcomes are queued and learned from by a background worker so that
decide() is never blocked by training.

Lifecycle per portfolio: NEW -> ACTIVE <-> PAUSED -> STOPPED (terminal).
At most one deployment per portfolio is not STOPPED.

Locking: a decision holds the deployment lock, then the agent lock. Online
updates are computed on a private network copy outside the agent lock and
committed only if the agent did not change in between and the deployment is
still ACTIVE and not cancelled.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Union

import numpy as np

from .agent import DQNAgent
from .agent_config import RiskLimits
from .config import settings
from .errors import (
    AlreadyDeployedError,
    NoActiveDeployment,
    RLServiceError,
    TrainingDivergenceError,
)
from .registry import AgentRegistry
from .state_encoder import MarketState, encode_market_state, feature_name, regime_name
from .trading_env import Actions

logger = logging.getLogger(__name__)

ACTION_LABELS = [a.name for a in Actions]

ACTION_DISPLAY_NAMES = [
    "Strong Sell", "Sell", "Weak Sell", "Hold", "Weak Buy", "Buy", "Strong Buy",
]

# Position size multipliers per action
ACTION_STRENGTHS = [1.0, 0.7, 0.3, 0.0, 0.3, 0.7, 1.0]


class DeploymentState(str, Enum):
    NEW = "NEW"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"


@dataclass
class Deployment:
    """An agent bound to a portfolio; holds the agent id only"""
    agent_id: str
    portfolio_id: str
    risk_limits: RiskLimits
    state: DeploymentState = DeploymentState.NEW
    created_at: datetime = field(default_factory=datetime.now)
    stopped_at: Optional[datetime] = None
    cumulative_reward: float = 0.0
    trade_count: int = 0
    decisions: int = 0
    outcomes_received: int = 0
    outcomes_dropped: int = 0
    updates_applied: int = 0
    updates_discarded: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    metrics_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state == DeploymentState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        with self.metrics_lock:
            return {
                "agent_id": self.agent_id,
                "portfolio_id": self.portfolio_id,
                "state": self.state.value,
                "is_active": self.is_active,
                "risk_limits": self.risk_limits.model_dump(),
                "created_at": self.created_at.isoformat(),
                "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
                "cumulative_reward": self.cumulative_reward,
                "trade_count": self.trade_count,
                "decisions": self.decisions,
                "outcomes_received": self.outcomes_received,
                "outcomes_dropped": self.outcomes_dropped,
                "updates_applied": self.updates_applied,
                "updates_discarded": self.updates_discarded,
            }


@dataclass
class Decision:
    """A live trading decision (never an order)"""
    portfolio_id: str
    action: str
    action_index: int
    position_size: float
    confidence: float
    reasoning: str
    q_values: List[float] = field(default_factory=list)
    agent_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    error: Optional[Exception] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "agent_id": self.agent_id,
            "action": self.action,
            "action_index": self.action_index,
            "position_size": self.position_size,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "q_values": self.q_values,
            "timestamp": self.timestamp.isoformat(),
            "error": str(self.error) if self.error else None,
        }


@dataclass
class _Outcome:
    deployment: Deployment
    state: np.ndarray
    action: int
    reward: float
    next_state: np.ndarray
    done: bool


def compute_confidence(q_values: np.ndarray) -> float:
    """max(Q) / (max(Q) + |min(Q)|) clamped to [0, 1]; 0 when the denominator is not positive"""
    q_max = float(np.max(q_values))
    q_min = float(np.min(q_values))
    denominator = q_max + abs(q_min)
    if not denominator > 0:
        return 0.0
    return float(min(max(q_max / denominator, 0.0), 1.0))


def compute_position_size(action: int, confidence: float, risk_limits: RiskLimits) -> float:
    strength = ACTION_STRENGTHS[action] if 0 <= action < len(ACTION_STRENGTHS) else 0.0
    return strength * confidence * risk_limits.max_position_size


def action_label(action: int) -> str:
    if 0 <= action < len(ACTION_LABELS):
        return ACTION_LABELS[action]
    return f"ACTION_{action}"


def build_reasoning(
    action: int,
    confidence: float,
    sensitivity: np.ndarray,
    market_regime: int,
    top_k: int = 3,
) -> str:
    """Action, confidence, the most influential features and the regime as plain text"""
    display = ACTION_DISPLAY_NAMES[action] if 0 <= action < len(ACTION_DISPLAY_NAMES) else action_label(action)
    ranked = np.argsort(-np.abs(sensitivity), kind="stable")[:top_k]
    factors = ", ".join(feature_name(int(i)) for i in ranked)
    return (
        f"Action: {display} (confidence: {confidence:.3f}).\n"
        f"Key factors: {factors}.\n"
        f"Market regime: {regime_name(market_regime)}."
    )


def hold_decision(portfolio_id: str, error: Exception, agent_id: Optional[str] = None) -> Decision:
    """Safe fallback: HOLD with zero size"""
    return Decision(
        portfolio_id=portfolio_id,
        action=ACTION_LABELS[Actions.HOLD],
        action_index=int(Actions.HOLD),
        position_size=0.0,
        confidence=0.0,
        reasoning=f"{error}. Holding.",
        agent_id=agent_id,
        error=error,
    )


class DeploymentManager:
    """
    Owns deployments and the online-learning worker.

    Args:
        registry: Registry the deployed agents live in
        queue_size: Pending outcomes kept before the oldest is dropped
        start_worker: Start the background worker thread (tests may drain manually)
    """

    def __init__(
        self,
        registry: AgentRegistry,
        queue_size: Optional[int] = None,
        start_worker: bool = True,
    ):
        self.registry = registry
        self.queue_size = queue_size or settings.outcome_queue_size
        self._deployments: Dict[str, Deployment] = {}
        self._history: List[Deployment] = []
        self._lock = threading.Lock()

        self._queue: Deque[_Outcome] = deque()
        self._cond = threading.Condition()
        self._in_progress = 0
        self._shutdown = False
        self.dropped_outcomes = 0
        self.processed_outcomes = 0

        self._worker: Optional[threading.Thread] = None
        if start_worker:
            self._worker = threading.Thread(
                target=self._run_worker, name="dqn-online-learning", daemon=True
            )
            self._worker.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def deploy(
        self,
        agent_id: str,
        portfolio_id: str,
        risk_limits: Optional[RiskLimits] = None,
    ) -> Deployment:
        """
        Raises:
            AgentNotFoundError: if the agent is not registered
            AlreadyDeployedError: if the portfolio has a deployment that is not STOPPED
        """
        self.registry.get(agent_id)

        with self._lock:
            existing = self._deployments.get(portfolio_id)
            if existing is not None and existing.state != DeploymentState.STOPPED:
                raise AlreadyDeployedError(portfolio_id, existing.agent_id)

            deployment = Deployment(
                agent_id=agent_id,
                portfolio_id=portfolio_id,
                risk_limits=risk_limits or RiskLimits(),
            )
            deployment.state = DeploymentState.ACTIVE
            if existing is not None:
                self._history.append(existing)
            self._deployments[portfolio_id] = deployment

        logger.info(f"Deployed agent {agent_id} to portfolio {portfolio_id}")
        return deployment

    def get_deployment(self, portfolio_id: str) -> Optional[Deployment]:
        with self._lock:
            return self._deployments.get(portfolio_id)

    def list_deployments(self, include_stopped: bool = True) -> List[Deployment]:
        with self._lock:
            deployments = list(self._deployments.values())
        if include_stopped:
            return deployments
        return [d for d in deployments if d.state != DeploymentState.STOPPED]

    def active_deployments(self) -> List[Deployment]:
        return [d for d in self.list_deployments() if d.is_active]

    def has_live_deployment(self, agent_id: str) -> bool:
        return any(d.agent_id == agent_id for d in self.list_deployments(include_stopped=False))

    def _require_live(self, portfolio_id: str) -> Deployment:
        deployment = self.get_deployment(portfolio_id)
        if deployment is None or deployment.state == DeploymentState.STOPPED:
            raise NoActiveDeployment(portfolio_id)
        return deployment

    def pause(self, portfolio_id: str) -> Deployment:
        """
        Raises:
            NoActiveDeployment: if the portfolio has no live deployment
        """
        deployment = self._require_live(portfolio_id)
        with deployment.lock:
            if deployment.state == DeploymentState.ACTIVE:
                deployment.state = DeploymentState.PAUSED
                logger.info(f"Paused deployment on {portfolio_id}")
        return deployment

    def resume(self, portfolio_id: str) -> Deployment:
        """
        Raises:
            NoActiveDeployment: if the portfolio has no live deployment
        """
        deployment = self._require_live(portfolio_id)
        with deployment.lock:
            if deployment.state == DeploymentState.PAUSED:
                deployment.state = DeploymentState.ACTIVE
                logger.info(f"Resumed deployment on {portfolio_id}")
        return deployment

    def stop(self, portfolio_id: str) -> Optional[Deployment]:
        """
        Stop the portfolio's deployment; a no-op when there is none.

        In-flight online updates are cancelled: once this returns no further
        update from the deployment reaches the agent.
        """
        deployment = self.get_deployment(portfolio_id)
        if deployment is None or deployment.state == DeploymentState.STOPPED:
            return None

        with deployment.lock:
            deployment.cancel_event.set()
            deployment.state = DeploymentState.STOPPED
            deployment.stopped_at = datetime.now()
            agent = self.registry.find(deployment.agent_id)
            if agent is not None:
                # Wait out a commit that may be running
                with agent.lock:
                    pass

        logger.info(f"Stopped deployment on {portfolio_id}")
        return deployment

    # ------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------

    def decide(self, portfolio_id: str, market_state: MarketState) -> Decision:
        """
        Greedy decision for the portfolio.

        Never raises: without an ACTIVE deployment (or on any serving error)
        a HOLD decision with zero size is returned and decision.error is set.
        """
        deployment = self.get_deployment(portfolio_id)
        if deployment is None or not deployment.is_active:
            logger.warning(f"Decision requested without active deployment: {portfolio_id}")
            return hold_decision(portfolio_id, NoActiveDeployment(portfolio_id))

        with deployment.lock:
            if not deployment.is_active:
                return hold_decision(portfolio_id, NoActiveDeployment(portfolio_id))

            try:
                agent = self.registry.get(deployment.agent_id)
                encoded = encode_market_state(market_state, agent.config.state_size)
                with agent.lock:
                    q_values = agent.predict(encoded)
                    action = int(np.argmax(q_values))
                    sensitivity = agent.explain(encoded, action)
            except Exception as e:
                logger.warning(f"Serving error on {portfolio_id}, holding: {e}")
                error = e if isinstance(e, RLServiceError) else RLServiceError(str(e))
                return hold_decision(portfolio_id, error, deployment.agent_id)

            confidence = compute_confidence(q_values)
            decision = Decision(
                portfolio_id=portfolio_id,
                action=action_label(action),
                action_index=action,
                position_size=compute_position_size(action, confidence, deployment.risk_limits),
                confidence=confidence,
                reasoning=build_reasoning(action, confidence, sensitivity, market_state.market_regime),
                q_values=[float(q) for q in q_values],
                agent_id=deployment.agent_id,
            )
            with deployment.metrics_lock:
                deployment.decisions += 1
            return decision

    # ------------------------------------------------------------------
    # Online learning
    # ------------------------------------------------------------------

    def _as_vector(self, state: Union[MarketState, np.ndarray, List[float]], agent: DQNAgent) -> np.ndarray:
        if isinstance(state, MarketState):
            vector = encode_market_state(state, agent.config.state_size)
        else:
            vector = np.asarray(state, dtype=np.float32)
        if vector.shape != (agent.config.state_size,):
            raise ValueError(
                f"State vector has shape {vector.shape}, expected ({agent.config.state_size},)"
            )
        if not np.isfinite(vector).all():
            raise ValueError("State vector contains non-finite values")
        return vector

    def record_outcome(
        self,
        portfolio_id: str,
        state: Union[MarketState, np.ndarray, List[float]],
        action: int,
        reward: float,
        next_state: Union[MarketState, np.ndarray, List[float]],
        done: bool,
    ) -> bool:
        """
        Queue a realized outcome for online learning.

        Returns True when queued. Outcomes for portfolios without an ACTIVE
        deployment, invalid actions, non-finite rewards and malformed or
        non-finite states are rejected (False).
        When the queue is full the oldest pending outcome is dropped.
        """
        deployment = self.get_deployment(portfolio_id)
        if deployment is None or not deployment.is_active:
            logger.debug(f"Ignoring outcome for inactive portfolio {portfolio_id}")
            return False

        agent = self.registry.find(deployment.agent_id)
        if agent is None:
            return False
        if not 0 <= int(action) < agent.config.action_size:
            logger.warning(f"Rejected outcome for {portfolio_id}: invalid action {action}")
            return False
        if not np.isfinite(reward):
            logger.warning(f"Rejected outcome for {portfolio_id}: non-finite reward {reward}")
            return False
        try:
            state_vector = self._as_vector(state, agent)
            next_vector = self._as_vector(next_state, agent)
        except ValueError as e:
            logger.warning(f"Rejected outcome for {portfolio_id}: {e}")
            return False

        outcome = _Outcome(
            deployment=deployment,
            state=state_vector,
            action=int(action),
            reward=float(reward),
            next_state=next_vector,
            done=bool(done),
        )

        with deployment.metrics_lock:
            deployment.outcomes_received += 1
            deployment.cumulative_reward += float(reward)
            if int(action) != Actions.HOLD:
                deployment.trade_count += 1

        with self._cond:
            if len(self._queue) >= self.queue_size:
                dropped = self._queue.popleft()
                self.dropped_outcomes += 1
                with dropped.deployment.metrics_lock:
                    dropped.deployment.outcomes_dropped += 1
                logger.warning(
                    f"Outcome queue full ({self.queue_size}), dropped oldest outcome "
                    f"for {dropped.deployment.portfolio_id}"
                )
            self._queue.append(outcome)
            self._cond.notify()
        return True

    def pending_outcomes(self) -> int:
        with self._cond:
            return len(self._queue)

    def _still_valid(self, deployment: Deployment) -> bool:
        return deployment.is_active and not deployment.cancel_event.is_set()

    def _process(self, outcome: _Outcome) -> None:
        deployment = outcome.deployment
        if not self._still_valid(deployment):
            with deployment.metrics_lock:
                deployment.updates_discarded += 1
            return

        agent = self.registry.find(deployment.agent_id)
        if agent is None:
            return

        agent.remember(outcome.state, outcome.action, outcome.reward, outcome.next_state, outcome.done)
        agent.observe_step()

        try:
            staged = agent.stage_replay()
        except TrainingDivergenceError as e:
            logger.warning(f"Discarded divergent online update for {agent.id}: {e}")
            with deployment.metrics_lock:
                deployment.updates_discarded += 1
            return
        if staged is None:
            return

        applied = agent.commit(staged, still_valid=lambda: self._still_valid(deployment))
        with deployment.metrics_lock:
            if applied:
                deployment.updates_applied += 1
            else:
                deployment.updates_discarded += 1

    def _take(self, block: bool) -> Optional[_Outcome]:
        with self._cond:
            while block and not self._queue and not self._shutdown:
                self._cond.wait()
            if not self._queue:
                return None
            self._in_progress += 1
            return self._queue.popleft()

    def _done(self) -> None:
        with self._cond:
            self._in_progress -= 1
            self.processed_outcomes += 1
            self._cond.notify_all()

    def _handle(self, outcome: _Outcome) -> None:
        try:
            self._process(outcome)
        except Exception:
            logger.exception(
                f"Online update failed for portfolio {outcome.deployment.portfolio_id}"
            )
        finally:
            self._done()

    def _run_worker(self) -> None:
        while True:
            outcome = self._take(block=True)
            if outcome is None:
                return
            self._handle(outcome)

    def drain(self) -> int:
        """Process every queued outcome in the calling thread"""
        count = 0
        while True:
            outcome = self._take(block=False)
            if outcome is None:
                return count
            self._handle(outcome)
            count += 1

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is empty and no outcome is being processed"""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._queue and self._in_progress == 0, timeout
            )

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None

    def get_metrics(self, portfolio_id: str) -> Dict[str, Any]:
        """
        Raises:
            NoActiveDeployment: if the portfolio never had a deployment
        """
        deployment = self.get_deployment(portfolio_id)
        if deployment is None:
            raise NoActiveDeployment(portfolio_id)
        return deployment.to_dict()
