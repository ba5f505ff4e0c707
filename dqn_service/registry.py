"""
Agent Registry

Sole owner of live DQN agents. Everything else (deployments, API handlers)
refers to agents by id and looks them up here.
"""

import logging
import threading
from typing import Dict, List, Optional

from .agent import DQNAgent
from .checkpoints import CheckpointStore, load_agent_checkpoint
from .errors import AgentExistsError, AgentNotFoundError, CheckpointNotFoundError

logger = logging.getLogger(__name__)


class AgentRegistry:
    """Thread-safe mapping of agent id to DQNAgent"""

    def __init__(self):
        self._agents: Dict[str, DQNAgent] = {}
        self._lock = threading.Lock()

    def register(self, agent: DQNAgent) -> DQNAgent:
        """
        Raises:
            AgentExistsError: if an agent is already registered under the same id
        """
        with self._lock:
            if agent.id in self._agents:
                raise AgentExistsError(agent.id)
            self._agents[agent.id] = agent
        logger.info(f"Registered agent {agent.id} ({agent.symbol})")
        return agent

    def get(self, agent_id: str) -> DQNAgent:
        """
        Raises:
            AgentNotFoundError: if no agent is registered under agent_id
        """
        with self._lock:
            agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def find(self, agent_id: str) -> Optional[DQNAgent]:
        with self._lock:
            return self._agents.get(agent_id)

    def __contains__(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._agents

    def __len__(self) -> int:
        with self._lock:
            return len(self._agents)

    def list_agents(self) -> List[DQNAgent]:
        with self._lock:
            return list(self._agents.values())

    def remove(self, agent_id: str) -> DQNAgent:
        """
        Raises:
            AgentNotFoundError: if no agent is registered under agent_id
        """
        with self._lock:
            agent = self._agents.pop(agent_id, None)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        logger.info(f"Removed agent {agent_id}")
        return agent

    def restore(self, store: CheckpointStore, device: Optional[str] = None) -> List[str]:
        """
        Load the latest checkpoint of every agent on disk that is not yet
        registered. Restored agents start with empty replay memory.

        Returns:
            Ids of the restored agents
        """
        restored = []
        for agent_id in store.list_agents():
            if agent_id in self:
                continue
            try:
                agent = load_agent_checkpoint(store, agent_id, device=device)
            except CheckpointNotFoundError:
                continue
            except Exception as e:
                logger.warning(f"Could not restore agent {agent_id}: {e}")
                continue
            self.register(agent)
            restored.append(agent_id)
        if restored:
            logger.info(f"Restored {len(restored)} agent(s) from checkpoints")
        return restored
