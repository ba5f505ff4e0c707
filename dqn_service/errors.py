"""
Error taxonomy for the DQN Trading Service

Training-path errors abort only the current run. Serving-path errors are
resolved to a safe HOLD result by the deployment manager and never reach the
caller's control flow.
"""

from typing import Optional


class RLServiceError(Exception):
    """Base class for all service errors"""


class ConfigError(RLServiceError, ValueError):
    """Invalid hyperparameters, rejected when an agent is created"""


class AgentNotFoundError(RLServiceError, KeyError):
    """No agent registered under the given id"""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")

    def __str__(self) -> str:
        return self.args[0]


class AlreadyDeployedError(RLServiceError):
    """The portfolio already has a deployment that is not STOPPED"""

    def __init__(self, portfolio_id: str, agent_id: Optional[str] = None):
        self.portfolio_id = portfolio_id
        self.agent_id = agent_id
        super().__init__(
            f"Portfolio {portfolio_id} already has an active deployment"
            + (f" (agent {agent_id})" if agent_id else "")
        )


class AgentExistsError(RLServiceError):
    """An agent with the given id is already registered or has checkpoints on disk"""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent already exists: {agent_id}")


class IncompatibleCheckpointError(RLServiceError):
    """A checkpoint was saved with a different network configuration than the agent"""

    def __init__(self, agent_id: str, version: Optional[int] = None):
        self.agent_id = agent_id
        self.version = version
        super().__init__(
            f"Checkpoint v{version} of agent {agent_id} does not match the agent configuration"
        )


class EnvironmentExhaustedError(RLServiceError):
    """step() was called on an environment whose episode is done"""


class InsufficientMemoryError(RLServiceError):
    """Replay memory holds fewer experiences than requested; callers treat it as a no-op"""

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Cannot sample {requested} experiences, memory holds {available}"
        )


class TrainingDivergenceError(RLServiceError):
    """A fit produced a non-finite loss or non-finite parameters"""

    def __init__(self, loss: float, update_count: Optional[int] = None):
        self.loss = loss
        self.update_count = update_count
        super().__init__(f"Training diverged (loss={loss}, update={update_count})")


class NoActiveDeployment(RLServiceError):
    """No ACTIVE deployment exists for the portfolio"""

    def __init__(self, portfolio_id: str):
        self.portfolio_id = portfolio_id
        super().__init__(f"No active agent for portfolio {portfolio_id}")


class CheckpointNotFoundError(RLServiceError):
    """The requested checkpoint version does not exist"""

    def __init__(self, agent_id: str, version: Optional[int] = None):
        self.agent_id = agent_id
        self.version = version
        if version is None:
            message = f"No checkpoints saved for agent {agent_id}"
        else:
            message = f"Checkpoint v{version} not found for agent {agent_id}"
        super().__init__(message)
