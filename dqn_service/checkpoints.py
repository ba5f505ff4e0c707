"""
Agent Checkpoint Store

Checkpoints are versioned per agent and append-only: saving never rewrites an
existing version. Every file is written to a temporary path in the target
directory and then moved into place with os.replace, so a crash mid-write
leaves the previous versions intact.

Layout:
    {checkpoint_dir}/{agent_id}/v0001.pt
    {checkpoint_dir}/{agent_id}/metadata.json
"""

import os
import re
import json
import shutil
import logging
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import torch

from .agent import DQNAgent
from .agent_config import DQNConfig
from .config import settings
from .errors import CheckpointNotFoundError

logger = logging.getLogger(__name__)

_VERSION_FILE = re.compile(r"^v(\d+)\.pt$")


def _atomic_write(path: Path, write) -> None:
    """Call write(tmp_path), then move the result over path"""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    os.close(fd)
    try:
        write(tmp_name)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class CheckpointStore:
    """Versioned on-disk storage of agent state"""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.checkpoint_dir)
        self._lock = threading.Lock()

    def _agent_dir(self, agent_id: str) -> Path:
        return self.root / agent_id

    def _version_path(self, agent_id: str, version: int) -> Path:
        return self._agent_dir(agent_id) / f"v{version:04d}.pt"

    def list_versions(self, agent_id: str) -> List[int]:
        """Saved versions of an agent, ascending"""
        agent_dir = self._agent_dir(agent_id)
        if not agent_dir.exists():
            return []
        versions = []
        for path in agent_dir.iterdir():
            match = _VERSION_FILE.match(path.name)
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    def list_agents(self) -> List[str]:
        """Ids of all agents with at least one checkpoint"""
        if not self.root.exists():
            return []
        return sorted(
            path.name for path in self.root.iterdir()
            if path.is_dir() and self.list_versions(path.name)
        )

    def read_metadata(self, agent_id: str) -> Dict[str, Any]:
        metadata_path = self._agent_dir(agent_id) / "metadata.json"
        if not metadata_path.exists():
            return {"agent_id": agent_id, "checkpoints": []}
        with open(metadata_path, 'r') as f:
            return json.load(f)

    def save(
        self,
        agent_id: str,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Persist a new checkpoint version.

        Args:
            agent_id: Owning agent
            payload: Tensors, numbers, strings and containers of those
            metadata: JSON-safe summary stored in the index (symbol, config, score)

        Returns:
            The new version number (previous maximum + 1)
        """
        with self._lock:
            agent_dir = self._agent_dir(agent_id)
            agent_dir.mkdir(parents=True, exist_ok=True)

            existing = self.list_versions(agent_id)
            version = (existing[-1] + 1) if existing else 1
            saved_at = datetime.now().isoformat()

            checkpoint = dict(payload)
            checkpoint.update({"agent_id": agent_id, "version": version, "saved_at": saved_at})
            _atomic_write(
                self._version_path(agent_id, version),
                lambda tmp: torch.save(checkpoint, tmp),
            )

            index = self.read_metadata(agent_id)
            entry = {"version": version, "saved_at": saved_at}
            entry.update(metadata or {})
            index.setdefault("checkpoints", []).append(entry)
            index["agent_id"] = agent_id
            index["latest_version"] = version
            for key in ("symbol", "config"):
                if metadata and key in metadata:
                    index[key] = metadata[key]

            def write_index(tmp: str):
                with open(tmp, 'w') as f:
                    json.dump(index, f, indent=2, default=str)

            _atomic_write(agent_dir / "metadata.json", write_index)

        logger.info(f"Saved checkpoint v{version} for {agent_id}")
        return version

    def load(self, agent_id: str, version: Optional[int] = None) -> Dict[str, Any]:
        """
        Load a checkpoint (the latest one when version is None).

        Raises:
            CheckpointNotFoundError: if the agent has no such version
        """
        versions = self.list_versions(agent_id)
        if not versions:
            raise CheckpointNotFoundError(agent_id, version)
        if version is None:
            version = versions[-1]
        elif version not in versions:
            raise CheckpointNotFoundError(agent_id, version)

        return torch.load(
            self._version_path(agent_id, version),
            map_location="cpu",
            weights_only=True,
        )

    def delete(self, agent_id: str) -> bool:
        """Remove every checkpoint of an agent"""
        with self._lock:
            agent_dir = self._agent_dir(agent_id)
            if not agent_dir.exists():
                return False
            shutil.rmtree(agent_dir)
        logger.info(f"Deleted checkpoints for {agent_id}")
        return True


def save_agent_checkpoint(
    store: CheckpointStore,
    agent: DQNAgent,
    score: Optional[float] = None,
) -> int:
    """Persist the agent's networks, epsilon, counters and performance as a new version"""
    payload = agent.export_state()
    performance = agent.get_performance().model_dump(mode="json")
    config = agent.config.model_dump()
    payload.update({
        "config": config,
        "symbol": agent.symbol,
        "performance": performance,
        "evaluation": {k: v for k, v in agent.evaluation.items() if isinstance(v, (int, float))},
        "score": score,
    })
    version = store.save(
        agent.id,
        payload,
        metadata={
            "symbol": agent.symbol,
            "config": config,
            "score": score,
            "update_count": agent.update_count,
            "epsilon": agent.epsilon,
        },
    )
    agent.checkpoint_version = version
    return version


def restore_agent_checkpoint(
    store: CheckpointStore,
    agent: DQNAgent,
    version: Optional[int] = None,
) -> int:
    """
    Load a saved version into an existing agent (memory is kept).

    Raises:
        CheckpointNotFoundError: if the version does not exist
    """
    checkpoint = store.load(agent.id, version)
    agent.import_state(checkpoint)
    agent.evaluation = dict(checkpoint.get("evaluation") or {})
    agent.checkpoint_version = int(checkpoint["version"])
    return agent.checkpoint_version


def load_agent_checkpoint(
    store: CheckpointStore,
    agent_id: str,
    version: Optional[int] = None,
    device: Optional[str] = None,
) -> DQNAgent:
    """Rebuild an agent from disk; its replay memory starts empty"""
    checkpoint = store.load(agent_id, version)
    agent = DQNAgent(
        DQNConfig(**checkpoint["config"]),
        agent_id=agent_id,
        symbol=checkpoint.get("symbol", "UNKNOWN"),
        device=device,
    )
    agent.import_state(checkpoint)
    agent.evaluation = dict(checkpoint.get("evaluation") or {})
    agent.checkpoint_version = int(checkpoint["version"])
    return agent
