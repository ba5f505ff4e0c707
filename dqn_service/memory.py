"""
Experience Replay Memory

Bounded FIFO store of transitions with uniform sampling (with replacement).
Memory belongs to a single agent and is never persisted.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

import numpy as np

from .errors import InsufficientMemoryError


@dataclass(frozen=True)
class Experience:
    """A single transition"""
    state: np.ndarray
    action: int
    reward: float
    next_state: np.ndarray
    done: bool
    timestamp: datetime = field(default_factory=datetime.now)


class ReplayMemory:
    """Fixed-capacity replay buffer; the oldest experience is evicted first"""

    def __init__(self, capacity: int, seed: Optional[int] = None):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._buffer: deque = deque(maxlen=capacity)
        self.rng = np.random.default_rng(seed)

    def push(self, experience: Experience) -> None:
        self._buffer.append(experience)

    def sample(self, n: int) -> List[Experience]:
        """
        Draw n experiences uniformly at random, with replacement.

        Raises:
            InsufficientMemoryError: if fewer than n experiences are stored
        """
        size = len(self._buffer)
        if n <= 0 or size < n:
            raise InsufficientMemoryError(n, size)
        indices = self.rng.integers(0, size, size=n)
        return [self._buffer[i] for i in indices]

    def sample_arrays(self, n: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Sample n experiences and stack them into (states, actions, rewards, next_states, dones)"""
        batch = self.sample(n)
        return (
            np.stack([e.state for e in batch]).astype(np.float32),
            np.array([e.action for e in batch], dtype=np.int64),
            np.array([e.reward for e in batch], dtype=np.float32),
            np.stack([e.next_state for e in batch]).astype(np.float32),
            np.array([e.done for e in batch], dtype=np.bool_),
        )

    def clear(self) -> None:
        self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)

    def __iter__(self) -> Iterator[Experience]:
        return iter(list(self._buffer))
