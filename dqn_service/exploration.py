"""
Epsilon-greedy exploration with multiplicative decay
"""

from typing import Callable, Optional

import numpy as np


class EpsilonGreedyPolicy:
    """
    Acts randomly with probability epsilon, otherwise greedily on Q-values.

    Epsilon only ever decreases: decay() applies
    epsilon <- max(epsilon_min, epsilon * epsilon_decay).
    """

    def __init__(
        self,
        action_size: int,
        epsilon: float,
        epsilon_min: float,
        epsilon_decay: float,
        rng: Optional[np.random.Generator] = None,
    ):
        self.action_size = action_size
        self.epsilon = epsilon
        self.epsilon_min = epsilon_min
        self.epsilon_decay = epsilon_decay
        self.rng = rng if rng is not None else np.random.default_rng()

    def act(self, q_fn: Callable[[np.ndarray], np.ndarray], state: np.ndarray) -> int:
        if self.rng.random() < self.epsilon:
            return int(self.rng.integers(0, self.action_size))
        return self.select_action(q_fn, state)

    @staticmethod
    def select_action(q_fn: Callable[[np.ndarray], np.ndarray], state: np.ndarray) -> int:
        """Greedy action (epsilon forced to 0)"""
        return int(np.argmax(q_fn(state)))

    def decay(self) -> float:
        self.epsilon = max(self.epsilon_min, self.epsilon * self.epsilon_decay)
        return self.epsilon
