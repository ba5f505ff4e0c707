"""
Q-Value Network for DQN Trading Agents

Feed-forward approximator mapping an encoded market state to one Q-value per
action. Two instances with identical architecture are used per agent: the
online network (trained) and the target network (hard-synced copy used to
compute TD targets).

Architecture:
    state_size -> 256 -> 128 -> 64 -> action_size
    Tanh hidden activations, dropout after the first two hidden layers
    (active only while fitting), linear output head.
"""

import copy
import math
import torch
import torch.nn as nn
import torch.nn.functional as F
import numpy as np
from typing import Dict, Optional, Sequence

from ..errors import TrainingDivergenceError


class QNetwork(nn.Module):
    """
    Multi-layer perceptron producing Q-values.

    Args:
        state_size: Input dimension
        action_size: Number of linear outputs
        hidden_dims: Hidden layer widths
        dropout_rates: Dropout after each hidden layer (0 disables)
    """

    def __init__(
        self,
        state_size: int,
        action_size: int,
        hidden_dims: Sequence[int] = (256, 128, 64),
        dropout_rates: Sequence[float] = (0.3, 0.2, 0.0),
    ):
        super().__init__()

        layers = []
        input_dim = state_size
        for hidden_dim, rate in zip(hidden_dims, dropout_rates):
            layers.append(nn.Linear(input_dim, hidden_dim))
            layers.append(nn.Tanh())
            if rate > 0:
                layers.append(nn.Dropout(rate))
            input_dim = hidden_dim

        self.layers = nn.Sequential(*layers)
        self.q_head = nn.Linear(input_dim, action_size)

        self._init_weights()

    def _init_weights(self):
        """Xavier init suits the saturating activations"""
        for module in self.modules():
            if isinstance(module, nn.Linear):
                nn.init.xavier_uniform_(module.weight)
                nn.init.zeros_(module.bias)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Args:
            x: [batch_size, state_size]
        Returns:
            [batch_size, action_size]
        """
        return self.q_head(self.layers(x))


class ValueNetwork:
    """
    Trainable Q-function with an Adam optimizer.

    predict() runs in eval mode without gradients, fit() performs exactly one
    optimizer step on the MSE between predictions and targets, sync() hard
    copies all parameters from another instance.
    """

    def __init__(
        self,
        state_size: int,
        action_size: int,
        learning_rate: float = 0.001,
        device: str = "cpu",
        seed: Optional[int] = None,
    ):
        self.state_size = state_size
        self.action_size = action_size
        self.learning_rate = learning_rate
        self.device = device

        if seed is not None:
            with torch.random.fork_rng(devices=[]):
                torch.manual_seed(seed)
                self.model = QNetwork(state_size, action_size)
        else:
            self.model = QNetwork(state_size, action_size)
        self.model.to(device)
        self.model.eval()

        self.optimizer = torch.optim.Adam(self.model.parameters(), lr=learning_rate)

    def _as_batch(self, states: np.ndarray) -> torch.Tensor:
        x = torch.as_tensor(np.asarray(states, dtype=np.float32), device=self.device)
        if x.dim() == 1:
            x = x.unsqueeze(0)
        return x

    def predict(self, state: np.ndarray) -> np.ndarray:
        """Q-values for one state ([action_size]) or a batch ([n, action_size])"""
        single = np.asarray(state).ndim == 1
        self.model.eval()
        with torch.no_grad():
            q_values = self.model(self._as_batch(state)).cpu().numpy()
        return q_values[0] if single else q_values

    def fit(self, batch_states: np.ndarray, batch_targets: np.ndarray) -> float:
        """
        One gradient step towards batch_targets.

        The update is all-or-nothing: a non-finite loss raises before any
        parameter changes, and a step producing non-finite parameters is
        rolled back before raising.

        Raises:
            TrainingDivergenceError: on non-finite loss or parameters
        """
        states = self._as_batch(batch_states)
        targets = self._as_batch(batch_targets)

        self.model.train()
        try:
            loss = F.mse_loss(self.model(states), targets)
            loss_value = float(loss.item())
            if not math.isfinite(loss_value):
                raise TrainingDivergenceError(loss_value)

            snapshot = self.state_dict()
            self.optimizer.zero_grad()
            loss.backward()
            self.optimizer.step()

            if not self._parameters_finite():
                self.load_state_dict(snapshot)
                raise TrainingDivergenceError(loss_value)
        finally:
            self.model.eval()

        return loss_value

    def _parameters_finite(self) -> bool:
        return all(torch.isfinite(p).all().item() for p in self.model.parameters())

    def sync(self, source: "ValueNetwork") -> None:
        """Hard copy of every parameter from source (no blending)"""
        self.model.load_state_dict(source.model.state_dict())

    def sensitivity(self, state: np.ndarray, action: int) -> np.ndarray:
        """Gradient of Q[action] with respect to each input dimension"""
        self.model.eval()
        x = self._as_batch(state).clone().requires_grad_(True)
        with torch.enable_grad():
            q = self.model(x)[0, action]
            (grad,) = torch.autograd.grad(q, x)
        return grad[0].detach().cpu().numpy()

    def state_dict(self) -> Dict[str, Dict]:
        """Deep copy of network and optimizer state"""
        return {
            "model": {k: v.detach().clone() for k, v in self.model.state_dict().items()},
            "optimizer": copy.deepcopy(self.optimizer.state_dict()),
        }

    def load_state_dict(self, state: Dict[str, Dict]) -> None:
        self.model.load_state_dict(state["model"])
        if state.get("optimizer"):
            self.optimizer.load_state_dict(state["optimizer"])

    def get_params(self) -> Dict[str, torch.Tensor]:
        """CPU copy of the network parameters (for checkpoints)"""
        return {k: v.detach().cpu().clone() for k, v in self.model.state_dict().items()}

    def set_params(self, params: Dict[str, torch.Tensor]) -> None:
        self.model.load_state_dict(params)

    def clone(self) -> "ValueNetwork":
        """Independent copy with identical parameters and optimizer state"""
        other = ValueNetwork.__new__(ValueNetwork)
        other.state_size = self.state_size
        other.action_size = self.action_size
        other.learning_rate = self.learning_rate
        other.device = self.device
        other.model = copy.deepcopy(self.model)
        other.optimizer = torch.optim.Adam(other.model.parameters(), lr=self.learning_rate)
        other.optimizer.load_state_dict(copy.deepcopy(self.optimizer.state_dict()))
        return other
