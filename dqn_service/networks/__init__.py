"""
Neural Network Architectures for DQN Trading Agents

- q_network: feed-forward Q-value approximator and its trainable wrapper
"""

from .q_network import QNetwork, ValueNetwork

__all__ = [
    "QNetwork",
    "ValueNetwork",
]
