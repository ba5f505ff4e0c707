"""
DQN Trading Agent Service - Deep Q-Learning for Trading Decisions

Trains Deep Q-Network agents on historical bars in a market simulator and
operates them live:
- Experience replay with a hard-synced target network
- Epsilon-greedy exploration with multiplicative decay
- Versioned checkpoints with explicit rollback
- Deployments that serve decisions per portfolio and keep learning
  from realized outcomes in the background
"""

__version__ = "1.0.0"
