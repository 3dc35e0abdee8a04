"""
ML components for exploration (tabular Q-learning policy)
"""
from .exploration_q_learning import ExplorationQLearning, HyperParams

__all__ = ["ExplorationQLearning", "HyperParams"]
