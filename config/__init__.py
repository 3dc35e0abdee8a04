"""
App Explorer Configuration Module

Usage:
    from config import Defaults, ExplorationConfig
    config = ExplorationConfig.for_deep_exploration()
"""

from .defaults import Defaults, ExplorerDefaults, load_defaults_from_env
from .exploration_config import (
    ExplorationConfig,
    ExplorationGoal,
    ExplorationMode,
    ExplorationStrategy,
)

__all__ = [
    "Defaults",
    "ExplorerDefaults",
    "load_defaults_from_env",
    "ExplorationConfig",
    "ExplorationGoal",
    "ExplorationMode",
    "ExplorationStrategy",
]
