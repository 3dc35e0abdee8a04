"""
Exploration engine package

The orchestrator lives in core.exploration.app_explorer and is imported from
there directly; this package exports the shared models.
"""
from .exploration_models import (
    ClickableElement,
    ElementBounds,
    ExplorationIssue,
    ExplorationProgress,
    ExplorationStatus,
    ExplorationTarget,
    ExplorationTargetType,
    ExploredScreen,
    IssueType,
    ScrollableContainer,
    TapResult,
)
from .navigation_graph import NavigationGraph
from .state_machine import ExplorationStateMachine, ExplorerEvent, ExplorerState

__all__ = [
    "ClickableElement",
    "ElementBounds",
    "ExplorationIssue",
    "ExplorationProgress",
    "ExplorationStatus",
    "ExplorationTarget",
    "ExplorationTargetType",
    "ExploredScreen",
    "IssueType",
    "ScrollableContainer",
    "TapResult",
    "NavigationGraph",
    "ExplorationStateMachine",
    "ExplorerEvent",
    "ExplorerState",
]
