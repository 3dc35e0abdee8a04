"""
Collaborator contracts for the exploration engine.

The engine never talks to a device directly: it observes through a
ScreenProvider, acts through an Actuator, reports through a StatusSink, and
persists learned values through a PolicyStore. Narrow read-only/write-only
views are handed to components that must not own the run state.
"""

from typing import Dict, List, Optional, Protocol, Set

from .exploration_models import (
    ExplorationIssue,
    ExplorationProgress,
    ExplorationTarget,
    ExploredScreen,
)


class ScreenProvider(Protocol):
    async def capture_current_screen(self) -> ExploredScreen:
        """
        Structured snapshot of the foreground UI.

        Must be side-effect free. Raises ScreenCaptureError on failure.
        """
        ...


class Actuator(Protocol):
    async def tap(self, x: int, y: int) -> bool:
        ...

    async def scroll(self, x: int, y: int, direction: str) -> bool:
        """direction is one of 'up', 'down', 'left', 'right' (content movement)"""
        ...

    async def press_back(self) -> bool:
        ...

    async def launch_app(self, package: str, force_restart: bool = False) -> bool:
        ...


class StatusSink(Protocol):
    def on_state_change(self, old_state: str, new_state: str, event: str) -> None:
        ...

    def on_progress(self, progress: ExplorationProgress) -> None:
        ...

    def on_issue(self, issue: ExplorationIssue) -> None:
        ...

    def on_action_intent(self, target: ExplorationTarget) -> None:
        ...

    def request_help(self, message: str, timeout_s: float) -> None:
        ...

    def on_training_log(self, entries: List[Dict]) -> None:
        """Experience tuples collected during the run"""
        ...


class PolicyStore(Protocol):
    """Key-value persistence for learned values, keyed 'screenHash|actionKey'"""

    def get_q_value(self, key: str) -> Optional[float]:
        ...

    def get_all_q_values(self, package: Optional[str] = None) -> Dict[str, float]:
        ...

    def upsert_q_value(self, key: str, q_value: float, package: Optional[str] = None) -> None:
        ...

    def increment_visit_count(self, key: str) -> int:
        ...

    def get_visit_count(self, key: str) -> int:
        ...

    def get_all_visit_counts(self, package: Optional[str] = None) -> Dict[str, int]:
        ...

    def add_dangerous_pattern(self, pattern: str, package: Optional[str] = None) -> None:
        ...

    def get_dangerous_patterns(self, package: Optional[str] = None) -> Set[str]:
        ...

    def increment_screen_visit(self, screen_hash: str, package: Optional[str] = None) -> int:
        ...

    def get_screen_visit_count(self, screen_hash: str) -> int:
        ...

    def set_human_feedback(self, key: str, value: int) -> None:
        ...

    def get_human_feedback(self, key: str) -> Optional[int]:
        ...

    def record_best_strategy(self, package: str, strategy: str, score: float) -> None:
        ...

    def get_best_strategy(self, package: str) -> Optional[str]:
        ...


# =============================================================================
# Narrow views handed to components that must not own run state
# =============================================================================


class VisitedView(Protocol):
    def is_visited(self, composite_key: str) -> bool:
        ...


class QueueAppender(Protocol):
    def push(self, target: ExplorationTarget) -> None:
        ...


class GraphView(Protocol):
    home_screen_id: Optional[str]

    def is_blocker_screen(self, screen_id: str) -> bool:
        ...

    def is_known(self, screen_id: str) -> bool:
        ...

    def get_destination(self, from_screen: str, element_id: str) -> Optional[str]:
        ...

    def depth_of(self, screen_id: str) -> int:
        ...

    def get_unexplored_screens(self) -> Set[str]:
        ...

    def find_path(self, from_screen: str, to_screen: str) -> Optional[List]:
        ...
