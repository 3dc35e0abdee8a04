"""
App Explorer - Run state

ExplorationState is the single mutable aggregate of one run. It is created by
AppExplorer at run start and handed by reference only to the orchestrator;
other components get the narrow views declared in interfaces.py.
"""

import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

from config.exploration_config import ExplorationConfig

from .exploration_models import (
    ChangedToggle,
    ClickableElement,
    ExplorationIssue,
    ExplorationStatus,
    ExplorationTarget,
    ExploredScreen,
    IssueType,
    composite_key,
)
from .navigation_graph import NavigationGraph

logger = logging.getLogger(__name__)


class ExplorationFrontier:
    """
    Priority queue of pending ExplorationTargets.

    Highest priority first; equal priorities come out in insertion order.
    One live entry per target key: pushing a duplicate keeps the higher
    priority.
    """

    def __init__(self):
        self._heap: List[Tuple[int, int]] = []
        self._entries: Dict[int, ExplorationTarget] = {}
        self._seq_by_key: Dict[str, int] = {}
        self._counter = itertools.count()

    def push(self, target: ExplorationTarget) -> bool:
        existing = self._seq_by_key.get(target.key)
        if existing is not None:
            if self._entries[existing].priority >= target.priority:
                return False
            self._discard(existing)
        seq = next(self._counter)
        self._entries[seq] = target
        self._seq_by_key[target.key] = seq
        heapq.heappush(self._heap, (-target.priority, seq))
        return True

    def _discard(self, seq: int):
        target = self._entries.pop(seq, None)
        if target is not None and self._seq_by_key.get(target.key) == seq:
            del self._seq_by_key[target.key]

    def _prune(self):
        while self._heap and self._heap[0][1] not in self._entries:
            heapq.heappop(self._heap)

    def peek(self) -> Optional[ExplorationTarget]:
        self._prune()
        if not self._heap:
            return None
        return self._entries[self._heap[0][1]]

    def pop(self) -> Optional[ExplorationTarget]:
        self._prune()
        if not self._heap:
            return None
        _, seq = heapq.heappop(self._heap)
        target = self._entries[seq]
        self._discard(seq)
        return target

    def take(self, target: ExplorationTarget) -> bool:
        """Remove a specific target chosen by a strategy"""
        seq = self._seq_by_key.get(target.key)
        if seq is None:
            return False
        self._discard(seq)
        return True

    def remove_screen(self, screen_id: str) -> int:
        """Drop every target on a screen (branch abandoned)"""
        doomed = [
            seq for seq, target in self._entries.items() if target.screen_id == screen_id
        ]
        for seq in doomed:
            self._discard(seq)
        return len(doomed)

    def entries(self) -> List[ExplorationTarget]:
        """Live targets in pop order"""
        ordered = sorted(
            (seq for seq in self._entries), key=lambda s: (-self._entries[s].priority, s)
        )
        return [self._entries[seq] for seq in ordered]

    def targets_for_screen(self, screen_id: str) -> List[ExplorationTarget]:
        return [t for t in self.entries() if t.screen_id == screen_id]

    def screens(self) -> Set[str]:
        return {t.screen_id for t in self._entries.values()}

    def clear(self):
        self._heap.clear()
        self._entries.clear()
        self._seq_by_key.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._seq_by_key

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ExplorationTarget]:
        return iter(self.entries())


@dataclass
class ExplorationState:
    """Everything one run knows. Never shared between concurrent runs."""

    package_name: str
    config: ExplorationConfig = field(default_factory=ExplorationConfig)
    explored_screens: Dict[str, ExploredScreen] = field(default_factory=dict)
    frontier: ExplorationFrontier = field(default_factory=ExplorationFrontier)
    visited_elements: Set[str] = field(default_factory=set)
    navigation_graph: NavigationGraph = field(default_factory=NavigationGraph)
    status: ExplorationStatus = ExplorationStatus.NOT_STARTED
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    issues: List[ExplorationIssue] = field(default_factory=list)
    element_retry_count: Dict[str, int] = field(default_factory=dict)
    unreachable_screens: Set[str] = field(default_factory=set)
    screen_reach_failures: Dict[str, int] = field(default_factory=dict)
    dangerous_patterns: Set[str] = field(default_factory=set)
    recovery_attempts: int = 0
    changed_toggles: List[ChangedToggle] = field(default_factory=list)
    screen_depths: Dict[str, int] = field(default_factory=dict)
    visited_navigation_tabs: Set[str] = field(default_factory=set)
    pass_number: int = 1
    actions_taken: int = 0
    error_message: Optional[str] = None

    # =========================================================================
    # Visited set (monotonic within a run)
    # =========================================================================

    def mark_visited(self, screen_id: str, element_id: str) -> bool:
        key = composite_key(screen_id, element_id)
        if key in self.visited_elements:
            return False
        self.visited_elements.add(key)
        return True

    def is_visited(self, key: str) -> bool:
        return key in self.visited_elements

    def is_element_visited(self, screen_id: str, element_id: str) -> bool:
        return composite_key(screen_id, element_id) in self.visited_elements

    # =========================================================================
    # Screens
    # =========================================================================

    def record_screen(self, screen: ExploredScreen) -> Tuple[ExploredScreen, bool, List[str]]:
        """
        Store a captured screen, merging into the known instance on revisit.

        Returns:
            (stored screen, is_new, ids of newly appeared clickable elements)
        """
        known = self.explored_screens.get(screen.screen_id)
        if known is None:
            stored = screen.model_copy(deep=True)
            stored.visit_count = 1
            self.explored_screens[screen.screen_id] = stored
            self.navigation_graph.register_screen(screen.screen_id, screen.activity)
            return stored, True, stored.element_ids()
        added = known.merge_observation(screen)
        return known, False, added

    def get_screen(self, screen_id: str) -> Optional[ExploredScreen]:
        return self.explored_screens.get(screen_id)

    def get_element(self, screen_id: str, element_id: str) -> Optional[ClickableElement]:
        screen = self.explored_screens.get(screen_id)
        return screen.get_element(element_id) if screen else None

    def unvisited_elements(self, screen_id: str) -> List[ClickableElement]:
        screen = self.explored_screens.get(screen_id)
        if screen is None:
            return []
        return [
            e
            for e in screen.clickable_elements
            if not self.is_element_visited(screen_id, e.element_id)
        ]

    def mark_unreachable(self, screen_id: str, reason: str) -> int:
        """Abandon a branch: drop its targets and remember why"""
        self.unreachable_screens.add(screen_id)
        removed = self.frontier.remove_screen(screen_id)
        self.navigation_graph.mark_problematic(screen_id, reason)
        self.add_issue(screen_id, IssueType.SCREEN_UNREACHABLE, reason)
        return removed

    # =========================================================================
    # Issues
    # =========================================================================

    def add_issue(
        self,
        screen_id: str,
        issue_type: IssueType,
        description: str,
        element: Optional[ClickableElement] = None,
    ) -> ExplorationIssue:
        issue = ExplorationIssue(
            screen_id=screen_id,
            element_id=element.element_id if element else None,
            issue_type=issue_type,
            description=description,
            element_text=element.text if element else None,
            element_resource_id=element.resource_id if element else None,
            element_class_name=element.class_name if element else None,
            element_bounds=element.bounds if element else None,
        )
        self.issues.append(issue)
        logger.info(f"[ExplorationState] Issue {issue_type.value}: {description}")
        return issue

    # =========================================================================
    # Stats
    # =========================================================================

    @property
    def screens_explored(self) -> int:
        return len(self.explored_screens)

    @property
    def elements_explored(self) -> int:
        return len(self.visited_elements)

    def elapsed_ms(self, now: Optional[float] = None) -> int:
        end = self.end_time or now or time.time()
        return int((end - self.start_time) * 1000)
