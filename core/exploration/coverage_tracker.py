"""
App Explorer - Coverage Tracker

Derives discovery metrics from the run state on demand. Nothing here is a
second source of truth: a metric can always be recomputed from
ExplorationState.

Overall coverage is a weighted blend:
    50% elements visited, 30% screens fully explored, 20% containers scrolled
"""

import logging
from typing import Dict, List

from pydantic import BaseModel, Field

from .exploration_models import composite_key
from .exploration_state import ExplorationState

logger = logging.getLogger(__name__)

ELEMENT_WEIGHT = 0.5
SCREEN_WEIGHT = 0.3
SCROLL_WEIGHT = 0.2


class ScreenCoverage(BaseModel):
    """Per-screen element statistics"""

    screen_id: str
    total_clickable: int = 0
    visited_clickable: int = 0
    total_scrollable: int = 0
    scrolled_scrollable: int = 0

    @property
    def unvisited(self) -> int:
        return (self.total_clickable - self.visited_clickable) + (
            self.total_scrollable - self.scrolled_scrollable
        )

    @property
    def is_fully_explored(self) -> bool:
        return self.unvisited <= 0

    @property
    def coverage(self) -> float:
        if self.total_clickable == 0:
            return 1.0
        return self.visited_clickable / self.total_clickable


class CoverageMetrics(BaseModel):
    total_screens_discovered: int = 0
    screens_fully_explored: int = 0
    screen_coverage: float = 0.0

    total_elements_discovered: int = 0
    elements_visited: int = 0
    element_coverage: float = 0.0

    total_scrollable_containers: int = 0
    containers_fully_scrolled: int = 0
    scroll_coverage: float = 0.0

    unexplored_branches: int = 0
    exploration_frontier: List[str] = Field(
        default_factory=list, description="Screens with the most unexplored work first"
    )
    overall_coverage: float = 0.0

    def is_complete(self, target_coverage: float = 0.90) -> bool:
        return self.overall_coverage >= target_coverage

    def summary(self) -> str:
        return (
            f"Coverage: {int(self.overall_coverage * 100)}% "
            f"(elements {self.elements_visited}/{self.total_elements_discovered}, "
            f"screens {self.screens_fully_explored}/{self.total_screens_discovered}, "
            f"scroll {self.containers_fully_scrolled}/{self.total_scrollable_containers})"
        )


class CoverageTracker:
    """Computes CoverageMetrics for one run"""

    def __init__(self, state: ExplorationState):
        self.state = state
        self.metrics = CoverageMetrics()

    def screen_coverage(self) -> Dict[str, ScreenCoverage]:
        stats: Dict[str, ScreenCoverage] = {}
        for screen_id, screen in self.state.explored_screens.items():
            visited = sum(
                1
                for element in screen.clickable_elements
                if self.state.is_visited(composite_key(screen_id, element.element_id))
            )
            scrolled = sum(1 for c in screen.scrollable_containers if c.fully_scrolled)
            stats[screen_id] = ScreenCoverage(
                screen_id=screen_id,
                total_clickable=len(screen.clickable_elements),
                visited_clickable=visited,
                total_scrollable=len(screen.scrollable_containers),
                scrolled_scrollable=scrolled,
            )
        return stats

    def compute(self) -> CoverageMetrics:
        """
        Recompute metrics from the current run state.

        Only visited keys that still match an element of a known screen count,
        so re-captured screens cannot inflate element coverage. Screens with
        no scrollable containers do not count as scrolled.
        """
        per_screen = self.screen_coverage()
        graph = self.state.navigation_graph

        total_screens = len(per_screen)
        fully_explored = sum(
            1
            for sid, stats in per_screen.items()
            if stats.is_fully_explored or graph.is_fully_explored(sid)
        )
        total_elements = sum(s.total_clickable for s in per_screen.values())
        visited = sum(s.visited_clickable for s in per_screen.values())
        total_scrollable = sum(s.total_scrollable for s in per_screen.values())
        scrolled = sum(s.scrolled_scrollable for s in per_screen.values())

        screen_cov = fully_explored / total_screens if total_screens else 0.0
        element_cov = visited / total_elements if total_elements else 0.0
        scroll_cov = scrolled / total_scrollable if total_scrollable else 0.0

        frontier = sorted(
            (s for s in per_screen.values() if s.unvisited > 0),
            key=lambda s: s.unvisited,
            reverse=True,
        )

        self.metrics = CoverageMetrics(
            total_screens_discovered=total_screens,
            screens_fully_explored=fully_explored,
            screen_coverage=screen_cov,
            total_elements_discovered=total_elements,
            elements_visited=visited,
            element_coverage=element_cov,
            total_scrollable_containers=total_scrollable,
            containers_fully_scrolled=scrolled,
            scroll_coverage=scroll_cov,
            unexplored_branches=len(frontier),
            exploration_frontier=[s.screen_id for s in frontier],
            overall_coverage=(
                element_cov * ELEMENT_WEIGHT
                + screen_cov * SCREEN_WEIGHT
                + scroll_cov * SCROLL_WEIGHT
            ),
        )
        logger.debug(f"[CoverageTracker] {self.metrics.summary()}")
        return self.metrics

    def is_complete(self, target_coverage: float) -> bool:
        return self.compute().is_complete(target_coverage)

    def get_exploration_frontier(self, limit: int = 5) -> List[str]:
        return self.compute().exploration_frontier[:limit]

    def summary(self) -> str:
        return self.compute().summary()
