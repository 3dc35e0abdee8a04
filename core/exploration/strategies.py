"""
App Explorer - Target Selection Strategies

Each strategy is a pure function over the live frontier entries (already in
priority order) and a read-only SelectionContext. STRATEGY_SELECTORS maps
ExplorationStrategy to its selector; ADAPTIVE is resolved by
AdaptiveStrategySelector to one of the concrete strategies.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel

from config.exploration_config import ExplorationStrategy

from .exploration_models import ExplorationTarget
from .interfaces import GraphView
from .queue_manager import systematic_priority

logger = logging.getLogger(__name__)


@dataclass
class SelectionContext:
    current_screen_id: Optional[str]
    graph: Optional[GraphView] = None
    screen_depths: Dict[str, int] = field(default_factory=dict)
    skip_screens: Set[str] = field(default_factory=set)
    screen_visits: Dict[str, int] = field(default_factory=dict)

    def depth(self, screen_id: str) -> int:
        if screen_id in self.screen_depths:
            return self.screen_depths[screen_id]
        if self.graph is not None:
            return self.graph.depth_of(screen_id)
        return 0

    def is_current(self, target: ExplorationTarget) -> bool:
        return target.screen_id == self.current_screen_id

    def visits(self, screen_id: str) -> int:
        return self.screen_visits.get(screen_id, 0)


Selector = Callable[[Sequence[ExplorationTarget], SelectionContext], Optional[ExplorationTarget]]


def _eligible(entries: Sequence[ExplorationTarget], ctx: SelectionContext) -> List[ExplorationTarget]:
    return [t for t in entries if t.screen_id not in ctx.skip_screens]


def select_priority_based(entries, ctx):
    """Highest priority anywhere, even if it means navigating"""
    eligible = _eligible(entries, ctx)
    return eligible[0] if eligible else None


def select_screen_first(entries, ctx):
    """Finish the current screen before moving on"""
    eligible = _eligible(entries, ctx)
    for target in eligible:
        if ctx.is_current(target):
            return target
    return eligible[0] if eligible else None


def select_depth_first(entries, ctx):
    """
    Push deeper: navigation elements first, then the deepest screen.

    The current screen wins remaining ties.
    """
    eligible = _eligible(entries, ctx)
    if not eligible:
        return None
    return max(
        eligible, key=lambda t: (t.navigation, ctx.depth(t.screen_id), ctx.is_current(t))
    )


def select_breadth_first(entries, ctx):
    """Least-visited screen first, then the shallowest; the current screen wins ties"""
    eligible = _eligible(entries, ctx)
    if not eligible:
        return None
    return min(
        eligible,
        key=lambda t: (ctx.visits(t.screen_id), ctx.depth(t.screen_id), not ctx.is_current(t)),
    )


def _reading_order(target: ExplorationTarget) -> int:
    if target.bounds is None:
        return 0
    return -systematic_priority(target.bounds.center_x, target.bounds.center_y)


def select_systematic(entries, ctx):
    """Current screen top-left to bottom-right, then the shallowest screen"""
    eligible = _eligible(entries, ctx)
    if not eligible:
        return None
    return min(
        eligible,
        key=lambda t: (not ctx.is_current(t), ctx.depth(t.screen_id), _reading_order(t)),
    )


STRATEGY_SELECTORS: Dict[ExplorationStrategy, Selector] = {
    ExplorationStrategy.SCREEN_FIRST: select_screen_first,
    ExplorationStrategy.PRIORITY_BASED: select_priority_based,
    ExplorationStrategy.DEPTH_FIRST: select_depth_first,
    ExplorationStrategy.BREADTH_FIRST: select_breadth_first,
    ExplorationStrategy.SYSTEMATIC: select_systematic,
}


def select_target(
    strategy: ExplorationStrategy,
    entries: Sequence[ExplorationTarget],
    ctx: SelectionContext,
) -> Optional[ExplorationTarget]:
    selector = STRATEGY_SELECTORS.get(strategy, select_priority_based)
    return selector(entries, ctx)


# =============================================================================
# Adaptive meta-strategy
# =============================================================================


class StrategyPerformance(BaseModel):
    strategy: ExplorationStrategy
    actions: int = 0
    discoveries: int = 0

    @property
    def discovery_rate(self) -> float:
        return self.discoveries / self.actions if self.actions else 0.0


class AdaptiveStrategySelector:
    """
    Rotates through the concrete strategies, measuring discoveries per action.

    The active strategy is replaced when it has gone stagnation_window
    actions without a discovery or used up its quota. Untried strategies are
    tried in order first; after that the best discovery rate so far is
    chosen (the runner-up if the best is the one being replaced for
    stagnation).
    """

    CANDIDATES: Tuple[ExplorationStrategy, ...] = (
        ExplorationStrategy.SCREEN_FIRST,
        ExplorationStrategy.PRIORITY_BASED,
        ExplorationStrategy.DEPTH_FIRST,
        ExplorationStrategy.BREADTH_FIRST,
        ExplorationStrategy.SYSTEMATIC,
    )

    def __init__(
        self,
        quota: int = 15,
        stagnation_window: int = 8,
        initial: Optional[ExplorationStrategy] = None,
    ):
        self.quota = quota
        self.stagnation_window = stagnation_window
        self.performance: Dict[ExplorationStrategy, StrategyPerformance] = {
            s: StrategyPerformance(strategy=s) for s in self.CANDIDATES
        }
        self.current = initial if initial in self.CANDIDATES else self.CANDIDATES[0]
        self.actions_in_turn = 0
        self.actions_since_discovery = 0
        self.switches = 0

    def record(self, discovered: bool) -> Optional[ExplorationStrategy]:
        """
        Account one action to the active strategy.

        Returns:
            The new strategy if a switch happened, else None
        """
        perf = self.performance[self.current]
        perf.actions += 1
        self.actions_in_turn += 1
        if discovered:
            perf.discoveries += 1
            self.actions_since_discovery = 0
        else:
            self.actions_since_discovery += 1

        if self.actions_since_discovery >= self.stagnation_window:
            return self._switch("stagnation")
        if self.actions_in_turn >= self.quota:
            return self._switch("quota")
        return None

    def _next_strategy(self, reason: str) -> ExplorationStrategy:
        untried = [s for s in self.CANDIDATES if self.performance[s].actions == 0]
        if untried:
            return untried[0]
        ranked = sorted(
            self.CANDIDATES,
            key=lambda s: self.performance[s].discovery_rate,
            reverse=True,
        )
        if reason == "stagnation" and ranked[0] == self.current and len(ranked) > 1:
            return ranked[1]
        return ranked[0]

    def _switch(self, reason: str) -> Optional[ExplorationStrategy]:
        previous = self.current
        self.current = self._next_strategy(reason)
        self.actions_in_turn = 0
        self.actions_since_discovery = 0
        if self.current == previous:
            return None
        self.switches += 1
        logger.info(
            f"[AdaptiveStrategy] {previous.value} -> {self.current.value} ({reason}, "
            f"rate {self.performance[previous].discovery_rate:.2f})"
        )
        return self.current

    def best_strategy(self) -> Optional[StrategyPerformance]:
        tried = [p for p in self.performance.values() if p.actions > 0]
        if not tried:
            return None
        return max(tried, key=lambda p: p.discovery_rate)

    def summary(self) -> Dict[str, float]:
        return {s.value: p.discovery_rate for s, p in self.performance.items() if p.actions}
