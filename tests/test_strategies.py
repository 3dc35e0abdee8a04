"""Tests for target selection strategies and the adaptive meta-strategy."""

import pytest

from config.exploration_config import ExplorationStrategy
from core.exploration.exploration_models import (
    ElementBounds,
    ExplorationTarget,
    ExplorationTargetType,
)
from core.exploration.navigation_graph import NavigationGraph
from core.exploration.strategies import (
    AdaptiveStrategySelector,
    SelectionContext,
    select_breadth_first,
    select_depth_first,
    select_priority_based,
    select_screen_first,
    select_systematic,
    select_target,
)


def target(screen_id, element_id, priority, x=140, y=400, navigation=False):
    return ExplorationTarget(
        type=ExplorationTargetType.TAP_ELEMENT,
        screen_id=screen_id,
        element_id=element_id,
        priority=priority,
        bounds=ElementBounds(x=x, y=y, width=200, height=100),
        navigation=navigation,
    )


@pytest.fixture
def entries():
    """Already in frontier order (priority descending)"""
    return [
        target("home", "h1", 50),
        target("deep", "d1", 40),
        target("mid", "m1", 30),
        target("mid", "m2", 20, y=200),
        target("deep", "d2", 10),
    ]


@pytest.fixture
def ctx():
    return SelectionContext(
        current_screen_id="mid", screen_depths={"home": 0, "mid": 1, "deep": 2}
    )


class TestSelectors:
    def test_priority_based(self, entries, ctx):
        assert select_priority_based(entries, ctx).element_id == "h1"

    def test_screen_first_finishes_current_screen(self, entries, ctx):
        assert select_screen_first(entries, ctx).element_id == "m1"
        ctx.current_screen_id = "elsewhere"
        assert select_screen_first(entries, ctx).element_id == "h1"

    def test_depth_first(self, entries, ctx):
        assert select_depth_first(entries, ctx).element_id == "d1"

    def test_breadth_first(self, entries, ctx):
        assert select_breadth_first(entries, ctx).element_id == "h1"

    def test_depth_first_prefers_navigation(self, entries, ctx):
        entries.append(target("home", "tab_feed", 5, navigation=True))
        assert select_depth_first(entries, ctx).element_id == "tab_feed"

        entries.append(target("deep", "tab_more", 1, navigation=True))
        assert select_depth_first(entries, ctx).element_id == "tab_more"

    def test_breadth_first_prefers_least_visited_screen(self, entries, ctx):
        ctx.screen_visits = {"home": 4, "mid": 2, "deep": 1}
        assert select_breadth_first(entries, ctx).element_id == "d1"

        ctx.screen_visits = {"home": 4, "mid": 1, "deep": 1}
        assert select_breadth_first(entries, ctx).element_id == "m1"

        ctx.screen_visits = {"home": 1, "mid": 1, "deep": 1}
        assert select_breadth_first(entries, ctx).element_id == "h1"

    def test_current_screen_wins_depth_ties(self, ctx):
        tied = [target("other", "o1", 50), target("mid", "m1", 10)]
        ctx.screen_depths["other"] = 1
        assert select_depth_first(tied, ctx).element_id == "m1"
        assert select_breadth_first(tied, ctx).element_id == "m1"

    def test_systematic_reads_current_screen_top_down(self, entries, ctx):
        assert select_systematic(entries, ctx).element_id == "m2"
        ctx.current_screen_id = None
        assert select_systematic(entries, ctx).element_id == "h1"

    def test_skip_screens(self, entries, ctx):
        ctx.skip_screens = {"home", "mid"}
        assert select_priority_based(entries, ctx).element_id == "d1"
        assert select_screen_first(entries, ctx).element_id == "d1"
        ctx.skip_screens = {"home", "mid", "deep"}
        for selector in (select_priority_based, select_depth_first, select_systematic):
            assert selector(entries, ctx) is None

    def test_empty_frontier(self, ctx):
        assert select_breadth_first([], ctx) is None

    def test_depth_falls_back_to_graph(self):
        graph = NavigationGraph()
        graph.set_home_screen("home")
        graph.record_transition("home", "a", "mid")
        graph.record_transition("mid", "b", "deep")
        ctx = SelectionContext(current_screen_id="home", graph=graph)
        assert ctx.depth("deep") == 2
        assert SelectionContext(current_screen_id=None).depth("deep") == 0

    def test_select_target_dispatch(self, entries, ctx):
        assert select_target(ExplorationStrategy.DEPTH_FIRST, entries, ctx).element_id == "d1"
        # ADAPTIVE is resolved by the selector; falls back to priority order here
        assert select_target(ExplorationStrategy.ADAPTIVE, entries, ctx).element_id == "h1"


class TestAdaptiveStrategySelector:
    def test_tries_untried_strategies_in_order(self):
        selector = AdaptiveStrategySelector(quota=3, stagnation_window=2)
        assert selector.current == ExplorationStrategy.SCREEN_FIRST
        assert selector.record(False) is None
        assert selector.record(False) == ExplorationStrategy.PRIORITY_BASED

        assert selector.record(True) is None
        assert selector.record(True) is None
        assert selector.record(True) == ExplorationStrategy.DEPTH_FIRST
        assert selector.switches == 2

    def _seed(self, selector, rates):
        for strategy, discoveries in rates.items():
            perf = selector.performance[strategy]
            perf.actions = 10
            perf.discoveries = discoveries

    def test_stagnating_best_strategy_yields_to_runner_up(self):
        selector = AdaptiveStrategySelector(quota=50, stagnation_window=2)
        self._seed(
            selector,
            {
                ExplorationStrategy.SCREEN_FIRST: 5,
                ExplorationStrategy.PRIORITY_BASED: 3,
                ExplorationStrategy.DEPTH_FIRST: 1,
                ExplorationStrategy.BREADTH_FIRST: 4,
                ExplorationStrategy.SYSTEMATIC: 0,
            },
        )
        selector.record(False)
        assert selector.record(False) == ExplorationStrategy.BREADTH_FIRST

    def test_quota_keeps_best_strategy(self):
        selector = AdaptiveStrategySelector(quota=1, stagnation_window=10)
        self._seed(
            selector,
            {
                ExplorationStrategy.SCREEN_FIRST: 5,
                ExplorationStrategy.PRIORITY_BASED: 3,
                ExplorationStrategy.DEPTH_FIRST: 1,
                ExplorationStrategy.BREADTH_FIRST: 4,
                ExplorationStrategy.SYSTEMATIC: 0,
            },
        )
        assert selector.record(True) is None
        assert selector.current == ExplorationStrategy.SCREEN_FIRST
        assert selector.actions_in_turn == 0
        assert selector.switches == 0

    def test_best_strategy_and_summary(self):
        selector = AdaptiveStrategySelector(quota=2, stagnation_window=5)
        assert selector.best_strategy() is None
        assert selector.summary() == {}
        selector.record(True)
        selector.record(False)
        selector.record(False)
        best = selector.best_strategy()
        assert best.strategy == ExplorationStrategy.SCREEN_FIRST
        assert best.discovery_rate == 0.5
        assert selector.summary() == {"screen_first": 0.5, "priority_based": 0.0}

    def test_initial_must_be_concrete(self):
        assert (
            AdaptiveStrategySelector(initial=ExplorationStrategy.ADAPTIVE).current
            == ExplorationStrategy.SCREEN_FIRST
        )
        assert (
            AdaptiveStrategySelector(initial=ExplorationStrategy.SYSTEMATIC).current
            == ExplorationStrategy.SYSTEMATIC
        )
