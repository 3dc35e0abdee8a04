"""Tests for the navigation graph: recording, blockers, reliability and paths."""

import pytest

from core.exploration.navigation_graph import (
    DEFAULT_RELIABILITY,
    NavigationGraph,
    activity_tokens,
    is_blocker_activity,
)


@pytest.fixture
def graph():
    """home -a-> list -b-> detail, home -c-> settings"""
    g = NavigationGraph()
    g.set_home_screen("home")
    g.record_transition("home", "a", "list", "com.app.ListActivity")
    g.record_transition("list", "b", "detail", "com.app.DetailActivity")
    g.record_transition("home", "c", "settings", "com.app.SettingsActivity")
    return g


# ===================================================================
# Activity classification
# ===================================================================


class TestBlockerActivities:
    def test_tokens_split_camel_case(self):
        assert activity_tokens("com.app.ui.SignInOptionsActivity") == [
            "sign", "in", "options", "activity",
        ]

    def test_tokens_split_underscores_and_inner_classes(self):
        assert activity_tokens("com.app.Main$pin_entry") == ["main", "pin", "entry"]

    @pytest.mark.parametrize(
        "activity",
        [
            "com.app.LoginActivity",
            "com.app.auth.SignInOptionsActivity",
            "com.app.PasswordResetActivity",
            "com.app.TwoFactorActivity",
            "com.app.OtpActivity",
            "com.app.ChooseAccountActivity",
        ],
    )
    def test_blockers(self, activity):
        assert is_blocker_activity(activity)

    @pytest.mark.parametrize(
        "activity",
        [
            "com.app.MainActivity",
            "com.app.SpinnerActivity",
            "com.app.BarcodeScannerActivity",
            "com.app.BlockListActivity",
            None,
        ],
    )
    def test_non_blockers(self, activity):
        assert not is_blocker_activity(activity)


# ===================================================================
# Recording
# ===================================================================


class TestRecording:
    def test_first_registered_screen_is_home(self):
        g = NavigationGraph()
        g.register_screen("first")
        g.register_screen("second")
        assert g.home_screen_id == "first"

    def test_register_screen_reports_new(self):
        g = NavigationGraph()
        assert g.register_screen("s1", "com.app.MainActivity")
        assert not g.register_screen("s1", "com.app.MainActivity")

    def test_blocker_activity_flagged_on_register(self):
        g = NavigationGraph()
        g.register_screen("wall", "com.app.LoginActivity")
        assert g.is_blocker_screen("wall")

    def test_repeat_transition_counts(self, graph):
        graph.record_transition("home", "a", "list")
        nav = graph.get_element_navigation("home", "a")
        assert nav.destinations == {"list": 2}
        assert nav.tap_count == 2
        assert not nav.is_conditional

    def test_conditional_navigation_keeps_every_destination(self, graph):
        graph.record_transition("home", "a", "login", "com.app.LoginActivity")
        nav = graph.get_element_navigation("home", "a")
        assert set(nav.destinations) == {"list", "login"}
        assert graph.is_conditional("home", "a")
        assert "login" in nav.blocker_destinations
        assert graph.get_destination("home", "a") == "login"
        assert graph.get_real_destination("home", "a") == "list"

    def test_mark_as_blocker_updates_existing_edges(self, graph):
        graph.mark_as_blocker("settings")
        nav = graph.get_element_navigation("home", "c")
        assert "settings" in nav.blocker_destinations

    def test_triggers_from_lists_only_that_screen(self, graph):
        graph.record_transition("home", "a", "login", "com.app.LoginActivity")
        assert [n.element_id for n in graph.triggers_from("home")] == ["a", "c"]
        assert [n.element_id for n in graph.triggers_from("list")] == ["b"]
        assert graph.triggers_from("detail") == []
        assert graph.triggers_from("nowhere") == []

        graph.triggers_from("home").clear()
        assert len(graph.triggers_from("home")) == 2
        assert graph.find_path("home", "detail") is not None

    def test_incoming_transitions(self, graph):
        assert graph.has_incoming_transitions("detail")
        assert not graph.has_incoming_transitions("home")

    def test_unexplored_screens(self, graph):
        graph.mark_fully_explored("home")
        assert graph.get_unexplored_screens() == {"list", "detail", "settings"}

    def test_stats(self, graph):
        graph.record_transition("home", "a", "login", "com.app.LoginActivity")
        stats = graph.get_stats()
        assert stats.total_screens == 5
        assert stats.total_transitions == 3
        assert stats.conditional_elements == 1
        assert stats.blocker_screens == 1


# ===================================================================
# Reliability
# ===================================================================


class TestReliability:
    def test_unknown_trigger_gets_default(self, graph):
        assert graph.get_transition_reliability("home", "zzz", "list") == DEFAULT_RELIABILITY

    def test_single_observation(self, graph):
        assert graph.get_transition_reliability("home", "a", "list") == pytest.approx(1.0)

    def test_conditional_split(self, graph):
        graph.record_transition("home", "a", "other")
        # half the observations, +0.04 confidence, -0.1 conditional
        assert graph.get_transition_reliability("home", "a", "list") == pytest.approx(0.44)

    def test_blocker_destination_penalized(self, graph):
        graph.record_transition("home", "a", "login", "com.app.LoginActivity")
        assert graph.get_transition_reliability("home", "a", "login") == pytest.approx(0.14)

    def test_floor(self, graph):
        for _ in range(9):
            graph.record_transition("home", "a", "list")
        graph.record_transition("home", "a", "login", "com.app.LoginActivity")
        assert graph.get_transition_reliability("home", "a", "login") == pytest.approx(0.1)


# ===================================================================
# Paths
# ===================================================================


class TestPaths:
    def test_same_screen_is_empty_path(self, graph):
        assert graph.find_path("list", "list") == []
        path = graph.find_optimal_path("list", "list")
        assert path.steps == []
        assert path.reliability == 1.0

    def test_bfs_path(self, graph):
        steps = graph.find_path("home", "detail")
        assert [(s.screen_id, s.element_id, s.to_screen_id) for s in steps] == [
            ("home", "a", "list"),
            ("list", "b", "detail"),
        ]

    def test_unknown_or_unreachable(self, graph):
        assert graph.find_path("home", "nowhere") is None
        assert graph.find_path("detail", "home") is None
        assert graph.find_optimal_path("detail", "home") is None

    def test_blocker_is_never_a_destination(self, graph):
        graph.register_screen("wall", "com.app.LoginActivity")
        graph.record_transition("home", "d", "wall")
        assert graph.find_path("home", "wall") is None
        assert graph.find_optimal_path("home", "wall") is None

    def test_blocker_may_be_a_waypoint(self):
        g = NavigationGraph()
        g.record_transition("home", "a", "wall", "com.app.LoginActivity")
        g.record_transition("wall", "b", "inside", "com.app.InsideActivity")
        path = g.find_optimal_path("home", "inside")
        assert [s.to_screen_id for s in path.steps] == ["wall", "inside"]

    def test_optimal_path_prefers_reliable_route(self):
        g = NavigationGraph()
        # Direct but flaky: x leads to target only half the time
        g.record_transition("home", "x", "target")
        g.record_transition("home", "x", "elsewhere")
        g.record_transition("home", "x", "elsewhere")
        g.record_transition("home", "x", "target")
        # Two reliable hops
        for _ in range(5):
            g.record_transition("home", "y", "mid")
            g.record_transition("mid", "z", "target")

        path = g.find_optimal_path("home", "target")
        assert [s.element_id for s in path.steps] == ["y", "z"]
        assert path.hop_count == 2
        assert path.reliability == pytest.approx(1.0)
        assert g.find_path("home", "target")[0].element_id == "x"

    def test_depth_of(self, graph):
        assert graph.depth_of("home") == 0
        assert graph.depth_of("detail") == 2
        assert graph.depth_of("unknown") == 0


class TestExport:
    def test_dot_export(self, graph):
        graph.record_transition("home", "a", "other")
        dot = graph.export_dot()
        assert dot.startswith("digraph navigation {")
        assert '"home" -> "list"' in dot
        assert "style=dashed" in dot
        assert "shape=doublecircle" in dot

    def test_conditional_summary(self, graph):
        assert graph.get_conditional_summary() == "No conditional elements detected"
        graph.record_transition("home", "a", "other")
        assert "CONDITIONAL ELEMENTS (1)" in graph.get_conditional_summary()
