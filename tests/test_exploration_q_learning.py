"""Tests for the exploration Q-learning policy."""

import json
import math

import pytest

from core.exploration.exploration_models import ClickableElement, ElementBounds, TapResult
from ml_components.exploration_q_learning import ExplorationQLearning, HyperParams
from services.policy_store import InMemoryPolicyStore
from utils.error_handler import PolicyStoreError

from .conftest import PACKAGE, make_bounds, make_element, make_screen


def greedy_params() -> HyperParams:
    params = HyperParams()
    params.epsilon_start = 0.0
    params.epsilon_min = 0.0
    return params


def random_params() -> HyperParams:
    params = HyperParams()
    params.epsilon_start = 1.0
    params.epsilon_min = 1.0
    return params


class FailingStore(InMemoryPolicyStore):
    def upsert_q_value(self, key, q_value, package=None):
        raise PolicyStoreError("disk full", key=key)


class CountingStore(InMemoryPolicyStore):
    def __init__(self):
        super().__init__()
        self.feedback_reads = 0

    def get_human_feedback(self, key):
        self.feedback_reads += 1
        return super().get_human_feedback(key)


@pytest.fixture
def policy():
    return ExplorationQLearning(package_name=PACKAGE, seed=1)


@pytest.fixture
def screen():
    return make_screen(
        "MainActivity",
        [make_element("btn_first", "First", y=400), make_element("btn_second", "Second", y=1000)],
    )


# ===================================================================
# Encoding
# ===================================================================


class TestEncoding:
    def test_action_key_zones(self, policy):
        assert policy.get_action_key(make_element("btn_close", y=400)) == "Button|btn_close|top"
        assert policy.get_action_key(make_element("btn_close", y=1000)) == "Button|btn_close|center"
        assert policy.get_action_key(make_element("btn_close", y=1700)) == "Button|btn_close|bottom"

    def test_action_key_wildcards_digits(self, policy):
        row = make_element("item_12_title", y=1000)
        assert policy.get_action_key(row) == "Button|item_*_title|center"
        anonymous = ClickableElement.create(make_bounds(1000), class_name="android.widget.ImageView")
        assert policy.get_action_key(anonymous) == "ImageView|none|center"

    def test_action_key_uses_screen_height(self, policy):
        element = make_element("btn_ok", y=400)
        assert policy.get_action_key(element, screen_height=1200) == "Button|btn_ok|center"

    def test_screen_hash_tracks_element_set(self, policy, screen):
        reordered = make_screen("MainActivity", list(reversed(screen.clickable_elements)))
        grown = make_screen(
            "MainActivity", screen.clickable_elements + [make_element("btn_third", "Third", y=1300)]
        )
        assert policy.compute_screen_hash(screen) == policy.compute_screen_hash(reordered)
        assert policy.compute_screen_hash(screen) != policy.compute_screen_hash(grown)


# ===================================================================
# Updates
# ===================================================================


class TestUpdates:
    def test_update_rule(self, policy):
        assert policy.update_q("s", "a", 1.0) == pytest.approx(0.15)
        assert policy.update_q("s", "a", 1.0) == pytest.approx(0.2775)
        assert policy.get_visit_count("s", "a") == 2
        assert policy.total_actions == 2

    def test_update_uses_next_state_max(self, policy):
        policy.merge_server_q_table({"next|a": 1.0, "next|b": -1.0})
        assert policy.update_q("s", "x", 0.0, "next") == pytest.approx(0.15 * 0.9)
        assert policy.get_max_q_for_screen("next") == 1.0
        assert policy.get_max_q_for_screen("unknown") == 0.0

    def test_human_feedback_applied_once(self, policy):
        assert policy.record_human_feedback("s", "a", -1) == -1
        assert policy.is_vetoed_action("s", "a")
        assert policy.update_q("s", "a", 0.0) == pytest.approx(0.15 * 0.25 * -1)
        assert policy.get_human_feedback("s", "a") == 0
        assert not policy.is_vetoed_action("s", "a")

    def test_human_feedback_clamped(self, policy):
        for _ in range(5):
            value = policy.record_human_feedback("s", "a", 7)
        assert value == 3
        assert policy.record_human_feedback("s", "b", -9) == -1

    def test_experience_log(self, policy):
        policy.update_q("s", "a", 1.0, "t")
        payload = policy.exploration_log_payload(device_id="emulator-5554")
        assert payload[0]["screen_hash"] == "s"
        assert payload[0]["next_screen_hash"] == "t"
        assert payload[0]["device_id"] == "emulator-5554"
        policy.clear_exploration_log()
        assert policy.get_exploration_log() == []

    def test_epsilon_decays_to_floor(self, policy):
        assert policy.get_current_epsilon() == pytest.approx(0.3)
        policy.total_actions = 2000
        assert policy.get_current_epsilon() == pytest.approx(0.05)


class TestRewards:
    def test_new_screen_with_depth_and_novelty(self, policy):
        reward = policy.calculate_reward(TapResult.NEW_SCREEN, "next", depth=2, first_visit=True)
        assert reward == pytest.approx(1.6)

    def test_depth_bonus_capped(self, policy):
        assert policy.calculate_reward(TapResult.NEW_SCREEN, depth=10) == pytest.approx(1.6)

    def test_revisit_penalty(self, policy):
        assert policy.calculate_reward(TapResult.NEW_SCREEN, "next") == pytest.approx(1.0)
        assert policy.calculate_reward(TapResult.NEW_SCREEN, "next") == pytest.approx(0.95)
        assert policy.screen_visits["next"] == 2

    def test_fatal_results_get_no_novelty(self, policy):
        assert policy.calculate_reward(TapResult.CRASH, first_visit=True) == -2.0
        assert policy.calculate_reward(TapResult.CLOSED_APP, first_visit=True) == -1.5
        assert policy.calculate_reward(TapResult.NO_CHANGE, first_visit=True) == pytest.approx(0.2)


# ===================================================================
# Selection / boosts
# ===================================================================


class TestSelection:
    def test_greedy_prefers_untried(self, screen):
        policy = ExplorationQLearning(hyperparams=greedy_params(), seed=3)
        first, second = screen.clickable_elements
        assert policy.select_element(screen) == first

        policy.update_q(policy.compute_screen_hash(screen), policy.get_action_key(first), 1.0)
        assert policy.select_element(screen) == second

    def test_random_branch_prefers_untried(self, screen):
        policy = ExplorationQLearning(hyperparams=random_params(), seed=3)
        first, second = screen.clickable_elements
        policy.update_q(policy.compute_screen_hash(screen), policy.get_action_key(first), 1.0)
        for _ in range(10):
            assert policy.select_element(screen) == second

    def test_dangerous_never_selected(self, policy, screen):
        first, second = screen.clickable_elements
        assert policy.mark_dangerous(first) == "Button|btn_first|top"
        assert policy.is_dangerous(first)
        for _ in range(10):
            assert policy.select_element(screen) == second
        policy.mark_dangerous(second)
        assert policy.select_element(screen) is None

    def test_ucb_bonus_grows_with_screen_visits(self, policy):
        assert policy.ucb_score("h", "a") == pytest.approx(3.0)

        policy.update_q("h", "a", 1.0)
        assert policy.ucb_score("h", "a") == pytest.approx(0.15)

        policy.screen_visits["h"] = 4
        assert policy.ucb_score("h", "a") == pytest.approx(0.15 + 1.5 * math.sqrt(math.log(4)))

        policy.update_q("h", "a", 1.0)
        q_value = policy.get_q_value("h", "a")
        assert policy.ucb_score("h", "a") == pytest.approx(q_value + 1.5 * math.sqrt(math.log(4) / 2))

    def test_priority_boost_for_new_and_tried_actions(self, policy, screen):
        first = screen.clickable_elements[0]
        assert policy.get_priority_boost(screen, first) == 25
        policy.update_q(policy.compute_screen_hash(screen), policy.get_action_key(first), 1.0)
        assert policy.get_priority_boost(screen, first) == 16

    def test_dead_end_detection(self, policy, screen):
        first = screen.clickable_elements[0]
        screen_hash = policy.compute_screen_hash(screen)
        action_key = policy.get_action_key(first)
        for _ in range(3):
            policy.update_q(screen_hash, action_key, -1.0)
        assert policy.is_confirmed_dead_end(screen_hash, action_key)
        assert policy.get_priority_boost(screen, first) == ExplorationQLearning.DEAD_END_BOOST
        assert not policy.should_skip(screen, first)

        for _ in range(2):
            policy.update_q(screen_hash, action_key, -1.0)
        assert policy.should_skip(screen, first)
        assert policy.get_danger_report()["dead_end_count"] == 1

    def test_mark_screen_as_dead_end(self, policy):
        policy.update_q("s", "a", 1.0)
        policy.update_q("s", "b", 0.5)
        assert policy.mark_screen_as_dead_end("s") == 2
        assert policy.get_q_value("s", "a") == -0.5
        assert policy.is_dead_end_screen("s")


# ===================================================================
# Server sync / maintenance
# ===================================================================


class TestServerSync:
    def test_merge_blends_known_keys(self, policy):
        policy.merge_server_q_table({"s|a": 1.0})
        merged = policy.merge_server_q_table(json.dumps({"q_table": {"s|a": 0.0, "s|b": 0.4}}))
        assert merged == 2
        assert policy.get_q_value("s", "a") == pytest.approx(0.3)
        assert policy.get_q_value("s", "b") == pytest.approx(0.4)

    @pytest.mark.parametrize("payload", ["not json", json.dumps({"s|a": "high"}), json.dumps([1, 2])])
    def test_malformed_payload_ignored(self, policy, payload):
        assert policy.merge_server_q_table(payload) == 0
        assert policy.q_table == {}

    def test_export(self, policy):
        policy.update_q("s", "a", 1.0)
        policy.mark_dangerous(make_element("btn_close"))
        exported = json.loads(policy.export_q_table())
        assert set(exported["q_table"]) == {"s|a"}
        assert exported["dangerous_patterns"] == ["Button|btn_close|top"]

    def test_prune_keeps_dangerous_and_visited(self, policy):
        policy.merge_server_q_table({f"s|k{i}": 0.1 for i in range(10)})
        for _ in range(3):
            policy.update_q("s", "k9", 0.1)
        policy.dangerous_patterns.add("k0")

        assert policy.prune(max_size=5) == 6
        assert len(policy.q_table) == 4
        assert "s|k0" in policy.q_table
        assert "s|k9" in policy.q_table
        assert policy.prune(max_size=5) == 0

    def test_restart_outcomes_in_stats(self, policy):
        policy.record_restart_recovery(True, "screen changed")
        policy.record_restart_recovery(False, "same screen")
        stats = policy.get_stats()
        assert stats.restart_attempts == 2
        assert stats.restart_success_rate == 0.5

    def test_reset(self, policy):
        policy.update_q("s", "a", 1.0)
        policy.reset()
        assert policy.q_table == {}
        assert policy.total_actions == 0


class TestPersistence:
    def test_learning_survives_through_store(self):
        store = InMemoryPolicyStore()
        first = ExplorationQLearning(store=store, package_name=PACKAGE)
        first.update_q("s", "a", 1.0)
        first.mark_dangerous(make_element("btn_close"))
        first.record_best_strategy("depth_first", 0.8)

        second = ExplorationQLearning(store=store, package_name=PACKAGE)
        assert second.get_q_value("s", "a") == pytest.approx(0.15)
        assert second.get_visit_count("s", "a") == 1
        assert second.is_dangerous(make_element("btn_close"))
        assert second.get_best_strategy() == "depth_first"

    def test_values_scoped_by_package(self):
        store = InMemoryPolicyStore()
        ExplorationQLearning(store=store, package_name=PACKAGE).update_q("s", "a", 1.0)
        other = ExplorationQLearning(store=store, package_name="com.example.other")
        assert other.q_table == {}

    def test_persisted_feedback_is_read_back(self):
        store = InMemoryPolicyStore()
        ExplorationQLearning(store=store, package_name=PACKAGE).record_human_feedback("s", "a", 1)
        assert ExplorationQLearning(store=store, package_name=PACKAGE).get_human_feedback("s", "a") == 1

    def test_feedback_misses_are_cached(self):
        store = CountingStore()
        policy = ExplorationQLearning(store=store, package_name=PACKAGE)
        for _ in range(10):
            assert not policy.is_vetoed_action("s", "a")
        assert store.feedback_reads == 1

    def test_stored_feedback_applied_by_update(self):
        store = CountingStore()
        store.set_human_feedback("s|a", -1)
        policy = ExplorationQLearning(store=store, package_name=PACKAGE)
        assert policy.update_q("s", "a", 0.0) == pytest.approx(0.15 * 0.25 * -1)
        assert store.get_human_feedback("s|a") is None
        assert not policy.is_vetoed_action("s", "a")

    def test_store_failures_do_not_reach_caller(self):
        policy = ExplorationQLearning(store=FailingStore(), package_name=PACKAGE)
        assert policy.update_q("s", "a", 1.0) == pytest.approx(0.15)
        assert policy.get_q_value("s", "a") == pytest.approx(0.15)
