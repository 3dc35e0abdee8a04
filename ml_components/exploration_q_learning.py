"""
Exploration Q-Learning

Tabular Q-learning over (screen state, action pattern) pairs, used by the
explorer to rank candidate elements and to learn which taps are dead ends or
dangerous across runs.

Update rule (human-in-the-loop variant):

    Q(s,a) <- Q(s,a) + alpha * (r + gamma * max Q(s',.) + beta * H(s,a) - Q(s,a))

H(s,a) is accumulated human feedback (+1 imitation, -1 veto), clamped to
[-3, 3] and cleared once it has been applied.

Selection is epsilon-greedy with a decaying epsilon; the greedy branch adds a
UCB uncertainty bonus so rarely tried actions keep getting a chance.

The in-memory tables are authoritative for the process. Every change is
written through to an optional PolicyStore (usually the write-behind SQLite
store) so learning survives restarts.
"""

import hashlib
import json
import logging
import math
import re
import time
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Set, Union

import numpy as np

from core.exploration.exploration_models import (
    ClickableElement,
    ExploredScreen,
    TapResult,
    short_class_name,
)
from utils.error_handler import PolicyStoreError

logger = logging.getLogger(__name__)


class HyperParams:
    def __init__(self):
        self.alpha = 0.15  # Learning rate
        self.gamma = 0.9  # Discount factor
        self.beta = 0.25  # Human feedback weight
        self.epsilon_start = 0.30  # Initial exploration rate
        self.epsilon_min = 0.05  # Always keep some randomness
        self.epsilon_decay = 0.995  # Per action
        self.ucb_coefficient = 1.5  # Exploration bonus coefficient

    def epsilon(self, total_actions: int) -> float:
        return max(self.epsilon_min, self.epsilon_start * self.epsilon_decay**total_actions)


# Base reward per outcome
REWARDS = {
    TapResult.NEW_SCREEN: 1.0,
    TapResult.NEW_ELEMENTS: 0.5,
    TapResult.NAVIGATE_BACK: 0.2,
    TapResult.NO_CHANGE: -0.1,
    TapResult.CLOSED_APP: -1.5,
    TapResult.CRASH: -2.0,
}

DEPTH_BONUS_PER_LEVEL = 0.15
MAX_DEPTH_BONUS = 0.6
NOVELTY_BONUS_FIRST_VISIT = 0.3
SCREEN_REVISIT_PENALTY = -0.05
MAX_REVISIT_PENALTY_VISITS = 5

FATAL_RESULTS = (TapResult.CLOSED_APP, TapResult.CRASH)


# === Data Classes ===


@dataclass
class ExplorationLogEntry:
    """Single experience, in the shape the training server consumes"""

    screen_hash: str
    action_key: str
    reward: float
    next_screen_hash: Optional[str]
    timestamp: int


@dataclass
class RestartRecoveryOutcome:
    timestamp: int
    success: bool
    reason: str
    q_table_size_at_restart: int
    screens_at_restart: int


@dataclass
class ExplorationStatistics:
    q_table_size: int = 0
    total_visits: int = 0
    dangerous_patterns: int = 0
    average_q_value: float = 0.0
    max_q_value: float = 0.0
    min_q_value: float = 0.0
    current_epsilon: float = 0.3
    total_actions: int = 0
    screen_count: int = 0
    restart_attempts: int = 0
    restart_success_rate: float = 0.0
    pending_feedback: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


class ExplorationQLearning:
    """
    Q-table policy for element selection.

    Keys are "screenHash|actionKey". Unknown pairs read as 0 and are created
    on first update; nothing here raises into the caller.
    """

    DEAD_END_Q = -0.05
    DEAD_END_VISITS = 3
    DEAD_END_BOOST = -80
    SKIP_Q = -0.08
    SKIP_VISITS = 5
    MAX_Q_TABLE_SIZE = 10000
    SERVER_WEIGHT = 0.7

    def __init__(
        self,
        store=None,
        package_name: Optional[str] = None,
        hyperparams: Optional[HyperParams] = None,
        screen_height: int = 2400,
        seed: Optional[int] = None,
    ):
        """
        Args:
            store: Optional PolicyStore for write-through persistence
            package_name: App the learned values belong to
            hyperparams: Learning parameters (defaults above)
            screen_height: Display height used for action position zones
            seed: RNG seed for reproducible selection
        """
        self.store = store
        self.package_name = package_name
        self.params = hyperparams or HyperParams()
        self.screen_height = screen_height
        self.rng = np.random.default_rng(seed)
        self.lock = Lock()

        self.q_table: Dict[str, float] = {}
        self.visit_counts: Dict[str, int] = {}
        self.human_feedback: Dict[str, int] = {}
        self.screen_visits: Dict[str, int] = {}
        self.dangerous_patterns: Set[str] = set()
        self.dead_end_screens: Set[str] = set()
        self._actions_by_screen: Dict[str, Set[str]] = {}

        self.total_actions = 0
        self.exploration_log: List[ExplorationLogEntry] = []
        self.restart_outcomes: List[RestartRecoveryOutcome] = []

        if store is not None:
            self.load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _persist(self, operation: str, *args):
        """Write through to the store; persistence failures never reach the caller"""
        if self.store is None:
            return None
        try:
            return getattr(self.store, operation)(*args)
        except PolicyStoreError as e:
            logger.warning(f"[ExplorationQLearning] Store {operation} failed: {e}")
            return None

    def load(self) -> int:
        """Populate the cache from the store. Returns number of Q-values loaded."""
        q_values = self._persist("get_all_q_values", self.package_name) or {}
        visits = self._persist("get_all_visit_counts", self.package_name) or {}
        dangerous = self._persist("get_dangerous_patterns", self.package_name) or set()
        with self.lock:
            for key, value in q_values.items():
                self._set_q(key, float(value))
            self.visit_counts.update({k: int(v) for k, v in visits.items()})
            self.dangerous_patterns.update(dangerous)
        logger.info(
            f"[ExplorationQLearning] Loaded {len(q_values)} Q-values, "
            f"{len(dangerous)} dangerous patterns"
        )
        return len(q_values)

    def _set_q(self, key: str, value: float):
        self.q_table[key] = value
        screen_hash, _, action_key = key.partition("|")
        self._actions_by_screen.setdefault(screen_hash, set()).add(action_key)

    # =========================================================================
    # State / action encoding
    # =========================================================================

    @staticmethod
    def compute_screen_hash(screen: ExploredScreen) -> str:
        """Activity + sorted element ids; a screen with new elements is a new state"""
        elements = sorted(e.element_id for e in screen.clickable_elements)
        raw = f"{screen.activity}|{','.join(elements)}"
        return hashlib.sha256(raw.encode()).hexdigest()[:16]

    def get_action_key(self, element: ClickableElement, screen_height: Optional[int] = None) -> str:
        """
        Position-aware pattern of an element: "ElementType|resourcePattern|zone".

        Digits in the resource id are wildcarded so list rows share one key.
        """
        height = screen_height or self.screen_height
        pattern = "none"
        if element.resource_id:
            pattern = re.sub(r"\d+", "*", element.resource_id.rsplit("/", 1)[-1])

        if element.center_y < height / 3:
            zone = "top"
        elif element.center_y > height * 2 / 3:
            zone = "bottom"
        else:
            zone = "center"
        return f"{short_class_name(element.class_name)}|{pattern}|{zone}"

    def state_key(self, screen: ExploredScreen, element: ClickableElement) -> str:
        action_key = self.get_action_key(element, screen.screen_height)
        return f"{self.compute_screen_hash(screen)}|{action_key}"

    # =========================================================================
    # Q-values
    # =========================================================================

    def get_current_epsilon(self) -> float:
        return self.params.epsilon(self.total_actions)

    def get_q_value(self, screen_hash: str, action_key: str) -> float:
        return self.q_table.get(f"{screen_hash}|{action_key}", 0.0)

    def get_visit_count(self, screen_hash: str, action_key: str) -> int:
        return self.visit_counts.get(f"{screen_hash}|{action_key}", 0)

    def get_max_q_for_screen(self, screen_hash: Optional[str]) -> float:
        if not screen_hash:
            return 0.0
        actions = self._actions_by_screen.get(screen_hash)
        if not actions:
            return 0.0
        return max(self.q_table[f"{screen_hash}|{a}"] for a in actions)

    def update_q(
        self,
        screen_hash: str,
        action_key: str,
        reward: float,
        next_screen_hash: Optional[str] = None,
    ) -> float:
        """
        Apply one Q-learning update and log the experience.

        Args:
            screen_hash: State the action was taken in
            action_key: Action pattern
            reward: Reward from calculate_reward
            next_screen_hash: Resulting state (None if the app was left)

        Returns:
            The new Q-value
        """
        key = f"{screen_hash}|{action_key}"
        p = self.params
        with self.lock:
            current_q = self.q_table.get(key, 0.0)
            next_max_q = self.get_max_q_for_screen(next_screen_hash)
            human_signal = self.get_human_feedback(screen_hash, action_key)

            new_q = current_q + p.alpha * (
                reward + p.gamma * next_max_q + p.beta * human_signal - current_q
            )
            self._set_q(key, new_q)
            self.visit_counts[key] = self.visit_counts.get(key, 0) + 1
            self.total_actions += 1
            if human_signal:
                self.human_feedback[key] = 0

            self.exploration_log.append(
                ExplorationLogEntry(
                    screen_hash=screen_hash,
                    action_key=action_key,
                    reward=reward,
                    next_screen_hash=next_screen_hash,
                    timestamp=int(time.time() * 1000),
                )
            )

        self._persist("upsert_q_value", key, new_q, self.package_name)
        self._persist("increment_visit_count", key)
        if human_signal:
            self._persist("set_human_feedback", key, 0)
            logger.debug(f"[ExplorationQLearning] Applied human feedback H={human_signal} for {action_key}")

        logger.debug(
            f"[ExplorationQLearning] Q-update {key}: reward={reward:.2f} "
            f"{current_q:.3f} -> {new_q:.3f}"
        )
        return new_q

    # =========================================================================
    # Human feedback
    # =========================================================================

    def record_human_feedback(self, screen_hash: str, action_key: str, signal: int) -> int:
        """
        Accumulate a human signal: +1 imitation, -1 veto.

        Returns:
            The accumulated value in [-3, 3]
        """
        key = f"{screen_hash}|{action_key}"
        clamped = max(-1, min(1, int(signal)))
        with self.lock:
            value = max(-3, min(3, self.get_human_feedback(screen_hash, action_key) + clamped))
            self.human_feedback[key] = value
        self._persist("set_human_feedback", key, value)
        logger.info(f"[ExplorationQLearning] Human feedback {action_key} -> H={value}")
        return value

    def get_human_feedback(self, screen_hash: str, action_key: str) -> int:
        """Pending feedback for a pair; the store is read once per key, misses cached as 0"""
        key = f"{screen_hash}|{action_key}"
        if key not in self.human_feedback:
            stored = self._persist("get_human_feedback", key)
            self.human_feedback[key] = int(stored or 0)
        return self.human_feedback[key]

    def is_vetoed_action(self, screen_hash: str, action_key: str) -> bool:
        return self.get_human_feedback(screen_hash, action_key) < 0

    # =========================================================================
    # Selection
    # =========================================================================

    def _screen_visit_count(self, screen_hash: str) -> int:
        if screen_hash not in self.screen_visits:
            stored = self._persist("get_screen_visit_count", screen_hash)
            self.screen_visits[screen_hash] = int(stored or 0)
        return self.screen_visits[screen_hash]

    def ucb_score(self, screen_hash: str, action_key: str) -> float:
        """
        Q + c·sqrt(ln(N) / n) with N the screen visits and n the action visits.

        Untried actions score Q + 2c; a screen seen once adds no bonus.
        """
        c = self.params.ucb_coefficient
        visits = self.get_visit_count(screen_hash, action_key)
        q_value = self.get_q_value(screen_hash, action_key)
        if visits == 0:
            return q_value + c * 2.0
        total = max(1, self._screen_visit_count(screen_hash))
        return q_value + c * math.sqrt(math.log(total) / visits)

    def select_element(
        self,
        screen: ExploredScreen,
        candidates: Optional[Sequence[ClickableElement]] = None,
    ) -> Optional[ClickableElement]:
        """
        Pick the next element on a screen.

        Dangerous patterns are never candidates. With probability epsilon a
        random untried candidate is returned; otherwise the best UCB score.

        Returns:
            The chosen element, or None when there are no safe candidates
        """
        pool = list(candidates if candidates is not None else screen.clickable_elements)
        pool = [e for e in pool if not self.is_dangerous(e, screen.screen_height)]
        if not pool:
            return None

        screen_hash = self.compute_screen_hash(screen)
        keys = [self.get_action_key(e, screen.screen_height) for e in pool]
        epsilon = self.get_current_epsilon()

        if self.rng.random() < epsilon:
            untried = [
                e for e, k in zip(pool, keys) if self.get_visit_count(screen_hash, k) == 0
            ]
            choices = untried or pool
            choice = choices[int(self.rng.integers(len(choices)))]
            logger.debug(
                f"[ExplorationQLearning] epsilon={epsilon:.3f}: random pick {choice.label}"
            )
            return choice

        scores = [self.ucb_score(screen_hash, k) for k in keys]
        best = pool[int(np.argmax(scores))]
        logger.debug(f"[ExplorationQLearning] UCB pick {best.label} (epsilon={epsilon:.3f})")
        return best

    def get_priority_boost(self, screen: ExploredScreen, element: ClickableElement) -> int:
        """
        Learned priority adjustment for the element priority calculator.

        Q-value scaled to +-40, a novelty bonus for untried actions, and a
        bounded UCB bonus; confirmed dead ends get a flat -80.
        """
        screen_hash = self.compute_screen_hash(screen)
        action_key = self.get_action_key(element, screen.screen_height)
        if self.is_confirmed_dead_end(screen_hash, action_key):
            return self.DEAD_END_BOOST

        q_value = self.get_q_value(screen_hash, action_key)
        visits = self.get_visit_count(screen_hash, action_key)
        boost = max(-40, min(40, int(q_value * 40)))

        if visits == 0:
            boost += 25
        elif visits <= 2:
            boost += 10

        total = max(1, self._screen_visit_count(screen_hash))
        if visits > 0 and total > 1:
            ucb = int(self.params.ucb_coefficient * math.sqrt(math.log(total) / visits) * 10)
            boost += min(15, ucb)

        return max(self.DEAD_END_BOOST, min(60, boost))

    # =========================================================================
    # Dead ends / danger
    # =========================================================================

    def is_confirmed_dead_end(self, screen_hash: str, action_key: str) -> bool:
        key = f"{screen_hash}|{action_key}"
        if key not in self.q_table:
            return False
        return (
            self.q_table[key] < self.DEAD_END_Q
            and self.visit_counts.get(key, 0) >= self.DEAD_END_VISITS
        )

    def should_skip(self, screen: ExploredScreen, element: ClickableElement) -> bool:
        key = self.state_key(screen, element)
        if key not in self.q_table:
            return False
        skip = self.q_table[key] < self.SKIP_Q and self.visit_counts.get(key, 0) >= self.SKIP_VISITS
        if skip:
            logger.debug(f"[ExplorationQLearning] Skipping confirmed dead end {key}")
        return skip

    def is_dangerous(self, element: ClickableElement, screen_height: Optional[int] = None) -> bool:
        return self.get_action_key(element, screen_height) in self.dangerous_patterns

    def mark_dangerous(self, element: ClickableElement, screen_height: Optional[int] = None) -> str:
        pattern = self.get_action_key(element, screen_height)
        with self.lock:
            self.dangerous_patterns.add(pattern)
        self._persist("add_dangerous_pattern", pattern, self.package_name)
        logger.warning(f"[ExplorationQLearning] Marked pattern as dangerous: {pattern}")
        return pattern

    def mark_screen_as_dead_end(self, screen_hash: str) -> int:
        """Force every known action on a state strongly negative"""
        penalized = 0
        with self.lock:
            for action_key in self._actions_by_screen.get(screen_hash, set()):
                key = f"{screen_hash}|{action_key}"
                self.q_table[key] = min(self.q_table[key], -0.5)
                penalized += 1
            self.dead_end_screens.add(screen_hash)
        for action_key in self._actions_by_screen.get(screen_hash, set()):
            key = f"{screen_hash}|{action_key}"
            self._persist("upsert_q_value", key, self.q_table[key], self.package_name)
        logger.info(f"[ExplorationQLearning] Dead end: penalized {penalized} actions on {screen_hash}")
        return penalized

    def is_dead_end_screen(self, screen_hash: str) -> bool:
        return screen_hash in self.dead_end_screens

    # =========================================================================
    # Rewards
    # =========================================================================

    def calculate_reward(
        self,
        result: TapResult,
        next_screen_hash: Optional[str] = None,
        depth: int = 0,
        first_visit: bool = False,
    ) -> float:
        """
        Reward for an outcome.

        Args:
            result: Classified outcome
            next_screen_hash: State reached (drives the revisit penalty)
            depth: Navigation depth of the reached screen
            first_visit: First time this state-action pair was tried

        Returns:
            Reward value
        """
        reward = REWARDS[result]

        if result == TapResult.NEW_SCREEN:
            reward += min(MAX_DEPTH_BONUS, depth * DEPTH_BONUS_PER_LEVEL)
            if next_screen_hash:
                previous = self._screen_visit_count(next_screen_hash)
                if previous > 0:
                    reward += SCREEN_REVISIT_PENALTY * min(previous, MAX_REVISIT_PENALTY_VISITS)
                self.record_screen_visit(next_screen_hash)

        if first_visit and result not in FATAL_RESULTS:
            reward += NOVELTY_BONUS_FIRST_VISIT

        return reward

    def record_screen_visit(self, screen_hash: str) -> int:
        count = self._screen_visit_count(screen_hash) + 1
        self.screen_visits[screen_hash] = count
        self._persist("increment_screen_visit", screen_hash, self.package_name)
        return count

    def is_first_visit(self, screen_hash: str, action_key: str) -> bool:
        return self.get_visit_count(screen_hash, action_key) == 0

    # =========================================================================
    # Training data
    # =========================================================================

    def get_exploration_log(self) -> List[ExplorationLogEntry]:
        return list(self.exploration_log)

    def clear_exploration_log(self):
        self.exploration_log.clear()

    def exploration_log_payload(self, device_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Log entries as dicts ready for the training topic"""
        payload = []
        for entry in self.exploration_log:
            item = asdict(entry)
            if device_id:
                item["device_id"] = device_id
            payload.append(item)
        return payload

    def record_restart_recovery(self, success: bool, reason: str):
        outcome = RestartRecoveryOutcome(
            timestamp=int(time.time() * 1000),
            success=success,
            reason=reason,
            q_table_size_at_restart=len(self.q_table),
            screens_at_restart=len(self._actions_by_screen),
        )
        self.restart_outcomes.append(outcome)
        successes = sum(1 for o in self.restart_outcomes if o.success)
        logger.info(
            f"[ExplorationQLearning] Restart recovery success={success} reason={reason} "
            f"({successes}/{len(self.restart_outcomes)} successful)"
        )

    def get_restart_recovery_outcomes(self) -> List[RestartRecoveryOutcome]:
        return list(self.restart_outcomes)

    def merge_server_q_table(self, server_q_table: Union[str, Dict[str, Any]]) -> int:
        """
        Blend Q-values trained on the server into the local table.

        Accepts the raw JSON payload or a parsed dict, either flat or with a
        nested "q_table". Known keys become 0.7 * server + 0.3 * local.

        Returns:
            Number of merged entries (0 on a malformed payload)
        """
        try:
            data = json.loads(server_q_table) if isinstance(server_q_table, str) else server_q_table
            table = data.get("q_table", data)
            merged: Dict[str, float] = {}
            for key, value in table.items():
                server_value = float(value)
                local_value = self.q_table.get(key)
                if local_value is None:
                    merged[key] = server_value
                else:
                    merged[key] = (
                        server_value * self.SERVER_WEIGHT
                        + local_value * (1 - self.SERVER_WEIGHT)
                    )
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"[ExplorationQLearning] Failed to merge server Q-table: {e}")
            return 0

        with self.lock:
            for key, value in merged.items():
                self._set_q(key, value)
        for key, value in merged.items():
            self._persist("upsert_q_value", key, value, self.package_name)
        logger.info(
            f"[ExplorationQLearning] Merged {len(merged)} Q-values from server "
            f"(total: {len(self.q_table)})"
        )
        return len(merged)

    def export_q_table(self) -> str:
        """Q-table and dangerous patterns as JSON for the training server"""
        with self.lock:
            return json.dumps(
                {
                    "q_table": dict(self.q_table),
                    "dangerous_patterns": sorted(self.dangerous_patterns),
                }
            )

    # =========================================================================
    # Stats / maintenance
    # =========================================================================

    def get_stats(self) -> ExplorationStatistics:
        values = list(self.q_table.values())
        successes = sum(1 for o in self.restart_outcomes if o.success)
        return ExplorationStatistics(
            q_table_size=len(values),
            total_visits=sum(self.visit_counts.values()),
            dangerous_patterns=len(self.dangerous_patterns),
            average_q_value=float(np.mean(values)) if values else 0.0,
            max_q_value=max(values) if values else 0.0,
            min_q_value=min(values) if values else 0.0,
            current_epsilon=self.get_current_epsilon(),
            total_actions=self.total_actions,
            screen_count=len(self._actions_by_screen),
            restart_attempts=len(self.restart_outcomes),
            restart_success_rate=(
                successes / len(self.restart_outcomes) if self.restart_outcomes else 0.0
            ),
            pending_feedback=sum(1 for v in self.human_feedback.values() if v),
        )

    def get_danger_report(self) -> Dict[str, Any]:
        with self.lock:
            dead_ends = [
                key
                for key in self.q_table
                if self.is_confirmed_dead_end(*key.split("|", 1))
            ]
            worst = sorted(self.q_table.items(), key=lambda item: item[1])[:20]
            return {
                "dangerous_count": len(self.dangerous_patterns),
                "dangerous_patterns": sorted(self.dangerous_patterns)[:20],
                "dead_end_count": len(dead_ends),
                "dead_ends": dead_ends[:20],
                "worst_q_values": dict(worst),
                "dead_end_screens": sorted(self.dead_end_screens),
            }

    def prune(self, max_size: Optional[int] = None) -> int:
        """
        Evict least-visited entries once the table exceeds max_size.

        Removes 20% more than the overflow so pruning stays infrequent.
        Entries whose action pattern is dangerous are kept.

        Returns:
            Number of entries removed
        """
        max_size = max_size or self.MAX_Q_TABLE_SIZE
        with self.lock:
            current_size = len(self.q_table)
            if current_size <= max_size:
                return 0

            to_remove = int((current_size - max_size) * 1.2)
            entries = sorted(self.q_table, key=lambda k: self.visit_counts.get(k, 0))
            removed = 0
            for key in entries:
                if removed >= to_remove:
                    break
                screen_hash, _, action_key = key.partition("|")
                if action_key in self.dangerous_patterns:
                    continue
                del self.q_table[key]
                self.visit_counts.pop(key, None)
                actions = self._actions_by_screen.get(screen_hash)
                if actions is not None:
                    actions.discard(action_key)
                    if not actions:
                        del self._actions_by_screen[screen_hash]
                removed += 1

        logger.info(
            f"[ExplorationQLearning] Pruned {removed} entries "
            f"(was {current_size}, now {len(self.q_table)})"
        )
        return removed

    def record_best_strategy(self, strategy: str, score: float):
        if self.package_name:
            self._persist("record_best_strategy", self.package_name, strategy, score)

    def get_best_strategy(self) -> Optional[str]:
        if not self.package_name:
            return None
        return self._persist("get_best_strategy", self.package_name)

    def reset(self):
        """Forget everything learned in this process (the store is untouched)"""
        with self.lock:
            self.q_table.clear()
            self.visit_counts.clear()
            self.human_feedback.clear()
            self.screen_visits.clear()
            self.dangerous_patterns.clear()
            self.dead_end_screens.clear()
            self._actions_by_screen.clear()
            self.exploration_log.clear()
            self.restart_outcomes.clear()
            self.total_actions = 0
        logger.info("[ExplorationQLearning] Reset")
