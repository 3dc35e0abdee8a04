"""
App Explorer - Stuck Detection and Recovery

StalenessMonitor is the single source of the "no progress" signal:
- consecutive no-progress actions on the same screen (stuck threshold)
- actions since the last discovery anywhere (forced restart)
- wall time since the last discovery (plateau)

StuckRecoveryStrategy is an escalating ladder. Each level has a planner that
either proposes a concrete RecoveryAction for the current screen or returns
None, in which case the level is skipped:

1. Scroll the scrollable container nearest the screen centre
2. Press back
3. Tap an unvisited bottom navigation tab
4. Restart the app (learned state is kept)
5. Ask a human for help and wait a bounded time

The caller executes the action, re-observes, and reports the outcome with
report_result(). Success resets the ladder; exhausting it means the current
branch is abandoned.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel

from config.defaults import Defaults
from utils.clock import Clock, SystemClock

from .exploration_models import ExploredScreen, ScrollDirection
from .priority_calculator import is_bottom_navigation, navigation_tab_id

logger = logging.getLogger(__name__)


# =============================================================================
# Staleness
# =============================================================================


class StalenessSignal(str, Enum):
    STUCK_THRESHOLD = "stuck_threshold"
    RESTART_THRESHOLD = "restart_threshold"
    COVERAGE_PLATEAU = "coverage_plateau"


class StalenessMonitor:
    """
    Counts actions without discovery.

    A no-progress action on the same screen extends the streak; one on a
    different screen starts a new streak at 1. A discovery restarts the
    streak at 1 on the screen it landed on.
    """

    def __init__(
        self,
        stuck_threshold: Optional[int] = None,
        restart_threshold: Optional[int] = None,
        plateau_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
    ):
        self.stuck_threshold = stuck_threshold or Defaults.STUCK_THRESHOLD
        self.restart_threshold = restart_threshold or Defaults.RESTART_THRESHOLD
        self.plateau_seconds = plateau_seconds or Defaults.PLATEAU_SECONDS
        self.clock = clock or SystemClock()
        self.reset()

    def reset(self):
        self.streak = 0
        self.streak_screen: Optional[str] = None
        self.actions_since_discovery = 0
        self.last_discovery_at = self.clock.monotonic()

    def record_progress(self, screen_id: Optional[str] = None):
        self.streak = 1
        self.streak_screen = screen_id
        self.actions_since_discovery = 0
        self.last_discovery_at = self.clock.monotonic()

    def record_no_progress(self, screen_id: str) -> int:
        """Returns the current streak length"""
        if screen_id == self.streak_screen:
            self.streak += 1
        else:
            self.streak_screen = screen_id
            self.streak = 1
        self.actions_since_discovery += 1
        logger.debug(
            f"[StalenessMonitor] No progress on {screen_id[:8]}: "
            f"{self.streak}/{self.stuck_threshold} "
            f"({self.actions_since_discovery} since discovery)"
        )
        return self.streak

    def clear_streak(self):
        """After a successful recovery the screen gets a fresh budget"""
        self.streak = 0
        self.streak_screen = None

    def restarted(self):
        self.clear_streak()
        self.actions_since_discovery = 0
        self.last_discovery_at = self.clock.monotonic()

    @property
    def is_stuck(self) -> bool:
        return self.streak >= self.stuck_threshold

    @property
    def should_restart(self) -> bool:
        return self.actions_since_discovery >= self.restart_threshold

    @property
    def is_plateau(self) -> bool:
        return self.clock.monotonic() - self.last_discovery_at >= self.plateau_seconds

    def check(self) -> Optional[StalenessSignal]:
        """Strongest pending signal, if any"""
        if self.should_restart:
            return StalenessSignal.RESTART_THRESHOLD
        if self.is_stuck:
            return StalenessSignal.STUCK_THRESHOLD
        if self.is_plateau:
            return StalenessSignal.COVERAGE_PLATEAU
        return None


# =============================================================================
# Recovery ladder
# =============================================================================


class RecoveryLevel(str, Enum):
    SCROLL = "scroll"
    PRESS_BACK = "press_back"
    NAVIGATION_TAB = "navigation_tab"
    RESTART_APP = "restart_app"
    REQUEST_USER_HELP = "request_user_help"


LADDER: List[RecoveryLevel] = list(RecoveryLevel)

ATTEMPTS_PER_LEVEL: Dict[RecoveryLevel, int] = {
    RecoveryLevel.SCROLL: 2,
    RecoveryLevel.PRESS_BACK: 2,
    RecoveryLevel.NAVIGATION_TAB: 2,
    RecoveryLevel.RESTART_APP: 1,
    RecoveryLevel.REQUEST_USER_HELP: 1,
}

HELP_MESSAGE = (
    "Exploration is stuck. Please navigate to a new screen or tap an unexplored element."
)


class RecoveryActionType(str, Enum):
    SCROLL = "scroll"
    PRESS_BACK = "press_back"
    TAP = "tap"
    RESTART_APP = "restart_app"
    REQUEST_USER_HELP = "request_user_help"


class RecoveryAction(BaseModel):
    """Concrete gesture for the orchestrator to execute"""

    type: RecoveryActionType
    x: Optional[int] = None
    y: Optional[int] = None
    direction: Optional[str] = None
    element_id: Optional[str] = None
    container_id: Optional[str] = None
    package_name: Optional[str] = None
    message: Optional[str] = None
    timeout_s: Optional[float] = None


class RecoveryPlan(BaseModel):
    level: RecoveryLevel
    attempt: int
    action: RecoveryAction


@dataclass
class RecoveryContext:
    """What the planners may look at"""

    package_name: str
    screen: Optional[ExploredScreen] = None
    visited_nav_tabs: Set[str] = field(default_factory=set)
    help_timeout_s: float = Defaults.HUMAN_HELP_TIMEOUT_SECONDS


def plan_scroll(ctx: RecoveryContext, attempt: int, tried: Set[str]) -> Optional[RecoveryAction]:
    screen = ctx.screen
    if screen is None or not screen.scrollable_containers:
        return None
    mid_x, mid_y = screen.screen_width // 2, screen.screen_height // 2
    container = min(
        screen.scrollable_containers,
        key=lambda c: abs(c.bounds.center_x - mid_x) + abs(c.bounds.center_y - mid_y),
    )
    if container.scroll_direction == ScrollDirection.HORIZONTAL:
        direction = "left" if attempt == 1 else "right"
    else:
        direction = "down" if attempt == 1 else "up"
    return RecoveryAction(
        type=RecoveryActionType.SCROLL,
        x=container.bounds.center_x,
        y=container.bounds.center_y,
        direction=direction,
        container_id=container.element_id,
    )


def plan_back(ctx: RecoveryContext, attempt: int, tried: Set[str]) -> Optional[RecoveryAction]:
    return RecoveryAction(type=RecoveryActionType.PRESS_BACK)


def plan_navigation_tab(
    ctx: RecoveryContext, attempt: int, tried: Set[str]
) -> Optional[RecoveryAction]:
    screen = ctx.screen
    if screen is None:
        return None
    tabs = sorted(
        (
            e
            for e in screen.clickable_elements
            if is_bottom_navigation(e, screen.screen_height)
            and navigation_tab_id(e) not in ctx.visited_nav_tabs
            and navigation_tab_id(e) not in tried
        ),
        key=lambda e: e.center_x,
    )
    if not tabs:
        return None
    tab = tabs[0]
    tried.add(navigation_tab_id(tab))
    return RecoveryAction(
        type=RecoveryActionType.TAP,
        x=tab.center_x,
        y=tab.center_y,
        element_id=tab.element_id,
    )


def plan_restart(ctx: RecoveryContext, attempt: int, tried: Set[str]) -> Optional[RecoveryAction]:
    return RecoveryAction(type=RecoveryActionType.RESTART_APP, package_name=ctx.package_name)


def plan_user_help(ctx: RecoveryContext, attempt: int, tried: Set[str]) -> Optional[RecoveryAction]:
    return RecoveryAction(
        type=RecoveryActionType.REQUEST_USER_HELP,
        message=HELP_MESSAGE,
        timeout_s=ctx.help_timeout_s,
    )


Planner = Callable[[RecoveryContext, int, Set[str]], Optional[RecoveryAction]]

PLANNERS: Dict[RecoveryLevel, Planner] = {
    RecoveryLevel.SCROLL: plan_scroll,
    RecoveryLevel.PRESS_BACK: plan_back,
    RecoveryLevel.NAVIGATION_TAB: plan_navigation_tab,
    RecoveryLevel.RESTART_APP: plan_restart,
    RecoveryLevel.REQUEST_USER_HELP: plan_user_help,
}


class LevelStats(BaseModel):
    level: RecoveryLevel
    attempts: int = 0
    successes: int = 0

    @property
    def success_rate(self) -> float:
        return self.successes / self.attempts if self.attempts else 0.0


class RecoveryStatistics(BaseModel):
    total_attempts: int
    total_successes: int
    current_level: Optional[RecoveryLevel]
    current_attempt: int
    levels: List[LevelStats]

    @property
    def overall_success_rate(self) -> float:
        return self.total_successes / self.total_attempts if self.total_attempts else 0.0


class StuckRecoveryStrategy:
    """Escalating recovery ladder with per-level statistics"""

    MIN_SAMPLES_FOR_RECOMMENDATION = 3

    def __init__(self):
        self.stats: Dict[RecoveryLevel, LevelStats] = {
            level: LevelStats(level=level) for level in LADDER
        }
        self.reset()

    def reset(self):
        """Back to the first level (after success or for a new stuck episode)"""
        self.level_index = 0
        self.attempts_at_level = 0
        self.episode_attempts = 0
        self._tried: Dict[RecoveryLevel, Set[str]] = {level: set() for level in LADDER}
        self._pending: Optional[RecoveryLevel] = None

    @property
    def current_level(self) -> Optional[RecoveryLevel]:
        if self.level_index >= len(LADDER):
            return None
        return LADDER[self.level_index]

    def is_exhausted(self) -> bool:
        return self.level_index >= len(LADDER)

    def _escalate(self):
        self.level_index += 1
        self.attempts_at_level = 0
        if self.is_exhausted():
            logger.warning("[StuckRecovery] All recovery levels exhausted")
        else:
            logger.info(f"[StuckRecovery] Escalating to {LADDER[self.level_index].value}")

    def next_action(self, ctx: RecoveryContext) -> Optional[RecoveryPlan]:
        """
        Plan the next recovery step.

        Levels whose planner has nothing to offer on this screen are skipped.

        Returns:
            RecoveryPlan, or None when the ladder is exhausted
        """
        while not self.is_exhausted():
            level = LADDER[self.level_index]
            if self.attempts_at_level >= ATTEMPTS_PER_LEVEL[level]:
                self._escalate()
                continue

            action = PLANNERS[level](ctx, self.attempts_at_level + 1, self._tried[level])
            if action is None:
                logger.debug(f"[StuckRecovery] {level.value} not applicable, skipping")
                self._escalate()
                continue

            self.attempts_at_level += 1
            self.episode_attempts += 1
            self.stats[level].attempts += 1
            self._pending = level
            logger.info(
                f"[StuckRecovery] Attempt #{self.episode_attempts}: {level.value} "
                f"({self.attempts_at_level}/{ATTEMPTS_PER_LEVEL[level]})"
            )
            return RecoveryPlan(level=level, attempt=self.attempts_at_level, action=action)
        return None

    def report_result(self, success: bool):
        """Record the outcome of the last planned action"""
        level = self._pending
        if level is None:
            return
        self._pending = None

        if success:
            self.stats[level].successes += 1
            logger.info(f"[StuckRecovery] Recovered with {level.value}")
            self.reset()
            return

        logger.debug(f"[StuckRecovery] {level.value} failed")
        if self.attempts_at_level >= ATTEMPTS_PER_LEVEL[level]:
            self._escalate()

    def get_statistics(self) -> RecoveryStatistics:
        levels = [self.stats[level].model_copy() for level in LADDER]
        return RecoveryStatistics(
            total_attempts=sum(s.attempts for s in levels),
            total_successes=sum(s.successes for s in levels),
            current_level=self.current_level,
            current_attempt=self.attempts_at_level,
            levels=levels,
        )

    def get_recommended_strategy(self) -> Optional[RecoveryLevel]:
        """Best historical level with at least 3 attempts"""
        candidates = [
            s for s in self.stats.values() if s.attempts >= self.MIN_SAMPLES_FOR_RECOMMENDATION
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.success_rate).level
