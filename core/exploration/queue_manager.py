"""
App Explorer - Element Queue Manager

Turns a captured screen into ExplorationTargets:
- applies exclusion rules (system UI, tiny/off-screen, credentials, keys that
  can close the app, back buttons)
- skips learned dead ends
- scores what is left and appends it to the frontier

Mode handling:
- QUICK: only likely navigation elements, no scroll containers
- NORMAL: full exclusion rules
- DEEP: only zero-size elements are skipped, +10 to every score
- SYSTEMATIC strategy overrides scores with top-left-first reading order
"""

import logging
from typing import Iterable, Optional, Set

from pydantic import BaseModel

from config.defaults import Defaults
from config.exploration_config import (
    ExplorationConfig,
    ExplorationMode,
    ExplorationStrategy,
)

from .exploration_models import (
    ClickableActionType,
    ClickableElement,
    ExplorationTarget,
    ExplorationTargetType,
    ExploredScreen,
    composite_key,
)
from .interfaces import QueueAppender, VisitedView
from .priority_calculator import (
    is_likely_back_button,
    is_likely_navigation_element,
    score_element,
)

logger = logging.getLogger(__name__)

SYSTEM_PACKAGES = (
    "com.android.systemui",
    "com.google.android.apps.nexuslauncher",
    "com.android.launcher",
    "com.android.launcher3",
    "com.sec.android.app.launcher",
    "com.miui.home",
)

# Never interact with credential inputs
SENSITIVE_KEYWORDS = (
    "password", "passcode", "passphrase", "pass_word",
    "pin", "pincode", "pin_code", "security_code",
    "credential", "secret", "otp", "verification_code",
    "cvv", "cvc", "card_number", "account_number",
)

# Elements that can close or minimize the app
DANGEROUS_KEYWORDS = (
    "home", "recent", "recents", "overview", "exit", "minimize",
    "keyboard", "ime", "launcher", "systemui", "go home",
    "show all apps", "switch apps",
)

LOW_PRIORITY_ACTIVITY_PATTERNS = (
    "setting", "preference", "about", "legal", "privacy",
    "terms", "license", "help", "support", "feedback",
    "contact", "faq", "changelog", "whatsnew",
)

META_TEXT_PATTERNS = ("version", "privacy", "terms", "license", "copyright", "©")

LOGIN_ACTIVITY_PATTERNS = (
    "loginactivity", "signinactivity", "sign_in", "sign-in",
    "authactivity", "authenticateactivity",
    "preloginactivity", "pre_login", "pre-login",
    "registeractivity", "signupactivity", "sign_up", "sign-up",
    "passwordactivity", "credentialactivity",
    "verificationactivity", "verifyactivity",
    "otpactivity", "2faactivity", "mfaactivity",
)

LOGIN_TEXT_PATTERNS = (
    "log in", "login", "sign in", "username", "password", "email",
    "forgot password", "create account", "register", "sign up",
)

LOGIN_BUTTON_PATTERNS = ("log in", "login", "sign in", "submit", "continue")

EDGE_GESTURE_ZONE = 30
MIN_ELEMENT_SIZE = 20
LOW_PRIORITY_MAX_CLICKABLES = 10
DEEP_MODE_BOOST = 10
DEEP_SCROLL_PRIORITY = 15
NORMAL_SCROLL_PRIORITY = 5


class QueueResult(BaseModel):
    """Counts from one queue_screen call"""

    elements_queued: int = 0
    scroll_containers_queued: int = 0
    skipped_visited: int = 0
    skipped_excluded: int = 0
    skipped_quick_mode: int = 0
    skipped_dead_end: int = 0
    skipped_already_queued: bool = False
    skipped_low_priority: int = 0

    @property
    def total_queued(self) -> int:
        return self.elements_queued + self.scroll_containers_queued


def systematic_priority(x: int, y: int) -> int:
    """Reading order on a ~100px grid: top-left first"""
    reading_order = (y // 100) * 100 + x // 100
    return 1000 - max(0, min(999, reading_order))


def _contains_any(value: Optional[str], keywords: Iterable[str]) -> Optional[str]:
    if not value:
        return None
    lowered = value.lower()
    for keyword in keywords:
        if keyword in lowered:
            return keyword
    return None


class ElementQueueManager:
    """
    Builds frontier targets for screens.

    Holds only the set of screens already queued this pass; the frontier and
    visited set belong to the run and arrive as narrow views.
    """

    def __init__(
        self,
        policy=None,
        status_bar_height: Optional[int] = None,
        nav_bar_height: Optional[int] = None,
    ):
        """
        Args:
            policy: Optional ExplorationQLearning for boosts, dead ends, danger
            status_bar_height: Status bar zone in pixels
            nav_bar_height: System navigation bar zone in pixels
        """
        self.policy = policy
        self.status_bar_height = (
            Defaults.STATUS_BAR_HEIGHT if status_bar_height is None else status_bar_height
        )
        self.nav_bar_height = Defaults.NAV_BAR_HEIGHT if nav_bar_height is None else nav_bar_height
        self.queued_screens: Set[str] = set()

    def reset(self):
        self.queued_screens.clear()

    def is_screen_queued(self, screen_id: str) -> bool:
        return screen_id in self.queued_screens

    # =========================================================================
    # Screen classification
    # =========================================================================

    def is_low_priority_screen(self, screen: ExploredScreen) -> bool:
        """Settings / about / legal pages: rarely worth exploring"""
        activity = screen.activity.lower()
        pattern = _contains_any(activity, LOW_PRIORITY_ACTIVITY_PATTERNS)
        if pattern:
            logger.info(f"[ElementQueueManager] Low priority screen {activity} ({pattern})")
            return True

        meta_count = sum(
            1 for t in screen.text_elements if _contains_any(t.text, META_TEXT_PATTERNS)
        )
        if meta_count >= 5:
            logger.info(
                f"[ElementQueueManager] Low priority screen by content: {activity} "
                f"({meta_count} meta texts)"
            )
            return True
        return False

    def is_login_screen(self, screen: ExploredScreen) -> bool:
        """Credential walls: exploration should navigate away"""
        activity = screen.activity.lower()
        pattern = _contains_any(activity, LOGIN_ACTIVITY_PATTERNS)
        if pattern:
            logger.info(f"[ElementQueueManager] Login screen {activity} ({pattern})")
            return True

        text_count = sum(
            1 for t in screen.text_elements if _contains_any(t.text, LOGIN_TEXT_PATTERNS)
        )
        button_count = sum(
            1
            for e in screen.clickable_elements
            if _contains_any(e.text, LOGIN_BUTTON_PATTERNS)
            or _contains_any(e.content_description, LOGIN_BUTTON_PATTERNS[:3])
        )
        return text_count + button_count >= 2

    def is_escapable_screen(self, screen: ExploredScreen) -> bool:
        return self.is_login_screen(screen) or self.is_low_priority_screen(screen)

    # =========================================================================
    # Exclusion
    # =========================================================================

    def exclusion_reason(
        self, element: ClickableElement, screen_width: int, screen_height: int
    ) -> Optional[str]:
        """
        Why an element must not be queued, or None if it may be.

        Checks run cheapest first; the first match wins.
        """
        bounds = element.bounds
        cx, cy = element.center_x, element.center_y

        if bounds.width <= 0 or bounds.height <= 0:
            return "invalid_bounds"
        if cx < 0 or cy < 0 or cx > screen_width or cy > screen_height:
            return "off_screen"
        if element.resource_id and element.resource_id.lower().startswith(SYSTEM_PACKAGES):
            return "system_ui"
        if bounds.width < MIN_ELEMENT_SIZE or bounds.height < MIN_ELEMENT_SIZE:
            return "tiny"
        if screen_height - self.nav_bar_height - 10 < cy <= screen_height:
            return "nav_bar"
        if 0 <= cy < self.status_bar_height:
            return "status_bar"
        if (
            cx < EDGE_GESTURE_ZONE or cx > screen_width - EDGE_GESTURE_ZONE
        ) and cy > screen_height / 2:
            return "edge_gesture"

        if _contains_any(element.resource_id, SENSITIVE_KEYWORDS) or _contains_any(
            element.content_description, SENSITIVE_KEYWORDS
        ):
            logger.warning(f"[ElementQueueManager] Excluding sensitive element {element.label}")
            return "sensitive"
        if element.text and len(element.text) < 30 and _contains_any(element.text, SENSITIVE_KEYWORDS):
            logger.warning(f"[ElementQueueManager] Excluding sensitive element {element.label}")
            return "sensitive"

        if _contains_any(element.content_description, DANGEROUS_KEYWORDS) or _contains_any(
            element.resource_id, DANGEROUS_KEYWORDS
        ):
            return "dangerous"
        if is_likely_back_button(element):
            return "back_button"
        return None

    def should_exclude(
        self, element: ClickableElement, screen_width: int, screen_height: int
    ) -> bool:
        reason = self.exclusion_reason(element, screen_width, screen_height)
        if reason:
            logger.debug(f"[ElementQueueManager] Excluding {element.label}: {reason}")
        return reason is not None

    # =========================================================================
    # Queueing
    # =========================================================================

    def _learned_boost(self, screen: ExploredScreen, element: ClickableElement) -> int:
        if self.policy is None:
            return 0
        return self.policy.get_priority_boost(screen, element)

    def _is_dangerous(self, screen: ExploredScreen, element: ClickableElement) -> bool:
        if self.policy is None:
            return False
        return self.policy.is_dangerous(element, screen.screen_height)

    def element_priority(
        self,
        screen: ExploredScreen,
        element: ClickableElement,
        config: ExplorationConfig,
        visited_nav_tabs: Iterable[str] = (),
    ) -> int:
        if config.strategy == ExplorationStrategy.SYSTEMATIC:
            return systematic_priority(element.center_x, element.center_y)
        priority = score_element(
            element,
            screen,
            config.strategy,
            learned_boost=self._learned_boost(screen, element),
            visited_nav_tabs=visited_nav_tabs,
            dangerous=self._is_dangerous(screen, element),
        )
        if config.mode == ExplorationMode.DEEP:
            priority += DEEP_MODE_BOOST
        return priority

    def queue_screen(
        self,
        screen: ExploredScreen,
        frontier: QueueAppender,
        visited: VisitedView,
        config: ExplorationConfig,
        visited_nav_tabs: Iterable[str] = (),
    ) -> QueueResult:
        """
        Queue a screen's unvisited elements and unscrolled containers.

        A screen already queued this pass is only re-queued while it still has
        unvisited elements. Low-priority pages with few clickables queue
        nothing.

        Args:
            screen: Screen to queue
            frontier: Where targets go
            visited: Visited composite keys of the run
            config: Run configuration (mode and strategy)
            visited_nav_tabs: Bottom navigation tabs already visited

        Returns:
            QueueResult with queued and skipped counts
        """
        screen_id = screen.screen_id
        deep = config.mode == ExplorationMode.DEEP
        quick = config.mode == ExplorationMode.QUICK
        width, height = screen.screen_width, screen.screen_height
        nav_tabs = set(visited_nav_tabs)

        if screen_id in self.queued_screens:
            unvisited = sum(
                1
                for e in screen.clickable_elements
                if not visited.is_visited(composite_key(screen_id, e.element_id))
            )
            if unvisited == 0:
                logger.debug(
                    f"[ElementQueueManager] Screen {screen_id[:8]} already queued, nothing unvisited"
                )
                return QueueResult(skipped_already_queued=True)

        if not deep and self.is_low_priority_screen(screen):
            if len(screen.clickable_elements) <= LOW_PRIORITY_MAX_CLICKABLES:
                self.queued_screens.add(screen_id)
                return QueueResult(skipped_low_priority=len(screen.clickable_elements))

        result = QueueResult()
        for element in screen.clickable_elements:
            if visited.is_visited(composite_key(screen_id, element.element_id)):
                result.skipped_visited += 1
                continue

            if deep:
                if element.bounds.width <= 0 or element.bounds.height <= 0:
                    result.skipped_excluded += 1
                    continue
            else:
                if self.policy is not None and self.policy.should_skip(screen, element):
                    result.skipped_dead_end += 1
                    continue
                if self.should_exclude(element, width, height):
                    result.skipped_excluded += 1
                    continue
                if quick and not is_likely_navigation_element(element, width, height):
                    result.skipped_quick_mode += 1
                    continue

            frontier.push(
                ExplorationTarget(
                    type=ExplorationTargetType.TAP_ELEMENT,
                    screen_id=screen_id,
                    element_id=element.element_id,
                    priority=self.element_priority(screen, element, config, nav_tabs),
                    bounds=element.bounds,
                    navigation=element.action_type == ClickableActionType.NAVIGATION
                    or is_likely_navigation_element(element, width, height),
                )
            )
            result.elements_queued += 1

        if not quick:
            for container in screen.scrollable_containers:
                if container.fully_scrolled:
                    continue
                if config.strategy == ExplorationStrategy.SYSTEMATIC:
                    scroll_priority = 500 - container.bounds.y // 100
                elif deep:
                    scroll_priority = DEEP_SCROLL_PRIORITY
                else:
                    scroll_priority = NORMAL_SCROLL_PRIORITY
                frontier.push(
                    ExplorationTarget(
                        type=ExplorationTargetType.SCROLL_CONTAINER,
                        screen_id=screen_id,
                        scroll_container_id=container.element_id,
                        priority=scroll_priority,
                        bounds=container.bounds,
                    )
                )
                result.scroll_containers_queued += 1

        self.queued_screens.add(screen_id)
        logger.info(
            f"[ElementQueueManager] Queued {result.elements_queued} elements, "
            f"{result.scroll_containers_queued} scrolls on {screen_id[:8]} "
            f"(skipped {result.skipped_visited} visited, {result.skipped_excluded} excluded, "
            f"{result.skipped_quick_mode} non-nav, {result.skipped_dead_end} dead ends)"
        )
        return result
