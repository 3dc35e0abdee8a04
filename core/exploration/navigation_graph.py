"""
App Explorer - Navigation Graph

Records which element on which screen led to which screen, and answers
reachability questions over those observations:

- find_path: unweighted BFS, fewest taps
- find_optimal_path: Dijkstra over (1 - reliability), most reproducible route

A trigger element can lead to different screens on different taps
(conditional navigation, e.g. "Continue" going to a login wall only when
signed out). Every destination is kept with its own occurrence count.

Path queries never raise; "no path" is None.
"""

import heapq
import logging
import re
from collections import deque
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# Single tokens of an activity name that indicate a credential / auth wall
BLOCKER_TOKENS = {
    "password", "login", "signin", "signup", "auth", "verify", "verification",
    "setup", "pin", "code", "otp", "2fa", "security", "lock", "unlock",
    "register", "registration", "forgot", "reset", "confirm", "passcode",
}

# Compound patterns matched against the joined lowercase name
BLOCKER_COMPOUNDS = (
    "signin", "signup", "login", "password", "twofactor", "modeselection",
    "usermgmt", "accountselection", "chooseaccount", "selectaccount",
    "authchoice", "signinoptions", "loginoptions", "2fa",
)

DEFAULT_RELIABILITY = 0.5


def activity_tokens(activity: str) -> List[str]:
    """'com.app.ui.SignInOptionsActivity' -> ['sign', 'in', 'options', 'activity']"""
    name = activity.rsplit(".", 1)[-1].replace("$", "_")
    tokens: List[str] = []
    for chunk in re.split(r"[_\-\s]+", name):
        tokens.extend(
            t.lower() for t in re.findall(r"[A-Z]+(?![a-z])|[A-Z]?[a-z]+|\d+[a-z]*", chunk)
        )
    return tokens


def is_blocker_activity(activity: Optional[str]) -> bool:
    """Classify an activity name as a credential/auth blocker"""
    if not activity:
        return False
    tokens = activity_tokens(activity)
    if any(t in BLOCKER_TOKENS for t in tokens):
        return True
    joined = "".join(tokens)
    return any(pattern in joined for pattern in BLOCKER_COMPOUNDS)


# =============================================================================
# Models
# =============================================================================


class ElementNavigation(BaseModel):
    """All observed outcomes of tapping one element on one screen"""

    from_screen_id: str
    element_id: str
    destinations: Dict[str, int] = Field(
        default_factory=dict, description="Destination screen -> occurrence count"
    )
    blocker_destinations: Set[str] = Field(default_factory=set)
    tap_count: int = Field(0, description="Total observed taps")

    @property
    def is_conditional(self) -> bool:
        return len(self.destinations) >= 2

    @property
    def total_observations(self) -> int:
        return sum(self.destinations.values())

    def add_destination(self, screen_id: str):
        self.destinations[screen_id] = self.destinations.get(screen_id, 0) + 1
        self.tap_count += 1

    def most_visited_destination(self) -> Optional[str]:
        if not self.destinations:
            return None
        return max(self.destinations.items(), key=lambda item: item[1])[0]


class NavigationStep(BaseModel):
    """Tap element_id on screen_id, expecting to land on to_screen_id"""

    screen_id: str
    element_id: str
    to_screen_id: str


class NavigationPath(BaseModel):
    from_screen_id: str
    to_screen_id: str
    steps: List[NavigationStep] = Field(default_factory=list)
    total_cost: float = 0.0
    reliability: float = Field(1.0, description="Product of edge reliabilities")

    @property
    def hop_count(self) -> int:
        return len(self.steps)


class NavigationGraphStats(BaseModel):
    total_screens: int
    fully_explored_screens: int
    total_transitions: int
    conditional_elements: int
    blocker_screens: int


# =============================================================================
# Graph
# =============================================================================


class NavigationGraph:
    """
    Screen-to-screen transition graph for one run.

    The orchestrator is the only writer; other components receive it through
    the read-only GraphView protocol.
    """

    def __init__(self):
        # Latest destination per trigger (screen -> element -> screen)
        self._transitions: Dict[str, Dict[str, str]] = {}
        # All destinations per trigger, keyed "screen:element"
        self._element_navigations: Dict[str, ElementNavigation] = {}
        # Outgoing triggers per screen (screen -> element -> navigation)
        self._outgoing: Dict[str, Dict[str, ElementNavigation]] = {}
        self._known_screens: Dict[str, Optional[str]] = {}  # screen -> activity
        self._fully_explored: Set[str] = set()
        self._blocker_screens: Set[str] = set()
        self._problematic_screens: Dict[str, str] = {}
        self.home_screen_id: Optional[str] = None

    # =========================================================================
    # Recording
    # =========================================================================

    def register_screen(self, screen_id: str, activity: Optional[str] = None) -> bool:
        """
        Make a screen known. Screens whose activity looks like an auth wall
        are flagged as blockers. Returns True when the screen was new.
        """
        is_new = screen_id not in self._known_screens
        if is_new or (activity and not self._known_screens.get(screen_id)):
            self._known_screens[screen_id] = activity
        if activity and is_blocker_activity(activity):
            if screen_id not in self._blocker_screens:
                logger.info(
                    f"[NavigationGraph] Blocker screen {screen_id[:8]} ({activity})"
                )
            self._blocker_screens.add(screen_id)
        if self.home_screen_id is None:
            self.home_screen_id = screen_id
        return is_new

    def set_home_screen(self, screen_id: str):
        self.register_screen(screen_id)
        self.home_screen_id = screen_id

    def record_transition(
        self,
        from_screen: str,
        trigger_element: str,
        to_screen: str,
        to_activity: Optional[str] = None,
    ) -> ElementNavigation:
        """
        Record that tapping trigger_element on from_screen led to to_screen.

        Repeated observations increment the count for that destination; a
        different destination is added alongside, never replacing it.
        """
        self.register_screen(from_screen)
        self.register_screen(to_screen, to_activity)

        self._transitions.setdefault(from_screen, {})[trigger_element] = to_screen

        nav_key = f"{from_screen}:{trigger_element}"
        nav = self._element_navigations.get(nav_key)
        if nav is None:
            nav = ElementNavigation(from_screen_id=from_screen, element_id=trigger_element)
            self._element_navigations[nav_key] = nav
            self._outgoing.setdefault(from_screen, {})[trigger_element] = nav
        was_conditional = nav.is_conditional
        nav.add_destination(to_screen)

        if to_screen in self._blocker_screens:
            nav.blocker_destinations.add(to_screen)

        if nav.is_conditional and not was_conditional:
            logger.info(
                f"[NavigationGraph] Conditional navigation: {trigger_element} on "
                f"{from_screen[:8]} -> {sorted(d[:8] for d in nav.destinations)}"
            )
        return nav

    def mark_as_blocker(self, screen_id: str):
        """Flag a screen as a blocker based on content analysis"""
        self._blocker_screens.add(screen_id)
        for nav in self._element_navigations.values():
            if screen_id in nav.destinations:
                nav.blocker_destinations.add(screen_id)

    def mark_fully_explored(self, screen_id: str):
        self._fully_explored.add(screen_id)

    def mark_problematic(self, screen_id: str, reason: str):
        self._problematic_screens[screen_id] = reason
        logger.warning(
            f"[NavigationGraph] Marked screen {screen_id[:8]} as problematic: {reason}"
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def is_known(self, screen_id: str) -> bool:
        return screen_id in self._known_screens

    def is_blocker_screen(self, screen_id: str) -> bool:
        return screen_id in self._blocker_screens

    def is_problematic(self, screen_id: str) -> bool:
        return screen_id in self._problematic_screens

    def is_fully_explored(self, screen_id: str) -> bool:
        return screen_id in self._fully_explored

    def get_blocker_screens(self) -> Set[str]:
        return set(self._blocker_screens)

    def get_all_screens(self) -> Set[str]:
        return set(self._known_screens)

    def get_unexplored_screens(self) -> Set[str]:
        return set(self._known_screens) - self._fully_explored

    def get_destination(self, from_screen: str, element_id: str) -> Optional[str]:
        """Latest observed destination of a trigger"""
        return self._transitions.get(from_screen, {}).get(element_id)

    def get_element_navigation(
        self, from_screen: str, element_id: str
    ) -> Optional[ElementNavigation]:
        return self._element_navigations.get(f"{from_screen}:{element_id}")

    def is_conditional(self, from_screen: str, element_id: str) -> bool:
        nav = self.get_element_navigation(from_screen, element_id)
        return bool(nav and nav.is_conditional)

    def get_conditional_navigations(self) -> List[ElementNavigation]:
        return [n for n in self._element_navigations.values() if n.is_conditional]

    def get_real_destination(self, from_screen: str, element_id: str) -> Optional[str]:
        """Most visited non-blocker destination, else the most visited one"""
        nav = self.get_element_navigation(from_screen, element_id)
        if nav is None:
            return None
        candidates = [d for d in nav.destinations if d not in self._blocker_screens]
        if candidates:
            return max(candidates, key=lambda d: nav.destinations[d])
        return nav.most_visited_destination()

    def has_incoming_transitions(self, screen_id: str) -> bool:
        return any(
            screen_id in nav.destinations for nav in self._element_navigations.values()
        )

    def triggers_from(self, screen_id: str) -> List[ElementNavigation]:
        return list(self._outgoing.get(screen_id, {}).values())

    def _neighbors(self, screen_id: str):
        """Yield (element_id, destination) for every observed edge"""
        for nav in self.triggers_from(screen_id):
            for destination in nav.destinations:
                yield nav.element_id, destination

    def get_transition_reliability(
        self, from_screen: str, element_id: str, to_screen: str
    ) -> float:
        """
        Reliability of reaching to_screen by tapping element_id (0.1 - 1.0).

        Share of observations that reached to_screen, plus a confidence boost
        for well-used triggers, minus penalties for conditional triggers and
        blocker destinations.
        """
        nav = self.get_element_navigation(from_screen, element_id)
        if nav is None or nav.total_observations == 0:
            return DEFAULT_RELIABILITY

        base = nav.destinations.get(to_screen, 0) / nav.total_observations
        confidence_boost = min(0.2, nav.tap_count * 0.02)
        conditional_penalty = 0.1 if nav.is_conditional else 0.0
        blocker_penalty = 0.3 if to_screen in nav.blocker_destinations else 0.0

        reliability = base + confidence_boost - conditional_penalty - blocker_penalty
        return max(0.1, min(1.0, reliability))

    # =========================================================================
    # Pathfinding
    # =========================================================================

    def find_path(self, from_screen: str, to_screen: str) -> Optional[List[NavigationStep]]:
        """
        Fewest-taps path via breadth-first search.

        Args:
            from_screen: Starting screen ID
            to_screen: Target screen ID

        Returns:
            Ordered steps ([] when already there), or None if unreachable,
            unknown, or a blocker destination
        """
        if from_screen == to_screen:
            return []
        if to_screen not in self._known_screens or to_screen in self._blocker_screens:
            return None

        visited = {from_screen}
        queue = deque([(from_screen, [])])

        while queue:
            current, path = queue.popleft()
            for element_id, next_screen in self._neighbors(current):
                if next_screen in visited:
                    continue
                step = NavigationStep(
                    screen_id=current, element_id=element_id, to_screen_id=next_screen
                )
                if next_screen == to_screen:
                    return path + [step]
                visited.add(next_screen)
                queue.append((next_screen, path + [step]))

        return None

    def find_optimal_path(self, from_screen: str, to_screen: str) -> Optional[NavigationPath]:
        """
        Most reliable path via Dijkstra with edge cost (1 - reliability).

        Blocker screens may be crossed as waypoints but are never returned as
        the destination.
        """
        if from_screen == to_screen:
            return NavigationPath(from_screen_id=from_screen, to_screen_id=to_screen)
        if to_screen not in self._known_screens or to_screen in self._blocker_screens:
            return None

        distances: Dict[str, float] = {from_screen: 0.0}
        predecessors: Dict[str, NavigationStep] = {}
        counter = 0
        pq = [(0.0, counter, from_screen)]
        settled: Set[str] = set()

        while pq:
            current_dist, _, current = heapq.heappop(pq)
            if current in settled:
                continue
            settled.add(current)

            if current == to_screen:
                steps: List[NavigationStep] = []
                node = to_screen
                while node in predecessors:
                    step = predecessors[node]
                    steps.append(step)
                    node = step.screen_id
                steps.reverse()

                reliability = 1.0
                for step in steps:
                    reliability *= self.get_transition_reliability(
                        step.screen_id, step.element_id, step.to_screen_id
                    )
                return NavigationPath(
                    from_screen_id=from_screen,
                    to_screen_id=to_screen,
                    steps=steps,
                    total_cost=current_dist,
                    reliability=reliability,
                )

            for element_id, next_screen in self._neighbors(current):
                if next_screen in settled:
                    continue
                cost = 1.0 - self.get_transition_reliability(current, element_id, next_screen)
                distance = current_dist + cost
                if distance < distances.get(next_screen, float("inf")):
                    distances[next_screen] = distance
                    predecessors[next_screen] = NavigationStep(
                        screen_id=current, element_id=element_id, to_screen_id=next_screen
                    )
                    counter += 1
                    heapq.heappush(pq, (distance, counter, next_screen))

        logger.debug(
            f"[NavigationGraph] No path found from {from_screen[:8]} to {to_screen[:8]}"
        )
        return None

    def depth_of(self, screen_id: str) -> int:
        """BFS distance from the home screen (0 for home or unreachable screens)"""
        if self.home_screen_id is None or screen_id == self.home_screen_id:
            return 0
        path = self.find_path(self.home_screen_id, screen_id)
        if path is None:
            return 0
        return len(path)

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_stats(self) -> NavigationGraphStats:
        return NavigationGraphStats(
            total_screens=len(self._known_screens),
            fully_explored_screens=len(self._fully_explored),
            total_transitions=sum(len(t) for t in self._transitions.values()),
            conditional_elements=len(self.get_conditional_navigations()),
            blocker_screens=len(self._blocker_screens),
        )

    def get_conditional_summary(self) -> str:
        conditionals = self.get_conditional_navigations()
        if not conditionals:
            return "No conditional elements detected"
        lines = [f"=== CONDITIONAL ELEMENTS ({len(conditionals)}) ==="]
        for nav in conditionals:
            lines.append(f"  {nav.element_id}:")
            for destination, count in nav.destinations.items():
                blocker = " [BLOCKER]" if destination in nav.blocker_destinations else ""
                lines.append(f"    -> {destination[:16]}: {count} visits{blocker}")
        return "\n".join(lines)

    def export_dot(self, labels: Optional[Dict[str, str]] = None) -> str:
        """
        Export graph in Graphviz DOT format.

        Args:
            labels: Optional screen_id -> display label
        """
        labels = labels or {}
        lines = ["digraph navigation {", "  rankdir=LR;"]
        for screen_id, activity in self._known_screens.items():
            label = labels.get(screen_id) or (activity or screen_id).rsplit(".", 1)[-1]
            shape = "octagon" if screen_id in self._blocker_screens else "box"
            if screen_id == self.home_screen_id:
                shape = "doublecircle"
            lines.append(f'  "{screen_id}" [label="{label}", shape={shape}];')
        for nav in self._element_navigations.values():
            for destination, count in nav.destinations.items():
                style = "dashed" if nav.is_conditional else "solid"
                lines.append(
                    f'  "{nav.from_screen_id}" -> "{destination}" '
                    f'[label="{nav.element_id[:8]} x{count}", style={style}];'
                )
        lines.append("}")
        return "\n".join(lines)
