"""
Shared fixtures for the App Explorer test suite.

FakeApp is a small in-memory Android app: a back stack of named screens,
elements that navigate, toggle, close or crash the app, and lists that
reveal more elements when scrolled. It implements both the ScreenProvider
and the Actuator contracts so the explorer can be driven end to end without
a device. ManualClock makes every wait instantaneous and deterministic.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import pytest

from config.defaults import ExplorerDefaults
from config.exploration_config import ExplorationConfig
from core.exploration.exploration_models import (
    ClickableElement,
    ElementBounds,
    ExploredScreen,
    ScrollableContainer,
    TextElement,
    compute_screen_id,
)
from utils.error_handler import ScreenCaptureError

PACKAGE = "com.example.shop"
LAUNCHER = "com.android.launcher3"


def make_bounds(y: int = 400, x: int = 140, width: int = 800, height: int = 120) -> ElementBounds:
    return ElementBounds(x=x, y=y, width=width, height=height)


def make_element(rid: str, text: Optional[str] = None, y: int = 400, **kwargs) -> ClickableElement:
    return ClickableElement.create(
        make_bounds(y=y),
        resource_id=f"{PACKAGE}:id/{rid}",
        text=text,
        class_name=kwargs.pop("class_name", "android.widget.Button"),
        **kwargs,
    )


def make_screen(activity: str, elements=(), package: str = PACKAGE, **kwargs) -> ExploredScreen:
    return ExploredScreen.create(
        package,
        activity if "." in activity else f"{package}.{activity}",
        clickable_elements=list(elements),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Fake app
# ---------------------------------------------------------------------------


@dataclass
class FakeElement:
    rid: str
    text: Optional[str] = None
    y: int = 400
    x: int = 140
    width: int = 800
    height: int = 120
    class_name: str = "android.widget.Button"
    leads_to: Optional[str] = None
    once: bool = False
    closes_app: bool = False
    crashes: bool = False
    checkable: bool = False
    checked: bool = False

    @property
    def bounds(self) -> ElementBounds:
        return ElementBounds(x=self.x, y=self.y, width=self.width, height=self.height)

    @property
    def label(self) -> str:
        return self.text or self.rid


@dataclass
class FakeScreen:
    name: str
    activity: str
    elements: List[FakeElement] = field(default_factory=list)
    hidden: List[FakeElement] = field(default_factory=list)
    scroll_rid: Optional[str] = None
    texts: List[str] = field(default_factory=list)

    @property
    def full_activity(self) -> str:
        return f"{PACKAGE}.{self.activity}"


class FakeApp:
    """In-memory app + device implementing ScreenProvider and Actuator"""

    def __init__(self, screens: List[FakeScreen], home: Optional[str] = None):
        self.screens: Dict[str, FakeScreen] = {s.name: s for s in screens}
        self.home = home or screens[0].name
        self.stack: List[str] = []
        self.foreground = "launcher"
        self.revealed = set()
        self.used_once = set()
        self.checked: Dict[tuple, bool] = {
            (s.name, e.rid): e.checked for s in screens for e in s.elements + s.hidden if e.checkable
        }

        self.taps: List[str] = []
        self.scrolls: List[str] = []
        self.launches: List[bool] = []
        self.backs = 0
        self.captures = 0
        self.capture_failures = 0
        self.fail_captures = False
        self.fail_taps = False
        self.launch_fails_to_foreground = False

    # -- helpers ------------------------------------------------------------

    @property
    def current(self) -> Optional[FakeScreen]:
        if self.foreground != "app" or not self.stack:
            return None
        return self.screens[self.stack[-1]]

    def visible_elements(self, screen: FakeScreen) -> List[FakeElement]:
        elements = list(screen.elements)
        if screen.name in self.revealed:
            elements.extend(screen.hidden)
        return elements

    def screen_id(self, name: str) -> str:
        return compute_screen_id(PACKAGE, self.screens[name].full_activity)

    def element_id(self, screen_name: str, rid: str) -> str:
        screen = self.screens[screen_name]
        for fake in screen.elements + screen.hidden:
            if fake.rid == rid:
                return self._build_element(screen, fake).element_id
        raise KeyError(rid)

    def _build_element(self, screen: FakeScreen, fake: FakeElement) -> ClickableElement:
        checked = self.checked.get((screen.name, fake.rid), False)
        return ClickableElement.create(
            fake.bounds,
            resource_id=f"{PACKAGE}:id/{fake.rid}",
            text=fake.text,
            class_name=fake.class_name,
            checkable=fake.checkable,
            checked=checked,
        )

    # -- ScreenProvider -----------------------------------------------------

    async def capture_current_screen(self) -> ExploredScreen:
        self.captures += 1
        if self.fail_captures:
            raise ScreenCaptureError("device offline")
        if self.capture_failures > 0:
            self.capture_failures -= 1
            raise ScreenCaptureError("uiautomator busy")

        if self.foreground == "launcher":
            return ExploredScreen.create(LAUNCHER, f"{LAUNCHER}.Launcher")
        if self.foreground == "crash":
            return ExploredScreen.create(
                "android",
                "com.android.internal.app.AppErrorDialog",
                text_elements=[
                    TextElement(element_id="crash_msg", text="Shop has stopped", bounds=make_bounds(1000))
                ],
            )

        screen = self.current
        containers = []
        if screen.scroll_rid:
            containers.append(
                ScrollableContainer.create(
                    ElementBounds(x=0, y=300, width=1080, height=1600),
                    resource_id=f"{PACKAGE}:id/{screen.scroll_rid}",
                    class_name="androidx.recyclerview.widget.RecyclerView",
                )
            )
        texts = [
            TextElement(element_id=f"text_{i}", text=t, bounds=make_bounds(200 + 50 * i))
            for i, t in enumerate(screen.texts)
        ]
        return ExploredScreen.create(
            PACKAGE,
            screen.full_activity,
            clickable_elements=[self._build_element(screen, e) for e in self.visible_elements(screen)],
            scrollable_containers=containers,
            text_elements=texts,
        )

    # -- Actuator -----------------------------------------------------------

    async def tap(self, x: int, y: int) -> bool:
        if self.fail_taps:
            return False
        screen = self.current
        if screen is None:
            return True
        for fake in self.visible_elements(screen):
            b = fake.bounds
            if b.x <= x <= b.right and b.y <= y <= b.bottom:
                self._activate(screen, fake)
                break
        return True

    def _activate(self, screen: FakeScreen, fake: FakeElement):
        self.taps.append(fake.label)
        if fake.closes_app:
            self.foreground = "launcher"
            self.stack = []
        elif fake.crashes:
            self.foreground = "crash"
            self.stack = []
        elif fake.checkable:
            key = (screen.name, fake.rid)
            self.checked[key] = not self.checked[key]
        elif fake.leads_to:
            key = (screen.name, fake.rid)
            if fake.once and key in self.used_once:
                return
            self.used_once.add(key)
            self.stack.append(fake.leads_to)

    async def scroll(self, x: int, y: int, direction: str) -> bool:
        screen = self.current
        if screen is not None:
            self.scrolls.append(f"{screen.name}:{direction}")
            if screen.hidden:
                self.revealed.add(screen.name)
        return True

    async def press_back(self) -> bool:
        self.backs += 1
        if self.foreground != "app":
            self.foreground = "launcher"
            return True
        if len(self.stack) > 1:
            self.stack.pop()
        else:
            self.stack = []
            self.foreground = "launcher"
        return True

    async def launch_app(self, package: str, force_restart: bool = False) -> bool:
        self.launches.append(force_restart)
        if self.launch_fails_to_foreground:
            self.foreground = "launcher"
            return True
        self.foreground = "app"
        if force_restart or not self.stack:
            self.stack = [self.home]
        return True


# ---------------------------------------------------------------------------
# Clock and sink
# ---------------------------------------------------------------------------


class ManualClock:
    """Clock whose sleeps advance time instantly (and yield to the loop)"""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[["ManualClock"], None]] = None

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        if self.on_sleep is not None:
            self.on_sleep(self)
        await asyncio.sleep(0)

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSink:
    """StatusSink that keeps everything it is told"""

    def __init__(self):
        self.state_changes: List[tuple] = []
        self.progress: List = []
        self.issues: List = []
        self.intents: List = []
        self.help_requests: List[tuple] = []
        self.training_logs: List[list] = []
        self.progress_hook: Optional[Callable] = None
        self.intent_hook: Optional[Callable] = None
        self.help_hook: Optional[Callable] = None

    def on_state_change(self, old_state, new_state, event):
        self.state_changes.append((old_state, new_state, event))

    def on_progress(self, progress):
        self.progress.append(progress)
        if self.progress_hook:
            self.progress_hook(progress)

    def on_issue(self, issue):
        self.issues.append(issue)

    def on_action_intent(self, target):
        self.intents.append(target)
        if self.intent_hook:
            self.intent_hook(target)

    def request_help(self, message, timeout_s):
        self.help_requests.append((message, timeout_s))
        if self.help_hook:
            self.help_hook(message)

    def on_training_log(self, entries):
        self.training_logs.append(entries)

    @property
    def events(self) -> List[str]:
        return [event for _, _, event in self.state_changes]

    @property
    def issue_types(self) -> List[str]:
        return [issue.issue_type.value for issue in self.issues]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def shop_app():
    """Main screen with two navigating buttons and one no-op button"""
    return FakeApp(
        [
            FakeScreen(
                "main",
                "MainActivity",
                [
                    FakeElement("btn_profile", "Profile", y=400, leads_to="profile"),
                    FakeElement("btn_feed", "Feed", y=700),
                    FakeElement("btn_cart", "Cart", y=1000, leads_to="cart"),
                ],
            ),
            FakeScreen("profile", "ProfileActivity", [FakeElement("btn_edit", "Edit", y=400)]),
            FakeScreen("cart", "CartActivity", [FakeElement("btn_checkout", "Checkout", y=400)]),
        ]
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def fast_defaults():
    return ExplorerDefaults()


@pytest.fixture
def fast_config():
    """No artificial delays; short stabilization window"""
    return ExplorationConfig(
        action_delay_ms=0,
        transition_wait_ms=0,
        scroll_delay_ms=0,
        stabilization_timeout_ms=1000,
    )
