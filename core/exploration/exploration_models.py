"""
App Explorer - Exploration Models
Pydantic models for screens, elements, queue targets and run issues.

Screens are keyed by a stable (package, activity) hash; elements by a hash of
their normalized identity, scoped to the owning screen through the composite
key "screenId:elementId".
"""

import hashlib
import re
import time
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Identity helpers
# =============================================================================


def compute_screen_id(package: str, activity: str) -> str:
    """Stable screen id from (package, activity); never from dynamic content"""
    return hashlib.sha256(f"{package}|{activity}".encode()).hexdigest()[:16]


def short_class_name(class_name: Optional[str]) -> str:
    if not class_name:
        return "View"
    return class_name.rsplit(".", 1)[-1]


def resource_suffix(resource_id: Optional[str]) -> Optional[str]:
    """'com.app:id/btn_ok' -> 'btn_ok'"""
    if not resource_id:
        return None
    return resource_id.rsplit("/", 1)[-1]


def normalize_element_identity(
    resource_id: Optional[str],
    text: Optional[str],
    class_name: Optional[str],
    bounds: "ElementBounds",
) -> str:
    """
    Readable identity of an element.

    Uses the resource id suffix, short text, and short class name. Position
    and size (rounded so minor layout jitter maps to the same id) are only
    used for anonymous elements with neither resource id nor text.
    """
    parts: List[str] = []
    suffix = resource_suffix(resource_id)
    if suffix:
        parts.append(suffix)
    if text and len(text) < 30:
        parts.append(text[:20])
    parts.append(short_class_name(class_name))
    if not suffix and not text:
        cx = round(bounds.center_x / 10) * 10
        cy = round(bounds.center_y / 10) * 10
        w = round(bounds.width / 20) * 20
        h = round(bounds.height / 20) * 20
        parts.append(f"{cx}_{cy}_{w}x{h}")
    joined = "_".join(parts)
    return re.sub(r"[^a-zA-Z0-9_]", "", joined).lower()


def compute_element_id(
    resource_id: Optional[str],
    text: Optional[str],
    class_name: Optional[str],
    bounds: "ElementBounds",
) -> str:
    """Deterministic hash of the normalized (resource id, text, class, bounds)"""
    identity = normalize_element_identity(resource_id, text, class_name, bounds)
    return hashlib.sha256(identity.encode()).hexdigest()[:12]


def composite_key(screen_id: str, element_id: str) -> str:
    return f"{screen_id}:{element_id}"


# =============================================================================
# Enums
# =============================================================================


class ClickableActionType(str, Enum):
    """Learned effect of tapping an element"""

    UNKNOWN = "unknown"
    NAVIGATION = "navigation"
    TOGGLE = "toggle"
    EXPAND_COLLAPSE = "expand_collapse"
    DIALOG = "dialog"
    MENU = "menu"
    BACK = "back"
    EXTERNAL = "external"
    CLOSES_APP = "closes_app"
    NO_EFFECT = "no_effect"
    TRIGGERS_DIALOG = "triggers_dialog"


class ScrollDirection(str, Enum):
    VERTICAL = "vertical"
    HORIZONTAL = "horizontal"
    BOTH = "both"


class ExplorationTargetType(str, Enum):
    TAP_ELEMENT = "tap_element"
    SCROLL_CONTAINER = "scroll_container"
    NAVIGATE_TO_SCREEN = "navigate_to_screen"


class TapResult(str, Enum):
    """Classified outcome of one action"""

    NEW_SCREEN = "new_screen"
    NEW_ELEMENTS = "new_elements"
    NAVIGATE_BACK = "navigate_back"
    NO_CHANGE = "no_change"
    CLOSED_APP = "closed_app"
    CRASH = "crash"


class IssueType(str, Enum):
    ELEMENT_STUCK = "element_stuck"
    BACK_FAILED = "back_failed"
    APP_MINIMIZED = "app_minimized"
    APP_LEFT = "app_left"
    TIMEOUT = "timeout"
    SCROLL_FAILED = "scroll_failed"
    DANGEROUS_ELEMENT = "dangerous_element"
    RECOVERY_FAILED = "recovery_failed"
    BLOCKER_SCREEN = "blocker_screen"
    SCREEN_UNREACHABLE = "screen_unreachable"
    CAPTURE_FAILED = "capture_failed"


class ExplorationStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    CANCELLED = "cancelled"
    ERROR = "error"


# =============================================================================
# Snapshot models
# =============================================================================


class ElementBounds(BaseModel):
    """Element rectangle in screen pixels"""

    x: int = Field(..., description="Left edge")
    y: int = Field(..., description="Top edge")
    width: int = Field(..., description="Width in pixels")
    height: int = Field(..., description="Height in pixels")

    @property
    def center_x(self) -> int:
        return self.x + self.width // 2

    @property
    def center_y(self) -> int:
        return self.y + self.height // 2

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height


class ClickableElement(BaseModel):
    """
    An interactive widget on a screen.

    element_id is unique per screen only; use composite_key() when tracking
    across screens.
    """

    element_id: str = Field(..., description="Hash of normalized identity")
    resource_id: Optional[str] = Field(None, description="Android resource ID")
    text: Optional[str] = Field(None, description="Visible text")
    content_description: Optional[str] = Field(None, description="Accessibility label")
    class_name: str = Field("android.view.View", description="Widget class")
    bounds: ElementBounds

    # Toggle tracking for non-destructive mode
    checkable: bool = Field(False, description="Element exposes a checked state")
    checked: bool = Field(False, description="Checked state at capture time")

    # Learned during the run
    explored: bool = Field(False, description="Element has been tapped")
    leads_to_screen: Optional[str] = Field(None, description="Screen reached by tapping")
    action_type: ClickableActionType = Field(ClickableActionType.UNKNOWN)

    @classmethod
    def create(
        cls,
        bounds: ElementBounds,
        resource_id: Optional[str] = None,
        text: Optional[str] = None,
        class_name: str = "android.view.View",
        **kwargs,
    ) -> "ClickableElement":
        """Build an element with its identity computed from its attributes"""
        element_id = compute_element_id(resource_id, text, class_name, bounds)
        return cls(
            element_id=element_id,
            resource_id=resource_id,
            text=text,
            class_name=class_name,
            bounds=bounds,
            **kwargs,
        )

    @property
    def center_x(self) -> int:
        return self.bounds.center_x

    @property
    def center_y(self) -> int:
        return self.bounds.center_y

    @property
    def label(self) -> str:
        """Best human-readable handle for logs"""
        return (
            self.text
            or self.content_description
            or resource_suffix(self.resource_id)
            or short_class_name(self.class_name)
        )


class ScrollableContainer(BaseModel):
    element_id: str
    resource_id: Optional[str] = None
    class_name: str = "android.widget.ScrollView"
    bounds: ElementBounds
    scroll_direction: ScrollDirection = ScrollDirection.VERTICAL
    fully_scrolled: bool = False
    scroll_count: int = Field(0, description="Scrolls performed this run")
    discovered_elements: List[str] = Field(
        default_factory=list, description="Element IDs revealed by scrolling"
    )

    @classmethod
    def create(
        cls,
        bounds: ElementBounds,
        resource_id: Optional[str] = None,
        class_name: str = "android.widget.ScrollView",
        **kwargs,
    ) -> "ScrollableContainer":
        element_id = compute_element_id(resource_id, None, class_name, bounds)
        return cls(
            element_id=element_id,
            resource_id=resource_id,
            class_name=class_name,
            bounds=bounds,
            **kwargs,
        )


class TextElement(BaseModel):
    element_id: str
    resource_id: Optional[str] = None
    text: str
    content_description: Optional[str] = None
    class_name: str = "android.widget.TextView"
    bounds: ElementBounds


class InputField(BaseModel):
    element_id: str
    resource_id: Optional[str] = None
    hint: Optional[str] = None
    text: Optional[str] = None
    class_name: str = "android.widget.EditText"
    bounds: ElementBounds
    input_type: str = "text"


class ExploredScreen(BaseModel):
    """
    A deduplicated UI state.

    Returned fresh by the screen provider on every capture; the run keeps the
    first instance per screen_id and merges later observations into it.
    """

    screen_id: str = Field(..., description="Hash of package + activity")
    activity: str = Field(..., description="Activity / view identifier")
    package_name: str = Field(..., description="App package name")

    clickable_elements: List[ClickableElement] = Field(default_factory=list)
    scrollable_containers: List[ScrollableContainer] = Field(default_factory=list)
    text_elements: List[TextElement] = Field(default_factory=list)
    input_fields: List[InputField] = Field(default_factory=list)

    landmarks: List[str] = Field(default_factory=list, description="Toolbar titles, tab labels")
    visit_count: int = Field(1, description="Observations this run")
    timestamp: float = Field(default_factory=time.time)

    screen_width: int = Field(1080, description="Display width in pixels")
    screen_height: int = Field(2400, description="Display height in pixels")

    @classmethod
    def create(cls, package_name: str, activity: str, **kwargs) -> "ExploredScreen":
        return cls(
            screen_id=compute_screen_id(package_name, activity),
            activity=activity,
            package_name=package_name,
            **kwargs,
        )

    def get_element(self, element_id: str) -> Optional[ClickableElement]:
        for element in self.clickable_elements:
            if element.element_id == element_id:
                return element
        return None

    def get_container(self, container_id: str) -> Optional[ScrollableContainer]:
        for container in self.scrollable_containers:
            if container.element_id == container_id:
                return container
        return None

    def element_ids(self) -> List[str]:
        return [e.element_id for e in self.clickable_elements]

    def merge_observation(self, other: "ExploredScreen") -> List[str]:
        """
        Fold a later capture of the same screen into this one.

        Existing elements keep their learned flags; unseen elements are
        appended. Returns the ids of newly added clickable elements.
        """
        known = {e.element_id for e in self.clickable_elements}
        added: List[str] = []
        for element in other.clickable_elements:
            if element.element_id not in known:
                self.clickable_elements.append(element.model_copy(deep=True))
                known.add(element.element_id)
                added.append(element.element_id)
            else:
                mine = self.get_element(element.element_id)
                mine.checked = element.checked

        known_containers = {c.element_id for c in self.scrollable_containers}
        for container in other.scrollable_containers:
            if container.element_id not in known_containers:
                self.scrollable_containers.append(container.model_copy(deep=True))

        known_text = {t.element_id for t in self.text_elements}
        for text_el in other.text_elements:
            if text_el.element_id not in known_text:
                self.text_elements.append(text_el.model_copy(deep=True))

        self.visit_count += 1
        return added


# =============================================================================
# Queue / issue models
# =============================================================================


class ExplorationTarget(BaseModel):
    """A queued unit of work, consumed exactly once"""

    type: ExplorationTargetType
    screen_id: str
    element_id: Optional[str] = None
    scroll_container_id: Optional[str] = None
    priority: int = Field(0, description="Higher = more important")
    bounds: Optional[ElementBounds] = None
    attempts: int = Field(0, description="Times this target was re-queued")
    navigation: bool = Field(
        False, description="Element is navigation-typed or looks like navigation"
    )

    @property
    def key(self) -> str:
        return composite_key(
            self.screen_id, self.element_id or self.scroll_container_id or "screen"
        )

    def decayed(self) -> "ExplorationTarget":
        """Copy for re-queueing after a transient failure"""
        return self.model_copy(
            update={"priority": self.priority // 2, "attempts": self.attempts + 1}
        )


class ExplorationIssue(BaseModel):
    screen_id: str
    element_id: Optional[str] = None
    issue_type: IssueType
    description: str
    timestamp: float = Field(default_factory=time.time)
    element_text: Optional[str] = None
    element_resource_id: Optional[str] = None
    element_class_name: Optional[str] = None
    element_bounds: Optional[ElementBounds] = None


class ChangedToggle(BaseModel):
    """A checkable element whose state an exploration tap changed"""

    screen_id: str
    element_id: str
    resource_id: Optional[str] = None
    text: Optional[str] = None
    center_x: int
    center_y: int
    original_checked: bool
    timestamp: float = Field(default_factory=time.time)


class ExplorationProgress(BaseModel):
    """Progress tuple handed to the status sink"""

    package_name: str
    status: ExplorationStatus
    state: str
    screens_explored: int = 0
    elements_explored: int = 0
    queue_size: int = 0
    coverage: float = 0.0
    pass_number: int = 1
    strategy: Optional[str] = None
    message: Optional[str] = None
    extra: Dict[str, float] = Field(default_factory=dict)
