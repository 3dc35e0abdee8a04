"""
App Explorer - Element Priority

Scores a candidate element for exploration ordering. Higher = explored sooner.

Adaptive mode shrinks the hand-tuned layout biases and amplifies the learned
boost so the policy decides most of the ordering.
"""

import logging
from typing import Iterable, Optional

from config.exploration_config import ExplorationStrategy

from .exploration_models import ClickableElement, ExploredScreen

logger = logging.getLogger(__name__)

BOTTOM_NAV_BAND = 200
TOP_TOOLBAR_BAND = 200
EDGE_MARGIN = 100
DANGEROUS_PENALTY = 100
META_PENALTY = 30
ADAPTIVE_BOOST_FACTOR = 1.5

# Elements that usually lead to settings/legal/meta pages
META_KEYWORDS = (
    "setting", "about", "contact", "help", "support",
    "privacy", "terms", "legal", "license", "feedback",
    "rate", "review", "share app", "invite", "refer",
    "version", "changelog", "what's new", "faq",
    "policy", "agreement", "tos", "preferences",
    "report", "bug", "issue",
)

BACK_PATTERNS = (
    "navigate_up", "btn_back", "btn_finish", "action_bar_back",
    "toolbar_back", "iv_back", "img_back",
)

NAV_PATTERNS = (
    "tab", "nav", "menu", "home", "settings", "profile",
    "back", "more", "drawer", "hamburger", "fab",
)


def _lower(value: Optional[str]) -> str:
    return value.lower() if value else ""


def is_bottom_navigation(element: ClickableElement, screen_height: int) -> bool:
    """Tab-sized element within the bottom navigation band"""
    height = element.bounds.height
    return element.center_y > screen_height - BOTTOM_NAV_BAND and 40 < height < 150


def navigation_tab_id(element: ClickableElement) -> str:
    return element.resource_id or element.element_id


def is_meta_element(element: ClickableElement) -> bool:
    """True if the element likely leads to a settings/about/legal page"""
    haystacks = (
        _lower(element.text),
        _lower(element.resource_id),
        _lower(element.content_description),
    )
    return any(keyword in h for keyword in META_KEYWORDS for h in haystacks)


def is_likely_back_button(element: ClickableElement) -> bool:
    resource_id = _lower(element.resource_id)
    description = _lower(element.content_description)

    for pattern in BACK_PATTERNS:
        if pattern in resource_id or pattern in description:
            return True

    if "back" in description or "navigate up" in description:
        return True

    # Top-left image button is almost always "up"
    if element.center_x < 150 and element.center_y < 200:
        class_name = _lower(element.class_name)
        if "imagebutton" in class_name or "imageview" in class_name:
            return True

    return False


def is_likely_navigation_element(
    element: ClickableElement, screen_width: int, screen_height: int
) -> bool:
    """Elements worth tapping in a quick scan: tabs, bars, menus, cards"""
    bounds = element.bounds
    if is_bottom_navigation(element, screen_height):
        return True
    if element.center_y < 120 and bounds.height < 80:
        return True

    class_name = _lower(element.class_name)
    if 100 <= element.center_y <= 250 and "tab" in class_name:
        return True

    resource_id = _lower(element.resource_id)
    text = _lower(element.text)
    description = _lower(element.content_description)
    for pattern in NAV_PATTERNS:
        if pattern in resource_id or pattern in text or pattern in description:
            return True

    if bounds.width > screen_width * 0.4 and "button" in class_name:
        return True

    return "card" in class_name or "listitem" in class_name


def score_element(
    element: ClickableElement,
    screen: ExploredScreen,
    strategy: ExplorationStrategy,
    learned_boost: int = 0,
    visited_nav_tabs: Iterable[str] = (),
    dangerous: bool = False,
) -> int:
    """
    Score one candidate element.

    Args:
        element: Candidate element
        screen: Screen the element belongs to (provides dimensions)
        strategy: Active strategy; ADAPTIVE flattens layout heuristics
        learned_boost: Policy boost, already including the uncertainty bonus
            and the dead-end override
        visited_nav_tabs: Navigation tab ids already visited this pass
        dangerous: Element matches a pattern that closed or crashed the app

    Returns:
        Integer priority
    """
    adaptive = strategy == ExplorationStrategy.ADAPTIVE
    width, height = screen.screen_width, screen.screen_height
    priority = 0

    if element.text:
        priority += 10
    if element.resource_id:
        priority += 5

    bottom_threshold = height - BOTTOM_NAV_BAND
    if is_bottom_navigation(element, height):
        unvisited = navigation_tab_id(element) not in set(visited_nav_tabs)
        if adaptive:
            priority += 10 if unvisited else 5
        else:
            priority += 50 if unvisited else 15

    if element.center_x < EDGE_MARGIN or element.center_x > width - EDGE_MARGIN:
        if element.center_y < bottom_threshold:
            priority -= 2 if adaptive else 5

    if element.center_y < TOP_TOOLBAR_BAND:
        priority -= 1 if adaptive else 3

    if (
        width / 4 < element.center_x < width * 3 / 4
        and height / 4 < element.center_y < height * 3 / 4
    ):
        priority += 15 if adaptive else 5

    if is_meta_element(element):
        priority -= META_PENALTY

    priority += int(learned_boost * ADAPTIVE_BOOST_FACTOR) if adaptive else learned_boost

    if dangerous:
        priority -= DANGEROUS_PENALTY
        logger.debug(f"[ElementPriority] Dangerous pattern penalty for {element.label}")

    return priority
