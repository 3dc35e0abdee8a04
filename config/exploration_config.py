"""
App Explorer - Per-run exploration configuration

Pydantic options structure passed to AppExplorer.start().
"""

from enum import Enum

from pydantic import BaseModel, Field


class ExplorationMode(str, Enum):
    """How aggressively elements are queued"""

    QUICK = "quick"  # Navigation elements only, no scrolling
    NORMAL = "normal"
    DEEP = "deep"  # Minimal exclusions, everything queued
    MANUAL = "manual"  # Human drives, engine only records


class ExplorationStrategy(str, Enum):
    """Target selection strategy (see core.exploration.strategies)"""

    SCREEN_FIRST = "screen_first"
    PRIORITY_BASED = "priority_based"
    DEPTH_FIRST = "depth_first"
    BREADTH_FIRST = "breadth_first"
    SYSTEMATIC = "systematic"
    ADAPTIVE = "adaptive"


class ExplorationGoal(str, Enum):
    """What ends a run"""

    QUICK_SCAN = "quick_scan"  # Fixed scan budget
    DEEP_MAP = "deep_map"  # Screen/element/duration budget
    COMPLETE_COVERAGE = "complete_coverage"  # Coverage target with a safety time cap


class ExplorationConfig(BaseModel):
    """
    Options for a single exploration run.

    Durations are milliseconds, coverage is a 0.0-1.0 fraction.
    """

    mode: ExplorationMode = Field(ExplorationMode.NORMAL, description="Queueing mode")
    strategy: ExplorationStrategy = Field(
        ExplorationStrategy.SCREEN_FIRST, description="Target selection strategy"
    )
    goal: ExplorationGoal = Field(ExplorationGoal.DEEP_MAP, description="Termination goal")

    # Budgets
    max_depth: int = Field(5, ge=1, description="Max navigation depth from home screen")
    max_screens: int = Field(50, ge=1, description="Max screens to discover")
    max_elements: int = Field(500, ge=1, description="Max elements to tap")
    max_duration_ms: int = Field(600_000, ge=0, description="Max run duration")
    max_launch_retries: int = Field(
        3, ge=0, description="Consecutive relaunches allowed before the run fails"
    )

    # Timing
    action_delay_ms: int = Field(1000, ge=0, description="Pause between actions")
    transition_wait_ms: int = Field(2500, ge=0, description="Wait after a tap")
    scroll_delay_ms: int = Field(500, ge=0, description="Wait after a scroll")
    stabilization_timeout_ms: int = Field(
        3000, ge=0, description="Max time to wait for the UI to stop changing"
    )
    max_scrolls_per_container: int = Field(5, ge=1)

    # Coverage goal
    target_coverage: float = Field(0.90, ge=0.0, le=1.0, description="Coverage target")
    stop_at_target_coverage: bool = Field(True)
    max_duration_for_coverage_ms: int = Field(
        1_800_000, ge=0, description="Safety cap for COMPLETE_COVERAGE runs"
    )
    max_passes: int = Field(1, ge=1, description="Automatic passes per start()")

    # Behaviour
    backtrack_after_new_screen: bool = Field(
        True, description="Return to the source screen after discovering a new one"
    )
    non_destructive: bool = Field(
        True, description="Restore toggles changed during exploration"
    )
    enable_veto: bool = Field(False, description="Publish intents and honour vetoes")
    veto_window_ms: int = Field(1500, ge=0)

    # Fallback display metrics when a snapshot does not carry them
    screen_width: int = Field(1080, gt=0)
    screen_height: int = Field(2400, gt=0)

    @classmethod
    def for_deep_exploration(cls, **overrides) -> "ExplorationConfig":
        """Preset for exhaustive mapping of one app"""
        values = dict(
            mode=ExplorationMode.DEEP,
            strategy=ExplorationStrategy.ADAPTIVE,
            goal=ExplorationGoal.COMPLETE_COVERAGE,
            max_depth=10,
            max_screens=200,
            max_elements=2000,
            max_duration_ms=1_800_000,
            max_scrolls_per_container=10,
            max_passes=2,
        )
        values.update(overrides)
        return cls(**values)

    @classmethod
    def for_quick_scan(cls, **overrides) -> "ExplorationConfig":
        """Preset for a short navigation-only survey"""
        values = dict(
            mode=ExplorationMode.QUICK,
            strategy=ExplorationStrategy.BREADTH_FIRST,
            goal=ExplorationGoal.QUICK_SCAN,
            max_depth=3,
            max_screens=15,
            max_elements=60,
            max_duration_ms=180_000,
            backtrack_after_new_screen=True,
        )
        values.update(overrides)
        return cls(**values)
