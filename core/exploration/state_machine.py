"""
App Explorer - Lifecycle State Machine

IDLE -> INITIALIZING -> EXPLORING <-> PAUSED / STUCK -> COMPLETING -> COMPLETED

Transitions are total: an event with no rule for the current state leaves the
state unchanged. Stuck detection itself lives in StalenessMonitor; this
machine only reacts to STUCK_THRESHOLD_REACHED.
"""

import logging
from enum import Enum
from typing import Callable, Dict, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ExplorerState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    EXPLORING = "exploring"
    PAUSED = "paused"
    STUCK = "stuck"
    COMPLETING = "completing"
    COMPLETED = "completed"


class ExplorerEvent(str, Enum):
    # Lifecycle
    START_REQUESTED = "start_requested"
    INITIALIZATION_COMPLETE = "initialization_complete"
    STOP_REQUESTED = "stop_requested"

    # Progress
    ELEMENT_TAPPED = "element_tapped"
    NEW_SCREEN_DISCOVERED = "new_screen_discovered"
    NEW_ELEMENTS_FOUND = "new_elements_found"
    NO_PROGRESS_DETECTED = "no_progress_detected"

    # Stuck / recovery
    STUCK_THRESHOLD_REACHED = "stuck_threshold_reached"
    RECOVERY_SUCCEEDED = "recovery_succeeded"
    RECOVERY_FAILED = "recovery_failed"
    BRANCH_ABANDONED = "branch_abandoned"

    # User
    PAUSE_REQUESTED = "pause_requested"
    RESUME_REQUESTED = "resume_requested"
    USER_HELPED = "user_helped"

    # Completion
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    COVERAGE_THRESHOLD_REACHED = "coverage_threshold_reached"
    QUEUE_EXHAUSTED = "queue_exhausted"
    FATAL_ERROR = "fatal_error"


S = ExplorerState
E = ExplorerEvent

_COMPLETION_EVENTS = (
    E.STOP_REQUESTED,
    E.MAX_ITERATIONS_REACHED,
    E.COVERAGE_THRESHOLD_REACHED,
    E.QUEUE_EXHAUSTED,
    E.FATAL_ERROR,
)

TRANSITIONS: Dict[ExplorerState, Dict[ExplorerEvent, ExplorerState]] = {
    S.IDLE: {E.START_REQUESTED: S.INITIALIZING},
    S.INITIALIZING: {
        E.INITIALIZATION_COMPLETE: S.EXPLORING,
        E.STOP_REQUESTED: S.IDLE,
        E.FATAL_ERROR: S.COMPLETING,
    },
    S.EXPLORING: {
        E.STUCK_THRESHOLD_REACHED: S.STUCK,
        E.PAUSE_REQUESTED: S.PAUSED,
        **{event: S.COMPLETING for event in _COMPLETION_EVENTS},
    },
    S.PAUSED: {
        E.RESUME_REQUESTED: S.EXPLORING,
        E.STOP_REQUESTED: S.COMPLETING,
        E.FATAL_ERROR: S.COMPLETING,
    },
    S.STUCK: {
        E.RECOVERY_SUCCEEDED: S.EXPLORING,
        E.USER_HELPED: S.EXPLORING,
        E.NEW_SCREEN_DISCOVERED: S.EXPLORING,
        E.BRANCH_ABANDONED: S.EXPLORING,
        E.PAUSE_REQUESTED: S.PAUSED,
        E.STOP_REQUESTED: S.COMPLETING,
        E.FATAL_ERROR: S.COMPLETING,
        E.QUEUE_EXHAUSTED: S.COMPLETING,
    },
    S.COMPLETED: {E.START_REQUESTED: S.INITIALIZING},
}

StateChangeCallback = Callable[[ExplorerState, ExplorerState, ExplorerEvent], None]


class StateMachineStatistics(BaseModel):
    current_state: ExplorerState
    consecutive_no_progress: int = 0
    recovery_attempts: int = 0
    total_elements_tapped: int = 0
    total_screens_discovered: int = 0
    transitions: int = 0


class ExplorationStateMachine:
    """Explicit lifecycle of one explorer; counters feed progress reporting"""

    def __init__(self, on_state_changed: Optional[StateChangeCallback] = None):
        self.state = ExplorerState.IDLE
        self.on_state_changed = on_state_changed
        self._reset_counters()

    def _reset_counters(self):
        self.consecutive_no_progress = 0
        self.recovery_attempts = 0
        self.total_elements_tapped = 0
        self.total_screens_discovered = 0
        self.transitions = 0

    def set_on_state_changed(self, callback: Optional[StateChangeCallback]):
        self.on_state_changed = callback

    def process_event(self, event: ExplorerEvent) -> ExplorerState:
        """
        Apply an event and return the resulting state.

        The callback fires only when the state actually changes.
        """
        current = self.state
        self._count(current, event)

        if current == ExplorerState.COMPLETING:
            new_state = ExplorerState.COMPLETED
        else:
            new_state = TRANSITIONS.get(current, {}).get(event, current)

        if new_state == current:
            return current

        if event == ExplorerEvent.START_REQUESTED:
            self._reset_counters()
        if new_state == ExplorerState.STUCK:
            self.recovery_attempts = 0
        if current == ExplorerState.STUCK and new_state == ExplorerState.EXPLORING:
            self.consecutive_no_progress = 0

        logger.info(
            f"[ExplorationStateMachine] {current.value} -> {new_state.value} "
            f"(event: {event.value})"
        )
        self.state = new_state
        self.transitions += 1
        if self.on_state_changed:
            self.on_state_changed(current, new_state, event)
        return new_state

    def _count(self, state: ExplorerState, event: ExplorerEvent):
        if event == ExplorerEvent.ELEMENT_TAPPED:
            self.total_elements_tapped += 1
        elif event == ExplorerEvent.NEW_SCREEN_DISCOVERED:
            self.total_screens_discovered += 1
            self.consecutive_no_progress = 0
        elif event == ExplorerEvent.NEW_ELEMENTS_FOUND:
            self.consecutive_no_progress = 0
        elif event == ExplorerEvent.NO_PROGRESS_DETECTED and state == ExplorerState.EXPLORING:
            self.consecutive_no_progress += 1
        elif event == ExplorerEvent.RECOVERY_FAILED and state == ExplorerState.STUCK:
            self.recovery_attempts += 1

    def reset(self):
        """Back to IDLE without notifying"""
        logger.info("[ExplorationStateMachine] Reset to idle")
        self._reset_counters()
        self.state = ExplorerState.IDLE

    def is_active(self) -> bool:
        return self.state in (
            ExplorerState.INITIALIZING,
            ExplorerState.EXPLORING,
            ExplorerState.STUCK,
        )

    def can_start(self) -> bool:
        return self.state in (ExplorerState.IDLE, ExplorerState.COMPLETED)

    def get_statistics(self) -> StateMachineStatistics:
        return StateMachineStatistics(
            current_state=self.state,
            consecutive_no_progress=self.consecutive_no_progress,
            recovery_attempts=self.recovery_attempts,
            total_elements_tapped=self.total_elements_tapped,
            total_screens_discovered=self.total_screens_discovered,
            transitions=self.transitions,
        )
