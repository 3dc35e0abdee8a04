"""
App Explorer - Orchestrator

AppExplorer runs the decision-act-observe loop for one target app:

    select target -> reach its screen -> act -> wait for the UI to settle
    -> classify the outcome -> update graph, policy, coverage and frontier
    -> recover when progress stalls

It is the only writer of the run's ExplorationState; every other component
gets a narrow view. All waits go through the injected Clock and re-check the
stop flag when they resume, so stop() and pause() take effect between
actions, never in the middle of a gesture.

Usage:
    explorer = AppExplorer(
        screen_provider=provider,
        actuator=actuator,
        status_sink=MqttStatusPublisher(device_id="pixel_7"),
        policy_store=SQLitePolicyStore(Defaults.POLICY_DB_PATH),
    )
    result = await explorer.start("com.example.app", ExplorationConfig())
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from config.defaults import Defaults, ExplorerDefaults
from config.exploration_config import (
    ExplorationConfig,
    ExplorationGoal,
    ExplorationMode,
    ExplorationStrategy,
)
from ml_components.exploration_q_learning import ExplorationQLearning
from utils.clock import Clock, SystemClock, poll_until_stable
from utils.error_handler import (
    ActuatorError,
    CollaboratorUnavailableError,
    ExplorationCancelled,
    ExplorerError,
    InvalidStateTransitionError,
    RelaunchLimitExceeded,
    ScreenCaptureError,
)
from utils.file_utils import atomic_write_json, load_json

from .coverage_tracker import CoverageMetrics, CoverageTracker
from .exploration_models import (
    ChangedToggle,
    ClickableActionType,
    ClickableElement,
    ExplorationIssue,
    ExplorationProgress,
    ExplorationStatus,
    ExplorationTarget,
    ExplorationTargetType,
    ExploredScreen,
    IssueType,
    ScrollDirection,
    TapResult,
)
from .exploration_state import ExplorationState
from .interfaces import Actuator, PolicyStore, ScreenProvider, StatusSink
from .navigation_graph import NavigationGraphStats, NavigationStep, activity_tokens
from .priority_calculator import is_bottom_navigation, navigation_tab_id
from .queue_manager import ElementQueueManager
from .state_machine import (
    ExplorationStateMachine,
    ExplorerEvent,
    ExplorerState,
    StateMachineStatistics,
)
from .strategies import AdaptiveStrategySelector, SelectionContext, select_target
from .stuck_recovery import (
    RecoveryActionType,
    RecoveryContext,
    RecoveryLevel,
    RecoveryPlan,
    RecoveryStatistics,
    StalenessMonitor,
    StalenessSignal,
    StuckRecoveryStrategy,
)

logger = logging.getLogger(__name__)

# Tokens of a foreign activity that mean the target app died
CRASH_TOKENS = {"crash", "anr", "error"}
CRASH_TEXT_PATTERNS = ("has stopped", "keeps stopping", "isn't responding", "not responding")

MAX_BACKTRACK_STEPS = 3


def looks_like_crash(screen: ExploredScreen) -> bool:
    """System crash / ANR dialog heuristics for a screen outside the target app"""
    if CRASH_TOKENS.intersection(activity_tokens(screen.activity)):
        return True
    texts = [t.text for t in screen.text_elements]
    texts.extend(e.text for e in screen.clickable_elements if e.text)
    return any(pattern in text.lower() for text in texts for pattern in CRASH_TEXT_PATTERNS)


def screen_signature(screen: ExploredScreen):
    """Two snapshots with the same signature show the same settled UI"""
    return screen.screen_id, tuple(sorted(screen.element_ids()))


@dataclass
class Observation:
    """What the engine saw after an action"""

    screen: Optional[ExploredScreen] = None  # Stored instance, None when outside the app
    is_new: bool = False
    added: List[str] = field(default_factory=list)
    left_app: bool = False
    crashed: bool = False
    blocker: bool = False


class ExplorationResult(BaseModel):
    """Everything a finished run produced, partial results included"""

    package_name: str
    status: ExplorationStatus
    pass_number: int = 1
    screens_explored: int = 0
    elements_explored: int = 0
    actions_taken: int = 0
    duration_ms: int = 0
    coverage: CoverageMetrics = Field(default_factory=CoverageMetrics)
    issues: List[ExplorationIssue] = Field(default_factory=list)
    screens: Dict[str, ExploredScreen] = Field(default_factory=dict)
    navigation: Optional[NavigationGraphStats] = None
    state_machine: Optional[StateMachineStatistics] = None
    recovery: Optional[RecoveryStatistics] = None
    policy: Dict[str, Any] = Field(default_factory=dict)
    strategy_performance: Dict[str, float] = Field(default_factory=dict)
    restored_toggles: int = 0
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ExplorationStatus.COMPLETED

    def summary(self) -> str:
        text = (
            f"{self.package_name} pass {self.pass_number}: {self.status.value}, "
            f"{self.screens_explored} screens, {self.elements_explored} elements, "
            f"{len(self.issues)} issues. {self.coverage.summary()}"
        )
        if self.error_message:
            text += f" Error: {self.error_message}"
        return text

    def save(self, path) -> Path:
        """Archive the result as JSON (atomic replace)"""
        target = atomic_write_json(path, self.model_dump(mode="json"))
        logger.info(f"[ExplorationResult] Saved to {target}")
        return target

    @classmethod
    def load(cls, path) -> Optional["ExplorationResult"]:
        data = load_json(path)
        if data is None:
            return None
        return cls.model_validate(data)


class AppExplorer:
    """
    Autonomous explorer for one app at a time.

    Run control (start, stop, pause, resume, start_another_pass) is the only
    public surface besides veto() and record_human_feedback(). stop(),
    pause(), resume() and veto() only set flags and are safe to call from
    another task or from a status sink callback.
    """

    def __init__(
        self,
        screen_provider: ScreenProvider,
        actuator: Actuator,
        status_sink: Optional[StatusSink] = None,
        policy_store: Optional[PolicyStore] = None,
        policy: Optional[ExplorationQLearning] = None,
        clock: Optional[Clock] = None,
        defaults: Optional[ExplorerDefaults] = None,
        seed: Optional[int] = None,
    ):
        """
        Args:
            screen_provider: Captures structured snapshots of the UI
            actuator: Executes taps, scrolls, back presses and launches
            status_sink: Optional receiver of transitions, progress and issues
            policy_store: Persistence for the learned policy (used when no
                policy is injected)
            policy: Pre-built ExplorationQLearning to share across explorers
            clock: Time source for every wait (SystemClock by default)
            defaults: Engine-wide thresholds (global Defaults by default)
            seed: RNG seed for the policy's random choices
        """
        self.provider = screen_provider
        self.actuator = actuator
        self.sink = status_sink
        self.policy_store = policy_store
        self.policy = policy
        self._owns_policy = policy is None
        self.clock = clock or SystemClock()
        self.defaults = defaults or Defaults
        self.seed = seed

        self.state_machine = ExplorationStateMachine(on_state_changed=self._on_state_changed)
        self.queue_manager = ElementQueueManager(
            policy=policy,
            status_bar_height=self.defaults.STATUS_BAR_HEIGHT,
            nav_bar_height=self.defaults.NAV_BAR_HEIGHT,
        )
        self.staleness = StalenessMonitor(
            stuck_threshold=self.defaults.STUCK_THRESHOLD,
            restart_threshold=self.defaults.RESTART_THRESHOLD,
            plateau_seconds=self.defaults.PLATEAU_SECONDS,
            clock=self.clock,
        )
        self.recovery = StuckRecoveryStrategy()

        self.state: Optional[ExplorationState] = None
        self.coverage: Optional[CoverageTracker] = None
        self.adaptive: Optional[AdaptiveStrategySelector] = None
        self.current_screen: Optional[ExploredScreen] = None

        self._stop_requested = False
        self._pause_requested = False
        self._veto_requested = False
        self._restoring = False
        self._run_started = 0.0
        self._capture_failures = 0
        self._actuator_failures = 0
        self._relaunches = 0
        self._verification_passes = 0

    # =========================================================================
    # Run control
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return not self.state_machine.can_start()

    async def start(
        self, package_name: str, config: Optional[ExplorationConfig] = None
    ) -> ExplorationResult:
        """
        Explore an app until its goal is met, a budget runs out or stop() is called.

        Runs up to config.max_passes passes back to back, stopping early once
        the coverage target is reached when stop_at_target_coverage is set.

        Args:
            package_name: Target app
            config: Run options (ExplorationConfig() defaults)

        Returns:
            ExplorationResult of the last pass

        Raises:
            InvalidStateTransitionError: A run is already active
        """
        if not self.state_machine.can_start():
            raise InvalidStateTransitionError("start", self.state_machine.state.value)

        config = config or ExplorationConfig()
        self._ensure_policy(package_name, config)
        self.state = ExplorationState(package_name=package_name, config=config)
        self.state.dangerous_patterns.update(self.policy.dangerous_patterns)
        self.coverage = CoverageTracker(self.state)
        self.queue_manager.reset()
        self.adaptive = self._create_adaptive(config)

        logger.info(
            f"[AppExplorer] Starting exploration of {package_name} "
            f"(mode={config.mode.value}, strategy={config.strategy.value}, "
            f"goal={config.goal.value})"
        )
        result = await self._run()
        while self._wants_another_pass(result):
            result = await self.start_another_pass()
        return result

    async def start_another_pass(self) -> ExplorationResult:
        """
        Explore the same app again.

        The navigation graph, known screens, learned policy and dangerous
        patterns are kept; visited elements and the frontier start empty.

        Raises:
            InvalidStateTransitionError: No finished run to continue, or a run is active
        """
        if self.state is None:
            raise InvalidStateTransitionError("start another pass", "no previous run")
        if not self.state_machine.can_start():
            raise InvalidStateTransitionError(
                "start another pass", self.state_machine.state.value
            )

        state = self.state
        state.pass_number += 1
        state.visited_elements.clear()
        state.frontier.clear()
        state.element_retry_count.clear()
        state.screen_reach_failures.clear()
        state.unreachable_screens.clear()
        state.visited_navigation_tabs.clear()
        state.end_time = None
        state.error_message = None
        for screen in state.explored_screens.values():
            for element in screen.clickable_elements:
                element.explored = False
            for container in screen.scrollable_containers:
                container.fully_scrolled = False
                container.scroll_count = 0
        self.queue_manager.reset()

        logger.info(
            f"[AppExplorer] Starting pass {state.pass_number} of {state.package_name} "
            f"({len(state.explored_screens)} known screens, "
            f"{len(state.dangerous_patterns)} dangerous patterns)"
        )
        return await self._run()

    def stop(self):
        """Finish after the current action; partial results are returned"""
        logger.info("[AppExplorer] Stop requested")
        self._stop_requested = True

    def pause(self):
        logger.info("[AppExplorer] Pause requested")
        self._pause_requested = True

    def resume(self):
        logger.info("[AppExplorer] Resume requested")
        self._pause_requested = False

    def veto(self):
        """Cancel the announced action (only honoured inside the veto window)"""
        self._veto_requested = True

    def record_human_feedback(
        self, screen_id: str, element_id: str, signal: int
    ) -> Optional[int]:
        """
        Feed a human demonstration (+1) or correction (-1) into the policy.

        Returns:
            The accumulated feedback value, or None if the element is unknown
        """
        screen = self.state.get_screen(screen_id) if self.state else None
        element = screen.get_element(element_id) if screen else None
        if element is None:
            logger.warning(
                f"[AppExplorer] Feedback for unknown element {element_id} on {screen_id[:8]}"
            )
            return None
        return self.policy.record_human_feedback(
            self.policy.compute_screen_hash(screen),
            self.policy.get_action_key(element, screen.screen_height),
            signal,
        )

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    def _ensure_policy(self, package_name: str, config: ExplorationConfig):
        if self.policy is None or (
            self._owns_policy and self.policy.package_name != package_name
        ):
            self.policy = ExplorationQLearning(
                store=self.policy_store,
                package_name=package_name,
                screen_height=config.screen_height,
                seed=self.seed,
            )
        elif self.policy.package_name is None:
            self.policy.package_name = package_name
        self.queue_manager.policy = self.policy

    def _create_adaptive(self, config: ExplorationConfig) -> Optional[AdaptiveStrategySelector]:
        if config.strategy != ExplorationStrategy.ADAPTIVE:
            return None
        initial = None
        stored = self.policy.get_best_strategy()
        if stored:
            try:
                initial = ExplorationStrategy(stored)
                logger.info(f"[AppExplorer] Resuming with best known strategy {stored}")
            except ValueError:
                logger.debug(f"[AppExplorer] Ignoring unknown stored strategy {stored}")
        return AdaptiveStrategySelector(initial=initial)

    def _wants_another_pass(self, result: ExplorationResult) -> bool:
        config = self.state.config
        if result.status != ExplorationStatus.COMPLETED or self._stop_requested:
            return False
        if self.state.pass_number >= config.max_passes:
            return False
        if config.stop_at_target_coverage and result.coverage.is_complete(config.target_coverage):
            logger.info("[AppExplorer] Coverage target reached, skipping further passes")
            return False
        return True

    async def _run(self) -> ExplorationResult:
        state = self.state
        self._stop_requested = False
        self._pause_requested = False
        self._capture_failures = 0
        self._actuator_failures = 0
        self._relaunches = 0
        self._verification_passes = 0
        self._run_started = self.clock.monotonic()
        self.staleness.reset()
        self.recovery.reset()
        self.current_screen = None

        self.state_machine.process_event(ExplorerEvent.START_REQUESTED)
        state.status = ExplorationStatus.IN_PROGRESS
        try:
            await self._initialize()
            self.state_machine.process_event(ExplorerEvent.INITIALIZATION_COMPLETE)
            self._publish_progress("Exploration started")
            if state.config.mode == ExplorationMode.MANUAL:
                event = await self._manual_loop()
            else:
                event = await self._explore_loop()
            state.status = ExplorationStatus.COMPLETED
            self._complete(event)
        except ExplorationCancelled as e:
            logger.info(f"[AppExplorer] Exploration stopped: {e.message}")
            state.status = ExplorationStatus.STOPPED
            self._complete(ExplorerEvent.STOP_REQUESTED)
        except (CollaboratorUnavailableError, RelaunchLimitExceeded) as e:
            logger.error(f"[AppExplorer] Exploration failed: {e.message}")
            state.status = ExplorationStatus.ERROR
            state.error_message = e.message
            self._complete(ExplorerEvent.FATAL_ERROR)
        except Exception as e:
            logger.error(f"[AppExplorer] Unexpected error during exploration: {e}", exc_info=True)
            state.status = ExplorationStatus.ERROR
            state.error_message = f"{type(e).__name__}: {e}"
            self._complete(ExplorerEvent.FATAL_ERROR)

        restored = 0
        if (
            state.config.non_destructive
            and state.changed_toggles
            and state.status != ExplorationStatus.ERROR
        ):
            restored = await self._restore_toggles()
        return self._finish(restored)

    def _complete(self, event: ExplorerEvent):
        """Drive the machine through COMPLETING to COMPLETED"""
        machine = self.state_machine
        finished = (ExplorerState.COMPLETING, ExplorerState.COMPLETED, ExplorerState.IDLE)
        if machine.state not in finished:
            machine.process_event(event)
        if machine.state not in finished:
            machine.process_event(ExplorerEvent.STOP_REQUESTED)
        if machine.state == ExplorerState.COMPLETING:
            machine.process_event(event)

    async def _initialize(self):
        state = self.state
        launched = await self._gesture(
            "launch_app", state.package_name, state.pass_number > 1
        )
        observation = Observation()
        if launched:
            observation = self._land(await self._observe(state.config.transition_wait_ms))
        if observation.screen is None:
            observation = await self._return_to_app("launch did not reach the app", True)

        home = observation.screen
        graph = state.navigation_graph
        if state.pass_number == 1:
            graph.set_home_screen(home.screen_id)
            state.screen_depths[home.screen_id] = 0
        else:
            for screen in state.explored_screens.values():
                self._queue_screen(screen)
        self._relaunches = 0
        logger.info(
            f"[AppExplorer] Initialized on {home.activity} "
            f"({len(state.frontier)} targets queued)"
        )

    def _finish(self, restored: int = 0) -> ExplorationResult:
        state = self.state
        state.end_time = time.time()
        metrics = self.coverage.compute()

        if self.adaptive is not None:
            best = self.adaptive.best_strategy()
            if best is not None:
                self.policy.record_best_strategy(best.strategy.value, best.discovery_rate)
        self.policy.prune()
        self._notify("on_training_log", self.policy.exploration_log_payload())
        self.policy.clear_exploration_log()

        result = ExplorationResult(
            package_name=state.package_name,
            status=state.status,
            pass_number=state.pass_number,
            screens_explored=state.screens_explored,
            elements_explored=state.elements_explored,
            actions_taken=state.actions_taken,
            duration_ms=int((self.clock.monotonic() - self._run_started) * 1000),
            coverage=metrics,
            issues=list(state.issues),
            screens={k: v.model_copy(deep=True) for k, v in state.explored_screens.items()},
            navigation=state.navigation_graph.get_stats(),
            state_machine=self.state_machine.get_statistics(),
            recovery=self.recovery.get_statistics(),
            policy=asdict(self.policy.get_stats()),
            strategy_performance=self.adaptive.summary() if self.adaptive else {},
            restored_toggles=restored,
            error_message=state.error_message,
        )
        logger.info(f"[AppExplorer] {result.summary()}")
        self._publish_progress(result.summary())
        return result

    # =========================================================================
    # Suspension points
    # =========================================================================

    def _checkpoint(self):
        if self._stop_requested and not self._restoring:
            raise ExplorationCancelled()

    async def _suspend(self, seconds: float):
        await self.clock.sleep(seconds)
        self._checkpoint()

    async def _wait_while_paused(self):
        if not self._pause_requested:
            return
        self.state_machine.process_event(ExplorerEvent.PAUSE_REQUESTED)
        self.state.status = ExplorationStatus.PAUSED
        self._publish_progress("Paused")
        while self._pause_requested:
            await self._suspend(self.defaults.STABILIZATION_POLL_INTERVAL_MS / 1000)
        self.state_machine.process_event(ExplorerEvent.RESUME_REQUESTED)
        self.state.status = ExplorationStatus.IN_PROGRESS
        logger.info("[AppExplorer] Resumed")

    # =========================================================================
    # Collaborators
    # =========================================================================

    def _notify(self, method: str, *args):
        """Fire-and-forget call on the status sink"""
        if self.sink is None:
            return
        handler = getattr(self.sink, method, None)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as e:
            logger.warning(f"[AppExplorer] Status sink {method} failed: {e}")

    def _on_state_changed(self, old: ExplorerState, new: ExplorerState, event: ExplorerEvent):
        self._notify("on_state_change", old.value, new.value, event.value)

    def _issue(
        self,
        screen_id: str,
        issue_type: IssueType,
        description: str,
        element: Optional[ClickableElement] = None,
    ) -> ExplorationIssue:
        issue = self.state.add_issue(screen_id, issue_type, description, element)
        self._notify("on_issue", issue)
        return issue

    async def _capture(self) -> Optional[ExploredScreen]:
        """
        One snapshot with bounded retries.

        Returns None when every attempt failed; too many such failures in a
        row mean the provider is gone.

        Raises:
            CollaboratorUnavailableError: Consecutive failure limit reached
        """
        retries = self.defaults.CAPTURE_RETRIES
        for attempt in range(1, retries + 1):
            try:
                screen = await self.provider.capture_current_screen()
            except ScreenCaptureError as e:
                logger.debug(
                    f"[AppExplorer] Capture attempt {attempt}/{retries} failed: {e.message}"
                )
                if not e.transient:
                    break
                if attempt < retries:
                    await self._suspend(self.defaults.CAPTURE_BACKOFF_SECONDS * attempt)
                continue
            self._capture_failures = 0
            return screen

        self._capture_failures += 1
        logger.warning(
            f"[AppExplorer] Screen capture failed ({self._capture_failures} in a row)"
        )
        if self._capture_failures >= self.defaults.MAX_CONSECUTIVE_CAPTURE_FAILURES:
            raise CollaboratorUnavailableError("screen provider", self._capture_failures)
        return None

    async def _observe(self, settle_ms: int = 0) -> Optional[ExploredScreen]:
        """Wait for the UI to stop changing and return the settled snapshot"""
        if settle_ms:
            await self._suspend(settle_ms / 1000)
        result = await poll_until_stable(
            self._capture,
            screen_signature,
            self.clock,
            timeout_s=self.state.config.stabilization_timeout_ms / 1000,
            interval_s=self.defaults.STABILIZATION_POLL_INTERVAL_MS / 1000,
            required_matches=self.defaults.STABILIZATION_REQUIRED_MATCHES,
            checkpoint=self._checkpoint,
        )
        if not result.stable and result.value is not None:
            logger.debug(
                f"[AppExplorer] UI did not settle after {result.samples} samples, "
                f"using last snapshot"
            )
        return result.value

    async def _gesture(self, name: str, *args) -> bool:
        """
        Dispatch an actuator call with bounded retries.

        Raises:
            CollaboratorUnavailableError: Consecutive failure limit reached
        """
        retries = self.defaults.ACTUATOR_RETRIES
        for attempt in range(1, retries + 1):
            try:
                if await getattr(self.actuator, name)(*args):
                    self._actuator_failures = 0
                    return True
                logger.debug(f"[AppExplorer] {name}{args} reported failure ({attempt}/{retries})")
            except ActuatorError as e:
                logger.debug(f"[AppExplorer] {name}{args} raised: {e.message}")
            if attempt < retries:
                await self._suspend(self.defaults.CAPTURE_BACKOFF_SECONDS)

        self._actuator_failures += 1
        logger.warning(f"[AppExplorer] {name} failed after {retries} attempts")
        if self._actuator_failures >= self.defaults.MAX_CONSECUTIVE_ACTUATOR_FAILURES:
            raise CollaboratorUnavailableError("actuator", self._actuator_failures)
        return False

    async def _return_to_app(self, reason: str, force_restart: bool = False) -> Observation:
        """
        Bring the target app back to the foreground.

        Raises:
            RelaunchLimitExceeded: More than max_launch_retries relaunches in a row
        """
        state = self.state
        limit = state.config.max_launch_retries
        while True:
            self._relaunches += 1
            if self._relaunches > limit:
                raise RelaunchLimitExceeded(state.package_name, self._relaunches - 1)
            logger.info(
                f"[AppExplorer] Relaunching {state.package_name} "
                f"({reason}, {self._relaunches}/{limit})"
            )
            force = force_restart or self._relaunches > 1
            if await self._gesture("launch_app", state.package_name, force):
                observation = self._land(await self._observe(state.config.transition_wait_ms))
                if observation.screen is not None:
                    return observation
            force_restart = True

    # =========================================================================
    # Observations
    # =========================================================================

    def _land(
        self, observed: Optional[ExploredScreen], origin: Optional[ExploredScreen] = None
    ) -> Observation:
        """Fold a snapshot into the run state and make it the current screen"""
        if observed is None:
            return Observation()

        state = self.state
        if observed.package_name != state.package_name:
            crashed = looks_like_crash(observed)
            logger.warning(
                f"[AppExplorer] Left {state.package_name}: now in "
                f"{observed.package_name} ({observed.activity})"
            )
            self.current_screen = None
            return Observation(left_app=True, crashed=crashed)

        stored, is_new, added = state.record_screen(observed)
        self.current_screen = stored
        graph = state.navigation_graph

        if stored.screen_id not in state.screen_depths:
            if origin is not None and origin.screen_id in state.screen_depths:
                state.screen_depths[stored.screen_id] = state.screen_depths[origin.screen_id] + 1
            else:
                state.screen_depths[stored.screen_id] = graph.depth_of(stored.screen_id)

        blocker = graph.is_blocker_screen(stored.screen_id)
        if is_new:
            logger.info(
                f"[AppExplorer] New screen {stored.activity} ({stored.screen_id[:8]}, "
                f"depth {state.screen_depths[stored.screen_id]}, "
                f"{len(stored.clickable_elements)} clickables)"
            )
            if not blocker and self.queue_manager.is_login_screen(stored):
                graph.mark_as_blocker(stored.screen_id)
                blocker = True

        if (is_new or added) and not blocker:
            self._queue_screen(stored)
        return Observation(screen=stored, is_new=is_new, added=added, blocker=blocker)

    def _queue_screen(self, screen: ExploredScreen) -> int:
        state, config = self.state, self.state.config
        if config.mode == ExplorationMode.MANUAL:
            return 0
        if state.navigation_graph.is_blocker_screen(screen.screen_id):
            return 0
        if screen.screen_id in state.unreachable_screens:
            return 0
        depth = state.screen_depths.get(screen.screen_id, 0)
        if depth > config.max_depth:
            logger.debug(
                f"[AppExplorer] {screen.activity} at depth {depth} exceeds "
                f"max_depth {config.max_depth}, not queued"
            )
            return 0
        result = self.queue_manager.queue_screen(
            screen, state.frontier, state, config, state.visited_navigation_tabs
        )
        return result.total_queued

    async def _rescan(self) -> Observation:
        observation = self._land(await self._observe())
        if observation.left_app or observation.screen is None:
            observation = await self._return_to_app("app not in the foreground")
        self._queue_screen(observation.screen)
        return observation

    def _record_transition(
        self, origin: ExploredScreen, element: ClickableElement, destination: ExploredScreen
    ):
        self.state.navigation_graph.record_transition(
            origin.screen_id, element.element_id, destination.screen_id, destination.activity
        )
        element.leads_to_screen = destination.screen_id
        if element.action_type == ClickableActionType.UNKNOWN:
            element.action_type = ClickableActionType.NAVIGATION
        if is_bottom_navigation(element, origin.screen_height):
            self.state.visited_navigation_tabs.add(navigation_tab_id(element))

    # =========================================================================
    # Main loop
    # =========================================================================

    async def _explore_loop(self) -> ExplorerEvent:
        while True:
            self._checkpoint()
            await self._wait_while_paused()

            event = self._termination_event()
            if event is not None:
                return event

            target = self._next_target()
            if target is None:
                if await self._verification_pass():
                    continue
                logger.info("[AppExplorer] Frontier exhausted")
                return ExplorerEvent.QUEUE_EXHAUSTED

            await self._execute_target(target)
            await self._check_staleness()
            self._publish_progress()
            await self._suspend(self.state.config.action_delay_ms / 1000)

    async def _manual_loop(self) -> ExplorerEvent:
        """A human drives; record every screen they reach"""
        interval = (
            max(self.state.config.action_delay_ms, self.defaults.STABILIZATION_POLL_INTERVAL_MS)
            / 1000
        )
        while True:
            self._checkpoint()
            await self._wait_while_paused()

            event = self._termination_event()
            if event is not None:
                return event

            observation = self._land(await self._observe())
            if observation.screen is not None and (observation.is_new or observation.added):
                self.staleness.record_progress(observation.screen.screen_id)
            self._publish_progress()
            await self._suspend(interval)

    def _termination_event(self) -> Optional[ExplorerEvent]:
        state, config = self.state, self.state.config
        elapsed_ms = (self.clock.monotonic() - self._run_started) * 1000

        if config.goal == ExplorationGoal.COMPLETE_COVERAGE:
            metrics = self.coverage.compute()
            if config.stop_at_target_coverage and metrics.is_complete(config.target_coverage):
                logger.info(f"[AppExplorer] Coverage target reached. {metrics.summary()}")
                return ExplorerEvent.COVERAGE_THRESHOLD_REACHED
            if elapsed_ms >= config.max_duration_for_coverage_ms:
                logger.info("[AppExplorer] Coverage time cap reached")
                return ExplorerEvent.MAX_ITERATIONS_REACHED
            return None

        if state.screens_explored >= config.max_screens:
            logger.info(f"[AppExplorer] Screen budget reached ({config.max_screens})")
            return ExplorerEvent.MAX_ITERATIONS_REACHED
        if state.elements_explored >= config.max_elements:
            logger.info(f"[AppExplorer] Element budget reached ({config.max_elements})")
            return ExplorerEvent.MAX_ITERATIONS_REACHED
        if elapsed_ms >= config.max_duration_ms:
            logger.info(f"[AppExplorer] Time budget reached ({config.max_duration_ms}ms)")
            return ExplorerEvent.MAX_ITERATIONS_REACHED
        return None

    def _active_strategy(self) -> ExplorationStrategy:
        if self.adaptive is not None:
            return self.adaptive.current
        return self.state.config.strategy

    def _next_target(self) -> Optional[ExplorationTarget]:
        state = self.state
        frontier = state.frontier
        while len(frontier):
            ctx = SelectionContext(
                current_screen_id=self.current_screen.screen_id if self.current_screen else None,
                graph=state.navigation_graph,
                screen_depths=state.screen_depths,
                skip_screens=state.unreachable_screens,
                screen_visits={sid: s.visit_count for sid, s in state.explored_screens.items()},
            )
            target = select_target(self._active_strategy(), frontier.entries(), ctx)
            if target is None:
                for screen_id in frontier.screens():
                    frontier.remove_screen(screen_id)
                return None
            target = self._refine_with_policy(target)
            frontier.take(target)
            if self._is_stale(target):
                logger.debug(f"[AppExplorer] Discarding stale target {target.key}")
                continue
            return target
        return None

    def _refine_with_policy(self, target: ExplorationTarget) -> ExplorationTarget:
        """Let the learned policy break ties among equally ranked taps on the current screen"""
        screen = self.current_screen
        if (
            screen is None
            or target.type != ExplorationTargetType.TAP_ELEMENT
            or target.screen_id != screen.screen_id
            or self._active_strategy() == ExplorationStrategy.SYSTEMATIC
        ):
            return target
        tied = {
            t.element_id: t
            for t in self.state.frontier.targets_for_screen(screen.screen_id)
            if t.type == ExplorationTargetType.TAP_ELEMENT
            and t.priority == target.priority
            and not self._is_stale(t)
        }
        if len(tied) < 2:
            return target
        candidates = [e for e in screen.clickable_elements if e.element_id in tied]
        choice = self.policy.select_element(screen, candidates)
        if choice is None:
            return target
        return tied[choice.element_id]

    def _is_stale(self, target: ExplorationTarget) -> bool:
        state = self.state
        if target.screen_id in state.unreachable_screens:
            return True
        if state.element_retry_count.get(target.key, 0) >= self.defaults.MAX_ELEMENT_RETRIES:
            return True
        screen = state.get_screen(target.screen_id)
        if target.type == ExplorationTargetType.TAP_ELEMENT:
            if state.is_element_visited(target.screen_id, target.element_id):
                return True
            element = screen.get_element(target.element_id) if screen else None
            if element is None or self.policy.is_dangerous(element, screen.screen_height):
                return True
            return self.policy.is_vetoed_action(
                self.policy.compute_screen_hash(screen),
                self.policy.get_action_key(element, screen.screen_height),
            )
        if target.type == ExplorationTargetType.SCROLL_CONTAINER:
            container = screen.get_container(target.scroll_container_id) if screen else None
            return container is None or container.fully_scrolled
        return False

    def _requeue(self, target: ExplorationTarget, reason: str) -> bool:
        """Put a target back with decayed priority until it hits the retry cap"""
        state = self.state
        retries = state.element_retry_count.get(target.key, 0) + 1
        state.element_retry_count[target.key] = retries
        if retries >= self.defaults.MAX_ELEMENT_RETRIES:
            element = (
                state.get_element(target.screen_id, target.element_id)
                if target.element_id
                else None
            )
            logger.warning(
                f"[AppExplorer] Giving up on {target.key} after {retries} attempts ({reason})"
            )
            self._issue(
                target.screen_id,
                IssueType.ELEMENT_STUCK,
                f"Gave up after {retries} attempts: {reason}",
                element,
            )
            return False
        state.frontier.push(target.decayed())
        return True

    # =========================================================================
    # Reaching screens
    # =========================================================================

    async def _ensure_on_screen(self, screen_id: str) -> bool:
        """
        Make screen_id the current screen.

        A screen that could not be reached MAX_SCREEN_REACH_FAILURES times is
        marked unreachable and its targets are dropped.
        """
        if self.current_screen is not None and self.current_screen.screen_id == screen_id:
            return True

        state = self.state
        if await self._navigate_to(screen_id):
            state.screen_reach_failures.pop(screen_id, None)
            return True

        failures = state.screen_reach_failures.get(screen_id, 0) + 1
        state.screen_reach_failures[screen_id] = failures
        logger.debug(f"[AppExplorer] Could not reach {screen_id[:8]} ({failures} failures)")
        if failures >= self.defaults.MAX_SCREEN_REACH_FAILURES:
            logger.warning(
                f"[AppExplorer] Screen {screen_id[:8]} unreachable after {failures} "
                f"attempts, abandoning branch"
            )
            state.mark_unreachable(screen_id, f"unreachable after {failures} attempts")
            self._notify("on_issue", state.issues[-1])
        return False

    async def _navigate_to(self, screen_id: str) -> bool:
        """Most reliable graph path, stepping back toward home when there is none, then bottom-nav probing"""
        graph = self.state.navigation_graph
        if self.current_screen is None:
            await self._rescan()

        for _ in range(MAX_BACKTRACK_STEPS + 1):
            current = self.current_screen
            if current.screen_id == screen_id:
                return True
            path = graph.find_optimal_path(current.screen_id, screen_id)
            if path is not None and path.steps:
                logger.debug(
                    f"[AppExplorer] Following {path.hop_count}-step path to {screen_id[:8]} "
                    f"(reliability {path.reliability:.2f})"
                )
                if await self._follow_path(path.steps, screen_id):
                    return True
                break
            if current.screen_id == graph.home_screen_id or not await self._step_back():
                break

        return await self._probe_bottom_navigation(screen_id)

    async def _follow_path(self, steps: List[NavigationStep], screen_id: str) -> bool:
        for step in steps:
            screen = self.current_screen
            if screen is None or screen.screen_id != step.screen_id:
                return False
            element = screen.get_element(step.element_id)
            if element is None:
                return False
            observation = await self._tap_and_observe(screen, element)
            if observation.screen is not None and observation.screen.screen_id == screen_id:
                return True
        return self.current_screen is not None and self.current_screen.screen_id == screen_id

    async def _step_back(self) -> bool:
        if not await self._gesture("press_back"):
            return False
        observation = self._land(await self._observe(self.state.config.transition_wait_ms))
        if observation.left_app or observation.screen is None:
            await self._return_to_app("back left the app")
        return True

    async def _probe_bottom_navigation(self, screen_id: str) -> bool:
        screen = self.current_screen
        if screen is None:
            return False
        graph = self.state.navigation_graph
        tabs = sorted(
            (e for e in screen.clickable_elements if is_bottom_navigation(e, screen.screen_height)),
            key=lambda e: (graph.get_destination(screen.screen_id, e.element_id) != screen_id, e.center_x),
        )
        for tab in tabs:
            current = self.current_screen
            element = current.get_element(tab.element_id) if current else None
            if element is None:
                continue
            logger.debug(f"[AppExplorer] Probing bottom navigation tab {element.label}")
            await self._tap_and_observe(current, element)
            landed = self.current_screen
            if landed is None:
                continue
            if landed.screen_id == screen_id:
                return True
            path = graph.find_optimal_path(landed.screen_id, screen_id)
            if path is not None and path.steps and await self._follow_path(path.steps, screen_id):
                return True
        return False

    async def _tap_and_observe(
        self, screen: ExploredScreen, element: ClickableElement
    ) -> Observation:
        """Navigation tap: records the transition but is not an exploration visit"""
        if not await self._gesture("tap", element.center_x, element.center_y):
            return Observation()
        self.state.actions_taken += 1
        observation = self._land(
            await self._observe(self.state.config.transition_wait_ms), origin=screen
        )
        if observation.screen is not None and observation.screen.screen_id != screen.screen_id:
            self._record_transition(screen, element, observation.screen)
        elif observation.left_app:
            await self._return_to_app("navigation tap left the app")
        return observation

    # =========================================================================
    # Executing targets
    # =========================================================================

    async def _execute_target(self, target: ExplorationTarget):
        if not await self._ensure_on_screen(target.screen_id):
            if target.screen_id not in self.state.unreachable_screens:
                self._requeue(target, "screen not reached")
            return

        if target.type == ExplorationTargetType.NAVIGATE_TO_SCREEN:
            await self._rescan()
        elif target.type == ExplorationTargetType.SCROLL_CONTAINER:
            await self._scroll_target(target)
        else:
            await self._tap_target(target)

    async def _tap_target(self, target: ExplorationTarget):
        state, config = self.state, self.state.config
        screen = self.current_screen
        element = screen.get_element(target.element_id)
        if element is None or state.is_element_visited(screen.screen_id, element.element_id):
            logger.debug(f"[AppExplorer] Target {target.key} is stale")
            return
        if self.policy.is_dangerous(element, screen.screen_height):
            logger.debug(f"[AppExplorer] Skipping dangerous pattern {element.label}")
            return

        screen_hash = self.policy.compute_screen_hash(screen)
        action_key = self.policy.get_action_key(element, screen.screen_height)
        if self.policy.is_vetoed_action(screen_hash, action_key):
            logger.info(f"[AppExplorer] Skipping vetoed action {element.label}")
            return
        if config.enable_veto and await self._veto_window(target, screen_hash, action_key):
            return

        first_visit = self.policy.is_first_visit(screen_hash, action_key)
        was_checked = element.checked
        if not await self._gesture("tap", element.center_x, element.center_y):
            self._requeue(target, "tap gesture failed")
            return

        state.mark_visited(screen.screen_id, element.element_id)
        element.explored = True
        state.actions_taken += 1
        self.state_machine.process_event(ExplorerEvent.ELEMENT_TAPPED)
        logger.debug(f"[AppExplorer] Tapped {element.label} on {screen.activity}")

        observation = self._land(await self._observe(config.transition_wait_ms), origin=screen)
        if observation.screen is None and not observation.left_app:
            self.current_screen = None
            self._issue(
                screen.screen_id,
                IssueType.CAPTURE_FAILED,
                f"No snapshot after tapping {element.label}",
                element,
            )
            return

        result = self._classify(screen, observation)
        self._learn(screen_hash, action_key, result, observation, first_visit)
        await self._apply_outcome(screen, element, was_checked, result, observation)

    async def _veto_window(self, target: ExplorationTarget, screen_hash: str, action_key: str) -> bool:
        """Announce the tap and give a human veto_window_ms to cancel it"""
        self._veto_requested = False
        self._notify("on_action_intent", target)
        await self._suspend(self.state.config.veto_window_ms / 1000)
        if not self._veto_requested:
            return False
        self._veto_requested = False
        self.policy.record_human_feedback(screen_hash, action_key, -1)
        logger.info(f"[AppExplorer] Action {target.key} vetoed")
        return True

    def _classify(self, origin: ExploredScreen, observation: Observation) -> TapResult:
        if observation.left_app:
            return TapResult.CRASH if observation.crashed else TapResult.CLOSED_APP
        landed = observation.screen
        if landed.screen_id == origin.screen_id:
            return TapResult.NEW_ELEMENTS if observation.added else TapResult.NO_CHANGE
        if observation.is_new:
            return TapResult.NEW_SCREEN
        return TapResult.NAVIGATE_BACK

    def _learn(
        self,
        screen_hash: str,
        action_key: str,
        result: TapResult,
        observation: Observation,
        first_visit: bool,
    ):
        landed = observation.screen
        next_hash = self.policy.compute_screen_hash(landed) if landed is not None else None
        depth = self.state.screen_depths.get(landed.screen_id, 0) if landed is not None else 0
        reward = self.policy.calculate_reward(result, next_hash, depth, first_visit)
        self.policy.update_q(screen_hash, action_key, reward, next_hash)

    async def _apply_outcome(
        self,
        origin: ExploredScreen,
        element: ClickableElement,
        was_checked: bool,
        result: TapResult,
        observation: Observation,
    ):
        state = self.state
        left_app = result in (TapResult.CLOSED_APP, TapResult.CRASH)

        if left_app:
            element.action_type = ClickableActionType.CLOSES_APP
            pattern = self.policy.mark_dangerous(element, origin.screen_height)
            state.dangerous_patterns.add(pattern)
            verb = "crashed" if result == TapResult.CRASH else "closed"
            self._issue(
                origin.screen_id,
                IssueType.DANGEROUS_ELEMENT,
                f"Tapping {element.label} {verb} the app",
                element,
            )
        else:
            self._relaunches = 0
            landed = observation.screen
            if landed.screen_id != origin.screen_id:
                self._record_transition(origin, element, landed)
            else:
                self._record_toggle(origin, element, was_checked)
                if result == TapResult.NO_CHANGE and element.action_type == ClickableActionType.UNKNOWN:
                    element.action_type = ClickableActionType.NO_EFFECT

        discovered = result in (TapResult.NEW_SCREEN, TapResult.NEW_ELEMENTS) or bool(
            observation.added
        )
        self._account_progress(origin.screen_id, observation, discovered)

        if left_app:
            await self._return_to_app(f"{element.label} left the app")
        elif observation.blocker:
            await self._escape_blocker(observation.screen)
        elif result == TapResult.NEW_SCREEN and state.config.backtrack_after_new_screen:
            await self._backtrack(origin)

    def _record_toggle(self, screen: ExploredScreen, element: ClickableElement, was_checked: bool):
        if not element.checkable or element.checked == was_checked:
            return
        element.action_type = ClickableActionType.TOGGLE
        toggles = self.state.changed_toggles
        existing = next(
            (
                t
                for t in toggles
                if t.screen_id == screen.screen_id and t.element_id == element.element_id
            ),
            None,
        )
        if existing is None:
            toggles.append(
                ChangedToggle(
                    screen_id=screen.screen_id,
                    element_id=element.element_id,
                    resource_id=element.resource_id,
                    text=element.text,
                    center_x=element.center_x,
                    center_y=element.center_y,
                    original_checked=was_checked,
                )
            )
            logger.debug(f"[AppExplorer] Toggle {element.label} changed, will restore")
        elif existing.original_checked == element.checked:
            toggles.remove(existing)

    def _account_progress(self, screen_id: str, observation: Observation, discovered: bool):
        if discovered:
            self.staleness.record_progress(observation.screen.screen_id)
            event = (
                ExplorerEvent.NEW_SCREEN_DISCOVERED
                if observation.is_new
                else ExplorerEvent.NEW_ELEMENTS_FOUND
            )
            self.state_machine.process_event(event)
        else:
            self.staleness.record_no_progress(screen_id)
            self.state_machine.process_event(ExplorerEvent.NO_PROGRESS_DETECTED)

        if self.adaptive is not None:
            switched = self.adaptive.record(discovered)
            if switched is not None:
                self._publish_progress(f"Strategy switched to {switched.value}")

    async def _backtrack(self, origin: ExploredScreen):
        if not await self._gesture("press_back"):
            return
        observation = self._land(await self._observe(self.state.config.transition_wait_ms))
        if observation.left_app or observation.screen is None:
            self._issue(origin.screen_id, IssueType.BACK_FAILED, "Back left the app while backtracking")
            await self._return_to_app("backtrack left the app")
        elif observation.screen.screen_id != origin.screen_id:
            logger.debug(
                f"[AppExplorer] Backtrack landed on {observation.screen.activity} "
                f"instead of {origin.activity}"
            )

    async def _escape_blocker(self, screen: ExploredScreen):
        logger.warning(f"[AppExplorer] Blocker screen {screen.activity}, escaping with back")
        self._issue(screen.screen_id, IssueType.BLOCKER_SCREEN, f"Blocked by {screen.activity}")
        if await self._gesture("press_back"):
            observation = self._land(await self._observe(self.state.config.transition_wait_ms))
            if observation.screen is not None and not observation.blocker:
                return
            if observation.left_app:
                await self._return_to_app("back from blocker left the app")
                return
        await self._return_to_app("still on a blocker screen", force_restart=True)

    async def _scroll_target(self, target: ExplorationTarget):
        state, config = self.state, self.state.config
        screen = self.current_screen
        container = screen.get_container(target.scroll_container_id)
        if container is None or container.fully_scrolled:
            return

        direction = "left" if container.scroll_direction == ScrollDirection.HORIZONTAL else "down"
        bounds = container.bounds
        if not await self._gesture("scroll", bounds.center_x, bounds.center_y, direction):
            self._issue(
                screen.screen_id,
                IssueType.SCROLL_FAILED,
                f"Scroll of {container.resource_id or container.class_name} failed",
            )
            self._requeue(target, "scroll gesture failed")
            return

        container.scroll_count += 1
        state.actions_taken += 1
        observation = self._land(await self._observe(config.scroll_delay_ms), origin=screen)
        if observation.left_app:
            self._issue(screen.screen_id, IssueType.APP_LEFT, "Scrolling left the app")
            await self._return_to_app("scroll left the app")
            return
        if observation.screen is None:
            return
        if observation.screen.screen_id != screen.screen_id:
            self._account_progress(screen.screen_id, observation, observation.is_new)
            return

        if observation.added:
            container.discovered_elements.extend(observation.added)
            self._account_progress(screen.screen_id, observation, True)
        if not observation.added or container.scroll_count >= config.max_scrolls_per_container:
            container.fully_scrolled = True
            logger.debug(
                f"[AppExplorer] Container {container.element_id} fully scrolled "
                f"after {container.scroll_count} scrolls"
            )
        else:
            state.frontier.push(target)

    # =========================================================================
    # Stagnation
    # =========================================================================

    async def _check_staleness(self):
        if self.state_machine.state != ExplorerState.EXPLORING:
            return
        signal = self.staleness.check()
        if signal is None:
            return
        logger.warning(
            f"[AppExplorer] No progress ({signal.value}): streak {self.staleness.streak}, "
            f"{self.staleness.actions_since_discovery} actions since last discovery"
        )
        if signal == StalenessSignal.RESTART_THRESHOLD:
            await self._forced_restart()
        else:
            await self._run_recovery(signal)

    async def _forced_restart(self):
        self.state_machine.process_event(ExplorerEvent.STUCK_THRESHOLD_REACHED)
        self.state.recovery_attempts += 1
        success = await self._restart_app(StalenessSignal.RESTART_THRESHOLD.value)
        self.staleness.restarted()
        self.state_machine.process_event(
            ExplorerEvent.RECOVERY_SUCCEEDED if success else ExplorerEvent.BRANCH_ABANDONED
        )

    async def _restart_app(self, reason: str) -> bool:
        observation = await self._return_to_app(reason, force_restart=True)
        success = observation.screen is not None
        self.policy.record_restart_recovery(success, reason)
        return success

    async def _run_recovery(self, signal: StalenessSignal):
        """Climb the recovery ladder until something works or the branch is abandoned"""
        state = self.state
        origin_id = self.current_screen.screen_id if self.current_screen else None
        self.state_machine.process_event(ExplorerEvent.STUCK_THRESHOLD_REACHED)
        state.recovery_attempts += 1
        self.recovery.reset()

        while True:
            self._checkpoint()
            ctx = RecoveryContext(
                package_name=state.package_name,
                screen=self.current_screen,
                visited_nav_tabs=state.visited_navigation_tabs,
                help_timeout_s=self.defaults.HUMAN_HELP_TIMEOUT_SECONDS,
            )
            plan = self.recovery.next_action(ctx)
            if plan is None:
                break
            success = await self._execute_recovery(plan, origin_id)
            self.recovery.report_result(success)
            if success:
                event = (
                    ExplorerEvent.USER_HELPED
                    if plan.level == RecoveryLevel.REQUEST_USER_HELP
                    else ExplorerEvent.RECOVERY_SUCCEEDED
                )
                self.state_machine.process_event(event)
                self._after_recovery(signal)
                return
            self.state_machine.process_event(ExplorerEvent.RECOVERY_FAILED)

        logger.warning(
            f"[AppExplorer] Recovery exhausted on {(origin_id or 'unknown')[:8]}, abandoning branch"
        )
        if origin_id is not None:
            state.mark_unreachable(origin_id, "stuck recovery exhausted")
            self._notify("on_issue", state.issues[-1])
        self._issue(
            origin_id or "",
            IssueType.RECOVERY_FAILED,
            f"All recovery levels failed ({signal.value})",
        )
        self.state_machine.process_event(ExplorerEvent.BRANCH_ABANDONED)
        self._after_recovery(signal)

    def _after_recovery(self, signal: StalenessSignal):
        if signal == StalenessSignal.COVERAGE_PLATEAU:
            self.staleness.restarted()
        else:
            self.staleness.clear_streak()

    async def _execute_recovery(self, plan: RecoveryPlan, origin_id: Optional[str]) -> bool:
        """Perform one ladder step and judge it by what the screen shows afterwards"""
        action = plan.action
        config = self.state.config

        if action.type == RecoveryActionType.RESTART_APP:
            observation = await self._return_to_app("stuck recovery", force_restart=True)
            success = observation.screen.screen_id != origin_id or bool(observation.added)
            self.policy.record_restart_recovery(success, f"ladder:{plan.level.value}")
            return success
        if action.type == RecoveryActionType.REQUEST_USER_HELP:
            return await self._request_help(action.message, action.timeout_s, origin_id)

        if action.type == RecoveryActionType.SCROLL:
            ok = await self._gesture("scroll", action.x, action.y, action.direction)
            settle_ms = config.scroll_delay_ms
        elif action.type == RecoveryActionType.PRESS_BACK:
            ok = await self._gesture("press_back")
            settle_ms = config.transition_wait_ms
        else:
            ok = await self._gesture("tap", action.x, action.y)
            settle_ms = config.transition_wait_ms
        if not ok:
            return False

        self.state.actions_taken += 1
        origin = self.current_screen
        observation = self._land(await self._observe(settle_ms), origin=origin)

        if action.type == RecoveryActionType.TAP and action.element_id and origin is not None:
            element = origin.get_element(action.element_id)
            if element is not None:
                self.state.visited_navigation_tabs.add(navigation_tab_id(element))
                if observation.screen is not None and observation.screen.screen_id != origin.screen_id:
                    self._record_transition(origin, element, observation.screen)

        if observation.left_app:
            await self._return_to_app(f"recovery {plan.level.value} left the app")
            return False
        if observation.screen is None:
            return False
        if observation.blocker:
            await self._escape_blocker(observation.screen)
            return False
        return observation.screen.screen_id != origin_id or bool(observation.added)

    async def _request_help(self, message: str, timeout_s: float, origin_id: Optional[str]) -> bool:
        """Ask a human and watch for them to move the app somewhere new"""
        self._notify("request_help", message, timeout_s)
        logger.info(f"[AppExplorer] Waiting up to {timeout_s:.0f}s for help")
        deadline = self.clock.monotonic() + timeout_s
        interval = max(self.defaults.STABILIZATION_POLL_INTERVAL_MS / 1000, 1.0)
        helped = False
        while self.clock.monotonic() < deadline:
            await self._suspend(interval)
            observation = self._land(await self._capture())
            if observation.screen is not None and (
                observation.screen.screen_id != origin_id or observation.added
            ):
                helped = True
                break
        if self.current_screen is None:
            await self._return_to_app("help window ended outside the app")
        return helped

    # =========================================================================
    # Completion
    # =========================================================================

    def _has_live_targets(self) -> bool:
        return any(not self._is_stale(t) for t in self.state.frontier)

    async def _verification_pass(self) -> bool:
        """
        Last look before declaring completion.

        1. Re-scan the current screen
        2. Re-queue known screens that still have unvisited elements
        3. Head back to the home screen for one more look

        Returns:
            True if there is live work in the frontier again
        """
        if self._verification_passes >= self.defaults.MAX_VERIFICATION_PASSES:
            return False
        self._verification_passes += 1
        state = self.state
        logger.info(
            f"[AppExplorer] Verification pass {self._verification_passes}/"
            f"{self.defaults.MAX_VERIFICATION_PASSES}"
        )

        await self._rescan()
        graph = state.navigation_graph
        for screen_id, screen in state.explored_screens.items():
            if screen_id in state.unreachable_screens or graph.is_blocker_screen(screen_id):
                continue
            if state.unvisited_elements(screen_id):
                self._queue_screen(screen)
        if self._has_live_targets():
            logger.info(f"[AppExplorer] Verification re-queued {len(state.frontier)} targets")
            return True

        home = graph.home_screen_id
        current = self.current_screen
        if (
            home is not None
            and current is not None
            and current.screen_id != home
            and home not in state.unreachable_screens
        ):
            state.frontier.push(
                ExplorationTarget(
                    type=ExplorationTargetType.NAVIGATE_TO_SCREEN, screen_id=home, priority=0
                )
            )
            return True
        return False

    async def _restore_toggles(self) -> int:
        """Put back every checkable element an exploration tap flipped"""
        state = self.state
        restored = 0
        self._restoring = True
        try:
            for toggle in reversed(list(state.changed_toggles)):
                if not await self._ensure_on_screen(toggle.screen_id):
                    logger.warning(f"[AppExplorer] Cannot reach toggle {toggle.text} to restore it")
                    continue
                element = self.current_screen.get_element(toggle.element_id)
                if element is None or element.checked == toggle.original_checked:
                    state.changed_toggles.remove(toggle)
                    continue
                if not await self._gesture("tap", element.center_x, element.center_y):
                    continue
                self._land(await self._observe(state.config.action_delay_ms))
                if element.checked == toggle.original_checked:
                    restored += 1
                    state.changed_toggles.remove(toggle)
        except ExplorerError as e:
            logger.warning(f"[AppExplorer] Toggle restore aborted: {e.message}")
        finally:
            self._restoring = False
        logger.info(f"[AppExplorer] Restored {restored} toggles")
        return restored

    # =========================================================================
    # Progress
    # =========================================================================

    def _publish_progress(self, message: Optional[str] = None):
        if self.sink is None:
            return
        state = self.state
        metrics = self.coverage.compute()
        progress = ExplorationProgress(
            package_name=state.package_name,
            status=state.status,
            state=self.state_machine.state.value,
            screens_explored=state.screens_explored,
            elements_explored=state.elements_explored,
            queue_size=len(state.frontier),
            coverage=metrics.overall_coverage,
            pass_number=state.pass_number,
            strategy=self._active_strategy().value,
            message=message,
        )
        self._notify("on_progress", progress)
