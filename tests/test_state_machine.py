"""Tests for the explorer lifecycle state machine."""

import pytest

from core.exploration.state_machine import (
    ExplorationStateMachine,
    ExplorerEvent as E,
    ExplorerState as S,
)


@pytest.fixture
def changes():
    return []


@pytest.fixture
def machine(changes):
    return ExplorationStateMachine(on_state_changed=lambda old, new, event: changes.append((old, new, event)))


def exploring(machine):
    machine.process_event(E.START_REQUESTED)
    machine.process_event(E.INITIALIZATION_COMPLETE)
    return machine


class TestTransitions:
    def test_happy_path(self, machine, changes):
        exploring(machine)
        assert machine.process_event(E.QUEUE_EXHAUSTED) == S.COMPLETING
        assert machine.process_event(E.QUEUE_EXHAUSTED) == S.COMPLETED
        assert [new for _, new, _ in changes] == [
            S.INITIALIZING, S.EXPLORING, S.COMPLETING, S.COMPLETED,
        ]

    def test_unknown_event_is_a_no_op(self, machine, changes):
        assert machine.process_event(E.RESUME_REQUESTED) == S.IDLE
        assert changes == []

    @pytest.mark.parametrize(
        "event",
        [
            E.STOP_REQUESTED,
            E.MAX_ITERATIONS_REACHED,
            E.COVERAGE_THRESHOLD_REACHED,
            E.QUEUE_EXHAUSTED,
            E.FATAL_ERROR,
        ],
    )
    def test_completion_events_while_exploring(self, machine, event):
        exploring(machine)
        assert machine.process_event(event) == S.COMPLETING

    def test_completing_finishes_on_any_event(self, machine):
        exploring(machine)
        machine.process_event(E.STOP_REQUESTED)
        assert machine.process_event(E.ELEMENT_TAPPED) == S.COMPLETED

    def test_stop_during_initialization_returns_to_idle(self, machine):
        machine.process_event(E.START_REQUESTED)
        assert machine.process_event(E.STOP_REQUESTED) == S.IDLE

    def test_pause_and_resume(self, machine):
        exploring(machine)
        assert machine.process_event(E.PAUSE_REQUESTED) == S.PAUSED
        assert not machine.is_active()
        assert machine.process_event(E.ELEMENT_TAPPED) == S.PAUSED
        assert machine.process_event(E.RESUME_REQUESTED) == S.EXPLORING

    def test_stop_while_paused(self, machine):
        exploring(machine)
        machine.process_event(E.PAUSE_REQUESTED)
        assert machine.process_event(E.STOP_REQUESTED) == S.COMPLETING

    @pytest.mark.parametrize(
        "event",
        [E.RECOVERY_SUCCEEDED, E.USER_HELPED, E.NEW_SCREEN_DISCOVERED, E.BRANCH_ABANDONED],
    )
    def test_ways_out_of_stuck(self, machine, event):
        exploring(machine)
        assert machine.process_event(E.STUCK_THRESHOLD_REACHED) == S.STUCK
        assert machine.process_event(event) == S.EXPLORING

    def test_stuck_can_pause_and_finish(self, machine):
        exploring(machine)
        machine.process_event(E.STUCK_THRESHOLD_REACHED)
        assert machine.process_event(E.RECOVERY_FAILED) == S.STUCK
        assert machine.process_event(E.QUEUE_EXHAUSTED) == S.COMPLETING

    def test_restart_after_completion(self, machine):
        exploring(machine)
        machine.process_event(E.ELEMENT_TAPPED)
        machine.process_event(E.FATAL_ERROR)
        machine.process_event(E.FATAL_ERROR)
        assert machine.can_start()
        assert machine.process_event(E.START_REQUESTED) == S.INITIALIZING
        assert machine.total_elements_tapped == 0


class TestCounters:
    def test_no_progress_counted_only_while_exploring(self, machine):
        machine.process_event(E.NO_PROGRESS_DETECTED)
        exploring(machine)
        machine.process_event(E.NO_PROGRESS_DETECTED)
        machine.process_event(E.NO_PROGRESS_DETECTED)
        assert machine.consecutive_no_progress == 2
        machine.process_event(E.NEW_ELEMENTS_FOUND)
        assert machine.consecutive_no_progress == 0

    def test_recovery_attempts(self, machine):
        exploring(machine)
        machine.process_event(E.NO_PROGRESS_DETECTED)
        machine.process_event(E.STUCK_THRESHOLD_REACHED)
        machine.process_event(E.RECOVERY_FAILED)
        machine.process_event(E.RECOVERY_FAILED)
        assert machine.recovery_attempts == 2
        machine.process_event(E.RECOVERY_SUCCEEDED)
        assert machine.consecutive_no_progress == 0

        machine.process_event(E.STUCK_THRESHOLD_REACHED)
        assert machine.recovery_attempts == 0

    def test_statistics(self, machine):
        exploring(machine)
        machine.process_event(E.ELEMENT_TAPPED)
        machine.process_event(E.NEW_SCREEN_DISCOVERED)
        stats = machine.get_statistics()
        assert stats.current_state == S.EXPLORING
        assert stats.total_elements_tapped == 1
        assert stats.total_screens_discovered == 1
        assert stats.transitions == 2

    def test_reset_is_silent(self, machine, changes):
        exploring(machine)
        changes.clear()
        machine.reset()
        assert machine.state == S.IDLE
        assert changes == []
        assert machine.can_start()
        assert not machine.is_active()
