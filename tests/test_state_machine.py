"""Unit tests for RunStateMachine."""

import pytest

from delfos_backtest.core.state_machine import VALID_TRANSITIONS, RunStateMachine, RunStatus
from delfos_backtest.errors import InvalidTransitionError


def test_state_machine_init_default() -> None:
    sm = RunStateMachine("run-1")
    assert sm.run_id == "run-1"
    assert sm.current_state == RunStatus.PENDING


def test_state_machine_init_custom_state() -> None:
    sm = RunStateMachine("run-1", RunStatus.RUNNING)
    assert sm.current_state == RunStatus.RUNNING


def test_transition_pending_to_running_to_completed() -> None:
    sm = RunStateMachine("run-1")
    sm.transition_to(RunStatus.RUNNING)
    sm.transition_to(RunStatus.COMPLETED)
    assert sm.current_state == RunStatus.COMPLETED


def test_transition_running_to_failed() -> None:
    sm = RunStateMachine("run-1", RunStatus.RUNNING)
    sm.transition_to(RunStatus.FAILED)
    assert sm.current_state == RunStatus.FAILED


def test_transition_pending_to_failed() -> None:
    """Test a run can fail before it starts."""
    sm = RunStateMachine("run-1")
    sm.transition_to(RunStatus.FAILED)
    assert sm.current_state == RunStatus.FAILED


def test_invalid_transition_pending_to_completed() -> None:
    sm = RunStateMachine("run-1")
    with pytest.raises(InvalidTransitionError, match="Invalid transition from pending to completed"):
        sm.transition_to(RunStatus.COMPLETED)
    assert sm.current_state == RunStatus.PENDING


@pytest.mark.parametrize("terminal", [RunStatus.COMPLETED, RunStatus.FAILED])
@pytest.mark.parametrize("target", list(RunStatus))
def test_terminal_states_never_change(terminal: RunStatus, target: RunStatus) -> None:
    sm = RunStateMachine("run-1", terminal)
    assert sm.can_transition_to(target) is False
    with pytest.raises(InvalidTransitionError):
        sm.transition_to(target)


def test_invalid_transition_is_value_error() -> None:
    sm = RunStateMachine("run-1", RunStatus.COMPLETED)
    with pytest.raises(ValueError):
        sm.transition_to(RunStatus.RUNNING)


def test_can_transition_to() -> None:
    sm = RunStateMachine("run-1")
    assert sm.can_transition_to(RunStatus.RUNNING) is True
    assert sm.can_transition_to(RunStatus.COMPLETED) is False


def test_is_terminal() -> None:
    assert RunStatus.COMPLETED.is_terminal
    assert RunStatus.FAILED.is_terminal
    assert not RunStatus.PENDING.is_terminal
    assert not RunStatus.RUNNING.is_terminal


def test_all_states_have_transition_entries() -> None:
    assert set(VALID_TRANSITIONS) == set(RunStatus)
