"""Backtest run lifecycle state machine with validated transitions."""

from enum import Enum

from delfos_backtest.errors import InvalidTransitionError


class RunStatus(str, Enum):
    """Lifecycle states of a backtest run."""

    PENDING = "pending"  # Stored, not yet picked up
    RUNNING = "running"  # Engine, simulator or calculator in progress
    COMPLETED = "completed"  # Metrics snapshot persisted
    FAILED = "failed"  # Fault or cancellation; error_message is set

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class MonteCarloStatus(str, Enum):
    """Outcome of the Monte Carlo stage of a run."""

    NOT_REQUESTED = "not_requested"
    INSUFFICIENT_SAMPLE = "insufficient_sample"
    COMPLETED = "completed"
    FAILED = "failed"


# Valid state transitions
VALID_TRANSITIONS: dict[RunStatus, list[RunStatus]] = {
    RunStatus.PENDING: [RunStatus.RUNNING, RunStatus.FAILED],
    RunStatus.RUNNING: [RunStatus.COMPLETED, RunStatus.FAILED],
    RunStatus.COMPLETED: [],
    RunStatus.FAILED: [],
}


class RunStateMachine:
    """Per-run state machine. Status only moves forward and never leaves a terminal state."""

    def __init__(self, run_id: str, initial_state: RunStatus = RunStatus.PENDING):
        """
        Initialize state machine.

        Args:
            run_id: Run identifier (for error messages)
            initial_state: Starting state (default: PENDING)
        """
        self.run_id = run_id
        self._current_state = RunStatus(initial_state)

    @property
    def current_state(self) -> RunStatus:
        """Get current state."""
        return self._current_state

    def transition_to(self, new_state: RunStatus) -> None:
        """
        Transition to a new state with validation.

        Args:
            new_state: Target state

        Raises:
            InvalidTransitionError: If transition is invalid
        """
        if not self.can_transition_to(new_state):
            raise InvalidTransitionError(
                f"Invalid transition from {self._current_state.value} to "
                f"{RunStatus(new_state).value} for run {self.run_id}"
            )

        self._current_state = RunStatus(new_state)

    def can_transition_to(self, new_state: RunStatus) -> bool:
        """
        Check if transition is valid without executing it.

        Args:
            new_state: Target state

        Returns:
            True if transition is allowed
        """
        return RunStatus(new_state) in VALID_TRANSITIONS[self._current_state]
