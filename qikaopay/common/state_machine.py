"""Payment intent state machine: one pending state, two terminal outcomes."""

from qikaopay.common.errors import InvalidTransition

PENDING = "PENDING"
SUCCESS = "SUCCESS"
FAILED = "FAILED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {SUCCESS, FAILED},
    SUCCESS: set(),
    FAILED: set(),
}

TERMINAL_STATES = frozenset({SUCCESS, FAILED})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def validate_outcome(outcome: str) -> None:
    """Only terminal states may be requested by a transition."""

    if outcome not in TERMINAL_STATES:
        raise InvalidTransition(f"Invalid outcome: {outcome}")


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
