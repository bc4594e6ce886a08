from enum import Enum


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.NOT_STARTED: frozenset({SessionState.IN_PROGRESS}),
    SessionState.IN_PROGRESS: frozenset({SessionState.IN_PROGRESS, SessionState.COMPLETED}),
    SessionState.COMPLETED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]
