"""Session states and the legal transitions between them."""

from __future__ import annotations

from enum import StrEnum


class SessionState(StrEnum):
    NOT_STARTED = "not_started"
    INITIALIZING = "initializing"
    IDLE = "idle"
    WORKING = "working"
    WAITING_FOR_PERMISSION = "waiting_for_permission"
    EXITED = "exited"
    ERROR = "error"

    @property
    def turn_in_flight(self) -> bool:
        return self in (SessionState.WORKING, SessionState.WAITING_FOR_PERMISSION)

    @property
    def startable(self) -> bool:
        return self in (SessionState.NOT_STARTED, SessionState.EXITED, SessionState.ERROR)


_S = SessionState

#: Every transition the session may take; anything else is a bug.
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    _S.NOT_STARTED: frozenset({_S.INITIALIZING}),
    _S.INITIALIZING: frozenset({_S.IDLE, _S.EXITED, _S.ERROR}),
    _S.IDLE: frozenset({_S.WORKING, _S.EXITED, _S.ERROR}),
    _S.WORKING: frozenset(
        {_S.WAITING_FOR_PERMISSION, _S.IDLE, _S.EXITED, _S.ERROR}
    ),
    _S.WAITING_FOR_PERMISSION: frozenset({_S.WORKING, _S.EXITED, _S.ERROR}),
    _S.EXITED: frozenset({_S.INITIALIZING}),
    _S.ERROR: frozenset({_S.INITIALIZING}),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in TRANSITIONS[current]
