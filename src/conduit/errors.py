"""Exception hierarchy for Conduit."""

from __future__ import annotations


class ConduitError(Exception):
    """Base class for all Conduit errors."""


class SessionStateError(ConduitError):
    """An operation was invoked in a state that does not allow it.

    This always indicates a bug in the caller (for example sending a message
    while a turn is still in flight), so it is raised at the call site instead
    of being folded into the session's error state.
    """


class SessionClosedError(SessionStateError):
    """The session has been disposed and can no longer be used."""


class ProtocolDecodeError(ConduitError):
    """A line from the agent could not be decoded into a protocol message."""

    def __init__(self, message: str, line: str) -> None:
        super().__init__(message)
        self.line = line
