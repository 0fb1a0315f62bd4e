"""Agent session: state machine, turns, events, and transcript recorder."""

from conduit.session.controller import AgentSession
from conduit.session.models import (
    AssistantMessageEvent,
    ContentBlockEvent,
    DecodeErrorEvent,
    ErrorOutputEvent,
    InactivityTimeoutEvent,
    PermissionRequest,
    PermissionRequestedEvent,
    ProcessExitedEvent,
    ResultEvent,
    SessionEvent,
    SessionInitializedEvent,
    SessionStats,
    StateChangedEvent,
    StreamDeltaEvent,
    format_tokens,
)
from conduit.session.recorder import EventRecorder
from conduit.session.state import SessionState
from conduit.session.turn import StreamBuffer, Turn

__all__ = [
    "AgentSession",
    "AssistantMessageEvent",
    "ContentBlockEvent",
    "DecodeErrorEvent",
    "ErrorOutputEvent",
    "EventRecorder",
    "InactivityTimeoutEvent",
    "PermissionRequest",
    "PermissionRequestedEvent",
    "ProcessExitedEvent",
    "ResultEvent",
    "SessionEvent",
    "SessionInitializedEvent",
    "SessionState",
    "SessionStats",
    "StateChangedEvent",
    "StreamBuffer",
    "StreamDeltaEvent",
    "Turn",
    "format_tokens",
]
