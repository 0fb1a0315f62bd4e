"""Pydantic v2 models for session data and outbound notifications."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, JsonValue, Tag

from conduit.protocol.messages import ContentBlock, ResultMessage
from conduit.session.state import SessionState


class PermissionRequest(BaseModel):
    """An outstanding ``can_use_tool`` request awaiting the caller's decision."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(description="Control request correlation id")
    tool_name: str = Field(description="Tool the agent wants to use")
    tool_use_id: str | None = Field(default=None, description="Tool-use block id")
    input: dict[str, JsonValue] = Field(
        default_factory=dict, description="Raw tool input, echoed back on allow"
    )


class SessionStats(BaseModel):
    """Cumulative cost and token usage, folded from each turn's result."""

    total_cost_usd: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    interactions: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_input_tokens
            + self.cache_creation_input_tokens
        )

    def add(self, result: ResultMessage) -> None:
        if result.total_cost_usd is not None:
            self.total_cost_usd += result.total_cost_usd
        usage = result.usage
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cache_read_input_tokens += usage.cache_read_input_tokens
        self.cache_creation_input_tokens += usage.cache_creation_input_tokens
        self.interactions += 1


def format_tokens(tokens: int) -> str:
    """Format a token count as e.g. ``"12.3k"`` or ``"1.2M"``."""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}k"
    return str(tokens)


# ------------------------------------------------------------------ #
# Events
# ------------------------------------------------------------------ #


class _EventBase(BaseModel):
    """Common envelope fields shared by every session event."""

    model_config = ConfigDict(extra="forbid")

    ts: str = Field(default="", description="ISO 8601 timestamp with milliseconds")
    seq: int = Field(default=0, ge=0, description="Monotonic sequence number")


class StateChangedEvent(_EventBase):
    """The session moved from one state to another."""

    type: Literal["state_changed"] = "state_changed"
    previous: SessionState
    state: SessionState


class SessionInitializedEvent(_EventBase):
    """Session identity is known.

    Fired synthetically by ``start()`` (with whatever identity is already
    known) and again for every ``system/init`` the agent sends.
    """

    type: Literal["session_initialized"] = "session_initialized"
    session_id: str | None = None
    model: str | None = None
    permission_mode: str | None = None
    cwd: str | None = None
    tools: list[str] = Field(default_factory=list)
    synthetic: bool = Field(description="True when emitted by start(), not the agent")


class AssistantMessageEvent(_EventBase):
    """A complete assistant message, superseding streamed text."""

    type: Literal["assistant_message"] = "assistant_message"
    uuid: str | None = None
    content: list[ContentBlock] = Field(default_factory=list)
    text: str = Field(description="Concatenated text blocks")


class StreamDeltaEvent(_EventBase):
    """An incremental piece of text or reasoning."""

    type: Literal["stream_delta"] = "stream_delta"
    kind: Literal["text", "thinking"]
    index: int = 0
    text: str = Field(description="The new fragment")
    accumulated: str = Field(description="Buffer contents after appending")


class ContentBlockEvent(_EventBase):
    """A streamed content block opened or closed."""

    type: Literal["content_block"] = "content_block"
    phase: Literal["start", "stop"]
    index: int = 0
    block_type: str = Field(description="text, thinking, tool_use, ...")


class PermissionRequestedEvent(_EventBase):
    type: Literal["permission_requested"] = "permission_requested"
    request: PermissionRequest


class ResultEvent(_EventBase):
    """A turn finished; carries the result and updated cumulative stats."""

    type: Literal["result"] = "result"
    result: ResultMessage
    stats: SessionStats


class ErrorOutputEvent(_EventBase):
    """Caller-visible diagnostic text."""

    type: Literal["error_output"] = "error_output"
    text: str
    context: str | None = Field(
        default=None,
        description="launch, exit, read, write, stderr, result",
    )


class DecodeErrorEvent(_EventBase):
    """A line from the agent was skipped because it could not be decoded."""

    type: Literal["decode_error"] = "decode_error"
    error: str
    line: str


class ProcessExitedEvent(_EventBase):
    type: Literal["process_exited"] = "process_exited"
    exit_code: int | None
    turn: int = Field(description="Turn number the process belonged to")
    after_result: bool = Field(description="True if the turn had already completed")


class InactivityTimeoutEvent(_EventBase):
    """No output arrived for the configured window while working."""

    type: Literal["inactivity_timeout"] = "inactivity_timeout"
    seconds: float
    turn: int


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


SessionEvent = Annotated[
    Annotated[StateChangedEvent, Tag("state_changed")]
    | Annotated[SessionInitializedEvent, Tag("session_initialized")]
    | Annotated[AssistantMessageEvent, Tag("assistant_message")]
    | Annotated[StreamDeltaEvent, Tag("stream_delta")]
    | Annotated[ContentBlockEvent, Tag("content_block")]
    | Annotated[PermissionRequestedEvent, Tag("permission_requested")]
    | Annotated[ResultEvent, Tag("result")]
    | Annotated[ErrorOutputEvent, Tag("error_output")]
    | Annotated[DecodeErrorEvent, Tag("decode_error")]
    | Annotated[ProcessExitedEvent, Tag("process_exited")]
    | Annotated[InactivityTimeoutEvent, Tag("inactivity_timeout")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all session event types."""
