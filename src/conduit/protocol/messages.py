"""Pydantic v2 models for the agent's NDJSON stream protocol.

Incoming models describe the lines the agent writes to stdout; they ignore
fields they do not know so newer agent versions keep decoding.  Outgoing
models describe the lines written to the agent's stdin.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    SerializerFunctionWrapHandler,
    field_validator,
    model_serializer,
)


class _Incoming(BaseModel):
    """Common configuration for messages read from the agent."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _Outgoing(BaseModel):
    """Common configuration for messages written to the agent."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @model_serializer(mode="wrap")
    def _omit_none(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        data = handler(self)
        return {k: v for k, v in data.items() if v is not None}


# ------------------------------------------------------------------ #
# Incoming
# ------------------------------------------------------------------ #


class ContentBlock(_Incoming):
    """A generically decoded content block (text, thinking, tool_use, ...)."""

    type: str = Field(default="", description="Block kind")
    text: str | None = Field(default=None, description="Text of a text block")
    thinking: str | None = Field(default=None, description="Text of a thinking block")
    id: str | None = Field(default=None, description="Tool-use id")
    name: str | None = Field(default=None, description="Tool name")
    input: JsonValue = Field(default=None, description="Tool input payload")


class SystemMessage(_Incoming):
    """``system`` line; the ``init`` subtype opens every turn."""

    type: Literal["system"] = "system"
    subtype: str | None = None
    session_id: str | None = None
    model: str | None = None
    cwd: str | None = None
    permission_mode: str | None = Field(default=None, alias="permissionMode")
    tools: list[str] = Field(default_factory=list)

    @property
    def is_init(self) -> bool:
        return self.subtype == "init"


class AssistantPayload(_Incoming):
    id: str | None = None
    model: str | None = None
    content: list[ContentBlock] = Field(default_factory=list)


class AssistantMessage(_Incoming):
    """A complete assistant message, authoritative over streamed deltas."""

    type: Literal["assistant"] = "assistant"
    uuid: str | None = None
    session_id: str | None = None
    message: AssistantPayload = Field(default_factory=AssistantPayload)


class StreamDelta(_Incoming):
    type: str = ""
    text: str | None = None
    thinking: str | None = None


class StreamEventPayload(_Incoming):
    type: str = ""
    index: int | None = None
    content_block: ContentBlock | None = None
    delta: StreamDelta | None = None


class StreamEventMessage(_Incoming):
    """Partial-message streaming event (``--include-partial-messages``)."""

    type: Literal["stream_event"] = "stream_event"
    session_id: str | None = None
    event: StreamEventPayload = Field(default_factory=StreamEventPayload)


class Usage(_Incoming):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @field_validator("*", mode="before")
    @classmethod
    def _null_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value


class ResultMessage(_Incoming):
    """Terminal message of a turn."""

    type: Literal["result"] = "result"
    subtype: str = ""
    is_error: bool = False
    result: str | None = None
    session_id: str | None = None
    total_cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    usage: Usage = Field(default_factory=Usage)
    errors: list[str] | None = None

    @field_validator("usage", mode="before")
    @classmethod
    def _null_usage(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("errors", mode="before")
    @classmethod
    def _stringify_errors(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [e if isinstance(e, str) else json.dumps(e) for e in value]


class ControlRequestBody(_Incoming):
    subtype: str = ""
    tool_name: str | None = None
    tool_use_id: str | None = None
    input: dict[str, JsonValue] = Field(default_factory=dict)

    @field_validator("input", mode="before")
    @classmethod
    def _object_input(cls, value: Any) -> Any:
        # Tools without arguments send null; the request must still surface.
        return value if isinstance(value, dict) else {}


class ControlRequest(_Incoming):
    """``control_request`` line; ``can_use_tool`` asks for tool permission."""

    type: Literal["control_request"] = "control_request"
    request_id: str
    request: ControlRequestBody

    @property
    def is_permission_request(self) -> bool:
        return self.request.subtype == "can_use_tool"


IncomingMessage = Annotated[
    SystemMessage
    | AssistantMessage
    | StreamEventMessage
    | ResultMessage
    | ControlRequest,
    Field(discriminator="type"),
]
"""Discriminated union of every recognized incoming message."""

KNOWN_TYPES = frozenset(
    {"system", "assistant", "stream_event", "result", "control_request"}
)


# ------------------------------------------------------------------ #
# Outgoing
# ------------------------------------------------------------------ #


class UserMessagePayload(_Outgoing):
    role: Literal["user"] = "user"
    content: str


class UserMessage(_Outgoing):
    type: Literal["user"] = "user"
    message: UserMessagePayload


class PermissionAllow(_Outgoing):
    behavior: Literal["allow"] = "allow"
    updated_input: dict[str, JsonValue] | None = Field(
        default=None, alias="updatedInput"
    )
    tool_use_id: str | None = Field(default=None, alias="toolUseID")


class PermissionDeny(_Outgoing):
    behavior: Literal["deny"] = "deny"
    message: str
    tool_use_id: str | None = Field(default=None, alias="toolUseID")


class ControlResponseBody(_Outgoing):
    subtype: Literal["success"] = "success"
    request_id: str
    response: PermissionAllow | PermissionDeny


class ControlResponse(_Outgoing):
    type: Literal["control_response"] = "control_response"
    response: ControlResponseBody


OutgoingMessage = UserMessage | ControlResponse
