"""Encode outgoing messages and decode incoming NDJSON lines."""

from __future__ import annotations

import json
from collections.abc import Mapping

from pydantic import JsonValue, TypeAdapter, ValidationError

from conduit.errors import ProtocolDecodeError
from conduit.protocol.messages import (
    KNOWN_TYPES,
    ControlResponse,
    ControlResponseBody,
    IncomingMessage,
    OutgoingMessage,
    PermissionAllow,
    PermissionDeny,
    UserMessage,
    UserMessagePayload,
)

_INCOMING: TypeAdapter[IncomingMessage] = TypeAdapter(IncomingMessage)

#: Characters of an offending line kept in decode error messages.
_PREVIEW_CHARS = 200


def encode(message: OutgoingMessage) -> str:
    """Serialize *message* as a single JSON line (without the newline)."""
    return message.model_dump_json(by_alias=True)


def encode_user_message(text: str) -> str:
    return encode(UserMessage(message=UserMessagePayload(content=text)))


def encode_allow(
    request_id: str,
    tool_use_id: str | None,
    updated_input: Mapping[str, JsonValue] | None,
) -> str:
    """Encode an ``allow`` control response echoing *updated_input*."""
    allow = PermissionAllow(
        updated_input=dict(updated_input) if updated_input is not None else None,
        tool_use_id=tool_use_id,
    )
    return encode(
        ControlResponse(
            response=ControlResponseBody(request_id=request_id, response=allow)
        )
    )


def encode_deny(request_id: str, tool_use_id: str | None, message: str) -> str:
    """Encode a ``deny`` control response carrying a human-readable reason."""
    deny = PermissionDeny(message=message, tool_use_id=tool_use_id)
    return encode(
        ControlResponse(
            response=ControlResponseBody(request_id=request_id, response=deny)
        )
    )


def merge_answer(
    tool_input: Mapping[str, JsonValue],
    question: str,
    answer: str,
) -> dict[str, JsonValue]:
    """Return a copy of *tool_input* with *answer* filed under ``answers``.

    Existing answers are preserved; an answer to the same question is replaced.
    """
    merged = dict(tool_input)
    existing = merged.get("answers")
    answers: dict[str, JsonValue] = dict(existing) if isinstance(existing, dict) else {}
    answers[question] = answer
    merged["answers"] = answers
    return merged


def decode_line(line: str) -> IncomingMessage | None:
    """Decode one NDJSON line from the agent.

    Returns ``None`` for blank lines and for message types this client does
    not know, so newer agents can add kinds without breaking older clients.

    Raises:
        ProtocolDecodeError: If the line is not a JSON object with a string
            ``type``, or a known message type has an invalid shape.
    """
    stripped = line.strip()
    if not stripped:
        return None

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as exc:
        msg = f"invalid JSON at column {exc.colno}: {exc.msg}"
        raise ProtocolDecodeError(msg, stripped) from exc

    if not isinstance(data, dict):
        msg = f"expected a JSON object, got {type(data).__name__}"
        raise ProtocolDecodeError(msg, stripped)

    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        raise ProtocolDecodeError("missing 'type' field", stripped)

    if msg_type not in KNOWN_TYPES:
        return None

    try:
        return _INCOMING.validate_python(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(s) for s in first["loc"])
        msg = f"malformed '{msg_type}' message at {loc or '(root)'}: {first['msg']}"
        raise ProtocolDecodeError(msg, stripped) from exc


def preview(line: str) -> str:
    """Shorten *line* for log output."""
    if len(line) <= _PREVIEW_CHARS:
        return line
    return line[:_PREVIEW_CHARS] + "…"
