"""Stream-JSON wire protocol: message models and NDJSON codec."""

from conduit.protocol.codec import (
    decode_line,
    encode,
    encode_allow,
    encode_deny,
    encode_user_message,
    merge_answer,
)
from conduit.protocol.messages import (
    AssistantMessage,
    ContentBlock,
    ControlRequest,
    ControlResponse,
    IncomingMessage,
    PermissionAllow,
    PermissionDeny,
    ResultMessage,
    StreamEventMessage,
    SystemMessage,
    Usage,
    UserMessage,
)

__all__ = [
    "AssistantMessage",
    "ContentBlock",
    "ControlRequest",
    "ControlResponse",
    "IncomingMessage",
    "PermissionAllow",
    "PermissionDeny",
    "ResultMessage",
    "StreamEventMessage",
    "SystemMessage",
    "Usage",
    "UserMessage",
    "decode_line",
    "encode",
    "encode_allow",
    "encode_deny",
    "encode_user_message",
    "merge_answer",
]
