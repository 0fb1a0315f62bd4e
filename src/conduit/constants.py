"""Shared constants and type aliases for the Conduit runtime."""

from __future__ import annotations

from collections.abc import Callable

#: Default agent executable name.
DEFAULT_BINARY = "claude"

#: Default config file name looked up in the current directory.
DEFAULT_CONFIG_NAME = "conduit.yaml"

#: Denial message sent when the caller gives no reason.
DEFAULT_DENY_MESSAGE = "User denied this action"

#: Callable that runs a notification thunk on the consumer's preferred thread.
Dispatcher = Callable[[Callable[[], None]], None]
