"""Agent process launching, binary resolution, and teardown."""

from conduit.process.helpers import format_stderr_preview, is_diagnostic_line
from conduit.process.launcher import (
    agent_version,
    build_args,
    build_env,
    is_available,
    resolve_binary,
    spawn,
    terminate_process_tree,
)

__all__ = [
    "agent_version",
    "build_args",
    "build_env",
    "format_stderr_preview",
    "is_available",
    "is_diagnostic_line",
    "resolve_binary",
    "spawn",
    "terminate_process_tree",
]
