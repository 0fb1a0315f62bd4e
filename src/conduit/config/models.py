"""Pydantic v2 models for conduit.yaml configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from conduit.constants import DEFAULT_BINARY


class SessionConfig(BaseModel):
    """Settings for one agent session.

    Constructed explicitly and handed to :class:`~conduit.session.AgentSession`;
    nothing in the runtime reads configuration from ambient state.
    """

    model_config = ConfigDict(extra="forbid")

    binary: str = Field(
        default=DEFAULT_BINARY,
        description="Agent executable name or absolute path",
    )
    working_directory: Path = Field(
        default_factory=Path.cwd,
        description="Working directory for every turn's process",
    )
    model: str | None = Field(
        default=None,
        description="Model passed to the agent via --model",
    )
    inactivity_timeout: float = Field(
        default=90.0,
        ge=0,
        description="Seconds without output before an inactivity warning (0 to disable)",
    )
    stop_grace_period: float = Field(
        default=3.0,
        ge=0,
        description="Seconds to wait for a natural exit after closing stdin",
    )
    kill_grace_period: float = Field(
        default=2.0,
        ge=0,
        description="Seconds between SIGTERM and SIGKILL",
    )
    version_check_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for the --version availability check",
    )
    max_line_bytes: int = Field(
        default=8 * 1024 * 1024,
        ge=1024,
        description="Maximum size of one NDJSON line from the agent",
    )
    extra_args: list[str] = Field(
        default_factory=list,
        description="Additional arguments appended to every turn",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the agent process",
    )
    stripped_env_keys: list[str] = Field(
        default_factory=lambda: ["CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT"],
        description="Variables removed so the child does not detect a nested session",
    )
    node_heap_limit_mb: int = Field(
        default=2048,
        ge=0,
        description="V8 heap cap for Node-based agents via NODE_OPTIONS (0 to disable)",
    )

    @field_validator("binary")
    @classmethod
    def _binary_not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "binary must not be empty"
            raise ValueError(msg)
        return value.strip()
