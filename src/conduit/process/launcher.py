"""Resolve the agent executable, build per-turn argv/env, spawn and reap."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from collections.abc import Mapping
from pathlib import Path

from conduit.config.models import SessionConfig

logger = logging.getLogger(__name__)

#: Arguments every turn needs: stream-json both ways, partial messages, and
#: permission prompts routed back over stdio instead of a terminal prompt.
BASE_ARGS: tuple[str, ...] = (
    "-p",
    "--input-format",
    "stream-json",
    "--output-format",
    "stream-json",
    "--verbose",
    "--include-partial-messages",
    "--permission-prompt-tool",
    "stdio",
)

RESUME_FLAG = "--resume"
MODEL_FLAG = "--model"
UNRESTRICTED_FLAG = "--dangerously-skip-permissions"


def _candidate_suffixes(platform: str) -> tuple[str, ...]:
    """Bare name, native executable extension, then script-wrapper extensions."""
    if platform == "win32":
        return ("", ".exe", ".cmd", ".bat")
    return ("", ".sh")


def resolve_binary(
    binary: str,
    *,
    path: str | None = None,
    platform: str = sys.platform,
) -> str:
    """Locate *binary* on the search path.

    An absolute path that exists is returned verbatim.  Otherwise every
    directory of *path* (default ``$PATH``) is tried with each candidate
    suffix; the first regular file wins.  When nothing matches, the bare
    name is returned and left to the OS to resolve at spawn time.
    """
    candidate = Path(binary)
    if candidate.is_absolute():
        if candidate.exists():
            return binary
        logger.warning("configured agent binary does not exist: %s", binary)
        return binary

    search = os.environ.get("PATH", "") if path is None else path
    for directory in search.split(os.pathsep):
        if not directory:
            continue
        for suffix in _candidate_suffixes(platform):
            full = Path(directory) / f"{binary}{suffix}"
            if full.is_file():
                return str(full)

    return binary


def build_args(
    *,
    resume_id: str | None = None,
    unrestricted: bool = False,
    model: str | None = None,
    extra_args: list[str] | None = None,
) -> list[str]:
    """Build the argument vector (without the executable) for one turn."""
    args = list(BASE_ARGS)
    if resume_id:
        args.extend([RESUME_FLAG, resume_id])
    if model:
        args.extend([MODEL_FLAG, model])
    if unrestricted:
        args.append(UNRESTRICTED_FLAG)
    if extra_args:
        args.extend(extra_args)
    return args


def build_env(
    config: SessionConfig,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Environment for the agent process.

    Strips the variables that make the agent believe it already runs inside
    an agent session, applies ``config.env``, and caps the Node.js heap.
    """
    source = os.environ if base is None else base
    stripped = set(config.stripped_env_keys)
    env = {k: v for k, v in source.items() if k not in stripped}
    env.update(config.env)

    if config.node_heap_limit_mb > 0:
        node_opts = env.get("NODE_OPTIONS", "")
        if "--max-old-space-size" not in node_opts:
            separator = " " if node_opts else ""
            heap_flag = f"--max-old-space-size={config.node_heap_limit_mb}"
            env["NODE_OPTIONS"] = f"{node_opts}{separator}{heap_flag}"
    return env


async def spawn(
    argv: list[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    limit: int,
) -> asyncio.subprocess.Process:
    """Start a turn's process with all three standard streams piped.

    Raises:
        OSError: If the process cannot be created (including FileNotFoundError).
    """
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
        env=dict(env),
        limit=limit,
        start_new_session=sys.platform != "win32",
    )


async def agent_version(binary: str, timeout: float = 5.0) -> str | None:
    """Run ``<binary> --version`` and return its trimmed output.

    Returns ``None`` when the binary cannot be launched, exits non-zero, or
    does not answer within *timeout* seconds.  Never raises.
    """
    executable = resolve_binary(binary)
    try:
        proc = await asyncio.create_subprocess_exec(
            executable,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        logger.info("agent binary %s is not callable: %s", binary, exc)
        return None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        logger.info("agent binary %s timed out answering --version", binary)
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(Exception):
            await proc.wait()
        return None

    if proc.returncode != 0:
        logger.info("agent binary %s --version exited with %s", binary, proc.returncode)
        return None
    return stdout.decode(errors="replace").strip()


async def is_available(binary: str, timeout: float = 5.0) -> bool:
    """True if ``<binary> --version`` succeeds within *timeout* seconds."""
    return await agent_version(binary, timeout) is not None


def _signal_tree(proc: asyncio.subprocess.Process, sig: int) -> None:
    """Send *sig* to the process group of *proc* (the process itself on Windows)."""
    with contextlib.suppress(ProcessLookupError, PermissionError):
        if sys.platform == "win32":
            if sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
            return
        try:
            os.killpg(os.getpgid(proc.pid), sig)
        except (ProcessLookupError, PermissionError):
            os.kill(proc.pid, sig)


async def terminate_process_tree(
    proc: asyncio.subprocess.Process,
    grace_period: float,
    kill_grace: float,
) -> int | None:
    """Wait *grace_period* for a natural exit, then SIGTERM, then SIGKILL.

    Returns the exit code, or ``None`` if it could not be collected.
    """
    if proc.returncode is not None:
        return proc.returncode

    if grace_period > 0:
        try:
            return await asyncio.wait_for(proc.wait(), timeout=grace_period)
        except TimeoutError:
            pass

    logger.info("process %s did not exit in %.1fs, terminating", proc.pid, grace_period)
    _signal_tree(proc, signal.SIGTERM)
    try:
        return await asyncio.wait_for(proc.wait(), timeout=max(kill_grace, 0.01))
    except TimeoutError:
        pass

    logger.warning("process %s ignored SIGTERM, killing", proc.pid)
    _signal_tree(proc, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)
    try:
        return await asyncio.wait_for(proc.wait(), timeout=max(kill_grace, 0.01))
    except TimeoutError:
        logger.error("process %s could not be reaped", proc.pid)
        return None
