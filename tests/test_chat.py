"""Tests for the ``conduit chat`` REPL: turns, permission prompts, rendering."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conduit.commands.chat import ChatPrinter, _handle_command, run_turn
from conduit.config.models import SessionConfig
from conduit.protocol.messages import ResultMessage
from conduit.session.controller import AgentSession
from conduit.session.models import (
    AssistantMessageEvent,
    ErrorOutputEvent,
    InactivityTimeoutEvent,
    ResultEvent,
    SessionStats,
    StreamDeltaEvent,
)
from conduit.session.state import SessionState

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True)
def _no_real_signals():
    with patch("conduit.process.launcher._signal_tree"):
        yield


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


class MockAsyncStream:
    """Queue-backed stand-in for an asyncio StreamReader."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def close(self) -> None:
        self._queue.put_nowait(b"")

    async def readline(self) -> bytes:
        return await self._queue.get()


def _make_agent_process(script: list[dict[str, Any]]) -> MagicMock:
    """Mock agent that replays *script*, then finishes once it is answered.

    The turn's result is only sent after the process receives a control
    response, mimicking an agent blocked on a permission prompt.
    """
    stdout = MockAsyncStream()
    stderr = MockAsyncStream()

    def _send(payload: dict[str, Any]) -> None:
        stdout.feed((json.dumps(payload) + "\n").encode())

    def _finish() -> None:
        _send({"type": "result", "subtype": "success", "total_cost_usd": 0.02})
        stdout.close()
        stderr.close()

    def _on_write(data: bytes) -> None:
        message = json.loads(data)
        if message["type"] == "user":
            for payload in script:
                _send(payload)
            if not any(p["type"] == "control_request" for p in script):
                _finish()
        elif message["type"] == "control_response":
            _finish()

    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = None
    proc.stdin = MagicMock()
    proc.stdin.write = MagicMock(side_effect=_on_write)
    proc.stdin.drain = AsyncMock()
    proc.stdout = stdout
    proc.stderr = stderr
    proc.wait = AsyncMock(return_value=0)
    return proc


def _written(proc: MagicMock) -> list[dict[str, Any]]:
    return [json.loads(c.args[0]) for c in proc.stdin.write.call_args_list]


def _session() -> AgentSession:
    return AgentSession(
        SessionConfig(inactivity_timeout=0, stop_grace_period=0.05, kill_grace_period=0.05)
    )


def _permission(tool: str, tool_input: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "control_request",
        "request_id": "req-1",
        "request": {
            "subtype": "can_use_tool",
            "tool_name": tool,
            "tool_use_id": "tu-1",
            "input": tool_input,
        },
    }


# ------------------------------------------------------------------ #
# run_turn
# ------------------------------------------------------------------ #


class TestRunTurn:
    async def test_plain_turn(self) -> None:
        proc = _make_agent_process([])
        session = _session()
        session.start()
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            await run_turn(session, "hello")
        assert session.state is SessionState.IDLE
        assert session.stats.interactions == 1
        await session.aclose()

    async def test_permission_allowed(self) -> None:
        proc = _make_agent_process([_permission("Bash", {"command": "make"})])
        session = _session()
        session.start()
        with patch("asyncio.create_subprocess_exec", return_value=proc), patch(
            "click.confirm", return_value=True
        ):
            await run_turn(session, "build it")
        response = _written(proc)[-1]["response"]["response"]
        assert response["behavior"] == "allow"
        assert response["updatedInput"] == {"command": "make"}
        assert session.state is SessionState.IDLE
        await session.aclose()

    async def test_permission_denied(self) -> None:
        proc = _make_agent_process([_permission("Bash", {"command": "rm -rf /"})])
        session = _session()
        session.start()
        with patch("asyncio.create_subprocess_exec", return_value=proc), patch(
            "click.confirm", return_value=False
        ):
            await run_turn(session, "clean")
        assert _written(proc)[-1]["response"]["response"]["behavior"] == "deny"
        await session.aclose()

    async def test_question_answered(self) -> None:
        tool_input = {"questions": [{"question": "Which database?"}]}
        proc = _make_agent_process([_permission("AskUserQuestion", tool_input)])
        session = _session()
        session.start()
        with patch("asyncio.create_subprocess_exec", return_value=proc), patch(
            "click.prompt", return_value="postgres"
        ):
            await run_turn(session, "set up storage")
        updated = _written(proc)[-1]["response"]["response"]["updatedInput"]
        assert updated["answers"] == {"Which database?": "postgres"}
        await session.aclose()

    async def test_stall_offers_stop(self) -> None:
        proc = _make_agent_process([])
        # The agent reads the message but never answers.
        proc.stdin.write = MagicMock()
        session = AgentSession(
            SessionConfig(
                inactivity_timeout=0.05, stop_grace_period=0.05, kill_grace_period=0.05
            )
        )
        session.start()
        with patch("asyncio.create_subprocess_exec", return_value=proc), patch(
            "click.confirm", return_value=True
        ) as confirm:
            await asyncio.wait_for(run_turn(session, "hello"), timeout=2)
        assert "Stop the turn?" in confirm.call_args.args[0]
        assert session.state is SessionState.EXITED
        await session.aclose()

    async def test_restarts_stopped_session(self) -> None:
        proc = _make_agent_process([])
        session = _session()
        session.start()
        await session.stop()
        assert session.state is SessionState.EXITED
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            await run_turn(session, "again")
        assert session.state is SessionState.IDLE
        await session.aclose()

    async def test_launch_failure_returns(self) -> None:
        session = _session()
        session.start()
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("claude")):
            await run_turn(session, "hello")
        assert session.state is SessionState.ERROR
        await session.aclose()


# ------------------------------------------------------------------ #
# Slash commands
# ------------------------------------------------------------------ #


class TestHandleCommand:
    async def test_quit(self) -> None:
        assert await _handle_command("/quit", _session()) is True

    async def test_unknown(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert await _handle_command("/frobnicate now", _session()) is False
        assert "Unknown command: /frobnicate" in capsys.readouterr().out

    async def test_stop(self) -> None:
        session = _session()
        session.start()
        assert await _handle_command("/stop", session) is False
        assert session.state is SessionState.EXITED

    async def test_new_forgets_conversation(self) -> None:
        session = _session()
        session.start()
        session._session_id = "abc123"
        await _handle_command("/new", session)
        assert session.state is SessionState.IDLE
        assert session.session_id is None


# ------------------------------------------------------------------ #
# Rendering
# ------------------------------------------------------------------ #


class TestChatPrinter:
    def test_streamed_text_not_repeated(self, capsys: pytest.CaptureFixture[str]) -> None:
        printer = ChatPrinter()
        printer.on_event(StreamDeltaEvent(kind="text", text="Hel", accumulated="Hel"))
        printer.on_event(StreamDeltaEvent(kind="text", text="lo", accumulated="Hello"))
        printer.on_event(AssistantMessageEvent(text="Hello"))
        assert capsys.readouterr().out.count("Hello") == 1

    def test_unstreamed_message_printed(self, capsys: pytest.CaptureFixture[str]) -> None:
        printer = ChatPrinter()
        printer.on_event(AssistantMessageEvent(text="Complete answer"))
        assert "Complete answer" in capsys.readouterr().out

    def test_result_summary(self, capsys: pytest.CaptureFixture[str]) -> None:
        stats = SessionStats(input_tokens=1500, output_tokens=200, interactions=1)
        event = ResultEvent(result=ResultMessage(total_cost_usd=0.0123), stats=stats)
        ChatPrinter().on_event(event)
        out = capsys.readouterr().out
        assert "$0.0123" in out
        assert "1.7k tokens" in out

    def test_sub_second_timeout_shown(self, capsys: pytest.CaptureFixture[str]) -> None:
        ChatPrinter().on_event(InactivityTimeoutEvent(seconds=0.5, turn=1))
        assert "no output for 0.5s" in capsys.readouterr().err

    def test_errors_go_to_stderr(self, capsys: pytest.CaptureFixture[str]) -> None:
        ChatPrinter().on_event(ErrorOutputEvent(text="boom", context="exit"))
        assert "[exit] boom" in capsys.readouterr().err

