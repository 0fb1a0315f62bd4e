"""conduit chat: interactive line REPL on top of an AgentSession."""

from __future__ import annotations

import asyncio
import functools
import json
import sys
from pathlib import Path
from typing import Any

import click

from conduit.config.models import SessionConfig
from conduit.config.parser import ConfigError, load_config
from conduit.session.controller import AgentSession
from conduit.session.models import (
    AssistantMessageEvent,
    ContentBlockEvent,
    ErrorOutputEvent,
    InactivityTimeoutEvent,
    PermissionRequest,
    PermissionRequestedEvent,
    ResultEvent,
    SessionEvent,
    SessionInitializedEvent,
    StreamDeltaEvent,
    format_tokens,
)
from conduit.session.recorder import EventRecorder

#: Tool whose permission request carries questions for the user.
QUESTION_TOOL = "AskUserQuestion"

_INPUT_PREVIEW_CHARS = 400


@click.command()
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to conduit.yaml (default: ./conduit.yaml if present).",
)
@click.option(
    "--dangerous",
    is_flag=True,
    help="Skip permission prompts (--dangerously-skip-permissions).",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds without output before warning (0 disables).",
)
@click.option(
    "--transcript",
    type=click.Path(dir_okay=False),
    default=None,
    help="Append every session event to this JSONL file.",
)
@click.option(
    "-p",
    "--prompt",
    "initial_prompt",
    type=str,
    default=None,
    help="Send this message as the first turn.",
)
def chat(
    config_file: str | None,
    dangerous: bool,
    timeout: float | None,
    transcript: str | None,
    initial_prompt: str | None,
) -> None:
    """Chat with the agent in the terminal."""
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    if timeout is not None:
        config = config.model_copy(update={"inactivity_timeout": timeout})

    exit_code = asyncio.run(
        _run_chat(config, dangerous, Path(transcript) if transcript else None, initial_prompt)
    )
    if exit_code:
        raise SystemExit(exit_code)


# ------------------------------------------------------------------ #
# REPL
# ------------------------------------------------------------------ #


async def _run_chat(
    config: SessionConfig,
    dangerous: bool,
    transcript: Path | None,
    initial_prompt: str | None,
) -> int:
    recorder = EventRecorder(transcript) if transcript is not None else None
    session = AgentSession(config, recorder=recorder, label="chat")
    try:
        if not await session.is_available():
            click.echo(
                f"Error: '{config.binary}' is not installed or did not answer --version",
                err=True,
            )
            return 1

        printer = ChatPrinter()
        session.subscribe(printer.on_event)
        session.start(dangerous)
        click.echo("Type a message, or /stats, /stop, /quit.")

        if initial_prompt:
            click.echo(f"> {initial_prompt}")
            await run_turn(session, initial_prompt)

        while True:
            try:
                line = await asyncio.get_running_loop().run_in_executor(
                    None, _read_input
                )
            except EOFError:
                break

            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if await _handle_command(line, session):
                    break
                continue
            await run_turn(session, line)
    finally:
        await session.aclose()
        if recorder is not None:
            recorder.close()
    return 0


async def run_turn(session: AgentSession, text: str) -> None:
    """Send *text* and service permission requests until the turn settles."""
    if session.state.startable:
        # Previous turn stopped or failed; resume the same conversation.
        session.start(session.dangerous_mode)

    queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
    unsubscribe = session.subscribe(queue.put_nowait)
    try:
        await session.send_message(text)
        while session.state.turn_in_flight:
            event = await queue.get()
            if isinstance(event, PermissionRequestedEvent):
                await _decide_permission(session, event.request)
            elif isinstance(event, InactivityTimeoutEvent):
                await _offer_stop(session, event.seconds)
    finally:
        unsubscribe()


async def _offer_stop(session: AgentSession, seconds: float) -> None:
    stop = await asyncio.get_running_loop().run_in_executor(
        None,
        functools.partial(
            click.confirm, f"No output for {seconds:g}s. Stop the turn?", default=False
        ),
    )
    if stop and session.state.turn_in_flight:
        await session.stop()
        click.echo("Stopped. The next message resumes the conversation.")


async def _decide_permission(session: AgentSession, request: PermissionRequest) -> None:
    loop = asyncio.get_running_loop()
    click.echo()
    click.echo(click.style(f"[permission] {request.tool_name}", fg="yellow"))
    click.echo(_preview_input(request.input))

    question = _first_question(request) if request.tool_name == QUESTION_TOOL else None
    if question is not None:
        answer = await loop.run_in_executor(
            None, functools.partial(click.prompt, question, default="", show_default=False)
        )
        if session.pending_permission == request:
            await session.answer_question(question, answer)
        return

    allowed = await loop.run_in_executor(
        None, functools.partial(click.confirm, "Allow?", default=False)
    )
    if session.pending_permission != request:
        click.echo("Request expired: the turn already ended.")
    elif allowed:
        await session.allow()
    else:
        await session.deny()


async def _handle_command(line: str, session: AgentSession) -> bool:
    """Process a slash command. Returns ``True`` if the REPL should exit."""
    cmd = line.split()[0].lower()

    if cmd == "/quit":
        return True

    if cmd == "/stats":
        stats = session.stats
        click.echo(
            f"  state: {session.state}\n"
            f"  session: {session.session_id or '-'}\n"
            f"  turns: {stats.interactions}\n"
            f"  cost: ${stats.total_cost_usd:.4f}\n"
            f"  tokens: {format_tokens(stats.total_tokens)} "
            f"(in {format_tokens(stats.input_tokens)}, "
            f"out {format_tokens(stats.output_tokens)})"
        )
        return False

    if cmd == "/stop":
        await session.stop()
        click.echo("Stopped. The next message resumes the conversation.")
        return False

    if cmd == "/new":
        await session.stop()
        if session.state.startable:
            session.start(session.dangerous_mode, fresh=True)
        click.echo("Started a new conversation.")
        return False

    click.echo(f"Unknown command: {cmd}")
    return False


def _read_input() -> str:
    r"""Read one message from stdin; a trailing ``\`` continues it on the next line."""
    parts: list[str] = []
    prompt = "> "
    while True:
        sys.stdout.write(prompt)
        sys.stdout.flush()
        raw = sys.stdin.readline()
        if not raw:
            raise EOFError
        text = raw.rstrip("\n")
        if not text.endswith("\\"):
            parts.append(text)
            return "\n".join(parts)
        parts.append(text[:-1])
        prompt = "... "


# ------------------------------------------------------------------ #
# Rendering
# ------------------------------------------------------------------ #


class ChatPrinter:
    """Renders session events as plain terminal output."""

    def __init__(self) -> None:
        self._streamed = False

    def on_event(self, event: SessionEvent) -> None:
        if isinstance(event, StreamDeltaEvent):
            self._streamed = True
            if event.kind == "text":
                click.echo(event.text, nl=False)
            else:
                click.echo(click.style(event.text, dim=True), nl=False)

        elif isinstance(event, ContentBlockEvent):
            if event.phase == "stop" and event.block_type in ("text", "thinking"):
                click.echo()

        elif isinstance(event, AssistantMessageEvent):
            for block in event.content:
                if block.type == "tool_use":
                    click.echo(click.style(f"[tool] {block.name}", fg="cyan"))
            if event.text and not self._streamed:
                click.echo(event.text)
            self._streamed = False

        elif isinstance(event, ResultEvent):
            cost = event.result.total_cost_usd or 0.0
            click.echo(
                click.style(
                    f"[done] ${cost:.4f} this turn, "
                    f"{format_tokens(event.stats.total_tokens)} tokens total",
                    dim=True,
                )
            )

        elif isinstance(event, ErrorOutputEvent):
            click.echo(click.style(f"[{event.context}] {event.text}", fg="red"), err=True)

        elif isinstance(event, InactivityTimeoutEvent):
            click.echo(
                click.style(
                    f"[waiting] no output for {event.seconds:g}s", fg="yellow"
                ),
                err=True,
            )

        elif isinstance(event, SessionInitializedEvent) and not event.synthetic:
            if event.model:
                click.echo(click.style(f"[session] {event.model}", dim=True))


def _first_question(request: PermissionRequest) -> str | None:
    questions = request.input.get("questions")
    if not isinstance(questions, list):
        return None
    for item in questions:
        if isinstance(item, dict) and isinstance(item.get("question"), str):
            return item["question"]
    return None


def _preview_input(tool_input: dict[str, Any]) -> str:
    text = json.dumps(tool_input, indent=2)
    if len(text) > _INPUT_PREVIEW_CHARS:
        text = text[:_INPUT_PREVIEW_CHARS] + "…"
    return text
