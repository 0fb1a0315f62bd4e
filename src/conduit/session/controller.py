"""Agent session: drives the agent CLI one turn at a time over stream-json."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from types import TracebackType

from conduit.config.models import SessionConfig
from conduit.constants import DEFAULT_DENY_MESSAGE, Dispatcher
from conduit.errors import ProtocolDecodeError, SessionClosedError, SessionStateError
from conduit.process.helpers import format_stderr_preview, is_diagnostic_line
from conduit.process.launcher import (
    agent_version,
    build_args,
    build_env,
    resolve_binary,
    spawn,
    terminate_process_tree,
)
from conduit.protocol.codec import (
    decode_line,
    encode_allow,
    encode_deny,
    encode_user_message,
    merge_answer,
    preview,
)
from conduit.protocol.messages import (
    AssistantMessage,
    ControlRequest,
    IncomingMessage,
    ResultMessage,
    StreamEventMessage,
    SystemMessage,
)
from conduit.session.models import (
    AssistantMessageEvent,
    ContentBlockEvent,
    DecodeErrorEvent,
    ErrorOutputEvent,
    InactivityTimeoutEvent,
    PermissionRequest,
    PermissionRequestedEvent,
    ProcessExitedEvent,
    ResultEvent,
    SessionEvent,
    SessionInitializedEvent,
    SessionStats,
    StateChangedEvent,
    StreamDeltaEvent,
)
from conduit.session.recorder import EventRecorder
from conduit.session.state import SessionState, can_transition
from conduit.session.turn import Turn
from conduit.watchdog import InactivityWatchdog

logger = logging.getLogger(__name__)

#: Seconds to let the stderr reader drain after the process exits.
_STDERR_DRAIN_WAIT = 1.0

EventCallback = Callable[[SessionEvent], None]


class AgentSession:
    """One conversation with the agent CLI.

    Each call to :meth:`send_message` starts a :class:`Turn`: a fresh agent
    process that receives one user message and streams events back until
    it emits a ``result``.  The remote session id captured from the first
    turn is passed as ``--resume`` to every later turn.

    All state lives on the event loop that drives the session; public
    methods validate the current state before their first ``await``, so a
    call that is illegal in the current state raises
    :class:`~conduit.errors.SessionStateError` without touching the process.
    Environmental failures never raise: they move the session to
    ``error`` and are reported through events.

    Notifications are delivered to subscribers via *dispatcher*, which
    receives a zero-argument callable (for example
    ``loop.call_soon_threadsafe`` of a UI loop).  Without one, subscribers
    are called inline.
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        dispatcher: Dispatcher | None = None,
        recorder: EventRecorder | None = None,
        label: str = "agent",
    ) -> None:
        self._config = config if config is not None else SessionConfig()
        self._dispatcher = dispatcher
        self._recorder = recorder
        self.label = label

        self._subscribers: list[EventCallback] = []
        self._seq = 0

        self._state = SessionState.NOT_STARTED
        self._dangerous = False
        self._pending: PermissionRequest | None = None
        self._session_id: str | None = None
        self._model: str | None = self._config.model
        self._stats = SessionStats()
        self._last_diagnostic: str | None = None

        # Turn tracking: the in-flight turn, plus completed turns whose
        # process may still be exiting.
        self._turn: Turn | None = None
        self._retiring: set[Turn] = set()
        self._turn_counter = 0
        self._last_turn: Turn | None = None

        self._closed = False
        self._watchdog = InactivityWatchdog(
            self._config.inactivity_timeout, self._on_inactivity
        )

    # ------------------------------------------------------------------ #
    # Read-only accessors
    # ------------------------------------------------------------------ #

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def dangerous_mode(self) -> bool:
        return self._dangerous

    @property
    def pending_permission(self) -> PermissionRequest | None:
        return self._pending

    @property
    def session_id(self) -> str | None:
        """Remote session id issued by the agent, replayed via ``--resume``."""
        return self._session_id

    @property
    def model(self) -> str | None:
        return self._model

    @property
    def stats(self) -> SessionStats:
        return self._stats

    @property
    def current_turn(self) -> Turn | None:
        """The turn in flight, or ``None`` between turns."""
        return self._turn

    @property
    def streamed_text(self) -> str:
        turn = self._turn or self._last_turn
        return turn.buffer.text if turn is not None else ""

    @property
    def streamed_thinking(self) -> str:
        turn = self._turn or self._last_turn
        return turn.buffer.thinking if turn is not None else ""

    @property
    def last_diagnostic(self) -> str | None:
        return self._last_diagnostic

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register *callback* for every event; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers.remove(callback)

        return _unsubscribe

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def is_available(self) -> bool:
        """True if the configured agent binary answers ``--version``."""
        version = await agent_version(
            self._config.binary, self._config.version_check_timeout
        )
        return version is not None

    def start(self, unrestricted: bool = False, *, fresh: bool = False) -> None:
        """Arm the session.  No process is spawned until the first message.

        Args:
            unrestricted: Skip all permission negotiation for this session.
            fresh: Forget the remote session id so the next turn starts a
                new conversation instead of resuming the previous one.

        Raises:
            SessionStateError: Unless the session is not started, exited,
                or in error.
        """
        self._ensure_open()
        if not self._state.startable:
            msg = f"Cannot start session in state {self._state}"
            raise SessionStateError(msg)

        self._dangerous = unrestricted
        if fresh:
            self._session_id = None
        self._last_diagnostic = None

        self._set_state(SessionState.INITIALIZING)
        self._emit(
            SessionInitializedEvent(
                session_id=self._session_id,
                model=self._model,
                permission_mode="bypassPermissions" if unrestricted else "default",
                cwd=str(self._config.working_directory),
                synthetic=True,
            )
        )
        self._set_state(SessionState.IDLE)
        logger.info(
            "%s: session started (unrestricted=%s, resume=%s)",
            self.label,
            unrestricted,
            self._session_id,
        )

    async def send_message(self, text: str) -> Turn:
        """Start a turn: spawn the agent and write *text* as the user message.

        Returns the :class:`Turn`.  If the process cannot be launched the
        session moves to ``error`` and the returned turn has no process.

        Raises:
            SessionStateError: If the session is not ``idle``.
        """
        self._ensure_open()
        if self._state is not SessionState.IDLE:
            msg = f"Cannot send message in state {self._state}"
            raise SessionStateError(msg)

        self._turn_counter += 1
        argv = [
            resolve_binary(self._config.binary),
            *build_args(
                resume_id=self._session_id,
                unrestricted=self._dangerous,
                model=self._config.model,
                extra_args=self._config.extra_args,
            ),
        ]
        turn = Turn(number=self._turn_counter, argv=argv)
        self._turn = turn
        self._last_turn = turn
        self._set_state(SessionState.WORKING)

        try:
            proc = await spawn(
                argv,
                cwd=self._config.working_directory,
                env=build_env(self._config),
                limit=self._config.max_line_bytes,
            )
        except OSError as exc:
            if self._turn is turn:
                self._turn = None
                self._fail(
                    f"Failed to start {self._config.binary}: {exc}", context="launch"
                )
            return turn

        if self._turn is not turn:
            # Stopped while the process was being created.
            await terminate_process_tree(proc, 0.0, self._config.kill_grace_period)
            return turn

        turn.process = proc
        logger.info("%s: turn %d started (pid %s)", self.label, turn.number, proc.pid)
        turn.reader = asyncio.create_task(self._read_stdout(turn))
        turn.stderr_reader = asyncio.create_task(self._read_stderr(turn))
        self._watchdog.start()

        await self._write(turn, encode_user_message(text))
        return turn

    async def allow(self) -> None:
        """Allow the pending tool use with its original input.

        Raises:
            SessionStateError: If no permission request is pending.
        """
        request, turn = self._require_pending()
        line = encode_allow(request.request_id, request.tool_use_id, request.input)
        await self._resolve_permission(turn, line, "allowed", request)

    async def answer_question(self, question: str, answer: str) -> None:
        """Allow the pending request with *answer* merged into its input.

        Used for tools that ask the user a question; the answer is filed
        under ``answers[question]`` in the echoed input.

        Raises:
            SessionStateError: If no permission request is pending.
        """
        request, turn = self._require_pending()
        merged = merge_answer(request.input, question, answer)
        line = encode_allow(request.request_id, request.tool_use_id, merged)
        await self._resolve_permission(turn, line, "answered", request)

    async def deny(self, reason: str | None = None) -> None:
        """Deny the pending tool use, telling the agent *reason*.

        Raises:
            SessionStateError: If no permission request is pending.
        """
        request, turn = self._require_pending()
        line = encode_deny(
            request.request_id, request.tool_use_id, reason or DEFAULT_DENY_MESSAGE
        )
        await self._resolve_permission(turn, line, "denied", request)

    async def stop(self) -> None:
        """Stop the session, ending any turn in flight.

        Readers are cancelled first, then stdin is closed and the process is
        given ``stop_grace_period`` seconds before its process tree is
        terminated.  Returns once every process has been reaped.
        """
        if self._closed:
            return
        await self._shutdown(self._config.stop_grace_period)

    async def aclose(self) -> None:
        """Dispose of the session.  Idempotent.

        Kills any live process without a grace period.  Further calls to
        start/send/allow/deny raise :class:`~conduit.errors.SessionClosedError`.
        """
        if self._closed:
            return
        self._closed = True
        await self._shutdown(0.0)
        self._subscribers.clear()

    async def __aenter__(self) -> AgentSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # State and notifications
    # ------------------------------------------------------------------ #

    def _ensure_open(self) -> None:
        if self._closed:
            msg = "Session has been closed"
            raise SessionClosedError(msg)

    def _set_state(self, target: SessionState) -> None:
        previous = self._state
        if previous is target:
            return
        if not can_transition(previous, target):
            msg = f"Illegal state transition {previous} -> {target}"
            raise SessionStateError(msg)
        self._state = target
        logger.debug("%s: state %s -> %s", self.label, previous, target)
        self._emit(StateChangedEvent(previous=previous, state=target))

    def _emit(self, event: SessionEvent) -> None:
        event.seq = self._seq
        event.ts = _iso_now()
        self._seq += 1
        if self._recorder is not None:
            self._recorder.record(event)
        for callback in list(self._subscribers):
            deliver = functools.partial(self._deliver, callback, event)
            if self._dispatcher is None:
                deliver()
            else:
                self._dispatcher(deliver)

    def _deliver(self, callback: EventCallback, event: SessionEvent) -> None:
        try:
            callback(event)
        except Exception:
            logger.exception("%s: subscriber failed on %s event", self.label, event.type)

    def _fail(self, message: str, *, context: str) -> None:
        """Record an environmental failure and move to ``error``."""
        logger.error("%s: %s", self.label, message)
        self._watchdog.stop()
        self._pending = None
        self._last_diagnostic = message
        self._set_state(SessionState.ERROR)
        self._emit(ErrorOutputEvent(text=message, context=context))

    def _on_inactivity(self) -> None:
        turn = self._turn
        if self._state is not SessionState.WORKING or turn is None:
            return
        seconds = self._config.inactivity_timeout
        logger.warning(
            "%s: no output from turn %d for %gs", self.label, turn.number, seconds
        )
        self._emit(InactivityTimeoutEvent(seconds=seconds, turn=turn.number))

    # ------------------------------------------------------------------ #
    # Permission round-trip
    # ------------------------------------------------------------------ #

    def _require_pending(self) -> tuple[PermissionRequest, Turn]:
        self._ensure_open()
        request = self._pending
        turn = self._turn
        if (
            request is None
            or turn is None
            or self._state is not SessionState.WAITING_FOR_PERMISSION
        ):
            msg = f"No permission request is pending (state {self._state})"
            raise SessionStateError(msg)
        return request, turn

    async def _resolve_permission(
        self,
        turn: Turn,
        line: str,
        verdict: str,
        request: PermissionRequest,
    ) -> None:
        self._pending = None
        self._set_state(SessionState.WORKING)
        self._watchdog.start()
        logger.info(
            "%s: %s %s (request %s)",
            self.label,
            verdict,
            request.tool_name,
            request.request_id,
        )
        await self._write(turn, line)

    # ------------------------------------------------------------------ #
    # Writing
    # ------------------------------------------------------------------ #

    async def _write(self, turn: Turn, line: str) -> None:
        proc = turn.process
        if proc is None or proc.stdin is None:
            return
        logger.debug("%s: -> %s", self.label, preview(line))
        try:
            proc.stdin.write((line + "\n").encode())
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            # The reader observes the exit and settles the state.
            message = f"Write error: {exc}"
            logger.warning("%s: %s", self.label, message)
            self._last_diagnostic = message
            self._emit(ErrorOutputEvent(text=message, context="write"))

    # ------------------------------------------------------------------ #
    # Reader loops
    # ------------------------------------------------------------------ #

    async def _read_stdout(self, turn: Turn) -> None:
        """Read NDJSON from the turn's stdout until EOF, then reconcile."""
        proc = turn.process
        if proc is None or proc.stdout is None:
            return

        failure: str | None = None
        try:
            while True:
                try:
                    line_bytes = await proc.stdout.readline()
                except ValueError:
                    logger.warning(
                        "%s: stdout line exceeded %d bytes, skipping",
                        self.label,
                        self._config.max_line_bytes,
                    )
                    continue

                if not line_bytes:
                    break

                line = line_bytes.decode(errors="replace")
                if not line.strip():
                    continue

                if turn is self._turn and self._state is SessionState.WORKING:
                    # Re-arm even after a timeout fired, so a later stall is
                    # reported too.
                    self._watchdog.start()
                self._handle_line(turn, line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("%s: read loop error", self.label)
            failure = f"Read error: {exc}"

        await self._finish_turn(turn, failure)

    async def _read_stderr(self, turn: Turn) -> None:
        """Collect stderr; escalate lines that look like warnings or errors."""
        proc = turn.process
        if proc is None or proc.stderr is None:
            return

        try:
            while True:
                try:
                    line_bytes = await proc.stderr.readline()
                except ValueError:
                    continue
                if not line_bytes:
                    break
                text = line_bytes.decode(errors="replace").rstrip()
                if not text.strip():
                    continue
                turn.stderr_lines.append(text)
                logger.debug("%s: stderr: %s", self.label, text)
                if is_diagnostic_line(text):
                    self._last_diagnostic = text
                    self._emit(ErrorOutputEvent(text=text, context="stderr"))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s: stderr reader failed: %s", self.label, exc)

    async def _finish_turn(self, turn: Turn, failure: str | None) -> None:
        """Reconcile state once a turn's stdout has ended."""
        proc = turn.process
        exit_code: int | None = None
        if proc is not None:
            if failure is not None and proc.returncode is None:
                exit_code = await terminate_process_tree(
                    proc, 0.0, self._config.kill_grace_period
                )
            else:
                exit_code = await proc.wait()
        if turn.stderr_reader is not None and not turn.stderr_reader.done():
            await asyncio.wait({turn.stderr_reader}, timeout=_STDERR_DRAIN_WAIT)

        turn.exit_code = exit_code
        self._retiring.discard(turn)

        if turn is not self._turn:
            # The result already arrived; the exit code is informational.
            self._emit(
                ProcessExitedEvent(
                    exit_code=exit_code,
                    turn=turn.number,
                    after_result=turn.result_seen,
                )
            )
            if exit_code not in (0, None):
                message = (
                    f"Agent exited with code {exit_code} after completing "
                    f"turn {turn.number}"
                )
                logger.warning("%s: %s", self.label, message)
                self._emit(ErrorOutputEvent(text=message, context="exit"))
            return

        # Output ended while the turn was still in flight.
        self._turn = None
        if failure is not None:
            reason, context = failure, "read"
        elif exit_code not in (0, None):
            reason = f"Agent exited with code {exit_code} before sending a result"
            context = "exit"
        else:
            reason = "Agent output ended before a result was received"
            context = "exit"
        stderr_preview = format_stderr_preview(turn.stderr_text)
        if stderr_preview:
            reason += f". Stderr:\n  {stderr_preview}"

        self._emit(
            ProcessExitedEvent(exit_code=exit_code, turn=turn.number, after_result=False)
        )
        self._fail(reason, context=context)

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    def _handle_line(self, turn: Turn, line: str) -> None:
        try:
            message = decode_line(line)
        except ProtocolDecodeError as exc:
            logger.warning(
                "%s: skipping undecodable line (%s): %s",
                self.label,
                exc,
                preview(exc.line),
            )
            self._emit(DecodeErrorEvent(error=str(exc), line=preview(exc.line)))
            return

        if message is None:
            return
        if turn is not self._turn:
            logger.debug(
                "%s: ignoring %s from finished turn %d",
                self.label,
                message.type,
                turn.number,
            )
            return
        self._dispatch(turn, message)

    def _dispatch(self, turn: Turn, message: IncomingMessage) -> None:
        if isinstance(message, SystemMessage):
            self._on_system(message)
        elif isinstance(message, AssistantMessage):
            self._on_assistant(turn, message)
        elif isinstance(message, StreamEventMessage):
            self._on_stream_event(turn, message)
        elif isinstance(message, ResultMessage):
            self._on_result(turn, message)
        elif isinstance(message, ControlRequest):
            self._on_control_request(message)

    def _on_system(self, message: SystemMessage) -> None:
        if not message.is_init:
            logger.debug("%s: system/%s ignored", self.label, message.subtype)
            return
        if message.session_id:
            self._session_id = message.session_id
        if message.model:
            self._model = message.model
        self._emit(
            SessionInitializedEvent(
                session_id=self._session_id,
                model=self._model,
                permission_mode=message.permission_mode,
                cwd=message.cwd,
                tools=message.tools,
                synthetic=False,
            )
        )

    def _on_assistant(self, turn: Turn, message: AssistantMessage) -> None:
        blocks = message.message.content
        texts = [b.text for b in blocks if b.type == "text" and b.text is not None]
        thoughts = [
            b.thinking for b in blocks if b.type == "thinking" and b.thinking is not None
        ]
        final_text = "".join(texts)
        turn.buffer.supersede(
            final_text if texts else None,
            "".join(thoughts) if thoughts else None,
        )
        self._emit(
            AssistantMessageEvent(uuid=message.uuid, content=blocks, text=final_text)
        )

    def _on_stream_event(self, turn: Turn, message: StreamEventMessage) -> None:
        event = message.event
        index = event.index or 0

        if event.type == "content_block_start":
            block = event.content_block
            block_type = block.type if block is not None and block.type else "unknown"
            turn.block_types[index] = block_type
            self._emit(
                ContentBlockEvent(phase="start", index=index, block_type=block_type)
            )

        elif event.type == "content_block_stop":
            block_type = turn.block_types.pop(index, "unknown")
            self._emit(
                ContentBlockEvent(phase="stop", index=index, block_type=block_type)
            )

        elif event.type == "content_block_delta" and event.delta is not None:
            delta = event.delta
            if delta.type == "text_delta":
                fragment = delta.text or ""
                accumulated = turn.buffer.append_text(fragment)
                kind = "text"
            elif delta.type == "thinking_delta":
                fragment = delta.thinking if delta.thinking is not None else delta.text or ""
                accumulated = turn.buffer.append_thinking(fragment)
                kind = "thinking"
            else:
                return
            self._emit(
                StreamDeltaEvent(
                    kind=kind, index=index, text=fragment, accumulated=accumulated
                )
            )

    def _on_result(self, turn: Turn, message: ResultMessage) -> None:
        turn.result = message
        self._watchdog.stop()
        self._stats.add(message)
        if message.session_id:
            self._session_id = message.session_id

        errors = list(message.errors or [])
        if message.is_error and not errors and message.result:
            errors.append(message.result)
        for error in errors:
            self._last_diagnostic = error
            self._emit(ErrorOutputEvent(text=error, context="result"))

        if self._pending is not None:
            logger.warning(
                "%s: result arrived with permission request %s outstanding",
                self.label,
                self._pending.request_id,
            )
            self._pending = None
            self._set_state(SessionState.WORKING)

        # The turn is over; its process is left to exit on its own.
        self._turn = None
        self._retiring.add(turn)
        self._set_state(SessionState.IDLE)
        self._emit(ResultEvent(result=message, stats=self._stats.model_copy()))
        turn.close_input()
        logger.info(
            "%s: turn %d complete (%s, %s turns, $%.4f)",
            self.label,
            turn.number,
            message.subtype or "result",
            message.num_turns,
            message.total_cost_usd or 0.0,
        )

    def _on_control_request(self, message: ControlRequest) -> None:
        if not message.is_permission_request:
            logger.info(
                "%s: ignoring control request subtype %r",
                self.label,
                message.request.subtype,
            )
            return
        if self._pending is not None:
            logger.warning(
                "%s: protocol violation: permission request %s arrived while %s "
                "is still pending",
                self.label,
                message.request_id,
                self._pending.request_id,
            )
            return

        body = message.request
        request = PermissionRequest(
            request_id=message.request_id,
            tool_name=body.tool_name or "",
            tool_use_id=body.tool_use_id,
            input=body.input,
        )
        self._watchdog.stop()
        self._pending = request
        self._set_state(SessionState.WAITING_FOR_PERMISSION)
        self._emit(PermissionRequestedEvent(request=request))

    # ------------------------------------------------------------------ #
    # Shutdown
    # ------------------------------------------------------------------ #

    async def _shutdown(self, grace_period: float) -> None:
        turns: list[Turn] = []
        if self._turn is not None:
            turns.append(self._turn)
        turns.extend(t for t in self._retiring if t is not self._turn)
        self._turn = None
        self._retiring.clear()

        # Readers go first so none of them sees the closing pipes as a failure.
        readers: list[asyncio.Task[None]] = []
        for turn in turns:
            readers.extend(turn.cancel_readers())
        self._watchdog.stop()
        self._pending = None

        if self._state in (
            SessionState.INITIALIZING,
            SessionState.IDLE,
            SessionState.WORKING,
            SessionState.WAITING_FOR_PERMISSION,
        ):
            self._set_state(SessionState.EXITED)

        if readers:
            await asyncio.gather(*readers, return_exceptions=True)
        await asyncio.gather(*(self._teardown(turn, grace_period) for turn in turns))

    async def _teardown(self, turn: Turn, grace_period: float) -> None:
        proc = turn.process
        if proc is None:
            return
        turn.close_input()
        exit_code = await terminate_process_tree(
            proc, grace_period, self._config.kill_grace_period
        )
        turn.exit_code = exit_code
        logger.info(
            "%s: turn %d process stopped (exit code %s)",
            self.label,
            turn.number,
            exit_code,
        )
        self._emit(
            ProcessExitedEvent(
                exit_code=exit_code, turn=turn.number, after_result=turn.result_seen
            )
        )


def _iso_now() -> str:
    """Return the current UTC time as ISO 8601 with milliseconds."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
