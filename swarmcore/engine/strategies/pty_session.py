"""One agent program running under a pseudo-terminal.

PtySession owns the process, the PTY master fd and the session's
SessionInfo. It reads output through the event loop, applies the
session's auto-response rules, runs adapter detection and drives the
status machine. Everything it learns goes out through a single
``emit(session_id, event, data)`` callback, so the same class serves
the in-process strategy and the worker process.

Detection runs on the output window: raw text received since the last
input was written. Writing input (send, send_keys, an auto-response)
clears the window so an answered prompt is never matched twice.
"""
from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import logging
import os
import signal
import struct
import termios
import time
from collections.abc import Callable
from typing import Any

from .. import events
from ..adapters.base import AgentAdapter
from ..ansi import strip_ansi
from ..errors import OrchestrationError, SpawnFailureError
from ..lifecycle import validate_transition
from ..models import (
    TERMINAL_STATUSES,
    AutoResponseRule,
    BlockingPrompt,
    SessionInfo,
    SessionStatus,
    SpawnRequest,
    StallClassification,
    StallState,
    _utcnow,
)
from ..rules import RuleMatch, RuleSet

logger = logging.getLogger(__name__)

Emit = Callable[[str, str, dict[str, Any]], None]

# Raw characters kept in the detection window.
WINDOW_CHARS = 16_000
# Delay between typing text and pressing Enter; some TUIs drop a
# carriage return that arrives in the same read as the text.
ENTER_DELAY_SECONDS = 0.05

_READ_SIZE = 65536

KEY_SEQUENCES: dict[str, str] = {
    "enter": "\r",
    "return": "\r",
    "tab": "\t",
    "escape": "\x1b",
    "esc": "\x1b",
    "up": "\x1b[A",
    "down": "\x1b[B",
    "right": "\x1b[C",
    "left": "\x1b[D",
    "backspace": "\x7f",
    "space": " ",
    "delete": "\x1b[3~",
    "home": "\x1b[H",
    "end": "\x1b[F",
}


def encode_key(key: str) -> str:
    """Translate a key name (``enter``, ``down``, ``ctrl+c``) into bytes to type.

    Anything that is not a known key name is sent as literal text.
    """
    name = key.lower()
    if name in KEY_SEQUENCES:
        return KEY_SEQUENCES[name]
    if name.startswith("ctrl+") and len(name) == 6 and "a" <= name[5] <= "z":
        return chr(ord(name[5]) - ord("a") + 1)
    return key


def _make_controlling_tty() -> None:
    # Runs in the child after setsid(): adopt the PTY slave on fd 0.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtySession:
    def __init__(
        self,
        request: SpawnRequest,
        adapter: AgentAdapter,
        emit: Emit,
        *,
        cols: int = 220,
        rows: int = 50,
        stall_timeout_seconds: float = 4.0,
        stall_max_timeout_seconds: float = 60.0,
        stop_grace_seconds: float = 3.0,
    ) -> None:
        self.request = request
        self.adapter = adapter
        self._emit_cb = emit
        self.info = SessionInfo(
            id=request.session_id,
            agent_type=request.agent_type,
            name=request.name or request.agent_type,
            workdir=request.workdir,
            metadata=dict(request.metadata),
        )
        self.rules = RuleSet(request.rules)
        self._cols = cols
        self._rows = rows
        self._stall_base = stall_timeout_seconds
        self._stall_timeout = stall_timeout_seconds
        self._stall_max = stall_max_timeout_seconds
        self._stop_grace = stop_grace_seconds

        self._proc: asyncio.subprocess.Process | None = None
        self._fd: int | None = None
        self._reading = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._window = ""
        self._stall_handle: asyncio.TimerHandle | None = None
        self._last_output_at = time.monotonic()
        self._wait_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

        self._has_been_ready = False
        self._task_in_flight = False
        self._task_started_at: float | None = None
        self._login_notified = False
        self._last_blocked_prompt: str | None = None
        self._last_tool: str | None = None
        self._stopping = False
        self._exited = asyncio.Event()

    @property
    def session_id(self) -> str:
        return self.info.id

    @property
    def status(self) -> SessionStatus:
        return self.info.status

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    # ── Process ────────────────────────────────────────────────

    async def start(self) -> SessionInfo:
        argv = self.request.argv
        env = os.environ.copy()
        env.setdefault("TERM", "xterm-256color")
        env.update(self.request.env)
        master, slave = os.openpty()
        try:
            fcntl.ioctl(
                slave, termios.TIOCSWINSZ,
                struct.pack("HHHH", self._rows, self._cols, 0, 0),
            )
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=self.request.workdir,
                env=env,
                start_new_session=True,
                preexec_fn=_make_controlling_tty,
            )
        except (OSError, ValueError) as exc:
            os.close(master)
            os.close(slave)
            logger.error(
                "Spawn failed for %s (%s): %s", self.session_id, argv[0] if argv else "?", exc,
            )
            raise SpawnFailureError(self.request.agent_type, str(exc)) from exc
        os.close(slave)

        self._fd = master
        os.set_blocking(master, False)
        asyncio.get_running_loop().add_reader(master, self._on_readable)
        self._reading = True
        self.info.pid = self._proc.pid
        self._wait_task = asyncio.create_task(self._wait_exit())
        logger.info(
            "PTY session %s started: %s (pid=%d, cwd=%s)",
            self.session_id, " ".join(argv), self._proc.pid, self.request.workdir,
        )
        self._emit(events.STATUS, self.info.to_dict())
        return self.info

    def _on_readable(self) -> None:
        if self._fd is None:
            return
        try:
            data = os.read(self._fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError as exc:
            # EIO: every slave handle is closed, i.e. the child is gone.
            if exc.errno != errno.EIO:
                logger.warning("PTY read failed for %s: %s", self.session_id, exc)
            data = b""
        if not data:
            self._stop_reading()
            return
        text = self._decoder.decode(data)
        if text:
            self._handle_output(text)

    def _stop_reading(self) -> None:
        if self._reading and self._fd is not None:
            try:
                asyncio.get_running_loop().remove_reader(self._fd)
            except RuntimeError:
                pass
        self._reading = False

    def _drain(self) -> None:
        """Read whatever the child left in the PTY before it exited."""
        while self._reading and self._fd is not None:
            try:
                data = os.read(self._fd, _READ_SIZE)
            except (BlockingIOError, OSError):
                break
            if not data:
                break
            text = self._decoder.decode(data)
            if text:
                self._handle_output(text)

    async def _wait_exit(self) -> None:
        assert self._proc is not None
        code = await self._proc.wait()
        self._drain()
        self._stop_reading()
        self._cancel_stall_timer()
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None

        was_spawning = self.info.status is SessionStatus.SPAWNING
        if self._stopping:
            target = SessionStatus.ERROR if was_spawning else SessionStatus.STOPPED
            reason = "stopped before ready" if was_spawning else "stopped"
        elif was_spawning:
            target = SessionStatus.ERROR
            reason = f"process exited before ready (code={code})"
        elif code == 0:
            target = SessionStatus.STOPPED
            reason = "process exited"
        else:
            target = SessionStatus.ERROR
            reason = f"process exited with code {code}"

        logger.info(
            "PTY session %s exited (code=%s, status=%s): %s",
            self.session_id, code, target.value, reason,
        )
        self._transition(target)
        if target is SessionStatus.STOPPED:
            self._emit(events.STOPPED, {"reason": reason, "exit_code": code})
        else:
            self._emit(events.ERROR, {"message": reason, "exit_code": code})
        self._exited.set()

    async def stop(self) -> None:
        """Terminate the process group and wait for the exit to be reported."""
        if self._proc is None or self.exited:
            return
        self._stopping = True
        self._cancel_stall_timer()
        for task in list(self._tasks):
            task.cancel()
        self._signal_group(signal.SIGHUP)
        self._signal_group(signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(self._exited.wait()), self._stop_grace)
        except asyncio.TimeoutError:
            logger.warning(
                "PTY session %s ignored SIGTERM for %.1fs, sending SIGKILL",
                self.session_id, self._stop_grace,
            )
            self._signal_group(signal.SIGKILL)
            await self._exited.wait()

    def _signal_group(self, sig: signal.Signals) -> None:
        if self._proc is None or self._proc.returncode is not None:
            return
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._proc.send_signal(sig)

    # ── Input ──────────────────────────────────────────────────

    def _check_writable(self) -> None:
        if self.info.status in TERMINAL_STATUSES or self._fd is None:
            raise OrchestrationError(
                f"Session {self.session_id} is {self.info.status.value}; cannot write"
            )

    async def _write(self, text: str) -> None:
        payload = text.encode("utf-8")
        while payload:
            if self._fd is None:
                raise OrchestrationError(f"Session {self.session_id} PTY is closed")
            try:
                written = os.write(self._fd, payload)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            payload = payload[written:]

    def _input_written(self) -> None:
        self._window = ""
        self._last_blocked_prompt = None
        self._last_tool = None
        self.info.last_activity_at = _utcnow()

    async def _type_line(self, text: str) -> None:
        self._input_written()
        await self._write_line(text)

    async def _write_line(self, text: str) -> None:
        await self._write(text)
        await asyncio.sleep(ENTER_DELAY_SECONDS)
        await self._write("\r")

    async def send(self, text: str) -> int:
        """Type *text*, press Enter, and mark the session busy."""
        self._check_writable()
        await self._type_line(text)
        self._task_in_flight = True
        self._task_started_at = time.monotonic()
        self._stall_timeout = self._stall_base
        self._transition(SessionStatus.BUSY)
        self._arm_stall_timer()
        logger.debug("Sent %d chars to %s", len(text), self.session_id)
        return len(text)

    async def send_keys(self, keys: list[str]) -> None:
        self._check_writable()
        self._input_written()
        for key in keys:
            await self._write(encode_key(key))
        if self.info.status is SessionStatus.BLOCKED:
            self._transition(SessionStatus.BUSY)
            self._arm_stall_timer()
        logger.debug("Sent keys %s to %s", keys, self.session_id)

    def add_rule(self, rule: AutoResponseRule) -> None:
        self.rules.add(rule)

    # ── Output analysis ────────────────────────────────────────

    def _handle_output(self, text: str) -> None:
        self.info.last_activity_at = _utcnow()
        self._last_output_at = time.monotonic()
        self._window = (self._window + text)[-WINDOW_CHARS:]
        if self.info.status is SessionStatus.BUSY:
            self._arm_stall_timer()
        if self.info.status in TERMINAL_STATUSES:
            self._emit(events.OUTPUT, {"data": text})
            return

        clean = strip_ansi(self._window)
        match = self.rules.match(clean)
        if match is not None:
            self._auto_respond(match)
            self._emit(events.OUTPUT, {"data": text})
            self._emit(events.BLOCKED, {
                "prompt_info": BlockingPrompt(
                    type=match.rule.type,
                    prompt=match.matched_text,
                    can_auto_respond=True,
                ).to_dict(),
                "auto_responded": True,
                "rule": match.rule.describe(),
            })
            return

        self._emit(events.OUTPUT, {"data": text})
        self._detect()

    def _auto_respond(self, match: RuleMatch) -> None:
        rule = match.rule
        self.rules.consume(match)
        # The window resets at match time only; the writer task leaves it alone.
        self._input_written()
        logger.info(
            "Auto-responding in %s (%s): %s", self.session_id, rule.type, rule.describe(),
        )
        if rule.keys:
            coro = self._write_keys_raw(list(rule.keys))
        else:
            coro = self._write_line(rule.response or "")
        self._spawn_task(coro, "auto-response")

    async def _write_keys_raw(self, keys: list[str]) -> None:
        for key in keys:
            await self._write(encode_key(key))

    def _detect(self) -> None:
        login = self.adapter.detect_login(self._window)
        if login is not None and not self._login_notified:
            self._login_notified = True
            self._cancel_stall_timer()
            self._transition(SessionStatus.BLOCKED)
            self._emit(events.LOGIN_REQUIRED, {
                "instructions": login.instructions,
                "url": login.url,
                "prompt": login.prompt,
            })
            return

        blocking = self.adapter.detect_blocking(self._window)
        if blocking is not None:
            if (
                self.info.status is not SessionStatus.BLOCKED
                or blocking.prompt != self._last_blocked_prompt
            ):
                self._last_blocked_prompt = blocking.prompt
                self._cancel_stall_timer()
                self._transition(SessionStatus.BLOCKED)
                self._emit(events.BLOCKED, {
                    "prompt_info": blocking.to_dict(),
                    "auto_responded": False,
                })
            return

        tool = self.adapter.detect_tool_running(self._window)
        if tool is not None and tool.tool_name != self._last_tool:
            self._last_tool = tool.tool_name
            self._emit(events.TOOL_RUNNING, tool.to_dict())

        status = self.info.status
        if status is SessionStatus.SPAWNING:
            if self.adapter.detect_ready(self._window):
                self._become_ready("fast-path")
        elif status in (SessionStatus.BUSY, SessionStatus.BLOCKED):
            if self.adapter.detect_turn_complete(self._window):
                self._become_ready("fast-path")

    def _become_ready(self, detection: str, response: str | None = None) -> None:
        self._cancel_stall_timer()
        if not self._transition(SessionStatus.READY):
            return
        self._login_notified = False
        if not self._has_been_ready:
            self._has_been_ready = True
            self._task_in_flight = False
            logger.info("Session %s ready", self.session_id)
            self._emit(events.READY, {})
            return
        if not self._task_in_flight:
            return
        self._task_in_flight = False
        duration_ms = 0.0
        if self._task_started_at is not None:
            duration_ms = (time.monotonic() - self._task_started_at) * 1000.0
        logger.info(
            "Task complete for %s (%s) after %.0fms",
            self.session_id, detection, duration_ms,
        )
        self._emit(events.TRACE, {
            "message": "Task completion trace",
            "detection": detection,
            "duration_ms": round(duration_ms, 1),
        })
        data: dict[str, Any] = {"detection": detection, "duration_ms": round(duration_ms, 1)}
        if response is not None:
            data["response"] = response
        self._emit(events.TASK_COMPLETE, data)

    # ── Stall handling ─────────────────────────────────────────

    def _arm_stall_timer(self) -> None:
        self._cancel_stall_timer()
        if self._stall_timeout <= 0:
            return
        loop = asyncio.get_running_loop()
        self._stall_handle = loop.call_later(self._stall_timeout, self._on_stall)

    def _cancel_stall_timer(self) -> None:
        if self._stall_handle is not None:
            self._stall_handle.cancel()
            self._stall_handle = None

    def _on_stall(self) -> None:
        self._stall_handle = None
        if self.info.status is not SessionStatus.BUSY:
            return
        stall_ms = (time.monotonic() - self._last_output_at) * 1000.0
        logger.info("Session %s stalled (%.0fms without output)", self.session_id, stall_ms)
        self._emit(events.STALLED, {"stall_ms": round(stall_ms, 1)})

    def apply_stall_classification(self, result: StallClassification | None) -> None:
        if self.info.status is not SessionStatus.BUSY:
            return
        if result is None or result.state is StallState.STILL_WORKING:
            self._stall_timeout = min(self._stall_timeout * 2, self._stall_max)
            self._arm_stall_timer()
            return
        if result.state is StallState.TASK_COMPLETE:
            self._become_ready("classifier")
            return
        prompt = BlockingPrompt(
            type="stall" if result.state is StallState.WAITING_FOR_INPUT else "error",
            prompt=result.prompt or result.reasoning or "Agent appears to be waiting",
        )
        self._last_blocked_prompt = prompt.prompt
        self._transition(SessionStatus.BLOCKED)
        self._emit(events.BLOCKED, {
            "prompt_info": prompt.to_dict(),
            "auto_responded": False,
            "classification": result.to_dict(),
        })

    # ── Plumbing ───────────────────────────────────────────────

    def _transition(self, target: SessionStatus) -> bool:
        current = self.info.status
        if current is target:
            return False
        try:
            validate_transition(current, target)
        except ValueError as exc:
            logger.debug("Session %s: %s", self.session_id, exc)
            return False
        self.info.status = target
        self._emit(events.STATUS, self.info.to_dict())
        return True

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        try:
            self._emit_cb(self.session_id, event, data)
        except Exception:
            logger.exception("Event handler failed for %s/%s", self.session_id, event)

    def _spawn_task(self, coro: Any, label: str) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("%s failed for %s: %s", label, self.session_id, exc)

        task.add_done_callback(_done)
