"""Strategy that isolates PTY sessions in a child worker process.

The worker is ``python -m swarmcore.engine.strategies.worker_main``.
Requests carry an integer id and resolve a future when the matching
response arrives; event pushes are re-emitted unchanged, except
``status`` pushes, which update the mirrored SessionInfo handles.

If the worker dies, every session it owned is marked ``error`` and
gets an ``error`` event, pending requests fail with WorkerFaultError,
and a ``worker_exit`` event is emitted for ``*``. The worker is not
restarted implicitly; call ``start()`` again to get a fresh one.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any

from .. import events
from ..config import SwarmConfig
from ..errors import OrchestrationError, WorkerFaultError
from ..models import (
    TERMINAL_STATUSES,
    AutoResponseRule,
    SessionInfo,
    SessionStatus,
    SpawnRequest,
    StallClassification,
)
from . import protocol
from .base import ExecutionStrategy

logger = logging.getLogger(__name__)
worker_logger = logging.getLogger("swarmcore.worker")

WORKER_MODULE = "swarmcore.engine.strategies.worker_main"


class WorkerStrategy(ExecutionStrategy):
    name = "worker"

    def __init__(
        self,
        config: SwarmConfig | None = None,
        *,
        python: str | None = None,
        request_timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__()
        self._config = config or SwarmConfig()
        self._python = python or sys.executable
        self._request_timeout = request_timeout_seconds
        self._proc: asyncio.subprocess.Process | None = None
        self._req_id = 0
        self._pending: dict[int, tuple[asyncio.Future, str, dict[str, Any]]] = {}
        self._handles: dict[str, SessionInfo] = {}
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()
        self._closing = False

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        if self.running:
            return
        self._closing = False
        self._proc = await asyncio.create_subprocess_exec(
            self._python, "-m", WORKER_MODULE,
            "--log-level", self._config.log_level,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=2 ** 24,
        )
        logger.info("Session worker started (pid=%d)", self._proc.pid)
        self._reader_task = asyncio.create_task(self._read_stdout(self._proc))
        self._stderr_task = asyncio.create_task(self._relay_stderr(self._proc))

    # ── Channel ────────────────────────────────────────────────

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        if not self.running:
            raise WorkerFaultError("worker is not running")
        assert self._proc is not None and self._proc.stdin is not None
        loop = asyncio.get_running_loop()
        self._req_id += 1
        request_id = self._req_id
        future: asyncio.Future = loop.create_future()
        self._pending[request_id] = (future, method, params)
        try:
            async with self._write_lock:
                self._proc.stdin.write(
                    protocol.encode_frame(protocol.request(request_id, method, params))
                )
                await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._pending.pop(request_id, None)
            raise WorkerFaultError(f"write to worker failed: {exc}") from exc
        try:
            return await asyncio.wait_for(future, self._request_timeout)
        except asyncio.TimeoutError:
            raise WorkerFaultError(
                f"worker did not answer {method} within {self._request_timeout:.0f}s"
            ) from None
        finally:
            self._pending.pop(request_id, None)

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                frame = protocol.decode_frame(line)
                if frame is not None:
                    self._dispatch(frame)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("Worker stdout reader failed")
        code = await proc.wait()
        self._on_worker_exit(code)

    async def _relay_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        try:
            while True:
                line = await proc.stderr.readline()
                if not line:
                    return
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    worker_logger.info("%s", text)
        except asyncio.CancelledError:
            return

    def _dispatch(self, frame: dict[str, Any]) -> None:
        if protocol.is_push(frame):
            self._on_push(frame)
            return
        request_id = frame.get("id")
        entry = self._pending.get(request_id) if isinstance(request_id, int) else None
        if entry is None:
            if "error" in frame:
                session_id = str(frame.get("session_id") or events.ALL_SESSIONS)
                logger.warning(
                    "Unsolicited worker error for %s: %s", session_id, frame.get("error"),
                )
                self._emit(session_id, events.ERROR, {"message": str(frame["error"])})
            else:
                logger.warning("Dropping worker response with unknown id %r", request_id)
            return
        future, method, params = entry
        if future.done():
            return
        if "error" in frame:
            future.set_exception(protocol.exception_from_error(frame, method, params))
        else:
            future.set_result(frame.get("result"))

    def _on_push(self, frame: dict[str, Any]) -> None:
        event = str(frame.get("event"))
        session_id = str(frame.get("session_id", ""))
        data = frame.get("data") or {}
        if event == events.STATUS:
            self._mirror(session_id, data)
            return
        self._emit(session_id, event, data)

    def _mirror(self, session_id: str, data: dict[str, Any]) -> None:
        try:
            snapshot = SessionInfo.from_dict(data)
        except (KeyError, ValueError):
            logger.warning("Dropping malformed status push for %s: %r", session_id, data)
            return
        handle = self._handles.get(session_id)
        if handle is None:
            self._handles[session_id] = snapshot
            return
        handle.status = snapshot.status
        handle.pid = snapshot.pid
        handle.last_activity_at = snapshot.last_activity_at

    def _on_worker_exit(self, code: int | None) -> None:
        sig_name = None
        if code is not None and code < 0:
            try:
                sig_name = signal.Signals(-code).name
            except ValueError:
                sig_name = str(-code)
        expected = self._closing
        log = logger.info if expected else logger.error
        log("Session worker exited (code=%s, signal=%s)", code, sig_name)

        fault = WorkerFaultError("worker exited", code=code, signal=sig_name)
        for future, _, _ in list(self._pending.values()):
            if not future.done():
                future.set_exception(fault)
        self._pending.clear()

        self._emit(events.ALL_SESSIONS, events.WORKER_EXIT, {"code": code, "signal": sig_name})
        for session_id, handle in list(self._handles.items()):
            if handle.status in TERMINAL_STATUSES:
                continue
            handle.status = SessionStatus.ERROR
            self._emit(session_id, events.ERROR, {"message": str(fault)})
        self._proc = None

    # ── Strategy API ───────────────────────────────────────────

    async def spawn(self, request: SpawnRequest) -> SessionInfo:
        if not self.running:
            await self.start()
        options = {
            "cols": self._config.pty_cols,
            "rows": self._config.pty_rows,
            "stall_timeout_seconds": self._config.stall_timeout_seconds,
            "stall_max_timeout_seconds": self._config.stall_max_timeout_seconds,
            "stop_grace_seconds": self._config.stop_grace_seconds,
        }
        result = await self._call("spawn", {"request": request.to_dict(), "options": options})
        snapshot = SessionInfo.from_dict(result)
        handle = self._handles.get(request.session_id)
        if handle is None:
            self._handles[request.session_id] = snapshot
            return snapshot
        handle.pid = snapshot.pid
        return handle

    async def send(self, session_id: str, text: str) -> int:
        result = await self._call("send", {"session_id": session_id, "text": text})
        return int((result or {}).get("chars", len(text)))

    async def send_keys(self, session_id: str, keys: list[str]) -> None:
        await self._call("send_keys", {"session_id": session_id, "keys": list(keys)})

    async def stop(self, session_id: str) -> None:
        if session_id not in self._handles:
            return
        try:
            if self.running:
                await self._call("stop", {"session_id": session_id})
        finally:
            self._handles.pop(session_id, None)

    async def add_rule(self, session_id: str, rule: AutoResponseRule) -> None:
        await self._call("add_rule", {"session_id": session_id, "rule": rule.to_dict()})

    async def apply_stall_classification(
        self, session_id: str, result: StallClassification | None,
    ) -> None:
        if session_id not in self._handles or not self.running:
            return
        await self._call("apply_stall_classification", {
            "session_id": session_id,
            "classification": result.to_dict() if result else None,
        })

    def get(self, session_id: str) -> SessionInfo | None:
        return self._handles.get(session_id)

    def list(self) -> list[SessionInfo]:
        return list(self._handles.values())

    async def ping(self) -> dict[str, Any]:
        return await self._call("ping", {})

    async def shutdown(self) -> None:
        if self._proc is None:
            return
        proc = self._proc
        self._closing = True
        if proc.returncode is None:
            try:
                await self._call("shutdown", {})
            except OrchestrationError as exc:
                logger.warning("Worker shutdown request failed: %s", exc)
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.close()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._config.stop_grace_seconds + 2)
            except asyncio.TimeoutError:
                logger.warning("Worker did not exit after shutdown; killing")
                proc.kill()
                await proc.wait()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
        if self._stderr_task is not None:
            await asyncio.gather(self._stderr_task, return_exceptions=True)
        self._handles.clear()
