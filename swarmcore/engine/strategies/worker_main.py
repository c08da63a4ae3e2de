"""Session worker process entry point.

Usage:
    python -m swarmcore.engine.strategies.worker_main

Speaks the newline-delimited JSON protocol from ``protocol.py`` on
stdin/stdout and hosts PtySession objects for the built-in adapters.
stdout carries protocol frames only; logs go to stderr, where the
parent relays them into its own logging.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

from ..adapters import build_default_registry
from ..errors import SessionNotFoundError
from ..models import AutoResponseRule, SpawnRequest, StallClassification
from . import protocol
from .pty_session import PtySession

logger = logging.getLogger(__name__)


class WorkerServer:
    """Dispatches protocol requests to PtySession objects."""

    def __init__(self) -> None:
        self._adapters = build_default_registry()
        self._sessions: dict[str, PtySession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._writer: asyncio.StreamWriter | None = None
        self._tasks: set[asyncio.Task] = set()
        self._shutdown = asyncio.Event()

    async def _open_stdio(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=2 ** 24)
        await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), sys.stdin,
        )
        transport, proto = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, sys.stdout,
        )
        self._writer = asyncio.StreamWriter(transport, proto, reader, loop)
        return reader

    def _send_frame(self, frame: dict[str, Any]) -> None:
        if self._writer is None or self._writer.is_closing():
            return
        self._writer.write(protocol.encode_frame(frame))

    def _on_session_event(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        self._send_frame(protocol.push(event, session_id, data))

    async def run(self) -> None:
        reader = await self._open_stdio()
        logger.info("Session worker started")
        while not self._shutdown.is_set():
            line = await reader.readline()
            if not line:
                logger.info("Session worker stdin closed")
                break
            frame = protocol.decode_frame(line)
            if frame is None:
                continue
            task = asyncio.create_task(self._handle(frame))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        await self._stop_all()
        if self._writer is not None:
            try:
                await self._writer.drain()
            except ConnectionError:
                pass

    async def _handle(self, frame: dict[str, Any]) -> None:
        request_id = frame.get("id")
        method = str(frame.get("method", ""))
        params = frame.get("params") or {}
        session_id = params.get("session_id") if isinstance(params, dict) else None
        try:
            if method not in protocol.METHODS:
                raise ValueError(f"Unknown method: {method}")
            result = await getattr(self, f"_do_{method}")(params)
            self._send_frame(protocol.result(request_id, result))
        except Exception as exc:
            kind = protocol.error_kind_for(exc)
            if kind == protocol.KIND_INTERNAL:
                logger.exception("Worker %s failed", method)
            else:
                logger.warning("Worker %s rejected: %s", method, exc)
            self._send_frame(protocol.error(request_id, str(exc), kind, session_id))

    def _require(self, session_id: str) -> PtySession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _do_ping(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"pong": True, "sessions": len(self._sessions)}

    async def _do_spawn(self, params: dict[str, Any]) -> dict[str, Any]:
        request = SpawnRequest.from_dict(params["request"])
        options = params.get("options") or {}
        adapter = self._adapters.get_or_raise(request.agent_type)
        session = PtySession(
            request,
            adapter,
            self._on_session_event,
            cols=int(options.get("cols", 220)),
            rows=int(options.get("rows", 50)),
            stall_timeout_seconds=float(options.get("stall_timeout_seconds", 4.0)),
            stall_max_timeout_seconds=float(options.get("stall_max_timeout_seconds", 60.0)),
            stop_grace_seconds=float(options.get("stop_grace_seconds", 3.0)),
        )
        self._sessions[request.session_id] = session
        try:
            info = await session.start()
        except Exception:
            self._sessions.pop(request.session_id, None)
            raise
        return info.to_dict()

    async def _do_send(self, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params["session_id"]
        async with self._lock(session_id):
            chars = await self._require(session_id).send(str(params["text"]))
        return {"chars": chars}

    async def _do_send_keys(self, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params["session_id"]
        async with self._lock(session_id):
            await self._require(session_id).send_keys([str(k) for k in params["keys"]])
        return {"ok": True}

    async def _do_stop(self, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params["session_id"]
        session = self._sessions.get(session_id)
        if session is None:
            return {"stopped": False}
        try:
            await session.stop()
        finally:
            self._sessions.pop(session_id, None)
            self._locks.pop(session_id, None)
        return {"stopped": True}

    async def _do_add_rule(self, params: dict[str, Any]) -> dict[str, Any]:
        session = self._require(params["session_id"])
        session.add_rule(AutoResponseRule.from_dict(params["rule"]))
        return {"rules": len(session.rules)}

    async def _do_apply_stall_classification(self, params: dict[str, Any]) -> dict[str, Any]:
        session = self._sessions.get(params["session_id"])
        if session is not None:
            session.apply_stall_classification(
                StallClassification.from_dict(params.get("classification")),
            )
        return {"ok": True}

    async def _do_shutdown(self, params: dict[str, Any]) -> dict[str, Any]:
        await self._stop_all()
        self._shutdown.set()
        return {"ok": True}

    async def _stop_all(self) -> None:
        for session_id in list(self._sessions):
            try:
                await self._do_stop({"session_id": session_id})
            except Exception:
                logger.exception("Error stopping %s", session_id)


def main() -> None:
    parser = argparse.ArgumentParser(description="swarmcore PTY session worker")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    asyncio.run(WorkerServer().run())


if __name__ == "__main__":
    main()
