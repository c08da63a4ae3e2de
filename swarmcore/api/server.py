"""HTTP + SSE server for the swarm orchestrator.

Thin adapter over SessionManager and SwarmCoordinator: all state
lives there, this module only routes requests, maps errors onto
status codes and fans events out to Server-Sent Events clients.

Usage:
    swarmcore --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from ..coordinator import SupervisionLevel, SwarmCoordinator
from ..engine import events
from ..engine.config import SwarmConfig
from ..engine.errors import (
    OrchestrationError,
    PendingConfirmationNotFoundError,
    SessionNotFoundError,
    SpawnFailureError,
    UnknownAgentTypeError,
)
from ..engine.models import (
    AgentCredentials,
    ApprovalPreset,
    SessionFilter,
    SessionStatus,
    SpawnConfig,
)
from ..engine.session_manager import SessionManager

logger = logging.getLogger(__name__)

_SUPERVISION_ERROR = 'Invalid supervision level. Must be "autonomous", "confirm", or "notify"'

_SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _error_for(exc: Exception) -> web.Response:
    if isinstance(exc, (SessionNotFoundError, PendingConfirmationNotFoundError)):
        return _error(str(exc), 404)
    if isinstance(exc, UnknownAgentTypeError):
        return _error(str(exc), 404)
    if isinstance(exc, SpawnFailureError):
        return _error(exc.reason, 500)
    if isinstance(exc, ValueError):
        return _error(str(exc), 400)
    return _error(str(exc), 500)


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValueError("Request body is not valid JSON") from None
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _sse(event: str, data: Any) -> bytes:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n".encode()


class SwarmServer:
    """HTTP + SSE surface for sessions and the coordinator."""

    def __init__(
        self,
        manager: SessionManager,
        coordinator: SwarmCoordinator,
        config: SwarmConfig | None = None,
        *,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        self._manager = manager
        self._coordinator = coordinator
        self._config = config or SwarmConfig()
        self._host = host or self._config.host
        self._port = self._config.port if port is None else port
        self._started_at = time.time()
        self._sse_clients = 0
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-swarm-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)

        r.add_get("/api/agents", self._handle_list_agents)
        r.add_get("/api/agents/{type}/workspace-files", self._handle_workspace_files)
        r.add_get("/api/agents/{type}/approval-config", self._handle_approval_config)
        r.add_get("/api/metrics", self._handle_metrics)

        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_post("/api/sessions", self._handle_spawn)
        r.add_get("/api/sessions/{id}", self._handle_get_session)
        r.add_delete("/api/sessions/{id}", self._handle_stop)
        r.add_post("/api/sessions/{id}/send", self._handle_send)
        r.add_post("/api/sessions/{id}/keys", self._handle_send_keys)
        r.add_get("/api/sessions/{id}/output", self._handle_get_output)
        r.add_get("/api/sessions/{id}/output/stream", self._handle_output_stream)

        r.add_get("/api/coordinator/status", self._handle_coordinator_status)
        r.add_get("/api/coordinator/tasks/{session_id}", self._handle_get_task)
        r.add_get("/api/coordinator/pending", self._handle_list_pending)
        r.add_post("/api/coordinator/confirm/{session_id}", self._handle_confirm)
        r.add_get("/api/coordinator/supervision", self._handle_get_supervision)
        r.add_post("/api/coordinator/supervision", self._handle_set_supervision)
        r.add_get("/api/coordinator/events", self._handle_coordinator_events)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server, print the port to stdout and serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("swarmcore server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("swarmcore server listening on %s:%d", self._host, actual_port)

        self._coordinator.start()
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._coordinator.stop()
            await self._manager.shutdown()
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Health / agents / metrics ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "strategy": self._manager.strategy.name,
            "session_count": len(self._manager.list()),
            "supervision_level": self._coordinator.supervision_level.value,
            "sse_clients": self._sse_clients,
        })

    async def _handle_list_agents(self, request: web.Request) -> web.Response:
        return web.json_response({
            "agent_types": self._manager.list_agent_types(),
            "preflight": self._manager.preflight(),
        })

    async def _handle_workspace_files(self, request: web.Request) -> web.Response:
        try:
            return web.json_response(self._manager.workspace_files(request.match_info["type"]))
        except OrchestrationError as exc:
            return _error_for(exc)

    async def _handle_approval_config(self, request: web.Request) -> web.Response:
        preset = request.query.get("preset", ApprovalPreset.STANDARD.value)
        try:
            return web.json_response(
                self._manager.approval_preview(request.match_info["type"], preset)
            )
        except ValueError:
            presets = ", ".join(p.value for p in ApprovalPreset)
            return _error(f"Invalid preset {preset!r}. Must be one of: {presets}", 400)
        except OrchestrationError as exc:
            return _error_for(exc)

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        return web.json_response({"agents": self._manager.metrics.get_all()})

    # ── Sessions ──

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        statuses = None
        raw_status = request.query.get("status", "").strip()
        if raw_status:
            try:
                statuses = {SessionStatus(s.strip()) for s in raw_status.split(",") if s.strip()}
            except ValueError:
                return _error(f"Invalid status filter: {raw_status}", 400)
        session_filter = SessionFilter(
            statuses=statuses,
            agent_type=request.query.get("agent_type") or None,
        )
        sessions = self._manager.list(session_filter)
        return web.json_response({"sessions": [s.to_dict() for s in sessions]})

    async def _handle_spawn(self, request: web.Request) -> web.Response:
        try:
            body = await _read_json(request)
            preset = body.get("approval_preset")
            config = SpawnConfig(
                agent_type=str(body.get("agent_type") or "claude"),
                name=str(body.get("name") or ""),
                workdir=body.get("workdir"),
                initial_task=body.get("task") or body.get("initial_task"),
                env={str(k): str(v) for k, v in (body.get("env") or {}).items()},
                memory_content=body.get("memory_content"),
                approval_preset=ApprovalPreset(preset) if preset else None,
                credentials=(
                    AgentCredentials.from_dict(body["credentials"])
                    if body.get("credentials") else None
                ),
                model=body.get("model"),
                metadata=dict(body.get("metadata") or {}),
            )
            if body.get("coordinate", True):
                info = await self._coordinator.dispatch_task(config, label=body.get("label"))
            else:
                info = await self._manager.spawn(config)
        except (OrchestrationError, ValueError) as exc:
            return _error_for(exc)
        task = self._coordinator.get_task(info.id)
        return web.json_response(
            {**info.to_dict(), "task": task.to_dict() if task else None},
            status=201,
        )

    async def _handle_get_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        info = self._manager.get_session(session_id)
        if info is None:
            return _error(f"Session {session_id} not found", 404)
        return web.json_response(info.to_dict())

    async def _handle_stop(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        if self._manager.get_session(session_id) is None:
            return _error(f"Session {session_id} not found", 404)
        try:
            await self._manager.stop(session_id)
        except OrchestrationError as exc:
            return _error_for(exc)
        return web.json_response({"ok": True, "session_id": session_id})

    async def _handle_send(self, request: web.Request) -> web.Response:
        try:
            body = await _read_json(request)
            text = body.get("text")
            if not isinstance(text, str):
                raise ValueError("text is required")
            ack = await self._manager.send(request.match_info["id"], text)
        except (OrchestrationError, ValueError) as exc:
            return _error_for(exc)
        except OSError as exc:
            return _error(f"Write failed: {exc}", 500)
        return web.json_response(ack.to_dict())

    async def _handle_send_keys(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        try:
            body = await _read_json(request)
            keys = body.get("keys")
            if isinstance(keys, str):
                keys = [keys]
            if not isinstance(keys, list) or not keys:
                raise ValueError("keys must be a non-empty list")
            await self._manager.send_keys(session_id, [str(k) for k in keys])
        except (OrchestrationError, ValueError) as exc:
            return _error_for(exc)
        except OSError as exc:
            return _error(f"Write failed: {exc}", 500)
        return web.json_response({"ok": True, "session_id": session_id})

    async def _handle_get_output(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        try:
            lines = int(request.query.get("lines", "100"))
        except ValueError:
            return _error("lines must be an integer", 400)
        try:
            output = self._manager.get_output(session_id, max(1, lines))
        except SessionNotFoundError as exc:
            return _error_for(exc)
        return web.json_response({"session_id": session_id, "output": output})

    async def _handle_output_stream(self, request: web.Request) -> web.StreamResponse:
        session_id = request.match_info["id"]
        queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue(
            maxsize=self._config.sse_queue_size,
        )

        def _put(event: str, data: dict[str, Any]) -> None:
            try:
                queue.put_nowait((event, data))
            except asyncio.QueueFull:
                logger.warning("Output stream queue full for %s, dropping %s", session_id, event)

        def _on_lifecycle(sid: str, event: str, data: dict[str, Any]) -> None:
            if sid == session_id and event in (events.STOPPED, events.ERROR, events.READY, events.BLOCKED):
                _put(event, dict(data))

        try:
            unsubscribe_output = self._manager.subscribe_output(
                session_id, lambda chunk: _put(events.OUTPUT, {"data": chunk}),
            )
        except SessionNotFoundError as exc:
            return _error_for(exc)
        unsubscribe_lifecycle = self._manager.subscribe(_on_lifecycle)

        response = web.StreamResponse(status=200, headers=_SSE_HEADERS)
        await response.prepare(request)
        self._sse_clients += 1
        logger.info("Output stream opened for %s req=%s", session_id, request.get("req_id", "unknown"))
        try:
            await response.write(b":ok\n\n")
            while True:
                try:
                    event, data = await asyncio.wait_for(
                        queue.get(), timeout=self._config.sse_heartbeat_seconds,
                    )
                except asyncio.TimeoutError:
                    if self._manager.get_session(session_id) is None:
                        break
                    await response.write(b": keepalive\n\n")
                    continue
                await response.write(_sse(event, data))
                if event == events.STOPPED:
                    break
        except (asyncio.CancelledError, ConnectionResetError):
            pass
        finally:
            unsubscribe_output()
            unsubscribe_lifecycle()
            self._sse_clients -= 1
            logger.info("Output stream closed for %s req=%s", session_id, request.get("req_id", "unknown"))
        return response

    # ── Coordinator ──

    async def _handle_coordinator_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._coordinator.get_status())

    async def _handle_get_task(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        task = self._coordinator.get_task(session_id)
        if task is None:
            return _error(f"No task registered for session {session_id}", 404)
        return web.json_response(task.to_dict())

    async def _handle_list_pending(self, request: web.Request) -> web.Response:
        return web.json_response({
            "pending": [p.to_dict() for p in self._coordinator.list_pending()],
        })

    async def _handle_confirm(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        try:
            body = await _read_json(request)
            approved = body.get("approved")
            if not isinstance(approved, bool):
                raise ValueError("approved must be a boolean")
            override = body.get("override")
            if override is not None and not isinstance(override, dict):
                raise ValueError("override must be an object")
            decision = await self._coordinator.confirm_decision(session_id, approved, override)
        except (OrchestrationError, ValueError) as exc:
            return _error_for(exc)
        return web.json_response({
            "ok": True,
            "session_id": session_id,
            "approved": approved,
            "decision": decision.to_dict() if decision else None,
        })

    async def _handle_get_supervision(self, request: web.Request) -> web.Response:
        return web.json_response({"supervision_level": self._coordinator.supervision_level.value})

    async def _handle_set_supervision(self, request: web.Request) -> web.Response:
        try:
            body = await _read_json(request)
        except ValueError as exc:
            return _error_for(exc)
        raw = body.get("level", body.get("supervision_level"))
        try:
            level = SupervisionLevel(str(raw))
        except ValueError:
            return _error(_SUPERVISION_ERROR, 400)
        self._coordinator.set_supervision_level(level)
        return web.json_response({"supervision_level": level.value})

    async def _handle_coordinator_events(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(status=200, headers=_SSE_HEADERS)
        await response.prepare(request)

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._config.sse_queue_size)

        def _on_event(event: dict[str, Any]) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping %s event", event.get("type"))

        await response.write(b":ok\n\n")
        unsubscribe = self._coordinator.add_observer(_on_event)
        self._sse_clients += 1
        logger.info(
            "SSE client connected req=%s active_clients=%d",
            request.get("req_id", "unknown"), self._sse_clients,
        )
        try:
            while True:
                try:
                    event = await asyncio.wait_for(
                        queue.get(), timeout=self._config.sse_heartbeat_seconds,
                    )
                    await response.write(_sse(event["type"], event))
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            unsubscribe()
            self._sse_clients -= 1
            logger.info(
                "SSE client disconnected req=%s active_clients=%d",
                request.get("req_id", "unknown"), self._sse_clients,
            )
        return response
