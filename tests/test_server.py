"""Tests for the HTTP surface in swarmcore/api/server.py.

Runs a real SessionManager (over an in-memory strategy) and a real
SwarmCoordinator behind the aiohttp app.
"""
from __future__ import annotations

import tempfile

from aiohttp.test_utils import AioHTTPTestCase

from swarmcore.api.server import SwarmServer
from swarmcore.coordinator import SwarmCoordinator
from swarmcore.engine import events
from swarmcore.engine.adapters import build_default_registry
from swarmcore.engine.config import SwarmConfig
from swarmcore.engine.session_manager import SessionManager

from test_coordinator import _ScriptedReasoner, _until
from test_session_manager import _FakeStrategy


class TestSwarmServer(AioHTTPTestCase):

    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        config = SwarmConfig(settle_delay_seconds=0.0, default_workdir=self.tmpdir)
        self.strategy = _FakeStrategy()
        self.manager = SessionManager(self.strategy, build_default_registry(), config)
        self.reasoner = _ScriptedReasoner()
        self.coordinator = SwarmCoordinator(self.manager, self.reasoner, config)
        self.server = SwarmServer(self.manager, self.coordinator, config)
        self.coordinator.start()
        return self.server.app

    async def asyncTearDown(self):
        await self.coordinator.stop()
        await super().asyncTearDown()

    async def _spawn(self, **body) -> dict:
        payload = {"agent_type": "shell", "workdir": self.tmpdir, **body}
        resp = await self.client.post("/api/sessions", json=payload)
        assert resp.status == 201
        return await resp.json()

    # ── Health / agents ──

    async def test_health(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["strategy"] == "fake"
        assert data["session_count"] == 0
        assert data["supervision_level"] == "autonomous"

    async def test_list_agents_and_workspace_files(self):
        resp = await self.client.get("/api/agents")
        data = await resp.json()
        assert data["agent_types"] == ["shell", "claude", "codex", "gemini", "aider"]
        assert isinstance(data["preflight"], list)

        resp = await self.client.get("/api/agents/claude/workspace-files")
        assert resp.status == 200
        data = await resp.json()
        assert data["memory_file"] == "CLAUDE.md"

    async def test_approval_config_preview(self):
        resp = await self.client.get("/api/agents/codex/approval-config?preset=readonly")
        assert resp.status == 200
        data = await resp.json()
        assert data["agent_type"] == "codex"
        assert data["preset"] == "readonly"

        resp = await self.client.get("/api/agents/codex/approval-config?preset=yolo")
        assert resp.status == 400
        assert "Invalid preset" in (await resp.json())["error"]

    # ── Sessions ──

    async def test_spawn_registers_task(self):
        data = await self._spawn(name="build", task="make test", label="ci")
        assert data["id"].startswith("pty-")
        assert data["agent_type"] == "shell"
        assert data["task"]["label"] == "ci"
        assert data["task"]["original_task"] == "make test"

        resp = await self.client.get(f"/api/coordinator/tasks/{data['id']}")
        assert resp.status == 200
        assert (await resp.json())["status"] == "active"

        resp = await self.client.get("/api/metrics")
        assert (await resp.json())["agents"]["shell"]["spawned"] == 1

    async def test_spawn_without_coordination(self):
        data = await self._spawn(coordinate=False)
        assert data["task"] is None

    async def test_spawn_failures(self):
        resp = await self.client.post("/api/sessions", json={
            "agent_type": "shell", "workdir": f"{self.tmpdir}/missing",
        })
        assert resp.status == 500
        assert "workdir does not exist" in (await resp.json())["error"]

        resp = await self.client.post("/api/sessions", json={
            "agent_type": "shell", "workdir": self.tmpdir, "approval_preset": "everything",
        })
        assert resp.status == 400

    async def test_unknown_session_is_404(self):
        for method, path in [
            ("GET", "/api/sessions/pty-nope"),
            ("DELETE", "/api/sessions/pty-nope"),
            ("GET", "/api/sessions/pty-nope/output"),
        ]:
            resp = await self.client.request(method, path)
            assert resp.status == 404, path

        resp = await self.client.post("/api/sessions/pty-nope/send", json={"text": "hi"})
        assert resp.status == 404

    async def test_send_keys_and_output(self):
        sid = (await self._spawn())["id"]

        resp = await self.client.post(f"/api/sessions/{sid}/send", json={})
        assert resp.status == 400
        assert (await resp.json())["error"] == "text is required"

        resp = await self.client.post(f"/api/sessions/{sid}/send", json={"text": "ls"})
        assert resp.status == 200
        assert (await resp.json())["chars"] == 2
        assert self.strategy.sent == [(sid, "ls")]

        resp = await self.client.post(f"/api/sessions/{sid}/keys", json={"keys": []})
        assert resp.status == 400
        resp = await self.client.post(f"/api/sessions/{sid}/keys", json={"keys": "ctrl+c"})
        assert resp.status == 200
        assert self.strategy.keys == [(sid, ["ctrl+c"])]

        self.strategy.emit(sid, events.OUTPUT, {"data": "README.md\nsrc\n"})
        resp = await self.client.get(f"/api/sessions/{sid}/output?lines=1")
        assert (await resp.json())["output"] == "src"
        resp = await self.client.get(f"/api/sessions/{sid}/output?lines=many")
        assert resp.status == 400

    async def test_list_filters(self):
        sid = (await self._spawn())["id"]
        await self.client.post(f"/api/sessions/{sid}/send", json={"text": "ls"})

        resp = await self.client.get("/api/sessions?status=busy")
        assert [s["id"] for s in (await resp.json())["sessions"]] == [sid]
        resp = await self.client.get("/api/sessions?status=ready&agent_type=shell")
        assert (await resp.json())["sessions"] == []
        resp = await self.client.get("/api/sessions?status=sleeping")
        assert resp.status == 400

    async def test_stop_session(self):
        sid = (await self._spawn())["id"]
        resp = await self.client.delete(f"/api/sessions/{sid}")
        assert resp.status == 200
        assert (await resp.json()) == {"ok": True, "session_id": sid}
        assert self.strategy.stopped == [sid]
        assert self.manager.get_session(sid) is None

    # ── Coordinator ──

    async def test_task_lookup_for_unregistered_session(self):
        resp = await self.client.get("/api/coordinator/tasks/pty-unknown")
        assert resp.status == 404
        assert (await resp.json())["error"] == "No task registered for session pty-unknown"

    async def test_supervision_level(self):
        resp = await self.client.post("/api/coordinator/supervision", json={"level": "sometimes"})
        assert resp.status == 400
        assert (await resp.json())["error"] == (
            'Invalid supervision level. Must be "autonomous", "confirm", or "notify"'
        )

        resp = await self.client.post("/api/coordinator/supervision", json={"level": "confirm"})
        assert resp.status == 200
        resp = await self.client.get("/api/coordinator/supervision")
        assert (await resp.json()) == {"supervision_level": "confirm"}

    async def test_confirm_flow(self):
        self.coordinator.set_supervision_level("confirm")
        self.reasoner.answers.append('{"action": "respond", "response": "y", "reasoning": "safe"}')
        sid = (await self._spawn(label="deps"))["id"]

        resp = await self.client.post(f"/api/coordinator/confirm/{sid}", json={"approved": True})
        assert resp.status == 404

        self.strategy.emit(sid, events.BLOCKED, {
            "prompt_info": {"type": "permission", "prompt": "Install lodash?"},
            "auto_responded": False,
        })
        await _until(lambda: self.coordinator.list_pending())

        resp = await self.client.get("/api/coordinator/pending")
        pending = (await resp.json())["pending"]
        assert pending[0]["suggested_response"] == "y"
        assert pending[0]["task"]["label"] == "deps"

        resp = await self.client.post(f"/api/coordinator/confirm/{sid}", json={"approved": "yes"})
        assert resp.status == 400

        resp = await self.client.post(f"/api/coordinator/confirm/{sid}", json={"approved": True})
        assert resp.status == 200
        data = await resp.json()
        assert data["decision"]["response"] == "y"
        assert self.strategy.sent == [(sid, "y")]

        resp = await self.client.get("/api/coordinator/status")
        status = await resp.json()
        assert status["supervision_level"] == "confirm"
        assert status["pending_confirmations_count"] == 0
