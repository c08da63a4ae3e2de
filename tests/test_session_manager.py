"""SessionManager against an in-memory execution strategy."""
from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path
from typing import Any

import pytest

from swarmcore.engine import events, session_manager
from swarmcore.engine.adapters import AdapterRegistry, build_default_registry
from swarmcore.engine.adapters.builtin import SHELL
from swarmcore.engine.config import SwarmConfig
from swarmcore.engine.errors import (
    SessionNotFoundError,
    SpawnFailureError,
    UnknownAgentTypeError,
)
from swarmcore.engine.models import (
    AgentCredentials,
    ApprovalPreset,
    AutoResponseRule,
    SessionFilter,
    SessionInfo,
    SessionStatus,
    SpawnConfig,
    SpawnRequest,
    StallClassification,
    StallState,
)
from swarmcore.engine.session_manager import SessionManager
from swarmcore.engine.stall import StallClassifier
from swarmcore.engine.strategies.base import ExecutionStrategy


class _FakeStrategy(ExecutionStrategy):
    name = "fake"

    def __init__(self, *, fail_spawn: Exception | None = None) -> None:
        super().__init__()
        self.fail_spawn = fail_spawn
        self.requests: list[SpawnRequest] = []
        self.sessions: dict[str, SessionInfo] = {}
        self.sent: list[tuple[str, str]] = []
        self.keys: list[tuple[str, list[str]]] = []
        self.stopped: list[str] = []
        self.classifications: list[tuple[str, StallClassification | None]] = []

    def emit(self, session_id: str, event: str, data: dict[str, Any] | None = None) -> None:
        self._emit(session_id, event, data or {})

    async def spawn(self, request: SpawnRequest) -> SessionInfo:
        if self.fail_spawn is not None:
            raise self.fail_spawn
        self.requests.append(request)
        info = SessionInfo(
            id=request.session_id,
            agent_type=request.agent_type,
            name=request.name,
            workdir=request.workdir,
            pid=4242,
        )
        self.sessions[request.session_id] = info
        return info

    async def send(self, session_id: str, text: str) -> int:
        self.sent.append((session_id, text))
        self.sessions[session_id].status = SessionStatus.BUSY
        return len(text)

    async def send_keys(self, session_id: str, keys: list[str]) -> None:
        self.keys.append((session_id, list(keys)))

    async def stop(self, session_id: str) -> None:
        info = self.sessions.pop(session_id, None)
        if info is None:
            return
        self.stopped.append(session_id)
        info.status = SessionStatus.STOPPED
        self._emit(session_id, events.STOPPED, {"reason": "stopped", "exit_code": 0})

    async def add_rule(self, session_id: str, rule: AutoResponseRule) -> None:
        pass

    async def apply_stall_classification(
        self, session_id: str, result: StallClassification | None,
    ) -> None:
        self.classifications.append((session_id, result))

    def get(self, session_id: str) -> SessionInfo | None:
        return self.sessions.get(session_id)

    def list(self) -> list[SessionInfo]:
        return list(self.sessions.values())


def _manager(strategy: _FakeStrategy | None = None, **config: Any) -> tuple[SessionManager, _FakeStrategy]:
    strategy = strategy or _FakeStrategy()
    manager = SessionManager(
        strategy, build_default_registry(), SwarmConfig(settle_delay_seconds=0.0, **config),
    )
    return manager, strategy


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_spawn_builds_request_and_records_metrics(tmp_path: Path) -> None:
    manager, strategy = _manager()
    info = await manager.spawn(SpawnConfig(
        agent_type="claude-code",
        name="api",
        workdir=str(tmp_path),
        model="claude-sonnet",
        credentials=AgentCredentials(anthropic_api_key="sk-test"),
        metadata={"ticket": "ENG-1"},
    ))

    assert info.id.startswith("pty-")
    assert info.agent_type == "claude"
    request = strategy.requests[0]
    assert request.argv == ["claude"]
    assert request.env["ANTHROPIC_API_KEY"] == "sk-test"
    assert request.env["ANTHROPIC_MODEL"] == "claude-sonnet"
    assert request.metadata == {"ticket": "ENG-1", "agent_type": "claude"}
    assert [r.type for r in request.rules] == ["trust"]
    assert manager.metrics.get_all()["claude"]["spawned"] == 1
    assert manager.get_session(info.id) is info


@pytest.mark.asyncio
async def test_spawn_writes_workspace_files_first(tmp_path: Path) -> None:
    manager, strategy = _manager()
    await manager.spawn(SpawnConfig(
        agent_type="claude",
        workdir=str(tmp_path),
        memory_content="Always run the linter.",
        approval_preset=ApprovalPreset.PERMISSIVE,
    ))
    assert (tmp_path / "CLAUDE.md").read_text() == "Always run the linter."
    settings = json.loads((tmp_path / ".claude" / "settings.json").read_text())
    assert "Bash" in settings["permissions"]["allow"]


@pytest.mark.asyncio
async def test_spawn_rejects_missing_workdir(tmp_path: Path) -> None:
    manager, strategy = _manager()
    with pytest.raises(SpawnFailureError, match="workdir does not exist"):
        await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path / "nope")))
    assert strategy.requests == []
    assert manager.list() == []


@pytest.mark.asyncio
async def test_spawn_unknown_agent_type(tmp_path: Path) -> None:
    registry = AdapterRegistry()
    registry.register(SHELL)
    manager = SessionManager(_FakeStrategy(), registry, SwarmConfig())
    # Unknown names fall back to claude, which this registry lacks.
    with pytest.raises(UnknownAgentTypeError):
        await manager.spawn(SpawnConfig(agent_type="cursor", workdir=str(tmp_path)))


@pytest.mark.asyncio
async def test_strategy_failure_becomes_spawn_failure(tmp_path: Path) -> None:
    manager, _ = _manager(_FakeStrategy(fail_spawn=OSError("exec format error")))
    with pytest.raises(SpawnFailureError) as excinfo:
        await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    assert excinfo.value.reason == "exec format error"
    assert excinfo.value.agent_type == "shell"
    assert manager.list() == []


@pytest.mark.asyncio
async def test_extra_rules_are_appended_per_agent_type(tmp_path: Path) -> None:
    rule = AutoResponseRule.from_dict({"pattern": r"Overwrite\?", "response": "n"})
    manager = SessionManager(
        _FakeStrategy(), build_default_registry(), SwarmConfig(),
        extra_rules={"shell": [rule]},
    )
    await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    request = manager.strategy.requests[0]
    assert request.rules == [rule]


@pytest.mark.asyncio
async def test_initial_task_is_sent_once_after_first_ready(tmp_path: Path) -> None:
    manager, strategy = _manager()
    info = await manager.spawn(SpawnConfig(
        agent_type="shell", workdir=str(tmp_path), initial_task="make test",
    ))
    assert strategy.sent == []

    strategy.emit(info.id, events.READY)
    await _until(lambda: strategy.sent)
    strategy.emit(info.id, events.READY)
    await asyncio.sleep(0.05)
    assert strategy.sent == [(info.id, "make test")]


@pytest.mark.asyncio
async def test_task_complete_carries_response_since_last_send(tmp_path: Path) -> None:
    manager, strategy = _manager()
    info = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    received: list[tuple[str, str, dict]] = []
    manager.subscribe(lambda sid, event, data: received.append((sid, event, data)))

    strategy.emit(info.id, events.OUTPUT, {"data": "old noise\n"})
    await manager.send(info.id, "ls")
    strategy.emit(info.id, events.OUTPUT, {"data": "README.md\nsrc\n$ "})
    strategy.emit(info.id, events.TASK_COMPLETE, {"detection": "fast-path", "duration_ms": 12.0})

    complete = [data for _, event, data in received if event == events.TASK_COMPLETE]
    assert complete[0]["response"] == "README.md\nsrc"
    metrics = manager.metrics.get_all()["shell"]
    assert metrics["completed"] == 1
    assert metrics["completed_by"] == {"fast-path": 1}


@pytest.mark.asyncio
async def test_output_subscription_and_queries(tmp_path: Path) -> None:
    manager, strategy = _manager()
    info = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    chunks: list[str] = []
    unsubscribe = manager.subscribe_output(info.id, chunks.append)

    strategy.emit(info.id, events.OUTPUT, {"data": "\x1b[31mone\x1b[0m\ntwo\nthree\n"})
    unsubscribe()
    strategy.emit(info.id, events.OUTPUT, {"data": "four\n"})

    assert chunks == ["\x1b[31mone\x1b[0m\ntwo\nthree\n"]
    assert manager.get_output(info.id, 2) == "three\nfour"
    assert manager.recent_output(info.id).startswith("one\ntwo")
    assert manager.recent_output("pty-missing") == ""
    with pytest.raises(SessionNotFoundError):
        manager.get_output("pty-missing")
    with pytest.raises(SessionNotFoundError):
        manager.subscribe_output("pty-missing", chunks.append)


@pytest.mark.asyncio
async def test_input_to_unknown_session_raises() -> None:
    manager, _ = _manager()
    with pytest.raises(SessionNotFoundError):
        await manager.send("pty-missing", "hello")
    with pytest.raises(SessionNotFoundError):
        await manager.send_keys("pty-missing", "enter")


@pytest.mark.asyncio
async def test_send_keys_accepts_single_key(tmp_path: Path) -> None:
    manager, strategy = _manager()
    info = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    await manager.send_keys(info.id, "enter")
    await manager.send_keys(info.id, ["down", "enter"])
    assert strategy.keys == [(info.id, ["enter"]), (info.id, ["down", "enter"])]


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_forgets_session(tmp_path: Path) -> None:
    manager, strategy = _manager()
    info = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    received: list[str] = []
    manager.subscribe(lambda sid, event, data: received.append(event))

    await manager.stop(info.id)
    await manager.stop(info.id)
    await manager.stop("pty-never-existed")

    assert strategy.stopped == [info.id]
    assert received == [events.STOPPED]
    assert manager.get_session(info.id) is None
    assert manager.list() == []


@pytest.mark.asyncio
async def test_list_filters_by_status_and_type(tmp_path: Path) -> None:
    manager, strategy = _manager()
    shell = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    claude = await manager.spawn(SpawnConfig(agent_type="claude", workdir=str(tmp_path)))
    strategy.sessions[claude.id].status = SessionStatus.ERROR

    errored = manager.list(SessionFilter(statuses={SessionStatus.ERROR}))
    assert [s.id for s in errored] == [claude.id]
    shells = manager.list(SessionFilter(agent_type="shell"))
    assert [s.id for s in shells] == [shell.id]
    assert len(manager.list()) == 2


@pytest.mark.asyncio
async def test_stall_is_classified_and_applied(tmp_path: Path) -> None:
    prompts: list[str] = []

    async def reason(prompt: str) -> str:
        prompts.append(prompt)
        return '{"state": "task_complete", "reasoning": "back at prompt"}'

    strategy = _FakeStrategy()
    manager = SessionManager(
        strategy, build_default_registry(), SwarmConfig(),
        classifier=StallClassifier(reason),
    )
    info = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    await manager.send(info.id, "make build")
    strategy.emit(info.id, events.OUTPUT, {"data": "Build finished\n$ "})
    strategy.emit(info.id, events.STALLED, {"stall_ms": 4100.0})

    await _until(lambda: strategy.classifications)
    session_id, result = strategy.classifications[0]
    assert session_id == info.id
    assert result is not None and result.state is StallState.TASK_COMPLETE
    assert "Build finished" in prompts[0]
    assert manager.metrics.get_all()["shell"]["stall_count"] == 1


@pytest.mark.asyncio
async def test_stall_without_classifier_keeps_waiting(tmp_path: Path) -> None:
    manager, strategy = _manager()
    info = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    await manager.send(info.id, "sleep 100")
    strategy.emit(info.id, events.STALLED, {"stall_ms": 4000.0})
    await _until(lambda: strategy.classifications)
    assert strategy.classifications == [(info.id, None)]


@pytest.mark.asyncio
async def test_gemini_login_triggers_auth_keys(tmp_path: Path) -> None:
    manager, strategy = _manager()
    info = await manager.spawn(SpawnConfig(agent_type="gemini", workdir=str(tmp_path)))
    strategy.emit(info.id, events.LOGIN_REQUIRED, {"instructions": "Gemini CLI requires authentication"})
    await _until(lambda: len(strategy.keys) == 2)
    assert strategy.keys == [(info.id, ["/auth"]), (info.id, ["enter"])]


@pytest.mark.asyncio
async def test_traces_are_bounded(tmp_path: Path) -> None:
    manager, strategy = _manager(trace_limit=3)
    info = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    for n in range(5):
        strategy.emit(info.id, events.TRACE, {"message": "Task completion trace", "n": n})
    traces = manager.get_traces(info.id)
    assert [t["n"] for t in traces] == [2, 3, 4]
    assert traces[0]["agent_type"] == "shell"


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others(tmp_path: Path) -> None:
    manager, strategy = _manager()
    info = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    received: list[str] = []

    def broken(sid: str, event: str, data: dict) -> None:
        raise RuntimeError("observer bug")

    manager.subscribe(broken)
    manager.subscribe(lambda sid, event, data: received.append(event))
    strategy.emit(info.id, events.READY)
    assert received == [events.READY]


@pytest.mark.asyncio
async def test_worker_exit_is_forwarded_for_all_sessions() -> None:
    manager, strategy = _manager()
    received: list[tuple[str, str]] = []
    manager.subscribe(lambda sid, event, data: received.append((sid, event)))
    strategy.emit(events.ALL_SESSIONS, events.WORKER_EXIT, {"code": -9, "signal": "SIGKILL"})
    assert received == [(events.ALL_SESSIONS, events.WORKER_EXIT)]


@pytest.mark.asyncio
async def test_back_to_back_spawns_get_distinct_ids(tmp_path: Path) -> None:
    manager, _ = _manager()
    infos = await asyncio.gather(*(
        manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path))) for _ in range(20)
    ))
    assert len({info.id for info in infos}) == 20
    assert len(manager.list()) == 20


@pytest.mark.asyncio
async def test_colliding_session_id_is_redrawn(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
) -> None:
    same = uuid.UUID("aaaaaaaa-0000-4000-8000-000000000000")
    other = uuid.UUID("bbbbbbbb-0000-4000-8000-000000000000")
    draws = iter([same, same, other])
    monkeypatch.setattr(session_manager.time, "time", lambda: 1_700_000_000.0)
    monkeypatch.setattr(session_manager.uuid, "uuid4", lambda: next(draws))

    manager, _ = _manager()
    first = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    second = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    assert first.id == "pty-1700000000000-aaaaaaaa"
    assert second.id == "pty-1700000000000-bbbbbbbb"


@pytest.mark.asyncio
async def test_late_ready_after_stop_is_ignored(tmp_path: Path) -> None:
    manager, strategy = _manager()
    info = await manager.spawn(SpawnConfig(
        agent_type="shell", workdir=str(tmp_path), initial_task="make test",
    ))
    received: list[str] = []
    manager.subscribe(lambda sid, event, data: received.append(event))

    await manager.stop(info.id)
    strategy.emit(info.id, events.READY)
    await asyncio.sleep(0.05)

    assert strategy.sent == []
    assert received == [events.STOPPED]
    assert manager.get_session(info.id) is None
    assert manager.list() == []


@pytest.mark.asyncio
async def test_stall_classifier_skips_ready_and_stopped_sessions(tmp_path: Path) -> None:
    prompts: list[str] = []

    async def reason(prompt: str) -> str:
        prompts.append(prompt)
        return '{"state": "still_working", "reasoning": "compiling"}'

    strategy = _FakeStrategy()
    manager = SessionManager(
        strategy, build_default_registry(), SwarmConfig(),
        classifier=StallClassifier(reason),
    )
    ready = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    strategy.sessions[ready.id].status = SessionStatus.READY
    strategy.emit(ready.id, events.STALLED, {"stall_ms": 4000.0})

    stopped = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
    await manager.send(stopped.id, "make build")
    await manager.stop(stopped.id)
    strategy.emit(stopped.id, events.STALLED, {"stall_ms": 4000.0})

    await asyncio.sleep(0.05)
    assert prompts == []
    assert strategy.classifications == []
