"""SwarmCoordinator supervision flows against a fake session manager."""
from __future__ import annotations

import asyncio
from typing import Any

import pytest

from swarmcore.coordinator import (
    CoordinationDecision,
    DecisionAction,
    DecisionTrigger,
    SupervisionLevel,
    SwarmCoordinator,
    TaskStatus,
)
from swarmcore.engine import events
from swarmcore.engine.config import SwarmConfig
from swarmcore.engine.errors import PendingConfirmationNotFoundError, SessionNotFoundError
from swarmcore.engine.events import EventRegistry
from swarmcore.engine.models import SendAck, SessionInfo, SessionStatus, SpawnConfig


class _FakeManager:
    """The slice of SessionManager the coordinator talks to."""

    def __init__(self) -> None:
        self._events = EventRegistry("fake-manager")
        self.sessions: dict[str, SessionInfo] = {}
        self.output: dict[str, str] = {}
        self.sent: list[tuple[str, str]] = []
        self.keys: list[tuple[str, list[str]]] = []
        self.stopped: list[str] = []

    def subscribe(self, callback):
        return self._events.subscribe(callback)

    def emit(self, session_id: str, event: str, data: dict[str, Any] | None = None) -> None:
        self._events.publish(session_id, event, data or {})

    def add_session(self, session_id: str, agent_type: str = "claude") -> SessionInfo:
        info = SessionInfo(id=session_id, agent_type=agent_type, name=session_id, workdir="/repo")
        self.sessions[session_id] = info
        return info

    async def spawn(self, config: SpawnConfig) -> SessionInfo:
        info = self.add_session(f"pty-{len(self.sessions) + 1}", config.agent_type)
        info.workdir = config.workdir or "/repo"
        return info

    def get_session(self, session_id: str) -> SessionInfo | None:
        return self.sessions.get(session_id)

    def get_output(self, session_id: str, lines: int = 100) -> str:
        if session_id not in self.sessions:
            raise SessionNotFoundError(session_id)
        return "\n".join(self.output.get(session_id, "").splitlines()[-lines:])

    def recent_output(self, session_id: str, max_chars: int = 3000) -> str:
        return self.output.get(session_id, "")[-max_chars:]

    async def send(self, session_id: str, text: str) -> SendAck:
        self.sent.append((session_id, text))
        return SendAck(session_id=session_id, chars=len(text))

    async def send_keys(self, session_id: str, keys) -> None:
        self.keys.append((session_id, list(keys)))

    async def stop(self, session_id: str) -> None:
        self.stopped.append(session_id)
        self.sessions.pop(session_id, None)


class _ScriptedReasoner:
    def __init__(self, *answers: str) -> None:
        self.answers = list(answers)
        self.prompts: list[str] = []

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.answers:
            return self.answers.pop(0)
        return '{"action": "ignore", "reasoning": "nothing scripted"}'


RESPOND_Y = '{"action": "respond", "response": "y", "reasoning": "in scope"}'


def _build(*answers: str, supervision: str = "autonomous", **config: Any):
    manager = _FakeManager()
    reasoner = _ScriptedReasoner(*answers)
    chat: list[str] = []
    coordinator = SwarmCoordinator(
        manager,
        reasoner,
        SwarmConfig(supervision_level=supervision, **config),
        chat=lambda text, source: chat.append(text),
    )
    observed: list[dict] = []
    coordinator.add_observer(observed.append)
    coordinator.start()
    return coordinator, manager, reasoner, chat, observed


async def _dispatch(coordinator: SwarmCoordinator, label: str = "fix-login") -> str:
    info = await coordinator.dispatch_task(
        SpawnConfig(agent_type="claude", name=label, workdir="/repo", initial_task="Fix the login redirect"),
    )
    return info.id


def _blocked(prompt: str = "Do you want to proceed?", *, auto: bool = False) -> dict[str, Any]:
    return {
        "prompt_info": {"type": "permission", "prompt": prompt, "can_auto_respond": auto},
        "auto_responded": auto,
    }


def _types(observed: list[dict]) -> list[str]:
    return [e["type"] for e in observed]


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ── Autonomous ──


@pytest.mark.asyncio
async def test_autonomous_blocked_prompt_is_answered() -> None:
    coordinator, manager, reasoner, chat, observed = _build(RESPOND_Y)
    sid = await _dispatch(coordinator)
    manager.output[sid] = "Edit src/login.ts\nDo you want to proceed?"

    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: manager.sent)

    assert manager.sent == [(sid, "y")]
    assert "Fix the login redirect" in reasoner.prompts[0]
    assert '"Do you want to proceed?"' in reasoner.prompts[0]
    task = coordinator.get_task(sid)
    assert task.decisions[-1].action is DecisionAction.RESPOND
    assert task.decisions[-1].response == "y"
    assert "coordination_decision" in _types(observed)
    assert any(text.startswith("[fix-login] Responded: y") for text in chat)
    await coordinator.stop()


@pytest.mark.asyncio
async def test_autonomous_key_response() -> None:
    coordinator, manager, *_ = _build(
        '{"action": "respond", "useKeys": true, "keys": ["down", "enter"], "reasoning": "menu"}'
    )
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked("Select an option"))
    await _until(lambda: manager.keys)
    assert manager.keys == [(sid, ["down", "enter"])]
    assert coordinator.get_task(sid).decisions[-1].response == "keys:down,enter"
    await coordinator.stop()


@pytest.mark.asyncio
async def test_turn_complete_can_finish_the_task() -> None:
    coordinator, manager, reasoner, chat, observed = _build(
        '{"action": "complete", "reasoning": "PR merged and verified"}'
    )
    sid = await _dispatch(coordinator)
    manager.output[sid] = "All items pass\nhttps://github.com/acme/app/pull/9"

    manager.emit(sid, events.TASK_COMPLETE, {
        "detection": "fast-path", "duration_ms": 900.0, "response": "Verified every test plan item",
    })
    await _until(lambda: manager.stopped)

    task = coordinator.get_task(sid)
    assert task.status is TaskStatus.COMPLETED
    assert task.decisions[-1].event is DecisionTrigger.TURN_COMPLETE
    assert "Verified every test plan item" in reasoner.prompts[0]
    assert chat[-1] == 'Finished "fix-login".\n\nhttps://github.com/acme/app/pull/9'
    turn = [e for e in observed if e["type"] == "turn_complete"][0]
    assert "response" not in turn["data"]
    assert "task_complete" in _types(observed)

    # The stop that follows completion does not overwrite the status.
    manager.emit(sid, events.STOPPED, {"reason": "stopped", "exit_code": 0})
    await _until(lambda: "stopped" in _types(observed))
    assert task.status is TaskStatus.COMPLETED
    await coordinator.stop()


@pytest.mark.asyncio
async def test_turn_complete_follow_up_is_sent() -> None:
    coordinator, manager, reasoner, chat, _ = _build(
        '{"action": "respond", "response": "Now run the tests", "reasoning": "untested"}'
    )
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.TASK_COMPLETE, {"response": "Created pull request #3"})
    await _until(lambda: manager.sent)
    assert manager.sent == [(sid, "Now run the tests")]
    assert "NOTE: This turn created a pull request" in reasoner.prompts[0]
    assert chat[-1] == "[fix-login] Turn done, continuing: Now run the tests"
    await coordinator.stop()


# ── Rule-answered prompts ──


@pytest.mark.asyncio
async def test_auto_responded_prompts_skip_reasoning() -> None:
    coordinator, manager, reasoner, chat, observed = _build()
    sid = await _dispatch(coordinator)
    for _ in range(3):
        manager.emit(sid, events.BLOCKED, _blocked("Trust this folder?", auto=True))
    await _until(lambda: coordinator.get_task(sid).auto_resolved_count == 3)

    assert reasoner.prompts == []
    assert _types(observed).count("blocked_auto_resolved") == 3
    # 1st and 2nd are announced, the 3rd is not.
    assert chat == ["[fix-login] Approved: Trust this folder?"] * 2
    await coordinator.stop()


@pytest.mark.asyncio
async def test_too_many_auto_responses_escalates_next_prompt() -> None:
    coordinator, manager, reasoner, chat, observed = _build(max_auto_responses=2)
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked("Allow?", auto=True))
    manager.emit(sid, events.BLOCKED, _blocked("Allow?", auto=True))
    manager.emit(sid, events.BLOCKED, _blocked("Delete the database?"))
    await _until(lambda: coordinator.get_task(sid).status is TaskStatus.ESCALATED)

    task = coordinator.get_task(sid)
    assert reasoner.prompts == []
    assert task.auto_resolved_count == 0
    escalation = [e for e in observed if e["type"] == "escalation"][0]
    assert escalation["data"]["reason"] == "max_auto_responses_exceeded"
    assert "Needs your attention" in chat[-1]
    await coordinator.stop()


@pytest.mark.asyncio
async def test_reasoned_decision_decays_auto_count() -> None:
    coordinator, manager, *_ = _build(RESPOND_Y)
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked("ok?", auto=True))
    manager.emit(sid, events.BLOCKED, _blocked("ok?", auto=True))
    manager.emit(sid, events.BLOCKED, _blocked("Proceed?"))
    await _until(lambda: manager.sent)
    assert coordinator.get_task(sid).auto_resolved_count == 1
    await coordinator.stop()


# ── Unusable answers ──


@pytest.mark.asyncio
async def test_unparseable_answers_are_retried_then_escalated() -> None:
    coordinator, manager, reasoner, chat, observed = _build("I'd say yes", "still prose")
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: coordinator.get_task(sid).status is TaskStatus.ESCALATED)

    assert len(reasoner.prompts) == 2
    assert "could not be parsed" in reasoner.prompts[1]
    assert manager.sent == []
    escalation = [e for e in observed if e["type"] == "escalation"][0]
    assert escalation["data"]["reason"] == "invalid_llm_response"
    assert coordinator.get_task(sid).decisions[-1].action is DecisionAction.ESCALATE
    await coordinator.stop()


@pytest.mark.asyncio
async def test_retry_recovers_on_second_attempt() -> None:
    coordinator, manager, reasoner, *_ = _build("hmm", RESPOND_Y)
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: manager.sent)
    assert manager.sent == [(sid, "y")]
    await coordinator.stop()


@pytest.mark.asyncio
async def test_unparseable_turn_assessment_escalates_in_notify_mode_too() -> None:
    coordinator, manager, reasoner, chat, observed = _build(
        "?", "?", supervision="notify",
    )
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.TASK_COMPLETE, {"response": "done?"})
    await _until(lambda: coordinator.get_task(sid).status is TaskStatus.ESCALATED)
    assert manager.sent == []
    assert manager.stopped == []
    await coordinator.stop()


@pytest.mark.asyncio
async def test_reasoning_timeout_escalates() -> None:
    async def slow(prompt: str) -> str:
        await asyncio.sleep(1.0)
        return RESPOND_Y

    manager = _FakeManager()
    coordinator = SwarmCoordinator(
        manager, slow, SwarmConfig(decision_timeout_seconds=0.01, decision_attempts=1),
    )
    coordinator.start()
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: coordinator.get_task(sid).status is TaskStatus.ESCALATED)
    assert manager.sent == []
    await coordinator.stop()


@pytest.mark.asyncio
async def test_escalated_task_returns_to_active_on_next_event() -> None:
    coordinator, manager, *_ = _build(
        '{"action": "escalate", "reasoning": "design choice"}', RESPOND_Y,
    )
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked("Use Redis or Postgres?"))
    await _until(lambda: coordinator.get_task(sid).status is TaskStatus.ESCALATED)

    manager.emit(sid, events.BLOCKED, _blocked("Proceed?"))
    await _until(lambda: manager.sent)
    assert coordinator.get_task(sid).status is TaskStatus.ACTIVE
    await coordinator.stop()


# ── Confirm / notify ──


@pytest.mark.asyncio
async def test_confirm_mode_queues_until_approved() -> None:
    coordinator, manager, reasoner, chat, observed = _build(RESPOND_Y, supervision="confirm")
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: coordinator.list_pending())

    assert manager.sent == []
    pending = coordinator.list_pending()[0].to_dict()
    assert pending["suggested_action"] == "respond"
    assert pending["suggested_response"] == "y"
    assert pending["task"]["label"] == "fix-login"
    assert "pending_confirmation" in _types(observed)
    assert coordinator.get_status()["pending_confirmations_count"] == 1

    decision = await coordinator.confirm_decision(sid, True)
    assert decision is not None and decision.response == "y"
    assert manager.sent == [(sid, "y")]
    assert coordinator.list_pending() == []
    assert coordinator.get_task(sid).decisions[-1].reasoning == "Human-approved: in scope"
    assert "confirmation_approved" in _types(observed)
    await coordinator.stop()


@pytest.mark.asyncio
async def test_confirm_with_override_sends_human_answer() -> None:
    coordinator, manager, *_ = _build(RESPOND_Y, supervision="confirm")
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: coordinator.list_pending())

    decision = await coordinator.confirm_decision(
        sid, True, {"use_keys": True, "keys": ["esc"]},
    )
    assert manager.keys == [(sid, ["esc"])]
    assert manager.sent == []
    assert decision.reasoning == "Human override of: in scope"
    await coordinator.stop()


@pytest.mark.asyncio
async def test_bad_override_keeps_pending_entry() -> None:
    coordinator, manager, *_ = _build(RESPOND_Y, supervision="confirm")
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: coordinator.list_pending())

    with pytest.raises(ValueError):
        await coordinator.confirm_decision(sid, True, {"keys": ["enter"]})
    assert len(coordinator.list_pending()) == 1
    await coordinator.stop()


@pytest.mark.asyncio
async def test_confirm_rejection_sends_nothing() -> None:
    coordinator, manager, reasoner, chat, observed = _build(RESPOND_Y, supervision="confirm")
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: coordinator.list_pending())

    assert await coordinator.confirm_decision(sid, False) is None
    assert manager.sent == [] and manager.keys == []
    task = coordinator.get_task(sid)
    assert task.decisions[-1].action is DecisionAction.ESCALATE
    assert task.decisions[-1].reasoning == "Human rejected the suggested action"
    assert "confirmation_rejected" in _types(observed)
    with pytest.raises(PendingConfirmationNotFoundError):
        await coordinator.confirm_decision(sid, True)
    await coordinator.stop()


@pytest.mark.asyncio
async def test_confirm_mode_does_not_queue_ignore() -> None:
    coordinator, manager, *_ = _build(
        '{"action": "ignore", "reasoning": "spinner only"}', supervision="confirm",
    )
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: coordinator.get_task(sid).decisions)
    assert coordinator.list_pending() == []
    await coordinator.stop()


@pytest.mark.asyncio
async def test_pending_entry_dropped_when_session_errors() -> None:
    coordinator, manager, reasoner, chat, _ = _build(RESPOND_Y, supervision="confirm")
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: coordinator.list_pending())

    manager.emit(sid, events.ERROR, {"message": "process exited with code 1", "exit_code": 1})
    await _until(lambda: coordinator.get_task(sid).status is TaskStatus.ERROR)
    assert coordinator.list_pending() == []
    assert chat[-1] == '"fix-login" hit an error: process exited with code 1'
    await coordinator.stop()


@pytest.mark.asyncio
async def test_notify_mode_records_without_acting() -> None:
    coordinator, manager, reasoner, chat, observed = _build(RESPOND_Y, supervision="notify")
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: coordinator.get_task(sid).decisions)

    assert len(reasoner.prompts) == 1
    assert manager.sent == []
    assert coordinator.list_pending() == []
    decision = [e for e in observed if e["type"] == "coordination_decision"][0]
    assert decision["data"]["applied"] is False
    assert "notify mode" in chat[-1]
    await coordinator.stop()


# ── Registration and observers ──


@pytest.mark.asyncio
async def test_events_before_registration_are_replayed() -> None:
    coordinator, manager, reasoner, *_ = _build(RESPOND_Y)
    manager.add_session("pty-early")
    manager.emit("pty-early", events.BLOCKED, _blocked())
    await asyncio.sleep(0.05)
    assert reasoner.prompts == []

    coordinator.register_task(
        "pty-early", agent_type="claude", label="early", original_task="t", workdir="/repo",
    )
    await _until(lambda: manager.sent)
    assert manager.sent == [("pty-early", "y")]
    await coordinator.stop()


@pytest.mark.asyncio
async def test_buffered_events_expire() -> None:
    coordinator, manager, reasoner, *_ = _build(RESPOND_Y, unregistered_buffer_seconds=0.01)
    manager.add_session("pty-late")
    manager.emit("pty-late", events.BLOCKED, _blocked())
    await asyncio.sleep(0.1)

    coordinator.register_task(
        "pty-late", agent_type="claude", label="late", original_task="t", workdir="/repo",
    )
    await asyncio.sleep(0.05)
    assert reasoner.prompts == []
    assert manager.sent == []
    await coordinator.stop()


@pytest.mark.asyncio
async def test_observer_gets_snapshot_first() -> None:
    coordinator, manager, reasoner, chat, _ = _build(supervision="confirm")
    await _dispatch(coordinator)
    seen: list[dict] = []
    coordinator.add_observer(seen.append)

    assert seen[0]["type"] == "snapshot"
    assert seen[0]["session_id"] == "*"
    assert seen[0]["data"]["supervision_level"] == "confirm"
    assert [t["label"] for t in seen[0]["data"]["tasks"]] == ["fix-login"]

    coordinator.set_supervision_level("autonomous")
    assert seen[-1]["type"] == "supervision_changed"
    assert seen[-1]["data"] == {"level": "autonomous"}
    assert coordinator.supervision_level is SupervisionLevel.AUTONOMOUS
    with pytest.raises(ValueError):
        coordinator.set_supervision_level("yolo")
    await coordinator.stop()


@pytest.mark.asyncio
async def test_tool_running_notifications_are_throttled() -> None:
    coordinator, manager, reasoner, chat, observed = _build()
    sid = await _dispatch(coordinator)
    manager.output[sid] = "Local: http://0.0.0.0:3000/"
    for _ in range(2):
        manager.emit(sid, events.TOOL_RUNNING, {"tool_name": "dev-server", "description": "Development server running"})
    await _until(lambda: _types(observed).count("tool_running") == 2)

    assert len(chat) == 1
    assert "Dev server running at http://localhost:3000/." in chat[0]
    assert reasoner.prompts == []
    await coordinator.stop()


@pytest.mark.asyncio
async def test_decision_for_vanished_session_is_dropped() -> None:
    coordinator, manager, *_ = _build()
    sid = await _dispatch(coordinator)
    manager.sessions.clear()
    applied = await coordinator.execute_decision(
        sid, CoordinationDecision(action=DecisionAction.RESPOND, response="y"),
    )
    assert applied is False
    assert manager.sent == []
    await coordinator.stop()


@pytest.mark.asyncio
async def test_decision_for_errored_session_is_dropped() -> None:
    coordinator, manager, *_ = _build()
    sid = await _dispatch(coordinator)
    manager.sessions[sid].status = SessionStatus.ERROR
    applied = await coordinator.execute_decision(
        sid, CoordinationDecision(action=DecisionAction.RESPOND, response="y"),
    )
    assert applied is False
    assert manager.sent == []
    await coordinator.stop()


class _GatedReasoner(_ScriptedReasoner):
    """Holds every answer until the gate opens."""

    def __init__(self, *answers: str) -> None:
        super().__init__(*answers)
        self.gate = asyncio.Event()

    async def __call__(self, prompt: str) -> str:
        answer = await super().__call__(prompt)
        await self.gate.wait()
        return answer

@pytest.mark.asyncio
async def test_late_decision_for_ended_session_is_recorded_as_skipped() -> None:
    manager = _FakeManager()
    reasoner = _GatedReasoner(RESPOND_Y)
    coordinator = SwarmCoordinator(manager, reasoner, SwarmConfig())
    coordinator.start()
    sid = await _dispatch(coordinator)

    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: reasoner.prompts)
    manager.sessions[sid].status = SessionStatus.ERROR
    manager.emit(sid, events.ERROR, {"message": "process exited with code 1", "exit_code": 1})
    reasoner.gate.set()

    task = coordinator.get_task(sid)
    await _until(lambda: task.status is TaskStatus.ERROR)
    assert manager.sent == []
    (record,) = task.decisions
    assert record.action is DecisionAction.SKIPPED
    assert record.response == "y"
    assert record.reasoning.startswith("Session is error, respond not applied")
    await coordinator.stop()


@pytest.mark.asyncio
async def test_without_reasoner_everything_escalates() -> None:
    manager = _FakeManager()
    coordinator = SwarmCoordinator(manager, None, SwarmConfig())
    coordinator.start()
    sid = await _dispatch(coordinator)
    manager.emit(sid, events.BLOCKED, _blocked())
    await _until(lambda: coordinator.get_task(sid).status is TaskStatus.ESCALATED)
    await coordinator.stop()
