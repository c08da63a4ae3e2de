"""WorkerStrategy: sessions hosted in a child process behind the JSON channel."""
from __future__ import annotations

import os
import re
import signal
from pathlib import Path
from typing import Any

import pytest

from swarmcore.engine import events
from swarmcore.engine.adapters import build_default_registry
from swarmcore.engine.config import SwarmConfig
from swarmcore.engine.errors import SessionNotFoundError, WorkerFaultError
from swarmcore.engine.models import AutoResponseRule, SessionStatus, SpawnConfig
from swarmcore.engine.session_manager import SessionManager
from swarmcore.engine.strategies import WorkerStrategy

from test_pty_session import _events, _until

pytestmark = pytest.mark.skipif(
    os.name != "posix" or not os.path.exists("/bin/sh"),
    reason="needs a POSIX shell",
)


def _manager() -> tuple[SessionManager, WorkerStrategy, list[tuple[str, str, dict[str, Any]]]]:
    config = SwarmConfig(
        strategy="worker",
        settle_delay_seconds=0.05,
        stall_timeout_seconds=0,
        stop_grace_seconds=1.0,
    )
    strategy = WorkerStrategy(config, request_timeout_seconds=10.0)
    manager = SessionManager(strategy, build_default_registry(), config)
    seen: list[tuple[str, str, dict[str, Any]]] = []
    manager.subscribe(lambda sid, event, data: seen.append((sid, event, data)))
    return manager, strategy, seen


@pytest.mark.asyncio
async def test_shell_session_through_worker(tmp_path: Path) -> None:
    manager, strategy, seen = _manager()
    try:
        info = await manager.spawn(SpawnConfig(
            agent_type="shell", workdir=str(tmp_path), initial_task="printf '%s\\n' via-worker",
        ))
        assert strategy.running
        await _until(lambda: _events(seen, events.TASK_COMPLETE))

        output = manager.get_output(info.id, 50)
        assert any(line.strip() == "via-worker" for line in output.splitlines())
        # Status pushes keep the mirrored handle current.
        assert manager.get_session(info.id).status is SessionStatus.READY
        assert (await strategy.ping())["sessions"] == 1

        await manager.add_rule(info.id, AutoResponseRule(
            pattern=re.compile(r"Proceed \[y/n\]"), type="config", response="true",
        ))
        await manager.send(info.id, "printf 'Proceed [%s/%s] ' y n")
        await _until(lambda: any(d.get("auto_responded") for d in _events(seen, events.BLOCKED)))

        await manager.stop(info.id)
        assert _events(seen, events.STOPPED)
        assert manager.get_session(info.id) is None
    finally:
        await manager.shutdown()
    assert not strategy.running


@pytest.mark.asyncio
async def test_unknown_session_error_crosses_the_channel() -> None:
    manager, strategy, _ = _manager()
    try:
        await strategy.start()
        with pytest.raises(SessionNotFoundError) as excinfo:
            await strategy.send("pty-ghost", "hello")
        assert excinfo.value.session_id == "pty-ghost"
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_worker_crash_marks_sessions_error(tmp_path: Path) -> None:
    manager, strategy, seen = _manager()
    try:
        info = await manager.spawn(SpawnConfig(agent_type="shell", workdir=str(tmp_path)))
        await _until(lambda: _events(seen, events.READY))

        os.kill(strategy._proc.pid, signal.SIGKILL)
        await _until(lambda: _events(seen, events.WORKER_EXIT))

        exit_event = _events(seen, events.WORKER_EXIT)[0]
        assert exit_event["signal"] == "SIGKILL"
        errors = [(sid, data) for sid, event, data in seen if event == events.ERROR]
        assert errors and errors[0][0] == info.id
        assert manager.get_session(info.id).status is SessionStatus.ERROR
        with pytest.raises(WorkerFaultError):
            await strategy.send(info.id, "ls")
    finally:
        await manager.shutdown()
