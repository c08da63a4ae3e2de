from __future__ import annotations

import argparse
from pathlib import Path

import pytest

from swarmcore.app import _resolve_config, build_orchestrator
from swarmcore.engine.config import SwarmConfig

from test_coordinator import _ScriptedReasoner
from test_session_manager import _FakeStrategy


def _args(**overrides) -> argparse.Namespace:
    values = dict(
        config=None, strategy=None, supervision=None, host=None, port=None, log_level=None,
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def test_build_orchestrator_wires_components() -> None:
    reasoner = _ScriptedReasoner()
    strategy = _FakeStrategy()
    orchestrator = build_orchestrator(
        SwarmConfig(supervision_level="notify"), reason=reasoner, strategy=strategy,
    )
    assert orchestrator.manager.strategy is strategy
    assert orchestrator.coordinator.supervision_level.value == "notify"
    assert orchestrator.server.port == 8765


def test_resolve_config_discovers_yaml_and_applies_flags(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
) -> None:
    for key in ("SWARM_STRATEGY", "SWARM_SUPERVISION", "SWARM_PORT"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
    monkeypatch.chdir(tmp_path)
    (tmp_path / "swarmcore.yaml").write_text(
        "coordinator:\n  supervision_level: confirm\n"
        "prompts:\n  ignore_guidance: Ignore progress bars.\n"
        "rules:\n  shell:\n    - pattern: 'Overwrite\\?'\n      response: n\n"
    )

    config, prompts, rules = _resolve_config(_args(port=0, strategy="worker"))
    assert config.supervision_level == "confirm"
    assert config.port == 0
    assert config.strategy == "worker"
    assert config.credentials.anthropic_api_key == "sk-env"
    assert prompts.ignore_guidance == "Ignore progress bars."
    assert [r.response for r in rules["shell"]] == ["n"]


def test_resolve_config_without_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SWARM_SUPERVISION", raising=False)
    monkeypatch.chdir(tmp_path)
    config, prompts, rules = _resolve_config(_args(supervision="notify", log_level="debug"))
    assert config.supervision_level == "notify"
    assert config.log_level == "DEBUG"
    assert rules == {}
