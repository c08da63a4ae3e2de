"""Agent adapter contract.

An adapter is pure data plus pure functions over that data: the
command to launch, the regexes that recognise readiness, blocking
prompts, turn completion, login walls and long-running tools, and the
files (memory, approval config) the agent reads from its workdir.
Each supported program is one AgentAdapter value keyed by
``agent_type``; nothing here touches a process.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..ansi import strip_ansi
from ..models import (
    AgentCredentials,
    ApprovalPreset,
    AutoResponseRule,
    BlockingPrompt,
    SpawnConfig,
    ToolRunning,
)

logger = logging.getLogger(__name__)

# Only the last part of the window is inspected for ready/busy markers.
_TAIL_CHARS = 600

_URL = re.compile(r"https?://[^\s'\"<>]+")


@dataclass(frozen=True)
class BlockingPattern:
    type: str
    pattern: re.Pattern[str]
    can_auto_respond: bool = False


@dataclass(frozen=True)
class ToolPattern:
    tool_name: str
    pattern: re.Pattern[str]
    description: str = ""


@dataclass(frozen=True)
class WorkspaceFile:
    """A file in the workdir that the agent program reads."""
    path: str
    kind: str
    description: str
    format: str = "markdown"

    def to_dict(self) -> dict[str, str]:
        return {
            "path": self.path,
            "kind": self.kind,
            "description": self.description,
            "format": self.format,
        }


@dataclass
class ApprovalConfig:
    """Concrete permission files and CLI flags for one preset."""
    preset: ApprovalPreset
    # Relative path -> parsed content (dict for json/yaml, str for toml).
    files: dict[str, Any] = field(default_factory=dict)
    cli_flags: list[str] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "preset": self.preset.value,
            "files": dict(self.files),
            "cli_flags": list(self.cli_flags),
            "summary": self.summary,
        }


ApprovalBuilder = Callable[[ApprovalPreset], ApprovalConfig]


def _compile_all(patterns: tuple[str, ...], flags: int = re.IGNORECASE) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, flags) for p in patterns)


@dataclass(frozen=True)
class AgentAdapter:
    agent_type: str
    display_name: str
    command: str
    base_args: tuple[str, ...] = ()
    ready_patterns: tuple[re.Pattern[str], ...] = ()
    # Markers that the agent is mid-turn; they veto ready/turn-complete.
    busy_patterns: tuple[re.Pattern[str], ...] = ()
    # Defaults to ready_patterns when empty.
    turn_complete_patterns: tuple[re.Pattern[str], ...] = ()
    blocking_patterns: tuple[BlockingPattern, ...] = ()
    login_patterns: tuple[re.Pattern[str], ...] = ()
    tool_patterns: tuple[ToolPattern, ...] = ()
    builtin_rules: tuple[AutoResponseRule, ...] = ()
    memory_file: str | None = None
    # CLI flag that points the program at its memory file, if it needs one.
    memory_flag: str | None = None
    extra_workspace_files: tuple[WorkspaceFile, ...] = ()
    approval_builder: ApprovalBuilder | None = None
    # (AgentCredentials attribute, env var name)
    credential_env: tuple[tuple[str, str], ...] = ()
    model_env: str | None = None
    extra_env: tuple[tuple[str, str], ...] = ()
    install_hint: str = ""

    # ── Detection ──────────────────────────────────────────────

    @staticmethod
    def _tail(text: str) -> str:
        return strip_ansi(text[-_TAIL_CHARS * 4:])[-_TAIL_CHARS:]

    def _is_busy(self, tail: str) -> bool:
        return any(p.search(tail) for p in self.busy_patterns)

    def detect_ready(self, text: str) -> bool:
        tail = self._tail(text)
        if not tail or self._is_busy(tail):
            return False
        return any(p.search(tail) for p in self.ready_patterns)

    def detect_turn_complete(self, text: str) -> bool:
        tail = self._tail(text)
        if not tail or self._is_busy(tail):
            return False
        patterns = self.turn_complete_patterns or self.ready_patterns
        return any(p.search(tail) for p in patterns)

    def detect_blocking(self, text: str) -> BlockingPrompt | None:
        clean = strip_ansi(text)
        for blocking in self.blocking_patterns:
            found = None
            for found in blocking.pattern.finditer(clean):
                pass
            if found is None:
                continue
            return BlockingPrompt(
                type=blocking.type,
                prompt=_line_around(clean, found.start(), found.end()),
                can_auto_respond=blocking.can_auto_respond,
            )
        return None

    def detect_login(self, text: str) -> BlockingPrompt | None:
        clean = strip_ansi(text)
        for pattern in self.login_patterns:
            found = pattern.search(clean)
            if not found:
                continue
            url_match = _URL.search(clean, found.start())
            return BlockingPrompt(
                type="login",
                prompt=_line_around(clean, found.start(), found.end()),
                instructions=f"{self.display_name} requires authentication",
                url=url_match.group(0) if url_match else None,
            )
        return None

    def detect_tool_running(self, text: str) -> ToolRunning | None:
        clean = strip_ansi(text)
        for tool in self.tool_patterns:
            found = tool.pattern.search(clean)
            if found:
                return ToolRunning(
                    tool_name=tool.tool_name,
                    description=tool.description or _line_around(
                        clean, found.start(), found.end(),
                    ),
                )
        return None

    # ── Workspace files ────────────────────────────────────────

    def memory_file_path(self, workdir: str | Path) -> Path | None:
        if not self.memory_file:
            return None
        return Path(workdir) / self.memory_file

    def write_memory_file(self, workdir: str | Path, content: str) -> Path | None:
        path = self.memory_file_path(workdir)
        if path is None:
            logger.debug("%s has no memory file; skipping", self.agent_type)
            return None
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("Wrote %s memory file %s (%d chars)", self.agent_type, path, len(content))
        return path

    def workspace_files(self) -> list[WorkspaceFile]:
        files: list[WorkspaceFile] = []
        if self.memory_file:
            files.append(WorkspaceFile(
                path=self.memory_file,
                kind="memory",
                description=f"Project instructions {self.display_name} loads on start",
            ))
        if self.approval_builder is not None:
            for rel_path in self.approval_builder(ApprovalPreset.STANDARD).files:
                files.append(WorkspaceFile(
                    path=rel_path,
                    kind="approval",
                    description=f"{self.display_name} permission settings",
                    format=_format_for(rel_path),
                ))
        files.extend(self.extra_workspace_files)
        return files

    def approval_config(self, preset: ApprovalPreset) -> ApprovalConfig | None:
        if self.approval_builder is None:
            return None
        return self.approval_builder(preset)

    def write_approval_config(
        self, workdir: str | Path, preset: ApprovalPreset,
    ) -> list[Path]:
        config = self.approval_config(preset)
        if config is None:
            return []
        written: list[Path] = []
        for rel_path, content in config.files.items():
            path = Path(workdir) / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(_render(path, content), encoding="utf-8")
            written.append(path)
        logger.info(
            "Wrote %s approval config (%s): %s",
            self.agent_type, preset.value, ", ".join(str(p) for p in written),
        )
        return written

    # ── Launch ─────────────────────────────────────────────────

    def build_command(self, config: SpawnConfig) -> list[str]:
        argv = [self.command, *self.base_args]
        if config.approval_preset is not None:
            approval = self.approval_config(config.approval_preset)
            if approval is not None:
                argv.extend(approval.cli_flags)
        if self.memory_flag and self.memory_file and config.memory_content:
            argv.extend([self.memory_flag, self.memory_file])
        return argv

    def build_env(self, config: SpawnConfig) -> dict[str, str]:
        env: dict[str, str] = dict(self.extra_env)
        credentials = config.credentials or AgentCredentials()
        for attr, env_name in self.credential_env:
            value = getattr(credentials, attr, None)
            if value:
                env[env_name] = value
        if config.model and self.model_env:
            env[self.model_env] = config.model
        env.update(config.env)
        return env

    def is_installed(self) -> bool:
        return shutil.which(self.command) is not None or os.path.isfile(self.command)


def _line_around(text: str, start: int, end: int) -> str:
    line_start = text.rfind("\n", 0, start) + 1
    line_end = text.find("\n", end)
    if line_end == -1:
        line_end = len(text)
    return text[line_start:line_end].strip()


def _format_for(path: str) -> str:
    suffix = Path(path).suffix
    return {".json": "json", ".toml": "toml", ".yml": "yaml", ".yaml": "yaml"}.get(
        suffix, "text",
    )


def _render(path: Path, content: Any) -> str:
    """Serialize approval content. JSON files are merged into existing ones."""
    fmt = _format_for(path.name)
    if fmt == "json" and isinstance(content, dict):
        merged: dict[str, Any] = {}
        if path.exists():
            try:
                existing = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                logger.warning("Replacing unreadable JSON settings at %s", path)
                existing = {}
            if isinstance(existing, dict):
                merged = existing
        merged.update(content)
        return json.dumps(merged, indent=2) + "\n"
    if fmt == "yaml" and isinstance(content, dict):
        return yaml.safe_dump(content, sort_keys=False)
    return str(content)
