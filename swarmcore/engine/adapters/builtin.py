"""Built-in adapters: shell, claude, codex, gemini, aider.

Detection patterns are heuristics over ANSI-stripped output. They are
data, so a YAML ``rules:`` section or a custom adapter can refine them
without touching the session runtime.
"""
from __future__ import annotations

import re

from ..models import ApprovalPreset, AutoResponseRule
from ..rules import GEMINI_KEY_PROMPT
from .base import (
    AgentAdapter,
    ApprovalConfig,
    BlockingPattern,
    ToolPattern,
    _compile_all,
)

# Long-running tools every agent may start.
COMMON_TOOL_PATTERNS: tuple[ToolPattern, ...] = (
    ToolPattern(
        "dev-server",
        re.compile(
            r"(?:Local|Network):\s+https?://|ready in \d+\s*ms|"
            r"listening (?:on|at) (?:port|https?://)|Starting development server",
            re.IGNORECASE,
        ),
        "Development server running",
    ),
    ToolPattern(
        "test-runner",
        re.compile(r"(?:Running|Collecting) (?:\d+ )?tests?\b|=+ test session starts =+", re.IGNORECASE),
        "Test suite running",
    ),
    ToolPattern(
        "package-install",
        re.compile(r"\b(?:npm|pnpm|yarn|bun|pip|uv) (?:install|add|i)\b", re.IGNORECASE),
        "Installing dependencies",
    ),
)

_YES_NO = BlockingPattern(
    "confirmation",
    re.compile(r"\((?:y/n|yes/no|Y/n|y/N)\)|\[(?:y/n|Y/n|y/N)\]", re.IGNORECASE),
)


# ── Approval presets ──────────────────────────────────────────

_CLAUDE_ALLOW = {
    ApprovalPreset.READONLY: ["Read", "Glob", "Grep", "LS"],
    ApprovalPreset.STANDARD: ["Read", "Glob", "Grep", "LS", "Edit", "Write"],
    ApprovalPreset.PERMISSIVE: ["Read", "Glob", "Grep", "LS", "Edit", "Write", "Bash"],
    ApprovalPreset.AUTONOMOUS: [
        "Read", "Glob", "Grep", "LS", "Edit", "Write", "Bash", "WebFetch", "WebSearch",
    ],
}
_CLAUDE_DENY = {
    ApprovalPreset.READONLY: ["Edit", "Write", "Bash"],
}


def _claude_approval(preset: ApprovalPreset) -> ApprovalConfig:
    flags = ["--dangerously-skip-permissions"] if preset is ApprovalPreset.AUTONOMOUS else []
    return ApprovalConfig(
        preset=preset,
        files={".claude/settings.json": {"permissions": {
            "allow": list(_CLAUDE_ALLOW[preset]),
            "deny": list(_CLAUDE_DENY.get(preset, [])),
        }}},
        cli_flags=flags,
        summary=f"Claude tools allowed: {', '.join(_CLAUDE_ALLOW[preset])}",
    )


_CODEX_POLICY = {
    ApprovalPreset.READONLY: ("untrusted", "read-only"),
    ApprovalPreset.STANDARD: ("on-request", "workspace-write"),
    ApprovalPreset.PERMISSIVE: ("on-failure", "workspace-write"),
    ApprovalPreset.AUTONOMOUS: ("never", "danger-full-access"),
}


def _codex_approval(preset: ApprovalPreset) -> ApprovalConfig:
    approval, sandbox = _CODEX_POLICY[preset]
    toml = (
        "# Generated by swarmcore\n"
        f'approval_policy = "{approval}"\n'
        f'sandbox_mode = "{sandbox}"\n'
    )
    return ApprovalConfig(
        preset=preset,
        files={".codex/config.toml": toml},
        cli_flags=["-a", approval, "-s", sandbox],
        summary=f"approval={approval}, sandbox={sandbox}",
    )


def _gemini_approval(preset: ApprovalPreset) -> ApprovalConfig:
    settings: dict = {"autoAccept": preset in (ApprovalPreset.PERMISSIVE, ApprovalPreset.AUTONOMOUS)}
    if preset is ApprovalPreset.READONLY:
        settings["excludeTools"] = ["write_file", "replace", "run_shell_command"]
    flags = ["--yolo"] if preset is ApprovalPreset.AUTONOMOUS else []
    return ApprovalConfig(
        preset=preset,
        files={".gemini/settings.json": settings},
        cli_flags=flags,
        summary=f"autoAccept={settings['autoAccept']}" + (", yolo" if flags else ""),
    )


def _aider_approval(preset: ApprovalPreset) -> ApprovalConfig:
    settings: dict = {
        ApprovalPreset.READONLY: {"dry-run": True, "auto-commits": False},
        ApprovalPreset.STANDARD: {"auto-commits": False},
        ApprovalPreset.PERMISSIVE: {"auto-commits": True},
        ApprovalPreset.AUTONOMOUS: {"auto-commits": True, "yes-always": True},
    }[preset]
    flags = ["--yes-always"] if preset is ApprovalPreset.AUTONOMOUS else []
    return ApprovalConfig(
        preset=preset,
        files={".aider.conf.yml": dict(settings)},
        cli_flags=flags,
        summary=", ".join(f"{k}={v}" for k, v in settings.items()),
    )


# ── Adapters ──────────────────────────────────────────────────

SHELL = AgentAdapter(
    agent_type="shell",
    display_name="Shell",
    command="/bin/sh",
    base_args=("-i",),
    ready_patterns=_compile_all((r"(?:^|\n)[^\n]*[$#]$",)),
    blocking_patterns=(_YES_NO,),
    tool_patterns=COMMON_TOOL_PATTERNS,
    extra_env=(("PS1", "$ "), ("TERM", "dumb"), ("ENV", "")),
    install_hint="POSIX shell (always available)",
)

CLAUDE = AgentAdapter(
    agent_type="claude",
    display_name="Claude Code",
    command="claude",
    ready_patterns=_compile_all((
        r"\?\s+for\s+shortcuts",
        r"│\s*>\s",
        r"(?:^|\n)\s*❯\s*$",
    )),
    busy_patterns=_compile_all((r"esc\s+to\s+interrupt",)),
    blocking_patterns=(
        BlockingPattern(
            "trust",
            re.compile(r"Do you trust the files in this folder\?", re.IGNORECASE),
            can_auto_respond=True,
        ),
        BlockingPattern(
            "permission",
            re.compile(
                r"Do you want to (?:proceed|make this edit|create|run|allow)[^?\n]*\?",
                re.IGNORECASE,
            ),
        ),
        _YES_NO,
    ),
    login_patterns=_compile_all((
        r"Invalid API key",
        r"Please run /login",
        r"Select login method",
        r"OAuth (?:token|authentication) (?:has )?expired",
    )),
    tool_patterns=COMMON_TOOL_PATTERNS,
    builtin_rules=(
        AutoResponseRule(
            pattern=re.compile(r"Do you trust the files in this folder\?", re.IGNORECASE),
            type="trust",
            keys=["enter"],
            description="Trust the working directory",
        ),
    ),
    memory_file="CLAUDE.md",
    approval_builder=_claude_approval,
    credential_env=(
        ("anthropic_api_key", "ANTHROPIC_API_KEY"),
        ("github_token", "GITHUB_TOKEN"),
    ),
    model_env="ANTHROPIC_MODEL",
    install_hint="npm install -g @anthropic-ai/claude-code",
)

CODEX = AgentAdapter(
    agent_type="codex",
    display_name="OpenAI Codex",
    command="codex",
    ready_patterns=_compile_all((
        r"Ask Codex to do anything",
        r"⏎\s+send",
        r"(?:^|\n)\s*›\s*$",
    )),
    busy_patterns=_compile_all((r"Esc to interrupt", r"\bWorking\s*\(\d+s")),
    blocking_patterns=(
        BlockingPattern(
            "trust",
            re.compile(r"Do you trust the contents of this directory\?", re.IGNORECASE),
            can_auto_respond=True,
        ),
        BlockingPattern(
            "permission",
            re.compile(
                r"Allow (?:command|Codex to)[^?\n]*\?|Would you like to (?:run|apply|make)[^?\n]*\?",
                re.IGNORECASE,
            ),
        ),
        _YES_NO,
    ),
    login_patterns=_compile_all((
        r"Sign in with ChatGPT",
        r"OPENAI_API_KEY (?:is )?not set",
        r"Please log ?in",
    )),
    tool_patterns=COMMON_TOOL_PATTERNS,
    builtin_rules=(
        AutoResponseRule(
            pattern=re.compile(r"Do you trust the contents of this directory\?", re.IGNORECASE),
            type="trust",
            keys=["enter"],
            description="Trust the working directory",
        ),
    ),
    memory_file="AGENTS.md",
    approval_builder=_codex_approval,
    credential_env=(
        ("openai_api_key", "OPENAI_API_KEY"),
        ("github_token", "GITHUB_TOKEN"),
    ),
    model_env="OPENAI_MODEL",
    install_hint="npm install -g @openai/codex",
)

GEMINI = AgentAdapter(
    agent_type="gemini",
    display_name="Gemini CLI",
    command="gemini",
    ready_patterns=_compile_all((
        r"Type your message",
        r"(?:^|\n)\s*>\s+Type",
    )),
    busy_patterns=_compile_all((r"esc to cancel",)),
    blocking_patterns=(
        BlockingPattern("config", GEMINI_KEY_PROMPT),
        BlockingPattern(
            "permission",
            re.compile(
                r"Allow execution[^?\n]*\?|Apply this change\?|Do you want to proceed\?",
                re.IGNORECASE,
            ),
        ),
        BlockingPattern(
            "trust",
            re.compile(r"Do you trust this folder\?", re.IGNORECASE),
            can_auto_respond=True,
        ),
        _YES_NO,
    ),
    login_patterns=_compile_all((
        r"Please set an Auth method",
        r"GEMINI_API_KEY environment variable not found",
        r"Waiting for auth",
    )),
    tool_patterns=COMMON_TOOL_PATTERNS,
    builtin_rules=(
        AutoResponseRule(
            pattern=re.compile(r"Do you trust this folder\?", re.IGNORECASE),
            type="trust",
            keys=["enter"],
            description="Trust the working directory",
        ),
    ),
    memory_file="GEMINI.md",
    approval_builder=_gemini_approval,
    credential_env=(
        ("google_api_key", "GEMINI_API_KEY"),
        ("google_api_key", "GOOGLE_API_KEY"),
        ("github_token", "GITHUB_TOKEN"),
    ),
    model_env="GEMINI_MODEL",
    install_hint="npm install -g @google/gemini-cli",
)

AIDER = AgentAdapter(
    agent_type="aider",
    display_name="Aider",
    command="aider",
    ready_patterns=_compile_all((r"(?:^|\n)(?:[\w-]+ )?>\s*$",)),
    blocking_patterns=(
        BlockingPattern(
            "confirmation",
            re.compile(r"\(Y\)es/\(N\)o[^\n]*", re.IGNORECASE),
        ),
    ),
    login_patterns=_compile_all((
        r"No (?:LLM )?API key",
        r"(?:OPENAI|ANTHROPIC)_API_KEY[^\n]*not (?:set|found)",
    )),
    tool_patterns=COMMON_TOOL_PATTERNS,
    builtin_rules=(
        AutoResponseRule(
            pattern=re.compile(
                r"Open (?:documentation )?url for more info\?.*\(D\)on't ask again",
                re.IGNORECASE,
            ),
            type="config",
            response="d",
            description="Decline opening documentation links",
        ),
    ),
    memory_file="CONVENTIONS.md",
    memory_flag="--read",
    approval_builder=_aider_approval,
    credential_env=(
        ("anthropic_api_key", "ANTHROPIC_API_KEY"),
        ("openai_api_key", "OPENAI_API_KEY"),
        ("google_api_key", "GEMINI_API_KEY"),
    ),
    model_env="AIDER_MODEL",
    install_hint="pip install aider-chat",
)

BUILTIN_ADAPTERS: tuple[AgentAdapter, ...] = (SHELL, CLAUDE, CODEX, GEMINI, AIDER)
