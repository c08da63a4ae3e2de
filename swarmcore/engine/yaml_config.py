"""YAML configuration loader.

Loads an optional ``swarmcore.yaml`` layered on top of SwarmConfig
defaults (and whatever SWARM_* env vars already applied).

Example YAML:
    engine:
      strategy: worker
      stall_timeout_seconds: 6
      output_buffer_lines: 2000

    coordinator:
      supervision_level: confirm
      decision_timeout_seconds: 45
      max_idle_checks: 4

    prompts:
      escalate_guidance: |
        Escalate anything that touches production credentials.
      ignore_guidance: |
        Ignore spinner-only output.

    rules:
      claude:
        - pattern: "Do you trust the files in this folder\\?"
          keys: [enter]
          type: trust
          description: Trust workspace
      aider:
        - pattern: "Add .* to the chat\\? \\(Y\\)es/\\(N\\)o"
          response: "y"
          once: true
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import SwarmConfig
from .models import AutoResponseRule

logger = logging.getLogger(__name__)

_SECTIONS_TO_CONFIG = ("engine", "coordinator")


@dataclass
class LoadedConfig:
    """Result of load_yaml_config()."""
    config: SwarmConfig
    # Raw overrides for CoordinatorPrompts.from_dict().
    prompts: dict[str, str] = field(default_factory=dict)
    # Extra auto-response rules keyed by agent type.
    rules: dict[str, list[AutoResponseRule]] = field(default_factory=dict)


def _coerce(current: Any, value: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.lower() in {"1", "true", "yes"}
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if current is None or isinstance(current, str):
        return None if value is None else str(value)
    return value


def _apply_section(
    config: SwarmConfig, section: str, raw: dict[str, Any],
) -> SwarmConfig:
    known = {f.name for f in fields(SwarmConfig) if f.name != "credentials"}
    updates: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning(
                "load_yaml_config: unknown key %s.%s ignored", section, key,
            )
            continue
        updates[key] = _coerce(getattr(config, key), value)
    return replace(config, **updates) if updates else config


def _parse_rules(raw: Any) -> dict[str, list[AutoResponseRule]]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("'rules' must be a mapping of agent type to rule list")
    parsed: dict[str, list[AutoResponseRule]] = {}
    for agent_type, entries in raw.items():
        rules: list[AutoResponseRule] = []
        for entry in entries or []:
            if not isinstance(entry, dict) or "pattern" not in entry:
                raise ValueError(
                    f"Rule for '{agent_type}' needs at least a 'pattern': {entry!r}"
                )
            if entry.get("response") is None and not entry.get("keys"):
                raise ValueError(
                    f"Rule '{entry['pattern']}' for '{agent_type}' "
                    "needs 'response' or 'keys'"
                )
            try:
                rules.append(AutoResponseRule.from_dict(entry))
            except re.error as exc:
                raise ValueError(
                    f"Invalid rule pattern '{entry['pattern']}': {exc}"
                ) from exc
        parsed[str(agent_type)] = rules
    return parsed


def load_yaml_config(
    path: str | Path,
    base: SwarmConfig | None = None,
) -> LoadedConfig:
    """Load and parse a YAML config file on top of *base*."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("load_yaml_config: successfully read and parsed %s", path)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s: sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base or SwarmConfig()
    for section in _SECTIONS_TO_CONFIG:
        section_raw = raw.get(section) or {}
        if not isinstance(section_raw, dict):
            raise ValueError(f"{path}: '{section}' must be a mapping")
        config = _apply_section(config, section, section_raw)

    prompts = {str(k): str(v) for k, v in (raw.get("prompts") or {}).items()}
    rules = _parse_rules(raw.get("rules"))
    logger.info(
        "load_yaml_config: strategy=%s supervision=%s prompt_overrides=%d rule_sets=%d",
        config.strategy, config.supervision_level, len(prompts), len(rules),
    )
    return LoadedConfig(config=config, prompts=prompts, rules=rules)
