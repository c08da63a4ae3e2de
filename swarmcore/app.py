"""swarmcore CLI: main application entry point.

``build_orchestrator()`` is the composition root: it wires the adapter
registry, execution strategy, session manager, coordinator and HTTP
server together and hands each its collaborators explicitly.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass, replace
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from .api import SwarmServer
from .coordinator import CoordinatorPrompts, SwarmCoordinator, TaskStatus
from .engine.adapters import AdapterRegistry, build_default_registry
from .engine.config import ChatCallback, ReasoningFn, SwarmConfig, credentials_from_env
from .engine.errors import OrchestrationError
from .engine.models import ApprovalPreset, AutoResponseRule, SpawnConfig
from .engine.session_manager import SessionManager
from .engine.stall import StallClassifier
from .engine.strategies import InProcessStrategy, WorkerStrategy
from .engine.strategies.base import ExecutionStrategy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "swarmcore.yaml"


@dataclass
class Orchestrator:
    config: SwarmConfig
    manager: SessionManager
    coordinator: SwarmCoordinator
    server: SwarmServer

    async def shutdown(self) -> None:
        await self.coordinator.stop()
        await self.manager.shutdown()


def _default_reasoner(config: SwarmConfig) -> ReasoningFn | None:
    from .engine.reasoning import ClaudeReasoner, build_reasoner

    if not ClaudeReasoner.is_available():
        logger.warning(
            "claude CLI not found on PATH; stall classification and "
            "coordination decisions are disabled (every decision escalates)"
        )
        return None
    return build_reasoner(config.reasoning_model)


def _build_strategy(config: SwarmConfig, adapters: AdapterRegistry) -> ExecutionStrategy:
    if config.strategy == "worker":
        return WorkerStrategy(config)
    if config.strategy != "inprocess":
        logger.warning("Unknown strategy %r, using inprocess", config.strategy)
    return InProcessStrategy(adapters, config)


def build_orchestrator(
    config: SwarmConfig | None = None,
    *,
    reason: ReasoningFn | None = None,
    prompts: CoordinatorPrompts | None = None,
    extra_rules: dict[str, list[AutoResponseRule]] | None = None,
    adapters: AdapterRegistry | None = None,
    strategy: ExecutionStrategy | None = None,
    chat: ChatCallback | None = None,
) -> Orchestrator:
    """Construct and wire every component. Nothing is started."""
    config = config or SwarmConfig.from_env()
    adapters = adapters or build_default_registry()
    if reason is None:
        reason = _default_reasoner(config)
    classifier = None
    if reason is not None:
        classifier = StallClassifier(
            reason,
            timeout_seconds=config.classifier_timeout_seconds,
            output_chars=config.classifier_output_chars,
            trace_limit=config.classifier_trace_limit,
        )
    manager = SessionManager(
        strategy or _build_strategy(config, adapters),
        adapters,
        config,
        classifier=classifier,
        extra_rules=extra_rules,
    )
    coordinator = SwarmCoordinator(manager, reason, config, prompts=prompts, chat=chat)
    server = SwarmServer(manager, coordinator, config)
    logger.info(
        "Orchestrator built (strategy=%s, agents=%s, supervision=%s)",
        manager.strategy.name, ", ".join(adapters.list_types()), config.supervision_level,
    )
    return Orchestrator(config=config, manager=manager, coordinator=coordinator, server=server)


def _resolve_config(args: argparse.Namespace) -> tuple[SwarmConfig, CoordinatorPrompts, dict[str, list[AutoResponseRule]]]:
    config = SwarmConfig.from_env()
    config = replace(config, credentials=credentials_from_env())

    config_path = args.config
    if not config_path:
        candidate = Path.cwd() / DEFAULT_CONFIG_NAME
        logger.info("Config auto-discovery candidate: %s (exists=%s)", candidate, candidate.exists())
        if candidate.exists():
            config_path = str(candidate)

    prompts = CoordinatorPrompts()
    rules: dict[str, list[AutoResponseRule]] = {}
    if config_path:
        from .engine.yaml_config import load_yaml_config

        loaded = load_yaml_config(config_path, base=config)
        config = loaded.config
        prompts = CoordinatorPrompts.from_dict(loaded.prompts)
        rules = loaded.rules
    else:
        logger.info("No config file found; using defaults")

    overrides: dict[str, Any] = {}
    if args.strategy:
        overrides["strategy"] = args.strategy
    if args.supervision:
        overrides["supervision_level"] = args.supervision
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    if overrides:
        config = replace(config, **overrides)
    return config, prompts, rules


def _configure_cli_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )


def _configure_server_logging(level: str) -> Path:
    log_dir = Path.home() / ".swarmcore" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "swarmcore-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _print_chat(text: str, source: str) -> None:
    print(f"[{source}] {text}", flush=True)


async def _run_task(orchestrator: Orchestrator, args: argparse.Namespace) -> int:
    """Dispatch one coordinated task and follow it until it finishes or escalates."""
    coordinator = orchestrator.coordinator
    events: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    unsubscribe = coordinator.add_observer(events.put_nowait)
    coordinator.start()
    try:
        info = await coordinator.dispatch_task(
            SpawnConfig(
                agent_type=args.agent,
                name=args.name or "",
                workdir=args.workdir,
                initial_task=args.task,
                approval_preset=ApprovalPreset(args.approval) if args.approval else None,
                credentials=orchestrator.config.credentials,
            ),
            label=args.name,
        )
        print(f"Spawned {info.agent_type} session {info.id} in {info.workdir}", flush=True)
        while True:
            event = await events.get()
            if event.get("session_id") != info.id:
                continue
            if args.verbose:
                print(json.dumps(event), flush=True)
            task = coordinator.get_task(info.id)
            if task is None:
                return 1
            if task.status is TaskStatus.COMPLETED:
                return 0
            if task.status in (TaskStatus.ERROR, TaskStatus.STOPPED, TaskStatus.ESCALATED):
                print(f"Task ended in status {task.status.value}", flush=True)
                return 2
    except OrchestrationError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        unsubscribe()
        await orchestrator.shutdown()


def main() -> None:
    """Entry point for the ``swarmcore`` command."""
    parser = argparse.ArgumentParser(
        prog="swarmcore",
        description="Supervised orchestration of terminal coding agents",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start HTTP+SSE server mode",
    )
    parser.add_argument("--host", help="Server bind address")
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help=f"YAML config file (default: ./{DEFAULT_CONFIG_NAME} if present)",
    )
    parser.add_argument(
        "--strategy", choices=["inprocess", "worker"],
        help="Where PTY sessions run",
    )
    parser.add_argument(
        "--supervision", choices=["autonomous", "confirm", "notify"],
        help="Coordinator supervision level",
    )
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    parser.add_argument(
        "--list-agents", action="store_true",
        help="Show supported agent types and whether their CLIs are installed",
    )
    parser.add_argument("--task", help="Run one coordinated task and exit")
    parser.add_argument("--agent", default="claude", help="Agent type for --task")
    parser.add_argument("--workdir", help="Working directory for --task")
    parser.add_argument("--name", help="Label for --task")
    parser.add_argument(
        "--approval", choices=[p.value for p in ApprovalPreset],
        help="Approval preset written before the agent starts",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Print coordinator events while running --task",
    )
    args = parser.parse_args()

    log_level = (args.log_level or os.getenv("SWARM_LOG_LEVEL", "INFO")).upper()

    if args.list_agents:
        _configure_cli_logging(log_level)
        registry = build_default_registry()
        for entry in registry.preflight():
            mark = "installed" if entry["installed"] else f"missing ({entry['install_hint']})"
            print(f"  {entry['agent_type']:<8} {entry['command']:<10} {mark}")
        sys.exit(0)

    if args.server:
        log_file = _configure_server_logging(log_level)
        config, prompts, rules = _resolve_config(args)
        logger.info(
            "Starting swarmcore server mode cwd=%s port=%s config=%s log=%s",
            Path.cwd(), config.port, args.config or "<auto>", log_file,
        )
        orchestrator = build_orchestrator(config, prompts=prompts, extra_rules=rules)
        asyncio.run(orchestrator.server.start())
        sys.exit(0)

    _configure_cli_logging(log_level)
    if not args.task:
        parser.print_help()
        sys.exit(2)
    config, prompts, rules = _resolve_config(args)
    orchestrator = build_orchestrator(
        config, prompts=prompts, extra_rules=rules, chat=_print_chat,
    )
    sys.exit(asyncio.run(_run_task(orchestrator, args)))


if __name__ == "__main__":
    main()
