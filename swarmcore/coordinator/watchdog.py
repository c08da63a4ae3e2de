"""Idle watchdog for coordinated sessions.

Runs periodically and looks for active tasks that have produced no
lifecycle event for longer than the idle threshold. A task whose
terminal output changed since the previous scan is treated as busy
(spinners and streaming builds emit no named events). Everything
else gets an idle check queued on its session; once the check count
reaches the maximum the task is force-escalated instead.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from .models import TaskContext, TaskStatus

if TYPE_CHECKING:
    from .coordinator import SwarmCoordinator

logger = logging.getLogger(__name__)

SNAPSHOT_LINES = 20


def find_idle_tasks(
    tasks: list[TaskContext],
    now: datetime,
    threshold_seconds: float,
) -> list[tuple[TaskContext, float]]:
    """Active tasks idle for at least *threshold_seconds*, with their idle time."""
    idle: list[tuple[TaskContext, float]] = []
    for task in tasks:
        if task.status is not TaskStatus.ACTIVE:
            continue
        idle_seconds = (now - task.last_activity_at).total_seconds()
        if idle_seconds >= threshold_seconds:
            idle.append((task, idle_seconds))
    return idle


async def scan_idle_sessions(coordinator: SwarmCoordinator) -> int:
    """One watchdog pass. Returns how many tasks were checked or escalated."""
    config = coordinator.config
    now = datetime.now(timezone.utc)
    acted = 0
    for task, idle_seconds in find_idle_tasks(
        coordinator.list_tasks(), now, config.idle_threshold_seconds,
    ):
        if coordinator.is_deciding(task.session_id):
            continue

        output = coordinator.session_output(task.session_id, SNAPSHOT_LINES)
        if output != task.last_output_snapshot:
            task.last_output_snapshot = output
            task.touch()
            logger.debug("Idle watchdog: %s has fresh output, not idle", task.label)
            continue

        task.idle_check_count += 1
        idle_minutes = round(idle_seconds / 60)
        logger.info(
            "Idle watchdog: %s idle for %dm (check %d/%d)",
            task.label, idle_minutes, task.idle_check_count, config.max_idle_checks,
        )
        if task.idle_check_count >= config.max_idle_checks:
            coordinator.force_escalate_idle(task, idle_minutes)
        else:
            coordinator.request_idle_check(task, idle_minutes)
        acted += 1
    return acted


async def run_idle_watchdog(
    coordinator: SwarmCoordinator,
    check_interval: float = 60.0,
) -> None:
    """Background task that periodically scans for idle sessions."""
    while True:
        try:
            await asyncio.sleep(check_interval)
            await scan_idle_sessions(coordinator)
        except asyncio.CancelledError:
            logger.info("Idle watchdog stopped")
            return
        except Exception:
            logger.exception("Idle watchdog error")
