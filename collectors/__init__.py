"""Collector interface and factory.

A collector gathers one source's "what's new" payload for the proactive
scheduler. Payloads are plain JSON-serializable structures keyed by the
collector's name in the scheduler's combined data.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from config import Config

log = logging.getLogger(__name__)


class Collector(Protocol):
    name: str

    async def collect(self) -> Any: ...


def create_collectors(config: Config, conn: sqlite3.Connection) -> list[Collector]:
    """Factory: build every enabled collector from config."""
    collectors: list[Collector] = []

    if config.goals_collector_enabled:
        from goals import GoalRepository

        from .goals import GoalsCollector
        collectors.append(GoalsCollector(
            GoalRepository(conn),
            horizon_days=config.goals_horizon_days,
        ))

    if config.vault_collector_enabled:
        from .vault import VaultCollector
        collectors.append(VaultCollector(
            config.vault_path,
            lookback_hours=config.vault_lookback_hours,
            max_items=config.vault_max_items,
            exclude_dirs=config.vault_exclude_dirs,
        ))

    log.info("Collectors: %s", ", ".join(c.name for c in collectors) or "none")
    return collectors
