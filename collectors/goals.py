"""Goals collector — active goals whose deadline is close or already past."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any

log = logging.getLogger(__name__)

GOALS_SOURCE = "goals"
_DESCRIPTION_LIMIT = 150


class GoalsCollector:
    name = GOALS_SOURCE

    def __init__(self, goals: Any, horizon_days: int = 3, today: Any = None):
        self.goals = goals
        self.horizon_days = horizon_days
        self._today = today or date.today

    async def collect(self) -> dict:
        active = self.goals.get_active_goals()
        cutoff = self._today() + timedelta(days=self.horizon_days)

        approaching = []
        for g in active:
            if not g.get("deadline"):
                continue
            try:
                deadline = date.fromisoformat(g["deadline"])
            except ValueError:
                log.warning("Goal #%s has unparseable deadline %r", g.get("id"), g["deadline"])
                continue
            if deadline > cutoff:
                continue
            approaching.append({
                "id": g["id"],
                "title": g["title"],
                "description": (g.get("description") or "")[:_DESCRIPTION_LIMIT] or None,
                "deadline": g["deadline"],
                "status": g["status"],
            })
        return {"approaching": approaching}
