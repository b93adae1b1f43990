"""Viewer-side copy of the board.

Applies pushed events and keeps a local countdown between pushes. Every
event carries the full value of what it describes, so applying an event a
second time changes nothing.
"""

from __future__ import annotations

import copy
import datetime
import math
from typing import Any, Dict, List, Optional

from events import EventType


def _parse_time(value: Any) -> Optional[datetime.datetime]:
    if isinstance(value, datetime.datetime):
        moment = value
    elif isinstance(value, str) and value:
        try:
            moment = datetime.datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=datetime.timezone.utc)
    return moment


def local_left(cell: Dict[str, Any], now: datetime.datetime) -> Optional[int]:
    start = _parse_time(cell.get("startAt"))
    if start is None:
        return None
    elapsed = max((now - start).total_seconds(), 0.0)
    return int(cell.get("duration") or 0) - int(math.floor(elapsed))


class BoardMirror:
    def __init__(self) -> None:
        self.cells: Dict[str, Dict[int, Optional[Dict[str, Any]]]] = {}
        self.plans: List[Dict[str, Any]] = []
        self._last_tick: Optional[datetime.datetime] = None

    # -------------------------------------------------------------- reconcile
    @staticmethod
    def _merge_cell(local: Optional[Dict[str, Any]], incoming: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if incoming is None:
            return None
        merged = dict(incoming)
        if local is not None and local.get("left") == incoming.get("left"):
            # Same remaining time as our own tick predicted: keep the local cell.
            merged["done"] = local.get("done", False)
        else:
            merged["done"] = bool(incoming.get("expired")) or (incoming.get("left") is not None and incoming["left"] <= 0)
        return merged

    @staticmethod
    def _merge_plan(local: Optional[Dict[str, Any]], incoming: Dict[str, Any]) -> Dict[str, Any]:
        merged = copy.deepcopy(incoming)
        if local is None:
            return merged
        predicted = {step["modality"]: step for step in local.get("steps", [])}
        for step in merged.get("steps", []):
            mine = predicted.get(step["modality"])
            if mine is not None and mine.get("status") == step.get("status") and mine.get("left") == step.get("left"):
                step.update(mine)
        return merged

    def _plan_index(self, client_id: Any) -> Optional[int]:
        for position, plan in enumerate(self.plans):
            if plan.get("id") == client_id:
                return position
        return None

    # ------------------------------------------------------------------ apply
    def apply(self, message: Dict[str, Any]) -> None:
        """Apply one wire message ({"type", "data", ...})."""
        event_type = EventType(message["type"])
        data = message.get("data")
        if event_type is EventType.STATION_UPDATE:
            category = data["category"]
            index = int(data["index"])
            row = self.cells.setdefault(category, {})
            row[index] = self._merge_cell(row.get(index), data.get("data"))
        elif event_type is EventType.STATION_BATCH:
            grid: Dict[str, Dict[int, Optional[Dict[str, Any]]]] = {}
            for category, cells in (data or {}).items():
                local_row = self.cells.get(category, {})
                grid[category] = {
                    int(index): self._merge_cell(local_row.get(int(index)), cell)
                    for index, cell in cells.items()
                }
            self.cells = grid
        elif event_type is EventType.PLAN_LIST:
            self.plans = [
                self._merge_plan(self._find_plan(plan.get("id")), plan) for plan in (data or [])
            ]
        elif event_type is EventType.PLAN_UPDATE:
            if not data:
                return
            position = self._plan_index(data.get("id"))
            if position is None:
                self.plans.append(copy.deepcopy(data))
            else:
                self.plans[position] = self._merge_plan(self.plans[position], data)
        elif event_type is EventType.PLAN_REMOVE:
            client_id = (data or {}).get("clientId")
            self.plans = [plan for plan in self.plans if plan.get("id") != client_id]
        elif event_type in (EventType.ACK, EventType.ERROR):
            return
        else:  # pragma: no cover - EventType is closed
            raise ValueError(f"Unhandled event type {event_type}")

    def _find_plan(self, client_id: Any) -> Optional[Dict[str, Any]]:
        position = self._plan_index(client_id)
        return None if position is None else self.plans[position]

    # ------------------------------------------------------------------- tick
    def tick(self, now: datetime.datetime) -> None:
        """Advance local countdowns. Reaching zero only flips the cosmetic done flag."""
        for row in self.cells.values():
            for cell in row.values():
                if cell is None:
                    continue
                left = local_left(cell, now)
                if left is None:
                    continue
                cell["left"] = left
                if left <= 0:
                    cell["done"] = True
        elapsed = 0
        if self._last_tick is not None:
            elapsed = int(math.floor(max((now - self._last_tick).total_seconds(), 0.0)))
        if self._last_tick is None or elapsed:
            self._last_tick = now
        if not elapsed:
            return
        for plan in self.plans:
            for step in plan.get("steps", []):
                if step.get("status") == "ACTIVE" and step.get("left") is not None:
                    step["left"] = step["left"] - elapsed

    def occupant(self, category: str, index: int) -> Optional[Dict[str, Any]]:
        return self.cells.get(category, {}).get(index)
