"""Read-time projections of board state.

Remaining time is never stored: it is derived from start_at and duration
whenever a snapshot is built, so every viewer computes the same value from
the same stored facts.
"""

from __future__ import annotations

import datetime
import math
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from database import PlanSession, SessionStep, ensure_aware, list_stations
from events import Occupant, StepStatus


def remaining_seconds(step: SessionStep, now: datetime.datetime) -> Optional[int]:
    """Seconds left on an ACTIVE step; may be zero or negative once overdue."""
    if step.status != StepStatus.ACTIVE.value or step.start_at is None:
        return None
    elapsed = (ensure_aware(now) - ensure_aware(step.start_at)).total_seconds()
    return int(step.duration) - int(math.floor(max(elapsed, 0.0)))


def occupant_for(step: Optional[SessionStep], now: datetime.datetime) -> Optional[Occupant]:
    if step is None or step.status != StepStatus.ACTIVE.value or step.start_at is None:
        return None
    left = remaining_seconds(step, now)
    return Occupant(
        type=step.session_type or "MT",
        start_at=ensure_aware(step.start_at),
        duration=int(step.duration),
        client_name=step.session.client.first_name,
        left=left,
        expired=left <= 0,
    )


def active_step_for_station(session, station_id: int) -> Optional[SessionStep]:
    stmt = (
        select(SessionStep)
        .options(selectinload(SessionStep.session).selectinload(PlanSession.client))
        .where(SessionStep.station_id == station_id, SessionStep.status == StepStatus.ACTIVE.value)
    )
    return session.scalars(stmt).first()


def station_snapshot(session, now: datetime.datetime) -> Dict[str, Dict[int, Optional[Occupant]]]:
    """Every station's current occupant (or None), keyed by category then index."""
    active_steps = session.scalars(
        select(SessionStep)
        .options(selectinload(SessionStep.session).selectinload(PlanSession.client))
        .where(SessionStep.status == StepStatus.ACTIVE.value, SessionStep.station_id.is_not(None))
    )
    by_station = {step.station_id: step for step in active_steps}
    grid: Dict[str, Dict[int, Optional[Occupant]]] = {}
    for station in list_stations(session):
        grid.setdefault(station.category, {})[station.index] = occupant_for(by_station.get(station.id), now)
    return grid


def step_view(step: SessionStep, now: datetime.datetime) -> Dict[str, Any]:
    return {
        "modality": step.modality.name,
        "status": step.status,
        "left": remaining_seconds(step, now),
    }


def plan_view(plan: PlanSession, now: datetime.datetime) -> Dict[str, Any]:
    steps = sorted(plan.steps, key=lambda item: item.modality.name)
    return {
        "id": plan.client_id,
        "name": plan.client.display_name,
        "note": plan.note,
        "mode": plan.mode,
        "steps": [step_view(step, now) for step in steps],
    }


def _plans_query(day: datetime.date):
    return (
        select(PlanSession)
        .options(
            selectinload(PlanSession.client),
            selectinload(PlanSession.steps).selectinload(SessionStep.modality),
        )
        .where(PlanSession.day == day)
        .order_by(PlanSession.created_at, PlanSession.id)
    )


def list_today_plans(session, day: datetime.date, now: datetime.datetime) -> List[Dict[str, Any]]:
    return [plan_view(plan, now) for plan in session.scalars(_plans_query(day))]


def client_plan(session, client_id: int, day: datetime.date, now: datetime.datetime) -> Optional[Dict[str, Any]]:
    stmt = _plans_query(day).where(PlanSession.client_id == client_id)
    plan = session.scalars(stmt).first()
    if plan is None:
        return None
    return plan_view(plan, now)


def resync_payload(session, day: datetime.date, now: datetime.datetime) -> Dict[str, Any]:
    """Everything a newly connected viewer needs."""
    return {
        "plans": list_today_plans(session, day, now),
        "stations": station_snapshot(session, now),
    }
