from __future__ import annotations

from typing import List, Optional

from context import BoardContext
from countdown import active_step_for_station, client_plan, occupant_for
from errors import BoardError, MutationResult
from events import (
    BoardEvent,
    plan_remove_event,
    plan_update_event,
    station_update_event,
)

from .engine import Outcome, StationAssigner


def _events_for(context: BoardContext, session, outcome: Outcome) -> List[BoardEvent]:
    """Build post-commit snapshots for everything the outcome touched.

    Opens a fresh read transaction, which on SQLite holds the write lock until
    the session closes, so callers publish before leaving the session block.
    """
    session.expire_all()
    session.connection()
    now, day = context.now(), context.today()
    events: List[BoardEvent] = []
    for change in outcome.stations:
        occupant = occupant_for(active_step_for_station(session, change.station_id), now)
        events.append(station_update_event(change.category, change.index, occupant))
    for client_id in outcome.clients:
        plan = client_plan(session, client_id, day, now)
        if plan is not None:
            events.append(plan_update_event(plan))
    for client_id in outcome.removed_clients:
        events.append(plan_remove_event(client_id))
    return events


def _run(context: BoardContext, actor: str, operation) -> MutationResult:
    with context.session_factory() as session:
        assigner = StationAssigner(session, now=context.now(), day=context.today(), actor=actor)
        try:
            outcome = operation(assigner)
            session.commit()
        except BoardError as exc:
            session.rollback()
            return MutationResult.failure(exc)
        except Exception:
            session.rollback()
            raise
        context.publish_all(_events_for(context, session, outcome))
    return MutationResult.success()


def assign(
    context: BoardContext,
    category: str,
    index: int,
    session_type: str,
    client_id: Optional[int] = None,
    duration_seconds: Optional[int] = None,
    *,
    actor: str = "operator",
) -> MutationResult:
    """Start (or retime) a session on a station."""
    return _run(
        context,
        actor,
        lambda assigner: assigner.assign(category, index, session_type, client_id, duration_seconds),
    )


def release(context: BoardContext, category: str, index: int, *, actor: str = "operator") -> MutationResult:
    """Finish whatever runs on a station and make it available."""
    return _run(context, actor, lambda assigner: assigner.release(category, index))


def force_finish(context: BoardContext, client_id: int, *, actor: str = "operator") -> MutationResult:
    """Finish every running step of the client's plan for today."""
    return _run(context, actor, lambda assigner: assigner.force_finish(client_id))


def terminate_plan(context: BoardContext, client_id: int, *, actor: str = "operator") -> MutationResult:
    """Finish and delete the client's plan for today. There is no undo."""
    return _run(context, actor, lambda assigner: assigner.terminate_plan(client_id))
