from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select

from context import BoardContext
from countdown import client_plan, list_today_plans
from database import (
    Client,
    Modality,
    PlanSession,
    SessionStep,
    get_modality_by_name,
    get_today_session,
    record_audit_log,
)
from errors import BoardError, ClientNotFound, InvalidRequest, MutationResult, PlanNotFound
from events import StepStatus, plan_list_event, plan_update_event
from modalities import normalize_mode


def _clean_name(first_name: Any, last_initial: Any) -> tuple[str, str]:
    first = " ".join(str(first_name or "").split())
    initial = str(last_initial or "").strip().rstrip(".")[:1].upper()
    if not first:
        raise InvalidRequest("First name is required.")
    return first, initial


def create_client(context: BoardContext, first_name: str, last_initial: str, *, actor: str = "intake") -> Dict[str, Any]:
    """Return the existing client with this name, creating it the first time."""
    first, initial = _clean_name(first_name, last_initial)
    with context.session_factory() as session:
        client = session.scalars(
            select(Client).where(Client.first_name == first, Client.last_initial == initial)
        ).first()
        if client is None:
            client = Client(first_name=first, last_initial=initial)
            session.add(client)
            session.flush()
            record_audit_log(session, actor, "CLIENT_CREATE", target_type="Client", target_id=client.id)
            session.commit()
        return {"clientId": client.id, "name": client.display_name}


def _add_pending_steps(session, plan: PlanSession, modality_names: Iterable[str]) -> List[str]:
    existing = {step.modality_id for step in plan.steps}
    added: List[str] = []
    for name in modality_names:
        modality: Optional[Modality] = get_modality_by_name(session, str(name))
        if modality is None or modality.id in existing:
            continue
        session.add(
            SessionStep(
                session_id=plan.id,
                modality_id=modality.id,
                client_id=plan.client_id,
                status=StepStatus.PENDING.value,
                duration=0,
            )
        )
        existing.add(modality.id)
        added.append(modality.name)
    return added


def _publish_plans(context: BoardContext, session, client_id: int) -> None:
    session.expire_all()
    day, now = context.today(), context.now()
    plans = list_today_plans(session, day, now)
    context.publisher.publish(plan_list_event(plans))
    mine = client_plan(session, client_id, day, now)
    if mine is not None:
        context.publisher.publish(plan_update_event(mine))


def create_or_update_plan(
    context: BoardContext,
    client_id: int,
    modality_names: Iterable[str],
    mode: Any = None,
    note: Optional[str] = None,
    *,
    actor: str = "intake",
) -> MutationResult:
    """Upsert today's plan for a client and add PENDING steps for new modalities."""
    with context.session_factory() as session:
        try:
            client = session.get(Client, client_id)
            if client is None:
                raise ClientNotFound()
            day = context.today()
            plan = get_today_session(session, client.id, day)
            normalized_mode = normalize_mode(mode)
            if plan is None:
                plan = PlanSession(client_id=client.id, day=day, mode=normalized_mode, note=note or "")
                session.add(plan)
                session.flush()
            else:
                plan.mode = normalized_mode
                plan.note = note or ""
            added = _add_pending_steps(session, plan, modality_names or [])
            record_audit_log(
                session,
                actor,
                "PLAN_SAVE",
                target_type="Client",
                target_id=client.id,
                payload={"mode": normalized_mode, "added": added},
            )
            session.commit()
        except BoardError as exc:
            session.rollback()
            return MutationResult.failure(exc)
        _publish_plans(context, session, client.id)
    return MutationResult.success()


def patch_plan(
    context: BoardContext,
    client_id: int,
    add: Iterable[str] = (),
    remove: Iterable[str] = (),
    note: Optional[str] = None,
    *,
    actor: str = "intake",
) -> MutationResult:
    """Add or remove PENDING steps and optionally replace the note."""
    with context.session_factory() as session:
        try:
            plan = get_today_session(session, client_id, context.today())
            if plan is None:
                raise PlanNotFound()
            if isinstance(note, str):
                plan.note = note
            remove_names = [str(name) for name in (remove or [])]
            if remove_names:
                modality_ids = select(Modality.id).where(Modality.name.in_(remove_names))
                session.execute(
                    delete(SessionStep)
                    .where(
                        SessionStep.session_id == plan.id,
                        SessionStep.modality_id.in_(modality_ids),
                        SessionStep.status == StepStatus.PENDING.value,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.expire(plan, ["steps"])
            added = _add_pending_steps(session, plan, add or [])
            record_audit_log(
                session,
                actor,
                "PLAN_PATCH",
                target_type="Client",
                target_id=client_id,
                payload={"added": added, "removed": remove_names, "note": note},
            )
            session.commit()
        except BoardError as exc:
            session.rollback()
            return MutationResult.failure(exc)
        _publish_plans(context, session, client_id)
    return MutationResult.success()


def today_plans(context: BoardContext) -> List[Dict[str, Any]]:
    with context.session_factory() as session:
        return list_today_plans(session, context.today(), context.now())
