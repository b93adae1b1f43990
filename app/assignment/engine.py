from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import delete, exists, select, update
from sqlalchemy.orm import aliased, selectinload

from countdown import active_step_for_station
from database import (
    PlanSession,
    SessionStep,
    Station,
    get_station,
    get_today_session,
    record_audit_log,
)
from errors import (
    ClientAlreadyActive,
    InvalidRequest,
    NoEligibleStep,
    StationBusy,
    StationNotFound,
    UnknownModalityOrType,
)
from events import SessionMode, StationStatus, StepStatus
from modalities import default_duration_seconds, normalize_session_type


@dataclass
class StationChange:
    """A station whose occupant changed; snapshot it after commit."""

    category: str
    index: int
    station_id: int


@dataclass
class Outcome:
    action: str
    stations: List[StationChange] = field(default_factory=list)
    clients: List[int] = field(default_factory=list)
    removed_clients: List[int] = field(default_factory=list)


class StationAssigner:
    """
    Station/step state machine run against one open store transaction.

    Methods raise BoardError subclasses on recoverable failures and leave
    the commit (or rollback) to the caller, so every operation is applied
    all-or-nothing.
    """

    def __init__(self, session, *, now: datetime.datetime, day: datetime.date, actor: str = "operator") -> None:
        self.session = session
        self.now = now
        self.day = day
        self.actor = actor or "operator"

    # ------------------------------------------------------------------ helpers
    def _station(self, category: str, index: int) -> Station:
        station = get_station(self.session, category, index)
        if station is None:
            raise StationNotFound(f"Station {category} #{index} not found")
        return station

    def _resolve_duration(self, station: Station, session_type: str, duration_seconds: Optional[int]) -> int:
        if duration_seconds is not None:
            if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int) or duration_seconds <= 0:
                raise InvalidRequest(f"Custom duration must be a positive number of seconds, got {duration_seconds!r}")
            return duration_seconds
        seconds = default_duration_seconds(station.modality, session_type)
        if seconds is None:
            raise UnknownModalityOrType(
                f"No default duration for {station.category} / {session_type!r} and no custom duration"
            )
        return seconds

    def _client_busy(self, client_id: int) -> bool:
        stmt = select(SessionStep.id).where(
            SessionStep.client_id == client_id,
            SessionStep.status == StepStatus.ACTIVE.value,
        )
        return self.session.scalars(stmt).first() is not None

    def next_pending_step(self, modality_id: int, session_type: str, client_id: Optional[int] = None) -> Optional[SessionStep]:
        """First-come-first-served PENDING step for a modality from today's plans.

        Sessions must be in the requested mode or UNSPEC. Without an explicit
        client, clients already running another step are passed over.
        """
        modes = [session_type, SessionMode.UNSPEC.value]
        stmt = (
            select(SessionStep)
            .join(PlanSession, SessionStep.session_id == PlanSession.id)
            .options(selectinload(SessionStep.session).selectinload(PlanSession.client))
            .where(
                SessionStep.modality_id == modality_id,
                SessionStep.status == StepStatus.PENDING.value,
                PlanSession.day == self.day,
                PlanSession.mode.in_(modes),
            )
            .order_by(PlanSession.created_at, PlanSession.id)
        )
        if client_id is not None:
            stmt = stmt.where(PlanSession.client_id == client_id)
        else:
            running = aliased(SessionStep)
            stmt = stmt.where(
                ~exists().where(
                    running.client_id == SessionStep.client_id,
                    running.status == StepStatus.ACTIVE.value,
                )
            )
        return self.session.scalars(stmt).first()

    def _retime(self, station: Station, step: SessionStep, session_type: str, duration: int) -> Outcome:
        step.duration = duration
        step.start_at = self.now
        step.session_type = session_type
        record_audit_log(
            self.session,
            self.actor,
            "STATION_RETIME",
            target_id=station.id,
            payload={"step_id": step.id, "duration": duration, "type": session_type},
        )
        return Outcome(
            action="retime",
            stations=[StationChange(station.category, station.index, station.id)],
            clients=[step.client_id],
        )

    def _finish_step(self, step: SessionStep) -> bool:
        result = self.session.execute(
            update(SessionStep)
            .where(SessionStep.id == step.id, SessionStep.status == StepStatus.ACTIVE.value)
            .values(status=StepStatus.DONE.value, end_at=self.now)
        )
        return result.rowcount == 1

    def _free_station(self, station_id: int) -> None:
        self.session.execute(
            update(Station)
            .where(Station.id == station_id)
            .values(status=StationStatus.AVAILABLE.value)
        )

    # --------------------------------------------------------------- operations
    def assign(
        self,
        category: str,
        index: int,
        session_type: str,
        client_id: Optional[int] = None,
        duration_seconds: Optional[int] = None,
    ) -> Outcome:
        station = self._station(category, index)
        normalized_type = normalize_session_type(session_type)

        # A running station is retimed, also for its own client whose step is no
        # longer PENDING. A race lost after this read fails the conditional claim.
        active = active_step_for_station(self.session, station.id)
        if active is not None:
            if client_id is not None and active.client_id != client_id:
                raise StationBusy(
                    f"{category} #{index} is in use by {active.session.client.display_name}"
                )
            duration = self._resolve_duration(station, normalized_type, duration_seconds)
            return self._retime(station, active, normalized_type or active.session_type or "MT", duration)

        if client_id is not None and self._client_busy(client_id):
            raise ClientAlreadyActive()

        duration = self._resolve_duration(station, normalized_type, duration_seconds)
        mode_filter = normalized_type or SessionMode.UNSPEC.value
        step = self.next_pending_step(station.modality_id, mode_filter, client_id)
        if step is None:
            raise NoEligibleStep(f"No pending {category} step matches this request")

        claimed = self.session.execute(
            update(Station)
            .where(Station.id == station.id, Station.status == StationStatus.AVAILABLE.value)
            .values(status=StationStatus.IN_USE.value)
        )
        if claimed.rowcount != 1:
            raise StationBusy(f"{category} #{index} was taken by another operator")
        activated = self.session.execute(
            update(SessionStep)
            .where(SessionStep.id == step.id, SessionStep.status == StepStatus.PENDING.value)
            .values(
                status=StepStatus.ACTIVE.value,
                start_at=self.now,
                duration=duration,
                station_id=station.id,
                session_type=normalized_type or "MT",
            )
        )
        if activated.rowcount != 1:
            raise NoEligibleStep("The selected step is no longer pending")
        record_audit_log(
            self.session,
            self.actor,
            "STATION_ASSIGN",
            target_id=station.id,
            payload={"step_id": step.id, "client_id": step.client_id, "duration": duration},
        )
        return Outcome(
            action="assign",
            stations=[StationChange(station.category, station.index, station.id)],
            clients=[step.client_id],
        )

    def release(self, category: str, index: int) -> Outcome:
        station = self._station(category, index)
        outcome = Outcome(
            action="release",
            stations=[StationChange(station.category, station.index, station.id)],
        )
        active = active_step_for_station(self.session, station.id)
        if active is not None:
            self._finish_step(active)
            outcome.clients.append(active.client_id)
        self._free_station(station.id)
        record_audit_log(
            self.session,
            self.actor,
            "STATION_RELEASE",
            target_id=station.id,
            payload={"step_id": active.id if active else None},
        )
        return outcome

    def force_finish(self, client_id: int) -> Outcome:
        outcome = Outcome(action="force_finish")
        plan = get_today_session(self.session, client_id, self.day)
        if plan is None:
            return outcome
        stmt = (
            select(SessionStep)
            .options(selectinload(SessionStep.station))
            .where(SessionStep.session_id == plan.id, SessionStep.status == StepStatus.ACTIVE.value)
        )
        for step in list(self.session.scalars(stmt)):
            self._finish_step(step)
            station = step.station
            if station is not None:
                self._free_station(station.id)
                outcome.stations.append(StationChange(station.category, station.index, station.id))
        if outcome.stations:
            record_audit_log(
                self.session,
                self.actor,
                "CLIENT_FORCE_FINISH",
                target_type="Client",
                target_id=client_id,
                payload={"stations": [change.station_id for change in outcome.stations]},
            )
        outcome.clients.append(client_id)
        return outcome

    def terminate_plan(self, client_id: int) -> Outcome:
        outcome = self.force_finish(client_id)
        outcome.action = "terminate"
        outcome.clients = []
        outcome.removed_clients.append(client_id)
        plan = get_today_session(self.session, client_id, self.day)
        if plan is None:
            return outcome
        self.session.execute(
            delete(SessionStep)
            .where(SessionStep.session_id == plan.id)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(
            delete(PlanSession)
            .where(PlanSession.id == plan.id)
            .execution_options(synchronize_session=False)
        )
        record_audit_log(
            self.session,
            self.actor,
            "PLAN_TERMINATE",
            target_type="Client",
            target_id=client_id,
            payload={"session_id": plan.id},
        )
        return outcome
