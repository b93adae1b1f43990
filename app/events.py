"""Board event models.

Status enums and the wire events pushed to dashboard viewers.
"""

from __future__ import annotations

import datetime
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4


class StepStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DONE = "DONE"


# Allowed forward moves; steps never go back.
STEP_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.ACTIVE},
    StepStatus.ACTIVE: {StepStatus.DONE},
    StepStatus.DONE: set(),
}


def can_transition(current: str, target: str) -> bool:
    return StepStatus(target) in STEP_TRANSITIONS[StepStatus(current)]


class StationStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    IN_USE = "IN_USE"


class SessionMode(str, Enum):
    MT = "MT"
    OP = "OP"
    UNSPEC = "UNSPEC"


class EventType(str, Enum):
    """Types of board events."""
    PLAN_LIST = "plan:list"
    PLAN_UPDATE = "plan:update"
    PLAN_REMOVE = "plan:remove"
    STATION_UPDATE = "station:update"
    STATION_BATCH = "station:batch"
    ACK = "ack"
    ERROR = "error"


@dataclass(frozen=True)
class Occupant:
    """Who is on a station right now. An empty station is represented by None."""
    type: str
    start_at: datetime.datetime
    duration: int
    client_name: str
    left: int
    expired: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "startAt": self.start_at.isoformat(),
            "duration": self.duration,
            "clientName": self.client_name,
            "left": self.left,
            "expired": self.expired,
        }


def occupant_payload(occupant: Optional[Occupant]) -> Optional[Dict[str, Any]]:
    if occupant is None:
        return None
    return occupant.to_dict()


@dataclass
class BoardEvent:
    """
    One message pushed to every connected viewer.

    The payload always carries the full current value of what it describes,
    so delivering the same event twice is harmless.
    """
    event_type: EventType
    data: Any = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.event_type.value,
            "data": self.data,
            "timestamp": self.created_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def station_update_event(category: str, index: int, occupant: Optional[Occupant]) -> BoardEvent:
    return BoardEvent(
        EventType.STATION_UPDATE,
        {"category": category, "index": index, "data": occupant_payload(occupant)},
    )


def station_batch_event(grid: Dict[str, Dict[int, Optional[Occupant]]]) -> BoardEvent:
    payload: Dict[str, Dict[str, Any]] = {}
    for category, cells in grid.items():
        payload[category] = {str(index): occupant_payload(cell) for index, cell in cells.items()}
    return BoardEvent(EventType.STATION_BATCH, payload)


def plan_update_event(plan: Dict[str, Any]) -> BoardEvent:
    return BoardEvent(EventType.PLAN_UPDATE, plan)


def plan_list_event(plans: List[Dict[str, Any]]) -> BoardEvent:
    return BoardEvent(EventType.PLAN_LIST, plans)


def plan_remove_event(client_id: int) -> BoardEvent:
    return BoardEvent(EventType.PLAN_REMOVE, {"clientId": client_id})
