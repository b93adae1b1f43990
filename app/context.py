from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Callable, List, Protocol

from database import SessionLocal, local_day, utcnow
from events import BoardEvent


class Publisher(Protocol):
    def publish(self, event: BoardEvent) -> None:
        ...


class EventLog:
    """Publisher that only remembers what was published."""

    def __init__(self) -> None:
        self.events: List[BoardEvent] = []

    def publish(self, event: BoardEvent) -> None:
        self.events.append(event)

    def clear(self) -> None:
        self.events.clear()


@dataclass
class BoardContext:
    """Store handle, push channel and clock shared by every board operation.

    Owned by the process (or by a test) and passed in explicitly.
    """

    session_factory: Callable = SessionLocal
    publisher: Publisher = field(default_factory=EventLog)
    clock: Callable[[], datetime.datetime] = utcnow

    def now(self) -> datetime.datetime:
        return self.clock()

    def today(self) -> datetime.date:
        return local_day(self.clock())

    def publish_all(self, events: List[BoardEvent]) -> None:
        for item in events:
            self.publisher.publish(item)
