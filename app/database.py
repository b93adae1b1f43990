from __future__ import annotations

import datetime
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from events import StationStatus, StepStatus


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
DATABASE_URL = os.environ.get("BOARD_DATABASE_URL") or f"sqlite:///{(DATA_DIR / 'board.db').as_posix()}"
SQLITE_BUSY_TIMEOUT_SECONDS = 15

UTC = datetime.timezone.utc


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(UTC)


def ensure_aware(value: datetime.datetime) -> datetime.datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def local_day(moment: datetime.datetime) -> datetime.date:
    """Calendar day of a moment in the server's local timezone."""
    return ensure_aware(moment).astimezone().date()


class Base(DeclarativeBase):
    """Metadata for board tables living in board.db."""

    pass


class Modality(Base):
    __tablename__ = "modalities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    mt_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    op_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    stations: Mapped[List["Station"]] = relationship(back_populates="modality")


class Station(Base):
    __tablename__ = "stations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(String(60), nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    modality_id: Mapped[int] = mapped_column(ForeignKey("modalities.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=StationStatus.AVAILABLE.value)

    modality: Mapped[Modality] = relationship(back_populates="stations")

    __table_args__ = (UniqueConstraint("category", "index", name="uq_station_category_index"),)


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(60), nullable=False)
    last_initial: Mapped[str] = mapped_column(String(4), nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    sessions: Mapped[List["PlanSession"]] = relationship(
        back_populates="client", cascade="all, delete-orphan"
    )

    __table_args__ = (UniqueConstraint("first_name", "last_initial", name="uq_client_name"),)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_initial}."


class PlanSession(Base):
    """A client's plan for one calendar day."""

    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    day: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    mode: Mapped[str] = mapped_column(String(8), nullable=False, default="UNSPEC")
    note: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    client: Mapped[Client] = relationship(back_populates="sessions")
    steps: Mapped[List["SessionStep"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
    )

    __table_args__ = (UniqueConstraint("client_id", "day", name="uq_session_client_day"),)


class SessionStep(Base):
    __tablename__ = "session_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    modality_id: Mapped[int] = mapped_column(ForeignKey("modalities.id"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=StepStatus.PENDING.value)
    station_id: Mapped[int | None] = mapped_column(ForeignKey("stations.id"), nullable=True)
    session_type: Mapped[str | None] = mapped_column(String(8), nullable=True)
    start_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # seconds

    session: Mapped[PlanSession] = relationship(back_populates="steps")
    modality: Mapped[Modality] = relationship()
    station: Mapped[Optional[Station]] = relationship()

    __table_args__ = (
        UniqueConstraint("session_id", "modality_id", name="uq_step_session_modality"),
        # One ACTIVE step per station and one per client, enforced by the store.
        Index(
            "uq_active_step_station",
            "station_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index(
            "uq_active_step_client",
            "client_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Station")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload_json: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


def _serialize_sqlite_writes(engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite's deferred BEGIN lets two readers race to upgrade to a writer and
    one of them fails with "database is locked". BEGIN IMMEDIATE queues them.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_store_engine(url: str = DATABASE_URL, **kwargs):
    if url.startswith("sqlite"):
        connect_args = dict(kwargs.pop("connect_args", {}) or {})
        connect_args.setdefault("timeout", SQLITE_BUSY_TIMEOUT_SECONDS)
        connect_args.setdefault("check_same_thread", False)
        engine = create_engine(url, echo=False, future=True, connect_args=connect_args, **kwargs)
        _serialize_sqlite_writes(engine)
        return engine
    return create_engine(url, echo=False, future=True, **kwargs)


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


board_engine = create_store_engine()
SessionLocal = make_session_factory(board_engine)


def init_database(engine=None) -> None:
    Base.metadata.create_all(engine or board_engine)


def get_station(session, category: str, index: int) -> Optional[Station]:
    stmt = select(Station).where(Station.category == category, Station.index == int(index))
    return session.scalars(stmt).first()


def get_today_session(session, client_id: int, day: datetime.date) -> Optional[PlanSession]:
    stmt = select(PlanSession).where(PlanSession.client_id == client_id, PlanSession.day == day)
    return session.scalars(stmt).first()


def get_modality_by_name(session, name: str) -> Optional[Modality]:
    return session.scalars(select(Modality).where(Modality.name == name)).first()


def list_stations(session) -> List[Station]:
    stmt = select(Station).order_by(Station.category, Station.index)
    return list(session.scalars(stmt))


def record_audit_log(
    session,
    actor: str,
    action: str,
    target_type: str = "Station",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit row; it commits together with the mutation it describes."""
    log = AuditLog(
        actor=actor or "system",
        action=action,
        target_type=target_type,
        target_id=target_id,
        payload_json=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    return log
