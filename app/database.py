from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Date,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from errors import AssignmentValidationError


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
ASSIGNMENTS_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'assignments.db').as_posix()}"

TEAM_ASSIGNMENTS_TABLE = "staff_assignments"
BOOKING_ASSIGNMENTS_TABLE = "booking_staff_assignments"
CALENDAR_EVENTS_TABLE = "calendar_events"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def parse_assignment_date(value: Any) -> datetime.date:
    """Return the calendar day for a date, datetime or ISO string."""
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip()[:10])
        except ValueError as exc:
            raise AssignmentValidationError(f"Invalid date '{value}', expected YYYY-MM-DD") from exc
    raise AssignmentValidationError(f"Invalid date {value!r}, expected YYYY-MM-DD")


def require_identity(value: Any, label: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise AssignmentValidationError(f"{label} is required.")
    return text


class Base(DeclarativeBase):
    """Metadata for the assignment tables living in assignments.db."""

    pass


class StaffMember(Base):
    __tablename__ = "staff_members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class TeamAssignment(Base):
    __tablename__ = TEAM_ASSIGNMENTS_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    staff_id: Mapped[str] = mapped_column(String(64), nullable=False)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False)
    assignment_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("staff_id", "assignment_date", name="uq_staff_assignment_staff_date"),
        Index("ix_staff_assignments_team_date", "team_id", "assignment_date"),
    )


class BookingAssignment(Base):
    __tablename__ = BOOKING_ASSIGNMENTS_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False)
    staff_id: Mapped[str] = mapped_column(String(64), nullable=False)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False)
    assignment_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "booking_id",
            "staff_id",
            "assignment_date",
            name="uq_booking_assignment_booking_staff_date",
        ),
        Index("ix_booking_staff_assignments_staff_date", "staff_id", "assignment_date"),
    )


class CalendarEvent(Base):
    """Calendar occupancy owned by the booking subsystem; read-only here."""

    __tablename__ = CALENDAR_EVENTS_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    event_type: Mapped[str] = mapped_column(String(24), nullable=False, default="event")
    start_time: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    delivery_address: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (Index("ix_calendar_events_resource_start", "resource_id", "start_time"),)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="TeamAssignment")
    target_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


engine = create_engine(
    ASSIGNMENTS_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(engine)


def get_team_assignment(session, staff_id: str, assignment_date: datetime.date) -> Optional[TeamAssignment]:
    stmt = (
        select(TeamAssignment)
        .where(
            TeamAssignment.staff_id == staff_id,
            TeamAssignment.assignment_date == assignment_date,
        )
        .execution_options(populate_existing=True)
    )
    return session.scalars(stmt).first()


def find_team_assignment(
    session, staff_id: str, team_id: str, assignment_date: datetime.date
) -> Optional[TeamAssignment]:
    placement = get_team_assignment(session, staff_id, assignment_date)
    if placement and placement.team_id == team_id:
        return placement
    return None


def list_team_assignments(
    session,
    start: datetime.date,
    end: Optional[datetime.date] = None,
    *,
    team_id: Optional[str] = None,
    staff_ids: Optional[Iterable[str]] = None,
) -> List[TeamAssignment]:
    stmt = select(TeamAssignment).where(
        TeamAssignment.assignment_date >= start,
        TeamAssignment.assignment_date <= (end or start),
    )
    if team_id:
        stmt = stmt.where(TeamAssignment.team_id == team_id)
    ids = list(staff_ids or [])
    if ids:
        stmt = stmt.where(TeamAssignment.staff_id.in_(ids))
    stmt = stmt.order_by(
        TeamAssignment.assignment_date,
        TeamAssignment.team_id,
        TeamAssignment.created_at,
        TeamAssignment.staff_id,
    ).execution_options(populate_existing=True)
    return list(session.scalars(stmt))


def list_booking_assignments(
    session,
    *,
    booking_id: Optional[str] = None,
    staff_id: Optional[str] = None,
    team_id: Optional[str] = None,
    start: Optional[datetime.date] = None,
    end: Optional[datetime.date] = None,
) -> List[BookingAssignment]:
    stmt = select(BookingAssignment)
    if booking_id:
        stmt = stmt.where(BookingAssignment.booking_id == booking_id)
    if staff_id:
        stmt = stmt.where(BookingAssignment.staff_id == staff_id)
    if team_id:
        stmt = stmt.where(BookingAssignment.team_id == team_id)
    if start:
        stmt = stmt.where(BookingAssignment.assignment_date >= start)
        stmt = stmt.where(BookingAssignment.assignment_date <= (end or start))
    stmt = stmt.order_by(
        BookingAssignment.assignment_date,
        BookingAssignment.booking_id,
        BookingAssignment.staff_id,
    ).execution_options(populate_existing=True)
    return list(session.scalars(stmt))


def bookings_for_team_date(session, team_id: str, assignment_date: datetime.date) -> List[str]:
    """Return the distinct bookings occupying a team on a calendar day, in start order."""
    day_start = datetime.datetime.combine(assignment_date, datetime.time.min)
    day_end = day_start + datetime.timedelta(days=1)
    stmt = (
        select(CalendarEvent.booking_id)
        .where(
            CalendarEvent.resource_id == team_id,
            CalendarEvent.start_time >= day_start,
            CalendarEvent.start_time < day_end,
            CalendarEvent.booking_id.is_not(None),
        )
        .order_by(CalendarEvent.start_time, CalendarEvent.id)
    )
    booking_ids: List[str] = []
    for booking_id in session.scalars(stmt):
        if booking_id and booking_id not in booking_ids:
            booking_ids.append(booking_id)
    return booking_ids


def staff_names(session, staff_ids: Iterable[str]) -> Dict[str, str]:
    ids = sorted({staff_id for staff_id in staff_ids if staff_id})
    if not ids:
        return {}
    stmt = select(StaffMember.id, StaffMember.name).where(StaffMember.id.in_(ids))
    return {row.id: row.name for row in session.execute(stmt)}


def staff_display_name(names: Dict[str, str], staff_id: str) -> str:
    return names.get(staff_id) or f"Staff {staff_id}"


def staff_member_to_dict(member: StaffMember) -> Dict[str, Any]:
    return {
        "id": member.id,
        "name": member.name,
        "email": member.email,
        "phone": member.phone,
        "color": member.color,
    }


def list_staff_members(session) -> List[Dict[str, Any]]:
    stmt = select(StaffMember).order_by(StaffMember.name.asc(), StaffMember.id.asc())
    return [staff_member_to_dict(member) for member in session.scalars(stmt)]


def upsert_staff_member(session, payload: Dict[str, Any]) -> StaffMember:
    staff_id = require_identity(payload.get("id"), "Staff id")
    name = require_identity(payload.get("name"), "Staff name")
    member = session.get(StaffMember, staff_id)
    if member is None:
        member = StaffMember(id=staff_id, name=name)
        session.add(member)
    member.name = name
    for field in ("email", "phone", "color"):
        if field in payload:
            setattr(member, field, payload.get(field))
    session.flush()
    return member


def list_available_staff(session, assignment_date: datetime.date) -> List[Dict[str, Any]]:
    """Return staff members with no team placement on the given day."""
    placed = select(TeamAssignment.staff_id).where(TeamAssignment.assignment_date == assignment_date)
    stmt = (
        select(StaffMember)
        .where(StaffMember.id.not_in(placed))
        .order_by(StaffMember.name.asc(), StaffMember.id.asc())
    )
    return [staff_member_to_dict(member) for member in session.scalars(stmt)]


def team_assignment_to_dict(row: TeamAssignment, staff_name: Optional[str] = None) -> Dict[str, Any]:
    payload = {
        "id": row.id,
        "staffId": row.staff_id,
        "teamId": row.team_id,
        "date": row.assignment_date.isoformat(),
    }
    if staff_name is not None:
        payload["staffName"] = staff_name
    return payload


def booking_assignment_to_dict(row: BookingAssignment) -> Dict[str, Any]:
    return {
        "id": row.id,
        "bookingId": row.booking_id,
        "staffId": row.staff_id,
        "teamId": row.team_id,
        "date": row.assignment_date.isoformat(),
    }


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "TeamAssignment",
    target_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit row inside the caller's transaction."""
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str)[:2000],
    )
    session.add(log)
    return log
