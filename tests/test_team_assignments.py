from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from change_feed import pending_changes  # noqa: E402
from database import (  # noqa: E402
    Base,
    BookingAssignment,
    CalendarEvent,
    TeamAssignment,
)
from errors import AssignmentValidationError  # noqa: E402
from team_assignments import TeamAssignmentService  # noqa: E402

DAY = datetime.date(2025, 6, 1)


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def _add_event(session, booking_id: str, team_id: str, day: datetime.date, hour: int = 8) -> None:
    start = datetime.datetime.combine(day, datetime.time(hour, 0))
    session.add(
        CalendarEvent(
            booking_id=booking_id,
            resource_id=team_id,
            title=f"Booking {booking_id}",
            start_time=start,
            end_time=start + datetime.timedelta(hours=4),
        )
    )
    session.flush()


def _placements(session):
    return [
        (row.staff_id, row.team_id, row.assignment_date)
        for row in session.scalars(select(TeamAssignment).order_by(TeamAssignment.staff_id))
    ]


def _links(session):
    return sorted(
        (row.booking_id, row.staff_id, row.team_id, row.assignment_date)
        for row in session.scalars(select(BookingAssignment))
    )


def test_place_derives_booking_link_from_calendar(session_factory):
    with session_factory() as session, session.begin():
        _add_event(session, "B1", "T1", DAY)
        placement = TeamAssignmentService(session).place("S1", "T1", DAY)
        assert placement.team_id == "T1"

    with session_factory() as session:
        assert _placements(session) == [("S1", "T1", DAY)]
        assert _links(session) == [("B1", "S1", "T1", DAY)]


def test_place_accepts_iso_strings_and_datetimes(session_factory):
    with session_factory() as session, session.begin():
        service = TeamAssignmentService(session)
        service.place("S1", "T1", "2025-06-01")
        service.place("S2", "T1", "2025-06-01T09:30:00")
        service.place("S3", "T1", datetime.datetime(2025, 6, 1, 17, 0))

    with session_factory() as session:
        assert {row[2] for row in _placements(session)} == {DAY}


def test_place_twice_is_idempotent(session_factory):
    with session_factory() as session, session.begin():
        _add_event(session, "B1", "T1", DAY)
        service = TeamAssignmentService(session)
        service.place("S1", "T1", DAY)
        first = (_placements(session), _links(session), len(pending_changes(session)))
        service.place("S1", "T1", DAY)
        second = (_placements(session), _links(session), len(pending_changes(session)))

    assert first == second


def test_place_on_new_team_replaces_placement_and_clears_stale_links(session_factory):
    with session_factory() as session, session.begin():
        _add_event(session, "B1", "T1", DAY)
        _add_event(session, "B2", "T2", DAY, hour=12)
        service = TeamAssignmentService(session)
        service.place("S1", "T1", DAY)
        service.place("S1", "T2", DAY)

    with session_factory() as session:
        assert _placements(session) == [("S1", "T2", DAY)]
        assert _links(session) == [("B2", "S1", "T2", DAY)]


def test_one_team_per_staff_per_day(session_factory):
    with session_factory() as session, session.begin():
        service = TeamAssignmentService(session)
        for team in ("T1", "T2", "T3", "T1"):
            service.place("S1", team, DAY)
        service.place("S1", "T2", DAY + datetime.timedelta(days=1))

    with session_factory() as session:
        counts = session.execute(
            select(TeamAssignment.staff_id, TeamAssignment.assignment_date, func.count())
            .group_by(TeamAssignment.staff_id, TeamAssignment.assignment_date)
        ).all()
        assert all(count == 1 for _, _, count in counts)
        assert len(counts) == 2


def test_unique_constraint_backs_the_placement_invariant(session_factory):
    with session_factory() as session:
        session.add(TeamAssignment(staff_id="S1", team_id="T1", assignment_date=DAY))
        session.add(TeamAssignment(staff_id="S1", team_id="T2", assignment_date=DAY))
        with pytest.raises(IntegrityError):
            session.commit()


def test_remove_deletes_placement_and_every_booking_link(session_factory):
    with session_factory() as session, session.begin():
        _add_event(session, "B1", "T1", DAY)
        _add_event(session, "B2", "T1", DAY, hour=14)
        service = TeamAssignmentService(session)
        service.place("S1", "T1", DAY)
        assert len(_links(session)) == 2

    with session_factory() as session, session.begin():
        assert TeamAssignmentService(session).remove("S1", DAY) is True

    with session_factory() as session:
        assert _placements(session) == []
        assert _links(session) == []


def test_remove_leaves_other_days_and_staff_alone(session_factory):
    with session_factory() as session, session.begin():
        _add_event(session, "B1", "T1", DAY)
        service = TeamAssignmentService(session)
        service.place("S1", "T1", DAY)
        service.place("S2", "T1", DAY)
        service.place("S1", "T1", DAY + datetime.timedelta(days=1))
        service.remove("S1", DAY)

    with session_factory() as session:
        assert _placements(session) == [
            ("S1", "T1", DAY + datetime.timedelta(days=1)),
            ("S2", "T1", DAY),
        ]
        assert _links(session) == [("B1", "S2", "T1", DAY)]


def test_remove_missing_assignment_is_a_no_op(session_factory):
    with session_factory() as session, session.begin():
        assert TeamAssignmentService(session).remove("S1", DAY) is False
        assert pending_changes(session) == []


@pytest.mark.parametrize(
    "staff_id, team_id, day",
    [("", "T1", DAY), ("S1", "  ", DAY), ("S1", "T1", "01/06/2025"), ("S1", "T1", None)],
)
def test_place_rejects_bad_input(session_factory, staff_id, team_id, day):
    with session_factory() as session, session.begin():
        with pytest.raises(AssignmentValidationError):
            TeamAssignmentService(session).place(staff_id, team_id, day)
        assert _placements(session) == []
