from __future__ import annotations

import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from change_feed import record_change
from database import (
    BOOKING_ASSIGNMENTS_TABLE,
    BookingAssignment,
    TeamAssignment,
    bookings_for_team_date,
    find_team_assignment,
    list_booking_assignments,
    list_team_assignments,
    parse_assignment_date,
    require_identity,
)
from errors import MissingTeamPlacementError
from logger import get_logger

logger = get_logger("booking_links")


class BookingLinkService:
    """Single writer of booking-level staff assignments.

    A booking link records that a staff member works a booking on a day. It is
    derived from the staff member's team placement and from the calendar
    occupancy of that team, and stays valid only while the placement
    ``TeamAssignment(staff, team, day)`` exists. Every insert or delete of a
    ``BookingAssignment`` row goes through this class so the invariant can be
    checked in one place (see ``orphaned_links``).
    """

    def __init__(self, session) -> None:
        self.session = session

    def derive_for(self, staff_id: str, team_id: str, assignment_date) -> List[BookingAssignment]:
        """Align the staff member's links for a day with the team's calendar occupancy."""
        staff_id = require_identity(staff_id, "Staff id")
        team_id = require_identity(team_id, "Team id")
        day = parse_assignment_date(assignment_date)
        booking_ids = bookings_for_team_date(self.session, team_id, day)
        for booking_id in booking_ids:
            self._upsert(booking_id, staff_id, team_id, day)

        stale = [
            row
            for row in list_booking_assignments(self.session, staff_id=staff_id, start=day)
            if row.team_id != team_id or row.booking_id not in booking_ids
        ]
        for row in stale:
            self._delete_row(row)
        if stale:
            logger.info(
                "Cleared %s stale booking link(s) for staff %s on %s",
                len(stale),
                staff_id,
                day.isoformat(),
            )
        return list_booking_assignments(self.session, staff_id=staff_id, start=day)

    def link(self, booking_id: str, staff_id: str, team_id: str, assignment_date) -> BookingAssignment:
        """Link a staff member to a booking; the matching team placement must exist."""
        booking_id = require_identity(booking_id, "Booking id")
        staff_id = require_identity(staff_id, "Staff id")
        team_id = require_identity(team_id, "Team id")
        day = parse_assignment_date(assignment_date)
        if find_team_assignment(self.session, staff_id, team_id, day) is None:
            raise MissingTeamPlacementError(staff_id, team_id, day.isoformat())
        return self._upsert(booking_id, staff_id, team_id, day)

    def link_if_placed(
        self, booking_id: str, staff_id: str, team_id: str, assignment_date
    ) -> Optional[BookingAssignment]:
        day = parse_assignment_date(assignment_date)
        if find_team_assignment(self.session, staff_id, team_id, day) is None:
            return None
        return self._upsert(booking_id, staff_id, team_id, day)

    def unlink(self, booking_id: str, staff_id: str, assignment_date) -> bool:
        booking_id = require_identity(booking_id, "Booking id")
        staff_id = require_identity(staff_id, "Staff id")
        day = parse_assignment_date(assignment_date)
        row = self._get(booking_id, staff_id, day)
        if row is None:
            return False
        self._delete_row(row)
        return True

    def clear_for_staff(self, staff_id: str, assignment_date) -> int:
        day = parse_assignment_date(assignment_date)
        rows = list_booking_assignments(self.session, staff_id=staff_id, start=day)
        for row in rows:
            self._delete_row(row)
        return len(rows)

    def detach_booking(self, booking_id: str, assignment_date) -> List[str]:
        """Delete every link of a booking on a day and return the staff who held them."""
        day = parse_assignment_date(assignment_date)
        rows = list_booking_assignments(self.session, booking_id=booking_id, start=day)
        staff_ids: List[str] = []
        for row in rows:
            if row.staff_id not in staff_ids:
                staff_ids.append(row.staff_id)
            self._delete_row(row)
        return staff_ids

    def refresh_team(self, team_id: str, assignment_date) -> Dict[str, List[str]]:
        """Re-derive links for everyone placed on a team after its calendar changed."""
        team_id = require_identity(team_id, "Team id")
        day = parse_assignment_date(assignment_date)
        refreshed: Dict[str, List[str]] = {}
        for placement in list_team_assignments(self.session, day, team_id=team_id):
            rows = self.derive_for(placement.staff_id, team_id, day)
            refreshed[placement.staff_id] = [row.booking_id for row in rows]
        return refreshed

    def orphaned_links(
        self,
        start: Optional[datetime.date] = None,
        end: Optional[datetime.date] = None,
    ) -> List[BookingAssignment]:
        """Return links with no matching team placement for the same staff, team and day."""
        stmt = (
            select(BookingAssignment)
            .outerjoin(
                TeamAssignment,
                and_(
                    TeamAssignment.staff_id == BookingAssignment.staff_id,
                    TeamAssignment.team_id == BookingAssignment.team_id,
                    TeamAssignment.assignment_date == BookingAssignment.assignment_date,
                ),
            )
            .where(TeamAssignment.id.is_(None))
        )
        if start is not None:
            stmt = stmt.where(BookingAssignment.assignment_date >= start)
        if end is not None:
            stmt = stmt.where(BookingAssignment.assignment_date <= end)
        stmt = stmt.order_by(BookingAssignment.assignment_date, BookingAssignment.booking_id)
        return list(self.session.scalars(stmt))

    def _get(self, booking_id: str, staff_id: str, day: datetime.date) -> Optional[BookingAssignment]:
        stmt = (
            select(BookingAssignment)
            .where(
                BookingAssignment.booking_id == booking_id,
                BookingAssignment.staff_id == staff_id,
                BookingAssignment.assignment_date == day,
            )
            .execution_options(populate_existing=True)
        )
        return self.session.scalars(stmt).first()

    def _upsert(self, booking_id: str, staff_id: str, team_id: str, day: datetime.date) -> BookingAssignment:
        existing = self._get(booking_id, staff_id, day)
        if existing is not None and existing.team_id == team_id:
            return existing
        previous_team_id = existing.team_id if existing is not None else None
        stmt = (
            sqlite_insert(BookingAssignment)
            .values(
                booking_id=booking_id,
                staff_id=staff_id,
                team_id=team_id,
                assignment_date=day,
            )
            .on_conflict_do_update(
                index_elements=["booking_id", "staff_id", "assignment_date"],
                set_={"team_id": team_id},
            )
        )
        self.session.execute(stmt)
        record_change(
            self.session,
            BOOKING_ASSIGNMENTS_TABLE,
            "UPDATE" if existing is not None else "INSERT",
            day,
            staff_id=staff_id,
            team_id=team_id,
            booking_id=booking_id,
            previous_team_id=previous_team_id,
        )
        return self._get(booking_id, staff_id, day)

    def _delete_row(self, row: BookingAssignment) -> None:
        row_id, day = row.id, row.assignment_date
        staff_id, team_id, booking_id = row.staff_id, row.team_id, row.booking_id
        self.session.execute(delete(BookingAssignment).where(BookingAssignment.id == row_id))
        record_change(
            self.session,
            BOOKING_ASSIGNMENTS_TABLE,
            "DELETE",
            day,
            staff_id=staff_id,
            team_id=team_id,
            booking_id=booking_id,
        )
