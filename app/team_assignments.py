from __future__ import annotations

from typing import Optional

from sqlalchemy import delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from booking_links import BookingLinkService
from change_feed import record_change
from database import (
    TEAM_ASSIGNMENTS_TABLE,
    TeamAssignment,
    utcnow,
    get_team_assignment,
    parse_assignment_date,
    require_identity,
)
from logger import get_logger

logger = get_logger("team_assignments")


class TeamAssignmentService:
    """Places staff on teams, one team per staff member per day."""

    def __init__(self, session, *, links: Optional[BookingLinkService] = None) -> None:
        self.session = session
        self.links = links or BookingLinkService(session)

    def place(self, staff_id: str, team_id: str, assignment_date) -> TeamAssignment:
        """Upsert the staff member's placement for the day, then re-derive booking links.

        An existing placement on another team is replaced, not rejected. Links
        that no longer match the placement are cleaned up by the derivation step.
        """
        staff_id = require_identity(staff_id, "Staff id")
        team_id = require_identity(team_id, "Team id")
        day = parse_assignment_date(assignment_date)
        previous = get_team_assignment(self.session, staff_id, day)
        previous_team_id = previous.team_id if previous is not None else None

        if previous_team_id != team_id:
            stmt = (
                sqlite_insert(TeamAssignment)
                .values(staff_id=staff_id, team_id=team_id, assignment_date=day)
                .on_conflict_do_update(
                    index_elements=["staff_id", "assignment_date"],
                    set_={"team_id": team_id, "updated_at": utcnow()},
                )
            )
            self.session.execute(stmt)
            record_change(
                self.session,
                TEAM_ASSIGNMENTS_TABLE,
                "UPDATE" if previous is not None else "INSERT",
                day,
                staff_id=staff_id,
                team_id=team_id,
                previous_team_id=previous_team_id,
            )
            if previous_team_id:
                logger.info(
                    "Moved staff %s from team %s to %s on %s",
                    staff_id,
                    previous_team_id,
                    team_id,
                    day.isoformat(),
                )
            else:
                logger.info("Placed staff %s on team %s on %s", staff_id, team_id, day.isoformat())

        self.links.derive_for(staff_id, team_id, day)
        return get_team_assignment(self.session, staff_id, day)

    def remove(self, staff_id: str, assignment_date) -> bool:
        """Delete the placement and every booking link of the staff member for the day.

        Returns False when there was nothing to remove.
        """
        staff_id = require_identity(staff_id, "Staff id")
        day = parse_assignment_date(assignment_date)
        previous = get_team_assignment(self.session, staff_id, day)
        cleared = self.links.clear_for_staff(staff_id, day)
        if previous is None:
            return cleared > 0
        team_id = previous.team_id
        self.session.execute(
            delete(TeamAssignment).where(
                TeamAssignment.staff_id == staff_id,
                TeamAssignment.assignment_date == day,
            )
        )
        record_change(
            self.session,
            TEAM_ASSIGNMENTS_TABLE,
            "DELETE",
            day,
            staff_id=staff_id,
            team_id=team_id,
        )
        logger.info(
            "Removed staff %s from team %s on %s (%s booking link(s) cleared)",
            staff_id,
            team_id,
            day.isoformat(),
            cleared,
        )
        return True
