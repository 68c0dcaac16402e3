"""Single entry point for staff-management commands.

``CommandDispatcher.dispatch(operation, data)`` validates the payload into its
command model, runs the handler inside one database transaction and answers
with the envelope ``{success, data?, error?, conflicts?, affectedStaff?}``.
Domain failures become ``success: False`` envelopes; anything else propagates.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Type

from sqlalchemy.exc import SQLAlchemyError

import database
from booking_links import BookingLinkService
from booking_moves import MoveConflictResolver, MoveStrategy
from change_feed import ChangeFeed, change_feed
from commands import (
    AssignStaffToBooking,
    AssignStaffToTeam,
    BulkAssignStaff,
    Command,
    GetAssignmentsInRange,
    GetAvailableStaff,
    GetMoveCandidates,
    GetStaffAssignments,
    GetStaffMembers,
    GetStaffSummary,
    HandleBookingMove,
    RemoveStaffAssignment,
    RemoveStaffFromBooking,
    SyncStaffMember,
    SyncTeamBookings,
    ValidateBookingLinks,
    parse_command,
)
from database import (
    booking_assignment_to_dict,
    list_available_staff,
    list_booking_assignments,
    list_staff_members,
    list_team_assignments,
    record_audit_log,
    staff_display_name,
    staff_member_to_dict,
    staff_names,
    team_assignment_to_dict,
    upsert_staff_member,
)
from errors import AssignmentError
from logger import get_logger
from team_assignments import TeamAssignmentService

logger = get_logger("dispatcher")

DEFAULT_ACTOR = "staff-management"


def _ok(data: Any = None, **extras: Any) -> Dict[str, Any]:
    envelope: Dict[str, Any] = {"success": True}
    if data is not None:
        envelope["data"] = data
    envelope.update(extras)
    return envelope


def _failure(error: str, **extras: Any) -> Dict[str, Any]:
    envelope: Dict[str, Any] = {"success": False, "error": error}
    envelope.update(extras)
    return envelope


def assignments_snapshot(session, start, end=None) -> Dict[str, Any]:
    """Team placements and booking links for a date range, as the client cache stores them."""
    start_day = database.parse_assignment_date(start)
    end_day = database.parse_assignment_date(end) if end is not None else start_day
    placements = list_team_assignments(session, start_day, end_day)
    names = staff_names(session, [row.staff_id for row in placements])
    return {
        "startDate": start_day.isoformat(),
        "endDate": end_day.isoformat(),
        "teamAssignments": [
            team_assignment_to_dict(row, staff_display_name(names, row.staff_id)) for row in placements
        ],
        "bookingAssignments": [
            booking_assignment_to_dict(row)
            for row in list_booking_assignments(session, start=start_day, end=end_day)
        ],
    }


class CommandDispatcher:
    def __init__(
        self,
        session_factory=None,
        *,
        feed: Optional[ChangeFeed] = None,
        actor: str = DEFAULT_ACTOR,
    ) -> None:
        self.session_factory = session_factory or database.SessionLocal
        self.feed = feed if feed is not None else change_feed
        self.feed.bind(self.session_factory)
        self.actor = actor
        self._handlers: Dict[Type[Command], Callable[[Any, str], Dict[str, Any]]] = {
            AssignStaffToTeam: self._assign_staff_to_team,
            RemoveStaffAssignment: self._remove_staff_assignment,
            AssignStaffToBooking: self._assign_staff_to_booking,
            RemoveStaffFromBooking: self._remove_staff_from_booking,
            HandleBookingMove: self._handle_booking_move,
            BulkAssignStaff: self._bulk_assign_staff,
            GetStaffSummary: self._get_staff_summary,
            GetStaffMembers: self._get_staff_members,
            SyncStaffMember: self._sync_staff_member,
            GetStaffAssignments: self._get_staff_assignments,
            GetAvailableStaff: self._get_available_staff,
            GetAssignmentsInRange: self._get_assignments_in_range,
            GetMoveCandidates: self._get_move_candidates,
            SyncTeamBookings: self._sync_team_bookings,
            ValidateBookingLinks: self._validate_booking_links,
        }

    def dispatch(self, operation: str, data: Optional[Dict[str, Any]] = None, *, actor: Optional[str] = None) -> Dict[str, Any]:
        try:
            command = parse_command(operation, data)
        except AssignmentError as exc:
            logger.warning("Rejected %s: %s", operation, exc)
            return _failure(str(exc))
        handler = self._handlers[type(command)]
        try:
            result = handler(command, actor or self.actor)
        except AssignmentError as exc:
            logger.warning("%s failed: %s", operation, exc)
            return _failure(str(exc))
        logger.debug("%s -> success=%s", operation, result.get("success"))
        return result

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        with self.session_factory() as session, session.begin():
            yield session

    @contextmanager
    def _reader(self) -> Iterator[Any]:
        with self.session_factory() as session:
            yield session

    # -- mutations -----------------------------------------------------------

    def _place(self, session, command: AssignStaffToTeam, actor: str) -> Dict[str, Any]:
        placement = TeamAssignmentService(session).place(command.staff_id, command.team_id, command.date)
        names = staff_names(session, [placement.staff_id])
        payload = team_assignment_to_dict(placement, staff_display_name(names, placement.staff_id))
        payload["bookingIds"] = [
            row.booking_id
            for row in list_booking_assignments(session, staff_id=placement.staff_id, start=placement.assignment_date)
        ]
        record_audit_log(
            session,
            user_id=actor,
            action="ASSIGN_STAFF_TO_TEAM",
            target_id=placement.staff_id,
            payload=payload,
        )
        return payload

    def _assign_staff_to_team(self, command: AssignStaffToTeam, actor: str) -> Dict[str, Any]:
        with self._transaction() as session:
            payload = self._place(session, command, actor)
        return _ok(payload)

    def _remove_staff_assignment(self, command: RemoveStaffAssignment, actor: str) -> Dict[str, Any]:
        with self._transaction() as session:
            removed = TeamAssignmentService(session).remove(command.staff_id, command.date)
            payload = {"staffId": command.staff_id, "date": command.date.isoformat(), "removed": removed}
            if removed:
                record_audit_log(
                    session,
                    user_id=actor,
                    action="REMOVE_STAFF_ASSIGNMENT",
                    target_id=command.staff_id,
                    payload=payload,
                )
        return _ok(payload)

    def _assign_staff_to_booking(self, command: AssignStaffToBooking, actor: str) -> Dict[str, Any]:
        with self._transaction() as session:
            row = BookingLinkService(session).link(
                command.booking_id, command.staff_id, command.team_id, command.date
            )
            payload = booking_assignment_to_dict(row)
            record_audit_log(
                session,
                user_id=actor,
                action="ASSIGN_STAFF_TO_BOOKING",
                target_type="BookingAssignment",
                target_id=command.booking_id,
                payload=payload,
            )
        return _ok(payload)

    def _remove_staff_from_booking(self, command: RemoveStaffFromBooking, actor: str) -> Dict[str, Any]:
        with self._transaction() as session:
            removed = BookingLinkService(session).unlink(command.booking_id, command.staff_id, command.date)
            payload = {
                "bookingId": command.booking_id,
                "staffId": command.staff_id,
                "date": command.date.isoformat(),
                "removed": removed,
            }
            if removed:
                record_audit_log(
                    session,
                    user_id=actor,
                    action="REMOVE_STAFF_FROM_BOOKING",
                    target_type="BookingAssignment",
                    target_id=command.booking_id,
                    payload=payload,
                )
        return _ok(payload)

    def _handle_booking_move(self, command: HandleBookingMove, actor: str) -> Dict[str, Any]:
        strategy = MoveStrategy.from_payload(command.strategy, command.alternative_staff, command.force_move)
        with self._transaction() as session:
            result = MoveConflictResolver(session).move(
                command.booking_id,
                command.old_team_id,
                command.new_team_id,
                command.old_date,
                command.new_date,
                strategy,
            )
            payload = result.to_dict()
            record_audit_log(
                session,
                user_id=actor,
                action="HANDLE_BOOKING_MOVE",
                target_type="BookingAssignment",
                target_id=command.booking_id,
                payload=payload,
            )
        return {
            "success": result.success,
            "data": payload,
            "conflicts": payload["conflicts"],
            "affectedStaff": payload["affectedStaff"],
        }

    def _bulk_assign_staff(self, command: BulkAssignStaff, actor: str) -> Dict[str, Any]:
        results: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for index, item in enumerate(command.assignments):
            try:
                placement = parse_command(AssignStaffToTeam.operation, item)
                with self._transaction() as session:
                    results.append(self._place(session, placement, actor))
            except (AssignmentError, SQLAlchemyError) as exc:
                logger.warning("Bulk assignment item %s failed: %s", index, exc)
                errors.append({"index": index, "assignment": item, "error": str(exc)})
        payload = {"results": results, "errors": errors}
        if errors:
            return _failure(f"{len(errors)} of {len(command.assignments)} assignment(s) failed", data=payload)
        return _ok(payload)

    def _sync_staff_member(self, command: SyncStaffMember, actor: str) -> Dict[str, Any]:
        with self._transaction() as session:
            member = upsert_staff_member(session, command.model_dump(exclude_unset=True))
            payload = staff_member_to_dict(member)
            record_audit_log(
                session,
                user_id=actor,
                action="SYNC_STAFF_MEMBER",
                target_type="StaffMember",
                target_id=member.id,
                payload=payload,
            )
        return _ok(payload)

    def _sync_team_bookings(self, command: SyncTeamBookings, actor: str) -> Dict[str, Any]:
        with self._transaction() as session:
            refreshed = BookingLinkService(session).refresh_team(command.team_id, command.date)
            payload = {"teamId": command.team_id, "date": command.date.isoformat(), "staff": refreshed}
            record_audit_log(
                session,
                user_id=actor,
                action="SYNC_TEAM_BOOKINGS",
                target_type="BookingAssignment",
                target_id=command.team_id,
                payload=payload,
            )
        return _ok(payload)

    # -- reads ---------------------------------------------------------------

    def _get_staff_summary(self, command: GetStaffSummary, actor: str) -> Dict[str, Any]:
        with self._reader() as session:
            placements = {
                row.staff_id: row.team_id
                for row in list_team_assignments(session, command.date, staff_ids=command.staff_ids)
            }
            summary = [
                {
                    "staffId": staff_id,
                    "teamId": placements.get(staff_id),
                    "bookingsCount": len(list_booking_assignments(session, staff_id=staff_id, start=command.date)),
                }
                for staff_id in command.staff_ids
            ]
        return _ok(summary)

    def _get_staff_members(self, command: GetStaffMembers, actor: str) -> Dict[str, Any]:
        with self._reader() as session:
            return _ok(list_staff_members(session))

    def _get_staff_assignments(self, command: GetStaffAssignments, actor: str) -> Dict[str, Any]:
        with self._reader() as session:
            placements = list_team_assignments(session, command.date, team_id=command.team_id)
            names = staff_names(session, [row.staff_id for row in placements])
            return _ok(
                [team_assignment_to_dict(row, staff_display_name(names, row.staff_id)) for row in placements]
            )

    def _get_available_staff(self, command: GetAvailableStaff, actor: str) -> Dict[str, Any]:
        with self._reader() as session:
            return _ok(list_available_staff(session, command.date))

    def _get_assignments_in_range(self, command: GetAssignmentsInRange, actor: str) -> Dict[str, Any]:
        with self._reader() as session:
            return _ok(assignments_snapshot(session, command.start_date, command.end_date))

    def _get_move_candidates(self, command: GetMoveCandidates, actor: str) -> Dict[str, Any]:
        with self._reader() as session:
            return _ok(MoveConflictResolver(session).candidates(command.team_id, command.date))

    def _validate_booking_links(self, command: ValidateBookingLinks, actor: str) -> Dict[str, Any]:
        with self._reader() as session:
            orphans = BookingLinkService(session).orphaned_links(command.start_date, command.end_date)
            if orphans:
                logger.warning("Found %s booking link(s) without a matching team placement", len(orphans))
            return _ok({"valid": not orphans, "orphanedLinks": [booking_assignment_to_dict(row) for row in orphans]})
