from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from booking_links import BookingLinkService
from database import (
    list_booking_assignments,
    list_team_assignments,
    parse_assignment_date,
    require_identity,
    staff_display_name,
    staff_names,
)
from errors import AssignmentValidationError
from logger import get_logger

logger = get_logger("booking_moves")

NOT_ASSIGNED_TO_DESTINATION_TEAM = "not_assigned_to_destination_team"

MANUAL = "manual"
FORCE_MOVE = "force_move"
ALTERNATIVE_STAFF = "alternative_staff"
_STRATEGY_ALIASES = {
    "manual": MANUAL,
    "force_move": FORCE_MOVE,
    "forcemove": FORCE_MOVE,
    "force": FORCE_MOVE,
    "alternative_staff": ALTERNATIVE_STAFF,
    "alternativestaff": ALTERNATIVE_STAFF,
}


@dataclass
class Conflict:
    staff_id: str
    reason: str
    source_team_id: str
    dest_team_id: str
    date: datetime.date
    staff_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "staffId": self.staff_id,
            "staffName": self.staff_name or f"Staff {self.staff_id}",
            "reason": self.reason,
            "sourceTeamId": self.source_team_id,
            "destTeamId": self.dest_team_id,
            "date": self.date.isoformat(),
        }


@dataclass(frozen=True)
class MoveStrategy:
    kind: str = MANUAL
    candidate_ids: Sequence[str] = ()

    @classmethod
    def manual(cls) -> "MoveStrategy":
        return cls(MANUAL)

    @classmethod
    def force_move(cls) -> "MoveStrategy":
        return cls(FORCE_MOVE)

    @classmethod
    def alternative_staff(cls, candidate_ids: Sequence[str]) -> "MoveStrategy":
        candidates = tuple(str(candidate).strip() for candidate in candidate_ids if str(candidate).strip())
        if not candidates:
            raise AssignmentValidationError("Alternative staff strategy needs at least one candidate.")
        return cls(ALTERNATIVE_STAFF, candidates)

    @classmethod
    def from_payload(
        cls,
        name: Optional[str] = None,
        candidate_ids: Optional[Sequence[str]] = None,
        force_move: bool = False,
    ) -> "MoveStrategy":
        """Build a strategy from a command payload.

        An explicit ``name`` wins; otherwise ``force_move`` or a non-empty
        candidate list select the strategy, and manual is the default.
        """
        if name:
            kind = _STRATEGY_ALIASES.get(name.replace("-", "_").lower())
            if kind is None:
                raise AssignmentValidationError(f"Unknown move strategy '{name}'.")
        elif force_move:
            kind = FORCE_MOVE
        elif candidate_ids:
            kind = ALTERNATIVE_STAFF
        else:
            kind = MANUAL
        if kind == ALTERNATIVE_STAFF:
            return cls.alternative_staff(candidate_ids or ())
        return cls(kind)


@dataclass
class MoveResult:
    success: bool
    booking_id: str
    source_team_id: str
    dest_team_id: str
    source_date: datetime.date
    dest_date: datetime.date
    strategy: str
    affected_staff: List[str] = field(default_factory=list)
    relinked_staff: List[str] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    substitutions: List[str] = field(default_factory=list)
    failed_substitutions: List[str] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "bookingId": self.booking_id,
            "sourceTeamId": self.source_team_id,
            "destTeamId": self.dest_team_id,
            "sourceDate": self.source_date.isoformat(),
            "destDate": self.dest_date.isoformat(),
            "strategy": self.strategy,
            "affectedStaff": list(self.affected_staff),
            "relinkedStaff": list(self.relinked_staff),
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "substitutions": list(self.substitutions),
            "failedSubstitutions": list(self.failed_substitutions),
            "message": self.message,
        }


class MoveConflictResolver:
    """Carries a booking's staff along when the booking changes team or date.

    Staff follow the booking only when they are already placed on the
    destination team for the destination day; everyone else is reported as a
    conflict. Team placements are never created here.
    """

    def __init__(self, session, *, links: Optional[BookingLinkService] = None) -> None:
        self.session = session
        self.links = links or BookingLinkService(session)

    def move(
        self,
        booking_id: str,
        source_team_id: str,
        dest_team_id: str,
        source_date,
        dest_date,
        strategy: Optional[MoveStrategy] = None,
    ) -> MoveResult:
        booking_id = require_identity(booking_id, "Booking id")
        source_team_id = require_identity(source_team_id, "Source team id")
        dest_team_id = require_identity(dest_team_id, "Destination team id")
        source_day = parse_assignment_date(source_date)
        dest_day = parse_assignment_date(dest_date)
        strategy = strategy or MoveStrategy.manual()

        affected = self.links.detach_booking(booking_id, source_day)
        relinked: List[str] = []
        conflicts: List[Conflict] = []
        for staff_id in affected:
            if self.links.link_if_placed(booking_id, staff_id, dest_team_id, dest_day) is not None:
                relinked.append(staff_id)
            else:
                conflicts.append(
                    Conflict(
                        staff_id=staff_id,
                        reason=NOT_ASSIGNED_TO_DESTINATION_TEAM,
                        source_team_id=source_team_id,
                        dest_team_id=dest_team_id,
                        date=dest_day,
                    )
                )

        result = MoveResult(
            success=not conflicts,
            booking_id=booking_id,
            source_team_id=source_team_id,
            dest_team_id=dest_team_id,
            source_date=source_day,
            dest_date=dest_day,
            strategy=strategy.kind,
            affected_staff=affected,
            relinked_staff=relinked,
            conflicts=conflicts,
        )
        self._apply_strategy(result, strategy)
        self._enrich(result.conflicts)
        result.message = self._message(result)
        logger.info(
            "Moved booking %s from %s/%s to %s/%s: %s affected, %s relinked, %s conflict(s), strategy %s",
            booking_id,
            source_team_id,
            source_day.isoformat(),
            dest_team_id,
            dest_day.isoformat(),
            len(affected),
            len(relinked),
            len(result.conflicts),
            strategy.kind,
        )
        return result

    def candidates(self, team_id: str, assignment_date) -> List[Dict[str, Any]]:
        """Staff placed on the team that day, flagged when already linked to one of its bookings."""
        team_id = require_identity(team_id, "Team id")
        day = parse_assignment_date(assignment_date)
        placements = list_team_assignments(self.session, day, team_id=team_id)
        busy = {row.staff_id for row in list_booking_assignments(self.session, team_id=team_id, start=day)}
        names = staff_names(self.session, [placement.staff_id for placement in placements])
        return [
            {
                "id": placement.staff_id,
                "name": staff_display_name(names, placement.staff_id),
                "alreadyAssigned": placement.staff_id in busy,
            }
            for placement in placements
        ]

    def _apply_strategy(self, result: MoveResult, strategy: MoveStrategy) -> None:
        if strategy.kind == FORCE_MOVE:
            if result.conflicts:
                logger.warning(
                    "Force moved booking %s; %s staff lost their link",
                    result.booking_id,
                    len(result.conflicts),
                )
            result.success = True
        elif strategy.kind == ALTERNATIVE_STAFF:
            for candidate_id in strategy.candidate_ids:
                linked = self.links.link_if_placed(
                    result.booking_id, candidate_id, result.dest_team_id, result.dest_date
                )
                if linked is None:
                    logger.warning(
                        "Alternative staff %s is not on team %s on %s",
                        candidate_id,
                        result.dest_team_id,
                        result.dest_date.isoformat(),
                    )
                    result.failed_substitutions.append(candidate_id)
                else:
                    result.substitutions.append(candidate_id)
            # A clean move succeeds even when no candidate could be linked.
            result.success = not result.conflicts or bool(result.substitutions)

    def _enrich(self, conflicts: List[Conflict]) -> None:
        if not conflicts:
            return
        names = staff_names(self.session, [conflict.staff_id for conflict in conflicts])
        for conflict in conflicts:
            conflict.staff_name = staff_display_name(names, conflict.staff_id)

    @staticmethod
    def _message(result: MoveResult) -> str:
        if result.strategy == ALTERNATIVE_STAFF:
            message = f"Assigned {len(result.substitutions)} alternative staff members"
            if result.failed_substitutions:
                message += f", {len(result.failed_substitutions)} failed"
            return message
        if not result.conflicts:
            return f"Booking moved successfully. {len(result.relinked_staff)} staff members reassigned."
        if result.strategy == FORCE_MOVE:
            return "Booking moved. Some staff could not be reassigned due to team conflicts."
        return (
            f"Booking move has conflicts. {len(result.conflicts)} staff members "
            "cannot be reassigned to the new team/date."
        )
