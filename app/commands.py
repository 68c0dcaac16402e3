"""Typed payloads for the staff-management command dispatcher.

Each operation name maps to exactly one pydantic model, so a handler only
ever sees a validated command. Payload keys are accepted in camelCase
(``staffId``) and in snake_case (``staff_id``).
"""

from __future__ import annotations

import datetime
from typing import Any, ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from database import parse_assignment_date
from errors import AssignmentValidationError, UnknownOperationError


def _coerce_day(value: Any) -> datetime.date:
    try:
        return parse_assignment_date(value)
    except AssignmentValidationError as exc:
        raise ValueError(str(exc)) from exc


def _require_text(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
    return value


class Command(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
        frozen=True,
    )

    operation: ClassVar[str] = ""
    mutating: ClassVar[bool] = False

    @field_validator("*", mode="before")
    @classmethod
    def _strip_identities(cls, value: Any, info) -> Any:
        if info.field_name.endswith("_id"):
            return _require_text(value)
        return value

    @field_validator("*", mode="before")
    @classmethod
    def _parse_days(cls, value: Any, info) -> Any:
        if info.field_name in _DATE_FIELDS and value is not None:
            return _coerce_day(value)
        return value


_DATE_FIELDS = {"date", "old_date", "new_date", "start_date", "end_date"}


class AssignStaffToTeam(Command):
    operation: ClassVar[str] = "assign_staff_to_team"
    mutating: ClassVar[bool] = True

    staff_id: str
    team_id: str
    date: datetime.date


class RemoveStaffAssignment(Command):
    operation: ClassVar[str] = "remove_staff_assignment"
    mutating: ClassVar[bool] = True

    staff_id: str
    date: datetime.date


class AssignStaffToBooking(Command):
    operation: ClassVar[str] = "assign_staff_to_booking"
    mutating: ClassVar[bool] = True

    booking_id: str
    staff_id: str
    team_id: str
    date: datetime.date


class RemoveStaffFromBooking(Command):
    operation: ClassVar[str] = "remove_staff_from_booking"
    mutating: ClassVar[bool] = True

    booking_id: str
    staff_id: str
    date: datetime.date


class HandleBookingMove(Command):
    operation: ClassVar[str] = "handle_booking_move"
    mutating: ClassVar[bool] = True

    booking_id: str
    old_team_id: str
    new_team_id: str
    old_date: datetime.date
    new_date: datetime.date
    strategy: Optional[str] = None
    force_move: bool = False
    alternative_staff: List[str] = Field(default_factory=list)

    @field_validator("alternative_staff", mode="before")
    @classmethod
    def _clean_candidates(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        return value


class BulkAssignStaff(Command):
    operation: ClassVar[str] = "bulk_assign_staff"
    mutating: ClassVar[bool] = True

    # Items are validated one by one by the dispatcher so a bad item only fails itself.
    assignments: List[Dict[str, Any]]


class GetStaffSummary(Command):
    operation: ClassVar[str] = "get_staff_summary"

    staff_ids: List[str]
    date: datetime.date

    @field_validator("staff_ids", mode="before")
    @classmethod
    def _clean_staff_ids(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        return value


class GetStaffMembers(Command):
    operation: ClassVar[str] = "get_staff_members"


class SyncStaffMember(Command):
    operation: ClassVar[str] = "sync_staff_member"
    mutating: ClassVar[bool] = True

    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    color: Optional[str] = None

    @field_validator("id", "name", mode="before")
    @classmethod
    def _not_blank(cls, value: Any) -> Any:
        return _require_text(value)


class GetStaffAssignments(Command):
    operation: ClassVar[str] = "get_staff_assignments"

    date: datetime.date
    team_id: Optional[str] = None


class GetAvailableStaff(Command):
    operation: ClassVar[str] = "get_available_staff"

    date: datetime.date


class GetAssignmentsInRange(Command):
    operation: ClassVar[str] = "get_assignments_in_range"

    start_date: datetime.date
    end_date: Optional[datetime.date] = None

    @model_validator(mode="after")
    def _check_range(self) -> "GetAssignmentsInRange":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self


class GetMoveCandidates(Command):
    operation: ClassVar[str] = "get_move_candidates"

    team_id: str
    date: datetime.date


class SyncTeamBookings(Command):
    operation: ClassVar[str] = "sync_team_bookings"
    mutating: ClassVar[bool] = True

    team_id: str
    date: datetime.date


class ValidateBookingLinks(Command):
    operation: ClassVar[str] = "validate_booking_links"

    start_date: Optional[datetime.date] = None
    end_date: Optional[datetime.date] = None


COMMANDS: Dict[str, Type[Command]] = {
    model.operation: model
    for model in (
        AssignStaffToTeam,
        RemoveStaffAssignment,
        AssignStaffToBooking,
        RemoveStaffFromBooking,
        HandleBookingMove,
        BulkAssignStaff,
        GetStaffSummary,
        GetStaffMembers,
        SyncStaffMember,
        GetStaffAssignments,
        GetAvailableStaff,
        GetAssignmentsInRange,
        GetMoveCandidates,
        SyncTeamBookings,
        ValidateBookingLinks,
    )
}


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid payload"


def parse_command(operation: str, data: Optional[Dict[str, Any]] = None) -> Command:
    """Validate a raw ``{operation, data}`` pair into its command model.

    Raises ``UnknownOperationError`` for unregistered operations and
    ``AssignmentValidationError`` when the payload does not fit the model.
    """
    model = COMMANDS.get((operation or "").strip())
    if model is None:
        raise UnknownOperationError(operation)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise AssignmentValidationError(f"Payload for {operation} must be an object.")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise AssignmentValidationError(f"Invalid payload for {operation}: {describe_validation_error(exc)}") from exc
