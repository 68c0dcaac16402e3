"""Optimistic client-side cache for one view's assignment scope.

Every user mutation walks the same state machine::

    IDLE -> OPTIMISTICALLY_APPLIED -> SUBMITTED -> VERIFIED | VERIFICATION_FAILED -> IDLE

The cache changes synchronously, the authoritative write runs in the
background, and after a fixed settling delay the mutated key is re-read and
compared with the optimistic value. A failed write or a mismatch replaces the
whole cached scope with a fresh read. Independently, any committed change in
the scope reported by the change feed triggers the same wholesale re-fetch.
"""

from __future__ import annotations

import asyncio
import datetime
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from change_feed import ChangeFeed, ChangeNotification, Subscription
from database import BOOKING_ASSIGNMENTS_TABLE, TEAM_ASSIGNMENTS_TABLE, parse_assignment_date
from errors import BackendError, InvalidTransitionError, OutOfScopeError
from logger import get_logger

logger = get_logger("client_sync")

VERIFY_DELAY_SECONDS = 0.5
WATCHED_TABLES = (TEAM_ASSIGNMENTS_TABLE, BOOKING_ASSIGNMENTS_TABLE)

PLACE = "place"
REMOVE = "remove"
MOVE = "move"


class MutationState(str, Enum):
    IDLE = "idle"
    OPTIMISTICALLY_APPLIED = "optimistically_applied"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    VERIFICATION_FAILED = "verification_failed"


_TRANSITIONS: Dict[MutationState, FrozenSet[MutationState]] = {
    MutationState.IDLE: frozenset({MutationState.OPTIMISTICALLY_APPLIED}),
    MutationState.OPTIMISTICALLY_APPLIED: frozenset({MutationState.SUBMITTED}),
    MutationState.SUBMITTED: frozenset({MutationState.VERIFIED, MutationState.VERIFICATION_FAILED}),
    MutationState.VERIFIED: frozenset({MutationState.IDLE}),
    MutationState.VERIFICATION_FAILED: frozenset({MutationState.IDLE}),
}


@dataclass(frozen=True)
class AssignmentScope:
    start: datetime.date
    end: datetime.date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError("Scope end must not be before its start.")

    @classmethod
    def day(cls, value) -> "AssignmentScope":
        day = parse_assignment_date(value)
        return cls(day, day)

    @classmethod
    def week(cls, value) -> "AssignmentScope":
        """The Monday-to-Sunday week containing ``value``."""
        day = parse_assignment_date(value)
        monday = day - datetime.timedelta(days=day.weekday())
        return cls(monday, monday + datetime.timedelta(days=6))

    def contains(self, value) -> bool:
        return self.start <= parse_assignment_date(value) <= self.end

    def as_payload(self) -> Dict[str, str]:
        return {"startDate": self.start.isoformat(), "endDate": self.end.isoformat()}


@dataclass
class PendingMutation:
    id: int
    kind: str
    operation: str
    payload: Dict[str, Any]
    date: datetime.date
    key: Tuple[str, ...]
    expected: Any
    state: MutationState = MutationState.IDLE
    history: List[MutationState] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append(self.state)

    def advance(self, state: MutationState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Mutation {self.id} cannot go from {self.state.value} to {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def verified(self) -> bool:
        return MutationState.VERIFIED in self.history

    @property
    def write_failed(self) -> bool:
        return self.error is not None


class ClientSyncLayer:
    def __init__(
        self,
        backend,
        scope: AssignmentScope,
        *,
        verify_delay: float = VERIFY_DELAY_SECONDS,
        tables=WATCHED_TABLES,
        on_change: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_warning: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.backend = backend
        self.scope = scope
        self.verify_delay = verify_delay
        self.tables = tuple(tables)
        self.on_change = on_change
        self.on_warning = on_warning
        self.team_assignments: Dict[Tuple[str, datetime.date], Dict[str, Any]] = {}
        self.booking_assignments: Dict[Tuple[str, str, datetime.date], Dict[str, Any]] = {}
        self.mutations: List[PendingMutation] = []
        self.warnings: List[str] = []
        self.stale = True
        self.reconcile_count = 0
        self._ids = itertools.count(1)
        self._fetches = itertools.count(1)
        self._applied_fetch = 0
        self._tasks: Set[asyncio.Task] = set()
        self._subscription: Optional[Subscription] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # -- feed ----------------------------------------------------------------

    def attach(self, feed: ChangeFeed) -> Subscription:
        """Hold a standing subscription for this scope on ``feed``.

        Notifications may arrive on any thread; they are handed to the event
        loop that was running when the layer attached.
        """
        self.detach()
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._subscription = feed.subscribe(
            self._on_notification,
            start=self.scope.start,
            end=self.scope.end,
            tables=self.tables,
        )
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def notify(self, notification) -> None:
        """Feed a notification received from a remote change stream."""
        if isinstance(notification, dict):
            notification = ChangeNotification.from_dict(notification)
        if notification.table not in self.tables or not self.scope.contains(notification.date):
            return
        self._on_notification(notification)

    def _on_notification(self, notification: ChangeNotification) -> None:
        if self._loop is None or self._loop.is_closed():
            # No loop to reconcile on; the next load() picks the change up.
            self.stale = True
            return
        self._loop.call_soon_threadsafe(self._spawn, self.reconcile, f"{notification.table} {notification.event}")

    # -- state machine -------------------------------------------------------

    def apply_optimistic(self, mutation: PendingMutation) -> None:
        if mutation.kind == PLACE:
            staff_id, day = mutation.payload["staffId"], mutation.date
            current = self.team_assignments.get((staff_id, day), {})
            record = {"staffId": staff_id, "teamId": mutation.payload["teamId"], "date": day.isoformat()}
            if current.get("staffName"):
                record["staffName"] = current["staffName"]
            self.team_assignments[(staff_id, day)] = record
            team_id = record["teamId"]
            # The team's bookings as far as the cache knows them, from teammates' links.
            team_bookings = {
                key[0]
                for key, link in self.booking_assignments.items()
                if key[2] == day and link["teamId"] == team_id and key[1] != staff_id
            }
            for key in [key for key in self.booking_assignments if key[1] == staff_id and key[2] == day]:
                del self.booking_assignments[key]
            for booking_id in team_bookings:
                self.booking_assignments[(booking_id, staff_id, day)] = {
                    "bookingId": booking_id,
                    "staffId": staff_id,
                    "teamId": team_id,
                    "date": day.isoformat(),
                }
        elif mutation.kind == REMOVE:
            staff_id, day = mutation.payload["staffId"], mutation.date
            self.team_assignments.pop((staff_id, day), None)
            for key in [key for key in self.booking_assignments if key[1] == staff_id and key[2] == day]:
                del self.booking_assignments[key]
        elif mutation.kind == MOVE:
            booking_id = mutation.payload["bookingId"]
            old_day = parse_assignment_date(mutation.payload["oldDate"])
            for key in [key for key in self.booking_assignments if key[0] == booking_id and key[2] == old_day]:
                del self.booking_assignments[key]
            for staff_id in mutation.expected or ():
                self._link_locally(mutation, staff_id)
        mutation.advance(MutationState.OPTIMISTICALLY_APPLIED)
        self._emit_change()

    async def submit(self, mutation: PendingMutation) -> Dict[str, Any]:
        mutation.advance(MutationState.SUBMITTED)
        try:
            result = await self.backend.dispatch(mutation.operation, mutation.payload)
        except BackendError as exc:
            mutation.error = str(exc)
            return {"success": False, "error": mutation.error}
        mutation.result = result
        if result.get("error"):
            mutation.error = result["error"]
        return result

    async def verify(self, mutation: PendingMutation) -> bool:
        if mutation.write_failed:
            logger.info("Mutation %s write failed: %s", mutation.id, mutation.error)
            mutation.advance(MutationState.VERIFICATION_FAILED)
            await self.reconcile(f"write failed for mutation {mutation.id}")
            return False

        await asyncio.sleep(self.verify_delay)
        try:
            actual = await self._read_key(mutation)
        except BackendError as exc:
            logger.info("Mutation %s could not be verified: %s", mutation.id, exc)
            actual = _UNREADABLE
        if actual == mutation.expected:
            mutation.advance(MutationState.VERIFIED)
            return True
        logger.info(
            "Mutation %s diverged: expected %r, store has %r",
            mutation.id,
            mutation.expected,
            actual,
        )
        mutation.advance(MutationState.VERIFICATION_FAILED)
        await self.reconcile(f"verification failed for mutation {mutation.id}")
        return False

    async def reconcile(self, reason: str = "refresh") -> bool:
        """Replace the cached scope with the store's current contents.

        Reads may finish out of order; a read issued before one that has
        already been applied is discarded.
        """
        fetch = next(self._fetches)
        try:
            result = await self.backend.dispatch("get_assignments_in_range", self.scope.as_payload())
        except BackendError as exc:
            result = {"success": False, "error": str(exc)}
        if fetch < self._applied_fetch:
            logger.debug("Dropped re-fetch %s (%s); %s is newer", fetch, reason, self._applied_fetch)
            return True
        if not result.get("success"):
            return self._reconcile_failed(reason, result.get("error") or "unknown error")
        self._applied_fetch = fetch
        self._replace(result.get("data") or {})
        self.reconcile_count += 1
        logger.debug("Reconciled %s..%s (%s)", self.scope.start, self.scope.end, reason)
        self._emit_change()
        return True

    async def load(self) -> bool:
        return await self.reconcile("initial load")

    # -- user mutations ------------------------------------------------------

    async def place(self, staff_id: str, team_id: str, assignment_date) -> PendingMutation:
        day = self._in_scope(assignment_date)
        mutation = self._new_mutation(
            PLACE,
            "assign_staff_to_team",
            {"staffId": staff_id, "teamId": team_id, "date": day.isoformat()},
            day,
            ("staff", staff_id, day.isoformat()),
            team_id,
        )
        return self._start(mutation)

    async def remove(self, staff_id: str, assignment_date) -> PendingMutation:
        day = self._in_scope(assignment_date)
        mutation = self._new_mutation(
            REMOVE,
            "remove_staff_assignment",
            {"staffId": staff_id, "date": day.isoformat()},
            day,
            ("staff", staff_id, day.isoformat()),
            None,
        )
        return self._start(mutation)

    async def move(
        self,
        booking_id: str,
        old_team_id: str,
        new_team_id: str,
        old_date,
        new_date,
        *,
        strategy: Optional[str] = None,
        alternative_staff: Optional[List[str]] = None,
    ) -> PendingMutation:
        old_day = parse_assignment_date(old_date)
        new_day = parse_assignment_date(new_date)
        if not (self.scope.contains(old_day) or self.scope.contains(new_day)):
            raise OutOfScopeError(
                f"Neither {old_day.isoformat()} nor {new_day.isoformat()} is inside {self.scope.start}..{self.scope.end}"
            )
        payload: Dict[str, Any] = {
            "bookingId": booking_id,
            "oldTeamId": old_team_id,
            "newTeamId": new_team_id,
            "oldDate": old_day.isoformat(),
            "newDate": new_day.isoformat(),
        }
        if strategy:
            payload["strategy"] = strategy
        if alternative_staff:
            payload["alternativeStaff"] = list(alternative_staff)
        if not self.scope.contains(new_day):
            # Only the departure is visible here; the booking leaves the day empty.
            verify_day, expected = old_day, frozenset()
        elif not self.scope.contains(old_day):
            # Who follows is only known once the store has answered.
            verify_day, expected = new_day, None
        else:
            # Staff follow the booking only where the cache already shows a destination placement.
            followers = {
                key[1]
                for key in self.booking_assignments
                if key[0] == booking_id and key[2] == old_day
                and self.team_for(key[1], new_day) == new_team_id
            }
            followers.update(
                staff_id for staff_id in (alternative_staff or []) if self.team_for(staff_id, new_day) == new_team_id
            )
            verify_day, expected = new_day, frozenset(followers)
        mutation = self._new_mutation(
            MOVE,
            "handle_booking_move",
            payload,
            verify_day,
            ("booking", booking_id, verify_day.isoformat()),
            expected,
        )
        return self._start(mutation)

    async def drain(self) -> None:
        """Wait for every background write, verification and re-fetch to finish."""
        while True:
            # Let queued feed callbacks spawn their re-fetches first.
            await asyncio.sleep(0)
            if not self._tasks:
                return
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- reads ---------------------------------------------------------------

    def team_for(self, staff_id: str, assignment_date) -> Optional[str]:
        record = self.team_assignments.get((staff_id, parse_assignment_date(assignment_date)))
        return record["teamId"] if record else None

    def staff_on_booking(self, booking_id: str, assignment_date) -> FrozenSet[str]:
        day = parse_assignment_date(assignment_date)
        return frozenset(key[1] for key in self.booking_assignments if key[0] == booking_id and key[2] == day)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "startDate": self.scope.start.isoformat(),
            "endDate": self.scope.end.isoformat(),
            "teamAssignments": [
                {key: value for key, value in record.items() if key in ("staffId", "teamId", "date")}
                for _, record in sorted(self.team_assignments.items(), key=lambda item: (item[0][1], item[0][0]))
            ],
            "bookingAssignments": [
                {key: value for key, value in record.items() if key in ("bookingId", "staffId", "teamId", "date")}
                for _, record in sorted(
                    self.booking_assignments.items(), key=lambda item: (item[0][2], item[0][0], item[0][1])
                )
            ],
        }

    # -- internals -----------------------------------------------------------

    def _in_scope(self, value) -> datetime.date:
        day = parse_assignment_date(value)
        if not self.scope.contains(day):
            raise OutOfScopeError(f"{day.isoformat()} is outside {self.scope.start}..{self.scope.end}")
        return day

    def _new_mutation(
        self,
        kind: str,
        operation: str,
        payload: Dict[str, Any],
        day: datetime.date,
        key: Tuple[str, ...],
        expected: Any,
    ) -> PendingMutation:
        return PendingMutation(
            id=next(self._ids),
            kind=kind,
            operation=operation,
            payload=payload,
            date=day,
            key=key,
            expected=expected,
        )

    def _start(self, mutation: PendingMutation) -> PendingMutation:
        self.mutations.append(mutation)
        self.apply_optimistic(mutation)
        self._spawn(self._run, mutation)
        return mutation

    async def _run(self, mutation: PendingMutation) -> None:
        await self.submit(mutation)
        if mutation.kind == MOVE and mutation.expected is None and not mutation.write_failed:
            self._apply_move_result(mutation)
        await self.verify(mutation)
        mutation.advance(MutationState.IDLE)

    def _apply_move_result(self, mutation: PendingMutation) -> None:
        data = (mutation.result or {}).get("data") or {}
        mutation.expected = frozenset(data.get("relinkedStaff", [])) | frozenset(data.get("substitutions", []))
        for staff_id in mutation.expected:
            self._link_locally(mutation, staff_id)
        self._emit_change()

    def _link_locally(self, mutation: PendingMutation, staff_id: str) -> None:
        booking_id = mutation.payload["bookingId"]
        self.booking_assignments[(booking_id, staff_id, mutation.date)] = {
            "bookingId": booking_id,
            "staffId": staff_id,
            "teamId": mutation.payload["newTeamId"],
            "date": mutation.date.isoformat(),
        }

    def _spawn(self, func, *args) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(func(*args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _read_key(self, mutation: PendingMutation) -> Any:
        day = mutation.date.isoformat()
        result = await self.backend.dispatch("get_assignments_in_range", {"startDate": day, "endDate": day})
        if not result.get("success"):
            raise BackendError(result.get("error") or "read failed")
        data = result.get("data") or {}
        if mutation.kind == MOVE:
            booking_id = mutation.payload["bookingId"]
            return frozenset(
                row["staffId"] for row in data.get("bookingAssignments", []) if row["bookingId"] == booking_id
            )
        staff_id = mutation.payload["staffId"]
        for row in data.get("teamAssignments", []):
            if row["staffId"] == staff_id:
                return row["teamId"]
        return None

    def _replace(self, data: Dict[str, Any]) -> None:
        team_assignments: Dict[Tuple[str, datetime.date], Dict[str, Any]] = {}
        for row in data.get("teamAssignments", []):
            team_assignments[(row["staffId"], parse_assignment_date(row["date"]))] = dict(row)
        booking_assignments: Dict[Tuple[str, str, datetime.date], Dict[str, Any]] = {}
        for row in data.get("bookingAssignments", []):
            key = (row["bookingId"], row["staffId"], parse_assignment_date(row["date"]))
            booking_assignments[key] = dict(row)
        self.team_assignments = team_assignments
        self.booking_assignments = booking_assignments
        self.stale = False

    def _reconcile_failed(self, reason: str, error: str) -> bool:
        message = f"Could not refresh assignments for {self.scope.start}..{self.scope.end}: {error}"
        logger.warning("%s (%s)", message, reason)
        self.stale = True
        self.warnings.append(message)
        if self.on_warning is not None:
            self.on_warning(message)
        return False

    def _emit_change(self) -> None:
        if self.on_change is not None:
            self.on_change(self.snapshot())


_UNREADABLE = object()
