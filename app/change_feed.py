from __future__ import annotations

import datetime
import itertools
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import event

from database import BOOKING_ASSIGNMENTS_TABLE, TEAM_ASSIGNMENTS_TABLE, parse_assignment_date
from logger import get_logger

logger = get_logger("change_feed")

PENDING_CHANGES_KEY = "pending_assignment_changes"
CHANGE_EVENTS = ("INSERT", "UPDATE", "DELETE")
ASSIGNMENT_TABLES: FrozenSet[str] = frozenset({TEAM_ASSIGNMENTS_TABLE, BOOKING_ASSIGNMENTS_TABLE})


@dataclass(frozen=True)
class ChangeNotification:
    """A committed row change, carrying enough identity for logging."""

    table: str
    event: str
    date: datetime.date
    staff_id: Optional[str] = None
    team_id: Optional[str] = None
    booking_id: Optional[str] = None
    previous_team_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "table": self.table,
            "event": self.event,
            "date": self.date.isoformat(),
        }
        optional = (
            ("staffId", self.staff_id),
            ("teamId", self.team_id),
            ("bookingId", self.booking_id),
            ("previousTeamId", self.previous_team_id),
        )
        for key, value in optional:
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ChangeNotification":
        return cls(
            table=payload["table"],
            event=payload.get("event", "UPDATE"),
            date=parse_assignment_date(payload["date"]),
            staff_id=payload.get("staffId"),
            team_id=payload.get("teamId"),
            booking_id=payload.get("bookingId"),
            previous_team_id=payload.get("previousTeamId"),
        )


@dataclass(frozen=True)
class ChangeFilter:
    tables: FrozenSet[str]
    start: datetime.date
    end: datetime.date

    def matches(self, notification: ChangeNotification) -> bool:
        return notification.table in self.tables and self.start <= notification.date <= self.end


class Subscription:
    def __init__(
        self,
        feed: "ChangeFeed",
        subscription_id: int,
        change_filter: ChangeFilter,
        callback: Callable[[ChangeNotification], Any],
    ) -> None:
        self.feed = feed
        self.id = subscription_id
        self.filter = change_filter
        self.callback = callback

    @property
    def active(self) -> bool:
        return self.feed.has_subscription(self.id)

    def close(self) -> None:
        self.feed.unsubscribe(self)


class ChangeFeed:
    """Push channel for committed assignment changes, filtered by table and date range."""

    def __init__(self) -> None:
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._bound: List[Any] = []

    def subscribe(
        self,
        callback: Callable[[ChangeNotification], Any],
        *,
        start: datetime.date,
        end: Optional[datetime.date] = None,
        tables: Optional[Iterable[str]] = None,
    ) -> Subscription:
        start_day = parse_assignment_date(start)
        end_day = parse_assignment_date(end) if end is not None else start_day
        if end_day < start_day:
            raise ValueError("Subscription end date must not be before its start date.")
        change_filter = ChangeFilter(
            tables=frozenset(tables) if tables else ASSIGNMENT_TABLES,
            start=start_day,
            end=end_day,
        )
        with self._lock:
            subscription = Subscription(self, next(self._ids), change_filter, callback)
            self._subscriptions[subscription.id] = subscription
        logger.debug(
            "Subscription %s on %s from %s to %s",
            subscription.id,
            sorted(change_filter.tables),
            start_day,
            end_day,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def has_subscription(self, subscription_id: int) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def publish(self, notification: ChangeNotification) -> int:
        """Deliver one notification to every matching subscriber; returns the delivery count."""
        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.filter.matches(notification)]
        delivered = 0
        for subscription in targets:
            try:
                subscription.callback(notification)
            except Exception:  # noqa: BLE001
                # One broken viewer must not starve the others.
                logger.exception("Subscriber %s failed to handle %s", subscription.id, notification.to_dict())
                continue
            delivered += 1
        return delivered

    def publish_all(self, notifications: Iterable[ChangeNotification]) -> int:
        return sum(self.publish(notification) for notification in notifications)

    def bind(self, session_factory) -> None:
        """Publish changes recorded on sessions from this factory once they commit."""
        if any(bound is session_factory for bound in self._bound):
            return
        event.listen(session_factory, "after_commit", self._after_commit)
        event.listen(session_factory, "after_soft_rollback", self._after_rollback)
        self._bound.append(session_factory)

    def unbind(self, session_factory) -> None:
        if not any(bound is session_factory for bound in self._bound):
            return
        event.remove(session_factory, "after_commit", self._after_commit)
        event.remove(session_factory, "after_soft_rollback", self._after_rollback)
        self._bound = [bound for bound in self._bound if bound is not session_factory]

    def _after_commit(self, session) -> None:
        changes = session.info.pop(PENDING_CHANGES_KEY, [])
        if changes:
            logger.info("Publishing %s committed assignment change(s)", len(changes))
            self.publish_all(changes)

    def _after_rollback(self, session, previous_transaction=None) -> None:
        dropped = session.info.pop(PENDING_CHANGES_KEY, [])
        if dropped:
            logger.info("Discarded %s change(s) from a rolled back transaction", len(dropped))


def record_change(
    session,
    table: str,
    event_name: str,
    assignment_date: datetime.date,
    *,
    staff_id: Optional[str] = None,
    team_id: Optional[str] = None,
    booking_id: Optional[str] = None,
    previous_team_id: Optional[str] = None,
) -> ChangeNotification:
    """Stage a change on the session; it is published only if the session commits."""
    if event_name not in CHANGE_EVENTS:
        raise ValueError(f"Unsupported change event '{event_name}'.")
    notification = ChangeNotification(
        table=table,
        event=event_name,
        date=assignment_date,
        staff_id=staff_id,
        team_id=team_id,
        booking_id=booking_id,
        previous_team_id=previous_team_id,
    )
    session.info.setdefault(PENDING_CHANGES_KEY, []).append(notification)
    return notification


def pending_changes(session) -> List[ChangeNotification]:
    return list(session.info.get(PENDING_CHANGES_KEY, []))


change_feed = ChangeFeed()
