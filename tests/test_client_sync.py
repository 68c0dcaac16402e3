from __future__ import annotations

import asyncio
import datetime
import sys
import unittest
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from change_feed import ChangeFeed, ChangeNotification  # noqa: E402
from database import TEAM_ASSIGNMENTS_TABLE, Base, CalendarEvent, get_team_assignment  # noqa: E402
from dispatcher import CommandDispatcher  # noqa: E402
from errors import BackendError, InvalidTransitionError, OutOfScopeError  # noqa: E402
from sync.backends import DispatcherBackend  # noqa: E402
from sync.cache import (  # noqa: E402
    AssignmentScope,
    ClientSyncLayer,
    MutationState,
    PendingMutation,
)

DAY = datetime.date(2025, 6, 1)
NEXT_DAY = datetime.date(2025, 6, 2)
HAPPY_PATH = [
    MutationState.IDLE,
    MutationState.OPTIMISTICALLY_APPLIED,
    MutationState.SUBMITTED,
    MutationState.VERIFIED,
    MutationState.IDLE,
]


class OverwritingBackend(DispatcherBackend):
    """Lets another client overwrite every placement right after it lands."""

    async def dispatch(self, operation, data):
        result = await super().dispatch(operation, data)
        if operation == "assign_staff_to_team":
            self.dispatcher.dispatch(operation, {**data, "teamId": "T-other"})
        return result


class UnreachableBackend:
    def __init__(self) -> None:
        self.calls = []

    async def dispatch(self, operation, data):
        self.calls.append(operation)
        raise BackendError("connection refused")


class OutOfOrderBackend:
    """Range reads answer in reverse order: the first one issued lands last."""

    def __init__(self) -> None:
        self.reads = 0

    async def dispatch(self, operation, data):
        self.reads += 1
        if self.reads == 1:
            await asyncio.sleep(0.05)
            return {"success": True, "data": {"teamAssignments": [], "bookingAssignments": []}}
        placement = {"staffId": "S1", "teamId": "T1", "date": DAY.isoformat()}
        return {"success": True, "data": {"teamAssignments": [placement], "bookingAssignments": []}}


def normalized(snapshot):
    teams = sorted((row["staffId"], row["teamId"], row["date"]) for row in snapshot["teamAssignments"])
    links = sorted(
        (row["bookingId"], row["staffId"], row["teamId"], row["date"]) for row in snapshot["bookingAssignments"]
    )
    return teams, links


class ClientSyncLayerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.feed = ChangeFeed()
        self.dispatcher = CommandDispatcher(self.Session, feed=self.feed)
        self.scope = AssignmentScope(DAY, NEXT_DAY)
        with self.Session() as session, session.begin():
            start = datetime.datetime.combine(DAY, datetime.time(8, 0))
            session.add(
                CalendarEvent(
                    booking_id="B1",
                    resource_id="T1",
                    title="Gala",
                    start_time=start,
                    end_time=start + datetime.timedelta(hours=5),
                )
            )

    def tearDown(self) -> None:
        self.feed.unbind(self.Session)
        self.engine.dispose()

    async def _layer(self, backend=None, **kwargs) -> ClientSyncLayer:
        layer = ClientSyncLayer(backend or DispatcherBackend(self.dispatcher), self.scope, verify_delay=0, **kwargs)
        layer.attach(self.feed)
        await layer.load()
        return layer

    def _store_team(self, staff_id, day):
        with self.Session() as session:
            placement = get_team_assignment(session, staff_id, day)
            return placement.team_id if placement else None

    async def test_placement_is_visible_before_the_write(self) -> None:
        renders = []
        layer = await self._layer(on_change=renders.append)
        renders.clear()

        mutation = await layer.place("S1", "T1", DAY)

        self.assertEqual(layer.team_for("S1", DAY), "T1")
        self.assertEqual(mutation.state, MutationState.OPTIMISTICALLY_APPLIED)
        self.assertEqual(len(renders), 1)
        self.assertIsNone(self._store_team("S1", DAY))

        await layer.drain()

        self.assertEqual(mutation.history, HAPPY_PATH)
        self.assertEqual(self._store_team("S1", DAY), "T1")
        # The change feed re-fetch brings in the derived booking link.
        self.assertEqual(layer.staff_on_booking("B1", DAY), frozenset({"S1"}))

    async def test_failed_write_reconciles_without_waiting(self) -> None:
        layer = await self._layer()
        layer.verify_delay = 30

        mutation = await layer.place("S1", "", DAY)
        self.assertEqual(layer.team_for("S1", DAY), "")
        await asyncio.wait_for(layer.drain(), timeout=5)

        self.assertEqual(
            mutation.history,
            [
                MutationState.IDLE,
                MutationState.OPTIMISTICALLY_APPLIED,
                MutationState.SUBMITTED,
                MutationState.VERIFICATION_FAILED,
                MutationState.IDLE,
            ],
        )
        self.assertTrue(mutation.write_failed)
        self.assertIsNone(layer.team_for("S1", DAY))
        self.assertEqual(layer.warnings, [])

    async def test_overwritten_write_fails_verification_and_refetches_scope(self) -> None:
        layer = await self._layer(OverwritingBackend(self.dispatcher))

        mutation = await layer.place("S1", "T1", DAY)
        await layer.drain()

        self.assertIn(MutationState.VERIFICATION_FAILED, mutation.history)
        self.assertFalse(mutation.verified)
        self.assertEqual(layer.team_for("S1", DAY), "T-other")

    async def test_remove_is_verified_against_store(self) -> None:
        self.dispatcher.dispatch("assign_staff_to_team", {"staffId": "S1", "teamId": "T1", "date": DAY.isoformat()})
        layer = await self._layer()

        mutation = await layer.remove("S1", DAY)
        self.assertIsNone(layer.team_for("S1", DAY))
        self.assertEqual(layer.staff_on_booking("B1", DAY), frozenset())
        await layer.drain()

        self.assertEqual(mutation.history, HAPPY_PATH)
        self.assertIsNone(self._store_team("S1", DAY))

    async def test_booking_move_follows_placed_staff(self) -> None:
        for payload in (
            {"staffId": "S1", "teamId": "T1", "date": DAY.isoformat()},
            {"staffId": "S2", "teamId": "T1", "date": DAY.isoformat()},
            {"staffId": "S1", "teamId": "T2", "date": NEXT_DAY.isoformat()},
        ):
            self.dispatcher.dispatch("assign_staff_to_team", payload)
        layer = await self._layer()
        self.assertEqual(layer.staff_on_booking("B1", DAY), frozenset({"S1", "S2"}))

        mutation = await layer.move("B1", "T1", "T2", DAY, NEXT_DAY)
        self.assertEqual(layer.staff_on_booking("B1", DAY), frozenset())
        self.assertEqual(layer.staff_on_booking("B1", NEXT_DAY), frozenset({"S1"}))
        await layer.drain()

        self.assertTrue(mutation.verified)
        self.assertFalse(mutation.result["success"])
        self.assertEqual([c["staffId"] for c in mutation.result["conflicts"]], ["S2"])

    def _seed_move(self) -> None:
        for payload in (
            {"staffId": "S1", "teamId": "T1", "date": DAY.isoformat()},
            {"staffId": "S2", "teamId": "T1", "date": DAY.isoformat()},
            {"staffId": "S1", "teamId": "T2", "date": NEXT_DAY.isoformat()},
        ):
            self.dispatcher.dispatch("assign_staff_to_team", payload)

    def _store_links(self, booking_id, day):
        data = self.dispatcher.dispatch(
            "get_assignments_in_range", {"startDate": day.isoformat(), "endDate": day.isoformat()}
        )["data"]
        return frozenset(row["staffId"] for row in data["bookingAssignments"] if row["bookingId"] == booking_id)

    async def test_day_view_moves_booking_to_next_day(self) -> None:
        self._seed_move()
        layer = ClientSyncLayer(DispatcherBackend(self.dispatcher), AssignmentScope.day(DAY), verify_delay=0)
        layer.attach(self.feed)
        await layer.load()

        mutation = await layer.move("B1", "T1", "T2", DAY, NEXT_DAY)
        self.assertEqual(layer.staff_on_booking("B1", DAY), frozenset())
        await layer.drain()

        self.assertEqual(mutation.history, HAPPY_PATH)
        self.assertEqual([c["staffId"] for c in mutation.result["conflicts"]], ["S2"])
        self.assertEqual(self._store_links("B1", DAY), frozenset())
        self.assertEqual(self._store_links("B1", NEXT_DAY), frozenset({"S1"}))

    async def test_destination_day_view_learns_followers_from_the_store(self) -> None:
        self._seed_move()
        layer = ClientSyncLayer(DispatcherBackend(self.dispatcher), AssignmentScope.day(NEXT_DAY), verify_delay=0)
        await layer.load()

        mutation = await layer.move("B1", "T1", "T2", DAY, NEXT_DAY)
        await layer.drain()

        self.assertEqual(mutation.history, HAPPY_PATH)
        self.assertEqual(mutation.expected, frozenset({"S1"}))
        self.assertEqual(layer.staff_on_booking("B1", NEXT_DAY), frozenset({"S1"}))

    async def test_late_stale_refetch_does_not_overwrite_newer_one(self) -> None:
        layer = ClientSyncLayer(OutOfOrderBackend(), self.scope, verify_delay=0)

        slow = asyncio.ensure_future(layer.reconcile("initial load"))
        await asyncio.sleep(0)
        self.assertTrue(await layer.reconcile("staff_assignments INSERT"))
        self.assertEqual(layer.team_for("S1", DAY), "T1")

        self.assertTrue(await slow)
        self.assertEqual(layer.team_for("S1", DAY), "T1")
        self.assertEqual(layer.reconcile_count, 1)
        self.assertFalse(layer.stale)

    async def test_other_clients_changes_trigger_refetch(self) -> None:
        layer = await self._layer()
        before = layer.reconcile_count

        self.dispatcher.dispatch("assign_staff_to_team", {"staffId": "S3", "teamId": "T1", "date": DAY.isoformat()})
        await layer.drain()

        self.assertGreater(layer.reconcile_count, before)
        self.assertEqual(layer.team_for("S3", DAY), "T1")

    async def test_changes_outside_scope_are_ignored(self) -> None:
        layer = await self._layer()
        before = layer.reconcile_count

        self.dispatcher.dispatch("assign_staff_to_team", {"staffId": "S3", "teamId": "T1", "date": "2025-07-01"})
        layer.notify({"table": "calendar_events", "event": "UPDATE", "date": DAY.isoformat()})
        await layer.drain()

        self.assertEqual(layer.reconcile_count, before)

    async def test_remote_notification_payload_triggers_refetch(self) -> None:
        layer = ClientSyncLayer(DispatcherBackend(self.dispatcher), self.scope, verify_delay=0)
        layer.attach(ChangeFeed())
        await layer.load()
        self.dispatcher.dispatch("assign_staff_to_team", {"staffId": "S3", "teamId": "T1", "date": DAY.isoformat()})
        self.assertIsNone(layer.team_for("S3", DAY))

        layer.notify({"table": TEAM_ASSIGNMENTS_TABLE, "event": "INSERT", "date": DAY.isoformat(), "staffId": "S3"})
        await layer.drain()

        self.assertEqual(layer.team_for("S3", DAY), "T1")

    async def test_two_viewers_converge_on_the_store(self) -> None:
        viewer_a = await self._layer()
        viewer_b = await self._layer()

        await viewer_a.place("S1", "T1", DAY)
        await viewer_a.place("S2", "T1", DAY)
        await viewer_a.place("S2", "T2", NEXT_DAY)
        await viewer_a.move("B1", "T1", "T2", DAY, NEXT_DAY, strategy="forceMove")
        await viewer_a.remove("S1", DAY)
        await viewer_a.drain()
        await viewer_b.drain()

        fresh = self.dispatcher.dispatch(
            "get_assignments_in_range",
            {"startDate": DAY.isoformat(), "endDate": NEXT_DAY.isoformat()},
        )["data"]
        self.assertEqual(normalized(viewer_a.snapshot()), normalized(fresh))
        self.assertEqual(normalized(viewer_b.snapshot()), normalized(fresh))
        self.assertFalse(viewer_b.stale)

    async def test_unreachable_store_surfaces_a_warning(self) -> None:
        warnings = []
        backend = UnreachableBackend()
        layer = ClientSyncLayer(backend, self.scope, verify_delay=0, on_warning=warnings.append)

        self.assertFalse(await layer.load())
        mutation = await layer.place("S1", "T1", DAY)
        await layer.drain()

        self.assertTrue(mutation.write_failed)
        self.assertEqual(mutation.state, MutationState.IDLE)
        self.assertTrue(layer.stale)
        self.assertEqual(len(warnings), 2)
        self.assertEqual(warnings, layer.warnings)
        self.assertIn("connection refused", warnings[-1])
        self.assertEqual(backend.calls, ["get_assignments_in_range", "assign_staff_to_team", "get_assignments_in_range"])

    async def test_mutations_outside_scope_are_refused(self) -> None:
        layer = await self._layer()

        with self.assertRaises(OutOfScopeError):
            await layer.place("S1", "T1", "2025-06-10")
        with self.assertRaises(OutOfScopeError):
            await layer.move("B1", "T1", "T2", "2025-06-10", "2025-06-11")
        self.assertEqual(layer.mutations, [])


class ClientSyncPlainTests(unittest.TestCase):
    def test_week_scope_starts_on_monday(self) -> None:
        scope = AssignmentScope.week("2025-06-04")

        self.assertEqual((scope.start, scope.end), (datetime.date(2025, 6, 2), datetime.date(2025, 6, 8)))
        self.assertTrue(scope.contains("2025-06-08"))
        self.assertFalse(scope.contains("2025-06-09"))

    def test_mutation_rejects_skipped_states(self) -> None:
        mutation = PendingMutation(
            id=1,
            kind="place",
            operation="assign_staff_to_team",
            payload={},
            date=DAY,
            key=("staff", "S1", DAY.isoformat()),
            expected="T1",
        )

        with self.assertRaises(InvalidTransitionError):
            mutation.advance(MutationState.VERIFIED)
        mutation.advance(MutationState.OPTIMISTICALLY_APPLIED)
        with self.assertRaises(InvalidTransitionError):
            mutation.advance(MutationState.IDLE)

    def test_notification_without_event_loop_marks_cache_stale(self) -> None:
        feed = ChangeFeed()
        layer = ClientSyncLayer(UnreachableBackend(), AssignmentScope.day(DAY))
        layer.attach(feed)
        layer.stale = False

        feed.publish(ChangeNotification(table=TEAM_ASSIGNMENTS_TABLE, event="INSERT", date=DAY, staff_id="S1"))

        self.assertTrue(layer.stale)


if __name__ == "__main__":
    unittest.main()
