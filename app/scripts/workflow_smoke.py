from __future__ import annotations

import argparse
import datetime
import sys
from pathlib import Path
from typing import Dict, List

from sqlalchemy import delete

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import CalendarEvent, SessionLocal, init_database  # noqa: E402
from dispatcher import CommandDispatcher  # noqa: E402

SMOKE_STAFF = [
    {"id": "smoke-s1", "name": "Alva Berg", "color": "#3b82f6"},
    {"id": "smoke-s2", "name": "Nils Ek", "color": "#10b981"},
    {"id": "smoke-s3", "name": "Tove Lind", "color": "#f59e0b"},
]
SMOKE_BOOKING = "smoke-booking-1"
SOURCE_TEAM = "team-1"
DEST_TEAM = "team-2"


def _next_monday(today: datetime.date | None = None) -> datetime.date:
    base = today or datetime.date.today()
    delta = (7 - base.weekday()) % 7 or 7
    return base + datetime.timedelta(days=delta)


def _seed_calendar(session_factory, day: datetime.date) -> None:
    with session_factory() as session, session.begin():
        session.execute(delete(CalendarEvent).where(CalendarEvent.booking_id == SMOKE_BOOKING))
        start = datetime.datetime.combine(day, datetime.time(8, 0))
        session.add(
            CalendarEvent(
                booking_id=SMOKE_BOOKING,
                booking_number="SMOKE-1",
                resource_id=SOURCE_TEAM,
                title="Smoke test event",
                event_type="event",
                start_time=start,
                end_time=start + datetime.timedelta(hours=8),
            )
        )


def _check(result: Dict[str, object], label: str, errors: List[str], *, expect_success: bool = True) -> None:
    if bool(result.get("success")) != expect_success:
        errors.append(f"{label}: unexpected result {result}")
    else:
        print(f"[workflow] {label}: ok")


def run_smoke(session_factory, day: datetime.date, *, actor: str = "workflow_smoke") -> List[str]:
    """Seed staff and a booking, place the staff, then move the booking a day ahead.

    Returns the list of failed checks; an empty list means the run passed.
    """
    dispatcher = CommandDispatcher(session_factory, actor=actor)
    next_day = day + datetime.timedelta(days=1)
    errors: List[str] = []

    for member in SMOKE_STAFF:
        _check(dispatcher.dispatch("sync_staff_member", member), f"sync {member['id']}", errors)
    _seed_calendar(session_factory, day)

    for member in SMOKE_STAFF[:2]:
        _check(
            dispatcher.dispatch(
                "assign_staff_to_team",
                {"staffId": member["id"], "teamId": SOURCE_TEAM, "date": day.isoformat()},
            ),
            f"place {member['id']} on {SOURCE_TEAM}",
            errors,
        )
    _check(
        dispatcher.dispatch(
            "assign_staff_to_team",
            {"staffId": SMOKE_STAFF[0]["id"], "teamId": DEST_TEAM, "date": next_day.isoformat()},
        ),
        f"place {SMOKE_STAFF[0]['id']} on {DEST_TEAM}",
        errors,
    )

    move = dispatcher.dispatch(
        "handle_booking_move",
        {
            "bookingId": SMOKE_BOOKING,
            "oldTeamId": SOURCE_TEAM,
            "newTeamId": DEST_TEAM,
            "oldDate": day.isoformat(),
            "newDate": next_day.isoformat(),
        },
    )
    _check(move, "move with one unplaced staff member reports a conflict", errors, expect_success=False)
    print(f"[workflow] {move.get('data', {}).get('message')}")
    conflicts = [conflict["staffId"] for conflict in move.get("conflicts", [])]
    if conflicts != [SMOKE_STAFF[1]["id"]]:
        errors.append(f"expected a conflict for {SMOKE_STAFF[1]['id']}, got {conflicts}")

    validation = dispatcher.dispatch("validate_booking_links", {"startDate": day.isoformat(), "endDate": next_day.isoformat()})
    if not validation.get("data", {}).get("valid"):
        errors.append(f"orphaned booking links: {validation.get('data')}")
    else:
        print("[workflow] booking links consistent with team placements")

    for member in SMOKE_STAFF[:2]:
        for target in (day, next_day):
            dispatcher.dispatch("remove_staff_assignment", {"staffId": member["id"], "date": target.isoformat()})
    return errors


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run an end-to-end smoke test that seeds staff and a booking, places staff on teams, "
            "moves the booking and checks the booking links."
        )
    )
    parser.add_argument("--date", help="ISO date (YYYY-MM-DD) to seed. Defaults to next Monday.")
    parser.add_argument("--actor", default="workflow_smoke", help="Audit trail actor name.")
    return parser.parse_args()


def main() -> None:
    init_database()
    args = parse_args()
    if args.date:
        try:
            day = datetime.date.fromisoformat(args.date)
        except ValueError as exc:
            raise SystemExit(f"Invalid --date value: {exc}") from exc
    else:
        day = _next_monday()
    print(f"[workflow] Target date: {day.isoformat()}")
    errors = run_smoke(SessionLocal, day, actor=args.actor)
    if errors:
        for err in errors:
            print(f"[workflow][error] {err}")
        raise SystemExit(1)
    print("[workflow] Smoke run passed.")


if __name__ == "__main__":
    main()
