from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.websockets import WebSocketDisconnect

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import api  # noqa: E402
from change_feed import ChangeFeed  # noqa: E402
from database import Base  # noqa: E402
from dispatcher import CommandDispatcher  # noqa: E402

DAY = "2025-06-01"


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    feed = ChangeFeed()
    dispatcher = CommandDispatcher(Session, feed=feed)
    api.app.dependency_overrides[api.get_dispatcher] = lambda: dispatcher
    api.app.dependency_overrides[api.get_change_feed] = lambda: feed
    try:
        yield TestClient(api.app)
    finally:
        api.app.dependency_overrides.clear()
        feed.unbind(Session)


def _command(client, operation, data):
    response = client.post("/api/v1/staff-management", json={"operation": operation, "data": data})
    assert response.status_code == 200
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_staff_management_round_trip(client):
    placed = _command(client, "assign_staff_to_team", {"staffId": "S1", "teamId": "T1", "date": DAY})
    assert placed["success"] is True
    assert placed["data"]["teamId"] == "T1"

    response = client.get("/api/v1/assignments", params={"start": DAY})
    assert response.status_code == 200
    body = response.json()
    assert body["startDate"] == body["endDate"] == DAY
    assert [(row["staffId"], row["teamId"]) for row in body["teamAssignments"]] == [("S1", "T1")]


def test_domain_failures_come_back_as_envelopes(client):
    unknown = _command(client, "clone_staff", {})
    assert unknown == {"success": False, "error": "Unknown operation: clone_staff"}

    refused = _command(
        client,
        "assign_staff_to_booking",
        {"bookingId": "B1", "staffId": "S1", "teamId": "T1", "date": DAY},
    )
    assert refused["success"] is False
    assert "not assigned to team T1" in refused["error"]


def test_request_without_operation_is_rejected(client):
    response = client.post("/api/v1/staff-management", json={"data": {}})
    assert response.status_code == 422


@pytest.mark.parametrize(
    "params",
    [{"start": "yesterday"}, {"start": DAY, "end": "2025-05-31"}],
)
def test_assignment_range_validation(client, params):
    assert client.get("/api/v1/assignments", params=params).status_code == 400


def test_change_stream_pushes_committed_changes(client):
    with client.websocket_connect(f"/api/v1/changes?start={DAY}&table=staff_assignments") as websocket:
        ack = websocket.receive_json()
        assert ack["type"] == "subscribed"
        assert ack["tables"] == ["staff_assignments"]

        _command(client, "assign_staff_to_team", {"staffId": "S1", "teamId": "T1", "date": DAY})
        message = websocket.receive_json()

    assert message["type"] == "change"
    assert message["table"] == "staff_assignments"
    assert message["event"] == "INSERT"
    assert (message["staffId"], message["teamId"], message["date"]) == ("S1", "T1", DAY)


def test_change_stream_rejects_bad_range(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/api/v1/changes?start=someday") as websocket:
            websocket.receive_json()
