"""FastAPI surface for the staff assignment engine.

Commands go through ``POST /api/v1/staff-management`` as ``{operation, data}``
and come back as the dispatcher envelope. Viewers that keep a local cache
listen on ``WS /api/v1/changes`` and re-fetch their scope through
``GET /api/v1/assignments`` whenever a matching change arrives.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# Ensure absolute imports (e.g., "import database") resolve when served from the repo root.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from change_feed import ChangeFeed, ChangeNotification, change_feed  # noqa: E402
from dispatcher import CommandDispatcher  # noqa: E402
from errors import AssignmentError, status_code_for  # noqa: E402
from logger import get_logger  # noqa: E402

logger = get_logger("api")

_dispatcher: Optional[CommandDispatcher] = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    database.init_database()
    change_feed.bind(database.SessionLocal)
    yield


app = FastAPI(title="Staff Assignment API", version="0.1", lifespan=lifespan)


class StaffManagementRequest(BaseModel):
    operation: str = Field(..., min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None


def get_dispatcher() -> CommandDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = CommandDispatcher(database.SessionLocal, feed=change_feed)
    return _dispatcher


def get_change_feed() -> ChangeFeed:
    return change_feed


def _parse_day(value: str, label: str):
    try:
        return database.parse_assignment_date(value)
    except AssignmentError as exc:
        raise HTTPException(status_code=status_code_for(exc), detail=f"{label}: {exc}")


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/v1/staff-management")
def staff_management(
    request: StaffManagementRequest,
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    result = dispatcher.dispatch(request.operation, request.data, actor=request.actor)
    return JSONResponse(content=jsonable_encoder(result))


@app.get("/api/v1/assignments")
def assignments_in_range(
    start: str = Query(..., description="First day of the scope, YYYY-MM-DD"),
    end: Optional[str] = Query(None, description="Last day of the scope, defaults to start"),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    start_day = _parse_day(start, "start")
    end_day = _parse_day(end, "end") if end else start_day
    if end_day < start_day:
        raise HTTPException(status_code=400, detail="end must not be before start")
    result = dispatcher.dispatch(
        "get_assignments_in_range",
        {"startDate": start_day.isoformat(), "endDate": end_day.isoformat()},
    )
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result.get("error"))
    return JSONResponse(content=jsonable_encoder(result["data"]))


@app.websocket("/api/v1/changes")
async def assignment_changes(
    websocket: WebSocket,
    start: str = Query(...),
    end: Optional[str] = Query(None),
    table: Optional[str] = Query(None, description="Comma separated table names"),
    feed: ChangeFeed = Depends(get_change_feed),
) -> None:
    """Stream committed changes for a date range until the viewer disconnects.

    The first message acknowledges the subscription; every further message is
    one change notification.
    """
    try:
        start_day = database.parse_assignment_date(start)
        end_day = database.parse_assignment_date(end) if end else start_day
        tables = [name.strip() for name in table.split(",") if name.strip()] if table else None
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[ChangeNotification] = asyncio.Queue()
        subscription = feed.subscribe(
            lambda notification: loop.call_soon_threadsafe(queue.put_nowait, notification),
            start=start_day,
            end=end_day,
            tables=tables,
        )
    except (AssignmentError, ValueError) as exc:
        await websocket.close(code=4400, reason=str(exc))
        return

    await websocket.accept()
    await websocket.send_json(
        {
            "type": "subscribed",
            "startDate": start_day.isoformat(),
            "endDate": end_day.isoformat(),
            "tables": sorted(subscription.filter.tables),
        }
    )

    async def forward() -> None:
        while True:
            notification = await queue.get()
            await websocket.send_json({"type": "change", **notification.to_dict()})

    async def watch_disconnect() -> None:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                return

    tasks = [asyncio.create_task(forward()), asyncio.create_task(watch_disconnect())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning("Change stream for %s..%s stopped: %s", start_day, end_day, error)
    finally:
        subscription.close()
        for task in tasks:
            task.cancel()
        logger.debug("Change subscription %s closed", subscription.id)
