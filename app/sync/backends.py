from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import requests

from errors import BackendError
from logger import get_logger

logger = get_logger("client_sync.backends")

STAFF_MANAGEMENT_PATH = "/api/v1/staff-management"
DEFAULT_TIMEOUT_SECONDS = 10


class DispatcherBackend:
    """Talks to a ``CommandDispatcher`` in the same process."""

    def __init__(self, dispatcher, *, actor: Optional[str] = None) -> None:
        self.dispatcher = dispatcher
        self.actor = actor

    async def dispatch(self, operation: str, data: Dict[str, Any]) -> Dict[str, Any]:
        # SQLite sessions stay on the loop thread.
        return self.dispatcher.dispatch(operation, data, actor=self.actor)


class HttpBackend:
    """Posts commands to a running API instance."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        actor: Optional[str] = None,
    ) -> None:
        self.url = base_url.rstrip("/") + STAFF_MANAGEMENT_PATH
        self.timeout = timeout
        self.session = session or requests.Session()
        self.actor = actor

    def _post(self, operation: str, data: Dict[str, Any]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"operation": operation, "data": data}
        if self.actor:
            body["actor"] = self.actor
        response = self.session.post(self.url, json=body, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    async def dispatch(self, operation: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(self._post, operation, data)
        except requests.RequestException as exc:
            logger.warning("Request for %s failed: %s", operation, exc)
            raise BackendError(f"{operation} failed: {exc}") from exc
        except ValueError as exc:
            raise BackendError(f"{operation} returned an unreadable response: {exc}") from exc
