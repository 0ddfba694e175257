"""Requesting: the bootstrap concept.

Turns an external call into a ``request`` action and lets a later ``respond``
action wake the caller. The pending table is single-writer: every operation
runs on the event loop that owns it, so create / resolve / sweep / delete
never interleave on the same id.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4
import asyncio, logging

from engine import Concept
from errors import RequestNotPendingError, RequestTimeoutError

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    WAITING = "waiting"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"


@dataclass
class PendingRequest:
    id: str
    input: Dict[str, Any]
    future: asyncio.Future
    deadline: float
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: RequestState = RequestState.WAITING
    resolution: Optional[Dict[str, Any]] = None
    awaited: bool = False


class PendingRequestTable:
    def __init__(self, timeout: float):
        self.timeout = timeout
        self._entries: Dict[str, PendingRequest] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _owner(self) -> asyncio.AbstractEventLoop:
        loop = asyncio.get_running_loop()
        if self._loop is None or self._loop.is_closed():
            self._loop = loop
        elif loop is not self._loop:
            raise RuntimeError("pending request table used from a foreign event loop")
        return loop

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def get(self, request_id: str) -> Optional[PendingRequest]:
        return self._entries.get(request_id)

    def create(self, inputs: Dict[str, Any]) -> PendingRequest:
        loop = self._owner()
        entry = PendingRequest(
            id=str(uuid4()), input=dict(inputs), future=loop.create_future(),
            deadline=loop.time() + self.timeout,
        )
        self._entries[entry.id] = entry
        return entry

    def is_waiting(self, request_id: Any) -> bool:
        entry = self._entries.get(request_id) if isinstance(request_id, str) else None
        return entry is not None and entry.state is RequestState.WAITING

    def resolve(self, request_id: str, payload: Dict[str, Any]) -> bool:
        """First resolution wins; later ones are logged and dropped."""
        self._owner()
        entry = self._entries.get(request_id)
        if entry is None:
            logger.warning("No pending request found for %s; response dropped", request_id, extra={"request_id": request_id})
            return False
        if entry.state is not RequestState.WAITING or entry.future.done():
            logger.warning(
                "Request %s already %s; duplicate response ignored", request_id, entry.state.value,
                extra={"request_id": request_id},
            )
            return False
        entry.state = RequestState.RESOLVED
        entry.resolution = dict(payload)
        entry.future.set_result(entry.resolution)
        return True

    async def wait(self, request_id: str) -> Dict[str, Any]:
        """Suspend until the request is resolved or the timeout elapses.

        The entry is released whichever way this ends.
        """
        self._owner()
        entry = self._entries.get(request_id)
        if entry is None:
            raise RequestNotPendingError(request_id)
        if entry.awaited:
            raise RequestNotPendingError(request_id, f"Request {request_id} already has a waiter")
        entry.awaited = True
        try:
            return await asyncio.wait_for(asyncio.shield(entry.future), self.timeout)
        except asyncio.TimeoutError:
            # a response recorded while the timer fired still wins
            if entry.future.done() and not entry.future.cancelled():
                return entry.future.result()
            self._expire(entry)
            raise RequestTimeoutError(request_id, self.timeout) from None
        finally:
            self._entries.pop(request_id, None)

    def sweep(self) -> int:
        """Drop entries nobody awaited before their deadline."""
        now = self._owner().time()
        stale = [e for e in self._entries.values() if not e.awaited and now >= e.deadline]
        for entry in stale:
            if entry.state is RequestState.WAITING:
                self._expire(entry)
            del self._entries[entry.id]
        return len(stale)

    def _expire(self, entry: PendingRequest) -> None:
        entry.state = RequestState.TIMED_OUT
        if not entry.future.done():
            entry.future.cancel()
        logger.warning(
            "Request %s timed out after %dms", entry.id, int(self.timeout * 1000),
            extra={"request_id": entry.id},
        )


class RequestingConcept(Concept):
    actions = ("request", "respond")
    queries = ("_awaitResponse", "_getRequest")

    def __init__(self, name: str = "Requesting", timeout: float = 10.0, save_responses: bool = True):
        super().__init__(name)
        self.pending = PendingRequestTable(timeout)
        self.save_responses = save_responses
        self._requests: Dict[str, Dict[str, Any]] = {}
        logger.info("Requesting concept initialized with a timeout of %dms", int(timeout * 1000))

    def open(self, inputs: Dict[str, Any]) -> str:
        """Allocate an id and its WAITING entry in one step."""
        entry = self.pending.create(inputs)
        if self.save_responses:
            self._requests[entry.id] = {"input": entry.input, "createdAt": entry.created_at}
        return entry.id

    def is_waiting(self, request_id: Any) -> bool:
        return self.pending.is_waiting(request_id)

    async def await_response(self, request_id: str) -> Dict[str, Any]:
        return await self.pending.wait(request_id)

    # actions

    async def request(self, path: str, **fields) -> Dict[str, Any]:
        return {"request": self.open({**fields, "path": path})}

    async def respond(self, request: str, **response) -> Dict[str, Any]:
        self.pending.resolve(request, response)
        if self.save_responses and request in self._requests:
            self._requests[request].setdefault("response", dict(response))
        return {"request": request}

    # queries

    async def _awaitResponse(self, request: str) -> Dict[str, Any]:
        return {"response": await self.pending.wait(request)}

    async def _getRequest(self, request: str) -> Dict[str, Any]:
        doc = self._requests.get(request)
        return dict(doc) if doc else {}
