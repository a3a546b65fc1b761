"""Correlation store for in-flight bridge requests.

Each outgoing request gets a fresh id and an :class:`asyncio.Future` the caller
awaits.  An entry ends in exactly one of three ways (response, rejection or
timeout) and whichever happens first wins: the entry is popped from the map
before its future is settled, so every later attempt finds nothing and becomes
a silent no-op.

Deadlines are enforced twice over: a per-entry timer on the event loop, and
:meth:`CorrelationStore.sweep`, which compares against an injectable clock and
is called lazily by the bridge on every inbound frame as well as periodically
by :meth:`CorrelationStore.run_sweeper`.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.errors import Timeout
from core.logging import logger

__all__ = ["PendingRequest", "CorrelationStore"]


@dataclass
class PendingRequest:
    id: str
    action: str
    issued_at: float
    timeout_at: float
    future: asyncio.Future = field(repr=False)
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class CorrelationStore:
    """Tracks request/response pairs by correlation id."""

    def __init__(
        self,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._timeout = timeout
        self._clock = clock
        self._id_factory = id_factory
        self._pending: Dict[str, PendingRequest] = {}

    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def get(self, request_id: str) -> Optional[PendingRequest]:
        return self._pending.get(request_id)

    def pending_ids(self) -> List[str]:
        return list(self._pending)

    # ------------------------------------------------------------------
    def register(self, action: str, timeout: Optional[float] = None) -> Tuple[str, asyncio.Future]:
        """Allocate a fresh id and return it with the future the caller awaits."""
        loop = asyncio.get_running_loop()
        timeout = self._timeout if timeout is None else timeout

        request_id = self._id_factory()
        while request_id in self._pending:
            request_id = self._id_factory()

        now = self._clock()
        future: asyncio.Future = loop.create_future()
        entry = PendingRequest(
            id=request_id,
            action=action,
            issued_at=now,
            timeout_at=now + timeout,
            future=future,
        )
        entry.timer = loop.call_later(timeout, self.expire, request_id)
        self._pending[request_id] = entry
        # A caller that stops waiting (task cancelled) cancels the future; drop the entry.
        future.add_done_callback(lambda fut, rid=request_id: self._on_future_done(rid, fut))
        return request_id, future

    def resolve(self, request_id: str, value: Any) -> bool:
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(value)
        return True

    def reject(self, request_id: str, error: BaseException) -> bool:
        entry = self._take(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def expire(self, request_id: str) -> bool:
        entry = self._pending.get(request_id)
        if entry is None:
            return False
        waited = self._clock() - entry.issued_at
        logger.warning(f"Request {request_id} ({entry.action}) timed out after {waited:.2f}s")
        return self.reject(request_id, Timeout(f"no response to '{entry.action}' within deadline"))

    def cancel(self, request_id: str) -> bool:
        """Caller-initiated early rejection. The remote side may still be working."""
        entry = self._take(request_id)
        if entry is None:
            return False
        entry.future.cancel()
        return True

    def reject_all(self, error_factory: Callable[[PendingRequest], BaseException]) -> int:
        count = 0
        for request_id in list(self._pending):
            entry = self._pending.get(request_id)
            if entry is not None and self.reject(request_id, error_factory(entry)):
                count += 1
        return count

    def sweep(self) -> int:
        """Expire every entry whose deadline has passed according to the clock."""
        now = self._clock()
        due = [rid for rid, entry in self._pending.items() if now >= entry.timeout_at]
        return sum(1 for rid in due if self.expire(rid))

    async def run_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    # ------------------------------------------------------------------
    def _take(self, request_id: str) -> Optional[PendingRequest]:
        entry = self._pending.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def _on_future_done(self, request_id: str, future: asyncio.Future) -> None:
        entry = self._pending.get(request_id)
        if future.cancelled() and entry is not None and entry.future is future:
            self._take(request_id)
