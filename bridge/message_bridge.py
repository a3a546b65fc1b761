"""Request/response and event semantics on top of a raw transport.

Outbound requests are tracked in a :class:`CorrelationStore`; inbound frames
are routed strictly by their ``type``:

* ``response`` → settles the pending request with the same id (or is dropped
  and logged when nothing is waiting for it),
* ``request``  → runs the subscribed handlers in a task of its own and answers
  with a ``response`` carrying the result or the error,
* ``event``    → fans out to subscribers, no reply.

Handler tasks never block the dispatch of other frames.  When the transport
reports a disconnect every pending request fails at once with
:class:`ChannelUnavailable`; the bridge does not replay anything on reconnect,
it only publishes :data:`CONNECTED` to local subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from core.errors import ChannelUnavailable, UnsupportedAction
from core.logging import logger

from .correlation import CorrelationStore
from .messages import (
    BridgeMessage,
    MessageKind,
    Origin,
    error_from_payload,
    error_payload,
    ok_payload,
)
from .transports import Transport

__all__ = ["MessageBridge", "Subscription", "CONNECTED", "DISCONNECTED"]

# Local-only lifecycle events; never written to the wire.
CONNECTED = "bridge.connected"
DISCONNECTED = "bridge.disconnected"

Handler = Callable[[BridgeMessage], Union[Any, Awaitable[Any]]]


class Subscription:
    """Handle returned by :meth:`MessageBridge.subscribe`; call it to unsubscribe."""

    def __init__(self, bridge: "MessageBridge", action: str, handler: Handler) -> None:
        self._bridge = bridge
        self.action = action
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> bool:
        if not self.active:
            return False
        self.active = False
        return self._bridge._remove_handler(self.action, self.handler)

    __call__ = unsubscribe


class MessageBridge:
    def __init__(
        self,
        transport: Transport,
        store: Optional[CorrelationStore] = None,
        *,
        side: Origin = Origin.LOCAL,
        sweep_interval: Optional[float] = None,
    ) -> None:
        self.transport = transport
        self.store = store or CorrelationStore()
        self.side = Origin(side)
        self._sweep_interval = sweep_interval
        self._subscribers: Dict[str, List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

        transport.on_message(self._on_frame)
        transport.on_status(self._on_status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self.transport.is_connected()

    async def start(self) -> None:
        await self.transport.connect()
        if self._sweep_interval and self._sweeper is None:
            self._sweeper = asyncio.create_task(self.store.run_sweeper(self._sweep_interval))

    async def stop(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.cancel()
        await self.transport.disconnect()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    async def send(self, action: str, payload: Any = None, *, timeout: Optional[float] = None) -> Any:
        """Send a request and wait for the peer's response payload."""
        if not self.transport.is_connected():
            raise ChannelUnavailable(f"cannot send '{action}': no connected transport")

        request_id, future = self.store.register(action, timeout)
        try:
            message = BridgeMessage.request(action, payload, self.side, id=request_id)
            await self.transport.write(message.to_frame())
        except ChannelUnavailable as e:
            self.store.reject(request_id, e)
        except OSError as e:
            self.store.reject(request_id, ChannelUnavailable(f"write failed for '{action}': {e}"))
        except ValueError as e:
            self.store.reject(request_id, e)
        return await future

    async def emit(self, action: str, payload: Any = None) -> None:
        """Fire-and-forget event; no correlation tracking."""
        if not self.transport.is_connected():
            raise ChannelUnavailable(f"cannot emit '{action}': no connected transport")
        await self.transport.write(BridgeMessage.event(action, payload, self.side).to_frame())

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, action: str, handler: Handler) -> Subscription:
        self._subscribers.setdefault(action, []).append(handler)
        return Subscription(self, action, handler)

    def handlers_for(self, action: str) -> List[Handler]:
        return list(self._subscribers.get(action, ()))

    def _remove_handler(self, action: str, handler: Handler) -> bool:
        handlers = self._subscribers.get(action)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._subscribers[action]
        return True

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def _on_frame(self, frame: bytes) -> None:
        self.store.sweep()
        try:
            message = BridgeMessage.from_frame(frame)
        except ValueError as e:
            logger.warning(f"Dropping malformed bridge frame: {e}")
            return
        self.dispatch(message)

    def dispatch(self, message: BridgeMessage) -> None:
        if message.kind is MessageKind.RESPONSE:
            self._settle(message)
        elif message.kind is MessageKind.REQUEST:
            self._spawn(self._serve_request(message))
        else:
            handlers = self.handlers_for(message.action)
            if handlers:
                self._spawn(self._fan_out(message, handlers))
            else:
                logger.debug(f"No subscribers for event '{message.action}'")

    def _settle(self, message: BridgeMessage) -> None:
        if message.id not in self.store:
            logger.warning(f"Dropping unmatched response {message.id} ({message.action})")
            return
        error = error_from_payload(message.action, message.payload)
        if error is not None:
            self.store.reject(message.id, error)
        else:
            self.store.resolve(message.id, _unwrap(message.payload))

    async def _serve_request(self, message: BridgeMessage) -> None:
        handlers = self.handlers_for(message.action)
        if not handlers:
            logger.warning(f"No handler for request '{message.action}' from {message.origin.value}")
            reply = error_payload(UnsupportedAction(message.action))
        else:
            try:
                result = None
                for handler in handlers:
                    value = await _invoke(handler, message)
                    if result is None and value is not None:
                        result = value
                reply = ok_payload(result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Handler for '{message.action}' failed: {e}", exc_info=True)
                reply = error_payload(e)

        try:
            frame = message.reply(reply, self.side).to_frame()
        except ValueError as e:
            logger.error(f"Result of '{message.action}' is not serialisable: {e}")
            frame = message.reply(error_payload(e), self.side).to_frame()
        try:
            await self.transport.write(frame)
        except ValueError as e:
            # Over the channel's frame limit; the peer still gets an answer.
            logger.error(f"Response for {message.id} ({message.action}) rejected by {self.transport.name}: {e}")
            fallback = error_payload(ValueError(f"response too large: {e}"))
            await self._write_reply(message, message.reply(fallback, self.side).to_frame())
        except (ChannelUnavailable, OSError) as e:
            logger.warning(f"Could not deliver response for {message.id} ({message.action}): {e}")

    async def _write_reply(self, message: BridgeMessage, frame: bytes) -> None:
        try:
            await self.transport.write(frame)
        except (ChannelUnavailable, OSError, ValueError) as e:
            logger.warning(f"Could not deliver response for {message.id} ({message.action}): {e}")

    async def _fan_out(self, message: BridgeMessage, handlers: List[Handler]) -> None:
        for handler in handlers:
            try:
                await _invoke(handler, message)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Subscriber for '{message.action}' failed")

    def _on_status(self, connected: bool) -> None:
        if not connected:
            failed = self.store.reject_all(
                lambda entry: ChannelUnavailable(f"channel dropped while waiting for '{entry.action}'")
            )
            if failed:
                logger.warning(f"Channel dropped, failed {failed} pending request(s)")
        action = CONNECTED if connected else DISCONNECTED
        handlers = self.handlers_for(action)
        if handlers:
            event = BridgeMessage.event(action, {"transport": self.transport.name}, self.side)
            self._spawn(self._fan_out(event, handlers))

    def _spawn(self, coro) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


async def _invoke(handler: Handler, message: BridgeMessage) -> Any:
    result = handler(message)
    if inspect.isawaitable(result):
        result = await result
    return result


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "ok" in payload:
        return payload.get("result")
    return payload
