"""Shared session record kept consistent across both sides of the bridge.

Each field carries ``(value, version, writer)`` and merges on its own.  An
incoming state replaces the stored one when its version is higher.  On equal
versions from different writers the tie-break side (``local`` by default) wins
on both ends; equal versions from the same writer fall back to comparing the
canonical JSON of the values.  That makes the merge commutative and
idempotent, so deltas can be re-sent or reordered freely.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from bridge.message_bridge import CONNECTED, MessageBridge
from bridge.messages import BridgeMessage, Origin
from core.errors import ChannelUnavailable
from core.logging import logger

DELTA_ACTION = "session.delta"

Listener = Callable[[str, "FieldState"], None]


@dataclass(frozen=True)
class FieldState:
    value: Any
    version: int
    writer: Origin

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "version": self.version, "writer": self.writer.value}


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def supersedes(incoming: FieldState, current: Optional[FieldState], tie_winner: Origin = Origin.LOCAL) -> bool:
    """True if ``incoming`` should replace ``current``."""
    if current is None:
        return True
    if incoming.version != current.version:
        return incoming.version > current.version
    if incoming.writer != current.writer:
        return incoming.writer == tie_winner
    return _canonical(incoming.value) > _canonical(current.value)


@dataclass
class SessionRecord:
    id: str
    fields: Dict[str, FieldState] = field(default_factory=dict)
    tie_winner: Origin = Origin.LOCAL

    def get(self, name: str) -> Optional[FieldState]:
        return self.fields.get(name)

    def version_of(self, name: str) -> int:
        state = self.fields.get(name)
        return state.version if state else 0

    def merge(self, name: str, state: FieldState) -> bool:
        if not supersedes(state, self.fields.get(name), self.tie_winner):
            return False
        self.fields[name] = state
        return True

    def values(self) -> Dict[str, Any]:
        return {name: state.value for name, state in self.fields.items()}


class SessionSynchronizer:
    """Applies local updates optimistically and merges remote deltas."""

    def __init__(
        self,
        bridge: MessageBridge,
        session_id: str,
        *,
        side: Optional[Origin] = None,
        tie_winner: Origin = Origin.LOCAL,
    ):
        self.bridge = bridge
        self.side = Origin(side or bridge.side)
        self.record = SessionRecord(id=session_id, tie_winner=tie_winner)
        self._listeners: List[Listener] = []
        self._subscriptions = []

    @property
    def session_id(self) -> str:
        return self.record.id

    def start(self) -> "SessionSynchronizer":
        if not self._subscriptions:
            self._subscriptions = [
                self.bridge.subscribe(DELTA_ACTION, self._on_delta),
                self.bridge.subscribe(CONNECTED, self._on_connected),
            ]
        return self

    def stop(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: state.to_dict() for name, state in self.record.fields.items()}

    # ------------------------------------------------------------------
    async def local_update(self, name: str, value: Any) -> FieldState:
        """Apply immediately, then publish the delta if the channel is up."""
        state = FieldState(value=value, version=self.record.version_of(name) + 1, writer=self.side)
        self.record.merge(name, state)
        self._notify(name, state)
        await self._publish(name, state)
        return state

    def apply_remote_delta(
        self,
        session_id: str,
        name: str,
        value: Any,
        version: int,
        writer: Optional[Origin] = None,
    ) -> bool:
        if session_id != self.session_id:
            logger.debug(f"Ignoring delta for foreign session {session_id}")
            return False
        if writer is None:
            writer = Origin.REMOTE if self.side is Origin.LOCAL else Origin.LOCAL
        state = FieldState(value=value, version=int(version), writer=Origin(writer))
        if not self.record.merge(name, state):
            return False
        self._notify(name, state)
        return True

    # ------------------------------------------------------------------
    def _on_delta(self, message: BridgeMessage) -> None:
        payload = message.payload
        if not isinstance(payload, Mapping):
            logger.warning(f"Malformed session delta from {message.origin.value}: {payload!r}")
            return
        try:
            self.apply_remote_delta(
                payload["session_id"],
                payload["field"],
                payload.get("value"),
                payload["version"],
                Origin(payload.get("writer", message.origin)),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed session delta from {message.origin.value}: {e}")

    async def _on_connected(self, message: BridgeMessage) -> None:
        # Merge is idempotent, so the peer can take the full state again.
        for name, state in list(self.record.fields.items()):
            await self._publish(name, state)

    async def _publish(self, name: str, state: FieldState) -> None:
        if not self.bridge.connected:
            return
        payload = {"session_id": self.session_id, "field": name, **state.to_dict()}
        try:
            await self.bridge.emit(DELTA_ACTION, payload)
        except ChannelUnavailable as e:
            logger.debug(f"Delta for '{name}' not sent, channel down: {e}")

    def _notify(self, name: str, state: FieldState) -> None:
        for listener in list(self._listeners):
            try:
                listener(name, state)
            except Exception:
                logger.exception(f"Session listener failed for '{name}'")
