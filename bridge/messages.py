"""Wire model for bridge traffic.

Every frame is a UTF-8 JSON object with exactly six fields::

    {"id": "...", "type": "request|response|event", "action": "...",
     "payload": ..., "timestamp": 1718000000000, "source": "local|remote"}

Internally the fields are exposed under descriptive names (``kind``,
``created_at``, ``origin``) and mapped to the wire names through pydantic
aliases.  Response payloads are wrapped in a small envelope so that a peer can
flag failures without adding fields to the frame::

    {"ok": true, "result": <value>}
    {"ok": false, "error": {"code": "RemoteError", "message": "...", "details": {}}}
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.errors import ChannelUnavailable, CodeBridgeError, RemoteError, Timeout, UnsupportedAction

__all__ = [
    "MessageKind",
    "Origin",
    "BridgeMessage",
    "ok_payload",
    "error_payload",
    "error_from_payload",
    "new_message_id",
]


class MessageKind(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    EVENT = "event"


class Origin(str, Enum):
    """Absolute side labels. ``LOCAL`` is the browser agent, ``REMOTE`` the editor backend."""
    LOCAL = "local"
    REMOTE = "remote"


def new_message_id() -> str:
    return uuid.uuid4().hex


def _now_ms() -> int:
    return int(time.time() * 1000)


class BridgeMessage(BaseModel):
    """One framed message on the bridge."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    id: str = Field(default_factory=new_message_id, min_length=1)
    kind: MessageKind = Field(alias="type")
    action: str = Field(min_length=1)
    payload: Any = None
    created_at: int = Field(default_factory=_now_ms, alias="timestamp")
    origin: Origin = Field(alias="source")

    # ------------------------------------------------------------------
    def to_frame(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_frame(cls, frame: bytes | str) -> "BridgeMessage":
        """Decode a wire frame. Raises ``ValueError`` (pydantic ``ValidationError``) if malformed."""
        if isinstance(frame, (bytes, bytearray)):
            frame = bytes(frame).decode("utf-8")
        return cls.model_validate_json(frame)

    # ------------------------------------------------------------------
    @classmethod
    def request(cls, action: str, payload: Any, origin: Origin, id: Optional[str] = None) -> "BridgeMessage":
        return cls(id=id or new_message_id(), kind=MessageKind.REQUEST, action=action, payload=payload, origin=origin)

    @classmethod
    def event(cls, action: str, payload: Any, origin: Origin) -> "BridgeMessage":
        return cls(kind=MessageKind.EVENT, action=action, payload=payload, origin=origin)

    def reply(self, payload: Dict[str, Any], origin: Origin) -> "BridgeMessage":
        """Build the ``response`` for this request, reusing its correlation id."""
        return BridgeMessage(id=self.id, kind=MessageKind.RESPONSE, action=self.action, payload=payload, origin=origin)


# ---------------------------------------------------------------------------
# Response envelope helpers
# ---------------------------------------------------------------------------


def ok_payload(result: Any) -> Dict[str, Any]:
    return {"ok": True, "result": result}


def error_payload(exc: BaseException) -> Dict[str, Any]:
    """Serialise a handler failure. The code is the taxonomy class name."""
    if isinstance(exc, RemoteError):
        return {"ok": False, "error": {"code": exc.code, "message": exc.message, "details": exc.details}}
    if isinstance(exc, UnsupportedAction):
        return {"ok": False, "error": {"code": "UnsupportedAction", "message": str(exc), "details": {"action": exc.action}}}
    details: Dict[str, Any] = {}
    transient = getattr(exc, "transient", None)
    if isinstance(transient, bool):
        details["transient"] = transient
    elif isinstance(exc, (Timeout, ChannelUnavailable)):
        details["transient"] = True
    code = type(exc).__name__ if isinstance(exc, CodeBridgeError) else "RemoteError"
    return {"ok": False, "error": {"code": code, "message": str(exc), "details": details}}


def error_from_payload(action: str, payload: Any) -> Optional[CodeBridgeError]:
    """Return the error carried by a response payload, or ``None`` for a success envelope."""
    if not isinstance(payload, dict) or payload.get("ok", True):
        return None
    error = payload.get("error") or {}
    if not isinstance(error, dict):
        return RemoteError("RemoteError", str(error))
    code = str(error.get("code") or "RemoteError")
    if code == "UnsupportedAction":
        details = error.get("details") or {}
        return UnsupportedAction(str(details.get("action", action)))
    return RemoteError(code, str(error.get("message", "")), error.get("details") or {})
