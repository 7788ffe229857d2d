"""
Frame types for both sockets the relay speaks.

Gateway wire protocol (JSON):

  Request   {"type": "req",   "id": "<id>", "method": "<method>", "params": {...}}
  Response  {"type": "res",   "id": "<id>", "ok": true|false,
             "payload": {...}, "error": {...}}      # error only when ok=false
  Event     {"type": "event", "event": "<name>",   "payload": {...}}

Frontend control protocol (JSON), browser -> relay:

  {"type": "auth",   "password": "..."}
  {"type": "send",   "gateway": 0, "sessionKey": "...", "message": "...",
                     "attachments": [{filename, mimeType, data, size}]}
  {"type": "cancel", "gateway": 0, "sessionKey": "..."}

relay -> browser:

  auth_required | auth_ok | auth_fail | init | status | error
  lifecycle | chunk | thinking | tool_start | tool_result   (session-scoped)

Parsers raise MalformedFrame for anything that is not one of the known
variants; callers drop those frames.
"""
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar


class MalformedFrame(ValueError):
    """Raw text did not decode into a known frame variant."""


class UnknownFrameType(MalformedFrame):
    """Valid JSON object whose `type` is not part of the protocol."""

    def __init__(self, frame_type):
        super().__init__(f"unknown frame type: {frame_type!r}")
        self.frame_type = frame_type


def _load_object(raw: str | bytes) -> dict:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        obj = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise MalformedFrame(f"bad JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise MalformedFrame("frame is not a JSON object")
    return obj


# ── Gateway wire frames ───────────────────────────────────────

@dataclass
class Request:
    id: str
    method: str
    params: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": "req", "id": self.id, "method": self.method, "params": self.params}


@dataclass
class Response:
    id: str
    ok: bool = True
    payload: dict = field(default_factory=dict)
    error: Any = None

    def to_dict(self) -> dict:
        out: dict = {"type": "res", "id": self.id, "ok": self.ok}
        if self.payload:
            out["payload"] = self.payload
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class Event:
    event: str
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": "event", "event": self.event, "payload": self.payload}


WireFrame = Request | Response | Event


def parse_wire_frame(raw: str | bytes) -> WireFrame:
    d = _load_object(raw)
    frame_type = d.get("type")
    payload = d.get("payload")
    if not isinstance(payload, dict):
        payload = {}
    if frame_type == "event":
        event = d.get("event")
        if not isinstance(event, str):
            raise MalformedFrame("event frame without event name")
        return Event(event=event, payload=payload)
    if frame_type == "res":
        if d.get("id") is None:
            raise MalformedFrame("response frame without id")
        # Only an explicit false is a failure; a missing ok counts as success.
        return Response(id=str(d["id"]), ok=d.get("ok") is not False,
                        payload=payload, error=d.get("error"))
    if frame_type == "req":
        if d.get("id") is None or not isinstance(d.get("method"), str):
            raise MalformedFrame("request frame without id or method")
        params = d.get("params")
        return Request(id=str(d["id"]), method=d["method"],
                       params=params if isinstance(params, dict) else {})
    raise UnknownFrameType(frame_type)


# ── Frontend control frames (inbound) ─────────────────────────

@dataclass
class Attachment:
    filename: str = ""
    mime_type: str = ""
    data: str = ""
    size: int = 0

    @classmethod
    def from_dict(cls, d: dict) -> "Attachment":
        try:
            size = int(d.get("size") or 0)
        except (TypeError, ValueError):
            size = 0
        return cls(
            filename=str(d.get("filename") or ""),
            mime_type=str(d.get("mimeType") or ""),
            data=d.get("data") if isinstance(d.get("data"), str) else "",
            size=size,
        )

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    def byte_size(self) -> int:
        """Larger of the declared size and the decoded size of the base64 data."""
        return max(self.size, len(self.data) * 3 // 4)


@dataclass
class AuthMessage:
    password: str = ""


@dataclass
class SendMessage:
    gateway: int = 0
    session_key: str | None = None
    message: str = ""
    attachments: list[Attachment] = field(default_factory=list)


@dataclass
class CancelMessage:
    gateway: int = 0
    session_key: str | None = None


ControlMessage = AuthMessage | SendMessage | CancelMessage


def _gateway_index(d: dict) -> int:
    value = d.get("gateway")
    # bool is an int subclass but never a valid index
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


def _session_key(d: dict) -> str | None:
    value = d.get("sessionKey")
    return value if isinstance(value, str) and value else None


def parse_control_frame(raw: str | bytes) -> ControlMessage:
    d = _load_object(raw)
    msg_type = d.get("type")
    if msg_type == "auth":
        password = d.get("password")
        return AuthMessage(password=password if isinstance(password, str) else "")
    if msg_type == "send":
        message = d.get("message")
        raw_attachments = d.get("attachments")
        attachments = []
        if isinstance(raw_attachments, list):
            attachments = [Attachment.from_dict(a) for a in raw_attachments if isinstance(a, dict)]
        return SendMessage(
            gateway=_gateway_index(d),
            session_key=_session_key(d),
            message=message if isinstance(message, str) else "",
            attachments=attachments,
        )
    if msg_type == "cancel":
        return CancelMessage(gateway=_gateway_index(d), session_key=_session_key(d))
    raise UnknownFrameType(msg_type)


# ── Frontend control frames (outbound) ────────────────────────

@dataclass
class OutboundFrame:
    type: ClassVar[str] = ""
    session_scoped: ClassVar[bool] = False

    def to_dict(self) -> dict:
        return {"type": self.type}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class AuthRequired(OutboundFrame):
    type: ClassVar[str] = "auth_required"


@dataclass
class AuthOk(OutboundFrame):
    type: ClassVar[str] = "auth_ok"


@dataclass
class AuthFail(OutboundFrame):
    type: ClassVar[str] = "auth_fail"


@dataclass
class Init(OutboundFrame):
    type: ClassVar[str] = "init"
    gateways: list[dict] = field(default_factory=list)   # [{name, connected}]
    models: list[dict] = field(default_factory=list)     # [{value, label}]

    def to_dict(self) -> dict:
        return {"type": self.type, "models": self.models, "gateways": self.gateways}


@dataclass
class Status(OutboundFrame):
    type: ClassVar[str] = "status"
    gateway: int = 0
    connected: bool = False

    def to_dict(self) -> dict:
        return {"type": self.type, "gateway": self.gateway, "connected": self.connected}


@dataclass
class Error(OutboundFrame):
    type: ClassVar[str] = "error"
    message: str = ""
    gateway: int | None = None

    def to_dict(self) -> dict:
        out: dict = {"type": self.type, "message": self.message}
        if self.gateway is not None:
            out["gateway"] = self.gateway
        return out


@dataclass
class SessionFrame(OutboundFrame):
    """Base for frames that belong to one conversation."""
    session_scoped: ClassVar[bool] = True
    gateway: int = 0
    session_key: str = ""

    def _fields(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        out: dict = {"type": self.type, "gateway": self.gateway, "sessionKey": self.session_key}
        out.update(self._fields())
        return out


@dataclass
class Lifecycle(SessionFrame):
    type: ClassVar[str] = "lifecycle"
    phase: str | None = None
    run_id: str | None = None
    message: str | None = None

    def _fields(self) -> dict:
        out: dict = {"phase": self.phase}
        if self.run_id is not None:
            out["runId"] = self.run_id
        if self.message is not None:
            out["message"] = self.message
        return out


@dataclass
class Chunk(SessionFrame):
    type: ClassVar[str] = "chunk"
    text: str = ""

    def _fields(self) -> dict:
        return {"text": self.text}


@dataclass
class Thinking(SessionFrame):
    type: ClassVar[str] = "thinking"
    text: str = ""

    def _fields(self) -> dict:
        return {"text": self.text}


@dataclass
class ToolStart(SessionFrame):
    type: ClassVar[str] = "tool_start"
    name: str | None = None
    args: Any = None

    def _fields(self) -> dict:
        return {"name": self.name, "args": self.args}


@dataclass
class ToolResult(SessionFrame):
    type: ClassVar[str] = "tool_result"
    name: str | None = None
    result: Any = None

    def _fields(self) -> dict:
        return {"name": self.name, "result": self.result}
