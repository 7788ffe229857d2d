"""
Persistent WebSocket link to one gateway.

Each configured gateway gets one GatewayLink. The link dials the gateway,
answers its signed challenge, and then relays business frames in both
directions until the socket drops, at which point it backs off and dials
again. Frontends never talk to the socket directly: they call
send_message() / cancel_run(), and receive translated frames through the
on_frame callback.

Handshake:

  gateway -> {"type":"event","event":"connect.challenge","payload":{"nonce":"..."}}
  relay   -> {"type":"req","id":"connect","method":"connect","params":{..., "device": {signed}}}
  gateway -> {"type":"res","id":"connect","ok":true}

States:

  DISCONNECTED -> CONNECTING -> AWAITING_CHALLENGE -> HANDSHAKING -> READY
  (any state) -> DISCONNECTED on handshake rejection, socket error or close

Plain-text "ping"/"pong" heartbeats are handled before JSON parsing and never
touch the state machine.
"""
import enum
import json
import logging
import sys
import threading
import uuid
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlencode

import websocket  # websocket-client

from clawrelay.config import VERSION, GatewayConfig
from clawrelay.frames import (
    Attachment, Event, Lifecycle, MalformedFrame, OutboundFrame, Request, Response,
    parse_wire_frame,
)
from clawrelay.identity import CLIENT_ID, CLIENT_MODE, ROLE, SCOPES, DeviceIdentity, sign_assertion
from clawrelay.translator import TERMINAL_PHASES, translate_agent_event

log = logging.getLogger("clawrelay.gateway")

PROTOCOL_VERSION   = 3
CONNECT_REQUEST_ID = "connect"
DISPLAY_NAME       = "Claw Relay"

_CONNECT_TIMEOUT = 10     # seconds for the WS upgrade
_LOG_FRAME_CHARS = 300


class LinkState(enum.Enum):
    DISCONNECTED       = "disconnected"
    CONNECTING         = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    HANDSHAKING        = "handshaking"
    READY              = "ready"


_TRANSITIONS: dict[LinkState, frozenset[LinkState]] = {
    LinkState.DISCONNECTED:       frozenset({LinkState.CONNECTING}),
    LinkState.CONNECTING:         frozenset({LinkState.AWAITING_CHALLENGE, LinkState.DISCONNECTED}),
    LinkState.AWAITING_CHALLENGE: frozenset({LinkState.HANDSHAKING, LinkState.DISCONNECTED}),
    LinkState.HANDSHAKING:        frozenset({LinkState.READY, LinkState.DISCONNECTED}),
    LinkState.READY:              frozenset({LinkState.DISCONNECTED}),
}


def can_transition(current: LinkState, new: LinkState) -> bool:
    return new in _TRANSITIONS[current]


class LinkNotReady(RuntimeError):
    """A business request was issued before the handshake completed."""


class Backoff:
    """
    Exponential reconnect delay: base * factor**n, capped.

    next_delay() returns the delay to wait now and advances the sequence;
    reset() goes back to base once a connection becomes ready.
    """

    def __init__(self, base: float = 2.0, factor: float = 1.5, cap: float = 30.0):
        self.base = base
        self.factor = factor
        self.cap = cap
        self.current = base

    def next_delay(self) -> float:
        delay = min(self.current, self.cap)
        self.current = min(self.current * self.factor, self.cap)
        return delay

    def reset(self):
        self.current = self.base


@dataclass
class PendingRequest:
    session_key: str


def build_message_content(text: str, attachments: list[Attachment] | None = None):
    """
    Build the `message` param of an agent request.

    Plain text when there is nothing attached, otherwise a content block list
    with the text first and one image/document block per attachment, in order.
    """
    if not attachments:
        return text
    blocks: list[dict] = [{"type": "text", "text": text or ""}]
    for att in attachments:
        if att.is_image:
            blocks.append({
                "type": "image",
                "source": {"type": "base64", "media_type": att.mime_type, "data": att.data},
            })
        else:
            blocks.append({
                "type": "document",
                "source": {
                    "type": "base64",
                    "media_type": att.mime_type or "application/octet-stream",
                    "data": att.data,
                },
                "title": att.filename,
            })
    return blocks


class GatewayLink:
    """
    Owns the connection to one gateway.

    on_frame(frame) receives every translated frontend frame; on_status(index,
    connected) fires on READY and on every teardown. Both are called outside
    the link lock, from the link's receive thread.

    Thread-safety: _ws, _state, _pending, _runs and _reconnect_timer are
    guarded by _lock.
    """

    def __init__(self, index: int, cfg: GatewayConfig, identity: DeviceIdentity,
                 on_frame: Callable[[OutboundFrame], None],
                 on_status: Callable[[int, bool], None],
                 backoff: Backoff | None = None):
        self.index     = index
        self.cfg       = cfg
        self.identity  = identity
        self.on_frame  = on_frame
        self.on_status = on_status
        self._backoff  = backoff or Backoff()
        self._ws: websocket.WebSocket | None = None
        self._state    = LinkState.DISCONNECTED
        self._lock     = threading.Lock()
        self._pending: dict[str, PendingRequest] = {}   # request id -> originating session
        self._runs: dict[str, str] = {}                 # bare session key -> run id
        self._reconnect_timer: threading.Timer | None = None
        self._running  = True

    # ── Public API ────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self.cfg.name

    @property
    def state(self) -> LinkState:
        return self._state

    def is_ready(self) -> bool:
        return self._state is LinkState.READY

    def active_run(self, session_key: str) -> str | None:
        with self._lock:
            return self._runs.get(session_key)

    def pending_requests(self) -> dict[str, PendingRequest]:
        with self._lock:
            return dict(self._pending)

    def connect(self):
        """Start a connection attempt in a daemon thread unless one is already live."""
        with self._lock:
            if not self._running:
                return
            if self._state is not LinkState.DISCONNECTED:
                log.debug("Gateway %d: connect skipped, state=%s", self.index, self._state.value)
                return
            self._set_state(LinkState.CONNECTING)
        log.info("Gateway %d: connecting to %s ...", self.index, self.cfg.url)
        threading.Thread(target=self._run_connection, daemon=True,
                         name=f"gw-link-{self.index}").start()

    def close(self):
        """Shut the link down for good: no further reconnects."""
        with self._lock:
            self._running = False
            timer, self._reconnect_timer = self._reconnect_timer, None
            ws, self._ws = self._ws, None
            if self._state is not LinkState.DISCONNECTED:
                self._set_state(LinkState.DISCONNECTED)
            self._pending.clear()
        if timer is not None:
            timer.cancel()
        if ws is not None:
            try:
                ws.close()
            except Exception as exc:
                log.debug("Gateway %d: error closing socket: %s", self.index, exc)

    def attach(self, ws):
        """
        Hand an open socket to the link. The link then waits for the
        gateway's challenge before anything else is sent.
        """
        with self._lock:
            if not self._running:
                ws.close()
                return
            if self._state is LinkState.DISCONNECTED:
                self._set_state(LinkState.CONNECTING)
            self._ws = ws
            self._set_state(LinkState.AWAITING_CHALLENGE)
        log.info("Gateway %d: socket open, waiting for challenge", self.index)

    def send_message(self, session_key: str, text: str,
                     attachments: list[Attachment] | None = None) -> str:
        """
        Issue an `agent` request for session_key. Returns the request id.

        Raises LinkNotReady before the handshake completes, RuntimeError if
        the socket write fails.
        """
        req_id = f"req_{uuid.uuid4().hex[:16]}"
        with self._lock:
            if self._state is not LinkState.READY:
                raise LinkNotReady(f"gateway {self.index} is not connected")
            self._pending[req_id] = PendingRequest(session_key=session_key)
        request = Request(id=req_id, method="agent", params={
            "agentId": self.cfg.agent_id,
            "sessionKey": session_key,
            "message": build_message_content(text, attachments),
            "deliver": False,
            "idempotencyKey": f"webui_{session_key}_{uuid.uuid4().hex[:12]}",
        })
        try:
            self._send_raw(request.to_dict())
        except RuntimeError:
            with self._lock:
                self._pending.pop(req_id, None)
            raise
        log.info("Gateway %d: sent %s for session=%s (%d attachment(s))",
                 self.index, req_id, session_key, len(attachments or []))
        return req_id

    def cancel_run(self, session_key: str) -> bool:
        """
        Ask the gateway to cancel the tracked run for session_key.

        Returns False without sending anything when no run is tracked.
        """
        run_id = self.active_run(session_key)
        if not run_id:
            log.debug("Gateway %d: no active run for session=%s, cancel ignored",
                      self.index, session_key)
            return False
        request = Request(id=f"cancel_{uuid.uuid4().hex[:16]}", method="agent.cancel",
                          params={"sessionKey": session_key, "runId": run_id})
        self._send_raw(request.to_dict())
        log.info("Gateway %d: cancel requested for run=%s session=%s",
                 self.index, run_id, session_key)
        return True

    # ── Connection lifecycle ──────────────────────────────────

    def _set_state(self, new: LinkState):
        # caller holds _lock
        if not can_transition(self._state, new):
            raise RuntimeError(
                f"gateway {self.index}: illegal transition {self._state.value} -> {new.value}")
        log.debug("Gateway %d: %s -> %s", self.index, self._state.value, new.value)
        self._state = new

    def _ws_url(self) -> str:
        url = self.cfg.url
        if self.cfg.token:
            sep = "&" if "?" in url else "?"
            url = f"{url}{sep}{urlencode({'token': self.cfg.token})}"
        return url

    def _run_connection(self):
        try:
            ws = websocket.create_connection(self._ws_url(), timeout=_CONNECT_TIMEOUT)
            # The connect timeout would otherwise apply to every recv().
            ws.settimeout(None)
        except Exception as exc:
            log.warning("Gateway %d: connect to %s failed: %s", self.index, self.cfg.url, exc)
            self._connect_failed()
            return
        self.attach(ws)
        self._recv_loop(ws)

    def _recv_loop(self, ws):
        while self._running:
            try:
                raw = ws.recv()
            except Exception as exc:
                if self._running:
                    log.info("Gateway %d: socket closed: %s", self.index, exc)
                break
            if raw is None:
                continue
            if raw == "" or raw == b"":
                # websocket-client returns "" on clean close
                log.info("Gateway %d: empty recv (clean close)", self.index)
                break
            try:
                self.handle_raw(raw)
            except Exception:
                log.exception("Gateway %d: error handling frame", self.index)
        self._teardown(ws, "socket closed")

    def _connect_failed(self):
        with self._lock:
            if self._state is LinkState.CONNECTING:
                self._set_state(LinkState.DISCONNECTED)
        self.on_status(self.index, False)
        self._schedule_reconnect()

    def _teardown(self, ws, reason: str):
        """Drop `ws` if it is still the live socket. Safe to call twice."""
        with self._lock:
            if ws is None or ws is not self._ws:
                return
            self._ws = None
            if self._state is not LinkState.DISCONNECTED:
                self._set_state(LinkState.DISCONNECTED)
            dropped = len(self._pending)
            self._pending.clear()
        try:
            ws.close()
        except Exception as exc:
            log.debug("Gateway %d: error closing socket: %s", self.index, exc)
        log.info("Gateway %d (%s) disconnected: %s (%d pending request(s) dropped)",
                 self.index, self.cfg.name, reason, dropped)
        self.on_status(self.index, False)
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        with self._lock:
            if not self._running or self._reconnect_timer is not None:
                return
            delay = self._backoff.next_delay()
            timer = threading.Timer(delay, self._reconnect)
            timer.daemon = True
            self._reconnect_timer = timer
        log.info("Gateway %d: reconnecting in %.1fs", self.index, delay)
        timer.start()

    def _reconnect(self):
        with self._lock:
            self._reconnect_timer = None
        self.connect()

    # ── Inbound frames ────────────────────────────────────────

    def handle_raw(self, raw: str | bytes):
        """Process one text frame from the gateway socket."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        heartbeat = raw.strip().lower()
        if heartbeat == "ping":
            try:
                self._send_text("pong")
            except RuntimeError as exc:
                log.debug("Gateway %d: pong failed: %s", self.index, exc)
            return
        if heartbeat == "pong":
            return

        try:
            frame = parse_wire_frame(raw)
        except MalformedFrame as exc:
            log.debug("Gateway %d: dropping malformed frame: %s", self.index, exc)
            return

        if isinstance(frame, Event) and frame.event == "connect.challenge":
            self._handle_challenge(frame)
            return
        if isinstance(frame, Response) and frame.id == CONNECT_REQUEST_ID:
            self._handle_connect_response(frame)
            return

        if not self.is_ready():
            log.debug("Gateway %d: dropping frame before handshake: %s",
                      self.index, raw[:_LOG_FRAME_CHARS])
            return
        self._handle_frame(frame)

    def _connect_request(self, nonce: str | None) -> Request:
        return Request(id=CONNECT_REQUEST_ID, method="connect", params={
            "minProtocol": PROTOCOL_VERSION,
            "maxProtocol": PROTOCOL_VERSION,
            "client": {
                "id": CLIENT_ID,
                "version": VERSION,
                "platform": sys.platform,
                "mode": CLIENT_MODE,
                "displayName": DISPLAY_NAME,
            },
            "role": ROLE,
            "scopes": list(SCOPES),
            "caps": ["tool-events"],
            "auth": {"token": self.cfg.token},
            "device": sign_assertion(self.identity, self.cfg.token, nonce),
        })

    def _handle_challenge(self, frame: Event):
        with self._lock:
            if self._state is not LinkState.AWAITING_CHALLENGE:
                log.debug("Gateway %d: unexpected challenge in state %s",
                          self.index, self._state.value)
                return
            self._set_state(LinkState.HANDSHAKING)
            ws = self._ws
        nonce = frame.payload.get("nonce")
        if not isinstance(nonce, str) or not nonce:
            nonce = None
        log.info("Gateway %d: received challenge, sending connect", self.index)
        try:
            self._send_raw(self._connect_request(nonce).to_dict())
        except RuntimeError as exc:
            log.warning("Gateway %d: could not send connect: %s", self.index, exc)
            self._teardown(ws, "connect send failed")

    def _handle_connect_response(self, frame: Response):
        with self._lock:
            if self._state is not LinkState.HANDSHAKING:
                log.debug("Gateway %d: unexpected connect response in state %s",
                          self.index, self._state.value)
                return
            ws = self._ws
            if frame.ok:
                self._set_state(LinkState.READY)
                self._backoff.reset()
        if not frame.ok:
            log.error("Gateway %d: handshake failed: %s", self.index, json.dumps(frame.error))
            self._teardown(ws, "handshake rejected")
            return
        log.info("Gateway %d: handshake complete (%s)", self.index, self.cfg.name)
        self.on_status(self.index, True)

    def _handle_frame(self, frame):
        if log.isEnabledFor(logging.DEBUG):
            log.debug("Gateway %d frame: %s", self.index,
                      json.dumps(frame.to_dict())[:_LOG_FRAME_CHARS])
        if isinstance(frame, Response):
            self._handle_response(frame)
        elif isinstance(frame, Event):
            if frame.event == "agent":
                self._handle_agent_event(frame.payload)
            else:
                log.debug("Gateway %d: event %s ignored", self.index, frame.event)
        else:
            log.debug("Gateway %d: unsolicited request %s ignored", self.index, frame.method)

    def _handle_response(self, frame: Response):
        run_id = frame.payload.get("runId")
        with self._lock:
            pending = self._pending.pop(frame.id, None)
            if pending and frame.ok and isinstance(run_id, str) and run_id:
                self._runs[pending.session_key] = run_id
        if pending and frame.ok and run_id:
            log.info("Gateway %d: run %s started for session=%s",
                     self.index, run_id, pending.session_key)
        if not frame.ok:
            log.error("Gateway %d: request %s failed: %s",
                      self.index, frame.id, json.dumps(frame.error))

    def _handle_agent_event(self, payload: dict):
        out = translate_agent_event(self.index, payload, self.cfg.agent_id)
        if out is None:
            return
        if isinstance(out, Lifecycle):
            with self._lock:
                if out.phase == "start" and out.run_id:
                    self._runs[out.session_key] = out.run_id
                elif out.phase in TERMINAL_PHASES:
                    self._runs.pop(out.session_key, None)
        self.on_frame(out)

    # ── Outbound ──────────────────────────────────────────────

    def _send_raw(self, msg: dict):
        self._send_text(json.dumps(msg))

    def _send_text(self, text: str):
        with self._lock:
            ws = self._ws
        if ws is None:
            raise LinkNotReady(f"gateway {self.index} has no open socket")
        try:
            ws.send(text)
        except Exception as exc:
            raise RuntimeError(f"gateway {self.index} send failed: {exc}") from exc
