"""
Relay: wires gateway links to browser connections.

  browser --control frame--> Relay --send_message/cancel_run--> GatewayLink --> gateway
  gateway --> GatewayLink --translated frame--> Relay --filtered broadcast--> browsers

The relay also owns the shared-secret gate: until a connection presents the
right password it may only send `auth`, and it is not registered for
broadcasts.
"""
import hmac
import logging

from clawrelay.clients import ClientRegistry, FrontendConnection
from clawrelay.config import RelayConfig
from clawrelay.frames import (
    AuthFail, AuthMessage, AuthOk, AuthRequired, CancelMessage, Error, Init, MalformedFrame,
    OutboundFrame, SendMessage, Status, UnknownFrameType, parse_control_frame,
)
from clawrelay.gateway import GatewayLink
from clawrelay.identity import DeviceIdentity

log = logging.getLogger("clawrelay.relay")

MAX_ATTACHMENTS     = 5
MAX_ATTACHMENT_SIZE = 10 * 1024 * 1024   # bytes

ALLOWED_MIME_TYPES = frozenset({
    "image/png", "image/jpeg", "image/gif", "image/webp",
    "application/pdf", "text/plain", "text/markdown",
    "text/javascript", "text/typescript", "text/css", "application/json",
})


def default_session_key(gateway: int) -> str:
    return f"webui:default_{gateway}"


class Relay:
    """
    Composition root: N gateway links, one client registry.

    Links are built here from config; tests may pass prebuilt links instead.
    """

    def __init__(self, config: RelayConfig, identity: DeviceIdentity,
                 links: list[GatewayLink] | None = None,
                 registry: ClientRegistry | None = None):
        self.config = config
        self.identity = identity
        self.registry = registry or ClientRegistry()
        if links is None:
            links = [
                GatewayLink(i, gw_cfg, identity, self.on_gateway_frame, self.on_gateway_status)
                for i, gw_cfg in enumerate(config.gateways)
            ]
        self.links = links

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self):
        for link in self.links:
            link.connect()

    def stop(self):
        for link in self.links:
            link.close()

    def gateway_summary(self) -> list[dict]:
        return [{"name": link.name, "connected": link.is_ready()} for link in self.links]

    def init_frame(self) -> Init:
        return Init(gateways=self.gateway_summary(), models=list(self.config.models))

    # ── Gateway side ──────────────────────────────────────────

    def on_gateway_frame(self, frame: OutboundFrame):
        self.registry.broadcast(frame)

    def on_gateway_status(self, index: int, connected: bool):
        self.registry.broadcast(Status(gateway=index, connected=connected))

    # ── Frontend side ─────────────────────────────────────────

    def accept(self, conn: FrontendConnection):
        """Run the auth gate for a freshly opened browser socket."""
        log.info("Frontend connected from %s", conn.remote_addr)
        if self.config.auth_required:
            conn.authenticated = False
            conn.send(AuthRequired())
            return
        conn.authenticated = True
        self.registry.add(conn)
        conn.send(self.init_frame())

    def disconnect(self, conn: FrontendConnection):
        self.registry.discard(conn)
        log.info("Frontend disconnected from %s", conn.remote_addr)

    def handle_message(self, conn: FrontendConnection, raw: str | bytes):
        """Dispatch one control frame from a browser socket."""
        try:
            msg = parse_control_frame(raw)
        except UnknownFrameType as exc:
            if not conn.authenticated:
                conn.send(AuthRequired())
            else:
                log.warning("Frontend %s sent unknown message type %r",
                            conn.remote_addr, exc.frame_type)
            return
        except MalformedFrame as exc:
            log.debug("Dropping malformed frame from %s: %s", conn.remote_addr, exc)
            return

        if isinstance(msg, AuthMessage):
            self._handle_auth(conn, msg)
            return
        if not conn.authenticated:
            conn.send(AuthRequired())
            return

        link = self._route(conn, msg.gateway)
        if link is None:
            return
        if isinstance(msg, SendMessage):
            self._handle_send(conn, link, msg)
        elif isinstance(msg, CancelMessage):
            self._handle_cancel(conn, link, msg)

    def _handle_auth(self, conn: FrontendConnection, msg: AuthMessage):
        if not self.config.auth_required:
            conn.send(AuthOk())
            return
        if hmac.compare_digest(msg.password.encode(), self.config.password.encode()):
            conn.authenticated = True
            self.registry.add(conn)
            conn.send(AuthOk())
            conn.send(self.init_frame())
            log.info("Frontend %s authenticated", conn.remote_addr)
        else:
            conn.send(AuthFail())
            log.warning("Frontend %s failed authentication", conn.remote_addr)

    def _route(self, conn: FrontendConnection, index: int) -> GatewayLink | None:
        if 0 <= index < len(self.links):
            return self.links[index]
        conn.send(Error(message=f"Invalid gateway index: {index}"))
        return None

    def _handle_send(self, conn: FrontendConnection, link: GatewayLink, msg: SendMessage):
        if not link.is_ready():
            log.info("Gateway %d not connected, rejecting send from %s",
                     link.index, conn.remote_addr)
            conn.send(Error(gateway=link.index, message="Gateway not connected"))
            return

        attachments = [a for a in msg.attachments if a.data]
        if len(attachments) > MAX_ATTACHMENTS:
            conn.send(Error(gateway=link.index,
                            message=f"Too many attachments (max {MAX_ATTACHMENTS})"))
            return
        accepted = []
        for att in attachments:
            if att.byte_size() > MAX_ATTACHMENT_SIZE:
                log.warning("Attachment too large, skipped: %s (%d bytes)",
                            att.filename, att.byte_size())
                continue
            if att.mime_type and att.mime_type not in ALLOWED_MIME_TYPES:
                log.warning("Attachment mime type %s not in whitelist, allowing", att.mime_type)
            accepted.append(att)

        session_key = msg.session_key or default_session_key(link.index)
        conn.own(session_key)
        log.info("Forwarding to gateway %d: session=%s msg=%r attachments=%d",
                 link.index, session_key, msg.message[:50], len(accepted))
        try:
            link.send_message(session_key, msg.message, accepted)
        except RuntimeError as exc:
            log.warning("Send to gateway %d failed: %s", link.index, exc)
            conn.send(Error(gateway=link.index, message="Gateway not connected"))

    def _handle_cancel(self, conn: FrontendConnection, link: GatewayLink, msg: CancelMessage):
        if not link.is_ready():
            conn.send(Error(gateway=link.index, message="Gateway not connected"))
            return
        session_key = msg.session_key or default_session_key(link.index)
        try:
            link.cancel_run(session_key)
        except RuntimeError as exc:
            log.warning("Cancel on gateway %d failed: %s", link.index, exc)
            conn.send(Error(gateway=link.index, message="Gateway not connected"))
