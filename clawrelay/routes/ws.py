"""
WebSocket endpoint for browser connections.

Each browser tab holds one socket on /ws. The handler runs in its own
flask-sock thread for the lifetime of the socket: it hands the connection to
the relay's auth gate, then feeds every inbound frame to the relay in
arrival order until the browser goes away.
"""
import logging

from flask import current_app, request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from clawrelay.clients import FrontendConnection

log = logging.getLogger("clawrelay.routes.ws")

sock = Sock()   # bound to the Flask app in server.create_app


@sock.route("/ws")
def frontend_ws(ws):
    relay = current_app.extensions["clawrelay"]
    conn = FrontendConnection(ws, remote_addr=request.remote_addr or "")
    try:
        relay.accept(conn)
        while True:
            raw = ws.receive()
            if raw is None:
                continue
            relay.handle_message(conn, raw)
    except ConnectionClosed as exc:
        log.debug("Frontend socket %s closed: %s", conn.remote_addr, exc)
    finally:
        relay.disconnect(conn)
