"""
Browser connections and filtered broadcast.

A single relay process fans gateway output out to many browser tabs. Each
tab only ever sees frames for the session keys it has sent on itself;
connection-wide frames (status, errors) go to every authenticated tab.
"""
import logging
import threading

from clawrelay.frames import OutboundFrame

log = logging.getLogger("clawrelay.clients")


class FrontendConnection:
    """
    One browser socket.

    `sock` is anything with send(str) - a simple_websocket server socket in
    production. Writes are serialised with a per-connection lock because the
    handler thread and every gateway receive thread may write concurrently.
    """

    def __init__(self, sock, remote_addr: str = "", authenticated: bool = False):
        self.sock = sock
        self.remote_addr = remote_addr
        self.authenticated = authenticated
        self.owned_sessions: set[str] = set()
        self._send_lock = threading.Lock()

    def own(self, session_key: str):
        self.owned_sessions.add(session_key)

    def owns(self, session_key: str) -> bool:
        return session_key in self.owned_sessions

    def send(self, frame: OutboundFrame):
        text = frame.to_json()
        with self._send_lock:
            self.sock.send(text)

    def close(self):
        try:
            self.sock.close()
        except Exception as exc:
            log.debug("Error closing frontend socket %s: %s", self.remote_addr, exc)

    def __repr__(self):
        return (f"<FrontendConnection {self.remote_addr or '?'} "
                f"auth={self.authenticated} sessions={len(self.owned_sessions)}>")


class ClientRegistry:
    """Set of authenticated frontend connections that receive broadcasts."""

    def __init__(self):
        self._clients: set[FrontendConnection] = set()
        self._lock = threading.Lock()

    def add(self, conn: FrontendConnection):
        with self._lock:
            self._clients.add(conn)

    def discard(self, conn: FrontendConnection):
        with self._lock:
            self._clients.discard(conn)

    def __contains__(self, conn) -> bool:
        with self._lock:
            return conn in self._clients

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def recipients(self, frame: OutboundFrame) -> list[FrontendConnection]:
        with self._lock:
            clients = list(self._clients)
        out = []
        for conn in clients:
            if not conn.authenticated:
                continue
            if frame.session_scoped and not conn.owns(frame.session_key):
                continue
            out.append(conn)
        return out

    def broadcast(self, frame: OutboundFrame) -> int:
        """
        Deliver frame to every eligible connection, one at a time.

        A connection whose write fails is dropped from the registry and
        closed; the others still get the frame. Returns the number of
        connections that received it.
        """
        delivered = 0
        for conn in self.recipients(frame):
            try:
                conn.send(frame)
                delivered += 1
            except Exception as exc:
                log.info("Dropping frontend %s: %s send failed: %s",
                         conn.remote_addr, frame.type, exc)
                self.discard(conn)
                conn.close()
        return delivered
