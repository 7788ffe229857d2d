import json

import pytest
import websocket

from clawrelay import gateway
from clawrelay.config import GatewayConfig, RelayConfig
from clawrelay.gateway import GatewayLink
from clawrelay.identity import generate_identity


class FakeGatewaySocket:
    """Stands in for a websocket-client socket: records sends, replays recv frames."""

    def __init__(self, frames=None):
        self.sent: list[str] = []
        self.closed = False
        self.fail_send = False
        self._frames = list(frames or [])

    def send(self, text):
        if self.fail_send:
            raise OSError("broken pipe")
        self.sent.append(text)

    def recv(self):
        if self._frames:
            return self._frames.pop(0)
        raise websocket.WebSocketConnectionClosedException("Connection to remote host was lost.")

    def settimeout(self, _timeout):
        pass

    def close(self):
        self.closed = True

    def sent_json(self) -> list[dict]:
        return [json.loads(s) for s in self.sent if s not in ("ping", "pong")]


class FakeBrowserSocket:
    """Stands in for a simple_websocket server socket."""

    def __init__(self, fail_send=False):
        self.sent: list[str] = []
        self.fail_send = fail_send
        self.closed = False

    def send(self, text):
        if self.fail_send:
            raise ConnectionError("socket gone")
        self.sent.append(text)

    def close(self):
        self.closed = True

    def messages(self) -> list[dict]:
        return [json.loads(s) for s in self.sent]

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages()]


class FakeTimer:
    """Replaces threading.Timer so reconnects can be observed without sleeping."""
    created: list["FakeTimer"] = []

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function()


class SyncThread:
    """Replaces threading.Thread: runs the target inline on start()."""

    def __init__(self, target=None, daemon=None, name=None, args=(), kwargs=None):
        self._target = target
        self._args = args
        self._kwargs = kwargs or {}

    def start(self):
        self._target(*self._args, **self._kwargs)


def challenge(nonce="nonce-1") -> str:
    return json.dumps({"type": "event", "event": "connect.challenge", "payload": {"nonce": nonce}})


def connect_ok() -> str:
    return json.dumps({"type": "res", "id": "connect", "ok": True, "payload": {"type": "hello-ok"}})


def connect_rejected() -> str:
    return json.dumps({"type": "res", "id": "connect", "ok": False,
                       "error": {"code": "UNAUTHORIZED", "message": "bad token"}})


def agent_event(stream, data, session_key="agent:main:webui:s1", run_id="r1") -> str:
    return json.dumps({"type": "event", "event": "agent", "payload": {
        "stream": stream, "data": data, "runId": run_id, "sessionKey": session_key,
    }})


def handshake(link: GatewayLink, ws: FakeGatewaySocket, nonce="nonce-1"):
    link.attach(ws)
    link.handle_raw(challenge(nonce))
    link.handle_raw(connect_ok())


@pytest.fixture
def identity():
    return generate_identity()


@pytest.fixture
def fake_timers(monkeypatch):
    FakeTimer.created = []
    monkeypatch.setattr(gateway.threading, "Timer", FakeTimer)
    return FakeTimer.created


@pytest.fixture
def gateway_config():
    return GatewayConfig(name="primary", url="ws://gateway.test:18789", token="gw-token")


@pytest.fixture
def recorder():
    class Recorder:
        def __init__(self):
            self.frames = []
            self.statuses = []

        def on_frame(self, frame):
            self.frames.append(frame)

        def on_status(self, index, connected):
            self.statuses.append((index, connected))

    return Recorder()


@pytest.fixture
def link(gateway_config, identity, recorder, fake_timers):
    lnk = GatewayLink(0, gateway_config, identity, recorder.on_frame, recorder.on_status)
    yield lnk
    lnk.close()


@pytest.fixture
def relay_config(gateway_config):
    return RelayConfig(gateways=[gateway_config])
