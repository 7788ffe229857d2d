"""
Relay entrypoint.

Loads config and the device identity, builds the Relay and its Flask app,
dials every configured gateway and serves browsers on one port:

  GET /ws       browser WebSocket (control protocol)
  GET /health   liveness + gateway connection status
  GET /logs     recent log lines
  GET /         static/index.html, when a UI bundle is deployed

Run with `python -m clawrelay.server` or the `clawrelay` console script.
"""
import logging
import pathlib
import signal
import sys
import threading

from flask import Flask
from werkzeug.serving import make_server

from clawrelay.config import VERSION, ConfigError, load_config
from clawrelay.identity import IdentityError, load_or_create
from clawrelay.log_buffer import LOG_FORMAT, LogBuffer, install_log_handler
from clawrelay.relay import Relay
from clawrelay.routes import logs as logs_bp
from clawrelay.routes import ui as ui_bp
from clawrelay.routes.ws import sock

log = logging.getLogger("clawrelay.server")

_STATIC = pathlib.Path(__file__).parent.parent / "static"


def create_app(relay: Relay, log_buffer: LogBuffer | None = None) -> Flask:
    app = Flask(__name__, static_folder=str(_STATIC), static_url_path="/static")
    app.extensions["clawrelay"] = relay
    app.extensions["clawrelay.logs"] = log_buffer
    app.register_blueprint(ui_bp.bp)
    app.register_blueprint(logs_bp.bp)
    sock.init_app(app)
    return app


def main(config_path: str | None = None):
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    log_buffer = install_log_handler()

    try:
        cfg = load_config(config_path)
    except ConfigError as exc:
        log.error("Failed to load config: %s", exc)
        sys.exit(1)
    logging.getLogger().setLevel(getattr(logging, cfg.log_level, logging.INFO))

    try:
        identity = load_or_create(cfg.identity_path)
    except IdentityError as exc:
        log.error("%s", exc)
        sys.exit(1)
    log.info("Device identity: %s", identity.device_id)

    relay = Relay(cfg, identity)
    app = create_app(relay, log_buffer)
    srv = make_server("0.0.0.0", cfg.port, app, threaded=True)

    def _shutdown(signum, _frame):
        log.info("Shutting down (signal %d)", signum)
        relay.stop()
        # shutdown() blocks until serve_forever returns, which runs on this thread
        threading.Thread(target=srv.shutdown, daemon=True).start()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    log.info("clawrelay %s listening on http://0.0.0.0:%d (auth %s)",
             VERSION, cfg.port, "on" if cfg.auth_required else "off")
    log.info("Loaded %d gateway(s)", len(cfg.gateways))
    for i, gw in enumerate(cfg.gateways):
        log.info("  [%d] %s - %s", i, gw.name, gw.url)

    relay.start()
    srv.serve_forever()


if __name__ == "__main__":
    main()
