"""Health check and the browser entry page."""
import logging

from flask import Blueprint, current_app, jsonify

log = logging.getLogger("clawrelay.routes.ui")

bp = Blueprint("ui", __name__)


@bp.route("/health")
def health():
    relay = current_app.extensions["clawrelay"]
    return jsonify({
        "ok": True,
        "port": relay.config.port,
        "gateways": relay.gateway_summary(),
    })


@bp.route("/")
def index():
    # 404 when no UI bundle is deployed under static/
    return current_app.send_static_file("index.html")
