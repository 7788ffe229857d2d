"""
Recent relay log lines from the in-memory buffer.

  GET /logs?tail=200&level=WARNING&logger=clawrelay.gateway&format=text
"""
import logging

from flask import Blueprint, Response, current_app, jsonify, request

log = logging.getLogger("clawrelay.routes.logs")

bp = Blueprint("logs", __name__)

TAIL_DEFAULT = 200
TAIL_MAX = 500


def _query_buffer() -> list[dict]:
    buffer = current_app.extensions.get("clawrelay.logs")
    if buffer is None:
        return []
    tail = request.args.get("tail", default=TAIL_DEFAULT, type=int)
    return buffer.recent(
        limit=max(1, min(TAIL_MAX, tail)),
        min_level=request.args.get("level") or None,
        logger=request.args.get("logger") or None,
    )


@bp.route("/logs")
def get_logs():
    lines = _query_buffer()
    if (request.args.get("format") or "").strip().lower() == "text":
        body = "".join(entry["message"] + "\n" for entry in lines)
        return Response(body, mimetype="text/plain; charset=utf-8")
    return jsonify({"count": len(lines), "lines": lines})
