"""
Dashboard Action Routes

``POST /`` runs the action named in the JSON body and wraps its result in
``{success, data, timestamp, duration}``. ``GET /`` is a liveness document.
"""

import logging
import time

from flask import Blueprint, jsonify, request

from services.actions import SERVICE_NAME, SERVICE_VERSION, ActionError
from services.aggregation_cache import CacheNotReadyError
from services.range_store import RangeStoreError
from services.registry import get_services
from utils import utc_now_iso

logger = logging.getLogger(__name__)

actions_bp = Blueprint("actions", __name__)


def _error(message: str, status: int, started: float):
    return (
        jsonify(
            {
                "success": False,
                "error": message,
                "timestamp": utc_now_iso(),
                "duration": int((time.monotonic() - started) * 1000),
            }
        ),
        status,
    )


@actions_bp.route("/", methods=["GET"])
def index():
    return jsonify(
        {
            "status": "ok",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "timestamp": utc_now_iso(),
        }
    )


@actions_bp.route("/", methods=["POST"])
def run_action():
    """Dispatch ``{"action": name, ...}`` to its handler."""
    started = time.monotonic()
    body = request.get_json(silent=True)
    if body is None:
        body = {}
    if not isinstance(body, dict):
        return _error("Request body must be a JSON object", 400, started)

    data = dict(body)
    action = data.pop("action", None)

    try:
        result = get_services().actions.dispatch(action, data)
    except ActionError as e:
        return _error(str(e), e.status_code, started)
    except CacheNotReadyError as e:
        return _error(str(e), 503, started)
    except RangeStoreError as e:
        logger.error(f"Spreadsheet error in action {action}: {e}")
        return _error(str(e), 502, started)
    except Exception as e:
        logger.exception(f"API error in action {action}: {e}")
        return _error(str(e), 500, started)

    return jsonify(
        {
            "success": True,
            "data": result,
            "timestamp": utc_now_iso(),
            "duration": int((time.monotonic() - started) * 1000),
        }
    )
