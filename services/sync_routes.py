"""
Production Sync API Routes

Flask blueprint for triggering and inspecting the production sync.
Import and register in app.py with:
    from services.sync_routes import sync_bp
    app.register_blueprint(sync_bp)
"""

import logging

from flask import Blueprint, jsonify

from services.production_sync import SyncOutcome
from services.registry import get_services

logger = logging.getLogger(__name__)

sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


def _outcome_response(outcome: SyncOutcome):
    if outcome.success:
        status = 200
    elif outcome.reason and outcome.reason.startswith("control read failed"):
        status = 502
    else:
        status = 422
    return jsonify(outcome.to_dict()), status


@sync_bp.route("/run", methods=["GET"])
def run_sync():
    """Run the sync if the control cell changed since the last run."""
    try:
        return _outcome_response(get_services().sync_job.run_sync(force=False))
    except Exception as e:
        logger.exception(f"Error running production sync: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@sync_bp.route("/force", methods=["GET"])
def force_sync():
    """Run the sync regardless of the control cell."""
    try:
        return _outcome_response(get_services().sync_job.run_sync(force=True))
    except Exception as e:
        logger.exception(f"Error forcing production sync: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@sync_bp.route("/status", methods=["GET"])
def sync_status():
    """Last control value, last sync time and last outcome."""
    return jsonify(get_services().sync_job.get_sync_status())
