"""
Health Check Routes

Operator health document built only from in-memory state, so it answers
even while the spreadsheet backend is unreachable.
"""

import logging
import time

from flask import Blueprint, jsonify

from config import Config
from services.actions import SERVICE_NAME, SERVICE_VERSION
from services.registry import get_services
from utils import utc_now_iso

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/health")

_started = time.monotonic()


@health_bp.route("", methods=["GET"])
def health_check():
    """Cache, sync and background task status plus masked settings; always 200."""
    services = get_services()
    cache_status = services.cache.get_status()
    sync_status = services.sync_job.get_sync_status()
    tasks = services.tasks.get_stats() if services.tasks else {"running": False, "tasks": {}}

    checks = {
        "cache": cache_status["state"] == "warm",
        "sync": not (sync_status["last_outcome"] and not sync_status["last_outcome"]["success"]),
    }
    overall = "healthy" if all(checks.values()) else "degraded"

    return jsonify(
        {
            "status": overall,
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "environment": services.settings.app_env,
            "uptime_seconds": round(time.monotonic() - _started, 1),
            "checks": checks,
            "cache": cache_status,
            "sync": sync_status,
            "background_tasks": tasks,
            "config": Config.to_dict(),
            "timestamp": utc_now_iso(),
        }
    )
