"""
Aggregation Cache API Routes

Flask blueprint exposing the cached dashboard aggregates.
Import and register in app.py with:
    from services.cache_routes import cache_bp
    app.register_blueprint(cache_bp)
"""

import logging

from flask import Blueprint, jsonify, request

from services.range_store import RangeStoreError
from services.registry import get_services

logger = logging.getLogger(__name__)

cache_bp = Blueprint("cache", __name__, url_prefix="/api/cache")


def _not_ready_response(cache):
    status = cache.get_status()
    return (
        jsonify(
            {
                "success": False,
                "ready": False,
                "error": "Aggregates are not ready yet",
                "status": status,
            }
        ),
        503,
        {"Cache-Control": "no-store", "Retry-After": "30"},
    )


@cache_bp.route("/aggregates", methods=["GET"])
def get_aggregates():
    """Current aggregates; 503 until the first successful refresh."""
    try:
        cache = get_services().cache
        view = cache.get_aggregates()
        if not view.ready:
            return _not_ready_response(cache)

        headers = cache.get_cache_headers(view)
        if request.if_none_match and request.if_none_match.contains(view.etag):
            return "", 304, headers

        body = {"success": True}
        body.update(view.to_dict())
        return jsonify(body), 200, headers
    except Exception as e:
        logger.error(f"Error getting aggregates: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@cache_bp.route("/aggregates/<facet>", methods=["GET"])
def get_aggregate_facet(facet):
    """One facet of the aggregates: summary, a numeric field or a group-by."""
    try:
        cache = get_services().cache
        view = cache.get_aggregates()
        if not view.ready:
            return _not_ready_response(cache)

        data = view.aggregates.facet(facet)
        if data is None:
            return jsonify({"success": False, "error": f"Unknown facet: {facet}"}), 404

        return (
            jsonify(
                {
                    "success": True,
                    "facet": facet,
                    "data": data,
                    "cache_age_seconds": view.cache_age_seconds,
                    "stale": view.stale,
                }
            ),
            200,
            cache.get_cache_headers(view),
        )
    except Exception as e:
        logger.error(f"Error getting aggregate facet {facet}: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@cache_bp.route("/refresh", methods=["POST"])
def refresh_cache():
    """Force a refresh; joins one already in flight."""
    cache = get_services().cache
    try:
        snapshot = cache.force_refresh()
        return jsonify(
            {
                "success": True,
                "property_count": snapshot.aggregates.property_count,
                "status": cache.get_status(),
            }
        )
    except RangeStoreError as e:
        logger.warning(f"Forced cache refresh failed: {e}")
        return jsonify({"success": False, "error": str(e), "status": cache.get_status()}), 502
    except Exception as e:
        logger.exception(f"Unexpected error refreshing cache: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@cache_bp.route("/status", methods=["GET"])
def cache_status():
    """Cache state without any spreadsheet I/O."""
    return jsonify(get_services().cache.get_status())
