"""
Request Logging Middleware for Flask

Logs every request with timing and keeps a bounded in-memory buffer of
recent requests plus running statistics, readable over:

    GET  /api/debug/requests         recent requests (newest first)
    GET  /api/debug/requests/stats   totals, error rate, slowest requests
    POST /api/debug/requests/clear   reset buffer and stats

Each response carries an ``X-Request-ID`` header; an incoming
``X-Request-ID`` is reused so callers can correlate logs.

Usage:
    from middleware import init_request_logging

    init_request_logging(app, exclude=("/api/health",))
"""

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from flask import Flask, g, jsonify, request

logger = logging.getLogger(__name__)

BUFFER_SIZE = 500
SLOW_REQUEST_MS = 100

# Most recent BUFFER_SIZE entries, oldest first
_log_buffer: List[Dict] = []
_log_lock = threading.Lock()
_stats_lock = threading.Lock()


def _empty_stats() -> Dict:
    return {
        "total_requests": 0,
        "total_errors": 0,
        "avg_duration_ms": 0.0,
        "status_counts": {},
        "slowest_requests": [],
    }


_stats: Dict = _empty_stats()


def _should_log(path: str, exclude: Iterable[str]) -> bool:
    return not any(path.startswith(prefix) for prefix in exclude)


def _add_to_buffer(entry: Dict) -> None:
    with _log_lock:
        _log_buffer.append(entry)
        del _log_buffer[:-BUFFER_SIZE]


def _update_stats(entry: Dict) -> None:
    with _stats_lock:
        _stats["total_requests"] += 1

        if entry["status"] >= 400:
            _stats["total_errors"] += 1

        status = str(entry["status"])
        _stats["status_counts"][status] = _stats["status_counts"].get(status, 0) + 1

        # Rolling average
        n = _stats["total_requests"]
        old_avg = _stats["avg_duration_ms"]
        _stats["avg_duration_ms"] = old_avg + (entry["duration_ms"] - old_avg) / n

        if entry["duration_ms"] > SLOW_REQUEST_MS:
            slow = _stats["slowest_requests"]
            slow.append(
                {
                    "path": entry["path"],
                    "method": entry["method"],
                    "duration_ms": entry["duration_ms"],
                    "timestamp": entry["timestamp"],
                }
            )
            slow.sort(key=lambda x: x["duration_ms"], reverse=True)
            del slow[20:]


def init_request_logging(app: Flask, enabled: bool = True, exclude: Iterable[str] = ()) -> None:
    """
    Initialize request logging middleware for a Flask app.

    Args:
        app: Flask application instance
        enabled: Skip installing the hooks when False
        exclude: Path prefixes that are neither logged nor buffered
    """
    if not enabled:
        logger.info("Request logging disabled")
        return

    excluded = tuple(exclude)
    logger.info(f"Request logging enabled (excluding {', '.join(excluded) or 'nothing'})")

    @app.before_request
    def start_request_timer():
        g.request_start_time = time.monotonic()
        g.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]

    @app.after_request
    def log_request(response):
        request_id = getattr(g, "request_id", None) or str(uuid.uuid4())[:8]
        response.headers["X-Request-ID"] = request_id

        if not _should_log(request.path, excluded):
            return response

        start_time = getattr(g, "request_start_time", time.monotonic())
        duration_ms = round((time.monotonic() - start_time) * 1000, 2)
        status = response.status_code

        entry = {
            "request_id": request_id,
            "timestamp": datetime.now().isoformat(),
            "method": request.method,
            "path": request.path,
            "query": request.query_string.decode() if request.query_string else None,
            "status": status,
            "duration_ms": duration_ms,
            "ip": request.remote_addr,
            "user_agent": request.headers.get("User-Agent", "")[:100],
            "response_size": response.content_length,
        }

        if status >= 500:
            log_func = logger.error
        elif status >= 400:
            log_func = logger.warning
        else:
            log_func = logger.info
        log_func(f"[{request_id}] {request.method} {request.path} | {status} | {duration_ms}ms")

        _add_to_buffer(entry)
        _update_stats(entry)
        return response

    _register_log_endpoints(app)


def _register_log_endpoints(app: Flask) -> None:
    @app.route("/api/debug/requests", methods=["GET"])
    def request_log_api():
        logs = get_request_logs(
            limit=request.args.get("limit", 100, type=int),
            status=request.args.get("status", type=int),
            method=request.args.get("method"),
            path_contains=request.args.get("path"),
            min_duration_ms=request.args.get("min_duration", type=float),
        )
        return jsonify({"logs": logs, "count": len(logs)})

    @app.route("/api/debug/requests/stats", methods=["GET"])
    def request_stats_api():
        return jsonify(get_request_stats())

    @app.route("/api/debug/requests/clear", methods=["POST"])
    def request_clear_api():
        clear_request_logs()
        return jsonify({"success": True})


def get_request_logs(
    limit: int = 100,
    status: Optional[int] = None,
    method: Optional[str] = None,
    path_contains: Optional[str] = None,
    min_duration_ms: Optional[float] = None,
) -> List[Dict]:
    """
    Buffered requests matching every given filter, newest first.

    Args:
        limit: Cap on returned entries
        status: Exact HTTP status
        method: HTTP method, any case
        path_contains: Substring of the request path
        min_duration_ms: Only requests at least this slow
    """
    wanted_method = method.upper() if method else None

    def matches(entry: Dict) -> bool:
        return (
            (status is None or entry["status"] == status)
            and (wanted_method is None or entry["method"] == wanted_method)
            and (not path_contains or path_contains in entry["path"])
            and (min_duration_ms is None or entry["duration_ms"] >= min_duration_ms)
        )

    with _log_lock:
        newest_first = list(reversed(_log_buffer))
    return [entry for entry in newest_first if matches(entry)][:limit]


def get_request_stats() -> Dict:
    with _stats_lock:
        total = _stats["total_requests"]
        return {
            "total_requests": total,
            "total_errors": _stats["total_errors"],
            "error_rate": round(_stats["total_errors"] / max(total, 1) * 100, 2),
            "avg_duration_ms": round(_stats["avg_duration_ms"], 2),
            "status_counts": dict(_stats["status_counts"]),
            "slowest_requests": list(_stats["slowest_requests"][:10]),
        }


def clear_request_logs() -> None:
    """Empty the buffer and start the statistics over."""
    global _stats
    with _log_lock:
        _log_buffer.clear()
    with _stats_lock:
        _stats = _empty_stats()
