#!/usr/bin/env python3
"""
REI API

Flask service in front of the property-management spreadsheets: dashboard
actions, cached MAIN-tab aggregates and the scheduled production sync.

Usage:
    PME_SHEET_ID=... WORKFLOW_PROCESSOR_SHEET_ID=... python app.py

    # or under a WSGI server
    gunicorn "app:create_app()"
"""

import atexit
import logging
import sys
from typing import Optional

from flask import Flask

from config import AppSettings, Config, ConfigError
from middleware import init_request_logging
from services.actions import ActionService
from services.actions_routes import actions_bp
from services.aggregation_cache import AggregationCache
from services.background_tasks import build_task_manager
from services.cache_routes import cache_bp
from services.health_routes import health_bp
from services.production_sync import ProductionSyncJob
from services.range_store import GspreadRangeStore, RangeRef, RangeStore
from services.registry import EXTENSION_KEY, ReiServices
from services.sync_routes import sync_bp

logger = logging.getLogger("rei_api")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[logging.StreamHandler()])
    root.setLevel(level)
    # urllib3 logs every Sheets request at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_services(settings: AppSettings, store: Optional[RangeStore] = None) -> ReiServices:
    """Wire the range store, cache, sync job and action handlers together."""
    if store is None:
        store = GspreadRangeStore(
            service_account_key=settings.service_account_key,
            service_account_file=settings.service_account_file,
            timeout=settings.sheets_timeout_seconds,
        )

    cache = AggregationCache(
        store,
        RangeRef(settings.pme_sheet_id, settings.main_tab, settings.main_range_span),
        ttl_seconds=settings.cache_ttl_seconds,
    )
    sync_job = ProductionSyncJob(store, settings)
    actions = ActionService(store, settings, cache)
    return ReiServices(
        settings=settings,
        store=store,
        cache=cache,
        sync_job=sync_job,
        actions=actions,
        tasks=build_task_manager(cache, sync_job, settings),
    )


def create_app(
    settings: Optional[AppSettings] = None,
    store: Optional[RangeStore] = None,
    start_background: bool = True,
) -> Flask:
    """Application factory.

    Settings are validated before any timer is armed; a missing or invalid
    variable raises ConfigError here.

    Args:
        settings: Pre-built settings (read from the environment when None)
        store: Range store to use (gspread-backed when None)
        start_background: Start the cache refresh and sync timers

    Returns:
        Configured Flask app
    """
    if settings is None:
        settings = AppSettings.from_env()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    app.config["DEBUG"] = settings.debug
    app.config["TESTING"] = settings.app_env == "test"

    services = build_services(settings, store)
    app.extensions[EXTENSION_KEY] = services

    init_request_logging(
        app,
        enabled=settings.request_log_enabled,
        exclude=settings.request_log_exclude,
    )
    app.register_blueprint(actions_bp)
    app.register_blueprint(cache_bp)
    app.register_blueprint(sync_bp)
    app.register_blueprint(health_bp)

    if start_background and services.tasks is not None and not app.config["TESTING"]:
        services.tasks.start()
        atexit.register(services.shutdown)

    logger.info(
        f"REI API ready (env={settings.app_env}, cache_ttl={settings.cache_ttl_seconds}s, "
        f"sync={'on' if settings.sync_enabled else 'off'})"
    )
    return app


def main() -> int:
    configure_logging(Config.get("LOG_LEVEL", "INFO"))
    try:
        settings = AppSettings.from_env()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    app = create_app(settings)
    app.run(host=settings.host, port=settings.port, debug=settings.debug, use_reloader=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
