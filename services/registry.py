"""
Service container.

One ``ReiServices`` is built per Flask app and stored in
``app.extensions["rei"]``; blueprints fetch it with ``get_services()``.
"""

from dataclasses import dataclass
from typing import Optional

from flask import current_app

from config.settings import AppSettings
from services.actions import ActionService
from services.aggregation_cache import AggregationCache
from services.background_tasks import BackgroundTaskManager
from services.production_sync import ProductionSyncJob
from services.range_store import RangeStore

EXTENSION_KEY = "rei"


@dataclass
class ReiServices:
    settings: AppSettings
    store: RangeStore
    cache: AggregationCache
    sync_job: ProductionSyncJob
    actions: ActionService
    tasks: Optional[BackgroundTaskManager] = None

    def shutdown(self) -> None:
        if self.tasks is not None:
            self.tasks.stop()
        self.cache.shutdown()


def get_services() -> ReiServices:
    """Services for the current app."""
    return current_app.extensions[EXTENSION_KEY]
