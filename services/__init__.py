# Services module
from .aggregation_cache import AggregationCache, CacheNotReadyError
from .production_sync import ProductionSyncJob, SyncOutcome, SyncResult
from .range_store import GspreadRangeStore, InMemoryRangeStore, RangeRef, RangeStoreError

__all__ = [
    "AggregationCache",
    "CacheNotReadyError",
    "GspreadRangeStore",
    "InMemoryRangeStore",
    "ProductionSyncJob",
    "RangeRef",
    "RangeStoreError",
    "SyncOutcome",
    "SyncResult",
]
