"""
Aggregation Cache

Keeps the latest snapshot of the property master (MAIN) tab in memory
together with its header index and precomputed dashboard aggregates.

State model:
    EMPTY  - no successful refresh yet; readers get a "not ready" view
    WARM   - snapshot younger than the TTL; reads do no I/O
    STALE  - snapshot at or past the TTL; the next read refreshes first

Guarantees:
    - a snapshot's aggregates come from exactly that snapshot's rows
    - snapshots are swapped in whole, never patched in place
    - concurrent refreshes are single-flighted: callers arriving while a
      fetch is outstanding wait for it instead of issuing their own
    - a failed refresh keeps serving the previous snapshot, flagged stale

Usage:
    from services.aggregation_cache import AggregationCache

    cache = AggregationCache(store, RangeRef(sheet_id, "MAIN", "A:ZZ"))
    view = cache.get_aggregates()
    if view.ready:
        total = view.aggregates.totals["gross_rcpts"]
"""

import hashlib
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from services.range_store import RangeRef, RangeStore
from utils import group_key, parse_amount
from utils.header_index import HeaderIndex

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300

# Numeric columns summed for the dashboard: field -> header aliases
NUMERIC_FIELDS: Dict[str, Tuple[str, ...]] = {
    "gross_rcpts": ("GROSS_RCPTS", "GROSS_RECEIPTS"),
    "rent": ("RENT", "MONTHLY_RENT", "RENT_AMOUNT"),
    "loan_balance": ("LOAN_BALANCE", "LOAN_BAL"),
    "tax": ("TAX", "PROPERTY_TAX", "TAXES"),
}

# Group-by columns counted per distinct value: field -> header aliases
GROUP_FIELDS: Dict[str, Tuple[str, ...]] = {
    "status": ("STATUS", "PROPERTY_STATUS"),
    "city": ("CITY",),
    "entity": ("ENTITY", "OWNING_ENTITY", "OWNER_ENTITY"),
}


class CacheNotReadyError(Exception):
    """Raised when snapshot data is requested before the first successful refresh."""

    def __init__(self, last_error: Optional[str] = None):
        self.last_error = last_error
        message = "Property data is not loaded yet"
        if last_error:
            message += f" (last refresh failed: {last_error})"
        super().__init__(message)


@dataclass(frozen=True)
class Aggregates:
    """Derived dashboard values for one snapshot."""

    property_count: int
    totals: Dict[str, float]
    counts: Dict[str, int]
    groups: Dict[str, Dict[str, int]]
    missing_columns: Tuple[str, ...] = ()

    def facet(self, name: str) -> Optional[Dict[str, Any]]:
        """One slice of the aggregates, or None for an unknown facet."""
        if name == "summary":
            return {
                "property_count": self.property_count,
                "totals": dict(self.totals),
                "counts": dict(self.counts),
            }
        if name in self.totals:
            return {"field": name, "total": self.totals[name], "count": self.counts[name]}
        if name in self.groups:
            return {"field": name, "groups": dict(self.groups[name])}
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "property_count": self.property_count,
            "totals": dict(self.totals),
            "counts": dict(self.counts),
            "groups": {name: dict(values) for name, values in self.groups.items()},
            "missing_columns": list(self.missing_columns),
        }


def compute_aggregates(
    rows: Sequence[Sequence[Any]],
    index: HeaderIndex,
    numeric_fields: Mapping[str, Tuple[str, ...]] = NUMERIC_FIELDS,
    group_fields: Mapping[str, Tuple[str, ...]] = GROUP_FIELDS,
) -> Aggregates:
    """Compute aggregates over data rows in a single pass.

    A numeric cell adds to its total when it parses as a finite number after
    stripping ``,`` and ``$``, and to its count only when that number is
    positive. Group keys are the trimmed cell text or ``Unknown``. Columns
    with none of their aliases in the header are skipped and reported in
    ``missing_columns``.

    Args:
        rows: Data rows (header row excluded)
        index: Header index built from the header row

    Returns:
        Aggregates for exactly these rows
    """
    numeric_columns = {}
    group_columns = {}
    missing = []
    for name, aliases in numeric_fields.items():
        column = index.find(*aliases)
        if column is None:
            missing.append(name)
        else:
            numeric_columns[name] = column
    for name, aliases in group_fields.items():
        column = index.find(*aliases)
        if column is None:
            missing.append(name)
        else:
            group_columns[name] = column

    totals = {name: 0.0 for name in numeric_fields}
    counts = {name: 0 for name in numeric_fields}
    groups: Dict[str, Dict[str, int]] = {name: {} for name in group_fields}
    property_count = 0

    for row in rows:
        if not any(cell not in ("", None) for cell in row):
            continue
        property_count += 1

        for name, column in numeric_columns.items():
            amount = parse_amount(row[column] if column < len(row) else None)
            if amount is None:
                continue
            totals[name] += amount
            if amount > 0:
                counts[name] += 1

        for name, column in group_columns.items():
            key = group_key(row[column] if column < len(row) else None)
            bucket = groups[name]
            bucket[key] = bucket.get(key, 0) + 1

    return Aggregates(
        property_count=property_count,
        totals={name: round(value, 2) for name, value in totals.items()},
        counts=counts,
        groups=groups,
        missing_columns=tuple(missing),
    )


@dataclass(frozen=True)
class Snapshot:
    """One complete read of the main tab and everything derived from it."""

    header: Tuple[Any, ...]
    rows: Tuple[Tuple[Any, ...], ...]
    header_index: HeaderIndex
    aggregates: Aggregates
    refreshed_at: float
    refreshed_at_wall: datetime
    etag: str

    @classmethod
    def build(cls, matrix: Sequence[Sequence[Any]], refreshed_at: float, wall: datetime) -> "Snapshot":
        header = tuple(matrix[0]) if matrix else ()
        rows = tuple(tuple(row) for row in matrix[1:])
        index = HeaderIndex.build(header)
        aggregates = compute_aggregates(rows, index)
        etag = hashlib.md5(f"{wall.isoformat()}:{len(rows)}".encode()).hexdigest()[:16]
        return cls(
            header=header,
            rows=rows,
            header_index=index,
            aggregates=aggregates,
            refreshed_at=refreshed_at,
            refreshed_at_wall=wall,
            etag=etag,
        )


@dataclass
class CacheView:
    """What a reader sees: aggregates plus their freshness."""

    ready: bool
    state: str
    aggregates: Optional[Aggregates] = None
    cache_age_seconds: Optional[float] = None
    stale: bool = False
    refreshed_at: Optional[str] = None
    etag: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "state": self.state,
            "stale": self.stale,
            "cache_age_seconds": self.cache_age_seconds,
            "refreshed_at": self.refreshed_at,
            "last_error": self.last_error,
            "aggregates": self.aggregates.to_dict() if self.aggregates else None,
        }


@dataclass
class _CacheMetadata:
    refresh_count: int = 0
    failure_count: int = 0
    last_refresh: Optional[str] = None
    last_failure: Optional[str] = None
    last_error: Optional[str] = None
    last_duration_ms: Optional[float] = None
    stale_serves: int = 0
    history: List[Dict[str, Any]] = field(default_factory=list)


class AggregationCache:
    """Read-through, TTL-bounded cache of the main tab with single-flight refresh."""

    def __init__(
        self,
        store: RangeStore,
        source: RangeRef,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            store: Range store to read the main tab from
            source: Range of the main tab (header row included)
            ttl_seconds: Snapshot time-to-live
            clock: Monotonic clock used for TTL arithmetic
            now: Wall clock used for reported timestamps
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.store = store
        self.source = source
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._now = now
        self._snapshot: Optional[Snapshot] = None
        self._inflight: Optional[Future] = None
        self._lock = threading.Lock()
        self._metadata = _CacheMetadata()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def _age(self, snapshot: Snapshot) -> float:
        return max(0.0, self._clock() - snapshot.refreshed_at)

    def _expired(self, snapshot: Snapshot) -> bool:
        return self._age(snapshot) >= self.ttl_seconds

    @property
    def state(self) -> str:
        snapshot = self._snapshot
        if snapshot is None:
            return "empty"
        return "stale" if self._expired(snapshot) else "warm"

    @property
    def is_refreshing(self) -> bool:
        with self._lock:
            return self._inflight is not None

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------
    def refresh(self) -> Snapshot:
        """Fetch the main tab and swap in a new snapshot.

        If a refresh is already in flight, wait for it and return its result
        (or raise its error) instead of fetching again.

        Returns:
            The newly installed snapshot

        Raises:
            RangeStoreError: If the fetch fails
        """
        with self._lock:
            future = self._inflight
            leader = future is None
            if leader:
                future = Future()
                self._inflight = future

        if not leader:
            logger.debug("Refresh already in flight, waiting for it")
            return future.result()

        started = self._clock()
        try:
            matrix = self.store.read_range(self.source)
            snapshot = Snapshot.build(matrix, self._clock(), self._now())
        except BaseException as e:
            with self._lock:
                self._inflight = None
                self._record_failure(e)
            future.set_exception(e)
            raise

        with self._lock:
            self._snapshot = snapshot
            self._inflight = None
            self._record_success(snapshot, (self._clock() - started) * 1000)
        future.set_result(snapshot)

        if snapshot.aggregates.missing_columns:
            logger.warning(
                f"Main tab is missing columns: {', '.join(snapshot.aggregates.missing_columns)}"
            )
        logger.info(
            f"Refreshed {self.source.tab} snapshot: {snapshot.aggregates.property_count} properties"
        )
        return snapshot

    def force_refresh(self) -> Snapshot:
        """Refresh now regardless of TTL (still single-flighted)."""
        return self.refresh()

    def refresh_quietly(self) -> bool:
        """Refresh for the background timer; failures are logged, never raised."""
        try:
            self.refresh()
            return True
        except Exception as e:
            logger.warning(f"Background refresh of {self.source.tab} failed: {e}")
            return False

    def _record_success(self, snapshot: Snapshot, duration_ms: float) -> None:
        meta = self._metadata
        meta.refresh_count += 1
        meta.last_refresh = snapshot.refreshed_at_wall.isoformat()
        meta.last_error = None
        meta.last_duration_ms = round(duration_ms, 1)
        self._append_history({"time": meta.last_refresh, "ok": True, "rows": len(snapshot.rows)})

    def _record_failure(self, error: BaseException) -> None:
        meta = self._metadata
        meta.failure_count += 1
        meta.last_failure = self._now().isoformat()
        meta.last_error = str(error) or type(error).__name__
        self._append_history({"time": meta.last_failure, "ok": False, "error": meta.last_error})

    def _append_history(self, entry: Dict[str, Any]) -> None:
        history = self._metadata.history
        history.append(entry)
        # Keep only last 20 refresh attempts
        del history[:-20]

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------
    def _get_or_refresh(self) -> Tuple[Optional[Snapshot], bool]:
        """Return (snapshot, stale) refreshing first when expired or empty."""
        snapshot = self._snapshot
        if snapshot is not None and not self._expired(snapshot):
            return snapshot, False

        try:
            return self.refresh(), False
        except Exception as e:
            previous = self._snapshot
            if previous is None:
                logger.error(f"Refresh of {self.source.tab} failed with no snapshot to serve: {e}")
                return None, False
            with self._lock:
                self._metadata.stale_serves += 1
            logger.warning(
                f"Refresh of {self.source.tab} failed, serving snapshot aged "
                f"{self._age(previous):.0f}s: {e}"
            )
            return previous, True

    def get_aggregates(self) -> CacheView:
        """Aggregates no older than the TTL, or the last good ones if refresh fails.

        Never raises for collaborator failures; check ``ready`` on the view.
        """
        snapshot, stale = self._get_or_refresh()
        return self._view(snapshot, stale)

    def get_snapshot(self) -> Snapshot:
        """Snapshot for handlers that need rows, with the same staleness rules.

        Raises:
            CacheNotReadyError: If there has never been a successful refresh
        """
        snapshot, _stale = self._get_or_refresh()
        if snapshot is None:
            raise CacheNotReadyError(self._metadata.last_error)
        return snapshot

    def peek(self) -> CacheView:
        """Current view without triggering any I/O."""
        snapshot = self._snapshot
        stale = snapshot is not None and self._expired(snapshot)
        return self._view(snapshot, stale)

    def _view(self, snapshot: Optional[Snapshot], stale: bool) -> CacheView:
        if snapshot is None:
            return CacheView(ready=False, state="empty", last_error=self._metadata.last_error)
        return CacheView(
            ready=True,
            state="stale" if stale or self._expired(snapshot) else "warm",
            aggregates=snapshot.aggregates,
            cache_age_seconds=round(self._age(snapshot), 1),
            stale=stale,
            refreshed_at=snapshot.refreshed_at_wall.isoformat(),
            etag=snapshot.etag,
            last_error=self._metadata.last_error,
        )

    def get_status(self) -> Dict[str, Any]:
        """Operator status; never performs I/O and never raises."""
        snapshot = self._snapshot
        with self._lock:
            meta = self._metadata
            status = {
                "state": self.state,
                "source": str(self.source),
                "ttl_seconds": self.ttl_seconds,
                "refreshing": self._inflight is not None,
                "refresh_count": meta.refresh_count,
                "failure_count": meta.failure_count,
                "stale_serves": meta.stale_serves,
                "last_refresh": meta.last_refresh,
                "last_failure": meta.last_failure,
                "last_error": meta.last_error,
                "last_duration_ms": meta.last_duration_ms,
                "recent": list(meta.history[-5:]),
            }
        if snapshot is not None:
            age = self._age(snapshot)
            status["cache_age_seconds"] = round(age, 1)
            status["expires_in_seconds"] = round(max(0.0, self.ttl_seconds - age), 1)
            status["property_count"] = snapshot.aggregates.property_count
            status["etag"] = snapshot.etag
        return status

    def get_cache_headers(self, view: CacheView) -> Dict[str, str]:
        """HTTP cache headers for a view of the aggregates."""
        headers = {"X-Cache-State": view.state}
        if view.ready:
            remaining = max(0, int(self.ttl_seconds - (view.cache_age_seconds or 0)))
            headers["Cache-Control"] = f"private, max-age={remaining}"
            headers["ETag"] = f'"{view.etag}"'
            headers["X-Cache-Age"] = str(view.cache_age_seconds)
        else:
            headers["Cache-Control"] = "no-store"
        return headers

    def shutdown(self) -> None:
        """Drop the snapshot; the next read starts from EMPTY."""
        with self._lock:
            self._snapshot = None
        logger.info(f"Aggregation cache for {self.source.tab} shut down")
