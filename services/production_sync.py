"""
Production Sync

Mirrors an externally referenced spreadsheet into fixed target tabs.

A control cell holds the production date. For each configured
(source tab, target tab) pair, the source tab is scanned for the latest
row on that date; the row carries a link to an external spreadsheet whose
full first-worksheet contents replace the target tab.

Runs are skipped when the control value has not changed since the last
completed run (unless forced) and are serialized: a run that starts while
another is in progress is skipped, not queued.
"""

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from config.settings import AppSettings, SyncPairSettings
from services.range_store import RangeRef, RangeStore, RangeStoreError, parse_span
from utils import parse_sheet_datetime

logger = logging.getLogger(__name__)

SHEET_ID_PATTERN = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")


class SyncReason:
    """Per-pair failure reasons."""

    NO_DATA = "no_data"
    NO_MATCHING_DATE = "no_matching_date"
    INVALID_REFERENCE = "invalid_reference"
    EXTERNAL_EMPTY = "external_empty"
    STORE_ERROR = "store_error"
    UNEXPECTED_ERROR = "unexpected_error"


@dataclass
class SyncState:
    """Last-seen control value and time of the last completed sync."""

    last_control_value: Optional[str] = None
    last_sync_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_control_value": self.last_control_value,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
        }


@dataclass
class SyncResult:
    """Outcome of mirroring one source/target pair."""

    source_tab: str
    target_tab: str
    success: bool = False
    rows_copied: int = 0
    source_row: Optional[int] = None
    reference: Optional[str] = None
    sheet_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, pair: SyncPairSettings, reason: str, error: str, **kwargs) -> "SyncResult":
        return cls(
            source_tab=pair.source_tab,
            target_tab=pair.target_tab,
            success=False,
            reason=reason,
            error=error,
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_tab": self.source_tab,
            "target_tab": self.target_tab,
            "success": self.success,
            "rows_copied": self.rows_copied,
            "source_row": self.source_row,
            "reference": self.reference,
            "sheet_id": self.sheet_id,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class SyncOutcome:
    """Result of one run_sync call."""

    success: bool
    skipped: bool = False
    reason: Optional[str] = None
    forced: bool = False
    control_value: Optional[str] = None
    target_date: Optional[str] = None
    results: List[SyncResult] = field(default_factory=list)
    started_at: Optional[str] = None
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "reason": self.reason,
            "forced": self.forced,
            "control_value": self.control_value,
            "target_date": self.target_date,
            "results": [r.to_dict() for r in self.results],
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
        }


def extract_sheet_id(url: Any) -> Optional[str]:
    """Spreadsheet id from a Google Sheets URL, or None.

    Examples:
        >>> extract_sheet_id("https://docs.google.com/spreadsheets/d/abc-123_X/edit#gid=0")
        'abc-123_X'
        >>> extract_sheet_id("https://example.com/file") is None
        True
    """
    if not isinstance(url, str):
        return None
    match = SHEET_ID_PATTERN.search(url)
    return match.group(1) if match else None


def select_source_row(
    rows: Sequence[Sequence[Any]],
    target_date: datetime,
    timestamp_column: int = 0,
    first_row: int = 1,
) -> Optional[Tuple[int, Sequence[Any]]]:
    """Latest row whose timestamp falls on the target date.

    Only the date component is compared. On equal timestamps the earlier
    row is kept. Rows whose timestamp cell does not parse (a header row,
    blanks) are ignored.

    Args:
        rows: Source tab rows
        target_date: Date to match
        timestamp_column: Zero-based column holding the timestamp
        first_row: Sheet row number of ``rows[0]``

    Returns:
        (sheet row number, row) or None if no row matches
    """
    wanted = target_date.date()
    best: Optional[Tuple[int, Sequence[Any]]] = None
    best_ts: Optional[datetime] = None

    for offset, row in enumerate(rows):
        if timestamp_column >= len(row):
            continue
        ts = parse_sheet_datetime(row[timestamp_column])
        if ts is None or ts.date() != wanted:
            continue
        if best_ts is None or ts > best_ts:
            best, best_ts = (first_row + offset, row), ts

    return best


class ProductionSyncJob:
    """Control-cell driven mirror of external production sheets."""

    def __init__(
        self,
        store: RangeStore,
        settings: AppSettings,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.settings = settings
        self._now = now
        self.state = SyncState()
        self.last_outcome: Optional[SyncOutcome] = None
        self.run_count = 0
        self.skip_count = 0
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()

    @property
    def sheet_id(self) -> str:
        return self.settings.effective_sync_sheet_id

    @property
    def control_ref(self) -> RangeRef:
        return RangeRef(self.sheet_id, self.settings.control_tab, self.settings.control_cell)

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run_sync(self, force: bool = False) -> SyncOutcome:
        """Run both pairs if the control value changed (or ``force``).

        Never raises for store or data failures; they are reported in the
        returned outcome.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("Production sync already running, skipping")
            return SyncOutcome(success=True, skipped=True, reason="sync already running", forced=force)

        try:
            outcome = self._run(force)
        finally:
            self._run_lock.release()

        with self._state_lock:
            if outcome.skipped:
                self.skip_count += 1
            else:
                self.run_count += 1
            self.last_outcome = outcome
        return outcome

    def _run(self, force: bool) -> SyncOutcome:
        started = time.monotonic()
        started_at = self._now().isoformat()

        def finish(outcome: SyncOutcome) -> SyncOutcome:
            outcome.started_at = started_at
            outcome.duration_ms = round((time.monotonic() - started) * 1000, 1)
            return outcome

        try:
            control = self._read_control()
        except RangeStoreError as e:
            logger.error(f"Failed to read sync control cell {self.control_ref}: {e}")
            return finish(SyncOutcome(success=False, reason=f"control read failed: {e}", forced=force))

        with self._state_lock:
            last_control = self.state.last_control_value
        if not force and control == last_control:
            logger.debug(f"Control value unchanged ({control!r}), skipping sync")
            return finish(SyncOutcome(success=True, skipped=True, reason="no change", control_value=control))

        target_date = parse_sheet_datetime(control)
        if target_date is None:
            logger.warning(f"Invalid date in sync control cell: {control!r}")
            return finish(
                SyncOutcome(
                    success=False,
                    reason="invalid date in control cell",
                    forced=force,
                    control_value=control,
                )
            )

        logger.info(f"Starting production sync for {target_date.date()} (force={force})")
        results, success = self._sync_pairs(target_date)

        with self._state_lock:
            self.state = SyncState(last_control_value=control, last_sync_at=self._now())

        copied = sum(r.rows_copied for r in results)
        logger.info(
            f"Production sync finished: {sum(r.success for r in results)}/{len(results)} pairs, "
            f"{copied} rows copied"
        )
        return finish(
            SyncOutcome(
                success=success,
                forced=force,
                control_value=control,
                target_date=target_date.date().isoformat(),
                results=results,
            )
        )

    def _read_control(self) -> str:
        matrix = self.store.read_range(self.control_ref)
        if not matrix or not matrix[0]:
            return ""
        value = matrix[0][0]
        return "" if value is None else str(value).strip()

    def _sync_pairs(self, target_date: datetime) -> Tuple[List[SyncResult], bool]:
        pairs = list(self.settings.sync_pairs)
        results: List[SyncResult] = []
        success = True

        # Pairs write disjoint target tabs
        with ThreadPoolExecutor(max_workers=len(pairs), thread_name_prefix="production-sync") as pool:
            futures = [(pair, pool.submit(self.sync_one, pair, target_date)) for pair in pairs]
            for pair, future in futures:
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.exception(f"Unexpected error syncing {pair.name}")
                    results.append(SyncResult.failed(pair, SyncReason.UNEXPECTED_ERROR, str(e)))
                    success = False

        return results, success

    def sync_one(self, pair: SyncPairSettings, target_date: datetime) -> SyncResult:
        """Mirror one pair for ``target_date``.

        Store failures and data problems become a failed result; anything
        else propagates to the caller.
        """
        source_ref = RangeRef(self.sheet_id, pair.source_tab, self.settings.sync_source_span)
        target_ref = RangeRef(self.sheet_id, pair.target_tab, self.settings.sync_target_span)

        try:
            rows = self.store.read_range(source_ref)
            if not rows:
                logger.warning(f"{pair.source_tab} has no rows")
                return SyncResult.failed(pair, SyncReason.NO_DATA, f"{pair.source_tab} is empty")

            _, first_row, _, _ = parse_span(source_ref.span)
            match = select_source_row(
                rows,
                target_date,
                timestamp_column=self.settings.sync_timestamp_column,
                first_row=first_row or 1,
            )
            if match is None:
                logger.warning(f"No {pair.source_tab} row dated {target_date.date()}")
                return SyncResult.failed(
                    pair,
                    SyncReason.NO_MATCHING_DATE,
                    f"No row dated {target_date.date().isoformat()}",
                )

            source_row, row = match
            url_column = self.settings.sync_url_column
            reference = row[url_column] if url_column < len(row) else None
            sheet_id = extract_sheet_id(reference)
            if sheet_id is None:
                logger.warning(f"{pair.source_tab} row {source_row} has no sheet link: {reference!r}")
                return SyncResult.failed(
                    pair,
                    SyncReason.INVALID_REFERENCE,
                    "Reference is not a Google Sheets URL",
                    source_row=source_row,
                    reference=reference,
                )

            external = self.store.read_sheet(sheet_id)
            if not any(any(cell not in ("", None) for cell in r) for r in external):
                logger.warning(f"External sheet {sheet_id} is empty")
                return SyncResult.failed(
                    pair,
                    SyncReason.EXTERNAL_EMPTY,
                    "External sheet has no data",
                    source_row=source_row,
                    reference=reference,
                    sheet_id=sheet_id,
                )

            self.store.clear_range(target_ref)
            self.store.write_range(target_ref.first_cell(), external)

        except RangeStoreError as e:
            logger.error(f"Store error syncing {pair.name}: {e}")
            return SyncResult.failed(pair, SyncReason.STORE_ERROR, str(e))

        logger.info(f"Copied {len(external)} rows from {sheet_id} into {pair.target_tab}")
        return SyncResult(
            source_tab=pair.source_tab,
            target_tab=pair.target_tab,
            success=True,
            rows_copied=len(external),
            source_row=source_row,
            reference=reference,
            sheet_id=sheet_id,
        )

    def run_sync_quietly(self) -> None:
        """Timer entry point; logs instead of raising."""
        try:
            outcome = self.run_sync(force=False)
            if not outcome.success:
                logger.warning(f"Scheduled production sync failed: {outcome.reason}")
        except Exception as e:
            logger.exception(f"Scheduled production sync crashed: {e}")

    def get_sync_status(self) -> Dict[str, Any]:
        """Current sync state; never performs I/O."""
        with self._state_lock:
            status = self.state.to_dict()
            status.update(
                {
                    "running": self.is_running,
                    "run_count": self.run_count,
                    "skip_count": self.skip_count,
                    "sheet_id": self.sheet_id,
                    "control_range": self.settings.sync_control_range,
                    "pairs": [pair.name for pair in self.settings.sync_pairs],
                    "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
                }
            )
        return status
