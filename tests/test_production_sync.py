"""
Production Sync Tests

Control-cell change detection, source row selection, per-pair failure
isolation and full-overwrite copying.
"""
import threading
from dataclasses import replace
from datetime import datetime
from unittest.mock import patch

import pytest

from config.settings import SyncPairSettings
from services.production_sync import (
    ProductionSyncJob,
    SyncReason,
    extract_sheet_id,
    select_source_row,
)
from services.range_store import InMemoryRangeStore, RangeStoreError
from tests.conftest import EXTERNAL_AFTERNOON, EXTERNAL_TWO, PME, sheet_url

PAIR_ONE = SyncPairSettings("PRODUCTION_LOG_1", "PRODUCTION_1")
PAIR_TWO = SyncPairSettings("PRODUCTION_LOG_2", "PRODUCTION_2")


@pytest.fixture
def job(store, settings):
    return ProductionSyncJob(store, settings, now=lambda: datetime(2024, 3, 1, 15, 30))


def set_control(store, value):
    store.set_tab(PME, "PRODUCTION_SYNC", [["Production date", value]])


def source_reads(store):
    return store.call_count("read_range", "PRODUCTION_LOG_1") + store.call_count(
        "read_range", "PRODUCTION_LOG_2"
    )


class TestHelpers:
    def test_extract_sheet_id(self):
        assert extract_sheet_id(sheet_url("1AbC-d_9")) == "1AbC-d_9"
        assert extract_sheet_id("https://docs.google.com/spreadsheets/d/XYZ") == "XYZ"

    @pytest.mark.parametrize("value", ["", "not a url", "https://drive.google.com/file/d/abc", None, 42])
    def test_extract_sheet_id_rejects(self, value):
        assert extract_sheet_id(value) is None

    def test_select_latest_row_on_date(self):
        rows = [
            ["2024-02-28"],
            ["2024-03-01 09:00"],
            ["2024-03-01 14:00"],
            ["2024-03-02"],
        ]
        row_number, row = select_source_row(rows, datetime(2024, 3, 1))
        assert row_number == 3
        assert row == ["2024-03-01 14:00"]

    def test_select_ignores_time_of_target(self):
        rows = [["2024-03-01 23:59"]]
        assert select_source_row(rows, datetime(2024, 3, 1, 6, 0))[0] == 1

    def test_select_keeps_first_on_equal_timestamps(self):
        rows = [["2024-03-01 10:00", "first"], ["2024-03-01 10:00", "second"]]
        assert select_source_row(rows, datetime(2024, 3, 1))[1][1] == "first"

    def test_select_skips_unparsable_and_short_rows(self):
        rows = [["Timestamp"], [], ["3/1/2024 7:00:00"]]
        assert select_source_row(rows, datetime(2024, 3, 1))[0] == 3

    def test_select_offsets_by_first_row(self):
        rows = [["2024-03-01"]]
        assert select_source_row(rows, datetime(2024, 3, 1), first_row=2)[0] == 2

    def test_select_no_match(self):
        assert select_source_row([["2024-02-01"]], datetime(2024, 3, 1)) is None


class TestRunSync:
    def test_first_run_copies_both_pairs(self, job, store):
        outcome = job.run_sync()

        assert outcome.success is True
        assert outcome.skipped is False
        assert outcome.target_date == "2024-03-01"

        first, second = outcome.results
        assert first.success is True
        assert first.source_row == 3
        assert first.sheet_id == "EXT_AFTERNOON"
        assert first.rows_copied == len(EXTERNAL_AFTERNOON)
        assert second.source_row == 2
        assert second.rows_copied == len(EXTERNAL_TWO)

        assert store.tab(PME, "PRODUCTION_1") == EXTERNAL_AFTERNOON
        assert store.tab(PME, "PRODUCTION_2") == EXTERNAL_TWO

    def test_updates_state(self, job):
        job.run_sync()

        status = job.get_sync_status()
        assert status["last_control_value"] == "2024-03-01"
        assert status["last_sync_at"] == "2024-03-01T15:30:00"
        assert status["run_count"] == 1
        assert status["last_outcome"]["success"] is True

    def test_unchanged_control_skips_without_io(self, job, store):
        job.run_sync()
        store.calls.clear()

        outcome = job.run_sync()

        assert outcome.skipped is True
        assert outcome.reason == "no change"
        assert source_reads(store) == 0
        assert store.call_count("read_sheet") == 0
        assert store.call_count("clear_range") == 0
        assert store.call_count("write_range") == 0
        assert store.call_count("read_range", "PRODUCTION_SYNC") == 1
        assert job.get_sync_status()["skip_count"] == 1

    def test_changed_control_runs_again(self, job, store):
        job.run_sync()
        set_control(store, "3/1/2024")
        store.calls.clear()

        outcome = job.run_sync()

        assert outcome.skipped is False
        assert store.call_count("write_range") == 2

    def test_force_bypasses_change_check(self, job, store):
        job.run_sync()
        store.calls.clear()

        outcome = job.run_sync(force=True)

        assert outcome.skipped is False
        assert outcome.forced is True
        assert source_reads(store) == 2
        assert store.call_count("write_range") == 2

    def test_full_overwrite_leaves_no_residue(self, job, store):
        store.set_tab(PME, "PRODUCTION_1", [["old"] * 8 for _ in range(20)])

        job.run_sync()

        target = store.tab(PME, "PRODUCTION_1")
        assert len(target) == len(EXTERNAL_AFTERNOON)
        assert all(len(row) <= 3 for row in target)

    def test_serial_control_value(self, job, store):
        set_control(store, "45352")
        outcome = job.run_sync()
        assert outcome.target_date == "2024-03-01"


class TestControlFailures:
    def test_invalid_date_leaves_state_unchanged(self, job, store):
        set_control(store, "next tuesday")

        outcome = job.run_sync()

        assert outcome.success is False
        assert outcome.reason == "invalid date in control cell"
        assert job.state.last_control_value is None
        assert store.call_count("write_range") == 0

    def test_invalid_date_is_retried_every_tick(self, job, store):
        set_control(store, "next tuesday")
        job.run_sync()
        second = job.run_sync()

        assert second.skipped is False
        assert second.reason == "invalid date in control cell"

    def test_invalid_date_does_not_poison_previous_value(self, job, store):
        job.run_sync()
        set_control(store, "")
        job.run_sync()
        set_control(store, "2024-03-01")

        assert job.run_sync().skipped is True

    def test_control_read_failure(self, job, store):
        store.failures["read_range"] = RangeStoreError("quota")

        outcome = job.run_sync()

        assert outcome.success is False
        assert outcome.reason.startswith("control read failed")
        assert job.state.last_sync_at is None


class TestPairFailures:
    """One pair failing never aborts the other."""

    def test_no_matching_date(self, job, store):
        set_control(store, "2024-03-02")
        store.set_tab("EXT_NEXT", "Sheet1", [["next"]])

        outcome = job.run_sync()

        first, second = outcome.results
        assert outcome.success is True
        assert first.success is True
        assert first.source_row == 4
        assert second.success is False
        assert second.reason == SyncReason.NO_MATCHING_DATE
        assert job.state.last_control_value == "2024-03-02"

    def test_invalid_reference(self, job, store):
        store.set_tab(PME, "PRODUCTION_LOG_2", [["2024-03-01 08:00", "", "see email"]])

        second = job.run_sync().results[1]

        assert second.reason == SyncReason.INVALID_REFERENCE
        assert second.source_row == 1
        assert second.reference == "see email"
        assert store.call_count("clear_range", "PRODUCTION_2") == 0

    def test_missing_reference_column(self, job, store):
        store.set_tab(PME, "PRODUCTION_LOG_2", [["2024-03-01 08:00"]])
        assert job.run_sync().results[1].reason == SyncReason.INVALID_REFERENCE

    def test_external_empty_keeps_target(self, job, store):
        store.set_tab("EXT_TWO", "Sheet1", [["", ""], []])
        store.set_tab(PME, "PRODUCTION_2", [["keep me"]])

        second = job.run_sync().results[1]

        assert second.reason == SyncReason.EXTERNAL_EMPTY
        assert store.tab(PME, "PRODUCTION_2") == [["keep me"]]

    def test_no_data(self, job, store):
        store.set_tab(PME, "PRODUCTION_LOG_1", [])
        first, second = job.run_sync().results

        assert first.reason == SyncReason.NO_DATA
        assert second.success is True

    def test_store_error_is_isolated(self, job, store):
        store.set_tab(PME, "PRODUCTION_LOG_2", [["2024-03-01", "", sheet_url("GONE")]])

        outcome = job.run_sync()

        first, second = outcome.results
        assert outcome.success is True
        assert first.success is True
        assert second.reason == SyncReason.STORE_ERROR
        assert "GONE" in second.error

    def test_unexpected_error_marks_outcome_failed(self, settings):
        class BrokenStore(InMemoryRangeStore):
            def read_sheet(self, store_id):
                if store_id == "EXT_TWO":
                    raise RuntimeError("bad payload")
                return super().read_sheet(store_id)

        store = BrokenStore()
        set_control(store, "2024-03-01")
        store.set_tab(PME, "PRODUCTION_LOG_1", [["2024-03-01", "", sheet_url("EXT_ONE")]])
        store.set_tab(PME, "PRODUCTION_LOG_2", [["2024-03-01", "", sheet_url("EXT_TWO")]])
        store.set_tab(PME, "PRODUCTION_1", [])
        store.set_tab("EXT_ONE", "Sheet1", [["a"]])
        job = ProductionSyncJob(store, settings)

        outcome = job.run_sync()

        assert outcome.success is False
        assert outcome.results[0].success is True
        assert outcome.results[1].reason == SyncReason.UNEXPECTED_ERROR
        assert job.state.last_control_value == "2024-03-01"


class TestSerialization:
    def test_concurrent_run_is_skipped(self, job, store):
        assert job._run_lock.acquire(blocking=False)
        try:
            outcome = job.run_sync(force=True)
        finally:
            job._run_lock.release()

        assert outcome.skipped is True
        assert outcome.reason == "sync already running"
        assert store.calls == []

    def test_overlapping_threads_run_once(self, settings):
        entered = threading.Event()
        release = threading.Event()

        class SlowStore(InMemoryRangeStore):
            def read_sheet(self, store_id):
                entered.set()
                release.wait(timeout=5)
                return super().read_sheet(store_id)

        store = SlowStore()
        set_control(store, "2024-03-01")
        for pair in (PAIR_ONE, PAIR_TWO):
            store.set_tab(PME, pair.source_tab, [["2024-03-01", "", sheet_url("EXT")]])
            store.set_tab(PME, pair.target_tab, [])
        store.set_tab("EXT", "Sheet1", [["x"]])
        job = ProductionSyncJob(store, settings)

        results = []
        runner = threading.Thread(target=lambda: results.append(job.run_sync(force=True)))
        runner.start()
        assert entered.wait(timeout=5)

        second = job.run_sync(force=True)
        release.set()
        runner.join(timeout=5)

        assert second.skipped is True
        assert results[0].success is True
        assert not job.is_running


class TestConfiguration:
    def test_separate_sync_spreadsheet(self, store, settings):
        store.set_tab("SYNC", "PRODUCTION_SYNC", [["", "2024-03-01"]])
        store.set_tab("SYNC", "PRODUCTION_LOG_1", [["2024-03-01", "", sheet_url("EXT_TWO")]])
        store.set_tab("SYNC", "PRODUCTION_LOG_2", [])
        store.set_tab("SYNC", "PRODUCTION_1", [])
        job = ProductionSyncJob(store, replace(settings, sync_sheet_id="SYNC"))

        outcome = job.run_sync()

        assert outcome.results[0].success is True
        assert store.tab("SYNC", "PRODUCTION_1") == EXTERNAL_TWO
        assert store.tab(PME, "PRODUCTION_1") == [["stale"] * 4 for _ in range(6)]

    def test_run_sync_quietly_never_raises(self, job):
        with patch.object(job, "run_sync", side_effect=RuntimeError("boom")):
            job.run_sync_quietly()
