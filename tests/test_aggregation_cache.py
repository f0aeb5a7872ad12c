"""
Aggregation Cache Tests

TTL gating, single-flight refresh, stale-serving on failure and the
aggregation rules over the main tab.
"""
import logging
import threading
import time

import pytest

from services.aggregation_cache import (
    AggregationCache,
    CacheNotReadyError,
    compute_aggregates,
)
from services.range_store import InMemoryRangeStore, RangeRef, RangeStoreError
from tests.conftest import MAIN_ROWS, PME, ManualClock
from utils.header_index import HeaderIndex

MAIN = RangeRef(PME, "MAIN", "A:ZZ")


class GatedStore(InMemoryRangeStore):
    """Store whose reads block until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def read_range(self, ref):
        self.entered.set()
        if not self.release.wait(timeout=5):
            raise RangeStoreError("gate never released")
        return super().read_range(ref)


def make_cache(store, clock, ttl=300):
    return AggregationCache(store, MAIN, ttl_seconds=ttl, clock=clock)


class TestComputeAggregates:
    """Aggregation rules."""

    def test_receipts_scenario(self):
        rows = [["R1", "1,000"], ["R2", ""], ["R3", "abc"]]
        aggregates = compute_aggregates(rows, HeaderIndex.build(["REID", "GROSS_RCPTS"]))

        assert aggregates.totals["gross_rcpts"] == 1000
        assert aggregates.counts["gross_rcpts"] == 1
        assert aggregates.property_count == 3

    def test_currency_and_unparsable(self):
        rows = [["R1", "$1,234.50"], ["R2", "N/A"]]
        aggregates = compute_aggregates(rows, HeaderIndex.build(["REID", "Gross Rcpts"]))

        assert aggregates.totals["gross_rcpts"] == 1234.5
        assert aggregates.counts["gross_rcpts"] == 1
        assert aggregates.property_count == 2

    def test_zero_and_negative_sum_but_do_not_count(self):
        rows = [["R1", "0"], ["R2", "-50"], ["R3", "100"]]
        aggregates = compute_aggregates(rows, HeaderIndex.build(["REID", "RENT"]))

        assert aggregates.totals["rent"] == 50
        assert aggregates.counts["rent"] == 1

    def test_main_tab_fixture(self):
        index = HeaderIndex.build(MAIN_ROWS[0])
        aggregates = compute_aggregates(MAIN_ROWS[1:], index)

        assert aggregates.property_count == 3
        assert aggregates.totals == {
            "gross_rcpts": 1734.5,
            "rent": 1750.0,
            "loan_balance": 50000.0,
            "tax": 1500.0,
        }
        assert aggregates.counts == {"gross_rcpts": 2, "rent": 2, "loan_balance": 1, "tax": 2}
        assert aggregates.groups["status"] == {"Active": 2, "Vacant": 1}
        assert aggregates.groups["city"] == {"Austin": 1, "Dallas": 1, "Unknown": 1}
        assert aggregates.groups["entity"] == {"Alpha LLC": 2, "Beta LLC": 1}
        assert aggregates.missing_columns == ()

    def test_short_rows_group_as_unknown(self):
        aggregates = compute_aggregates([["R1"]], HeaderIndex.build(["REID", "CITY"]))
        assert aggregates.groups["city"] == {"Unknown": 1}

    def test_blank_rows_are_not_properties(self):
        aggregates = compute_aggregates([["R1"], [], ["", ""]], HeaderIndex.build(["REID"]))
        assert aggregates.property_count == 1

    def test_missing_columns_are_reported(self):
        aggregates = compute_aggregates([["R1", "Austin"]], HeaderIndex.build(["REID", "City"]))

        assert "gross_rcpts" in aggregates.missing_columns
        assert "status" in aggregates.missing_columns
        assert "city" not in aggregates.missing_columns
        assert aggregates.groups["status"] == {}
        assert aggregates.totals["gross_rcpts"] == 0

    def test_facets(self):
        aggregates = compute_aggregates(MAIN_ROWS[1:], HeaderIndex.build(MAIN_ROWS[0]))

        assert aggregates.facet("summary")["property_count"] == 3
        assert aggregates.facet("rent") == {"field": "rent", "total": 1750.0, "count": 2}
        assert aggregates.facet("city")["groups"]["Dallas"] == 1
        assert aggregates.facet("bogus") is None


class TestCacheLifecycle:
    """EMPTY -> WARM -> STALE -> WARM."""

    def setup_method(self):
        self.store = InMemoryRangeStore()
        self.store.set_tab(PME, "MAIN", MAIN_ROWS)
        self.clock = ManualClock()
        self.cache = make_cache(self.store, self.clock)

    def test_starts_empty(self):
        assert self.cache.state == "empty"
        assert self.cache.peek().ready is False
        assert self.store.call_count("read_range") == 0

    def test_first_read_refreshes(self):
        view = self.cache.get_aggregates()

        assert view.ready is True
        assert view.state == "warm"
        assert view.aggregates.property_count == 3
        assert view.cache_age_seconds == 0
        assert self.store.call_count("read_range") == 1

    def test_no_fetch_within_ttl(self):
        self.cache.get_aggregates()
        for _ in range(5):
            self.clock.advance(59.8)
            self.cache.get_aggregates()

        assert self.store.call_count("read_range") == 1
        assert self.cache.state == "warm"

    def test_refetch_at_ttl(self):
        self.cache.get_aggregates()
        self.clock.advance(300)
        assert self.cache.state == "stale"

        view = self.cache.get_aggregates()

        assert self.store.call_count("read_range") == 2
        assert view.state == "warm"
        assert view.cache_age_seconds == 0

    def test_snapshot_is_replaced_whole(self):
        first = self.cache.get_snapshot()
        self.store.set_tab(PME, "MAIN", MAIN_ROWS[:2])

        second = self.cache.force_refresh()

        assert second is not first
        assert second.aggregates.property_count == len(second.rows) == 1
        assert first.aggregates.property_count == len(first.rows) == 3
        assert self.cache.get_snapshot() is second

    def test_header_index_rebuilt_on_refresh(self):
        self.cache.get_aggregates()
        reordered = [[row[1], row[0]] + row[2:] for row in MAIN_ROWS]
        self.store.set_tab(PME, "MAIN", reordered)

        snapshot = self.cache.force_refresh()

        assert snapshot.header_index.find("REID") == 1
        assert snapshot.aggregates.totals["gross_rcpts"] == 1734.5

    def test_empty_tab(self):
        self.store.set_tab(PME, "MAIN", [])
        view = self.cache.get_aggregates()

        assert view.ready is True
        assert view.aggregates.property_count == 0

    def test_status_never_does_io(self):
        status = self.cache.get_status()
        assert status["state"] == "empty"
        assert "cache_age_seconds" not in status

        self.cache.get_aggregates()
        self.clock.advance(120)
        status = self.cache.get_status()

        assert status["state"] == "warm"
        assert status["cache_age_seconds"] == 120
        assert status["expires_in_seconds"] == 180
        assert status["refresh_count"] == 1
        assert self.store.call_count("read_range") == 1

    def test_cache_headers(self):
        view = self.cache.get_aggregates()
        self.clock.advance(100)
        headers = self.cache.get_cache_headers(self.cache.peek())

        assert headers["Cache-Control"] == "private, max-age=200"
        assert headers["ETag"] == f'"{view.etag}"'

    def test_shutdown_drops_snapshot(self):
        self.cache.get_aggregates()
        self.cache.shutdown()
        assert self.cache.state == "empty"

    def test_ttl_must_be_positive(self):
        with pytest.raises(ValueError):
            make_cache(self.store, self.clock, ttl=0)


class TestFailures:
    """Collaborator failures degrade instead of raising."""

    def setup_method(self):
        self.store = InMemoryRangeStore()
        self.store.set_tab(PME, "MAIN", MAIN_ROWS)
        self.clock = ManualClock()
        self.cache = make_cache(self.store, self.clock)

    def test_serves_stale_when_refresh_fails(self, caplog):
        warm = self.cache.get_aggregates()
        self.clock.advance(301)
        self.store.failures["read_range"] = RangeStoreError("quota exceeded")

        with caplog.at_level(logging.WARNING, logger="services.aggregation_cache"):
            view = self.cache.get_aggregates()

        assert view.ready is True
        assert view.stale is True
        assert view.state == "stale"
        assert view.aggregates == warm.aggregates
        assert view.last_error == "quota exceeded"
        assert any("serving snapshot" in r.message for r in caplog.records)

    def test_recovers_after_failure(self):
        self.cache.get_aggregates()
        self.clock.advance(301)
        self.store.failures["read_range"] = RangeStoreError("down")
        self.cache.get_aggregates()

        del self.store.failures["read_range"]
        view = self.cache.get_aggregates()

        assert view.stale is False
        assert view.last_error is None
        assert self.cache.get_status()["failure_count"] == 1

    def test_not_ready_when_never_warmed(self):
        self.store.failures["read_range"] = RangeStoreError("unreachable")

        view = self.cache.get_aggregates()

        assert view.ready is False
        assert view.aggregates is None
        assert view.last_error == "unreachable"
        with pytest.raises(CacheNotReadyError, match="unreachable"):
            self.cache.get_snapshot()

    def test_force_refresh_raises(self):
        self.store.failures["read_range"] = RangeStoreError("down")
        with pytest.raises(RangeStoreError):
            self.cache.force_refresh()

    def test_refresh_quietly_swallows(self):
        self.store.failures["read_range"] = RangeStoreError("down")
        assert self.cache.refresh_quietly() is False
        del self.store.failures["read_range"]
        assert self.cache.refresh_quietly() is True

    def test_status_while_source_unavailable(self):
        self.store.failures["read_range"] = RangeStoreError("down")
        self.cache.refresh_quietly()

        status = self.cache.get_status()

        assert status["state"] == "empty"
        assert status["last_error"] == "down"
        assert status["recent"][-1]["ok"] is False


class TestSingleFlight:
    """Concurrent refreshes share one fetch."""

    def setup_method(self):
        self.store = GatedStore()
        self.store.set_tab(PME, "MAIN", MAIN_ROWS)
        self.clock = ManualClock()
        self.cache = make_cache(self.store, self.clock)

    def _run_concurrently(self, target, count):
        results = []
        errors = []

        def worker():
            try:
                results.append(target())
            except Exception as e:
                errors.append(e)

        first = threading.Thread(target=worker)
        first.start()
        assert self.store.entered.wait(timeout=5)

        others = [threading.Thread(target=worker) for _ in range(count - 1)]
        for thread in others:
            thread.start()
        time.sleep(0.1)
        assert self.cache.is_refreshing

        self.store.release.set()
        for thread in [first] + others:
            thread.join(timeout=5)
        return results, errors

    def test_concurrent_reads_fetch_once(self):
        results, errors = self._run_concurrently(self.cache.get_aggregates, 10)

        assert errors == []
        assert len(results) == 10
        assert all(view.ready for view in results)
        assert self.store.call_count("read_range") == 1

    def test_concurrent_forced_refreshes_fetch_once(self):
        results, errors = self._run_concurrently(self.cache.force_refresh, 5)

        assert errors == []
        assert len({id(snapshot) for snapshot in results}) == 1
        assert self.store.call_count("read_range") == 1

    def test_waiters_share_the_failure(self):
        self.store.failures["read_range"] = RangeStoreError("boom")
        results, errors = self._run_concurrently(self.cache.force_refresh, 4)

        assert results == []
        assert len(errors) == 4
        assert self.store.call_count("read_range") == 1
        assert not self.cache.is_refreshing
