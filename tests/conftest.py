"""
Pytest fixtures for REI API tests
"""
import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.settings import AppSettings  # noqa: E402
from services.range_store import InMemoryRangeStore  # noqa: E402

PME = "PME_SHEET"
WFP = "WFP_SHEET"


def sheet_url(sheet_id):
    return f"https://docs.google.com/spreadsheets/d/{sheet_id}/edit#gid=0"


MAIN_ROWS = [
    ["REID", "Address", "City", "Status", "Entity", "Gross\nRcpts", "Rent", "Loan Balance", "Tax", "FLAG"],
    ["R1", "1 Main St", "Austin", "Active", "Alpha LLC", "$1,234.50", "1,000", "50000", "1200", "FALSE"],
    ["R2", "2 Oak Ave", "Dallas", "Vacant", "Beta LLC", "N/A", "", "0", "abc", ""],
    ["R3", "3 Elm Rd", "", "Active", "Alpha LLC", "500", "$750", "", "300", "TRUE"],
]

TODO_ROWS = [
    ["TO DO ID", "REID", "PRIMARY", "ACTION", "ASSIGNED TO", "TO DO STATUS", "CREATED"],
    ["TD-1", "R1", "Pat", "Call tenant", "Sam", "OPEN", "2024-03-01"],
    ["TD-2", "R2", "Lee", "Fix roof", "Alex", "DONE", "2024-02-01"],
    ["TD-3", "R1", "Pat", "Send lease", "sam", "IN PROGRESS", "2024-03-02"],
    ["TD-4", "R3", "Kim", "Inspect", "", "", "2024-03-03"],
]

VAR_ROWS = [
    ["STATUS LIST", "UI SORT SCORE"],
    ["Active", "2"],
    ["Vacant", "1"],
    ["Archived", "X"],
    ["Pending", ""],
    ["", "5"],
]

SOURCE_ONE_ROWS = [
    ["2024-02-28", "old", sheet_url("EXT_OLD")],
    ["2024-03-01 09:00", "morning", sheet_url("EXT_MORNING")],
    ["2024-03-01 14:00", "afternoon", sheet_url("EXT_AFTERNOON")],
    ["2024-03-02", "next day", sheet_url("EXT_NEXT")],
]

SOURCE_TWO_ROWS = [
    ["Timestamp", "Notes", "Link"],
    ["03/01/2024 08:15:00", "", sheet_url("EXT_TWO")],
]

EXTERNAL_AFTERNOON = [
    ["Job", "Units", "Crew"],
    ["J-100", "12", "North"],
    ["J-101", "7", "South"],
]

EXTERNAL_TWO = [
    ["Job", "Units"],
    ["J-200", "3"],
]


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return AppSettings(
        pme_sheet_id=PME,
        workflow_processor_sheet_id=WFP,
        app_env="test",
        cache_refresh_enabled=False,
        sync_enabled=False,
    )


@pytest.fixture
def store():
    """In-memory spreadsheets seeded with every tab the service reads."""
    memory = InMemoryRangeStore()
    memory.set_tab(PME, "MAIN", MAIN_ROWS)
    memory.set_tab(PME, "TO_DO_MASTER", TODO_ROWS)
    memory.set_tab(PME, "VAR", VAR_ROWS)
    memory.set_tab(PME, "PRODUCTION_SYNC", [["Production date", "2024-03-01"]])
    memory.set_tab(PME, "PRODUCTION_LOG_1", SOURCE_ONE_ROWS)
    memory.set_tab(PME, "PRODUCTION_LOG_2", SOURCE_TWO_ROWS)
    memory.set_tab(PME, "PRODUCTION_1", [["stale"] * 4 for _ in range(6)])
    memory.set_tab(PME, "PRODUCTION_2", [])
    memory.set_tab(WFP, "QUEUE", [["QUEUE_ID", "QUEUED_AT", "WORK_TYPE"]])
    memory.set_tab("EXT_AFTERNOON", "Sheet1", EXTERNAL_AFTERNOON)
    memory.set_tab("EXT_MORNING", "Sheet1", [["morning only"]])
    memory.set_tab("EXT_TWO", "Sheet1", EXTERNAL_TWO)
    memory.calls.clear()
    return memory


@pytest.fixture
def app(settings, store):
    """Create application for testing."""
    from app import create_app
    from middleware import clear_request_logs

    clear_request_logs()
    flask_app = create_app(settings, store=store, start_background=False)
    flask_app.config["TESTING"] = True
    yield flask_app
    flask_app.extensions["rei"].shutdown()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["rei"]
