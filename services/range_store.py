"""
Range Store

Key-range access to Google Sheets. Every handler, the aggregation cache and
the production sync talk to spreadsheets only through this interface:

    read_range(ref)         -> matrix of cell values
    append_row(ref, row)    -> append one row below the last used row
    write_range(ref, rows)  -> write a matrix starting at the ref's top-left cell
    clear_range(ref)        -> blank every cell in the ref
    read_sheet(store_id)    -> full contents of a spreadsheet's first worksheet

Any transport, auth, API or timeout failure surfaces as RangeStoreError; no
finer error taxonomy is exposed to callers.

Usage:
    from services.range_store import GspreadRangeStore, RangeRef

    store = GspreadRangeStore(service_account_file=path, timeout=30)
    rows = store.read_range(RangeRef(sheet_id, "MAIN", "A:ZZ"))
"""

import json
import logging
import re
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import gspread
import requests
from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials
from gspread.exceptions import GSpreadException

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.readonly",
]

Matrix = List[List[Any]]

_CELL_PATTERN = re.compile(r"^([A-Z]+)?([0-9]+)?$")


class RangeStoreError(Exception):
    """Raised when the spreadsheet backend cannot complete a call."""

    pass


def column_letter(index: int) -> str:
    """Zero-based column index to A1 letters (0 -> A, 26 -> AA)."""
    if index < 0:
        raise ValueError("Column index must be >= 0")
    letters = []
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def column_index(letters: str) -> int:
    """A1 letters to zero-based column index (A -> 0, AA -> 26)."""
    index = 0
    for char in letters.upper():
        if not "A" <= char <= "Z":
            raise ValueError(f"Invalid column letters: {letters}")
        index = index * 26 + (ord(char) - 64)
    return index - 1


def parse_span(span: str) -> Tuple[int, Optional[int], Optional[int], Optional[int]]:
    """Split an A1 span into (start_col, start_row, end_col, end_row).

    Columns are zero-based, rows one-based; open ends are None. ``A:C`` is
    whole columns, ``B2`` a single cell, ``A2:D`` an open-ended block.
    """
    start, _, end = span.upper().partition(":")
    start_match = _CELL_PATTERN.match(start)
    end_match = _CELL_PATTERN.match(end) if end else start_match
    if not start or not start_match or not end_match or not start_match.group(1):
        raise ValueError(f"Invalid A1 span: {span}")

    start_col = column_index(start_match.group(1))
    start_row = int(start_match.group(2)) if start_match.group(2) else None
    end_col = column_index(end_match.group(1)) if end_match.group(1) else None
    end_row = int(end_match.group(2)) if end_match.group(2) else None
    if not end:
        end_col, end_row = start_col, start_row
    return start_col, start_row, end_col, end_row


@dataclass(frozen=True)
class RangeRef:
    """A rectangular region: spreadsheet id, tab name and A1 column span."""

    store_id: str
    tab: str
    span: str = "A:Z"

    def to_a1(self) -> str:
        title = self.tab.replace("'", "''")
        return f"'{title}'!{self.span}"

    def with_span(self, span: str) -> "RangeRef":
        return replace(self, span=span)

    def cell(self, row: int, column: int) -> "RangeRef":
        """Single cell at a one-based row and zero-based column."""
        return self.with_span(f"{column_letter(column)}{row}")

    def first_cell(self) -> "RangeRef":
        """Top-left cell of the span (row 1 for whole-column spans)."""
        start_col, start_row, _, _ = parse_span(self.span)
        return self.cell(start_row or 1, start_col)

    def __str__(self) -> str:
        return f"{self.store_id}:{self.to_a1()}"


class RangeStore:
    """Interface for key-range spreadsheet access."""

    def read_range(self, ref: RangeRef) -> Matrix:
        raise NotImplementedError

    def append_row(self, ref: RangeRef, row: Sequence[Any]) -> None:
        raise NotImplementedError

    def write_range(self, ref: RangeRef, values: Sequence[Sequence[Any]]) -> None:
        raise NotImplementedError

    def clear_range(self, ref: RangeRef) -> None:
        raise NotImplementedError

    def read_sheet(self, store_id: str) -> Matrix:
        raise NotImplementedError


class GspreadRangeStore(RangeStore):
    """RangeStore backed by the Google Sheets API through gspread."""

    def __init__(
        self,
        service_account_key: Optional[str] = None,
        service_account_file: Optional[Path] = None,
        timeout: float = 30.0,
        client: Optional[gspread.Client] = None,
    ):
        """
        Args:
            service_account_key: Service account JSON as a string (preferred)
            service_account_file: Path to a service account JSON file
            timeout: Seconds before any single API call is abandoned
            client: Pre-built gspread client (skips credential loading)
        """
        self.service_account_key = service_account_key
        self.service_account_file = service_account_file
        self.timeout = timeout
        self._client = client
        self._spreadsheets: Dict[str, gspread.Spreadsheet] = {}
        self._lock = threading.Lock()

    def _authorize(self) -> gspread.Client:
        if self.service_account_key:
            info = json.loads(self.service_account_key)
            creds = Credentials.from_service_account_info(info, scopes=SCOPES)
        else:
            path = Path(self.service_account_file) if self.service_account_file else None
            if path is None or not path.exists():
                raise RangeStoreError(f"Service account credentials not found at {path}")
            creds = Credentials.from_service_account_file(str(path), scopes=SCOPES)

        client = gspread.authorize(creds)
        client.set_timeout(self.timeout)
        logger.info(f"Authorized Google Sheets client (timeout={self.timeout}s)")
        return client

    def _get_client(self) -> gspread.Client:
        with self._lock:
            if self._client is None:
                try:
                    self._client = self._authorize()
                except (GoogleAuthError, ValueError) as e:
                    raise RangeStoreError(f"Google authorization failed: {e}") from e
            return self._client

    def _spreadsheet(self, store_id: str) -> gspread.Spreadsheet:
        client = self._get_client()
        with self._lock:
            spreadsheet = self._spreadsheets.get(store_id)
        if spreadsheet is None:
            spreadsheet = client.open_by_key(store_id)
            with self._lock:
                self._spreadsheets[store_id] = spreadsheet
        return spreadsheet

    def _call(self, action: str, target: Any, func):
        try:
            return func()
        except RangeStoreError:
            raise
        except (GSpreadException, requests.RequestException, GoogleAuthError) as e:
            logger.error(f"Sheets {action} failed for {target}: {e}")
            raise RangeStoreError(f"{action} {target} failed: {e}") from e

    def read_range(self, ref: RangeRef) -> Matrix:
        def _read():
            result = self._spreadsheet(ref.store_id).values_get(ref.to_a1())
            return [list(row) for row in result.get("values", [])]

        return self._call("read", ref, _read)

    def append_row(self, ref: RangeRef, row: Sequence[Any]) -> None:
        self._call(
            "append",
            ref,
            lambda: self._spreadsheet(ref.store_id).values_append(
                ref.to_a1(),
                params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
                body={"values": [list(row)]},
            ),
        )

    def write_range(self, ref: RangeRef, values: Sequence[Sequence[Any]]) -> None:
        self._call(
            "write",
            ref,
            lambda: self._spreadsheet(ref.store_id).values_update(
                ref.to_a1(),
                params={"valueInputOption": "USER_ENTERED"},
                body={"values": [list(row) for row in values]},
            ),
        )

    def clear_range(self, ref: RangeRef) -> None:
        self._call("clear", ref, lambda: self._spreadsheet(ref.store_id).values_clear(ref.to_a1()))

    def read_sheet(self, store_id: str) -> Matrix:
        def _read():
            return [list(row) for row in self._spreadsheet(store_id).sheet1.get_all_values()]

        return self._call("read sheet", store_id, _read)


class InMemoryRangeStore(RangeStore):
    """Dict-backed RangeStore for local development and tests.

    Mirrors the Sheets API shape: reads drop trailing blank rows and cells,
    writes grow the grid as needed. Every call is recorded in ``calls`` and
    ``failures`` maps a method name to an exception to raise.
    """

    def __init__(self, tabs: Optional[Dict[Tuple[str, str], Matrix]] = None):
        self._tabs: Dict[Tuple[str, str], Matrix] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[str, Exception] = {}
        self._lock = threading.RLock()
        for key, rows in (tabs or {}).items():
            self.set_tab(key[0], key[1], rows)

    def set_tab(self, store_id: str, tab: str, rows: Sequence[Sequence[Any]]) -> None:
        with self._lock:
            self._tabs[(store_id, tab)] = [list(row) for row in rows]

    def tab(self, store_id: str, tab: str) -> Matrix:
        """Current trimmed contents of a tab."""
        with self._lock:
            return _trim([list(row) for row in self._tabs.get((store_id, tab), [])])

    def call_count(self, method: str, tab: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1
                for name, target in self.calls
                if name == method and (tab is None or f"'{tab}'!" in target or target == tab)
            )

    def _record(self, method: str, target: str) -> None:
        with self._lock:
            self.calls.append((method, target))
            failure = self.failures.get(method)
        if failure is not None:
            raise failure

    def _grid(self, ref: RangeRef) -> Matrix:
        key = (ref.store_id, ref.tab)
        if key not in self._tabs:
            raise RangeStoreError(f"Unable to parse range: {ref.to_a1()}")
        return self._tabs[key]

    def read_range(self, ref: RangeRef) -> Matrix:
        self._record("read_range", ref.to_a1())
        start_col, start_row, end_col, end_row = parse_span(ref.span)
        with self._lock:
            grid = self._grid(ref)
            first = (start_row or 1) - 1
            last = end_row if end_row is not None else len(grid)
            rows = []
            for row in grid[first:last]:
                stop = end_col + 1 if end_col is not None else len(row)
                rows.append(list(row[start_col:stop]))
        return _trim(rows)

    def append_row(self, ref: RangeRef, row: Sequence[Any]) -> None:
        self._record("append_row", ref.to_a1())
        start_col, _, _, _ = parse_span(ref.span)
        with self._lock:
            grid = self._tabs.setdefault((ref.store_id, ref.tab), [])
            del grid[len(_trim(grid)):]
            grid.append([""] * start_col + list(row))

    def write_range(self, ref: RangeRef, values: Sequence[Sequence[Any]]) -> None:
        self._record("write_range", ref.to_a1())
        start_col, start_row, _, _ = parse_span(ref.span)
        with self._lock:
            grid = self._tabs.setdefault((ref.store_id, ref.tab), [])
            for offset, row in enumerate(values):
                index = (start_row or 1) - 1 + offset
                while len(grid) <= index:
                    grid.append([])
                target = grid[index]
                needed = start_col + len(row)
                if len(target) < needed:
                    target.extend([""] * (needed - len(target)))
                target[start_col:needed] = list(row)

    def clear_range(self, ref: RangeRef) -> None:
        self._record("clear_range", ref.to_a1())
        start_col, start_row, end_col, end_row = parse_span(ref.span)
        with self._lock:
            grid = self._grid(ref)
            first = (start_row or 1) - 1
            last = end_row if end_row is not None else len(grid)
            for row in grid[first:last]:
                stop = min(end_col + 1, len(row)) if end_col is not None else len(row)
                for col in range(start_col, stop):
                    row[col] = ""

    def read_sheet(self, store_id: str) -> Matrix:
        self._record("read_sheet", store_id)
        with self._lock:
            for (sid, _tab), grid in self._tabs.items():
                if sid == store_id:
                    return _trim([list(row) for row in grid])
        raise RangeStoreError(f"Spreadsheet not found: {store_id}")


def _trim(rows: Matrix) -> Matrix:
    """Drop trailing blank cells per row and trailing blank rows."""
    trimmed = []
    for row in rows:
        end = len(row)
        while end and row[end - 1] in ("", None):
            end -= 1
        trimmed.append(list(row[:end]))
    while trimmed and not trimmed[-1]:
        trimmed.pop()
    return trimmed
