"""
Header Index

Maps a sheet's first row to column positions so handlers address cells by
header name instead of physical column order.

Header text is normalised in two steps:
    1. line breaks and runs of whitespace collapse to one space, then trim
    2. uppercase, remaining spaces become ``_``

so ``"Gross\\nRcpts "`` and ``"gross rcpts"`` both register as ``GROSS_RCPTS``.

Usage:
    from utils.header_index import HeaderIndex

    index = HeaderIndex.build(rows[0])
    status_col = index.find("TO_DO_STATUS", "STATUS")
    status = index.value(row, "TO_DO_STATUS", "STATUS", default="OPEN")
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

_LINE_BREAKS = re.compile(r"[\r\n]+")
_WHITESPACE = re.compile(r"\s+")


def clean_header(value: Any) -> str:
    """Collapse line breaks and whitespace runs to single spaces and trim."""
    if value is None:
        return ""
    text = _LINE_BREAKS.sub(" ", str(value))
    return _WHITESPACE.sub(" ", text).strip()


def normalize_header(value: Any) -> str:
    """Normalised lookup key for a header cell (``""`` for blank headers)."""
    cleaned = clean_header(value)
    if not cleaned:
        return ""
    return _WHITESPACE.sub("_", cleaned.upper())


class HeaderIndex:
    """Normalised header name -> zero-based column position."""

    def __init__(self, columns: Dict[str, int], raw_headers: Sequence[Any] = ()):
        self._columns = dict(columns)
        self._raw_headers = list(raw_headers)
        self._missing: List[str] = []

    @classmethod
    def build(cls, header_row: Optional[Sequence[Any]]) -> "HeaderIndex":
        """Build an index from a raw header row.

        Blank headers register nothing. When two headers normalise to the
        same name the later column wins.

        Args:
            header_row: Raw cell values from row 1 of a tab

        Returns:
            A new HeaderIndex
        """
        columns: Dict[str, int] = {}
        for position, cell in enumerate(header_row or ()):
            name = normalize_header(cell)
            if name:
                columns[name] = position
        return cls(columns, header_row or ())

    def __contains__(self, name: str) -> bool:
        return normalize_header(name) in self._columns

    def __len__(self) -> int:
        return len(self._columns)

    @property
    def names(self) -> List[str]:
        return list(self._columns)

    @property
    def missing(self) -> List[str]:
        """Lookups that found none of their aliases, in first-seen order."""
        return list(self._missing)

    def as_dict(self) -> Dict[str, int]:
        return dict(self._columns)

    def find(self, *aliases: str, required: bool = False) -> Optional[int]:
        """Return the column of the first alias present, else None.

        A lookup where no alias matches is recorded in ``missing`` and logged
        once per index, so a renamed header shows up in the logs instead of
        silently yielding blank fields.

        Args:
            *aliases: Header names to try in order
            required: Raise KeyError instead of returning None

        Returns:
            Zero-based column index or None
        """
        for alias in aliases:
            position = self._columns.get(normalize_header(alias))
            if position is not None:
                return position

        label = "/".join(aliases)
        if label not in self._missing:
            self._missing.append(label)
            logger.warning(f"Header not found: {label}")
        if required:
            raise KeyError(f"{label} column not found")
        return None

    def value(self, row: Sequence[Any], *aliases: str, default: Any = "") -> Any:
        """Read a cell by header name, falling back through aliases.

        An alias whose cell is blank falls through to the next alias, matching
        how the sheets use secondary columns (``TO_DO_STATUS`` then ``STATUS``).
        """
        found_column = False
        for alias in aliases:
            position = self._columns.get(normalize_header(alias))
            if position is None:
                continue
            found_column = True
            cell = row[position] if position < len(row) else ""
            if cell not in (None, ""):
                return cell
        if not found_column:
            self.find(*aliases)
        return default

    def fields(self) -> List[Dict[str, Any]]:
        """Describe each registered column with its original header text."""
        described = []
        for position, cell in enumerate(self._raw_headers):
            name = clean_header(cell)
            if not name:
                continue
            described.append(
                {"name": name, "column": position, "original": str(cell or "")[:50]}
            )
        return described
