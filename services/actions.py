"""
Action handlers for the dashboard's single ``POST /`` endpoint.

The dashboard posts ``{"action": "<name>", ...}``; each action reads or
writes rows in the PME or workflow-processor spreadsheet through the range
store, addressing columns by header name.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from config.settings import AppSettings
from services.aggregation_cache import AggregationCache
from services.range_store import RangeRef, RangeStore
from utils import generate_id, to_iso
from utils.header_index import HeaderIndex, clean_header

logger = logging.getLogger(__name__)

SERVICE_NAME = "rei-api"
SERVICE_VERSION = "1.0.0"

CLOSED_STATUSES = {"DONE", "COMPLETED", "CLOSED"}
DEFAULT_TODO_LIMIT = 100
DEFAULT_SORT_SCORE = 999

# QUEUE tab columns: QUEUE_ID, QUEUED_AT, WORK_TYPE, REID, PRIMARY, PAYLOAD,
# STATUS, STARTED_AT, COMPLETED_AT, RESULT, ERROR, RETRY_COUNT
QUEUE_SPAN = "A:L"


class ActionError(Exception):
    """Invalid action input (HTTP 400)."""

    status_code = 400


class ActionNotFoundError(ActionError):
    """The row an action targets does not exist (HTTP 404)."""

    status_code = 404


class ActionService:
    """Implements each named action against the range store."""

    def __init__(
        self,
        store: RangeStore,
        settings: AppSettings,
        cache: AggregationCache,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.settings = settings
        self.cache = cache
        self._now = now
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "ping": self.ping,
            "getTodos": self.get_todos,
            "queueTodo": self.queue_todo,
            "updateTodo": self.update_todo,
            "queueNote": self.queue_note,
            "getAllPropertyLabels": self.get_all_property_labels,
            "getStatusConfig": self.get_status_config,
            "getMainHeaders": self.get_main_headers,
            "updatePropertyFlag": self.update_property_flag,
        }

    @property
    def actions(self) -> List[str]:
        return sorted(self._handlers)

    def timestamp(self) -> str:
        return to_iso(self._now())

    def dispatch(self, action: Optional[str], data: Dict[str, Any]) -> Dict[str, Any]:
        """Run a named action.

        Raises:
            ActionError: Missing or unknown action, or invalid input
            ActionNotFoundError: Target row not found
            CacheNotReadyError: Property data needed but never loaded
            RangeStoreError: Spreadsheet call failed
        """
        if not action:
            raise ActionError("Missing required field: action")
        handler = self._handlers.get(action)
        if handler is None:
            raise ActionError(f"Unknown action: {action}")
        logger.debug(f"Dispatching action {action}")
        return handler(data)

    # ------------------------------------------------------------------
    # Refs
    # ------------------------------------------------------------------
    def _pme(self, tab: str, span: str = "A:Z") -> RangeRef:
        return RangeRef(self.settings.pme_sheet_id, tab, span)

    def _read_tab(self, ref: RangeRef):
        rows = self.store.read_range(ref)
        if not rows:
            return HeaderIndex.build([]), []
        return HeaderIndex.build(rows[0]), rows[1:]

    def _queue_work(self, work_type: str, data: Dict[str, Any], queued_at: str) -> str:
        queue_id = generate_id("WQ")
        ref = RangeRef(self.settings.workflow_processor_sheet_id, self.settings.queue_tab, QUEUE_SPAN)
        self.store.append_row(
            ref,
            [
                queue_id,
                queued_at,
                work_type,
                data.get("reid") or "",
                data.get("primary") or "",
                json.dumps(data.get("payload"), separators=(",", ":")),
                "PENDING",
                "",
                "",
                "",
                "",
                0,
            ],
        )
        logger.info(f"Queued {work_type} {queue_id} for {data.get('reid') or 'no REID'}")
        return queue_id

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def ping(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"pong": True, "timestamp": self.timestamp(), "service": SERVICE_NAME}

    def get_todos(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Open to-dos with optional status/assignee/REID filters.

        Without a status filter, DONE/COMPLETED/CLOSED items are excluded.
        ``statsByAssignee`` counts open items per assignee before filtering.
        """
        filters = data.get("filter") or {}
        index, rows = self._read_tab(self._pme(self.settings.todo_tab))
        if not rows:
            return {"success": True, "todos": [], "count": 0, "statsByAssignee": {}}

        status_filter = str(filters["status"]).upper() if filters.get("status") else None
        assignee_filter = str(filters["assignee"]).upper() if filters.get("assignee") else None
        reid_filter = filters.get("reid")

        todos = []
        stats_by_assignee: Dict[str, int] = {}

        for offset, row in enumerate(rows):
            status = str(index.value(row, "TO_DO_STATUS", "STATUS", default="OPEN")).upper()
            assignee = str(index.value(row, "ASSIGNED_TO", "WHO", default="Unassigned"))
            is_open = status not in CLOSED_STATUSES

            if is_open:
                stats_by_assignee[assignee] = stats_by_assignee.get(assignee, 0) + 1

            if status_filter:
                if status != status_filter:
                    continue
            elif not is_open:
                continue
            if assignee_filter and assignee.upper() != assignee_filter:
                continue
            if reid_filter and index.value(row, "REID") != reid_filter:
                continue

            todos.append(
                {
                    "rowIndex": offset + 2,
                    "todoId": index.value(row, "TO_DO_ID", "TODO_ID"),
                    "reid": index.value(row, "REID"),
                    "primary": index.value(row, "PRIMARY"),
                    "action": index.value(row, "ACTION"),
                    "assignedTo": assignee,
                    "status": status,
                    "createdDate": index.value(row, "CREATED_DATE/TIME", "CREATED"),
                    "sourceStatus": index.value(row, "SOURCE_STATUS"),
                }
            )

        try:
            limit = int(filters.get("limit") or DEFAULT_TODO_LIMIT)
        except (TypeError, ValueError):
            raise ActionError(f"Invalid limit: {filters.get('limit')}")

        return {
            "success": True,
            "todos": todos[:limit],
            "count": len(todos),
            "statsByAssignee": stats_by_assignee,
            "timestamp": self.timestamp(),
        }

    def queue_todo(self, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = data.get("payload")
        if not isinstance(payload, dict) or not payload.get("action"):
            raise ActionError("Payload with action is required")

        todo_id = generate_id("TD")
        now = self.timestamp()
        self._queue_work("TODO_CREATE", data, now)
        return {
            "success": True,
            "todoId": todo_id,
            "message": "To-do queued for processing",
            "timestamp": now,
        }

    def update_todo(self, data: Dict[str, Any]) -> Dict[str, Any]:
        todo_id = data.get("todoId")
        if not todo_id:
            raise ActionError("todoId is required")

        ref = self._pme(self.settings.todo_tab)
        index, rows = self._read_tab(ref)
        if not rows:
            raise ActionNotFoundError("No to-dos found")

        id_column = index.find("TO_DO_ID", "TODO_ID")
        target_row = None
        if id_column is not None:
            for offset, row in enumerate(rows):
                if id_column < len(row) and row[id_column] == todo_id:
                    target_row = offset + 2
                    break
        if target_row is None:
            raise ActionNotFoundError(f"Todo not found: {todo_id}")

        updates = data.get("updates") or {}
        update_log = []
        if "status" in updates:
            status_column = index.find("TO_DO_STATUS", "STATUS")
            if status_column is not None:
                self.store.write_range(ref.cell(target_row, status_column), [[updates["status"]]])
                update_log.append(f"status → {updates['status']}")

        logger.info(f"Updated to-do {todo_id} (row {target_row}): {update_log or 'no changes'}")
        return {
            "success": True,
            "todoId": todo_id,
            "updates": update_log,
            "timestamp": self.timestamp(),
        }

    def queue_note(self, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = data.get("payload")
        if not isinstance(payload, dict) or not payload.get("note"):
            raise ActionError("Payload with note is required")

        now = self.timestamp()
        self._queue_work("NOTE_TRANSFER", data, now)
        return {"success": True, "message": "Note queued for processing", "timestamp": now}

    def get_all_property_labels(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Property rows keyed by REID, served from the cached MAIN snapshot."""
        snapshot = self.cache.get_snapshot()
        index = snapshot.header_index
        if not snapshot.rows:
            return {"success": True, "properties": {}, "count": 0}

        reid_column = index.find("REID")
        if reid_column is None:
            raise ActionError("REID column not found")

        reids = set(data["reids"]) if data.get("reids") else None
        # keyed by cleaned header text, the names getMainHeaders reports
        fields = {clean_header(f) for f in data["fields"]} if data.get("fields") else None
        columns: Dict[str, int] = {}
        for position, cell in enumerate(snapshot.header):
            name = clean_header(cell)
            if name and (fields is None or name in fields):
                columns[name] = position

        properties = {}
        for row in snapshot.rows:
            reid = row[reid_column] if reid_column < len(row) else ""
            if not reid:
                continue
            if reids is not None and reid not in reids:
                continue
            properties[reid] = {
                name: (row[position] if position < len(row) and row[position] is not None else "")
                for name, position in columns.items()
            }

        return {
            "success": True,
            "properties": properties,
            "count": len(properties),
            "refreshedAt": to_iso(snapshot.refreshed_at_wall),
            "timestamp": self.timestamp(),
        }

    def get_status_config(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Visible statuses ordered by UI sort score, plus hidden ones.

        A sort score of ``X`` hides the status; blank or non-numeric scores
        sort last.
        """
        index, rows = self._read_tab(self._pme(self.settings.var_tab))
        if not rows:
            return {"success": True, "statuses": [], "hiddenStatuses": []}

        status_column = index.find("STATUS_LIST", "STATUSLIST")
        sort_column = index.find("UI_SORT_SCORE", "UISORTSCORE")
        if status_column is None:
            return {"success": False, "error": "STATUS LIST column not found"}

        statuses = []
        hidden = []
        for offset, row in enumerate(rows):
            status = str(row[status_column]).strip() if status_column < len(row) else ""
            if not status:
                continue

            if sort_column is None:
                score: Any = offset + 1
            else:
                score = row[sort_column] if sort_column < len(row) else ""

            if str(score).strip().upper() == "X":
                hidden.append(status)
                continue
            statuses.append({"status": status, "sortScore": _sort_score(score)})

        statuses.sort(key=lambda item: item["sortScore"])
        return {
            "success": True,
            "statuses": statuses,
            "hiddenStatuses": hidden,
            "timestamp": self.timestamp(),
        }

    def get_main_headers(self, data: Dict[str, Any]) -> Dict[str, Any]:
        span = f"A1:{self.settings.main_range_span.split(':')[-1].rstrip('0123456789')}1"
        rows = self.store.read_range(self._pme(self.settings.main_tab, span))
        if not rows:
            return {"success": False, "error": "No headers found"}

        fields = HeaderIndex.build(rows[0]).fields()
        return {
            "success": True,
            "fields": fields,
            "count": len(fields),
            "timestamp": self.timestamp(),
        }

    def update_property_flag(self, data: Dict[str, Any]) -> Dict[str, Any]:
        reid = data.get("reid")
        if not reid:
            raise ActionError("reid is required")

        ref = self._pme(self.settings.main_tab, self.settings.main_range_span)
        index, rows = self._read_tab(ref)
        if not rows:
            raise ActionNotFoundError("No properties found")

        reid_column = index.find("REID")
        flag_column = index.find("FLAG")
        if flag_column is None:
            raise ActionError("FLAG column not found")
        if reid_column is None:
            raise ActionError("REID column not found")

        target_row = None
        for offset, row in enumerate(rows):
            if reid_column < len(row) and row[reid_column] == reid:
                target_row = offset + 2
                break
        if target_row is None:
            raise ActionNotFoundError(f"Property not found: {reid}")

        flagged = bool(data.get("flagged"))
        self.store.write_range(ref.cell(target_row, flag_column), [["TRUE" if flagged else "FALSE"]])
        logger.info(f"Set FLAG={flagged} for {reid} (row {target_row})")
        return {"success": True, "reid": reid, "flagged": flagged, "timestamp": self.timestamp()}


def _sort_score(value: Any) -> float:
    """Numeric sort score; blank, zero or non-numeric sorts as 999."""
    if value is None or value == "":
        return DEFAULT_SORT_SCORE
    try:
        score = float(value)
    except (TypeError, ValueError):
        return DEFAULT_SORT_SCORE
    if score != score or score == 0:
        return DEFAULT_SORT_SCORE
    return int(score) if score.is_integer() else score
