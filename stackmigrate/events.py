"""
Run journal in NDJSON format.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .state import get_run_dir

logger = logging.getLogger(__name__)

JOURNAL_FILE = "logs.ndjson"


class EventTypes:
    INIT = "INIT"
    RESOURCES_LISTED = "RESOURCES_LISTED"
    CLASSIFIED = "CLASSIFIED"
    ADDRESS_MAP_BUILT = "ADDRESS_MAP_BUILT"
    SESSION_OPEN = "SESSION_OPEN"
    CHANGE_APPLIED = "CHANGE_APPLIED"
    STREAM_DONE = "STREAM_DONE"
    SNAPSHOT_WRITTEN = "SNAPSHOT_WRITTEN"
    ERROR = "ERROR"


STATUS_BY_EVENT = {
    EventTypes.INIT: "queued",
    EventTypes.RESOURCES_LISTED: "listed",
    EventTypes.CLASSIFIED: "classified",
    EventTypes.ADDRESS_MAP_BUILT: "mapped",
    EventTypes.SESSION_OPEN: "migrating",
    EventTypes.CHANGE_APPLIED: "migrating",
    EventTypes.STREAM_DONE: "migrated",
    EventTypes.SNAPSHOT_WRITTEN: "done",
    EventTypes.ERROR: "failed",
}


def emit_event(run_id: str, event_type: str, data: Dict[str, Any]) -> None:
    """
    Append an event to the run's logs.ndjson file.

    Args:
        run_id: Run ID
        event_type: One of EventTypes
        data: Event data
    """
    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "data": data
    }

    with open(get_run_dir(run_id) / JOURNAL_FILE, "a") as f:
        f.write(json.dumps(event, default=str) + "\n")
        f.flush()


def read_events(run_id: str) -> List[Dict[str, Any]]:
    """Read all events of a run, skipping malformed lines."""
    journal = get_run_dir(run_id) / JOURNAL_FILE
    if not journal.exists():
        return []

    events = []
    with open(journal, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed journal line in {journal}")

    return events


def get_last_event(run_id: str) -> Optional[Dict[str, Any]]:
    events = read_events(run_id)
    return events[-1] if events else None


def get_status_from_events(run_id: str) -> str:
    """
    Derive the run status from its last event.

    Returns:
        Status string, "unknown" when the journal is empty
    """
    last_event = get_last_event(run_id)
    if not last_event:
        return "unknown"

    return STATUS_BY_EVENT.get(last_event.get("type", ""), "unknown")
