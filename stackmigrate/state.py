"""
On-disk bookkeeping for migration runs.
"""

import json
import os
import re
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

# m-<date>-<time>-<4 hex digits>
_RUN_ID_RE = re.compile(r"^m-\d{8}-\d{6}-[0-9a-f]{4}$")


def new_run_id() -> str:
    """Return a fresh run ID, sortable by start time."""
    return f"m-{datetime.now():%Y%m%d-%H%M%S}-{secrets.token_hex(2)}"


def is_valid_run_id(run_id: str) -> bool:
    return bool(_RUN_ID_RE.match(run_id))


def get_home() -> Path:
    """
    Get the stackmigrate home directory.

    Returns:
        Path: Directory holding one sub-directory per run
    """
    home = os.environ.get("STACKMIGRATE_HOME", ".stackmigrate")
    return Path(home).resolve()


def get_run_dir(run_id: str) -> Path:
    """
    Get the directory for a specific run.

    Raises:
        ValueError: If run ID is invalid
    """
    if not is_valid_run_id(run_id):
        raise ValueError(f"Invalid run ID: {run_id}")

    return get_home() / run_id


def create_run_dir(run_id: str) -> Path:
    """Create the run directory and return its path."""
    run_dir = get_run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def write_run_json(run_id: str, settings: Dict[str, Any]) -> None:
    """
    Record the settings a run was started with in run.json.

    Args:
        run_id: Run ID
        settings: JSON-serializable settings
    """
    run_data = dict(settings)
    run_data["created_at"] = datetime.now().isoformat()

    with open(get_run_dir(run_id) / "run.json", "w") as f:
        json.dump(run_data, f, indent=2, default=str)


def read_run_json(run_id: str) -> Dict[str, Any]:
    """
    Read the settings of a run.

    Raises:
        FileNotFoundError: If run.json doesn't exist
    """
    run_file = get_run_dir(run_id) / "run.json"
    if not run_file.exists():
        raise FileNotFoundError(f"Run {run_id} not found")

    with open(run_file, "r") as f:
        return json.load(f)


def list_runs() -> List[str]:
    """List all run IDs, most recent first."""
    home = get_home()
    if not home.exists():
        return []

    runs = [item.name for item in home.iterdir() if item.is_dir() and is_valid_run_id(item.name)]
    return sorted(runs, reverse=True)


def run_exists(run_id: str) -> bool:
    run_dir = get_run_dir(run_id)
    return run_dir.exists() and (run_dir / "run.json").exists()

