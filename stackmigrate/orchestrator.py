"""
Main orchestrator for workspace to stack migrations.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Set

from .address_map import AddressMap, build_address_map
from .addresses import is_fully_modular
from .aggregator import aggregate_events
from .components import aggregate_components, extract_components, find_stack_files
from .config import MigrationSettings
from .engine import AppliedChange, MigrationEngine
from .errors import InputError, MigrationError
from .events import EventTypes, emit_event
from .lister import list_resources
from .session import MigrationSession
from .snapshot import StackStateSnapshot, write_snapshot
from .state import create_run_dir, new_run_id, write_run_json

logger = logging.getLogger(__name__)

ResourceLister = Callable[[MigrationSettings], List[str]]
ComponentExtractor = Callable[[Path], Set[str]]


@dataclass
class MappingPlan:
    """Everything decided before the engine is involved."""
    resources: List[str]
    fully_modular: bool
    components: Set[str]
    address_map: AddressMap


@dataclass
class MigrationResult:
    """Outcome of a successful run."""
    run_id: str
    snapshot: StackStateSnapshot
    address_map: AddressMap
    artifact_path: Optional[Path] = None


@contextmanager
def _stage(name: str, run_id: Optional[str] = None) -> Iterator[None]:
    """Tag migration errors raised inside the block with the run stage."""
    try:
        yield
    except MigrationError as e:
        # nested stages: the innermost one owns the error
        if e.stage is not None:
            raise
        e.stage = name
        logger.error(f"Migration failed during {name}: {e.message}")
        if run_id:
            emit_event(run_id, EventTypes.ERROR, {
                "stage": e.stage,
                "error": e.__class__.__name__,
                "reason": e.message,
            })
        raise


def _emit(run_id: Optional[str], event_type: str, data: dict) -> None:
    if run_id:
        emit_event(run_id, event_type, data)


def _list_workspace_resources(settings: MigrationSettings) -> List[str]:
    return list_resources(settings.config_dir, terraform_bin=settings.terraform_bin)


def plan_address_map(
    settings: MigrationSettings,
    lister: ResourceLister = _list_workspace_resources,
    extract: ComponentExtractor = extract_components,
    run_id: Optional[str] = None,
) -> MappingPlan:
    """
    List, classify and map the workspace resources.

    Args:
        settings: Run settings
        lister: Returns the resource addresses of the workspace
        extract: Returns the components declared in one stack file
        run_id: Journal to record progress in, if any

    Returns:
        MappingPlan with the authoritative address map
    """
    with _stage("listing", run_id):
        resources = lister(settings)
    logger.info(f"Listed {len(resources)} resources from {settings.config_dir}")
    _emit(run_id, EventTypes.RESOURCES_LISTED, {"count": len(resources)})

    with _stage("classification", run_id):
        fully_modular = is_fully_modular(resources)
    logger.info(f"The Terraform state is {'' if fully_modular else 'not '}fully modular")
    _emit(run_id, EventTypes.CLASSIFIED, {"fully_modular": fully_modular})

    with _stage("mapping", run_id):
        stack_files = find_stack_files(settings.stack_bundle_dir)
        components = aggregate_components(stack_files, extract)
        address_map = build_address_map(resources, components)
    _emit(run_id, EventTypes.ADDRESS_MAP_BUILT, {
        "kind": address_map.kind.value,
        "components": sorted(components),
        "entries": len(address_map),
    })

    return MappingPlan(
        resources=resources,
        fully_modular=fully_modular,
        components=components,
        address_map=address_map,
    )


def _read_raw_state(settings: MigrationSettings) -> bytes:
    if settings.state_file is None:
        raise InputError("no Terraform state file configured")
    try:
        with open(settings.state_file, "rb") as f:
            return f.read()
    except OSError as e:
        raise InputError(f"failed to read Terraform state file {settings.state_file}: {e}") from e


def run_migration(
    settings: MigrationSettings,
    engine: MigrationEngine,
    run_id: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    lister: ResourceLister = _list_workspace_resources,
    extract: ComponentExtractor = extract_components,
) -> MigrationResult:
    """
    Migrate a workspace state into a stack state snapshot.

    The snapshot is written to ``settings.snapshot_path`` only after the
    engine's stream closed successfully. The engine is stopped on every exit
    path.

    Args:
        settings: Run settings
        engine: Migration engine to drive
        run_id: Optional run ID (generated if not provided)
        cancel: Set from another thread to cancel streaming
        timeout: Seconds the event stream may take
        lister: Resource lister, ``terraform state list`` by default
        extract: Single-file component extractor

    Returns:
        MigrationResult

    Raises:
        MigrationError: First failure, with ``stage`` set
    """
    if run_id is None:
        run_id = new_run_id()

    create_run_dir(run_id)
    write_run_json(run_id, settings.model_dump(mode="json"))
    emit_event(run_id, EventTypes.INIT, {
        "run_id": run_id,
        "config_dir": str(settings.config_dir),
        "stack_bundle_dir": str(settings.stack_bundle_dir),
    })

    try:
        plan = plan_address_map(settings, lister, extract, run_id)

        with _stage("session", run_id):
            raw_state = _read_raw_state(settings)
            session = MigrationSession(engine, settings, raw_state)

        with _stage("session", run_id), session:
            _emit(run_id, EventTypes.SESSION_OPEN, {
                "stack_config": settings.stack_config_relative_path,
                "lock_file": settings.dependency_lock_relative_path,
            })

            with _stage("streaming", run_id):
                events = session.migrate(plan.address_map)
                snapshot = aggregate_events(
                    events,
                    cancel=cancel,
                    timeout=timeout,
                    on_change=lambda change: _record_change(run_id, change),
                )

        _emit(run_id, EventTypes.STREAM_DONE, snapshot.summary())

        artifact_path = None
        if settings.snapshot_path is not None:
            with _stage("persist", run_id):
                artifact_path = _persist(snapshot, settings.snapshot_path)
            _emit(run_id, EventTypes.SNAPSHOT_WRITTEN, {"path": str(artifact_path)})
    finally:
        _stop_engine(engine)

    return MigrationResult(
        run_id=run_id,
        snapshot=snapshot,
        address_map=plan.address_map,
        artifact_path=artifact_path,
    )


def _stop_engine(engine: MigrationEngine) -> None:
    try:
        engine.stop()
    except Exception as e:
        logger.warning(f"Failed to stop migration engine: {e}")


def _record_change(run_id: str, change: AppliedChange) -> None:
    emit_event(run_id, EventTypes.CHANGE_APPLIED, {
        "raw_keys": [key for key, _ in change.raw],
        "description_keys": [key for key, _ in change.descriptions],
    })


def _persist(snapshot: StackStateSnapshot, path: Path) -> Path:
    try:
        return write_snapshot(snapshot, path)
    except OSError as e:
        raise InputError(f"failed to write stack state to {path}: {e}") from e
