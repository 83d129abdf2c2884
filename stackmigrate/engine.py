"""
Migration engine interface and the events it streams back.

The engine performs the per-resource state transformation. This package only
opens its working handles, hands it an address map and consumes its events.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Tuple, Union

from .address_map import AddressMap
from .errors import EngineError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Handle:
    """Opaque reference to a resource opened inside the engine."""
    kind: str   # "state", "config_bundle", "stack_config", "lock_file", "provider_cache"
    id: int


@dataclass(frozen=True)
class AppliedChange:
    """A batch of stack state entries produced by the engine."""
    raw: List[Tuple[str, bytes]] = field(default_factory=list)
    descriptions: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)


@dataclass(frozen=True)
class Diagnostic:
    """An engine-reported failure. Always fatal for the run."""
    summary: str
    detail: str = ""
    kind: str = "error"


MigrationEvent = Union[AppliedChange, Diagnostic]


class MigrationEngine(ABC):
    """Abstract migration engine session."""

    @abstractmethod
    def open_state(self, raw_state: bytes) -> Handle:
        """Load a raw workspace state file."""
        pass

    @abstractmethod
    def open_config_bundle(self, path: str) -> Handle:
        """Open the stack source bundle (module cache directory)."""
        pass

    @abstractmethod
    def open_stack_config(self, bundle: Handle, relative_path: str) -> Handle:
        """Open the stack configuration inside a source bundle."""
        pass

    @abstractmethod
    def open_lock_file(self, bundle: Handle, relative_path: str) -> Handle:
        """Open the dependency lock file inside a source bundle."""
        pass

    @abstractmethod
    def open_provider_cache(self, path: str) -> Handle:
        """Open the provider plugin cache directory."""
        pass

    @abstractmethod
    def release(self, handle: Handle) -> None:
        """Release a handle returned by one of the open_* methods."""
        pass

    @abstractmethod
    def migrate(
        self,
        state: Handle,
        stack_config: Handle,
        lock_file: Handle,
        provider_cache: Handle,
        address_map: AddressMap,
    ) -> Iterator[MigrationEvent]:
        """
        Start the migration and return its event stream.

        The stream is lazy, finite and cannot be restarted. Exhaustion marks
        successful completion; a transport failure is raised from ``next()``.
        Receives run on a consumer thread of their own. A receive still
        blocked when the run is cancelled is abandoned, and ``stop()`` is
        expected to unblock it.
        """
        pass

    def stop(self) -> None:
        """Shut the engine down. Called once the run is over."""
        pass


def load_engine(target: str) -> MigrationEngine:
    """
    Instantiate an engine from a ``package.module:factory`` reference.

    Args:
        target: Import path of a callable returning a MigrationEngine

    Returns:
        The engine instance

    Raises:
        EngineError: If the factory cannot be imported or returns something else
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise EngineError(f"invalid engine reference {target!r}, expected 'module:factory'", phase="engine")

    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise EngineError(f"cannot load engine {target!r}: {e}", phase="engine") from e

    try:
        engine = factory()
    except Exception as e:
        raise EngineError(f"engine factory {target!r} failed: {e}", phase="engine") from e

    if not isinstance(engine, MigrationEngine):
        raise EngineError(f"{target!r} did not return a MigrationEngine", phase="engine")

    logger.debug(f"Loaded migration engine {engine.__class__.__name__} from {target}")
    return engine
