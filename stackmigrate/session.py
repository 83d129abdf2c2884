"""
Scoped acquisition of the migration engine's working handles.
"""

import logging
from typing import Callable, Iterator, List, Optional, Tuple

from .address_map import AddressMap
from .config import MigrationSettings
from .engine import Handle, MigrationEngine, MigrationEvent
from .errors import EngineError, MigrationError, ProtocolError

logger = logging.getLogger(__name__)


class MigrationSession:
    """
    Opens the five handles a migration needs and releases them on exit.

    Handles are acquired in a fixed order (state, config bundle, stack
    config, lock file, provider cache) and released in reverse order on
    every exit path. A failed release does not stop the remaining ones; the
    first failure is raised as ProtocolError once all releases were
    attempted, unless another exception is already propagating.

    Usage:
        with MigrationSession(engine, settings, raw_state) as session:
            events = session.migrate(address_map)
    """

    def __init__(self, engine: MigrationEngine, settings: MigrationSettings, raw_state: bytes):
        self.engine = engine
        self.settings = settings
        self.raw_state = raw_state
        self.state: Optional[Handle] = None
        self.config_bundle: Optional[Handle] = None
        self.stack_config: Optional[Handle] = None
        self.lock_file: Optional[Handle] = None
        self.provider_cache: Optional[Handle] = None
        self._release_stack: List[Tuple[str, Handle]] = []

    @property
    def is_open(self) -> bool:
        return self.provider_cache is not None and bool(self._release_stack)

    def _acquire(self, phase: str, opener: Callable[..., Handle], *args) -> Handle:
        try:
            handle = opener(*args)
        except EngineError as e:
            if e.phase is None:
                e.phase = phase
            raise
        except Exception as e:
            raise EngineError(f"error opening {phase.replace('_', ' ')}: {e}", phase=phase) from e

        self._release_stack.append((phase, handle))
        logger.debug(f"Opened {phase} handle {handle.id}")
        return handle

    def open(self) -> "MigrationSession":
        """Acquire all handles, releasing the acquired ones if any step fails."""
        settings = self.settings
        try:
            self.state = self._acquire("state", self.engine.open_state, self.raw_state)
            self.config_bundle = self._acquire(
                "config_bundle", self.engine.open_config_bundle, str(settings.module_cache_dir)
            )
            self.stack_config = self._acquire(
                "stack_config", self.engine.open_stack_config,
                self.config_bundle, settings.stack_config_relative_path
            )
            self.lock_file = self._acquire(
                "lock_file", self.engine.open_lock_file,
                self.config_bundle, settings.dependency_lock_relative_path
            )
            self.provider_cache = self._acquire(
                "provider_cache", self.engine.open_provider_cache, str(settings.provider_cache_dir)
            )
        except BaseException:
            self.close(propagating=True)
            raise

        return self

    def migrate(self, address_map: AddressMap) -> Iterator[MigrationEvent]:
        """Start the engine's migration with the handles of this session."""
        if not self.is_open:
            raise EngineError("migration session is not open", phase="migrate")
        try:
            return self.engine.migrate(
                self.state,
                self.stack_config,
                self.lock_file,
                self.provider_cache,
                address_map,
            )
        except MigrationError:
            raise
        except Exception as e:
            raise EngineError(f"error migrating Terraform state: {e}", phase="migrate") from e

    def close(self, propagating: bool = False) -> None:
        """
        Release every acquired handle, newest first.

        Args:
            propagating: True when another exception is already on its way
                out; release failures are then logged but not raised
        """
        first_failure: Optional[Tuple[str, Exception]] = None

        while self._release_stack:
            phase, handle = self._release_stack.pop()
            try:
                self.engine.release(handle)
                logger.debug(f"Released {phase} handle {handle.id}")
            except Exception as e:
                logger.warning(f"Failed to release {phase} handle {handle.id}: {e}")
                if first_failure is None:
                    first_failure = (phase, e)

        self.state = self.config_bundle = self.stack_config = None
        self.lock_file = self.provider_cache = None

        if first_failure is not None and not propagating:
            phase, error = first_failure
            raise ProtocolError(f"failed to release {phase} handle: {error}") from error

    def __enter__(self) -> "MigrationSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close(propagating=exc_type is not None)
        return False
