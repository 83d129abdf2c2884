"""
Error taxonomy for workspace to stack migrations.
"""

from typing import Iterable, Optional


class MigrationError(Exception):
    """
    Base class for every failure raised by a migration run.

    ``stage`` names the step of the run (listing, classification, mapping,
    session, streaming, persist) and is filled in by the orchestrator.
    """

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.stage: Optional[str] = None

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class InputError(MigrationError):
    """Empty or invalid address list, or an invalid path."""


class ConfigError(MigrationError):
    """No components declared, or a stack file could not be parsed."""


class AmbiguousComponentError(MigrationError):
    """A non-modular workspace must migrate into exactly one component."""

    def __init__(self, found: int):
        super().__init__(f"the Terraform state is not fully modular, found {found} components, expected 1")
        self.found = found


class AddressMismatchError(MigrationError):
    """Top-level module names and component names differ."""

    def __init__(self, modules: Iterable[str], components: Iterable[str]):
        self.modules = frozenset(modules)
        self.components = frozenset(components)
        super().__init__(
            f"the top-level modules {sorted(self.modules)} do not match "
            f"the components {sorted(self.components)}"
        )


class EngineError(MigrationError):
    """The migration engine failed; ``phase`` names the handle or call involved."""


class ProtocolError(MigrationError):
    """Diagnostic event, unknown event, or a release failure after the stream closed."""


class MigrationCancelled(MigrationError):
    """The surrounding context cancelled the run."""
