"""
Workspace to stack address map construction.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Sequence, Set

from .addresses import is_fully_modular, stack_component_address, top_level_modules
from .errors import AddressMismatchError, AmbiguousComponentError

logger = logging.getLogger(__name__)


class AddressMapKind(Enum):
    """Granularity of the keys in an address map."""
    RESOURCE = "resource"  # full resource address -> component.<name>
    MODULE = "module"      # top-level module name -> component name


@dataclass(frozen=True)
class AddressMap:
    """Read-only mapping from workspace addresses to stack addresses."""
    kind: AddressMapKind
    entries: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "entries", MappingProxyType(dict(self.entries)))

    def __getitem__(self, key: str) -> str:
        return self.entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, key: object) -> bool:
        return key in self.entries

    def to_dict(self) -> Dict[str, str]:
        return dict(self.entries)

    @property
    def resource_addresses(self) -> Dict[str, str]:
        """Entries keyed by resource address, empty for a module map."""
        return self.to_dict() if self.kind is AddressMapKind.RESOURCE else {}

    @property
    def module_addresses(self) -> Dict[str, str]:
        """Entries keyed by module name, empty for a resource map."""
        return self.to_dict() if self.kind is AddressMapKind.MODULE else {}


def build_address_map(resources: Sequence[str], components: Set[str]) -> AddressMap:
    """
    Build the address map for a workspace.

    A workspace with resources outside of any module carries no signal for
    splitting them across components, so everything goes to the single
    declared component. A fully modular workspace maps each top-level module
    onto the component of the same name.

    Args:
        resources: Resource addresses listed from the workspace state
        components: Component names declared in the stack configuration

    Returns:
        AddressMap of kind RESOURCE or MODULE

    Raises:
        AmbiguousComponentError: Non-modular state with a component count other than 1
        AddressMismatchError: Modular state whose modules and components differ
    """
    if not is_fully_modular(resources):
        return _resource_address_map(resources, components)
    return _module_address_map(resources, components)


def _resource_address_map(resources: Sequence[str], components: Set[str]) -> AddressMap:
    if len(components) != 1:
        raise AmbiguousComponentError(found=len(components))

    (component,) = components
    target = stack_component_address(component)
    logger.info(f"Workspace is not fully modular, mapping {len(resources)} resources to {target}")

    return AddressMap(
        kind=AddressMapKind.RESOURCE,
        entries={resource: target for resource in resources},
    )


def _module_address_map(resources: Sequence[str], components: Set[str]) -> AddressMap:
    modules = top_level_modules(resources)
    if modules != set(components):
        raise AddressMismatchError(modules=modules, components=components)

    logger.info(f"Workspace is fully modular, mapping modules {sorted(modules)} to components")

    return AddressMap(
        kind=AddressMapKind.MODULE,
        entries={module: module for module in sorted(modules)},
    )
