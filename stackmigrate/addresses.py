"""
Classification helpers for Terraform resource addresses.
"""

import re
from typing import Sequence, Set

from .errors import InputError

MODULE_PREFIX = "module."

# Captures the outermost module name, e.g. "net" in module.net.module.sub.aws_vpc.main
FIRST_LEVEL_MODULE_PATTERN = re.compile(r"^module\.([^.]+)")


def is_fully_modular(addresses: Sequence[str]) -> bool:
    """
    Check whether every resource lives inside a module.

    Args:
        addresses: Resource addresses as printed by ``terraform state list``

    Returns:
        True if every address starts with ``module.``

    Raises:
        InputError: If no addresses were given
    """
    if not addresses:
        raise InputError("cannot classify an empty list of resource addresses")

    for address in addresses:
        if not address.startswith(MODULE_PREFIX):
            return False
    return True


def top_level_modules(addresses: Sequence[str]) -> Set[str]:
    """
    Collect the outermost module names referenced by the given addresses.

    Args:
        addresses: Resource addresses

    Returns:
        Set of top-level module names

    Raises:
        InputError: If none of the addresses belongs to a module
    """
    modules = set()
    for address in addresses:
        match = FIRST_LEVEL_MODULE_PATTERN.match(address)
        if match:
            modules.add(match.group(1))

    if not modules:
        raise InputError("no top-level modules found in the resources")

    return modules


def stack_component_address(component: str) -> str:
    """Stack address for a component: ``component.<name>``."""
    return f"component.{component}"
