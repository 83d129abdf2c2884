"""
Component discovery for stack configuration files.
"""

import logging
from pathlib import Path
from typing import Callable, Iterable, List, Set, Union

import hcl2

from .errors import ConfigError, InputError

logger = logging.getLogger(__name__)

STACK_COMPONENT_FILE_SUFFIX = ".tfcomponent.hcl"
COMPONENT_BLOCK = "component"

PathLike = Union[str, Path]


def find_stack_files(stack_bundle_dir: PathLike) -> List[Path]:
    """
    Find all component declaration files in a stack configuration directory.

    Args:
        stack_bundle_dir: Directory holding the generated stack configuration

    Returns:
        Sorted list of ``*.tfcomponent.hcl`` files

    Raises:
        InputError: If the directory does not exist or is not a directory
        ConfigError: If the directory holds no component files
    """
    bundle = Path(stack_bundle_dir)
    if not bundle.exists():
        raise InputError(f"path {bundle} does not exist")
    if not bundle.is_dir():
        raise InputError(f"path {bundle} is not a directory")

    stack_files = sorted(bundle.glob(f"*{STACK_COMPONENT_FILE_SUFFIX}"))
    if not stack_files:
        raise ConfigError(f"no stack files found in the directory {bundle}")

    logger.debug(f"Found {len(stack_files)} stack files in {bundle}")
    return stack_files


def extract_components(file_path: PathLike) -> Set[str]:
    """
    Read the names of all ``component "<name>" {}`` blocks in one HCL file.

    Other top-level blocks are ignored. A file without component blocks
    yields an empty set.

    Args:
        file_path: Path to a ``.tfcomponent.hcl`` file

    Returns:
        Set of component names

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    path = Path(file_path)
    try:
        with open(path, "r") as f:
            document = hcl2.load(f)
    except Exception as e:
        raise ConfigError(f"failed to parse HCL file {path}, err: {e}") from e

    components = set()
    for block in document.get(COMPONENT_BLOCK, []):
        # a labelled block is {label: body}; an unlabelled one is its bare body
        keys = [key for key in block if not key.startswith("__")]
        if len(keys) != 1 or not isinstance(block[keys[0]], dict):
            raise ConfigError(f"{path}: {COMPONENT_BLOCK} block must have a name label")
        components.add(keys[0].strip('"'))

    return components


def aggregate_components(
    file_paths: Iterable[PathLike],
    extract: Callable[[PathLike], Set[str]] = extract_components,
) -> Set[str]:
    """
    Merge the components declared across several stack files.

    Args:
        file_paths: Stack files to read
        extract: Single-file extractor

    Returns:
        Union of all declared component names

    Raises:
        ConfigError: If no file declares a component
    """
    components: Set[str] = set()
    for file_path in file_paths:
        found = extract(file_path)
        if not found:
            logger.debug(f"No components declared in {file_path}")
        components.update(found)

    if not components:
        raise ConfigError("no components found in the stack files")

    return components
