"""
Terraform workspace resource listing.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import InputError

logger = logging.getLogger(__name__)

# Variables that would leak debug output or a foreign CLI config into the listing
FILTERED_ENV_PREFIXES = ("TF_LOG=", "TF_CLI_CONFIG_FILE=")


def _terraform_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Copy of the environment without TF_LOG and TF_CLI_CONFIG_FILE."""
    source = os.environ if environ is None else environ
    return {
        key: value
        for key, value in source.items()
        if not f"{key}={value}".startswith(FILTERED_ENV_PREFIXES)
    }


def list_resources(working_dir: Union[str, Path], terraform_bin: str = "terraform") -> List[str]:
    """
    List all resource addresses in the workspace state of a Terraform directory.

    Runs ``terraform state list`` in the given directory.

    Args:
        working_dir: Terraform configuration directory
        terraform_bin: Terraform executable

    Returns:
        Resource addresses, in the order Terraform prints them

    Raises:
        InputError: If the command fails or the state holds no resources
    """
    working_dir = Path(working_dir)
    if not working_dir.is_dir():
        raise InputError(f"path {working_dir} is not a directory")

    command = [terraform_bin, "state", "list"]
    logger.debug(f"Running {' '.join(command)} in {working_dir}")

    try:
        result = subprocess.run(
            command,
            cwd=working_dir,
            env=_terraform_env(),
            capture_output=True,
            text=True,
            check=True
        )
    except subprocess.CalledProcessError as e:
        raise InputError(f"failed to run terraform state list: {e.stderr.strip()}") from e
    except OSError as e:
        raise InputError(f"failed to run terraform state list: {e}") from e

    resources = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    if not resources:
        raise InputError("no resources found in the Terraform state")

    logger.info(f"Found {len(resources)} resources in {working_dir}")
    return resources
