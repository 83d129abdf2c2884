"""
Run settings and the paths derived from them.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

MODULE_CACHE_SUBDIR = ".terraform/modules/"
PROVIDER_CACHE_SUBDIR = ".terraform/providers"
DEPENDENCY_LOCK_FILE = ".terraform.lock.hcl"
SNAPSHOT_FILE_NAME = "stack_state.tfstackstate"


def dot_relative(target: Path, start: Path) -> str:
    """
    Relative path from start to target in the form the engine expects.

    The same directory is ``./``; paths below start are prefixed with ``./``;
    paths escaping start keep their leading ``../``.
    """
    relative = os.path.relpath(target, start)
    if relative == ".":
        return "./"
    if not relative.startswith("../"):
        return "./" + relative
    return relative


class MigrationSettings(BaseModel):
    """Locations involved in one workspace to stack migration."""
    config_dir: Path
    stack_bundle_dir: Path
    state_file: Optional[Path] = None
    output_dir: Optional[Path] = None
    working_dir: Path = Field(default_factory=Path.cwd)
    terraform_bin: str = "terraform"

    @field_validator("config_dir", "stack_bundle_dir", "state_file", "output_dir", "working_dir")
    @classmethod
    def _absolute(cls, value: Optional[Path]) -> Optional[Path]:
        if value is None:
            return None
        return Path(value).expanduser().absolute()

    @property
    def module_cache_dir(self) -> Path:
        return self.stack_bundle_dir / MODULE_CACHE_SUBDIR

    @property
    def provider_cache_dir(self) -> Path:
        return self.config_dir / PROVIDER_CACHE_SUBDIR

    @property
    def stack_config_relative_path(self) -> str:
        return dot_relative(self.stack_bundle_dir, self.working_dir)

    @property
    def dependency_lock_relative_path(self) -> str:
        return dot_relative(self.config_dir / DEPENDENCY_LOCK_FILE, self.working_dir)

    @property
    def snapshot_path(self) -> Optional[Path]:
        if self.output_dir is None:
            return None
        return self.output_dir / SNAPSHOT_FILE_NAME
