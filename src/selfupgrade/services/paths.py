"""Well-known locations used by the upgrade pipeline."""

import os
import sys
from dataclasses import dataclass
from typing import Mapping, Optional

from selfupgrade.constants import HOME_ENV_VAR, PRODUCT_NAME


def application_data_root(environ: Optional[Mapping[str, str]] = None, platform: Optional[str] = None) -> str:
    """Return the per-user data directory that holds upgrade artifacts."""
    environ = os.environ if environ is None else environ
    platform = platform or sys.platform

    override = environ.get(HOME_ENV_VAR)
    if override:
        return override

    if platform == "win32":
        base = environ.get("LOCALAPPDATA") or os.path.join(os.path.expanduser("~"), "AppData", "Local")
    elif platform == "darwin":
        base = os.path.join(os.path.expanduser("~"), "Library", "Application Support")
    else:
        base = environ.get("XDG_DATA_HOME") or os.path.join(os.path.expanduser("~"), ".local", "share")

    return os.path.join(base, PRODUCT_NAME)


@dataclass(frozen=True)
class UpgradePaths:
    root: str

    @classmethod
    def default(cls) -> "UpgradePaths":
        return cls(root=application_data_root())

    @property
    def upgrade_root(self) -> str:
        return os.path.join(self.root, "ProductUpgrader")

    @property
    def download_directory(self) -> str:
        return os.path.join(self.upgrade_root, "Downloads")

    @property
    def application_directory(self) -> str:
        return os.path.join(self.upgrade_root, "Tools")

    @property
    def log_directory(self) -> str:
        return os.path.join(self.upgrade_root, "Logs")

    @property
    def config_file(self) -> str:
        return os.path.join(self.root, "config.yml")
