"""Configuration loader for selfupgrade."""

from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import yaml

from selfupgrade.constants import UPGRADE_CONFIG_KEYS
from selfupgrade.errors import UpgraderError


class ConfigLoader:
    """Loads the YAML configuration file shared by the CLI and the upgrade feed.

    Nested mappings are flattened into dotted keys, so ``upgrade: {feedurl: x}``
    and ``upgrade.feedurl: x`` are equivalent.
    """

    CLI_KEYS = {
        "verbose",
        "log_file",
        "dry_run",
        "no_verify",
        "allow_insecure_http",
    }
    SUPPORTED_KEYS = CLI_KEYS | set(UPGRADE_CONFIG_KEYS)
    BOOL_KEYS = {"verbose", "dry_run", "no_verify", "allow_insecure_http"}

    def __init__(self, config_path: Optional[str] = None, required: bool = False):
        self.config_path = config_path
        self.required = required

    def load(self) -> Dict[str, Any]:
        if not self.config_path:
            return {}

        path = Path(self.config_path)
        if not path.exists():
            if self.required:
                raise UpgraderError(f"Config file not found: {self.config_path}")
            return {}

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise UpgraderError(f"Invalid config file '{self.config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise UpgraderError("Config file must contain a YAML mapping at the root.")

        flattened = self._flatten(parsed)
        known = {key.lower(): key for key in self.SUPPORTED_KEYS}
        unknown = sorted(key for key in flattened if key.lower() not in known)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise UpgraderError(f"Unknown configuration keys: {unknown_list}")

        loaded = {known[key.lower()]: value for key, value in flattened.items()}
        invalid = sorted(key for key in self.BOOL_KEYS if key in loaded and not isinstance(loaded[key], bool))
        if invalid:
            invalid_list = ", ".join(invalid)
            raise UpgraderError(f"Configuration keys must be true or false: {invalid_list}")
        return loaded

    def get_all(self) -> Mapping[str, str]:
        """Read-only view of the ``upgrade.*`` entries, values as strings."""
        entries = {
            key: str(value)
            for key, value in self.load().items()
            if key in UPGRADE_CONFIG_KEYS and value is not None
        }
        return MappingProxyType(entries)

    def _flatten(self, data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
        flattened: Dict[str, Any] = {}
        for key, value in data.items():
            full_key = f"{prefix}{key}"
            if isinstance(value, dict):
                flattened.update(self._flatten(value, prefix=f"{full_key}."))
            else:
                flattened[full_key] = value
        return flattened
