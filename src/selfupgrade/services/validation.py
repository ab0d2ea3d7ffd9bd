"""Configuration and URL validation helpers for selfupgrade."""

import re
from typing import Mapping
from urllib.parse import urlparse

from selfupgrade.errors import UpgraderError
from selfupgrade.errors_catalog import actionable_error

_PACKAGE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")


class ValidationService:
    """Validates feed configuration and protocol policy."""

    def __init__(self, allow_insecure_http: bool = False):
        self.allow_insecure_http = allow_insecure_http

    def is_url(self, location: str) -> bool:
        scheme = urlparse(location).scheme.lower()
        return scheme in {"http", "https"}

    def require_key(self, config: Mapping[str, str], key: str) -> str:
        value = (config.get(key) or "").strip()
        if not value:
            raise UpgraderError(actionable_error("missing_config_key", key=key))
        return value

    def require_url(self, config: Mapping[str, str], key: str, label: str, logger) -> str:
        location = self.require_key(config, key)
        if not self.is_url(location):
            raise UpgraderError(f"{label} must be an HTTP(S) URL: {location}")
        self.enforce_https_policy(location, label, logger)
        return location.rstrip("/")

    def validate_package_id(self, package_id: str) -> str:
        if not _PACKAGE_ID_PATTERN.match(package_id):
            raise UpgraderError(f"Invalid package name '{package_id}'.")
        return package_id

    def enforce_https_policy(self, location: str, label: str, logger):
        if not self.is_url(location):
            return

        scheme = urlparse(location).scheme.lower()
        if scheme == "http" and not self.allow_insecure_http:
            raise UpgraderError(actionable_error("insecure_http", label=label))

        if scheme == "http" and self.allow_insecure_http:
            logger.warning("Insecure HTTP enabled for %s: %s", label, location)
