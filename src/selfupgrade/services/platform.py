"""Platform-specific preparation of the upgrade directories."""

import sys
from abc import ABC, abstractmethod
from typing import Optional

from selfupgrade.constants import DIR_MODE, UPGRADER_EXECUTABLE_NAME
from selfupgrade.services.filesystem import FileSystemService
from selfupgrade.services.paths import UpgradePaths


def current_platform_name(platform: Optional[str] = None) -> str:
    """Key used to pick installers out of a package's install manifest."""
    platform = platform or sys.platform
    if platform == "win32":
        return "windows"
    if platform == "darwin":
        return "macos"
    return "linux"


class PlatformStrategy(ABC):
    """Creates the scratch and staging directories with the right attributes.

    Both ``prepare_*`` methods are idempotent: anything left behind by a
    previous attempt is removed first. They raise ``OSError`` when the
    directory cannot be reset.
    """

    def __init__(self, paths: UpgradePaths, filesystem_service: FileSystemService, tracer):
        self.paths = paths
        self.filesystem_service = filesystem_service
        self.tracer = tracer

    @property
    def download_directory(self) -> str:
        return self.paths.download_directory

    @property
    def application_directory(self) -> str:
        return self.paths.application_directory

    @property
    @abstractmethod
    def upgrader_executable_name(self) -> str:
        """File name of the upgrader inside the staged application directory."""

    @property
    @abstractmethod
    def platform_name(self) -> str:
        """Key used to pick installers out of a package's install manifest."""

    def prepare_download_directory(self) -> str:
        self._prepare(self.download_directory)
        return self.download_directory

    def prepare_application_directory(self) -> str:
        self._prepare(self.application_directory)
        return self.application_directory

    @abstractmethod
    def _prepare(self, path: str):
        ...


class PosixPlatformStrategy(PlatformStrategy):
    def __init__(self, paths, filesystem_service, tracer, platform: Optional[str] = None):
        super().__init__(paths, filesystem_service, tracer)
        self._platform = platform or sys.platform

    @property
    def upgrader_executable_name(self) -> str:
        return UPGRADER_EXECUTABLE_NAME

    @property
    def platform_name(self) -> str:
        return current_platform_name(self._platform)

    def _prepare(self, path: str):
        self.tracer.debug("Resetting %s with mode %o", path, DIR_MODE)
        self.filesystem_service.reset_dir(path, DIR_MODE)


class WindowsPlatformStrategy(PlatformStrategy):
    @property
    def upgrader_executable_name(self) -> str:
        return f"{UPGRADER_EXECUTABLE_NAME}.exe"

    @property
    def platform_name(self) -> str:
        return "windows"

    def _prepare(self, path: str):
        # Permissions are inherited from the per-user data directory.
        self.tracer.debug("Resetting %s", path)
        self.filesystem_service.reset_dir(path, DIR_MODE)


def create_platform_strategy(
    filesystem_service: FileSystemService,
    tracer,
    paths: Optional[UpgradePaths] = None,
    platform: Optional[str] = None,
) -> PlatformStrategy:
    paths = paths or UpgradePaths.default()
    platform = platform or sys.platform
    if platform == "win32":
        return WindowsPlatformStrategy(paths, filesystem_service, tracer)
    return PosixPlatformStrategy(paths, filesystem_service, tracer, platform=platform)
