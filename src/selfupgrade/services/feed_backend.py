"""Feed backend abstraction consumed by the upgrade orchestrator."""

from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

from packaging.version import Version

from selfupgrade.models import InstallActionWrapper, ProcessResult

# (installer path, arguments) -> process result. Owned by the orchestrator.
InstallerLauncher = Callable[[str, List[str]], ProcessResult]


class FeedBackend(ABC):
    """Knows how to query and fetch releases from one kind of feed.

    Expected failures are raised as ``FeedError``/``InstallerError`` subclasses of
    ``UpgraderError``; the orchestrator converts them into phase results. Every
    mutating method honours ``dry_run`` by logging its intent and returning
    without side effects.
    """

    def __init__(self, tracer, filesystem_service, dry_run: bool = False, no_verify: bool = False):
        self.tracer = tracer
        self.filesystem_service = filesystem_service
        self.dry_run = dry_run
        self.no_verify = no_verify

    @property
    @abstractmethod
    def supports_anonymous_version_query(self) -> bool:
        """Whether ``query_newest_version`` works without feed credentials."""

    @abstractmethod
    def upgrade_allowed(self) -> Tuple[bool, Optional[str]]:
        """Return ``(allowed, message)``; a denial is not an error."""

    @abstractmethod
    def query_newest_version(self) -> Optional[Version]:
        """Return the newest release on the feed, or ``None`` when there is none."""

    @abstractmethod
    def download_newest_version(self, download_directory: str) -> str:
        """Fetch the release found by ``query_newest_version`` and return the package path."""

    @abstractmethod
    def run_installer(self, install_action_wrapper: InstallActionWrapper, launcher: InstallerLauncher):
        """Run each installer of the downloaded release inside ``install_action_wrapper``."""

    @abstractmethod
    def cleanup(self):
        """Remove downloaded artifacts."""

    def close(self):
        """Release network resources held by the backend."""
