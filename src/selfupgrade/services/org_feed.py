"""Organization-resolved feed backend.

The newest version is chosen by an organization info server for a given
organization, platform and ring; the package itself still comes from the
configured NuGet feed.
"""

from typing import Mapping, Optional, Tuple

import requests
from packaging.version import InvalidVersion, Version
from rich.console import Console

from selfupgrade.constants import ORG_INFO_SERVER_URL, ORG_NAME, UPGRADE_RING
from selfupgrade.errors import FeedError
from selfupgrade.services.archive import ArchiveService
from selfupgrade.services.credentials import CredentialStore
from selfupgrade.services.download import DownloadService, raise_for_feed_status
from selfupgrade.services.nuget_feed import NuGetFeedBackend, NuGetFeedClient, NuGetFeedConfig
from selfupgrade.services.platform import current_platform_name
from selfupgrade.services.validation import ValidationService

NO_UPGRADE_RING = "none"

_ORG_PLATFORM_NAMES = {"windows": "Windows", "macos": "Mac", "linux": "Linux"}


class OrgInfoClient:
    """Queries ``{server}/api/GetLatestVersion`` anonymously."""

    def __init__(self, server_url: str, session, logger, timeout: float = 30.0):
        self.server_url = server_url
        self.session = session
        self.logger = logger
        self.timeout = timeout

    def get_latest_version(self, org_name: str, platform: str, ring: str) -> Optional[Version]:
        url = f"{self.server_url}/api/GetLatestVersion"
        params = {"Organization": org_name, "Platform": platform, "Ring": ring}
        self.logger.debug("GET %s %s", url, params)

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise FeedError(f"Could not reach organization info server {self.server_url}: {exc}") from exc

        raise_for_feed_status(response, url)

        try:
            data = response.json()
        except ValueError as exc:
            raise FeedError(f"Organization info server {self.server_url} returned malformed JSON.") from exc

        raw_version = data.get("Version", data.get("version")) if isinstance(data, dict) else None
        if not raw_version:
            return None

        try:
            return Version(str(raw_version))
        except InvalidVersion as exc:
            raise FeedError(f"Organization info server returned an invalid version '{raw_version}'.") from exc


class OrgFeedBackend(NuGetFeedBackend):
    def __init__(self, org_client: OrgInfoClient, org_name: str, ring: str, **kwargs):
        super().__init__(**kwargs)
        self.org_client = org_client
        self.org_name = org_name
        self.ring = ring

    @classmethod
    def create(
        cls,
        config: Mapping[str, str],
        tracer,
        filesystem_service,
        credential_store: CredentialStore,
        dry_run: bool = False,
        no_verify: bool = False,
        validation_service: Optional[ValidationService] = None,
        session=None,
        org_session=None,
        console: Optional[Console] = None,
        platform_name: Optional[str] = None,
    ) -> "OrgFeedBackend":
        validation_service = validation_service or ValidationService()
        server_url = validation_service.require_url(
            config, ORG_INFO_SERVER_URL, "organization info server URL", tracer
        )
        org_name = validation_service.require_key(config, ORG_NAME)
        ring = validation_service.require_key(config, UPGRADE_RING)
        feed_config = NuGetFeedConfig.from_config(config, validation_service, tracer)

        session = session if session is not None else requests.Session()
        org_session = org_session if org_session is not None else requests.Session()
        return cls(
            org_client=OrgInfoClient(server_url, org_session, tracer),
            org_name=org_name,
            ring=ring,
            config=feed_config,
            client=NuGetFeedClient(feed_config.feed_url, session, tracer),
            download_service=DownloadService(session, tracer, console or Console()),
            archive_service=ArchiveService(),
            credential_store=credential_store,
            tracer=tracer,
            filesystem_service=filesystem_service,
            dry_run=dry_run,
            no_verify=no_verify,
            platform_name=platform_name or current_platform_name(),
        )

    @property
    def supports_anonymous_version_query(self) -> bool:
        return True

    def upgrade_allowed(self) -> Tuple[bool, Optional[str]]:
        if self.ring.lower() == NO_UPGRADE_RING:
            return False, "Upgrade ring set to None. No upgrade check was performed."
        return super().upgrade_allowed()

    def query_newest_version(self) -> Optional[Version]:
        platform = _ORG_PLATFORM_NAMES.get(self.platform_name, self.platform_name)
        self.newest_version = self.org_client.get_latest_version(self.org_name, platform, self.ring)
        if self.newest_version is None:
            self.tracer.related_info(
                f"No versions available for organization {self.org_name} in ring {self.ring}"
            )
        return self.newest_version

    def close(self):
        super().close()
        close = getattr(self.org_client.session, "close", None)
        if close:
            close()
