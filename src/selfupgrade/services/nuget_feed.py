"""Direct NuGet v3 feed backend."""

import json
import os
import shlex
import sys
import xml.etree.ElementTree as ElementTree
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

import requests
from packaging.version import InvalidVersion, Version
from rich.console import Console

from selfupgrade.constants import (
    CREDENTIAL_URL,
    INSTALL_MANIFEST_PATH,
    UPGRADE_CONFIRM_COMMAND,
    UPGRADE_FEED_PACKAGE_NAME,
    UPGRADE_FEED_URL,
)
from selfupgrade.errors import FeedError, InstallerError, PackageVerificationError, UpgraderError
from selfupgrade.errors_catalog import actionable_error
from selfupgrade.services.archive import ArchiveService
from selfupgrade.services.credentials import CredentialStore
from selfupgrade.services.download import DownloadService, raise_for_feed_status
from selfupgrade.services.feed_backend import FeedBackend, InstallerLauncher
from selfupgrade.services.platform import current_platform_name
from selfupgrade.services.validation import ValidationService

PACKAGE_BASE_ADDRESS_TYPE = "PackageBaseAddress/3.0.0"


@dataclass(frozen=True)
class NuGetFeedConfig:
    feed_url: str
    package_id: str
    credential_url: str

    @classmethod
    def from_config(cls, config: Mapping[str, str], validation_service: ValidationService, logger) -> "NuGetFeedConfig":
        feed_url = validation_service.require_url(config, UPGRADE_FEED_URL, "upgrade feed URL", logger)
        package_id = validation_service.validate_package_id(
            validation_service.require_key(config, UPGRADE_FEED_PACKAGE_NAME)
        )
        credential_url = (config.get(CREDENTIAL_URL) or "").strip() or feed_url
        return cls(feed_url=feed_url, package_id=package_id, credential_url=credential_url)


@dataclass(frozen=True)
class InstallerEntry:
    name: str
    installer_relative_path: str
    args: List[str] = field(default_factory=list)


class NuGetFeedClient:
    """Minimal NuGet v3 client: service index, flat-container versions, package URLs."""

    def __init__(self, feed_url: str, session, logger, timeout: float = 60.0):
        self.feed_url = feed_url
        self.session = session
        self.logger = logger
        self.timeout = timeout
        self._package_base_address: Optional[str] = None

    def package_base_address(self) -> str:
        if self._package_base_address is None:
            index = self._get_json(self.feed_url)
            resources = index.get("resources") if isinstance(index, dict) else None
            if not isinstance(resources, list):
                raise FeedError(f"Feed {self.feed_url} returned a service index without a resource list.")
            for resource in resources:
                if not isinstance(resource, dict):
                    continue
                resource_type = resource.get("@type", "")
                if isinstance(resource_type, str) and resource_type.startswith(PACKAGE_BASE_ADDRESS_TYPE):
                    address = resource.get("@id")
                    if not isinstance(address, str) or not address:
                        raise FeedError(
                            f"Feed {self.feed_url} lists a {PACKAGE_BASE_ADDRESS_TYPE} resource without an @id."
                        )
                    self._package_base_address = address.rstrip("/")
                    break
            else:
                raise FeedError(f"Feed {self.feed_url} does not expose a {PACKAGE_BASE_ADDRESS_TYPE} resource.")
        return self._package_base_address

    def list_versions(self, package_id: str) -> List[Version]:
        url = f"{self.package_base_address()}/{package_id.lower()}/index.json"
        data = self._get_json(url, missing_ok=True)
        if data is None:
            return []

        raw_versions = data.get("versions") if isinstance(data, dict) else None
        if not isinstance(raw_versions, list):
            raise FeedError(f"Feed {url} returned a version index without a version list.")

        versions = []
        for raw in raw_versions:
            if not isinstance(raw, str):
                self.logger.debug("Ignoring unparsable feed version %r", raw)
                continue
            try:
                versions.append(Version(raw))
            except InvalidVersion:
                self.logger.debug("Ignoring unparsable feed version %r", raw)
        return sorted(versions)

    def package_url(self, package_id: str, version: Version) -> str:
        lower_id = package_id.lower()
        normalized = str(version).lower()
        return f"{self.package_base_address()}/{lower_id}/{normalized}/{lower_id}.{normalized}.nupkg"

    def _get_json(self, url: str, missing_ok: bool = False):
        self.logger.debug("GET %s", url)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise FeedError(f"Could not reach feed {url}: {exc}") from exc

        if missing_ok and response.status_code == 404:
            return None
        raise_for_feed_status(response, url)

        try:
            return response.json()
        except ValueError as exc:
            raise FeedError(f"Feed {url} returned malformed JSON.") from exc


class NuGetFeedBackend(FeedBackend):
    """Upgrades from a NuGet feed configured directly with a feed URL and package name."""

    def __init__(
        self,
        config: NuGetFeedConfig,
        client: NuGetFeedClient,
        download_service: DownloadService,
        archive_service: ArchiveService,
        credential_store: CredentialStore,
        tracer,
        filesystem_service,
        dry_run: bool = False,
        no_verify: bool = False,
        platform_name: Optional[str] = None,
    ):
        super().__init__(tracer, filesystem_service, dry_run=dry_run, no_verify=no_verify)
        self.config = config
        self.client = client
        self.download_service = download_service
        self.archive_service = archive_service
        self.credential_store = credential_store
        self.platform_name = platform_name or current_platform_name()

        self.newest_version: Optional[Version] = None
        self.package_path: Optional[str] = None
        self.extracted_directory: Optional[str] = None
        self.download_directory: Optional[str] = None
        self._credentials_applied = False

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
        console: Optional[Console] = None,
        platform_name: Optional[str] = None,
    ) -> "NuGetFeedBackend":
        validation_service = validation_service or ValidationService()
        feed_config = NuGetFeedConfig.from_config(config, validation_service, tracer)
        session = session if session is not None else requests.Session()
        return cls(
            config=feed_config,
            client=NuGetFeedClient(feed_config.feed_url, session, tracer),
            download_service=DownloadService(session, tracer, console or Console()),
            archive_service=ArchiveService(),
            credential_store=credential_store,
            tracer=tracer,
            filesystem_service=filesystem_service,
            dry_run=dry_run,
            no_verify=no_verify,
            platform_name=platform_name,
        )

    @property
    def supports_anonymous_version_query(self) -> bool:
        return False

    @property
    def package_id(self) -> str:
        return self.config.package_id

    def upgrade_allowed(self) -> Tuple[bool, Optional[str]]:
        if not self.config.feed_url:
            return False, "NuGet feed URL has not been configured"
        if not self.config.package_id:
            return False, "NuGet package name has not been configured"
        return True, None

    def query_newest_version(self) -> Optional[Version]:
        self._apply_credentials()
        releases = [v for v in self.client.list_versions(self.package_id) if not v.is_prerelease]
        self.newest_version = releases[-1] if releases else None
        if self.newest_version is None:
            self.tracer.related_info(f"No releases of {self.package_id} found on {self.config.feed_url}")
        return self.newest_version

    def download_newest_version(self, download_directory: str) -> str:
        if self.newest_version is None:
            raise FeedError("No version selected for download. Query the newest version first.")

        self._apply_credentials()
        version = self.newest_version
        url = self.client.package_url(self.package_id, version)
        file_stem = f"{self.package_id}.{version}"
        package_path = os.path.join(download_directory, f"{file_stem}.nupkg")
        extracted_directory = os.path.join(download_directory, file_stem)

        self.download_directory = download_directory
        self.package_path = package_path
        self.extracted_directory = extracted_directory

        if self.dry_run:
            self.tracer.info("Dry run: would download %s to %s", url, package_path)
            return package_path

        self.download_service.download_file(url, package_path, f"Downloading {self.package_id} {version}...")

        if self.no_verify:
            self.tracer.related_warning(f"Skipping verification of {package_path} (--no-verify).")
        else:
            self.verify_package(package_path, self.package_id, version)

        self.archive_service.safe_extract_zip(package_path, extracted_directory)
        return package_path

    def verify_package(self, package_path: str, package_id: str, version: Version):
        """Check that the package is a readable archive describing the requested release."""
        nuspecs = [
            name
            for name in self.archive_service.list_names(package_path)
            if "/" not in name and name.endswith(".nuspec")
        ]
        if len(nuspecs) != 1:
            raise PackageVerificationError(f"Package {package_path} must contain exactly one .nuspec file.")

        try:
            root = ElementTree.fromstring(self.archive_service.read_member(package_path, nuspecs[0]))
        except ElementTree.ParseError as exc:
            raise PackageVerificationError(f"Package {package_path} has a malformed .nuspec: {exc}") from exc

        metadata = {}
        for element in root.iter():
            tag = element.tag.rsplit("}", 1)[-1]
            if tag in ("id", "version") and tag not in metadata:
                metadata[tag] = (element.text or "").strip()

        try:
            package_version = Version(metadata.get("version", ""))
        except InvalidVersion:
            package_version = None

        if metadata.get("id", "").lower() != package_id.lower() or package_version != version:
            raise PackageVerificationError(
                f"Package {package_path} describes {metadata.get('id')} {metadata.get('version')}, "
                f"expected {package_id} {version}."
            )
        self.tracer.debug("Verified package %s %s", package_id, version)

    def read_install_manifest(self) -> List[InstallerEntry]:
        manifest_path = os.path.join(self.extracted_directory or "", *INSTALL_MANIFEST_PATH.split("/"))
        try:
            with open(manifest_path, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except OSError as exc:
            raise InstallerError(f"Could not read install manifest {manifest_path}: {exc}") from exc
        except ValueError as exc:
            raise InstallerError(f"Install manifest {manifest_path} is not valid JSON: {exc}") from exc

        platforms = data.get("platforms") if isinstance(data, dict) else None
        platform_data = (platforms or {}).get(self.platform_name) or {}
        entries = []
        for raw in platform_data.get("installers", []):
            relative_path = raw.get("installerRelativePath") or raw.get("InstallerRelativePath")
            if not relative_path:
                raise InstallerError(f"Install manifest entry {raw!r} has no installerRelativePath.")
            args = raw.get("args") or raw.get("Args") or []
            if isinstance(args, str):
                args = shlex.split(args, posix=sys.platform != "win32")
            entries.append(
                InstallerEntry(
                    name=raw.get("name") or raw.get("Name") or os.path.basename(relative_path),
                    installer_relative_path=relative_path,
                    args=[str(arg) for arg in args],
                )
            )

        if not entries:
            raise InstallerError(f"Package {self.package_id} has no installers for platform '{self.platform_name}'.")
        return entries

    def run_installer(self, install_action_wrapper, launcher: InstallerLauncher):
        if self.dry_run:
            description = f"Installing {self.package_id} {self.newest_version}"
            if not install_action_wrapper(self._report_dry_run_install, description):
                raise InstallerError(f"{description} failed.")
            return

        for entry in self.read_install_manifest():
            failure: List[str] = []

            def install(entry=entry, failure=failure) -> bool:
                installer_path = os.path.join(self.extracted_directory, *entry.installer_relative_path.split("/"))
                result = launcher(installer_path, entry.args)
                if result.exit_code != 0:
                    message = actionable_error(
                        "installer_failed",
                        name=entry.name,
                        exit_code=str(result.exit_code),
                        command=UPGRADE_CONFIRM_COMMAND,
                    )
                    if result.errors:
                        message = f"{message}\n{result.errors.strip()}"
                    failure.append(message)
                    return False
                return True

            if not install_action_wrapper(install, f"Installing {entry.name}"):
                raise InstallerError(failure[0] if failure else f"Installing {entry.name} failed.")

    def cleanup(self):
        if not self.download_directory:
            return
        if self.dry_run:
            self.tracer.info("Dry run: would remove %s", self.download_directory)
            return
        if not self.filesystem_service.cleanup_dir(self.download_directory):
            raise UpgraderError(f"Could not remove download directory {self.download_directory}.")

    def close(self):
        close = getattr(self.client.session, "close", None)
        if close:
            close()

    def _apply_credentials(self):
        if self._credentials_applied:
            return
        self._credentials_applied = True

        # The credential helper is a separate process; dry runs spawn nothing.
        if self.dry_run:
            self.tracer.info(
                "Dry run: would look up stored credentials for %s; querying anonymously.",
                self.config.credential_url,
            )
            return

        credential =self.credential_store.get_credential(self.config.credential_url)
        if credential is None:
            self.tracer.debug("No stored credential for %s; querying anonymously.", self.config.credential_url)
            return
        self.client.session.auth = credential

    def _report_dry_run_install(self) -> bool:
        self.tracer.info(
            "Dry run: would run the %s installers of %s %s",
            self.platform_name,
            self.package_id,
            self.newest_version,
        )
        return True
