"""Chooses the feed backend an orchestrator is bound to."""

from typing import Optional

from selfupgrade.constants import ORG_INFO_SERVER_URL, UPGRADE_FEED_PACKAGE_NAME, UPGRADE_FEED_URL
from selfupgrade.errors import UpgraderError
from selfupgrade.models import ErrorKind, PhaseResult, UpgradePhase
from selfupgrade.services.config_loader import ConfigLoader
from selfupgrade.services.credentials import CredentialStore
from selfupgrade.services.nuget_feed import NuGetFeedBackend
from selfupgrade.services.org_feed import OrgFeedBackend
from selfupgrade.services.validation import ValidationService

FEED_NOT_CONFIGURED = "Custom upgrade feed is not configured"


def select_backend(
    config_loader: ConfigLoader,
    tracer,
    filesystem_service,
    credential_store: CredentialStore,
    dry_run: bool = False,
    no_verify: bool = False,
    validation_service: Optional[ValidationService] = None,
    **backend_options,
) -> PhaseResult:
    """Return a ``PhaseResult`` whose ``value`` is the backend to upgrade with.

    An organization info server in the configuration selects the
    organization-resolved backend; otherwise the feed URL and package name
    select the direct NuGet backend. A backend that cannot be built is a
    failure; there is no fallback to the other variant.
    """
    try:
        entries = config_loader.get_all()
    except UpgraderError as exc:
        return PhaseResult.failed(UpgradePhase.IDLE, ErrorKind.CONFIGURATION_UNREADABLE, str(exc))

    if UPGRADE_FEED_URL not in entries and UPGRADE_FEED_PACKAGE_NAME not in entries:
        tracer.related_warning(FEED_NOT_CONFIGURED)
        return PhaseResult.failed(UpgradePhase.IDLE, ErrorKind.CONFIGURATION_MISSING, FEED_NOT_CONFIGURED)

    if ORG_INFO_SERVER_URL in entries:
        factory = OrgFeedBackend.create
        description = "organization based upgrader"
    else:
        factory = NuGetFeedBackend.create
        description = "NuGet based upgrader"

    try:
        backend = factory(
            entries,
            tracer,
            filesystem_service,
            credential_store,
            dry_run=dry_run,
            no_verify=no_verify,
            validation_service=validation_service,
            **backend_options,
        )
    except UpgraderError as exc:
        error = f"select_backend: Could not create {description}. {exc}"
        tracer.related_error(error)
        return PhaseResult.failed(UpgradePhase.IDLE, ErrorKind.BACKEND_CONSTRUCTION_FAILED, error)

    tracer.debug("Selected %s", type(backend).__name__)
    return PhaseResult.ok(UpgradePhase.IDLE, value=backend)
