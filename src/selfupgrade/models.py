"""Shared domain models for selfupgrade."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

# (action, description) -> success. Supplied by the caller to bracket each install step.
InstallActionWrapper = Callable[[Callable[[], bool], str], bool]


class UpgradePhase(str, Enum):
    IDLE = "idle"
    ALLOWANCE_CHECKED = "allowance_checked"
    VERSION_QUERIED = "version_queried"
    DOWNLOADED = "downloaded"
    STAGING_PREPARED = "staging_prepared"
    INSTALLER_RUN = "installer_run"
    CLEANED_UP = "cleaned_up"
    DONE = "done"
    FAILED = "failed"


# Each phase may only be entered once its predecessor has completed.
PHASE_PREDECESSORS = {
    UpgradePhase.ALLOWANCE_CHECKED: UpgradePhase.IDLE,
    UpgradePhase.VERSION_QUERIED: UpgradePhase.ALLOWANCE_CHECKED,
    UpgradePhase.DOWNLOADED: UpgradePhase.VERSION_QUERIED,
    UpgradePhase.STAGING_PREPARED: UpgradePhase.DOWNLOADED,
    UpgradePhase.INSTALLER_RUN: UpgradePhase.STAGING_PREPARED,
    UpgradePhase.CLEANED_UP: UpgradePhase.INSTALLER_RUN,
    UpgradePhase.DONE: UpgradePhase.CLEANED_UP,
}


class ErrorKind(str, Enum):
    CONFIGURATION_UNREADABLE = "configuration_unreadable"
    CONFIGURATION_MISSING = "configuration_missing"
    BACKEND_CONSTRUCTION_FAILED = "backend_construction_failed"
    ALLOWANCE_DENIED = "allowance_denied"
    VERSION_QUERY_FAILED = "version_query_failed"
    VERSION_QUERY_AUTH_FAILED = "version_query_auth_failed"
    DOWNLOAD_FAILED = "download_failed"
    PERMISSION_DENIED = "permission_denied"
    IO_FAILURE = "io_failure"
    INSTALLER_FAILED = "installer_failed"
    CLEANUP_FAILED = "cleanup_failed"

    @property
    def is_fatal(self) -> bool:
        return self is not ErrorKind.CLEANUP_FAILED


@dataclass(frozen=True)
class PhaseResult:
    """Outcome of one pipeline phase. ``value`` holds the phase output, if any."""

    phase: UpgradePhase
    success: bool
    message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    value: Any = None

    @classmethod
    def ok(cls, phase: UpgradePhase, value: Any = None, message: Optional[str] = None) -> "PhaseResult":
        return cls(phase=phase, success=True, message=message, value=value)

    @classmethod
    def failed(cls, phase: UpgradePhase, error_kind: ErrorKind, message: str) -> "PhaseResult":
        return cls(phase=phase, success=False, message=message, error_kind=error_kind)


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    output: str = ""
    errors: str = ""


class UpgradeOutcome(str, Enum):
    UPGRADED = "upgraded"
    UP_TO_DATE = "up_to_date"
    NOT_ALLOWED = "not_allowed"
    FAILED = "failed"


@dataclass
class UpgradeReport:
    """Summary of one end-to-end upgrade attempt."""

    upgrade_instance_id: str
    outcome: UpgradeOutcome
    phase: UpgradePhase
    dry_run: bool = False
    message: Optional[str] = None
    installed_version: Optional[str] = None
    newest_version: Optional[str] = None
    upgrade_application_path: Optional[str] = None
    results: List[PhaseResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome is not UpgradeOutcome.FAILED
