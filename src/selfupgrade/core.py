import logging
import os
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from packaging.version import InvalidVersion, Version
from rich.console import Console

from .constants import EXECUTABLE_MODE, UPGRADE_CONFIRM_COMMAND
from .errors import FeedAuthenticationError, UpgraderError
from .errors_catalog import actionable_error
from .models import (
    PHASE_PREDECESSORS,
    ErrorKind,
    InstallActionWrapper,
    PhaseResult,
    ProcessResult,
    UpgradeOutcome,
    UpgradePhase,
    UpgradeReport,
)
from .services.command_runner import CommandRunner
from .services.feed_backend import FeedBackend
from .services.filesystem import FileSystemService
from .services.platform import PlatformStrategy
from .services.process import current_process_location
from .services.run_record import RunRecordService
from .services.tracer import UpgradeTracer

console = Console()
logger = logging.getLogger("selfupgrade")


def new_upgrade_instance_id() -> str:
    now = datetime.now()
    return f"{now:%Y%m%d_%H%M%S}_{now:%f}_{uuid.uuid4().hex[:6]}"


class UpgradeOrchestrator:
    """Drives one self-upgrade attempt through its phases.

    Phases run in a fixed order: allowance check, version query, download,
    staging of the running installation, installer run, cleanup. Each phase
    method returns a ``PhaseResult``; a phase can only be entered once its
    predecessor has succeeded, so a failed phase may be re-invoked by the
    caller but never skipped.
    """

    def __init__(
        self,
        current_version: str,
        backend: FeedBackend,
        platform_strategy: PlatformStrategy,
        filesystem_service: FileSystemService,
        tracer: Optional[UpgradeTracer] = None,
        dry_run: bool = False,
        no_verify: bool = False,
        process_location: Callable[[], str] = current_process_location,
        command_runner: Optional[CommandRunner] = None,
        run_record: Optional[RunRecordService] = None,
        console: Console = console,
    ):
        try:
            self.installed_version = Version(current_version)
        except InvalidVersion as exc:
            raise UpgraderError(f"Invalid installed version '{current_version}'.") from exc

        self.backend = backend
        self.platform_strategy = platform_strategy
        self.filesystem_service = filesystem_service
        self.dry_run = dry_run
        self.no_verify = no_verify
        self.process_location = process_location
        self.console = console

        self.upgrade_instance_id = new_upgrade_instance_id()
        self.tracer = tracer or UpgradeTracer(logger)
        self.tracer.start_activity(self.upgrade_instance_id)
        self.command_runner = command_runner or CommandRunner(logger=self.tracer)
        self.run_record = run_record or RunRecordService(record_file=None, logger=self.tracer)

        self.state = UpgradePhase.IDLE
        self.failure: Optional[PhaseResult] = None
        self.results: List[PhaseResult] = []
        self.newest_version: Optional[Version] = None
        self.download_directory: Optional[str] = None
        self.upgrade_application_path: Optional[str] = None
        self._completed = UpgradePhase.IDLE

        if self.dry_run:
            self.tracer.related_info("Dry run: no changes will be made.")
        if self.no_verify:
            self.tracer.related_warning(
                "Package verification is disabled (--no-verify). Downloaded packages will not be checked."
            )

    @property
    def supports_anonymous_version_query(self) -> bool:
        return self.backend.supports_anonymous_version_query

    def upgrade_allowed(self) -> PhaseResult:
        phase = self._enter(UpgradePhase.ALLOWANCE_CHECKED)
        try:
            allowed, message = self.backend.upgrade_allowed()
        except UpgraderError as exc:
            self.trace_exception(exc, "upgrade_allowed", "Could not determine whether an upgrade is allowed.")
            allowed, message = False, str(exc)

        if not allowed:
            return self._finish(
                PhaseResult.failed(phase, ErrorKind.ALLOWANCE_DENIED, message or "Upgrade is not allowed.")
            )
        return self._finish(PhaseResult.ok(phase, message=message))

    def query_newest_version(self) -> PhaseResult:
        phase = self._enter(UpgradePhase.VERSION_QUERIED)
        try:
            newest = self.backend.query_newest_version()
        except FeedAuthenticationError as exc:
            self.trace_exception(exc, "query_newest_version", "Feed rejected the version query.")
            return self._finish(PhaseResult.failed(phase, ErrorKind.VERSION_QUERY_AUTH_FAILED, str(exc)))
        except UpgraderError as exc:
            self.trace_exception(exc, "query_newest_version", "Could not query the newest version.")
            return self._finish(PhaseResult.failed(phase, ErrorKind.VERSION_QUERY_FAILED, str(exc)))

        self.run_record.set_newest_version(str(newest) if newest else None)
        if newest is None or newest <= self.installed_version:
            self.newest_version = None
            message = f"No upgrade available. Installed version {self.installed_version} is up to date."
            return self._finish(PhaseResult.ok(phase, value=None, message=message))

        self.newest_version = newest
        message = f"New version {newest} is available (installed {self.installed_version})."
        return self._finish(PhaseResult.ok(phase, value=newest, message=message))

    def download_newest_version(self) -> PhaseResult:
        phase = self._enter(UpgradePhase.DOWNLOADED)
        if self.newest_version is None:
            return self._finish(
                PhaseResult.failed(phase, ErrorKind.DOWNLOAD_FAILED, "No newer version is available to download.")
            )

        directory = self.platform_strategy.download_directory
        if self.dry_run:
            self.tracer.info("Dry run: would prepare download directory %s", directory)
        else:
            try:
                directory = self.platform_strategy.prepare_download_directory()
            except (OSError, UpgraderError) as exc:
                self.trace_exception(exc, "download_newest_version", f"Could not prepare {directory}.")
                return self._finish(
                    PhaseResult.failed(
                        phase, ErrorKind.DOWNLOAD_FAILED, f"Could not prepare download directory {directory}: {exc}"
                    )
                )
        self.download_directory = directory

        try:
            package_path = self.backend.download_newest_version(directory)
        except (OSError, UpgraderError) as exc:
            self.trace_exception(exc, "download_newest_version", f"Could not download {self.newest_version}.")
            return self._finish(PhaseResult.failed(phase, ErrorKind.DOWNLOAD_FAILED, str(exc)))

        return self._finish(PhaseResult.ok(phase, value=package_path, message=f"Downloaded {self.newest_version}."))

    def setup_upgrade_application_directory(self) -> PhaseResult:
        """Copy the running installation into the staging directory.

        The running binaries cannot be replaced while in use, so the upgrader
        runs from this copy. On success ``value`` is the staged upgrader path.
        A failed copy is not rolled back; the next attempt resets the directory.
        """
        phase = self._enter(UpgradePhase.STAGING_PREPARED)
        upgrade_application_directory = self.platform_strategy.application_directory
        current_path = self.process_location()
        upgrade_application_path = os.path.join(
            upgrade_application_directory,
            self.platform_strategy.upgrader_executable_name,
        )

        if self.dry_run:
            self.tracer.info("Dry run: would copy %s to %s", current_path, upgrade_application_directory)
            self.upgrade_application_path = upgrade_application_path
            return self._finish(PhaseResult.ok(phase, value=upgrade_application_path))

        try:
            self.platform_strategy.prepare_application_directory()
            self.filesystem_service.copy_directory_recursive(current_path, upgrade_application_directory)
        except PermissionError as exc:
            self.trace_exception(
                exc,
                "setup_upgrade_application_directory",
                f"Permission denied copying {current_path} to {upgrade_application_directory}.",
            )
            error = actionable_error(
                "staging_permission_denied",
                detail=str(exc),
                path=upgrade_application_directory,
                command=UPGRADE_CONFIRM_COMMAND,
            )
            return self._finish(PhaseResult.failed(phase, ErrorKind.PERMISSION_DENIED, error))
        except (OSError, UpgraderError) as exc:
            self.trace_exception(
                exc,
                "setup_upgrade_application_directory",
                f"Error copying {current_path} to {upgrade_application_directory}.",
            )
            return self._finish(PhaseResult.failed(phase, ErrorKind.IO_FAILURE, f"File copy error - {exc}"))

        self.upgrade_application_path = upgrade_application_path
        self.run_record.add_artifact("upgrade_application_path", upgrade_application_path)
        return self._finish(PhaseResult.ok(phase, value=upgrade_application_path))

    def run_installer(self, install_action_wrapper: Optional[InstallActionWrapper] = None) -> PhaseResult:
        """Run the downloaded release's installers.

        Installers are launched from the extracted package, not from the
        staged copy. The staged copy reaches them through the
        ``{staging_directory}`` argument placeholder.
        """
        phase = self._enter(UpgradePhase.INSTALLER_RUN)
        wrapper = install_action_wrapper or self._default_install_action_wrapper
        try:
            self.backend.run_installer(wrapper, self.launch_installer)
        except UpgraderError as exc:
            self.trace_exception(exc, "run_installer", "Installer run failed.")
            return self._finish(PhaseResult.failed(phase, ErrorKind.INSTALLER_FAILED, str(exc)))
        return self._finish(PhaseResult.ok(phase, message=f"Installed {self.newest_version}."))

    def cleanup(self) -> PhaseResult:
        phase = self._enter(UpgradePhase.CLEANED_UP)
        try:
            self.backend.cleanup()
        except (OSError, UpgraderError) as exc:
            self.trace_exception(exc, "cleanup", "Could not clean up upgrade artifacts.")
            return self._finish(PhaseResult.failed(phase, ErrorKind.CLEANUP_FAILED, str(exc)))
        return self._finish(PhaseResult.ok(phase))

    def launch_installer(self, path: str, args: List[str]) -> ProcessResult:
        """Spawn one installer and capture its exit code and error stream."""
        args = [self._expand_placeholders(arg) for arg in args]
        cmd = [path] + args

        if self.dry_run:
            self.tracer.info("Dry run: would run %s", " ".join(cmd))
            return ProcessResult(exit_code=0)

        # Package extraction does not preserve the executable bit.
        if os.path.isfile(path):
            self.filesystem_service.set_permissions(path, EXECUTABLE_MODE)

        try:
            completed = self.command_runner.run(cmd, check=False, capture_output=True)
        except UpgraderError as exc:
            self.trace_exception(exc, "launch_installer", f"Could not start installer {path}.")
            return ProcessResult(exit_code=-1, errors=str(exc))

        result = ProcessResult(
            exit_code=completed.returncode,
            output=completed.stdout or "",
            errors=completed.stderr or "",
        )
        if result.exit_code != 0:
            self.tracer.related_error(
                f"Installer {path} exited with code {result.exit_code}.",
                {"Method": "launch_installer", "ExitCode": result.exit_code, "Errors": result.errors.strip()},
            )
        return result

    def run(self, install_action_wrapper: Optional[InstallActionWrapper] = None) -> UpgradeReport:
        """Run every phase in order and stop at the first fatal failure."""
        self.run_record.start(self.upgrade_instance_id, str(self.installed_version), self.dry_run)
        self.console.print(f"[blue]Checking for updates (installed {self.installed_version})...[/blue]")

        result = self.upgrade_allowed()
        if not result.success:
            self.console.print(f"[yellow]{result.message}[/yellow]")
            return self._report(UpgradeOutcome.NOT_ALLOWED, result.message)

        result = self.query_newest_version()
        if not result.success:
            return self._fail()
        if result.value is None:
            self.console.print(f"[green]{result.message}[/green]")
            return self._report(UpgradeOutcome.UP_TO_DATE, result.message)
        self.console.print(f"[bold blue]{result.message}[/bold blue]")

        steps = (
            self.download_newest_version,
            self.setup_upgrade_application_directory,
            lambda: self.run_installer(install_action_wrapper),
        )
        for step in steps:
            if not step().success:
                return self._fail()

        result = self.cleanup()
        if not result.success:
            self.console.print(f"[yellow]Warning: {result.message}[/yellow]")

        self.state = self._completed = UpgradePhase.DONE
        message = f"Upgraded to {self.newest_version}."
        if self.dry_run:
            message = f"Dry run complete: would upgrade to {self.newest_version}."
        self.console.print(f"[green]{message}[/green]")
        return self._report(UpgradeOutcome.UPGRADED, message)

    def trace_exception(self, exception: BaseException, method: str, message: str):
        self.tracer.trace_exception(exception, method, message)

    def close(self):
        self.backend.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def _enter(self, phase: UpgradePhase) -> UpgradePhase:
        expected = PHASE_PREDECESSORS[phase]
        if self._completed is not expected:
            raise UpgraderError(
                f"Cannot run phase '{phase.value}' before '{expected.value}' has completed "
                f"(last completed: '{self._completed.value}')."
            )
        self.tracer.debug("Entering phase %s", phase.value)
        return phase

    def _finish(self, result: PhaseResult) -> PhaseResult:
        self.results.append(result)
        self.run_record.phase_finished(
            result.phase.value,
            result.success,
            result.error_kind.value if result.error_kind else None,
            result.message,
        )

        if result.success or (result.error_kind and not result.error_kind.is_fatal):
            self.state = self._completed = result.phase
            if not result.success:
                self.tracer.related_warning(result.message)
        else:
            self.state = UpgradePhase.FAILED
            self.failure = result
            if result.error_kind is ErrorKind.ALLOWANCE_DENIED:
                self.tracer.related_info(result.message)
            else:
                self.tracer.related_error(f"Phase '{result.phase.value}' failed: {result.message}")
        return result

    def _fail(self) -> UpgradeReport:
        message = self.failure.message if self.failure else "Upgrade failed."
        self.console.print(f"[bold red]Error:[/bold red] {message}")
        return self._report(UpgradeOutcome.FAILED, message)

    def _report(self, outcome: UpgradeOutcome, message: Optional[str]) -> UpgradeReport:
        self.run_record.finalize(outcome.value, error=message if outcome is UpgradeOutcome.FAILED else None)
        return UpgradeReport(
            upgrade_instance_id=self.upgrade_instance_id,
            outcome=outcome,
            phase=self.state,
            dry_run=self.dry_run,
            message=message,
            installed_version=str(self.installed_version),
            newest_version=str(self.newest_version) if self.newest_version else None,
            upgrade_application_path=self.upgrade_application_path,
            results=list(self.results),
        )

    def _expand_placeholders(self, arg: str) -> str:
        download_directory = self.download_directory or self.platform_strategy.download_directory
        return arg.replace("{download_directory}", download_directory).replace(
            "{staging_directory}", self.platform_strategy.application_directory
        )

    def _default_install_action_wrapper(self, method: Callable[[], bool], message: str) -> bool:
        self.console.print(f"[blue]{message}...[/blue]")
        success = method()
        if success:
            self.console.print(f"[green]{message}: done[/green]")
        else:
            self.console.print(f"[red]{message}: failed[/red]")
        return success
