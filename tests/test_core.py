import io
import logging
import os
import subprocess
import sys

import pytest
from packaging.version import Version
from rich.console import Console

from selfupgrade.core import UpgradeOrchestrator, UpgraderError, new_upgrade_instance_id
from selfupgrade.errors import FeedAuthenticationError, FeedError, InstallerError
from selfupgrade.models import ErrorKind, ProcessResult, UpgradeOutcome, UpgradePhase
from selfupgrade.services.feed_backend import FeedBackend
from selfupgrade.services.filesystem import FileSystemService
from selfupgrade.services.paths import UpgradePaths
from selfupgrade.services.platform import PosixPlatformStrategy
from selfupgrade.services.run_record import RunRecordService
from selfupgrade.services.tracer import UpgradeTracer


class FakeBackend(FeedBackend):
    def __init__(self, tracer, filesystem_service, dry_run=False, newest="2.0.0", allowed=True, installers=None):
        super().__init__(tracer, filesystem_service, dry_run=dry_run)
        self.newest = newest
        self.allowed = allowed
        self.installers = installers if installers is not None else [("setup", ["--quiet"])]
        self.query_errors = []
        self.download_error = None
        self.cleanup_error = None
        self.calls = []
        self.launch_results = []
        self.download_directory = None
        self.closed = False

    @property
    def supports_anonymous_version_query(self):
        return True

    def upgrade_allowed(self):
        self.calls.append("upgrade_allowed")
        if self.allowed:
            return True, None
        return False, "Upgrade ring set to None. No upgrade check was performed."

    def query_newest_version(self):
        self.calls.append("query_newest_version")
        if self.query_errors:
            raise self.query_errors.pop(0)
        return Version(self.newest) if self.newest else None

    def download_newest_version(self, download_directory):
        self.calls.append("download_newest_version")
        if self.download_error:
            raise self.download_error
        self.download_directory = download_directory
        package_path = os.path.join(download_directory, f"tool.{self.newest}.nupkg")
        if not self.dry_run:
            with open(package_path, "wb") as file_obj:
                file_obj.write(b"package")
        return package_path

    def run_installer(self, install_action_wrapper, launcher):
        self.calls.append("run_installer")
        for name, args in self.installers:
            path = os.path.join(self.download_directory, name)

            def install(path=path, args=args):
                result = launcher(path, args)
                self.launch_results.append(result)
                return result.exit_code == 0

            if not install_action_wrapper(install, f"Running {name}"):
                raise InstallerError(f"Installer {name} failed.")

    def cleanup(self):
        self.calls.append("cleanup")
        if self.cleanup_error:
            raise self.cleanup_error

    def close(self):
        self.closed = True


class FakeCommandRunner:
    def __init__(self, returncode=0, stderr=""):
        self.returncode = returncode
        self.stderr = stderr
        self.commands = []

    def run(self, cmd, check=True, capture_output=False, **_kwargs):
        self.commands.append(cmd)
        return subprocess.CompletedProcess(cmd, self.returncode, stdout="", stderr=self.stderr)


def build_install_dir(root):
    install_dir = root / "install"
    (install_dir / "lib").mkdir(parents=True)
    (install_dir / "selfupgrade").write_text("#!/bin/sh\n", encoding="utf-8")
    (install_dir / "lib" / "core.py").write_text("VALUE = 1\n", encoding="utf-8")
    return install_dir


def build_orchestrator(tmp_path, dry_run=False, backend=None, command_runner=None, **kwargs):
    tracer = UpgradeTracer(logging.getLogger("selfupgrade.tests"))
    output = Console(file=io.StringIO())
    filesystem_service = FileSystemService(logger=tracer, console=output)
    install_dir = build_install_dir(tmp_path)
    paths = UpgradePaths(root=str(tmp_path / "data"))
    backend = backend or FakeBackend(tracer, filesystem_service, dry_run=dry_run)
    orchestrator = UpgradeOrchestrator(
        current_version="1.0.0",
        backend=backend,
        platform_strategy=PosixPlatformStrategy(paths, filesystem_service, tracer, platform="linux"),
        filesystem_service=filesystem_service,
        tracer=tracer,
        dry_run=dry_run,
        process_location=lambda: str(install_dir),
        command_runner=command_runner or FakeCommandRunner(),
        console=output,
        **kwargs,
    )
    return orchestrator, backend, paths


def snapshot(root):
    entries = {}
    for current_root, dirs, files in os.walk(root):
        for name in dirs + files:
            path = os.path.join(current_root, name)
            entries[os.path.relpath(path, root)] = os.path.getmtime(path)
    return entries


def test_run_stages_installation_and_runs_installer(tmp_path):
    orchestrator, backend, paths = build_orchestrator(tmp_path)

    report = orchestrator.run()

    assert report.outcome is UpgradeOutcome.UPGRADED
    assert report.succeeded is True
    assert report.phase is UpgradePhase.DONE
    assert report.newest_version == "2.0.0"
    assert report.upgrade_application_path == os.path.join(paths.application_directory, "selfupgrade-upgrader")
    assert backend.calls == [
        "upgrade_allowed",
        "query_newest_version",
        "download_newest_version",
        "run_installer",
        "cleanup",
    ]
    assert [result.phase for result in report.results] == [
        UpgradePhase.ALLOWANCE_CHECKED,
        UpgradePhase.VERSION_QUERIED,
        UpgradePhase.DOWNLOADED,
        UpgradePhase.STAGING_PREPARED,
        UpgradePhase.INSTALLER_RUN,
        UpgradePhase.CLEANED_UP,
    ]
    staged = os.path.join(paths.application_directory, "lib", "core.py")
    with open(staged, encoding="utf-8") as file_obj:
        assert file_obj.read() == "VALUE = 1\n"
    assert orchestrator.command_runner.commands == [
        [os.path.join(paths.download_directory, "setup"), "--quiet"]
    ]


def test_dry_run_changes_nothing_on_disk(tmp_path):
    orchestrator, backend, paths = build_orchestrator(tmp_path, dry_run=True)
    before = snapshot(tmp_path)

    report = orchestrator.run()

    assert report.outcome is UpgradeOutcome.UPGRADED
    assert report.dry_run is True
    assert report.message == "Dry run complete: would upgrade to 2.0.0."
    assert snapshot(tmp_path) == before
    assert not os.path.exists(paths.upgrade_root)
    assert orchestrator.command_runner.commands == []
    assert [result.exit_code for result in backend.launch_results] == [0]


def test_run_stops_when_installed_version_is_current(tmp_path):
    orchestrator, backend, paths = build_orchestrator(tmp_path)
    backend.newest = "1.0.0"

    report = orchestrator.run()

    assert report.outcome is UpgradeOutcome.UP_TO_DATE
    assert report.succeeded is True
    assert "up to date" in report.message
    assert backend.calls == ["upgrade_allowed", "query_newest_version"]
    assert not os.path.exists(paths.download_directory)


def test_run_treats_empty_feed_as_up_to_date(tmp_path):
    orchestrator, backend, _paths = build_orchestrator(tmp_path)
    backend.newest = None

    report = orchestrator.run()

    assert report.outcome is UpgradeOutcome.UP_TO_DATE
    assert orchestrator.newest_version is None


def test_run_reports_denied_allowance_without_querying(tmp_path):
    orchestrator, backend, _paths = build_orchestrator(tmp_path)
    backend.allowed = False

    report = orchestrator.run()

    assert report.outcome is UpgradeOutcome.NOT_ALLOWED
    assert report.succeeded is True
    assert report.message == "Upgrade ring set to None. No upgrade check was performed."
    assert orchestrator.failure.error_kind is ErrorKind.ALLOWANCE_DENIED
    assert backend.calls == ["upgrade_allowed"]


def test_query_distinguishes_auth_failures_from_network_failures(tmp_path):
    orchestrator, backend, _paths = build_orchestrator(tmp_path)
    backend.query_errors = [
        FeedAuthenticationError("The feed rejected the request (HTTP 401)."),
        FeedError("Could not reach feed"),
    ]
    orchestrator.upgrade_allowed()

    auth_result = orchestrator.query_newest_version()
    network_result = orchestrator.query_newest_version()

    assert auth_result.error_kind is ErrorKind.VERSION_QUERY_AUTH_FAILED
    assert network_result.error_kind is ErrorKind.VERSION_QUERY_FAILED
    assert network_result.message == "Could not reach feed"


def test_failed_phase_can_be_retried(tmp_path):
    orchestrator, backend, _paths = build_orchestrator(tmp_path)
    backend.query_errors = [FeedError("Could not reach feed")]
    orchestrator.upgrade_allowed()

    first = orchestrator.query_newest_version()
    assert first.success is False
    assert orchestrator.state is UpgradePhase.FAILED

    second = orchestrator.query_newest_version()
    assert second.success is True
    assert second.value == Version("2.0.0")
    assert orchestrator.state is UpgradePhase.VERSION_QUERIED


def test_phases_cannot_be_skipped(tmp_path):
    orchestrator, _backend, _paths = build_orchestrator(tmp_path)

    with pytest.raises(UpgraderError, match="before 'version_queried'"):
        orchestrator.download_newest_version()


def test_download_failure_stops_pipeline(tmp_path):
    orchestrator, backend, _paths = build_orchestrator(tmp_path)
    backend.download_error = FeedError("Download failed for https://feed.example.com/pkg")

    report = orchestrator.run()

    assert report.outcome is UpgradeOutcome.FAILED
    assert report.phase is UpgradePhase.FAILED
    assert orchestrator.failure.error_kind is ErrorKind.DOWNLOAD_FAILED
    assert "run_installer" not in backend.calls
    assert "cleanup" not in backend.calls


def test_staging_permission_error_names_application_directory(tmp_path, monkeypatch):
    orchestrator, backend, paths = build_orchestrator(tmp_path)

    def deny(*_args, **_kwargs):
        raise PermissionError(13, "Permission denied", "lib/core.py")

    monkeypatch.setattr(orchestrator.filesystem_service, "copy_directory_recursive", deny)

    report = orchestrator.run()

    assert report.outcome is UpgradeOutcome.FAILED
    assert orchestrator.failure.error_kind is ErrorKind.PERMISSION_DENIED
    assert report.message.startswith("File copy error - ")
    assert f"write permissions to directory {paths.application_directory}" in report.message
    assert "`selfupgrade --confirm`" in report.message
    assert "run_installer" not in backend.calls


def test_staging_io_failure_is_traced_with_method(tmp_path, monkeypatch, caplog):
    orchestrator, _backend, _paths = build_orchestrator(tmp_path)

    def broken(*_args, **_kwargs):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(orchestrator.filesystem_service, "copy_directory_recursive", broken)
    caplog.set_level(logging.DEBUG, logger="selfupgrade")

    report = orchestrator.run()

    assert orchestrator.failure.error_kind is ErrorKind.IO_FAILURE
    assert report.message.startswith("File copy error - ")
    traced = [record for record in caplog.records if "Exception" in (getattr(record, "metadata", None) or {})]
    assert traced[-1].metadata["Method"] == "setup_upgrade_application_directory"
    assert "No space left on device" in traced[-1].metadata["Exception"]
    assert traced[-1].upgrade_instance_id == orchestrator.upgrade_instance_id


def test_installer_failure_is_fatal(tmp_path):
    runner = FakeCommandRunner(returncode=5, stderr="disk full")
    orchestrator, backend, _paths = build_orchestrator(tmp_path, command_runner=runner)

    report = orchestrator.run()

    assert report.outcome is UpgradeOutcome.FAILED
    assert orchestrator.failure.error_kind is ErrorKind.INSTALLER_FAILED
    assert backend.launch_results == [ProcessResult(exit_code=5, output="", errors="disk full")]
    assert "cleanup" not in backend.calls


def test_cleanup_failure_does_not_fail_upgrade(tmp_path):
    orchestrator, backend, _paths = build_orchestrator(tmp_path)
    backend.cleanup_error = UpgraderError("Could not remove downloads")

    report = orchestrator.run()

    assert report.outcome is UpgradeOutcome.UPGRADED
    assert report.results[-1].error_kind is ErrorKind.CLEANUP_FAILED
    assert report.phase is UpgradePhase.DONE


def test_launch_installer_expands_directory_placeholders(tmp_path):
    orchestrator, _backend, paths = build_orchestrator(tmp_path)

    orchestrator.launch_installer("/opt/setup", ["--source={download_directory}", "--app", "{staging_directory}"])

    assert orchestrator.command_runner.commands == [
        ["/opt/setup", f"--source={paths.download_directory}", "--app", paths.application_directory]
    ]


def test_installer_reaches_staged_copy_through_placeholder(tmp_path):
    tracer = UpgradeTracer(logging.getLogger("selfupgrade.tests"))
    filesystem_service = FileSystemService(logger=tracer, console=Console(file=io.StringIO()))
    backend = FakeBackend(tracer, filesystem_service, installers=[("setup", ["{staging_directory}"])])
    orchestrator, _, paths = build_orchestrator(tmp_path, backend=backend)

    report = orchestrator.run()

    assert report.outcome is UpgradeOutcome.UPGRADED
    [command] = orchestrator.command_runner.commands
    assert command == [os.path.join(paths.download_directory, "setup"), paths.application_directory]
    assert os.path.isfile(os.path.join(command[1], "lib", "core.py"))


def test_launch_installer_reports_start_failure(tmp_path):
    class FailingRunner:
        def run(self, cmd, **_kwargs):
            raise UpgraderError(f"Required command not found: {cmd[0]}. Please install it and try again.")

    orchestrator, _backend, _paths = build_orchestrator(tmp_path, command_runner=FailingRunner())

    result = orchestrator.launch_installer("/missing/setup", [])

    assert result.exit_code == -1
    assert "Required command not found" in result.errors


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell script")
def test_launch_installer_runs_script_and_captures_errors(tmp_path):
    from selfupgrade.services.command_runner import CommandRunner

    orchestrator, _backend, _paths = build_orchestrator(tmp_path)
    orchestrator.command_runner = CommandRunner(logger=orchestrator.tracer)
    script = tmp_path / "installer.sh"
    script.write_text("#!/bin/sh\necho \"installing $1\"\necho broken >&2\nexit 3\n", encoding="utf-8")
    script.chmod(0o644)

    result = orchestrator.launch_installer(str(script), ["2.0.0"])

    assert result.exit_code == 3
    assert result.output.strip() == "installing 2.0.0"
    assert result.errors.strip() == "broken"


def test_run_record_tracks_phases(tmp_path):
    record_file = tmp_path / "logs" / "upgrade.json"
    orchestrator, _backend, _paths = build_orchestrator(tmp_path)
    orchestrator.run_record = RunRecordService(record_file=str(record_file), logger=orchestrator.tracer)

    orchestrator.run()

    record = orchestrator.run_record.record
    assert record["status"] == "upgraded"
    assert record["upgrade_instance_id"] == orchestrator.upgrade_instance_id
    assert record["versions"] == {"installed": "1.0.0", "newest": "2.0.0"}
    assert [phase["phase"] for phase in record["phases"]][-1] == "cleaned_up"
    assert record_file.exists()


def test_no_verify_logs_warning(tmp_path, caplog):
    caplog.set_level(logging.WARNING, logger="selfupgrade")

    build_orchestrator(tmp_path, no_verify=True)

    assert any("Package verification is disabled" in record.getMessage() for record in caplog.records)


def test_invalid_installed_version_is_rejected(tmp_path):
    with pytest.raises(UpgraderError, match="Invalid installed version"):
        UpgradeOrchestrator(
            current_version="not-a-version",
            backend=None,
            platform_strategy=None,
            filesystem_service=None,
        )


def test_upgrade_instance_ids_are_unique():
    ids = {new_upgrade_instance_id() for _ in range(200)}

    assert len(ids) == 200


def test_context_manager_closes_backend(tmp_path):
    orchestrator, backend, _paths = build_orchestrator(tmp_path)

    with orchestrator:
        pass

    assert backend.closed is True
