import logging
import os

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .constants import UPGRADE_CONFIRM_COMMAND
from .core import UpgradeOrchestrator, UpgraderError
from .models import ErrorKind
from .services.backend_selector import select_backend
from .services.command_runner import CommandRunner
from .services.config_loader import ConfigLoader
from .services.credentials import GitCredentialStore
from .services.filesystem import FileSystemService
from .services.paths import UpgradePaths
from .services.platform import create_platform_strategy
from .services.run_record import RunRecordService
from .services.tracer import UpgradeTracer
from .services.validation import ValidationService

console = Console()


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _console_install_action_wrapper(method, message):
    with console.status(f"[blue]{message}...[/blue]"):
        success = method()
    if success:
        console.print(f"[green]✓[/green] {message}")
    else:
        console.print(f"[red]✗[/red] {message}")
    return success


@click.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a YAML configuration file. Defaults to config.yml in the application data directory.",
)
@click.option(
    "--current-version",
    required=False,
    default=__version__,
    show_default=True,
    help="Version of the installed tool.",
)
@click.option(
    "--confirm",
    is_flag=True,
    default=False,
    help="Download and install the newest version. Without it only the version check runs.",
)
@click.option("--dry-run", is_flag=True, default=None, help="Report every step without changing anything.")
@click.option(
    "--no-verify",
    is_flag=True,
    default=None,
    help="Skip verification of the downloaded package (not recommended).",
)
@click.option(
    "--allow-insecure-http",
    is_flag=True,
    default=None,
    help="Allow HTTP feed URLs (insecure). By default only HTTPS URLs are accepted.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
def main(config, current_version, confirm, dry_run, no_verify, allow_insecure_http, verbose, log_file):
    """Check for and install a newer release of the tool."""
    logger = logging.getLogger("selfupgrade")
    paths = UpgradePaths.default()

    config_loader = ConfigLoader(config or paths.config_file, required=config is not None)
    try:
        config_values = config_loader.load()
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc

    dry_run = bool(_resolve_option(dry_run, config_values, "dry_run", default=False))
    no_verify = bool(_resolve_option(no_verify, config_values, "no_verify", default=False))
    allow_insecure_http = bool(
        _resolve_option(allow_insecure_http, config_values, "allow_insecure_http", default=False)
    )
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    tracer = UpgradeTracer(logger)
    filesystem_service = FileSystemService(logger=tracer, console=console)
    command_runner = CommandRunner(logger=tracer)

    selection = select_backend(
        config_loader,
        tracer,
        filesystem_service,
        GitCredentialStore(command_runner, tracer),
        dry_run=dry_run,
        no_verify=no_verify,
        validation_service=ValidationService(allow_insecure_http=allow_insecure_http),
        console=console,
    )
    if selection.error_kind is ErrorKind.CONFIGURATION_MISSING:
        console.print(f"[yellow]{selection.message}[/yellow]")
        raise SystemExit(0)
    if not selection.success:
        raise click.ClickException(selection.message)

    try:
        orchestrator = UpgradeOrchestrator(
            current_version=current_version,
            backend=selection.value,
            platform_strategy=create_platform_strategy(filesystem_service, tracer, paths=paths),
            filesystem_service=filesystem_service,
            tracer=tracer,
            dry_run=dry_run,
            no_verify=no_verify,
            command_runner=command_runner,
            console=console,
        )
    except UpgraderError as exc:
        selection.value.close()
        raise click.ClickException(str(exc)) from exc

    with orchestrator:
        if not confirm:
            raise SystemExit(_check_only(orchestrator))

        record_file = None
        if not dry_run:
            record_file = os.path.join(paths.log_directory, f"upgrade-{orchestrator.upgrade_instance_id}.json")
        orchestrator.run_record = RunRecordService(record_file=record_file, logger=tracer)
        report = orchestrator.run(_console_install_action_wrapper)

    if report.upgrade_application_path:
        logger.info("Staged upgrader: %s", report.upgrade_application_path)
    raise SystemExit(0 if report.succeeded else 1)


def _check_only(orchestrator: UpgradeOrchestrator) -> int:
    allowed = orchestrator.upgrade_allowed()
    if not allowed.success:
        console.print(f"[yellow]{allowed.message}[/yellow]")
        return 0

    query = orchestrator.query_newest_version()
    if not query.success:
        console.print(f"[bold red]Error:[/bold red] {query.message}")
        return 1

    if query.value is None:
        console.print(f"[green]{query.message}[/green]")
        return 0

    console.print(f"[bold blue]{query.message}[/bold blue]")
    console.print(f"Run {UPGRADE_CONFIRM_COMMAND} to install it.")
    return 0


if __name__ == "__main__":
    main()
