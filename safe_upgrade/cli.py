"""CLI entry point for safe-upgrade."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from safe_upgrade.commands import is_available
from safe_upgrade.config import CONFIG_FILENAME, build_options, write_config_template
from safe_upgrade.errors import UpgradeError, ValidationFailed
from safe_upgrade.models import PackageManagerKind
from safe_upgrade.orchestrator import UpgradeOrchestrator
from safe_upgrade.registry import RegistryClient
from safe_upgrade.report import format_summary

_MANAGERS = [kind.value for kind in PackageManagerKind if kind is not PackageManagerKind.SHELL]


@click.group()
@click.version_option(package_name="safe-upgrade")
def cli() -> None:
    """Upgrade package.json dependencies one gated step at a time."""


@cli.command()
@click.argument(
    "project_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
)
@click.option(
    "--package-manager",
    type=click.Choice(_MANAGERS),
    default=None,
    help="Tool used to sync the lockfile and run scripts.",
)
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Timeout for each script and lockfile sync.",
)
@click.option("--admin-command", default=None, help="Fast-path admin gate command.")
@click.option("--fast-path/--no-fast-path", default=None, help="Try a single bulk pass first.")
@click.option(
    "--rollback/--no-rollback",
    "rollback_on_failure",
    default=None,
    help="Restore package.json if the run fails.",
)
@click.option("--registry", "registry_url", default=None, help="npm registry base URL.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def upgrade(
    project_dir: Path,
    package_manager: str | None,
    timeout_ms: int | None,
    admin_command: str | None,
    fast_path: bool | None,
    rollback_on_failure: bool | None,
    registry_url: str | None,
    verbose: bool,
) -> None:
    """Upgrade the dependencies of PROJECT_DIR (default: current directory)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        options = build_options(
            project_dir,
            {
                "package_manager": package_manager,
                "timeout_ms": timeout_ms,
                "admin_command": admin_command,
                "fast_path": fast_path,
                "rollback_on_failure": rollback_on_failure,
                "registry_url": registry_url,
            },
        )
        if not is_available(options.package_manager):
            raise ValidationFailed(
                f"{options.package_manager.value} not found on PATH; "
                "install it or pick another --package-manager"
            )
        orchestrator = UpgradeOrchestrator(options, RegistryClient(options.registry_url))
        result = orchestrator.run()
    except UpgradeError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(format_summary(result))
    if result.errors:
        raise SystemExit(1)


@cli.command()
@click.argument(
    "project_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
)
@click.option("--force", is_flag=True, help=f"Overwrite an existing {CONFIG_FILENAME}.")
def init(project_dir: Path, force: bool) -> None:
    """Scaffold a safe-upgrade.toml into PROJECT_DIR."""
    if not (project_dir / "package.json").exists():
        raise click.ClickException("No package.json found in project directory.")

    try:
        dest = write_config_template(project_dir, force=force)
    except FileExistsError:
        raise click.ClickException(
            f"{CONFIG_FILENAME} already exists. Use --force to overwrite."
        ) from None

    click.echo(f"✓ Wrote {dest}")
    click.echo()
    click.echo("Next steps:")
    click.echo("  1. Check the [scripts] table matches your CI")
    click.echo("  2. Run an upgrade:")
    click.echo("       safe-upgrade upgrade")
    click.echo("       safe-upgrade upgrade --fast-path --admin-command 'run ci:admin'")
