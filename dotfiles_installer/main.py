"""Command-line entry point for dotfiles-install."""

import logging
import sys
from pathlib import Path
from typing import NoReturn

import click

from dotfiles_installer.config import DEFAULT_LOG_DIR, DEFAULT_MANIFEST_DIR, InstallConfig
from dotfiles_installer.detect import detect_platform
from dotfiles_installer.interaction import InstallationAborted
from dotfiles_installer.manifest import Manifest, ManifestError, load_manifest_dir
from dotfiles_installer.orchestrator import RunSummary, install_packages, install_profile, render_summary
from dotfiles_installer.query import list_profiles, packages_for_profile
from dotfiles_installer.utils import setup_logging
from dotfiles_installer.verification import RetryLogError, load_retry_log

logger = logging.getLogger("dotfiles_installer")

EXIT_USAGE = 2
EXIT_ABORTED = 130


def manifest_options(func):
    func = click.option(
        "--platform",
        envvar="DOTFILES_PLATFORM",
        default=None,
        help="Platform name (default: detected, e.g. ubuntu, debian, macos)",
    )(func)
    func = click.option(
        "--manifest-dir",
        envvar="DOTFILES_MANIFEST_DIR",
        type=click.Path(file_okay=False, path_type=Path),
        default=DEFAULT_MANIFEST_DIR,
        show_default=True,
        help="Directory holding packages.yaml and packages.<platform>.yaml",
    )(func)
    return func


def install_options(func):
    func = click.option(
        "--log-dir",
        envvar="DOTFILES_LOG_DIR",
        type=click.Path(file_okay=False, path_type=Path),
        default=DEFAULT_LOG_DIR,
        show_default=True,
        help="Directory for error logs and retry logs",
    )(func)
    func = click.option(
        "--non-interactive",
        is_flag=True,
        help="Skip packages that fail verification instead of prompting",
    )(func)
    func = click.option(
        "--dry-run",
        is_flag=True,
        help="Show what would be installed without changing anything",
    )(func)
    return manifest_options(func)


def fail(message: str, code: int = EXIT_USAGE) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(code)


def load(manifest_dir: Path, platform: str) -> Manifest:
    try:
        return load_manifest_dir(manifest_dir, platform)
    except ManifestError as error:
        fail(str(error))


def make_config(
    profile: str | None,
    manifest_dir: Path,
    platform: str | None,
    dry_run: bool = False,
    non_interactive: bool = False,
    log_dir: Path = DEFAULT_LOG_DIR,
) -> InstallConfig:
    # Prompting needs a terminal
    interactive = not non_interactive and sys.stdin.isatty()
    return InstallConfig(
        profile=profile,
        platform=platform or detect_platform(),
        manifest_dir=manifest_dir,
        dry_run=dry_run,
        interactive=interactive,
        log_dir=log_dir,
    )


def finish(summary: RunSummary) -> None:
    click.echo()
    click.echo(render_summary(summary))
    if summary.retry_log is not None:
        click.echo(f"\nRetry skipped packages with: dotfiles-install retry {summary.retry_log}")
    if summary.exit_code:
        raise SystemExit(summary.exit_code)


def run_options(config: InstallConfig) -> dict:
    return {
        "dry_run": config.dry_run,
        "interactive": config.interactive,
        "max_alternatives": config.max_alternatives,
        "log_dir": config.resolved_log_dir(),
    }


@click.group(invoke_without_command=True)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Install packages from a YAML manifest with mise, Homebrew, apt and PPAs."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@main.command()
@click.argument("profile")
@install_options
@click.pass_context
def install(
    ctx: click.Context,
    profile: str,
    dry_run: bool,
    non_interactive: bool,
    log_dir: Path,
    manifest_dir: Path,
    platform: str | None,
) -> None:
    """Install every package of PROFILE."""
    config = make_config(profile, manifest_dir, platform, dry_run, non_interactive, log_dir)
    setup_logging(ctx.obj["verbose"], None if dry_run else config.resolved_log_dir())

    manifest = load(config.manifest_dir, config.platform)
    if profile not in manifest.profiles:
        available = ", ".join(manifest.profiles) or "none"
        fail(f"Unknown profile: {profile} (available: {available})")

    logger.info("=== Installing profile %s on %s ===", profile, config.platform)
    try:
        summary = install_profile(manifest, profile, platform=config.platform, **run_options(config))
    except InstallationAborted as error:
        fail(str(error), EXIT_ABORTED)
    finish(summary)


@main.command()
@click.argument("logfile", type=click.Path(dir_okay=False, path_type=Path))
@install_options
@click.pass_context
def retry(
    ctx: click.Context,
    logfile: Path,
    dry_run: bool,
    non_interactive: bool,
    log_dir: Path,
    manifest_dir: Path,
    platform: str | None,
) -> None:
    """Retry the packages recorded in a missing-packages LOGFILE."""
    config = make_config(None, manifest_dir, platform, dry_run, non_interactive, log_dir)
    setup_logging(ctx.obj["verbose"], None if dry_run else config.resolved_log_dir())

    try:
        packages = load_retry_log(logfile)
    except RetryLogError as error:
        fail(str(error))
    manifest = load(config.manifest_dir, config.platform)

    if not packages:
        click.echo("No packages to retry.")
        return

    logger.info("=== Retrying %d package(s) from %s ===", len(packages), logfile)
    try:
        summary = install_packages(manifest, packages, platform=config.platform, **run_options(config))
    except InstallationAborted as error:
        fail(str(error), EXIT_ABORTED)
    finish(summary)


@main.command()
@manifest_options
@click.pass_context
def profiles(ctx: click.Context, manifest_dir: Path, platform: str | None) -> None:
    """List the profiles defined in the manifest."""
    setup_logging(ctx.obj["verbose"])
    manifest = load(manifest_dir, platform or detect_platform())

    for profile in list_profiles(manifest):
        count = len(packages_for_profile(manifest, profile.name))
        description = f" - {profile.description}" if profile.description else ""
        click.echo(f"{profile.name} ({count} packages){description}")


@main.command()
@manifest_options
@click.pass_context
def validate(ctx: click.Context, manifest_dir: Path, platform: str | None) -> None:
    """Check that the manifest loads and every profile resolves."""
    setup_logging(ctx.obj["verbose"])
    platform = platform or detect_platform()
    manifest = load(manifest_dir, platform)

    for profile in list_profiles(manifest):
        packages_for_profile(manifest, profile.name)

    sources = ", ".join(str(source) for source in manifest.sources)
    click.echo(f"Manifest OK ({platform}): {sources}")
    click.echo(
        f"  {len(manifest.profiles)} profiles, {len(manifest.categories)} categories, "
        f"{len(manifest.packages)} packages"
    )


if __name__ == "__main__":
    main()
