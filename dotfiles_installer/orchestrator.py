"""Profile installation: resolve, verify, ask, install, summarize."""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from dotfiles_installer.backends import (
    BackendAdapter,
    BulkSummary,
    InstallOutcome,
    InstallResult,
    NoConfigError,
    create_adapters,
)
from dotfiles_installer.cache import BackendCache
from dotfiles_installer.config import DEFAULT_MAX_ALTERNATIVES
from dotfiles_installer.interaction import UserChoices, print_choices_summary, resolve_issues
from dotfiles_installer.manifest import Backend, Manifest
from dotfiles_installer.query import is_platform_applicable, packages_for_profile, priority_chain
from dotfiles_installer.utils import DRY_RUN_PREFIX
from dotfiles_installer.verification import verify_batch, write_retry_log

logger = logging.getLogger("dotfiles_installer")

NO_BACKEND_REASON = "no available backend"


class PackageStatus(str, Enum):
    INSTALLED = "installed"
    PLANNED = "planned"
    ALREADY_INSTALLED = "already installed"
    FAILED = "failed"
    SKIPPED_NO_BACKEND = "skipped: no backend"
    SKIPPED_PLATFORM = "skipped: platform"
    SKIPPED_BY_USER = "skipped: by user"
    SKIPPED_UNKNOWN = "skipped: unknown package"


SUCCEEDED_STATUSES = frozenset({PackageStatus.INSTALLED, PackageStatus.PLANNED})
SKIPPED_STATUSES = frozenset(
    {
        PackageStatus.ALREADY_INSTALLED,
        PackageStatus.SKIPPED_NO_BACKEND,
        PackageStatus.SKIPPED_PLATFORM,
        PackageStatus.SKIPPED_BY_USER,
        PackageStatus.SKIPPED_UNKNOWN,
    }
)

OUTCOME_STATUS = {
    InstallOutcome.INSTALLED: PackageStatus.INSTALLED,
    InstallOutcome.PLANNED: PackageStatus.PLANNED,
    InstallOutcome.ALREADY_INSTALLED: PackageStatus.ALREADY_INSTALLED,
    InstallOutcome.FAILED: PackageStatus.FAILED,
}


@dataclass(frozen=True)
class Resolution:
    package: str
    backend: Backend | None
    reason: str = ""


@dataclass(frozen=True)
class PackageRecord:
    package: str
    status: PackageStatus
    backend: Backend | None = None
    identifiers: tuple[str, ...] = ()
    reason: str = ""


@dataclass
class RunSummary:
    """Per-package outcomes of one run, in processing order."""

    profile: str | None
    dry_run: bool
    records: list[PackageRecord] = field(default_factory=list)
    bulk: dict[Backend, BulkSummary] = field(default_factory=dict)
    retry_log: Path | None = None

    @property
    def considered(self) -> int:
        return len(self.records)

    @property
    def succeeded(self) -> int:
        return sum(record.status in SUCCEEDED_STATUSES for record in self.records)

    @property
    def skipped(self) -> int:
        return sum(record.status in SKIPPED_STATUSES for record in self.records)

    @property
    def failed(self) -> int:
        return sum(record.status is PackageStatus.FAILED for record in self.records)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def record(self, package: str) -> PackageRecord | None:
        for record in self.records:
            if record.package == package:
                return record
        return None

    def by_backend(self) -> dict[Backend, BulkSummary]:
        """Install counts per backend, in backend declaration order."""
        return {backend: self.bulk[backend] for backend in Backend if backend in self.bulk}


def _progress(message: str, dry_run: bool, *args) -> None:
    if dry_run:
        message = f"{DRY_RUN_PREFIX} {message}"
    logger.info(message, *args)


def resolve_backend(
    manifest: Manifest,
    package: str,
    adapters: Mapping[Backend, BackendAdapter],
    platform: str,
    availability: dict[Backend, bool] | None = None,
) -> Resolution:
    """Walk the priority chain and return the first usable backend.

    A backend is usable when its tooling is present, the package has
    configuration for it, and the package applies to this platform.
    """
    if availability is None:
        availability = {}

    if not is_platform_applicable(manifest, package, platform):
        return Resolution(package, None, f"not available on {platform}")

    for backend in priority_chain(manifest, package):
        adapter = adapters[backend]
        if backend not in availability:
            availability[backend] = adapter.is_available()
        if not availability[backend]:
            continue
        if not adapter.has_config(package):
            continue
        return Resolution(package, backend)

    return Resolution(package, None, NO_BACKEND_REASON)


def group_by_backend(resolutions: Sequence[Resolution]) -> dict[Backend, list[str]]:
    """Packages per resolved backend, in backend declaration order."""
    groups: dict[Backend, list[str]] = {}
    for backend in Backend:
        members = [resolution.package for resolution in resolutions if resolution.backend is backend]
        if members:
            groups[backend] = members
    return groups


def _record_from_result(result: InstallResult) -> PackageRecord:
    return PackageRecord(
        package=result.package,
        status=OUTCOME_STATUS[result.outcome],
        backend=result.backend,
        identifiers=result.identifiers,
        reason=result.reason,
    )


def install_packages(
    manifest: Manifest,
    packages: Sequence[str],
    *,
    platform: str,
    cache: BackendCache | None = None,
    adapters: Mapping[Backend, BackendAdapter] | None = None,
    dry_run: bool = False,
    interactive: bool = False,
    max_alternatives: int = DEFAULT_MAX_ALTERNATIVES,
    log_dir: str | Path | None = None,
    profile: str | None = None,
) -> RunSummary:
    """Install an explicit list of manifest packages.

    Per-package problems are recorded in the returned summary. Only an
    interactive abort (InstallationAborted) stops the run.
    """
    if cache is None:
        cache = BackendCache()
    if adapters is None:
        adapters = create_adapters(manifest, cache, platform)

    summary = RunSummary(profile=profile, dry_run=dry_run)
    records: dict[str, PackageRecord] = {}
    resolutions: list[Resolution] = []
    availability: dict[Backend, bool] = {}
    names = list(dict.fromkeys(packages))

    for index, package in enumerate(names, start=1):
        _progress("[%d/%d] Processing package: %s", dry_run, index, len(names), package)
        if package not in manifest.packages:
            logger.warning("Skipping %s: not defined in the manifest", package)
            records[package] = PackageRecord(package, PackageStatus.SKIPPED_UNKNOWN, reason="not in manifest")
            continue

        resolution = resolve_backend(manifest, package, adapters, platform, availability)
        if resolution.backend is None:
            status = (
                PackageStatus.SKIPPED_NO_BACKEND
                if resolution.reason == NO_BACKEND_REASON
                else PackageStatus.SKIPPED_PLATFORM
            )
            _progress("  Skipping %s (%s)", dry_run, package, resolution.reason)
            records[package] = PackageRecord(package, status, reason=resolution.reason)
            continue

        _progress("  -> Backend: %s", dry_run, resolution.backend.value)
        resolutions.append(resolution)

    groups = group_by_backend(resolutions)

    issues = verify_batch(
        manifest,
        groups,
        cache,
        adapters=adapters,
        platform=platform,
        max_results=max_alternatives,
    )
    choices: UserChoices = resolve_issues(issues, interactive)
    print_choices_summary(choices)

    unresolved = [issue for issue in issues if choices.should_skip(issue.package)]
    if unresolved and log_dir is not None and not dry_run:
        summary.retry_log = write_retry_log(unresolved, log_dir)

    for backend, members in groups.items():
        adapter = adapters[backend]
        requests = []
        for package in members:
            if choices.should_skip(package):
                records[package] = PackageRecord(
                    package, PackageStatus.SKIPPED_BY_USER, backend=backend, reason="skipped after verification"
                )
                continue
            try:
                identifiers = choices.apply(package, adapter.extract_identifiers(package))
            except NoConfigError as error:
                records[package] = PackageRecord(package, PackageStatus.SKIPPED_NO_BACKEND, reason=str(error))
                continue
            requests.append(adapter.request_for(package, identifiers))

        if not requests:
            continue

        _progress("Installing %d package(s) with %s", dry_run, len(requests), backend.value)
        results = adapter.install_bulk(requests, dry_run)
        summary.bulk[backend] = adapter.summarize(results)
        for result in results:
            records[result.package] = _record_from_result(result)
            if result.failed:
                logger.error("Failed: %s (%s)", result.package, result.reason)
            else:
                _progress("  %s: %s", dry_run, result.package, OUTCOME_STATUS[result.outcome].value)

    for backend_name, counts in cache.stats().items():
        logger.debug("Cache %s: %s", backend_name, counts)

    summary.records = [records[package] for package in names if package in records]
    return summary


def install_profile(manifest: Manifest, profile: str, *, platform: str, **options) -> RunSummary:
    """Install every package selected by a profile."""
    packages = packages_for_profile(manifest, profile)
    _progress("Installing packages for profile: %s", options.get("dry_run", False), profile)
    if options.get("dry_run"):
        logger.info("%s No packages will actually be installed", DRY_RUN_PREFIX)
    return install_packages(manifest, packages, platform=platform, profile=profile, **options)


def render_summary(summary: RunSummary) -> str:
    """Tabular end-of-run summary. Contains no timestamps."""
    rule = "━" * 56
    title = f"Installation Summary for profile '{summary.profile}'" if summary.profile else "Installation Summary"

    lines = [
        rule,
        title,
        rule,
        f"  {'Total packages:':<20}{summary.considered:>5}",
        f"  {'Succeeded:':<20}{summary.succeeded:>5}",
        f"  {'Skipped:':<20}{summary.skipped:>5}",
        f"  {'Failed:':<20}{summary.failed:>5}",
    ]

    by_backend = summary.by_backend()
    if by_backend:
        lines.append("")
        lines.append(f"  {'Backend':<12}{'Total':>7}{'Succeeded':>11}{'Skipped':>9}{'Failed':>8}")
        for backend, counts in by_backend.items():
            lines.append(
                f"  {backend.value:<12}{counts.total:>7}{counts.succeeded:>11}{counts.skipped:>9}{counts.failed:>8}"
            )

    skipped = [record for record in summary.records if record.status in SKIPPED_STATUSES - {PackageStatus.ALREADY_INSTALLED}]
    if skipped:
        lines.append("")
        lines.append("  Skipped packages:")
        lines.extend(f"    {record.package}: {record.reason}" for record in skipped)

    failed = [record for record in summary.records if record.status is PackageStatus.FAILED]
    if failed:
        lines.append("")
        lines.append("  Failed packages:")
        lines.extend(f"    {record.package}: {record.reason}" for record in failed)

    lines.append(rule)

    if summary.dry_run:
        lines = [f"{DRY_RUN_PREFIX} {line}" if line else DRY_RUN_PREFIX for line in lines]
    return "\n".join(lines)
