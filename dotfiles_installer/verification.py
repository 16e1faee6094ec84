"""Batch verification of package identifiers against the backend caches."""

import json
import logging
import socket
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from dotfiles_installer.backends import BackendAdapter, NoConfigError, PpaAdapter, create_adapters
from dotfiles_installer.cache import BackendCache
from dotfiles_installer.config import DEFAULT_MAX_ALTERNATIVES
from dotfiles_installer.manifest import Backend, Manifest
from dotfiles_installer.utils import current_user, ensure_dir

logger = logging.getLogger("dotfiles_installer")


class IssueStatus(str, Enum):
    MISSING = "missing"
    FUZZY = "fuzzy"


@dataclass(frozen=True)
class VerificationIssue:
    """A configured identifier the backend does not know."""

    backend: Backend
    package: str
    identifier: str
    status: IssueStatus
    alternatives: tuple[str, ...] = ()


class RetryLogError(Exception):
    """Raised when a retry log cannot be read."""


def _is_verifiable(adapter: BackendAdapter, package: str, identifier: str, cask: bool) -> bool:
    backend = adapter.backend
    if not adapter.cache.can_verify(backend, cask=cask):
        return False
    # Backend-prefixed mise tools (npm:, pipx:, ubi:...) are not in the registry
    if backend is Backend.MISE and ":" in identifier:
        return False
    # Tap-qualified formulae are unknown until the tap is added
    if backend is Backend.HOMEBREW and "/" in identifier:
        return False
    # PPA packages only show up once their repository is configured
    if isinstance(adapter, PpaAdapter) and not adapter.is_repository_added(adapter.repository(package)):
        return False
    return True


def verify_package(
    adapter: BackendAdapter, package: str, max_results: int = DEFAULT_MAX_ALTERNATIVES
) -> list[VerificationIssue]:
    """Check every identifier of a package; one issue per identifier the backend lacks."""
    try:
        identifiers = adapter.extract_identifiers(package)
    except NoConfigError:
        return []

    cask = adapter.is_cask(package)
    cache = adapter.cache
    issues: list[VerificationIssue] = []
    for identifier in identifiers:
        if not _is_verifiable(adapter, package, identifier, cask):
            continue
        if cache.exists(adapter.backend, identifier, cask=cask):
            continue

        alternatives = tuple(cache.find_similar(adapter.backend, identifier, max_results))
        status = IssueStatus.FUZZY if alternatives else IssueStatus.MISSING
        logger.info(
            "%s: '%s' not found in %s%s",
            package,
            identifier,
            adapter.backend.value,
            f" (alternatives: {', '.join(alternatives)})" if alternatives else "",
        )
        issues.append(
            VerificationIssue(
                backend=adapter.backend,
                package=package,
                identifier=identifier,
                status=status,
                alternatives=alternatives,
            )
        )
    return issues


def verify_batch(
    manifest: Manifest,
    packages_by_backend: Mapping[Backend, Sequence[str]],
    cache: BackendCache,
    *,
    adapters: Mapping[Backend, BackendAdapter] | None = None,
    platform: str = "",
    max_results: int = DEFAULT_MAX_ALTERNATIVES,
) -> list[VerificationIssue]:
    """Verify every package of every backend group in one pass."""
    if adapters is None:
        adapters = create_adapters(manifest, cache, platform)

    issues: list[VerificationIssue] = []
    for backend, packages in packages_by_backend.items():
        if not packages:
            continue
        cache.init(backend)
        adapter = adapters[backend]
        for package in packages:
            issues.extend(verify_package(adapter, package, max_results))
    return issues


def format_issues(issues: Sequence[VerificationIssue]) -> str:
    """Human-readable listing of verification issues."""
    if not issues:
        return "All packages verified successfully"

    packages = len({issue.package for issue in issues})
    lines = [f"Found {len(issues)} issue(s) in {packages} package(s) that need attention:"]
    for issue in issues:
        lines.append(f"  - {issue.package} ({issue.backend.value}): '{issue.identifier}' not found")
        if issue.alternatives:
            lines.append(f"    Alternatives available: {', '.join(issue.alternatives)}")
    return "\n".join(lines)


# --- Retry log ---


def write_retry_log(issues: Sequence[VerificationIssue], log_dir: str | Path) -> Path:
    """Record unresolved issues so they can be retried later."""
    directory = ensure_dir(log_dir)
    timestamp = datetime.now()
    path = directory / f"missing-packages-{timestamp.strftime('%Y%m%d_%H%M%S')}.json"

    data = {
        "date": timestamp.astimezone().isoformat(timespec="seconds"),
        "user": current_user(),
        "host": socket.gethostname(),
        "packages": [
            {
                "backend": issue.backend.value,
                "package": issue.package,
                "actual_name": issue.identifier,
                "status": issue.status.value,
                "alternatives": list(issue.alternatives),
            }
            for issue in issues
        ],
    }
    path.write_text(json.dumps(data, indent=2) + "\n")
    logger.info("Missing packages logged to: %s", path)
    return path


def load_retry_log(path: str | Path) -> list[str]:
    """Return the package names recorded in a retry log."""
    path = Path(path).expanduser()
    if not path.is_file():
        raise RetryLogError(f"Log file not found: {path}")

    try:
        data = json.loads(path.read_text())
        entries = data["packages"]
        names = [entry["package"] for entry in entries]
    except (json.JSONDecodeError, KeyError, TypeError) as error:
        raise RetryLogError(f"Malformed retry log {path}: {error}") from error

    if not all(isinstance(name, str) and name for name in names):
        raise RetryLogError(f"Malformed retry log {path}: package names must be strings")
    return list(dict.fromkeys(names))
