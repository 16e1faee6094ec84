"""Package-manager adapters: mise, Homebrew, apt and Ubuntu PPAs.

All adapters share one interface. Installs are batched: one package-manager
invocation per adapter per run (per namespace for Homebrew), and the PPA
adapter adds every missing repository before refreshing the apt index a
single time.
"""

import logging
import shlex
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from dotfiles_installer.cache import BackendCache
from dotfiles_installer.config import INSTALL_TIMEOUT, REFRESH_TIMEOUT
from dotfiles_installer.manifest import Backend, BackendConfig, Manifest
from dotfiles_installer.query import get_package
from dotfiles_installer.utils import DRY_RUN_PREFIX, command_exists, run, sudo_prefix

logger = logging.getLogger("dotfiles_installer")

APT_SOURCES_DIR = Path("/etc/apt/sources.list.d")
APT_TRUSTED_KEYS_DIR = Path("/etc/apt/trusted.gpg.d")


class NoConfigError(Exception):
    """Raised when a package has no configuration for the backend asked about."""


class InstallOutcome(str, Enum):
    INSTALLED = "installed"
    ALREADY_INSTALLED = "already-installed"
    PLANNED = "planned"  # dry run
    FAILED = "failed"


@dataclass(frozen=True)
class InstallRequest:
    """One manifest package to install with the identifiers to pass to the backend."""

    package: str
    identifiers: tuple[str, ...]
    config: BackendConfig


@dataclass(frozen=True)
class InstallResult:
    package: str
    backend: Backend
    identifiers: tuple[str, ...]
    outcome: InstallOutcome
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome in (InstallOutcome.INSTALLED, InstallOutcome.PLANNED)

    @property
    def skipped(self) -> bool:
        return self.outcome is InstallOutcome.ALREADY_INSTALLED

    @property
    def failed(self) -> bool:
        return self.outcome is InstallOutcome.FAILED


@dataclass(frozen=True)
class BulkSummary:
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0

    @classmethod
    def from_results(cls, results: Iterable[InstallResult]) -> "BulkSummary":
        results = list(results)
        return cls(
            total=len(results),
            succeeded=sum(result.succeeded for result in results),
            skipped=sum(result.skipped for result in results),
            failed=sum(result.failed for result in results),
        )


TIMEOUT_REASON = "timeout"
NOT_FOUND_REASON = "command not found"


def execute(cmd: Sequence[str], timeout: int) -> str | None:
    """Run a mutating command. Return None on success, else a failure reason."""
    try:
        result = run(cmd, check=False, timeout=timeout)
    except subprocess.TimeoutExpired:
        return TIMEOUT_REASON
    except FileNotFoundError:
        return NOT_FOUND_REASON
    except OSError as error:
        return str(error)

    if result.returncode != 0:
        return f"'{' '.join(cmd)}' exited with status {result.returncode}"
    return None


def announce_dry_run(cmd: Sequence[str]) -> None:
    logger.info("%s Would run: %s", DRY_RUN_PREFIX, shlex.join(cmd))


class BackendAdapter:
    """Common behavior of all package-manager adapters."""

    backend: Backend
    command: str

    def __init__(self, manifest: Manifest, cache: BackendCache, platform: str) -> None:
        self.manifest = manifest
        self.cache = cache
        self.platform = platform

    # --- Manifest lookups ---

    def config(self, package: str) -> BackendConfig | None:
        return get_package(self.manifest, package).backends.get(self.backend)

    def has_config(self, package: str) -> bool:
        return self.config(package) is not None

    def extract_identifiers(self, package: str) -> tuple[str, ...]:
        """Identifiers to install for a package, or NoConfigError."""
        config = self.config(package)
        if config is None or not config.identifiers:
            raise NoConfigError(f"{package} has no {self.backend.value} configuration")
        return config.identifiers

    def is_cask(self, package: str) -> bool:
        return False

    # --- Machine state ---

    def is_available(self) -> bool:
        """Whether this backend's tooling is usable on this machine."""
        return command_exists(self.command)

    def check_installed(self, identifier: str, *, cask: bool = False) -> bool:
        return self.cache.is_installed(self.backend, identifier, cask=cask)

    # --- Installation ---

    def request_for(self, package: str, identifiers: Sequence[str] | None = None) -> InstallRequest:
        config = self.config(package) or BackendConfig()
        if identifiers is None:
            identifiers = self.extract_identifiers(package)
        return InstallRequest(package=package, identifiers=tuple(identifiers), config=config)

    def install_one(self, package: str, dry_run: bool = False) -> InstallResult:
        return self.install_bulk([self.request_for(package)], dry_run)[0]

    def install_bulk(self, requests: Sequence[InstallRequest], dry_run: bool = False) -> list[InstallResult]:
        """Install every request, skipping identifiers that are already installed.

        Results come back in request order.
        """
        results: dict[str, InstallResult] = {}
        pending: list[InstallRequest] = []

        for request in requests:
            cask = request.config.cask
            missing = tuple(
                identifier
                for identifier in request.identifiers
                if not self.check_installed(self._installed_name(identifier), cask=cask)
            )
            if not missing:
                logger.info("%s already installed (%s)", request.package, self.backend.value)
                results[request.package] = self._result(request, InstallOutcome.ALREADY_INSTALLED)
            else:
                pending.append(replace(request, identifiers=missing))

        if pending:
            for result in self._install(pending, dry_run):
                results[result.package] = result

        return [results[request.package] for request in requests]

    def summarize(self, results: Iterable[InstallResult]) -> BulkSummary:
        return BulkSummary.from_results(results)

    def _installed_name(self, identifier: str) -> str:
        return identifier

    def _install(self, requests: list[InstallRequest], dry_run: bool) -> list[InstallResult]:
        raise NotImplementedError

    def _result(self, request: InstallRequest, outcome: InstallOutcome, reason: str = "") -> InstallResult:
        return InstallResult(
            package=request.package,
            backend=self.backend,
            identifiers=request.identifiers,
            outcome=outcome,
            reason=reason,
        )

    def _batch(
        self, requests: list[InstallRequest], prefix: list[str], dry_run: bool, timeout: int = INSTALL_TIMEOUT
    ) -> list[InstallResult]:
        """Install a group of requests with one command.

        If the command fails for several requests, each request is retried
        on its own so one bad identifier only fails its own package. A
        timeout or a missing command is not retried.
        """
        if not requests:
            return []
        cmd = [*prefix, *self._arguments(requests)]
        if dry_run:
            announce_dry_run(cmd)
            return [self._result(request, InstallOutcome.PLANNED) for request in requests]

        failure = execute(cmd, timeout)
        if not failure:
            return [self._result(request, InstallOutcome.INSTALLED) for request in requests]

        logger.warning("%s install failed: %s", self.backend.value, failure)
        if len(requests) == 1:
            return [self._result(requests[0], InstallOutcome.FAILED, failure)]
        if failure in (TIMEOUT_REASON, NOT_FOUND_REASON):
            reason = f"{failure} (whole batch of {len(requests)} packages)"
            return [self._result(request, InstallOutcome.FAILED, reason) for request in requests]

        logger.info("Retrying %d %s package(s) one at a time", len(requests), self.backend.value)
        return [result for request in requests for result in self._batch([request], prefix, dry_run, timeout)]

    def _arguments(self, requests: Iterable[InstallRequest]) -> list[str]:
        """Command-line arguments naming what to install."""
        return self._flatten(requests)

    @staticmethod
    def _flatten(requests: Iterable[InstallRequest]) -> list[str]:
        return list(dict.fromkeys(identifier for request in requests for identifier in request.identifiers))


class MiseAdapter(BackendAdapter):
    """Version-manager tools, installed with ``mise install tool@version``."""

    backend = Backend.MISE
    command = "mise"

    def has_config(self, package: str) -> bool:
        entry = get_package(self.manifest, package)
        return entry.managed_by is Backend.MISE or Backend.MISE in entry.backends

    def extract_identifiers(self, package: str) -> tuple[str, ...]:
        entry = get_package(self.manifest, package)
        if not self.has_config(package):
            raise NoConfigError(f"{package} has no mise configuration")
        config = entry.backends.get(Backend.MISE)
        if config is not None and config.package:
            return (config.package,)
        return (entry.name,)

    def _installed_name(self, identifier: str) -> str:
        return identifier.split("@", 1)[0]

    def _arguments(self, requests: Iterable[InstallRequest]) -> list[str]:
        specs = []
        for request in requests:
            version = request.config.version or "latest"
            specs.extend(f"{identifier}@{version}" for identifier in request.identifiers)
        return specs

    def _install(self, requests: list[InstallRequest], dry_run: bool) -> list[InstallResult]:
        specs = self._arguments(requests)
        logger.info("Installing %d mise tool(s): %s", len(specs), ", ".join(specs))
        return self._batch(requests, ["mise", "install"], dry_run)


class HomebrewAdapter(BackendAdapter):
    """Homebrew formulae and casks. Casks use their own install path and listing."""

    backend = Backend.HOMEBREW
    command = "brew"

    def is_cask(self, package: str) -> bool:
        config = self.config(package)
        return bool(config and config.cask)

    def _install(self, requests: list[InstallRequest], dry_run: bool) -> list[InstallResult]:
        results: list[InstallResult] = []

        failed_taps: dict[str, str] = {}
        for tap in dict.fromkeys(request.config.tap for request in requests if request.config.tap):
            cmd = ["brew", "tap", tap]
            if dry_run:
                announce_dry_run(cmd)
                continue
            logger.info("Adding Homebrew tap: %s", tap)
            failure = execute(cmd, INSTALL_TIMEOUT)
            if failure:
                logger.warning("Failed to add tap %s: %s", tap, failure)
                failed_taps[tap] = failure

        ready = []
        for request in requests:
            if request.config.tap in failed_taps:
                reason = f"tap {request.config.tap} unavailable: {failed_taps[request.config.tap]}"
                results.append(self._result(request, InstallOutcome.FAILED, reason))
            else:
                ready.append(request)

        formulae = [request for request in ready if not request.config.cask]
        casks = [request for request in ready if request.config.cask]

        if formulae:
            names = self._flatten(formulae)
            logger.info("Installing %d Homebrew formula(e): %s", len(names), ", ".join(names))
            results.extend(self._batch(formulae, ["brew", "install"], dry_run))
        if casks:
            names = self._flatten(casks)
            logger.info("Installing %d Homebrew cask(s): %s", len(names), ", ".join(names))
            results.extend(self._batch(casks, ["brew", "install", "--cask"], dry_run))

        return results


class AptAdapter(BackendAdapter):
    """Debian/Ubuntu system packages."""

    backend = Backend.APT
    command = "apt-get"

    def _install(self, requests: list[InstallRequest], dry_run: bool) -> list[InstallResult]:
        sudo = sudo_prefix()
        names = self._flatten(requests)
        logger.info("Installing %d apt package(s): %s", len(names), ", ".join(names))

        update = [*sudo, "apt-get", "update", "-qq"]
        if dry_run:
            announce_dry_run(update)
        else:
            failure = execute(update, REFRESH_TIMEOUT)
            if failure:
                logger.warning("apt-get update failed (%s); installing from the current index", failure)

        return self._batch(requests, [*sudo, "apt-get", "install", "-y", "-qq"], dry_run)


class PpaAdapter(BackendAdapter):
    """Packages from Ubuntu PPAs.

    Order of operations: add every missing repository (importing its
    signing key first), refresh the apt index once, install everything in
    one apt-get call.
    """

    backend = Backend.PPA
    command = "add-apt-repository"

    def is_available(self) -> bool:
        return self.platform == "ubuntu" and command_exists(self.command)

    def repository(self, package: str) -> str:
        config = self.config(package)
        if config is None or not config.repository:
            raise NoConfigError(f"{package} has no ppa configuration")
        return config.repository

    def check_installed(self, identifier: str, *, cask: bool = False) -> bool:
        return self.cache.is_installed(Backend.APT, identifier)

    def is_repository_added(self, repository: str) -> bool:
        """Look for the PPA's owner/name in the apt sources directory."""
        ppa_name = repository.removeprefix("ppa:")
        if not APT_SOURCES_DIR.is_dir():
            return False
        for source in sorted(APT_SOURCES_DIR.iterdir()):
            try:
                if source.is_file() and ppa_name in source.read_text(errors="ignore"):
                    return True
            except OSError:
                continue
        return False

    def add_repository(self, repository: str, gpg_key: str | None = None, dry_run: bool = False) -> str | None:
        """Add a PPA if needed. Return None on success, else a failure reason."""
        if self.is_repository_added(repository):
            logger.info("PPA repository %s is already added", repository)
            return None

        sudo = sudo_prefix()
        commands = []
        if gpg_key:
            keyring = APT_TRUSTED_KEYS_DIR / (repository.removeprefix("ppa:").replace("/", "-") + ".gpg")
            pipeline = f"curl -fsSL {shlex.quote(gpg_key)} | gpg --dearmor --yes -o {shlex.quote(str(keyring))}"
            commands.append([*sudo, "sh", "-c", pipeline])
        commands.append([*sudo, "add-apt-repository", "-y", repository])

        for cmd in commands:
            if dry_run:
                announce_dry_run(cmd)
                continue
            logger.info("Running: %s", shlex.join(cmd))
            failure = execute(cmd, REFRESH_TIMEOUT)
            if failure:
                logger.warning("Failed to add PPA %s: %s", repository, failure)
                return failure
        return None

    def refresh_index(self, dry_run: bool = False) -> str | None:
        cmd = [*sudo_prefix(), "apt-get", "update"]
        if dry_run:
            announce_dry_run(cmd)
            return None
        logger.info("Updating apt package index...")
        return execute(cmd, REFRESH_TIMEOUT)

    def _install(self, requests: list[InstallRequest], dry_run: bool) -> list[InstallResult]:
        results: list[InstallResult] = []

        repositories: dict[str, str | None] = {}
        for request in requests:
            repository = request.config.repository or ""
            if repositories.get(repository) is None:
                repositories[repository] = request.config.gpg_key

        failed_repos = {}
        for repository, gpg_key in repositories.items():
            failure = self.add_repository(repository, gpg_key, dry_run)
            if failure:
                failed_repos[repository] = failure

        ready = []
        for request in requests:
            failure = failed_repos.get(request.config.repository or "")
            if failure:
                reason = f"repository {request.config.repository} could not be added: {failure}"
                results.append(self._result(request, InstallOutcome.FAILED, reason))
            else:
                ready.append(request)

        if not ready:
            return results

        failure = self.refresh_index(dry_run)
        if failure:
            logger.warning("apt-get update failed: %s", failure)
            results.extend(
                self._result(request, InstallOutcome.FAILED, f"index refresh failed: {failure}")
                for request in ready
            )
            return results

        names = self._flatten(ready)
        logger.info("Installing %d PPA package(s): %s", len(names), ", ".join(names))
        results.extend(self._batch(ready, [*sudo_prefix(), "apt-get", "install", "-y"], dry_run))
        return results


ADAPTER_TYPES: dict[Backend, type[BackendAdapter]] = {
    Backend.MISE: MiseAdapter,
    Backend.HOMEBREW: HomebrewAdapter,
    Backend.APT: AptAdapter,
    Backend.PPA: PpaAdapter,
}


def create_adapters(manifest: Manifest, cache: BackendCache, platform: str) -> dict[Backend, BackendAdapter]:
    """One adapter per backend, sharing the run's cache."""
    return {backend: adapter_type(manifest, cache, platform) for backend, adapter_type in ADAPTER_TYPES.items()}
