"""Per-run snapshot of package-manager listings.

Each backend is listed once per run: one query for installed packages and
one for available packages (per namespace for Homebrew, where formulae and
casks are listed separately). Membership checks after that are in-memory.
The ppa backend reads the same dpkg/apt database as apt and shares its
listing.
"""

import logging
import subprocess
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from dotfiles_installer.config import DEFAULT_MAX_ALTERNATIVES, LIST_TIMEOUT, SEARCH_TIMEOUT
from dotfiles_installer.manifest import Backend
from dotfiles_installer.utils import command_exists, run

logger = logging.getLogger("dotfiles_installer")

PYTHON_VERSIONED_PREFIXES = ("python3.9", "python3.10", "python3.11", "python3.12")


@dataclass
class Listing:
    """Installed/available identifiers for one backend.

    A set is ``None`` when the listing could not be obtained; lookups then
    treat it as empty.
    """

    installed: set[str] | None = None
    available: set[str] | None = None
    casks_installed: set[str] | None = None
    casks_available: set[str] | None = None


def _first_column(output: str) -> list[str]:
    names = []
    for line in output.splitlines():
        parts = line.split()
        if parts:
            names.append(parts[0])
    return names


def _mise_tool_names(output: str) -> list[str]:
    return [name.split("@", 1)[0] for name in _first_column(output)]


def _brew_names(output: str) -> list[str]:
    names = []
    for line in output.splitlines():
        if not line.strip() or line.startswith("==>"):
            continue
        names.extend(line.split())
    return names


def _query(cmd: list[str], parse: Callable[[str], Iterable[str]], timeout: int) -> list[str] | None:
    """Run a listing/search command, returning None when it cannot be used."""
    if not command_exists(cmd[0]):
        logger.debug("%s not found; skipping '%s'", cmd[0], " ".join(cmd))
        return None

    try:
        result = run(cmd, check=False, capture=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning("Timed out after %ss: %s", timeout, " ".join(cmd))
        return None
    except OSError as error:
        logger.warning("Could not run %s: %s", " ".join(cmd), error)
        return None

    if result.returncode != 0:
        logger.warning("'%s' exited with status %d", " ".join(cmd), result.returncode)
        return None

    return [name for name in parse(result.stdout or "") if name]


def _listing(cmd: list[str], parse: Callable[[str], Iterable[str]]) -> set[str] | None:
    names = _query(cmd, parse, LIST_TIMEOUT)
    return set(names) if names is not None else None


def rank_candidates(candidates: Iterable[str], needle: str, max_results: int) -> list[str]:
    """Deduplicate and order candidates: exact, prefix, substring, other.

    The sort is stable, so candidates of equal rank keep their input order.
    """

    def score(name: str) -> int:
        if name == needle:
            return 0
        if name.startswith(needle):
            return 1
        if needle in name:
            return 2
        return 3

    unique = list(dict.fromkeys(candidate for candidate in candidates if candidate))
    return sorted(unique, key=score)[:max_results]


def transform_candidates(backend: Backend, needle: str) -> list[str]:
    """Naming-convention rewrites that commonly fix a wrong identifier."""
    candidates: list[str] = []

    if backend in (Backend.APT, Backend.PPA):
        if needle.startswith("python-"):
            suffix = needle[len("python-") :]
            candidates.append(f"python3-{suffix}")
            candidates.extend(f"{prefix}-{suffix}" for prefix in PYTHON_VERSIONED_PREFIXES)
        elif needle.startswith("python3-"):
            candidates.append(f"python-{needle[len('python3-') :]}")
        if needle.startswith("lib-"):
            suffix = needle[len("lib-") :]
            candidates.extend([f"lib{suffix}", f"lib{suffix}-dev"])
        elif needle.endswith("-dev") and not needle.startswith("lib"):
            candidates.append(f"lib{needle[: -len('-dev')]}-dev")

    elif backend is Backend.HOMEBREW:
        if needle.endswith("-cli"):
            candidates.append(needle[: -len("-cli")])
        else:
            candidates.append(f"{needle}-cli")

    elif backend is Backend.MISE:
        renames = {
            "node": ["nodejs"],
            "nodejs": ["node"],
            "python3": ["python"],
            "python": ["python3"],
            "golang": ["go"],
        }
        candidates.extend(renames.get(needle, []))

    return [candidate for candidate in candidates if candidate != needle]


@dataclass
class BackendCache:
    """Lazily initialized listings, one per backend, valid for a single run."""

    _listings: dict[Backend, Listing] = field(default_factory=dict)

    @staticmethod
    def _source(backend: Backend) -> Backend:
        return Backend.APT if backend is Backend.PPA else backend

    def is_initialized(self, backend: Backend) -> bool:
        return self._source(backend) in self._listings

    def init(self, backend: Backend) -> Listing:
        """Populate the listing for a backend on first use; no-op afterwards."""
        source = self._source(backend)
        if source in self._listings:
            return self._listings[source]

        logger.debug("Initializing %s package cache", source.value)
        if source is Backend.APT:
            listing = Listing(
                installed=_listing(["dpkg-query", "-W", "--no-paging", "-f=${Package}\n"], _first_column),
                available=_listing(["apt-cache", "pkgnames"], _first_column),
            )
        elif source is Backend.HOMEBREW:
            listing = Listing(
                installed=_listing(["brew", "list", "--formula", "-1"], _brew_names),
                available=_listing(["brew", "formulae"], _brew_names),
                casks_installed=_listing(["brew", "list", "--cask", "-1"], _brew_names),
                casks_available=_listing(["brew", "casks"], _brew_names),
            )
        else:
            listing = Listing(
                installed=_listing(["mise", "list", "--installed"], _mise_tool_names),
                available=_listing(["mise", "registry"], _first_column),
            )

        self._listings[source] = listing
        return listing

    def _installed_set(self, backend: Backend, cask: bool) -> set[str] | None:
        listing = self.init(backend)
        return listing.casks_installed if cask else listing.installed

    def _available_set(self, backend: Backend, cask: bool) -> set[str] | None:
        listing = self.init(backend)
        return listing.casks_available if cask else listing.available

    def exists(self, backend: Backend, identifier: str, *, cask: bool = False) -> bool:
        """Whether the backend knows the identifier."""
        available = self._available_set(backend, cask)
        return bool(identifier) and available is not None and identifier in available

    def is_installed(self, backend: Backend, identifier: str, *, cask: bool = False) -> bool:
        """Whether the identifier is installed through the backend."""
        installed = self._installed_set(backend, cask)
        return bool(identifier) and installed is not None and identifier in installed

    def can_verify(self, backend: Backend, *, cask: bool = False) -> bool:
        """Whether a miss in the available listing is meaningful."""
        return self._available_set(backend, cask) is not None

    def available(self, backend: Backend) -> list[str]:
        """All available identifiers (both namespaces for Homebrew), sorted."""
        listing = self.init(backend)
        names = set(listing.available or ())
        names.update(listing.casks_available or ())
        return sorted(names)

    def find_similar(
        self, backend: Backend, needle: str, max_results: int = DEFAULT_MAX_ALTERNATIVES
    ) -> list[str]:
        """Propose alternatives for an identifier the backend does not know.

        Strategies run in order and the first one producing candidates wins:
        the backend's own search, naming-convention rewrites checked against
        the cache, then a substring scan of the available listing.
        """
        if not needle:
            return []
        self.init(backend)

        candidates = self._native_search(backend, needle)
        if not candidates:
            candidates = [
                candidate
                for candidate in transform_candidates(backend, needle)
                if self.exists(backend, candidate) or self.exists(backend, candidate, cask=True)
            ]
        if not candidates:
            candidates = self._substring_scan(backend, needle)

        return rank_candidates(candidates, needle, max_results)

    def _native_search(self, backend: Backend, needle: str) -> list[str]:
        if backend in (Backend.APT, Backend.PPA):
            results = _query(["apt-cache", "search", "--names-only", needle], _first_column, SEARCH_TIMEOUT)
        elif backend is Backend.HOMEBREW:
            results = _query(["brew", "search", needle], _brew_names, SEARCH_TIMEOUT)
        else:
            plugins = _query(["mise", "plugins", "ls-remote"], _first_column, SEARCH_TIMEOUT)
            results = [name for name in plugins or [] if needle.lower() in name.lower()]
        return results or []

    def _substring_scan(self, backend: Backend, needle: str) -> list[str]:
        suffix = needle.rsplit("-", 1)[-1] if "-" in needle else ""
        matches = []
        for name in self.available(backend):
            if needle in name or (len(suffix) > 1 and suffix in name):
                matches.append(name)
        return matches

    def stats(self) -> dict[str, dict[str, int]]:
        """Counts per initialized backend, for diagnostics."""
        stats: dict[str, dict[str, int]] = {}
        for backend, listing in self._listings.items():
            counts = {
                "installed": len(listing.installed or ()),
                "available": len(listing.available or ()),
            }
            if backend is Backend.HOMEBREW:
                counts["casks_installed"] = len(listing.casks_installed or ())
                counts["casks_available"] = len(listing.casks_available or ())
            stats[backend.value] = counts
        return stats

    def clear_all(self) -> None:
        """Forget every listing. Only meant for tests."""
        self._listings.clear()
