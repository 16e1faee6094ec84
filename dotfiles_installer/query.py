"""Structural queries over a loaded manifest.

Every function here is pure: no subprocesses, no I/O. Results that are
sets conceptually are returned as lists in manifest order so callers get
a stable iteration order.
"""

from dotfiles_installer.manifest import (
    Backend,
    BackendConfig,
    Category,
    Manifest,
    Package,
    Profile,
    UnknownEntryError,
)


def get_package(manifest: Manifest, name: str) -> Package:
    """Return a package or raise UnknownEntryError."""
    try:
        return manifest.packages[name]
    except KeyError:
        raise UnknownEntryError(f"Unknown package: {name}") from None


def get_profile(manifest: Manifest, name: str) -> Profile:
    """Return a profile or raise UnknownEntryError."""
    try:
        return manifest.profiles[name]
    except KeyError:
        available = ", ".join(manifest.profiles) or "none"
        raise UnknownEntryError(f"Unknown profile: {name} (available: {available})") from None


def get_category(manifest: Manifest, name: str) -> Category:
    """Return a category or raise UnknownEntryError."""
    try:
        return manifest.categories[name]
    except KeyError:
        raise UnknownEntryError(f"Unknown category: {name}") from None


def list_profiles(manifest: Manifest) -> list[Profile]:
    return list(manifest.profiles.values())


def list_categories(manifest: Manifest) -> list[Category]:
    return list(manifest.categories.values())


def packages_by_category(manifest: Manifest, category: str) -> list[str]:
    """Return the names of packages owned by a category."""
    return [name for name, package in manifest.packages.items() if package.category == category]


def is_platform_applicable(manifest: Manifest, package: str, platform: str) -> bool:
    """A package applies to every platform unless it lists the ones it supports."""
    platforms = get_package(manifest, package).platforms
    return platforms is None or platform in platforms


def packages_for_platform(manifest: Manifest, platform: str) -> list[str]:
    """Return the packages applicable on the given platform."""
    return [name for name in manifest.packages if is_platform_applicable(manifest, name, platform)]


def priority_chain(manifest: Manifest, package: str) -> list[Backend]:
    """Return the package's own priority override, else its category default."""
    entry = get_package(manifest, package)
    if entry.priority is not None:
        return list(entry.priority)
    return list(get_category(manifest, entry.category).priority)


def packages_for_profile(manifest: Manifest, profile: str) -> list[str]:
    """Resolve a profile to package names.

    Explicit lists are returned verbatim. Otherwise the result is the union
    of the included categories (all packages when ``includes`` is absent)
    minus the union of the excluded categories.
    """
    entry = get_profile(manifest, profile)
    if entry.packages is not None:
        return list(entry.packages)

    if entry.includes is None:
        selected = list(manifest.packages)
    else:
        selected = []
        for category in entry.includes:
            selected.extend(packages_by_category(manifest, category))

    excluded: set[str] = set()
    for category in entry.excludes:
        excluded.update(packages_by_category(manifest, category))

    return [name for name in dict.fromkeys(selected) if name not in excluded]


def backend_config(manifest: Manifest, package: str, backend: Backend) -> BackendConfig | None:
    """Return the package's configuration block for a backend, if any."""
    return get_package(manifest, package).backends.get(backend)
