"""Package manifest model, loading and merging.

A manifest directory holds a shared ``packages.yaml`` and, optionally, a
platform document such as ``packages.ubuntu.yaml``. The platform document
is merged over the shared one before validation.

Merge rule: within ``profiles``, ``categories`` and ``packages`` a key
present in the platform document replaces the shared entry of the same key
as a whole. Fields of the shared entry that the platform entry does not
repeat are dropped, so a platform override of a package must restate every
field it still needs (description, backend blocks, ...).
"""

import logging
from collections.abc import Iterable, Mapping
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Final

import yaml
from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from dotfiles_installer.config import BASE_MANIFEST_NAME, PLATFORM_MANIFEST_TEMPLATE

logger = logging.getLogger("dotfiles_installer")

MISE_TOOLS_KEY: Final[str] = "mise_tools"
MISE_TOOLS_CATEGORY: Final[str] = "mise-tools"
MISE_TOOLS_DESCRIPTION: Final[str] = "Tools managed by mise"

MERGED_SECTIONS: Final[tuple[str, ...]] = ("profiles", "categories", "packages")


class Backend(str, Enum):
    MISE = "mise"  # version manager
    HOMEBREW = "homebrew"  # general package manager (formulae and casks)
    APT = "apt"  # system package manager
    PPA = "ppa"  # third-party apt repositories


BACKEND_ALIASES: Final[dict[str, Backend]] = {"homebrew-cask": Backend.HOMEBREW}

BACKEND_CONFIG_KEYS: Final[dict[Backend, frozenset[str]]] = {
    Backend.MISE: frozenset({"package", "version"}),
    Backend.HOMEBREW: frozenset({"package", "cask", "tap"}),
    Backend.APT: frozenset({"package", "packages"}),
    Backend.PPA: frozenset({"repository", "package", "packages", "gpg_key"}),
}


class ManifestError(Exception):
    """Base class for manifest problems."""


class ParseError(ManifestError):
    """Raised when a manifest document cannot be read or parsed."""


class SchemaError(ManifestError):
    """Raised when a manifest violates a structural invariant."""

    def __init__(self, key: str, problem: str, source: Path | None = None) -> None:
        self.key = key
        self.problem = problem
        self.source = source
        location = f" in {source}" if source else ""
        super().__init__(f"Invalid manifest entry '{key}'{location}: {problem}")


class UnknownEntryError(ManifestError):
    """Raised when a query names a profile, package or category that does not exist."""


def parse_backend(value: Any) -> Backend | None:
    """Return the Backend for a manifest identifier, or None if unrecognized."""
    if not isinstance(value, str):
        return None
    if value in BACKEND_ALIASES:
        return BACKEND_ALIASES[value]
    try:
        return Backend(value)
    except ValueError:
        return None


# --- Models ---

MODEL_CONFIG = ConfigDict(extra="forbid", frozen=True)

Name = Annotated[str, Field(min_length=1)]


def _unique(values: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


Names = Annotated[tuple[Name, ...], AfterValidator(_unique)]


def _parse_priority(value: Any) -> Any:
    if value is None or not isinstance(value, list):
        return value
    if not value:
        raise ValueError("must not be empty")
    chain: list[Backend] = []
    for name in value:
        backend = parse_backend(name)
        if backend is None:
            known = ", ".join(item.value for item in Backend)
            raise ValueError(f"unknown backend '{name}' (expected one of: {known})")
        if backend not in chain:
            chain.append(backend)
    return tuple(chain)


Priority = Annotated[tuple[Backend, ...], BeforeValidator(_parse_priority)]


def _as_text(value: Any) -> Any:
    # YAML reads 3.12 or 20 as numbers
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class BackendConfig(BaseModel):
    """Per-backend settings of a package."""

    model_config = MODEL_CONFIG

    package: Name | None = None
    packages: Names = ()
    cask: StrictBool = False
    tap: str | None = None
    repository: str | None = None
    gpg_key: str | None = None
    version: Annotated[str | None, BeforeValidator(_as_text)] = None

    @field_validator("tap")
    @classmethod
    def tap_format(cls, value: str | None) -> str | None:
        if value is not None and "/" not in value:
            raise ValueError("must look like 'user/repo'")
        return value

    @property
    def identifiers(self) -> tuple[str, ...]:
        """Identifiers to install, in declaration order."""
        if self.packages:
            return self.packages
        if self.package:
            return (self.package,)
        return ()


class Category(BaseModel):
    model_config = MODEL_CONFIG

    name: Name
    description: str = ""
    priority: Priority


class Package(BaseModel):
    """A manifest package entry.

    Backend blocks are given under the backend's name; a plain string is
    shorthand for ``{package: <string>}``.
    """

    model_config = MODEL_CONFIG

    name: Name
    category: Name
    description: str = ""
    notes: str | None = None
    priority: Annotated[tuple[Backend, ...] | None, BeforeValidator(_parse_priority)] = None
    platforms: Names | None = None
    managed_by: Backend | None = None
    mise: BackendConfig | None = None
    homebrew: BackendConfig | None = None
    apt: BackendConfig | None = None
    ppa: BackendConfig | None = None

    @field_validator("mise", "homebrew", "apt", "ppa", mode="before")
    @classmethod
    def package_shorthand(cls, value: Any) -> Any:
        if isinstance(value, str) and value:
            return {"package": value}
        return value

    @field_validator("mise", "homebrew", "apt", "ppa")
    @classmethod
    def backend_fields(cls, value: BackendConfig | None, info: ValidationInfo) -> BackendConfig | None:
        if value is None:
            return value
        backend = Backend(info.field_name)
        unused = sorted(value.model_fields_set - BACKEND_CONFIG_KEYS[backend])
        if unused:
            raise ValueError(f"field(s) not used by {backend.value}: {', '.join(unused)}")
        if backend is not Backend.MISE and not value.identifiers:
            raise ValueError("needs 'package' or 'packages'")
        if backend is Backend.PPA and not (value.repository or "").startswith("ppa:"):
            raise ValueError("repository must be a string starting with 'ppa:'")
        return value

    @field_validator("managed_by")
    @classmethod
    def only_mise(cls, value: Backend | None) -> Backend | None:
        if value is not None and value is not Backend.MISE:
            raise ValueError("only 'mise' is supported")
        return value

    @property
    def backends(self) -> dict[Backend, BackendConfig]:
        """Declared backend blocks, in Backend order."""
        blocks = {backend: getattr(self, backend.value) for backend in Backend}
        return {backend: config for backend, config in blocks.items() if config is not None}


class Profile(BaseModel):
    """A named package selection.

    Either ``packages`` is set (explicit list) or the selection is computed
    from ``includes``/``excludes`` categories.
    """

    model_config = MODEL_CONFIG

    name: Name
    description: str = ""
    packages: Names | None = None
    includes: Names | None = None
    excludes: Names = ()

    @model_validator(mode="after")
    def one_selection_rule(self) -> "Profile":
        if self.packages is not None and (self.includes is not None or "excludes" in self.model_fields_set):
            raise ValueError("use either 'packages' or 'includes'/'excludes', not both")
        return self

    @property
    def is_explicit(self) -> bool:
        return self.packages is not None


def _named(name: str, value: Any) -> Any:
    if value is None:
        return {"name": name}
    if isinstance(value, dict):
        return {**value, "name": name}
    return value


class Manifest(BaseModel):
    """Merged, validated view of one or more manifest documents.

    Validation context may carry ``origins`` (``section.key`` to source
    file) so that cross-reference errors name the file of the entry.
    """

    model_config = MODEL_CONFIG

    version: Annotated[str, BeforeValidator(_as_text)]
    categories: dict[str, Category] = Field(default_factory=dict)
    packages: dict[str, Package] = Field(default_factory=dict)
    profiles: dict[str, Profile] = Field(default_factory=dict)
    sources: tuple[Path, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def name_entries(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for section in MERGED_SECTIONS:
            entries = data.get(section)
            if isinstance(entries, dict):
                data[section] = {name: _named(name, value) for name, value in entries.items()}
        return data

    @field_validator("version", mode="before")
    @classmethod
    def version_required(cls, value: Any) -> Any:
        if value in (None, ""):
            raise ValueError("is required")
        return value

    @model_validator(mode="after")
    def check_references(self, info: ValidationInfo) -> "Manifest":
        # SchemaError is not a ValueError, so pydantic lets it through unwrapped
        origins = (info.context or {}).get("origins", {})

        for name, package in self.packages.items():
            source = origins.get(f"packages.{name}")
            if package.category not in self.categories:
                raise SchemaError(f"packages.{name}.category", f"unknown category '{package.category}'", source)
            chain = package.priority or self.categories[package.category].priority
            for backend in package.backends:
                if backend not in chain:
                    logger.debug(
                        "Package %s has %s configuration but %s is not in its priority chain",
                        name,
                        backend.value,
                        backend.value,
                    )

        for name, profile in self.profiles.items():
            key = f"profiles.{name}"
            source = origins.get(key)
            for package in profile.packages or ():
                if package not in self.packages:
                    raise SchemaError(f"{key}.packages", f"unknown package '{package}'", source)
            for field_name, category_names in (("includes", profile.includes or ()), ("excludes", profile.excludes)):
                for category in category_names:
                    if category not in self.categories:
                        raise SchemaError(f"{key}.{field_name}", f"unknown category '{category}'", source)
        return self


# --- Reading and merging ---


def read_document(path: str | Path) -> dict[str, Any]:
    """Read one YAML manifest document."""
    path = Path(path)
    if not path.is_file():
        raise ParseError(f"Manifest file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as error:
        raise ParseError(f"Invalid YAML in manifest {path}: {error}") from error
    except OSError as error:
        raise ParseError(f"Cannot read manifest {path}: {error}") from error

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseError(f"Manifest {path} must be a mapping at the top level")
    return data


def _section(document: Mapping[str, Any], name: str, source: Path | None) -> dict[str, Any]:
    value = document.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SchemaError(name, "must be a mapping", source)
    return value


def _tool_entries(document: Mapping[str, Any], source: Path | None) -> list[Any]:
    value = document.get(MISE_TOOLS_KEY)
    if value is None:
        return []
    if not isinstance(value, list):
        raise SchemaError(MISE_TOOLS_KEY, "must be a list", source)
    return value


def _tool_name(entry: Any, index: int, source: Path | None) -> str:
    if isinstance(entry, str) and entry:
        return entry
    if isinstance(entry, dict) and isinstance(entry.get("name"), str) and entry["name"]:
        return entry["name"]
    raise SchemaError(f"{MISE_TOOLS_KEY}[{index}]", "entry needs a non-empty 'name'", source)


def merge_documents(
    layers: Iterable[tuple[Path | None, Mapping[str, Any]]],
) -> tuple[dict[str, Any], dict[str, Path | None]]:
    """Merge documents in order; later layers override earlier ones.

    Returns the merged document and a map from ``section.key`` to the file
    that supplied the entry.
    """
    merged: dict[str, Any] = {"version": None, MISE_TOOLS_KEY: []}
    for section in MERGED_SECTIONS:
        merged[section] = {}
    origins: dict[str, Path | None] = {}

    for source, document in layers:
        if document.get("version") is not None:
            merged["version"] = document["version"]
            origins["version"] = source

        for section in MERGED_SECTIONS:
            for key, value in _section(document, section, source).items():
                # Shallow replacement: the whole entry is taken from this layer
                merged[section][key] = value
                origins[f"{section}.{key}"] = source

        tools: list[Any] = merged[MISE_TOOLS_KEY]
        for index, entry in enumerate(_tool_entries(document, source)):
            name = _tool_name(entry, index, source)
            positions = [i for i, existing in enumerate(tools) if _tool_name(existing, i, None) == name]
            if positions:
                tools[positions[0]] = entry
            else:
                tools.append(entry)
            origins[f"{MISE_TOOLS_KEY}.{name}"] = source

    return merged, origins


def expand_mise_tools(document: dict[str, Any], origins: dict[str, Path | None]) -> None:
    """Turn the compact tool list into package entries of a synthetic category."""
    tools = document.get(MISE_TOOLS_KEY) or []
    if not tools:
        return

    categories = document["categories"]
    if MISE_TOOLS_CATEGORY not in categories:
        categories[MISE_TOOLS_CATEGORY] = {
            "description": MISE_TOOLS_DESCRIPTION,
            "priority": [Backend.MISE.value],
        }

    packages = document["packages"]
    for index, entry in enumerate(tools):
        name = _tool_name(entry, index, origins.get(MISE_TOOLS_KEY))
        if name in packages:
            logger.debug("Package %s defined explicitly; ignoring %s entry", name, MISE_TOOLS_KEY)
            continue

        details = entry if isinstance(entry, dict) else {}
        package: dict[str, Any] = {
            "category": MISE_TOOLS_CATEGORY,
            "description": details.get("description", ""),
            "managed_by": Backend.MISE.value,
        }
        if details.get("version") is not None:
            package["mise"] = {"version": str(details["version"])}
        packages[name] = package
        origins[f"packages.{name}"] = origins.get(f"{MISE_TOOLS_KEY}.{name}")


# --- Validation ---


def _schema_error(
    error: ValidationError, origins: Mapping[str, Path | None], sources: tuple[Path, ...]
) -> SchemaError:
    """Report the first validation problem with its dotted key and source file."""
    details = error.errors()
    loc = [str(part) for part in details[0]["loc"]]
    key = ".".join(loc) or "manifest"
    source = origins.get(".".join(loc[:2]), sources[0] if sources else None)
    problem = details[0]["msg"].removeprefix("Value error, ")
    if len(details) > 1:
        problem += f" (and {len(details) - 1} more problem(s))"
    return SchemaError(key, problem, source)


def build_manifest(
    document: dict[str, Any],
    origins: Mapping[str, Path | None] | None = None,
    sources: tuple[Path, ...] = (),
) -> Manifest:
    """Expand the compact tool list, then validate the merged document."""
    origins = dict(origins or {})

    for section in MERGED_SECTIONS:
        if document.get(section) is None:
            document[section] = {}
    document.setdefault(MISE_TOOLS_KEY, [])
    expand_mise_tools(document, origins)
    document.pop(MISE_TOOLS_KEY)

    try:
        return Manifest.model_validate({**document, "sources": sources}, context={"origins": origins})
    except ValidationError as error:
        raise _schema_error(error, origins, sources) from None


def load_manifest(base_path: str | Path, platform_path: str | Path | None = None) -> Manifest:
    """Load the shared manifest and merge an optional platform manifest over it."""
    layers: list[tuple[Path | None, Mapping[str, Any]]] = []
    base = Path(base_path)
    layers.append((base, read_document(base)))

    if platform_path is not None:
        overlay = Path(platform_path)
        layers.append((overlay, read_document(overlay)))

    document, origins = merge_documents(layers)
    sources = tuple(path for path, _ in layers if path is not None)
    manifest = build_manifest(document, origins, sources)

    logger.debug(
        "Loaded manifest from %s: %d profiles, %d categories, %d packages",
        ", ".join(str(path) for path in sources),
        len(manifest.profiles),
        len(manifest.categories),
        len(manifest.packages),
    )
    return manifest


def load_manifest_dir(manifest_dir: str | Path, platform: str) -> Manifest:
    """Load ``packages.yaml`` plus ``packages.<platform>.yaml`` if it exists."""
    directory = Path(manifest_dir).expanduser()
    base = directory / BASE_MANIFEST_NAME
    overlay = directory / PLATFORM_MANIFEST_TEMPLATE.format(platform=platform)
    return load_manifest(base, overlay if overlay.is_file() else None)
