"""Shared fixtures: sample manifests and a fake package-manager shell."""

import copy
import logging
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

from dotfiles_installer import backends, cache
from dotfiles_installer.manifest import build_manifest

SAMPLE_MANIFEST = {
    "version": "1.0",
    "profiles": {
        "minimal": {"description": "Just the basics", "packages": ["git", "ripgrep"]},
        "dev": {"includes": ["core", "dev"]},
        "no-gui": {"excludes": ["gui"]},
        "everything": {},
    },
    "categories": {
        "core": {"description": "Core tools", "priority": ["homebrew", "apt"]},
        "dev": {"description": "Development", "priority": ["apt"]},
        "gui": {"description": "Desktop apps", "priority": ["homebrew-cask"]},
    },
    "packages": {
        "git": {"category": "core", "description": "VCS", "apt": "git", "homebrew": "git"},
        "ripgrep": {"category": "core", "apt": "ripgrep", "homebrew": "ripgrep"},
        "fd": {"category": "core", "apt": "fd-find", "homebrew": "fd"},
        "build-tools": {
            "category": "dev",
            "platforms": ["ubuntu", "debian"],
            "apt": {"packages": ["build-essential", "pkg-config"]},
        },
        "firefox": {
            "category": "gui",
            "platforms": ["macos"],
            "homebrew": {"package": "firefox", "cask": True},
        },
    },
    "mise_tools": [{"name": "node", "version": "lts"}],
}


def make_manifest(document=None):
    """Build a Manifest from a plain document (SAMPLE_MANIFEST by default)."""
    return build_manifest(copy.deepcopy(document if document is not None else SAMPLE_MANIFEST))


def write_manifest(directory: Path, document, name: str = "packages.yaml") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(yaml.safe_dump(document, sort_keys=False))
    return path


class FakeCommands:
    """Records commands and answers them from canned outputs.

    ``outputs`` maps a command prefix (tuple) to stdout; the longest matching
    prefix wins. Prefixes in ``failures`` exit with status 1 and prefixes in
    ``timeouts`` raise TimeoutExpired. ``available`` limits which executables
    exist; None means all of them.
    """

    def __init__(self, outputs=None, failures=(), timeouts=(), available=None):
        self.outputs = {tuple(key): value for key, value in (outputs or {}).items()}
        self.failures = {tuple(prefix) for prefix in failures}
        self.timeouts = {tuple(prefix) for prefix in timeouts}
        self.available = set(available) if available is not None else None
        self.calls: list[list[str]] = []

    @staticmethod
    def _matches(cmd, prefixes):
        return any(tuple(cmd[: len(prefix)]) == prefix for prefix in prefixes)

    def run(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        if self._matches(cmd, self.timeouts):
            raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout") or 0)
        if self._matches(cmd, self.failures):
            return SimpleNamespace(returncode=1, stdout="")

        stdout = ""
        best = -1
        for prefix, value in self.outputs.items():
            if tuple(cmd[: len(prefix)]) == prefix and len(prefix) > best:
                stdout, best = value, len(prefix)
        return SimpleNamespace(returncode=0, stdout=stdout)

    def command_exists(self, name: str) -> bool:
        return bool(name) and (self.available is None or name in self.available)

    def count(self, *prefix: str) -> int:
        return sum(1 for cmd in self.calls if tuple(cmd[: len(prefix)]) == prefix)

    def matching(self, *prefix: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if tuple(cmd[: len(prefix)]) == prefix]


@pytest.fixture(autouse=True)
def restore_logger():
    """Undo setup_logging so caplog keeps seeing records."""
    logger = logging.getLogger("dotfiles_installer")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def sample_manifest():
    return make_manifest()


@pytest.fixture
def manifest_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "manifests"
    write_manifest(directory, SAMPLE_MANIFEST)
    return directory


@pytest.fixture
def sources_dir(tmp_path: Path, monkeypatch) -> Path:
    directory = tmp_path / "sources.list.d"
    directory.mkdir()
    monkeypatch.setattr(backends, "APT_SOURCES_DIR", directory)
    return directory


@pytest.fixture
def patch_commands(monkeypatch, sources_dir):
    """Install a FakeCommands in place of every subprocess and PATH lookup."""

    def install(fake: FakeCommands) -> FakeCommands:
        monkeypatch.setattr(cache, "run", fake.run)
        monkeypatch.setattr(cache, "command_exists", fake.command_exists)
        monkeypatch.setattr(backends, "run", fake.run)
        monkeypatch.setattr(backends, "command_exists", fake.command_exists)
        monkeypatch.setattr(backends, "sudo_prefix", lambda: [])
        return fake

    return install
