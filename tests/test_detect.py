"""Tests for detect module."""

from pathlib import Path

from dotfiles_installer import detect


def test_read_os_release(tmp_path: Path) -> None:
    """Parse quoted and unquoted values, skipping comments."""
    path = tmp_path / "os-release"
    path.write_text('# comment\nNAME="Ubuntu"\nID=ubuntu\nVERSION_ID="24.04"\n\nbroken line\n')

    assert detect.read_os_release(path) == {"NAME": "Ubuntu", "ID": "ubuntu", "VERSION_ID": "24.04"}


def test_read_os_release_missing(tmp_path: Path) -> None:
    """Return an empty dict when the file is absent."""
    assert detect.read_os_release(tmp_path / "missing") == {}


def test_detect_macos(monkeypatch) -> None:
    """Report macos on Darwin."""
    monkeypatch.setattr(detect.sys, "platform", "darwin")
    assert detect.detect_platform() == "macos"


def test_detect_linux_distribution(monkeypatch) -> None:
    """Use the lowercased os-release ID on Linux."""
    monkeypatch.setattr(detect.sys, "platform", "linux")
    monkeypatch.setattr(detect, "read_os_release", lambda path=detect.OS_RELEASE: {"ID": "Debian"})
    assert detect.detect_platform() == "debian"


def test_detect_unknown_linux(monkeypatch) -> None:
    """Fall back to linux without an os-release ID."""
    monkeypatch.setattr(detect.sys, "platform", "linux")
    monkeypatch.setattr(detect, "read_os_release", lambda path=detect.OS_RELEASE: {})
    assert detect.detect_platform() == "linux"
