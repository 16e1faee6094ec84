"""Platform detection."""

import logging
import sys
from pathlib import Path

logger = logging.getLogger("dotfiles_installer")

OS_RELEASE = Path("/etc/os-release")


def read_os_release(path: Path = OS_RELEASE) -> dict[str, str]:
    """Parse an os-release file into a dict."""
    try:
        content = path.read_text()
    except OSError:
        return {}

    values: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key] = value.strip().strip('"').strip("'")
    return values


def detect_platform() -> str:
    """Return 'macos', the Linux distribution ID, or 'linux'."""
    if sys.platform == "darwin":
        return "macos"

    if sys.platform.startswith("linux"):
        distro = read_os_release().get("ID", "").lower()
        if distro:
            logger.debug("Detected Linux distribution: %s", distro)
            return distro

    return "linux"
