"""Install configuration, default locations and command timeouts."""

from dataclasses import dataclass
from pathlib import Path
from typing import Final

DEFAULT_MANIFEST_DIR: Final[Path] = Path(__file__).resolve().parent / "manifests"
DEFAULT_LOG_DIR: Final[Path] = Path("~/.dotfiles-install-logs")

BASE_MANIFEST_NAME: Final[str] = "packages.yaml"
PLATFORM_MANIFEST_TEMPLATE: Final[str] = "packages.{platform}.yaml"

DEFAULT_MAX_ALTERNATIVES: Final[int] = 5

# Seconds per external command class
LIST_TIMEOUT: Final[int] = 120
SEARCH_TIMEOUT: Final[int] = 60
INSTALL_TIMEOUT: Final[int] = 3600
REFRESH_TIMEOUT: Final[int] = 600


@dataclass(frozen=True)
class InstallConfig:
    """Configuration for one installation run."""

    profile: str | None
    platform: str
    manifest_dir: Path = DEFAULT_MANIFEST_DIR
    dry_run: bool = False
    interactive: bool = True
    log_dir: Path = DEFAULT_LOG_DIR
    max_alternatives: int = DEFAULT_MAX_ALTERNATIVES

    def resolved_log_dir(self) -> Path:
        """Return the log directory with ~ expanded."""
        return Path(self.log_dir).expanduser()
