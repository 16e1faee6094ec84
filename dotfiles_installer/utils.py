"""Utility functions for command execution and logging."""

import getpass
import logging
import os
import platform
import shutil
import subprocess
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

logger = logging.getLogger("dotfiles_installer")

DRY_RUN_PREFIX = "[DRY RUN]"


class ColorFormatter(logging.Formatter):
    """Console formatter with colored level names and bold section headers."""

    COLORS = {
        logging.DEBUG: "\033[90m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    BOLD = "\033[1m"
    RESET = "\033[0m"

    def __init__(self) -> None:
        super().__init__(fmt="%(levelname)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if message.startswith("===") and message.endswith("==="):
            return f"\n{self.BOLD}{message}{self.RESET}"

        color = self.COLORS.get(record.levelno, "")
        line = f"{color}{record.levelname}:{self.RESET} {message}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class LazyFileHandler(logging.FileHandler):
    """File handler that creates its log file on the first emitted record.

    A short header (date, user, OS) is written when the file is opened.
    """

    def __init__(self, log_dir: str | Path) -> None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_dir = Path(log_dir).expanduser()
        path = self.log_dir / f"install-{timestamp}.log"
        super().__init__(path, encoding="utf-8", delay=True)
        self.setFormatter(
            logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s", datefmt="%H:%M:%S")
        )

    def _open(self):
        self.log_dir.mkdir(parents=True, exist_ok=True)
        stream = super()._open()
        stream.write("=" * 40 + "\n")
        stream.write("Dotfiles Installation Log\n")
        stream.write(f"Date: {datetime.now().isoformat(timespec='seconds')}\n")
        stream.write(f"User: {current_user()}\n")
        stream.write(f"OS: {platform.system()} {platform.release()}\n")
        stream.write("=" * 40 + "\n\n")
        return stream


def setup_logging(verbose: bool = False, log_dir: str | Path | None = None) -> None:
    """Configure logging.

    Console output goes through ColorFormatter. When log_dir is given,
    warnings and errors are also written to a timestamped file there.
    """
    level = logging.DEBUG if verbose else logging.INFO

    console = logging.StreamHandler()
    console.setFormatter(ColorFormatter())

    logger.handlers.clear()
    logger.addHandler(console)
    if log_dir is not None:
        file_handler = LazyFileHandler(log_dir)
        file_handler.setLevel(logging.WARNING)
        logger.addHandler(file_handler)

    logger.setLevel(level)
    logger.propagate = False


def run(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture: bool = False,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a command with logging."""
    logger.debug("Running: %s", " ".join(cmd))
    return subprocess.run(
        cmd,
        check=check,
        capture_output=capture,
        text=True,
        env=env,
        timeout=timeout,
    )


def command_exists(cmd: str) -> bool:
    """Check if a command exists in PATH."""
    if not cmd:
        return False
    return shutil.which(cmd) is not None


def sudo_prefix() -> list[str]:
    """Return the sudo prefix needed for privileged commands."""
    if os.geteuid() == 0:
        return []
    return ["sudo"]


def current_user() -> str:
    """Return the name of the invoking user."""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get("USER", "unknown")


def ensure_dir(path: str | Path) -> Path:
    """Ensure directory exists."""
    p = Path(path).expanduser()
    p.mkdir(parents=True, exist_ok=True)
    return p
