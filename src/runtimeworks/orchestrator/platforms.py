from __future__ import annotations

import enum
import sys
from pathlib import Path
from typing import Optional

from .errors import UnsupportedPlatformError

MACOS_APP_NAME = "Ollama.app"
LINUX_DOWNLOAD_URL = "https://ollama.com/download/linux"


class Platform(str, enum.Enum):
    MACOS = "darwin"
    WINDOWS = "win32"
    LINUX = "linux"


def detect_platform(system: Optional[str] = None) -> Platform:
    """Map ``sys.platform`` (or ``system``) onto the supported variants."""
    value = (system or sys.platform).lower()
    if value.startswith("darwin"):
        return Platform.MACOS
    if value.startswith("win32") or value.startswith("cygwin"):
        return Platform.WINDOWS
    if value.startswith("linux"):
        return Platform.LINUX
    raise UnsupportedPlatformError(f"Unsupported platform: {value}")


def app_bundle_path(applications_dir: str) -> Path:
    return Path(applications_dir) / MACOS_APP_NAME


def cli_path(platform: Platform, applications_dir: str = "/Applications") -> str:
    """Location of the ``ollama`` CLI the orchestrator shells out to."""
    if platform is Platform.MACOS:
        return str(app_bundle_path(applications_dir) / "Contents" / "Resources" / "ollama")
    return "ollama"


def current_platform() -> Optional[Platform]:
    """Like :func:`detect_platform` but returns ``None`` for unknown systems."""
    try:
        return detect_platform()
    except UnsupportedPlatformError:
        return None
