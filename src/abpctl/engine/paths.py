"""Locating the ABP engine executable."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

# Relative to the directory the browsers are installed into
_PLATFORM_EXECUTABLES = {
    "darwin": "ABP.app/Contents/MacOS/ABP",
    "linux": "abp-chrome/abp",
    "win32": "abp-chrome/chrome.exe",
}

# Local Chromium build outputs, relative to the working directory
DEV_BUILD_PATHS = (
    "out/Default/ABP.app/Contents/MacOS/ABP",
    "../out/Default/ABP.app/Contents/MacOS/ABP",
    "../../out/Default/ABP.app/Contents/MacOS/ABP",
)


def browsers_dir() -> Path:
    """Directory that an installer unpacks engine builds into."""
    return Path(__file__).resolve().parent.parent / "browsers"


def installed_executable() -> Path | None:
    rel = _PLATFORM_EXECUTABLES.get(sys.platform)
    if rel is None:
        return None
    return browsers_dir() / rel


def find_engine_binary(explicit: str | None = None, cwd: Path | None = None) -> str:
    """Resolve the engine binary, or return "" if none can be found.

    Lookup order: explicit path, ``ABP_BROWSER_PATH``, the installed
    browsers directory, then development build locations under ``cwd``.
    """
    if explicit and Path(explicit).exists():
        return explicit

    env_path = os.environ.get("ABP_BROWSER_PATH")
    if env_path and Path(env_path).exists():
        return env_path

    installed = installed_executable()
    if installed is not None and installed.exists():
        return str(installed)

    base = cwd or Path.cwd()
    for rel in DEV_BUILD_PATHS:
        candidate = (base / rel).resolve()
        if candidate.exists():
            return str(candidate)

    logger.debug("No ABP binary found (explicit=%r)", explicit)
    return ""
