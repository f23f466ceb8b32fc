"""Host platform details: per-user directories and package platform names."""

import os
import pathlib
import platform
import sys
import tempfile

if sys.platform == "darwin":

    def cache_dir() -> pathlib.Path:
        return pathlib.Path.home() / "Library" / "Caches" / "pg_embed"

    OS_NAME = "darwin"
    IS_WINDOWS = False

elif sys.platform == "win32":

    def cache_dir() -> pathlib.Path:
        local = os.environ.get("LOCALAPPDATA")
        base = pathlib.Path(local) if local else pathlib.Path.home()
        return base / "pg_embed" / "cache"

    OS_NAME = "windows"
    IS_WINDOWS = True

else:

    def cache_dir() -> pathlib.Path:
        xdg_cache_dir = pathlib.Path(os.environ.get("XDG_CACHE_HOME", "."))
        if not xdg_cache_dir.is_absolute():
            xdg_cache_dir = pathlib.Path.home() / ".cache"
        return xdg_cache_dir / "pg_embed"

    OS_NAME = "linux"
    IS_WINDOWS = False


_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64v8",
    "arm64": "arm64v8",
    "i386": "i386",
    "i686": "i386",
    "ppc64le": "ppc64le",
}


def package_platform() -> str:
    """Returns the binary package platform name, e.g. 'linux-amd64'."""
    machine = platform.machine().lower()
    return f"{OS_NAME}-{_ARCHITECTURES.get(machine, machine)}"


def executable(name: str) -> str:
    """Returns the file name of an executable on this platform."""
    return f"{name}.exe" if IS_WINDOWS else name


def temp_dir() -> pathlib.Path:
    return pathlib.Path(tempfile.gettempdir()) / "pg_embed"
