import os
import platform as host_platform
import shutil
import sys
from typing import Dict, Optional, Tuple

from shell.config import APP_DIR
from shell.errors import UnsupportedPlatformError

TOOL_NAME = "esptool"

# (platform, arch) -> path relative to the bundled-tools root
TOOL_PATHS: Dict[Tuple[str, str], str] = {
    ("win32", "x64"): os.path.join("win32-x64", "esptool.exe"),
    ("darwin", "x64"): os.path.join("darwin-x64", "esptool"),
    ("darwin", "arm64"): os.path.join("darwin-arm64", "esptool"),
    ("linux", "x64"): os.path.join("linux-x64", "esptool"),
    ("linux", "arm64"): os.path.join("linux-arm64", "esptool"),
}

_ARCH_ALIASES: Dict[str, str] = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def current_platform() -> str:
    if sys.platform.startswith("win"):
        return "win32"
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def current_arch() -> str:
    machine: str = host_platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


class FlashToolLocator:
    def __init__(self, tools_dir: Optional[str] = None) -> None:
        self.tools_dir: Optional[str] = tools_dir

    def tools_root(self) -> str:
        """Root of the bundled flashing tools for this build."""
        if self.tools_dir:
            return self.tools_dir
        if getattr(sys, "frozen", False):
            # PyInstaller unpacks bundled resources into _MEIPASS
            base_path: str = getattr(sys, "_MEIPASS", os.path.dirname(sys.executable))
        else:
            base_path = APP_DIR
        return os.path.join(base_path, "resources", "bin", TOOL_NAME)

    def resolve(self, platform: Optional[str] = None, arch: Optional[str] = None) -> str:
        """Returns the absolute path of the flashing executable for a platform/arch pair."""
        platform = platform or current_platform()
        arch = arch or current_arch()

        relative: Optional[str] = TOOL_PATHS.get((platform, arch))
        if relative is None:
            raise UnsupportedPlatformError(platform, arch)

        # Developers on Linux usually have esptool installed through pip
        if platform == "linux":
            system_tool: Optional[str] = shutil.which(TOOL_NAME)
            if system_tool:
                return os.path.abspath(system_tool)

        return os.path.abspath(os.path.join(self.tools_root(), relative))
