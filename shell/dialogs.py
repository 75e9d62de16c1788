import os
import sys
import asyncio
import logging
from typing import Dict, List, Optional

from shell.errors import DialogError

logger = logging.getLogger(__name__)

FIRMWARE_FILETYPES = [("Firmware images", "*.bin"), ("All files", "*.*")]

# Frozen builds re-run their own executable with this flag to show the picker
PICKER_FLAG = "--pick-firmware"

# Directory holding the shell package, for the picker child's import path
_SOURCE_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def ask_firmware_path(title: str) -> str:
    """Shows the tkinter picker. Must run on the process's main thread."""
    import tkinter as tk
    from tkinter import filedialog

    root = tk.Tk()
    root.withdraw()
    root.attributes("-topmost", True)
    try:
        return filedialog.askopenfilename(title=title, filetypes=FIRMWARE_FILETYPES, parent=root)
    finally:
        root.destroy()


def picker_main(argv: List[str]) -> None:
    title = argv[0] if argv else "Select firmware image"
    sys.stdout.write(ask_firmware_path(title) or "")


class FirmwareDialog:
    """Native "open file" picker for firmware images.

    Tk has to own the main thread (macOS aborts otherwise), so the picker
    runs in a short-lived child process that prints the chosen path. Only
    one picker is shown at a time.
    """

    def __init__(self, title: str = "Select firmware image") -> None:
        self.title: str = title
        self._lock: Optional[asyncio.Lock] = None

    def build_command(self) -> List[str]:
        if getattr(sys, "frozen", False):
            return [sys.executable, PICKER_FLAG, self.title]
        return [sys.executable, "-m", "shell.dialogs", self.title]

    def _child_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(p for p in (_SOURCE_ROOT, env.get("PYTHONPATH")) if p)
        return env

    async def open(self) -> Optional[str]:
        """Shows the picker and returns the chosen path, or None if cancelled."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            return await self._ask()

    async def _ask(self) -> Optional[str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._child_env()
            )
        except OSError as e:
            logger.error("Could not open firmware dialog: %s", e)
            raise DialogError(f"Could not open file dialog: {e}") from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            lines = stderr.decode(errors='replace').strip().splitlines()
            message = lines[-1] if lines else f"picker exited with code {process.returncode}"
            logger.error("Could not open firmware dialog: %s", message)
            raise DialogError(f"Could not open file dialog: {message}")

        path = stdout.decode(errors='replace').strip()
        return path or None


if __name__ == "__main__":
    picker_main(sys.argv[1:])
