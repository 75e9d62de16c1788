import os
import shlex
from typing import List, Optional

from pydantic import BaseModel, field_validator

# Repository root when running from source; the packaged build sets LOBSTER_APP_DIR.
APP_DIR: str = os.path.abspath(os.getenv("LOBSTER_APP_DIR", os.path.join(os.path.dirname(__file__), "..")))

BACKEND_READY_MARKER = "LOBSTER_BACKEND_READY"


def _default_backend_command() -> List[str]:
    return ["node", os.path.join(APP_DIR, "backend", "index.cjs")]


class ShellSettings(BaseModel):
    dev_server_url: Optional[str] = None
    backend_command: List[str] = []
    ready_marker: str = BACKEND_READY_MARKER
    tools_dir: Optional[str] = None
    ui_dir: str = os.path.join(APP_DIR, "ui")
    host: str = "127.0.0.1"
    port: int = 8321
    log_level: str = "INFO"
    bootloader_offset: str = "0x1000"
    partitions_offset: str = "0x8000"
    firmware_offset: str = "0x10000"

    @field_validator("bootloader_offset", "partitions_offset", "firmware_offset")
    @classmethod
    def check_offset(cls, value: str) -> str:
        try:
            offset = int(value, 16)
        except ValueError:
            raise ValueError(f"flash offset must be a hex number such as 0x10000, got {value!r}")
        if offset < 0:
            raise ValueError(f"flash offset must not be negative, got {value!r}")
        return value

    @property
    def is_dev(self) -> bool:
        """Development mode: the backend is managed outside the shell."""
        return bool(self.dev_server_url)

    @classmethod
    def from_env(cls) -> "ShellSettings":
        """Builds the settings from LOBSTER_* environment variables."""
        backend_cmd: Optional[str] = os.getenv("LOBSTER_BACKEND_CMD")
        return cls(
            dev_server_url=os.getenv("LOBSTER_DEV_SERVER_URL") or None,
            backend_command=shlex.split(backend_cmd) if backend_cmd else _default_backend_command(),
            tools_dir=os.getenv("LOBSTER_TOOLS_DIR") or None,
            ui_dir=os.path.abspath(os.path.expanduser(os.getenv("LOBSTER_UI_DIR", os.path.join(APP_DIR, "ui")))),
            host=os.getenv("LOBSTER_HOST", "127.0.0.1"),
            port=int(os.getenv("LOBSTER_PORT", "8321")),
            log_level=os.getenv("LOBSTER_LOG_LEVEL", "INFO").upper(),
            bootloader_offset=os.getenv("LOBSTER_BOOTLOADER_OFFSET", "0x1000"),
            partitions_offset=os.getenv("LOBSTER_PARTITIONS_OFFSET", "0x8000"),
            firmware_offset=os.getenv("LOBSTER_FIRMWARE_OFFSET", "0x10000"),
        )
