import os
import re
import sys
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncGenerator, Callable, Dict, List, Optional, Union
from asyncio.subprocess import Process

from shell.errors import PortBusyError, UnsupportedPlatformError
from shell.progress import ProgressParser
from shell.serial_manager import normalize_port_path
from shell.tool_locator import FlashToolLocator

logger = logging.getLogger(__name__)

FLASH_BAUD = 115200

BOOTLOADER_HINT = (
    "Make sure the device is in bootloader mode "
    "(hold BOOT, press and release RESET, then release BOOT) and try again."
)


@dataclass
class FlashImage:
    offset: str
    path: str


@dataclass
class FlashProgress:
    percentage: int


@dataclass
class FlashResult:
    success: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "FlashResult":
        return cls(True)

    @classmethod
    def failed(cls, reason: str) -> "FlashResult":
        return cls(False, reason)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"status": "success" if self.success else "failure", "reason": self.reason}


FlashEvent = Union[FlashProgress, FlashResult]


class FlashManager:
    def __init__(self, locator: FlashToolLocator, parser: Optional[ProgressParser] = None,
                 platform: Optional[str] = None) -> None:
        self.locator: FlashToolLocator = locator
        self.parser: ProgressParser = parser or ProgressParser()
        self.platform: str = platform or sys.platform

        # One live job per device, keyed by normalized port path.
        # The value stays None until the tool is spawned.
        self._active: Dict[str, Optional[Process]] = {}

    def _key(self, port: str) -> str:
        # /dev/tty.X and /dev/cu.X are the same device on macOS
        return normalize_port_path(port, self.platform)

    def is_flashing(self, port: str) -> bool:
        return self._key(port) in self._active

    def active_ports(self) -> List[str]:
        return sorted(self._active)

    def build_command(self, tool_path: str, port: str, images: List[FlashImage]) -> List[str]:
        """Builds the esptool command line for a set of images."""
        cmd: List[str] = [
            tool_path,
            "--port", port,
            "--baud", str(FLASH_BAUD),
            "--before", "no-reset",
            "--after", "no-reset",
            "write-flash",
        ]
        for image in images:
            cmd.extend([image.offset, image.path])
        return cmd

    def _reserve(self, port: str) -> str:
        key: str = self._key(port)
        if key in self._active:
            raise PortBusyError(port)
        self._active[key] = None
        return key

    async def flash(self, port: str, images: List[FlashImage]) -> AsyncGenerator[FlashEvent, None]:
        """Flashes images to the device on a port.

        Yields FlashProgress events in the order the tool reports them, then
        exactly one FlashResult. Raises PortBusyError before spawning anything
        if the port already has a job.
        """
        key: str = self._reserve(port)
        process: Optional[Process] = None
        try:
            try:
                tool_path: str = self.locator.resolve()
            except UnsupportedPlatformError as e:
                logger.error("Cannot flash %s: %s", port, e)
                yield FlashResult.failed(str(e))
                return

            if not images:
                yield FlashResult.failed("No firmware images were given")
                return
            for image in images:
                if not os.path.isfile(image.path):
                    yield FlashResult.failed(f"Firmware file not found: {image.path}")
                    return

            cmd: List[str] = self.build_command(tool_path, port, images)
            logger.info("Flashing %s: %s", port, " ".join(cmd))
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE
                )
            except OSError as e:
                logger.error("Failed to start flashing tool %s: %s", tool_path, e)
                yield FlashResult.failed(f"Failed to start flashing tool {tool_path}: {e}")
                return
            self._active[key] = process

            stderr_task = asyncio.ensure_future(self._read_stderr(process))
            last_percentage: Optional[int] = None
            async for line in self._read_lines(process):
                percentage: Optional[int] = self.parser.parse(line)
                if percentage is None:
                    logger.debug("[esptool] %s", line)
                    continue
                last_percentage = percentage
                yield FlashProgress(percentage)

            stderr: str = await stderr_task
            returncode: int = await process.wait()

            if returncode == 0:
                if last_percentage != 100:
                    yield FlashProgress(100)
                logger.info("Flashing %s completed", port)
                yield FlashResult.ok()
            else:
                reason: str = f"Flashing failed with exit code {returncode}."
                if stderr.strip():
                    reason += f" {stderr.strip()}"
                reason += f" {BOOTLOADER_HINT}"
                logger.error("Flashing %s failed: %s", port, reason)
                yield FlashResult.failed(reason)
        finally:
            if process is not None and process.returncode is None:
                # The consumer went away while the tool is still writing;
                # keep the port reserved until it exits.
                logger.warning("Flash job on %s abandoned while running; waiting for the tool to exit", port)
                asyncio.ensure_future(self._release_when_exited(key, process))
            else:
                self._active.pop(key, None)

    async def flash_device(self, port: str, images: List[FlashImage],
                           on_progress: Optional[Callable[[int], None]] = None) -> FlashResult:
        """Runs a flash job to completion and returns its result."""
        result: FlashResult = FlashResult.failed("Flashing tool produced no result")
        async for event in self.flash(port, images):
            if isinstance(event, FlashProgress):
                if on_progress:
                    on_progress(event.percentage)
            else:
                result = event
        return result

    def abort(self, port: str) -> bool:
        """Kills the flashing tool running on a port. Emergency use only."""
        process: Optional[Process] = self._active.get(self._key(port))
        if process is None or process.returncode is not None:
            return False
        logger.warning("Killing flashing tool on %s (pid %s)", port, process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            return False
        return True

    def stop_all(self) -> None:
        """Kills every running flashing tool. Called when the shell quits."""
        for port, process in list(self._active.items()):
            if process is None or process.returncode is not None:
                continue
            logger.info("Stopping flashing tool on %s...", port)
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def _read_lines(self, process: Process) -> AsyncGenerator[str, None]:
        if process.stdout is None:
            return
        buffer = ""
        while True:
            # Read in chunks so progress bars redrawn with \r are seen as they update
            chunk: bytes = await process.stdout.read(128)
            if not chunk:
                break
            buffer += chunk.decode(errors='replace')
            parts: List[str] = re.split(r"[\r\n]", buffer)
            buffer = parts.pop()
            for line in parts:
                if line.strip():
                    yield line
        if buffer.strip():
            yield buffer

    async def _read_stderr(self, process: Process) -> str:
        if process.stderr is None:
            return ""
        data: bytes = await process.stderr.read()
        return data.decode(errors='replace')

    async def _release_when_exited(self, key: str, process: Process) -> None:
        try:
            await process.wait()
        finally:
            if self._active.get(key) is process:
                self._active.pop(key, None)
