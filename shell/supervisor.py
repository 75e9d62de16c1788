import asyncio
import codecs
import enum
import logging
from typing import AsyncGenerator, List, Optional, Set
from asyncio.subprocess import Process

from shell.window_manager import BACKEND_READY, ShellWindow, WindowManager

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
# Longer lines are logged in pieces
MAX_LINE_LENGTH = 64 * 1024


class BackendState(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    RUNNING = "running"
    EXITED = "exited"


class BackendSupervisor:
    """Owns the backend child process and the per-window "backend-ready" signal.

    A window receives the signal once both of these have happened, in any order:
      - the window reported that its document finished loading;
      - the backend printed the readiness marker (immediately in dev mode).
    """

    def __init__(self, windows: WindowManager, command: List[str], ready_marker: str, dev_mode: bool = False) -> None:
        self.windows: WindowManager = windows
        self.command: List[str] = command
        self.ready_marker: str = ready_marker
        self.dev_mode: bool = dev_mode

        self.state: BackendState = BackendState.NONE
        self.confirmed: bool = False
        self.exit_code: Optional[int] = None
        self.startup_failed: bool = False

        self._process: Optional[Process] = None
        self._monitor_task: Optional["asyncio.Task[None]"] = None
        # Windows that already got the signal for the current backend start
        self._delivered: Set[str] = set()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def start(self) -> None:
        """Starts the backend, or adopts the externally managed one in dev mode."""
        if self.state != BackendState.NONE:
            logger.warning("Backend already started (state: %s); not starting again", self.state.value)
            return

        if self.dev_mode:
            logger.info("Dev mode: not starting backend (already running).")
            self.state = BackendState.RUNNING
            self._confirm()
            return

        logger.info("Starting backend: %s", " ".join(self.command))
        self.state = BackendState.PENDING
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            self.state = BackendState.EXITED
            self.startup_failed = True
            logger.error("Backend failed to start: %s", e)
            return

        self._monitor_task = asyncio.ensure_future(self._monitor(self._process))

    def window_loaded(self, window: ShellWindow) -> None:
        """Called when a window's document has finished its first load."""
        if not window.mark_loaded():
            return
        logger.debug("Window %s loaded", window.window_id)
        if self.confirmed:
            self._deliver(window)

    def window_closed(self, window_id: str) -> None:
        self._delivered.discard(window_id)

    def stop(self) -> None:
        """Asks the backend to terminate. Does not wait for it to exit."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        logger.info("Stopping backend...")
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    async def wait_closed(self) -> None:
        if self._monitor_task is not None:
            await self._monitor_task

    def _confirm(self) -> None:
        self.confirmed = True
        for window in self.windows.windows():
            if window.loaded:
                self._deliver(window)

    def _deliver(self, window: ShellWindow) -> None:
        if window.window_id in self._delivered:
            return
        self._delivered.add(window.window_id)
        logger.info("Notifying window %s that the backend is ready", window.window_id)
        window.send(BACKEND_READY)

    async def _monitor(self, process: Process) -> None:
        try:
            await asyncio.gather(self._read_stdout(process), self._read_stderr(process))
        except Exception:
            logger.exception("Error reading backend output")
        code: int = await process.wait()
        self.exit_code = code
        self.state = BackendState.EXITED
        if not self.confirmed:
            self.startup_failed = True
            logger.error("Backend exited with code %s before reporting ready; it will not be restarted", code)
        else:
            logger.warning("Backend exited with code %s", code)

    async def _read_lines(self, stream: asyncio.StreamReader, overlap: int = 0) -> AsyncGenerator[str, None]:
        # Chunked reads: readline() fails on lines longer than the stream limit.
        # An overlong line is passed on in pieces that share `overlap` characters,
        # so a marker up to `overlap` + 1 characters long is always whole in one piece.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            chunk: bytes = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            buffer += decoder.decode(chunk)
            parts: List[str] = buffer.split("\n")
            buffer = parts.pop()
            for line in parts:
                yield line
            if len(buffer) > MAX_LINE_LENGTH:
                yield buffer
                buffer = buffer[len(buffer) - overlap:] if overlap else ""
        buffer += decoder.decode(b"", final=True)
        if buffer:
            yield buffer

    async def _read_stdout(self, process: Process) -> None:
        if process.stdout is None:
            return
        async for line in self._read_lines(process.stdout, overlap=len(self.ready_marker) - 1):
            output: str = line.rstrip()
            logger.info("[Backend]: %s", output)
            if not self.confirmed and self.ready_marker in output:
                logger.info("Detected backend is ready")
                self.state = BackendState.RUNNING
                self._confirm()

    async def _read_stderr(self, process: Process) -> None:
        if process.stderr is None:
            return
        async for line in self._read_lines(process.stderr):
            logger.error("[Backend ERR]: %s", line.rstrip())
