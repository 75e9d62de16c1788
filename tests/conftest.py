import pytest
import sys
import os
import asyncio
from typing import List, Optional

# Add the repo root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))


class FakeProcess:
    """Stands in for asyncio.subprocess.Process with real stream readers.

    Must be created inside a running event loop.
    """

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0, close: bool = True) -> None:
        self.pid = 4242
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.terminated = False
        self.killed = False
        self._exit_code = returncode
        self._exited = asyncio.Event()
        if stdout:
            self.stdout.feed_data(stdout)
        if stderr:
            self.stderr.feed_data(stderr)
        if close:
            self.exit(returncode)

    def write_stdout(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def exit(self, code: Optional[int] = None) -> None:
        if self._exited.is_set():
            return
        if code is not None:
            self._exit_code = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        self.returncode = self._exit_code
        return self.returncode

    async def communicate(self):
        stdout = await self.stdout.read()
        stderr = await self.stderr.read()
        await self.wait()
        return stdout, stderr

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


async def settle(rounds: int = 20) -> None:
    """Lets pending tasks on the loop run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_process():
    return FakeProcess


@pytest.fixture
def firmware_files(tmp_path) -> List[str]:
    paths = []
    for name in ("bootloader.bin", "partitions.bin", "firmware.bin"):
        path = tmp_path / name
        path.write_bytes(b"\xe9" + b"\x00" * 15)
        paths.append(str(path))
    return paths
