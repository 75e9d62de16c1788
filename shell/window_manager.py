import asyncio
import json
import logging
import uuid
from collections import deque
from typing import Any, AsyncGenerator, Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

PENDING_LIMIT = 100

BACKEND_READY = "backend-ready"
OPEN_ABOUT_MODAL = "open-about-modal"
FLASH_PROGRESS = "flash-progress"

EventCallback = Callable[[str, Any], None]


class ShellWindow:
    """A UI document attached to the shell, with its load state and event listeners."""

    def __init__(self, window_id: str) -> None:
        self.window_id: str = window_id
        self.loaded: bool = False
        self._listeners: List[EventCallback] = []
        # Events sent before anyone listens, handed to the first subscriber
        self._pending: Deque[Tuple[str, Any]] = deque(maxlen=PENDING_LIMIT)

    def mark_loaded(self) -> bool:
        """Records the first load. Returns False if the window was already loaded."""
        if self.loaded:
            return False
        self.loaded = True
        return True

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Registers a listener for all events sent to this window; returns its unsubscribe function."""
        self._listeners.append(callback)
        while self._pending:
            event, payload = self._pending.popleft()
            self._notify(callback, event, payload)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def send(self, event: str, payload: Any = None) -> None:
        if not self._listeners:
            self._pending.append((event, payload))
            return
        for callback in list(self._listeners):
            self._notify(callback, event, payload)

    def _notify(self, callback: EventCallback, event: str, payload: Any) -> None:
        try:
            callback(event, payload)
        except Exception:
            logger.exception("Listener for %s on window %s failed", event, self.window_id)

    async def stream(self) -> AsyncGenerator[str, None]:
        """Server-sent event feed of this window's events."""
        queue: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue()
        unsubscribe = self.subscribe(lambda event, payload: queue.put_nowait((event, payload)))
        try:
            # Comment line so clients see the stream open immediately
            yield ": connected\n\n"
            while True:
                event, payload = await queue.get()
                yield f"event: {event}\ndata: {json.dumps(payload)}\n\n"
        finally:
            unsubscribe()


class WindowManager:
    def __init__(self) -> None:
        self._windows: Dict[str, ShellWindow] = {}

    def open(self, window_id: Optional[str] = None) -> ShellWindow:
        window_id = window_id or uuid.uuid4().hex
        window = self._windows.get(window_id)
        if window is None:
            window = ShellWindow(window_id)
            self._windows[window_id] = window
            logger.info("Window %s opened", window_id)
        return window

    def get(self, window_id: str) -> Optional[ShellWindow]:
        return self._windows.get(window_id)

    def close(self, window_id: str) -> bool:
        window = self._windows.pop(window_id, None)
        if window is not None:
            logger.info("Window %s closed", window_id)
        return window is not None

    def windows(self) -> List[ShellWindow]:
        return list(self._windows.values())

    def broadcast(self, event: str, payload: Any = None) -> None:
        for window in self.windows():
            window.send(event, payload)
