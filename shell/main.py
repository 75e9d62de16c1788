import os
import sys
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from shell.config import ShellSettings
from shell.dialogs import PICKER_FLAG, FirmwareDialog, picker_main
from shell.errors import DialogError, PortBusyError
from shell.flash_manager import FlashImage, FlashManager, FlashResult
from shell.serial_manager import SerialManager
from shell.supervisor import BackendSupervisor
from shell.tool_locator import FlashToolLocator
from shell.window_manager import FLASH_PROGRESS, OPEN_ABOUT_MODAL, ShellWindow, WindowManager

logger = logging.getLogger(__name__)

router = APIRouter()


class FlashRequest(BaseModel):
    port: str
    firmware_path: str
    bootloader_path: Optional[str] = None
    partitions_path: Optional[str] = None


def build_flash_images(req: FlashRequest, settings: ShellSettings) -> List[FlashImage]:
    """Maps the requested files to their flash offsets, lowest offset first."""
    images: List[FlashImage] = []
    if req.bootloader_path:
        images.append(FlashImage(settings.bootloader_offset, req.bootloader_path))
    if req.partitions_path:
        images.append(FlashImage(settings.partitions_offset, req.partitions_path))
    images.append(FlashImage(settings.firmware_offset, req.firmware_path))
    images.sort(key=lambda image: int(image.offset, 16))
    return images


def _get_window(request: Request, window_id: str) -> ShellWindow:
    window: Optional[ShellWindow] = request.app.state.windows.get(window_id)
    if window is None:
        raise HTTPException(status_code=404, detail=f"Window {window_id} not found")
    return window


@router.get("/api/status")
async def get_status(request: Request) -> Dict[str, Any]:
    state = request.app.state
    supervisor: BackendSupervisor = state.supervisor
    return {
        "message": "Lobster shell is running",
        "dev_mode": state.settings.is_dev,
        "backend": {
            "state": supervisor.state.value,
            "ready": supervisor.confirmed,
            "pid": supervisor.pid,
            "exit_code": supervisor.exit_code,
            "startup_failed": supervisor.startup_failed,
        },
        "flashing": state.flash_mgr.active_ports(),
    }


@router.post("/windows")
async def open_window(request: Request) -> Dict[str, str]:
    """Registers a freshly loaded UI document as a window."""
    window: ShellWindow = request.app.state.windows.open()
    return {"window_id": window.window_id}


@router.post("/windows/{window_id}/loaded")
async def window_loaded(window_id: str, request: Request) -> Dict[str, str]:
    window = _get_window(request, window_id)
    request.app.state.supervisor.window_loaded(window)
    return {"message": f"Window {window_id} loaded"}


@router.delete("/windows/{window_id}")
async def close_window(window_id: str, request: Request) -> Dict[str, str]:
    if not request.app.state.windows.close(window_id):
        raise HTTPException(status_code=404, detail=f"Window {window_id} not found")
    request.app.state.supervisor.window_closed(window_id)
    return {"message": f"Window {window_id} closed"}


@router.get("/windows/{window_id}/events")
async def window_events(window_id: str, request: Request) -> StreamingResponse:
    """Streams backend-ready, open-about-modal and flash-progress events as server-sent events."""
    window = _get_window(request, window_id)
    return StreamingResponse(window.stream(), media_type="text/event-stream")


@router.post("/menu/about")
async def open_about_modal(request: Request) -> Dict[str, str]:
    request.app.state.windows.broadcast(OPEN_ABOUT_MODAL)
    return {"message": "About dialog requested"}


@router.post("/dialogs/firmware")
async def open_firmware_dialog(request: Request) -> Dict[str, Optional[str]]:
    """Opens the native file picker and returns the selected firmware path."""
    try:
        path: Optional[str] = await request.app.state.dialog.open()
    except DialogError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"path": path}


@router.get("/serial/ports")
async def list_serial_ports(request: Request, filter_known: bool = True) -> List[Dict[str, Any]]:
    ports = await request.app.state.serial_mgr.list_ports(filter_to_known_devices=filter_known)
    return [p.to_dict() for p in ports]


@router.post("/flash")
async def flash_device(req: FlashRequest, request: Request) -> Dict[str, Optional[str]]:
    """Flashes the device on a port and returns once the flashing tool has exited."""
    state = request.app.state
    flash_mgr: FlashManager = state.flash_mgr
    windows: WindowManager = state.windows

    if flash_mgr.is_flashing(req.port):
        raise HTTPException(status_code=409, detail=f"A flash operation is already in progress on {req.port}")

    images: List[FlashImage] = build_flash_images(req, state.settings)

    def on_progress(percentage: int) -> None:
        windows.broadcast(FLASH_PROGRESS, {"port": req.port, "percentage": percentage})

    try:
        result: FlashResult = await flash_mgr.flash_device(req.port, images, on_progress)
    except PortBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.exception("Unexpected error while flashing %s", req.port)
        raise HTTPException(status_code=500, detail=f"Unexpected error while flashing {req.port}: {e}")

    if not result.success:
        raise HTTPException(status_code=500, detail=result.reason)
    return result.to_dict()


@router.post("/flash/abort")
async def abort_flash(port: str, request: Request) -> Dict[str, str]:
    """Kills the flashing tool on a port. The pending flash request then fails."""
    if not request.app.state.flash_mgr.abort(port):
        raise HTTPException(status_code=404, detail=f"No running flash operation on {port}")
    return {"message": f"Flash operation on {port} aborted"}


def create_app(settings: Optional[ShellSettings] = None,
               serial_mgr: Optional[SerialManager] = None,
               flash_mgr: Optional[FlashManager] = None,
               dialog: Optional[FirmwareDialog] = None) -> FastAPI:
    settings = settings or ShellSettings.from_env()
    windows = WindowManager()
    supervisor = BackendSupervisor(
        windows,
        command=settings.backend_command,
        ready_marker=settings.ready_marker,
        dev_mode=settings.is_dev,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await supervisor.start()
        try:
            yield
        finally:
            logger.info("Shell is quitting.")
            supervisor.stop()
            app.state.flash_mgr.stop_all()

    app = FastAPI(title="Lobster Shell", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.windows = windows
    app.state.supervisor = supervisor
    app.state.serial_mgr = serial_mgr or SerialManager()
    app.state.flash_mgr = flash_mgr or FlashManager(FlashToolLocator(settings.tools_dir))
    app.state.dialog = dialog or FirmwareDialog()
    app.include_router(router)

    # In dev mode the UI is served by the dev server instead
    if not settings.is_dev and os.path.isdir(settings.ui_dir):
        app.mount("/", StaticFiles(directory=settings.ui_dir, html=True), name="ui")

    return app


app = create_app()


def run() -> None:
    import uvicorn

    if len(sys.argv) > 1 and sys.argv[1] == PICKER_FLAG:
        picker_main(sys.argv[2:])
        return

    settings: ShellSettings = app.state.settings
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
