import pytest
import sys
from unittest.mock import MagicMock, patch, AsyncMock
from fastapi.testclient import TestClient
from pydantic import ValidationError

from shell.config import ShellSettings
from shell.errors import DialogError, PortBusyError
from shell.flash_manager import FlashImage, FlashResult
from shell.dialogs import PICKER_FLAG
from shell.main import FlashRequest, build_flash_images, create_app, run
from shell.serial_manager import SerialPortRecord
from shell.supervisor import BackendSupervisor
from shell.window_manager import BACKEND_READY, FLASH_PROGRESS, OPEN_ABOUT_MODAL


@pytest.fixture
def settings(tmp_path):
    return ShellSettings(dev_server_url="http://localhost:5173", ui_dir=str(tmp_path / "ui"))


@pytest.fixture
def serial_mgr():
    mgr = MagicMock()
    mgr.list_ports = AsyncMock(return_value=[
        SerialPortRecord(path="/dev/tty.usbserial-0001", vendor_id="10C4", product_id="EA60",
                         platform_path="/dev/cu.usbserial-0001", manufacturer="Silicon Labs"),
    ])
    return mgr


@pytest.fixture
def flash_mgr():
    mgr = MagicMock()
    mgr.is_flashing.return_value = False
    mgr.active_ports.return_value = []
    return mgr


@pytest.fixture
def dialog():
    dlg = MagicMock()
    dlg.open = AsyncMock(return_value="/home/user/firmware.bin")
    return dlg


@pytest.fixture
def app(settings, serial_mgr, flash_mgr, dialog):
    return create_app(settings, serial_mgr=serial_mgr, flash_mgr=flash_mgr, dialog=dialog)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def open_window(client, app):
    window_id = client.post("/windows").json()["window_id"]
    window = app.state.windows.get(window_id)
    events = []
    window.subscribe(lambda event, payload: events.append((event, payload)))
    return window_id, events


def test_status(client):
    data = client.get("/api/status").json()
    assert data["dev_mode"] is True
    assert data["backend"]["state"] == "running"
    assert data["backend"]["ready"] is True
    assert data["flashing"] == []


def test_window_gets_ready_after_load(client, app):
    window_id, events = open_window(client, app)
    assert events == []

    assert client.post(f"/windows/{window_id}/loaded").status_code == 200
    assert client.post(f"/windows/{window_id}/loaded").status_code == 200
    assert events == [(BACKEND_READY, None)]


def test_unknown_window(client):
    assert client.post("/windows/nope/loaded").status_code == 404
    assert client.get("/windows/nope/events").status_code == 404
    assert client.delete("/windows/nope").status_code == 404


def test_close_window(client, app):
    window_id, _ = open_window(client, app)
    client.post(f"/windows/{window_id}/loaded")
    assert window_id in app.state.supervisor._delivered
    assert client.delete(f"/windows/{window_id}").status_code == 200
    assert app.state.windows.get(window_id) is None
    assert window_id not in app.state.supervisor._delivered


def test_about_menu_is_forwarded(client, app):
    _, events = open_window(client, app)
    client.post("/menu/about")
    assert events == [(OPEN_ABOUT_MODAL, None)]


def test_list_serial_ports(client, serial_mgr):
    ports = client.get("/serial/ports").json()
    assert ports[0]["platform_path"] == "/dev/cu.usbserial-0001"
    assert ports[0]["vendor_id"] == "10C4"
    serial_mgr.list_ports.assert_awaited_with(filter_to_known_devices=True)

    client.get("/serial/ports", params={"filter_known": "false"})
    serial_mgr.list_ports.assert_awaited_with(filter_to_known_devices=False)


def test_firmware_dialog(client, dialog):
    assert client.post("/dialogs/firmware").json() == {"path": "/home/user/firmware.bin"}

    dialog.open.return_value = None
    assert client.post("/dialogs/firmware").json() == {"path": None}

    dialog.open.side_effect = DialogError("Could not open file dialog: no display")
    response = client.post("/dialogs/firmware")
    assert response.status_code == 500
    assert "no display" in response.json()["detail"]


def test_flash_success_broadcasts_progress(client, app, flash_mgr):
    _, events = open_window(client, app)

    async def fake_flash(port, images, on_progress):
        on_progress(50)
        on_progress(100)
        return FlashResult.ok()

    flash_mgr.flash_device = AsyncMock(side_effect=fake_flash)
    response = client.post("/flash", json={
        "port": "/dev/cu.usbserial-0001",
        "firmware_path": "/fw/app.bin",
        "bootloader_path": "/fw/bootloader.bin",
        "partitions_path": "/fw/partitions.bin",
    })

    assert response.status_code == 200
    assert response.json() == {"status": "success", "reason": None}
    port, images = flash_mgr.flash_device.call_args[0][:2]
    assert port == "/dev/cu.usbserial-0001"
    assert images == [
        FlashImage("0x1000", "/fw/bootloader.bin"),
        FlashImage("0x8000", "/fw/partitions.bin"),
        FlashImage("0x10000", "/fw/app.bin"),
    ]
    assert events == [
        (FLASH_PROGRESS, {"port": "/dev/cu.usbserial-0001", "percentage": 50}),
        (FLASH_PROGRESS, {"port": "/dev/cu.usbserial-0001", "percentage": 100}),
    ]


def test_flash_failure_carries_reason(client, flash_mgr):
    flash_mgr.flash_device = AsyncMock(return_value=FlashResult.failed("Flashing failed with exit code 2. timed out"))
    response = client.post("/flash", json={"port": "COM3", "firmware_path": "C:/fw/app.bin"})
    assert response.status_code == 500
    assert "exit code 2" in response.json()["detail"]
    assert "timed out" in response.json()["detail"]


def test_flash_busy_port_is_rejected(client, flash_mgr):
    flash_mgr.is_flashing.return_value = True
    flash_mgr.flash_device = AsyncMock()
    response = client.post("/flash", json={"port": "COM3", "firmware_path": "C:/fw/app.bin"})
    assert response.status_code == 409
    flash_mgr.flash_device.assert_not_called()


def test_flash_busy_race_is_rejected(client, flash_mgr):
    flash_mgr.flash_device = AsyncMock(side_effect=PortBusyError("COM3"))
    response = client.post("/flash", json={"port": "COM3", "firmware_path": "C:/fw/app.bin"})
    assert response.status_code == 409
    assert "COM3" in response.json()["detail"]


def test_abort_flash(client, flash_mgr):
    flash_mgr.abort.return_value = False
    assert client.post("/flash/abort", params={"port": "COM3"}).status_code == 404
    flash_mgr.abort.return_value = True
    assert client.post("/flash/abort", params={"port": "COM3"}).status_code == 200
    flash_mgr.abort.assert_called_with("COM3")


def test_shutdown_stops_backend_and_flashing_tools(settings, serial_mgr, flash_mgr, dialog):
    with patch.object(BackendSupervisor, "stop") as stop:
        app = create_app(settings, serial_mgr=serial_mgr, flash_mgr=flash_mgr, dialog=dialog)
        with TestClient(app):
            stop.assert_not_called()
            flash_mgr.stop_all.assert_not_called()
        stop.assert_called_once()
        flash_mgr.stop_all.assert_called_once()


def test_build_flash_images_firmware_only():
    settings = ShellSettings(firmware_offset="0x0")
    images = build_flash_images(FlashRequest(port="COM3", firmware_path="app.bin"), settings)
    assert images == [FlashImage("0x0", "app.bin")]


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("LOBSTER_DEV_SERVER_URL", "http://localhost:5173")
    monkeypatch.setenv("LOBSTER_BACKEND_CMD", "node /opt/lobster/backend/index.cjs --port 3001")
    monkeypatch.setenv("LOBSTER_PORT", "9000")
    monkeypatch.setenv("LOBSTER_LOG_LEVEL", "debug")
    settings = ShellSettings.from_env()
    assert settings.is_dev
    assert settings.backend_command == ["node", "/opt/lobster/backend/index.cjs", "--port", "3001"]
    assert settings.port == 9000
    assert settings.log_level == "DEBUG"

    monkeypatch.delenv("LOBSTER_DEV_SERVER_URL")
    assert not ShellSettings.from_env().is_dev


@pytest.mark.parametrize("offset", ["zz", "0x", "-0x10"])
def test_malformed_offset_is_rejected(monkeypatch, offset):
    with pytest.raises(ValidationError):
        ShellSettings(firmware_offset=offset)

    monkeypatch.setenv("LOBSTER_BOOTLOADER_OFFSET", offset)
    with pytest.raises(ValidationError):
        ShellSettings.from_env()


def test_run_shows_picker_when_asked(monkeypatch):
    monkeypatch.setattr(sys, "argv", ["lobster-shell", PICKER_FLAG, "Pick firmware"])
    with patch("shell.main.picker_main") as picker, patch("uvicorn.run") as serve:
        run()
    picker.assert_called_once_with(["Pick firmware"])
    serve.assert_not_called()
