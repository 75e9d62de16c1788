import asyncio
import logging
import sys
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from serial.tools import list_ports

logger = logging.getLogger(__name__)

# USB-to-serial bridges found on supported controller boards
KNOWN_VENDOR_IDS: Dict[str, str] = {
    "10C4": "Silicon Labs CP210x",
    "1A86": "WCH CH340",
    "303A": "Espressif",
    "067B": "Prolific",
}


@dataclass
class SerialPortRecord:
    path: str
    vendor_id: Optional[str]
    product_id: Optional[str]
    platform_path: str
    manufacturer: Optional[str] = None
    serial_number: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _hex_id(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return f"{value:04X}"


def normalize_port_path(path: str, platform: Optional[str] = None) -> str:
    """Rewrites a macOS blocking tty node to its non-blocking cu twin."""
    platform = platform or sys.platform
    if platform == "darwin" and path.startswith("/dev/tty."):
        return "/dev/cu." + path[len("/dev/tty."):]
    return path


class SerialManager:
    def __init__(self, platform: Optional[str] = None) -> None:
        self.platform: str = platform or sys.platform

    def _enumerate(self) -> List[Any]:
        return list(list_ports.comports())

    async def list_ports(self, filter_to_known_devices: bool = True) -> List[SerialPortRecord]:
        """Lists serial ports, by default only those behind a known controller USB bridge."""
        try:
            loop = asyncio.get_event_loop()
            ports: List[Any] = await loop.run_in_executor(None, self._enumerate)
        except Exception as e:
            logger.error("Error listing serial ports: %s", e)
            return []

        records: List[SerialPortRecord] = []
        for port in ports:
            vendor_id = _hex_id(port.vid)
            if filter_to_known_devices and vendor_id not in KNOWN_VENDOR_IDS:
                continue
            records.append(SerialPortRecord(
                path=port.device,
                vendor_id=vendor_id,
                product_id=_hex_id(port.pid),
                platform_path=normalize_port_path(port.device, self.platform),
                manufacturer=port.manufacturer,
                serial_number=port.serial_number,
                description=port.description,
            ))

        records.sort(key=lambda r: r.platform_path)
        logger.debug("Found %d serial port(s) (filtered=%s)", len(records), filter_to_known_devices)
        return records
