"""
Device registry.

Re-queries the OS printer listing on every ``enumerate()`` call. Devices the OS
stops reporting are marked ``disconnected`` but kept, so job targeting and the
settings UI stay stable across transient enumeration gaps.
"""
import logging
import re
import threading
import time
from typing import Optional

from print_agent.env import DEFAULT_PAGE_WIDTH
from print_agent.errors import DetectionFailure, PrinterFault
from print_agent.models import ConnectionType, DeviceStatus, PrinterDevice
from print_agent.printers.base import PrinterInfo, PrinterProvider

logger = logging.getLogger(__name__)

_IPV4 = re.compile(r"\b\d{1,3}(\.\d{1,3}){3}\b")
_COM = re.compile(r"^com\d+:?$")

_THERMAL_HINTS = ("thermal", "receipt", "pos", "tm-", "rp-", "tsp", "xp-")


def classify_connection(port: str, name: str = "") -> ConnectionType:
    p = (port or "").lower()
    n = (name or "").lower()

    if p.startswith("usb") or "usb://" in p:
        return ConnectionType.USB
    if p.startswith(("ip_", "tcp_", "\\\\", "socket://", "ipp://", "ipps://", "lpd://", "http")) \
            or _IPV4.search(p):
        return ConnectionType.NETWORK
    if _COM.match(p) or "serial" in p or p.startswith("/dev/tty"):
        return ConnectionType.SERIAL
    if p.startswith(("bluetooth", "bt_", "bth:")) or "bluetooth" in n:
        return ConnectionType.BLUETOOTH
    if p.startswith(("file:", "nul:", "portprompt:")) or "microsoft" in n or "pdf" in n \
            or "documents" in p:
        return ConnectionType.VIRTUAL
    return ConnectionType.UNKNOWN


def detect_page_width(name: str, driver: str = "", default: int = DEFAULT_PAGE_WIDTH) -> int:
    text = f"{name} {driver}".lower()
    if "58" in text:
        return 58
    if "80" in text:
        return 80
    if any(h in text for h in _THERMAL_HINTS):
        return 80
    return default


class DeviceRegistry:
    def __init__(self, provider: PrinterProvider, default_page_width: int = DEFAULT_PAGE_WIDTH):
        self.provider = provider
        self.default_page_width = default_page_width
        self._devices: dict[str, PrinterDevice] = {}
        self._lock = threading.Lock()

    def _to_device(self, info: PrinterInfo, previous: Optional[PrinterDevice]) -> PrinterDevice:
        device = PrinterDevice(
            name=info.name,
            display_name=info.description or info.name,
            connection_type=classify_connection(info.port, info.name),
            is_default=info.is_default,
            page_width=detect_page_width(info.name, info.driver, self.default_page_width),
            port=info.port or None,
            driver=info.driver or None,
            os_state=info.state,
        )
        if previous is not None and previous.status != DeviceStatus.DISCONNECTED:
            # communication health is owned by the engine / diagnostic runner
            device.status = previous.status
        return device

    def enumerate(self) -> list[PrinterDevice]:
        try:
            infos = self.provider.list_printers()
        except Exception as e:
            logger.warning("printer enumeration failed: %s", e)
            raise PrinterFault(DetectionFailure(cause=e)) from e

        now = time.time()
        with self._lock:
            seen = set()
            for info in infos:
                device = self._to_device(info, self._devices.get(info.name))
                device.last_seen = now
                self._devices[info.name] = device
                seen.add(info.name)

            for name, device in self._devices.items():
                if name not in seen and device.status != DeviceStatus.DISCONNECTED:
                    logger.info("printer %s no longer reported by the OS", name)
                    device.status = DeviceStatus.DISCONNECTED

            return [d.model_copy() for d in self._devices.values()]

    def get(self, name: str) -> Optional[PrinterDevice]:
        with self._lock:
            device = self._devices.get(name)
            return device.model_copy() if device else None

    def mark(self, name: str, status: DeviceStatus, seen: bool = False):
        with self._lock:
            device = self._devices.get(name)
            if device is None:
                return
            device.status = status
            if seen:
                device.last_seen = time.time()
