"""
Communication strategies and ladder presets.

Each strategy delivers an already encoded job over one channel. The blocking
``send()`` runs in a worker thread bounded by ``asyncio.wait_for``; any
exception is converted into a PrinterError before it leaves ``attempt()``.
A write that outlives its timeout is still awaited before ``attempt()``
returns, so the next step never writes to the device alongside it.
"""
import asyncio
import glob
import logging
import os
import re
import tempfile
from dataclasses import dataclass

from print_agent.env import (
    SERIAL_BAUD,
    SERIAL_PORTS,
    SERIAL_REQUIRE_STATUS,
    SERIAL_TIMEOUT_MS,
    SHELL_TIMEOUT_MS,
    SPOOL_TIMEOUT_MS,
    USB_PRODUCT_ID,
    USB_TIMEOUT_MS,
    USB_VENDOR_ID,
)
from print_agent.errors import TimeoutFailure, classify_exception
from print_agent.escpos import STATUS_REQUEST
from print_agent.models import JobType, MethodOutcome, PrinterDevice
from print_agent.printers.base import PrinterProvider

logger = logging.getLogger(__name__)

USB_PRINTER_CLASS = 7
_COM_PORT = re.compile(r"^(COM\d+|/dev/tty\S+|/dev/serial\S*)", re.IGNORECASE)


class Strategy:
    name = "strategy"
    default_timeout_ms = 10000

    def __init__(self, timeout_ms=None):
        self.timeout_ms = timeout_ms or self.default_timeout_ms

    def send(self, device: PrinterDevice, data: bytes, timeout: float) -> str:
        """Blocking delivery; returns operator-facing details."""
        raise NotImplementedError

    async def _drain(self, write: asyncio.Future, device: PrinterDevice):
        # a thread cannot be killed: hold the device until the late write ends
        try:
            await write
        except Exception as e:
            logger.info("late %s write on %s ended with: %s", self.name, device.name, e)
        else:
            logger.info("late %s write on %s finished after its timeout", self.name, device.name)

    async def attempt(self, device: PrinterDevice, data: bytes, timeout_ms=None, attempt_count=1):
        timeout_ms = timeout_ms or self.timeout_ms
        seconds = timeout_ms / 1000
        write = asyncio.ensure_future(asyncio.to_thread(self.send, device, data, seconds))
        try:
            details = await asyncio.wait_for(asyncio.shield(write), seconds)
        except asyncio.TimeoutError:
            logger.warning("%s on %s timed out after %d ms", self.name, device.name, timeout_ms)
            await self._drain(write, device)
            return TimeoutFailure(device=device.name, timeout_ms=timeout_ms, operation=self.name)
        except Exception as e:
            logger.warning("%s on %s failed: %s", self.name, device.name, e)
            return classify_exception(
                e,
                device=device.name,
                operation=self.name,
                connection_type=device.connection_type.value,
                attempt_count=attempt_count,
                timeout_ms=timeout_ms,
                method=self.name,
            )
        return MethodOutcome(method_used=self.name, details=details or "")


class SpoolStrategy(Strategy):
    """RAW job handed to the OS print spooler by printer name."""
    name = "os-spool"
    default_timeout_ms = SPOOL_TIMEOUT_MS

    def __init__(self, provider: PrinterProvider, timeout_ms=None):
        super().__init__(timeout_ms)
        self.provider = provider

    def send(self, device, data, timeout):
        return self.provider.print_raw(device.name, data, timeout)


class UsbStrategy(Strategy):
    """Bulk OUT write to a USB printer-class interface, bypassing the OS driver."""
    name = "direct-usb"
    default_timeout_ms = USB_TIMEOUT_MS

    def __init__(self, vendor_id=USB_VENDOR_ID, product_id=USB_PRODUCT_ID, timeout_ms=None):
        super().__init__(timeout_ms)
        self.vendor_id = vendor_id
        self.product_id = product_id

    def _find(self):
        import usb.core
        import usb.util

        if self.vendor_id and self.product_id:
            return usb.core.find(idVendor=self.vendor_id, idProduct=self.product_id)

        def is_printer(dev):
            for cfg in dev:
                if usb.util.find_descriptor(cfg, bInterfaceClass=USB_PRINTER_CLASS) is not None:
                    return True
            return False

        return usb.core.find(custom_match=is_printer)

    def _write_usb(self, dev, data, timeout):
        import usb.core
        import usb.util

        try:
            if dev.is_kernel_driver_active(0):
                dev.detach_kernel_driver(0)
        except (NotImplementedError, usb.core.USBError):
            pass  # no kernel driver concept on Windows / macOS

        try:
            dev.set_configuration()
        except usb.core.USBError:
            pass  # already configured

        cfg = dev.get_active_configuration()
        intf = usb.util.find_descriptor(cfg, bInterfaceClass=USB_PRINTER_CLASS)
        if intf is None:
            intf = cfg[(0, 0)]
        ep_out = usb.util.find_descriptor(
            intf,
            custom_match=lambda e: usb.util.endpoint_direction(e.bEndpointAddress) == usb.util.ENDPOINT_OUT,
        )
        if ep_out is None:
            raise ConnectionError("USB printer has no bulk OUT endpoint")
        try:
            written = ep_out.write(data, timeout=int(timeout * 1000))
        finally:
            usb.util.dispose_resources(dev)
        if written != len(data):
            raise ConnectionError(f"USB write incomplete: {written} of {len(data)} bytes")
        return f"{written} bytes to USB {dev.idVendor:04x}:{dev.idProduct:04x} ep 0x{ep_out.bEndpointAddress:02x}"

    def _write_lp_node(self, data):
        nodes = sorted(glob.glob("/dev/usb/lp*"))
        if not nodes:
            return None
        with open(nodes[0], "wb") as f:
            f.write(data)
            f.flush()
        return f"{len(data)} bytes to {nodes[0]}"

    def send(self, device, data, timeout):
        import usb.core

        try:
            dev = self._find()
        except usb.core.NoBackendError:
            # libusb missing: the usblp node still works on Linux
            details = self._write_lp_node(data)
            if details is None:
                raise
            return details

        if dev is not None:
            return self._write_usb(dev, data, timeout)

        details = self._write_lp_node(data)
        if details is None:
            raise ConnectionError("no raw USB printer endpoint found")
        return details


class SerialStrategy(Strategy):
    """Tries a bounded list of serial ports and writes to the first that answers."""
    name = "serial"
    default_timeout_ms = SERIAL_TIMEOUT_MS

    def __init__(self, provider: PrinterProvider, ports=None, baud=SERIAL_BAUD,
                 require_status=SERIAL_REQUIRE_STATUS, timeout_ms=None):
        super().__init__(timeout_ms)
        self.provider = provider
        self.ports = ports if ports is not None else SERIAL_PORTS
        self.baud = baud
        self.require_status = require_status

    def candidate_ports(self, device: PrinterDevice) -> list[str]:
        ports = []
        if device.port and _COM_PORT.match(device.port):
            ports.append(device.port.rstrip(":"))
        ports.extend(self.ports or self.provider.default_serial_ports())
        return list(dict.fromkeys(ports))

    def send(self, device, data, timeout):
        import serial

        tried = []
        per_port = max(min(timeout / 4, 1.0), 0.1)
        for port in self.candidate_ports(device):
            try:
                with serial.Serial(port, self.baud, timeout=per_port, write_timeout=timeout) as ser:
                    if self.require_status:
                        ser.reset_input_buffer()
                        ser.write(STATUS_REQUEST)
                        ser.flush()
                        if not ser.read(1):
                            tried.append(f"{port}: no status answer")
                            continue
                    ser.write(data)
                    ser.flush()
                    return f"{len(data)} bytes to {port} at {self.baud} baud"
            except serial.SerialException as e:
                tried.append(f"{port}: {e}")
        raise ConnectionError("no serial port answered (" + "; ".join(tried) + ")")


class ShellStrategy(Strategy):
    """Last resort: OS print command with explicit printer targeting."""
    name = "shell"
    default_timeout_ms = SHELL_TIMEOUT_MS

    def __init__(self, provider: PrinterProvider, timeout_ms=None):
        super().__init__(timeout_ms)
        self.provider = provider

    def send(self, device, data, timeout):
        fd, path = tempfile.mkstemp(prefix="pos-print-", suffix=".prn")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            return self.provider.print_file(device.name, path, timeout)
        finally:
            try:
                os.unlink(path)
            except OSError:
                pass


LADDER = ("os-spool", "direct-usb", "serial", "shell")


def default_strategies(provider: PrinterProvider) -> dict:
    return {
        "os-spool": SpoolStrategy(provider),
        "direct-usb": UsbStrategy(),
        "serial": SerialStrategy(provider),
        "shell": ShellStrategy(provider),
    }


# -----------------------------
# Ladder presets
# -----------------------------
@dataclass(frozen=True)
class LadderPreset:
    strategies: tuple
    payload: str = "job"  # job | diagnostic | direct-test
    inject_cut: bool = False
    skip_status_check: bool = False
    repair_spooler_first: bool = False
    mark_testing: bool = False


PRESETS = {
    JobType.RECEIPT: LadderPreset(LADDER),
    JobType.KITCHEN: LadderPreset(LADDER),
    JobType.BAR: LadderPreset(LADDER),
    JobType.DIAGNOSTIC: LadderPreset(("os-spool",), payload="diagnostic", mark_testing=True),
    JobType.DIRECT_TEST: LadderPreset(("direct-usb",), payload="direct-test", skip_status_check=True),
    JobType.ULTIMATE_THERMAL: LadderPreset(("os-spool", "shell"), inject_cut=True, repair_spooler_first=True),
    JobType.HYBRID_THERMAL: LadderPreset(("os-spool", "direct-usb"), inject_cut=True),
    JobType.THERMAL_LIBRARY: LadderPreset(("os-spool",), inject_cut=True),
}
