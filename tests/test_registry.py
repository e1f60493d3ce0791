import pytest

from print_agent.errors import DetectionFailure, PrinterFault
from print_agent.models import ConnectionType, DeviceStatus
from print_agent.registry import DeviceRegistry, classify_connection, detect_page_width


def test_enumerate_classifies_devices(provider):
    devices = {d.name: d for d in DeviceRegistry(provider).enumerate()}

    assert devices["Generic-80mm"].connection_type == ConnectionType.USB
    assert devices["Generic-80mm"].page_width == 80
    assert devices["Generic-80mm"].is_default
    assert devices["Kitchen-58"].connection_type == ConnectionType.NETWORK
    assert devices["Kitchen-58"].page_width == 58
    assert devices["Bar-Printer"].connection_type == ConnectionType.SERIAL
    assert devices["Bar-Printer"].page_width == 80  # TM- thermal default
    assert all(d.status == DeviceStatus.UNKNOWN for d in devices.values())


def test_absent_devices_are_kept_as_disconnected(provider):
    registry = DeviceRegistry(provider)
    registry.enumerate()

    provider.printers = [p for p in provider.printers if p.name != "Kitchen-58"]
    devices = {d.name: d for d in registry.enumerate()}

    assert "Kitchen-58" in devices
    assert devices["Kitchen-58"].status == DeviceStatus.DISCONNECTED
    assert registry.get("Kitchen-58").status == DeviceStatus.DISCONNECTED
    assert devices["Generic-80mm"].status == DeviceStatus.UNKNOWN

    # still there on the next pass too
    assert "Kitchen-58" in {d.name for d in registry.enumerate()}


def test_reappearing_device_leaves_disconnected(provider):
    registry = DeviceRegistry(provider)
    registry.enumerate()
    saved = provider.printers
    provider.printers = []
    registry.enumerate()
    provider.printers = saved

    assert registry.enumerate()[0].status == DeviceStatus.UNKNOWN


def test_communication_status_survives_enumeration(registry):
    registry.mark("Generic-80mm", DeviceStatus.CONNECTED, seen=True)
    registry.enumerate()
    assert registry.get("Generic-80mm").status == DeviceStatus.CONNECTED


def test_enumeration_failure_is_a_detection_error(provider):
    provider.fail_listing = True
    with pytest.raises(PrinterFault) as info:
        DeviceRegistry(provider).enumerate()

    assert isinstance(info.value.error, DetectionFailure)
    assert isinstance(info.value.error.cause, OSError)


def test_get_returns_a_copy(registry):
    device = registry.get("Generic-80mm")
    device.status = DeviceStatus.TESTING
    assert registry.get("Generic-80mm").status == DeviceStatus.UNKNOWN
    assert registry.get("nope") is None


@pytest.mark.parametrize("port,name,expected", [
    ("USB001", "", ConnectionType.USB),
    ("usb://EPSON/TM-T20", "", ConnectionType.USB),
    ("IP_10.0.0.7", "", ConnectionType.NETWORK),
    ("socket://192.168.1.9:9100", "", ConnectionType.NETWORK),
    (r"\\server\kitchen", "", ConnectionType.NETWORK),
    ("COM4:", "", ConnectionType.SERIAL),
    ("BTH:00:11:22", "", ConnectionType.BLUETOOTH),
    ("PORTPROMPT:", "Microsoft Print to PDF", ConnectionType.VIRTUAL),
    ("nul:", "", ConnectionType.VIRTUAL),
    ("LPT1:", "", ConnectionType.UNKNOWN),
])
def test_classify_connection(port, name, expected):
    assert classify_connection(port, name) == expected


def test_detect_page_width():
    assert detect_page_width("RP58 Printer") == 58
    assert detect_page_width("XP-80C") == 80
    assert detect_page_width("Receipt", default=58) == 80
    assert detect_page_width("Office Laser", default=58) == 58
