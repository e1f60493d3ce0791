import threading
import time

import pytest

from print_agent.escalation import EscalationEngine
from print_agent.models import OsState
from print_agent.printers.base import PrinterInfo, PrinterProvider, QueueJob, SpoolerRepair
from print_agent.registry import DeviceRegistry
from print_agent.strategies import LADDER, Strategy


class FakeProvider(PrinterProvider):
    """In-memory OS: printer listing, a print queue and a spooler service."""

    def __init__(self, printers=None):
        self.printers = list(printers or [])
        self.jobs: list[QueueJob] = []
        self.raw = []
        self.files = []
        self.running = True
        self.fail_listing = False
        self.cancel_fails = False
        self.restart_fails = False
        self.restarts = 0
        self.cancelled = []
        self.list_calls = 0

    def list_printers(self):
        if self.fail_listing:
            raise OSError("print service unavailable")
        return [PrinterInfo(**vars(p)) for p in self.printers]

    def _blocked(self, printer):
        return any(j.printer == printer and (j.deleting or j.error or j.blocked) for j in self.jobs)

    def print_raw(self, printer, data, timeout):
        if not self.running or self._blocked(printer):
            raise RuntimeError(f"spooler rejected job for {printer}")
        self.raw.append((printer, data))
        return f"RAW job accepted ({len(data)} bytes)"

    def print_file(self, printer, path, timeout):
        with open(path, "rb") as f:
            self.files.append((printer, f.read()))
        return f"lpr -P {printer}"

    def default_serial_ports(self):
        return ["/dev/ttyUSB0"]

    def list_jobs(self):
        self.list_calls += 1
        return list(self.jobs)

    def cancel_job(self, job):
        self.cancelled.append(job.key)
        if self.cancel_fails:
            raise PermissionError("access denied")
        self.jobs = [j for j in self.jobs if j.key != job.key]

    def spooler_running(self):
        return self.running

    def restart_spooler(self, clear_spool=True):
        self.restarts += 1
        if self.restart_fails:
            return SpoolerRepair(stopped=True, errors=["start: access denied"])
        purged = len(self.jobs)
        self.jobs = []
        self.running = True
        return SpoolerRepair(stopped=True, purged=purged, started=True)


class StubStrategy(Strategy):
    """Records every write as (printer, start, end) and fails on demand."""

    def __init__(self, name, fail=False, fail_for=(), delay=0.0, spans=None, timeout_ms=2000):
        super().__init__(timeout_ms)
        self.name = name
        self.fail = fail
        self.fail_for = set(fail_for)
        self.delay = delay
        self.spans = spans if spans is not None else []
        self.received = []
        self._lock = threading.Lock()

    def send(self, device, data, timeout):
        start = time.monotonic()
        if self.delay:
            time.sleep(self.delay)
        end = time.monotonic()
        with self._lock:
            self.spans.append((device.name, start, end))
            self.received.append((device.name, data))
        if self.fail or device.name in self.fail_for:
            raise ConnectionError(f"{self.name}: connection refused")
        return f"{self.name} delivered {len(data)} bytes"


def stub_ladder(fail=(), fail_for=(), delay=0.0, spans=None):
    """Full four-step ladder of stubs; ``fail`` names the steps that always fail."""
    spans = spans if spans is not None else []
    return {
        name: StubStrategy(name, fail=name in fail, fail_for=fail_for, delay=delay, spans=spans)
        for name in LADDER
    }


@pytest.fixture(autouse=True)
def _audit_to_tmp(tmp_path, monkeypatch):
    monkeypatch.setattr("print_agent.audit.AUDIT_LOG_PATH", str(tmp_path / "audit.jsonl"))


@pytest.fixture()
def provider():
    return FakeProvider([
        PrinterInfo(name="Generic-80mm", port="USB001", driver="Generic / Text Only",
                    is_default=True, state=OsState.READY),
        PrinterInfo(name="Kitchen-58", port="IP_192.168.1.50", driver="POS-58", state=OsState.READY),
        PrinterInfo(name="Bar-Printer", port="COM3", driver="EPSON TM-T20", state=OsState.READY),
    ])


@pytest.fixture()
def registry(provider):
    reg = DeviceRegistry(provider)
    reg.enumerate()
    return reg


@pytest.fixture()
def make_engine(registry):
    def _make(strategies, monitor=None):
        return EscalationEngine(registry, strategies, monitor=monitor)
    return _make
