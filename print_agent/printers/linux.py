import glob
import logging
import re
import subprocess
import time
from datetime import datetime

from print_agent.models import OsState
from print_agent.printers.base import PrinterInfo, PrinterProvider, QueueJob, SpoolerRepair

logger = logging.getLogger(__name__)

# "printer Kitchen-58 is idle.  enabled since ..."
_PRINTER_LINE = re.compile(r"^printer (\S+) (.*)$")
# "device for Kitchen-58: usb://POS/58mm?serial=1"
_DEVICE_LINE = re.compile(r"^device for (\S+): (\S+)")
# "Kitchen-58-12  root  1024  Sat 18 Oct 2025 10:01:02 AM UTC"
_JOB_LINE = re.compile(r"^(\S+)-(\d+)\s+\S+\s+\d+\s+(.+)$")

_DATE_FORMATS = ("%a %d %b %Y %I:%M:%S %p %Z", "%a %b %d %H:%M:%S %Y", "%a %d %b %Y %H:%M:%S %Z")


def _state_from(text: str) -> OsState:
    text = text.lower()
    if "disabled" in text:
        return OsState.PAUSED
    if "offline" in text or "not connected" in text:
        return OsState.OFFLINE
    if "paper" in text and ("out" in text or "empty" in text):
        return OsState.PAPER_OUT
    if "jam" in text:
        return OsState.PAPER_JAM
    if "idle" in text or "printing" in text:
        return OsState.READY
    return OsState.UNKNOWN


def _parse_submitted(text: str):
    text = text.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).timestamp()
        except ValueError:
            continue
    return None


def _run(args, timeout=10, input=None):
    return subprocess.run(args, capture_output=True, timeout=timeout, input=input)


class LinuxPrinterProvider(PrinterProvider):
    """CUPS back-end, used on Linux and macOS."""

    def list_printers(self):
        out = subprocess.check_output(["lpstat", "-p", "-d"], timeout=10).decode(errors="replace")
        default = None
        printers = {}
        for line in out.splitlines():
            m = _PRINTER_LINE.match(line)
            if m:
                printers[m.group(1)] = PrinterInfo(name=m.group(1), state=_state_from(m.group(2)))
            elif line.startswith("system default destination:"):
                default = line.split(":", 1)[1].strip()

        # device URIs; some CUPS builds exit non-zero when a queue has none
        dev = _run(["lpstat", "-v"])
        for line in dev.stdout.decode(errors="replace").splitlines():
            m = _DEVICE_LINE.match(line)
            if m and m.group(1).rstrip(":") in printers:
                printers[m.group(1).rstrip(":")].port = m.group(2)

        for info in printers.values():
            info.is_default = info.name == default
        return list(printers.values())

    def print_raw(self, printer, data: bytes, timeout: float):
        p = _run(["lp", "-d", printer, "-o", "raw"], timeout=timeout, input=data)
        if p.returncode != 0:
            raise RuntimeError(f"lp failed: {p.stderr.decode(errors='replace').strip()}")
        return p.stdout.decode(errors="replace").strip() or "job accepted by CUPS"

    def print_file(self, printer, path: str, timeout: float):
        p = _run(["lpr", "-P", printer, "-l", path], timeout=timeout)
        if p.returncode != 0:
            raise RuntimeError(f"lpr failed: {p.stderr.decode(errors='replace').strip()}")
        return f"lpr -P {printer} -l"

    def default_serial_ports(self):
        ports = ["/dev/ttyUSB0", "/dev/ttyUSB1", "/dev/ttyACM0", "/dev/serial0"]
        return [p for p in ports if glob.glob(p)] or ports[:1]

    def list_jobs(self):
        p = _run(["lpstat", "-o"])
        jobs = []
        for line in p.stdout.decode(errors="replace").splitlines():
            m = _JOB_LINE.match(line)
            if not m:
                continue
            jobs.append(QueueJob(
                printer=m.group(1),
                job_id=int(m.group(2)),
                submitted_at=_parse_submitted(m.group(3)),
            ))
        return jobs

    def cancel_job(self, job: QueueJob):
        p = _run(["cancel", f"{job.printer}-{job.job_id}"])
        if p.returncode != 0:
            raise RuntimeError(f"cancel failed: {p.stderr.decode(errors='replace').strip()}")

    def spooler_running(self):
        p = _run(["lpstat", "-r"])
        return b"not running" not in p.stdout and p.returncode == 0

    def restart_spooler(self, clear_spool=True):
        result = SpoolerRepair()
        if clear_spool:
            p = _run(["cancel", "-a", "-x"])
            if p.returncode != 0:
                result.errors.append(f"purge: {p.stderr.decode(errors='replace').strip()}")

        p = _run(["systemctl", "restart", "cups"], timeout=30)
        if p.returncode != 0:
            result.errors.append(f"restart: {p.stderr.decode(errors='replace').strip()}")
            return result
        result.stopped = True

        for _ in range(30):
            if self.spooler_running():
                result.started = True
                break
            time.sleep(0.2)
        if not result.started:
            result.errors.append("restart: cupsd did not come back")
        return result
