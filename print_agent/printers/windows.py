import glob
import logging
import os
import re
import subprocess
import time

from print_agent.models import OsState
from print_agent.printers.base import PrinterInfo, PrinterProvider, QueueJob, SpoolerRepair

logger = logging.getLogger(__name__)

# PRINTER_STATUS_* bits from GetPrinter level 2, most severe first
_PRINTER_STATES = (
    (0x00000080, OsState.OFFLINE),
    (0x00000008, OsState.PAPER_JAM),
    (0x00000010, OsState.PAPER_OUT),
    (0x00000040, OsState.PAPER_PROBLEM),
    (0x00000002, OsState.ERROR),
    (0x00000001, OsState.PAUSED),
    (0x00000020, OsState.MANUAL_FEED),
    (0x00000004, OsState.PENDING_DELETION),
)

# JOB_STATUS_* bits from EnumJobs level 1
JOB_STATUS_PAUSED = 0x0001
JOB_STATUS_ERROR = 0x0002
JOB_STATUS_DELETING = 0x0004
JOB_STATUS_OFFLINE = 0x0020
JOB_STATUS_BLOCKED_DEVQ = 0x0200

_LOCAL_PORT = re.compile(r"^(LPT|COM)\d+:?$", re.IGNORECASE)

SPOOLER_SERVICE = "Spooler"
SPOOL_DIR = os.path.join(os.environ.get("SystemRoot", r"C:\Windows"), "System32", "spool", "PRINTERS")


def printer_state(status: int) -> OsState:
    if not status:
        return OsState.READY
    for bit, state in _PRINTER_STATES:
        if status & bit:
            return state
    return OsState.UNKNOWN


def _submitted_epoch(value):
    # pywintypes.datetime is a datetime subclass
    try:
        return value.timestamp()
    except (AttributeError, OSError, ValueError):
        return None


class WindowsPrinterProvider(PrinterProvider):
    def list_printers(self):
        import win32print
        flags = win32print.PRINTER_ENUM_LOCAL | win32print.PRINTER_ENUM_CONNECTIONS
        try:
            default = win32print.GetDefaultPrinter()
        except Exception:  # raised when no default printer is set
            default = None

        printers = []
        for p in win32print.EnumPrinters(flags, None, 2):
            printers.append(PrinterInfo(
                name=p["pPrinterName"],
                port=p.get("pPortName") or "",
                driver=p.get("pDriverName") or "",
                description=p.get("pComment") or "",
                is_default=p["pPrinterName"] == default,
                state=printer_state(p.get("Status") or 0),
            ))
        return printers

    def print_raw(self, printer, data: bytes, timeout: float):
        import win32print
        h = win32print.OpenPrinter(printer)
        try:
            win32print.StartDocPrinter(h, 1, ("POS Receipt", None, "RAW"))
            try:
                win32print.StartPagePrinter(h)
                written = win32print.WritePrinter(h, data)
                win32print.EndPagePrinter(h)
            finally:
                win32print.EndDocPrinter(h)
        finally:
            win32print.ClosePrinter(h)
        if written != len(data):
            raise IOError(f"spooler accepted {written} of {len(data)} bytes")
        return f"RAW job accepted by the Windows spooler ({written} bytes)"

    def _port_of(self, printer):
        import win32print
        h = win32print.OpenPrinter(printer)
        try:
            return win32print.GetPrinter(h, 2).get("pPortName") or ""
        finally:
            win32print.ClosePrinter(h)

    def print_file(self, printer, path: str, timeout: float):
        deadline = time.monotonic() + timeout
        port = self._port_of(printer)
        if _LOCAL_PORT.match(port):
            target = port.rstrip(":")
        else:
            target = rf"\\{os.environ.get('COMPUTERNAME', 'localhost')}\{printer}"

        copy = subprocess.run(
            ["cmd", "/c", "copy", "/b", path, target],
            capture_output=True, text=True, timeout=timeout,
        )
        if copy.returncode == 0:
            return f"copy /b to {target}"
        logger.info("copy /b to %s failed (%s), falling back to print /d", target, copy.stdout.strip())

        left = max(deadline - time.monotonic(), 0.5)
        cmd = subprocess.run(
            ["cmd", "/c", "print", f"/d:{printer}", path],
            capture_output=True, text=True, timeout=left,
        )
        if cmd.returncode != 0:
            raise RuntimeError(f"print /d failed: {(cmd.stdout or cmd.stderr).strip()}")
        return f"print /d:{printer}"

    def default_serial_ports(self):
        return [f"COM{i}" for i in range(1, 5)]

    def list_jobs(self):
        import win32print
        flags = win32print.PRINTER_ENUM_LOCAL | win32print.PRINTER_ENUM_CONNECTIONS
        jobs = []
        for p in win32print.EnumPrinters(flags, None, 1):
            name = p[2]
            h = win32print.OpenPrinter(name)
            try:
                for j in win32print.EnumJobs(h, 0, 999, 1):
                    status = j.get("Status") or 0
                    jobs.append(QueueJob(
                        printer=name,
                        job_id=j["JobId"],
                        document=j.get("pDocument") or "",
                        deleting=bool(status & JOB_STATUS_DELETING),
                        error=bool(status & JOB_STATUS_ERROR),
                        blocked=bool(status & JOB_STATUS_BLOCKED_DEVQ),
                        offline=bool(status & JOB_STATUS_OFFLINE),
                        paused=bool(status & JOB_STATUS_PAUSED),
                        submitted_at=_submitted_epoch(j.get("Submitted")),
                        raw_status=status,
                    ))
            finally:
                win32print.ClosePrinter(h)
        return jobs

    def cancel_job(self, job: QueueJob):
        import win32print
        h = win32print.OpenPrinter(job.printer)
        try:
            win32print.SetJob(h, job.job_id, 0, None, win32print.JOB_CONTROL_DELETE)
        finally:
            win32print.ClosePrinter(h)

    def spooler_running(self):
        import win32service
        import win32serviceutil
        state = win32serviceutil.QueryServiceStatus(SPOOLER_SERVICE)[1]
        return state == win32service.SERVICE_RUNNING

    def _wait_for(self, wanted, seconds=6.0):
        import win32serviceutil
        t0 = time.time()
        while time.time() - t0 < seconds:
            if win32serviceutil.QueryServiceStatus(SPOOLER_SERVICE)[1] == wanted:
                return True
            time.sleep(0.1)
        return False

    def restart_spooler(self, clear_spool=True):
        import pywintypes
        import win32service
        import win32serviceutil
        result = SpoolerRepair()

        try:
            win32serviceutil.StopService(SPOOLER_SERVICE)
        except pywintypes.error as e:
            # 1062: service not started
            if e.winerror != 1062:
                result.errors.append(f"stop: {e.strerror}")
                return result
        result.stopped = self._wait_for(win32service.SERVICE_STOPPED)
        if not result.stopped:
            result.errors.append("stop: spooler did not reach STOPPED")
            return result

        if clear_spool:
            for pattern in ("*.SPL", "*.SHD"):
                for path in glob.glob(os.path.join(SPOOL_DIR, pattern)):
                    try:
                        os.remove(path)
                        result.purged += 1
                    except OSError as e:
                        result.errors.append(f"purge {os.path.basename(path)}: {e}")

        try:
            win32serviceutil.StartService(SPOOLER_SERVICE)
        except pywintypes.error as e:
            result.errors.append(f"start: {e.strerror}")
            return result
        result.started = self._wait_for(win32service.SERVICE_RUNNING)
        if not result.started:
            result.errors.append("start: spooler did not reach RUNNING")
        return result
