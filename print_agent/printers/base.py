from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from print_agent.models import OsState


@dataclass
class PrinterInfo:
    """One entry of the OS printer listing."""
    name: str
    port: str = ""
    driver: str = ""
    description: str = ""
    is_default: bool = False
    state: OsState = OsState.UNKNOWN


@dataclass
class QueueJob:
    """One job sitting in the OS print queue."""
    printer: str
    job_id: int
    document: str = ""
    deleting: bool = False
    error: bool = False
    blocked: bool = False
    offline: bool = False
    paused: bool = False
    submitted_at: Optional[float] = None  # epoch seconds, None when the OS does not say
    raw_status: Optional[int] = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.printer, self.job_id)


@dataclass
class SpoolerRepair:
    stopped: bool = False
    purged: int = 0
    started: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.started and not self.errors


class PrinterProvider(ABC):

    @abstractmethod
    def list_printers(self) -> list[PrinterInfo]:
        pass

    @abstractmethod
    def print_raw(self, printer: str, data: bytes, timeout: float):
        pass

    @abstractmethod
    def print_file(self, printer: str, path: str, timeout: float):
        """Shell-level print of a file with explicit printer targeting."""

    @abstractmethod
    def default_serial_ports(self) -> list[str]:
        pass

    # queue inspection / spooler service
    @abstractmethod
    def list_jobs(self) -> list[QueueJob]:
        pass

    @abstractmethod
    def cancel_job(self, job: QueueJob):
        pass

    @abstractmethod
    def spooler_running(self) -> bool:
        pass

    @abstractmethod
    def restart_spooler(self, clear_spool: bool = True) -> SpoolerRepair:
        pass
