from enum import Enum
from pydantic import BaseModel, Field
from typing import Any, Literal, Optional, Union
import base64
import binascii
import time
import uuid


class ConnectionType(str, Enum):
    USB = "usb"
    NETWORK = "network"
    SERIAL = "serial"
    BLUETOOTH = "bluetooth"
    VIRTUAL = "virtual"
    UNKNOWN = "unknown"


class DeviceStatus(str, Enum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    TESTING = "testing"


class OsState(str, Enum):
    """Queue state as reported by the OS printer listing."""
    READY = "ready"
    PAUSED = "paused"
    ERROR = "error"
    PENDING_DELETION = "pending_deletion"
    PAPER_JAM = "paper_jam"
    PAPER_OUT = "paper_out"
    MANUAL_FEED = "manual_feed"
    PAPER_PROBLEM = "paper_problem"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class JobType(str, Enum):
    RECEIPT = "receipt"
    KITCHEN = "kitchen"
    BAR = "bar"
    DIAGNOSTIC = "diagnostic"
    DIRECT_TEST = "direct-test"
    ULTIMATE_THERMAL = "ultimate_thermal"
    HYBRID_THERMAL = "hybrid_thermal"
    THERMAL_LIBRARY = "thermal_library"


class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in-flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PrinterDevice(BaseModel):
    name: str
    display_name: str
    connection_type: ConnectionType = ConnectionType.UNKNOWN
    is_default: bool = False
    page_width: int = 80  # mm
    status: DeviceStatus = DeviceStatus.UNKNOWN
    last_seen: float = Field(default_factory=lambda: time.time())
    port: Optional[str] = None
    driver: Optional[str] = None
    os_state: OsState = OsState.UNKNOWN


# -----------------------------
# Receipts
# -----------------------------
class ReceiptLine(BaseModel):
    text: str = ""
    right: Optional[str] = None  # label/value row, right part flush right
    align: Literal["left", "center", "right"] = "left"
    bold: bool = False
    underline: bool = False
    double: bool = False


class StructuredReceipt(BaseModel):
    lines: list[ReceiptLine] = Field(default_factory=list)
    cut: bool = True
    feed_lines: int = Field(default=3, ge=0, le=255)

    @classmethod
    def from_text(cls, text: str, **kwargs) -> "StructuredReceipt":
        return cls(lines=[ReceiptLine(text=line) for line in text.splitlines()], **kwargs)


# -----------------------------
# Jobs
# -----------------------------
class PrintJob(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    target_printer: str
    payload: Union[StructuredReceipt, bytes, None] = Field(default=None, exclude=True)
    job_type: JobType = JobType.RECEIPT
    attempt_count: int = 0
    status: JobStatus = JobStatus.QUEUED
    method_used: Optional[str] = None
    created_at: float = Field(default_factory=lambda: time.time())
    tried_methods: list[str] = Field(default_factory=list)
    last_error: Optional[Any] = None  # PrinterError of the last failed attempt


class PrintJobIn(BaseModel):
    printer: str
    job_type: JobType = JobType.RECEIPT
    receipt: Optional[StructuredReceipt] = None
    raw_base64: Optional[str] = None
    raw_text: Optional[str] = None
    copies: int = Field(default=1, ge=1, le=100)
    wait: bool = True

    def build_payload(self):
        """Receipt, raw bytes, or None for test presets. Raises ValueError on bad input."""
        given = [p for p in (self.receipt, self.raw_base64, self.raw_text) if p is not None]
        if len(given) > 1:
            raise ValueError("send only one of receipt, raw_base64, raw_text")
        if self.receipt is not None:
            return self.receipt
        if self.raw_base64 is not None:
            try:
                return base64.b64decode(self.raw_base64, validate=True)
            except binascii.Error as e:
                raise ValueError(f"raw_base64 is not valid base64: {e}") from e
        if self.raw_text is not None:
            return StructuredReceipt.from_text(self.raw_text)
        return None


class MethodOutcome(BaseModel):
    method_used: str
    details: str = ""
    timestamp: float = Field(default_factory=lambda: time.time())
    output: Optional[str] = None


# -----------------------------
# Boundary results
# -----------------------------
class PrintResult(BaseModel):
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None


class BatchResult(BaseModel):
    success: bool
    success_count: int
    total_count: int
    results: list[PrintResult] = Field(default_factory=list)
    error: Optional[dict[str, Any]] = None


class PrintBatchIn(BaseModel):
    jobs: list[PrintJobIn] = Field(min_length=1)
