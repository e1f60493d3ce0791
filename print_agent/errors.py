"""
Typed printer failures.

Every failure in the print path is one variant of the ``PrinterError`` tagged
union (discriminated on ``kind``). Variants keep the originating exception in
``cause`` so logs and the troubleshooting dialog can show what really broke;
``cause`` is excluded from JSON and rendered as ``cause_detail`` instead.
"""
import asyncio
import subprocess
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field


class _Failure(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    cause: Optional[BaseException] = Field(default=None, exclude=True, repr=False)

    @computed_field
    @property
    def cause_detail(self) -> Optional[str]:
        if self.cause is None:
            return None
        return f"{type(self.cause).__name__}: {self.cause}"


class DetectionFailure(_Failure):
    kind: Literal["detection"] = "detection"
    device: Optional[str] = None

    @computed_field
    @property
    def message(self) -> str:
        if self.device:
            return f"Printer detection failed for '{self.device}'"
        return "Printer detection failed"


class ValidationFailure(_Failure):
    kind: Literal["validation"] = "validation"
    device: str
    reason: str = "validation failed"

    @computed_field
    @property
    def message(self) -> str:
        return f"Printer '{self.device}': {self.reason}"


class ConnectionFailure(_Failure):
    kind: Literal["connection"] = "connection"
    device: str
    connection_type: str = "unknown"
    attempt_count: int = 1
    method: Optional[str] = None

    @computed_field
    @property
    def message(self) -> str:
        via = f" via {self.method}" if self.method else ""
        return f"Could not reach printer '{self.device}'{via} (attempt {self.attempt_count})"


class TimeoutFailure(_Failure):
    kind: Literal["timeout"] = "timeout"
    device: str
    timeout_ms: int
    operation: str

    @computed_field
    @property
    def message(self) -> str:
        return f"{self.operation} on '{self.device}' timed out after {self.timeout_ms} ms"


class ConfigurationIssue(_Failure):
    kind: Literal["configuration"] = "configuration"
    device: Optional[str] = None
    issue: str
    suggested_fix: str

    @computed_field
    @property
    def message(self) -> str:
        if self.device:
            return f"Printer '{self.device}': {self.issue}"
        return self.issue


class OperationFailure(_Failure):
    kind: Literal["operation"] = "operation"
    op: str
    errors: list["PrinterError"] = Field(default_factory=list)
    success_count: int
    total_count: int

    @computed_field
    @property
    def message(self) -> str:
        failed = self.total_count - self.success_count
        return f"{self.op}: {failed} of {self.total_count} failed"

    @property
    def has_partial_success(self) -> bool:
        return 0 < self.success_count < self.total_count

    def error_summary(self) -> dict[str, int]:
        summary: dict[str, int] = {}
        for err in self.errors:
            summary[err.kind] = summary.get(err.kind, 0) + 1
        return summary


PrinterError = Annotated[
    Union[
        DetectionFailure,
        ValidationFailure,
        ConnectionFailure,
        TimeoutFailure,
        ConfigurationIssue,
        OperationFailure,
    ],
    Field(discriminator="kind"),
]

OperationFailure.model_rebuild()

ERROR_TYPES = (
    DetectionFailure,
    ValidationFailure,
    ConnectionFailure,
    TimeoutFailure,
    ConfigurationIssue,
    OperationFailure,
)


class PrinterFault(Exception):
    """Carries a PrinterError through code paths that expect an exception."""

    def __init__(self, error):
        super().__init__(error.message)
        self.error = error


# -----------------------------
# Classification
# -----------------------------
_TIMEOUT_TYPES = (TimeoutError, asyncio.TimeoutError, subprocess.TimeoutExpired)
_CONNECTION_WORDS = ("econnrefused", "connection", "network", "could not open port",
                     "no such device", "device not found", "access denied", "broken pipe")
_CONFIG_WORDS = ("driver", "not installed", "configuration", "no backend available",
                 "not available")


def classify_exception(
    exc: BaseException,
    *,
    device: str,
    operation: str,
    connection_type: str = "unknown",
    attempt_count: int = 1,
    timeout_ms: int = 0,
    method: Optional[str] = None,
):
    """Map an arbitrary exception raised by a print operation to a PrinterError."""
    if isinstance(exc, PrinterFault):
        return exc.error

    text = str(exc).lower()
    module = type(exc).__module__ or ""

    if isinstance(exc, _TIMEOUT_TYPES) or "timed out" in text or "timeout" in text:
        return TimeoutFailure(device=device, timeout_ms=timeout_ms, operation=operation, cause=exc)

    if isinstance(exc, ImportError) or type(exc).__name__ == "NoBackendError" \
            or any(w in text for w in _CONFIG_WORDS):
        return ConfigurationIssue(
            device=device,
            issue=f"{operation} failed due to configuration issues",
            suggested_fix="Check printer drivers and system configuration",
            cause=exc,
        )

    if isinstance(exc, ConnectionError) or module.startswith(("usb", "serial")) \
            or any(w in text for w in _CONNECTION_WORDS):
        return ConnectionFailure(
            device=device,
            connection_type=connection_type,
            attempt_count=attempt_count,
            method=method,
            cause=exc,
        )

    return ValidationFailure(device=device, reason=f"{operation} failed", cause=exc)


# -----------------------------
# Operator-facing text
# -----------------------------
def suggested_fix(error) -> str:
    match error:
        case DetectionFailure():
            return "Make sure the print service is running, then refresh the printer list."
        case ValidationFailure():
            return "Check the printer name and that it is powered on, online and not paused."
        case ConnectionFailure():
            return "Check the cable or network link and that no other program holds the port."
        case TimeoutFailure():
            return "The printer did not answer in time. Check paper and power, then retry."
        case ConfigurationIssue():
            return error.suggested_fix
        case OperationFailure():
            if error.has_partial_success:
                return "Some copies printed. Retry only the failed printers."
            return "No copies printed. Run a direct test on each printer."
    raise TypeError(f"unknown printer error: {error!r}")


def describe(error, tried_methods: Optional[list[str]] = None) -> str:
    text = f"{error.message}. {suggested_fix(error)}"
    if isinstance(error, OperationFailure):
        summary = ", ".join(f"{n} {kind}" for kind, n in sorted(error.error_summary().items()))
        if summary:
            text += f" ({summary})"
    if tried_methods:
        text += f" Tried: {', '.join(tried_methods)}."
    return text
