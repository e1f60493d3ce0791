import asyncio
import subprocess

import pytest
from pydantic import TypeAdapter

from print_agent.errors import (
    ERROR_TYPES,
    ConfigurationIssue,
    ConnectionFailure,
    DetectionFailure,
    OperationFailure,
    PrinterError,
    PrinterFault,
    TimeoutFailure,
    ValidationFailure,
    classify_exception,
    describe,
    suggested_fix,
)


def _classify(exc):
    return classify_exception(exc, device="Generic-80mm", operation="os-spool",
                              connection_type="usb", timeout_ms=1500, method="os-spool")


def test_timeouts_classified():
    for exc in (asyncio.TimeoutError(), subprocess.TimeoutExpired("lp", 10), OSError("ETIMEDOUT: timed out")):
        err = _classify(exc)
        assert isinstance(err, TimeoutFailure)
        assert err.timeout_ms == 1500
        assert err.cause is exc


def test_connection_errors_classified():
    err = _classify(ConnectionRefusedError("ECONNREFUSED"))
    assert isinstance(err, ConnectionFailure)
    assert err.connection_type == "usb"
    assert err.method == "os-spool"

    err = _classify(OSError("could not open port COM3"))
    assert isinstance(err, ConnectionFailure)


def test_configuration_errors_classified():
    err = _classify(ImportError("No module named 'usb'"))
    assert isinstance(err, ConfigurationIssue)
    assert err.suggested_fix == "Check printer drivers and system configuration"

    err = _classify(RuntimeError("printer driver not installed"))
    assert isinstance(err, ConfigurationIssue)


def test_anything_else_is_validation():
    err = _classify(ValueError("bad job"))
    assert isinstance(err, ValidationFailure)
    assert err.reason == "os-spool failed"
    assert err.cause_detail == "ValueError: bad job"


def test_printer_fault_passes_through():
    inner = DetectionFailure(device="X")
    assert _classify(PrinterFault(inner)) is inner


def test_serialized_error_keeps_cause_detail_not_cause():
    err = _classify(ConnectionRefusedError("ECONNREFUSED"))
    data = err.model_dump(mode="json")
    assert data["kind"] == "connection"
    assert "cause" not in data
    assert data["cause_detail"].startswith("ConnectionRefusedError")
    assert "Generic-80mm" in data["message"]


def test_discriminated_union_round_trip():
    adapter = TypeAdapter(PrinterError)
    err = adapter.validate_python({"kind": "timeout", "device": "P", "timeout_ms": 10, "operation": "shell"})
    assert isinstance(err, TimeoutFailure)


def test_operation_failure_counts():
    op = OperationFailure(
        op="print 3 copies",
        errors=[ConnectionFailure(device="A"), ConnectionFailure(device="A"), TimeoutFailure(device="A", timeout_ms=5, operation="shell")],
        success_count=0,
        total_count=3,
    )
    assert not op.has_partial_success
    assert op.error_summary() == {"connection": 2, "timeout": 1}
    assert op.message == "print 3 copies: 3 of 3 failed"

    partial = OperationFailure(op="batch", errors=[ValidationFailure(device="B")], success_count=2, total_count=3)
    assert partial.has_partial_success
    assert "Some copies printed" in suggested_fix(partial)


@pytest.mark.parametrize("error", [
    DetectionFailure(),
    ValidationFailure(device="A"),
    ConnectionFailure(device="A"),
    TimeoutFailure(device="A", timeout_ms=1, operation="serial"),
    ConfigurationIssue(issue="paper width", suggested_fix="set it to 80mm"),
    OperationFailure(op="batch", success_count=0, total_count=1),
])
def test_every_variant_has_a_fix(error):
    assert isinstance(error, ERROR_TYPES)
    assert suggested_fix(error)


def test_unknown_error_type_is_rejected():
    with pytest.raises(TypeError):
        suggested_fix(object())


def test_describe_lists_tried_methods():
    text = describe(ConnectionFailure(device="Bar"), ["os-spool", "direct-usb"])
    assert text.startswith("Could not reach printer 'Bar'")
    assert text.endswith("Tried: os-spool, direct-usb.")
