import asyncio

from conftest import StubStrategy, stub_ladder

from print_agent.errors import ConnectionFailure, TimeoutFailure, ValidationFailure
from print_agent.escpos import CUT, decode_text, diagnostic_payload
from print_agent.models import (
    DeviceStatus,
    JobStatus,
    JobType,
    MethodOutcome,
    OsState,
    PrintJob,
    StructuredReceipt,
)
from print_agent.printers.base import PrinterInfo
from print_agent.strategies import LADDER


def _job(printer="Generic-80mm", job_type=JobType.RECEIPT, payload=None):
    if payload is None and job_type in (JobType.RECEIPT, JobType.KITCHEN, JobType.BAR):
        payload = StructuredReceipt.from_text("1 x Lomo saltado")
    return PrintJob(target_printer=printer, job_type=job_type, payload=payload)


def test_step_one_fails_step_two_succeeds(make_engine, registry):
    ladder = stub_ladder(fail={"os-spool"})
    engine = make_engine(ladder)
    job = _job("Generic-80mm")

    outcome = asyncio.run(engine.submit(job))

    assert isinstance(outcome, MethodOutcome)
    assert outcome.method_used == "direct-usb"
    assert job.status == JobStatus.SUCCEEDED
    assert job.method_used == "direct-usb"
    assert job.attempt_count == 2
    assert job.tried_methods == ["os-spool", "direct-usb"]
    assert ladder["serial"].received == []

    device = registry.get("Generic-80mm")
    assert device.status == DeviceStatus.CONNECTED


def test_ladder_exhaustion_returns_last_error(make_engine, registry):
    ladder = stub_ladder(fail=set(LADDER))
    engine = make_engine(ladder)
    job = _job("Generic-80mm")

    error = asyncio.run(engine.submit(job))

    assert isinstance(error, ConnectionFailure)
    assert error.method == "shell"
    assert error.attempt_count == 4
    assert job.status == JobStatus.FAILED
    assert job.attempt_count == 4
    assert job.tried_methods == list(LADDER)
    assert job.last_error is error
    assert sum(len(s.received) for s in ladder.values()) == 4
    assert registry.get("Generic-80mm").status == DeviceStatus.DISCONNECTED


def test_timed_out_method_moves_to_next_step(make_engine):
    ladder = stub_ladder()
    ladder["os-spool"] = StubStrategy("os-spool", delay=0.5, timeout_ms=50)
    engine = make_engine(ladder)
    job = _job()

    outcome = asyncio.run(engine.submit(job))

    assert outcome.method_used == "direct-usb"
    assert job.last_error is None
    assert job.tried_methods == ["os-spool", "direct-usb"]


def test_timeout_error_is_reported(make_engine):
    engine = make_engine({"os-spool": StubStrategy("os-spool", delay=0.5, timeout_ms=50)})
    error = asyncio.run(engine.submit(_job(job_type=JobType.THERMAL_LIBRARY, payload=b"x")))

    assert isinstance(error, TimeoutFailure)
    assert error.timeout_ms == 50
    assert error.operation == "os-spool"


def _overlaps(a, b):
    return a[1] < b[2] and b[1] < a[2]


def test_same_printer_jobs_never_overlap(make_engine):
    spans = []
    engine = make_engine(stub_ladder(delay=0.05, spans=spans))
    jobs = [_job("Generic-80mm") for _ in range(4)]

    async def scenario():
        return await asyncio.gather(*(engine.submit(j) for j in jobs))

    results = asyncio.run(scenario())

    assert all(isinstance(r, MethodOutcome) for r in results)
    assert len(spans) == 4
    for i, a in enumerate(spans):
        for b in spans[i + 1:]:
            assert not _overlaps(a, b)
    assert all(j.attempt_count == 1 for j in jobs)


def test_different_printers_print_concurrently(make_engine):
    spans = []
    engine = make_engine(stub_ladder(delay=0.3, spans=spans))

    async def scenario():
        return await asyncio.gather(engine.submit(_job("Generic-80mm")), engine.submit(_job("Kitchen-58")))

    asyncio.run(scenario())

    by_printer = {s[0]: s for s in spans}
    assert _overlaps(by_printer["Generic-80mm"], by_printer["Kitchen-58"])


def test_waiting_job_can_be_cancelled_but_in_flight_cannot(make_engine):
    ladder = stub_ladder(delay=0.2)
    engine = make_engine(ladder)
    first, second = _job(), _job()

    async def scenario():
        t1 = asyncio.create_task(engine.submit(first))
        await asyncio.sleep(0.05)
        t2 = asyncio.create_task(engine.submit(second))
        await asyncio.sleep(0)
        assert first.status == JobStatus.IN_FLIGHT
        assert second.status == JobStatus.QUEUED
        assert not engine.cancel(first.id)
        assert engine.cancel(second.id)
        return await asyncio.gather(t1, t2)

    r1, r2 = asyncio.run(scenario())

    assert isinstance(r1, MethodOutcome)
    assert isinstance(r2, ValidationFailure)
    assert second.status == JobStatus.CANCELLED
    assert second.attempt_count == 0
    assert len(ladder["os-spool"].received) == 1


def test_unknown_printer_triggers_one_re_enumeration(provider, make_engine, registry):
    provider.printers.append(PrinterInfo(name="Patio-80", port="USB002", state=OsState.READY))
    engine = make_engine(stub_ladder())

    outcome = asyncio.run(engine.submit(_job("Patio-80")))
    assert outcome.method_used == "os-spool"

    missing = _job("Nowhere")
    error = asyncio.run(engine.submit(missing))
    assert isinstance(error, ValidationFailure)
    assert error.reason == "printer not found"
    assert missing.attempt_count == 0
    assert missing.status == JobStatus.FAILED


def test_paused_printer_rejected_before_any_attempt(provider, registry, make_engine):
    provider.printers[0].state = OsState.PAUSED
    registry.enumerate()
    ladder = stub_ladder()
    job = _job()

    error = asyncio.run(make_engine(ladder).submit(job))

    assert isinstance(error, ValidationFailure)
    assert "paused" in error.reason
    assert job.attempt_count == 0
    assert all(not s.received for s in ladder.values())


def test_pending_deletion_still_prints(provider, registry, make_engine):
    provider.printers[0].state = OsState.PENDING_DELETION
    registry.enumerate()

    outcome = asyncio.run(make_engine(stub_ladder()).submit(_job()))
    assert outcome.method_used == "os-spool"


def test_direct_test_bypasses_status_and_uses_usb_only(provider, registry, make_engine):
    provider.printers[0].state = OsState.OFFLINE
    registry.enumerate()
    ladder = stub_ladder()
    job = _job(job_type=JobType.DIRECT_TEST)

    outcome = asyncio.run(make_engine(ladder).submit(job))

    assert outcome.method_used == "direct-usb"
    assert job.tried_methods == ["direct-usb"]
    printed = decode_text(ladder["direct-usb"].received[0][1])
    assert "Status checks: BYPASSED" in printed


def test_diagnostic_preset_uses_spool_with_fixed_payload(make_engine):
    ladder = stub_ladder(fail={"os-spool"})
    job = _job(job_type=JobType.DIAGNOSTIC)

    error = asyncio.run(make_engine(ladder).submit(job))

    assert isinstance(error, ConnectionFailure)
    assert job.tried_methods == ["os-spool"]
    assert ladder["os-spool"].received[0][1] == diagnostic_payload()


def test_troubleshooting_presets_inject_cut(make_engine):
    ladder = stub_ladder(fail={"os-spool"})
    job = _job(job_type=JobType.HYBRID_THERMAL, payload=b"raw text without cut\n")

    outcome = asyncio.run(make_engine(ladder).submit(job))

    assert outcome.method_used == "direct-usb"
    assert job.tried_methods == ["os-spool", "direct-usb"]
    assert ladder["direct-usb"].received[0][1].endswith(CUT)


def test_ultimate_thermal_repairs_spooler_first(make_engine):
    class Monitor:
        calls = 0

        async def repair_now(self):
            Monitor.calls += 1
            return None

    ladder = stub_ladder(fail={"os-spool"})
    job = _job(job_type=JobType.ULTIMATE_THERMAL)

    outcome = asyncio.run(make_engine(ladder, monitor=Monitor()).submit(job))

    assert Monitor.calls == 1
    assert outcome.method_used == "shell"
    assert job.tried_methods == ["os-spool", "shell"]
    # test receipt printed when the preset gets no payload
    assert "ULTIMATE THERMAL TEST" in decode_text(ladder["shell"].received[0][1])[0]


def test_unknown_width_warning_reported_in_details(provider, registry, make_engine):
    engine = make_engine(stub_ladder())
    registry._devices["Generic-80mm"].page_width = 76

    outcome = asyncio.run(engine.submit(_job()))
    assert "unsupported paper width 76mm" in outcome.details


def test_late_write_finishes_before_next_step_starts(make_engine):
    spans = []
    ladder = {
        "os-spool": StubStrategy("os-spool", delay=0.4, timeout_ms=50, spans=spans),
        "direct-usb": StubStrategy("direct-usb", delay=0.1, spans=spans),
    }
    job = _job(job_type=JobType.HYBRID_THERMAL, payload=b"raw text\n")

    outcome = asyncio.run(make_engine(ladder).submit(job))

    assert outcome.method_used == "direct-usb"
    assert job.tried_methods == ["os-spool", "direct-usb"]
    assert len(spans) == 2
    assert not _overlaps(spans[0], spans[1])
    assert spans[0][2] <= spans[1][1]


def test_refilled_printer_prints_despite_stale_paper_out(provider, registry, make_engine):
    provider.printers[0].state = OsState.PAPER_OUT
    registry.enumerate()
    provider.printers[0].state = OsState.READY
    job = _job()

    outcome = asyncio.run(make_engine(stub_ladder()).submit(job))

    assert isinstance(outcome, MethodOutcome)
    assert outcome.method_used == "os-spool"
    assert job.attempt_count == 1
    assert registry.get("Generic-80mm").os_state == OsState.READY
