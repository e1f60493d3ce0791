"""
Escalation engine.

Runs one job through the ladder preset for its job type:

    queued -> in-flight(method_i) -> succeeded | in-flight(method_i+1) | failed

Jobs for the same printer are serialized with one ``asyncio.Lock`` per
printer name; jobs waiting on that lock stay ``queued`` and can still be
cancelled. An in-flight attempt is never pre-empted.
"""
import asyncio
import logging

from print_agent.audit import audit
from print_agent.errors import ConfigurationIssue, PrinterFault, ValidationFailure
from print_agent.escpos import (
    EscPosEncoder,
    diagnostic_payload,
    direct_test_payload,
    ensure_cut,
    preset_test_receipt,
)
from print_agent.models import (
    DeviceStatus,
    JobStatus,
    MethodOutcome,
    OsState,
    PrintJob,
    PrinterDevice,
    StructuredReceipt,
)
from print_agent.registry import DeviceRegistry
from print_agent.strategies import PRESETS, LadderPreset

logger = logging.getLogger(__name__)

# OS queue states that reject a job before any strategy is tried
BLOCKING_STATES = {
    OsState.PAUSED,
    OsState.ERROR,
    OsState.PAPER_JAM,
    OsState.PAPER_OUT,
    OsState.PAPER_PROBLEM,
    OsState.OFFLINE,
}


class EscalationEngine:
    def __init__(self, registry: DeviceRegistry, strategies: dict, encoder=None, monitor=None,
                 presets=None):
        self.registry = registry
        self.strategies = strategies
        self.encoder = encoder or EscPosEncoder()
        self.monitor = monitor
        self.presets = presets or PRESETS
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, PrintJob] = {}

    def _lock_for(self, printer: str) -> asyncio.Lock:
        lock = self._locks.get(printer)
        if lock is None:
            lock = self._locks[printer] = asyncio.Lock()
        return lock

    def in_flight(self, printer: str) -> bool:
        lock = self._locks.get(printer)
        return bool(lock and lock.locked())

    def cancel(self, job_id: str) -> bool:
        """Cancel a job still waiting for its printer. In-flight jobs are left alone."""
        job = self._waiting.get(job_id)
        if job is None or job.status != JobStatus.QUEUED:
            return False
        job.status = JobStatus.CANCELLED
        logger.info("job %s cancelled while waiting for %s", job_id, job.target_printer)
        return True

    async def submit(self, job: PrintJob):
        """Run ``job`` to a terminal state. Returns MethodOutcome or a PrinterError."""
        self._waiting[job.id] = job
        try:
            async with self._lock_for(job.target_printer):
                self._waiting.pop(job.id, None)
                if job.status == JobStatus.CANCELLED:
                    return ValidationFailure(device=job.target_printer, reason="job cancelled before it started")
                job.status = JobStatus.IN_FLIGHT
                return await self._run(job, self.presets[job.job_type])
        finally:
            self._waiting.pop(job.id, None)

    async def _resolve(self, name: str):
        device = self.registry.get(name)
        if device is not None:
            return device
        # one re-enumeration before giving up on an unknown printer
        try:
            await asyncio.to_thread(self.registry.enumerate)
        except PrinterFault as e:
            return e.error
        device = self.registry.get(name)
        if device is None:
            return ValidationFailure(device=name, reason="printer not found")
        return device

    def _payload(self, job: PrintJob, preset: LadderPreset, device: PrinterDevice):
        warnings = []
        if preset.payload == "diagnostic":
            data = diagnostic_payload()
        elif preset.payload == "direct-test":
            data = direct_test_payload(device.name)
        else:
            payload = job.payload
            if payload is None:
                payload = preset_test_receipt(job.job_type, device.name)
            if isinstance(payload, StructuredReceipt):
                encoded = self.encoder.encode(payload, device.page_width, device=device.name)
                data, warnings = encoded.data, encoded.warnings
            else:
                data = bytes(payload)
        if preset.inject_cut:
            data = ensure_cut(data)
        return data, warnings

    def _fail(self, job: PrintJob, error):
        job.status = JobStatus.FAILED
        job.last_error = error
        return error

    async def _refresh(self, device: PrinterDevice) -> PrinterDevice:
        # the cached state may predate a refill or resume
        try:
            await asyncio.to_thread(self.registry.enumerate)
        except PrinterFault as e:
            logger.warning("could not refresh %s before rejecting: %s", device.name, e.error.message)
            return device
        return self.registry.get(device.name) or device

    async def _run(self, job: PrintJob, preset: LadderPreset):
        device = await self._resolve(job.target_printer)
        if not isinstance(device, PrinterDevice):
            return self._fail(job, device)

        if preset.mark_testing:
            self.registry.mark(device.name, DeviceStatus.TESTING)

        if not preset.skip_status_check:
            if device.os_state in BLOCKING_STATES:
                device = await self._refresh(device)
            if device.os_state in BLOCKING_STATES:
                return self._fail(job, ValidationFailure(
                    device=device.name, reason=f"printer is {device.os_state.value.replace('_', ' ')}",
                ))
            if device.os_state == OsState.PENDING_DELETION:
                logger.info("%s has jobs pending deletion, printing anyway", device.name)

        if preset.repair_spooler_first and self.monitor is not None:
            issue = await self.monitor.repair_now()
            if issue is not None:
                logger.warning("spooler repair before %s failed: %s", job.id, issue.message)

        data, warnings = self._payload(job, preset, device)

        last_error = None
        for name in preset.strategies:
            strategy = self.strategies.get(name)
            if strategy is None:
                logger.warning("strategy %s not configured, skipping", name)
                continue

            job.attempt_count += 1
            job.tried_methods.append(name)
            audit("job_attempt", {"job_id": job.id, "printer": device.name,
                                  "method": name, "attempt": job.attempt_count})
            result = await strategy.attempt(device, data, attempt_count=job.attempt_count)

            if isinstance(result, MethodOutcome):
                job.status = JobStatus.SUCCEEDED
                job.method_used = name
                job.last_error = None
                if warnings:
                    notes = "; ".join(w.message for w in warnings)
                    result.details = f"{result.details} ({notes})" if result.details else notes
                self.registry.mark(device.name, DeviceStatus.CONNECTED, seen=True)
                logger.info("job %s printed on %s via %s", job.id, device.name, name)
                return result

            last_error = result
            job.last_error = result
            logger.info("job %s: %s failed on %s (%s)", job.id, name, device.name, result.kind)

        self.registry.mark(device.name, DeviceStatus.DISCONNECTED)
        if last_error is None:
            last_error = ConfigurationIssue(
                device=device.name,
                issue=f"no strategy available for {job.job_type.value}",
                suggested_fix="Check the agent installation",
            )
        logger.warning("job %s exhausted %s on %s", job.id, job.tried_methods, device.name)
        return self._fail(job, last_error)
