"""
Print agent facade.

The only entry point the API (and any embedding host application) uses.
Device I/O failures never escape as exceptions: every call returns a
PrintResult / BatchResult with a typed ``error``.
"""
import logging
from typing import Optional

from print_agent.audit import audit
from print_agent.env import AGENT_ID, AGENT_NAME
from print_agent.errors import PrinterFault, describe
from print_agent.escalation import EscalationEngine
from print_agent.escpos import EscPosEncoder
from print_agent.diagnostics import DiagnosticRunner
from print_agent.models import BatchResult, JobType, MethodOutcome, PrintJob, PrintResult
from print_agent.queue_worker import PrintQueue
from print_agent.registry import DeviceRegistry
from print_agent.spooler import SpoolerMonitor
from print_agent.strategies import default_strategies

logger = logging.getLogger(__name__)


def _error_dict(error, tried_methods=None) -> dict:
    data = error.model_dump(mode="json")
    data["troubleshooting"] = describe(error, tried_methods)
    return data


class PrintAgent:
    def __init__(self, provider=None, strategies: Optional[dict] = None, monitor=None,
                 encoder=None, max_queued: Optional[int] = None):
        if provider is None:
            from print_agent.printers import printer_provider as provider
        self.provider = provider
        self.registry = DeviceRegistry(provider)
        self.encoder = encoder or EscPosEncoder()
        self.monitor = monitor or SpoolerMonitor(provider)
        self.engine = EscalationEngine(
            self.registry,
            strategies if strategies is not None else default_strategies(provider),
            self.encoder,
            self.monitor,
        )
        if max_queued is None:
            self.queue = PrintQueue(self.engine)
        else:
            self.queue = PrintQueue(self.engine, max_queued=max_queued)
        self.diagnostics = DiagnosticRunner(self.engine, self.registry)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def start(self):
        self.queue.start()
        self.monitor.start_monitoring()
        result = self.enumerate_devices()
        audit("agent_startup", {"agent_id": AGENT_ID, "name": AGENT_NAME,
                                "printers": len(result.data["devices"]) if result.success else 0})

    async def stop(self):
        await self.monitor.stop_monitoring()
        await self.queue.stop()
        audit("agent_shutdown", {"agent_id": AGENT_ID})

    # -----------------------------
    # Results
    # -----------------------------
    def _result(self, job: PrintJob, result) -> PrintResult:
        data = {"job_id": job.id, "attempts": job.attempt_count, "tried_methods": list(job.tried_methods)}
        if isinstance(result, MethodOutcome):
            data.update(result.model_dump())
            return PrintResult(success=True, data=data)
        return PrintResult(success=False, data=data, error=_error_dict(result, job.tried_methods))

    async def _batch(self, jobs: list[PrintJob], op: str) -> BatchResult:
        results, failure = await self.queue.run_batch(jobs, op=op)
        return BatchResult(
            success=failure is None,
            success_count=failure.success_count if failure else len(jobs),
            total_count=len(jobs),
            results=[self._result(j, r) for j, r in zip(jobs, results)],
            error=_error_dict(failure) if failure else None,
        )

    # -----------------------------
    # Jobs
    # -----------------------------
    @staticmethod
    def make_job(target_printer: str, job_type="receipt", payload=None) -> PrintJob:
        return PrintJob(target_printer=target_printer, job_type=JobType(job_type), payload=payload)

    async def submit(self, target_printer: str, job_type="receipt", payload=None, copies: int = 1):
        if copies > 1:
            jobs = [self.make_job(target_printer, job_type, payload) for _ in range(copies)]
            return await self._batch(jobs, op=f"print {copies} copies on {target_printer}")
        job = self.make_job(target_printer, job_type, payload)
        return self._result(job, await self.queue.run(job))

    async def submit_batch(self, requests: list[dict]) -> BatchResult:
        """``requests``: dicts with ``target_printer``, optional ``job_type`` and ``payload``."""
        jobs = [self.make_job(r["target_printer"], r.get("job_type", "receipt"), r.get("payload"))
                for r in requests]
        return await self._batch(jobs, op=f"batch of {len(jobs)}")

    def enqueue(self, target_printer: str, job_type="receipt", payload=None, copies: int = 1) -> list[PrintJob]:
        jobs = [self.make_job(target_printer, job_type, payload) for _ in range(copies)]
        return self.queue.enqueue_many(jobs)

    def get_job(self, job_id: str) -> Optional[dict]:
        job = self.queue.get_job(job_id)
        if job is None:
            return None
        out = job.model_dump(mode="json", exclude={"last_error"})
        out["last_error"] = _error_dict(job.last_error, job.tried_methods) if job.last_error else None
        result = self.queue.result_of(job_id)
        out["result"] = self._result(job, result).model_dump() if result is not None else None
        return out

    def cancel_job(self, job_id: str) -> bool:
        return self.queue.cancel(job_id)

    # -----------------------------
    # Devices
    # -----------------------------
    def enumerate_devices(self) -> PrintResult:
        try:
            devices = self.registry.enumerate()
        except PrinterFault as e:
            return PrintResult(success=False, error=_error_dict(e.error))
        return PrintResult(success=True, data={"devices": [d.model_dump(mode="json") for d in devices]})

    async def run_diagnostic(self, name: str) -> PrintResult:
        job_result = await self.diagnostics.run_diagnostic(name)
        if isinstance(job_result, MethodOutcome):
            return PrintResult(success=True, data=job_result.model_dump())
        return PrintResult(success=False, error=_error_dict(job_result))

    # -----------------------------
    # Spooler
    # -----------------------------
    def spooler_status(self) -> dict:
        return self.monitor.status()

    async def repair_spooler(self) -> PrintResult:
        issue = await self.monitor.repair_now()
        if issue is not None:
            return PrintResult(success=False, data=self.monitor.status(), error=_error_dict(issue))
        return PrintResult(success=True, data=self.monitor.status())

    def state(self) -> dict:
        return {**self.queue.get_state(), "spooler": self.monitor.status()}
