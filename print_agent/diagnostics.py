import logging

from print_agent.audit import audit
from print_agent.escpos import decode_text, diagnostic_payload
from print_agent.models import DeviceStatus, JobType, MethodOutcome, PrintJob

logger = logging.getLogger(__name__)


class DiagnosticRunner:
    """Prints the fixed ruler/alphabet page so an operator can read off the real width."""

    def __init__(self, engine, registry):
        self.engine = engine
        self.registry = registry

    async def run_diagnostic(self, name: str):
        job = PrintJob(target_printer=name, job_type=JobType.DIAGNOSTIC)
        result = await self.engine.submit(job)

        if isinstance(result, MethodOutcome):
            result.output = "\n".join(decode_text(diagnostic_payload(), "ascii"))
            device = self.registry.get(name)
            if device is not None:
                result.details = (f"{result.details}; OS reports {device.page_width}mm paper, "
                                  f"compare with the last full ruler column").lstrip("; ")
        else:
            # the engine leaves an unreachable device disconnected; anything else is back to unknown
            device = self.registry.get(name)
            if device is not None and device.status == DeviceStatus.TESTING:
                self.registry.mark(name, DeviceStatus.UNKNOWN)

        audit("diagnostic_run", {
            "printer": name,
            "job_id": job.id,
            "success": isinstance(result, MethodOutcome),
            "method": job.method_used,
        })
        return result
