import asyncio
import logging
from collections import deque
from typing import Optional

from print_agent.audit import audit
from print_agent.env import JOB_HISTORY_MAX, QUEUE_MAX
from print_agent.errors import OperationFailure, ValidationFailure, classify_exception
from print_agent.models import JobStatus, MethodOutcome, PrintJob

logger = logging.getLogger(__name__)

_FINISHED = (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class PrintQueue:
    """FIFO hand-off between callers and the escalation engine.

    The worker dispatches each job as its own task; the engine serializes
    jobs per printer, so different printers print concurrently.
    """

    def __init__(self, engine, max_queued: int = QUEUE_MAX, history_max: int = JOB_HISTORY_MAX):
        self.engine = engine
        self.max_queued = max_queued
        self.history_max = history_max
        self._jobs = deque()          # FIFO of job ids not yet dispatched
        self._job_index = {}          # job_id -> PrintJob
        self._results = {}            # job_id -> Future[MethodOutcome | PrinterError]
        self._tasks = set()
        self._wakeup: Optional[asyncio.Event] = None
        self._worker_task: Optional[asyncio.Task] = None

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self):
        if self._worker_task is None or self._worker_task.done():
            self._wakeup = asyncio.Event()
            self._worker_task = asyncio.get_running_loop().create_task(self._run_loop())

    async def stop(self):
        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    # -----------------------------
    # Queries
    # -----------------------------
    def _active(self) -> int:
        return sum(1 for f in self._results.values() if not f.done())

    def get_state(self):
        statuses = [j.status for j in self._job_index.values()]
        return {
            "queued": statuses.count(JobStatus.QUEUED),
            "in_flight": statuses.count(JobStatus.IN_FLIGHT),
            "jobs_total": len(self._job_index),
            "running": self.running,
        }

    def get_job(self, job_id: str) -> Optional[PrintJob]:
        return self._job_index.get(job_id)

    def result_of(self, job_id: str):
        future = self._results.get(job_id)
        if future is None or not future.done():
            return None
        return future.result()

    # -----------------------------
    # Submission
    # -----------------------------
    def enqueue(self, job: PrintJob) -> PrintJob:
        if self._active() >= self.max_queued:
            raise RuntimeError("Print queue is full, try again shortly")
        self.start()
        self._jobs.append(job.id)
        self._job_index[job.id] = job
        self._results[job.id] = asyncio.get_running_loop().create_future()
        self._wakeup.set()
        audit("job_queued", {"job_id": job.id, "printer": job.target_printer, "job_type": job.job_type.value})
        return job

    def enqueue_many(self, jobs: list[PrintJob]) -> list[PrintJob]:
        """All or nothing: a batch that does not fit is rejected before any job is queued."""
        if self._active() + len(jobs) > self.max_queued:
            raise RuntimeError("Print queue is full, try again shortly")
        return [self.enqueue(job) for job in jobs]

    async def wait(self, job_id: str):
        return await asyncio.shield(self._results[job_id])

    async def run(self, job: PrintJob):
        self.enqueue(job)
        return await self.wait(job.id)

    async def run_batch(self, jobs: list[PrintJob], op: str = "batch"):
        """Run jobs concurrently; returns (results, OperationFailure or None)."""
        self.enqueue_many(jobs)
        results = await asyncio.gather(*(self.wait(j.id) for j in jobs))

        errors = [r for r in results if not isinstance(r, MethodOutcome)]
        if not errors:
            return results, None
        failure = OperationFailure(
            op=op,
            errors=errors,
            success_count=len(jobs) - len(errors),
            total_count=len(jobs),
        )
        audit("batch_failed", {"op": op, "success_count": failure.success_count,
                               "total_count": failure.total_count, "summary": failure.error_summary()})
        return results, failure

    def cancel(self, job_id: str) -> bool:
        job = self._job_index.get(job_id)
        if job is None or job.status != JobStatus.QUEUED:
            return False

        if job_id in self._jobs:
            self._jobs.remove(job_id)
            job.status = JobStatus.CANCELLED
            self._finish(job, ValidationFailure(device=job.target_printer, reason="job cancelled before it started"))
        elif not self.engine.cancel(job_id):
            # dispatched but not yet waiting on the printer lock; the engine
            # checks the status once it holds the lock
            job.status = JobStatus.CANCELLED
        audit("job_cancelled", {"job_id": job_id, "printer": job.target_printer})
        return True

    # -----------------------------
    # Worker
    # -----------------------------
    def _finish(self, job: PrintJob, result):
        future = self._results.get(job.id)
        if future is not None and not future.done():
            future.set_result(result)
        self._prune()

    def _prune(self):
        excess = len(self._job_index) - self.history_max
        if excess <= 0:
            return
        for job_id in [i for i, j in self._job_index.items() if j.status in _FINISHED][:excess]:
            del self._job_index[job_id]
            self._results.pop(job_id, None)

    async def _execute(self, job: PrintJob):
        try:
            result = await self.engine.submit(job)
        except Exception as e:
            logger.exception("job %s crashed in the engine", job.id)
            result = classify_exception(e, device=job.target_printer, operation="print job")
            job.status = JobStatus.FAILED
            job.last_error = result

        if isinstance(result, MethodOutcome):
            audit("job_done", {"job_id": job.id, "method": result.method_used, "attempts": job.attempt_count})
        elif job.status == JobStatus.CANCELLED:
            pass  # audited by cancel()
        else:
            audit("job_failed", {"job_id": job.id, "attempts": job.attempt_count,
                                 "tried": job.tried_methods, "error": result.model_dump(mode="json")})
        self._finish(job, result)

    async def _run_loop(self):
        while True:
            if not self._jobs:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            job_id = self._jobs.popleft()
            job = self._job_index.get(job_id)
            if not job:
                continue
            task = asyncio.create_task(self._execute(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
