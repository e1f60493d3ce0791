"""
Printer spooler service.

Polls the OS print queue on a fixed interval (the OS does not push queue
events reliably) and repairs stuck jobs: cancel them one by one first, then,
if anything is left or the spooler service is down, stop the service, clear
the spool directory and start it again. Restarts are rate limited by a
cooldown. Repair is best effort: a failure is kept as ``last_issue`` and
never blocks job submission.

The monitor only talks to the OS queue through its inspector. It never
touches PrintJob objects.
"""
import asyncio
import logging
import platform
import time
from typing import Optional

from print_agent.audit import audit
from print_agent.env import (
    SPOOLER_AUTO_REPAIR,
    SPOOLER_POLL_SECONDS,
    SPOOLER_RESTART_COOLDOWN_SECONDS,
    STUCK_JOB_SECONDS,
)
from print_agent.errors import ConfigurationIssue
from print_agent.printers.base import PrinterProvider, QueueJob, SpoolerRepair

logger = logging.getLogger(__name__)

if platform.system() == "Windows":
    MANUAL_RESET_STEPS = (
        "Open services.msc and stop 'Print Spooler', delete every file in "
        r"C:\Windows\System32\spool\PRINTERS, start 'Print Spooler' again, then reprint."
    )
else:
    MANUAL_RESET_STEPS = (
        "Run 'cancel -a -x' to purge the CUPS queue, restart CUPS with "
        "'sudo systemctl restart cups', then reprint."
    )


class SpoolerMonitor:
    def __init__(
        self,
        inspector: PrinterProvider,
        poll_seconds: float = SPOOLER_POLL_SECONDS,
        stuck_seconds: float = STUCK_JOB_SECONDS,
        cooldown_seconds: float = SPOOLER_RESTART_COOLDOWN_SECONDS,
        auto_repair: bool = SPOOLER_AUTO_REPAIR,
        clock=time.time,
    ):
        self.inspector = inspector
        self.poll_seconds = poll_seconds
        self.stuck_seconds = stuck_seconds
        self.cooldown_seconds = cooldown_seconds
        self.auto_repair = auto_repair
        self.clock = clock

        self.last_issue: Optional[ConfigurationIssue] = None
        self.last_repair: Optional[dict] = None
        self.last_check: Optional[float] = None
        self._spooler_running: Optional[bool] = None
        self._queue_length = 0
        self._first_seen: dict[tuple, float] = {}
        self._last_restart: Optional[float] = None
        self._pass_lock = asyncio.Lock()
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    # -----------------------------
    # Lifecycle
    # -----------------------------
    @property
    def monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    def start_monitoring(self):
        if self.monitoring:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("spooler monitor started, polling every %ss", self.poll_seconds)

    async def stop_monitoring(self):
        if not self.monitoring:
            return
        self._stop.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("spooler monitor stopped")

    async def _loop(self):
        while not self._stop.is_set():
            try:
                await self.check_once()
            except Exception:
                # a broken pass must not end monitoring
                logger.exception("spooler check failed")
            try:
                await asyncio.wait_for(self._stop.wait(), self.poll_seconds)
            except asyncio.TimeoutError:
                pass

    # -----------------------------
    # Detection
    # -----------------------------
    def is_stuck(self, job: QueueJob, now: float) -> bool:
        if job.deleting or job.error or job.blocked:
            return True
        since = job.submitted_at or self._first_seen.get(job.key, now)
        return now - since >= self.stuck_seconds

    def _observe(self, jobs: list[QueueJob], now: float) -> list[QueueJob]:
        current = {j.key for j in jobs}
        for key in list(self._first_seen):
            if key not in current:
                del self._first_seen[key]
        for job in jobs:
            self._first_seen.setdefault(job.key, now)
        self._queue_length = len(jobs)
        return [j for j in jobs if self.is_stuck(j, now)]

    def cooldown_remaining(self) -> float:
        if self._last_restart is None:
            return 0.0
        return max(0.0, self._last_restart + self.cooldown_seconds - self.clock())

    async def _inspect(self):
        running = await asyncio.to_thread(self.inspector.spooler_running)
        jobs = await asyncio.to_thread(self.inspector.list_jobs)
        self._spooler_running = running
        self.last_check = self.clock()
        return running, jobs

    async def check_once(self) -> Optional[ConfigurationIssue]:
        """One polling pass. A pass already in progress makes this a no-op."""
        if self._pass_lock.locked():
            logger.debug("spooler pass already running, skipping")
            return self.last_issue
        async with self._pass_lock:
            try:
                running, jobs = await self._inspect()
            except Exception as e:
                return self._record_issue("could not read the print queue state", e)

            stuck = self._observe(jobs, self.clock())
            if running and not stuck:
                self.last_issue = None
                return None

            logger.warning("spooler running=%s, %d stuck job(s)", running, len(stuck))
            audit("spooler_stuck_jobs", {
                "running": running,
                "jobs": [{"printer": j.printer, "job_id": j.job_id, "status": j.raw_status} for j in stuck],
            })
            if not self.auto_repair:
                return self._record_issue(f"{len(stuck)} stuck print job(s), automatic repair is disabled")
            return await self._repair(stuck, running, respect_cooldown=True)

    # -----------------------------
    # Repair
    # -----------------------------
    def _record_issue(self, issue: str, cause=None) -> ConfigurationIssue:
        self.last_issue = ConfigurationIssue(issue=issue, suggested_fix=MANUAL_RESET_STEPS, cause=cause)
        logger.warning("spooler: %s", issue)
        return self.last_issue

    async def _cancel_individually(self, stuck: list[QueueJob]) -> list[QueueJob]:
        for job in stuck:
            try:
                await asyncio.to_thread(self.inspector.cancel_job, job)
            except Exception as e:
                logger.info("could not cancel %s job %s: %s", job.printer, job.job_id, e)
        try:
            still = {j.key for j in await asyncio.to_thread(self.inspector.list_jobs)}
        except Exception as e:
            logger.info("could not re-read the queue after cancelling: %s", e)
            return stuck
        return [j for j in stuck if j.key in still]

    async def _repair(self, stuck, running, respect_cooldown):
        remaining = await self._cancel_individually(stuck) if stuck else []
        cancelled = len(stuck) - len(remaining)
        repair = {"at": self.clock(), "cancelled": cancelled, "restarted": False, "purged": 0}

        if running and not remaining:
            self.last_repair = repair
            self.last_issue = None
            audit("spooler_repaired", repair)
            return None

        if respect_cooldown and self.cooldown_remaining() > 0:
            return self._record_issue(
                f"{len(remaining)} stuck print job(s) remain, spooler restart on cooldown "
                f"for {int(self.cooldown_remaining())}s"
            )

        self._last_restart = self.clock()
        cause = None
        try:
            result = await asyncio.to_thread(self.inspector.restart_spooler, True)
        except Exception as e:
            cause = e
            result = SpoolerRepair(errors=[str(e)])

        repair.update(restarted=result.started, purged=result.purged)
        self.last_repair = repair
        if not result.ok:
            audit("spooler_repair_failed", {**repair, "errors": result.errors})
            return self._record_issue("automatic spooler repair failed: " + "; ".join(result.errors), cause)

        self._spooler_running = True
        self._first_seen.clear()
        self.last_issue = None
        audit("spooler_repaired", repair)
        logger.info("spooler restarted, %d spool file(s) purged", result.purged)
        return None

    async def repair_now(self) -> Optional[ConfigurationIssue]:
        """Operator-requested optimise: clear stuck jobs and restart when unhealthy."""
        async with self._pass_lock:
            try:
                running, jobs = await self._inspect()
            except Exception as e:
                return self._record_issue("could not read the print queue state", e)
            stuck = self._observe(jobs, self.clock())
            return await self._repair(stuck, running, respect_cooldown=False)

    def status(self) -> dict:
        return {
            "running": self._spooler_running,
            "queue_length": self._queue_length,
            "monitoring": self.monitoring,
            "poll_seconds": self.poll_seconds,
            "last_check": self.last_check,
            "last_repair": self.last_repair,
            "cooldown_remaining": self.cooldown_remaining(),
            "last_issue": self.last_issue.model_dump(mode="json") if self.last_issue else None,
        }
