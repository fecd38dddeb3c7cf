"""
APScheduler configuration and job scheduling for sbackup.

Every configured job runs forever: one backup cycle, then a pause of the
job's interval, then the next cycle. The pause is measured from the end of
a cycle, so a job never overlaps with itself. A failed cycle is logged and
the job keeps its schedule; nothing a cycle does can stop another job or
the process.

Shutdown aborts cycles that are still running. Their uploads are aborted,
so no partial object is left visible.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from sbackup.backup.executor import BackupExecutor, BackupCycleResult
from sbackup.config import JobConfig


class JobScheduler:
    """
    Drives one BackupExecutor per job on a fixed-delay schedule.

    Must be started from inside a running asyncio event loop.
    """

    def __init__(
        self,
        jobs: Iterable[JobConfig],
        storage,
        executor_factory: Optional[Callable[[JobConfig], BackupExecutor]] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the scheduler.

        Args:
            jobs: Validated job configurations
            storage: Object store shared by every job
            executor_factory: Builds the executor of a job (default: BackupExecutor)
            logger: Logger (default: module logger)
        """
        self.jobs = {job.name: job for job in jobs}
        self.storage = storage
        self.logger = logger or logging.getLogger(__name__)
        self.executor_factory = executor_factory or self._default_executor
        self.executors: Dict[str, BackupExecutor] = {}
        self.last_results: Dict[str, BackupCycleResult] = {}
        self._in_flight = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._stopping = False

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                'coalesce': True,  # Combine multiple pending instances into one
                'max_instances': 1,  # Only one cycle of a job at a time
                'misfire_grace_time': None  # A late cycle still runs
            },
            timezone='UTC'
        )

    def _default_executor(self, job: JobConfig) -> BackupExecutor:
        return BackupExecutor(job, self.storage, logger=self.logger)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Schedule the first cycle of every job immediately and start."""
        if self.scheduler.running:
            self.logger.info("Scheduler already running")
            return

        self._stopping = False
        for name, job in self.jobs.items():
            self.executors[name] = self.executor_factory(job)
            self._locks[name] = asyncio.Lock()
            self._schedule_cycle(name, datetime.now(timezone.utc))

        self.scheduler.start()
        self.logger.info("Scheduler started with %d backup jobs", len(self.jobs))
        for job in self.scheduler.get_jobs():
            self.logger.info("  - %s: %s", job.id, job.name)

    async def stop(self):
        """
        Stop scheduling and abort in-flight cycles.

        Waits until every aborted cycle has finished unwinding.
        """
        self._stopping = True

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            self.logger.warning("Aborting %d in-flight backup cycles", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

        self.logger.info("Scheduler stopped")

    def _schedule_cycle(self, name: str, run_date: datetime):
        job = self.jobs[name]
        self.scheduler.add_job(
            func=self._run_cycle,
            args=[name],
            trigger=DateTrigger(run_date=run_date, timezone='UTC'),
            id=f"backup_{name}",
            name=f"Backup: {name} (every {job.interval_seconds}s)",
            replace_existing=True
        )

    async def _run_cycle(self, name: str, reschedule: bool = True):
        """
        Run one cycle of a job and log the outcome.

        The next regular cycle is scheduled once this task is done, after
        APScheduler has released the finished instance. Only cancellation
        leaves this method with an exception.
        """
        task = asyncio.current_task()
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        if reschedule:
            task.add_done_callback(lambda _: self._schedule_next(name))

        async with self._locks[name]:
            try:
                result = await self.executors[name].execute()
            except Exception as e:
                self.logger.exception("Backup job %s crashed: %s", name, e)
                return

        self.last_results[name] = result
        if result.success:
            self.logger.info(
                "Backup job %s succeeded: uploaded %s, removed %d old backups",
                name, result.uploaded_path, len(result.deleted_paths)
            )
        else:
            self.logger.error(
                "Backup job %s failed at stage %s: %s",
                name, result.stage.value, result.error
            )

    def _schedule_next(self, name: str):
        if self._stopping:
            return
        job = self.jobs[name]
        next_run = datetime.now(timezone.utc) + timedelta(seconds=job.interval_seconds)
        self._schedule_cycle(name, next_run)
        self.logger.debug("Next backup of %s at %s", name, next_run.isoformat())

    def trigger_backup_now(self, name: str):
        """
        Run one extra cycle of a job right away.

        Does not change the job's regular schedule.

        Raises:
            ValueError: If the job is unknown
            RuntimeError: If the scheduler is not running
        """
        if name not in self.jobs:
            raise ValueError(f"Backup job not found: {name}")
        if not self.scheduler.running:
            raise RuntimeError("Scheduler not running")

        now = datetime.now(timezone.utc)
        self.scheduler.add_job(
            func=self._run_cycle,
            args=[name, False],
            trigger=DateTrigger(run_date=now, timezone='UTC'),
            id=f"manual_{name}_{uuid.uuid4().hex}",
            name=f"Manual: {name}",
            replace_existing=False
        )
        self.logger.info("Manually triggered backup job: %s", name)

    def get_scheduled_jobs(self) -> List[dict]:
        """
        Get list of all scheduled jobs.

        Returns:
            List of dicts with job information
        """
        jobs = []

        for job in self.scheduler.get_jobs():
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'trigger': str(job.trigger)
            })

        return jobs
