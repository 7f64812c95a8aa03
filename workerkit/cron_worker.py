"""Cron scheduler worker: runs registered jobs on fixed or clock-aligned intervals."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta

from .core import AppServer, EventContext, Locker, NoopLocker, WorkerHandler, WorkerType
from .cron_schedule import parse_at_time, parse_cron_job_key, parse_duration

logger = logging.getLogger(__name__)


@dataclass
class CronOptions:
    """Settings for the cron worker."""

    max_goroutines: int = 10
    debug_mode: bool = True
    locker: Locker = field(default_factory=NoopLocker)


@dataclass
class CronJob:
    """A registered job and its schedule."""

    handler_name: str
    interval: str
    handler: WorkerHandler
    params: str = ""
    worker_index: int = 0
    current_duration: timedelta = timedelta(0)
    next_duration: timedelta | None = None
    next_run: float = field(default=0.0, repr=False, compare=False)


def _parse_interval(interval):
    """Return ``(first_duration, repeat_duration_or_None)`` for an interval string."""
    try:
        duration, next_duration = parse_duration(interval), None
    except ValueError:
        duration, next_duration = parse_at_time(interval)
    if duration <= timedelta(0):
        raise ValueError("non-positive interval for ticker")
    return duration, next_duration


class CronWorker(AppServer):
    """Runs the scheduler handlers of every module of a service."""

    def __init__(self, service, options=None):
        self._service = service
        self._opt = options if options is not None else CronOptions()
        self._cond = threading.Condition()
        self._jobs: list[CronJob] = []
        self._running: dict[str, int] = {}
        self._threads: set[threading.Thread] = set()
        self._stopping = False
        self._cancelled = threading.Event()

        self._opt.locker.reset(f"{service.name}:cron-worker-lock:*")
        for module in service.modules:
            for handler in module.worker_handlers(WorkerType.SCHEDULER):
                name, args, interval = parse_cron_job_key(handler.pattern)
                job = CronJob(handler_name=name, interval=interval, handler=handler, params=args)
                try:
                    self.add_job(job)
                except ValueError as err:
                    raise ValueError(f'Cron Worker: "{interval}" {err}') from err
                logger.info(
                    '[CRON-WORKER] (job name): "%s" (every): %-8s  --> (module): "%s"',
                    name, interval, module.name,
                )
        logger.info("Cron worker running with %d jobs", len(self._jobs))

    def add_job(self, job):
        """Validate and register ``job``; its first run is one interval from now."""
        with self._cond:
            if not job.handler.handler_funcs:
                raise ValueError("handler func cannot empty")
            if not job.handler_name:
                raise ValueError("handler name cannot empty")
            duration, next_duration = _parse_interval(job.interval)
            job.current_duration = duration
            job.next_duration = next_duration
            job.next_run = time.monotonic() + duration.total_seconds()
            job.worker_index = len(self._jobs)
            self._jobs.append(job)
            self._running.setdefault(job.handler_name, 0)
            self._cond.notify_all()
        return job

    def update_interval(self, job_number, new_interval):
        """Reschedule the job at position ``job_number`` with ``new_interval``."""
        with self._cond:
            if not 0 <= job_number < len(self._jobs):
                raise IndexError(f"job number {job_number} out of range")
            job = self._jobs[job_number]
            duration, next_duration = _parse_interval(new_interval)
            job.interval = new_interval
            job.current_duration = duration
            job.next_duration = next_duration
            job.next_run = time.monotonic() + duration.total_seconds()
            self._cond.notify_all()
        return job

    def active_jobs(self):
        """The registered jobs in registration order."""
        with self._cond:
            return list(self._jobs)

    def process_job(self, job):
        """Run the job's handlers once; return the event context, or None if locked elsewhere."""
        key = self._lock_key(job.handler_name)
        if self._opt.locker.is_locked(key):
            return None
        try:
            if self._opt.debug_mode:
                logger.info(
                    "Cron Scheduler: executing task '%s' (interval: %s)", job.handler_name, job.interval
                )
            context = EventContext(
                worker_type=WorkerType.SCHEDULER.value,
                handler_route=job.handler_name,
                header={"interval": job.interval},
            )
            context.write(job.params)
            for handler_func in job.handler.handler_funcs:
                try:
                    handler_func(context)
                except Exception as err:  # noqa: BLE001 - recorded on the context
                    context.error = err
                    logger.warning("cron job %s failed: %s", job.handler_name, err)
            return context
        finally:
            self._opt.locker.unlock(key)

    def serve(self):
        """Run jobs as they fall due until :meth:`shutdown` is called."""
        with self._cond:
            now = time.monotonic()
            for job in self._jobs:
                job.next_run = now + job.current_duration.total_seconds()
            while not self._stopping:
                now = time.monotonic()
                due = [job for job in self._jobs if job.next_run <= now]
                for job in due:
                    self._fire(job, now)
                upcoming = min((job.next_run for job in self._jobs), default=None)
                timeout = None if upcoming is None else max(0.0, upcoming - time.monotonic())
                self._cond.wait(timeout)

    def shutdown(self, timeout=None):
        """Stop scheduling and wait for running jobs; return True if all finished in time."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            if not self._jobs:
                logger.info("Stopping Cron Job Scheduler: SUCCESS")
                return True
            running = sum(self._running.values())
            if running:
                logger.info("Cron Job Scheduler: waiting %d job until done...", running)
            while self._threads:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            finished = not self._threads
        self._cancelled.set()
        logger.info("Stopping Cron Job Scheduler: SUCCESS")
        return finished

    def name(self):
        return WorkerType.SCHEDULER.value

    def _fire(self, job, now):
        if job.next_duration is not None:
            job.current_duration = job.next_duration
            job.next_duration = None
        job.next_run = now + job.current_duration.total_seconds()

        if self._running.get(job.handler_name, 0) >= self._opt.max_goroutines:
            return
        self._running[job.handler_name] = self._running.get(job.handler_name, 0) + 1
        thread = threading.Thread(
            target=self._run, args=(job,), daemon=True, name=f"cron-{job.handler_name}"
        )
        self._threads.add(thread)
        thread.start()

    def _run(self, job):
        try:
            if self._cancelled.is_set():
                logger.error("cron_scheduler > ctx root err: context canceled")
                return
            self.process_job(job)
        except Exception:  # noqa: BLE001 - a failing job must not stop the scheduler
            logger.exception("cron job %s crashed", job.handler_name)
        finally:
            with self._cond:
                self._running[job.handler_name] -= 1
                self._threads.discard(threading.current_thread())
                self._cond.notify_all()

    def _lock_key(self, handler_name):
        return f"{self._service.name}:cron-worker-lock:{handler_name}"