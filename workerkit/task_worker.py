"""Task queue worker: runs queued jobs per task, with retries and dashboard updates."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .core import AppServer, EventContext, WorkerType
from .cron_schedule import parse_duration
from .task_models import Filter, JobStatus, RetryHistory, TaskNotRegistered, TaskOptions, new_job
from .task_subscribers import SubscriberHub

logger = logging.getLogger(__name__)

_PENDING_PAGE_SIZE = 50


@dataclass
class _Task:
    name: str
    handler: object
    module_name: str
    due: float | None = None
    running: bool = False
    cancel: threading.Event | None = field(default=None, repr=False)


def _format_duration(delay):
    """Render ``delay`` the way duration strings are written: 1.5s, 2m0s, 1h0m0s, 300ms."""
    micros = delay // timedelta(microseconds=1)
    if micros == 0:
        return "0s"
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    if micros < 1000:
        return f"{sign}{micros}µs"
    if micros < 1_000_000:
        whole, frac = divmod(micros, 1000)
        fraction = f".{frac:03d}".rstrip("0") if frac else ""
        return f"{sign}{whole}{fraction}ms"
    hours, rest = divmod(micros, 3_600_000_000)
    minutes, rest = divmod(rest, 60_000_000)
    seconds, frac = divmod(rest, 1_000_000)
    fraction = f".{frac:06d}".rstrip("0") if frac else ""
    text = f"{hours}h" if hours else ""
    if hours or minutes:
        text += f"{minutes}m"
    return f"{sign}{text}{seconds}{fraction}s"


def _as_timedelta(delay):
    if isinstance(delay, timedelta):
        return delay
    if isinstance(delay, (int, float)) and not isinstance(delay, bool):
        return timedelta(seconds=delay)
    return None


def _as_text(payload):
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode("utf-8", errors="replace")
    return str(payload)


class TaskQueueWorker(AppServer):
    """Runs the task queue handlers of every module of a service.

    An error raised by a handler that carries a ``delay`` (a timedelta or seconds)
    asks for a retry after that delay while retries remain; it may also carry
    ``new_args_payload`` to replace the job arguments and ``stack_trace``.
    """

    def __init__(self, service, queue, persistent, options=None):
        self._service = service
        self._queue = queue
        self._persistent = persistent
        self._opt = options if options is not None else TaskOptions()
        self._cond = threading.Condition()
        self._tasks: dict[str, _Task] = {}
        self._threads: set[threading.Thread] = set()
        self._stopping = False
        self._cancelled = threading.Event()

        self._opt.locker.reset(f"{service.name}:task-queue-worker-lock:*")
        for module in service.modules:
            for handler in module.worker_handlers(WorkerType.TASK_QUEUE) or ():
                if handler.pattern in self._tasks:
                    raise ValueError(f"Task Queue Worker: task {handler.pattern} has been registered")
                self._tasks[handler.pattern] = _Task(
                    name=handler.pattern, handler=handler, module_name=str(module.name)
                )
                logger.info(
                    '[TASK-QUEUE-WORKER] (task name): %-15s  --> (module): "%s"',
                    f'"{handler.pattern}"', module.name,
                )

        self.subscribers = SubscriberHub(persistent, self._opt, list(self._tasks))

        if not self._tasks:
            logger.warning("Task Queue Worker: warning, no task provided")
        else:
            self._load_pending_jobs()
        logger.info(
            "Task Queue Worker running with %d task. Open [::]:%d for dashboard",
            len(self._tasks), self._opt.dashboard_port,
        )

    def add_job(self, task_name, max_retry, args):
        """Queue a new job for ``task_name`` and return it."""
        task = self._require_task(task_name)
        job = new_job(task_name, max_retry, args)
        self._queue.push_job(job)
        self._persistent.save_job(job)
        self._broadcast()
        self._register_job(job, task)
        return job

    def stop_all_job_in_task(self, task_name):
        """Stop scheduling ``task_name`` and cancel its running job; False if unknown."""
        with self._cond:
            task = self._tasks.get(task_name)
            if task is None:
                return False
            task.due = None
            if task.cancel is not None:
                task.cancel.set()
            self._cond.notify_all()
        return True

    def exec_job(self, task_name):
        """Run the next queued job of ``task_name``.

        Return the job as saved, or None when the queue is empty or the job is
        locked by another instance.
        """
        task = self._require_task(task_name)
        job_id = self._queue.pop_job(task_name)
        if not job_id:
            return None
        lock_key = self._lock_key(job_id)
        if self._opt.locker.is_locked(lock_key):
            return None
        try:
            return self._run_job(task, job_id)
        finally:
            self._opt.locker.unlock(lock_key)

    def serve(self):
        """Run jobs as their tasks fall due until :meth:`shutdown` is called."""
        with self._cond:
            while not self._stopping:
                now = time.monotonic()
                for task in self._tasks.values():
                    if task.due is not None and task.due <= now and not task.running:
                        self._trigger(task)
                waiting = [t.due for t in self._tasks.values() if t.due is not None and not t.running]
                timeout = max(0.0, min(waiting) - time.monotonic()) if waiting else None
                self._cond.wait(timeout)

    def shutdown(self, timeout=None):
        """Stop scheduling and wait for running jobs; return True if all finished in time."""
        if not self._tasks:
            logger.info("Stopping Task Queue Worker: SUCCESS")
            return True
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            self._stopping = True
            for task in self._tasks.values():
                task.due = None
            self._cond.notify_all()
            running = sum(1 for task in self._tasks.values() if task.running)
            if running:
                logger.info("Task Queue Worker: waiting %d job until done...", running)
            while self._threads:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            finished = not self._threads

        if finished:
            self._broadcast()
            self._cancelled.set()
        else:
            self._persistent.update_all_status("", [JobStatus.RETRYING], JobStatus.QUEUEING)
            self._broadcast()
        logger.info("Stopping Task Queue Worker: SUCCESS")
        return finished

    def name(self):
        return WorkerType.TASK_QUEUE.value

    def _require_task(self, task_name):
        task = self._tasks.get(task_name)
        if task is None:
            raise TaskNotRegistered(task_name, self._tasks)
        return task

    def _load_pending_jobs(self):
        for task_name in self._tasks:
            self._queue.clear(task_name)
        filter = Filter(
            task_name_list=list(self._tasks),
            status=[JobStatus.RETRYING.value, JobStatus.QUEUEING.value],
            limit=_PENDING_PAGE_SIZE,
        )
        total_pages = math.ceil(self._persistent.count_all_jobs(filter) / filter.limit)
        for page in range(1, total_pages + 1):
            filter.page = page
            for job in self._persistent.find_all_jobs(filter):
                task = self._tasks.get(job.task_name)
                if task is None:
                    continue
                self._queue.push_job(job)
                self._register_job(job, task)

    def _register_job(self, job, task):
        try:
            interval = parse_duration(job.interval)
        except ValueError:
            return
        if interval <= timedelta(0):
            return
        with self._cond:
            task.due = time.monotonic() + interval.total_seconds()
            self._cond.notify_all()

    def _register_next(self, task):
        next_id = self._queue.next_job(task.name)
        if not next_id:
            return
        try:
            next_job = self._persistent.find_job_by_id(next_id)
        except Exception as err:  # noqa: BLE001 - a vanished job is simply skipped
            logger.debug("task queue: next job %s unavailable: %s", next_id, err)
            return
        self._register_job(next_job, task)

    def _trigger(self, task):
        task.due = None
        task.running = True
        thread = threading.Thread(target=self._run_task, args=(task,), daemon=True, name=f"task-{task.name}")
        self._threads.add(thread)
        thread.start()

    def _run_task(self, task):
        try:
            if self._cancelled.is_set():
                logger.error("task_queue_worker > ctx root err: context canceled")
                return
            self.exec_job(task.name)
        except Exception:  # noqa: BLE001 - a failing job must not stop the worker
            logger.exception("task %s crashed", task.name)
        finally:
            with self._cond:
                task.running = False
                self._threads.discard(threading.current_thread())
                self._cond.notify_all()

    def _run_job(self, task, job_id):
        cancelled = threading.Event()
        with self._cond:
            task.cancel = cancelled
        try:
            try:
                job = self._persistent.find_job_by_id(job_id, "retry_histories")
            except Exception:  # noqa: BLE001 - treated as a missing job
                job = None
            if job is None or job.status == JobStatus.STOPPED.value:
                self._register_next(task)
                return job

            job.retries += 1
            job.status = JobStatus.RETRYING.value
            self._persistent.save_job(job)
            self._broadcast()
            if self._opt.debug_mode:
                logger.info("Task Queue Worker: executing task '%s'", job.task_name)
            self._register_next(task)

            start_at = datetime.now(timezone.utc)
            is_retry = False
            try:
                is_retry = self._execute(task, job, cancelled)
            except Exception as err:  # noqa: BLE001 - recorded on the job
                job.error = f"panic: {err}"
                job.status = JobStatus.FAILURE.value
            finally:
                job.finished_at = datetime.now(timezone.utc)
                history = RetryHistory(
                    status=job.status, error=job.error, trace_id=job.trace_id,
                    start_at=start_at, end_at=job.finished_at, error_stack=job.error_stack,
                )
                if is_retry:
                    job.status = JobStatus.QUEUEING.value
                self._persistent.save_job(job, history)
                self._broadcast()
            return job
        finally:
            with self._cond:
                if task.cancel is cancelled:
                    task.cancel = None

    def _execute(self, task, job, cancelled):
        """Run the handlers of ``task`` for ``job``; return True when the job was requeued."""
        context = EventContext(
            worker_type=WorkerType.TASK_QUEUE.value,
            handler_route=job.task_name,
            header={"retries": str(job.retries), "max_retry": str(job.max_retry), "interval": job.interval},
            key=job.id,
        )
        context.write(job.arguments)

        handler_funcs = list(task.handler.handler_funcs)
        if not handler_funcs:
            job.error = "No handler found for exec this job"
            job.status = JobStatus.FAILURE.value
            return False

        error = None
        try:
            handler_funcs[0](context)
        except Exception as err:  # noqa: BLE001 - recorded on the job
            error = err

        if cancelled.is_set() or self._cancelled.is_set():
            job.error = "Job has been stopped when running. Error: context canceled"
            job.status = JobStatus.STOPPED.value
            return False

        if error is not None:
            context.error = error
            job.error = str(error)
            job.status = JobStatus.FAILURE.value
            delay = _as_timedelta(getattr(error, "delay", None))
            if delay is not None:
                job.error_stack = str(getattr(error, "stack_trace", "") or "")
                if job.retries < job.max_retry and delay > timedelta(0):
                    job.interval = _format_duration(delay)
                    new_args = getattr(error, "new_args_payload", None)
                    if new_args:
                        job.arguments = _as_text(new_args)
                    self._register_job(job, task)
                    self._queue.push_job(job)
                    return True
                logger.error("TaskQueueWorker: GIVE UP: %s", job.task_name)
        else:
            job.status = JobStatus.SUCCESS.value
            job.error = ""

        for handler_func in handler_funcs[1:]:
            handler_func(context)
        return False

    def _broadcast(self):
        try:
            self.subscribers.broadcast_all()
        except Exception as err:  # noqa: BLE001 - dashboard updates are best effort
            logger.debug("task queue: broadcast failed: %s", err)

    def _lock_key(self, job_id):
        return f"{self._service.name}:task-queue-worker-lock:{job_id}"