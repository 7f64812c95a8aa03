"""Data model of the task queue worker: jobs, filters, options and dashboard views."""

from __future__ import annotations

import dataclasses
import gc
import threading
import tracemalloc
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from .core import Locker, NoopLocker
from .cron_schedule import parse_duration

DEFAULT_INTERVAL = "1s"
JAKARTA = timezone(timedelta(hours=7), "WIB")
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

MBYTE = 1 << 20
GBYTE = 1 << 30


class JobStatus(str, Enum):
    """Life-cycle states of a job."""

    RETRYING = "RETRYING"
    FAILURE = "FAILURE"
    SUCCESS = "SUCCESS"
    QUEUEING = "QUEUEING"
    STOPPED = "STOPPED"


@dataclass
class RetryHistory:
    """The outcome of one run of a job."""

    error_stack: str = ""
    status: str = ""
    error: str = ""
    trace_id: str = ""
    start_at: datetime = ZERO_TIME
    end_at: datetime = ZERO_TIME


def _trace_link(tracing_dashboard, trace_id):
    if trace_id and tracing_dashboard:
        return f"{tracing_dashboard}/{trace_id}"
    return trace_id


@dataclass
class Job:
    """A unit of work queued for a task."""

    id: str = ""
    task_name: str = ""
    arguments: str = ""
    retries: int = 0
    max_retry: int = 0
    interval: str = ""
    created_at: datetime = ZERO_TIME
    finished_at: datetime = ZERO_TIME
    status: str = ""
    error: str = ""
    error_stack: str = ""
    trace_id: str = ""
    retry_histories: list[RetryHistory] = field(default_factory=list)
    next_retry_at: str = ""

    def with_display_values(self, tracing_dashboard, now=None):
        """A copy prepared for the dashboard.

        Trace ids become links, times are shown in Asia/Jakarta time, histories are
        ordered newest first and a queued job gets its next retry time.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        job = dataclasses.replace(self)
        job.trace_id = _trace_link(tracing_dashboard, self.trace_id)
        job.created_at = self.created_at.astimezone(JAKARTA)
        if job.status == JobStatus.QUEUEING.value:
            try:
                delay = parse_duration(job.interval)
            except ValueError:
                delay = None
            if delay is not None:
                job.next_retry_at = (now + delay).astimezone(JAKARTA).isoformat(timespec="seconds")

        histories = sorted(self.retry_histories, key=lambda h: h.end_at, reverse=True)
        job.retry_histories = [
            dataclasses.replace(
                history,
                start_at=history.start_at.astimezone(JAKARTA),
                end_at=history.end_at.astimezone(JAKARTA),
                trace_id=_trace_link(tracing_dashboard, history.trace_id),
            )
            for history in histories
        ]
        return job


_DEFAULT_BANNER = "Task Queue Worker"


@dataclass
class TaskOptions:
    """Settings for the task queue worker and its dashboard."""

    tracing_dashboard: str = "http://127.0.0.1:16686"
    max_client_subscriber: int = 5
    auto_remove_client_interval: timedelta = timedelta(minutes=30)
    dashboard_banner: str = _DEFAULT_BANNER
    dashboard_port: int = 8080
    debug_mode: bool = True
    locker: Locker = field(default_factory=NoopLocker)


@dataclass
class Filter:
    """Selection and paging of jobs."""

    page: int = 0
    limit: int = 0
    task_name: str = ""
    task_name_list: list[str] = field(default_factory=list)
    search: str | None = None
    job_id: str | None = None
    status: list[str] = field(default_factory=list)
    show_all: bool = False
    show_histories: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


@dataclass
class TaskDetail:
    """Job counts of a task per status."""

    failure: int = 0
    retrying: int = 0
    success: int = 0
    queueing: int = 0
    stopped: int = 0


@dataclass
class TaskResolver:
    """A task with its job counts."""

    name: str = ""
    module_name: str = ""
    total_jobs: int = 0
    detail: TaskDetail = field(default_factory=TaskDetail)


@dataclass
class MetaTaskResolver:
    """Paging and session data of the task list."""

    page: int = 0
    limit: int = 0
    total_records: int = 0
    total_pages: int = 0
    is_close_session: bool = False
    total_client_subscriber: int = 0


@dataclass
class TaskListResolver:
    """The task list sent to dashboard subscribers."""

    meta: MetaTaskResolver = field(default_factory=MetaTaskResolver)
    data: list[TaskResolver] = field(default_factory=list)


@dataclass
class MetaJobList:
    """Paging, session data and counts of a job list."""

    page: int = 0
    limit: int = 0
    total_records: int = 0
    total_pages: int = 0
    is_close_session: bool = False
    detail: TaskDetail = field(default_factory=TaskDetail)


@dataclass
class JobListResolver:
    """A page of jobs sent to dashboard subscribers."""

    meta: MetaJobList = field(default_factory=MetaJobList)
    data: list[Job] = field(default_factory=list)


@dataclass
class MemstatsResolver:
    """Memory and runtime figures of the process."""

    alloc: str = ""
    total_alloc: str = ""
    num_gc: int = 0
    num_goroutines: int = 0


class ClientLimitExceeded(Exception):
    """Raised when a dashboard subscriber list is full."""

    def __init__(self, message="client limit exceeded, please try again later"):
        super().__init__(message)


class TaskNotRegistered(LookupError):
    """Raised when a job names a task no module registered."""

    def __init__(self, task_name, registered=()):
        self.task_name = task_name
        self.registered = list(registered)
        super().__init__(
            f"task '{task_name}' unregistered, task must one of [{', '.join(self.registered)}]"
        )

    def __str__(self):
        return self.args[0]


def new_job(task_name, max_retry, args):
    """A fresh queued job for ``task_name``; ``args`` may be bytes or text."""
    if max_retry <= 0:
        raise ValueError("Max retry must greater than 0")
    arguments = bytes(args).decode("utf-8", errors="replace") if isinstance(args, (bytes, bytearray)) else str(args)
    return Job(
        id=str(uuid.uuid4()),
        task_name=task_name,
        arguments=arguments,
        max_retry=max_retry,
        interval=DEFAULT_INTERVAL,
        status=JobStatus.QUEUEING.value,
        created_at=datetime.now(timezone.utc),
    )


def _memory_usage():
    """Return ``(current_bytes, total_bytes)`` as well as the platform allows."""
    if tracemalloc.is_tracing():
        return tracemalloc.get_traced_memory()
    try:
        import resource
    except ImportError:
        return 0, 0
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss * 1024
    return peak, peak


def get_memstats():
    """Current memory figures of the process, formatted for the dashboard."""
    alloc, total_alloc = _memory_usage()
    if total_alloc > GBYTE:
        total_text = f"{total_alloc / GBYTE:.2f} GB"
    else:
        total_text = f"{total_alloc // MBYTE} MB"
    return MemstatsResolver(
        alloc=f"{alloc // MBYTE} MB",
        total_alloc=total_text,
        num_gc=sum(stat.get("collections", 0) for stat in gc.get_stats()),
        num_goroutines=threading.active_count(),
    )