"""Dashboard subscribers of the task queue worker and the broadcasts they receive."""

from __future__ import annotations

import dataclasses
import logging
import math
import queue
import threading
from dataclasses import dataclass

from .task_models import (
    ClientLimitExceeded,
    Filter,
    JobListResolver,
    MetaJobList,
    MetaTaskResolver,
    TaskDetail,
    TaskListResolver,
    TaskOptions,
)

logger = logging.getLogger(__name__)


@dataclass
class _JobListSubscriber:
    outbox: queue.Queue
    filter: Filter


@dataclass
class _JobDetailSubscriber:
    outbox: queue.Queue
    job_id: str


class SubscriberHub:
    """Keeps dashboard clients and pushes fresh views to them.

    Each registration returns a queue on which the client receives updates.
    """

    def __init__(self, persistent, options=None, task_names=None):
        self.persistent = persistent
        self.options = options if options is not None else TaskOptions()
        self.task_names = task_names if task_names is not None else []
        self._lock = threading.Lock()
        self._task_list: dict[str, queue.Queue] = {}
        self._job_list: dict[str, _JobListSubscriber] = {}
        self._job_detail: dict[str, _JobDetailSubscriber] = {}

    def _check_room(self, subscribers):
        if len(subscribers) >= self.options.max_client_subscriber:
            raise ClientLimitExceeded()

    def register_task_list(self, client_id):
        """Subscribe ``client_id`` to the task list; raise ClientLimitExceeded when full."""
        with self._lock:
            self._check_room(self._task_list)
            outbox: queue.Queue = queue.Queue()
            self._task_list[client_id] = outbox
            return outbox

    def remove_task_list(self, client_id):
        """Drop the task list subscription of ``client_id``."""
        with self._lock:
            self._task_list.pop(client_id, None)

    def register_job_list(self, client_id, filter):
        """Subscribe ``client_id`` to the jobs matching ``filter``."""
        with self._lock:
            self._check_room(self._job_list)
            outbox: queue.Queue = queue.Queue()
            self._job_list[client_id] = _JobListSubscriber(outbox=outbox, filter=filter)
            return outbox

    def remove_job_list(self, client_id):
        """Drop the job list subscription of ``client_id``."""
        with self._lock:
            self._job_list.pop(client_id, None)

    def register_job_detail(self, client_id, job_id):
        """Subscribe ``client_id`` to the details of ``job_id``."""
        with self._lock:
            self._check_room(self._job_detail)
            outbox: queue.Queue = queue.Queue()
            self._job_detail[client_id] = _JobDetailSubscriber(outbox=outbox, job_id=job_id)
            return outbox

    def remove_job_detail(self, client_id):
        """Drop the job detail subscription of ``client_id``."""
        with self._lock:
            self._job_detail.pop(client_id, None)

    def total_clients(self):
        """Number of subscriptions of every kind."""
        with self._lock:
            return len(self._task_list) + len(self._job_list) + len(self._job_detail)

    def broadcast_all(self):
        """Send fresh views to every kind of subscriber that has clients."""
        with self._lock:
            has_task_list = bool(self._task_list)
            has_job_list = bool(self._job_list)
            has_job_detail = bool(self._job_detail)
        if has_task_list:
            self.broadcast_task_list()
        if has_job_list:
            self.broadcast_job_list()
        if has_job_detail:
            self.broadcast_job_detail()

    def broadcast_task_list(self):
        """Send the job counts of every task to the task list subscribers."""
        data = self.persistent.aggregate_all_task_jobs(Filter(task_name_list=list(self.task_names)))
        resolver = TaskListResolver(
            meta=MetaTaskResolver(total_client_subscriber=self.total_clients()), data=data
        )
        with self._lock:
            outboxes = list(self._task_list.values())
        for outbox in outboxes:
            outbox.put(resolver)

    def broadcast_job_list(self):
        """Send each job list subscriber the page of jobs its filter selects."""
        with self._lock:
            subscribers = list(self._job_list.values())
        for subscriber in subscribers:
            jobs = self.persistent.find_all_jobs(subscriber.filter)
            counting = dataclasses.replace(subscriber.filter, task_name_list=[subscriber.filter.task_name])
            counters = self.persistent.aggregate_all_task_jobs(counting)

            meta = MetaJobList(page=subscriber.filter.page, limit=subscriber.filter.limit)
            if len(counters) == 1:
                meta.detail = dataclasses.replace(counters[0].detail) if counters[0].detail else TaskDetail()
                meta.total_records = counters[0].total_jobs
            meta.total_pages = math.ceil(meta.total_records / meta.limit) if meta.limit > 0 else 0
            subscriber.outbox.put(JobListResolver(meta=meta, data=jobs))

    def broadcast_job_detail(self):
        """Send each job detail subscriber its job; drop subscribers whose job is gone."""
        with self._lock:
            subscribers = list(self._job_detail.items())
        for client_id, subscriber in subscribers:
            try:
                detail = self.persistent.find_job_by_id(subscriber.job_id)
            except Exception as err:  # noqa: BLE001 - a missing job ends the subscription
                logger.debug("job detail %s unavailable: %s", subscriber.job_id, err)
                detail = None
            if detail is None:
                self.remove_job_detail(client_id)
                continue
            subscriber.outbox.put(detail.with_display_values(self.options.tracing_dashboard))