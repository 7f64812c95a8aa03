"""Queue backends holding the ids of pending jobs per task."""

from __future__ import annotations

import json
import re
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime

from .task_models import ZERO_TIME, Job, RetryHistory


class QueueStorage(ABC):
    """First-in first-out storage of job ids, one queue per task."""

    @abstractmethod
    def push_job(self, job):
        """Append the job's id to its task's queue."""

    @abstractmethod
    def pop_job(self, task_name):
        """Remove and return the first job id, or "" if the queue is empty."""

    @abstractmethod
    def next_job(self, task_name):
        """Return the first job id without removing it, or "" if the queue is empty."""

    @abstractmethod
    def clear(self, task_name):
        """Drop every job id queued for ``task_name``."""


class InMemQueue(QueueStorage):
    """Queues kept in process memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self._queues: dict[str, deque[str]] = {}

    def push_job(self, job):
        with self._lock:
            self._queues.setdefault(job.task_name, deque()).append(job.id)

    def pop_job(self, task_name):
        with self._lock:
            pending = self._queues.get(task_name)
            return pending.popleft() if pending else ""

    def next_job(self, task_name):
        with self._lock:
            pending = self._queues.get(task_name)
            return pending[0] if pending else ""

    def clear(self, task_name):
        with self._lock:
            self._queues.pop(task_name, None)


def _text(value):
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


_FRACTION = re.compile(r"\.(\d+)")


def _parse_time(value):
    if not isinstance(value, str) or not value:
        return ZERO_TIME
    text = value.replace("Z", "+00:00").replace("z", "+00:00")
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return ZERO_TIME


def _str(data, name):
    value = data.get(name, "")
    return value if isinstance(value, str) else ""


def _int(data, name):
    value = data.get(name, 0)
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _job_from_json(raw):
    """Decode a stored job; unreadable input gives an empty job."""
    try:
        data = json.loads(_text(raw))
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    histories = data.get("retry_histories")
    return Job(
        id=_str(data, "_id"),
        task_name=_str(data, "task_name"),
        arguments=_str(data, "arguments"),
        retries=_int(data, "retries"),
        max_retry=_int(data, "max_retry"),
        interval=_str(data, "interval"),
        created_at=_parse_time(data.get("created_at")),
        finished_at=_parse_time(data.get("finished_at")),
        status=_str(data, "status"),
        error=_str(data, "error"),
        error_stack=_str(data, "error_stack"),
        trace_id=_str(data, "trace_id"),
        retry_histories=[
            RetryHistory(
                error_stack=_str(item, "error_stack"),
                status=_str(item, "status"),
                error=_str(item, "error"),
                trace_id=_str(item, "trace_id"),
                start_at=_parse_time(item.get("start_at")),
                end_at=_parse_time(item.get("end_at")),
            )
            for item in (histories if isinstance(histories, list) else [])
            if isinstance(item, dict)
        ],
    )


class RedisQueue(QueueStorage):
    """Queues kept as redis lists named after their task."""

    def __init__(self, client):
        if client is None:
            raise ValueError("Task queue backend require redis")
        self._client = client

    def get_all_jobs(self, task_name):
        """Every entry of the task's list, decoded as a job."""
        return [_job_from_json(item) for item in self._client.lrange(task_name, 0, -1) or []]

    def push_job(self, job):
        self._client.rpush(job.task_name, job.id)

    def pop_job(self, task_name):
        return _text(self._client.lpop(task_name))

    def next_job(self, task_name):
        return _text(self._client.lindex(task_name, 0))

    def clear(self, task_name):
        self._client.delete(task_name)