"""Job storage for the task queue worker."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum

from bson import ObjectId
from pymongo.errors import PyMongoError

from .cron_schedule import parse_duration
from .task_models import JAKARTA, ZERO_TIME, Job, JobStatus, RetryHistory, TaskDetail, TaskResolver

logger = logging.getLogger(__name__)

MONGO_COLLECTION = "task_queue_worker_jobs"

_INDEXES = (
    ([("_id", 1)], {"unique": True}),
    ([("task_name", 1)], {}),
    ([("status", 1)], {}),
    ([("created_at", 1)], {}),
    ([("arguments", "text")], {}),
    ([("task_name", 1), ("status", 1)], {}),
    ([("task_name", 1), ("status", 1), ("created_at", 1)], {}),
)

_COUNTED_STATUSES = {
    "success": JobStatus.SUCCESS,
    "queueing": JobStatus.QUEUEING,
    "retrying": JobStatus.RETRYING,
    "failure": JobStatus.FAILURE,
    "stopped": JobStatus.STOPPED,
}


class Persistent(ABC):
    """Durable storage of jobs and their run histories."""

    @abstractmethod
    def find_all_jobs(self, filter):
        """Jobs matching ``filter``, newest first, without their histories."""

    @abstractmethod
    def find_job_by_id(self, job_id, *args):
        """The job with ``job_id``; ``args`` name fields to leave out. Raise LookupError if absent."""

    @abstractmethod
    def count_all_jobs(self, filter):
        """Number of jobs matching ``filter``."""

    @abstractmethod
    def aggregate_all_task_jobs(self, filter):
        """Job counts per status for every task in ``filter.task_name_list``."""

    @abstractmethod
    def save_job(self, job, *args):
        """Insert or update ``job``, appending the retry histories given in ``args``."""

    @abstractmethod
    def update_all_status(self, task_name, current_status, updated_status):
        """Move jobs of ``task_name`` in any of ``current_status`` to ``updated_status``."""

    @abstractmethod
    def clean_job(self, task_name):
        """Delete the finished jobs of ``task_name``."""

    @abstractmethod
    def delete_job(self, job_id):
        """Delete the job with ``job_id``."""


def _status_value(status):
    return status.value if isinstance(status, Enum) else str(status)


def _aware(value):
    if not isinstance(value, datetime):
        return ZERO_TIME
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _str(doc, name):
    value = doc.get(name, "")
    return value if isinstance(value, str) else ""


def _int(doc, name):
    value = doc.get(name, 0)
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _history_from_doc(doc):
    return RetryHistory(
        error_stack=_str(doc, "error_stack"),
        status=_str(doc, "status"),
        error=_str(doc, "error"),
        trace_id=_str(doc, "trace_id"),
        start_at=_aware(doc.get("start_at")),
        end_at=_aware(doc.get("end_at")),
    )


def _job_from_doc(doc):
    histories = doc.get("retry_histories")
    raw_id = doc.get("_id", "")
    return Job(
        id=raw_id if isinstance(raw_id, str) else str(raw_id),
        task_name=_str(doc, "task_name"),
        arguments=_str(doc, "arguments"),
        retries=_int(doc, "retries"),
        max_retry=_int(doc, "max_retry"),
        interval=_str(doc, "interval"),
        created_at=_aware(doc.get("created_at")),
        finished_at=_aware(doc.get("finished_at")),
        status=_str(doc, "status"),
        error=_str(doc, "error"),
        error_stack=_str(doc, "error_stack"),
        trace_id=_str(doc, "trace_id"),
        retry_histories=[
            _history_from_doc(item)
            for item in (histories if isinstance(histories, list) else [])
            if isinstance(item, dict)
        ],
    )


def _history_to_doc(history):
    return {
        "error_stack": history.error_stack,
        "status": history.status,
        "error": history.error,
        "trace_id": history.trace_id,
        "start_at": history.start_at,
        "end_at": history.end_at,
    }


def _job_to_doc(job):
    return {
        "_id": job.id,
        "task_name": job.task_name,
        "arguments": job.arguments,
        "retries": job.retries,
        "max_retry": job.max_retry,
        "interval": job.interval,
        "created_at": job.created_at,
        "finished_at": job.finished_at,
        "status": job.status,
        "error": job.error,
        "trace_id": job.trace_id,
        "retry_histories": [_history_to_doc(h) for h in job.retry_histories],
    }


class MongoPersistent(Persistent):
    """Jobs kept in a MongoDB collection.

    ``tracing_dashboard`` turns trace ids into links; ``module_of`` maps a task
    name to the module that registered it.
    """

    def __init__(self, db, tracing_dashboard="", module_of=None):
        self._collection = db[MONGO_COLLECTION]
        self._tracing_dashboard = tracing_dashboard
        self._module_of = module_of if module_of is not None else (lambda _name: "")
        for keys, kwargs in _INDEXES:
            try:
                self._collection.create_index(keys, **kwargs)
            except PyMongoError as err:
                logger.debug("task store: index %s not created: %s", keys, err)

    def build_filter(self, filter):
        """The MongoDB query selecting the jobs that ``filter`` describes."""
        conditions = []
        if filter.task_name:
            conditions.append({"task_name": filter.task_name})
        elif filter.task_name_list:
            conditions.append({"task_name": {"$in": list(filter.task_name_list)}})
        if filter.job_id:
            conditions.append({"_id": filter.job_id})
        if filter.search:
            conditions.append({"arguments": {"$regex": filter.search, "$options": "i"}})
        if filter.status:
            conditions.append({"status": {"$in": list(filter.status)}})
        if _is_set(filter.start_date) and _is_set(filter.end_date):
            conditions.append({"created_at": {"$gte": filter.start_date, "$lte": filter.end_date}})
        return {"$and": conditions}

    def find_all_jobs(self, filter):
        options = {"projection": {"retry_histories": 0}, "sort": [("created_at", -1)]}
        if not filter.show_all:
            options["limit"] = filter.limit
            options["skip"] = (filter.page - 1) * filter.limit
        try:
            docs = list(self._collection.find(self.build_filter(filter), **options))
        except PyMongoError as err:
            logger.error("task store: find jobs failed: %s", err)
            return []

        now = datetime.now(timezone.utc)
        jobs = []
        for doc in docs:
            job = _job_from_doc(doc)
            if job.status == JobStatus.SUCCESS.value:
                job.error = ""
            if job.status == JobStatus.QUEUEING.value:
                try:
                    delay = parse_duration(job.interval)
                except ValueError:
                    delay = None
                if delay is not None:
                    job.next_retry_at = (now + delay).astimezone(JAKARTA).isoformat(timespec="seconds")
            if job.trace_id and self._tracing_dashboard:
                job.trace_id = f"{self._tracing_dashboard}/{job.trace_id}"
            job.created_at = job.created_at.astimezone(JAKARTA)
            job.finished_at = job.finished_at.astimezone(JAKARTA)
            job.retries = min(job.retries, job.max_retry)
            jobs.append(job)
        return jobs

    def find_job_by_id(self, job_id, *args):
        projection = {name: 0 for name in args} or None
        doc = self._collection.find_one({"_id": job_id}, projection=projection)
        if doc is None:
            raise LookupError(f"job {job_id!r} not found")
        return _job_from_doc(doc)

    def count_all_jobs(self, filter):
        try:
            return int(self._collection.count_documents(self.build_filter(filter)))
        except PyMongoError as err:
            logger.error("task store: count jobs failed: %s", err)
            return 0

    def aggregate_all_task_jobs(self, filter):
        pipeline = [
            {"$match": self.build_filter(filter)},
            {
                "$project": {
                    "task_name": "$task_name",
                    **{
                        name: {"$cond": {"if": {"$eq": ["$status", status.value]}, "then": 1, "else": 0}}
                        for name, status in _COUNTED_STATUSES.items()
                    },
                }
            },
            {
                "$group": {
                    "_id": "$task_name",
                    **{name: {"$sum": f"${name}"} for name in _COUNTED_STATUSES},
                }
            },
        ]
        try:
            cursor = self._collection.aggregate(pipeline, allowDiskUse=True)
        except PyMongoError as err:
            logger.error("task store: aggregate failed: %s", err)
            return []

        result = [TaskResolver(name=name, module_name=self._module_of(name)) for name in filter.task_name_list]
        index_of = {name: i for i, name in enumerate(filter.task_name_list)}
        try:
            for doc in cursor:
                name = doc.get("_id")
                if name not in index_of:
                    continue
                detail = TaskDetail(**{field: _int(doc, field) for field in _COUNTED_STATUSES})
                result[index_of[name]] = TaskResolver(
                    name=name,
                    module_name=self._module_of(name),
                    total_jobs=detail.success + detail.queueing + detail.retrying + detail.failure + detail.stopped,
                    detail=detail,
                )
        except PyMongoError as err:
            logger.error("task store: aggregate failed: %s", err)
        finally:
            close = getattr(cursor, "close", None)
            if close is not None:
                close()
        return result

    def save_job(self, job, *args):
        try:
            if not job.id:
                job.id = str(ObjectId())
                self._collection.insert_one(_job_to_doc(job))
                return
            update = {
                "$set": {
                    "task_name": job.task_name,
                    "arguments": job.arguments,
                    "retries": job.retries,
                    "max_retry": job.max_retry,
                    "interval": job.interval,
                    "created_at": job.created_at,
                    "finished_at": job.finished_at,
                    "status": job.status,
                    "error": job.error,
                    "error_stack": job.error_stack,
                    "trace_id": job.trace_id,
                }
            }
            if args:
                update["$push"] = {"retry_histories": {"$each": [_history_to_doc(h) for h in args]}}
            self._collection.update_one({"_id": job.id}, update, upsert=True)
        except PyMongoError as err:
            logger.error("task store: save job failed: %s", err)

    def update_all_status(self, task_name, current_status, updated_status):
        query = {}
        if task_name:
            query["task_name"] = task_name
        query["status"] = {"$in": [_status_value(s) for s in current_status]}
        try:
            self._collection.update_many(
                query, {"$set": {"status": _status_value(updated_status), "retries": 0}}
            )
        except PyMongoError as err:
            logger.error("task store: update status failed: %s", err)

    def clean_job(self, task_name):
        query = {
            "$and": [
                {"task_name": task_name},
                {"status": {"$nin": [JobStatus.RETRYING.value, JobStatus.QUEUEING.value]}},
            ]
        }
        try:
            self._collection.delete_many(query)
        except PyMongoError as err:
            logger.error("task store: clean job failed: %s", err)

    def delete_job(self, job_id):
        self._collection.delete_one({"_id": job_id})


def _is_set(value):
    return isinstance(value, datetime) and _aware(value) != ZERO_TIME