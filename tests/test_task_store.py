from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from workerkit.task_models import JAKARTA, Filter, Job, JobStatus, RetryHistory
from workerkit.task_store import MONGO_COLLECTION, MongoPersistent

DASHBOARD = "http://dash.example.com"


def _module_of(name):
    return "mod-" + name


class FakeCollection:
    def __init__(self):
        self.calls = []
        self.find_docs = []
        self.find_one_doc = None
        self.aggregate_docs = []
        self.count = 0
        self.fail = False

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if self.fail:
            raise PyMongoError("boom")

    def create_index(self, keys, **kwargs):
        self._record("create_index", keys, **kwargs)

    def find(self, query, **kwargs):
        self._record("find", query, **kwargs)
        return list(self.find_docs)

    def count_documents(self, query):
        self._record("count_documents", query)
        return self.count

    def aggregate(self, pipeline, **kwargs):
        self._record("aggregate", pipeline, **kwargs)
        return iter(self.aggregate_docs)

    def insert_one(self, doc):
        self._record("insert_one", doc)

    def update_one(self, query, update, upsert=False):
        self._record("update_one", query, update, upsert=upsert)

    def update_many(self, query, update):
        self._record("update_many", query, update)

    def find_one(self, query, projection=None):
        self._record("find_one", query, projection=projection)
        return self.find_one_doc

    def delete_many(self, query):
        self._record("delete_many", query)

    def delete_one(self, query):
        self._record("delete_one", query)

    def last(self, name):
        return [call for call in self.calls if call[0] == name][-1]


class FakeDatabase:
    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def store(db):
    return MongoPersistent(db, tracing_dashboard=DASHBOARD, module_of=_module_of)


@pytest.fixture
def coll(db, store):
    return db[MONGO_COLLECTION]


def test_indexes_created():
    database = FakeDatabase()
    store = MongoPersistent(database, tracing_dashboard=DASHBOARD, module_of=_module_of)
    collection = database[MONGO_COLLECTION]
    keys = [call[1][0] for call in collection.calls if call[0] == "create_index"]
    assert len(keys) == 7
    assert keys[0] == [("_id", 1)]
    assert collection.calls[0][2] == {"unique": True}
    assert [("arguments", "text")] in keys
    assert store.build_filter(Filter()) == {"$and": []}


def test_index_errors_are_ignored():
    db = FakeDatabase()
    db[MONGO_COLLECTION].fail = True
    store = MongoPersistent(db)
    assert store.build_filter(Filter()) == {"$and": []}


def test_build_filter_task_name_wins_over_list(store):
    query = store.build_filter(Filter(task_name="a", task_name_list=["b", "c"]))
    assert query == {"$and": [{"task_name": "a"}]}


def test_build_filter_all_conditions(store):
    start = datetime(2022, 1, 1, tzinfo=timezone.utc)
    end = datetime(2022, 2, 1, tzinfo=timezone.utc)
    query = store.build_filter(
        Filter(task_name_list=["b", "c"], job_id="id-1", search="foo", status=["FAILURE"],
               start_date=start, end_date=end)
    )
    assert query == {
        "$and": [
            {"task_name": {"$in": ["b", "c"]}},
            {"_id": "id-1"},
            {"arguments": {"$regex": "foo", "$options": "i"}},
            {"status": {"$in": ["FAILURE"]}},
            {"created_at": {"$gte": start, "$lte": end}},
        ]
    }


def test_build_filter_needs_both_dates(store):
    start = datetime(2022, 1, 1, tzinfo=timezone.utc)
    assert store.build_filter(Filter(start_date=start, search="")) == {"$and": []}


def test_find_all_jobs_paginates():
    database = FakeDatabase()
    store = MongoPersistent(database, tracing_dashboard=DASHBOARD, module_of=_module_of)
    collection = database[MONGO_COLLECTION]
    collection.find_docs = [{"_id": "j1", "task_name": "t", "status": "SUCCESS"}]
    jobs = store.find_all_jobs(Filter(page=2, limit=5, task_name="t"))
    assert [job.id for job in jobs] == ["j1"]
    _, args, kwargs = collection.last("find")
    assert args[0] == {"$and": [{"task_name": "t"}]}
    assert kwargs["limit"] == 5
    assert kwargs["skip"] == 5
    assert kwargs["projection"] == {"retry_histories": 0}
    assert kwargs["sort"] == [("created_at", -1)]


def test_find_all_jobs_show_all_has_no_paging():
    database = FakeDatabase()
    store = MongoPersistent(database, tracing_dashboard=DASHBOARD, module_of=_module_of)
    collection = database[MONGO_COLLECTION]
    collection.find_docs = [{"_id": "j1", "task_name": "t"}, {"_id": "j2", "task_name": "t"}]
    jobs = store.find_all_jobs(Filter(show_all=True, page=2, limit=5))
    assert [job.id for job in jobs] == ["j1", "j2"]
    kwargs = collection.last("find")[2]
    assert "skip" not in kwargs and "limit" not in kwargs


def test_find_all_jobs_prepares_values(store, coll):
    created = datetime(2022, 3, 4, 5, 6, 7)
    coll.find_docs = [
        {"_id": "j1", "task_name": "t", "status": "SUCCESS", "error": "old", "retries": 9,
         "max_retry": 3, "trace_id": "abc", "created_at": created},
        {"_id": "j2", "task_name": "t", "status": "QUEUEING", "interval": "1s", "max_retry": 1},
    ]
    first, second = store.find_all_jobs(Filter(page=1, limit=10))
    assert first.error == ""
    assert first.retries == 3
    assert first.trace_id == "http://dash.example.com/abc"
    assert first.created_at == created.replace(tzinfo=timezone.utc)
    assert first.created_at.utcoffset() == JAKARTA.utcoffset(None)
    assert datetime.fromisoformat(second.next_retry_at).utcoffset() == JAKARTA.utcoffset(None)
    assert first.next_retry_at == ""


def test_find_all_jobs_error_gives_empty(store, coll):
    coll.fail = True
    assert store.find_all_jobs(Filter(page=1, limit=10)) == []


def test_count_all_jobs(store, coll):
    coll.count = 42
    assert store.count_all_jobs(Filter(task_name="t")) == 42
    coll.fail = True
    assert store.count_all_jobs(Filter(task_name="t")) == 0


def test_aggregate_all_task_jobs(store, coll):
    coll.aggregate_docs = [
        {"_id": "b", "success": 2, "queueing": 1, "retrying": 4, "failure": 3, "stopped": 5},
        {"_id": "unknown", "success": 8},
    ]
    result = store.aggregate_all_task_jobs(Filter(task_name_list=["a", "b"]))
    assert [r.name for r in result] == ["a", "b"]
    assert [r.module_name for r in result] == ["mod-a", "mod-b"]
    assert result[0].total_jobs == 0
    detail = result[1].detail
    assert (detail.success, detail.queueing, detail.retrying, detail.failure, detail.stopped) == (2, 1, 4, 3, 5)
    assert result[1].total_jobs == 15
    pipeline = coll.last("aggregate")[1][0]
    assert pipeline[0] == {"$match": {"$and": [{"task_name": {"$in": ["a", "b"]}}]}}
    assert coll.last("aggregate")[2] == {"allowDiskUse": True}


def test_aggregate_error_gives_empty(store, coll):
    coll.fail = True
    assert store.aggregate_all_task_jobs(Filter(task_name_list=["a"])) == []


def test_save_new_job_inserts_with_object_id(store, coll):
    job = Job(task_name="t", arguments="{}", status="QUEUEING")
    store.save_job(job)
    assert ObjectId.is_valid(job.id)
    doc = coll.last("insert_one")[1][0]
    assert doc["_id"] == job.id
    assert doc["retry_histories"] == []
    assert "error_stack" not in doc


def test_save_existing_job_updates_with_history():
    database = FakeDatabase()
    store = MongoPersistent(database, tracing_dashboard=DASHBOARD, module_of=_module_of)
    collection = database[MONGO_COLLECTION]
    job = Job(id="j1", task_name="t", status="FAILURE", error_stack="trace")
    history = RetryHistory(status="FAILURE", error="bad")
    store.save_job(job, history)
    assert job.id == "j1"
    _, args, kwargs = collection.last("update_one")
    assert args[0] == {"_id": "j1"}
    assert args[1]["$set"]["status"] == "FAILURE"
    assert args[1]["$set"]["error_stack"] == "trace"
    pushed = args[1]["$push"]["retry_histories"]["$each"]
    assert [item["error"] for item in pushed] == ["bad"]
    assert kwargs == {"upsert": True}


def test_save_existing_job_without_history():
    database = FakeDatabase()
    store = MongoPersistent(database, tracing_dashboard=DASHBOARD, module_of=_module_of)
    collection = database[MONGO_COLLECTION]
    job = Job(id="j1", task_name="t")
    store.save_job(job)
    assert job.id == "j1"
    update = collection.last("update_one")[1][1]
    assert "$push" not in update
    assert update["$set"]["task_name"] == "t"


def test_save_job_swallows_errors():
    database = FakeDatabase()
    store = MongoPersistent(database, tracing_dashboard=DASHBOARD, module_of=_module_of)
    collection = database[MONGO_COLLECTION]
    collection.fail = True
    job = Job(id="j1")
    store.save_job(job)
    assert job.id == "j1"
    assert collection.last("update_one")[1][0] == {"_id": "j1"}


def test_update_all_status():
    database = FakeDatabase()
    store = MongoPersistent(database, tracing_dashboard=DASHBOARD, module_of=_module_of)
    collection = database[MONGO_COLLECTION]
    store.update_all_status("t", [JobStatus.FAILURE, JobStatus.STOPPED], JobStatus.QUEUEING)
    _, args, _ = collection.last("update_many")
    assert args[0] == {"task_name": "t", "status": {"$in": ["FAILURE", "STOPPED"]}}
    assert args[1] == {"$set": {"status": "QUEUEING", "retries": 0}}
    store.update_all_status("", [JobStatus.RETRYING], JobStatus.QUEUEING)
    assert collection.last("update_many")[1][0] == {"status": {"$in": ["RETRYING"]}}


def test_find_job_by_id(store, coll):
    end = datetime(2022, 1, 2, tzinfo=timezone.utc)
    coll.find_one_doc = {"_id": "j1", "task_name": "t",
                         "retry_histories": [{"status": "SUCCESS", "end_at": end}]}
    job = store.find_job_by_id("j1", "retry_histories")
    _, args, kwargs = coll.last("find_one")
    assert args[0] == {"_id": "j1"}
    assert kwargs["projection"] == {"retry_histories": 0}
    assert job.id == "j1"
    assert job.retry_histories[0].end_at == end


def test_find_job_by_id_missing(store, coll):
    coll.find_one_doc = None
    with pytest.raises(LookupError):
        store.find_job_by_id("nope")
    assert coll.last("find_one")[2]["projection"] is None


def test_clean_job():
    database = FakeDatabase()
    store = MongoPersistent(database, tracing_dashboard=DASHBOARD, module_of=_module_of)
    collection = database[MONGO_COLLECTION]
    store.clean_job("t")
    query = collection.last("delete_many")[1][0]
    assert query == {"$and": [{"task_name": "t"},
                              {"status": {"$nin": ["RETRYING", "QUEUEING"]}}]}


def test_delete_job(store, coll):
    store.delete_job("j1")
    assert coll.last("delete_one")[1][0] == {"_id": "j1"}
    coll.fail = True
    with pytest.raises(PyMongoError):
        store.delete_job("j1")


def test_zero_time_dates_are_unset(store):
    zero = datetime(1, 1, 1, tzinfo=timezone.utc)
    later = zero + timedelta(days=1)
    assert store.build_filter(Filter(start_date=zero, end_date=later)) == {"$and": []}