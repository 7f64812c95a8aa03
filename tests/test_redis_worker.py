import fnmatch
import threading
import time

from workerkit.core import Locker, NoopLocker, Service, WorkerModule, WorkerType
from workerkit.redis_message import create_redis_pubsub_message, parse_redis_pubsub_key_topic
from workerkit.redis_worker import RedisWorker, RedisWorkerOptions

TOPIC = "scheduled-notif"


def make_service(*funcs, pattern=TOPIC):
    mounts = {}
    if funcs:
        mounts[WorkerType.REDIS_SUBSCRIBER] = lambda group: group.add(pattern, *funcs)
    return Service(name="svc", modules=[WorkerModule(name="notification", mounts=mounts)])


class RecordingLocker(Locker):
    def __init__(self, locked=False):
        self.locked = locked
        self.checked = []
        self.unlocked = []
        self.resets = []

    def is_locked(self, key):
        self.checked.append(key)
        return self.locked

    def unlock(self, key):
        self.unlocked.append(key)

    def reset(self, pattern):
        self.resets.append(pattern)


class FakePubSub:
    def __init__(self, messages=(), fail_first=False):
        self.messages = list(messages)
        self.fail = fail_first
        self.patterns = []
        self.punsubscribed = False
        self.closed = False

    def psubscribe(self, *patterns):
        self.patterns.extend(patterns)

    def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        if self.fail:
            self.fail = False
            raise ConnectionError("lost")
        if self.messages:
            return self.messages.pop(0)
        time.sleep(min(timeout, 0.01))
        return None

    def punsubscribe(self):
        self.punsubscribed = True

    def close(self):
        self.closed = True


class FakeRedis:
    def __init__(self, pubsubs=(), store=None):
        self.pubsubs = list(pubsubs)
        self.created = []
        self.config = []
        self.store = dict(store or {})
        self.deleted = []

    def config_set(self, name, value):
        self.config.append((name, value))

    def pubsub(self):
        pubsub = self.pubsubs.pop(0) if self.pubsubs else FakePubSub()
        self.created.append(pubsub)
        return pubsub

    def set(self, key, value, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def delete(self, *keys):
        for key in keys:
            self.deleted.append(key)
            self.store.pop(key, None)
        return len(keys)

    def scan_iter(self, match=None):
        return [key for key in list(self.store) if fnmatch.fnmatchcase(key, match)]


def test_name():
    worker = RedisWorker(make_service(), FakeRedis(), RedisWorkerOptions(locker=NoopLocker()))
    assert worker.name() == "redis_subscriber"


def test_constructor_resets_locks():
    locker = RecordingLocker()
    RedisWorker(make_service(lambda ctx: None), FakeRedis(), RedisWorkerOptions(locker=locker))
    assert locker.resets == ["svc:redis-worker-lock:*"]


def test_default_locker_clears_stale_locks():
    client = FakeRedis(store={"svc:redis-worker-lock:a-1": 1, "other": 1})
    RedisWorker(make_service(lambda ctx: None), client)
    assert client.deleted == ["svc:redis-worker-lock:a-1"]
    assert "other" in client.store


def test_default_locker_skips_held_lock_and_releases_own():
    calls = []
    client = FakeRedis()
    worker = RedisWorker(make_service(calls.append), client)
    message = parse_redis_pubsub_key_topic(create_redis_pubsub_message(TOPIC, "hello"))
    lock_key = f"svc:redis-worker-lock:{TOPIC}-{message.event_id}"

    client.store[lock_key] = 1
    assert worker.process_message(message) is None
    assert calls == []

    del client.store[lock_key]
    context = worker.process_message(message)
    assert context.message() == "hello"
    assert lock_key not in client.store


def test_expired_key_runs_handler():
    received = []
    worker = RedisWorker(make_service(received.append), FakeRedis(), RedisWorkerOptions(locker=NoopLocker()))
    key = create_redis_pubsub_message(TOPIC, {"test": "testing"})
    thread = worker.handle_expired_key(key)
    thread.join(5)

    assert len(received) == 1
    context = received[0]
    assert context.message() == '{"test":"testing"}'
    assert context.worker_type == "redis_subscriber"
    assert context.handler_route == TOPIC
    assert context.key == parse_redis_pubsub_key_topic(key).event_id


def test_unknown_handler_is_ignored():
    received = []
    worker = RedisWorker(make_service(received.append), FakeRedis(), RedisWorkerOptions(locker=NoopLocker()))
    assert worker.handle_expired_key(create_redis_pubsub_message("other-topic", "x")) is None
    assert received == []


def test_locked_message_is_skipped():
    received = []
    locker = RecordingLocker(locked=True)
    worker = RedisWorker(make_service(received.append), FakeRedis(), RedisWorkerOptions(locker=locker))
    message = parse_redis_pubsub_key_topic(create_redis_pubsub_message(TOPIC, "x"))
    assert worker.process_message(message) is None
    assert received == []
    assert locker.checked == [f"svc:redis-worker-lock:{TOPIC}-{message.event_id}"]
    assert locker.unlocked == []


def test_handler_error_is_recorded_and_next_handler_runs():
    seen = []

    def failing(ctx):
        raise ValueError("bad message")

    locker = RecordingLocker()
    worker = RedisWorker(make_service(failing, seen.append), FakeRedis(), RedisWorkerOptions(locker=locker))
    message = parse_redis_pubsub_key_topic(create_redis_pubsub_message(TOPIC, "x"))
    context = worker.process_message(message)
    assert isinstance(context.error, ValueError)
    assert seen == [context]
    assert locker.unlocked == locker.checked


def test_no_handlers_serve_returns_and_shutdown_succeeds():
    client = FakeRedis()
    worker = RedisWorker(make_service(), client, RedisWorkerOptions(locker=NoopLocker()))
    worker.serve()
    assert client.created == []
    assert worker.shutdown(1.0) is True


def test_serve_dispatches_expired_keys():
    done = threading.Event()
    received = []

    def handler(ctx):
        received.append(ctx.message())
        done.set()

    key = create_redis_pubsub_message(TOPIC, "payload")
    pubsub = FakePubSub([{"type": "pmessage", "data": key.encode()}])
    client = FakeRedis([pubsub])
    worker = RedisWorker(make_service(handler), client, RedisWorkerOptions(locker=NoopLocker()))

    server = threading.Thread(target=worker.serve, daemon=True)
    server.start()
    assert done.wait(5)
    assert worker.shutdown(5) is True
    server.join(5)

    assert received == ["payload"]
    assert client.config == [("notify-keyspace-events", "Ex")]
    assert pubsub.patterns == ["__keyevent@*__:expired"]
    assert pubsub.punsubscribed is True
    assert not server.is_alive()


def test_serve_reconnects_after_error():
    done = threading.Event()
    key = create_redis_pubsub_message(TOPIC, "again")
    broken = FakePubSub(fail_first=True)
    healthy = FakePubSub([{"type": "pmessage", "data": key}])
    client = FakeRedis([broken, healthy])
    worker = RedisWorker(make_service(lambda ctx: done.set()), client, RedisWorkerOptions(locker=NoopLocker()))

    server = threading.Thread(target=worker.serve, daemon=True)
    server.start()
    assert done.wait(5)
    worker.shutdown(5)
    server.join(5)

    assert broken.closed is True
    assert client.created[:2] == [broken, healthy]


def test_shutdown_reports_unfinished_jobs():
    release = threading.Event()
    worker = RedisWorker(
        make_service(lambda ctx: release.wait(5)), FakeRedis(), RedisWorkerOptions(locker=NoopLocker())
    )
    thread = worker.handle_expired_key(create_redis_pubsub_message(TOPIC, "slow"))
    assert worker.shutdown(0.05) is False
    release.set()
    thread.join(5)
    assert not thread.is_alive()