"""Redis key-expiry subscriber worker: runs handlers when their keys expire."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass

from .core import AppServer, EventContext, Locker, WorkerType
from .redis_message import parse_redis_pubsub_key_topic

logger = logging.getLogger(__name__)

EXPIRED_KEY_PATTERN = "__keyevent@*__:expired"
_POLL_INTERVAL = 0.1


@dataclass
class RedisWorkerOptions:
    """Settings for the redis subscriber; without a locker one backed by redis is used."""

    max_goroutines: int = 10
    debug_mode: bool = True
    locker: Locker | None = None


class _RedisLocker(Locker):
    """Locks held as redis keys set only when absent."""

    def __init__(self, client):
        self._client = client

    def is_locked(self, key):
        return not self._client.set(key, 1, nx=True)

    def unlock(self, key):
        self._client.delete(key)

    def reset(self, pattern):
        keys = list(self._client.scan_iter(match=pattern))
        if keys:
            self._client.delete(*keys)


class RedisWorker(AppServer):
    """Subscribes to expired-key events and runs the matching module handlers."""

    def __init__(self, service, redis_client, options=None):
        self._service = service
        self._client = redis_client
        opt = options if options is not None else RedisWorkerOptions()
        if opt.locker is None:
            opt = dataclasses.replace(opt, locker=_RedisLocker(redis_client))
        self._opt = opt
        self._opt.locker.reset(f"{service.name}:redis-worker-lock:*")

        self._handlers = {}
        self._semaphores: dict[str, threading.BoundedSemaphore] = {}
        self._running: dict[str, int] = {}
        for module in service.modules:
            for handler in module.worker_handlers(WorkerType.REDIS_SUBSCRIBER):
                logger.info(
                    '[REDIS-SUBSCRIBER] (key prefix): %-15s  --> (module): "%s"',
                    f'"{handler.pattern}"', module.name,
                )
                self._semaphores[handler.pattern] = threading.BoundedSemaphore(opt.max_goroutines)
                self._running[handler.pattern] = 0
                self._handlers[handler.pattern] = handler

        if self._handlers:
            logger.info("Redis pubsub worker running with %d keys", len(self._handlers))
        else:
            logger.info("redis subscriber: no topic provided")

        self._cond = threading.Condition()
        self._threads: set[threading.Thread] = set()
        self._shutdown = threading.Event()
        self._cancelled = threading.Event()

    def handle_expired_key(self, key):
        """Dispatch an expired key; return the thread running it, or None if no handler matches."""
        message = parse_redis_pubsub_key_topic(key)
        if message.handler_name not in self._handlers:
            return None
        self._semaphores[message.handler_name].acquire()
        thread = threading.Thread(
            target=self._run, args=(message,), daemon=True, name=f"redis-{message.handler_name}"
        )
        with self._cond:
            self._running[message.handler_name] += 1
            self._threads.add(thread)
        thread.start()
        return thread

    def process_message(self, message):
        """Run the handlers for ``message``; return the event context, or None if locked elsewhere."""
        lock_key = self._lock_key(message.handler_name, message.event_id)
        if self._opt.locker.is_locked(lock_key):
            return None
        try:
            handler = self._handlers.get(message.handler_name)
            if self._opt.debug_mode:
                logger.info("Redis Key Expired Subscriber: executing event key '%s'", message.handler_name)
            context = EventContext(
                worker_type=WorkerType.REDIS_SUBSCRIBER.value,
                handler_route=message.handler_name,
                key=message.event_id,
            )
            context.write(message.message)
            for handler_func in handler.handler_funcs if handler is not None else []:
                try:
                    handler_func(context)
                except Exception as err:  # noqa: BLE001 - recorded on the context
                    context.error = err
                    logger.warning("redis handler %s failed: %s", message.handler_name, err)
            return context
        finally:
            self._opt.locker.unlock(lock_key)

    def serve(self):
        """Listen for expired keys until :meth:`shutdown` is called."""
        if not self._handlers:
            return
        pubsub = self._subscribe()
        try:
            while not self._shutdown.is_set():
                try:
                    event = pubsub.get_message(ignore_subscribe_messages=True, timeout=_POLL_INTERVAL)
                except Exception as err:  # noqa: BLE001 - reconnect on any connection error
                    logger.warning("redis subscriber: connection error, reconnecting: %s", err)
                    self._close_quietly(pubsub)
                    time.sleep(_POLL_INTERVAL)
                    pubsub = self._subscribe()
                    continue
                if event is None:
                    continue
                if event.get("type") in ("pmessage", "message"):
                    self.handle_expired_key(event.get("data"))
        finally:
            try:
                pubsub.punsubscribe()
            except Exception:  # noqa: BLE001 - best effort on the way out
                pass
            self._close_quietly(pubsub)

    def shutdown(self, timeout=None):
        """Stop listening and wait for running handlers; return True if all finished in time."""
        if not self._handlers:
            logger.info("Stopping Redis Subscriber: SUCCESS")
            return True
        self._shutdown.set()
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            running = sum(self._running.values())
            if running:
                logger.info("Redis Subscriber: waiting %d job until done...", running)
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
        logger.info("Stopping Redis Subscriber: SUCCESS")
        return finished

    def name(self):
        return WorkerType.REDIS_SUBSCRIBER.value

    def _subscribe(self):
        try:
            self._client.config_set("notify-keyspace-events", "Ex")
        except Exception as err:  # noqa: BLE001 - the server may forbid CONFIG
            logger.warning("redis subscriber: cannot enable keyspace events: %s", err)
        pubsub = self._client.pubsub()
        try:
            pubsub.psubscribe(EXPIRED_KEY_PATTERN)
        except Exception as err:  # noqa: BLE001 - retried by the reconnect loop
            logger.warning("redis subscriber: psubscribe failed: %s", err)
        return pubsub

    @staticmethod
    def _close_quietly(pubsub):
        try:
            pubsub.close()
        except Exception:  # noqa: BLE001 - already broken
            pass

    def _run(self, message):
        try:
            if self._cancelled.is_set():
                logger.error("redis_subscriber > ctx root err: context canceled")
                return
            self.process_message(message)
        except Exception:  # noqa: BLE001 - a failing handler must not stop the worker
            logger.exception("redis handler %s crashed", message.handler_name)
        finally:
            self._semaphores[message.handler_name].release()
            with self._cond:
                self._running[message.handler_name] -= 1
                self._threads.discard(threading.current_thread())
                self._cond.notify_all()

    def _lock_key(self, handler_name, event_id):
        return f"{self._service.name}:redis-worker-lock:{handler_name}-{event_id}"