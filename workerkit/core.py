"""Service building blocks: handler registration, event context, lockers and the app runner."""

from __future__ import annotations

import logging
import queue
import signal
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


class WorkerType(str, Enum):
    """Kinds of worker a module can provide handlers for."""

    SCHEDULER = "cron_scheduler"
    REDIS_SUBSCRIBER = "redis_subscriber"
    TASK_QUEUE = "task_queue"


HandlerFunc = Callable[["EventContext"], None]


@dataclass
class WorkerHandler:
    """A pattern (topic, job key, task name) bound to its handler functions.

    Handler functions take an :class:`EventContext` and raise on failure.
    """

    pattern: str
    handler_funcs: list[HandlerFunc] = field(default_factory=list)
    disable_trace: bool = False
    auto_ack: bool = False


@dataclass
class WorkerHandlerGroup:
    """Collects the handlers a module mounts for one worker type."""

    handlers: list[WorkerHandler] = field(default_factory=list)

    def add(self, pattern, *args):
        """Register ``args`` as the handler functions for ``pattern``."""
        handler = WorkerHandler(pattern=pattern, handler_funcs=list(args))
        self.handlers.append(handler)
        return handler


@dataclass
class EventContext:
    """What a worker hands to a handler function for one event."""

    worker_type: str = ""
    handler_route: str = ""
    header: dict[str, str] = field(default_factory=dict)
    key: str = ""
    error: BaseException | None = None
    _buffer: bytearray = field(default_factory=bytearray, repr=False)

    def write(self, data):
        """Append ``data`` (bytes or text) to the message body."""
        chunk = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        self._buffer.extend(chunk)
        return len(chunk)

    def message(self):
        """The message body as text."""
        return self._buffer.decode("utf-8", errors="replace")


class Locker(ABC):
    """Distributed lock used to keep several instances from handling one event."""

    @abstractmethod
    def is_locked(self, key):
        """Take the lock for ``key``; return True if it was already held."""

    @abstractmethod
    def unlock(self, key):
        """Release the lock for ``key``."""

    @abstractmethod
    def reset(self, pattern):
        """Release every lock whose key matches ``pattern``."""


class NoopLocker(Locker):
    """A locker that never locks."""

    def is_locked(self, key):
        return False

    def unlock(self, key):
        return None

    def reset(self, pattern):
        return None


@dataclass
class WorkerModule:
    """A named module with handler mounters per worker type."""

    name: str
    mounts: dict[WorkerType, Callable[[WorkerHandlerGroup], None]] = field(default_factory=dict)

    def worker_handlers(self, worker_type):
        """Mount and return the module's handlers for ``worker_type``."""
        mount = self.mounts.get(worker_type)
        if mount is None:
            return []
        group = WorkerHandlerGroup()
        mount(group)
        return group.handlers


class AppServer(ABC):
    """A server or worker that the app starts and stops."""

    @abstractmethod
    def serve(self):
        """Run until shut down."""

    @abstractmethod
    def shutdown(self, timeout):
        """Stop gracefully within ``timeout`` seconds."""

    @abstractmethod
    def name(self):
        """Name of the server or worker."""


@dataclass
class Service:
    """A service: its name, modules and the servers it runs."""

    name: str
    modules: list[WorkerModule] = field(default_factory=list)
    applications: list[AppServer] = field(default_factory=list)


class App:
    """Runs every server of a service and shuts them down on SIGINT/SIGTERM."""

    def __init__(self, service, shutdown_timeout=60.0):
        self._service = service
        self._shutdown_timeout = shutdown_timeout
        self._received: list[int] = []

    def run(self):
        """Serve every application; re-raise the first error any of them raises."""
        apps = list(self._service.applications)
        if not apps:
            raise RuntimeError("No server/worker running")

        errors: queue.Queue[BaseException] = queue.Queue()
        for server in apps:
            threading.Thread(
                target=self._serve, args=(server, errors), daemon=True, name=f"serve-{server.name()}"
            ).start()

        with self._signals():
            logger.info("Application %s ready to run", self._service.name)
            while True:
                try:
                    exc = errors.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    exc = None
                if exc is not None:
                    raise exc
                if self._received:
                    self._received.clear()
                    self.shutdown()
                    return

    def shutdown(self):
        """Stop every application; return True if all stopped before the timeout."""
        logger.info("Gracefully shutdown... (press Ctrl+C again to force)")
        apps = list(self._service.applications)
        deadline = time.monotonic() + self._shutdown_timeout
        done = threading.Event()

        def stop_all():
            for server in apps:
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    server.shutdown(remaining)
                except Exception:
                    logger.exception("error while stopping %s", server.name())
            done.set()

        threading.Thread(target=stop_all, daemon=True, name="shutdown").start()

        while True:
            remaining = deadline - time.monotonic()
            if done.wait(timeout=max(0.0, min(_POLL_INTERVAL, remaining))):
                logger.info("Success shutdown all server & worker")
                return True
            if self._received:
                logger.warning("Force shutdown server & worker")
                return False
            if time.monotonic() >= deadline:
                logger.warning("Context timeout")
                return False

    @staticmethod
    def _serve(server, errors):
        try:
            server.serve()
        except BaseException as exc:  # noqa: BLE001 - forwarded to the runner
            errors.put(exc)

    @contextmanager
    def _signals(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def on_signal(signum, _frame):
            self._received.append(signum)

        wanted = [signal.SIGINT, signal.SIGTERM]
        previous = {sig: signal.signal(sig, on_signal) for sig in wanted}
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)