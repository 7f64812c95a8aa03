"""GraphQL subscriptions over websockets, speaking the graphql-ws protocol."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

PROTOCOL_GRAPHQL_WS = "graphql-ws"
DEFAULT_READ_LIMIT = 4096
DEFAULT_WRITE_TIMEOUT = 1.0

_POLL_INTERVAL = 0.05


class MessageType(str, Enum):
    """Operation message types of the graphql-ws protocol."""

    COMPLETE = "complete"
    CONNECTION_ACK = "connection_ack"
    CONNECTION_ERROR = "connection_error"
    CONNECTION_INIT = "connection_init"
    CONNECTION_KEEP_ALIVE = "ka"
    CONNECTION_TERMINATE = "connection_terminate"
    DATA = "data"
    ERROR = "error"
    START = "start"
    STOP = "stop"


@dataclass
class OperationMessage:
    """One message on the wire: a type, an optional operation id and payload."""

    type: MessageType | str
    id: str = ""
    payload: Any = None

    def to_dict(self):
        """The JSON object sent to the client; empty id and payload are left out."""
        data: dict[str, Any] = {}
        if self.id:
            data["id"] = self.id
        if self.payload is not None:
            data["payload"] = self.payload
        data["type"] = self.type.value if isinstance(self.type, MessageType) else self.type
        return data


class GraphQLService(ABC):
    """Something that can run a GraphQL subscription."""

    @abstractmethod
    def subscribe(self, query, operation_name, variables):
        """Start a subscription and return an iterable of JSON-ready payloads.

        Raise to reject the subscription.
        """


def error_payload(error):
    """The payload reporting ``error`` to the client."""
    return {"message": str(error)}


def select_subprotocol(protocols):
    """Return the graphql-ws subprotocol if the client offers it, else None."""
    for protocol in protocols:
        if protocol == PROTOCOL_GRAPHQL_WS:
            return protocol
    return None


def cors_headers():
    """Headers set on every GraphQL HTTP or websocket response."""
    return {
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Headers": "*",
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET,POST,PUT,PATCH,DELETE",
    }


def _text_field(raw, name):
    value = raw.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a string")
    return value


def _parse_incoming(raw):
    """Return ``(id, type, has_payload, payload)`` or raise ValueError."""
    if not isinstance(raw, dict):
        raise ValueError("operation message must be an object")
    return _text_field(raw, "id"), _text_field(raw, "type"), "payload" in raw, raw.get("payload")


def _parse_start_payload(has_payload, payload):
    """Return ``(query, operation_name, variables)`` or raise ValueError."""
    if not has_payload:
        raise ValueError("missing payload")
    if payload is None:
        return "", "", None
    if not isinstance(payload, dict):
        raise ValueError("payload must be an object")
    query = _text_field(payload, "query")
    operation_name = _text_field(payload, "operationName")
    variables = payload.get("variables")
    if variables is not None and not isinstance(variables, dict):
        raise ValueError("variables must be an object")
    return query, operation_name, variables


class Connection:
    """One websocket client.

    ``ws`` needs ``read_json()``, ``write_json(message)`` and ``close()``;
    ``set_read_limit(limit)`` and ``set_write_deadline(timestamp)`` are used when present.
    """

    def __init__(self, ws, service, read_limit=DEFAULT_READ_LIMIT, write_timeout=DEFAULT_WRITE_TIMEOUT):
        self._ws = ws
        self._service = service
        self.read_limit = read_limit
        self.write_timeout = write_timeout
        self._outbox: queue.Queue[OperationMessage | None] = queue.Queue()
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._closed = False
        self._operations: dict[str, threading.Event] = {}

        set_read_limit = getattr(ws, "set_read_limit", None)
        if set_read_limit is not None:
            set_read_limit(read_limit)

    def run(self):
        """Serve the client until it terminates or the connection fails."""
        writer = threading.Thread(target=self._write_loop, daemon=True, name="graphql-ws-writer")
        writer.start()
        try:
            self._read_loop()
        finally:
            self._outbox.put(None)
            writer.join(self.write_timeout + 1.0)
            self.close()

    def close(self):
        """Cancel every running operation and close the websocket."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            operations = list(self._operations.values())
            self._operations.clear()
        self._stopped.set()
        for cancelled in operations:
            cancelled.set()
        self._ws.close()

    def _send(self, op_id, message_type, payload=None):
        if self._stopped.is_set():
            return
        self._outbox.put(OperationMessage(type=message_type, id=op_id, payload=payload))

    def _write_loop(self):
        set_deadline = getattr(self._ws, "set_write_deadline", None)
        while True:
            try:
                message = self._outbox.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._stopped.is_set():
                    return
                continue
            if message is None or self._stopped.is_set():
                return
            try:
                if set_deadline is not None:
                    set_deadline(time.time() + self.write_timeout)
                self._ws.write_json(message.to_dict())
            except Exception as err:  # noqa: BLE001 - any write failure ends the connection
                logger.debug("graphql-ws write failed: %s", err)
                self.close()
                return

    def _read_loop(self):
        while not self._stopped.is_set():
            try:
                raw = self._ws.read_json()
                op_id, message_type, has_payload, payload = _parse_incoming(raw)
            except Exception:  # noqa: BLE001 - a broken read ends the connection
                return
            if not self._dispatch(op_id, message_type, has_payload, payload):
                return

    def _dispatch(self, op_id, message_type, has_payload, payload):
        if message_type == MessageType.CONNECTION_INIT:
            if not has_payload or not (payload is None or isinstance(payload, dict)):
                self._send("", MessageType.CONNECTION_ERROR,
                           error_payload(f"invalid payload for type: {message_type}"))
            else:
                self._send("", MessageType.CONNECTION_ACK)
        elif message_type == MessageType.START:
            self._start(op_id, message_type, has_payload, payload)
        elif message_type == MessageType.STOP:
            with self._lock:
                cancelled = self._operations.pop(op_id, None)
            if cancelled is not None:
                cancelled.set()
            self._send(op_id, MessageType.COMPLETE)
        elif message_type == MessageType.CONNECTION_TERMINATE:
            return False
        elif message_type == MessageType.CONNECTION_KEEP_ALIVE:
            self._send("", MessageType.CONNECTION_KEEP_ALIVE)
        else:
            self._send(op_id, MessageType.ERROR,
                       error_payload(f"unknown operation message of type: {message_type}"))
        return True

    def _start(self, op_id, message_type, has_payload, payload):
        if not op_id:
            self._send("", MessageType.CONNECTION_ERROR, error_payload("missing ID for start operation"))
            return
        try:
            query, operation_name, variables = _parse_start_payload(has_payload, payload)
        except ValueError:
            self._send(op_id, MessageType.CONNECTION_ERROR,
                       error_payload(f"invalid payload for type: {message_type}"))
            return
        try:
            payloads = iter(self._service.subscribe(query, operation_name, variables))
        except Exception as err:  # noqa: BLE001 - reported to the client
            self._send(op_id, MessageType.ERROR, error_payload(err))
            self._send(op_id, MessageType.COMPLETE)
            return

        cancelled = threading.Event()
        with self._lock:
            self._operations[op_id] = cancelled
        threading.Thread(
            target=self._stream, args=(op_id, payloads, cancelled), daemon=True,
            name=f"graphql-ws-op-{op_id}",
        ).start()

    def _stream(self, op_id, payloads, cancelled):
        try:
            for payload in payloads:
                if cancelled.is_set():
                    return
                try:
                    json.dumps(payload)
                except (TypeError, ValueError) as err:
                    self._send(op_id, MessageType.ERROR, error_payload(err))
                    continue
                self._send(op_id, MessageType.DATA, payload)
            if not cancelled.is_set():
                self._send(op_id, MessageType.COMPLETE)
        except Exception as err:  # noqa: BLE001 - a failing stream ends its operation
            if not cancelled.is_set():
                self._send(op_id, MessageType.ERROR, error_payload(err))
                self._send(op_id, MessageType.COMPLETE)
        finally:
            cancelled.set()
            close = getattr(payloads, "close", None)
            if close is not None:
                close()
            with self._lock:
                if self._operations.get(op_id) is cancelled:
                    del self._operations[op_id]


def connect(ws, service, read_limit=DEFAULT_READ_LIMIT, write_timeout=DEFAULT_WRITE_TIMEOUT):
    """Serve ``ws`` until the client leaves; return a function that closes the connection."""
    connection = Connection(ws, service, read_limit, write_timeout)
    connection.run()
    return connection.close