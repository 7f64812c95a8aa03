"""Message keys for the redis key-expiry subscriber."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass


def _go_json(obj, sort_keys=False):
    text = json.dumps(obj, separators=(",", ":"), ensure_ascii=False, sort_keys=sort_keys)
    for char, escaped in (("<", "\\u003c"), (">", "\\u003e"), ("&", "\\u0026"),
                          ("\u2028", "\\u2028"), ("\u2029", "\\u2029")):
        text = text.replace(char, escaped)
    return text


def _to_text(value):
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value
    return _go_json(value, sort_keys=True)


@dataclass
class RedisMessage:
    """A handler name, its message and an optional event id."""

    handler_name: str = ""
    message: str = ""
    event_id: str = ""

    def to_json(self):
        """Encode as the key stored in redis."""
        data = {"h": self.handler_name, "message": self.message}
        if self.event_id:
            data["id"] = self.event_id
        return _go_json(data)


def create_redis_pubsub_message(topic, message):
    """Build a key for ``topic`` carrying ``message`` with a fresh event id."""
    return RedisMessage(
        handler_name=topic, message=_to_text(message), event_id=str(uuid.uuid4())
    ).to_json()


def delete_redis_pubsub_message(topic, message):
    """Build a key pattern matching every key created for ``topic`` and ``message``."""
    encoded = RedisMessage(handler_name=topic, message=_to_text(message)).to_json()
    return encoded[:-1] + "*"


def parse_redis_pubsub_key_topic(key):
    """Decode a key; unreadable input gives an empty message."""
    try:
        data = json.loads(key)
    except (ValueError, TypeError):
        data = {}
    if not isinstance(data, dict):
        data = {}

    def text_field(name):
        value = data.get(name, "")
        return value if isinstance(value, str) else ""

    return RedisMessage(
        handler_name=text_field("h"), message=text_field("message"), event_id=text_field("id")
    )