"""Interval parsing and job keys for the cron scheduler."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from fractions import Fraction

ONE_DAY = timedelta(days=1)
ONE_WEEK = 7 * ONE_DAY
ONE_MONTH = 30 * ONE_DAY
ONE_YEAR = 12 * ONE_MONTH

_DESCRIPTORS = {
    "daily": ONE_DAY,
    "weekly": ONE_WEEK,
    "monthly": ONE_MONTH,
    "yearly": ONE_YEAR,
}

_UNIT_NANOS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

_MAX_NANOS = (1 << 63) - 1
_INTEGER = re.compile(r"[+-]?\d+")
_NUMBER = re.compile(r"(\d*)(?:\.(\d*))?")


def parse_duration(text):
    """Parse a duration string such as ``"300ms"``, ``"-1.5h"`` or ``"2h45m"``."""
    original = text
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f'time: invalid duration "{original}"')

    total = Fraction(0)
    while rest:
        match = _NUMBER.match(rest)
        whole, frac = match.group(1), match.group(2)
        if not whole and not frac:
            raise ValueError(f'time: invalid duration "{original}"')
        value = Fraction(int(whole or "0"))
        if frac:
            value += Fraction(int(frac), 10 ** len(frac))
        rest = rest[match.end():]

        unit_end = 0
        while unit_end < len(rest) and not (rest[unit_end] == "." or rest[unit_end].isdigit()):
            unit_end += 1
        unit = rest[:unit_end]
        if not unit:
            raise ValueError(f'time: missing unit in duration "{original}"')
        if unit not in _UNIT_NANOS:
            raise ValueError(f'time: unknown unit "{unit}" in duration "{original}"')
        rest = rest[unit_end:]

        total += value * _UNIT_NANOS[unit]
        if total > _MAX_NANOS:
            raise ValueError(f'time: invalid duration "{original}"')

    nanos = int(total)
    micros = nanos // 1000
    return timedelta(microseconds=-micros if negative else micros)


def _atoi(text):
    if not _INTEGER.fullmatch(text):
        raise ValueError(f'invalid number "{text}"')
    return int(text)


def parse_at_time(text, now=None):
    """Parse ``HH:mm[:ss][@descriptor]``.

    Returns ``(duration, next_duration)``: the wait until the first run and the
    repeat interval afterwards. The descriptor is one of daily, weekly, monthly,
    yearly or a duration string; it defaults to daily.
    """
    parts = text.split("@")
    clock = parts[0].split(":")
    if len(clock) < 2 or len(clock) > 3:
        raise ValueError("time format error")

    hour = _atoi(clock[0])
    minute = _atoi(clock[1])
    second = _atoi(clock[2]) if len(clock) == 3 else 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
        raise ValueError("time format error")

    repeat = ONE_DAY
    if len(parts) > 1:
        descriptor = parts[1]
        if descriptor in _DESCRIPTORS:
            repeat = _DESCRIPTORS[descriptor]
        else:
            try:
                repeat = parse_duration(descriptor)
            except ValueError:
                raise ValueError(
                    f'invalid descriptor "{descriptor}" (must one of "daily", "weekly", '
                    f'"monthly", "yearly") or duration string'
                ) from None

    if now is None:
        now = datetime.now()
    at_time = now.replace(hour=hour, minute=minute, second=second, microsecond=0)
    if now < at_time:
        duration = at_time - now
    else:
        duration = repeat - (now - at_time)
    return abs(duration), repeat


def _go_json(obj):
    text = json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in (("<", "\\u003c"), (">", "\\u003e"), ("&", "\\u0026"),
                          ("\u2028", "\\u2028"), ("\u2029", "\\u2029")):
        text = text.replace(char, escaped)
    return text


@dataclass(frozen=True)
class CronJobKey:
    """Identifies a scheduled job: its name, argument string and interval.

    Allowed intervals are duration strings (``2s``, ``10m``) or a start time with
    a repeat, such as ``23:00@daily``, ``23:00@weekly`` or ``23:00@10s``.
    """

    job_name: str = ""
    args: str = ""
    interval: str = ""

    def __str__(self):
        return _go_json({"jobName": self.job_name, "args": self.args, "interval": self.interval})


def create_cron_job_key(job_name, args, interval):
    """Encode a job key as JSON text."""
    return str(CronJobKey(job_name=job_name, args=args, interval=interval))


def parse_cron_job_key(text):
    """Decode a job key into ``(job_name, args, interval)``; unreadable input gives empty strings."""
    try:
        data = json.loads(text)
    except (ValueError, TypeError):
        data = {}
    if not isinstance(data, dict):
        data = {}

    def text_field(name):
        value = data.get(name, "")
        return value if isinstance(value, str) else ""

    return text_field("jobName"), text_field("args"), text_field("interval")