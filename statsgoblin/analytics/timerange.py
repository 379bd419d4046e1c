from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from pydantic import TypeAdapter, ValidationError

from statsgoblin.common.errors import InvalidRequestError

_DATETIME = TypeAdapter(datetime)

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_INTERVAL_RE = re.compile(r"^(\d+)(ms|s|m|h|d)$")
_UNIT = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}


def parse_timestamp(value: str | datetime, name: str = "timestamp") -> datetime:
    """Parse ISO-8601 datetimes or plain dates; naive values are UTC."""
    try:
        dt = _DATETIME.validate_python(value)
    except ValidationError as e:
        raise InvalidRequestError(f"invalid {name}: {value!r}") from e
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds" if dt.microsecond else "seconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class TimeRange:
    """Closed interval [start, end] on event time.

    A date-only ``end`` covers that whole UTC day, up to its last millisecond.
    """

    start: datetime
    end: datetime

    @classmethod
    def parse(cls, start: str | datetime, end: str | datetime) -> TimeRange:
        s = parse_timestamp(start, "start")
        e = parse_timestamp(end, "end")
        if isinstance(end, str) and _DATE_ONLY_RE.match(end.strip()):
            e += timedelta(days=1) - timedelta(milliseconds=1)
        if s > e:
            raise InvalidRequestError("start must not be after end")
        return cls(start=s, end=e)

    @property
    def span(self) -> timedelta:
        return self.end - self.start

    def as_filter(self) -> dict:
        return {
            "range": {
                "timestamp": {
                    "gte": _iso(self.start),
                    "lte": _iso(self.end),
                    "format": "strict_date_optional_time",
                }
            }
        }


@dataclass(frozen=True)
class Interval:
    expression: str
    width: timedelta


def parse_interval(expression: str) -> Interval:
    m = _INTERVAL_RE.match(expression.strip())
    if not m or int(m.group(1)) == 0:
        raise InvalidRequestError(f"invalid interval {expression!r}; expected e.g. '30m', '1h', '1d'")
    n, unit = int(m.group(1)), m.group(2)
    return Interval(expression=f"{n}{unit}", width=n * _UNIT[unit])
