import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


_lock = threading.Lock()
_last: Optional[datetime] = None
_EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Naive UTC at millisecond precision, strictly increasing within the process.

    Mongo stores dates with millisecond precision, so the value returned here is
    exactly what a later read gives back.
    """
    global _last
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    now = now.replace(microsecond=now.microsecond // 1000 * 1000)
    with _lock:
        if _last is not None and now <= _last:
            now = _last + timedelta(milliseconds=1)
        _last = now
    return now


def as_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def as_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_millis(dt: datetime) -> int:
    return (as_naive(dt) - _EPOCH) // timedelta(milliseconds=1)


def from_millis(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)
