"""
Small helpers shared across the relay: ids, timestamps and URL parsing
"""

import itertools
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision"""
    return utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value) -> datetime:
    """
    Parse a stored timestamp into an aware datetime

    Missing or unparsable values sort as the epoch, i.e. oldest.
    """
    if not value or not isinstance(value, str):
        return EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    return uuid.uuid4().hex


def hostname_of(url) -> Optional[str]:
    """Return the lowercase hostname of a URL, or None when it cannot be parsed"""
    if not url or not isinstance(url, str):
        return None
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None


class RequestIdGenerator:
    """
    Generates readable request ids: YYYYMMDD_HHMMSS_NNN

    The trailing counter wraps at 1000 and keeps ids unique within one second.
    """

    def __init__(self):
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            sequence = next(self._counter) % 1000
        return f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{sequence:03d}"
