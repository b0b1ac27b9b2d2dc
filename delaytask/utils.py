import time
from datetime import datetime, timezone
from typing import Optional

LOCAL_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ts() -> int:
    """Current unix time in whole seconds; the scheduler's clock."""
    return int(time.time())


def format_local(ts: Optional[int] = None) -> str:
    if ts is None:
        ts = now_ts()
    return datetime.fromtimestamp(ts).strftime(LOCAL_TIME_FORMAT)
