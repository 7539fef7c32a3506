"""Payment deadline arithmetic shared by the resolve and proof-submission paths.

The client countdown renders the same deadline, but only these functions
decide whether a session is still open.
"""

import math
from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def payment_deadline(created_at: datetime, grace_period_s: int) -> datetime:
    return as_utc(created_at) + timedelta(seconds=grace_period_s)


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return as_utc(now) > as_utc(expires_at)


def seconds_remaining(expires_at: datetime, now: datetime) -> int:
    remaining = (as_utc(expires_at) - as_utc(now)).total_seconds()
    return max(0, math.ceil(remaining))
