"""UTC time helpers.

All timestamps in the store and the registry are naive UTC datetimes.

Usage:
    from sip_engine.utils.timezone import utc_now

    now = utc_now()
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
