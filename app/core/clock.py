from __future__ import annotations

import datetime

SECONDS_PER_DAY = 86_400


def utc_now() -> int:
    """Current UNIX time in whole seconds, UTC."""
    return int(datetime.datetime.now(datetime.UTC).timestamp())


def day_start(ts: int) -> int:
    """Midnight UTC of the day containing ``ts``."""
    return ts - ts % SECONDS_PER_DAY
