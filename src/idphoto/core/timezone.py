"""UTC timezone enforcement.

Sets the TZ environment variable to UTC and provides the timestamp helper
used for every persisted datetime (naive UTC, matching the TIMESTAMP columns).
"""

import os
from datetime import datetime, timezone

os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
