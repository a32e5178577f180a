"""UTC time helpers.

Importing this module sets the TZ environment variable to UTC so that every
process (API, workers, CLI) reads the clock the same way. Timestamps are
timezone-aware UTC datetimes stored in DateTime(timezone=True) columns.
"""

import os
from datetime import UTC, datetime

from sqlalchemy import DateTime

os.environ["TZ"] = "UTC"

# Column type for every timestamp field
UTCDateTime = DateTime(timezone=True)


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)
