from datetime import UTC, datetime
from typing import Annotated

from pydantic import AfterValidator


def _as_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to UTC.

    Naive values are considered already in UTC, as they only come from the store or from the server clock.
    """
    if not value.tzinfo:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]
