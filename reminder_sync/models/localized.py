from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class LocalizedDateTimeModel(BaseModel):
    """
    Display projection of a UTC instant in a given timezone.

    Values are wall-clock strings, they are not meant to be parsed back.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        frozen=True,
        populate_by_name=True,
    )

    local_date: str
    """Local date, formatted as `YYYY-MM-DD`."""
    local_date_time_display: str
    """Human readable, e.g. `Mar 16, 2024, 12:00 AM`."""
    local_date_time_iso: str = Field(alias="localDateTimeISO")
    """Local date and time without offset, formatted as `YYYY-MM-DDTHH:MM:SS`."""
    local_time: str
    """Local time, formatted as `HH:MM`."""
    local_timezone: str
    """Timezone actually used for the projection."""
