from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from reminder_sync.helpers.pydantic_types.datetimes import UtcDatetime
from reminder_sync.models.reminder import ClientReferenceModel, PriorityEnum


class QuickAddDefaultsModel(BaseModel):
    """
    Values applied to a reminder created from text, the text itself never carries them.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    category: str | None = Field(default=None, max_length=50)
    client_reference: ClientReferenceModel | None = None
    client_updated_at: UtcDatetime | None = None
    priority: PriorityEnum | None = None
    tags: list[str] = Field(default=[], max_length=20)
    timezone: str | None = Field(default=None, max_length=60)


class QuickAddRequestModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    defaults: QuickAddDefaultsModel = Field(default_factory=QuickAddDefaultsModel)
    input: str = Field(max_length=500, min_length=1)
    timezone: str | None = Field(default=None, max_length=60)


class QuickAddParseModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    detected_phrases: list[str] = []
    """Fragments of the text read as a date or time, in detection order."""
    scheduled_at: datetime
    source: str
    """Text as typed by the user."""
    timezone: str
    title: str
