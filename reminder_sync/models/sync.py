from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from reminder_sync.helpers.pydantic_types.datetimes import UtcDatetime
from reminder_sync.models.reminder import ReminderGetModel, ReminderPatchModel


class OperationEnum(str, Enum):
    DELETE = "delete"
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    """Legacy spelling, resolved to insert or update from the presence of a server id."""


class ChangeModel(BaseModel):
    """
    One offline edit submitted by a client.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    client_id: str | None = Field(default=None, max_length=120)
    """Local identifier of the record on the device."""
    client_updated_at: UtcDatetime | None = None
    """Device wall-clock time of the edit, used for conflict detection."""
    data: ReminderPatchModel = Field(default_factory=ReminderPatchModel)
    operation: OperationEnum
    server_id: str | None = Field(default=None, max_length=120)
    """Server identifier, absent for records never synced."""


class SyncRequestModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    changes: list[ChangeModel] = []
    client_id: str = Field(max_length=120, min_length=1)
    """Device identifier."""
    last_sync_at: UtcDatetime | None = None
    """Watermark of the last successful sync, absent if the device never synced."""
    timezone: str | None = Field(default=None, max_length=60)


class AppliedChangeModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    client_id: str | None
    operation: OperationEnum
    server_id: str


class ConflictModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    client_id: str | None
    reason: str
    server_id: str
    server_state: ReminderGetModel


class SyncResultModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    applied_changes: list[AppliedChangeModel] = []
    conflicts: list[ConflictModel] = []
    server_changes: list[ReminderGetModel] = []
    server_time: datetime
    """Server clock when the delta was computed, to be used as the next watermark."""
