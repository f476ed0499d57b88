from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from reminder_sync.helpers.pydantic_types.datetimes import UtcDatetime
from reminder_sync.helpers.timezone import (
    DEFAULT_TIMEZONE,
    ensure_timezone,
    parse_to_utc,
)
from reminder_sync.models.localized import LocalizedDateTimeModel

DEFAULT_CATEGORY = "personal"
DEFAULT_TITLE = "Reminder"

# Date values sent by clients, parsed later against the reminder timezone
DateInput = datetime | str


class CadenceEnum(str, Enum):
    CUSTOM = "custom"
    DAILY = "daily"
    NONE = "none"
    WEEKLY = "weekly"


class PriorityEnum(str, Enum):
    # Ordered from the least to the most important
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StatusEnum(str, Enum):
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    PENDING = "pending"


class SyncStatusEnum(str, Enum):
    PENDING = "pending"
    """Server has a change not yet acknowledged by the originating client."""
    SYNCED = "synced"
    """Server and clients agree on the record."""


def normalize_tags(tags: list[str] | None) -> list[str]:
    """
    Lowercase, trim and de-duplicate tags, keeping their first-seen order.
    """
    res: list[str] = []
    for tag in tags or []:
        tag = tag.lower().strip()
        if tag and tag not in res:
            res.append(tag)
    return res


def normalize_category(category: str | None) -> str:
    return (category or "").strip().lower() or DEFAULT_CATEGORY


class RecurrenceModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    anchor_date: UtcDatetime | None = None
    cadence: CadenceEnum = CadenceEnum.NONE
    custom_rule: str = Field(default="", max_length=280)
    days_of_week: list[Annotated[int, Field(ge=0, le=6)]] = Field(
        default=[], max_length=7
    )
    interval: int = Field(default=1, ge=1, le=365)


class RecurrencePatchModel(RecurrenceModel):
    anchor_date: DateInput | None = None  # pyright: ignore


class ClientReferenceModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    device: str | None = Field(default=None, max_length=120)
    id: str | None = Field(default=None, max_length=120)


class ReminderPatchModel(BaseModel):
    """
    Partial reminder, as sent by clients.

    Presence matters: an omitted field is left untouched, while an explicit `null` clears it. Required fields cannot be cleared.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    category: str | None = Field(default=None, max_length=50)
    description: str | None = Field(default=None, max_length=2000)
    notes: str | None = Field(default=None, max_length=2000)
    priority: PriorityEnum | None = None
    recurrence: RecurrencePatchModel | None = None
    scheduled_at: DateInput | None = None
    status: StatusEnum | None = None
    tags: (
        list[Annotated[str, Field(max_length=30, min_length=1)]] | None
    ) = Field(default=None, max_length=20)
    timezone: str | None = Field(default=None, max_length=60)
    title: str | None = Field(default=None, max_length=200, min_length=1)

    @model_validator(mode="after")
    def _validate_presence(self) -> "ReminderPatchModel":
        """
        Reject cleared required fields and unparseable dates, before anything is applied.
        """
        for field in ("priority", "scheduled_at", "status", "title"):
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{to_camel(field)} cannot be cleared")

        # Validate dates are parseable, final conversion depends on the reminder timezone
        timezone = ensure_timezone(self.timezone)
        if self.scheduled_at is not None:
            parse_to_utc(self.scheduled_at, timezone)
        if self.recurrence and self.recurrence.anchor_date is not None:
            parse_to_utc(self.recurrence.anchor_date, timezone)

        return self

    def updates(self, fallback_timezone: str = DEFAULT_TIMEZONE) -> dict[str, Any]:
        """
        Build the field updates carried by the patch.

        Dates without an explicit offset are read in the patch timezone, or in `fallback_timezone` if the patch has none.
        """
        fields = self.model_fields_set
        res: dict[str, Any] = {}

        timezone = ensure_timezone(fallback_timezone)
        if "timezone" in fields:
            timezone = ensure_timezone(self.timezone)
            res["timezone"] = timezone

        if "title" in fields:
            res["title"] = self.title
        if "description" in fields:
            res["description"] = self.description or ""
        if "notes" in fields:
            res["notes"] = self.notes or ""
        if "category" in fields:
            res["category"] = normalize_category(self.category)
        if "priority" in fields:
            res["priority"] = self.priority
        if "status" in fields:
            res["status"] = self.status
        if "tags" in fields:
            res["tags"] = normalize_tags(self.tags)
        # Clearing the schedule is rejected at validation, presence implies a value
        if "scheduled_at" in fields and self.scheduled_at is not None:
            res["scheduled_at"] = parse_to_utc(self.scheduled_at, timezone)
        if "recurrence" in fields:
            recurrence = self.recurrence
            res["recurrence"] = (
                RecurrenceModel(
                    anchor_date=(
                        parse_to_utc(recurrence.anchor_date, timezone)
                        if recurrence.anchor_date is not None
                        else None
                    ),
                    cadence=recurrence.cadence,
                    custom_rule=recurrence.custom_rule,
                    days_of_week=recurrence.days_of_week,
                    interval=recurrence.interval,
                )
                if recurrence
                else RecurrenceModel()
            )

        return res


class ReminderCreateModel(ReminderPatchModel):
    client_reference: ClientReferenceModel | None = None
    client_updated_at: UtcDatetime | None = None
    scheduled_at: DateInput  # pyright: ignore
    title: str = Field(max_length=200, min_length=1)  # pyright: ignore


class ReminderModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    # Immutable fields
    created_at: UtcDatetime = Field(
        default_factory=lambda: datetime.now(UTC), frozen=True
    )
    id: str = Field(default_factory=lambda: str(uuid4()), frozen=True)
    owner: str = Field(frozen=True)
    # Editable fields
    category: str = Field(default=DEFAULT_CATEGORY, max_length=50)
    client_reference: ClientReferenceModel = Field(
        default_factory=ClientReferenceModel
    )
    client_updated_at: UtcDatetime | None = None
    deleted_at: UtcDatetime | None = None
    description: str = Field(default="", max_length=2000)
    is_deleted: bool = False
    notes: str = Field(default="", max_length=2000)
    priority: PriorityEnum = PriorityEnum.MEDIUM
    recurrence: RecurrenceModel = Field(default_factory=RecurrenceModel)
    scheduled_at: UtcDatetime
    status: StatusEnum = StatusEnum.PENDING
    sync_status: SyncStatusEnum = SyncStatusEnum.SYNCED
    tags: list[str] = []
    timezone: str = Field(default=DEFAULT_TIMEZONE, max_length=60)
    title: str = Field(max_length=200, min_length=1)
    updated_at: UtcDatetime = Field(default_factory=lambda: datetime.now(UTC))
    version: int = Field(default=1, ge=1)

    @field_validator("category", mode="before")
    @classmethod
    def _validate_category(cls, category: str | None) -> str:
        return normalize_category(category)

    @field_validator("tags", mode="before")
    @classmethod
    def _validate_tags(cls, tags: list[str] | None) -> list[str]:
        return normalize_tags(tags)

    @field_validator("timezone", mode="before")
    @classmethod
    def _validate_timezone(cls, timezone: str | None) -> str:
        return ensure_timezone(timezone)

    @model_validator(mode="after")
    def _validate_recurrence_anchor(self) -> "ReminderModel":
        """
        Anchor a recurring reminder on its scheduled date, if no anchor is given.
        """
        if (
            self.recurrence.cadence != CadenceEnum.NONE
            and not self.recurrence.anchor_date
        ):
            self.recurrence.anchor_date = self.scheduled_at
        return self

    @classmethod
    def from_patch(
        cls,
        owner: str,
        patch: ReminderPatchModel,
        fallback_timezone: str = DEFAULT_TIMEZONE,
        **fields: Any,
    ) -> "ReminderModel":
        """
        Create a new reminder from a client patch.

        Missing required values are defaulted: title to "Reminder", schedule to now, timezone to `fallback_timezone`. Extra `fields` take precedence over the patch.
        """
        return cls.model_validate(
            {
                "scheduled_at": datetime.now(UTC),
                "timezone": fallback_timezone,
                "title": DEFAULT_TITLE,
                **patch.updates(fallback_timezone=fallback_timezone),
                **fields,
                "owner": owner,
            }
        )

    def merge(self, updates: dict[str, Any]) -> "ReminderModel":
        """
        Return a validated copy of the reminder with `updates` applied.

        Keys are field names. Immutable fields cannot be updated.
        """
        frozen = {"created_at", "id", "owner"} & updates.keys()
        if frozen:
            raise ValueError(f"Immutable fields cannot be updated: {sorted(frozen)}")
        return ReminderModel.model_validate(
            {
                **self.model_dump(),
                **updates,
            }
        )

    def patched(
        self,
        patch: ReminderPatchModel,
        **fields: Any,
    ) -> "ReminderModel":
        """
        Return a validated copy of the reminder with the client patch applied.

        Dates are read in the reminder timezone unless the patch changes it. A replaced recurrence without anchor keeps the current one.
        """
        updates = patch.updates(fallback_timezone=self.timezone)
        recurrence: RecurrenceModel | None = updates.get("recurrence")
        if (
            recurrence
            and recurrence.cadence != CadenceEnum.NONE
            and not recurrence.anchor_date
        ):
            recurrence.anchor_date = self.recurrence.anchor_date
        return self.merge({**updates, **fields})


class ReminderGetModel(ReminderModel):
    scheduled_at_local: LocalizedDateTimeModel | None = None
    """Projection of `scheduled_at` in the requesting timezone."""


class ReminderFiltersModel(BaseModel):
    category: str | None = None
    priority: PriorityEnum | None = None
    scheduled_from: UtcDatetime | None = None
    scheduled_to: UtcDatetime | None = None
    search: str | None = Field(default=None, max_length=100, min_length=1)
    status: StatusEnum | None = None
    tags: list[str] = []


class PaginationModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    current_page: int
    items_per_page: int
    total_items: int
    total_pages: int


class ReminderPageModel(BaseModel):
    items: list[ReminderGetModel]
    pagination: PaginationModel
