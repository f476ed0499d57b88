from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta

from reminder_sync.helpers.monitoring import start_as_current_span
from reminder_sync.models.readiness import ReadinessEnum
from reminder_sync.models.reminder import ReminderFiltersModel, ReminderModel


class StoreError(Exception):
    """
    The storage backend failed (connectivity, corruption, ...).

    Raised for technical failures only, a missing record is never an error.
    """


class IStore(ABC):
    @abstractmethod
    @start_as_current_span("store_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("store_reminder_get")
    async def reminder_get(
        self,
        user_id: str,
        reminder_id: str,
        include_deleted: bool = True,
    ) -> ReminderModel | None:
        """
        Point read of a reminder, scoped to its owner.
        """

    @abstractmethod
    @start_as_current_span("store_reminder_create")
    async def reminder_create(
        self,
        reminder: ReminderModel,
    ) -> ReminderModel:
        pass

    @abstractmethod
    @start_as_current_span("store_reminder_save")
    async def reminder_save(
        self,
        reminder: ReminderModel,
        expected_updated_at: datetime,
    ) -> ReminderModel | None:
        """
        Persist a reminder, only if the stored one was not modified since it was read.

        The write is conditional on the stored `updated_at` being equal to `expected_updated_at`. The saved reminder gets a new `updated_at`, strictly greater than the previous one, and its `version` is incremented.

        Returns the saved reminder, or `None` if the condition failed or the reminder does not exist.
        """

    @abstractmethod
    @start_as_current_span("store_reminder_changed_since")
    async def reminder_changed_since(
        self,
        user_id: str,
        since: datetime,
    ) -> list[ReminderModel]:
        """
        All reminders of a user with `updated_at` strictly greater than `since`, deleted ones included.

        Sorted by `updated_at`, ascending.
        """

    @abstractmethod
    @start_as_current_span("store_reminder_search_all")
    async def reminder_search_all(
        self,
        user_id: str,
        filters: ReminderFiltersModel,
        offset: int,
        limit: int,
    ) -> tuple[list[ReminderModel], int]:
        """
        Page of non-deleted reminders matching the filters, sorted by `scheduled_at`, and the total count of matches.
        """

    @staticmethod
    def _next_updated_at(previous: datetime) -> datetime:
        """
        Server timestamp for a new mutation.

        Uses the server clock, but never goes backward nor repeats the previous value, so delta queries never miss a change.
        """
        now = datetime.now(UTC)
        floor = previous + timedelta(microseconds=1)
        return max(now, floor)
