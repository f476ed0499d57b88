from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from azure.core.exceptions import ServiceRequestError
from pydantic import ValidationError
from pytest_assume.plugin import assume

from reminder_sync.helpers.config_models.database import CosmosDbModel
from reminder_sync.helpers.reminder_changes import CONFLICT_REASON, apply_change
from reminder_sync.helpers.reminder_sync import sync_reminders
from reminder_sync.models.readiness import ReadinessEnum
from reminder_sync.models.reminder import (
    ReminderFiltersModel,
    ReminderModel,
    ReminderPatchModel,
    SyncStatusEnum,
)
from reminder_sync.models.sync import (
    AppliedChangeModel,
    ChangeModel,
    ConflictModel,
    OperationEnum,
    SyncRequestModel,
)
from reminder_sync.persistence.cosmos_db import CosmosDbStore
from reminder_sync.persistence.istore import IStore, StoreError

DEVICE_ID = "phone-1"


class ProxyStore(IStore):
    """
    Store forwarding to another one, to inject failures and races.
    """

    def __init__(self, inner: IStore) -> None:
        self.inner = inner

    async def readiness(self) -> ReadinessEnum:
        return await self.inner.readiness()

    async def reminder_get(self, user_id, reminder_id, include_deleted=True):
        return await self.inner.reminder_get(user_id, reminder_id, include_deleted)

    async def reminder_create(self, reminder):
        return await self.inner.reminder_create(reminder)

    async def reminder_save(self, reminder, expected_updated_at):
        return await self.inner.reminder_save(reminder, expected_updated_at)

    async def reminder_changed_since(self, user_id, since):
        return await self.inner.reminder_changed_since(user_id, since)

    async def reminder_search_all(self, user_id, filters, offset, limit):
        return await self.inner.reminder_search_all(user_id, filters, offset, limit)


class FailingCreateStore(ProxyStore):
    """
    Store failing from the n-th create.
    """

    def __init__(self, inner: IStore, fail_at: int) -> None:
        super().__init__(inner)
        self.creates = 0
        self.fail_at = fail_at

    async def reminder_create(self, reminder):
        self.creates += 1
        if self.creates >= self.fail_at:
            raise StoreError("Disk is gone")
        return await super().reminder_create(reminder)


class RacingStore(ProxyStore):
    """
    Store where another writer always saves the reminder just before the caller.
    """

    async def reminder_save(self, reminder, expected_updated_at):
        current = await self.inner.reminder_get(reminder.owner, reminder.id)
        assert current
        await self.inner.reminder_save(
            current.merge({"title": "Written by another device"}),
            current.updated_at,
        )
        return await super().reminder_save(reminder, expected_updated_at)


class UnreachableContainer:
    """
    Cosmos DB container keeping documents in memory, where point reads fail as if the network dropped.
    """

    def __init__(self) -> None:
        self.items: list[dict] = []

    async def create_item(self, body: dict) -> dict:
        self.items.append(body)
        return body

    async def read_item(self, item: str, partition_key: str) -> dict:
        raise ServiceRequestError("Connection reset by peer")

    def query_items(self, parameters: list, partition_key: str, query: str):
        return self._iterate()

    async def _iterate(self) -> AsyncGenerator[dict]:
        for item in sorted(self.items, key=lambda item: item["updated_at_us"]):
            yield item


async def _create(db: IStore, user_id: str, **fields) -> ReminderModel:
    return await db.reminder_create(
        ReminderModel.model_validate(
            {
                "owner": user_id,
                "scheduled_at": datetime(2024, 3, 1, 9, tzinfo=UTC),
                "title": "Water the plants",
                **fields,
            }
        )
    )


@pytest.mark.asyncio
async def test_buy_milk_first_sync(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test a device that never synced, pushing one reminder created offline.

    Steps:
    1. Sync an insert without last sync time
    2. Check the insert is acknowledged with a server id
    3. Check the reminder comes back in server changes, as written by the device
    """
    result = await sync_reminders(
        request=SyncRequestModel.model_validate(
            {
                "changes": [
                    {
                        "clientId": "a1",
                        "clientUpdatedAt": "2024-01-01T00:00:00Z",
                        "data": {
                            "scheduledAt": "2024-01-02",
                            "tags": ["Groceries", " groceries "],
                            "timezone": "UTC",
                            "title": "Buy milk",
                        },
                        "operation": "insert",
                    }
                ],
                "clientId": DEVICE_ID,
            }
        ),
        store=db,
        timezone="America/Chicago",
        user_id=user_id,
    )

    assert len(result.applied_changes) == 1
    applied = result.applied_changes[0]
    assume(applied.client_id == "a1")
    assume(applied.operation == OperationEnum.INSERT)
    assume(result.conflicts == [])

    assert len(result.server_changes) == 1
    reminder = result.server_changes[0]
    assume(reminder.id == applied.server_id)
    assume(reminder.title == "Buy milk")
    assume(reminder.tags == ["groceries"])
    assume(reminder.category == "personal")
    assume(reminder.timezone == "UTC")
    assume(reminder.scheduled_at == datetime(2024, 1, 2, tzinfo=UTC))
    assume(reminder.client_reference.id == "a1")
    assume(reminder.client_reference.device == DEVICE_ID)
    assume(reminder.client_updated_at == datetime(2024, 1, 1, tzinfo=UTC))
    assume(reminder.sync_status == SyncStatusEnum.PENDING)
    assume(reminder.version == 1)
    assert reminder.scheduled_at_local
    assume(reminder.scheduled_at_local.local_timezone == "America/Chicago")
    assume(reminder.scheduled_at_local.local_date_time_iso == "2024-01-01T18:00:00")
    assume(result.server_time >= reminder.updated_at)


@pytest.mark.asyncio
async def test_insert_is_not_deduplicated(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test the same client insert sent twice creates two reminders.
    """
    change = ChangeModel(
        client_id="local-1",
        data={"title": "Buy milk"},  # pyright: ignore
        operation=OperationEnum.INSERT,
    )
    first = await apply_change(user_id, DEVICE_ID, change, db)
    second = await apply_change(user_id, DEVICE_ID, change, db)

    assert isinstance(first, AppliedChangeModel)
    assert isinstance(second, AppliedChangeModel)
    assume(first.server_id != second.server_id)

    _, total = await db.reminder_search_all(
        filters=ReminderFiltersModel(),
        limit=10,
        offset=0,
        user_id=user_id,
    )
    assume(total == 2)


@pytest.mark.asyncio
async def test_last_write_wins(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test a change older than the server state is a conflict, an equal or newer one is applied.
    """
    existing = await _create(db, user_id)

    # Older, rejected without side effect
    res = await apply_change(
        change=ChangeModel(
            client_updated_at=existing.updated_at - timedelta(seconds=1),
            client_id="local-1",
            data={"title": "Stale title"},  # pyright: ignore
            operation=OperationEnum.UPDATE,
            server_id=existing.id,
        ),
        device_id=DEVICE_ID,
        store=db,
        user_id=user_id,
    )
    assert isinstance(res, ConflictModel)
    assume(res.reason == CONFLICT_REASON)
    assume(res.server_id == existing.id)
    assume(res.client_id == "local-1")
    assume(res.server_state.title == "Water the plants")
    assume(await db.reminder_get(user_id, existing.id) == existing)

    # Equal, applied
    res = await apply_change(
        change=ChangeModel(
            client_updated_at=existing.updated_at,
            client_id="local-1",
            data={"title": "Fresh title"},  # pyright: ignore
            operation=OperationEnum.UPDATE,
            server_id=existing.id,
        ),
        device_id=DEVICE_ID,
        store=db,
        user_id=user_id,
    )
    assert isinstance(res, AppliedChangeModel)
    assume(res.operation == OperationEnum.UPDATE)

    updated = await db.reminder_get(user_id, existing.id)
    assert updated
    assume(updated.title == "Fresh title")
    # Untouched fields are kept
    assume(updated.scheduled_at == existing.scheduled_at)
    assume(updated.version == existing.version + 1)
    assume(updated.updated_at > existing.updated_at)
    assume(updated.sync_status == SyncStatusEnum.PENDING)
    assume(updated.client_reference.device == DEVICE_ID)


@pytest.mark.asyncio
async def test_update_clears_and_renormalizes(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test explicit nulls clear optional fields, and dates are read in the timezone of the change.
    """
    existing = await _create(
        db,
        user_id,
        description="Kitchen and balcony",
        tags=["home"],
    )

    res = await apply_change(
        change=ChangeModel.model_validate(
            {
                "clientUpdatedAt": (existing.updated_at + timedelta(minutes=1)),
                "data": {
                    "description": None,
                    "scheduledAt": "2024-03-05",
                    "tags": None,
                    "timezone": "America/Los_Angeles",
                },
                "operation": "update",
                "serverId": existing.id,
            }
        ),
        device_id=DEVICE_ID,
        store=db,
        user_id=user_id,
    )
    assert isinstance(res, AppliedChangeModel)

    updated = await db.reminder_get(user_id, existing.id)
    assert updated
    assume(updated.description == "")
    assume(updated.tags == [])
    assume(updated.title == "Water the plants")
    assume(updated.timezone == "America/Los_Angeles")
    assume(updated.scheduled_at == datetime(2024, 3, 5, 8, tzinfo=UTC))


@pytest.mark.asyncio
async def test_missing_targets_are_skipped(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test changes to unknown, malformed or foreign reminders are dropped, and the batch goes on.
    """
    foreign = await _create(db, f"{user_id}-other")

    result = await sync_reminders(
        request=SyncRequestModel(
            changes=[
                ChangeModel(
                    client_id="local-1",
                    data={"title": "Ghost"},  # pyright: ignore
                    operation=OperationEnum.UPDATE,
                    server_id=str(uuid4()),
                ),
                ChangeModel(
                    client_id="local-2",
                    operation=OperationEnum.DELETE,
                    server_id="not-a-uuid",
                ),
                ChangeModel(
                    client_id="local-3",
                    operation=OperationEnum.DELETE,
                ),
                ChangeModel(
                    client_id="local-4",
                    data={"title": "Hijack"},  # pyright: ignore
                    operation=OperationEnum.UPDATE,
                    server_id=foreign.id,
                ),
                ChangeModel(
                    client_id="local-5",
                    data={"title": "Real one"},  # pyright: ignore
                    operation=OperationEnum.INSERT,
                ),
            ],
            client_id=DEVICE_ID,
        ),
        store=db,
        user_id=user_id,
    )

    assume([change.client_id for change in result.applied_changes] == ["local-5"])
    assume(result.conflicts == [])
    assume([reminder.title for reminder in result.server_changes] == ["Real one"])

    # Foreign reminder is untouched
    assume(await db.reminder_get(f"{user_id}-other", foreign.id) == foreign)


@pytest.mark.asyncio
async def test_delete_then_sync(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test a deleted reminder is still sent to devices, flagged as deleted.
    """
    existing = await _create(db, user_id)
    watermark = existing.updated_at

    result = await sync_reminders(
        request=SyncRequestModel(
            changes=[
                ChangeModel(
                    client_id="local-1",
                    operation=OperationEnum.DELETE,
                    server_id=existing.id,
                ),
            ],
            client_id=DEVICE_ID,
            last_sync_at=watermark,
        ),
        store=db,
        user_id=user_id,
    )

    assume(
        result.applied_changes
        == [
            AppliedChangeModel(
                client_id="local-1",
                operation=OperationEnum.DELETE,
                server_id=existing.id,
            )
        ]
    )
    assert len(result.server_changes) == 1
    deleted = result.server_changes[0]
    assume(deleted.is_deleted)
    assume(deleted.deleted_at)
    assume(deleted.sync_status == SyncStatusEnum.PENDING)

    # Hidden from lists and point reads of live reminders
    assume(not await db.reminder_get(user_id, existing.id, include_deleted=False))


@pytest.mark.asyncio
async def test_delta_completeness(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test server changes are exactly the reminders updated after the watermark, oldest first.
    """
    before = await _create(db, user_id, title="Before")
    first = await sync_reminders(
        request=SyncRequestModel(client_id=DEVICE_ID),
        store=db,
        user_id=user_id,
    )
    assume([reminder.id for reminder in first.server_changes] == [before.id])

    after_1 = await _create(db, user_id, title="After 1")
    after_2 = await _create(db, user_id, title="After 2")

    second = await sync_reminders(
        request=SyncRequestModel(
            client_id=DEVICE_ID,
            last_sync_at=first.server_time,
        ),
        store=db,
        user_id=user_id,
    )
    assume(
        [reminder.id for reminder in second.server_changes] == [after_1.id, after_2.id]
    )

    third = await sync_reminders(
        request=SyncRequestModel(
            client_id=DEVICE_ID,
            last_sync_at=second.server_time,
        ),
        store=db,
        user_id=user_id,
    )
    assume(third.server_changes == [])


@pytest.mark.asyncio
async def test_upsert_alias(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test the legacy upsert operation inserts or updates, from the presence of a server id.
    """
    inserted = await apply_change(
        change=ChangeModel(
            client_id="local-1",
            data={"title": "Draft"},  # pyright: ignore
            operation=OperationEnum.UPSERT,
        ),
        device_id=DEVICE_ID,
        store=db,
        user_id=user_id,
    )
    assert isinstance(inserted, AppliedChangeModel)
    assume(inserted.operation == OperationEnum.INSERT)

    updated = await apply_change(
        change=ChangeModel(
            client_id="local-1",
            data={"title": "Final"},  # pyright: ignore
            operation=OperationEnum.UPSERT,
            server_id=inserted.server_id,
        ),
        device_id=DEVICE_ID,
        store=db,
        user_id=user_id,
    )
    assert isinstance(updated, AppliedChangeModel)
    assume(updated.operation == OperationEnum.UPDATE)

    reminder = await db.reminder_get(user_id, inserted.server_id)
    assert reminder
    assume(reminder.title == "Final")


@pytest.mark.asyncio
async def test_store_failure_stops_batch(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test a store failure keeps the changes applied before it, drops the rest, and still returns server changes.
    """
    store = FailingCreateStore(db, fail_at=2)

    result = await sync_reminders(
        request=SyncRequestModel(
            changes=[
                ChangeModel(
                    client_id=f"local-{i}",
                    data={"title": f"Reminder {i}"},  # pyright: ignore
                    operation=OperationEnum.INSERT,
                )
                for i in range(3)
            ],
            client_id=DEVICE_ID,
        ),
        store=store,
        user_id=user_id,
    )

    assume([change.client_id for change in result.applied_changes] == ["local-0"])
    assume([reminder.title for reminder in result.server_changes] == ["Reminder 0"])
    assume(store.creates == 2)


@pytest.mark.asyncio
async def test_lost_race_is_conflict(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test an update losing against a concurrent writer is reported as a conflict, with the winner state.
    """
    existing = await _create(db, user_id)

    res = await apply_change(
        change=ChangeModel(
            client_id="local-1",
            client_updated_at=existing.updated_at + timedelta(minutes=1),
            data={"title": "Mine"},  # pyright: ignore
            operation=OperationEnum.UPDATE,
            server_id=existing.id,
        ),
        device_id=DEVICE_ID,
        store=RacingStore(db),
        user_id=user_id,
    )

    assert isinstance(res, ConflictModel)
    assume(res.server_state.title == "Written by another device")

    stored = await db.reminder_get(user_id, existing.id)
    assert stored
    assume(stored.title == "Written by another device")


@pytest.mark.asyncio
async def test_out_of_range_date_is_skipped(
    db: IStore,
    user_id: str,
) -> None:
    """
    Test a change whose date has no instant in the reminder timezone is skipped, and the batch goes on.

    Steps:
    1. Create a reminder in Tokyo
    2. Sync an insert, an update moving the reminder to the first day of year 1, then another insert
    3. Check both inserts are acknowledged and the reminder is untouched
    """
    existing = await _create(db, user_id, timezone="Asia/Tokyo")

    result = await sync_reminders(
        request=SyncRequestModel.model_validate(
            {
                "changes": [
                    {
                        "clientId": "local-1",
                        "data": {"title": "First"},
                        "operation": "insert",
                    },
                    {
                        "clientId": "local-2",
                        "data": {"scheduledAt": "0001-01-01"},
                        "operation": "update",
                        "serverId": existing.id,
                    },
                    {
                        "clientId": "local-3",
                        "data": {"title": "Last"},
                        "operation": "insert",
                    },
                ],
                "clientId": DEVICE_ID,
            }
        ),
        store=db,
        user_id=user_id,
    )

    assume(
        [change.client_id for change in result.applied_changes]
        == ["local-1", "local-3"]
    )
    assume(result.conflicts == [])

    stored = await db.reminder_get(user_id, existing.id)
    assert stored
    assume(stored.scheduled_at == existing.scheduled_at)
    assume(stored.version == existing.version)


@pytest.mark.asyncio
async def test_cosmos_db_network_failure_stops_batch(
    monkeypatch: pytest.MonkeyPatch,
    user_id: str,
) -> None:
    """
    Test a Cosmos DB connection failure stops the batch like any store failure, reporting what was applied.

    Steps:
    1. Sync an insert, an update whose read fails on the network, then another insert
    2. Check only the first insert is acknowledged, and returned in server changes
    """
    container = UnreachableContainer()
    store = CosmosDbStore(
        CosmosDbModel(
            container="reminders",
            database="reminders",
            endpoint="https://localhost:8081",
        )
    )

    @asynccontextmanager
    async def _use_client() -> AsyncGenerator[UnreachableContainer]:
        yield container

    monkeypatch.setattr(store, "_use_client", _use_client)

    # Point reads alone are a store failure
    with pytest.raises(StoreError):
        await store.reminder_get(user_id, str(uuid4()))

    result = await sync_reminders(
        request=SyncRequestModel(
            changes=[
                ChangeModel(
                    client_id="local-1",
                    data={"title": "First"},  # pyright: ignore
                    operation=OperationEnum.INSERT,
                ),
                ChangeModel(
                    client_id="local-2",
                    data={"title": "Renamed"},  # pyright: ignore
                    operation=OperationEnum.UPDATE,
                    server_id=str(uuid4()),
                ),
                ChangeModel(
                    client_id="local-3",
                    data={"title": "Last"},  # pyright: ignore
                    operation=OperationEnum.INSERT,
                ),
            ],
            client_id=DEVICE_ID,
        ),
        store=store,
        user_id=user_id,
    )

    assume([change.client_id for change in result.applied_changes] == ["local-1"])
    assume([reminder.title for reminder in result.server_changes] == ["First"])
    assume(len(container.items) == 1)


def test_patch_schedule_presence() -> None:
    """
    Test a patch cannot clear the schedule, and a present one is read in the fallback timezone.
    """
    with pytest.raises(ValidationError):
        ReminderPatchModel.model_validate({"scheduledAt": None})

    updates = ReminderPatchModel.model_validate(
        {"scheduledAt": "2024-03-05T09:00"}
    ).updates(fallback_timezone="Asia/Tokyo")
    assume(updates == {"scheduled_at": datetime(2024, 3, 5, 0, tzinfo=UTC)})

    # Absent schedule is left untouched
    updates = ReminderPatchModel.model_validate({"title": "Renamed"}).updates()
    assume(updates == {"title": "Renamed"})
