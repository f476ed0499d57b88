from datetime import UTC, datetime
from uuid import UUID

from reminder_sync.helpers.logging import logger
from reminder_sync.helpers.monitoring import (
    SpanAttributeEnum,
    counter_add,
    start_as_current_span,
    sync_change_applied,
    sync_change_conflict,
    sync_change_skipped,
)
from reminder_sync.helpers.timezone import InvalidDateError
from reminder_sync.models.reminder import (
    ClientReferenceModel,
    ReminderGetModel,
    ReminderModel,
    SyncStatusEnum,
)
from reminder_sync.models.sync import (
    AppliedChangeModel,
    ChangeModel,
    ConflictModel,
    OperationEnum,
)
from reminder_sync.persistence.istore import IStore

CONFLICT_REASON = "Server has newer changes"


@start_as_current_span("reminder_change_apply")
async def apply_change(
    user_id: str,
    device_id: str,
    change: ChangeModel,
    store: IStore,
) -> AppliedChangeModel | ConflictModel | None:
    """
    Apply one client change to the store.

    Deletes and updates target `server_id`, any other change without it is an insert. Updates older than the stored record are rejected as conflicts, the record is never partially merged.

    Returns the applied change, the conflict, or `None` if the target does not exist for the user or the change dates are out of range in the reminder timezone. Storage failures raise `StoreError`.
    """
    client_updated_at = change.client_updated_at or datetime.now(UTC)

    res: AppliedChangeModel | ConflictModel | None = None
    try:
        if change.operation == OperationEnum.DELETE:
            res = await _delete(
                change=change,
                client_updated_at=client_updated_at,
                store=store,
                user_id=user_id,
            )
        elif change.server_id:
            res = await _update(
                change=change,
                client_updated_at=client_updated_at,
                device_id=device_id,
                store=store,
                user_id=user_id,
            )
        else:
            res = await _insert(
                change=change,
                client_updated_at=client_updated_at,
                device_id=device_id,
                store=store,
                user_id=user_id,
            )
    except InvalidDateError:
        # Dates are re-read in the stored reminder timezone, they can become invalid there
        logger.warning(
            "Skipping change %s, its dates are invalid for the reminder",
            change.client_id,
            exc_info=True,
        )

    if isinstance(res, AppliedChangeModel):
        counter_add(sync_change_applied, 1)
    elif isinstance(res, ConflictModel):
        counter_add(sync_change_conflict, 1)
    else:
        counter_add(sync_change_skipped, 1)
    return res


async def _delete(
    change: ChangeModel,
    client_updated_at: datetime,
    store: IStore,
    user_id: str,
) -> AppliedChangeModel | ConflictModel | None:
    existing = await _load_target(change, store, user_id)
    if not existing:
        return None

    saved = await store.reminder_save(
        expected_updated_at=existing.updated_at,
        reminder=existing.merge(
            {
                "client_updated_at": client_updated_at,
                "deleted_at": datetime.now(UTC),
                "is_deleted": True,
                "sync_status": SyncStatusEnum.PENDING,
            }
        ),
    )
    if not saved:
        return await _lost_race(change, existing, store, user_id)

    logger.info("Deleted reminder %s", saved.id)
    return AppliedChangeModel(
        client_id=change.client_id,
        operation=OperationEnum.DELETE,
        server_id=saved.id,
    )


async def _update(
    change: ChangeModel,
    client_updated_at: datetime,
    device_id: str,
    store: IStore,
    user_id: str,
) -> AppliedChangeModel | ConflictModel | None:
    existing = await _load_target(change, store, user_id)
    if not existing:
        return None

    # Last write wins, on the whole record
    if existing.updated_at > client_updated_at:
        logger.info(
            "Conflict on reminder %s, server is at %s, client at %s",
            existing.id,
            existing.updated_at,
            client_updated_at,
        )
        return _conflict(change, existing)

    saved = await store.reminder_save(
        expected_updated_at=existing.updated_at,
        reminder=existing.patched(
            change.data,
            client_reference=ClientReferenceModel(
                device=device_id,
                id=change.client_id,
            ),
            client_updated_at=client_updated_at,
            sync_status=SyncStatusEnum.PENDING,
        ),
    )
    if not saved:
        return await _lost_race(change, existing, store, user_id)

    logger.info("Updated reminder %s", saved.id)
    return AppliedChangeModel(
        client_id=change.client_id,
        operation=OperationEnum.UPDATE,
        server_id=saved.id,
    )


async def _insert(
    change: ChangeModel,
    client_updated_at: datetime,
    device_id: str,
    store: IStore,
    user_id: str,
) -> AppliedChangeModel:
    # Same client id twice creates two reminders, clients must not replay an acknowledged insert
    created = await store.reminder_create(
        ReminderModel.from_patch(
            owner=user_id,
            patch=change.data,
            client_reference=ClientReferenceModel(
                device=device_id,
                id=change.client_id,
            ),
            client_updated_at=client_updated_at,
            sync_status=SyncStatusEnum.PENDING,
        )
    )
    SpanAttributeEnum.REMINDER_ID.attribute(created.id)

    logger.info("Created reminder %s", created.id)
    return AppliedChangeModel(
        client_id=change.client_id,
        operation=OperationEnum.INSERT,
        server_id=created.id,
    )


async def _load_target(
    change: ChangeModel,
    store: IStore,
    user_id: str,
) -> ReminderModel | None:
    """
    Load the reminder targeted by a change.

    Returns `None` for a missing, malformed or foreign server id.
    """
    if not change.server_id or not _is_uuid(change.server_id):
        logger.info("Skipping change, invalid server id %s", change.server_id)
        return None

    SpanAttributeEnum.REMINDER_ID.attribute(change.server_id)
    existing = await store.reminder_get(
        reminder_id=change.server_id,
        user_id=user_id,
    )
    if not existing:
        logger.info("Skipping change, reminder %s not found", change.server_id)
    return existing


async def _lost_race(
    change: ChangeModel,
    existing: ReminderModel,
    store: IStore,
    user_id: str,
) -> ConflictModel | None:
    """
    Report a conditional write that failed because another writer came first.
    """
    fresh = await store.reminder_get(
        reminder_id=existing.id,
        user_id=user_id,
    )
    if not fresh:
        logger.info("Reminder %s vanished while saving", existing.id)
        return None

    logger.info("Reminder %s changed concurrently, reporting a conflict", fresh.id)
    return _conflict(change, fresh)


def _conflict(
    change: ChangeModel,
    existing: ReminderModel,
) -> ConflictModel:
    return ConflictModel(
        client_id=change.client_id,
        reason=CONFLICT_REASON,
        server_id=existing.id,
        server_state=ReminderGetModel.model_validate(existing.model_dump()),
    )


def _is_uuid(value: str) -> bool:
    try:
        UUID(value)
    except ValueError:
        return False
    return True
