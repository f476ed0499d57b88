from datetime import UTC, datetime

from reminder_sync.helpers.logging import logger
from reminder_sync.helpers.monitoring import (
    SpanAttributeEnum,
    start_as_current_span,
)
from reminder_sync.helpers.reminder_changes import apply_change
from reminder_sync.helpers.timezone import DEFAULT_TIMEZONE, project_to_local
from reminder_sync.models.reminder import ReminderGetModel, ReminderModel
from reminder_sync.models.sync import (
    AppliedChangeModel,
    ConflictModel,
    SyncRequestModel,
    SyncResultModel,
)
from reminder_sync.persistence.istore import IStore, StoreError

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@start_as_current_span("reminder_sync")
async def sync_reminders(
    user_id: str,
    request: SyncRequestModel,
    store: IStore,
    timezone: str = DEFAULT_TIMEZONE,
) -> SyncResultModel:
    """
    Reconcile a batch of offline changes, then return what changed on the server.

    Changes are applied one after the other, in the given order. If the store fails, the batch stops there: changes already applied stay applied and are reported, the remaining ones are dropped and should be sent again by the client.

    Server changes are all the reminders of the user updated after `request.last_sync_at` (the epoch if never synced), deleted ones included, with their schedule projected in `timezone`.

    A store failure while loading the server changes raises `StoreError`.
    """
    SpanAttributeEnum.USER_ID.attribute(user_id)
    SpanAttributeEnum.DEVICE_ID.attribute(request.client_id)
    SpanAttributeEnum.SYNC_CHANGES.attribute(len(request.changes))
    logger.info("Syncing %s changes", len(request.changes))

    applied_changes: list[AppliedChangeModel] = []
    conflicts: list[ConflictModel] = []
    for i, change in enumerate(request.changes):
        try:
            res = await apply_change(
                change=change,
                device_id=request.client_id,
                store=store,
                user_id=user_id,
            )
        except StoreError:
            logger.exception(
                "Store failed at change %s of %s, stopping the batch",
                i + 1,
                len(request.changes),
            )
            break
        if isinstance(res, AppliedChangeModel):
            applied_changes.append(res)
        elif isinstance(res, ConflictModel):
            conflicts.append(res)

    # Taken before the query, so writes stamped after it are sent next time. A concurrent write stamped before it but committed after the query is not, until the reminder changes again.
    server_time = datetime.now(UTC)
    since = request.last_sync_at or _EPOCH
    changed = await store.reminder_changed_since(
        since=since,
        user_id=user_id,
    )
    logger.info(
        "Sync done, %s applied, %s conflicts, %s server changes",
        len(applied_changes),
        len(conflicts),
        len(changed),
    )

    return SyncResultModel(
        applied_changes=applied_changes,
        conflicts=[
            conflict.model_copy(
                update={"server_state": localize(conflict.server_state, timezone)}
            )
            for conflict in conflicts
        ],
        server_changes=[localize(reminder, timezone) for reminder in changed],
        server_time=server_time,
    )


def localize(
    reminder: ReminderModel,
    timezone: str = DEFAULT_TIMEZONE,
) -> ReminderGetModel:
    """
    Reminder as returned to clients, with its schedule projected in the given timezone.
    """
    return ReminderGetModel.model_validate(
        {
            **reminder.model_dump(),
            "scheduled_at_local": project_to_local(reminder.scheduled_at, timezone),
        }
    )
