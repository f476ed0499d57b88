from contextlib import asynccontextmanager
from datetime import UTC, datetime
from http import HTTPStatus
from math import ceil
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from reminder_sync.helpers.auth import validate_bearer
from reminder_sync.helpers.config import CONFIG
from reminder_sync.helpers.config_models.database import ModeEnum
from reminder_sync.helpers.http import close_http
from reminder_sync.helpers.logging import logger
from reminder_sync.helpers.monitoring import SpanAttributeEnum, start_as_current_span
from reminder_sync.helpers.quick_add import parse_quick_add
from reminder_sync.helpers.reminder_sync import localize, sync_reminders
from reminder_sync.helpers.timezone import (
    END_OF_DAY,
    parse_to_utc,
    resolve_request_timezone,
)
from reminder_sync.models.quick_add import QuickAddRequestModel
from reminder_sync.models.readiness import ReadinessEnum, ReadinessModel
from reminder_sync.models.reminder import (
    ClientReferenceModel,
    PaginationModel,
    PriorityEnum,
    ReminderCreateModel,
    ReminderFiltersModel,
    ReminderModel,
    ReminderPageModel,
    ReminderPatchModel,
    StatusEnum,
    SyncStatusEnum,
)
from reminder_sync.models.response import ErrorModel, ResponseModel
from reminder_sync.models.sync import SyncRequestModel
from reminder_sync.persistence.istore import StoreError

# First log
logger.info(
    "reminder-sync v%s",
    CONFIG.version,
)

# Persistences
_db = CONFIG.database.instance


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    yield

    # Close HTTP session, only Azure SDKs use it
    if CONFIG.database.mode == ModeEnum.COSMOS_DB:
        await close_http()


# FastAPI
api = FastAPI(
    description="Offline-first reminders, with per-record last-write-wins synchronization.",
    lifespan=lifespan,
    root_path=CONFIG.api.root_path,
    title="reminder-sync",
    version=CONFIG.version,
)


async def _user_id(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """
    Authenticated user of the request.
    """
    return validate_bearer(
        authorization=authorization,
        config=CONFIG.auth,
    )


UserId = Annotated[str, Depends(_user_id)]
TimezoneHeader = Annotated[str | None, Header(alias="X-User-Timezone")]


@api.get("/health/liveness")
@start_as_current_span("health_liveness_get")
async def health_liveness_get() -> None:
    """
    Check if the service is running.

    No parameters are expected.

    Returns a 200 OK if the service is technically running.
    """
    return


@api.get(
    "/health/readiness",
    status_code=HTTPStatus.OK,
)
@start_as_current_span("health_readiness_get")
async def health_readiness_get() -> JSONResponse:
    """
    Check if the service is ready to serve requests.

    No parameters are expected. Services tested are: store.

    Returns a 200 OK if the service is ready to serve requests. If the service is not ready, it should return a 503 Service Unavailable.
    """
    readiness = ReadinessModel.from_checks(
        startup=ReadinessEnum.OK,
        store=await _db.readiness(),
    )
    return JSONResponse(
        content=readiness.model_dump(mode="json"),
        status_code=(
            HTTPStatus.OK
            if readiness.status == ReadinessEnum.OK
            else HTTPStatus.SERVICE_UNAVAILABLE
        ),
    )


@api.get("/reminders")
@start_as_current_span("reminder_list_get")
async def reminder_list_get(  # noqa: PLR0913
    user_id: UserId,
    x_user_timezone: TimezoneHeader = None,
    category: str | None = None,
    from_: Annotated[str | None, Query(alias="from")] = None,
    limit: Annotated[int | None, Query(ge=1, le=CONFIG.api.max_limit)] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    priority: PriorityEnum | None = None,
    search: Annotated[str | None, Query(max_length=100)] = None,
    status: StatusEnum | None = None,
    tags: str | None = None,
    timezone: str | None = None,
    to: str | None = None,
) -> JSONResponse:
    """
    REST API to list the reminders of the user.

    Parameters:
    - from: Lower bound of the schedule, a date-only value is the start of that day
    - to: Upper bound of the schedule, a date-only value is the end of that day
    - category, priority, status: Exact match
    - tags: Comma separated, any of them matches
    - search: Case-insensitive text, searched in title, description, notes and tags
    - page, limit: Pagination, limit defaults to the configured value
    - timezone: Timezone used to read the bounds and to display the schedules, else the `X-User-Timezone` header

    Returns a page of reminders, sorted by schedule, deleted ones excluded.
    """
    request_timezone = resolve_request_timezone(timezone, x_user_timezone)
    limit = limit or CONFIG.api.default_limit

    filters = ReminderFiltersModel(
        category=category,
        priority=priority,
        scheduled_from=parse_to_utc(from_, request_timezone) if from_ else None,
        scheduled_to=(
            parse_to_utc(to, request_timezone, override_parts=END_OF_DAY)
            if to
            else None
        ),
        search=search or None,
        status=status,
        tags=[tag.strip().lower() for tag in (tags or "").split(",") if tag.strip()],
    )
    reminders, total = await _db.reminder_search_all(
        filters=filters,
        limit=limit,
        offset=(page - 1) * limit,
        user_id=user_id,
    )

    return _success(
        data=ReminderPageModel(
            items=[localize(reminder, request_timezone) for reminder in reminders],
            pagination=PaginationModel(
                current_page=page,
                items_per_page=limit,
                total_items=total,
                total_pages=ceil(total / limit),
            ),
        ),
        message="Reminders retrieved successfully",
    )


@api.post(
    "/reminders",
    status_code=HTTPStatus.CREATED,
)
@start_as_current_span("reminder_post")
async def reminder_post(
    body: ReminderCreateModel,
    user_id: UserId,
    x_user_timezone: TimezoneHeader = None,
    timezone: str | None = None,
) -> JSONResponse:
    """
    REST API to create a reminder.

    Title and schedule are required. A schedule without offset is read in the reminder timezone, else in the request one.

    Returns the created reminder.
    """
    request_timezone = resolve_request_timezone(body.timezone, timezone, x_user_timezone)

    reminder = await _db.reminder_create(
        ReminderModel.from_patch(
            owner=user_id,
            patch=body,
            fallback_timezone=request_timezone,
            client_reference=body.client_reference or ClientReferenceModel(),
            client_updated_at=body.client_updated_at,
            sync_status=(
                SyncStatusEnum.PENDING
                if body.client_reference
                else SyncStatusEnum.SYNCED
            ),
        )
    )
    SpanAttributeEnum.REMINDER_ID.attribute(reminder.id)

    return _success(
        data=localize(reminder, request_timezone),
        message="Reminder created successfully",
        status_code=HTTPStatus.CREATED,
    )


@api.post(
    "/reminders/quick-add",
    status_code=HTTPStatus.CREATED,
)
@start_as_current_span("reminder_quick_add_post")
async def reminder_quick_add_post(
    body: QuickAddRequestModel,
    user_id: UserId,
    x_user_timezone: TimezoneHeader = None,
    timezone: str | None = None,
) -> JSONResponse:
    """
    REST API to create a reminder from text, like "call Alex next tue 3p".

    The text is read in the request timezone. Category, priority and tags come from `defaults`.

    Returns the created reminder.
    """
    request_timezone = resolve_request_timezone(
        body.timezone, body.defaults.timezone, timezone, x_user_timezone
    )
    parsed = parse_quick_add(
        text=body.input,
        timezone=request_timezone,
    )
    defaults = body.defaults

    reminder = await _db.reminder_create(
        ReminderModel(
            category=defaults.category,  # pyright: ignore
            client_reference=defaults.client_reference or ClientReferenceModel(),
            client_updated_at=defaults.client_updated_at or datetime.now(UTC),
            owner=user_id,
            priority=defaults.priority or PriorityEnum.MEDIUM,
            scheduled_at=parsed.scheduled_at,
            sync_status=(
                SyncStatusEnum.PENDING
                if defaults.client_reference
                else SyncStatusEnum.SYNCED
            ),
            tags=defaults.tags,
            timezone=parsed.timezone,
            title=parsed.title,
        )
    )
    SpanAttributeEnum.REMINDER_ID.attribute(reminder.id)

    return _success(
        data=localize(reminder, request_timezone),
        message="Reminder created from quick-add text",
        status_code=HTTPStatus.CREATED,
    )


@api.patch("/reminders/{reminder_id}")
@start_as_current_span("reminder_patch")
async def reminder_patch(
    body: ReminderPatchModel,
    reminder_id: str,
    user_id: UserId,
    x_user_timezone: TimezoneHeader = None,
    timezone: str | None = None,
) -> JSONResponse:
    """
    REST API to partially update a reminder.

    Omitted fields are left untouched, `null` clears optional ones. Deleted reminders cannot be updated.

    Returns the updated reminder.
    """
    SpanAttributeEnum.REMINDER_ID.attribute(reminder_id)
    request_timezone = resolve_request_timezone(timezone, x_user_timezone)

    existing = await _reminder_or_404(reminder_id, user_id)
    saved = await _db.reminder_save(
        expected_updated_at=existing.updated_at,
        reminder=existing.patched(
            body,
            client_updated_at=datetime.now(UTC),
            sync_status=SyncStatusEnum.PENDING,
        ),
    )
    if not saved:
        await _concurrent_write(reminder_id, user_id)

    return _success(
        data=localize(saved, request_timezone),  # pyright: ignore
        message="Reminder updated successfully",
    )


@api.delete("/reminders/{reminder_id}")
@start_as_current_span("reminder_delete")
async def reminder_delete(
    reminder_id: str,
    user_id: UserId,
) -> JSONResponse:
    """
    REST API to delete a reminder.

    Reminder is kept as deleted, so devices learn about it at their next sync.
    """
    SpanAttributeEnum.REMINDER_ID.attribute(reminder_id)

    existing = await _reminder_or_404(reminder_id, user_id)
    now = datetime.now(UTC)
    saved = await _db.reminder_save(
        expected_updated_at=existing.updated_at,
        reminder=existing.merge(
            {
                "client_updated_at": now,
                "deleted_at": now,
                "is_deleted": True,
                "sync_status": SyncStatusEnum.PENDING,
            }
        ),
    )
    if not saved:
        await _concurrent_write(reminder_id, user_id)

    return _success(
        data=None,
        message="Reminder deleted successfully",
    )


@api.post("/reminders/sync")
@start_as_current_span("reminder_sync_post")
async def reminder_sync_post(
    body: SyncRequestModel,
    user_id: UserId,
    x_user_timezone: TimezoneHeader = None,
    timezone: str | None = None,
) -> JSONResponse:
    """
    REST API to synchronize a device.

    Changes are applied in order. Updates older than the server state are reported as conflicts. Unknown reminders are skipped.

    Returns the applied changes, the conflicts, the reminders changed on the server since `lastSyncAt`, and the server time to use as next `lastSyncAt`.
    """
    if len(body.changes) > CONFIG.sync.max_changes:
        raise ValueError(
            f"At most {CONFIG.sync.max_changes} changes can be synced at once, got {len(body.changes)}"
        )

    result = await sync_reminders(
        request=body,
        store=_db,
        timezone=resolve_request_timezone(body.timezone, timezone, x_user_timezone),
        user_id=user_id,
    )

    return _success(
        data=result,
        message="Sync completed",
    )


async def _reminder_or_404(
    reminder_id: str,
    user_id: str,
) -> ReminderModel:
    reminder = await _db.reminder_get(
        include_deleted=False,
        reminder_id=reminder_id,
        user_id=user_id,
    )
    if not reminder:
        raise HTTPException(
            detail="Reminder not found",
            status_code=HTTPStatus.NOT_FOUND,
        )
    return reminder


async def _concurrent_write(
    reminder_id: str,
    user_id: str,
) -> None:
    """
    Raise the HTTP error of a conditional write lost against another writer.
    """
    await _reminder_or_404(reminder_id, user_id)
    raise HTTPException(
        detail="Reminder was modified concurrently, retry with the latest version",
        status_code=HTTPStatus.CONFLICT,
    )


@api.exception_handler(StoreError)
async def store_exception_handler(
    request: Request,  # noqa: ARG001
    exc: StoreError,
) -> JSONResponse:
    """
    Handle storage failures, the client can retry later.
    """
    logger.error("Store failed", exc_info=exc)
    return _standard_error(
        message="Storage is unavailable, retry later",
        status_code=HTTPStatus.SERVICE_UNAVAILABLE,
    )


@api.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,  # noqa: ARG001
    exc: StarletteHTTPException,
) -> JSONResponse:
    """
    Handle HTTP exceptions and return the error in a standard format.
    """
    return _standard_error(
        message=exc.detail,
        status_code=HTTPStatus(exc.status_code),
    )


@api.exception_handler(RequestValidationError)
@api.exception_handler(ValueError)
async def validation_exception_handler(
    request: Request,  # noqa: ARG001
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handle validation exceptions and return the error in a standard format.
    """
    return _validation_error(exc)


def _success(
    data: BaseModel | None,
    message: str,
    status_code: HTTPStatus = HTTPStatus.OK,
) -> JSONResponse:
    """
    Generate a standard success response.
    """
    model = ResponseModel[Any](
        data=data.model_dump(mode="json", by_alias=True) if data is not None else None,
        message=message,
    )
    return JSONResponse(
        content=model.model_dump(mode="json"),
        status_code=status_code,
    )


def _validation_error(e: Exception) -> JSONResponse:
    """
    Generate a standard validation error response.
    """
    errors: list[dict[str, Any]] = []
    if isinstance(e, ValidationError | RequestValidationError):
        # Context may hold exception instances, keep only serializable fields
        errors = [
            {
                "loc": [str(loc) for loc in error.get("loc", ())],
                "msg": error.get("msg", ""),
                "type": error.get("type", ""),
            }
            for error in e.errors()
        ]
    else:
        errors = [{"loc": [], "msg": str(e), "type": "value_error"}]
    return _standard_error(
        errors=errors,
        message="Validation failed",
        status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
    )


def _standard_error(
    message: str,
    status_code: HTTPStatus,
    errors: list[Any] | None = None,
) -> JSONResponse:
    """
    Generate a standard error response.
    """
    model = ErrorModel(
        errors=errors or [],
        message=message,
    )
    return JSONResponse(
        content=model.model_dump(mode="json"),
        status_code=status_code,
    )
